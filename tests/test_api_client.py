import httpx
import pytest

from photo_flow.api_client import BackendClient, BackendError


async def test_requests_carry_bearer_token():
    seen = {}

    def handler(request: httpx.Request):
        seen["auth"] = request.headers.get("authorization")
        return httpx.Response(200, json={"photoId": 99})

    async with BackendClient(base_url="http://b.test", token="abc",
                             transport=httpx.MockTransport(handler)) as client:
        photo_id = await client.create_single("http://s", "1")

    assert seen["auth"] == "Bearer abc"
    assert photo_id == "99"


async def test_upload_sends_base64_payload(client, backend):
    url = await client.upload_selfie(b"\xff\xd8abc")

    assert url == "http://cdn.test/selfie.jpg"
    [body] = backend.bodies("/api/photo/uploadSelfie")
    assert body == {"imageBase64": "/9hhYmM=", "mimeType": "image/jpeg"}


async def test_error_message_is_extracted():
    def handler(request):
        return httpx.Response(403, json={"error": {"message": "forbidden", "code": "FORBIDDEN"}})

    async with BackendClient(base_url="http://b.test", transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(BackendError) as exc:
            await client.get_status("p1")

    assert exc.value.status_code == 403
    assert str(exc.value) == "forbidden"


async def test_network_errors_become_backend_errors():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    async with BackendClient(base_url="http://b.test", transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(BackendError) as exc:
            await client.list_templates()

    assert exc.value.status_code is None


async def test_wire_models_accept_camel_case(client, backend):
    backend.statuses["p9"] = ["completed"]

    job = await client.get_status("p9")
    templates = await client.list_templates(city=None)

    assert job.is_terminal
    assert job.result_url == "http://cdn.test/p9.jpg"
    assert [t.id for t in templates] == ["1", "2", "3"]


async def test_non_json_success_body_is_a_backend_error():
    def handler(request):
        return httpx.Response(200, text="<html>gateway hiccup</html>")

    async with BackendClient(base_url="http://b.test", transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(BackendError) as exc:
            await client.get_status("p1")

    assert exc.value.status_code == 200


@pytest.mark.parametrize("call,body", [
    (lambda c: c.upload_selfie(b"x"), {"unexpected": True}),
    (lambda c: c.get_status("p1"), {"photoId": "p1", "status": "exploded"}),
    (lambda c: c.get_by_ids(["p1"]), {"photoId": "p1"}),
    (lambda c: c.list_templates(), [{"name": "no id"}]),
])
async def test_unexpected_payloads_are_backend_errors(call, body):
    def handler(request):
        return httpx.Response(200, json=body)

    async with BackendClient(base_url="http://b.test", transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(BackendError):
            await call(client)


async def test_job_detail_carries_template(client, backend):
    detail = await client.get_detail("p1")

    assert detail.photo_id == "p1"
    assert detail.template.id == "2"
    assert detail.template.image_url == "http://cdn.test/t2.jpg"
