import time
from io import BytesIO

import httpx
import pytest
from fastapi.testclient import TestClient
from PIL import Image

from photo_flow.api_client import BackendClient
from photo_flow.camera import DeviceBusyError
from photo_flow.config import settings
from photo_flow.main import create_app


@pytest.fixture
def kiosk(backend, device, store, tmp_path):
    client = BackendClient(base_url="http://backend.test", transport=httpx.MockTransport(backend.handle))
    app = create_app(client=client, device=device, store=store, data_dir=str(tmp_path))
    # one TestClient block keeps one event loop for the background tasks
    with TestClient(app) as c:
        yield c


def png_bytes():
    out = BytesIO()
    Image.new("RGB", (8, 8), (0, 128, 255)).save(out, format="PNG")
    return out.getvalue()


def test_health_and_request_id(kiosk):
    r = kiosk.get("/health", headers={"x-request-id": "req_test"})

    assert r.status_code == 200
    assert r.json() == {"ok": True, "camera": "idle", "authenticated": False}
    assert r.headers["x-request-id"] == "req_test"
    assert kiosk.get("/health").headers["x-request-id"].startswith("req_")


def test_session_binds_attribution(kiosk):
    r = kiosk.post("/session", json={"token": "abc", "channel_id": 7, "sales_id": 9})
    assert r.json() == {"authenticated": True, "channel_id": 7, "sales_id": 9}

    r = kiosk.delete("/session")
    assert r.json() == {"authenticated": False}


def test_capture_requires_ready_camera(kiosk):
    r = kiosk.post("/camera/capture")
    assert r.status_code == 409


def test_capture_and_preview(kiosk, device):
    r = kiosk.post("/camera/start")
    assert r.json()["state"] == "ready"
    assert device.active == 1

    r = kiosk.post("/camera/capture")
    body = r.json()
    assert body["mode"] == "preview"
    assert body["has_image"] is True
    assert body["state"] == "stopped"
    assert device.active == 0

    r = kiosk.get("/camera/preview")
    assert r.status_code == 200
    assert r.headers["content-type"] == "image/jpeg"
    assert r.content[:2] == b"\xff\xd8"


def test_preview_without_image_is_404(kiosk):
    assert kiosk.get("/camera/preview").status_code == 404


def test_pick_rejects_non_images(kiosk):
    r = kiosk.post("/camera/pick", files={"image": ("notes.txt", b"hello", "text/plain")})
    assert r.status_code == 415


def test_pick_accepts_png(kiosk):
    r = kiosk.post("/camera/pick", files={"image": ("me.png", png_bytes(), "image/png")})
    assert r.status_code == 200
    assert r.json()["has_image"] is True


def test_confirm_without_login_redirects(kiosk):
    kiosk.post("/camera/pick", files={"image": ("me.png", png_bytes(), "image/png")})

    r = kiosk.post("/selfie/confirm", json={"template_ids": ["1"]})

    assert r.status_code == 200
    assert r.json()["route"] == "login"
    assert kiosk.get("/camera/state").json()["has_image"] is True


def test_confirm_without_image_is_400(kiosk):
    kiosk.post("/session", json={"token": "abc"})
    r = kiosk.post("/selfie/confirm", json={"template_ids": ["1"]})
    assert r.status_code == 400


def test_upload_failure_is_502(kiosk, backend):
    backend.upload_status = 500
    kiosk.post("/session", json={"token": "abc"})
    kiosk.post("/camera/pick", files={"image": ("me.png", png_bytes(), "image/png")})

    r = kiosk.post("/selfie/confirm", json={"template_ids": ["1"]})

    assert r.status_code == 502
    assert r.json()["detail"] == "storage unavailable"


def test_confirm_two_templates_starts_generation(kiosk, backend):
    kiosk.post("/session", json={"token": "abc"})
    kiosk.post("/camera/start")
    kiosk.post("/camera/capture")

    r = kiosk.post("/selfie/confirm", json={"template_ids": ["1", "2"]})

    nav = r.json()
    assert nav["route"] == "generating"
    assert nav["photo_ids"] == ["q1", "q2"]
    assert backend.count("/api/quickGenerate/init") == 1
    assert backend.count("/api/photo/createSingle") == 0
    assert kiosk.get("/camera/state").json()["has_image"] is False

    state = kiosk.get("/generation").json()
    assert state["remaining_seconds"] == 20
    assert state["progress_text"] == "正在生成第 1/2 张..."
    assert state["navigation"] is None

    assert kiosk.delete("/generation").json() == {"ok": True}
    assert kiosk.get("/generation").status_code == 404


def test_generation_requires_photo_ids(kiosk):
    assert kiosk.post("/generation", json={"photo_ids": []}).status_code == 400


def test_results_browse_and_save(kiosk, backend, tmp_path):
    backend.photos = {
        p: {"photoId": p, "status": "completed", "resultUrl": f"http://cdn.test/{p}.jpg"}
        for p in ("a", "b")
    }
    assert kiosk.get("/results").status_code == 404

    r = kiosk.post("/results", json={"photo_ids": ["a", "b"]})
    assert r.json()["counter"] == "1 / 2"
    assert r.json()["share_url"] == settings.PUBLIC_BASE_URL.rstrip("/") + "/result?photoIds=a,b"

    r = kiosk.post("/results/swipe", json={"dx": 120, "dy": 5})
    assert r.json()["image_url"] == "http://cdn.test/b.jpg"

    r = kiosk.post("/results/save")
    assert r.json() == {"ok": True, "message": "照片已保存"}
    assert (tmp_path / "saved" / "ai-photo-b.jpg").exists()


def test_failed_capture_reports_camera_error(kiosk, device):
    kiosk.post("/camera/start")
    device.read_error = DeviceBusyError("frame grab failed")

    r = kiosk.post("/camera/capture")

    assert r.status_code == 503
    assert r.json()["detail"] == "相机被其他应用占用，请关闭其他应用后重试"
    state = kiosk.get("/camera/state").json()
    assert state["state"] == "error"
    assert state["error"] == r.json()["detail"]
    assert device.active == 0

    device.read_error = None
    assert kiosk.post("/camera/retry").json()["state"] == "ready"


def test_single_template_background_is_the_job_template(kiosk, backend):
    backend.statuses["p1"] = ["processing"]
    kiosk.post("/session", json={"token": "abc"})
    kiosk.post("/camera/pick", files={"image": ("me.png", png_bytes(), "image/png")})

    nav = kiosk.post("/selfie/confirm", json={"template_ids": ["1"]}).json()
    assert nav["photo_ids"] == ["p1"]

    background = None
    for _ in range(100):
        background = kiosk.get("/generation").json()["background_url"]
        if background:
            break
        time.sleep(0.01)

    assert background == "http://cdn.test/t2.jpg"
    assert backend.count("/api/photo/getDetail") == 1
