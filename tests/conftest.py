import asyncio
import json
from typing import Any, Dict, List, Optional

import httpx
import numpy as np
import pytest

from photo_flow.api_client import BackendClient
from photo_flow.session import FlowSession
from photo_flow.storage import KeyValueStore

BACKEND = "http://backend.test"


def half_frame(width: int = 64, height: int = 32):
    """BGR frame: left half black, right half white."""
    frame = np.zeros((height, width, 3), dtype=np.uint8)
    frame[:, width // 2:] = 255
    return frame


# --------------------------
# camera fakes
# --------------------------
class FakeStream:
    def __init__(self, device: "FakeDevice", front: bool):
        self.device = device
        self.front = front
        self.active = True
        self.play_pending = False

    async def wait_playable(self):
        if self.device.playable_gate is not None:
            await self.device.playable_gate.wait()

    async def play(self):
        self.play_pending = True
        try:
            if self.device.play_gate is not None:
                await self.device.play_gate.wait()
            if self.device.play_error is not None:
                raise self.device.play_error
        finally:
            self.play_pending = False

    async def read_frame(self):
        if self.device.read_error is not None:
            raise self.device.read_error
        return self.device.frame

    def stop(self):
        if self.play_pending:
            self.device.stopped_during_play = True
        if self.active:
            self.active = False
            self.device.active -= 1


class FakeDevice:
    def __init__(self, frame=None):
        self.frame = half_frame() if frame is None else frame
        self.opens: List[bool] = []
        self.streams: List[FakeStream] = []
        self.errors: List[Exception] = []
        self.active = 0
        self.max_active = 0
        self.stopped_during_play = False
        self.open_gate: Optional[asyncio.Event] = None
        self.playable_gate: Optional[asyncio.Event] = None
        self.play_gate: Optional[asyncio.Event] = None
        self.play_error: Optional[Exception] = None
        self.read_error: Optional[Exception] = None

    async def open(self, front: bool) -> FakeStream:
        self.opens.append(front)
        if self.open_gate is not None:
            await self.open_gate.wait()
        if self.errors:
            raise self.errors.pop(0)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        stream = FakeStream(self, front)
        self.streams.append(stream)
        return stream


@pytest.fixture
def device():
    return FakeDevice()


# --------------------------
# backend fake
# --------------------------
class FakeBackend:
    def __init__(self):
        self.calls: List[tuple] = []
        self.upload_status = 200
        self.upload_body: Optional[Dict[str, Any]] = None
        self.analysis: Dict[str, Any] = {"success": True, "faceType": "宽脸", "gender": "女", "userType": "少女"}
        self.analysis_status = 200
        self.analysis_delay = 0.0
        self.create_status = 200
        # photo id -> statuses returned in order, the last one repeats
        self.statuses: Dict[str, List[str]] = {}
        self.status_error_first = 0
        self.status_garbled_first = 0
        # template of a single job, as getDetail reports it
        self.job_template: Optional[Dict[str, Any]] = {"id": 2, "name": "长城", "imageUrl": "http://cdn.test/t2.jpg"}
        self.progress: List[Dict[str, int]] = []
        self.photos: Dict[str, Dict[str, Any]] = {}
        self.templates = [
            {"id": 1, "name": "故宫", "imageUrl": "http://cdn.test/t1.jpg"},
            {"id": 2, "name": "长城", "imageUrl": "http://cdn.test/t2.jpg"},
            {"id": 3, "name": "颐和园", "imageUrl": None},
        ]
        self.download_status = 200

    def count(self, path: str) -> int:
        return sum(1 for p, _ in self.calls if p == path)

    def bodies(self, path: str) -> List[Any]:
        return [b for p, b in self.calls if p == path]

    async def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        body = json.loads(request.content) if request.content else dict(request.url.params)
        self.calls.append((path, body))

        if path == "/api/photo/uploadSelfie":
            if self.upload_status >= 400:
                return httpx.Response(self.upload_status, json={"error": {"message": "storage unavailable"}})
            if self.upload_body is not None:
                return httpx.Response(200, json=self.upload_body)
            return httpx.Response(200, json={"url": "http://cdn.test/selfie.jpg"})

        if path == "/api/photo/analyzeUser":
            if self.analysis_delay:
                await asyncio.sleep(self.analysis_delay)
            if self.analysis_status >= 400:
                return httpx.Response(self.analysis_status, json={"error": "classifier down"})
            return httpx.Response(200, json=self.analysis)

        if path == "/api/photo/createSingle":
            if self.create_status >= 400:
                return httpx.Response(self.create_status, json={"error": {"message": "no credits"}})
            return httpx.Response(200, json={"photoId": "p1"})

        if path == "/api/quickGenerate/init":
            ids = [f"q{i + 1}" for i in range(len(body["templateIds"]))]
            return httpx.Response(200, json={"photoIds": ids})

        if path == "/api/photo/getStatus":
            photo_id = body["photoId"]
            if self.status_error_first > 0:
                self.status_error_first -= 1
                return httpx.Response(503, json={"error": "busy"})
            if self.status_garbled_first > 0:
                self.status_garbled_first -= 1
                return httpx.Response(200, text="<html>gateway hiccup</html>")
            seq = self.statuses.get(photo_id, ["processing"])
            status = seq.pop(0) if len(seq) > 1 else seq[0]
            url = f"http://cdn.test/{photo_id}.jpg" if status == "completed" else None
            return httpx.Response(200, json={"photoId": photo_id, "status": status, "resultUrl": url})

        if path == "/api/photo/getDetail":
            photo_id = body["photoId"]
            return httpx.Response(200, json={"photoId": photo_id, "status": "processing", "template": self.job_template})

        if path == "/api/quickGenerate/progress":
            if not self.progress:
                return httpx.Response(200, json={"totalPhotos": len(body["photoIds"]), "completedPhotos": 0})
            item = self.progress.pop(0) if len(self.progress) > 1 else self.progress[0]
            return httpx.Response(200, json=item)

        if path == "/api/photo/getByIds":
            return httpx.Response(200, json=[self.photos[p] for p in body["photoIds"] if p in self.photos])

        if path == "/api/template/list":
            return httpx.Response(200, json=self.templates)

        if request.url.host == "cdn.test":
            if self.download_status >= 400:
                return httpx.Response(self.download_status)
            return httpx.Response(200, content=b"\xff\xd8jpeg-bytes")

        return httpx.Response(404, json={"error": "not found"})


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
async def client(backend):
    c = BackendClient(base_url=BACKEND, token="user-token", transport=httpx.MockTransport(backend.handle))
    yield c
    await c.aclose()


@pytest.fixture
def store():
    return KeyValueStore(":memory:")


@pytest.fixture
def session(store):
    return FlowSession(store, auth_token="user-token")
