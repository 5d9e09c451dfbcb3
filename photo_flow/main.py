import logging
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional

from fastapi import FastAPI, File, HTTPException, Request, UploadFile
from fastapi.responses import Response
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel

from photo_flow.api_client import BackendClient
from photo_flow.camera import CameraCaptureError, CameraController, CameraNotReadyError, SelfieCapture
from photo_flow.config import settings
from photo_flow.dispatcher import DispatchError, SelfieDispatcher
from photo_flow.logging_config import setup_logging
from photo_flow.poller import GenerationPoller
from photo_flow.schemas import (
    CameraStateResponse,
    ConfirmRequest,
    GenerationStartRequest,
    GenerationStateResponse,
    Navigation,
    NoticeResponse,
    ResultViewResponse,
)
from photo_flow.session import FlowSession
from photo_flow.storage import KeyValueStore
from photo_flow.viewer import ResultViewer

logger = logging.getLogger("kiosk")


class SessionRequest(BaseModel):
    token: Optional[str] = None
    channel_id: Optional[int] = None
    sales_id: Optional[int] = None


class ResultsRequest(BaseModel):
    photo_ids: List[str]


class SwipeRequest(BaseModel):
    dx: float
    dy: float = 0.0


class Kiosk:
    """Everything one kiosk screen needs, from camera to result gallery."""

    def __init__(self, client: BackendClient, session: FlowSession, controller: CameraController,
                 save_dir: str):
        self.client = client
        self.session = session
        self.capture = SelfieCapture(controller)
        self.dispatcher = SelfieDispatcher(client, session)
        self.save_dir = save_dir
        self.poller: Optional[GenerationPoller] = None
        self.viewer: Optional[ResultViewer] = None

    def camera_state(self) -> CameraStateResponse:
        ctrl = self.capture.controller
        return CameraStateResponse(
            state=ctrl.state.value,
            mode=self.capture.mode,
            front=ctrl.front,
            error=ctrl.error.message if ctrl.error else None,
            has_image=self.capture.image is not None,
        )

    async def start_generation(self, photo_ids: List[str], template_ids: List[str]):
        await self.stop_generation()
        self.poller = GenerationPoller(self.client, photo_ids, template_ids)
        self.poller.start()

    async def stop_generation(self):
        if self.poller is not None:
            await self.poller.close()
            self.poller = None

    async def shutdown(self):
        await self.stop_generation()
        await self.capture.leave()
        await self.dispatcher.aclose()
        await self.client.aclose()


def create_app(client: Optional[BackendClient] = None, device=None,
               store: Optional[KeyValueStore] = None, data_dir: Optional[str] = None) -> FastAPI:
    data = Path(data_dir or settings.DATA_DIR)
    saved_dir = data / "saved"
    saved_dir.mkdir(parents=True, exist_ok=True)

    store = store or KeyValueStore(str(data / "session.sqlite3"))
    kiosk = Kiosk(
        client=client or BackendClient(),
        session=FlowSession(store),
        controller=CameraController(device=device),
        save_dir=str(saved_dir),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            yield
        finally:
            await kiosk.shutdown()

    app = FastAPI(title="Travel Photo Kiosk", lifespan=lifespan)
    app.state.kiosk = kiosk
    app.mount("/static", StaticFiles(directory=str(data)), name="static")

    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        req_id = request.headers.get("x-request-id") or f"req_{uuid.uuid4().hex[:10]}"
        request.state.request_id = req_id
        resp = await call_next(request)
        resp.headers["x-request-id"] = req_id
        return resp

    @app.get("/health")
    async def health():
        return {"ok": True, "camera": kiosk.capture.controller.state.value,
                "authenticated": kiosk.session.is_authenticated}

    @app.post("/session")
    async def open_session(req: SessionRequest):
        kiosk.session.auth_token = req.token
        kiosk.client.token = req.token
        kiosk.session.bind_attribution(channel_id=req.channel_id, sales_id=req.sales_id)
        return {"authenticated": kiosk.session.is_authenticated,
                "channel_id": kiosk.session.channel_id, "sales_id": kiosk.session.sales_id}

    @app.delete("/session")
    async def end_session():
        await kiosk.stop_generation()
        kiosk.session.end()
        kiosk.session.auth_token = None
        kiosk.client.token = None
        return {"authenticated": False}

    # --------------------------
    # camera
    # --------------------------
    @app.get("/camera/state", response_model=CameraStateResponse)
    async def camera_state():
        return kiosk.camera_state()

    @app.post("/camera/start", response_model=CameraStateResponse)
    async def camera_start():
        await kiosk.capture.enter()
        return kiosk.camera_state()

    @app.post("/camera/retry", response_model=CameraStateResponse)
    async def camera_retry():
        await kiosk.capture.controller.retry()
        return kiosk.camera_state()

    @app.post("/camera/toggle", response_model=CameraStateResponse)
    async def camera_toggle():
        await kiosk.capture.toggle_facing()
        return kiosk.camera_state()

    @app.post("/camera/stop", response_model=CameraStateResponse)
    async def camera_stop():
        await kiosk.capture.leave()
        return kiosk.camera_state()

    @app.post("/camera/capture", response_model=CameraStateResponse)
    async def camera_capture(request: Request):
        try:
            await kiosk.capture.capture()
        except CameraNotReadyError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except CameraCaptureError as e:
            logger.warning("[%s] Capture failed: %s", request.state.request_id, e.error.detail)
            raise HTTPException(status_code=503, detail=e.error.message)
        logger.info("[%s] Selfie captured", request.state.request_id)
        return kiosk.camera_state()

    @app.post("/camera/pick", response_model=CameraStateResponse)
    async def camera_pick(request: Request, image: UploadFile = File(...)):
        req_id = getattr(request.state, "request_id", "req_unknown")
        raw = await image.read()
        try:
            await kiosk.capture.pick_file(raw)
        except ValueError as ve:
            logger.warning("[%s] Picked file rejected: %s", req_id, ve)
            raise HTTPException(status_code=415, detail=str(ve))
        logger.info("[%s] Selfie picked from file=%s", req_id, image.filename)
        return kiosk.camera_state()

    @app.post("/camera/retake", response_model=CameraStateResponse)
    async def camera_retake():
        await kiosk.capture.retake()
        return kiosk.camera_state()

    @app.get("/camera/preview")
    async def camera_preview():
        if kiosk.capture.image is None:
            raise HTTPException(status_code=404, detail="No captured image")
        return Response(content=kiosk.capture.image.preview_bytes(), media_type="image/jpeg")

    # --------------------------
    # upload + generation
    # --------------------------
    @app.post("/selfie/confirm", response_model=Navigation)
    async def confirm_selfie(req: ConfirmRequest, request: Request):
        req_id = getattr(request.state, "request_id", "req_unknown")
        try:
            nav = await kiosk.dispatcher.submit(kiosk.capture.image, req.template_ids)
        except DispatchError as e:
            logger.warning("[%s] Confirm failed at %s: %s", req_id, e.step, e.message)
            status = 400 if e.step == "capture" else 502
            raise HTTPException(status_code=status, detail=e.message)

        if nav.route in ("templates", "generating"):
            kiosk.capture.consume()
        if nav.route == "generating":
            await kiosk.start_generation(nav.photo_ids, nav.template_ids)
        logger.info("[%s] Confirm -> %s", req_id, nav.path())
        return nav

    @app.post("/generation", response_model=GenerationStateResponse)
    async def start_generation(req: GenerationStartRequest):
        if not req.photo_ids:
            raise HTTPException(status_code=400, detail="photo_ids must not be empty")
        await kiosk.start_generation(req.photo_ids, req.template_ids)
        return kiosk.poller.state()

    @app.get("/generation", response_model=GenerationStateResponse)
    async def generation_state():
        if kiosk.poller is None:
            raise HTTPException(status_code=404, detail="No generation in progress")
        return kiosk.poller.state()

    @app.delete("/generation")
    async def cancel_generation():
        await kiosk.stop_generation()
        return {"ok": True}

    # --------------------------
    # results
    # --------------------------
    def _viewer() -> ResultViewer:
        if kiosk.viewer is None:
            raise HTTPException(status_code=404, detail="No results loaded")
        return kiosk.viewer

    @app.post("/results", response_model=ResultViewResponse)
    async def load_results(req: ResultsRequest):
        share_path = Navigation(route="result", photo_ids=req.photo_ids).path()
        viewer = ResultViewer(kiosk.client, save_dir=kiosk.save_dir,
                              share_url=settings.PUBLIC_BASE_URL.rstrip("/") + share_path)
        await viewer.load(req.photo_ids)
        kiosk.viewer = viewer
        return viewer.view()

    @app.get("/results", response_model=ResultViewResponse)
    async def view_results():
        return _viewer().view()

    @app.post("/results/next", response_model=ResultViewResponse)
    async def next_result():
        viewer = _viewer()
        viewer.next()
        return viewer.view()

    @app.post("/results/previous", response_model=ResultViewResponse)
    async def previous_result():
        viewer = _viewer()
        viewer.previous()
        return viewer.view()

    @app.post("/results/swipe", response_model=ResultViewResponse)
    async def swipe_results(req: SwipeRequest):
        viewer = _viewer()
        viewer.swipe(req.dx, req.dy)
        return viewer.view()

    @app.post("/results/save", response_model=NoticeResponse)
    async def save_result():
        notice = await _viewer().save()
        if notice is None:
            raise HTTPException(status_code=409, detail="Photo not ready")
        return NoticeResponse(ok=notice.ok, message=notice.message)

    return app


setup_logging(settings.LOG_LEVEL)
app = create_app()
