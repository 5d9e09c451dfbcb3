import asyncio
import logging
from typing import List, Optional, Sequence

from photo_flow.api_client import BackendClient, BackendError
from photo_flow.camera import CapturedImage
from photo_flow.config import settings
from photo_flow.schemas import FaceAnalysisResult, Navigation
from photo_flow.session import FlowSession

log = logging.getLogger("dispatcher")

UPLOAD_FAILED_MESSAGE = "上传失败，请重试"


class DispatchError(RuntimeError):
    """User-visible failure of the upload or job creation step."""

    def __init__(self, message: str, step: str):
        super().__init__(message)
        self.message = message
        self.step = step


class UploadError(DispatchError):
    def __init__(self, message: str = UPLOAD_FAILED_MESSAGE):
        super().__init__(message, step="upload")


class SelfieDispatcher:
    """Uploads a selfie, classifies it on the side and starts generation."""

    def __init__(self, client: BackendClient, session: FlowSession,
                 analysis_timeout: Optional[float] = None, login_url: Optional[str] = None):
        self.client = client
        self.session = session
        self.analysis_timeout = settings.ANALYSIS_TIMEOUT_SECONDS if analysis_timeout is None else analysis_timeout
        self.login_url = login_url or settings.LOGIN_URL
        self.analysis_task: Optional[asyncio.Task] = None

    async def _analyze(self, selfie_url: str) -> Optional[FaceAnalysisResult]:
        try:
            result = await self.client.analyze_user(selfie_url)
        except Exception as e:
            log.warning("Face analysis failed: %s", e)
            return None
        if not result.success:
            log.info("Face analysis returned no classification")
            return None
        log.info("Face analysis result face_type=%s gender=%s user_type=%s",
                 result.face_type, result.gender, result.user_type)
        return result

    async def _analyze_and_record(self, selfie_url: str) -> Optional[FaceAnalysisResult]:
        result = await self._analyze(selfie_url)
        if result is not None:
            self.session.record_face_analysis(result)
        return result

    async def best_effort_analysis(self, selfie_url: str) -> Optional[FaceAnalysisResult]:
        """First successful classification among the fired analysis and a second
        call, bounded by the analysis timeout. Never raises."""
        racer = asyncio.ensure_future(self._analyze(selfie_url))
        pending = {racer}
        if self.analysis_task is not None:
            pending.add(self.analysis_task)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.analysis_timeout
        result: Optional[FaceAnalysisResult] = None
        try:
            while pending and result is None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                done, pending = await asyncio.wait(pending, timeout=remaining,
                                                   return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    if not task.cancelled() and task.result() is not None:
                        result = task.result()
                        break
        finally:
            # the fired analysis keeps running so it can still land on the session
            if not racer.done():
                racer.cancel()
                await asyncio.gather(racer, return_exceptions=True)

        if result is None:
            log.info("Face analysis timeout or error, proceeding without face type")
        return result

    async def submit(self, image: Optional[CapturedImage], template_ids: Sequence[str] = ()) -> Navigation:
        if not self.session.is_authenticated:
            log.info("Submit without login; redirecting")
            return Navigation(route="login", url=self.login_url)
        if image is None:
            raise DispatchError("请先拍照", step="capture")

        try:
            selfie_url = await self.client.upload_selfie(image.data, image.mime_type)
        except BackendError as e:
            log.error("Upload failed: %s", e)
            raise UploadError(str(e) or UPLOAD_FAILED_MESSAGE) from e
        log.info("Selfie uploaded url=%s", selfie_url)

        await self._cancel_analysis()
        self.analysis_task = asyncio.ensure_future(self._analyze_and_record(selfie_url))

        template_ids = [str(t) for t in template_ids if t]
        if not template_ids:
            self.session.hand_off_selfie(selfie_url)
            return Navigation(route="templates", selfie_url=selfie_url)

        analysis = await self.best_effort_analysis(selfie_url)
        face_type = analysis.face_type if analysis is not None else None

        try:
            photo_ids = await self._create_jobs(selfie_url, template_ids, face_type)
        except BackendError as e:
            log.error("Job creation failed: %s", e)
            raise DispatchError(str(e) or "创建任务失败，请重试", step="create") from e

        if len(template_ids) == 1:
            return Navigation(route="generating", photo_ids=photo_ids)
        return Navigation(route="generating", photo_ids=photo_ids, template_ids=template_ids)

    async def _create_jobs(self, selfie_url: str, template_ids: List[str],
                           face_type: Optional[str]) -> List[str]:
        if len(template_ids) == 1:
            photo_id = await self.client.create_single(
                selfie_url=selfie_url,
                template_id=template_ids[0],
                channel_id=self.session.channel_id,
                sales_id=self.session.sales_id,
                detected_face_type=face_type,
            )
            logging.getLogger(f"job.{photo_id}").info("Job created template=%s face_type=%s",
                                                     template_ids[0], face_type)
            return [photo_id]

        # the backend generates from the selfie it just stored for this user
        photo_ids = await self.client.quick_generate_init(template_ids)
        log.info("Quick generate started photos=%s", photo_ids)
        return photo_ids

    async def _cancel_analysis(self):
        task, self.analysis_task = self.analysis_task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def aclose(self):
        await self._cancel_analysis()
