import logging
from typing import Any, Dict, List, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from photo_flow.config import settings
from photo_flow.schemas import (
    CreateJobResponse,
    FaceAnalysisResult,
    JobProgress,
    PhotoDetail,
    PhotoJob,
    QuickGenerateResponse,
    Template,
    UploadResult,
)
from photo_flow.utils import encode_base64

log = logging.getLogger("backend")

M = TypeVar("M", bound=BaseModel)


class BackendError(RuntimeError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def _error_message(resp: httpx.Response) -> str:
    """
    Backend errors usually look like:
    { "error": { "message": "...", "code": ... } }
    """
    try:
        data = resp.json()
    except ValueError:
        return resp.text[:300] or f"HTTP {resp.status_code}"
    err = data.get("error") if isinstance(data, dict) else None
    if isinstance(err, dict) and err.get("message"):
        return err["message"]
    if isinstance(err, str):
        return err
    return f"HTTP {resp.status_code}"


class BackendClient:
    """Async RPC client for the photo backend."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.token = token
        self._client = httpx.AsyncClient(
            base_url=(base_url or settings.BACKEND_URL).rstrip("/"),
            timeout=timeout or settings.BACKEND_TIMEOUT_SECONDS,
            transport=transport,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()

    async def aclose(self):
        await self._client.aclose()

    def _headers(self) -> Dict[str, str]:
        if self.token:
            return {"Authorization": f"Bearer {self.token}"}
        return {}

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            r = await self._client.request(method, path, headers=self._headers(), **kwargs)
        except httpx.HTTPError as e:
            log.warning("%s %s failed before response: %s", method, path, e)
            raise BackendError(f"Network error: {e}") from e

        if r.status_code >= 400:
            msg = _error_message(r)
            log.warning("%s %s -> %s %s", method, path, r.status_code, msg)
            raise BackendError(msg, status_code=r.status_code)
        try:
            return r.json()
        except ValueError as e:
            log.warning("%s %s -> %s with a non-JSON body: %s", method, path, r.status_code, r.text[:200])
            raise BackendError("Malformed backend response", status_code=r.status_code) from e

    @staticmethod
    def _parse(model: Type[M], data: Any) -> M:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            log.warning("Unexpected %s payload: %s", model.__name__, e)
            raise BackendError(f"Unexpected {model.__name__} response") from e

    def _parse_list(self, model: Type[M], data: Any) -> List[M]:
        if not isinstance(data, list):
            log.warning("Expected a list of %s, got %s", model.__name__, type(data).__name__)
            raise BackendError(f"Unexpected {model.__name__} response")
        return [self._parse(model, item) for item in data]

    async def upload_selfie(self, image: bytes, mime_type: str = "image/jpeg") -> str:
        base64_data = encode_base64(image)
        data = await self._request(
            "POST", "/api/photo/uploadSelfie",
            json={"imageBase64": base64_data, "mimeType": mime_type},
        )
        return self._parse(UploadResult, data).url

    async def analyze_user(self, selfie_url: str) -> FaceAnalysisResult:
        data = await self._request("POST", "/api/photo/analyzeUser", json={"selfieUrl": selfie_url})
        return self._parse(FaceAnalysisResult, data)

    async def create_single(
        self,
        selfie_url: str,
        template_id: str,
        channel_id: Optional[int] = None,
        sales_id: Optional[int] = None,
        detected_face_type: Optional[str] = None,
    ) -> str:
        payload: Dict[str, Any] = {"selfieUrl": selfie_url, "templateId": template_id}
        if channel_id is not None:
            payload["channelId"] = channel_id
        if sales_id is not None:
            payload["salesId"] = sales_id
        if detected_face_type:
            payload["detectedFaceType"] = detected_face_type
        data = await self._request("POST", "/api/photo/createSingle", json=payload)
        return self._parse(CreateJobResponse, data).photo_id

    async def quick_generate_init(self, template_ids: List[str]) -> List[str]:
        data = await self._request("POST", "/api/quickGenerate/init", json={"templateIds": template_ids})
        return self._parse(QuickGenerateResponse, data).photo_ids

    async def get_status(self, photo_id: str) -> PhotoJob:
        data = await self._request("GET", "/api/photo/getStatus", params={"photoId": photo_id})
        return self._parse(PhotoJob, data)

    async def get_detail(self, photo_id: str) -> PhotoDetail:
        data = await self._request("GET", "/api/photo/getDetail", params={"photoId": photo_id})
        return self._parse(PhotoDetail, data)

    async def get_by_ids(self, photo_ids: List[str]) -> List[PhotoJob]:
        data = await self._request("POST", "/api/photo/getByIds", json={"photoIds": photo_ids})
        return self._parse_list(PhotoJob, data)

    async def get_progress(self, photo_ids: List[str]) -> JobProgress:
        data = await self._request("POST", "/api/quickGenerate/progress", json={"photoIds": photo_ids})
        return self._parse(JobProgress, data)

    async def list_templates(self, **filters) -> List[Template]:
        params = {k: v for k, v in filters.items() if v is not None}
        data = await self._request("GET", "/api/template/list", params=params)
        return self._parse_list(Template, data)

    async def download(self, url: str) -> bytes:
        try:
            r = await self._client.get(url)
        except httpx.HTTPError as e:
            raise BackendError(f"Network error: {e}") from e
        if r.status_code >= 400:
            raise BackendError(f"Download failed: HTTP {r.status_code}", status_code=r.status_code)
        return r.content
