from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

JobStatus = Literal["pending", "processing", "completed", "failed"]
TERMINAL_STATUSES = ("completed", "failed")

FACE_TYPE_CODES = {"宽脸": "wide", "窄脸": "narrow"}


class WireModel(BaseModel):
    # backend speaks camelCase
    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)


class UploadResult(WireModel):
    url: str


class FaceAnalysisResult(WireModel):
    success: bool = True
    face_type: Optional[str] = Field(default=None, alias="faceType")
    gender: Optional[str] = None
    user_type: Optional[str] = Field(default=None, alias="userType")

    @property
    def face_type_code(self) -> Optional[str]:
        """`wide` / `narrow` for the two known labels, else None."""
        return FACE_TYPE_CODES.get(self.face_type or "")


class CreateJobResponse(WireModel):
    photo_id: str = Field(alias="photoId")


class QuickGenerateResponse(WireModel):
    photo_ids: List[str] = Field(alias="photoIds")


class PhotoJob(WireModel):
    photo_id: str = Field(alias="photoId")
    status: JobStatus
    result_url: Optional[str] = Field(default=None, alias="resultUrl")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class JobProgress(WireModel):
    total_photos: int = Field(alias="totalPhotos")
    completed_photos: int = Field(alias="completedPhotos")

    @property
    def all_done(self) -> bool:
        return self.total_photos > 0 and self.completed_photos >= self.total_photos


class Template(WireModel):
    id: str
    name: Optional[str] = None
    image_url: Optional[str] = Field(default=None, alias="imageUrl")


class PhotoDetail(PhotoJob):
    template: Optional[Template] = None


class Navigation(BaseModel):
    route: Literal["login", "templates", "generating", "result"]
    photo_ids: List[str] = []
    template_ids: List[str] = []
    selfie_url: Optional[str] = None
    url: Optional[str] = None
    error: bool = False

    def path(self) -> str:
        """Client-side location for this navigation."""
        if self.route == "login":
            return self.url or "/login"
        if self.route == "templates":
            return f"/templates?selfie={self.selfie_url or ''}"
        if self.route == "generating":
            if len(self.photo_ids) == 1 and not self.template_ids:
                return f"/generating/{self.photo_ids[0]}"
            query: Dict[str, str] = {"photoIds": ",".join(self.photo_ids)}
            if self.template_ids:
                query["templateIds"] = ",".join(self.template_ids)
            return "/generating?" + "&".join(f"{k}={v}" for k, v in query.items())
        if len(self.photo_ids) == 1:
            suffix = "?error=true" if self.error else ""
            return f"/result/{self.photo_ids[0]}{suffix}"
        return f"/result?photoIds={','.join(self.photo_ids)}"


# kiosk API

class CameraStateResponse(BaseModel):
    state: Literal["idle", "initializing", "ready", "error", "stopped"]
    mode: Literal["capture", "preview"]
    front: bool
    error: Optional[str] = None
    has_image: bool = False


class ConfirmRequest(BaseModel):
    template_ids: List[str] = []


class GenerationStartRequest(BaseModel):
    photo_ids: List[str]
    template_ids: List[str] = []


class GenerationStateResponse(BaseModel):
    remaining_seconds: int
    progress_text: str
    message: str
    background_url: Optional[str] = None
    navigation: Optional[Navigation] = None


class ResultViewResponse(BaseModel):
    state: Literal["loading", "failed", "pending", "ready"]
    message: Optional[str] = None
    index: int = 0
    counter: Optional[str] = None
    image_url: Optional[str] = None
    prev_url: Optional[str] = None
    next_url: Optional[str] = None
    show_swipe: bool = False
    share_url: Optional[str] = None


class NoticeResponse(BaseModel):
    ok: bool
    message: str
