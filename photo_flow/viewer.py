import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

from photo_flow.api_client import BackendClient
from photo_flow.schemas import PhotoJob, ResultViewResponse

log = logging.getLogger("viewer")

SWIPE_THRESHOLD_PX = 50
MIN_SCALE = 1.0
MAX_SCALE = 3.0
WHEEL_STEP = 0.1

SHARE_TITLE = "我的 AI 旅拍照片"
SHARE_TEXT = "看看我用 AI 生成的旅拍照片！"


class ShareCancelled(Exception):
    """The user dismissed the native share sheet."""


@dataclass
class Notice:
    ok: bool
    message: str


class ResultViewer:
    """Swipeable gallery of finished photos with zoom, save and share.

    `sharer` is the platform share sheet (`await sharer.share(title, text, url)`),
    `clipboard` a fallback with `copy(text)`. Either may be None.
    """

    def __init__(self, client: BackendClient, share_url: str = "",
                 sharer=None, clipboard=None, save_dir: Optional[str] = None):
        self.client = client
        self.share_url = share_url
        self.sharer = sharer
        self.clipboard = clipboard
        self.save_dir = Path(save_dir) if save_dir else Path(".")

        self.photos: List[PhotoJob] = []
        self.loaded = False
        self.index = 0
        self.fullscreen = False
        self.scale = MIN_SCALE
        self.saving = False
        self.sharing = False

    async def load(self, photo_ids: Sequence[str]):
        ids = [p for p in photo_ids if p]
        if ids:
            try:
                self.photos = await self.client.get_by_ids(ids)
            except Exception as e:
                log.error("Failed to load photos %s: %s", ids, e)
                self.photos = []
        self.index = 0
        self.loaded = True

    @property
    def current(self) -> Optional[PhotoJob]:
        if not self.photos:
            return None
        return self.photos[self.index]

    @property
    def state(self) -> str:
        if not self.loaded:
            return "loading"
        if not self.photos:
            return "failed"
        if not self.current.result_url:
            return "pending"
        return "ready"

    @property
    def show_swipe(self) -> bool:
        return len(self.photos) > 1

    def view(self) -> ResultViewResponse:
        state = self.state
        if state == "loading":
            return ResultViewResponse(state=state)
        if state == "failed":
            return ResultViewResponse(state=state, message="照片加载失败")
        if state == "pending":
            return ResultViewResponse(state=state, message="照片加载中...", index=self.index)
        prev_url, next_url = self.neighbours()
        return ResultViewResponse(
            state=state,
            index=self.index,
            prev_url=prev_url,
            next_url=next_url,
            counter=f"{self.index + 1} / {len(self.photos)}" if self.show_swipe else None,
            image_url=self.current.result_url,
            show_swipe=self.show_swipe,
            share_url=self.share_url or None,
        )

    def neighbours(self):
        """Result URLs of the previous and next photo, None where missing."""
        if len(self.photos) < 2:
            return None, None
        n = len(self.photos)
        return self.photos[(self.index - 1) % n].result_url, self.photos[(self.index + 1) % n].result_url

    # --------------------------
    # navigation
    # --------------------------
    def next(self):
        if self.photos:
            self.index = (self.index + 1) % len(self.photos)

    def previous(self):
        if self.photos:
            self.index = (self.index - 1) % len(self.photos)

    def swipe(self, dx: float, dy: float) -> bool:
        """dx/dy are start minus end; a left swipe (dx > 0) shows the next photo."""
        if self.fullscreen:
            return False
        if abs(dx) <= abs(dy) or abs(dx) <= SWIPE_THRESHOLD_PX:
            return False
        if dx > 0:
            self.next()
        else:
            self.previous()
        return True

    def enter_fullscreen(self):
        self.fullscreen = True
        self.scale = MIN_SCALE

    def exit_fullscreen(self):
        self.fullscreen = False
        self.scale = MIN_SCALE

    def wheel(self, delta_y: float) -> float:
        if not self.fullscreen:
            return self.scale
        delta = -WHEEL_STEP if delta_y > 0 else WHEEL_STEP
        self.scale = round(max(MIN_SCALE, min(MAX_SCALE, self.scale + delta)), 2)
        return self.scale

    # --------------------------
    # side effects
    # --------------------------
    async def save(self) -> Optional[Notice]:
        photo = self.current
        if photo is None or not photo.result_url:
            return None

        self.saving = True
        try:
            data = await self.client.download(photo.result_url)
            out_path = self.save_dir / f"ai-photo-{photo.photo_id}.jpg"
            await asyncio.to_thread(self._write, out_path, data)
            log.info("Saved photo %s to %s", photo.photo_id, out_path)
            return Notice(ok=True, message="照片已保存")
        except Exception as e:
            log.warning("Save failed for %s: %s", photo.photo_id, e)
            return Notice(ok=False, message="保存失败，请重试")
        finally:
            self.saving = False

    @staticmethod
    def _write(path: Path, data: bytes):
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    async def share(self) -> Optional[Notice]:
        photo = self.current
        if photo is None or not photo.result_url:
            return None

        self.sharing = True
        try:
            if self.sharer is not None:
                await self.sharer.share(title=SHARE_TITLE, text=SHARE_TEXT, url=self.share_url)
                return Notice(ok=True, message="分享成功")
            if self.clipboard is not None:
                self.clipboard.copy(self.share_url)
                return Notice(ok=True, message="链接已复制")
            return Notice(ok=False, message="当前环境不支持分享")
        except ShareCancelled:
            log.debug("Share cancelled by user")
            return None
        except Exception as e:
            log.warning("Share failed: %s", e)
            return Notice(ok=False, message="分享失败，请重试")
        finally:
            self.sharing = False
