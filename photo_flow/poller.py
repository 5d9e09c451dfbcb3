"""Generation screen: wait for face-swap jobs and decide where to go next.

Two signals race to end the screen. In single mode the job status poll is
authoritative. In multi mode a synthetic countdown of `10 s x photos` ends
the screen even if the jobs are still running, unless the aggregate
progress poll sees every job completed first. Both feed one
`CompletionGate`, so navigation happens exactly once.
"""

from __future__ import annotations

import asyncio
import logging
import math
import random
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

from photo_flow.api_client import BackendClient, BackendError
from photo_flow.config import settings
from photo_flow.schemas import GenerationStateResponse, JobProgress, Navigation, Template

log = logging.getLogger("poller")

AI_MESSAGES = [
    "小姐姐的照片已在生成了，稍等片刻就好了。",
    "正在分析您的面部特征，让照片更加自然...",
    "AI 正在精心绘制您的专属照片...",
    "正在优化细节，让照片更加完美...",
    "即将完成，请稍候片刻...",
]


@dataclass
class GenerationSession:
    photo_ids: List[str]
    start_time: float
    total_duration: float

    @classmethod
    def begin(cls, photo_ids: Sequence[str], seconds_per_photo: float, now: float) -> "GenerationSession":
        ids = list(photo_ids)
        count = len(ids) if len(ids) > 1 else 1
        return cls(photo_ids=ids, start_time=now, total_duration=count * seconds_per_photo)

    @property
    def is_multi(self) -> bool:
        return len(self.photo_ids) > 1

    def remaining(self, now: float) -> float:
        return max(0.0, self.total_duration - (now - self.start_time))

    def remaining_seconds(self, now: float) -> int:
        return math.ceil(self.remaining(now))


class CompletionGate:
    """One-shot: the first `fire` wins, later ones are ignored."""

    def __init__(self):
        self._future: asyncio.Future = asyncio.get_running_loop().create_future()

    @property
    def fired(self) -> bool:
        return self._future.done()

    def fire(self, navigation: Navigation) -> bool:
        if self._future.done():
            return False
        self._future.set_result(navigation)
        return True

    async def wait(self) -> Navigation:
        return await asyncio.shield(self._future)


def carousel_images(templates: Sequence[Template], selected_ids: Sequence[str],
                    fallback_url: Optional[str] = None) -> List[str]:
    """Selected templates first, then the job's own template, then everything."""
    selected = {str(t) for t in selected_ids}
    images = [t.image_url for t in templates if t.id in selected and t.image_url]
    if not images and fallback_url:
        images = [fallback_url]
    if not images:
        images = [t.image_url for t in templates if t.image_url]
    return images


class TemplateCarousel:
    def __init__(self, images: Sequence[str], rng: Optional[random.Random] = None):
        self.images = list(images)
        self.rng = rng or random.Random()
        self.index = self.rng.randrange(len(self.images)) if self.images else 0

    @property
    def current(self) -> Optional[str]:
        return self.images[self.index] if self.images else None

    def advance(self) -> Optional[str]:
        if len(self.images) <= 1:
            return self.current
        new_index = self.rng.randrange(len(self.images))
        while new_index == self.index:
            new_index = self.rng.randrange(len(self.images))
        self.index = new_index
        return self.current


class GenerationPoller:
    def __init__(
        self,
        client: BackendClient,
        photo_ids: Sequence[str],
        template_ids: Sequence[str] = (),
        on_navigate: Optional[Callable[[Navigation], None]] = None,
        fallback_image_url: Optional[str] = None,
        poll_interval: Optional[float] = None,
        seconds_per_photo: Optional[float] = None,
        tick: Optional[float] = None,
        carousel_interval: Optional[float] = None,
        message_interval: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ):
        if not photo_ids:
            raise ValueError("photo_ids must not be empty")
        self.client = client
        self.template_ids = [str(t) for t in template_ids]
        self.on_navigate = on_navigate
        self.fallback_image_url = fallback_image_url
        self.poll_interval = poll_interval or settings.POLL_INTERVAL_SECONDS
        self.tick = tick or settings.COUNTDOWN_TICK_SECONDS
        self.carousel_interval = carousel_interval or settings.CAROUSEL_INTERVAL_SECONDS
        self.message_interval = message_interval or settings.MESSAGE_INTERVAL_SECONDS
        self.clock = clock
        self.rng = rng or random.Random()

        self.session = GenerationSession.begin(
            photo_ids, seconds_per_photo or settings.COUNTDOWN_SECONDS_PER_PHOTO, clock())
        self.remaining_seconds = self.session.remaining_seconds(self.session.start_time)
        self.progress: Optional[JobProgress] = None
        self.carousel = TemplateCarousel([], self.rng)
        self.message_index = 0
        self.navigation: Optional[Navigation] = None
        self.status_requests = 0

        self._gate: Optional[CompletionGate] = None
        self._tasks: List[asyncio.Task] = []
        self._closed = False

    @property
    def photo_ids(self) -> List[str]:
        return self.session.photo_ids

    @property
    def is_multi(self) -> bool:
        return self.session.is_multi

    @property
    def progress_text(self) -> str:
        if not self.is_multi:
            return "正在生成中..."
        current = 0
        if self.progress is not None:
            current = max(0, min(self.progress.completed_photos, self.progress.total_photos - 1))
        return f"正在生成第 {current + 1}/{len(self.photo_ids)} 张..."

    @property
    def message(self) -> str:
        return AI_MESSAGES[self.message_index]

    def state(self) -> GenerationStateResponse:
        return GenerationStateResponse(
            remaining_seconds=self.remaining_seconds,
            progress_text=self.progress_text,
            message=self.message,
            background_url=self.carousel.current,
            navigation=self.navigation,
        )

    # --------------------------
    # lifecycle
    # --------------------------
    def start(self):
        if self._tasks or self._closed:
            return
        self._gate = CompletionGate()
        if self.is_multi:
            self._spawn(self._poll_progress(), "progress")
        else:
            self._spawn(self._poll_status(), "status")
        self._spawn(self._countdown(), "countdown")
        self._spawn(self._rotate_carousel(), "carousel")
        self._spawn(self._rotate_messages(), "messages")
        log.info("Generation started photos=%s duration=%.1fs",
                 self.photo_ids, self.session.total_duration)

    def _spawn(self, coro, name: str):
        self._tasks.append(asyncio.create_task(coro, name=f"generation-{name}"))

    async def run(self) -> Navigation:
        """Start if needed and wait for the first completion signal."""
        self.start()
        try:
            return await self._gate.wait()
        finally:
            await self.close()

    async def close(self):
        """Cancel every timer; nothing navigates after this."""
        self._closed = True
        current = asyncio.current_task()
        tasks = [t for t in self._tasks if t is not current]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _finish(self, navigation: Navigation, reason: str):
        if self._closed or self._gate is None or not self._gate.fire(navigation):
            return
        self.navigation = navigation
        log.info("Generation finished by %s -> %s", reason, navigation.path())
        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current:
                task.cancel()
        if self.on_navigate is not None:
            self.on_navigate(navigation)

    def _aggregate_result(self) -> Navigation:
        return Navigation(route="result", photo_ids=self.photo_ids)

    # --------------------------
    # tasks
    # --------------------------
    async def _poll_status(self):
        photo_id = self.photo_ids[0]
        job_log = logging.getLogger(f"job.{photo_id}")
        while True:
            await asyncio.sleep(self.poll_interval)
            self.status_requests += 1
            try:
                job = await self.client.get_status(photo_id)
            except BackendError as e:
                job_log.warning("Status poll failed: %s", e)
                continue
            if job.status == "completed":
                self._finish(Navigation(route="result", photo_ids=[photo_id]), "status")
                return
            if job.status == "failed":
                job_log.warning("Job failed on server")
                self._finish(Navigation(route="result", photo_ids=[photo_id], error=True), "status")
                return

    async def _poll_progress(self):
        while True:
            self.status_requests += 1
            try:
                self.progress = await self.client.get_progress(self.photo_ids)
            except BackendError as e:
                log.warning("Progress poll failed: %s", e)
            else:
                if self.progress.all_done:
                    self._finish(self._aggregate_result(), "progress")
                    return
            await asyncio.sleep(self.poll_interval)

    async def _countdown(self):
        while True:
            remaining = self.session.remaining_seconds(self.clock())
            # never tick upwards, even if the clock does
            self.remaining_seconds = min(self.remaining_seconds, remaining)
            if self.remaining_seconds <= 0:
                if self.is_multi:
                    self._finish(self._aggregate_result(), "countdown")
                return
            await asyncio.sleep(self.tick)

    async def _rotate_carousel(self):
        try:
            templates = await self.client.list_templates()
        except BackendError as e:
            log.warning("Template list failed, no background: %s", e)
            return
        fallback = self.fallback_image_url
        if fallback is None and not self.is_multi:
            fallback = await self._job_template_image()
        images = carousel_images(templates, self.template_ids, fallback)
        self.carousel = TemplateCarousel(images, self.rng)
        if len(images) <= 1:
            return
        while True:
            await asyncio.sleep(self.carousel_interval)
            self.carousel.advance()

    async def _rotate_messages(self):
        while True:
            await asyncio.sleep(self.message_interval)
            self.message_index = (self.message_index + 1) % len(AI_MESSAGES)

    async def _job_template_image(self) -> Optional[str]:
        photo_id = self.photo_ids[0]
        try:
            detail = await self.client.get_detail(photo_id)
        except BackendError as e:
            logging.getLogger(f"job.{photo_id}").warning("Job detail failed: %s", e)
            return None
        return detail.template.image_url if detail.template else None
