"""Explicit per-user context for the capture and generation flow."""

from __future__ import annotations

import logging
from typing import Optional

from photo_flow.schemas import FaceAnalysisResult
from photo_flow.storage import KeyValueStore

log = logging.getLogger("session")

LOCAL = "local"
SESSION = "session"


def _parse_id(raw: Optional[str]) -> Optional[int]:
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        log.warning("Ignoring malformed attribution id %r", raw)
        return None


class FlowSession:
    """Auth token, referral attribution and hand-off flags for one user.

    Attribution ids (`boundChannelId`, `boundSalesId`) are kept in the
    `local` scope so a referral survives restarts; hand-off values between
    screens live in the `session` scope.
    """

    def __init__(self, store: KeyValueStore, auth_token: Optional[str] = None):
        self.store = store
        self.auth_token = auth_token
        self.face_analysis: Optional[FaceAnalysisResult] = None

    @property
    def is_authenticated(self) -> bool:
        return bool(self.auth_token)

    def bind_attribution(self, channel_id: Optional[int] = None, sales_id: Optional[int] = None):
        """Persist the referral that brought the user in."""
        if channel_id is not None:
            self.store.set(LOCAL, "boundChannelId", str(channel_id))
        if sales_id is not None:
            self.store.set(LOCAL, "boundSalesId", str(sales_id))

    @property
    def channel_id(self) -> Optional[int]:
        return _parse_id(self.store.get(LOCAL, "boundChannelId"))

    @property
    def sales_id(self) -> Optional[int]:
        return _parse_id(self.store.get(LOCAL, "boundSalesId"))

    @property
    def selfie_url(self) -> Optional[str]:
        return self.store.get(SESSION, "selfieUrl")

    @property
    def pending_face_analysis(self) -> bool:
        return self.store.get(SESSION, "pendingFaceAnalysis") == "true"

    def hand_off_selfie(self, selfie_url: str):
        """Remember the selfie for the template selection screen."""
        self.store.set(SESSION, "pendingFaceAnalysis", "true")
        self.store.set(SESSION, "selfieUrl", selfie_url)

    def record_face_analysis(self, result: FaceAnalysisResult):
        self.face_analysis = result
        self.store.remove(SESSION, "pendingFaceAnalysis")

    def end(self):
        self.face_analysis = None
        self.store.clear_scope(SESSION)
