"""
Session State — process-wide view of the delivery client's lifecycle.

Initialized at startup (not ready), transitioned only by channel lifecycle
events, read by the scheduler's precondition gate and the health endpoint.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from models.schemas import AuthFailureEvent, ChannelEvent, QrChallengeEvent, ReadyEvent

logger = structlog.get_logger()


@dataclass
class _State:
    ready: bool = False
    qr_payload: Optional[str] = None
    auth_failure: Optional[str] = None
    changed_at: Optional[datetime] = None


class SessionState:

    def __init__(self):
        self._state = _State()

    @property
    def is_ready(self) -> bool:
        return self._state.ready

    @property
    def qr_payload(self) -> Optional[str]:
        return self._state.qr_payload

    @property
    def auth_failure(self) -> Optional[str]:
        return self._state.auth_failure

    def apply(self, event: ChannelEvent) -> bool:
        """Apply a lifecycle event. Returns False for events that are not lifecycle events."""
        now = datetime.now(timezone.utc)
        if isinstance(event, ReadyEvent):
            self._state = _State(ready=True, changed_at=now)
            logger.info("session_ready")
        elif isinstance(event, AuthFailureEvent):
            self._state = _State(ready=False, auth_failure=event.reason or "unknown", changed_at=now)
            logger.error("session_auth_failure", reason=event.reason)
        elif isinstance(event, QrChallengeEvent):
            self._state = _State(ready=False, qr_payload=event.payload, changed_at=now)
            logger.info("session_qr_challenge",
                        hint="scan with the mobile app (Linked Devices -> Link a device)")
        else:
            return False
        return True

    def reset(self) -> None:
        self._state = _State()

    def to_dict(self) -> dict:
        s = self._state
        return {
            "ready": s.ready,
            "auth_failure": s.auth_failure,
            "has_qr_challenge": s.qr_payload is not None,
            "changed_at": s.changed_at.isoformat() if s.changed_at else None,
        }


_session: Optional[SessionState] = None


def get_session_state() -> SessionState:
    """Return the process-wide session state, creating it on first use."""
    global _session
    if _session is None:
        _session = SessionState()
    return _session


def reset_session_state() -> None:
    """Reset the singleton (for testing)."""
    global _session
    _session = None
