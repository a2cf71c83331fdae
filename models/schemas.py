"""
Core data models for the quotecast broadcaster.
These are the universal types shared across all modules.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from utils.identity import canonical_identity


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class Intent(str, Enum):
    UNSUBSCRIBE = "unsubscribe"
    RESUBSCRIBE = "resubscribe"
    IGNORE = "ignore"


# ──────────────────────────────────────────────────────────────
#  Content — one quote + image sent per scheduled run
# ──────────────────────────────────────────────────────────────

class ContentItem(BaseModel):
    """A catalog entry. Accepts the legacy ``image`` key as an alias of ``imageRef``."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    text: str
    image_ref: str = Field(
        validation_alias=AliasChoices("imageRef", "image_ref", "image"),
        serialization_alias="imageRef",
    )


# ──────────────────────────────────────────────────────────────
#  Subscriber — a recipient on the daily list
# ──────────────────────────────────────────────────────────────

class Subscriber(BaseModel):
    """A recipient. Accepts legacy ``{name, phone}`` records."""
    model_config = ConfigDict(populate_by_name=True)

    display_name: str = Field(
        default="",
        validation_alias=AliasChoices("displayName", "display_name", "name"),
        serialization_alias="displayName",
    )
    identity: str = Field(validation_alias=AliasChoices("identity", "phone"))

    @property
    def canonical(self) -> str:
        return canonical_identity(self.identity)

    def to_record(self) -> dict[str, str]:
        return self.model_dump(by_alias=True)


# ──────────────────────────────────────────────────────────────
#  Dispatch run — ephemeral per-tick result
# ──────────────────────────────────────────────────────────────

class SendOutcome(BaseModel):
    identity: str
    status: OutcomeStatus
    reason: str = ""
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.status == OutcomeStatus.SUCCESS


class DispatchRun(BaseModel):
    """Outcome of sending one content item to a recipient snapshot. Never persisted."""
    selected_content_index: Optional[int] = None
    outcomes: dict[str, SendOutcome] = {}     # canonical identity -> outcome
    started_at: datetime = Field(default_factory=_utcnow)
    finished_at: Optional[datetime] = None

    @property
    def succeeded(self) -> list[str]:
        return [k for k, o in self.outcomes.items() if o.ok]

    @property
    def failed(self) -> list[str]:
        return [k for k, o in self.outcomes.items() if not o.ok]

    def summary(self) -> dict[str, int]:
        return {
            "recipients": len(self.outcomes),
            "sent": len(self.succeeded),
            "failed": len(self.failed),
        }


# ──────────────────────────────────────────────────────────────
#  Channel events — single tagged stream from the delivery client
# ──────────────────────────────────────────────────────────────

class ReadyEvent(BaseModel):
    kind: Literal["ready"] = "ready"


class AuthFailureEvent(BaseModel):
    kind: Literal["auth_failure"] = "auth_failure"
    reason: str = ""


class QrChallengeEvent(BaseModel):
    kind: Literal["qr_challenge"] = "qr_challenge"
    payload: str


class InboundMessageEvent(BaseModel):
    kind: Literal["inbound_message"] = "inbound_message"
    sender_identity: str
    text: str = ""
    sender_name: str = ""
    message_id: str = ""
    received_at: datetime = Field(default_factory=_utcnow)


ChannelEvent = Union[ReadyEvent, AuthFailureEvent, QrChallengeEvent, InboundMessageEvent]
