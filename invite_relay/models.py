"""
Core data types for invite-relay.

- InviteRequest: one record per access-grant attempt (request store)
- LinkEntry: reverse map from an invite link digest to its request (link index)
- JoinEvent: canonical join confirmation decoded from a webhook update
- Request/response bodies for the HTTP surface
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _encode(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return str(value)


def to_redis_mapping(model: BaseModel) -> Dict[str, str]:
    """Flatten a model into Redis hash fields. None values are omitted."""
    return {
        key: _encode(value)
        for key, value in model.model_dump().items()
        if value is not None
    }


def _flag(raw: Mapping[str, str], key: str) -> bool:
    return raw.get(key, "0") == "1"


# ============================================================================
# Request lifecycle
# ============================================================================


class RequestStatus(str, Enum):
    """Lifecycle states of an invite request."""

    QUEUED = "QUEUED"  # Initial, or reverted for a scheduled retry
    PROCESSING = "PROCESSING"  # Worker is calling the provider
    DONE = "DONE"  # Terminal, invite link present
    FAILED = "FAILED"  # Terminal, attempt ceiling exceeded

    @property
    def is_terminal(self) -> bool:
        return self in (RequestStatus.DONE, RequestStatus.FAILED)


class InviteRequest(BaseModel):
    """
    Durable record of one invite request.

    The worker owns status/attempts/invite_link/link_event_fired; the webhook
    handler owns joined/joined_at/member_id. updated_at is shared.
    """

    request_id: str
    user_id: str
    transaction_id: Optional[str] = None
    status: RequestStatus = RequestStatus.QUEUED
    attempts: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    invite_link: Optional[str] = None  # Present iff status == DONE
    link_event_fired: bool = False
    joined: bool = False
    joined_at: Optional[datetime] = None
    member_id: Optional[str] = None

    def to_redis(self) -> Dict[str, str]:
        return to_redis_mapping(self)

    @classmethod
    def from_redis(cls, raw: Mapping[str, str]) -> "InviteRequest":
        return cls(
            request_id=raw["request_id"],
            user_id=raw["user_id"],
            transaction_id=raw.get("transaction_id") or None,
            status=RequestStatus(raw["status"]),
            attempts=int(raw.get("attempts", "0")),
            created_at=raw["created_at"],
            updated_at=raw["updated_at"],
            invite_link=raw.get("invite_link") or None,
            link_event_fired=_flag(raw, "link_event_fired"),
            joined=_flag(raw, "joined"),
            joined_at=raw.get("joined_at") or None,
            member_id=raw.get("member_id") or None,
        )


class LinkEntry(BaseModel):
    """Link index entry, keyed by the digest of invite_link."""

    invite_link: str
    request_id: str
    user_id: str
    transaction_id: Optional[str] = None
    member_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)

    def to_redis(self) -> Dict[str, str]:
        return to_redis_mapping(self)

    @classmethod
    def from_redis(cls, raw: Mapping[str, str]) -> "LinkEntry":
        return cls(
            invite_link=raw["invite_link"],
            request_id=raw["request_id"],
            user_id=raw["user_id"],
            transaction_id=raw.get("transaction_id") or None,
            member_id=raw.get("member_id") or None,
            created_at=raw["created_at"],
        )


# ============================================================================
# Webhook
# ============================================================================

MEMBER_STATUSES = frozenset({"member", "administrator", "creator"})


class JoinEvent(BaseModel):
    """Canonical join confirmation, whatever update shape it arrived in."""

    model_config = ConfigDict(frozen=True)

    invite_link: str
    status: str
    member_id: str

    @property
    def is_member(self) -> bool:
        return self.status in MEMBER_STATUSES


class WebhookResult(str, Enum):
    IGNORED = "ignored"
    NOT_FOUND = "not_found"
    OK = "ok"


class WorkOutcome(str, Enum):
    """What a single worker delivery did."""

    MISSING = "missing"
    ALREADY_DONE = "already_done"
    FAILED = "failed"
    SUPERSEDED = "superseded"  # Another delivery of the same item won the race
    RETRY_SCHEDULED = "retry_scheduled"
    DONE = "done"


# ============================================================================
# HTTP bodies
# ============================================================================


class IntakeBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)

    user_id: Optional[str] = Field(default=None, alias="userId")
    transaction_id: Optional[str] = Field(default=None, alias="transactionId")


class WorkerBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)

    request_id: Optional[str] = Field(default=None, alias="requestId")


class IntakeReceipt(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ok: bool = True
    status: str = "queued"
    request_id: str = Field(serialization_alias="requestId")


class StatusView(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ok: bool = True
    status: RequestStatus
    invite_link: Optional[str] = Field(default=None, serialization_alias="inviteLink")

    @classmethod
    def from_request(cls, request: InviteRequest) -> "StatusView":
        if request.status is RequestStatus.DONE:
            return cls(status=request.status, invite_link=request.invite_link)
        return cls(status=request.status)
