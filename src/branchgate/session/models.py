"""
Pydantic models for the session subsystem.

Covers:
- Opaque values handed in by collaborators (BranchContext, DeviceInfo)
- The persisted Session record
- Lifecycle event payloads

Persisted JSON uses camelCase keys (sessionId, expiresAt, ...); Python code
uses the snake_case attribute names.
"""

import secrets
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class SessionState(str, Enum):
    ACTIVE = "active"
    WARNING = "warning"
    EXPIRED = "expired"
    TERMINATED = "terminated"
    INACTIVE = "inactive"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {SessionState.EXPIRED, SessionState.TERMINATED, SessionState.INACTIVE}
)


class TerminationReason(str, Enum):
    MANUAL = "manual"
    EXPIRED = "expired"
    INACTIVE = "inactive"
    TRANSACTION_COMPLETE = "transaction_complete"

    @property
    def terminal_state(self) -> SessionState:
        if self is TerminationReason.EXPIRED:
            return SessionState.EXPIRED
        if self is TerminationReason.INACTIVE:
            return SessionState.INACTIVE
        return SessionState.TERMINATED


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ─── Collaborator values ─────────────────────────────────────────────


class DeviceInfo(CamelModel):
    """Device description supplied by the fingerprinting collaborator. Carried, not interpreted."""

    model_config = ConfigDict(extra="allow")

    device_id: str
    device_type: Literal["mobile", "tablet", "desktop"] = "desktop"
    user_agent: str = "unknown"
    platform: str = "unknown"
    screen_width: Optional[int] = None
    screen_height: Optional[int] = None
    fingerprint: Optional[str] = None
    hardware_id: Optional[str] = None

    @classmethod
    def unknown(cls) -> "DeviceInfo":
        """Placeholder used when no device collaborator is wired in."""
        return cls(device_id=f"device_{secrets.token_hex(8)}")


class BranchContext(CamelModel):
    """Branch the session was opened against, and the channel used to reach it."""

    model_config = ConfigDict(extra="allow")

    branch_id: str
    access_method: str
    branch_name: str = ""
    branch_code: str = ""
    timestamp: Optional[datetime] = None
    session_token: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    working_hours: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None


# ─── Session record ──────────────────────────────────────────────────


class Session(CamelModel):
    """A bounded-lifetime authenticated interaction tied to one access method."""

    session_id: str
    session_token: str
    access_method: str
    branch_context: BranchContext
    device_info: DeviceInfo
    ip_address: Optional[str] = None
    created_at: datetime
    expires_at: datetime
    last_activity: datetime
    state: SessionState = SessionState.ACTIVE
    user_id: Optional[str] = None
    transaction_count: int = Field(default=0, ge=0)
    is_active: bool = True

    @field_validator("created_at", "expires_at", "last_activity")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @model_validator(mode="after")
    def _expiry_not_before_creation(self) -> "Session":
        if self.expires_at < self.created_at:
            raise ValueError("expiresAt must not precede createdAt")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def snapshot(self) -> "Session":
        return self.model_copy(deep=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, raw: str) -> "Session":
        return cls.model_validate_json(raw)

    def public_dict(self) -> Dict[str, Any]:
        """JSON-ready view without the session token."""
        return self.model_dump(mode="json", by_alias=True, exclude={"session_token"})


# ─── Lifecycle events ────────────────────────────────────────────────

EventName = Literal["expired", "warning", "inactive", "reconcile"]


class SessionEvent(BaseModel):
    """Payload delivered to lifecycle listeners."""

    event: EventName
    session: Session
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class SessionTimeoutWarning(CamelModel):
    """Data a consumer needs to render an "expiring soon" prompt."""

    session_id: str
    time_remaining: int
    expires_at: datetime
    can_extend: bool
