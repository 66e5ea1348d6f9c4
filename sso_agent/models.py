# Copyright (c) Microsoft. All rights reserved.

"""
Data Model

Value types shared by the context store, token broker and scheduler.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def latest(current: Optional[datetime], candidate: Optional[datetime]) -> Optional[datetime]:
    """The later of two optional timestamps."""
    if candidate is None:
        return current
    if current is None or candidate > current:
        return candidate
    return current


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


# =============================================================================
# ENUMS
# =============================================================================

class TokenStatus(str, Enum):
    UNKNOWN = "unknown"
    ACTIVE = "active"
    UNAVAILABLE = "unavailable"


class ErrorKind(str, Enum):
    NO_CONTEXT = "no-context"
    SESSION_OPEN_FAILED = "session-open-failed"
    UNAVAILABLE = "unavailable"
    TRANSPORT_ERROR = "transport-error"
    TIMEOUT = "timeout"
    INTERNAL = "internal"


class TaskType(str, Enum):
    CALENDAR_CHECK = "calendarCheck"


class TaskStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


# =============================================================================
# CONVERSATION REFERENCE
# =============================================================================

@dataclass(frozen=True)
class ConversationReference:
    """
    Routing record captured from an inbound activity.

    Holds everything needed to build a continuation activity later: the
    channel, the service URL, the conversation and both identities.
    Immutable; an updated reference replaces the old one wholesale.
    """

    channel_id: str
    service_url: str
    conversation_id: str
    user_id: str
    bot_id: str = ""
    bot_name: str = ""
    user_name: str = ""
    user_aad_object_id: str = ""
    tenant_id: str = ""
    conversation_type: str = ""
    activity_id: str = ""
    locale: str = ""

    @classmethod
    def from_activity(cls, activity) -> Optional["ConversationReference"]:
        """Capture a reference from an inbound activity (None if incomplete)."""
        sender = getattr(activity, "from_property", None)
        conversation = getattr(activity, "conversation", None)
        user_id = getattr(sender, "id", None)
        conversation_id = getattr(conversation, "id", None)
        if not user_id or not conversation_id:
            return None

        recipient = getattr(activity, "recipient", None)
        return cls(
            channel_id=getattr(activity, "channel_id", None) or "",
            service_url=getattr(activity, "service_url", None) or "",
            conversation_id=conversation_id,
            user_id=user_id,
            bot_id=getattr(recipient, "id", None) or "",
            bot_name=getattr(recipient, "name", None) or "",
            user_name=getattr(sender, "name", None) or "",
            user_aad_object_id=getattr(sender, "aad_object_id", None) or "",
            tenant_id=extract_tenant_id(activity) or "",
            conversation_type=getattr(conversation, "conversation_type", None) or "",
            activity_id=getattr(activity, "id", None) or "",
            locale=getattr(activity, "locale", None) or "",
        )

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ConversationReference":
        known = {name for name in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in data.items() if k in known})


def extract_tenant_id(activity) -> Optional[str]:
    """Tenant id from the conversation, falling back to Teams channel data."""
    conversation = getattr(activity, "conversation", None)
    tenant_id = getattr(conversation, "tenant_id", None)
    if tenant_id:
        return tenant_id

    channel_data = getattr(activity, "channel_data", None)
    if isinstance(channel_data, dict):
        tenant = channel_data.get("tenant") or {}
        return tenant.get("id")
    tenant = getattr(channel_data, "tenant", None)
    if isinstance(tenant, dict):
        return tenant.get("id")
    return getattr(tenant, "id", None)


# =============================================================================
# USER CONTEXT
# =============================================================================

@dataclass
class UserContext:
    user_id: str
    conversation_reference: Optional[ConversationReference] = None
    user_name: str = "Unknown"
    channel_id: str = ""
    service_url: str = ""
    tenant_id: Optional[str] = None
    aad_object_id: Optional[str] = None
    conversation_id: str = ""
    sso_enabled: bool = True
    token_status: TokenStatus = TokenStatus.UNKNOWN
    last_token_retrieved: Optional[datetime] = None
    last_token_attempt: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    last_updated: datetime = field(default_factory=utcnow)

    def to_public_dict(self) -> dict:
        """Sanitized view: the routing record itself is never exposed."""
        return {
            "userId": self.user_id,
            "userName": self.user_name,
            "channelId": self.channel_id,
            "tenantId": self.tenant_id,
            "conversationId": self.conversation_id,
            "lastUpdated": _iso(self.last_updated),
            "createdAt": _iso(self.created_at),
            "hasConversationReference": self.conversation_reference is not None,
            "ssoEnabled": self.sso_enabled,
            "tokenStatus": self.token_status.value,
            "lastTokenRetrieved": _iso(self.last_token_retrieved),
            "lastTokenAttempt": _iso(self.last_token_attempt),
        }


# =============================================================================
# SCHEDULED TASKS
# =============================================================================

def make_task_id(user_id: str, created_at: datetime) -> str:
    return f"{user_id}_{int(created_at.timestamp() * 1000)}"


@dataclass
class ScheduledTask:
    task_id: str
    user_id: str
    conversation_reference: ConversationReference
    execute_at: datetime
    task_type: TaskType = TaskType.CALENDAR_CHECK
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "taskId": self.task_id,
            "userId": self.user_id,
            "taskType": self.task_type.value,
            "executeAt": _iso(self.execute_at),
            "createdAt": _iso(self.created_at),
        }

    @classmethod
    def from_row(cls, row: dict) -> "ScheduledTask":
        reference = row["conversation_reference"]
        if isinstance(reference, dict):
            reference = ConversationReference.from_dict(reference)
        return cls(
            task_id=row["task_id"],
            user_id=row["user_id"],
            conversation_reference=reference,
            execute_at=_parse_dt(row["execute_at"]),
            task_type=TaskType(row["task_type"]),
            created_at=_parse_dt(row["created_at"]),
        )


@dataclass
class TaskOutcome:
    """Result of executing one due task during a scheduler tick."""

    task_id: str
    user_id: str
    status: TaskStatus
    detail: str = ""


# =============================================================================
# TOKEN ACQUISITION RESULTS
# =============================================================================

@dataclass
class TokenSuccess:
    token: str
    expiration: Optional[str] = None
    connection_name: Optional[str] = None
    channel_id: Optional[str] = None

    success = True

    def to_dict(self) -> dict:
        return {
            "success": True,
            "token": self.token,
            "expiration": self.expiration,
            "connectionName": self.connection_name,
            "channelId": self.channel_id,
        }


@dataclass
class TokenFailure:
    error_kind: ErrorKind
    message: str
    diagnostics: dict = field(default_factory=dict)

    success = False

    def to_dict(self) -> dict:
        data = {
            "success": False,
            "error": self.error_kind.value,
            "message": self.message,
        }
        if self.diagnostics:
            data["details"] = self.diagnostics
        return data


TokenAcquisitionResult = Union[TokenSuccess, TokenFailure]
