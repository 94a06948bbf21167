from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional


class Role(str, Enum):
    MASTER_ADMIN = "MASTER_ADMIN"
    ADMIN = "ADMIN"
    PRODUCER = "PRODUCER"

    @property
    def rank(self) -> int:
        return _ROLE_RANK[self]

    def outranks(self, other: "Role") -> bool:
        return self.rank > other.rank


_ROLE_RANK = {Role.PRODUCER: 0, Role.ADMIN: 1, Role.MASTER_ADMIN: 2}


class UserStatus(str, Enum):
    ACTIVE = "ACTIVE"
    REVOKED = "REVOKED"


class UserSource(str, Enum):
    BOOTSTRAP = "BOOTSTRAP"
    MANUAL_CREATE = "MANUAL_CREATE"
    REQUEST_APPROVAL = "REQUEST_APPROVAL"


class RequestStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class NotifyStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"


class Channel(str, Enum):
    EMAIL = "EMAIL"
    SMS = "SMS"


class SessionEndReason(str, Enum):
    REPLACED = "REPLACED"
    ROTATED = "ROTATED"
    REVOKED = "REVOKED"
    DELETED = "DELETED"
    RENAMED = "RENAMED"


class AuditAction(str, Enum):
    BOOTSTRAP = "BOOTSTRAP"
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    TOKEN_ISSUED = "TOKEN_ISSUED"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    ACCESS_GRANTED = "ACCESS_GRANTED"
    ACCESS_REVOKED = "ACCESS_REVOKED"
    USER_CREATED = "USER_CREATED"
    USER_UPDATED = "USER_UPDATED"
    USER_DELETED = "USER_DELETED"
    ADMIN_CREATED = "ADMIN_CREATED"
    MESSAGE_SENT_EMAIL = "MESSAGE_SENT_EMAIL"
    MESSAGE_SENT_SMS = "MESSAGE_SENT_SMS"
    REQUEST_SUBMITTED = "REQUEST_SUBMITTED"
    REQUEST_APPROVED = "REQUEST_APPROVED"
    REQUEST_REJECTED = "REQUEST_REJECTED"
    ADMIN_NOTIFIED = "ADMIN_NOTIFIED"


SYSTEM_ACTOR = "SYSTEM"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class DeliveryLog:
    id: str
    channel: Channel
    status: NotifyStatus
    timestamp: datetime
    destination: Optional[str] = None
    provider_id: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 1

    @property
    def succeeded(self) -> bool:
        return self.status == NotifyStatus.SENT


@dataclass
class UserProfile:
    source: UserSource = UserSource.MANUAL_CREATE
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    social_handle: Optional[str] = None
    original_request_id: Optional[str] = None


@dataclass
class User:
    id: str
    username: str
    token_hash: str
    role: Role
    status: UserStatus = UserStatus.ACTIVE
    email: Optional[str] = None
    phone: Optional[str] = None
    profile: UserProfile = field(default_factory=UserProfile)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    expires_at: Optional[datetime] = None
    created_by: Optional[str] = None
    last_delivery: Optional[DeliveryLog] = None

    @property
    def username_key(self) -> str:
        return self.username.casefold()

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now > self.expires_at


@dataclass
class Session:
    id: str
    username: str
    role: Role
    created_at: datetime
    client: Optional[str] = None
    expires_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at


@dataclass
class TokenRequest:
    id: str
    first_name: str
    last_name: str
    social_handle: str
    desired_username: str
    phone: str
    created_at: datetime
    updated_at: datetime
    status: RequestStatus = RequestStatus.PENDING
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    processed_by: Optional[str] = None
    user_id: Optional[str] = None
    admin_notify_status: NotifyStatus = NotifyStatus.PENDING
    admin_notify_error: Optional[str] = None
    admin_deliveries: List[DeliveryLog] = field(default_factory=list)
    notify_attempts: int = 0
    applicant_notify_status: NotifyStatus = NotifyStatus.PENDING
    applicant_notify_error: Optional[str] = None
    applicant_delivery: Optional[DeliveryLog] = None


@dataclass(frozen=True)
class AuditLogEntry:
    id: str
    timestamp: datetime
    actor_id: str
    actor_role: str
    action: AuditAction
    details: str
    target_id: Optional[str] = None
    metadata: Optional[Dict] = None


@dataclass
class BootstrapMarker:
    master_ready: bool = False
    created_at: Optional[datetime] = None
    master_admin_id: Optional[str] = None
