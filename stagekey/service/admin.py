from __future__ import annotations

from datetime import timedelta
from typing import Any, List, Optional, Union

from stagekey.logging import get_logger
from stagekey.service.audit import AuditLog
from stagekey.service.clock import Clock, RandomSource, SecureRandom, SystemClock
from stagekey.service.delivery import Notifier
from stagekey.service.errors import (
    ForbiddenError,
    ProviderDownError,
    UserNotFoundError,
    ValidationError,
)
from stagekey.service.identity import IdentityService
from stagekey.service.phone import normalize_phone
from stagekey.service.rate_limit import RateLimiter
from stagekey.service.schemas import NewUserData, ProfileChanges, parse_input
from stagekey.service.tokens import TokenCodec
from stagekey.storage.errors import ConstraintViolation
from stagekey.storage.memory import MemoryStore
from stagekey.storage.models import (
    AuditAction,
    Channel,
    DeliveryLog,
    Role,
    SessionEndReason,
    User,
    UserProfile,
    UserSource,
    UserStatus,
)

logger = get_logger(__name__)

ADMIN_ROLES = (Role.ADMIN, Role.MASTER_ADMIN)


class UserAdminService:
    """Role-checked user management.

    Every mutating call resolves the actor, spends one unit of the actor's
    rate budget, then checks authority before touching the store:

    - only MASTER_ADMIN may create or modify ADMIN users
    - nobody may modify or delete the MASTER_ADMIN
    """

    def __init__(
        self,
        store: MemoryStore,
        audit: AuditLog,
        identity: IdentityService,
        limiter: RateLimiter,
        notifier: Notifier,
        *,
        codec: Optional[TokenCodec] = None,
        clock: Optional[Clock] = None,
        random_source: Optional[RandomSource] = None,
        default_country_code: str = "1",
    ) -> None:
        self.store = store
        self.audit = audit
        self.identity = identity
        self.limiter = limiter
        self.notifier = notifier
        self.random = random_source or SecureRandom()
        self.codec = codec or TokenCodec(self.random)
        self.clock = clock or SystemClock()
        self.default_country_code = default_country_code

    # authority helpers
    def require_admin(self, actor_username: str) -> User:
        actor = self.identity.resolve_actor(actor_username)
        if actor.role not in ADMIN_ROLES:
            logger.warning("admin_action_forbidden", actor_id=actor.id, role=actor.role.value)
            raise ForbiddenError("administrator role required")
        return actor

    async def _begin(self, actor_username: str) -> User:
        actor = self.require_admin(actor_username)
        await self.limiter.check_actor(actor.id)
        return actor

    @staticmethod
    def _authorize_role(actor: User, role: Role) -> None:
        if role == Role.MASTER_ADMIN:
            raise ForbiddenError("master admin can only be created by bootstrap")
        if not actor.role.outranks(role):
            raise ForbiddenError("only the master admin can manage admins")

    @staticmethod
    def _authorize_target(actor: User, target: User) -> None:
        if target.role == Role.MASTER_ADMIN:
            raise ForbiddenError("master admin cannot be modified")
        if not actor.role.outranks(target.role):
            raise ForbiddenError("only the master admin can manage admins")

    def _find_target(self, username: str) -> User:
        target = self.store.get_user_by_username(username or "")
        if target is None:
            raise UserNotFoundError("user not found", detail={"username": username})
        return target

    def _normalize_phone(self, phone: Optional[str]) -> Optional[str]:
        if phone is None:
            return None
        normalized = normalize_phone(phone, self.default_country_code)
        if normalized is None:
            raise ValidationError("invalid phone number", detail={"field": "phone"})
        return normalized

    # reads
    def list_users(self) -> List[User]:
        return self.store.list_users()

    def get_user(self, username: str) -> User:
        return self._find_target(username)

    # mutations
    def build_user(
        self,
        actor: User,
        data: NewUserData,
        role: Role,
        raw_token: str,
        *,
        duration_minutes: Optional[int] = None,
        source: UserSource = UserSource.MANUAL_CREATE,
        original_request_id: Optional[str] = None,
    ) -> User:
        if duration_minutes is not None and duration_minutes <= 0:
            raise ValidationError(
                "duration must be a positive number of minutes",
                detail={"field": "duration_minutes"},
            )
        now = self.clock.now()
        return User(
            id=self.random.new_id(),
            username=data.username,
            token_hash=self.codec.digest(raw_token),
            role=role,
            status=UserStatus.ACTIVE,
            email=data.email,
            phone=self._normalize_phone(data.phone),
            profile=UserProfile(
                source=source,
                first_name=data.first_name,
                last_name=data.last_name,
                social_handle=data.social_handle,
                original_request_id=original_request_id,
            ),
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(minutes=duration_minutes) if duration_minutes else None,
            created_by=actor.id,
        )

    def record_creation(self, actor: User, user: User) -> None:
        action = AuditAction.ADMIN_CREATED if user.role == Role.ADMIN else AuditAction.USER_CREATED
        self.audit.record(
            action,
            f"Created {user.role.value} {user.username}",
            actor=actor,
            target_id=user.id,
            metadata={
                "role": user.role.value,
                "expires_at": user.expires_at.isoformat() if user.expires_at else None,
            },
        )
        self.audit.record(
            AuditAction.TOKEN_ISSUED, "Initial token generated", actor=actor, target_id=user.id
        )

    async def create_user(
        self,
        actor_username: str,
        data: Union[NewUserData, dict],
        role: Role,
        duration_minutes: Optional[int] = None,
    ) -> str:
        """Create a user and return its one-time raw token."""
        actor = await self._begin(actor_username)
        self._authorize_role(actor, role)
        payload = parse_input(NewUserData, data)
        raw_token = self.codec.issue(role)
        user = self.build_user(
            actor, payload, role, raw_token, duration_minutes=duration_minutes
        )
        try:
            user = self.store.create_user(user)
        except ConstraintViolation as exc:
            if exc.reason == "username_taken":
                raise ForbiddenError("username taken", detail={"field": "username"}) from exc
            raise ForbiddenError(exc.message) from exc
        self.record_creation(actor, user)
        logger.info("user_created", actor_id=actor.id, user_id=user.id, role=role.value)
        return raw_token

    async def refresh_token(self, actor_username: str, target_username: str) -> str:
        """Rotate the target's token and end all of its sessions."""
        actor = await self._begin(actor_username)
        target = self._find_target(target_username)
        self._authorize_target(actor, target)
        raw_token = self.codec.issue(target.role)
        token_hash = self.codec.digest(raw_token)
        now = self.clock.now()

        def _rotate(user: User) -> None:
            user.token_hash = token_hash
            user.updated_at = now

        try:
            self.store.update_user(target.id, _rotate, end_sessions=SessionEndReason.ROTATED)
        except ConstraintViolation as exc:
            raise UserNotFoundError("user not found") from exc
        self.audit.record(
            AuditAction.TOKEN_REFRESHED,
            f"Rotated token for {target.username}",
            actor=actor,
            target_id=target.id,
        )
        logger.info("token_refreshed", actor_id=actor.id, user_id=target.id)
        return raw_token

    async def toggle_access(
        self, actor_username: str, target_username: str, revoke: bool
    ) -> User:
        actor = await self._begin(actor_username)
        target = self._find_target(target_username)
        self._authorize_target(actor, target)
        now = self.clock.now()
        status = UserStatus.REVOKED if revoke else UserStatus.ACTIVE

        def _set_status(user: User) -> None:
            user.status = status
            user.updated_at = now

        try:
            updated = self.store.update_user(
                target.id,
                _set_status,
                end_sessions=SessionEndReason.REVOKED if revoke else None,
            )
        except ConstraintViolation as exc:
            raise UserNotFoundError("user not found") from exc
        action = AuditAction.ACCESS_REVOKED if revoke else AuditAction.ACCESS_GRANTED
        self.audit.record(
            action,
            f"{'Revoked' if revoke else 'Granted'} access for {target.username}",
            actor=actor,
            target_id=target.id,
        )
        logger.info("access_toggled", actor_id=actor.id, user_id=target.id, status=status.value)
        return updated

    async def delete_user(self, actor_username: str, target_username: str) -> None:
        actor = await self._begin(actor_username)
        target = self._find_target(target_username)
        self._authorize_target(actor, target)
        if self.store.delete_user(target.id) is None:
            raise UserNotFoundError("user not found")
        self.audit.record(
            AuditAction.USER_DELETED,
            f"Deleted user {target.username}",
            actor=actor,
            target_id=target.id,
            metadata={"role": target.role.value, "username": target.username},
        )
        logger.info("user_deleted", actor_id=actor.id, user_id=target.id)

    async def update_profile(
        self,
        actor_username: str,
        target_username: str,
        changes: Union[ProfileChanges, dict],
    ) -> User:
        actor = await self._begin(actor_username)
        target = self._find_target(target_username)
        self._authorize_target(actor, target)
        payload = parse_input(ProfileChanges, changes)
        fields = sorted(payload.model_fields_set)
        if not fields:
            raise ValidationError("no profile changes supplied")
        phone = self._normalize_phone(payload.phone) if "phone" in fields else None
        now = self.clock.now()

        def _apply(user: User) -> None:
            if "email" in fields:
                user.email = payload.email
            if "phone" in fields:
                user.phone = phone
            if "first_name" in fields:
                user.profile.first_name = payload.first_name
            if "last_name" in fields:
                user.profile.last_name = payload.last_name
            if "social_handle" in fields:
                user.profile.social_handle = payload.social_handle
            user.updated_at = now

        try:
            updated = self.store.update_user(target.id, _apply)
        except ConstraintViolation as exc:
            raise UserNotFoundError("user not found") from exc
        self.audit.record(
            AuditAction.USER_UPDATED,
            f"Updated profile for {target.username}",
            actor=actor,
            target_id=target.id,
            metadata={"fields": fields},
        )
        return updated

    async def send_message(
        self,
        actor_username: str,
        target_username: str,
        channel: Channel,
        content: str,
    ) -> DeliveryLog:
        """Deliver a manual message to a user's email or phone.

        The outcome is stored on the user and audited either way; a failed
        delivery then raises ``ProviderDownError``.
        """
        actor = await self._begin(actor_username)
        target = self._find_target(target_username)
        channel = Channel(channel)
        if not (content or "").strip():
            raise ValidationError("message content is required", detail={"field": "content"})
        destination = target.email if channel == Channel.EMAIL else target.phone
        if not destination:
            raise ValidationError(
                f"user has no {'email' if channel == Channel.EMAIL else 'phone'}",
                detail={"field": "email" if channel == Channel.EMAIL else "phone"},
            )

        log = await self.notifier.deliver(
            destination, channel, content, subject="Stage access", raise_on_limit=True
        )

        def _record(user: User) -> None:
            user.last_delivery = log

        try:
            self.store.update_user(target.id, _record)
        except ConstraintViolation:
            logger.warning("delivery_target_gone", user_id=target.id, delivery_id=log.id)

        action = (
            AuditAction.MESSAGE_SENT_EMAIL if channel == Channel.EMAIL else AuditAction.MESSAGE_SENT_SMS
        )
        metadata: dict[str, Any] = {"status": log.status.value}
        if log.error:
            metadata["error"] = log.error
        self.audit.record(
            action,
            f"Sent {channel.value} to {target.username}",
            actor=actor,
            target_id=target.id,
            metadata=metadata,
        )
        if not log.succeeded:
            raise ProviderDownError(log.error or "sending failed", detail={"delivery_id": log.id})
        return log
