from __future__ import annotations

from datetime import timedelta
from typing import Optional

from stagekey.logging import get_logger
from stagekey.service.audit import AuditLog
from stagekey.service.clock import Clock, RandomSource, SecureRandom, SystemClock
from stagekey.service.errors import (
    BootstrapCompleteError,
    ForbiddenError,
    InvalidCredentialsError,
    NotBootstrappedError,
    SessionExpiredError,
    ValidationError,
)
from stagekey.service.schemas import validate_username
from stagekey.service.tokens import TokenCodec
from stagekey.storage.errors import ConstraintViolation
from stagekey.storage.memory import MemoryStore
from stagekey.storage.models import (
    AuditAction,
    BootstrapMarker,
    Role,
    Session,
    SessionEndReason,
    User,
    UserProfile,
    UserSource,
    UserStatus,
)

logger = get_logger(__name__)


class IdentityService:
    """Bootstrap, login, logout and session restore.

    A username holds at most one live session: every successful login replaces
    the previous ones inside a single store transaction.
    """

    def __init__(
        self,
        store: MemoryStore,
        audit: AuditLog,
        *,
        codec: Optional[TokenCodec] = None,
        clock: Optional[Clock] = None,
        random_source: Optional[RandomSource] = None,
        session_ttl_minutes: int = 0,
    ) -> None:
        self.store = store
        self.audit = audit
        self.random = random_source or SecureRandom()
        self.codec = codec or TokenCodec(self.random)
        self.clock = clock or SystemClock()
        self.session_ttl_minutes = session_ttl_minutes

    def bootstrap_status(self) -> BootstrapMarker:
        return self.store.get_bootstrap_marker()

    async def bootstrap(self, username: str) -> str:
        """Create the master admin once and return its raw token.

        The token is never stored or retrievable again.
        """
        if self.store.get_bootstrap_marker().master_ready:
            raise BootstrapCompleteError("system already bootstrapped")
        try:
            username = validate_username(username or "")
        except ValueError as exc:
            raise ValidationError(str(exc), detail={"field": "username"}) from exc

        raw_token = self.codec.issue(Role.MASTER_ADMIN)
        now = self.clock.now()
        master = User(
            id=self.random.new_id(),
            username=username,
            token_hash=self.codec.digest(raw_token),
            role=Role.MASTER_ADMIN,
            status=UserStatus.ACTIVE,
            profile=UserProfile(
                source=UserSource.BOOTSTRAP, first_name="System", last_name="Admin"
            ),
            created_at=now,
            updated_at=now,
            created_by="SYSTEM",
        )
        try:
            self.store.claim_bootstrap(master, now)
        except ConstraintViolation as exc:
            logger.warning("bootstrap_rejected", username=username, reason=exc.reason)
            raise BootstrapCompleteError("system already bootstrapped") from exc

        self.audit.record(
            AuditAction.BOOTSTRAP,
            "Master admin created",
            target_id=master.id,
            metadata={"username": master.username},
        )
        logger.info("bootstrap_completed", user_id=master.id, username=master.username)
        return raw_token

    async def login(
        self, username: str, raw_token: str, *, client: Optional[str] = None
    ) -> Session:
        user = self.store.get_user_by_username(username or "")
        if user is None or not self.codec.verify(raw_token or "", user.token_hash):
            logger.warning(
                "login_failed",
                username=username,
                reason="unknown_user" if user is None else "token_mismatch",
            )
            raise InvalidCredentialsError("invalid credentials")
        if user.status == UserStatus.REVOKED:
            logger.warning("login_failed", username=user.username, reason="revoked")
            raise ForbiddenError("account access revoked")
        now = self.clock.now()
        if user.is_expired(now):
            logger.warning("login_failed", username=user.username, reason="expired")
            raise SessionExpiredError("access token expired")

        session = Session(
            id=self.random.new_id(),
            username=user.username,
            role=user.role,
            created_at=now,
            client=client,
            expires_at=(
                now + timedelta(minutes=self.session_ttl_minutes)
                if self.session_ttl_minutes > 0
                else None
            ),
        )
        try:
            dropped = self.store.replace_user_sessions(
                session, expected_token_hash=user.token_hash
            )
        except ConstraintViolation as exc:
            # rotated, revoked or deleted between verification and commit
            logger.warning("login_failed", username=user.username, reason=exc.reason)
            if exc.reason == "user_revoked":
                raise ForbiddenError("account access revoked") from exc
            raise InvalidCredentialsError("invalid credentials") from exc

        self.audit.record(
            AuditAction.LOGIN,
            "User logged in",
            actor=user,
            target_id=user.id,
            metadata={"client": client} if client else None,
        )
        logger.info(
            "login_succeeded",
            user_id=user.id,
            session_id=session.id,
            replaced_sessions=len(dropped),
        )
        return session

    async def logout(self, session_id: str) -> None:
        session = self.store.get_session(session_id)
        if session is None or not self.store.delete_session(session_id):
            return
        user = self.store.get_user_by_username(session.username)
        if user is not None:
            self.audit.record(
                AuditAction.LOGOUT, "User logged out", actor=user, target_id=user.id
            )
        logger.info("logout", session_id=session_id)

    async def restore_session(self, session_id: str) -> Session:
        if not self.store.get_bootstrap_marker().master_ready:
            raise NotBootstrappedError("system not bootstrapped")

        session = self.store.get_session(session_id)
        if session is None:
            ended = self.store.get_session_end_reason(session_id)
            if ended == SessionEndReason.REVOKED:
                raise ForbiddenError("account access revoked")
            if ended == SessionEndReason.DELETED:
                raise InvalidCredentialsError("user no longer exists")
            raise SessionExpiredError("session expired")

        now = self.clock.now()
        if session.is_expired(now):
            self.store.delete_session(session_id)
            raise SessionExpiredError("session expired")

        user = self.store.get_user_by_username(session.username)
        if user is None:
            raise InvalidCredentialsError("user no longer exists")
        if user.status == UserStatus.REVOKED:
            raise ForbiddenError("account access revoked")
        if user.is_expired(now):
            raise SessionExpiredError("access token expired")
        return session

    async def current_user(self, session_id: str) -> User:
        session = await self.restore_session(session_id)
        user = self.store.get_user_by_username(session.username)
        if user is None:
            raise InvalidCredentialsError("user no longer exists")
        return user

    def resolve_actor(self, username: str) -> User:
        """Look up an acting principal; missing or revoked actors are refused."""
        actor = self.store.get_user_by_username(username or "")
        if actor is None or actor.status == UserStatus.REVOKED:
            raise ForbiddenError("actor not authorized")
        if actor.is_expired(self.clock.now()):
            raise SessionExpiredError("actor access expired")
        return actor
