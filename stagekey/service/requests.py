from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Set, Union

from stagekey.logging import get_logger
from stagekey.service.admin import UserAdminService
from stagekey.service.audit import AuditLog
from stagekey.service.clock import Clock, RandomSource, SecureRandom, SystemClock
from stagekey.service.delivery import Notifier
from stagekey.service.errors import (
    ForbiddenError,
    RequestAlreadyProcessedError,
    RequestNotFoundError,
    ValidationError,
)
from stagekey.service.phone import normalize_phone
from stagekey.service.schemas import ApplicantData, NewUserData, parse_input, validate_username
from stagekey.storage.errors import ConstraintViolation
from stagekey.storage.memory import MemoryStore
from stagekey.storage.models import (
    AuditAction,
    Channel,
    DeliveryLog,
    NotifyStatus,
    RequestStatus,
    Role,
    TokenRequest,
    User,
    UserSource,
)

logger = get_logger(__name__)

_REQUEST_ID_ATTEMPTS = 5


@dataclass
class ApprovalResult:
    raw_token: str = field(repr=False)
    user: User
    request: TokenRequest


def admin_alert_message(request: TokenRequest) -> tuple[str, str]:
    subject = f"[Stage Access] New token request {request.id}"
    body = (
        f"New producer token request {request.id}\n"
        f"Name: {request.first_name} {request.last_name}\n"
        f"Handle: {request.social_handle}\n"
        f"Username: {request.desired_username}\n"
        f"Phone: {request.phone}\n"
        "Review it in the admin console."
    )
    return subject, body


def applicant_welcome_message(username: str, raw_token: str) -> str:
    return (
        f"Welcome to the studio, {username}! Your access token is: {raw_token}\n"
        "Keep it private; it cannot be shown again."
    )


class RequestWorkflow:
    """Token-request intake, admin alerting and review.

    A request moves PENDING -> APPROVED or PENDING -> REJECTED exactly once.
    Admin alerts run as background tasks so submission never waits on them;
    ``drain`` awaits whatever is still in flight.
    """

    def __init__(
        self,
        store: MemoryStore,
        audit: AuditLog,
        admin: UserAdminService,
        notifier: Notifier,
        *,
        admin_emails: Sequence[str] = (),
        admin_phones: Sequence[str] = (),
        clock: Optional[Clock] = None,
        random_source: Optional[RandomSource] = None,
        default_country_code: str = "1",
    ) -> None:
        self.store = store
        self.audit = audit
        self.admin = admin
        self.notifier = notifier
        self.admin_emails = list(admin_emails)
        self.admin_phones = list(admin_phones)
        self.clock = clock or SystemClock()
        self.random = random_source or SecureRandom()
        self.default_country_code = default_country_code
        self._tasks: Set[asyncio.Task] = set()

    # reads
    def list_requests(self, status: Optional[RequestStatus] = None) -> List[TokenRequest]:
        return self.store.list_requests(status)

    def get_request(self, request_id: str) -> TokenRequest:
        request = self.store.get_request(request_id)
        if request is None:
            raise RequestNotFoundError("request not found", detail={"request_id": request_id})
        return request

    # intake
    def _new_request_id(self) -> str:
        return self.random.new_id().split("-")[0].upper()

    async def submit_request(self, data: Union[ApplicantData, dict]) -> TokenRequest:
        payload = parse_input(ApplicantData, data)
        phone = normalize_phone(payload.phone, self.default_country_code)
        if phone is None:
            raise ValidationError("invalid phone number", detail={"field": "phone"})

        now = self.clock.now()
        request = None
        for _ in range(_REQUEST_ID_ATTEMPTS):
            candidate = TokenRequest(
                id=self._new_request_id(),
                first_name=payload.first_name,
                last_name=payload.last_name,
                social_handle=payload.social_handle,
                desired_username=payload.desired_username,
                phone=phone,
                created_at=now,
                updated_at=now,
            )
            try:
                request = self.store.create_request(candidate)
                break
            except ConstraintViolation:
                logger.warning("request_id_collision", request_id=candidate.id)
        if request is None:
            raise RuntimeError("could not allocate a request id")

        self.audit.record(
            AuditAction.REQUEST_SUBMITTED,
            f"Token request {request.id} submitted",
            target_id=request.id,
            metadata={"desired_username": request.desired_username},
        )
        logger.info("request_submitted", request_id=request.id)
        self._schedule_admin_notification(request.id)
        return request

    # admin alerting
    def _schedule_admin_notification(self, request_id: str) -> None:
        task = asyncio.create_task(self._notify_in_background(request_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _notify_in_background(self, request_id: str) -> None:
        try:
            await self.notify_admins(request_id)
        except asyncio.CancelledError:
            # loop shut down first; retry_admin_notification picks it up
            logger.warning("admin_notify_cancelled", request_id=request_id)
            raise
        except Exception as exc:
            # the submission is already committed; the request keeps PENDING
            logger.error(
                "admin_notify_crashed",
                request_id=request_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def notify_admins(self, request_id: str) -> TokenRequest:
        """Fan out the new-request alert; SENT if any destination succeeds."""
        request = self.get_request(request_id)
        subject, body = admin_alert_message(request)
        destinations = [(Channel.EMAIL, email) for email in self.admin_emails]
        destinations += [(Channel.SMS, phone) for phone in self.admin_phones]

        logs: List[DeliveryLog] = []
        if destinations:
            logs = list(
                await asyncio.gather(
                    *(
                        self.notifier.deliver(dest, channel, body, subject=subject)
                        for channel, dest in destinations
                    )
                )
            )
        sent = [log for log in logs if log.succeeded]
        if not destinations:
            error: Optional[str] = "no admin destinations configured"
        elif sent:
            error = None
        else:
            error = "; ".join(f"{log.destination}: {log.error}" for log in logs)
        status = NotifyStatus.SENT if sent else NotifyStatus.FAILED
        now = self.clock.now()

        def _record(req: TokenRequest) -> None:
            req.admin_notify_status = status
            req.admin_notify_error = error
            req.admin_deliveries = logs
            req.notify_attempts += 1
            req.updated_at = now

        try:
            updated = self.store.update_request(request_id, _record)
        except ConstraintViolation as exc:
            raise RequestNotFoundError("request not found") from exc

        self.audit.record(
            AuditAction.ADMIN_NOTIFIED,
            f"Admin alert for request {request_id}: {status.value}",
            target_id=request_id,
            metadata={
                "status": status.value,
                "sent": len(sent),
                "failed": len(logs) - len(sent),
                "attempt": updated.notify_attempts,
            },
        )
        log_method = logger.info if sent else logger.warning
        log_method(
            "admin_notified",
            request_id=request_id,
            status=status.value,
            destinations=len(destinations),
            error=error,
        )
        return updated

    async def retry_admin_notification(self, actor_username: str, request_id: str) -> TokenRequest:
        actor = self.admin.require_admin(actor_username)
        self.get_request(request_id)
        await self.admin.limiter.check_actor(actor.id)
        logger.info("admin_notify_retry", actor_id=actor.id, request_id=request_id)
        return await self.notify_admins(request_id)

    async def drain(self) -> None:
        """Wait for in-flight background notifications to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    # review
    def _pending_request(self, request_id: str) -> TokenRequest:
        request = self.get_request(request_id)
        if request.status != RequestStatus.PENDING:
            raise RequestAlreadyProcessedError(
                f"request already {request.status.value.lower()}",
                detail={"request_id": request_id, "status": request.status.value},
            )
        return request

    @staticmethod
    def _translate(exc: ConstraintViolation) -> Exception:
        if exc.reason == "request_processed":
            return RequestAlreadyProcessedError("request already processed")
        if exc.reason == "request_not_found":
            return RequestNotFoundError("request not found")
        if exc.reason == "username_taken":
            return ForbiddenError("username taken", detail={"field": "username"})
        return ForbiddenError(exc.message)

    async def approve_request(
        self,
        actor_username: str,
        request_id: str,
        username_override: Optional[str] = None,
        duration_minutes: Optional[int] = None,
    ) -> ApprovalResult:
        """Create the PRODUCER user for a pending request and text them the token.

        The approval is durable once committed; a failed applicant SMS is
        only recorded on the request.
        """
        actor = self.admin.require_admin(actor_username)
        request = self._pending_request(request_id)
        await self.admin.limiter.check_actor(actor.id)

        username = request.desired_username
        if username_override:
            try:
                username = validate_username(username_override)
            except ValueError as exc:
                raise ValidationError(str(exc), detail={"field": "username"}) from exc
        data = parse_input(
            NewUserData,
            {
                "username": username,
                "phone": request.phone,
                "first_name": request.first_name,
                "last_name": request.last_name,
                "social_handle": request.social_handle,
            },
        )
        raw_token = self.admin.codec.issue(Role.PRODUCER)
        user = self.admin.build_user(
            actor,
            data,
            Role.PRODUCER,
            raw_token,
            duration_minutes=duration_minutes,
            source=UserSource.REQUEST_APPROVAL,
            original_request_id=request.id,
        )
        now = self.clock.now()

        def _approve(req: TokenRequest) -> None:
            req.approved_at = now
            req.processed_by = actor.id
            req.updated_at = now

        try:
            request, user = self.store.commit_approval(request.id, user, _approve)
        except ConstraintViolation as exc:
            raise self._translate(exc) from exc

        self.admin.record_creation(actor, user)
        self.audit.record(
            AuditAction.REQUEST_APPROVED,
            f"Approved request {request.id}",
            actor=actor,
            target_id=request.id,
            metadata={"user_id": user.id, "username": user.username},
        )
        logger.info("request_approved", actor_id=actor.id, request_id=request.id, user_id=user.id)

        request, user = await self._notify_applicant(request, user, raw_token)
        return ApprovalResult(raw_token=raw_token, user=user, request=request)

    async def _notify_applicant(
        self, request: TokenRequest, user: User, raw_token: str
    ) -> tuple[TokenRequest, User]:
        log = await self.notifier.deliver(
            request.phone, Channel.SMS, applicant_welcome_message(user.username, raw_token)
        )
        now = self.clock.now()

        def _record(req: TokenRequest) -> None:
            req.applicant_notify_status = log.status
            req.applicant_notify_error = log.error
            req.applicant_delivery = log
            req.updated_at = now

        def _record_user(target: User) -> None:
            target.last_delivery = log

        request = self.store.update_request(request.id, _record)
        try:
            user = self.store.update_user(user.id, _record_user)
        except ConstraintViolation:
            logger.warning("delivery_target_gone", user_id=user.id, delivery_id=log.id)
        if not log.succeeded:
            logger.warning(
                "applicant_notify_failed", request_id=request.id, error=log.error
            )
        return request, user

    async def reject_request(self, actor_username: str, request_id: str) -> TokenRequest:
        actor = self.admin.require_admin(actor_username)
        self._pending_request(request_id)
        await self.admin.limiter.check_actor(actor.id)
        now = self.clock.now()

        def _reject(req: TokenRequest) -> None:
            req.rejected_at = now
            req.processed_by = actor.id
            req.updated_at = now

        try:
            request = self.store.transition_request(request_id, RequestStatus.REJECTED, _reject)
        except ConstraintViolation as exc:
            raise self._translate(exc) from exc
        self.audit.record(
            AuditAction.REQUEST_REJECTED,
            f"Rejected request {request_id}",
            actor=actor,
            target_id=request_id,
        )
        logger.info("request_rejected", actor_id=actor.id, request_id=request_id)
        return request
