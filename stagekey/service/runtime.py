from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from stagekey.config import Settings, get_settings, reset_settings_cache
from stagekey.logging import configure_logging, get_logger
from stagekey.service.admin import UserAdminService
from stagekey.service.audit import AuditLog
from stagekey.service.clock import Clock, RandomSource, SecureRandom, SystemClock
from stagekey.service.delivery import (
    ChannelGateway,
    DeliveryGateway,
    HttpSmsChannel,
    Notifier,
    SmtpEmailChannel,
)
from stagekey.service.identity import IdentityService
from stagekey.service.rate_limit import MemoryWindowStore, RateLimiter, WindowStore
from stagekey.service.requests import RequestWorkflow
from stagekey.service.tokens import TokenCodec
from stagekey.storage.memory import MemoryStore
from stagekey.storage.redis_cache import RedisWindowStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username}:***@{netloc}" if parsed.username else f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Wires the store, limiter, delivery and the three services.

    Every collaborator can be passed in explicitly; anything omitted is built
    from ``settings``.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[MemoryStore] = None,
        window_store: Optional[WindowStore] = None,
        gateway: Optional[DeliveryGateway] = None,
        clock: Optional[Clock] = None,
        random_source: Optional[RandomSource] = None,
        sleep=asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        configure_logging(
            self.settings.log_level, self.settings.log_json, self.settings.log_dev_mode
        )
        self.clock = clock or SystemClock()
        self.random = random_source or SecureRandom()
        self.store = store or MemoryStore(self.settings.state_dir)
        logger.info(
            "runtime_store_initialized",
            persistent=bool(self.settings.state_dir),
        )

        self.window_store = window_store or self._build_window_store()
        self.limiter = RateLimiter(
            self.window_store,
            actor_limit=self.settings.actor_rate_limit,
            actor_window_seconds=self.settings.actor_rate_window_seconds,
            destination_limit=self.settings.destination_rate_limit,
            destination_window_seconds=self.settings.destination_rate_window_seconds,
        )

        self.sms_channel: Optional[HttpSmsChannel] = None
        if gateway is None:
            self.sms_channel = HttpSmsChannel(
                api_base_url=self.settings.sms_api_base_url,
                account_sid=self.settings.sms_account_sid,
                auth_token=self.settings.sms_auth_token,
                from_number=self.settings.sms_from_number,
            )
            gateway = ChannelGateway(
                email=SmtpEmailChannel(
                    smtp_host=self.settings.smtp_host,
                    smtp_port=self.settings.smtp_port,
                    smtp_user=self.settings.smtp_user,
                    smtp_password=self.settings.smtp_password,
                    smtp_use_tls=self.settings.smtp_use_tls,
                    from_email=self.settings.email_from_address,
                    from_name=self.settings.email_from_name,
                ),
                sms=self.sms_channel,
            )
        self.gateway = gateway
        self.notifier = Notifier(
            gateway,
            limiter=self.limiter,
            clock=self.clock,
            random_source=self.random,
            timeout_seconds=self.settings.delivery_timeout_seconds,
            max_attempts=self.settings.delivery_max_attempts,
            retry_base_seconds=self.settings.delivery_retry_base_seconds,
            sleep=sleep,
        )

        self.codec = TokenCodec(self.random)
        self.audit = AuditLog(self.store, clock=self.clock, random_source=self.random)
        self.identity = IdentityService(
            self.store,
            self.audit,
            codec=self.codec,
            clock=self.clock,
            random_source=self.random,
            session_ttl_minutes=self.settings.session_ttl_minutes,
        )
        self.admin = UserAdminService(
            self.store,
            self.audit,
            self.identity,
            self.limiter,
            self.notifier,
            codec=self.codec,
            clock=self.clock,
            random_source=self.random,
            default_country_code=self.settings.default_country_code,
        )
        self.requests = RequestWorkflow(
            self.store,
            self.audit,
            self.admin,
            self.notifier,
            admin_emails=self.settings.admin_emails,
            admin_phones=self.settings.admin_phones,
            clock=self.clock,
            random_source=self.random,
            default_country_code=self.settings.default_country_code,
        )
        logger.info(
            "runtime_ready",
            rate_limit_backend=type(self.window_store).__name__,
            admin_destinations=len(self.settings.admin_emails) + len(self.settings.admin_phones),
        )

    def _build_window_store(self) -> WindowStore:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisWindowStore(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except (RedisError, OSError) as exc:
                redis_error = exc
            if not self.settings.allow_redis_fallback:
                raise RuntimeError(
                    "Redis is required for shared rate limits; start Redis or set "
                    "ALLOW_REDIS_FALLBACK=true for in-process windows."
                ) from redis_error
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error),
                message="Rate-limit windows are in-process only; limits are per worker.",
            )
        return MemoryWindowStore(self.clock)

    async def close(self) -> None:
        await self.requests.drain()
        if isinstance(self.window_store, RedisWindowStore):
            await self.window_store.close()
        if self.sms_channel is not None:
            await self.sms_channel.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the fast path skips the lock once built.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime singleton from a fresh read of the environment."""
    global runtime
    with _runtime_lock:
        if runtime is not None and isinstance(runtime.window_store, RedisWindowStore):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.window_store.close())
            except RuntimeError:
                asyncio.run(runtime.window_store.close())
        reset_settings_cache()
        runtime = Runtime()
        return runtime
