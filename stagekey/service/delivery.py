from __future__ import annotations

import asyncio
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.text import MIMEText
from typing import Awaitable, Callable, Optional, Protocol

import httpx

from stagekey.logging import get_logger
from stagekey.service.clock import Clock, RandomSource, SecureRandom, SystemClock
from stagekey.service.errors import RateLimitedError
from stagekey.service.rate_limit import RateLimiter
from stagekey.storage.models import Channel, DeliveryLog, NotifyStatus

logger = get_logger(__name__)


@dataclass
class DeliveryResult:
    success: bool
    provider_id: Optional[str] = None
    error: Optional[str] = None


class DeliveryGateway(Protocol):
    async def send(
        self,
        destination: str,
        channel: Channel,
        content: str,
        *,
        subject: Optional[str] = None,
    ) -> DeliveryResult:
        ...


def _redact_destination(destination: str) -> str:
    if "@" in destination:
        local, domain = destination.split("@", 1)
        return f"{local[:2]}***@{domain}"
    return f"{destination[:3]}****{destination[-2:]}" if len(destination) > 5 else "redacted"


class SmtpEmailChannel:
    """Email delivery over SMTP.

    Falls back to logging the message when SMTP is not configured.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Stage Access",
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _send_email(self, to_email: str, subject: str, body: str) -> DeliveryResult:
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=_redact_destination(to_email),
                subject=subject,
                body_preview=body[:200],
            )
            return DeliveryResult(success=True)

        msg = MIMEText(body, "plain")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        context = ssl.create_default_context()

        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error("email_auth_failed", host=self.smtp_host, error=str(e))
            return DeliveryResult(success=False, error="smtp authentication failed")
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=_redact_destination(to_email), error=str(e))
            return DeliveryResult(success=False, error="recipient refused")
        except (smtplib.SMTPException, OSError) as e:
            logger.error(
                "email_send_failed",
                to=_redact_destination(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return DeliveryResult(success=False, error=f"smtp error: {type(e).__name__}")

        logger.info("email_sent", to=_redact_destination(to_email), subject=subject)
        return DeliveryResult(success=True)

    async def send(
        self,
        destination: str,
        channel: Channel,
        content: str,
        *,
        subject: Optional[str] = None,
    ) -> DeliveryResult:
        return await asyncio.to_thread(
            self._send_email, destination, subject or self.from_name, content
        )


class HttpSmsChannel:
    """SMS delivery through a Twilio-compatible REST API.

    Falls back to logging the message when credentials are not configured.
    """

    def __init__(
        self,
        *,
        api_base_url: str = "https://api.twilio.com/2010-04-01",
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.api_base_url = api_base_url.rstrip("/")
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self._client = client

    @property
    def is_configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(15.0, connect=5.0),
                auth=(self.account_sid or "", self.auth_token or ""),
            )
        return self._client

    async def send(
        self,
        destination: str,
        channel: Channel,
        content: str,
        *,
        subject: Optional[str] = None,
    ) -> DeliveryResult:
        if not self.is_configured:
            logger.info(
                "sms_dev_mode",
                to=_redact_destination(destination),
                body_preview=content[:160],
            )
            return DeliveryResult(success=True)

        client = await self._get_client()
        url = f"{self.api_base_url}/Accounts/{self.account_sid}/Messages.json"
        try:
            response = await client.post(
                url, data={"To": destination, "From": self.from_number, "Body": content}
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            provider_message = None
            try:
                provider_message = e.response.json().get("message")
            except ValueError:
                provider_message = None
            logger.error(
                "sms_send_failed",
                to=_redact_destination(destination),
                status_code=e.response.status_code,
                error=provider_message or str(e),
            )
            return DeliveryResult(
                success=False,
                error=provider_message or f"sms provider returned {e.response.status_code}",
            )
        except httpx.HTTPError as e:
            logger.error(
                "sms_transport_failed",
                to=_redact_destination(destination),
                error_type=type(e).__name__,
                error=str(e),
            )
            return DeliveryResult(success=False, error=f"sms transport error: {type(e).__name__}")

        try:
            provider_id = response.json().get("sid")
        except ValueError:
            provider_id = None
        logger.info("sms_sent", to=_redact_destination(destination), provider_id=provider_id)
        return DeliveryResult(success=True, provider_id=provider_id)

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None


class ChannelGateway:
    """Routes each send to the email or SMS channel."""

    def __init__(self, email: DeliveryGateway, sms: DeliveryGateway) -> None:
        self.email = email
        self.sms = sms

    async def send(
        self,
        destination: str,
        channel: Channel,
        content: str,
        *,
        subject: Optional[str] = None,
    ) -> DeliveryResult:
        target = self.email if channel == Channel.EMAIL else self.sms
        return await target.send(destination, channel, content, subject=subject)


class Notifier:
    """Delivers one message with limits, timeouts and retries.

    ``deliver`` always produces a ``DeliveryLog``; gateway exceptions and
    timeouts become failed outcomes. The destination limit is consumed once
    per delivery, not per retry.
    """

    def __init__(
        self,
        gateway: DeliveryGateway,
        *,
        limiter: Optional[RateLimiter] = None,
        clock: Optional[Clock] = None,
        random_source: Optional[RandomSource] = None,
        timeout_seconds: float = 10.0,
        max_attempts: int = 3,
        retry_base_seconds: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.gateway = gateway
        self.limiter = limiter
        self.clock = clock or SystemClock()
        self.random = random_source or SecureRandom()
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max(1, max_attempts)
        self.retry_base_seconds = retry_base_seconds
        self._sleep = sleep

    def _log(
        self,
        channel: Channel,
        destination: str,
        status: NotifyStatus,
        *,
        attempts: int,
        provider_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> DeliveryLog:
        return DeliveryLog(
            id=self.random.new_id(),
            channel=channel,
            status=status,
            timestamp=self.clock.now(),
            destination=destination,
            provider_id=provider_id,
            error=error,
            attempts=attempts,
        )

    async def deliver(
        self,
        destination: str,
        channel: Channel,
        content: str,
        *,
        subject: Optional[str] = None,
        raise_on_limit: bool = False,
    ) -> DeliveryLog:
        if self.limiter is not None:
            try:
                await self.limiter.check_destination(destination)
            except RateLimitedError as exc:
                if raise_on_limit:
                    raise
                return self._log(
                    channel, destination, NotifyStatus.FAILED, attempts=0, error=exc.message
                )

        error: Optional[str] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                result = await asyncio.wait_for(
                    self.gateway.send(destination, channel, content, subject=subject),
                    timeout=self.timeout_seconds,
                )
            except asyncio.TimeoutError:
                error = f"delivery timed out after {self.timeout_seconds}s"
            except Exception as exc:
                # gateway errors become failed outcomes
                error = f"{type(exc).__name__}: {exc}"
            else:
                if result.success:
                    return self._log(
                        channel,
                        destination,
                        NotifyStatus.SENT,
                        attempts=attempt,
                        provider_id=result.provider_id,
                    )
                error = result.error or "delivery failed"

            logger.warning(
                "delivery_attempt_failed",
                channel=channel.value,
                destination=destination,
                attempt=attempt,
                max_attempts=self.max_attempts,
                error=error,
            )
            if attempt < self.max_attempts:
                await self._sleep(self.retry_base_seconds * (2 ** (attempt - 1)))

        logger.error(
            "delivery_failed",
            channel=channel.value,
            destination=destination,
            attempts=self.max_attempts,
            error=error,
        )
        return self._log(
            channel, destination, NotifyStatus.FAILED, attempts=self.max_attempts, error=error
        )
