import asyncio
import smtplib
from unittest.mock import MagicMock, patch

import httpx
import pytest

from stagekey.service.delivery import (
    ChannelGateway,
    DeliveryResult,
    HttpSmsChannel,
    Notifier,
    SmtpEmailChannel,
)
from stagekey.service.errors import RateLimitedError
from stagekey.service.rate_limit import MemoryWindowStore, RateLimiter
from stagekey.storage.models import Channel, NotifyStatus

from conftest import FakeClock, RecordingGateway


class FlakyGateway:
    """Fails a fixed number of times before succeeding."""

    def __init__(self, failures, mode="result"):
        self.failures = failures
        self.mode = mode
        self.calls = 0

    async def send(self, destination, channel, content, *, subject=None):
        self.calls += 1
        if self.calls <= self.failures:
            if self.mode == "raise":
                raise OSError("socket closed")
            if self.mode == "hang":
                await asyncio.sleep(10)
            return DeliveryResult(success=False, error="busy")
        return DeliveryResult(success=True, provider_id="ok-1")


def make_notifier(gateway, *, limiter=None, max_attempts=3, timeout=1.0, sleeps=None):
    async def sleep(seconds):
        if sleeps is not None:
            sleeps.append(seconds)

    return Notifier(
        gateway,
        limiter=limiter,
        clock=FakeClock(),
        timeout_seconds=timeout,
        max_attempts=max_attempts,
        retry_base_seconds=1.0,
        sleep=sleep,
    )


class TestNotifier:
    async def test_success_on_first_attempt(self):
        log = await make_notifier(RecordingGateway()).deliver("a@example.com", Channel.EMAIL, "hi")
        assert log.status == NotifyStatus.SENT
        assert log.attempts == 1
        assert log.provider_id == "msg-1"
        assert log.destination == "a@example.com"

    async def test_retries_with_backoff_then_succeeds(self):
        sleeps = []
        gateway = FlakyGateway(failures=2)
        log = await make_notifier(gateway, sleeps=sleeps).deliver("+14155550101", Channel.SMS, "hi")

        assert log.status == NotifyStatus.SENT
        assert log.attempts == 3
        assert sleeps == [1.0, 2.0]

    async def test_exhausted_attempts_record_last_error(self):
        gateway = FlakyGateway(failures=5)
        log = await make_notifier(gateway, max_attempts=2).deliver("+14155550101", Channel.SMS, "hi")

        assert log.status == NotifyStatus.FAILED
        assert log.attempts == 2
        assert log.error == "busy"
        assert gateway.calls == 2

    async def test_exception_becomes_failed_log(self):
        gateway = FlakyGateway(failures=5, mode="raise")
        log = await make_notifier(gateway, max_attempts=1).deliver("a@example.com", Channel.EMAIL, "hi")
        assert log.status == NotifyStatus.FAILED
        assert log.error == "OSError: socket closed"

    async def test_timeout_becomes_failed_log(self):
        gateway = FlakyGateway(failures=5, mode="hang")
        log = await make_notifier(gateway, max_attempts=1, timeout=0.05).deliver(
            "a@example.com", Channel.EMAIL, "hi"
        )
        assert log.status == NotifyStatus.FAILED
        assert "timed out" in log.error

    async def test_destination_limit_records_failure(self):
        limiter = RateLimiter(MemoryWindowStore(FakeClock()), destination_limit=1)
        gateway = RecordingGateway()
        notifier = make_notifier(gateway, limiter=limiter)

        await notifier.deliver("a@example.com", Channel.EMAIL, "one")
        log = await notifier.deliver("a@example.com", Channel.EMAIL, "two")

        assert log.status == NotifyStatus.FAILED
        assert log.attempts == 0
        assert "too many destination" in log.error
        assert len(gateway.sent) == 1

    async def test_destination_limit_can_raise(self):
        limiter = RateLimiter(MemoryWindowStore(FakeClock()), destination_limit=1)
        notifier = make_notifier(RecordingGateway(), limiter=limiter)
        await notifier.deliver("+14155550101", Channel.SMS, "one")
        with pytest.raises(RateLimitedError) as exc_info:
            await notifier.deliver("+14155550101", Channel.SMS, "two", raise_on_limit=True)
        assert exc_info.value.retry_after_seconds >= 1

    async def test_retries_do_not_spend_destination_budget(self):
        limiter = RateLimiter(MemoryWindowStore(FakeClock()), destination_limit=2)
        notifier = make_notifier(FlakyGateway(failures=2), limiter=limiter)
        first = await notifier.deliver("a@example.com", Channel.EMAIL, "hi")
        second = await notifier.deliver("a@example.com", Channel.EMAIL, "hi")
        assert first.attempts == 3
        assert second.status == NotifyStatus.SENT


class TestChannelGateway:
    async def test_routes_by_channel(self):
        email, sms = RecordingGateway(), RecordingGateway()
        gateway = ChannelGateway(email=email, sms=sms)

        await gateway.send("a@example.com", Channel.EMAIL, "mail", subject="s")
        await gateway.send("+14155550101", Channel.SMS, "text")

        assert [s["destination"] for s in email.sent] == ["a@example.com"]
        assert [s["destination"] for s in sms.sent] == ["+14155550101"]


class TestHttpSmsChannel:
    def _channel(self, handler):
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return HttpSmsChannel(
            api_base_url="https://sms.example.test/2010-04-01/",
            account_sid="AC123",
            auth_token="secret",
            from_number="+14155550000",
            client=client,
        )

    async def test_posts_form_and_returns_sid(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = request.content.decode()
            return httpx.Response(201, json={"sid": "SM42"})

        channel = self._channel(handler)
        result = await channel.send("+14155550101", Channel.SMS, "hello")
        await channel.close()

        assert result.success
        assert result.provider_id == "SM42"
        assert seen["url"] == "https://sms.example.test/2010-04-01/Accounts/AC123/Messages.json"
        assert "To=%2B14155550101" in seen["body"]

    async def test_provider_error_message_surfaces(self):
        channel = self._channel(
            lambda request: httpx.Response(400, json={"message": "invalid To number"})
        )
        result = await channel.send("+14155550101", Channel.SMS, "hello")
        await channel.close()
        assert not result.success
        assert result.error == "invalid To number"

    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        channel = self._channel(handler)
        result = await channel.send("+14155550101", Channel.SMS, "hello")
        await channel.close()
        assert not result.success
        assert result.error == "sms transport error: ConnectError"

    async def test_unconfigured_logs_instead(self):
        result = await HttpSmsChannel().send("+14155550101", Channel.SMS, "hello")
        assert result.success
        assert result.provider_id is None


class TestSmtpEmailChannel:
    def test_unconfigured_is_dev_mode(self):
        channel = SmtpEmailChannel()
        assert not channel.is_configured
        assert channel._send_email("a@example.com", "s", "b").success

    def test_sends_with_starttls(self):
        channel = SmtpEmailChannel(
            smtp_host="smtp.example.test",
            smtp_user="mailer",
            smtp_password="pw",
            from_email="noreply@example.test",
        )
        server = MagicMock()
        with patch("stagekey.service.delivery.smtplib.SMTP") as smtp:
            smtp.return_value.__enter__.return_value = server
            result = channel._send_email("a@example.com", "Welcome", "body")

        assert result.success
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("mailer", "pw")
        assert server.sendmail.call_args[0][:2] == ("noreply@example.test", "a@example.com")

    def test_auth_failure_becomes_result(self):
        channel = SmtpEmailChannel(smtp_host="smtp.example.test", from_email="noreply@example.test")
        with patch("stagekey.service.delivery.smtplib.SMTP") as smtp:
            smtp.return_value.__enter__.side_effect = smtplib.SMTPAuthenticationError(535, b"no")
            result = channel._send_email("a@example.com", "s", "b")
        assert not result.success
        assert result.error == "smtp authentication failed"

    async def test_send_runs_in_thread(self):
        result = await SmtpEmailChannel().send("a@example.com", Channel.EMAIL, "b", subject="s")
        assert result.success

