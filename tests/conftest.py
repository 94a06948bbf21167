import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional, Set

# Keep the suite hermetic: in-process windows and no persistence unless a test asks
os.environ.pop("REDIS_URL", None)
os.environ.pop("STAGEKEY_STATE_DIR", None)
os.environ.setdefault("ALLOW_REDIS_FALLBACK", "true")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from stagekey.config import Settings  # noqa: E402
from stagekey.service.delivery import DeliveryResult  # noqa: E402
from stagekey.service.runtime import Runtime, reset_runtime_for_tests  # noqa: E402
from stagekey.storage.models import Channel  # noqa: E402


class FakeClock:
    """Manually advanced wall and monotonic time."""

    def __init__(self, start: Optional[datetime] = None):
        self._start = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        self._offset = 0.0

    def now(self) -> datetime:
        return self._start + timedelta(seconds=self._offset)

    def monotonic(self) -> float:
        return self._offset

    def advance(self, seconds: float) -> None:
        self._offset += seconds


class RecordingGateway:
    """Delivery double that records every send and fails on demand."""

    def __init__(self):
        self.sent: List[dict] = []
        self.fail_destinations: Set[str] = set()
        self.raise_destinations: Set[str] = set()
        self.delay: float = 0.0

    async def send(self, destination, channel, content, *, subject=None):
        if self.delay:
            await asyncio.sleep(self.delay)
        self.sent.append(
            {"destination": destination, "channel": channel, "content": content, "subject": subject}
        )
        if destination in self.raise_destinations:
            raise ConnectionError("provider unreachable")
        if destination in self.fail_destinations:
            return DeliveryResult(success=False, error="provider rejected message")
        return DeliveryResult(success=True, provider_id=f"msg-{len(self.sent)}")

    def to(self, destination: str, channel: Optional[Channel] = None) -> List[dict]:
        return [
            s for s in self.sent
            if s["destination"] == destination and (channel is None or s["channel"] == channel)
        ]


async def _no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def settings():
    return Settings(
        admin_emails=["ops@example.com"],
        admin_phones=["+14155550100"],
        delivery_timeout_seconds=1.0,
        delivery_max_attempts=2,
        delivery_retry_base_seconds=0.0,
    )


@pytest.fixture
def runtime(settings, clock, gateway):
    return Runtime(settings, gateway=gateway, clock=clock, sleep=_no_sleep)


@pytest.fixture
def master(runtime):
    """Bootstrapped master admin as ``(username, raw_token)``."""
    token = asyncio.run(runtime.identity.bootstrap("director"))
    return "director", token


@pytest.fixture
def admin_user(runtime, master):
    """An ADMIN created by the master, as ``(username, raw_token)``."""
    from stagekey.storage.models import Role

    token = asyncio.run(
        runtime.admin.create_user(master[0], {"username": "stagehand"}, Role.ADMIN)
    )
    return "stagehand", token


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
