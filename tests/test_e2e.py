"""End-to-end flows through the wired runtime."""

import asyncio

import pytest

from stagekey.service.errors import (
    BootstrapCompleteError,
    ErrorKind,
    ForbiddenError,
    RateLimitedError,
    RequestAlreadyProcessedError,
    ServiceError,
    ValidationError,
)
from stagekey.service.tokens import digest, normalize
from stagekey.storage.models import RequestStatus, Role

pytestmark = pytest.mark.integration


async def test_request_to_producer_login(runtime, master, admin_user, gateway):
    request = await runtime.requests.submit_request(
        {
            "first_name": "Rosa",
            "last_name": "Diaz",
            "social_handle": "rosa.films",
            "desired_username": "rosa",
            "phone": "5551234567",
        }
    )
    assert request.phone == "+15551234567"
    assert request.status == RequestStatus.PENDING
    await runtime.requests.drain()

    result = await runtime.requests.approve_request(admin_user[0], request.id)

    producer = runtime.store.get_user_by_username("rosa")
    assert producer.role == Role.PRODUCER
    assert producer.phone == "+15551234567"
    stored = runtime.requests.get_request(request.id)
    assert stored.status == RequestStatus.APPROVED
    assert stored.user_id == producer.id
    assert result.raw_token.startswith("pk-")
    assert result.raw_token not in str(runtime.store.list_audit(limit=1000))

    session = await runtime.identity.login("rosa", result.raw_token)
    assert (await runtime.identity.current_user(session.id)).id == producer.id


async def test_only_master_creates_admins(runtime, master, admin_user):
    with pytest.raises(ForbiddenError) as exc_info:
        await runtime.admin.create_user(admin_user[0], {"username": "deputy"}, Role.ADMIN)
    assert exc_info.value.error_code == ErrorKind.FORBIDDEN.value

    token = await runtime.admin.create_user(master[0], {"username": "deputy"}, Role.ADMIN)
    assert token.startswith("ak-")
    assert runtime.store.get_user_by_username("deputy").role == Role.ADMIN


async def test_bootstrap_exactly_once(runtime):
    results = await asyncio.gather(
        *(runtime.identity.bootstrap(f"director{i}") for i in range(5)),
        return_exceptions=True,
    )
    assert sum(isinstance(r, str) for r in results) == 1
    assert all(isinstance(r, BootstrapCompleteError) for r in results if not isinstance(r, str))


async def test_one_session_per_username(runtime, master):
    sessions = [await runtime.identity.login(master[0], master[1]) for _ in range(4)]
    assert len(runtime.store.list_sessions(master[0])) == 1
    assert runtime.store.list_sessions(master[0])[0].id == sessions[-1].id


async def test_rate_limit_blocks_without_mutation(runtime, master):
    for i in range(10):
        await runtime.admin.create_user(master[0], {"username": f"crew{i}"}, Role.PRODUCER)
    users_before = len(runtime.store.list_users())

    with pytest.raises(RateLimitedError) as exc_info:
        await runtime.admin.create_user(master[0], {"username": "crew10"}, Role.PRODUCER)

    assert exc_info.value.kind == ErrorKind.RATE_LIMIT
    assert exc_info.value.retry_after_seconds >= 1
    assert len(runtime.store.list_users()) == users_before


def test_digest_ignores_token_formatting():
    assert digest(normalize("pk-12-34")) == digest(normalize("pk1234"))
    assert digest(" pk 12 34 ") == digest("pk1234")


async def test_double_approval_creates_one_user(runtime, master, admin_user):
    request = await runtime.requests.submit_request(
        {
            "first_name": "Ana",
            "last_name": "Lee",
            "social_handle": "ana",
            "desired_username": "ana",
            "phone": "4155551234",
        }
    )
    await runtime.requests.drain()
    await runtime.requests.approve_request(admin_user[0], request.id)
    with pytest.raises(RequestAlreadyProcessedError):
        await runtime.requests.approve_request(master[0], request.id)
    assert [u.username for u in runtime.store.list_users() if u.role == Role.PRODUCER] == ["ana"]


async def test_revoke_invalidates_session(runtime, master, admin_user):
    token = await runtime.admin.create_user(admin_user[0], {"username": "cam"}, Role.PRODUCER)
    session = await runtime.identity.login("cam", token)

    await runtime.admin.toggle_access(admin_user[0], "cam", revoke=True)

    with pytest.raises(ForbiddenError):
        await runtime.identity.restore_session(session.id)
    with pytest.raises(ForbiddenError):
        await runtime.identity.login("cam", token)


async def test_phone_normalization_at_the_boundary(runtime, master):
    await runtime.admin.create_user(
        master[0], {"username": "cam", "phone": "4155551234"}, Role.PRODUCER
    )
    assert runtime.store.get_user_by_username("cam").phone == "+14155551234"

    with pytest.raises(ValidationError) as exc_info:
        await runtime.admin.create_user(
            master[0], {"username": "cam2", "phone": "notaphone"}, Role.PRODUCER
        )
    assert exc_info.value.kind == ErrorKind.VALIDATION


async def test_every_failure_maps_to_a_closed_kind(runtime, master):
    failures = []
    for call in (
        runtime.identity.login("nobody", "pk-0000"),
        runtime.identity.bootstrap("again"),
        runtime.requests.approve_request(master[0], "MISSING"),
        runtime.admin.create_user("ghost", {"username": "x"}, Role.PRODUCER),
    ):
        with pytest.raises(ServiceError) as exc_info:
            await call
        failures.append(exc_info.value.to_dict()["code"])

    assert failures == [
        "ERR_INVALID_CREDENTIALS",
        "ERR_BOOTSTRAP_COMPLETE",
        "ERR_REQUEST_NOT_FOUND",
        "ERR_FORBIDDEN",
    ]
