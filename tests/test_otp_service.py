"""OTP engine: issuance, per-phone send ceiling, attempt ceiling, single use."""

import asyncio

import pytest

from credvault.service import otp as otp_module
from credvault.service.otp import OTP_MAX_ATTEMPTS, OtpService
from credvault.storage.memory import MemoryStore

PHONE = "+15551234567"


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def service(store, sms, clock):
    return OtpService(store, sms, clock=clock)


async def test_send_creates_phone_user_and_delivers_code(service, store, sms):
    result = await service.send(PHONE)

    assert result.success
    assert result.message == "OTP sent successfully"
    assert result.expires_at is not None
    user = store.get_user_by_phone(PHONE)
    assert user is not None
    assert not user.is_phone_verified
    assert len(sms.sent) == 1
    assert sms.sent[0][0] == PHONE


async def test_valid_code_succeeds_once_and_verifies_phone(service, store, sms):
    await service.send(PHONE)
    code = sms.last_code(PHONE)

    assert await service.validate(PHONE, code) is True
    assert await service.validate(PHONE, code) is False
    assert store.get_user_by_phone(PHONE).is_phone_verified


async def test_three_sends_per_hour_then_rate_limited(service, clock):
    for _ in range(3):
        assert (await service.send(PHONE)).success

    blocked = await service.send(PHONE)
    assert not blocked.success
    assert blocked.rate_limited
    assert blocked.message == "Too many OTP requests. Please try again later."
    assert await service.can_send(PHONE) is False
    assert await service.remaining_attempts(PHONE) == 0

    clock.advance(minutes=30)
    assert (await service.send(PHONE)).rate_limited

    clock.advance(minutes=31)
    assert await service.remaining_attempts(PHONE) == 3
    assert (await service.send(PHONE)).success


async def test_send_ceiling_is_per_phone(service):
    for _ in range(3):
        await service.send(PHONE)
    assert (await service.send("+15557654321")).success


async def test_remaining_attempts_counts_down(service):
    assert await service.remaining_attempts(PHONE) == 3
    await service.send(PHONE)
    assert await service.remaining_attempts(PHONE) == 2


async def test_attempt_ceiling_burns_code(service, sms):
    await service.send(PHONE)
    code = sms.last_code(PHONE)

    for _ in range(OTP_MAX_ATTEMPTS):
        assert await service.validate(PHONE, "000000") is False

    assert await service.validate(PHONE, code) is False


async def test_correct_code_after_fewer_wrong_guesses_still_works(service, sms):
    await service.send(PHONE)
    code = sms.last_code(PHONE)

    for _ in range(OTP_MAX_ATTEMPTS - 1):
        assert await service.validate(PHONE, "000000") is False

    assert await service.validate(PHONE, code) is True


async def test_new_code_supersedes_previous(service, monkeypatch):
    codes = iter(["111111", "222222"])
    monkeypatch.setattr(otp_module, "generate_otp_code", lambda: next(codes))

    await service.send(PHONE)
    await service.send(PHONE)

    assert await service.validate(PHONE, "111111") is False
    assert await service.validate(PHONE, "222222") is True


async def test_expired_code_rejected(service, sms, clock):
    await service.send(PHONE)
    code = sms.last_code(PHONE)

    clock.advance(minutes=5)
    assert await service.validate(PHONE, code) is False


async def test_undelivered_code_cannot_be_redeemed(service, sms):
    sms.ok = False
    result = await service.send(PHONE)

    assert not result.success
    assert result.message == "Failed to send OTP"
    assert await service.validate(PHONE, sms.last_code(PHONE)) is False


async def test_inactive_user_gets_no_code(service, store, sms, clock):
    user = store.create_user(phone_number=PHONE, created_at=clock())
    store.set_user_active(user.id, False)

    result = await service.send(PHONE)

    assert not result.success
    assert sms.sent == []


async def test_concurrent_validation_succeeds_exactly_once(service, sms):
    await service.send(PHONE)
    code = sms.last_code(PHONE)

    results = await asyncio.gather(*(service.validate(PHONE, code) for _ in range(5)))

    assert results.count(True) == 1


async def test_storage_failure_reported_as_failed_send(service, store, monkeypatch):
    def broken(*args, **kwargs):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(store, "count_otps_since", broken)

    result = await service.send(PHONE)
    assert not result.success
    assert not result.rate_limited


async def test_cleanup_is_idempotent(service, store, clock):
    await service.send(PHONE)
    clock.advance(minutes=10)

    assert await service.cleanup_expired() == 1
    assert await service.cleanup_expired() == 0
    assert store.otps == {}
