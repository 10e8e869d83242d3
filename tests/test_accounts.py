import asyncio

import pytest
from argon2 import PasswordHasher, Type

from credvault.service.accounts import INVALID_CREDENTIALS, AccountService
from credvault.service.crypto import CredentialHasher
from credvault.service.email_verification import EmailVerificationService
from credvault.service.otp import OtpService
from credvault.service.role_ledger import RoleLedger
from credvault.service.roles import Role
from credvault.service.tokens import TokenService
from credvault.storage.memory import MemoryStore

PHONE = "+15550001111"


class RecordingIdentityProvider:
    def __init__(self, external_id="kc-1"):
        self.external_id = external_id
        self.created = []

    async def create_user(self, user):
        self.created.append(user.id)
        return self.external_id

    async def assign_role(self, external_id, role):
        return True

    async def remove_role(self, external_id, role):
        return True


@pytest.fixture
def store():
    return MemoryStore()


def _accounts(store, fast_hasher, sms, mailer, clock, identity_provider=None):
    roles = RoleLedger(store, clock=clock)
    tokens = TokenService(
        store,
        signing_secret="accounts-test-secret-0123456789abcdef",
        issuer="credvault",
        audience="credvault-clients",
        role_ledger=roles,
        clock=clock,
    )
    return AccountService(
        store,
        hasher=fast_hasher,
        tokens=tokens,
        otp=OtpService(store, sms, clock=clock),
        email_verification=EmailVerificationService(store, mailer, clock=clock),
        roles=roles,
        identity_provider=identity_provider,
    )


@pytest.fixture
def accounts(store, fast_hasher, sms, mailer, clock):
    return _accounts(store, fast_hasher, sms, mailer, clock)


async def test_register_email_issues_tokens_and_verification(accounts, mailer):
    result = await accounts.register_email("kim@example.com", "Password123")

    assert result.success
    assert result.message == "Registration successful. Please verify your email."
    assert result.tokens is not None
    assert not result.user.is_email_verified
    assert mailer.verifications[0][0] == "kim@example.com"
    assert result.user.password_hash.startswith("$argon2id$")


async def test_register_duplicate_email_fails(accounts):
    await accounts.register_email("kim@example.com", "Password123")
    result = await accounts.register_email("kim@example.com", "Password456")

    assert not result.success
    assert result.message == "Email already registered"
    assert result.tokens is None


async def test_concurrent_registration_creates_one_user(accounts, store):
    results = await asyncio.gather(
        *(accounts.register_email("race@example.com", "Password123") for _ in range(4))
    )

    assert sum(r.success for r in results) == 1
    assert store.count_users() == 1


async def test_login_success_records_login(accounts, clock):
    await accounts.register_email("kim@example.com", "Password123")
    clock.advance(minutes=2)

    result = await accounts.login_email("kim@example.com", "Password123")

    assert result.success
    assert result.message == "Login successful"
    assert result.user.last_login_at == clock()
    assert accounts.tokens.validate_access(result.tokens.access_token) == result.user.id


async def test_login_failures_are_indistinguishable(accounts, store):
    registered = await accounts.register_email("kim@example.com", "Password123")
    wrong_password = await accounts.login_email("kim@example.com", "nope-nope")
    unknown = await accounts.login_email("ghost@example.com", "Password123")
    store.set_user_active(registered.user.id, False)
    inactive = await accounts.login_email("kim@example.com", "Password123")

    for result in (wrong_password, unknown, inactive):
        assert not result.success
        assert result.message == INVALID_CREDENTIALS
        assert result.tokens is None


class CountingPasswordHasher(PasswordHasher):
    def __init__(self):
        super().__init__(time_cost=1, memory_cost=1024, parallelism=1, type=Type.ID)
        self.verifies = 0

    def verify(self, hash, password):
        self.verifies += 1
        return super().verify(hash, password)


async def test_every_login_failure_pays_one_argon2_verify(accounts):
    await accounts.register_email("kim@example.com", "Password123")
    argon = CountingPasswordHasher()
    accounts.hasher = CredentialHasher(argon)

    for email in ("kim@example.com", "ghost@example.com", "ghost@example.com"):
        before = argon.verifies
        result = await accounts.login_email(email, "wrong-password")
        assert not result.success
        assert argon.verifies - before == 1


async def test_login_upgrades_weak_hash(accounts, store):
    await accounts.register_email("kim@example.com", "Password123")
    accounts.hasher = CredentialHasher(
        PasswordHasher(time_cost=2, memory_cost=2048, parallelism=1, type=Type.ID)
    )
    before = store.get_user_by_email("kim@example.com").password_hash

    assert (await accounts.login_email("kim@example.com", "Password123")).success

    after = store.get_user_by_email("kim@example.com").password_hash
    assert after != before
    assert "m=2048,t=2" in after


async def test_phone_registration_and_otp_login(accounts, sms):
    sent = await accounts.register_phone(PHONE)
    assert sent.success

    result = await accounts.verify_otp(PHONE, sms.last_code(PHONE))
    assert result.success
    assert result.message == "Phone verified successfully"
    assert result.user.is_phone_verified

    again = await accounts.register_phone(PHONE)
    assert not again.success
    assert again.message == "Phone number already registered"


async def test_wrong_otp_gets_uniform_message(accounts):
    await accounts.register_phone(PHONE)
    result = await accounts.verify_otp(PHONE, "000000")

    assert not result.success
    assert result.message == "Invalid or expired OTP"


async def test_phone_login_for_unknown_number_sends_nothing(accounts, sms, store, clock):
    result = await accounts.login_phone("+15559998888")

    assert result.success
    assert result.message == "OTP sent successfully"
    assert result.expires_at is not None
    assert sms.sent == []
    assert store.get_user_by_phone("+15559998888") is None


async def test_phone_login_for_known_number_sends_code(accounts, sms):
    await accounts.register_phone(PHONE)
    result = await accounts.login_phone(PHONE)

    assert result.success
    assert len(sms.sent) == 2


async def test_authenticate_resolves_user_and_role(accounts):
    registered = await accounts.register_email("kim@example.com", "Password123")
    await accounts.roles.assign(registered.user.id, Role.HOMEOWNER, assigned_by=None)
    token = registered.tokens.access_token

    context = await accounts.authenticate(f"Bearer {token}")
    assert context.user.id == registered.user.id
    assert context.role is Role.HOMEOWNER

    assert await accounts.authenticate(None) is None
    assert await accounts.authenticate(f"Basic {token}") is None
    assert await accounts.authenticate("Bearer ") is None
    assert await accounts.authenticate("Bearer garbage") is None


async def test_authenticate_rejects_deactivated_user(accounts, store):
    registered = await accounts.register_email("kim@example.com", "Password123")
    store.set_user_active(registered.user.id, False)

    assert await accounts.authenticate(f"Bearer {registered.tokens.access_token}") is None


async def test_bootstrap_admin_only_once(accounts):
    first = await accounts.register_email("a@example.com", "Password123")
    second = await accounts.register_email("b@example.com", "Password123")

    assert (await accounts.admin_status())["bootstrap_required"] is True
    results = await asyncio.gather(
        accounts.bootstrap_admin(first.user.id),
        accounts.bootstrap_admin(second.user.id),
    )
    assert sorted(results) == [False, True]

    status = await accounts.admin_status()
    assert status["admin_count"] == 1
    assert status["total_users"] == 2
    assert status["bootstrap_required"] is False
    assert status["role_counts"]["platform_admin"] == 1


async def test_new_users_mirrored_to_identity_provider(
    store, fast_hasher, sms, mailer, clock
):
    idp = RecordingIdentityProvider()
    accounts = _accounts(store, fast_hasher, sms, mailer, clock, identity_provider=idp)

    result = await accounts.register_email("kim@example.com", "Password123")

    assert idp.created == [result.user.id]
    assert result.user.external_id == "kc-1"
    assert store.get_user(result.user.id).external_id == "kc-1"


async def test_identity_provider_failure_does_not_block_registration(
    store, fast_hasher, sms, mailer, clock
):
    idp = RecordingIdentityProvider(external_id=None)
    accounts = _accounts(store, fast_hasher, sms, mailer, clock, identity_provider=idp)

    result = await accounts.register_email("kim@example.com", "Password123")

    assert result.success
    assert result.user.external_id is None
