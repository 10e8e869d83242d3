import asyncio
import importlib.util
from pathlib import Path

import pytest

from credvault.service.roles import Role
from credvault.service.runtime import get_runtime
from credvault.storage.redis_limits import _unpack, normalize_rate_key

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"
PASSWORD = "SecurePassword123!"


@pytest.fixture(scope="module")
def script():
    module_spec = importlib.util.spec_from_file_location("bootstrap_admin_script", SCRIPT)
    module = importlib.util.module_from_spec(module_spec)
    module_spec.loader.exec_module(module)
    return module


@pytest.fixture
def runtime(mailer, fast_hasher):
    rt = get_runtime()
    rt.email_verification.email = mailer
    rt.accounts.hasher = fast_hasher
    return rt


@pytest.mark.parametrize(
    "password, ok",
    [
        ("SecurePassword123!", True),
        ("lowercase-and-1", True),
        ("Short1!", False),
        ("alllowercaseletters", False),
        ("ALLUPPER12345", False),
    ],
)
def test_validate_password(script, password, ok):
    assert script.validate_password(password) is ok


async def test_creates_admin_when_user_missing(script, runtime):
    result = await script.bootstrap_admin(" Admin@Example.com ", PASSWORD)

    assert result["status"] == "created"
    assert result["email"] == "admin@example.com"
    assert await runtime.roles.current_role(result["user_id"]) is Role.PLATFORM_ADMIN


async def test_promotes_existing_user_and_replaces_role(script, runtime):
    registered = await runtime.accounts.register_email("ops@example.com", PASSWORD)
    user_id = registered.user.id
    await runtime.roles.assign(user_id, Role.CONTRACTOR, assigned_by=None)

    result = await script.bootstrap_admin("ops@example.com", PASSWORD)

    assert result == {"user_id": user_id, "email": "ops@example.com", "status": "promoted"}
    history = await runtime.roles.history(user_id)
    assert [entry.role for entry in history if entry.is_active] == ["platform_admin"]
    again = await script.bootstrap_admin("ops@example.com", PASSWORD)
    assert again["status"] == "already_admin"


async def test_dry_run_changes_nothing(script, runtime):
    result = await script.bootstrap_admin("nobody@example.com", PASSWORD, dry_run=True)

    assert result["status"] == "dry_run"
    user = await asyncio.to_thread(runtime.store.get_user_by_email, "nobody@example.com")
    assert user is None


def test_rate_keys_are_hashed_and_namespaced():
    key = normalize_rate_key("login:a@example.com")

    assert key.startswith("credvault:rate:")
    assert "a@example.com" not in key
    assert normalize_rate_key("login:a@example.com") == key
    assert normalize_rate_key("login:b@example.com") != key


def test_bucket_result_unpacking():
    assert _unpack([1, "4.7", 0]) == (True, 4, 0)
    assert _unpack([0, "0.2", 12]) == (False, 0, 12)
    assert _unpack(["0", "-1", None]) == (False, 0, 0)
