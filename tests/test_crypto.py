import base64

import pytest
from argon2 import PasswordHasher, Type

from credvault.service.crypto import CredentialHasher, generate_otp_code, generate_token


def test_hash_is_argon2id_and_verifies(fast_hasher):
    hashed = fast_hasher.hash("CorrectHorse1!")
    assert hashed.startswith("$argon2id$")
    assert fast_hasher.verify("CorrectHorse1!", hashed)
    assert not fast_hasher.verify("wrong-password", hashed)


def test_hash_is_salted(fast_hasher):
    assert fast_hasher.hash("same-password") != fast_hasher.hash("same-password")


def test_verify_never_raises_on_bad_stored_hash(fast_hasher):
    assert fast_hasher.verify("anything", None) is False
    assert fast_hasher.verify("anything", "") is False
    assert fast_hasher.verify("anything", "not-a-hash") is False
    assert fast_hasher.verify("anything", "$argon2id$v=19$m=1024,t=1,p=1$broken") is False


def test_verify_absent_is_false_and_reuses_its_hash(fast_hasher):
    assert fast_hasher.verify_absent("anything") is False
    first = fast_hasher._dummy_hash
    assert first.startswith("$argon2id$")
    assert fast_hasher.verify_absent("anything") is False
    assert fast_hasher._dummy_hash == first


def test_needs_rehash_when_parameters_change(fast_hasher):
    weak = fast_hasher.hash("password123")
    strong = CredentialHasher(PasswordHasher(type=Type.ID))
    assert strong.needs_rehash(weak)
    assert not fast_hasher.needs_rehash(weak)
    assert fast_hasher.needs_rehash("garbage")


def test_generate_token_is_url_safe_and_sized():
    token = generate_token(32)
    assert "=" not in token
    assert set(token) <= set("ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_")
    padded = token + "=" * (-len(token) % 4)
    assert len(base64.urlsafe_b64decode(padded)) == 32
    assert len(generate_token(64)) > len(token)


def test_generate_token_rejects_non_positive_length():
    with pytest.raises(ValueError):
        generate_token(0)


def test_generate_token_values_do_not_repeat():
    assert len({generate_token() for _ in range(200)}) == 200


def test_otp_code_is_six_digits_in_range():
    for _ in range(500):
        code = generate_otp_code()
        assert len(code) == 6
        assert code.isdigit()
        assert 100000 <= int(code) <= 999999
