import hashlib

from posrd.app.security import (
    generate_temp_password,
    hash_session_token,
    is_legacy_hash,
    needs_rehash,
    verify_password,
)


def test_session_token_is_hashed_with_prefix():
    h = hash_session_token("abc")
    assert h.startswith("sha256:")
    assert len(h) > 10
    assert h != hash_session_token("abd")


def test_legacy_sha256_hash_still_verifies_and_needs_rehash():
    legacy = hashlib.sha256(b"secreto123").hexdigest()
    assert is_legacy_hash(legacy) is True
    assert verify_password("secreto123", legacy) is True
    assert verify_password("otro", legacy) is False
    assert needs_rehash(legacy) is True


def test_missing_hash_never_verifies():
    assert verify_password("x", None) is False
    assert verify_password("x", "") is False


def test_temp_password_mixes_letters_and_digits():
    for _ in range(20):
        pw = generate_temp_password(12)
        assert len(pw) == 12
        assert any(c.isdigit() for c in pw)
        assert any(c.isalpha() for c in pw)
    assert len(generate_temp_password(3)) == 8
