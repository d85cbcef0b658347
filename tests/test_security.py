from datetime import timedelta

import pytest

from iqac.errors import InvalidTokenError
from iqac.security import (
    create_access_token,
    decode_token,
    display_name,
    get_password_hash,
    public_user,
    verify_password,
)


def test_password_hashing():
    hashed = get_password_hash("s3cret")
    assert hashed != "s3cret"
    assert verify_password("s3cret", hashed)
    assert not verify_password("wrong", hashed)


def test_verify_password_with_garbage_hash():
    assert not verify_password("s3cret", "not-a-bcrypt-hash")


def test_token_roundtrip():
    token = create_access_token({"sub": "abc"})
    payload = decode_token(token)
    assert payload["sub"] == "abc"
    assert payload["type"] == "access"


def test_expired_token():
    token = create_access_token({"sub": "abc"}, expires_delta=timedelta(seconds=-1))
    with pytest.raises(InvalidTokenError, match="expired"):
        decode_token(token)


def test_tampered_token():
    token = create_access_token({"sub": "abc"})
    with pytest.raises(InvalidTokenError):
        decode_token(token[:-2] + "xx")


def test_display_name_fallbacks():
    assert display_name({"firstName": "Ada", "lastName": "Lovelace"}) == "Ada Lovelace"
    assert display_name({"firstName": "Ada", "username": "ada"}) == "Ada"
    assert display_name({"username": "ada", "email": "ada@example.com"}) == "ada"
    assert display_name({"email": "ada@example.com"}) == "ada@example.com"


def test_public_user_hides_password():
    out = public_user({"_id": 1, "username": "ada", "password": "hash"})
    assert "password" not in out
    assert out["name"] == "ada"
