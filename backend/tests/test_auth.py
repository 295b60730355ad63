"""Tests for admin API key authentication."""
import asyncio
import hashlib

import pytest
from fastapi import HTTPException

from cohortlab.config import get_settings
from cohortlab.middleware.auth import hash_api_key, require_admin_key


def test_hash_api_key_is_deterministic():
    """Test that hash_api_key produces consistent results."""
    api_key = "test-key-12345"

    hash1 = hash_api_key(api_key)
    hash2 = hash_api_key(api_key)
    hash3 = hash_api_key(api_key)

    assert hash1 == hash2 == hash3, "Hash should be deterministic"


def test_hash_api_key_is_sha256():
    """Test that hash_api_key uses SHA256."""
    api_key = "test-key-12345"
    expected = hashlib.sha256(api_key.encode()).hexdigest()
    actual = hash_api_key(api_key)

    assert actual == expected, "Should use SHA256 hashing"
    assert len(actual) == 64, "SHA256 hex digest should be 64 characters"


def test_different_keys_produce_different_hashes():
    """Test that different API keys produce different hashes."""
    hash1 = hash_api_key("key-one")
    hash2 = hash_api_key("key-two")

    assert hash1 != hash2, "Different keys should produce different hashes"


def test_admin_key_accepted():
    """The configured admin key passes the dependency."""
    assert asyncio.run(require_admin_key(get_settings().admin_api_key)) is None


@pytest.mark.parametrize("api_key,detail", [
    (None, "Missing API key"),
    ("", "Missing API key"),
    ("wrong-key", "Invalid API key"),
])
def test_bad_keys_rejected(api_key, detail):
    with pytest.raises(HTTPException) as exc_info:
        asyncio.run(require_admin_key(api_key))

    assert exc_info.value.status_code == 401
    assert exc_info.value.detail == detail
