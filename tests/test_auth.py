"""
Unit tests for API key authentication and action tokens.

Tests key generation, hashing, verification, key storage SQL, action token
signing and the FastAPI auth dependencies.
"""

import hashlib
import re
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
from fastapi import HTTPException

from auth import (
    ACTION_TOKEN_SCOPE,
    KEY_PREFIX,
    KEY_RANDOM_BYTES,
    MANAGE_PERMISSION,
    check_action_token,
    create_action_token,
    create_api_key_record,
    generate_api_key,
    get_key_prefix,
    has_permission,
    hash_api_key,
    is_auth_required,
    is_loopback_request,
    list_api_keys,
    lookup_api_key,
    require_api_key,
    require_permission,
    revoke_api_key,
    verify_action_token,
    verify_api_key,
)
from helpers import executed_sql, mock_db_manager


def _make_request(host="127.0.0.1"):
    """Create a mock request with the given client host."""
    request = MagicMock()
    client = MagicMock()
    client.host = host
    request.client = client
    return request


# ---------------------------------------------------------------------------
# Key generation
# ---------------------------------------------------------------------------


class TestKeyGeneration:
    def test_prefix(self):
        key, _ = generate_api_key()
        assert key.startswith(KEY_PREFIX)

    def test_length(self):
        key, _ = generate_api_key()
        # mo_sk_ (6 chars) + 64 hex chars (32 bytes) = 70
        assert len(key) == len(KEY_PREFIX) + KEY_RANDOM_BYTES * 2

    def test_unique(self):
        keys = {generate_api_key()[0] for _ in range(20)}
        assert len(keys) == 20, "Keys should be unique"

    def test_returns_hash(self):
        key, key_hash = generate_api_key()
        assert key_hash == hash_api_key(key)

    def test_hex_chars_only(self):
        key, _ = generate_api_key()
        random_part = key[len(KEY_PREFIX):]
        assert re.match(r'^[0-9a-f]+$', random_part)


# ---------------------------------------------------------------------------
# Hashing and verification
# ---------------------------------------------------------------------------


class TestHashing:
    def test_sha256(self):
        key = "mo_sk_abc123"
        expected = hashlib.sha256(key.encode("utf-8")).hexdigest()
        assert hash_api_key(key) == expected

    def test_different_keys_different_hashes(self):
        assert hash_api_key("mo_sk_key1") != hash_api_key("mo_sk_key2")


class TestVerification:
    def test_correct_key(self):
        key, key_hash = generate_api_key()
        assert verify_api_key(key, key_hash) is True

    def test_wrong_key(self):
        _, key_hash = generate_api_key()
        assert verify_api_key("mo_sk_wrong", key_hash) is False

    def test_empty_key(self):
        _, key_hash = generate_api_key()
        assert verify_api_key("", key_hash) is False


class TestKeyPrefix:
    def test_normal_key(self):
        assert get_key_prefix("mo_sk_a1b2c3d4e5f6") == "mo_sk_a1b2c3"

    def test_short_string(self):
        assert get_key_prefix("abc") == "abc"


class TestPermissions:
    def test_granted(self):
        assert has_permission({"permissions": [MANAGE_PERMISSION]}, MANAGE_PERMISSION) is True

    def test_wildcard(self):
        assert has_permission({"permissions": ["*"]}, MANAGE_PERMISSION) is True

    def test_missing(self):
        assert has_permission({"permissions": ["migration.read"]}, MANAGE_PERMISSION) is False
        assert has_permission({"permissions": None}, MANAGE_PERMISSION) is False


# ---------------------------------------------------------------------------
# Loopback detection and auth required logic
# ---------------------------------------------------------------------------


class TestLoopbackDetection:
    def test_ipv4_loopback(self):
        assert is_loopback_request(_make_request("127.0.0.1")) is True

    def test_ipv4_loopback_range(self):
        assert is_loopback_request(_make_request("127.0.0.2")) is True

    def test_ipv6_loopback(self):
        assert is_loopback_request(_make_request("::1")) is True

    def test_localhost_string(self):
        assert is_loopback_request(_make_request("localhost")) is True

    def test_remote_ip(self):
        assert is_loopback_request(_make_request("192.168.1.100")) is False

    def test_hostname(self):
        assert is_loopback_request(_make_request("testclient")) is False

    def test_no_client(self):
        request = MagicMock()
        request.client = None
        assert is_loopback_request(request) is False


class TestAuthRequired:
    @patch("config.get_config")
    def test_auth_disabled(self, mock_config):
        mock_config.return_value.api.require_auth = False
        assert is_auth_required(_make_request("10.0.0.5")) is False

    @patch("config.get_config")
    def test_auth_enabled_remote(self, mock_config):
        mock_config.return_value.api.require_auth = True
        assert is_auth_required(_make_request("192.168.1.100")) is True

    @patch("config.get_config")
    def test_auth_enabled_loopback_exempt(self, mock_config):
        mock_config.return_value.api.require_auth = True
        assert is_auth_required(_make_request("127.0.0.1")) is False


# ---------------------------------------------------------------------------
# Key storage
# ---------------------------------------------------------------------------


class TestKeyStorage:

    def test_lookup_returns_record(self):
        db, conn, cursor = mock_db_manager()
        created = datetime(2024, 1, 1, tzinfo=timezone.utc)
        cursor.fetchone.return_value = (3, "ops", "mo_sk_abcdef", [MANAGE_PERMISSION], created, None)
        with patch("auth._get_db", return_value=db):
            record = lookup_api_key("deadbeef")
        assert record == {
            "id": 3,
            "name": "ops",
            "key_prefix": "mo_sk_abcdef",
            "permissions": [MANAGE_PERMISSION],
            "created_at": created,
            "last_used_at": None,
        }
        sql = executed_sql(cursor)[0]
        assert "revoked_at IS NULL" in sql
        assert "expires_at IS NULL OR expires_at > NOW()" in sql

    def test_lookup_unknown(self):
        db, conn, cursor = mock_db_manager()
        cursor.fetchone.return_value = None
        with patch("auth._get_db", return_value=db):
            assert lookup_api_key("deadbeef") is None

    def test_lookup_database_failure(self):
        with patch("auth._get_db", side_effect=RuntimeError("pool exhausted")):
            assert lookup_api_key("deadbeef") is None

    def test_create_defaults_to_manage(self):
        db, conn, cursor = mock_db_manager()
        cursor.fetchone.return_value = (5, "2024-01-01 00:00:00+00")
        with patch("auth._get_db", return_value=db):
            result = create_api_key_record("ops laptop")

        assert result["id"] == 5
        assert result["key"].startswith(KEY_PREFIX)
        assert result["prefix"] == result["key"][:12]
        assert result["permissions"] == [MANAGE_PERMISSION]
        params = cursor.execute.call_args.args[1]
        assert params == ("ops laptop", hash_api_key(result["key"]), result["prefix"], [MANAGE_PERMISSION])

    def test_create_with_permissions(self):
        db, conn, cursor = mock_db_manager()
        cursor.fetchone.return_value = (6, "2024-01-01")
        with patch("auth._get_db", return_value=db):
            result = create_api_key_record("admin", ["*"])
        assert result["permissions"] == ["*"]

    def test_list_keys(self):
        db, conn, cursor = mock_db_manager()
        cursor.fetchall.return_value = [
            (2, "new", "mo_sk_222222", ["*"], "2024-02-01", None, None),
            (1, "old", "mo_sk_111111", [MANAGE_PERMISSION], "2024-01-01", "2024-01-15", "2024-01-20"),
        ]
        with patch("auth._get_db", return_value=db):
            keys = list_api_keys()
        assert [k["active"] for k in keys] == [True, False]
        assert keys[1]["revoked_at"] == "2024-01-20"
        assert "key_hash" not in keys[0]

    def test_revoke(self):
        db, conn, cursor = mock_db_manager()
        with patch("auth._get_db", return_value=db):
            assert revoke_api_key(1) is True
            cursor.rowcount = 0
            assert revoke_api_key(1) is False


# ---------------------------------------------------------------------------
# Action tokens
# ---------------------------------------------------------------------------


class TestActionTokens:
    NOW = 1_700_000_000.0

    def test_valid_token(self):
        token = create_action_token(now=self.NOW)
        assert verify_action_token(token, now=self.NOW) is True

    def test_previous_tick_accepted(self):
        token = create_action_token(now=self.NOW)
        # Default lifetime 86400s; ticks are 12h wide.
        assert verify_action_token(token, now=self.NOW + 43200) is True

    def test_expired_token_rejected(self):
        token = create_action_token(now=self.NOW)
        assert verify_action_token(token, now=self.NOW + 2 * 86400) is False

    def test_scope_bound(self):
        token = create_action_token("other_scope", now=self.NOW)
        assert verify_action_token(token, ACTION_TOKEN_SCOPE, now=self.NOW) is False

    def test_empty_token(self):
        assert verify_action_token("", now=self.NOW) is False
        assert verify_action_token(None, now=self.NOW) is False

    def test_non_ascii_token_rejected(self):
        assert verify_action_token("café", now=self.NOW) is False
        token = create_action_token(now=self.NOW)
        assert verify_action_token(token[:-1] + "é", now=self.NOW) is False

    def test_secret_bound(self, monkeypatch):
        import config
        token = create_action_token(now=self.NOW)
        monkeypatch.setenv("API_TOKEN_SECRET", "another-secret")
        config.reload_config()
        assert verify_action_token(token, now=self.NOW) is False

    def test_check_rejects_bad_token(self):
        with pytest.raises(HTTPException) as exc_info:
            check_action_token("nope")
        assert exc_info.value.status_code == 403
        assert exc_info.value.detail["error_code"] == "AUTH_2004"

    def test_check_disabled(self, monkeypatch):
        import config
        monkeypatch.setenv("API_REQUIRE_ACTION_TOKEN", "false")
        config.reload_config()
        assert check_action_token(None) is None


# ---------------------------------------------------------------------------
# FastAPI dependencies
# ---------------------------------------------------------------------------


class TestRequireApiKey:
    """Tests for the require_api_key FastAPI dependency."""

    @pytest.mark.asyncio
    @patch("auth.is_auth_required", return_value=False)
    async def test_auth_not_required_no_key(self, mock_auth):
        """When auth is not required, allow through without key."""
        result = await require_api_key(_make_request(), None)
        assert result is None

    @pytest.mark.asyncio
    @patch("auth.is_auth_required", return_value=True)
    async def test_auth_required_no_key_401(self, mock_auth):
        """When auth is required and no key provided, raise 401."""
        with pytest.raises(HTTPException) as exc_info:
            await require_api_key(_make_request("192.168.1.1"), None)
        assert exc_info.value.status_code == 401
        assert exc_info.value.detail["error_code"] == "AUTH_2001"
        assert exc_info.value.headers == {"WWW-Authenticate": "ApiKey"}

    @pytest.mark.asyncio
    @patch("auth.is_auth_required", return_value=True)
    async def test_auth_required_bad_prefix_401(self, mock_auth):
        with pytest.raises(HTTPException) as exc_info:
            await require_api_key(_make_request("192.168.1.1"), "bad_key_no_prefix")
        assert exc_info.value.status_code == 401
        assert "Invalid API key format" in exc_info.value.detail["message"]

    @pytest.mark.asyncio
    @patch("auth.update_last_used")
    @patch("auth.lookup_api_key")
    @patch("auth.is_auth_required", return_value=True)
    async def test_auth_required_valid_key(self, mock_auth, mock_lookup, mock_update):
        """When auth is required and key is valid, return key record."""
        key, key_hash = generate_api_key()
        mock_lookup.return_value = {"id": 1, "name": "test"}

        result = await require_api_key(_make_request("192.168.1.1"), key)
        assert result["id"] == 1
        mock_lookup.assert_called_once_with(key_hash)
        mock_update.assert_called_once_with(1)

    @pytest.mark.asyncio
    @patch("auth.lookup_api_key", return_value=None)
    @patch("auth.is_auth_required", return_value=True)
    async def test_auth_required_invalid_key_401(self, mock_auth, mock_lookup):
        key, _ = generate_api_key()
        with pytest.raises(HTTPException) as exc_info:
            await require_api_key(_make_request("192.168.1.1"), key)
        assert exc_info.value.status_code == 401
        assert "Invalid or revoked" in exc_info.value.detail["message"]


class TestRequirePermission:
    """Tests for the permission + action token dependency."""

    @pytest.mark.asyncio
    @patch("auth.update_last_used")
    @patch("auth.lookup_api_key")
    @patch("auth.is_auth_required", return_value=True)
    async def test_missing_permission_403(self, mock_auth, mock_lookup, mock_update):
        mock_lookup.return_value = {"id": 1, "key_prefix": "mo_sk_aaaaaa", "permissions": ["migration.read"]}
        dependency = require_permission(MANAGE_PERMISSION)
        key, _ = generate_api_key()
        with pytest.raises(HTTPException) as exc_info:
            await dependency(_make_request("10.0.0.1"), key, None)
        assert exc_info.value.status_code == 403
        assert exc_info.value.detail["error_code"] == "AUTH_2002"
        assert exc_info.value.detail["details"] == {"permission": MANAGE_PERMISSION}

    @pytest.mark.asyncio
    @patch("auth.is_auth_required", return_value=True)
    async def test_key_checked_before_token(self, mock_auth):
        dependency = require_permission(MANAGE_PERMISSION, action_token=True)
        with pytest.raises(HTTPException) as exc_info:
            await dependency(_make_request("10.0.0.1"), None, None)
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    @patch("auth.is_auth_required", return_value=False)
    async def test_token_required_for_actions(self, mock_auth):
        dependency = require_permission(MANAGE_PERMISSION, action_token=True)
        with pytest.raises(HTTPException) as exc_info:
            await dependency(_make_request(), None, None)
        assert exc_info.value.detail["error_code"] == "AUTH_2004"

        assert await dependency(_make_request(), None, create_action_token()) is None

    @pytest.mark.asyncio
    @patch("auth.update_last_used")
    @patch("auth.lookup_api_key")
    @patch("auth.is_auth_required", return_value=True)
    async def test_granted(self, mock_auth, mock_lookup, mock_update):
        mock_lookup.return_value = {"id": 9, "key_prefix": "mo_sk_bbbbbb", "permissions": ["*"]}
        dependency = require_permission(MANAGE_PERMISSION, action_token=True)
        key, _ = generate_api_key()
        record = await dependency(_make_request("10.0.0.1"), key, create_action_token())
        assert record["id"] == 9
