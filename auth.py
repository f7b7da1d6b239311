"""
Authentication for the migration API.

Two independent checks protect the routes:

- API keys (``X-API-Key``) identify the caller and carry a permission list.
  They are only enforced when API_REQUIRE_AUTH=true, and loopback clients
  are exempt so a local operator can drive a migration without a key.
- Action tokens (``X-Action-Token``) guard the mutating routes against
  forged requests. A token is an HMAC over a time tick of half the token
  lifetime and is accepted for the current and the previous tick.
"""

import hashlib
import hmac
import ipaddress
import logging
import secrets
import time
from typing import Optional

from fastapi import Request, Security
from fastapi.security import APIKeyHeader

from errors import ErrorCode, raise_api_error

logger = logging.getLogger(__name__)

# Key format constants
KEY_PREFIX = "mo_sk_"
KEY_RANDOM_BYTES = 32  # 64 hex chars

MANAGE_PERMISSION = "migration.manage"
WILDCARD_PERMISSION = "*"

ACTION_TOKEN_SCOPE = "media_offload_migration"

# FastAPI security schemes
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)
action_token_header = APIKeyHeader(name="X-Action-Token", auto_error=False)

# Loopback addresses (auth bypass)
LOOPBACK_ADDRS = {"127.0.0.1", "::1", "localhost"}

_WWW_AUTHENTICATE = {"WWW-Authenticate": "ApiKey"}


# ---------------------------------------------------------------------------
# Key generation and hashing
# ---------------------------------------------------------------------------


def generate_api_key() -> tuple[str, str]:
    """Generate a new API key.

    Returns:
        Tuple of (full_key, key_hash).
        full_key is shown to the user once; key_hash is stored server-side.
    """
    random_part = secrets.token_hex(KEY_RANDOM_BYTES)
    full_key = f"{KEY_PREFIX}{random_part}"
    key_hash = hash_api_key(full_key)
    return full_key, key_hash


def hash_api_key(key: str) -> str:
    """Compute the hex SHA-256 hash of an API key."""
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def verify_api_key(key: str, stored_hash: str) -> bool:
    """Verify an API key against its stored hash (constant-time)."""
    computed = hash_api_key(key)
    return hmac.compare_digest(computed, stored_hash)


def get_key_prefix(key: str) -> str:
    """Extract the display prefix from a key, e.g. 'mo_sk_a1b2c3'."""
    return key[:12] if len(key) >= 12 else key


def has_permission(key_record: dict, permission: str) -> bool:
    permissions = key_record.get("permissions") or []
    return WILDCARD_PERMISSION in permissions or permission in permissions


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------


def is_loopback_request(request: Request) -> bool:
    """Check if the request originates from a loopback address."""
    client_host = request.client.host if request.client else None
    if not client_host:
        return False

    if client_host in LOOPBACK_ADDRS:
        return True

    try:
        addr = ipaddress.ip_address(client_host)
        return addr.is_loopback
    except ValueError:
        return False


def is_auth_required(request: Request) -> bool:
    """Auth is required when API_REQUIRE_AUTH=true, except for loopback clients."""
    from config import get_config
    config = get_config()
    if not config.api.require_auth:
        return False
    if is_loopback_request(request):
        return False
    return True


# ---------------------------------------------------------------------------
# Key storage operations (database)
# ---------------------------------------------------------------------------


def _get_db():
    from database import get_db_manager
    return get_db_manager()


def lookup_api_key(key_hash: str) -> Optional[dict]:
    """Look up an active API key by its hash.

    Returns the key record dict, or None if the key is unknown, revoked or
    expired (or the lookup itself failed).
    """
    try:
        with _get_db().get_cursor() as cursor:
            cursor.execute(
                """
                SELECT id, name, key_prefix, permissions, created_at, last_used_at
                FROM api_keys
                WHERE key_hash = %s
                  AND revoked_at IS NULL
                  AND (expires_at IS NULL OR expires_at > NOW())
                """,
                (key_hash,),
            )
            row = cursor.fetchone()
    except Exception as e:
        logger.error("Failed to look up API key: %s", e)
        return None
    if not row:
        return None
    return {
        "id": row[0],
        "name": row[1],
        "key_prefix": row[2],
        "permissions": list(row[3] or []),
        "created_at": row[4],
        "last_used_at": row[5],
    }


def update_last_used(key_id: int) -> None:
    """Update the last_used_at timestamp for a key."""
    try:
        with _get_db().get_cursor() as cursor:
            cursor.execute(
                "UPDATE api_keys SET last_used_at = NOW() WHERE id = %s",
                (key_id,),
            )
    except Exception as e:
        logger.debug("Failed to update last_used_at: %s", e)


def create_api_key_record(name: str, permissions: Optional[list[str]] = None) -> dict:
    """Create a new API key and store it in the database.

    Args:
        name: Human-readable name for this key.
        permissions: Permissions granted to the key (default: migration.manage).

    Returns:
        Dict with 'key' (full key, show once), 'id', 'name', 'prefix',
        'permissions' and 'created_at'.
    """
    permissions = list(permissions) if permissions else [MANAGE_PERMISSION]
    full_key, key_hash = generate_api_key()
    prefix = get_key_prefix(full_key)

    with _get_db().get_cursor() as cursor:
        cursor.execute(
            """
            INSERT INTO api_keys (name, key_hash, key_prefix, permissions)
            VALUES (%s, %s, %s, %s)
            RETURNING id, created_at
            """,
            (name, key_hash, prefix, permissions),
        )
        row = cursor.fetchone()

    logger.info("Created API key %s (%s)", prefix, name)
    return {
        "key": full_key,  # Show ONCE
        "id": row[0],
        "name": name,
        "prefix": prefix,
        "permissions": permissions,
        "created_at": str(row[1]),
    }


def list_api_keys() -> list[dict]:
    """List all API keys (never returns the hash or full key)."""
    with _get_db().get_cursor() as cursor:
        cursor.execute(
            """
            SELECT id, name, key_prefix, permissions, created_at, last_used_at, revoked_at
            FROM api_keys
            ORDER BY created_at DESC
            """
        )
        rows = cursor.fetchall()
    return [
        {
            "id": row[0],
            "name": row[1],
            "prefix": row[2],
            "permissions": list(row[3] or []),
            "created_at": str(row[4]),
            "last_used_at": str(row[5]) if row[5] else None,
            "revoked_at": str(row[6]) if row[6] else None,
            "active": row[6] is None,
        }
        for row in rows
    ]


def revoke_api_key(key_id: int) -> bool:
    """Revoke an API key immediately. Returns True if a key was revoked."""
    with _get_db().get_cursor() as cursor:
        cursor.execute(
            "UPDATE api_keys SET revoked_at = NOW() WHERE id = %s AND revoked_at IS NULL",
            (key_id,),
        )
        return cursor.rowcount > 0


# ---------------------------------------------------------------------------
# Action tokens
# ---------------------------------------------------------------------------

_process_secret: Optional[bytes] = None


def _token_secret() -> bytes:
    global _process_secret
    from config import get_config
    configured = get_config().api.token_secret
    if configured:
        return configured.encode("utf-8")
    if _process_secret is None:
        logger.warning(
            "API_TOKEN_SECRET is not set; action tokens are only valid for this process"
        )
        _process_secret = secrets.token_bytes(32)
    return _process_secret


def _token_tick(now: Optional[float] = None) -> int:
    from config import get_config
    lifetime = get_config().api.token_lifetime_seconds
    now = time.time() if now is None else now
    return int(now // (lifetime // 2))


def _sign(tick: int, scope: str) -> str:
    message = f"{tick}|{scope}".encode("utf-8")
    return hmac.new(_token_secret(), message, hashlib.sha256).hexdigest()


def create_action_token(scope: str = ACTION_TOKEN_SCOPE, now: Optional[float] = None) -> str:
    """Create an action token for *scope* valid for up to one token lifetime."""
    return _sign(_token_tick(now), scope)


def verify_action_token(token: Optional[str], scope: str = ACTION_TOKEN_SCOPE, now: Optional[float] = None) -> bool:
    """Accept tokens signed in the current or the previous tick."""
    if not token:
        return False
    # compare_digest rejects non-ASCII str; header values may carry any text
    presented = token.encode("utf-8")
    tick = _token_tick(now)
    return any(
        hmac.compare_digest(presented, _sign(t, scope).encode("ascii"))
        for t in (tick, tick - 1)
    )


# ---------------------------------------------------------------------------
# FastAPI dependencies
# ---------------------------------------------------------------------------


async def require_api_key(
    request: Request,
    api_key: Optional[str] = Security(api_key_header),
) -> Optional[dict]:
    """FastAPI dependency that enforces API key auth when required.

    - If auth is not required, returns None.
    - If auth is required and key is valid, returns the key record.
    - If auth is required and key is missing/invalid, raises 401.
    """
    if not is_auth_required(request):
        return None

    if not api_key:
        raise_api_error(
            ErrorCode.UNAUTHORIZED,
            "API key required. Include X-API-Key header.",
            headers=_WWW_AUTHENTICATE,
        )

    if not api_key.startswith(KEY_PREFIX):
        raise_api_error(
            ErrorCode.INVALID_API_KEY,
            "Invalid API key format.",
            headers=_WWW_AUTHENTICATE,
        )

    key_record = lookup_api_key(hash_api_key(api_key))
    if not key_record:
        raise_api_error(
            ErrorCode.INVALID_API_KEY,
            "Invalid or revoked API key.",
            headers=_WWW_AUTHENTICATE,
        )

    update_last_used(key_record["id"])
    return key_record


def require_permission(permission: str, action_token: bool = False):
    """Factory that creates a FastAPI dependency requiring a specific permission.

    With action_token=True the request must also carry a valid
    X-Action-Token; it is checked after the key so unauthenticated callers
    get a 401 first.

    Usage:
        @router.post("/migration/start", dependencies=[Depends(require_permission("migration.manage", action_token=True))])
    """
    async def _check_permission(
        request: Request,
        api_key: Optional[str] = Security(api_key_header),
        token: Optional[str] = Security(action_token_header),
    ) -> Optional[dict]:
        key_record = await require_api_key(request, api_key)

        if key_record is not None and not has_permission(key_record, permission):
            logger.warning(
                "API key %s lacks permission %s", key_record.get("key_prefix"), permission
            )
            raise_api_error(ErrorCode.PERMISSION_DENIED, details={"permission": permission})

        if action_token:
            check_action_token(token)
        return key_record

    return _check_permission


def check_action_token(token: Optional[str]) -> None:
    """Reject a mutating request without a valid action token (when enforced)."""
    from config import get_config
    if not get_config().api.require_action_token:
        return None
    if not verify_action_token(token):
        raise_api_error(ErrorCode.INVALID_ACTION_TOKEN)
    return None
