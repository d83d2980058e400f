"""Security utilities for JWTs, OAuth state and provider credential encryption.

WHAT:
    - JWT helpers: the session layer issues HS256 tokens; we only decode them
      (create_access_token exists for tests and internal tooling).
    - Fernet encryption for provider access/refresh tokens and Basic-Auth
      key/secret pairs before they reach the database.
    - Signed OAuth `state` blobs for the Shopify, Stripe and Google Analytics
      connect flows.

WHY:
    Provider credentials must never be stored in plaintext, and an OAuth
    callback must only ever attach an account to the organization that
    started the flow.
"""

import base64
import hashlib
import hmac
import json
import logging
import os
import secrets
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from cryptography.fernet import Fernet, InvalidToken
from jose import JWTError, jwt


ALGORITHM = "HS256"
JWT_SECRET = os.getenv("JWT_SECRET", "")
JWT_EXPIRES_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES", "10080"))
TOKEN_ENCRYPTION_KEY = os.getenv("TOKEN_ENCRYPTION_KEY", "")

# OAuth state is valid for one hour
OAUTH_STATE_MAX_AGE_SECONDS = 3600

logger = logging.getLogger(__name__)


if not JWT_SECRET or not TOKEN_ENCRYPTION_KEY:
    # Attempt to load from local .env if running in dev
    from bizinsights.utils.env import load_env_file
    load_env_file()
    JWT_SECRET = JWT_SECRET or os.getenv("JWT_SECRET", "")
    JWT_EXPIRES_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES", "10080"))
    TOKEN_ENCRYPTION_KEY = TOKEN_ENCRYPTION_KEY or os.getenv("TOKEN_ENCRYPTION_KEY", "")

if not JWT_SECRET:
    raise RuntimeError("JWT_SECRET is not set. Ensure .env is created or the env var is exported.")

if not TOKEN_ENCRYPTION_KEY:
    raise RuntimeError(
        "TOKEN_ENCRYPTION_KEY is not set. Generate a 32-byte Fernet key and export it "
        "or add it to .env."
    )

try:
    base64.urlsafe_b64decode(TOKEN_ENCRYPTION_KEY.encode("utf-8"))
    _cipher = Fernet(TOKEN_ENCRYPTION_KEY)
except (ValueError, TypeError) as exc:
    raise RuntimeError(
        "TOKEN_ENCRYPTION_KEY must be a URL-safe base64-encoded 32-byte string. "
        "Generate with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
    ) from exc


# =============================================================================
# PROVIDER CREDENTIALS
# =============================================================================

def encrypt_secret(plaintext: str, *, context: str) -> str:
    """Encrypt a provider secret before persisting.

    Args:
        plaintext: Raw secret (OAuth token, WooCommerce consumer secret...).
        context:   Friendly label for logs (platform/account).

    Returns:
        URL-safe base64 ciphertext suitable for DB storage.
    """
    if not plaintext:
        raise ValueError("Cannot encrypt empty secret.")

    ciphertext = _cipher.encrypt(plaintext.encode("utf-8")).decode("utf-8")
    logger.info("[TOKEN_ENCRYPT] Secret encrypted for %s (length=%d)", context, len(plaintext))
    return ciphertext


def decrypt_secret(ciphertext: str, *, context: str) -> str:
    """Decrypt a stored provider secret for an API call.

    Raises:
        ValueError: If the stored value cannot be decrypted.
    """
    if not ciphertext:
        raise ValueError("Cannot decrypt empty secret.")

    try:
        plaintext = _cipher.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        logger.debug("[TOKEN_DECRYPT] Secret decrypted for %s", context)
        return plaintext
    except InvalidToken as exc:
        logger.error("[TOKEN_DECRYPT] Invalid ciphertext for %s", context)
        raise ValueError("Unable to decrypt stored token.") from exc


# =============================================================================
# JWT
# =============================================================================

def create_access_token(subject: str, expires_minutes: int | None = None) -> str:
    """Create a signed JWT for the given subject (user email)."""
    if expires_minutes is None:
        expires_minutes = JWT_EXPIRES_MINUTES
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=expires_minutes)
    to_encode: Dict[str, Any] = {"sub": subject, "iat": int(now.timestamp()), "exp": int(expire.timestamp())}
    return jwt.encode(to_encode, JWT_SECRET, algorithm=ALGORITHM)


def decode_token(token: str) -> Dict[str, Any]:
    """Decode and validate a JWT, returning its payload.

    Raises jose.JWTError on failure.
    """
    return jwt.decode(token, JWT_SECRET, algorithms=[ALGORITHM])


# =============================================================================
# OAUTH STATE
# =============================================================================

def _state_signature(body: str) -> str:
    return hmac.new(JWT_SECRET.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()


def encode_oauth_state(payload: Dict[str, Any]) -> str:
    """Build a base64 JSON `state` blob with a timestamp and HMAC signature.

    The Google Analytics flow carries organizationId/orgSlug/userId/timestamp;
    Shopify and Stripe add the shop or nothing. Extra keys round-trip.
    """
    data = dict(payload)
    data.setdefault("timestamp", int(time.time() * 1000))
    body = json.dumps(data, sort_keys=True, separators=(",", ":"))
    data["signature"] = _state_signature(body)
    return base64.urlsafe_b64encode(json.dumps(data).encode("utf-8")).decode("utf-8")


def decode_oauth_state(state: str, max_age_seconds: int = OAUTH_STATE_MAX_AGE_SECONDS) -> Dict[str, Any]:
    """Decode and verify a `state` blob produced by encode_oauth_state.

    Raises:
        ValueError: garbled blob, bad signature or expired state.
    """
    try:
        padded = state + "=" * (-len(state) % 4)
        data = json.loads(base64.urlsafe_b64decode(padded.encode("utf-8")))
    except (ValueError, TypeError) as exc:
        raise ValueError("Invalid state format") from exc

    if not isinstance(data, dict):
        raise ValueError("Invalid state format")

    signature = data.pop("signature", None)
    body = json.dumps(data, sort_keys=True, separators=(",", ":"))
    expected = _state_signature(body).encode("utf-8")
    if not signature or not hmac.compare_digest(str(signature).encode("utf-8"), expected):
        raise ValueError("Invalid state signature")

    timestamp = data.get("timestamp")
    if not isinstance(timestamp, (int, float)):
        raise ValueError("Invalid state timestamp")
    if time.time() * 1000 - timestamp > max_age_seconds * 1000:
        raise ValueError("State expired")

    return data


def encode_shop_state(organization_id: str, shop: str) -> str:
    """Shopify install state: base64url("org:shop:ts:nonce:sig")."""
    data = f"{organization_id}:{shop}:{int(time.time() * 1000)}:{secrets.token_hex(16)}"
    blob = f"{data}:{_state_signature(data)}"
    return base64.urlsafe_b64encode(blob.encode("utf-8")).decode("utf-8").rstrip("=")


def decode_shop_state(state: str, max_age_seconds: int = OAUTH_STATE_MAX_AGE_SECONDS) -> Dict[str, str]:
    """Verify a Shopify install state. Returns {organization_id, shop}.

    Raises:
        ValueError: garbled blob, bad signature or expired state.
    """
    try:
        padded = state + "=" * (-len(state) % 4)
        parts = base64.urlsafe_b64decode(padded.encode("utf-8")).decode("utf-8").split(":")
    except (ValueError, TypeError) as exc:
        raise ValueError("Invalid state format") from exc
    if len(parts) != 5:
        raise ValueError("Invalid state format")

    organization_id, shop, timestamp, nonce, signature = parts
    data = f"{organization_id}:{shop}:{timestamp}:{nonce}"
    if not hmac.compare_digest(signature.encode("utf-8"), _state_signature(data).encode("utf-8")):
        raise ValueError("Invalid state signature")
    if not timestamp.isdigit() or time.time() * 1000 - int(timestamp) > max_age_seconds * 1000:
        raise ValueError("State expired")
    return {"organization_id": organization_id, "shop": shop}


__all__ = [
    "JWTError",
    "create_access_token",
    "decode_oauth_state",
    "decode_shop_state",
    "decode_token",
    "decrypt_secret",
    "encode_oauth_state",
    "encode_shop_state",
    "encrypt_secret",
]
