"""Per-platform authenticity check of inbound webhook bytes.

WHAT:
    verify(platform, raw_body, headers, secret) -> bool for Shopify,
    WooCommerce and Stripe webhooks.

WHY:
    Webhook senders are untrusted until proven otherwise. The check runs on the
    exact raw request bytes; re-serializing parsed JSON would change the byte
    sequence and break every signature.

SCHEMES:
    - Shopify:     base64(HMAC-SHA256(secret, body)) in X-Shopify-Hmac-Sha256
    - WooCommerce: base64(HMAC-SHA256(secret, body)) in X-WC-Webhook-Signature
    - Stripe:      Stripe-Signature "t=<unix>,v1=<hex>[,v1=<hex>]" where
                   v1 = hex(HMAC-SHA256(secret, f"{t}.{body}")), rejected when
                   t is outside the tolerance window

REFERENCES:
    - https://shopify.dev/docs/apps/build/webhooks/subscribe/https#step-5-verify-the-webhook
    - https://woocommerce.github.io/woocommerce-rest-api-docs/#webhooks
    - https://docs.stripe.com/webhooks#verify-manually

Verification never raises. Every failure path returns False and logs a warning.
"""

import base64
import hashlib
import hmac
import logging
import time
from typing import Mapping, Optional

from bizinsights.models import PlatformEnum

logger = logging.getLogger(__name__)

SHOPIFY_SIGNATURE_HEADER = "X-Shopify-Hmac-Sha256"
WOOCOMMERCE_SIGNATURE_HEADER = "X-WC-Webhook-Signature"
STRIPE_SIGNATURE_HEADER = "Stripe-Signature"

DEFAULT_STRIPE_TOLERANCE_SECONDS = 300


def get_header(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup for both Starlette headers and plain dicts."""
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, candidate in headers.items():
        if key.lower() == lowered:
            return candidate
    return None


def _base64_hmac(secret: str, raw_body: bytes) -> str:
    return base64.b64encode(
        hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    ).decode("utf-8")


def verify_base64_hmac(raw_body: bytes, signature: Optional[str], secret: Optional[str], tag: str) -> bool:
    """Shopify/WooCommerce scheme: base64 HMAC-SHA256 of the raw body."""
    if not secret:
        logger.error(f"[{tag}] Webhook secret not configured")
        return False

    if not signature:
        logger.warning(f"[{tag}] Missing signature header")
        return False

    computed = _base64_hmac(secret, raw_body)
    is_valid = hmac.compare_digest(computed.encode("utf-8"), signature.strip().encode("utf-8"))

    if not is_valid:
        logger.warning(f"[{tag}] Invalid HMAC signature")

    return is_valid


def parse_stripe_signature(header: str) -> tuple[Optional[str], list[str]]:
    """Split a Stripe-Signature header into its timestamp and v1 signatures."""
    timestamp = None
    signatures = []
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    return timestamp, signatures


def verify_stripe_signature(
    raw_body: bytes,
    header: Optional[str],
    secret: Optional[str],
    tolerance: int = DEFAULT_STRIPE_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> bool:
    """Stripe scheme: hex HMAC-SHA256 of "<t>.<body>" with a replay window."""
    if not secret:
        logger.error("[STRIPE_WEBHOOK] Webhook secret not configured")
        return False

    if not header:
        logger.warning("[STRIPE_WEBHOOK] Missing Stripe-Signature header")
        return False

    timestamp, signatures = parse_stripe_signature(header)
    if not timestamp or not signatures:
        logger.warning("[STRIPE_WEBHOOK] Malformed Stripe-Signature header")
        return False

    try:
        signed_at = int(timestamp)
    except ValueError:
        logger.warning("[STRIPE_WEBHOOK] Non-numeric signature timestamp")
        return False

    current = time.time() if now is None else now
    if tolerance and abs(current - signed_at) > tolerance:
        logger.warning(f"[STRIPE_WEBHOOK] Signature timestamp outside tolerance ({int(current - signed_at)}s)")
        return False

    signed_payload = timestamp.encode("utf-8") + b"." + raw_body
    expected = hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()

    # Stripe sends several v1 values while a secret is being rolled
    if any(hmac.compare_digest(expected.encode("utf-8"), candidate.encode("utf-8")) for candidate in signatures):
        return True

    logger.warning("[STRIPE_WEBHOOK] Invalid signature")
    return False


def verify(
    platform: PlatformEnum,
    raw_body: bytes,
    headers: Mapping[str, str],
    secret: Optional[str],
    *,
    stripe_tolerance: int = DEFAULT_STRIPE_TOLERANCE_SECONDS,
) -> bool:
    """Check the authenticity of a webhook body for the given platform.

    Args:
        platform: Sending platform
        raw_body: Exact request bytes
        headers: Request headers (any mapping, case-insensitive lookup)
        secret: Per-integration or global webhook secret

    Returns:
        True only when the signature matches the body and secret.
    """
    if platform == PlatformEnum.shopify:
        return verify_base64_hmac(raw_body, get_header(headers, SHOPIFY_SIGNATURE_HEADER), secret, "SHOPIFY_WEBHOOK")
    if platform == PlatformEnum.woocommerce:
        return verify_base64_hmac(raw_body, get_header(headers, WOOCOMMERCE_SIGNATURE_HEADER), secret, "WOO_WEBHOOK")
    if platform == PlatformEnum.stripe:
        return verify_stripe_signature(
            raw_body,
            get_header(headers, STRIPE_SIGNATURE_HEADER),
            secret,
            tolerance=stripe_tolerance,
        )

    logger.warning(f"[SIGNATURE] Platform {platform} does not send signed webhooks")
    return False


def sign_base64_hmac(raw_body: bytes, secret: str) -> str:
    """Produce a Shopify/WooCommerce style signature (tests, webhook replay tooling)."""
    return _base64_hmac(secret, raw_body)


def sign_stripe_payload(raw_body: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Produce a Stripe-Signature header value (tests, webhook replay tooling)."""
    ts = str(int(time.time()) if timestamp is None else timestamp)
    digest = hmac.new(secret.encode("utf-8"), ts.encode("utf-8") + b"." + raw_body, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def _query_message(params: Mapping[str, str]) -> str:
    return "&".join(
        f"{key}={value}"
        for key, value in sorted(params.items())
        if key not in ("hmac", "signature")
    )


def verify_query_hmac(params: Mapping[str, str], secret: Optional[str]) -> bool:
    """Shopify OAuth callback: hex HMAC-SHA256 over the sorted query without `hmac`/`signature`."""
    if not secret:
        logger.error("[SHOPIFY_OAUTH] Client secret not configured")
        return False
    received = params.get("hmac")
    if not received:
        logger.warning("[SHOPIFY_OAUTH] Missing hmac query parameter")
        return False
    computed = hmac.new(secret.encode("utf-8"), _query_message(params).encode("utf-8"), hashlib.sha256).hexdigest()
    is_valid = hmac.compare_digest(computed.encode("utf-8"), received.strip().lower().encode("utf-8"))
    if not is_valid:
        logger.warning("[SHOPIFY_OAUTH] Invalid callback HMAC")
    return is_valid


def sign_query(params: Mapping[str, str], secret: str) -> str:
    """Produce the `hmac` value Shopify appends to OAuth redirects (tests)."""
    return hmac.new(secret.encode("utf-8"), _query_message(params).encode("utf-8"), hashlib.sha256).hexdigest()
