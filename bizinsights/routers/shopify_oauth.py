"""Shopify OAuth install flow.

WHAT:
    /auth/shopify/authorize redirects to the shop's consent screen;
    /auth/shopify/callback verifies Shopify's query HMAC and our signed state,
    exchanges the code for an offline Admin token, checks the granted scopes,
    connects the integration, registers webhooks and queues the initial
    30-day backfill.

WHY:
    The state binds the callback to the organization that started the flow,
    and the query HMAC proves the redirect came from Shopify.

REFERENCES:
    - https://shopify.dev/docs/apps/auth/get-access-tokens/authorization-code-grant
    - https://shopify.dev/docs/apps/auth/get-access-tokens/authorization-code-grant#step-3-verify-the-installation-request
"""

import logging
import re
from urllib.parse import urlencode
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from bizinsights.database import get_db
from bizinsights.deps import MANAGER_ROLES, Settings, get_current_user, get_settings, require_membership
from bizinsights.models import Organization, PlatformEnum, User
from bizinsights.security import decode_shop_state, encode_shop_state
from bizinsights.services import integration_lifecycle, scope_catalog
from bizinsights.services.integration_metadata import update_metadata
from bizinsights.services.providers import ProviderAPIError, ShopifyAdapter
from bizinsights.services.providers.shopify import normalize_shop_domain
from bizinsights.services.signature_verifier import verify_query_hmac
from bizinsights.telemetry import capture_exception
from bizinsights.workers.arq_enqueue import enqueue_initial_sync

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth/shopify", tags=["Shopify OAuth"])

# =============================================================================
# CONFIGURATION
# =============================================================================

SHOPIFY_SCOPES = ["read_orders", "read_customers", "read_products", "read_analytics"]

_SHOP_DOMAIN = re.compile(r"^[a-z0-9][a-z0-9\-]{1,98}[a-z0-9]\.myshopify\.com$")


def _validate_shopify_config(settings: Settings) -> None:
    missing = [
        name for name in ("SHOPIFY_CLIENT_ID", "SHOPIFY_CLIENT_SECRET")
        if not getattr(settings, name)
    ]
    if missing:
        logger.error("[SHOPIFY_OAUTH] Missing required configuration: %s", missing)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Shopify integration not configured. Missing: {', '.join(missing)}",
        )


def _error_redirect(settings: Settings, message: str) -> RedirectResponse:
    return RedirectResponse(url=f"{settings.FRONTEND_URL}/integrations?shopify_oauth=error&message={message}")


# =============================================================================
# OAUTH ENDPOINTS
# =============================================================================

@router.get("/authorize")
async def shopify_authorize(
    organization_id: UUID = Query(...),
    shop: str = Query(..., description="Shop domain, e.g. 'mystore' or 'mystore.myshopify.com'"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Redirect the user to the shop's OAuth consent screen."""
    _validate_shopify_config(settings)
    require_membership(db, current_user, organization_id, MANAGER_ROLES)

    shop_domain = normalize_shop_domain(shop)
    if not _SHOP_DOMAIN.match(shop_domain):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid Shopify store domain: {shop_domain}. Expected format: mystore.myshopify.com",
        )

    params = {
        "client_id": settings.SHOPIFY_CLIENT_ID,
        "scope": ",".join(SHOPIFY_SCOPES),
        "redirect_uri": f"{settings.BACKEND_URL.rstrip('/')}/auth/shopify/callback",
        "state": encode_shop_state(str(organization_id), shop_domain),
    }
    logger.info(f"[SHOPIFY_OAUTH] Redirecting user {current_user.id} to Shopify consent for {shop_domain}")
    return RedirectResponse(url=f"https://{shop_domain}/admin/oauth/authorize?{urlencode(params)}")


@router.get("/callback")
async def shopify_callback(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Complete the install and connect the shop.

    Every failure redirects back to the frontend with a short error code.
    """
    _validate_shopify_config(settings)
    params = dict(request.query_params)

    if params.get("error"):
        logger.error(f"[SHOPIFY_OAUTH] OAuth error: {params.get('error')} - {params.get('error_description')}")
        return _error_redirect(settings, params["error"])

    code, shop, state = params.get("code"), params.get("shop"), params.get("state")
    if not code or not shop or not state:
        logger.error("[SHOPIFY_OAUTH] Missing code, shop or state")
        return _error_redirect(settings, "missing_parameters")

    if not verify_query_hmac(params, settings.SHOPIFY_CLIENT_SECRET):
        return _error_redirect(settings, "invalid_hmac")

    try:
        state_data = decode_shop_state(state)
    except ValueError as e:
        logger.error(f"[SHOPIFY_OAUTH] Invalid state: {e}")
        return _error_redirect(settings, "invalid_state")

    shop_domain = normalize_shop_domain(shop)
    if shop_domain != state_data["shop"]:
        logger.error(f"[SHOPIFY_OAUTH] Shop mismatch: expected {state_data['shop']}, got {shop_domain}")
        return _error_redirect(settings, "shop_mismatch")

    try:
        organization_id = UUID(state_data["organization_id"])
    except ValueError:
        return _error_redirect(settings, "invalid_state")
    if not db.query(Organization).filter(Organization.id == organization_id).first():
        logger.error(f"[SHOPIFY_OAUTH] Unknown organization {organization_id}")
        return _error_redirect(settings, "invalid_organization")

    adapter = ShopifyAdapter(
        shop_domain,
        api_version=settings.SHOPIFY_API_VERSION,
        timeout=settings.PROVIDER_TIMEOUT_SECONDS,
    )
    try:
        token_data = await adapter.exchange_code(code, settings.SHOPIFY_CLIENT_ID, settings.SHOPIFY_CLIENT_SECRET)
    except ProviderAPIError as e:
        logger.exception(f"[SHOPIFY_OAUTH] Token exchange failed for {shop_domain}: {e}")
        return _error_redirect(settings, "token_exchange_failed")

    granted = scope_catalog.parse_scope_string(token_data.get("scope"))
    validation = scope_catalog.validate_scopes(PlatformEnum.shopify, granted)
    if validation.missing:
        logger.error(f"[SHOPIFY_OAUTH] Required scopes not granted for {shop_domain}: {validation.missing}")
        return _error_redirect(settings, "missing_required_scopes")

    adapter.with_access_token(token_data["access_token"])
    try:
        shop_data = await adapter.get_shop()
    except ProviderAPIError as e:
        logger.exception(f"[SHOPIFY_OAUTH] Failed to fetch shop info for {shop_domain}: {e}")
        return _error_redirect(settings, "shop_fetch_failed")

    integration = integration_lifecycle.connect(
        db,
        organization_id,
        PlatformEnum.shopify,
        shop_domain,
        access_token=token_data["access_token"],
        scopes=granted,
        metadata={
            "shop_name": shop_data.get("name", shop_domain),
            "currency": shop_data.get("currency"),
            "timezone": shop_data.get("iana_timezone"),
            "plan_name": shop_data.get("plan_name"),
            "uninstalled_at": None,
        },
    )
    logger.info(f"[SHOPIFY_OAUTH] Connected {shop_domain} to organization {organization_id}")

    try:
        webhook_ids = await adapter.register_webhooks(f"{settings.BACKEND_URL.rstrip('/')}/webhooks/shopify")
        update_metadata(integration, webhook_ids=webhook_ids)
        db.commit()
    except ProviderAPIError as e:
        logger.exception(f"[SHOPIFY_OAUTH] Webhook registration failed for {shop_domain}: {e}")
        capture_exception(e, extra={"operation": "shopify_register_webhooks", "integration_id": str(integration.id)})

    await enqueue_initial_sync(db, integration)
    return RedirectResponse(
        url=f"{settings.FRONTEND_URL}/integrations?shopify_oauth=success&integration_id={integration.id}"
    )
