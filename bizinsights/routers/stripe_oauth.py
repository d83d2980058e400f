"""Stripe Connect OAuth flow endpoints.

WHAT:
    /auth/stripe/authorize sends the user to Stripe Connect; the callback
    trades the code for the connected account's tokens and connects the
    integration (platform account id = `stripe_user_id`).

REFERENCES:
    - https://docs.stripe.com/connect/oauth-reference
"""

import logging
from typing import Optional
from urllib.parse import urlencode
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from bizinsights.database import get_db
from bizinsights.deps import MANAGER_ROLES, Settings, get_current_user, get_settings, require_membership
from bizinsights.models import Organization, PlatformEnum, User
from bizinsights.security import decode_oauth_state, encode_oauth_state
from bizinsights.services import integration_lifecycle, scope_catalog
from bizinsights.services.providers import ProviderAPIError, StripeAdapter
from bizinsights.services.providers.stripe import CONNECT_AUTHORIZE_URL
from bizinsights.workers.arq_enqueue import enqueue_initial_sync

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth/stripe", tags=["Stripe OAuth"])

STRIPE_SCOPE = "read_only"


def _error_redirect(settings: Settings, message: str) -> RedirectResponse:
    return RedirectResponse(url=f"{settings.FRONTEND_URL}/integrations?stripe_oauth=error&message={message}")


@router.get("/authorize")
async def stripe_authorize(
    organization_id: UUID = Query(...),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    if not settings.STRIPE_CLIENT_ID or not settings.STRIPE_SECRET_KEY:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Stripe Connect not configured. Missing STRIPE_CLIENT_ID or STRIPE_SECRET_KEY.",
        )
    require_membership(db, current_user, organization_id, MANAGER_ROLES)

    params = {
        "response_type": "code",
        "client_id": settings.STRIPE_CLIENT_ID,
        "scope": STRIPE_SCOPE,
        "redirect_uri": f"{settings.BACKEND_URL.rstrip('/')}/auth/stripe/callback",
        "state": encode_oauth_state({"organizationId": str(organization_id), "userId": str(current_user.id)}),
    }
    logger.info(f"[STRIPE_OAUTH] Redirecting user {current_user.id} to Stripe Connect")
    return RedirectResponse(url=f"{CONNECT_AUTHORIZE_URL}?{urlencode(params)}")


@router.get("/callback")
async def stripe_callback(
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    error_description: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    if error:
        logger.error(f"[STRIPE_OAUTH] OAuth error: {error} - {error_description}")
        return _error_redirect(settings, error)
    if not code or not state:
        return _error_redirect(settings, "missing_parameters")

    try:
        state_data = decode_oauth_state(state)
        organization_id = UUID(str(state_data.get("organizationId")))
    except ValueError as e:
        logger.error(f"[STRIPE_OAUTH] Invalid state: {e}")
        return _error_redirect(settings, "invalid_state")
    if not db.query(Organization).filter(Organization.id == organization_id).first():
        return _error_redirect(settings, "invalid_organization")

    adapter = StripeAdapter("", client_secret=settings.STRIPE_SECRET_KEY, timeout=settings.PROVIDER_TIMEOUT_SECONDS)
    try:
        token_data = await adapter.exchange_code(code)
    except ProviderAPIError as e:
        logger.exception(f"[STRIPE_OAUTH] Token exchange failed: {e}")
        return _error_redirect(settings, "token_exchange_failed")

    integration = integration_lifecycle.connect(
        db,
        organization_id,
        PlatformEnum.stripe,
        token_data["stripe_user_id"],
        access_token=token_data["access_token"],
        refresh_token=token_data.get("refresh_token"),
        scopes=scope_catalog.parse_scope_string(token_data.get("scope")) or [STRIPE_SCOPE],
        metadata={
            "livemode": token_data.get("livemode"),
            "scope": token_data.get("scope"),
            "publishable_key": token_data.get("stripe_publishable_key"),
        },
    )
    logger.info(f"[STRIPE_OAUTH] Connected Stripe account {integration.platform_account_id} to {organization_id}")

    await enqueue_initial_sync(db, integration)
    return RedirectResponse(
        url=f"{settings.FRONTEND_URL}/integrations?stripe_oauth=success&integration_id={integration.id}"
    )
