"""Google Analytics 4 OAuth 2.0 flow endpoints.

WHAT:
    Authorization code flow with offline access. The callback exchanges the
    code, lists the GA4 properties the user can read (Admin API
    accountSummaries), connects the integration to the first one and queues
    the initial 30-day backfill.

WHY:
    GA has no webhooks; everything after connect is polling through the
    stored refresh token, so `access_type=offline` and `prompt=consent` are
    required to always receive one.

REFERENCES:
    - https://developers.google.com/identity/protocols/oauth2/web-server
    - https://developers.google.com/analytics/devguides/config/admin/v1/rest/v1beta/accountSummaries/list
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
from bizinsights.services.providers import GoogleAnalyticsAdapter, ProviderAPIError
from bizinsights.services.providers.google_analytics import GA_SCOPES, GOOGLE_AUTH_URL
from bizinsights.workers.arq_enqueue import enqueue_initial_sync

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth/google-analytics", tags=["Google Analytics OAuth"])


def _error_redirect(settings: Settings, message: str) -> RedirectResponse:
    return RedirectResponse(url=f"{settings.FRONTEND_URL}/integrations?ga_oauth=error&message={message}")


def _adapter(settings: Settings) -> GoogleAnalyticsAdapter:
    return GoogleAnalyticsAdapter(
        "",
        client_id=settings.GOOGLE_CLIENT_ID,
        client_secret=settings.GOOGLE_CLIENT_SECRET,
        redirect_uri=settings.GOOGLE_REDIRECT_URI,
        timeout=settings.PROVIDER_TIMEOUT_SECONDS,
    )


@router.get("/authorize")
async def google_analytics_authorize(
    organization_id: UUID = Query(...),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Redirect the user to Google's consent screen."""
    if not settings.GOOGLE_CLIENT_ID or not settings.GOOGLE_CLIENT_SECRET:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Google OAuth not configured. Missing CLIENT_ID or CLIENT_SECRET.",
        )
    require_membership(db, current_user, organization_id, MANAGER_ROLES)
    organization = db.query(Organization).filter(Organization.id == organization_id).first()

    state = encode_oauth_state({
        "organizationId": str(organization_id),
        "orgSlug": organization.slug if organization else None,
        "userId": str(current_user.id),
    })
    params = {
        "client_id": settings.GOOGLE_CLIENT_ID,
        "redirect_uri": settings.GOOGLE_REDIRECT_URI,
        "response_type": "code",
        "scope": " ".join(GA_SCOPES),
        "access_type": "offline",
        "prompt": "consent",
        "include_granted_scopes": "true",
        "state": state,
    }
    logger.info(f"[GA_OAUTH] Redirecting user {current_user.id} to Google consent screen")
    return RedirectResponse(url=f"{GOOGLE_AUTH_URL}?{urlencode(params)}")


@router.get("/callback")
async def google_analytics_callback(
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    if error:
        logger.error(f"[GA_OAUTH] OAuth error: {error}")
        return _error_redirect(settings, error)
    if not code or not state:
        return _error_redirect(settings, "missing_parameters")

    try:
        state_data = decode_oauth_state(state)
        organization_id = UUID(str(state_data.get("organizationId")))
    except ValueError as e:
        logger.error(f"[GA_OAUTH] Invalid state: {e}")
        return _error_redirect(settings, "invalid_state")
    if not db.query(Organization).filter(Organization.id == organization_id).first():
        return _error_redirect(settings, "invalid_organization")

    adapter = _adapter(settings)
    try:
        bundle = await adapter.exchange_code(code)
        adapter.with_access_token(bundle.access_token)
        properties = await adapter.list_properties()
    except ProviderAPIError as e:
        logger.exception(f"[GA_OAUTH] Token exchange or property listing failed: {e}")
        return _error_redirect(settings, "token_exchange_failed")

    if not properties:
        logger.warning(f"[GA_OAUTH] No GA4 properties for organization {organization_id}")
        return _error_redirect(settings, "no_properties")

    selected = properties[0]
    integration = integration_lifecycle.connect(
        db,
        organization_id,
        PlatformEnum.google_analytics,
        selected["property_id"],
        access_token=bundle.access_token,
        refresh_token=bundle.refresh_token,
        token_expires_at=bundle.expires_at,
        scopes=scope_catalog.parse_scope_string(bundle.scope) or GA_SCOPES,
        metadata={
            "account_id": selected.get("account_id"),
            "property_id": selected["property_id"],
            "property_display_name": selected.get("display_name"),
            "properties": properties,
            "scope": bundle.scope,
        },
    )
    logger.info(f"[GA_OAUTH] Connected GA4 property {selected['property_id']} to organization {organization_id}")

    await enqueue_initial_sync(db, integration)
    return RedirectResponse(
        url=f"{settings.FRONTEND_URL}/integrations?ga_oauth=success&integration_id={integration.id}"
    )
