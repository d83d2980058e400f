"""Integration management endpoints.

WHAT:
    List/inspect/disconnect integrations, manage scopes, trigger manual syncs,
    report sync health, browse the webhook ledger, switch the Google
    Analytics property and connect WooCommerce stores with REST API keys.

WHY:
    Connect flows and webhooks create and feed integrations; these endpoints
    are how an organization's members operate them afterwards.

REFERENCES:
    - bizinsights/services/integration_lifecycle.py
    - bizinsights/services/historical_sync.py (manual sync + health)
"""

import logging
import secrets
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..deps import (
    MANAGER_ROLES,
    Settings,
    get_current_user,
    get_integration_for_user,
    get_settings,
    require_membership,
)
from ..models import Integration, PlatformEnum, RoleEnum, User
from ..services import event_ledger, integration_lifecycle, scope_catalog
from ..services.historical_sync import (
    INITIAL_SYNC_DAYS,
    ManualSyncRateLimited,
    check_manual_sync_allowed,
    manual_sync_days,
    sync_status,
)
from ..services.integration_lifecycle import InvalidTransitionError
from ..services.integration_metadata import load_metadata, update_metadata
from ..services.providers import (
    ProviderAPIError,
    ReauthorizationRequired,
    WooCommerceAdapter,
    build_adapter,
)
from ..services.providers.woocommerce import normalize_store_url
from ..telemetry import capture_exception
from ..utils.dates import utcnow
from ..workers.arq_enqueue import enqueue_backfill_job, enqueue_initial_sync

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/integrations",
    tags=["Integrations"],
    responses={
        401: {"model": schemas.ErrorResponse, "description": "Unauthorized"},
        403: {"model": schemas.ErrorResponse, "description": "Forbidden"},
        404: {"model": schemas.ErrorResponse, "description": "Not Found"},
    },
)

# Viewers can look but not trigger syncs
SYNC_ROLES = (RoleEnum.owner, RoleEnum.admin, RoleEnum.member)


def integration_out(integration: Integration) -> schemas.IntegrationOut:
    meta = load_metadata(integration)
    return schemas.IntegrationOut(
        id=integration.id,
        organization_id=integration.organization_id,
        platform=integration.platform,
        platform_account_id=integration.platform_account_id,
        status=integration.status,
        granted_scopes=list(integration.granted_scopes or []),
        last_sync_at=integration.last_sync_at,
        created_at=integration.created_at,
        updated_at=integration.updated_at,
        requires_reconnection=meta.requires_reconnection,
        last_sync_error=meta.last_sync_error.model_dump(mode="json") if meta.last_sync_error else None,
    )


# =============================================================================
# LIST / DETAIL / DISCONNECT
# =============================================================================

@router.get("", response_model=schemas.IntegrationListResponse)
def list_integrations(
    organization_id: UUID = Query(..., description="Organization to list integrations for"),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    require_membership(db, current_user, organization_id)
    integrations = (
        db.query(Integration)
        .filter(Integration.organization_id == organization_id)
        .order_by(Integration.created_at.asc())
        .all()
    )
    return schemas.IntegrationListResponse(
        integrations=[integration_out(i) for i in integrations],
        total=len(integrations),
    )


@router.post("/scopes/validate")
def validate_scope_set(
    payload: schemas.ScopeValidationRequest,
    current_user: User = Depends(get_current_user),
):
    """Validate an arbitrary scope set for a platform without touching any integration."""
    validation = scope_catalog.validate_scopes(payload.platform, payload.scopes)
    return {
        "platform": payload.platform.value,
        "validation": validation.to_dict(),
        "risk": scope_catalog.assess_risk(payload.platform, validation.resolved),
        "data_usage": scope_catalog.estimate_data_usage(payload.platform, validation.resolved),
    }


@router.get("/{integration_id}", response_model=schemas.IntegrationOut)
def get_integration(
    integration_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return integration_out(get_integration_for_user(db, current_user, integration_id))


@router.delete("/{integration_id}", response_model=schemas.IntegrationOut)
def disconnect_integration(
    integration_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Soft disconnect. Credentials are dropped; collected data points stay."""
    integration = get_integration_for_user(db, current_user, integration_id, MANAGER_ROLES)
    try:
        integration_lifecycle.disconnect(db, integration, reason="user_request")
    except InvalidTransitionError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Integration is already disconnected")
    logger.info(f"[INTEGRATIONS] User {current_user.id} disconnected integration {integration.id}")
    return integration_out(integration)


# =============================================================================
# SCOPES
# =============================================================================

@router.get("/{integration_id}/scopes")
def get_scopes(
    integration_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    integration = get_integration_for_user(db, current_user, integration_id)
    granted = list(integration.granted_scopes or [])
    meta = load_metadata(integration)
    return {
        "integration_id": str(integration.id),
        "platform": integration.platform.value,
        "granted_scopes": granted,
        "available_scopes": [scope.to_dict() for scope in scope_catalog.catalog(integration.platform)],
        "validation": scope_catalog.validate_scopes(integration.platform, granted).to_dict(),
        "risk": scope_catalog.assess_risk(integration.platform, granted),
        "data_usage": scope_catalog.estimate_data_usage(integration.platform, granted),
        "scope_update_pending": meta.scope_update_pending,
        "scope_change_request": meta.scope_change_request,
        "requires_reconnection": meta.requires_reconnection,
    }


@router.put("/{integration_id}/scopes")
def update_scopes(
    integration_id: UUID,
    payload: schemas.ScopeUpdateRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    integration = get_integration_for_user(db, current_user, integration_id, MANAGER_ROLES)
    result = integration_lifecycle.update_scopes(
        db, integration, payload.scopes, requested_by=current_user.id, force=payload.force
    )
    if not result.validation.valid:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "Invalid scope configuration", "validation": result.validation.to_dict()},
        )

    if not result.changed:
        message = "No scope changes"
    elif result.requires_reconnection:
        message = "Scopes updated. Reconnect the integration to grant the new permissions."
    else:
        message = "Scopes updated"
    return {
        "success": True,
        "message": message,
        "changed": result.changed,
        "scopes": result.current,
        "added": result.added,
        "removed": result.removed,
        "impact": scope_catalog.change_impact(integration.platform, result.added, result.removed),
        "requires_reconnection": result.requires_reconnection,
    }


# =============================================================================
# SYNC
# =============================================================================

@router.post("/{integration_id}/sync", response_model=schemas.SyncJobResponse)
async def trigger_sync(
    integration_id: UUID,
    payload: Optional[schemas.SyncRequest] = Body(default=None),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
):
    """Queue a manual backfill.

    Only active integrations sync; at most MANUAL_SYNC_LIMIT manual syncs per
    window unless `force` is set (429 with `retry_after` otherwise).
    """
    payload = payload or schemas.SyncRequest()
    integration = get_integration_for_user(db, current_user, integration_id, SYNC_ROLES)
    if not integration.is_active:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Integration must be active to sync (current status: {integration.status.value})",
        )

    if not payload.force:
        try:
            check_manual_sync_allowed(db, integration, settings)
        except ManualSyncRateLimited as e:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail={"error": str(e), "retry_after": e.retry_after},
                headers={"Retry-After": str(e.retry_after)},
            )

    days = manual_sync_days(integration, payload.sync_type)
    entry = event_ledger.record_manual_sync(db, integration, {
        "sync_type": payload.sync_type,
        "days": days,
        "forced": payload.force,
        "requested_by": str(current_user.id),
    })

    try:
        job = await enqueue_backfill_job(integration.id, days, reason="manual_sync", ledger_entry_id=entry.id)
    except Exception as e:
        logger.exception(f"[INTEGRATIONS] Failed to enqueue manual sync for {integration.id}: {e}")
        capture_exception(e, extra={"operation": "manual_sync", "integration_id": str(integration.id)})
        event_ledger.mark_failed(db, entry, f"Could not enqueue sync: {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Sync queue unavailable")

    return schemas.SyncJobResponse(
        message=f"{payload.sync_type.capitalize()} sync started for the last {days} days",
        job_id=job.get("job_id"),
        sync_type=payload.sync_type,
        days=days,
        ledger_entry_id=entry.id,
    )


@router.get("/{integration_id}/sync/status")
def get_sync_status(
    integration_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    integration = get_integration_for_user(db, current_user, integration_id)
    return sync_status(db, integration)


@router.get("/{integration_id}/webhook-events", response_model=List[schemas.WebhookEventOut])
def list_webhook_events(
    integration_id: UUID,
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    integration = get_integration_for_user(db, current_user, integration_id)
    return event_ledger.recent_events(db, integration, limit=limit)


# =============================================================================
# GOOGLE ANALYTICS PROPERTY
# =============================================================================

@router.post("/{integration_id}/google-analytics/property", response_model=schemas.IntegrationOut)
async def select_google_analytics_property(
    integration_id: UUID,
    payload: schemas.PropertySelectRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Point a Google Analytics integration at another GA4 property and backfill it."""
    integration = get_integration_for_user(db, current_user, integration_id, MANAGER_ROLES)
    if integration.platform != PlatformEnum.google_analytics:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Not a Google Analytics integration")

    property_id = payload.property_id.removeprefix("properties/")
    adapter = build_adapter(integration)
    try:
        properties = await integration_lifecycle.call_with_refresh(
            db, integration, adapter, lambda a: a.list_properties()
        )
    except ReauthorizationRequired:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Google Analytics authorization expired. Please reconnect.",
        )
    except ProviderAPIError as e:
        logger.exception(f"[INTEGRATIONS] Listing GA properties failed for {integration.id}: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Could not list Google Analytics properties")

    selected = next((p for p in properties if p["property_id"] == property_id), None)
    if not selected:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Property not found for this account")

    integration.platform_account_id = property_id
    update_metadata(
        integration,
        property_id=property_id,
        property_display_name=selected.get("display_name"),
        account_id=selected.get("account_id"),
        properties=properties,
        property_changed=utcnow(),
    )
    db.commit()
    logger.info(f"[INTEGRATIONS] Integration {integration.id} switched to GA property {property_id}")

    try:
        await enqueue_backfill_job(integration.id, INITIAL_SYNC_DAYS, reason="property_change")
    except Exception as e:
        logger.exception(f"[INTEGRATIONS] Could not enqueue property backfill for {integration.id}: {e}")
        capture_exception(e, extra={"operation": "property_change", "integration_id": str(integration.id)})

    return integration_out(integration)


# =============================================================================
# WOOCOMMERCE CONNECT
# =============================================================================

def _woocommerce_connect_error(error: ProviderAPIError) -> str:
    if error.status_code in (401, 403):
        return "Invalid API credentials"
    if error.status_code == 404:
        return "WooCommerce REST API not found"
    return "Failed to connect to WooCommerce store"


@router.post("/woocommerce/connect", response_model=schemas.ConnectResponse)
async def connect_woocommerce(
    payload: schemas.WooCommerceConnectRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
):
    """Connect a WooCommerce store with REST API consumer keys.

    Tests the keys against /system_status, stores them encrypted, generates a
    per-store webhook secret and registers the order/customer/product
    webhooks against this organization's delivery URL.
    """
    require_membership(db, current_user, payload.organization_id, MANAGER_ROLES)
    store_url = normalize_store_url(payload.store_url)
    credential = f"{payload.consumer_key}:{payload.consumer_secret}"
    adapter = WooCommerceAdapter(store_url, credential, timeout=settings.PROVIDER_TIMEOUT_SECONDS)

    try:
        system_status = await adapter.test_connection()
    except ProviderAPIError as e:
        logger.warning(f"[WOOCOMMERCE] Connection test failed for {store_url}: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=_woocommerce_connect_error(e))

    webhook_secret = secrets.token_hex(32)
    environment: Dict[str, Any] = system_status.get("environment") or {}
    integration = integration_lifecycle.connect(
        db,
        payload.organization_id,
        PlatformEnum.woocommerce,
        store_url,
        access_token=credential,
        scopes=["read_write"],
        metadata={
            "webhook_secret": webhook_secret,
            "store_url": store_url,
            "wc_version": environment.get("version"),
        },
    )

    delivery_url = f"{settings.BACKEND_URL.rstrip('/')}/webhooks/woocommerce?org={payload.organization_id}"
    webhook_ids: List[str] = []
    try:
        webhook_ids = await adapter.register_webhooks(delivery_url, webhook_secret)
    except ProviderAPIError as e:
        # The store is connected; polling backfills still work without webhooks
        logger.exception(f"[WOOCOMMERCE] Webhook registration failed for {store_url}: {e}")
        capture_exception(e, extra={"operation": "woocommerce_register_webhooks", "integration_id": str(integration.id)})
    update_metadata(integration, webhook_ids=webhook_ids)
    db.commit()

    initial_sync: Optional[Dict[str, Any]] = await enqueue_initial_sync(db, integration)
    return schemas.ConnectResponse(
        integration=integration_out(integration),
        webhooks_registered=len(webhook_ids),
        initial_sync=initial_sync,
    )
