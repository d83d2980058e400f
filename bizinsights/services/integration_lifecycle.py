"""Integration lifecycle: status transitions, credentials, scopes, token refresh.

WHAT:
    Every status change of an Integration goes through this module:

        disconnected --connect--> active
        active --sync start--> syncing --sync end--> active
        active/syncing --failure--> error
        error --successful sync--> active
        active/syncing/error --disconnect--> disconnected

    Illegal transitions raise InvalidTransitionError. Scope changes that need
    a fresh authorization keep the integration active but set
    `requires_reconnection`, which only a new connect clears.

WHY:
    Webhooks, backfill jobs and API calls all mutate integrations
    concurrently; keeping the rules in one place keeps the state machine
    honest.

    Tokens are refreshed lazily: callers use the stored token and only a 401
    triggers a refresh. The refresh is single-flight per integration so a
    burst of concurrent 401s costs one token request, then each caller
    retries once.

REFERENCES:
    - bizinsights/services/scope_catalog.py
    - bizinsights/services/integration_metadata.py
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar
from uuid import UUID

from sqlalchemy.orm import Session

from bizinsights.models import Integration, IntegrationStatusEnum, PlatformEnum
from bizinsights.security import encrypt_secret
from bizinsights.services import scope_catalog
from bizinsights.services.integration_metadata import SyncError, load_metadata, save_metadata
from bizinsights.services.providers.base import (
    ProviderAdapter,
    ProviderAPIError,
    ReauthorizationRequired,
    TokenBundle,
)
from bizinsights.telemetry import capture_exception
from bizinsights.utils.dates import utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

Status = IntegrationStatusEnum

ALLOWED_TRANSITIONS = {
    Status.disconnected: {Status.active},
    Status.active: {Status.active, Status.syncing, Status.error, Status.disconnected},
    Status.syncing: {Status.active, Status.error, Status.disconnected},
    Status.error: {Status.active, Status.syncing, Status.error, Status.disconnected},
}


class InvalidTransitionError(Exception):
    def __init__(self, current: IntegrationStatusEnum, target: IntegrationStatusEnum):
        super().__init__(f"Cannot move integration from {current.value} to {target.value}")
        self.current = current
        self.target = target


def _transition(integration: Integration, target: IntegrationStatusEnum) -> None:
    current = integration.status or Status.active
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(current, target)
    integration.status = target


def token_context(platform: PlatformEnum, account_id: str) -> str:
    """Fernet context label used when encrypting an integration's tokens."""
    return f"{platform.value}:{account_id}"


# ================================================================
# Connect / disconnect
# ================================================================

def connect(
    db: Session,
    organization_id: UUID,
    platform: PlatformEnum,
    account_id: str,
    *,
    access_token: Optional[str] = None,
    refresh_token: Optional[str] = None,
    token_expires_at: Optional[datetime] = None,
    scopes: Optional[Iterable[str]] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Integration:
    """Create or reactivate the single integration for (organization, platform).

    A previous row, disconnected or not, is reused: credentials and scopes are
    replaced and any pending reconnection request is cleared.
    """
    integration = (
        db.query(Integration)
        .filter(Integration.organization_id == organization_id, Integration.platform == platform)
        .first()
    )
    if integration is None:
        integration = Integration(
            organization_id=organization_id,
            platform=platform,
            platform_account_id=account_id,
            status=Status.active,
            meta={},
        )
        db.add(integration)
        action = "Created"
    else:
        _transition(integration, Status.active)
        action = "Reconnected"

    context = token_context(platform, account_id)
    integration.platform_account_id = account_id
    integration.access_token_enc = encrypt_secret(access_token, context=context) if access_token else None
    integration.refresh_token_enc = encrypt_secret(refresh_token, context=context) if refresh_token else None
    integration.token_expires_at = token_expires_at
    if scopes is not None:
        integration.granted_scopes = scope_catalog.resolve_dependencies(platform, scopes)

    meta = load_metadata(integration)
    meta = meta.model_validate({
        **meta.model_dump(),
        **(metadata or {}),
        "connected_at": utcnow(),
        "disconnected_at": None,
        "disconnect_reason": None,
        "requires_reconnection": False,
        "reconnection_reason": None,
        "scope_update_pending": False,
        "scope_change_request": None,
        "last_sync_error": None,
    })
    save_metadata(integration, meta)

    db.commit()
    db.refresh(integration)
    logger.info(f"[LIFECYCLE] {action} {platform.value} integration {integration.id} for org {organization_id}")
    return integration


def disconnect(db: Session, integration: Integration, reason: str = "user_request") -> Integration:
    """Soft disconnect: credentials cleared, data points kept."""
    _transition(integration, Status.disconnected)
    integration.access_token_enc = None
    integration.refresh_token_enc = None
    integration.token_expires_at = None

    meta = load_metadata(integration)
    meta.disconnected_at = utcnow()
    meta.disconnect_reason = reason
    meta.webhook_secret = None
    save_metadata(integration, meta)

    db.commit()
    logger.info(f"[LIFECYCLE] Disconnected integration {integration.id} ({reason})")
    return integration


# ================================================================
# Status
# ================================================================

def mark_syncing(db: Session, integration: Integration) -> None:
    _transition(integration, Status.syncing)
    db.commit()


def mark_active(db: Session, integration: Integration) -> None:
    _transition(integration, Status.active)
    meta = load_metadata(integration)
    meta.last_sync_error = None
    save_metadata(integration, meta)
    db.commit()


def mark_error(
    db: Session,
    integration: Integration,
    message: str,
    *,
    requires_reconnection: bool = False,
    reason: Optional[str] = None,
) -> None:
    _transition(integration, Status.error)
    meta = load_metadata(integration)
    meta.last_sync_error = SyncError(message=message, timestamp=utcnow())
    if requires_reconnection:
        meta.requires_reconnection = True
        meta.reconnection_reason = reason or "token_invalid"
    save_metadata(integration, meta)
    db.commit()
    logger.warning(f"[LIFECYCLE] Integration {integration.id} -> error: {message}")


def mark_sync_interrupted(
    db: Session,
    integration: Integration,
    previous: IntegrationStatusEnum,
    message: str,
) -> None:
    """Transient sync failure: leave `syncing` for the status held before the sync."""
    _transition(integration, previous)
    meta = load_metadata(integration)
    meta.last_sync_error = SyncError(message=message, timestamp=utcnow(), transient=True)
    save_metadata(integration, meta)
    db.commit()
    logger.info(f"[LIFECYCLE] Sync for {integration.id} interrupted ({message}), back to {previous.value}")


def touch(integration: Integration, at: Optional[datetime] = None) -> None:
    """Stamp lastSyncAt. Not committed: it rides on the caller's transaction."""
    integration.last_sync_at = at or utcnow()


def store_tokens(db: Session, integration: Integration, bundle: TokenBundle) -> None:
    context = token_context(integration.platform, integration.platform_account_id)
    integration.access_token_enc = encrypt_secret(bundle.access_token, context=context)
    if bundle.refresh_token:
        integration.refresh_token_enc = encrypt_secret(bundle.refresh_token, context=context)
    integration.token_expires_at = bundle.expires_at
    db.commit()


# ================================================================
# Scopes
# ================================================================

@dataclass
class ScopeUpdate:
    validation: scope_catalog.ScopeValidation
    previous: List[str]
    current: List[str] = field(default_factory=list)
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    changed: bool = False
    requires_reconnection: bool = False


def update_scopes(
    db: Session,
    integration: Integration,
    requested: Iterable[str],
    requested_by: UUID,
    force: bool = False,
) -> ScopeUpdate:
    """Record a scope change request. Invalid requests are returned unapplied."""
    validation = scope_catalog.validate_scopes(integration.platform, requested)
    previous = list(integration.granted_scopes or [])
    result = ScopeUpdate(validation=validation, previous=previous)
    if not validation.valid:
        return result

    resolved = validation.resolved
    result.current = resolved
    result.added = [s for s in resolved if s not in previous]
    result.removed = [s for s in previous if s not in resolved]
    result.changed = bool(result.added or result.removed)
    if not result.changed and not force:
        result.current = previous
        return result

    meta = load_metadata(integration)
    meta.scope_update_pending = result.changed
    if result.changed:
        meta.scope_change_request = {
            "requested_at": utcnow().isoformat(),
            "requested_by": str(requested_by),
            "changes": {"added": result.added, "removed": result.removed},
        }
    result.requires_reconnection = result.changed and scope_catalog.requires_reconnection(
        integration.platform, result.added, result.removed
    )
    if result.requires_reconnection:
        meta.requires_reconnection = True
        meta.reconnection_reason = "scope_update"
    save_metadata(integration, meta)
    integration.granted_scopes = resolved

    db.commit()
    logger.info(
        f"[LIFECYCLE] Scopes for {integration.id} updated by {requested_by}: "
        f"+{result.added} -{result.removed} (reconnect={result.requires_reconnection})"
    )
    return result


# ================================================================
# Token refresh
# ================================================================

class TokenRefresher:
    """Single-flight token refresh per integration.

    Concurrent callers that hit a 401 await the same refresh. A caller whose
    401 came from a token that has since been replaced gets the newer token
    without triggering another refresh. Entries for an integration are dropped
    once its reuse window has passed and nothing is refreshing it.
    """

    REUSE_WINDOW_SECONDS = 60

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._locks: Dict[Any, asyncio.Lock] = {}
        self._inflight: Dict[Any, "asyncio.Task[TokenBundle]"] = {}
        self._latest: Dict[Any, Tuple[TokenBundle, float]] = {}

    async def refresh(
        self,
        key: Any,
        failed_token: Optional[str],
        do_refresh: Callable[[], Awaitable[TokenBundle]],
    ) -> TokenBundle:
        self._prune()
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            latest = self._recent(key)
            if latest is not None and latest.access_token != failed_token and key not in self._inflight:
                return latest
            task = self._inflight.get(key)
            if task is None:
                task = asyncio.ensure_future(do_refresh())
                self._inflight[key] = task
                task.add_done_callback(lambda done: self._finish(key, done))
        return await task

    def _finish(self, key: Any, task: "asyncio.Task[TokenBundle]") -> None:
        self._inflight.pop(key, None)
        if not task.cancelled() and task.exception() is None:
            self._latest[key] = (task.result(), self._clock())

    def _recent(self, key: Any) -> Optional[TokenBundle]:
        entry = self._latest.get(key)
        if entry is None or self._clock() - entry[1] > self.REUSE_WINDOW_SECONDS:
            return None
        return entry[0]

    def _prune(self) -> None:
        now = self._clock()
        for key, (_, refreshed_at) in list(self._latest.items()):
            if now - refreshed_at > self.REUSE_WINDOW_SECONDS:
                del self._latest[key]
        for key, lock in list(self._locks.items()):
            if key not in self._latest and key not in self._inflight and not lock.locked():
                del self._locks[key]


refresher = TokenRefresher()


async def call_with_refresh(
    db: Session,
    integration: Integration,
    adapter: ProviderAdapter,
    operation: Callable[[ProviderAdapter], Awaitable[T]],
    token_refresher: Optional[TokenRefresher] = None,
) -> T:
    """Run `operation(adapter)`; on a 401 refresh once and retry once.

    Raises:
        ReauthorizationRequired: refresh impossible or failed, or the retry
            was rejected too. The integration is marked `error` with
            `requires_reconnection` first.
        ProviderAPIError: any other provider failure, unchanged.
    """
    token_refresher = token_refresher or refresher
    try:
        return await operation(adapter)
    except ProviderAPIError as e:
        if not e.is_unauthorized:
            raise
        failed_token = adapter.access_token

    if not adapter.supports_refresh:
        raise _reauthorization_required(db, integration, "Provider rejected the stored credentials")

    logger.info(f"[LIFECYCLE] 401 from {integration.platform.value} for {integration.id}, refreshing token")
    try:
        bundle = await token_refresher.refresh(integration.id, failed_token, adapter.refresh_access_token)
    except ProviderAPIError as e:
        capture_exception(e, extra={"integration_id": str(integration.id), "stage": "token_refresh"})
        raise _reauthorization_required(db, integration, f"Token refresh failed: {e}")

    store_tokens(db, integration, bundle)
    adapter.with_access_token(bundle.access_token)
    if bundle.refresh_token:
        adapter.refresh_token = bundle.refresh_token

    try:
        return await operation(adapter)
    except ProviderAPIError as e:
        if not e.is_unauthorized:
            raise
        raise _reauthorization_required(db, integration, "Refreshed token was rejected")


def _reauthorization_required(db: Session, integration: Integration, message: str) -> ReauthorizationRequired:
    if integration.status != Status.disconnected:
        mark_error(db, integration, message, requires_reconnection=True, reason="token_invalid")
    return ReauthorizationRequired(message)
