"""Typed views over the Integration.metadata JSON column.

WHAT:
    One pydantic model per platform, all sharing the fields the engine itself
    reads and writes (webhook secret, reconnection flag, sync error, webhook
    counters...). Keys the models do not know are kept in `extra` and written
    back unchanged.

WHY:
    Provider-specific state is open-ended, but the fields the engine branches
    on must be validated. Unknown keys written by older code or by operators
    survive a load/save round trip.

USAGE:
    meta = load_metadata(integration)
    meta.requires_reconnection = True
    save_metadata(integration, meta)
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, model_validator

from bizinsights.models import Integration, PlatformEnum


class SyncError(BaseModel):
    message: str
    timestamp: datetime
    transient: bool = False


class IntegrationMetadata(BaseModel):
    """Fields shared by every platform."""

    model_config = ConfigDict(extra="ignore")

    webhook_secret: Optional[str] = None

    # Lifecycle
    connected_at: Optional[datetime] = None
    disconnected_at: Optional[datetime] = None
    disconnect_reason: Optional[str] = None
    requires_reconnection: bool = False
    reconnection_reason: Optional[str] = None

    # Scopes
    scope_update_pending: bool = False
    scope_change_request: Optional[Dict[str, Any]] = None

    # Sync
    last_sync_error: Optional[SyncError] = None
    last_manual_sync: Optional[datetime] = None
    last_sync_results: Optional[Dict[str, Any]] = None
    initial_sync_completed: Optional[datetime] = None
    initial_sync_error: Optional[str] = None

    # Webhook liveness
    last_webhook_at: Optional[datetime] = None
    last_webhook_topic: Optional[str] = None
    total_webhooks_processed: int = 0

    extra: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _collect_extra(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        known = set(cls.model_fields)
        extra = dict(data.get("extra") or {})
        cleaned = {}
        for key, value in data.items():
            if key == "extra":
                continue
            if key in known:
                cleaned[key] = value
            else:
                extra[key] = value
        cleaned["extra"] = extra
        return cleaned

    def to_json(self) -> Dict[str, Any]:
        """Flatten back into the stored JSON shape (extra keys at top level)."""
        data = self.model_dump(mode="json", exclude={"extra"}, exclude_none=True)
        for key, value in self.extra.items():
            data.setdefault(key, value)
        return data


class ShopifyMetadata(IntegrationMetadata):
    shop_name: Optional[str] = None
    currency: Optional[str] = None
    timezone: Optional[str] = None
    plan_name: Optional[str] = None
    webhook_ids: List[str] = Field(default_factory=list)
    uninstalled_at: Optional[datetime] = None


class StripeMetadata(IntegrationMetadata):
    livemode: Optional[bool] = None
    scope: Optional[str] = None
    publishable_key: Optional[str] = None


class WooCommerceMetadata(IntegrationMetadata):
    store_url: Optional[str] = None
    wc_version: Optional[str] = None
    webhook_ids: List[str] = Field(default_factory=list)


class GoogleAnalyticsMetadata(IntegrationMetadata):
    account_id: Optional[str] = None
    property_id: Optional[str] = None
    property_display_name: Optional[str] = None
    measurement_id: Optional[str] = None
    properties: List[Dict[str, Any]] = Field(default_factory=list)
    scope: Optional[str] = None
    property_changed: Optional[datetime] = None


METADATA_MODELS: Dict[PlatformEnum, Type[IntegrationMetadata]] = {
    PlatformEnum.shopify: ShopifyMetadata,
    PlatformEnum.stripe: StripeMetadata,
    PlatformEnum.woocommerce: WooCommerceMetadata,
    PlatformEnum.google_analytics: GoogleAnalyticsMetadata,
}


def load_metadata(integration: Integration) -> IntegrationMetadata:
    model = METADATA_MODELS.get(integration.platform, IntegrationMetadata)
    return model.model_validate(integration.meta or {})


def save_metadata(integration: Integration, meta: IntegrationMetadata) -> None:
    # Assign a fresh dict so SQLAlchemy sees the JSON column change
    integration.meta = meta.to_json()


def update_metadata(integration: Integration, **changes: Any) -> IntegrationMetadata:
    """Load, apply attribute changes, validate, save. Returns the new model."""
    meta = load_metadata(integration)
    updated = meta.model_validate({**meta.model_dump(), **changes})
    save_metadata(integration, updated)
    return updated
