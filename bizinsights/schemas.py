"""Pydantic schemas for request/response payloads."""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from .models import IntegrationStatusEnum, PlatformEnum, WebhookEventStatusEnum


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str = Field(
        description="Error message",
        example="Integration not found"
    )

    model_config = {
        "json_schema_extra": {
            "example": {
                "detail": "Integration not found"
            }
        }
    }


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(
        description="Service status",
        example="ok"
    )


# Integration Schemas
class IntegrationOut(BaseModel):
    """Public representation of an integration. Credentials are never exposed."""

    id: UUID = Field(description="Unique integration identifier")
    organization_id: UUID = Field(description="Owning organization")
    platform: PlatformEnum = Field(description="Connected platform")
    platform_account_id: str = Field(description="Shop domain, store URL, GA property or Stripe account")
    status: IntegrationStatusEnum = Field(description="Lifecycle status")
    granted_scopes: List[str] = Field(default_factory=list)
    last_sync_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    requires_reconnection: bool = False
    last_sync_error: Optional[Dict[str, Any]] = None

    model_config = {"from_attributes": True}


class IntegrationListResponse(BaseModel):
    integrations: List[IntegrationOut]
    total: int


class ScopeUpdateRequest(BaseModel):
    """Request body for changing an integration's scopes."""

    scopes: List[str] = Field(description="Full desired scope set", example=["read_orders", "read_products"])
    force: bool = Field(default=False, description="Rewrite scopes even when nothing changed")


class ScopeValidationRequest(BaseModel):
    platform: PlatformEnum
    scopes: List[str]


class SyncRequest(BaseModel):
    """Request body for a manual sync."""

    sync_type: Literal["incremental", "full"] = Field(
        default="incremental",
        description="incremental: 30 days (365 on the first sync); full: 730 days",
    )
    force: bool = Field(default=False, description="Bypass the manual sync rate limit")


class SyncJobResponse(BaseModel):
    """Response when enqueuing a backfill job."""

    success: bool = True
    message: str
    job_id: Optional[str] = Field(default=None, description="arq job identifier")
    sync_type: str
    days: int
    ledger_entry_id: UUID


class WebhookEventOut(BaseModel):
    id: UUID
    topic: str
    external_id: str
    status: WebhookEventStatusEnum
    error: Optional[str] = None
    attempts: int
    received_at: datetime
    processed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class PropertySelectRequest(BaseModel):
    """Switch the Google Analytics property an integration reads from."""

    property_id: str = Field(description="GA4 property id, with or without the properties/ prefix", example="123456789")


class WooCommerceConnectRequest(BaseModel):
    """Request body for connecting a WooCommerce store with REST API keys."""

    organization_id: UUID
    store_url: str = Field(description="Store URL; scheme optional", example="shop.example.com")
    consumer_key: str = Field(min_length=1, example="ck_xxxxxxxx")
    consumer_secret: str = Field(min_length=1, example="cs_xxxxxxxx")


class ConnectResponse(BaseModel):
    success: bool = True
    integration: IntegrationOut
    webhooks_registered: int = 0
    initial_sync: Optional[Dict[str, Any]] = None


class DashboardIntegration(BaseModel):
    id: UUID
    platform: PlatformEnum
    status: IntegrationStatusEnum
    last_sync_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class InsightOut(BaseModel):
    id: UUID
    type: str
    title: str
    description: Optional[str] = None
    impact_score: Optional[int] = None
    is_read: bool = False
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}
