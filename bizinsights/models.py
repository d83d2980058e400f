"""SQLAlchemy ORM models and enums.

This module defines the persisted state of the ingestion engine: organizations
and their members (read for authorization only), integrations, the webhook
event ledger, the immutable data point time series, and insights (produced by
another process and only read here).

Every DataPoint and WebhookEvent reaches its organization through
`Integration.organization_id`; queries must always join through it.
"""

import enum
import uuid

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declarative_base, relationship

from bizinsights.utils.dates import utcnow


# Single Base used by the entire application
Base = declarative_base()


# Enums ---------------------------------------------------------

class RoleEnum(str, enum.Enum):
    owner = "owner"
    admin = "admin"
    member = "member"
    viewer = "viewer"


class PlatformEnum(str, enum.Enum):
    shopify = "shopify"
    stripe = "stripe"
    woocommerce = "woocommerce"
    google_analytics = "google_analytics"


class IntegrationStatusEnum(str, enum.Enum):
    active = "active"
    syncing = "syncing"
    error = "error"
    disconnected = "disconnected"


class WebhookEventStatusEnum(str, enum.Enum):
    received = "received"
    processed = "processed"
    failed = "failed"
    signature_verification_failed = "signature_verification_failed"
    invalid_json = "invalid_json"


def _enum_column(enum_cls, **kwargs):
    return Column(Enum(enum_cls, values_callable=lambda obj: [e.value for e in obj]), **kwargs)


# Models --------------------------------------------------------

class Organization(Base):
    """Top-level tenant. Owned by the organization/team service."""
    __tablename__ = "organizations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    slug = Column(String, unique=True, index=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    memberships = relationship("OrganizationMember", back_populates="organization", cascade="all, delete-orphan")
    integrations = relationship("Integration", back_populates="organization")
    insights = relationship("Insight", back_populates="organization")

    def __str__(self):
        return self.name


class User(Base):
    """Authenticated principal. Identity comes from the session layer (JWT `sub`)."""
    __tablename__ = "users"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    memberships = relationship("OrganizationMember", back_populates="user", cascade="all, delete-orphan")

    def __str__(self):
        return self.email


class OrganizationMember(Base):
    __tablename__ = "organization_members"
    __table_args__ = (UniqueConstraint("organization_id", "user_id", name="uq_organization_member"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    role = _enum_column(RoleEnum, nullable=False, default=RoleEnum.member)
    created_at = Column(DateTime, default=utcnow)

    organization = relationship("Organization", back_populates="memberships")
    user = relationship("User", back_populates="memberships")


class Integration(Base):
    """A configured connection between one organization and one platform account.

    WHAT:
        Holds credentials (Fernet-encrypted), granted scopes, lifecycle status
        and a provider-specific metadata bag.
    WHY:
        The ingestion gateway resolves inbound webhooks to exactly one active
        integration; the lifecycle manager owns every status transition.
    REFERENCES:
        - bizinsights/services/integration_lifecycle.py (state machine)
        - bizinsights/services/integration_metadata.py (typed metadata)
        - bizinsights/security.py (encrypt_secret / decrypt_secret)

    At most one row per (organization, platform). Disconnect is a soft
    transition; rows are never deleted while data points reference them.
    """
    __tablename__ = "integrations"
    __table_args__ = (
        UniqueConstraint("organization_id", "platform", name="uq_integration_org_platform"),
        Index("ix_integrations_platform_account", "platform", "platform_account_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False, index=True)
    platform = _enum_column(PlatformEnum, nullable=False)
    platform_account_id = Column(String, nullable=False)  # shop domain / store URL / GA property / Stripe account
    status = _enum_column(IntegrationStatusEnum, nullable=False, default=IntegrationStatusEnum.active)

    access_token_enc = Column(Text, nullable=True)
    refresh_token_enc = Column(Text, nullable=True)
    token_expires_at = Column(DateTime, nullable=True)
    granted_scopes = Column(JSON, nullable=False, default=list)

    last_sync_at = Column(DateTime, nullable=True)
    meta = Column("metadata", JSON, nullable=False, default=dict)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    organization = relationship("Organization", back_populates="integrations")
    webhook_events = relationship("WebhookEvent", back_populates="integration", cascade="all, delete-orphan")
    data_points = relationship("DataPoint", back_populates="integration", cascade="all, delete-orphan")

    @property
    def is_active(self) -> bool:
        return self.status == IntegrationStatusEnum.active

    def __str__(self):
        return f"{self.platform.value}:{self.platform_account_id} ({self.status.value})"


class WebhookEvent(Base):
    """Ledger entry for one inbound webhook delivery attempt.

    (integration_id, external_id, topic) is the idempotency key. A row is
    written once as `received` (or directly as a rejection status) and moves
    to a terminal status exactly once.
    """
    __tablename__ = "webhook_events"
    __table_args__ = (
        UniqueConstraint("integration_id", "external_id", "topic", name="uq_webhook_event_idempotency"),
        Index("ix_webhook_events_integration_received", "integration_id", "received_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    integration_id = Column(UUID(as_uuid=True), ForeignKey("integrations.id"), nullable=False)
    topic = Column(String, nullable=False)
    external_id = Column(String, nullable=False)
    status = _enum_column(WebhookEventStatusEnum, nullable=False, default=WebhookEventStatusEnum.received)
    error = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=1)
    received_at = Column(DateTime, nullable=False, default=utcnow)
    processed_at = Column(DateTime, nullable=True)
    meta = Column("metadata", JSON, nullable=False, default=dict)

    integration = relationship("Integration", back_populates="webhook_events")

    def __str__(self):
        return f"{self.topic} {self.external_id} ({self.status.value})"


class DataPoint(Base):
    """One immutable, dated, typed numeric fact derived from provider activity.

    `date_recorded` is the business-event date, never the ingestion time
    (except revenue, which is recognized when payment is processed).
    `source_key` identifies the business object behind event facts so a fact
    delivered by webhook and by backfill is stored once.
    """
    __tablename__ = "data_points"
    __table_args__ = (
        UniqueConstraint("integration_id", "metric_type", "source_key", name="uq_data_point_source"),
        Index("ix_data_points_integration_metric_date", "integration_id", "metric_type", "date_recorded"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    integration_id = Column(UUID(as_uuid=True), ForeignKey("integrations.id"), nullable=False)
    metric_type = Column(String, nullable=False)
    value = Column(Numeric(18, 4), nullable=False)
    date_recorded = Column(DateTime, nullable=False)
    source_key = Column(String, nullable=True)
    meta = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=utcnow)

    integration = relationship("Integration", back_populates="data_points")

    def __str__(self):
        return f"{self.metric_type}={self.value} @ {self.date_recorded:%Y-%m-%d}"


class Insight(Base):
    """Generated elsewhere; read for dashboard composition only."""
    __tablename__ = "insights"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False, index=True)
    type = Column(String, nullable=False)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    impact_score = Column(Integer, nullable=True)
    is_read = Column(Boolean, nullable=False, default=False)
    meta = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=utcnow)

    organization = relationship("Organization", back_populates="insights")

    def __str__(self):
        return self.title
