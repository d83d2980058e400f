"""FastAPI application entrypoint.

Configures logging, Sentry, CORS and the admin panel, includes routers, and
exposes a healthcheck endpoint.
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqladmin import Admin, ModelView
from starlette.middleware.sessions import SessionMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .authentication import SimpleAuth  # noqa: E402
from .database import engine  # noqa: E402
from .deps import get_settings  # noqa: E402
from .routers import dashboard as dashboard_router  # noqa: E402
from .routers import google_oauth as google_oauth_router  # noqa: E402
from .routers import integrations as integrations_router  # noqa: E402
from .routers import shopify_oauth as shopify_oauth_router  # noqa: E402
from .routers import shopify_webhooks as shopify_webhooks_router  # noqa: E402
from .routers import stripe_oauth as stripe_oauth_router  # noqa: E402
from .routers import stripe_webhooks as stripe_webhooks_router  # noqa: E402
from .routers import woocommerce_webhooks as woocommerce_webhooks_router  # noqa: E402
from .telemetry import init_sentry  # noqa: E402
from . import schemas  # noqa: E402

# Import models so Alembic can discover metadata
from . import models  # noqa: E402,F401


# SQLAdmin ModelView classes. Columns shown here rely on the models' __str__.
# Credentials are never listed or editable.

class OrganizationAdmin(ModelView, model=models.Organization):
    column_list = [models.Organization.id, models.Organization.name, models.Organization.slug, models.Organization.created_at]
    column_searchable_list = ["name", "slug"]
    column_sortable_list = ["name", "created_at"]
    name = "Organization"
    name_plural = "Organizations"
    icon = "fa-solid fa-building"


class IntegrationAdmin(ModelView, model=models.Integration):
    """Status and metadata are editable so an operator can unstick an integration."""
    column_list = [
        models.Integration.id,
        models.Integration.organization,
        models.Integration.platform,
        models.Integration.platform_account_id,
        models.Integration.status,
        models.Integration.last_sync_at,
    ]
    column_details_exclude_list = [models.Integration.access_token_enc, models.Integration.refresh_token_enc]
    form_columns = ["status", "meta"]
    column_searchable_list = ["platform_account_id"]
    column_sortable_list = ["platform", "status", "last_sync_at"]
    can_create = False
    name = "Integration"
    name_plural = "Integrations"
    icon = "fa-solid fa-plug"


class WebhookEventAdmin(ModelView, model=models.WebhookEvent):
    column_list = [
        models.WebhookEvent.id,
        models.WebhookEvent.integration,
        models.WebhookEvent.topic,
        models.WebhookEvent.external_id,
        models.WebhookEvent.status,
        models.WebhookEvent.attempts,
        models.WebhookEvent.received_at,
    ]
    column_searchable_list = ["topic", "external_id"]
    column_sortable_list = ["received_at", "status", "topic"]
    can_create = False
    can_edit = False
    name = "Webhook Event"
    name_plural = "Webhook Events"
    icon = "fa-solid fa-inbox"


class DataPointAdmin(ModelView, model=models.DataPoint):
    """Data points are immutable; the panel is read only."""
    column_list = [
        models.DataPoint.id,
        models.DataPoint.integration,
        models.DataPoint.metric_type,
        models.DataPoint.value,
        models.DataPoint.date_recorded,
        models.DataPoint.source_key,
    ]
    column_searchable_list = ["metric_type", "source_key"]
    column_sortable_list = ["date_recorded", "metric_type"]
    can_create = False
    can_edit = False
    name = "Data Point"
    name_plural = "Data Points"
    icon = "fa-solid fa-chart-line"


def create_app() -> FastAPI:
    init_sentry()

    app = FastAPI(
        title="BizInsights API",
        description="""
        Integration sync and webhook ingestion for the BizInsights dashboard.

        - Webhook ingestion for Shopify, WooCommerce and Stripe
        - OAuth connect flows (Shopify, Stripe Connect, Google Analytics) and WooCommerce API keys
        - Integration lifecycle, scopes, manual sync and sync health
        - Aggregated dashboard metrics

        ## Authentication
        Management endpoints expect a JWT in the `access_token` cookie or an
        `Authorization: Bearer` header. Webhook endpoints authenticate the
        sender by signature instead.
        """,
        version="1.0.0",
    )

    # Trust X-Forwarded-Proto from the load balancer so redirect URLs use https
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    settings = get_settings()

    if settings.ADMIN_SECRET_KEY == "supersecretkey-change-this-in-production":
        logger.warning("[STARTUP] Using default admin secret key. Set ADMIN_SECRET_KEY for production.")
    app.add_middleware(SessionMiddleware, secret_key=settings.ADMIN_SECRET_KEY)

    # BACKEND_CORS_ORIGINS is a comma-separated list
    cors_origins = [origin.strip() for origin in settings.BACKEND_CORS_ORIGINS.split(",") if origin.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(shopify_webhooks_router.router)
    app.include_router(woocommerce_webhooks_router.router)
    app.include_router(stripe_webhooks_router.router)
    app.include_router(integrations_router.router)
    app.include_router(shopify_oauth_router.router)
    app.include_router(stripe_oauth_router.router)
    app.include_router(google_oauth_router.router)
    app.include_router(dashboard_router.router)

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    def health():
        return schemas.HealthResponse(status="ok")

    admin = Admin(
        app,
        engine,
        title="BizInsights Admin",
        authentication_backend=SimpleAuth(secret_key=settings.ADMIN_SECRET_KEY),
    )
    admin.add_view(OrganizationAdmin)
    admin.add_view(IntegrationAdmin)
    admin.add_view(WebhookEventAdmin)
    admin.add_view(DataPointAdmin)

    return app


app = create_app()
