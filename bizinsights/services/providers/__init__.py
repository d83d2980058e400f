"""Provider adapter registry.

USAGE:
    from bizinsights.services.providers import build_adapter

    adapter = build_adapter(integration)
    points = adapter.translate(topic, payload)
"""

from typing import Any, Dict, Optional, Type

from bizinsights.deps import Settings, get_settings
from bizinsights.models import Integration, PlatformEnum
from bizinsights.security import decrypt_secret
from bizinsights.services.providers.base import (
    DataPointRecord,
    ProviderAdapter,
    ProviderAPIError,
    ReauthorizationRequired,
    TokenBundle,
    TranslationError,
)
from bizinsights.services.providers.google_analytics import GoogleAnalyticsAdapter
from bizinsights.services.providers.shopify import ShopifyAdapter
from bizinsights.services.providers.stripe import StripeAdapter
from bizinsights.services.providers.woocommerce import WooCommerceAdapter

ADAPTERS: Dict[PlatformEnum, Type[ProviderAdapter]] = {
    PlatformEnum.shopify: ShopifyAdapter,
    PlatformEnum.stripe: StripeAdapter,
    PlatformEnum.woocommerce: WooCommerceAdapter,
    PlatformEnum.google_analytics: GoogleAnalyticsAdapter,
}


def adapter_options(platform: PlatformEnum, settings: Settings) -> Dict[str, Any]:
    """Platform-level configuration each adapter needs besides its tokens."""
    options: Dict[str, Any] = {"timeout": settings.PROVIDER_TIMEOUT_SECONDS}
    if platform == PlatformEnum.shopify:
        options["api_version"] = settings.SHOPIFY_API_VERSION
    elif platform == PlatformEnum.stripe:
        options["client_secret"] = settings.STRIPE_SECRET_KEY
    elif platform == PlatformEnum.google_analytics:
        options.update(
            client_id=settings.GOOGLE_CLIENT_ID,
            client_secret=settings.GOOGLE_CLIENT_SECRET,
            redirect_uri=settings.GOOGLE_REDIRECT_URI,
        )
    return options


def build_adapter(
    integration: Integration,
    settings: Optional[Settings] = None,
    *,
    with_credentials: bool = True,
    **overrides: Any,
) -> ProviderAdapter:
    """Instantiate the adapter for an integration with decrypted credentials.

    Webhook translation needs no tokens; pass `with_credentials=False` to
    skip decryption. `overrides` is forwarded to the adapter (tests pass
    `transport`/`clock`).
    """
    settings = settings or get_settings()
    context = f"{integration.platform.value}:{integration.platform_account_id}"
    access_token = refresh_token = None
    if with_credentials and integration.access_token_enc:
        access_token = decrypt_secret(integration.access_token_enc, context=context)
    if with_credentials and integration.refresh_token_enc:
        refresh_token = decrypt_secret(integration.refresh_token_enc, context=context)
    options = {**adapter_options(integration.platform, settings), **overrides}
    return ADAPTERS[integration.platform](
        integration.platform_account_id,
        access_token,
        refresh_token,
        **options,
    )


__all__ = [
    "ADAPTERS",
    "DataPointRecord",
    "GoogleAnalyticsAdapter",
    "ProviderAPIError",
    "ProviderAdapter",
    "ReauthorizationRequired",
    "ShopifyAdapter",
    "StripeAdapter",
    "TokenBundle",
    "TranslationError",
    "WooCommerceAdapter",
    "adapter_options",
    "build_adapter",
]
