"""Tests for integration lifecycle, scopes and token refresh.

WHAT: Status transitions, connect/reconnect/disconnect, scope catalog
      validation and change impact, single-flight token refresh
WHY: Webhooks, backfills and API calls all mutate integrations; the state
     machine and the 401 -> refresh -> retry-once rule must hold for all of them

REFERENCES:
  - bizinsights/services/integration_lifecycle.py
  - bizinsights/services/scope_catalog.py
  - bizinsights/services/integration_metadata.py
"""

import asyncio

import pytest

from bizinsights.models import Integration, IntegrationStatusEnum, PlatformEnum
from bizinsights.security import decrypt_secret
from bizinsights.services import integration_lifecycle, scope_catalog
from bizinsights.services.integration_lifecycle import InvalidTransitionError, TokenRefresher, call_with_refresh
from bizinsights.services.integration_metadata import load_metadata, update_metadata
from bizinsights.services.providers.base import (
    ProviderAdapter,
    ProviderAPIError,
    ReauthorizationRequired,
    TokenBundle,
)


# ============================================================================
# Connect / disconnect / status
# ============================================================================

class TestConnect:
    def test_connect_creates_integration(self, test_db_session, test_organization):
        integration = integration_lifecycle.connect(
            test_db_session,
            test_organization.id,
            PlatformEnum.shopify,
            "test-store.myshopify.com",
            access_token="shpat_secret",
            scopes=["read_orders"],
            metadata={"shop_name": "Test Store"},
        )

        assert integration.status == IntegrationStatusEnum.active
        # Dependencies resolved
        assert integration.granted_scopes == ["read_orders", "read_customers"]
        assert integration.access_token_enc != "shpat_secret"
        assert decrypt_secret(integration.access_token_enc, context="test") == "shpat_secret"
        assert integration.meta["shop_name"] == "Test Store"
        assert integration.meta["connected_at"]

    def test_reconnect_reuses_row_and_clears_flags(self, test_db_session, test_organization):
        first = integration_lifecycle.connect(
            test_db_session, test_organization.id, PlatformEnum.stripe, "acct_1", access_token="sk_1"
        )
        integration_lifecycle.mark_error(test_db_session, first, "401", requires_reconnection=True)
        integration_lifecycle.disconnect(test_db_session, first)

        second = integration_lifecycle.connect(
            test_db_session, test_organization.id, PlatformEnum.stripe, "acct_1", access_token="sk_2"
        )

        assert second.id == first.id
        assert test_db_session.query(Integration).count() == 1
        meta = load_metadata(second)
        assert meta.requires_reconnection is False
        assert meta.disconnected_at is None
        assert meta.last_sync_error is None

    def test_disconnect_clears_credentials(self, test_db_session, shopify_integration):
        integration_lifecycle.disconnect(test_db_session, shopify_integration, reason="app/uninstalled")

        assert shopify_integration.status == IntegrationStatusEnum.disconnected
        assert shopify_integration.access_token_enc is None
        meta = load_metadata(shopify_integration)
        assert meta.disconnect_reason == "app/uninstalled"
        assert meta.webhook_secret is None
        # Extra keys survive
        assert meta.shop_name == "Test Store"

    def test_disconnect_twice_is_invalid(self, test_db_session, shopify_integration):
        integration_lifecycle.disconnect(test_db_session, shopify_integration)
        with pytest.raises(InvalidTransitionError):
            integration_lifecycle.disconnect(test_db_session, shopify_integration)

    def test_disconnected_cannot_sync(self, test_db_session, shopify_integration):
        integration_lifecycle.disconnect(test_db_session, shopify_integration)
        with pytest.raises(InvalidTransitionError):
            integration_lifecycle.mark_syncing(test_db_session, shopify_integration)

    def test_syncing_cannot_start_again(self, test_db_session, shopify_integration):
        integration_lifecycle.mark_syncing(test_db_session, shopify_integration)
        with pytest.raises(InvalidTransitionError):
            integration_lifecycle.mark_syncing(test_db_session, shopify_integration)

    def test_error_recovers_to_active(self, test_db_session, shopify_integration):
        integration_lifecycle.mark_error(test_db_session, shopify_integration, "boom")
        assert load_metadata(shopify_integration).last_sync_error.message == "boom"

        integration_lifecycle.mark_active(test_db_session, shopify_integration)
        assert shopify_integration.status == IntegrationStatusEnum.active
        assert load_metadata(shopify_integration).last_sync_error is None

    def test_sync_interrupted_returns_to_previous(self, test_db_session, shopify_integration):
        integration_lifecycle.mark_syncing(test_db_session, shopify_integration)
        integration_lifecycle.mark_sync_interrupted(
            test_db_session, shopify_integration, IntegrationStatusEnum.active, "timeout"
        )
        assert shopify_integration.status == IntegrationStatusEnum.active
        assert load_metadata(shopify_integration).last_sync_error.transient is True


class TestMetadata:
    def test_unknown_keys_round_trip(self, test_db_session, shopify_integration):
        shopify_integration.meta = {**shopify_integration.meta, "operator_note": "vip"}
        update_metadata(shopify_integration, requires_reconnection=True)

        assert shopify_integration.meta["operator_note"] == "vip"
        assert shopify_integration.meta["requires_reconnection"] is True


# ============================================================================
# Scopes
# ============================================================================

class TestScopeCatalog:
    def test_valid_with_dependencies(self):
        validation = scope_catalog.validate_scopes(PlatformEnum.shopify, ["read_orders", "read_inventory"])
        assert validation.valid is True
        assert validation.resolved == ["read_orders", "read_customers", "read_inventory", "read_products"]

    def test_invalid_scope(self):
        validation = scope_catalog.validate_scopes(PlatformEnum.shopify, ["read_orders", "read_everything"])
        assert validation.valid is False
        assert validation.invalid == ["read_everything"]

    def test_missing_required(self):
        validation = scope_catalog.validate_scopes(PlatformEnum.shopify, ["read_products"])
        assert validation.valid is False
        assert set(validation.missing) == {"read_orders", "read_customers"}

    def test_unknown_platform(self):
        validation = scope_catalog.validate_scopes("myspace", ["a"])
        assert validation.valid is False
        assert validation.invalid == ["a"]

    def test_google_scope_urls_normalized(self):
        scopes = scope_catalog.parse_scope_string("https://www.googleapis.com/auth/analytics.readonly openid")
        assert scopes == ["analytics.readonly", "openid"]
        assert scope_catalog.parse_scope_string("read_orders,read_customers") == ["read_orders", "read_customers"]

    def test_change_impact(self):
        assert scope_catalog.change_impact(PlatformEnum.shopify, ["write_orders"], []) == "high"
        assert scope_catalog.change_impact(PlatformEnum.shopify, [], ["read_checkouts"]) == "medium"
        assert scope_catalog.change_impact(PlatformEnum.shopify, ["read_products"], []) == "expanding"
        assert scope_catalog.change_impact(PlatformEnum.shopify, [], ["read_products"]) == "reducing"
        assert scope_catalog.change_impact(PlatformEnum.shopify, [], []) == "minimal"

    def test_data_usage(self):
        usage = scope_catalog.estimate_data_usage(PlatformEnum.shopify, ["read_orders", "read_customers"])
        assert usage["categories"] == ["orders", "customers"]
        assert "Order totals" in usage["types"]
        assert scope_catalog.estimate_data_usage(PlatformEnum.shopify, [])["description"] == "No data access granted"


class TestUpdateScopes:
    def test_adding_scope_requires_reconnection(self, test_db_session, shopify_integration, test_user):
        result = integration_lifecycle.update_scopes(
            test_db_session, shopify_integration, ["read_orders", "read_customers", "read_products"], test_user.id
        )

        assert result.changed is True
        assert result.added == ["read_products"]
        assert result.requires_reconnection is True
        meta = load_metadata(shopify_integration)
        assert meta.requires_reconnection is True
        assert meta.reconnection_reason == "scope_update"
        assert meta.scope_change_request["requested_by"] == str(test_user.id)
        # Still active: it keeps ingesting with the old grant
        assert shopify_integration.status == IntegrationStatusEnum.active

    def test_removing_low_risk_scope_does_not(self, test_db_session, test_organization, test_user):
        integration = integration_lifecycle.connect(
            test_db_session, test_organization.id, PlatformEnum.shopify, "s.myshopify.com",
            access_token="t", scopes=["read_orders", "read_customers", "read_products"],
        )
        result = integration_lifecycle.update_scopes(
            test_db_session, integration, ["read_orders", "read_customers"], test_user.id
        )
        assert result.removed == ["read_products"]
        assert result.requires_reconnection is False

    def test_invalid_request_is_not_applied(self, test_db_session, shopify_integration, test_user):
        result = integration_lifecycle.update_scopes(test_db_session, shopify_integration, ["bogus"], test_user.id)
        assert result.validation.valid is False
        assert shopify_integration.granted_scopes == ["read_orders", "read_customers"]

    def test_no_change(self, test_db_session, shopify_integration, test_user):
        result = integration_lifecycle.update_scopes(
            test_db_session, shopify_integration, ["read_orders"], test_user.id
        )
        assert result.changed is False
        assert result.current == ["read_orders", "read_customers"]


# ============================================================================
# Token refresh
# ============================================================================

class FakeAdapter(ProviderAdapter):
    """Adapter whose `call` succeeds only with an accepted token."""

    platform = PlatformEnum.stripe
    supports_refresh = True

    def __init__(self, accepted=("fresh",), refreshed="fresh", refresh_error=None, refresh_delay=0.0):
        super().__init__("acct_1", "stale", "refresh-1")
        self.accepted = set(accepted)
        self.refreshed = refreshed
        self.refresh_error = refresh_error
        self.refresh_delay = refresh_delay
        self.refresh_calls = 0
        self.calls = 0

    async def call(self):
        self.calls += 1
        if self.access_token not in self.accepted:
            raise ProviderAPIError("unauthorized", status_code=401)
        return f"ok:{self.access_token}"

    async def refresh_access_token(self):
        self.refresh_calls += 1
        await asyncio.sleep(self.refresh_delay)
        if self.refresh_error:
            raise self.refresh_error
        return TokenBundle(access_token=self.refreshed, refresh_token="refresh-2")


class TestCallWithRefresh:
    def test_success_without_refresh(self, test_db_session, stripe_integration):
        adapter = FakeAdapter(accepted=("stale",))
        result = asyncio.run(call_with_refresh(
            test_db_session, stripe_integration, adapter, lambda a: a.call(), TokenRefresher()
        ))
        assert result == "ok:stale"
        assert adapter.refresh_calls == 0

    def test_refresh_then_retry_once(self, test_db_session, stripe_integration):
        adapter = FakeAdapter()
        result = asyncio.run(call_with_refresh(
            test_db_session, stripe_integration, adapter, lambda a: a.call(), TokenRefresher()
        ))

        assert result == "ok:fresh"
        assert adapter.calls == 2
        assert adapter.refresh_calls == 1
        assert decrypt_secret(stripe_integration.access_token_enc, context="test") == "fresh"
        assert decrypt_secret(stripe_integration.refresh_token_enc, context="test") == "refresh-2"

    def test_refreshed_token_rejected(self, test_db_session, stripe_integration):
        adapter = FakeAdapter(accepted=())
        with pytest.raises(ReauthorizationRequired):
            asyncio.run(call_with_refresh(
                test_db_session, stripe_integration, adapter, lambda a: a.call(), TokenRefresher()
            ))

        assert adapter.calls == 2
        assert stripe_integration.status == IntegrationStatusEnum.error
        assert load_metadata(stripe_integration).requires_reconnection is True

    def test_refresh_failure(self, test_db_session, stripe_integration):
        adapter = FakeAdapter(refresh_error=ProviderAPIError("invalid_grant", status_code=400))
        with pytest.raises(ReauthorizationRequired):
            asyncio.run(call_with_refresh(
                test_db_session, stripe_integration, adapter, lambda a: a.call(), TokenRefresher()
            ))
        assert load_metadata(stripe_integration).reconnection_reason == "token_invalid"

    def test_non_refreshable_platform(self, test_db_session, shopify_integration):
        adapter = FakeAdapter()
        adapter.supports_refresh = False
        with pytest.raises(ReauthorizationRequired):
            asyncio.run(call_with_refresh(
                test_db_session, shopify_integration, adapter, lambda a: a.call(), TokenRefresher()
            ))
        assert adapter.refresh_calls == 0

    def test_other_errors_pass_through(self, test_db_session, stripe_integration):
        async def boom(adapter):
            raise ProviderAPIError("server error", status_code=503, transient=True)

        with pytest.raises(ProviderAPIError) as exc_info:
            asyncio.run(call_with_refresh(test_db_session, stripe_integration, FakeAdapter(), boom, TokenRefresher()))
        assert not isinstance(exc_info.value, ReauthorizationRequired)
        assert stripe_integration.status == IntegrationStatusEnum.active


class TestTokenRefresherSingleFlight:
    def test_concurrent_refreshes_share_one_request(self):
        refresher = TokenRefresher()
        calls = []

        async def do_refresh():
            calls.append(1)
            await asyncio.sleep(0.01)
            return TokenBundle(access_token="fresh")

        async def scenario():
            return await asyncio.gather(*(refresher.refresh("integration-1", "stale", do_refresh) for _ in range(5)))

        bundles = asyncio.run(scenario())
        assert len(calls) == 1
        assert {b.access_token for b in bundles} == {"fresh"}

    def test_late_caller_reuses_newer_token(self):
        refresher = TokenRefresher()
        calls = []

        async def do_refresh():
            calls.append(1)
            return TokenBundle(access_token=f"fresh-{len(calls)}")

        async def scenario():
            first = await refresher.refresh("integration-1", "stale", do_refresh)
            # A request that failed with the old token arrives after the refresh finished
            second = await refresher.refresh("integration-1", "stale", do_refresh)
            # The new token itself was rejected: refresh again
            third = await refresher.refresh("integration-1", first.access_token, do_refresh)
            return first, second, third

        first, second, third = asyncio.run(scenario())
        assert second.access_token == first.access_token
        assert third.access_token == "fresh-2"
        assert len(calls) == 2

    def test_keys_are_independent(self):
        refresher = TokenRefresher()
        calls = []

        async def do_refresh():
            calls.append(1)
            return TokenBundle(access_token="fresh")

        async def scenario():
            await refresher.refresh("a", "stale", do_refresh)
            await refresher.refresh("b", "stale", do_refresh)

        asyncio.run(scenario())
        assert len(calls) == 2

    def test_entries_dropped_after_reuse_window(self):
        now = [1000.0]
        refresher = TokenRefresher(clock=lambda: now[0])

        async def do_refresh():
            return TokenBundle(access_token="fresh")

        async def scenario():
            await refresher.refresh("integration-1", "stale", do_refresh)
            assert set(refresher._latest) == {"integration-1"}
            now[0] += TokenRefresher.REUSE_WINDOW_SECONDS + 1
            await refresher.refresh("integration-2", "stale", do_refresh)

        asyncio.run(scenario())
        assert set(refresher._latest) == {"integration-2"}
        assert set(refresher._locks) == {"integration-2"}

    def test_failed_refresh_is_not_kept(self):
        refresher = TokenRefresher()

        async def failing_refresh():
            raise ProviderAPIError("invalid_grant", status_code=400)

        async def do_refresh():
            return TokenBundle(access_token="fresh")

        async def scenario():
            with pytest.raises(ProviderAPIError):
                await refresher.refresh("integration-1", "stale", failing_refresh)
            await refresher.refresh("integration-2", "stale", do_refresh)

        asyncio.run(scenario())
        assert "integration-1" not in refresher._locks
        assert "integration-1" not in refresher._inflight
