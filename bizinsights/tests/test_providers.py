"""Tests for provider adapters.

WHAT: Webhook translation per platform, backfill pagination and the HTTP
      retry policy, using httpx.MockTransport instead of real provider APIs
WHY: Translation decides which facts exist and when they are dated;
     a wrong source key double counts revenue

REFERENCES:
  - bizinsights/services/providers/
"""

import asyncio
import json
from datetime import datetime
from decimal import Decimal

import httpx
import pytest

from bizinsights.models import DataPoint, PlatformEnum
from bizinsights.services.datapoint_writer import write_datapoints
from bizinsights.services.providers import (
    GoogleAnalyticsAdapter,
    ProviderAPIError,
    ShopifyAdapter,
    StripeAdapter,
    TranslationError,
    WooCommerceAdapter,
)
from bizinsights.services.providers.shopify import normalize_shop_domain
from bizinsights.services.providers.stripe import to_major_units
from bizinsights.services.providers.woocommerce import infer_topic

NOW = datetime(2026, 3, 15, 12, 0, 0)


def clock():
    return NOW


async def no_sleep(seconds):
    return None


def by_metric(points):
    return {p.metric_type: p for p in points}


# ============================================================================
# Shopify
# ============================================================================

class TestShopifyTranslate:
    def setup_method(self):
        self.adapter = ShopifyAdapter("test-store", clock=clock)

    def order(self, **overrides):
        order = {
            "id": 1001,
            "name": "#1001",
            "total_price": "150.00",
            "subtotal_price": "140.00",
            "total_tax": "10.00",
            "currency": "USD",
            "financial_status": "paid",
            "created_at": "2026-03-10T09:30:00-05:00",
            "cancelled_at": None,
        }
        order.update(overrides)
        return order

    def test_normalize_shop_domain(self):
        assert normalize_shop_domain("mystore") == "mystore.myshopify.com"
        assert normalize_shop_domain("https://MyStore.myshopify.com/") == "mystore.myshopify.com"

    def test_paid_order_create(self):
        points = by_metric(self.adapter.translate("orders/create", self.order()))
        assert set(points) == {"orders", "order_value", "revenue"}
        assert points["orders"].value == Decimal("1")
        assert points["order_value"].value == Decimal("150.00")
        # Order facts dated at creation (UTC), revenue at payment
        assert points["orders"].date_recorded == datetime(2026, 3, 10, 14, 30)
        assert points["revenue"].date_recorded == NOW
        assert points["revenue"].metadata["original_order_date"] == "2026-03-10T14:30:00"
        assert {p.source_key for p in points.values()} == {"order:1001"}

    def test_unpaid_order_create_has_no_revenue(self):
        points = by_metric(self.adapter.translate("orders/create", self.order(financial_status="pending")))
        assert set(points) == {"orders", "order_value"}

    def test_orders_paid_only_revenue(self):
        points = self.adapter.translate("orders/paid", self.order())
        assert [p.metric_type for p in points] == ["revenue"]

    def test_cancelled(self):
        points = self.adapter.translate(
            "orders/cancelled", self.order(cancelled_at="2026-03-12T00:00:00Z", cancel_reason="customer")
        )
        assert [p.metric_type for p in points] == ["orders_cancelled"]
        assert points[0].date_recorded == datetime(2026, 3, 12)
        assert points[0].metadata["cancelled_order_value"] == "150.00"

    def test_order_with_customer_snapshot(self):
        order = self.order(customer={"id": 7, "total_spent": "300.00", "orders_count": 2})
        points = by_metric(self.adapter.translate("orders/create", order))
        clv = points["customer_lifetime_value"]
        assert clv.value == Decimal("300.00")
        assert clv.source_key is None

    def test_customer_create(self):
        points = self.adapter.translate("customers/create", {"id": 7, "created_at": "2026-03-01T00:00:00Z"})
        assert [p.metric_type for p in points] == ["customers"]
        assert points[0].source_key == "customer:7"

    def test_order_without_id(self):
        with pytest.raises(TranslationError):
            self.adapter.translate("orders/create", {"total_price": "1.00"})

    def test_bad_amount(self):
        with pytest.raises(TranslationError):
            self.adapter.translate("orders/create", self.order(total_price="abc"))

    def test_unknown_topic(self):
        assert self.adapter.translate("products/create", {"id": 1}) == []
        assert not self.adapter.handles("products/create")
        assert self.adapter.is_disconnect_topic("app/uninstalled")


class TestShopifyBackfill:
    def test_follows_link_pagination(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(str(request.url))
            if request.url.path.endswith("/orders.json"):
                if "page_info" not in str(request.url):
                    return httpx.Response(
                        200,
                        json={"orders": [{"id": 1, "total_price": "10", "financial_status": "paid",
                                          "created_at": "2026-03-01T00:00:00Z",
                                          "processed_at": "2026-03-02T00:00:00Z"}]},
                        headers={"Link": '<https://test-store.myshopify.com/admin/api/2024-10/orders.json?page_info=abc>; rel="next"'},
                    )
                return httpx.Response(200, json={"orders": [{"id": 2, "total_price": "5", "financial_status": "pending",
                                                             "created_at": "2026-03-03T00:00:00Z"}]})
            return httpx.Response(200, json={"customers": []})

        adapter = ShopifyAdapter("test-store", "shpat_token", transport=httpx.MockTransport(handler), clock=clock)
        points = asyncio.run(adapter.fetch_range(datetime(2026, 2, 1), datetime(2026, 3, 15)))

        revenue = [p for p in points if p.metric_type == "revenue"]
        assert len([p for p in points if p.metric_type == "orders"]) == 2
        assert len(revenue) == 1
        assert revenue[0].date_recorded == datetime(2026, 3, 2)
        assert any("page_info=abc" in url for url in calls)


# ============================================================================
# Stripe
# ============================================================================

class TestStripeTranslate:
    def setup_method(self):
        self.adapter = StripeAdapter("acct_123", clock=clock)

    def event(self, obj):
        return {"id": "evt_1", "type": "x", "data": {"object": obj}}

    def test_zero_decimal_currency(self):
        assert to_major_units(500, "jpy") == Decimal("500")
        assert to_major_units(1999, "usd") == Decimal("19.99")

    def test_charge_succeeded(self):
        points = by_metric(self.adapter.translate(
            "charge.succeeded",
            self.event({"id": "ch_1", "amount": 2500, "currency": "usd", "created": 1767225600}),
        ))
        assert points["revenue"].value == Decimal("25")
        assert points["revenue"].date_recorded == NOW
        assert points["charge_succeeded"].date_recorded == datetime(2026, 1, 1)
        assert points["revenue"].source_key == "charge:ch_1"

    def refund_event(self, total, previous_total):
        event = self.event({"id": "ch_1", "amount_refunded": total, "currency": "usd"})
        event["data"]["previous_attributes"] = {"amount_refunded": previous_total}
        return event

    def test_partial_refunds_sum_to_refunded_total(self):
        first = self.adapter.translate("charge.refunded", self.refund_event(500, 0))
        second = self.adapter.translate("charge.refunded", self.refund_event(1000, 500))

        assert first[0].source_key != second[0].source_key
        assert first[0].value + second[0].value == Decimal("10")

    def test_first_refund_without_previous_attributes(self):
        points = self.adapter.translate(
            "charge.refunded", self.event({"id": "ch_1", "amount_refunded": 750, "currency": "usd"})
        )
        assert points[0].value == Decimal("7.5")

    def test_refund_event_without_increase_has_no_facts(self):
        assert self.adapter.translate("charge.refunded", self.refund_event(500, 500)) == []

    def test_customer_created(self):
        points = self.adapter.translate("customer.created", self.event({"id": "cus_1", "created": 1767225600}))
        assert {p.metric_type for p in points} == {"customers", "customer_created"}

    def test_missing_object(self):
        with pytest.raises(TranslationError):
            self.adapter.translate("charge.succeeded", {"id": "evt_1"})

    def test_deauthorize_is_disconnect(self):
        assert self.adapter.is_disconnect_topic("account.application.deauthorized")


class TestStripeRefresh:
    def test_refresh_keeps_refresh_token(self):
        def handler(request):
            assert request.url.path == "/oauth/token"
            return httpx.Response(200, json={"access_token": "sk_new"})

        adapter = StripeAdapter("acct_123", "sk_old", "rt_1", client_secret="sk_platform",
                                transport=httpx.MockTransport(handler))
        bundle = asyncio.run(adapter.refresh_access_token())
        assert bundle.access_token == "sk_new"
        assert bundle.refresh_token == "rt_1"


# ============================================================================
# WooCommerce
# ============================================================================

class TestWooCommerceTranslate:
    def setup_method(self):
        self.adapter = WooCommerceAdapter("shop.example.com", clock=clock)

    def order(self, **overrides):
        order = {
            "id": 55,
            "number": "55",
            "status": "processing",
            "total": "80.00",
            "total_tax": "5.00",
            "currency": "EUR",
            "date_created_gmt": "2026-03-09T10:00:00",
            "date_paid_gmt": "2026-03-09T10:05:00",
        }
        order.update(overrides)
        return order

    def test_account_url_normalized(self):
        assert self.adapter.account_id == "https://shop.example.com"

    def test_paid_order_created(self):
        points = by_metric(self.adapter.translate("order.created", self.order()))
        assert set(points) == {"orders", "order_value", "revenue"}
        assert points["orders"].date_recorded == datetime(2026, 3, 9, 10)

    def test_cancelled_order_created_is_not_counted(self):
        assert self.adapter.translate("order.created", self.order(status="cancelled", date_paid_gmt=None)) == []

    def test_order_updated_to_cancelled(self):
        points = self.adapter.translate("order.updated", self.order(status="cancelled", date_paid_gmt=None))
        assert [p.metric_type for p in points] == ["orders_cancelled"]

    def test_coupon_acknowledged_without_facts(self):
        assert self.adapter.handles("coupon.created")
        assert self.adapter.translate("coupon.created", {"id": 1}) == []

    def test_infer_topic(self):
        assert infer_topic({"id": 1, "line_items": []}) == "order.updated"
        assert infer_topic({"id": 1, "sku": "X"}) == "product.updated"
        assert infer_topic({"id": 1, "email": "a@b.c", "first_name": "A"}) == "customer.updated"
        assert infer_topic({"id": 1}) is None

    def test_connection_error_maps_status(self):
        def handler(request):
            return httpx.Response(401, json={"code": "woocommerce_rest_cannot_view"})

        adapter = WooCommerceAdapter("shop.example.com", "ck:cs", transport=httpx.MockTransport(handler))
        with pytest.raises(ProviderAPIError) as exc_info:
            asyncio.run(adapter.test_connection())
        assert exc_info.value.status_code == 401


# ============================================================================
# Google Analytics
# ============================================================================

def ga_row(date, channel, sessions):
    return {
        "dimensionValues": [{"value": date}, {"value": channel}],
        "metricValues": [{"value": str(v)} for v in (sessions, sessions - 1, 1, sessions * 3, "42.5", "0.5")],
    }


class TestGoogleAnalytics:
    def test_fetch_range_stops_at_yesterday(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={
                "rows": [ga_row("20260310", "Organic Search", 12), ga_row("20260311", "", 3)],
                "rowCount": 2,
            })

        adapter = GoogleAnalyticsAdapter("properties/123", "ya29.token", transport=httpx.MockTransport(handler),
                                         clock=clock)
        points = asyncio.run(adapter.fetch_range(datetime(2026, 3, 10), datetime(2026, 3, 15, 12)))

        assert bodies[0]["dateRanges"] == [{"startDate": "2026-03-10", "endDate": "2026-03-14"}]
        sessions = [p for p in points if p.metric_type == "sessions"]
        assert [p.value for p in sessions] == [Decimal("12"), Decimal("3")]
        assert sessions[0].source_key == "ga:123:2026-03-10:Organic Search"
        # Missing channel falls back to Direct
        assert sessions[1].metadata["source"] == "Direct"

    def test_window_entirely_today_fetches_nothing(self):
        def handler(request):
            raise AssertionError("no request expected")

        adapter = GoogleAnalyticsAdapter("123", "token", transport=httpx.MockTransport(handler), clock=clock)
        assert asyncio.run(adapter.fetch_range(datetime(2026, 3, 15), datetime(2026, 3, 15, 12))) == []

    def test_refresh_keeps_refresh_token_and_sets_expiry(self):
        def handler(request):
            return httpx.Response(200, json={"access_token": "new", "expires_in": 3600})

        adapter = GoogleAnalyticsAdapter("123", "old", "refresh-1", client_id="cid", client_secret="cs",
                                         transport=httpx.MockTransport(handler), clock=clock)
        bundle = asyncio.run(adapter.refresh_access_token())
        assert bundle.refresh_token == "refresh-1"
        assert bundle.expires_at == datetime(2026, 3, 15, 13)

    def test_switching_property_backfills_same_days(self, test_db_session, test_organization, make_integration):
        def transport(sessions):
            def handler(request):
                return httpx.Response(200, json={"rows": [ga_row("20260301", "Organic Search", sessions)],
                                                 "rowCount": 1})
            return httpx.MockTransport(handler)

        integration = make_integration(test_organization, PlatformEnum.google_analytics, "111")
        window = (datetime(2026, 3, 1), datetime(2026, 3, 2))

        old = GoogleAnalyticsAdapter("111", "token", transport=transport(40), clock=clock)
        first = write_datapoints(test_db_session, integration, asyncio.run(old.fetch_range(*window)))

        integration.platform_account_id = "222"
        test_db_session.commit()
        new = GoogleAnalyticsAdapter("222", "token", transport=transport(900), clock=clock)
        second = write_datapoints(test_db_session, integration, asyncio.run(new.fetch_range(*window)))

        assert (first.inserted, second.inserted, second.skipped) == (3, 3, 0)
        sessions = (
            test_db_session.query(DataPoint)
            .filter(DataPoint.integration_id == integration.id, DataPoint.metric_type == "sessions")
            .all()
        )
        by_property = {p.meta["property_id"]: p.value for p in sessions}
        assert by_property == {"111": Decimal("40"), "222": Decimal("900")}


# ============================================================================
# Retry policy
# ============================================================================

class TestRequestRetry:
    def test_retries_server_errors_then_succeeds(self):
        responses = iter([httpx.Response(503), httpx.Response(200, json={"shop": {"name": "Test"}})])

        adapter = ShopifyAdapter("test-store", "token", transport=httpx.MockTransport(lambda r: next(responses)),
                                 sleep=no_sleep)
        assert asyncio.run(adapter.get_shop()) == {"name": "Test"}

    def test_exhausted_retries_are_transient(self):
        adapter = ShopifyAdapter("test-store", "token", transport=httpx.MockTransport(lambda r: httpx.Response(500)),
                                 sleep=no_sleep)
        with pytest.raises(ProviderAPIError) as exc_info:
            asyncio.run(adapter.get_shop())
        assert exc_info.value.transient is True

    def test_unauthorized_is_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(401)

        adapter = ShopifyAdapter("test-store", "token", transport=httpx.MockTransport(handler), sleep=no_sleep)
        with pytest.raises(ProviderAPIError) as exc_info:
            asyncio.run(adapter.get_shop())
        assert exc_info.value.is_unauthorized
        assert len(calls) == 1
