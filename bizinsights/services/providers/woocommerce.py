"""WooCommerce adapter: webhook translation and REST v3 backfill.

WHAT:
    Maps `order.*`, `customer.*` and `product.created` webhooks to DataPoints,
    tests store credentials, registers webhooks and pages through
    /wp-json/wc/v3/orders for backfill.

WHY:
    WooCommerce uses Basic-Auth consumer key/secret pairs that never expire,
    so this adapter has no refresh capability. The pair is stored encrypted as
    "<consumer_key>:<consumer_secret>" in the integration's access token slot.

REFERENCES:
    - https://woocommerce.github.io/woocommerce-rest-api-docs/#webhooks
    - https://woocommerce.github.io/woocommerce-rest-api-docs/#list-all-orders
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import httpx

from bizinsights.models import PlatformEnum
from bizinsights.services.providers.base import (
    DataPointRecord,
    ProviderAdapter,
    ProviderAPIError,
    TranslationError,
    to_decimal,
)
from bizinsights.utils.dates import parse_timestamp

logger = logging.getLogger(__name__)

PER_PAGE = 100
CONNECT_TIMEOUT_SECONDS = 10.0

PAID_STATUSES = frozenset({"processing", "completed"})
NOT_COUNTED_STATUSES = frozenset({"cancelled", "failed", "trash"})

# Advertised on the GET info endpoint
SUPPORTED_EVENTS = [
    f"{resource}.{action}"
    for resource in ("order", "product", "customer", "coupon")
    for action in ("created", "updated", "deleted")
]

# Registered on connect
WEBHOOK_TOPICS = ["order.created", "order.updated", "customer.created", "product.created"]


def normalize_store_url(store_url: str) -> str:
    url = store_url.strip()
    if not url.startswith(("http://", "https://")):
        url = f"https://{url}"
    return url.rstrip("/")


def split_credentials(credential: str) -> Tuple[str, str]:
    consumer_key, sep, consumer_secret = credential.partition(":")
    if not sep:
        raise ProviderAPIError("WooCommerce credentials malformed", status_code=401)
    return consumer_key, consumer_secret


def infer_topic(payload: Dict[str, Any]) -> Optional[str]:
    """Best guess for deliveries that arrive without X-WC-Webhook-Topic."""
    if "line_items" in payload or "order_key" in payload:
        return "order.updated"
    if "sku" in payload or "regular_price" in payload:
        return "product.updated"
    if "email" in payload and ("first_name" in payload or "username" in payload):
        return "customer.updated"
    return None


class WooCommerceAdapter(ProviderAdapter):
    platform = PlatformEnum.woocommerce
    log_tag = "WOOCOMMERCE"

    handled_topics = frozenset(SUPPORTED_EVENTS)

    def __init__(self, account_id: str, access_token: Optional[str] = None, refresh_token: Optional[str] = None,
                 **kwargs: Any):
        super().__init__(normalize_store_url(account_id), access_token, refresh_token, **kwargs)
        self.api_url = f"{self.account_id}/wp-json/wc/v3"

    # ------------------------------------------------------------------
    # Webhook translation
    # ------------------------------------------------------------------

    def translate(self, topic: str, payload: Dict[str, Any]) -> List[DataPointRecord]:
        if topic == "order.created":
            return self._order_created(payload, paid_at=self._clock())
        if topic == "order.updated":
            return self._order_updated(payload, paid_at=self._clock())
        if topic in ("customer.created", "customer.updated"):
            return self._customer(topic, payload)
        if topic == "product.created":
            product_id = self._require_id(payload, "Product")
            return [DataPointRecord(
                "product_created",
                to_decimal(1),
                parse_timestamp(payload.get("date_created_gmt")) or self._clock(),
                {"product_id": str(product_id), "name": payload.get("name"), "price": payload.get("price")},
                f"product:{product_id}",
            )]
        # Deletions and coupon events are acknowledged without facts
        return []

    @staticmethod
    def _require_id(payload: Dict[str, Any], kind: str) -> Any:
        object_id = payload.get("id")
        if object_id is None:
            raise TranslationError(f"{kind} payload has no id")
        return object_id

    def _order_meta(self, order: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "order_id": str(order.get("id")),
            "order_number": order.get("number"),
            "currency": order.get("currency"),
            "status": order.get("status"),
        }

    def _order_created(self, order: Dict[str, Any], paid_at: datetime) -> List[DataPointRecord]:
        order_id = self._require_id(order, "Order")
        key = f"order:{order_id}"
        points: List[DataPointRecord] = []

        if order.get("status") not in NOT_COUNTED_STATUSES:
            created_at = parse_timestamp(order.get("date_created_gmt")) or self._clock()
            total = to_decimal(order.get("total"))
            points.append(DataPointRecord("orders", to_decimal(1), created_at, self._order_meta(order), key))
            points.append(DataPointRecord("order_value", total, created_at, self._order_meta(order), key))

        points.extend(self._revenue(order, paid_at))
        return points

    def _order_updated(self, order: Dict[str, Any], paid_at: datetime) -> List[DataPointRecord]:
        order_id = self._require_id(order, "Order")
        points = self._revenue(order, paid_at)
        if order.get("status") == "cancelled":
            points.append(DataPointRecord(
                "orders_cancelled",
                to_decimal(1),
                parse_timestamp(order.get("date_modified_gmt")) or self._clock(),
                {**self._order_meta(order), "cancelled_order_value": str(to_decimal(order.get("total")))},
                f"order:{order_id}",
            ))
        return points

    @staticmethod
    def _is_paid(order: Dict[str, Any]) -> bool:
        return order.get("status") in PAID_STATUSES and bool(order.get("date_paid_gmt") or order.get("date_paid"))

    def _revenue(self, order: Dict[str, Any], paid_at: datetime) -> List[DataPointRecord]:
        if not self._is_paid(order):
            return []
        return [DataPointRecord(
            "revenue",
            to_decimal(order.get("total")),
            paid_at,
            {
                **self._order_meta(order),
                "original_order_date": order.get("date_created_gmt"),
                "tax": str(to_decimal(order.get("total_tax"))),
                "payment_method": order.get("payment_method"),
            },
            f"order:{order['id']}",
        )]

    def _customer(self, topic: str, customer: Dict[str, Any]) -> List[DataPointRecord]:
        customer_id = self._require_id(customer, "Customer")
        points: List[DataPointRecord] = []
        if topic == "customer.created":
            points.append(DataPointRecord(
                "customers",
                to_decimal(1),
                parse_timestamp(customer.get("date_created_gmt")) or self._clock(),
                {"customer_id": str(customer_id)},
                f"customer:{customer_id}",
            ))
        total_spent = to_decimal(customer.get("total_spent"))
        if total_spent > 0:
            points.append(DataPointRecord(
                "customer_lifetime_value",
                total_spent,
                self._clock(),
                {"customer_id": str(customer_id), "orders_count": customer.get("orders_count")},
            ))
        return points

    # ------------------------------------------------------------------
    # REST API
    # ------------------------------------------------------------------

    def _auth(self) -> httpx.BasicAuth:
        if not self.access_token:
            raise ProviderAPIError("WooCommerce credentials missing", status_code=401)
        return httpx.BasicAuth(*split_credentials(self.access_token))

    async def fetch_range(self, start: datetime, end: datetime) -> List[DataPointRecord]:
        points: List[DataPointRecord] = []
        page, total_pages = 1, 1
        while page <= total_pages:
            response = await self._request(
                "GET",
                f"{self.api_url}/orders",
                auth=self._auth(),
                params={
                    "after": start.isoformat(),
                    "before": end.isoformat(),
                    "per_page": PER_PAGE,
                    "page": page,
                },
            )
            total_pages = int(response.headers.get("X-WP-TotalPages", "1") or 1)
            for order in response.json():
                points.extend(self._backfill_order(order))
            page += 1
        logger.info(f"[WOOCOMMERCE] Backfill produced {len(points)} points for {self.account_id}")
        return points

    def _backfill_order(self, order: Dict[str, Any]) -> List[DataPointRecord]:
        paid_at = (
            parse_timestamp(order.get("date_paid_gmt"))
            or parse_timestamp(order.get("date_created_gmt"))
            or self._clock()
        )
        if order.get("status") != "cancelled":
            return self._order_created(order, paid_at)

        # Placed, then cancelled: counts as an order plus a cancellation
        points = self._order_created(dict(order, status="pending"), paid_at)
        points.extend(r for r in self._order_updated(order, paid_at) if r.metric_type == "orders_cancelled")
        return points

    async def test_connection(self) -> Dict[str, Any]:
        """GET system_status with a short timeout; raises ProviderAPIError on failure."""
        saved_timeout, saved_retries = self.timeout, self.retries
        self.timeout, self.retries = CONNECT_TIMEOUT_SECONDS, 1
        try:
            response = await self._request("GET", f"{self.api_url}/system_status", auth=self._auth())
        finally:
            self.timeout, self.retries = saved_timeout, saved_retries
        return response.json()

    async def register_webhooks(self, delivery_url: str, secret: str) -> List[str]:
        webhook_ids: List[str] = []
        for topic in WEBHOOK_TOPICS:
            response = await self._request(
                "POST",
                f"{self.api_url}/webhooks",
                auth=self._auth(),
                json={
                    "name": f"BizInsights {topic}",
                    "topic": topic,
                    "delivery_url": delivery_url,
                    "secret": secret,
                    "status": "active",
                },
            )
            webhook_ids.append(str(response.json().get("id")))
        logger.info(f"[WOOCOMMERCE] Registered {len(webhook_ids)} webhooks for {self.account_id}")
        return webhook_ids
