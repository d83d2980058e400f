"""Shopify adapter: webhook translation, REST backfill, OAuth install helpers.

WHAT:
    Maps Shopify order/customer/app webhooks to DataPoints and pages through
    the Admin REST API for historical orders and customers.

WHY:
    Shopify is push-first (HMAC-signed webhooks). Admin tokens from the OAuth
    install are offline tokens that do not expire, so there is no refresh;
    a 401 means the app was uninstalled or the token revoked.

REVENUE RECOGNITION:
    `orders` and `order_value` are dated at order creation. `revenue` is dated
    when payment is confirmed: the processing time of the webhook, or the
    order's `processed_at` during backfill. An order created unpaid and paid
    later therefore contributes its revenue to the payment period, exactly
    once (source key `order:<id>`). This asymmetry is intentional.

REFERENCES:
    - https://shopify.dev/docs/api/admin-rest/2024-10/resources/webhook
    - https://shopify.dev/docs/api/admin-rest/2024-10/resources/order
    - https://shopify.dev/docs/api/usage/pagination-rest
"""

import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

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

DEFAULT_API_VERSION = "2024-10"
PAGE_LIMIT = 250

ORDER_TOPICS = frozenset({"orders/create", "orders/updated", "orders/paid", "orders/cancelled"})
CUSTOMER_TOPICS = frozenset({"customers/create", "customers/update"})
UNINSTALL_TOPIC = "app/uninstalled"

# Topics registered on connect
WEBHOOK_TOPICS = sorted(ORDER_TOPICS | CUSTOMER_TOPICS | {UNINSTALL_TOPIC})

_LINK_NEXT = re.compile(r'<([^>]+)>;\s*rel="next"')


def normalize_shop_domain(shop: str) -> str:
    """`mystore`, `mystore.myshopify.com`, `https://mystore.myshopify.com/` -> `mystore.myshopify.com`."""
    domain = shop.strip().lower()
    domain = re.sub(r"^https?://", "", domain).rstrip("/")
    if not domain.endswith(".myshopify.com"):
        domain = f"{domain}.myshopify.com"
    return domain


class ShopifyAdapter(ProviderAdapter):
    platform = PlatformEnum.shopify
    log_tag = "SHOPIFY"

    handled_topics = ORDER_TOPICS | CUSTOMER_TOPICS
    disconnect_topics = frozenset({UNINSTALL_TOPIC})

    def __init__(self, account_id: str, access_token: Optional[str] = None, refresh_token: Optional[str] = None,
                 *, api_version: str = DEFAULT_API_VERSION, **kwargs: Any):
        super().__init__(normalize_shop_domain(account_id), access_token, refresh_token, **kwargs)
        self.api_version = api_version
        self.base_url = f"https://{self.account_id}/admin/api/{api_version}"

    # ------------------------------------------------------------------
    # Webhook translation
    # ------------------------------------------------------------------

    def translate(self, topic: str, payload: Dict[str, Any]) -> List[DataPointRecord]:
        if topic in ORDER_TOPICS:
            return self._translate_order(topic, payload, paid_at=self._clock())
        if topic in CUSTOMER_TOPICS:
            return self._translate_customer(topic, payload)
        return []

    def _translate_order(self, topic: str, order: Dict[str, Any], paid_at: datetime) -> List[DataPointRecord]:
        order_id = order.get("id")
        if order_id is None:
            raise TranslationError("Order payload has no id")

        key = f"order:{order_id}"
        total = to_decimal(order.get("total_price"))
        currency = order.get("currency")
        created_at = parse_timestamp(order.get("created_at")) or self._clock()
        is_paid = order.get("financial_status") == "paid"
        is_cancelled = bool(order.get("cancelled_at"))

        points: List[DataPointRecord] = []

        if topic == "orders/create" and not is_cancelled:
            meta = {
                "order_id": str(order_id),
                "order_name": order.get("name"),
                "currency": currency,
                "fulfillment_status": order.get("fulfillment_status"),
            }
            points.append(DataPointRecord("orders", to_decimal(1), created_at, meta, key))
            points.append(DataPointRecord("order_value", total, created_at, dict(meta), key))

        if is_paid and topic in ("orders/create", "orders/paid"):
            points.append(DataPointRecord(
                "revenue",
                total,
                paid_at,
                {
                    "order_id": str(order_id),
                    "currency": currency,
                    "original_order_date": created_at.isoformat(),
                    "subtotal": str(to_decimal(order.get("subtotal_price"))),
                    "tax": str(to_decimal(order.get("total_tax"))),
                },
                key,
            ))

        if topic == "orders/cancelled" and is_cancelled:
            points.append(DataPointRecord(
                "orders_cancelled",
                to_decimal(1),
                parse_timestamp(order.get("cancelled_at")) or self._clock(),
                {
                    "order_id": str(order_id),
                    "cancelled_order_value": str(total),
                    "cancel_reason": order.get("cancel_reason"),
                },
                key,
            ))

        if topic == "orders/create" and isinstance(order.get("customer"), dict):
            points.extend(self._lifetime_value(order["customer"]))

        return points

    def _translate_customer(self, topic: str, customer: Dict[str, Any]) -> List[DataPointRecord]:
        customer_id = customer.get("id")
        if customer_id is None:
            raise TranslationError("Customer payload has no id")

        points: List[DataPointRecord] = []
        if topic == "customers/create":
            points.append(DataPointRecord(
                "customers",
                to_decimal(1),
                parse_timestamp(customer.get("created_at")) or self._clock(),
                {"customer_id": str(customer_id)},
                f"customer:{customer_id}",
            ))
        points.extend(self._lifetime_value(customer))
        return points

    def _lifetime_value(self, customer: Dict[str, Any]) -> List[DataPointRecord]:
        total_spent = to_decimal(customer.get("total_spent"))
        if total_spent <= 0:
            return []
        # Running snapshot: dated now, no source key
        return [DataPointRecord(
            "customer_lifetime_value",
            total_spent,
            self._clock(),
            {
                "customer_id": str(customer.get("id")),
                "orders_count": customer.get("orders_count"),
                "currency": customer.get("currency"),
            },
        )]

    # ------------------------------------------------------------------
    # Backfill
    # ------------------------------------------------------------------

    def _headers(self) -> Dict[str, str]:
        if not self.access_token:
            raise ProviderAPIError("Shopify access token missing", status_code=401)
        return {"X-Shopify-Access-Token": self.access_token, "Content-Type": "application/json"}

    async def _get_page(self, url: str, params: Optional[Dict[str, Any]]) -> Tuple[Dict[str, Any], Optional[str]]:
        response = await self._request("GET", url, headers=self._headers(), params=params)
        match = _LINK_NEXT.search(response.headers.get("Link", ""))
        return response.json(), match.group(1) if match else None

    async def _paginate(self, resource: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Follow `Link: rel="next"` cursors. Later pages carry only page_info."""
        items: List[Dict[str, Any]] = []
        url: Optional[str] = f"{self.base_url}/{resource}.json"
        page_params: Optional[Dict[str, Any]] = params
        while url:
            body, next_url = await self._get_page(url, page_params)
            items.extend(body.get(resource, []))
            url, page_params = next_url, None
        logger.info(f"[SHOPIFY] Fetched {len(items)} {resource} for {self.account_id}")
        return items

    async def fetch_range(self, start: datetime, end: datetime) -> List[DataPointRecord]:
        window = {
            "created_at_min": start.isoformat(),
            "created_at_max": end.isoformat(),
            "limit": PAGE_LIMIT,
        }
        orders = await self._paginate("orders", {**window, "status": "any"})
        customers = await self._paginate("customers", dict(window))

        points: List[DataPointRecord] = []
        for order in orders:
            points.extend(self._backfill_order(order))
        for customer in customers:
            points.extend(r for r in self._translate_customer("customers/create", customer)
                          if r.metric_type == "customers")
        return points

    def _backfill_order(self, order: Dict[str, Any]) -> List[DataPointRecord]:
        # Historical orders always count as created; cancellation is a separate fact
        created = dict(order, cancelled_at=None)
        paid_at = parse_timestamp(order.get("processed_at")) or parse_timestamp(order.get("created_at")) or self._clock()
        points = [r for r in self._translate_order("orders/create", created, paid_at=paid_at)
                  if r.metric_type != "customer_lifetime_value"]
        if order.get("cancelled_at"):
            points.extend(self._translate_order("orders/cancelled", order, paid_at=paid_at))
        return points

    # ------------------------------------------------------------------
    # Connect helpers
    # ------------------------------------------------------------------

    async def get_shop(self) -> Dict[str, Any]:
        response = await self._request("GET", f"{self.base_url}/shop.json", headers=self._headers())
        shop = response.json().get("shop")
        if not shop:
            raise ProviderAPIError("Invalid shop response: missing shop data")
        return shop

    async def register_webhooks(self, callback_url: str) -> List[str]:
        """Subscribe every topic we translate. Returns the created webhook ids."""
        webhook_ids: List[str] = []
        for topic in WEBHOOK_TOPICS:
            try:
                response = await self._request(
                    "POST",
                    f"{self.base_url}/webhooks.json",
                    headers=self._headers(),
                    json={"webhook": {"topic": topic, "address": callback_url, "format": "json"}},
                )
            except ProviderAPIError as e:
                # 422 = already subscribed
                if e.status_code == 422:
                    logger.info(f"[SHOPIFY] Webhook {topic} already registered for {self.account_id}")
                    continue
                raise
            webhook_ids.append(str(response.json().get("webhook", {}).get("id")))
        logger.info(f"[SHOPIFY] Registered {len(webhook_ids)} webhooks for {self.account_id}")
        return webhook_ids

    async def exchange_code(self, code: str, client_id: str, client_secret: str) -> Dict[str, Any]:
        """OAuth install: trade the callback code for an offline Admin token."""
        response = await self._request(
            "POST",
            f"https://{self.account_id}/admin/oauth/access_token",
            json={"client_id": client_id, "client_secret": client_secret, "code": code},
        )
        data = response.json()
        if not data.get("access_token") or "scope" not in data:
            raise ProviderAPIError("Invalid token response: missing access_token or scope")
        return data
