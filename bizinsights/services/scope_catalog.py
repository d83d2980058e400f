"""Permission scope catalog per platform.

WHAT:
    The scopes each platform can grant, with dependencies, risk level and the
    data they expose. `validate_scopes` resolves dependencies and reports
    invalid/missing scopes; `estimate_data_usage` summarizes what a scope set
    gives access to.

WHY:
    Scope changes on OAuth platforms only take effect after a fresh
    authorization, so the lifecycle manager needs to know which changes are
    significant (added scopes, removed high-risk scopes).

REFERENCES:
    - https://shopify.dev/docs/api/usage/access-scopes
    - https://docs.stripe.com/connect/oauth-reference#get-authorize-request
    - https://woocommerce.github.io/woocommerce-rest-api-docs/#authentication
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Union

from bizinsights.models import PlatformEnum


@dataclass(frozen=True)
class Scope:
    id: str
    name: str
    description: str
    category: str
    required: bool = False
    risk_level: str = "low"  # low | medium | high
    data_access: List[str] = field(default_factory=list)
    depends_on: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "required": self.required,
            "risk_level": self.risk_level,
            "data_access": list(self.data_access),
        }


@dataclass
class ScopeValidation:
    valid: bool
    missing: List[str]
    invalid: List[str]
    resolved: List[str]

    def to_dict(self) -> Dict:
        return {"valid": self.valid, "missing": self.missing, "invalid": self.invalid, "resolved": self.resolved}


_SHOPIFY = [
    Scope("read_orders", "Read orders", "Order history, totals and line items", "orders",
          required=True, risk_level="medium",
          data_access=["Order totals", "Line items", "Payment status"], depends_on=["read_customers"]),
    Scope("read_customers", "Read customers", "Customer records and lifetime spend", "customers",
          required=True, risk_level="medium", data_access=["Customer names", "Email addresses", "Total spent"]),
    Scope("read_products", "Read products", "Product catalog", "products",
          data_access=["Product titles", "Prices"]),
    Scope("read_inventory", "Read inventory", "Stock levels per location", "products",
          data_access=["Inventory levels"], depends_on=["read_products"]),
    Scope("read_fulfillments", "Read fulfillments", "Fulfillment and shipping status", "orders",
          risk_level="medium", data_access=["Fulfillment status", "Tracking numbers"], depends_on=["read_orders"]),
    Scope("read_checkouts", "Read checkouts", "Abandoned checkouts", "orders",
          risk_level="high", data_access=["Abandoned carts", "Customer contact details"]),
    Scope("read_analytics", "Read analytics", "Store analytics", "analytics",
          data_access=["Sessions", "Conversion funnel"]),
    Scope("read_reports", "Read reports", "Saved reports", "analytics",
          data_access=["Report definitions"], depends_on=["read_analytics"]),
    Scope("write_orders", "Write orders", "Modify orders", "orders",
          risk_level="high", data_access=["Order edits"], depends_on=["read_orders"]),
    Scope("write_products", "Write products", "Modify the product catalog", "products",
          risk_level="high", data_access=["Product edits"], depends_on=["read_products"]),
]

_STRIPE = [
    Scope("read_only", "Read only", "Read charges, customers and invoices", "payments",
          required=True, risk_level="medium", data_access=["Charges", "Customers", "Invoices"]),
    Scope("read_write", "Read and write", "Full access to the connected account", "payments",
          risk_level="high", data_access=["Charges", "Refunds", "Payouts"], depends_on=["read_only"]),
]

_WOOCOMMERCE = [
    Scope("read", "Read", "Read orders, customers and products", "store",
          required=True, risk_level="medium", data_access=["Orders", "Customers", "Products"]),
    Scope("write", "Write", "Create webhooks and modify store data", "store",
          risk_level="high", data_access=["Webhooks", "Store data edits"]),
    Scope("read_write", "Read and write", "Read and write access", "store",
          risk_level="high", data_access=["Orders", "Customers", "Products", "Webhooks"],
          depends_on=["read", "write"]),
]

_GOOGLE_ANALYTICS = [
    Scope("analytics.readonly", "Analytics read only", "Read GA4 reports and property list", "analytics",
          required=True, data_access=["Sessions", "Users", "Page views", "Traffic sources"]),
    Scope("analytics.edit", "Analytics edit", "Manage GA4 property configuration", "analytics",
          risk_level="high", data_access=["Property settings"], depends_on=["analytics.readonly"]),
]

SCOPE_CATALOG: Dict[PlatformEnum, Dict[str, Scope]] = {
    PlatformEnum.shopify: {s.id: s for s in _SHOPIFY},
    PlatformEnum.stripe: {s.id: s for s in _STRIPE},
    PlatformEnum.woocommerce: {s.id: s for s in _WOOCOMMERCE},
    PlatformEnum.google_analytics: {s.id: s for s in _GOOGLE_ANALYTICS},
}

GOOGLE_SCOPE_PREFIX = "https://www.googleapis.com/auth/"


def _platform(platform: Union[PlatformEnum, str]) -> Optional[PlatformEnum]:
    try:
        return PlatformEnum(platform)
    except ValueError:
        return None


def normalize_scope(scope: str) -> str:
    return str(scope).strip().removeprefix(GOOGLE_SCOPE_PREFIX)


def parse_scope_string(value: Optional[str]) -> List[str]:
    """Provider scope strings are comma (Shopify) or space (OAuth2) separated."""
    if not value:
        return []
    parts = value.replace(",", " ").split()
    return _ordered(normalize_scope(p) for p in parts)


def _ordered(items: Iterable[str]) -> List[str]:
    seen = []
    for item in items:
        if item and item not in seen:
            seen.append(item)
    return seen


def catalog(platform: Union[PlatformEnum, str]) -> List[Scope]:
    resolved = _platform(platform)
    return list(SCOPE_CATALOG.get(resolved, {}).values()) if resolved else []


def get_scope(platform: Union[PlatformEnum, str], scope_id: str) -> Optional[Scope]:
    resolved = _platform(platform)
    if not resolved:
        return None
    return SCOPE_CATALOG[resolved].get(normalize_scope(scope_id))


def resolve_dependencies(platform: Union[PlatformEnum, str], scopes: Iterable[str]) -> List[str]:
    """Requested scopes plus everything they transitively imply, in order."""
    resolved_platform = _platform(platform)
    known = SCOPE_CATALOG.get(resolved_platform, {}) if resolved_platform else {}
    result: List[str] = []
    stack = list(reversed([normalize_scope(s) for s in scopes]))
    while stack:
        scope_id = stack.pop()
        if scope_id in result:
            continue
        result.append(scope_id)
        scope = known.get(scope_id)
        if scope:
            stack.extend(reversed(scope.depends_on))
    return result


def validate_scopes(platform: Union[PlatformEnum, str], requested: Iterable[str]) -> ScopeValidation:
    """Never raises; an unknown platform makes every scope invalid."""
    requested = _ordered(normalize_scope(s) for s in (requested or []))
    resolved_platform = _platform(platform)
    if resolved_platform is None:
        return ScopeValidation(valid=False, missing=[], invalid=requested, resolved=[])

    known = SCOPE_CATALOG[resolved_platform]
    invalid = [s for s in requested if s not in known]
    resolved = [s for s in resolve_dependencies(resolved_platform, requested) if s in known]
    missing = [s.id for s in known.values() if s.required and s.id not in resolved]
    return ScopeValidation(valid=not invalid and not missing, missing=missing, invalid=invalid, resolved=resolved)


def assess_risk(platform: Union[PlatformEnum, str], scopes: Iterable[str]) -> Dict:
    details = [s for s in (get_scope(platform, scope_id) for scope_id in scopes) if s]
    high = sum(1 for s in details if s.risk_level == "high")
    medium = sum(1 for s in details if s.risk_level == "medium")

    factors = []
    if high:
        factors.append(f"{high} high-risk permissions")
    if medium > 3:
        factors.append(f"{medium} medium-risk permissions")
    if len(details) > 15:
        factors.append(f"Large scope count ({len(details)} permissions)")

    level = "low"
    if high > 2:
        level = "high"
    elif high > 0 or medium > 5:
        level = "medium"
    return {"level": level, "factors": factors}


def estimate_data_usage(platform: Union[PlatformEnum, str], scopes: Iterable[str]) -> Dict:
    scopes = list(scopes)
    details = [s for s in (get_scope(platform, scope_id) for scope_id in scopes) if s]
    categories = _ordered(s.category for s in details)
    types = _ordered(item for s in details for item in s.data_access)
    risk = assess_risk(platform, scopes)

    if not details:
        description = "No data access granted"
    else:
        description = f"Access to {len(types)} data types across {', '.join(categories)}"
    return {
        "level": risk["level"],
        "categories": categories,
        "types": types,
        "risk_profile": risk,
        "description": description,
    }


def change_impact(platform: Union[PlatformEnum, str], added: List[str], removed: List[str]) -> str:
    def high_risk(scope_id: str) -> bool:
        scope = get_scope(platform, scope_id)
        return bool(scope and scope.risk_level == "high")

    if any(high_risk(s) for s in added):
        return "high"
    if any(high_risk(s) for s in removed):
        return "medium"
    if len(added) > len(removed):
        return "expanding"
    if len(removed) > len(added):
        return "reducing"
    return "minimal"


def requires_reconnection(platform: Union[PlatformEnum, str], added: List[str], removed: List[str]) -> bool:
    """Added scopes or a removed high-risk scope need a fresh authorization."""
    if added:
        return True
    return any((get_scope(platform, s) or Scope(s, s, "", "")).risk_level == "high" for s in removed)
