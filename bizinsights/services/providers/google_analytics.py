"""Google Analytics 4 adapter (OAuth2, poll only).

WHAT:
    Pulls daily traffic per default channel group from the GA4 Data API
    `runReport` and maps it to sessions/users/pageviews DataPoints. Also
    exchanges OAuth codes, refreshes access tokens and lists GA4 properties.

WHY:
    GA has no webhooks. Facts are daily aggregates keyed by
    `ga:<date>:<channel>`, so re-syncing a window never double counts. Only
    complete days (through yesterday) are fetched, since today's numbers are
    still moving and would be frozen by the source key.

REFERENCES:
    - https://developers.google.com/analytics/devguides/reporting/data/v1/rest/v1beta/properties/runReport
    - https://developers.google.com/analytics/devguides/config/admin/v1/rest/v1beta/accountSummaries/list
    - https://developers.google.com/identity/protocols/oauth2/web-server#offline
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from bizinsights.models import PlatformEnum
from bizinsights.services.providers.base import (
    DataPointRecord,
    ProviderAdapter,
    ProviderAPIError,
    TokenBundle,
    to_decimal,
)
from bizinsights.utils.dates import parse_timestamp

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
DATA_API_BASE = "https://analyticsdata.googleapis.com/v1beta"
ADMIN_API_BASE = "https://analyticsadmin.googleapis.com/v1beta"
GA_SCOPES = ["https://www.googleapis.com/auth/analytics.readonly"]

REPORT_PAGE_SIZE = 10000
REPORT_METRICS = [
    "sessions",
    "totalUsers",
    "newUsers",
    "screenPageViews",
    "averageSessionDuration",
    "bounceRate",
]


class GoogleAnalyticsAdapter(ProviderAdapter):
    platform = PlatformEnum.google_analytics
    log_tag = "GOOGLE_ANALYTICS"

    supports_webhooks = False
    supports_refresh = True

    def __init__(self, account_id: str, access_token: Optional[str] = None, refresh_token: Optional[str] = None,
                 *, client_id: Optional[str] = None, client_secret: Optional[str] = None,
                 redirect_uri: Optional[str] = None, **kwargs: Any):
        # account_id is the numeric GA4 property id (without "properties/")
        super().__init__(str(account_id).removeprefix("properties/"), access_token, refresh_token, **kwargs)
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri

    def translate(self, topic: str, payload: Dict[str, Any]) -> List[DataPointRecord]:
        return []

    def _headers(self) -> Dict[str, str]:
        if not self.access_token:
            raise ProviderAPIError("Google access token missing", status_code=401)
        return {"Authorization": f"Bearer {self.access_token}"}

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def fetch_range(self, start: datetime, end: datetime) -> List[DataPointRecord]:
        yesterday = (self._clock() - timedelta(days=1)).date()
        end_date = min(end.date(), yesterday)
        if end_date < start.date():
            return []

        points: List[DataPointRecord] = []
        offset = 0
        while True:
            response = await self._request(
                "POST",
                f"{DATA_API_BASE}/properties/{self.account_id}:runReport",
                headers=self._headers(),
                json={
                    "dateRanges": [{"startDate": start.date().isoformat(), "endDate": end_date.isoformat()}],
                    "dimensions": [{"name": "date"}, {"name": "sessionDefaultChannelGroup"}],
                    "metrics": [{"name": name} for name in REPORT_METRICS],
                    "limit": REPORT_PAGE_SIZE,
                    "offset": offset,
                },
            )
            body = response.json()
            rows = body.get("rows", [])
            for row in rows:
                points.extend(self._row_points(row))
            offset += len(rows)
            if not rows or offset >= int(body.get("rowCount", 0)):
                break

        logger.info(f"[GOOGLE_ANALYTICS] Property {self.account_id}: {len(points)} points for {start.date()}..{end_date}")
        return points

    def _row_points(self, row: Dict[str, Any]) -> List[DataPointRecord]:
        dimensions = [d.get("value") for d in row.get("dimensionValues", [])]
        metrics = dict(zip(REPORT_METRICS, (m.get("value") for m in row.get("metricValues", []))))

        date_value = dimensions[0] if dimensions else None
        day = parse_timestamp(date_value)
        if day is None:
            logger.warning(f"[GOOGLE_ANALYTICS] Skipping row with unparseable date {date_value!r}")
            return []
        channel = (dimensions[1] if len(dimensions) > 1 else None) or "Direct"
        # Keyed per property: switching properties must not collide with the old one's days
        key = f"ga:{self.account_id}:{day:%Y-%m-%d}:{channel}"

        return [
            DataPointRecord(
                "sessions",
                to_decimal(metrics.get("sessions")),
                day,
                {"source": channel, "property_id": self.account_id},
                key,
            ),
            DataPointRecord(
                "users",
                to_decimal(metrics.get("totalUsers")),
                day,
                {"source": channel, "new_users": int(to_decimal(metrics.get("newUsers")))},
                key,
            ),
            DataPointRecord(
                "pageviews",
                to_decimal(metrics.get("screenPageViews")),
                day,
                {
                    "source": channel,
                    "avg_session_duration": float(to_decimal(metrics.get("averageSessionDuration"))),
                    "bounce_rate": float(to_decimal(metrics.get("bounceRate"))),
                },
                key,
            ),
        ]

    async def list_properties(self) -> List[Dict[str, Any]]:
        """GA4 properties visible to the token, flattened from account summaries."""
        properties: List[Dict[str, Any]] = []
        page_token: Optional[str] = None
        while True:
            params = {"pageSize": 200}
            if page_token:
                params["pageToken"] = page_token
            response = await self._request(
                "GET", f"{ADMIN_API_BASE}/accountSummaries", headers=self._headers(), params=params
            )
            body = response.json()
            for account in body.get("accountSummaries", []):
                for prop in account.get("propertySummaries", []):
                    properties.append({
                        "property_id": prop.get("property", "").removeprefix("properties/"),
                        "display_name": prop.get("displayName"),
                        "account_id": account.get("account", "").removeprefix("accounts/"),
                        "account_name": account.get("displayName"),
                    })
            page_token = body.get("nextPageToken")
            if not page_token:
                break
        return properties

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def _require_client(self) -> None:
        if not self.client_id or not self.client_secret:
            raise ProviderAPIError("Google OAuth not configured. Missing CLIENT_ID or CLIENT_SECRET.")

    async def exchange_code(self, code: str) -> TokenBundle:
        self._require_client()
        response = await self._request(
            "POST",
            GOOGLE_TOKEN_URL,
            data={
                "code": code,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "redirect_uri": self.redirect_uri,
                "grant_type": "authorization_code",
            },
        )
        return self._token_bundle(response.json())

    async def refresh_access_token(self) -> TokenBundle:
        self._require_client()
        if not self.refresh_token:
            raise ProviderAPIError("Google refresh token missing", status_code=401)
        response = await self._request(
            "POST",
            GOOGLE_TOKEN_URL,
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": self.refresh_token,
                "grant_type": "refresh_token",
            },
        )
        bundle = self._token_bundle(response.json())
        logger.info(f"[GOOGLE_ANALYTICS] Refreshed access token for property {self.account_id}")
        return bundle

    def _token_bundle(self, data: Dict[str, Any]) -> TokenBundle:
        if not data.get("access_token"):
            raise ProviderAPIError("Google token response missing access_token", status_code=401)
        expires_in = data.get("expires_in")
        return TokenBundle(
            access_token=data["access_token"],
            # Google omits refresh_token on refresh grants
            refresh_token=data.get("refresh_token") or self.refresh_token,
            expires_at=self._clock() + timedelta(seconds=int(expires_in)) if expires_in else None,
            scope=data.get("scope"),
        )
