"""Common contract and HTTP plumbing for provider adapters.

WHAT:
    - DataPointRecord: a translated fact, not yet bound to an integration row
    - ProviderAPIError: every provider HTTP failure, tagged transient or not
    - ProviderAdapter: base class with capability flags
      {translate, fetch_range, refresh_access_token} and a retrying httpx
      request helper

WHY:
    The four platforms differ in auth (HMAC webhooks, OAuth bearer + refresh,
    Basic auth) and pagination, but share the retry/backoff policy and the
    canonical output shape consumed by datapoint_writer.

REFERENCES:
    - bizinsights/services/datapoint_writer.py (persists DataPointRecords)
    - bizinsights/services/integration_lifecycle.py (401 -> refresh -> retry)
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, ClassVar, Dict, FrozenSet, List, Optional

import httpx

from bizinsights.models import PlatformEnum
from bizinsights.utils.dates import utcnow

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_RETRIES = 3


class ProviderAPIError(Exception):
    """Provider API call failed.

    `transient` marks failures worth retrying later (timeouts, 5xx, rate
    limits). A 401 is never transient: it goes through token refresh.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, transient: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.transient = transient

    @property
    def is_unauthorized(self) -> bool:
        return self.status_code == 401


class ReauthorizationRequired(ProviderAPIError):
    """Token refresh failed or the refreshed token was rejected too."""

    def __init__(self, message: str):
        super().__init__(message, status_code=401, transient=False)


class TranslationError(ValueError):
    """Payload shape is not what the topic promises."""


@dataclass
class DataPointRecord:
    metric_type: str
    value: Decimal
    date_recorded: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)
    source_key: Optional[str] = None


@dataclass
class TokenBundle:
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    scope: Optional[str] = None


def to_decimal(value: Any, default: str = "0") -> Decimal:
    if value is None or value == "":
        return Decimal(default)
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise TranslationError(f"Not a number: {value!r}")


class ProviderAdapter:
    """Base class for per-platform adapters.

    Subclasses set the capability flags and implement translate/fetch_range
    (and refresh_access_token for OAuth platforms).
    """

    platform: ClassVar[PlatformEnum]
    log_tag: ClassVar[str] = "PROVIDER"

    supports_webhooks: ClassVar[bool] = True
    supports_refresh: ClassVar[bool] = False

    # Topics that produce facts (possibly zero for a given payload)
    handled_topics: ClassVar[FrozenSet[str]] = frozenset()
    # Topics that end the integration (uninstall / deauthorize)
    disconnect_topics: ClassVar[FrozenSet[str]] = frozenset()

    def __init__(
        self,
        account_id: str,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        retries: int = DEFAULT_RETRIES,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.account_id = account_id
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.timeout = timeout
        self.retries = max(1, retries)
        self._transport = transport
        self._clock = clock
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Capabilities
    # ------------------------------------------------------------------

    def handles(self, topic: str) -> bool:
        return topic in self.handled_topics

    def is_disconnect_topic(self, topic: str) -> bool:
        return topic in self.disconnect_topics

    def translate(self, topic: str, payload: Dict[str, Any]) -> List[DataPointRecord]:
        """Map one webhook payload to facts. Pure; unknown topics give []."""
        raise NotImplementedError

    async def fetch_range(self, start: datetime, end: datetime) -> List[DataPointRecord]:
        """Read provider history for [start, end] and map it to facts."""
        raise NotImplementedError

    async def refresh_access_token(self) -> TokenBundle:
        raise NotImplementedError(f"{self.platform.value} does not use refreshable tokens")

    def with_access_token(self, access_token: str) -> "ProviderAdapter":
        self.access_token = access_token
        return self

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send a request with retry on 429/5xx/timeouts.

        Raises:
            ProviderAPIError: non-retryable status, or retries exhausted.
        """
        last_error: Optional[ProviderAPIError] = None

        for attempt in range(self.retries):
            try:
                async with self._client() as client:
                    response = await client.request(method, url, **kwargs)
            except httpx.TimeoutException as e:
                last_error = ProviderAPIError(f"Timeout calling {self.platform.value}: {e}", transient=True)
                logger.warning(f"[{self.log_tag}] Timeout (attempt {attempt + 1}/{self.retries}): {url}")
                await self._backoff(attempt)
                continue
            except httpx.RequestError as e:
                last_error = ProviderAPIError(f"Request error calling {self.platform.value}: {e}", transient=True)
                logger.warning(f"[{self.log_tag}] Request error (attempt {attempt + 1}/{self.retries}): {e}")
                await self._backoff(attempt)
                continue

            if response.status_code == 429:
                retry_after = _retry_after_seconds(response, default=2 ** attempt)
                last_error = ProviderAPIError("Rate limited", status_code=429, transient=True)
                logger.warning(f"[{self.log_tag}] Rate limited, waiting {retry_after}s")
                if attempt + 1 < self.retries:
                    await self._sleep(retry_after)
                continue

            if response.status_code >= 500:
                last_error = ProviderAPIError(
                    f"{self.platform.value} API error {response.status_code}",
                    status_code=response.status_code,
                    transient=True,
                )
                logger.warning(f"[{self.log_tag}] Server error {response.status_code} (attempt {attempt + 1}/{self.retries})")
                await self._backoff(attempt)
                continue

            if response.status_code == 401:
                raise ProviderAPIError(f"{self.platform.value} rejected credentials", status_code=401)

            if response.status_code >= 400:
                raise ProviderAPIError(
                    f"{self.platform.value} API error {response.status_code}: {response.text[:200]}",
                    status_code=response.status_code,
                )

            return response

        raise last_error or ProviderAPIError(f"{self.platform.value} request failed", transient=True)

    async def _backoff(self, attempt: int) -> None:
        if attempt + 1 < self.retries:
            await self._sleep(2 ** attempt)


def _retry_after_seconds(response: httpx.Response, default: float) -> float:
    value = response.headers.get("Retry-After")
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        return default
