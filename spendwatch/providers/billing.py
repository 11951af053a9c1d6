"""Metered-billing provider client.

Fetches daily per-resource cost rows for one external account from the
provider's billing export API. The provider itself is out of scope; this
module only defines the row shape, the client protocol and an HTTP
implementation over httpx.

Wire format (GET {base_url}/accounts/{credentials_ref}/costs?start=&end=):
    {"rows": [{"date": "2024-03-01", "service": "Amazon EC2",
               "resource_id": "i-0abc", "amount": "12.50",
               "usage_quantity": 24.0, "usage_unit": "Hrs"}]}

``resource_id`` may be null for service-level rows.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Protocol

import httpx

from spendwatch.accounts.registry import AccountConfig
from spendwatch.core.errors import ProviderError, TransientProviderError

logger = logging.getLogger(__name__)

# Statuses that are worth retrying
_TRANSIENT_STATUSES = frozenset({408, 425, 429, 500, 502, 503, 504})


@dataclass(frozen=True)
class ProviderCostRow:
    """One cost line as reported by the provider."""

    service: str
    resource_key: str | None
    amount: Decimal
    date: date
    usage_quantity: float | None = None
    usage_unit: str | None = None


class MeteredBillingProvider(Protocol):
    """Anything that can report daily costs for an account."""

    def fetch_daily_costs(
        self, account: AccountConfig, start: date, end: date
    ) -> list[ProviderCostRow]:
        """Return cost rows for start <= date < end."""
        ...


def _parse_row(raw: Any) -> ProviderCostRow:
    if not isinstance(raw, dict):
        raise ProviderError(f"Malformed cost row from provider: {raw!r}")
    try:
        return ProviderCostRow(
            service=str(raw.get("service") or "Unknown"),
            resource_key=raw.get("resource_id") or None,
            amount=Decimal(str(raw.get("amount", "0"))),
            date=date.fromisoformat(raw["date"]),
            usage_quantity=(
                float(raw["usage_quantity"]) if raw.get("usage_quantity") is not None else None
            ),
            usage_unit=raw.get("usage_unit"),
        )
    except (AttributeError, KeyError, TypeError, ValueError, InvalidOperation) as e:
        raise ProviderError(f"Malformed cost row from provider: {raw!r}") from e


class HttpBillingProvider:
    """Billing export client over HTTP.

    Owns an httpx.Client; call close() (or use as a context manager) when done.
    """

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout: float = 30.0,
        client: httpx.Client | None = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = client or httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers=headers,
            follow_redirects=True,
        )

    def __enter__(self) -> "HttpBillingProvider":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def fetch_daily_costs(
        self, account: AccountConfig, start: date, end: date
    ) -> list[ProviderCostRow]:
        """Fetch cost rows for one account and the half-open range [start, end).

        Raises:
            TransientProviderError: Timeout, network failure, throttling or 5xx.
            ProviderError: Authentication failure, unknown account or bad payload.
        """
        url = f"/accounts/{account.credentials_ref}/costs"
        params = {"start": start.isoformat(), "end": end.isoformat()}
        try:
            response = self._client.get(url, params=params)
        except httpx.TimeoutException as e:
            raise TransientProviderError(f"Timeout fetching costs for {account.id}") from e
        except httpx.RequestError as e:
            raise TransientProviderError(
                f"Request error fetching costs for {account.id}: {e}"
            ) from e

        if response.status_code in _TRANSIENT_STATUSES or response.status_code >= 500:
            raise TransientProviderError(
                f"HTTP {response.status_code} fetching costs for {account.id}"
            )
        if response.status_code >= 400:
            raise ProviderError(f"HTTP {response.status_code} fetching costs for {account.id}")

        try:
            payload = response.json()
        except ValueError as e:
            raise ProviderError(f"Provider returned non-JSON body for {account.id}") from e

        rows = payload.get("rows") if isinstance(payload, dict) else None
        if not isinstance(rows, list):
            raise ProviderError(f"Provider response for {account.id} has no 'rows' list")
        return [_parse_row(raw) for raw in rows]


def fetch_with_retry(
    provider: MeteredBillingProvider,
    account: AccountConfig,
    start: date,
    end: date,
    *,
    max_attempts: int = 4,
    backoff_seconds: float = 2.0,
    sleep: Callable[[float], None] = time.sleep,
) -> list[ProviderCostRow]:
    """Fetch costs, retrying transient failures with exponential backoff.

    Waits backoff_seconds * 2**attempt between attempts. Permanent
    ProviderErrors are raised immediately.

    Args:
        provider: The billing provider client.
        account: Account to fetch.
        start: First day (inclusive).
        end: Last day (exclusive).
        max_attempts: Total attempts before giving up.
        backoff_seconds: Base delay.
        sleep: Sleep function (injectable for tests).

    Raises:
        TransientProviderError: If every attempt failed transiently.
        ProviderError: On a permanent failure.
    """
    last_error: TransientProviderError | None = None
    for attempt in range(max_attempts):
        try:
            return provider.fetch_daily_costs(account, start, end)
        except TransientProviderError as e:
            last_error = e
            if attempt + 1 >= max_attempts:
                break
            delay = backoff_seconds * (2**attempt)
            logger.warning(
                "Transient provider failure for %s (attempt %d/%d), retrying in %.1fs: %s",
                account.id,
                attempt + 1,
                max_attempts,
                delay,
                e,
            )
            sleep(delay)

    logger.error("Max retries exceeded fetching costs for %s", account.id)
    raise last_error or TransientProviderError(f"No fetch attempted for {account.id}")
