"""Metered-billing provider clients."""

from spendwatch.providers.billing import (
    HttpBillingProvider,
    MeteredBillingProvider,
    ProviderCostRow,
    fetch_with_retry,
)

__all__ = [
    "HttpBillingProvider",
    "MeteredBillingProvider",
    "ProviderCostRow",
    "fetch_with_retry",
]
