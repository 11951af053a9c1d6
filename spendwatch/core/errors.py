"""Error taxonomy for the cost ledger, budget and alerting pipeline.

Per-unit failures (one record, one account, one subject) are reported in
aggregate results. Only StoreError is fatal to a scheduler run.
"""


class SpendwatchError(Exception):
    """Base class for all spendwatch errors."""


class ValidationError(SpendwatchError, ValueError):
    """Malformed input to a ledger merge or policy create/update.

    Rejected, never retried. Carries the name of the offending field so
    API callers can report it.
    """

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


class TransientProviderError(SpendwatchError):
    """Network, timeout or throttling failure talking to the billing provider."""


class ProviderError(SpendwatchError):
    """Permanent billing provider failure (bad credentials, unknown account)."""


class DeliveryError(SpendwatchError):
    """Notification transport failed to deliver a rendered alert."""


class ConsistencyError(SpendwatchError):
    """Stored state references something that no longer exists.

    For example a budget policy for a subject missing from the account registry.
    """


class StoreError(SpendwatchError):
    """The ledger or alert ledger is unreachable."""
