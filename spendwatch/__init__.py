"""Spendwatch: metered-billing cost ledger, forecasting and budget alerting."""

from spendwatch.version import __version__

__all__ = ["__version__"]
