"""Account registry: external accounts, subjects and resource assignments."""

from spendwatch.accounts.registry import AccountRegistry, load_registry

__all__ = ["AccountRegistry", "load_registry"]
