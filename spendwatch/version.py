"""Version information for spendwatch."""

__version__ = "0.4.0"
