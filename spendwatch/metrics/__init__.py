"""Spend aggregation queries and forecasting."""
