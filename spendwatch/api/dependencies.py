"""Shared request helpers for the API routers.

Collaborators built in the app lifespan live on ``app.state``; routers read
them through these helpers. Each request opens its own ledger connection.
"""

import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from decimal import Decimal

from fastapi import HTTPException, Request

from spendwatch.accounts.registry import AccountRegistry
from spendwatch.alerts.dispatcher import Dispatcher
from spendwatch.api.scheduler import CostScheduler
from spendwatch.ledger.db import AMOUNT_QUANTUM, ledger_connection
from spendwatch.ledger.periods import period_of, utc_now


@contextmanager
def open_ledger(request: Request) -> Generator[sqlite3.Connection, None, None]:
    """Open a ledger connection for the duration of one request."""
    with ledger_connection(request.app.state.db_path) as conn:
        yield conn


def get_registry(request: Request) -> AccountRegistry:
    return request.app.state.registry


def get_dispatcher(request: Request) -> Dispatcher:
    return request.app.state.dispatcher


def get_cost_scheduler(request: Request) -> CostScheduler:
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Scheduler is not initialized.")
    return scheduler


def money(value: Decimal) -> float:
    """Present a Decimal amount as a JSON number."""
    return float(value.quantize(AMOUNT_QUANTUM))


def current_period(period: str | None) -> str:
    """The requested period, or the current UTC month when omitted."""
    return period or period_of(utc_now().date())
