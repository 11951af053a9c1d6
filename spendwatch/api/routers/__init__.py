"""API routers for spendwatch."""

from spendwatch.api.routers.alerts import router as alerts_router
from spendwatch.api.routers.billing import router as billing_router
from spendwatch.api.routers.budgets import router as budgets_router
from spendwatch.api.routers.scheduler import router as scheduler_router

__all__ = [
    "alerts_router",
    "billing_router",
    "budgets_router",
    "scheduler_router",
]
