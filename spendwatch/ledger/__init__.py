"""Cost ledger module.

This module provides:
- SQLite storage for per-resource daily cost records (WAL mode, exact sums)
- Idempotent merge of provider rows keyed by (subject, account, resource, date)
- Daily sync from the billing provider with assignment routing
- Trigger run history for the scheduler
"""

from spendwatch.ledger.db import get_db_path, init_db, ledger_connection
from spendwatch.ledger.records import BatchResult, CostRecord, merge, merge_batch

__all__ = [
    "BatchResult",
    "CostRecord",
    "get_db_path",
    "init_db",
    "ledger_connection",
    "merge",
    "merge_batch",
]
