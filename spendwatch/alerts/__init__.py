"""Alert event ledger and deduplicated dispatch."""
