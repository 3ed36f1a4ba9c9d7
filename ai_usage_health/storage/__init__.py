"""
Storage layer for AI Usage Health.

SQLite persistence for machines, session telemetry, usage aggregates, the
recommendation ledger and health score snapshots.
"""
