"""Ledger singleton.

Same conditional pattern as engine.py and redis.py: Postgres when
DATABASE_URL is configured, in-memory otherwise.  Every service module
builds its own singleton on top of this one.
"""

from __future__ import annotations

from app.db.engine import async_session_factory
from app.repos.ledger import InMemoryLedger, LedgerStore
from app.repos.pg_ledger import PgLedger

if async_session_factory is not None:
    ledger: LedgerStore = PgLedger(async_session_factory)
else:
    ledger = InMemoryLedger()
