"""
Database layer — process-local state and reference data.

Modules:
  - session_store: per-address conversation sessions with TTL sweeps
  - dedup: inbound message-id idempotency window
  - tickets: service-call numbering with external counter fallback
  - reference: customer directory and failure-scenario catalog loaders

Quick start:
  from database import SessionStore
  store = SessionStore(max_age_seconds=7200, fragile_idle_seconds=600)
  session, created = store.get_or_create("972541234567")
"""
from database.session_store import SessionStore
from database.dedup import Deduplicator
from database.tickets import TicketIssuer, TicketCounterBackend
from database.reference import load_customers, load_catalog

__all__ = [
    "SessionStore",
    "Deduplicator",
    "TicketIssuer", "TicketCounterBackend",
    "load_customers", "load_catalog",
]
