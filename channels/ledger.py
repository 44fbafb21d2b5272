"""
Ticket ledger — append-only record of every issued service call.

InMemoryLedger is the reference LedgerWriter; a spreadsheet or database
writer implements the same contract.
"""
from __future__ import annotations

import structlog
from typing import Any

from channels.base import LedgerWriter
from models.schemas import RecordLedgerRow

logger = structlog.get_logger()


class InMemoryLedger(LedgerWriter):

    def __init__(self):
        self.rows: list[RecordLedgerRow] = []

    async def append(self, row: RecordLedgerRow) -> None:
        self.rows.append(row)
        logger.info("ledger_row_recorded",
                    ticket_id=row.ticket_id,
                    kind=row.kind.value,
                    customer_id=row.customer.id if row.customer else None,
                    resolved=row.resolved)

    def find(self, ticket_id: str) -> list[RecordLedgerRow]:
        return [r for r in self.rows if r.ticket_id == ticket_id]

    def stats(self) -> dict[str, Any]:
        return {
            "rows": len(self.rows),
            "resolved": sum(1 for r in self.rows if r.resolved),
        }
