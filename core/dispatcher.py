"""
Intent Dispatcher — executes outbound intents against the channel contracts.

Dispatch is fire-and-forget: each batch runs in a background task, intents
within a batch run in order, and every failure is logged and dropped. A
failed send never reverts the state transition that produced it.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Optional, Sequence

from channels.base import LedgerWriter, MailSender, ReplySender
from models.schemas import (
    OutboundIntent, RecordLedgerRow, SendCustomerConfirmation,
    SendOperationalEmail, SendReply,
)

logger = structlog.get_logger()


class IntentDispatcher:

    def __init__(
        self,
        reply_sender: Optional[ReplySender] = None,
        mail_sender: Optional[MailSender] = None,
        ledger: Optional[LedgerWriter] = None,
    ):
        self.reply_sender = reply_sender
        self.mail_sender = mail_sender
        self.ledger = ledger
        self._tasks: set[asyncio.Task] = set()
        self._stats = {"dispatched": 0, "failed": 0}

    def dispatch(self, intents: Sequence[OutboundIntent], key: str = "") -> Optional[asyncio.Task]:
        if not intents:
            return None
        task = asyncio.create_task(self.execute(list(intents), key), name=f"intents:{key}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def execute(self, intents: Sequence[OutboundIntent], key: str = "") -> int:
        """Run intents in order; returns how many succeeded."""
        ok = 0
        for intent in intents:
            try:
                await self._execute_one(intent)
                ok += 1
                self._stats["dispatched"] += 1
            except Exception as e:
                self._stats["failed"] += 1
                logger.error("intent_delivery_failed", key=key, intent=intent.type, error=str(e))
        return ok

    async def _execute_one(self, intent: OutboundIntent) -> Any:
        if isinstance(intent, SendReply):
            if self.reply_sender is None:
                raise RuntimeError("no reply sender configured")
            return await self.reply_sender.send_reply(intent.identity_address, intent.text)
        if isinstance(intent, SendOperationalEmail):
            if self.mail_sender is None:
                raise RuntimeError("no mail sender configured")
            return await self.mail_sender.send_operational(intent)
        if isinstance(intent, SendCustomerConfirmation):
            if self.mail_sender is None:
                raise RuntimeError("no mail sender configured")
            return await self.mail_sender.send_customer_confirmation(intent)
        if isinstance(intent, RecordLedgerRow):
            if self.ledger is None:
                raise RuntimeError("no ledger configured")
            return await self.ledger.append(intent)
        raise TypeError(f"unknown intent {intent!r}")

    async def drain(self) -> None:
        """Wait for every in-flight batch."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def stats(self) -> dict[str, Any]:
        return {**self._stats, "in_flight": len(self._tasks)}
