"""
Orchestrator — The central coordinator for the conversational flow.

Architecture:
  Inbound:  webhook → Deduplicator → cancel pending timer
            → [per-key lock] get/create session (address lookup on create)
            → DialogueEngine.handle → commit → re-arm timer if needed
            → intents dispatched in the background

  Timer:    EscalationScheduler fires → [per-key lock] skip if superseded
            → DialogueEngine.on_timeout → commit → dispatch → re-arm

  Fault:    approval in problem_confirmation → resolution runs outside the
            lock under an overall timeout → [per-key lock] applied only if
            the session is still processing the same request

The orchestrator owns no business rules; it sequences the store, the
dialogue engine, the scheduler and the dispatcher.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Optional

from config.settings import Settings, get_settings
from context.identity import IdentityResolver, normalize_digits
from context.state_machine import DialogueEngine, TurnResult
from core.dispatcher import IntentDispatcher
from core.engine import LLMEngine, OpenAIAssistantClient
from core.resolution import ResolutionEngine
from core.scheduler import EscalationScheduler, PendingTimer
from channels.base import LedgerWriter, MailSender, ReplySender
from database.dedup import Deduplicator
from database.reference import load_catalog, load_customers
from database.session_store import SessionStore
from database.tickets import TicketIssuer
from models.schemas import (
    InboundEvent, ResolutionResult, Sender, Session, Stage,
)

logger = structlog.get_logger()


class Orchestrator:
    """
    Sequences every inbound message and every timer fallback for a session.

    All mutations of one session happen under that session's lock; different
    sessions never contend.
    """

    def __init__(
        self,
        store: SessionStore,
        dedup: Deduplicator,
        identity: IdentityResolver,
        dialogue: DialogueEngine,
        scheduler: EscalationScheduler,
        dispatcher: IntentDispatcher,
        resolution_timeout_s: float = 45.0,
    ):
        self.store = store
        self.dedup = dedup
        self.identity = identity
        self.dialogue = dialogue
        self.scheduler = scheduler
        self.dispatcher = dispatcher
        self.resolution_timeout_s = resolution_timeout_s
        self._resolutions: set[asyncio.Task] = set()
        self._stats = {"inbound": 0, "duplicates": 0, "timeouts": 0, "superseded": 0}

    # ══════════════════════════════════════════════════════════
    #  INBOUND
    # ══════════════════════════════════════════════════════════

    async def handle_inbound(self, event: InboundEvent) -> dict[str, Any]:
        if self.dedup.check_and_record(event.message_id):
            self._stats["duplicates"] += 1
            return {"status": "duplicate", "message_id": event.message_id}

        key = normalize_digits(event.identity_address)
        if not key:
            logger.warning("inbound_without_address", message_id=event.message_id)
            return {"status": "ignored", "reason": "no address"}

        self._stats["inbound"] += 1
        self.scheduler.cancel(key)

        async with self.store.lock(key):
            session = self.store.get(key)
            if session is None:
                customer = self.identity.resolve_by_address(event.identity_address)
                session, _ = self.store.get_or_create(key, customer)

            logger.info("inbound_message",
                        key=key,
                        stage=session.stage.value,
                        text=event.text[:100],
                        attachments=len(event.attachment_refs))
            self.store.append_turn(key, Sender.CUSTOMER, event.text or "[attachment]")

            turn = await self.dialogue.handle(event, session)
            session = self._commit(key, turn)
            self._after_commit(key, session, turn)

        return {
            "status": "processed",
            "key": key,
            "stage": session.stage.value,
            "reply": turn.reply,
        }

    # ══════════════════════════════════════════════════════════
    #  TIMER FALLBACK
    # ══════════════════════════════════════════════════════════

    async def _on_timer(self, timer: PendingTimer) -> None:
        key = timer.key
        async with self.store.lock(key):
            session = self.store.get(key)
            if session is None:
                return
            if self.scheduler.pending(key) is not None or session.version != timer.version:
                self._stats["superseded"] += 1
                logger.info("timer_superseded", key=key, armed_version=timer.version,
                            current_version=session.version)
                return

            self._stats["timeouts"] += 1
            turn = await self.dialogue.on_timeout(session)
            session = self._commit(key, turn)
            self._after_commit(key, session, turn)

    # ══════════════════════════════════════════════════════════
    #  FAULT RESOLUTION
    # ══════════════════════════════════════════════════════════

    async def _run_resolution(self, key: str, token: str) -> None:
        session = self.store.get(key)
        if session is None:
            return
        snapshot = session.model_copy(deep=True)

        try:
            result = await asyncio.wait_for(
                self.dialogue.run_resolution(snapshot),
                timeout=self.resolution_timeout_s,
            )
        except asyncio.TimeoutError:
            logger.warning("resolution_timed_out", key=key, timeout_s=self.resolution_timeout_s)
            result = ResolutionResult.not_found(snapshot.data.get("thread_handle"))
        except Exception as e:
            logger.error("resolution_failed", key=key, error=str(e))
            result = ResolutionResult.not_found(snapshot.data.get("thread_handle"))

        async with self.store.lock(key):
            session = self.store.get(key)
            if (
                session is None
                or session.stage != Stage.PROCESSING_PROBLEM
                or session.data.get("resolution_token") != token
            ):
                logger.info("resolution_result_discarded", key=key,
                            stage=session.stage.value if session else None)
                return
            turn = await self.dialogue.apply_resolution(session, result)
            session = self._commit(key, turn)
            self._after_commit(key, session, turn)

    # ══════════════════════════════════════════════════════════
    #  COMMIT
    # ══════════════════════════════════════════════════════════

    def _commit(self, key: str, turn: TurnResult) -> Session:
        extra: dict[str, Any] = {}
        if turn.customer is not None:
            extra["customer"] = turn.customer
        session = self.store.update(
            key, stage=turn.stage, data=turn.data, reset=turn.reset_data, **extra,
        )
        if turn.reply:
            self.store.append_turn(key, Sender.AGENT, turn.reply)
        return session

    def _after_commit(self, key: str, session: Session, turn: TurnResult) -> None:
        self.dispatcher.dispatch(turn.intents, key)

        if turn.start_resolution:
            token = session.data.get("resolution_token", "")
            task = asyncio.create_task(self._run_resolution(key, token), name=f"resolution:{key}")
            self._resolutions.add(task)
            task.add_done_callback(self._resolutions.discard)
        elif self.dialogue.requires_grace(session):
            self.scheduler.arm(key, session.stage, self._on_timer, version=session.version)

    # ══════════════════════════════════════════════════════════
    #  LIFECYCLE
    # ══════════════════════════════════════════════════════════

    def remove_session(self, key: str) -> Optional[Session]:
        key = normalize_digits(key)
        self.scheduler.cancel(key)
        return self.store.remove(key)

    async def start(self) -> None:
        await self.store.start()
        await self.dedup.start()
        logger.info("orchestrator_started")

    async def drain(self) -> None:
        """Wait until no resolution, fallback or dispatch is in flight."""
        while True:
            pending = list(self._resolutions)
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            await self.scheduler.drain()
            await self.dispatcher.drain()
            if not self._resolutions:
                return

    async def stop(self) -> None:
        await self.scheduler.shutdown()
        for task in list(self._resolutions):
            task.cancel()
        if self._resolutions:
            await asyncio.gather(*list(self._resolutions), return_exceptions=True)
        await self.dispatcher.drain()
        await self.store.stop()
        await self.dedup.stop()
        logger.info("orchestrator_stopped")

    def stats(self) -> dict[str, Any]:
        return {
            **self._stats,
            "sessions": self.store.stats(),
            "pending_timers": self.scheduler.count,
            "resolutions_in_flight": len(self._resolutions),
            "dedup_entries": len(self.dedup),
            "intents": self.dispatcher.stats(),
        }


def create_orchestrator(
    settings: Settings = None,
    reply_sender: Optional[ReplySender] = None,
    mail_sender: Optional[MailSender] = None,
    ledger: Optional[LedgerWriter] = None,
) -> Orchestrator:
    """Wire the full object graph from settings."""
    settings = settings or get_settings()
    conv = settings.conversation

    identity = IdentityResolver(
        load_customers(settings.identity.customers_file),
        country_code=settings.identity.country_code,
        trunk_prefix=settings.identity.trunk_prefix,
        stopwords=settings.identity.stopwords,
        aliases=settings.identity.aliases,
    )
    resolution = ResolutionEngine(
        load_catalog(settings.resolution.catalog_file),
        llm=LLMEngine(settings.llm),
        assistant=OpenAIAssistantClient(settings.llm),
        config=settings.resolution,
        classify_timeout_s=settings.llm.classify_timeout_s,
    )
    dialogue = DialogueEngine(
        identity=identity,
        resolution=resolution,
        tickets=TicketIssuer(prefix=settings.tickets.prefix, floor=settings.tickets.floor),
        conversation=conv,
        business=settings.business,
    )
    scheduler = EscalationScheduler(grace_seconds=conv.grace_period_s)
    store = SessionStore(
        max_age_seconds=conv.max_session_age_s,
        fragile_idle_seconds=conv.fragile_idle_s,
        sweep_interval_seconds=conv.sweep_interval_s,
        on_evict=scheduler.cancel,
    )
    return Orchestrator(
        store=store,
        dedup=Deduplicator(window_seconds=conv.dedup_window_s,
                           sweep_interval_seconds=conv.sweep_interval_s),
        identity=identity,
        dialogue=dialogue,
        scheduler=scheduler,
        dispatcher=IntentDispatcher(reply_sender, mail_sender, ledger),
        resolution_timeout_s=conv.resolution_timeout_s,
    )
