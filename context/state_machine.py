"""
Dialogue Engine — per-session stage machine for the service desk conversation.

Each inbound message is evaluated against the session's current stage and
produces a TurnResult: the next stage, a shallow data update, the reply and
the outbound intents. Nothing here touches the session store, the channels
or the timers; the orchestrator commits the result and dispatches intents.

Evaluation order for every message:
  1. reset keyword ("menu", "cancel", "0", ...)   → menu, data cleared
  2. attachment limit exceeded                    → guidance, no change
  3. stage handler from the dispatch table

Stage flow (happy paths):

  identifying ──high match──▶ menu ──1──▶ problem_description ──▶ problem_confirmation
       │  └─medium/low──▶ confirming_identity                            │ ok
       └─guest / attempts exhausted──▶ guest_details ──▶ completed      ▼
                                                              processing_problem
  menu ──2/3/4/5──▶ <request> ──▶ <confirmation> ──ok──▶ completed       │
                                                              found ▼     ▼ not found
                                                      waiting_feedback  technician_escalated

Fallbacks when the customer goes quiet live in on_timeout(); the caller asks
requires_grace() after every commit to decide whether to arm a timer.
"""
from __future__ import annotations

import uuid
import structlog
from dataclasses import dataclass, field
from typing import Any, Optional

from config.settings import BusinessConfig, ConversationConfig, get_settings
from context import replies
from context.identity import IdentityResolver
from core.resolution import ResolutionEngine
from database.tickets import TicketIssuer
from models.schemas import (
    Confidence, Customer, InboundEvent, IntentKind, OutboundIntent,
    RecordLedgerRow, ResolutionResult, SendCustomerConfirmation,
    SendOperationalEmail, SendReply, Session, SOFT_TERMINAL_STAGES, Stage,
)
from utils.text import (
    contains_any, describe_unit, extract_unit_number, has_token, is_urgent,
    normalize, tokens, truncate,
)

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Vocabulary
# ──────────────────────────────────────────────────────────────

RESET_WORDS = (
    "menu", "main menu", "cancel", "back", "stop", "restart", "new call", "0",
    "תפריט", "ביטול", "חזור", "חזרה", "קריאה חדשה", "תקלה חדשה", "שיחה חדשה",
    "איפוס שיחה", "מחק זיכרון",
)
APPROVAL_WORDS = ("ok", "okay", "yes", "confirm", "approve", "send", "y", "אישור", "כן", "מאשר", "שלח", "אוקיי")
YES_WORDS = ("yes", "y", "yep", "correct", "right", "כן", "נכון", "בדיוק")
NO_WORDS = ("no", "n", "nope", "wrong", "not", "לא", "טעות")
GUEST_WORDS = ("guest", "אורח")
SOLVED_WORDS = (
    "1", "yes", "solved", "works", "working", "fixed", "thanks", "thank you", "great",
    "כן", "עבד", "עובד", "נפתר", "תודה", "מעולה",
)
NOT_SOLVED_WORDS = (
    "2", "no", "not", "didn't", "didnt", "doesn't", "doesnt", "still", "technician",
    "לא", "עדיין", "טכנאי",
)
MORE_WORDS = ("2", "more", "detail", "details", "expanded", "full", "עוד", "פירוט", "מורחב", "לא")
THANKS_WORDS = ("thanks", "thank you", "thx", "תודה", "תודה רבה")
SUMMARY_WORDS = ("summary", "send summary", "email me", "סיכום", "שלח סיכום")

MENU_OPTIONS: tuple[tuple[Stage, str, tuple[str, ...]], ...] = (
    (Stage.PROBLEM_DESCRIPTION, "1", ("fault", "problem", "issue", "broken", "תקלה", "בעיה")),
    (Stage.DAMAGE_PHOTO, "2", ("damage", "damaged", "accident", "נזק")),
    (Stage.ORDER_REQUEST, "3", ("quote", "order", "price", "prices", "הצעת מחיר", "הזמנה", "מחיר")),
    (Stage.TRAINING_REQUEST, "4", ("training", "guide", "tutorial", "הדרכה")),
    (Stage.GENERAL_OFFICE_REQUEST, "5", ("office", "general", "inquiry", "משרד", "כללי", "פנייה")),
)
MENU_KEYWORD_MAX_TOKENS = 4

REQUEST_TO_CONFIRMATION = {
    Stage.PROBLEM_DESCRIPTION: Stage.PROBLEM_CONFIRMATION,
    Stage.DAMAGE_PHOTO: Stage.DAMAGE_CONFIRMATION,
    Stage.ORDER_REQUEST: Stage.ORDER_CONFIRMATION,
    Stage.TRAINING_REQUEST: Stage.TRAINING_CONFIRMATION,
    Stage.GENERAL_OFFICE_REQUEST: Stage.OFFICE_CONFIRMATION,
}
CONFIRMATION_KIND = {
    Stage.PROBLEM_CONFIRMATION: IntentKind.TECHNICIAN,
    Stage.DAMAGE_CONFIRMATION: IntentKind.DAMAGE,
    Stage.ORDER_CONFIRMATION: IntentKind.ORDER,
    Stage.TRAINING_CONFIRMATION: IntentKind.TRAINING,
    Stage.OFFICE_CONFIRMATION: IntentKind.GENERAL_OFFICE,
}
REQUEST_KIND = {
    Stage.DAMAGE_PHOTO: IntentKind.DAMAGE,
    Stage.ORDER_REQUEST: IntentKind.ORDER,
    Stage.TRAINING_REQUEST: IntentKind.TRAINING,
    Stage.GENERAL_OFFICE_REQUEST: IntentKind.GENERAL_OFFICE,
}

# Words that make leftover fragments worth sending when the customer goes quiet.
SALVAGE_KEYWORDS = {
    Stage.DAMAGE_PHOTO: ("damage", "broken", "hit", "crash", "bent", "נזק", "שבור", "פגיעה", "התנגש"),
    Stage.ORDER_REQUEST: (
        "quote", "order", "need", "rolls", "paper", "tickets", "arm", "arms", "cards",
        "הזמנה", "מחיר", "גלילים", "כרטיסים", "זרוע", "צריך",
    ),
    Stage.TRAINING_REQUEST: ("training", "how", "guide", "operation", "הדרכה", "איך", "תפעול", "מדריך"),
    Stage.GENERAL_OFFICE_REQUEST: (
        "invoice", "bill", "contract", "payment", "call me", "office",
        "חשבונית", "חוזה", "תשלום", "משרד", "תתקשרו",
    ),
}

GRACE_STAGES = frozenset({
    Stage.WAITING_FEEDBACK, Stage.WAITING_TRAINING_FEEDBACK,
    Stage.PROBLEM_CONFIRMATION, Stage.DAMAGE_CONFIRMATION,
})
GRACE_WHEN_STARTED = frozenset(REQUEST_KIND)

# Data keys that survive a new request being started from the menu.
_CARRIED_KEYS = ("greeted", "thread_handle")


def menu_selection(text: str) -> Optional[Stage]:
    """Numeric choice first, then keywords in menu order."""
    toks = tokens(text)
    if not toks:
        return None
    for stage, number, _ in MENU_OPTIONS:
        if toks[0] == number and len(toks) <= 2:
            return stage
    if len(toks) > MENU_KEYWORD_MAX_TOKENS:
        return None
    for stage, _, words in MENU_OPTIONS:
        if has_token(text, words):
            return stage
    return None


def is_approval(text: str) -> bool:
    toks = tokens(text)
    if not toks:
        return False
    approvals = {normalize(w) for w in APPROVAL_WORDS}
    return " ".join(toks) in approvals or (toks[0] in approvals and len(toks) <= 2)


def is_reset(text: str) -> bool:
    norm = normalize(text)
    return bool(norm) and norm in {normalize(w) for w in RESET_WORDS}


# ──────────────────────────────────────────────────────────────
#  Turn Result
# ──────────────────────────────────────────────────────────────

@dataclass
class TurnResult:
    """Outcome of one dialogue step, committed by the caller."""
    stage: Stage
    reply: str = ""
    intents: list[OutboundIntent] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)
    reset_data: bool = False
    customer: Optional[Customer] = None
    start_resolution: bool = False

    def apply_to(self, session: Session) -> Session:
        """Copy of the session with this result applied (store-free callers)."""
        data = {} if self.reset_data else dict(session.data)
        data.update(self.data)
        return session.model_copy(update={
            "stage": self.stage,
            "data": data,
            "customer": self.customer or session.customer,
            "version": session.version + 1,
        })

    def __repr__(self):
        return (f"<TurnResult {self.stage.value} intents={[i.type for i in self.intents]}"
                f"{' +resolution' if self.start_resolution else ''}>")


# ──────────────────────────────────────────────────────────────
#  Dialogue Engine
# ──────────────────────────────────────────────────────────────

class DialogueEngine:

    def __init__(
        self,
        identity: IdentityResolver,
        resolution: ResolutionEngine,
        tickets: TicketIssuer,
        conversation: ConversationConfig = None,
        business: BusinessConfig = None,
    ):
        settings = None
        if conversation is None or business is None:
            settings = get_settings()
        self.identity = identity
        self.resolution = resolution
        self.tickets = tickets
        self.conversation = conversation or settings.conversation
        self.business = business or settings.business

    # ── Entry points ──────────────────────────────────────

    async def handle(self, event: InboundEvent, session: Session) -> TurnResult:
        text = (event.text or "").strip()
        new_attachments = list(event.attachment_refs)

        if is_reset(text):
            result = TurnResult(stage=Stage.MENU, reply=replies.reset(), reset_data=True,
                                data=self._carried(session))
            return self._finish(session, result)

        max_attachments = self.conversation.max_attachments
        if new_attachments and len(session.attachments) + len(new_attachments) > max_attachments:
            logger.info("attachment_limit_exceeded",
                        key=session.key, stage=session.stage.value,
                        existing=len(session.attachments), incoming=len(new_attachments))
            result = TurnResult(stage=session.stage, reply=replies.attachment_limit(max_attachments))
            return self._finish(session, result)

        handler = getattr(self, _STAGE_HANDLERS.get(session.stage, "_on_menu"))
        result = await handler(session, text, new_attachments)
        return self._finish(session, result)

    async def run_resolution(self, session: Session) -> ResolutionResult:
        return await self.resolution.resolve(
            session.pending_text,
            session.customer,
            session.data.get("thread_handle"),
        )

    async def apply_resolution(self, session: Session, result: ResolutionResult) -> TurnResult:
        data: dict[str, Any] = {"resolution_token": None}
        if result.thread_handle:
            data["thread_handle"] = result.thread_handle

        if result.found:
            data.update(resolution_scenario=result.scenario, resolution_source=result.source_tag)
            turn = TurnResult(
                stage=Stage.WAITING_FEEDBACK,
                reply=replies.with_feedback_prompt(result.response_text),
                data=data,
            )
            return self._finish(session, turn)

        turn = await self._escalate(session, reason="no known remedy", stage=Stage.TECHNICIAN_ESCALATED)
        turn.data = {**data, **turn.data}
        return self._finish(session, turn)

    async def resolve_pending(self, session: Session) -> TurnResult:
        """Run the resolution chain on the pending fault text and apply it."""
        return await self.apply_resolution(session, await self.run_resolution(session))

    async def on_timeout(self, session: Session) -> TurnResult:
        """Fallback for the customer going quiet in the current stage."""
        stage = session.stage
        logger.info("dialogue_timeout", key=session.key, stage=stage.value)

        if stage == Stage.WAITING_FEEDBACK:
            result = await self._escalate(session, reason="no customer feedback", stage=Stage.COMPLETED)
        elif stage == Stage.WAITING_TRAINING_FEEDBACK:
            topic = session.data.get("training_topic", replies.DEFAULT_TRAINING_TOPIC)
            result = TurnResult(stage=Stage.COMPLETED, reply=replies.training_material(topic, expanded=True))
        elif stage in (Stage.PROBLEM_CONFIRMATION, Stage.DAMAGE_CONFIRMATION):
            result = await self._approve(session, stage)
        elif stage in REQUEST_KIND:
            result = await self._salvage(session, stage)
        else:
            result = TurnResult(stage=stage)
        return self._finish(session, result)

    def requires_grace(self, session: Session) -> bool:
        if session.stage in GRACE_STAGES:
            return True
        if session.stage in GRACE_WHEN_STARTED:
            return bool(session.data.get("fragments") or session.attachments)
        return False

    # ── Identification ────────────────────────────────────

    async def _on_identifying(self, session: Session, text: str, attachments: list[str]) -> TurnResult:
        if has_token(text, GUEST_WORDS):
            return TurnResult(stage=Stage.GUEST_DETAILS, reply=replies.guest_prompt())

        selected = menu_selection(text)
        if selected:
            return self._start_request(session, selected)

        match = self.identity.resolve_by_free_text(text)
        if match and match.confidence == Confidence.HIGH:
            return self._bind(session, match.customer)

        customer = self.identity.resolve_by_customer_id(text)
        if customer:
            return self._bind(session, customer)

        if match:
            return TurnResult(
                stage=Stage.CONFIRMING_IDENTITY,
                reply=replies.confirm_identity(match.customer),
                data={"candidate_customer_id": match.customer.id},
            )

        if not session.data.get("greeted"):
            return TurnResult(stage=Stage.IDENTIFYING, reply=replies.ask_identity(self.business),
                              data={"greeted": True})
        return self._identify_failed(session)

    async def _on_confirming_identity(self, session: Session, text: str, attachments: list[str]) -> TurnResult:
        if has_token(text, YES_WORDS):
            candidate = self.identity.get(session.data.get("candidate_customer_id", ""))
            if candidate:
                return self._bind(session, candidate)
            return TurnResult(stage=Stage.IDENTIFYING, reply=replies.ask_identity(self.business))
        if has_token(text, NO_WORDS):
            return self._identify_failed(session)
        return await self._on_identifying(session, text, attachments)

    def _identify_failed(self, session: Session) -> TurnResult:
        attempts = int(session.data.get("identify_attempts", 0)) + 1
        max_attempts = self.conversation.identify_max_attempts
        data = {"identify_attempts": attempts, "candidate_customer_id": None}
        logger.info("identify_attempt_failed", key=session.key, attempts=attempts)
        if attempts >= max_attempts:
            return TurnResult(stage=Stage.GUEST_DETAILS, reply=replies.guest_prompt(), data=data)
        return TurnResult(stage=Stage.IDENTIFYING,
                          reply=replies.identify_retry(attempts, max_attempts), data=data)

    def _bind(self, session: Session, customer: Customer) -> TurnResult:
        logger.info("customer_bound", key=session.key, customer_id=customer.id, site=customer.site)
        return TurnResult(
            stage=Stage.MENU,
            reply=replies.greeting(customer, self.business),
            customer=customer,
            data={"greeted": True, "identify_attempts": 0, "candidate_customer_id": None},
        )

    async def _on_guest_details(self, session: Session, text: str, attachments: list[str]) -> TurnResult:
        if len(text) < self._min_length(Stage.GUEST_DETAILS):
            return TurnResult(stage=Stage.GUEST_DETAILS, reply=replies.guest_prompt())

        ticket_id = await self.tickets.next_ticket()
        return TurnResult(
            stage=Stage.COMPLETED,
            reply=replies.guest_done(ticket_id, self.business),
            data={"ticket_id": ticket_id},
            intents=[
                SendOperationalEmail(
                    kind=IntentKind.GUEST,
                    payload={"ticket_id": ticket_id, "details": text, "address": session.key},
                ),
                RecordLedgerRow(ticket_id=ticket_id, kind=IntentKind.GUEST, summary=truncate(text, 200)),
            ],
        )

    # ── Menu & requests ───────────────────────────────────

    async def _on_menu(self, session: Session, text: str, attachments: list[str]) -> TurnResult:
        selected = menu_selection(text)
        if selected:
            return self._start_request(session, selected)
        if not session.data.get("greeted"):
            reply = (replies.greeting(session.customer, self.business)
                     if session.customer else replies.MENU)
            return TurnResult(stage=Stage.MENU, reply=reply, data={"greeted": True})
        return TurnResult(stage=Stage.MENU, reply=replies.not_understood(Stage.MENU))

    def _start_request(self, session: Session, stage: Stage) -> TurnResult:
        return TurnResult(
            stage=stage,
            reply=replies.REQUEST_PROMPTS[stage],
            reset_data=True,
            data=self._carried(session),
        )

    async def _on_request(self, session: Session, text: str, attachments: list[str]) -> TurnResult:
        stage = session.stage
        all_attachments = session.attachments + attachments
        fragments = list(session.data.get("fragments", []))

        if text:
            combined = "\n".join(fragments + [text])
            if len(combined) < self._min_length(stage):
                return TurnResult(
                    stage=stage,
                    reply=replies.too_short(stage),
                    data={"fragments": fragments + [text], "attachments": all_attachments},
                )

            confirmation = REQUEST_TO_CONFIRMATION[stage]
            unit = extract_unit_number(combined)
            data = {
                "pending_text": combined,
                "fragments": [],
                "attachments": all_attachments,
                "unit": unit,
                "urgent": is_urgent(combined),
            }
            if stage == Stage.TRAINING_REQUEST:
                data["training_topic"] = replies.training_topic(combined)
            return TurnResult(
                stage=confirmation,
                reply=replies.confirmation(confirmation, combined, unit, len(all_attachments)),
                data=data,
            )

        if attachments:
            return TurnResult(
                stage=stage,
                reply=replies.attachment_ack(len(all_attachments), self.conversation.max_attachments),
                data={"attachments": all_attachments},
            )
        return TurnResult(stage=stage, reply=replies.REQUEST_PROMPTS[stage])

    async def _on_confirmation(self, session: Session, text: str, attachments: list[str]) -> TurnResult:
        stage = session.stage
        all_attachments = session.attachments + attachments

        if is_approval(text):
            if attachments:
                session = session.model_copy(update={"data": {**session.data, "attachments": all_attachments}})
            return await self._approve(session, stage)

        pending = session.pending_text
        if text:
            pending = f"{pending}\n+ {text}" if pending else text
        unit = extract_unit_number(text) or session.data.get("unit")
        return TurnResult(
            stage=stage,
            reply=replies.confirmation(stage, pending, unit, len(all_attachments)),
            data={
                "pending_text": pending,
                "attachments": all_attachments,
                "unit": unit,
                "urgent": session.data.get("urgent", False) or is_urgent(text),
            },
        )

    async def _approve(self, session: Session, stage: Stage) -> TurnResult:
        if stage == Stage.PROBLEM_CONFIRMATION:
            return TurnResult(
                stage=Stage.PROCESSING_PROBLEM,
                reply=replies.checking(),
                data={"resolution_token": uuid.uuid4().hex, "attachments": session.attachments},
                start_resolution=True,
            )
        return await self._submit_request(session, CONFIRMATION_KIND[stage], session.pending_text)

    async def _submit_request(self, session: Session, kind: IntentKind, description: str) -> TurnResult:
        ticket_id = await self.tickets.next_ticket()
        customer = session.customer
        unit = session.data.get("unit") or extract_unit_number(description)
        attachments = session.attachments
        payload = {
            "ticket_id": ticket_id,
            "description": description,
            "unit": describe_unit(unit),
            "urgent": bool(session.data.get("urgent")) or is_urgent(description),
            "address": session.key,
        }

        intents: list[OutboundIntent] = [
            SendOperationalEmail(kind=kind, customer=customer, payload=payload, attachments=attachments),
        ]
        if customer and customer.email:
            intents.append(SendCustomerConfirmation(
                kind=kind, customer=customer, ticket_id=ticket_id, summary=description,
            ))
        intents.append(RecordLedgerRow(
            ticket_id=ticket_id, kind=kind, customer=customer, summary=truncate(description, 200),
        ))
        logger.info("request_submitted", key=session.key, kind=kind.value, ticket_id=ticket_id)

        reply = replies.request_sent(kind, ticket_id)
        data: dict[str, Any] = {"ticket_id": ticket_id, "fragments": []}
        if kind == IntentKind.TRAINING:
            topic = session.data.get("training_topic") or replies.training_topic(description)
            data["training_topic"] = topic
            reply = "\n\n".join([reply, replies.training_material(topic), replies.TRAINING_FEEDBACK_PROMPT])
            return TurnResult(stage=Stage.WAITING_TRAINING_FEEDBACK, reply=reply, intents=intents, data=data)
        return TurnResult(stage=Stage.COMPLETED, reply=reply, intents=intents, data=data)

    async def _salvage(self, session: Session, stage: Stage) -> TurnResult:
        combined = "\n".join(session.data.get("fragments", []))
        worth_sending = (
            (len(combined) >= self.conversation.salvage_min_length
             and contains_any(combined, SALVAGE_KEYWORDS[stage]))
            or (stage == Stage.DAMAGE_PHOTO and session.attachments)
            or extract_unit_number(combined) is not None
        )
        if not worth_sending:
            logger.info("request_abandoned", key=session.key, stage=stage.value)
            return TurnResult(stage=Stage.MENU, reply=replies.MENU, reset_data=True,
                              data=self._carried(session))

        logger.info("request_salvaged", key=session.key, stage=stage.value)
        description = combined or "(attachments only)"
        return await self._submit_request(session, REQUEST_KIND[stage], description)

    # ── Fault resolution & feedback ───────────────────────

    async def _on_processing_problem(self, session: Session, text: str, attachments: list[str]) -> TurnResult:
        return TurnResult(stage=Stage.PROCESSING_PROBLEM, reply=replies.still_checking())

    async def _on_waiting_feedback(self, session: Session, text: str, attachments: list[str]) -> TurnResult:
        if has_token(text, NOT_SOLVED_WORDS):
            return await self._escalate(session, reason="customer reported not solved",
                                        stage=Stage.TECHNICIAN_ESCALATED)

        if has_token(text, SOLVED_WORDS):
            ticket_id = await self.tickets.next_ticket()
            customer = session.customer
            summary = session.data.get("resolution_scenario") or truncate(session.pending_text, 200)
            intents: list[OutboundIntent] = [RecordLedgerRow(
                ticket_id=ticket_id, kind=IntentKind.TECHNICIAN, customer=customer,
                summary=summary, resolved=True,
            )]
            if customer and customer.email:
                intents.append(SendCustomerConfirmation(
                    kind=IntentKind.TECHNICIAN, customer=customer, ticket_id=ticket_id,
                    summary=f"{session.pending_text}\n\nResolved: {summary}",
                ))
            logger.info("problem_self_resolved", key=session.key, ticket_id=ticket_id, scenario=summary)
            return TurnResult(stage=Stage.COMPLETED, reply=replies.solved(ticket_id),
                              intents=intents, data={"ticket_id": ticket_id})

        return TurnResult(stage=Stage.WAITING_FEEDBACK, reply=replies.FEEDBACK_PROMPT)

    async def _escalate(self, session: Session, reason: str, stage: Stage) -> TurnResult:
        ticket_id = session.data.get("ticket_id") or await self.tickets.next_ticket()
        customer = session.customer
        problem = session.pending_text
        payload = {
            "ticket_id": ticket_id,
            "problem": problem,
            "unit": describe_unit(session.data.get("unit")),
            "urgent": bool(session.data.get("urgent")),
            "reason": reason,
            "attempted_resolution": session.data.get("resolution_scenario") or "",
            "address": session.key,
        }
        logger.info("technician_escalation", key=session.key, ticket_id=ticket_id, reason=reason)
        return TurnResult(
            stage=stage,
            reply=replies.technician_escalated(ticket_id, self.business),
            data={"ticket_id": ticket_id},
            intents=[
                SendOperationalEmail(kind=IntentKind.TECHNICIAN, customer=customer,
                                     payload=payload, attachments=session.attachments),
                RecordLedgerRow(ticket_id=ticket_id, kind=IntentKind.TECHNICIAN, customer=customer,
                                summary=truncate(problem, 200)),
            ],
        )

    async def _on_waiting_training_feedback(self, session: Session, text: str, attachments: list[str]) -> TurnResult:
        topic = session.data.get("training_topic", replies.DEFAULT_TRAINING_TOPIC)
        if has_token(text, MORE_WORDS):
            return TurnResult(stage=Stage.COMPLETED, reply=replies.training_material(topic, expanded=True))
        if has_token(text, SOLVED_WORDS):
            return TurnResult(stage=Stage.COMPLETED, reply=replies.welcome())
        return TurnResult(stage=Stage.WAITING_TRAINING_FEEDBACK, reply=replies.TRAINING_FEEDBACK_PROMPT)

    # ── Soft-terminal stages ──────────────────────────────

    async def _on_soft_terminal(self, session: Session, text: str, attachments: list[str]) -> TurnResult:
        stage = session.stage
        selected = menu_selection(text)
        if selected:
            return self._start_request(session, selected)

        if has_token(text, SUMMARY_WORDS):
            customer = session.customer
            has_email = bool(customer and customer.email)
            intents: list[OutboundIntent] = []
            if has_email:
                intents.append(SendCustomerConfirmation(
                    kind=IntentKind.SUMMARY,
                    customer=customer,
                    ticket_id=session.data.get("ticket_id", ""),
                    summary=replies.build_conversation_summary(session),
                ))
            return TurnResult(stage=stage, reply=replies.summary_sent(has_email), intents=intents)

        if has_token(text, THANKS_WORDS):
            return TurnResult(stage=stage, reply=replies.welcome())

        if stage == Stage.TECHNICIAN_ESCALATED and (text or attachments):
            ticket_id = session.data.get("ticket_id", "")
            return TurnResult(
                stage=stage,
                reply=replies.follow_up_noted(ticket_id),
                intents=[SendOperationalEmail(
                    kind=IntentKind.TECHNICIAN,
                    customer=session.customer,
                    payload={"ticket_id": ticket_id, "follow_up": text, "address": session.key},
                    attachments=attachments,
                )],
            )

        return TurnResult(stage=Stage.MENU, reply=replies.MENU, reset_data=True, data=self._carried(session))

    # ── Helpers ───────────────────────────────────────────

    def _min_length(self, stage: Stage) -> int:
        return int(self.conversation.min_text_length.get(stage.value, 10))

    @staticmethod
    def _carried(session: Session) -> dict[str, Any]:
        return {k: session.data[k] for k in _CARRIED_KEYS if k in session.data}

    @staticmethod
    def _finish(session: Session, result: TurnResult) -> TurnResult:
        if result.reply:
            result.intents.insert(0, SendReply(identity_address=session.key, text=result.reply))
        if result.stage != session.stage:
            logger.debug("dialogue_transition",
                         key=session.key, from_stage=session.stage.value, to_stage=result.stage.value)
        return result


_STAGE_HANDLERS: dict[Stage, str] = {
    Stage.IDENTIFYING: "_on_identifying",
    Stage.CONFIRMING_IDENTITY: "_on_confirming_identity",
    Stage.GUEST_DETAILS: "_on_guest_details",
    Stage.MENU: "_on_menu",
    Stage.PROBLEM_DESCRIPTION: "_on_request",
    Stage.PROBLEM_CONFIRMATION: "_on_confirmation",
    Stage.PROCESSING_PROBLEM: "_on_processing_problem",
    Stage.WAITING_FEEDBACK: "_on_waiting_feedback",
    Stage.DAMAGE_PHOTO: "_on_request",
    Stage.DAMAGE_CONFIRMATION: "_on_confirmation",
    Stage.ORDER_REQUEST: "_on_request",
    Stage.ORDER_CONFIRMATION: "_on_confirmation",
    Stage.TRAINING_REQUEST: "_on_request",
    Stage.TRAINING_CONFIRMATION: "_on_confirmation",
    Stage.WAITING_TRAINING_FEEDBACK: "_on_waiting_training_feedback",
    Stage.GENERAL_OFFICE_REQUEST: "_on_request",
    Stage.OFFICE_CONFIRMATION: "_on_confirmation",
    **{stage: "_on_soft_terminal" for stage in SOFT_TERMINAL_STAGES},
}

_missing = [s.value for s in Stage if s not in _STAGE_HANDLERS]
_unbound = [name for name in _STAGE_HANDLERS.values() if not hasattr(DialogueEngine, name)]
if _missing or _unbound:
    raise RuntimeError(f"dialogue dispatch table incomplete: missing={_missing} unbound={_unbound}")
