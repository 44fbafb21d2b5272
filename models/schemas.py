"""
Core data models for the service desk agent.
These are the universal types shared across all modules.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class Stage(str, Enum):
    """Closed set of dialogue stages."""
    IDENTIFYING = "identifying"
    CONFIRMING_IDENTITY = "confirming_identity"
    GUEST_DETAILS = "guest_details"
    MENU = "menu"
    PROBLEM_DESCRIPTION = "problem_description"
    PROBLEM_CONFIRMATION = "problem_confirmation"
    PROCESSING_PROBLEM = "processing_problem"
    WAITING_FEEDBACK = "waiting_feedback"
    DAMAGE_PHOTO = "damage_photo"
    DAMAGE_CONFIRMATION = "damage_confirmation"
    ORDER_REQUEST = "order_request"
    ORDER_CONFIRMATION = "order_confirmation"
    TRAINING_REQUEST = "training_request"
    TRAINING_CONFIRMATION = "training_confirmation"
    WAITING_TRAINING_FEEDBACK = "waiting_training_feedback"
    GENERAL_OFFICE_REQUEST = "general_office_request"
    OFFICE_CONFIRMATION = "office_confirmation"
    TECHNICIAN_ESCALATED = "technician_escalated"
    COMPLETED = "completed"

    @classmethod
    def parse(cls, value: Any) -> "Stage":
        """Coerce a raw stage value; anything outside the closed set is menu."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value))
        except ValueError:
            return cls.MENU


# Unauthenticated in-flight stages, reclaimed by the sweep much sooner.
FRAGILE_STAGES = frozenset({
    Stage.IDENTIFYING, Stage.CONFIRMING_IDENTITY, Stage.GUEST_DETAILS,
})

SOFT_TERMINAL_STAGES = frozenset({Stage.COMPLETED, Stage.TECHNICIAN_ESCALATED})


class Sender(str, Enum):
    CUSTOMER = "customer"
    AGENT = "agent"
    SYSTEM = "system"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class IntentKind(str, Enum):
    TECHNICIAN = "technician"
    ORDER = "order"
    DAMAGE = "damage"
    TRAINING = "training"
    GENERAL_OFFICE = "general_office"
    SUMMARY = "summary"
    GUEST = "guest"


# ──────────────────────────────────────────────────────────────
#  Reference data — loaded externally, never mutated by the core
# ──────────────────────────────────────────────────────────────

class Customer(BaseModel):
    """A known site operator (parking facility customer)."""
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    site: str = ""
    phones: list[str] = Field(default_factory=list, max_length=5)
    address: str = ""
    email: str = ""


class ResolutionCatalogEntry(BaseModel):
    """One known failure scenario with its remedy."""
    model_config = ConfigDict(frozen=True)

    label: str
    steps: list[str]
    notes: str = ""


# ──────────────────────────────────────────────────────────────
#  Session — per-identity conversation context
# ──────────────────────────────────────────────────────────────

class Turn(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    sender: Sender
    text: str


class Session(BaseModel):
    """
    Conversation context for one normalized channel address.

    `customer` is a reference into the customer directory; binding it does
    not make the session its owner. `data` is the structured bag the dialogue
    engine reads and shallow-merges into.
    """
    key: str
    customer: Optional[Customer] = None
    stage: Stage = Stage.IDENTIFYING
    history: list[Turn] = []
    data: dict[str, Any] = {}
    created_at: datetime = Field(default_factory=utcnow)
    last_activity_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    @field_validator("stage", mode="before")
    @classmethod
    def _coerce_stage(cls, value: Any) -> Stage:
        return Stage.parse(value)

    @property
    def is_identified(self) -> bool:
        return self.customer is not None

    @property
    def pending_text(self) -> str:
        return self.data.get("pending_text", "")

    @property
    def attachments(self) -> list[str]:
        return list(self.data.get("attachments", []))


# ──────────────────────────────────────────────────────────────
#  Inbound
# ──────────────────────────────────────────────────────────────

class InboundEvent(BaseModel):
    """Normalized inbound message; attachments are already fetched and validated."""
    identity_address: str
    text: str = ""
    attachment_refs: list[str] = []
    message_id: str = ""


# ──────────────────────────────────────────────────────────────
#  Outbound intents — executed by external collaborators
# ──────────────────────────────────────────────────────────────

class SendReply(BaseModel):
    type: Literal["send_reply"] = "send_reply"
    identity_address: str
    text: str


class SendOperationalEmail(BaseModel):
    type: Literal["send_operational_email"] = "send_operational_email"
    kind: IntentKind
    customer: Optional[Customer] = None
    payload: dict[str, Any] = {}
    attachments: list[str] = []


class SendCustomerConfirmation(BaseModel):
    type: Literal["send_customer_confirmation"] = "send_customer_confirmation"
    kind: IntentKind
    customer: Customer
    ticket_id: str
    summary: str


class RecordLedgerRow(BaseModel):
    type: Literal["record_ledger_row"] = "record_ledger_row"
    ticket_id: str
    timestamp: datetime = Field(default_factory=utcnow)
    kind: IntentKind
    customer: Optional[Customer] = None
    summary: str = ""
    resolved: bool = False


OutboundIntent = Union[SendReply, SendOperationalEmail, SendCustomerConfirmation, RecordLedgerRow]


# ──────────────────────────────────────────────────────────────
#  Resolver outputs
# ──────────────────────────────────────────────────────────────

class IdentityMatch(BaseModel):
    customer: Customer
    confidence: Confidence
    score: int


class ResolutionResult(BaseModel):
    found: bool
    response_text: str = ""
    source_tag: Optional[Literal["assistant", "ai", "keywords"]] = None
    thread_handle: Optional[str] = None
    scenario: str = ""

    @classmethod
    def not_found(cls, thread_handle: Optional[str] = None) -> "ResolutionResult":
        return cls(found=False, thread_handle=thread_handle)
