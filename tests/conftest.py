"""Shared test fixtures for the service desk agent."""
import pytest
from unittest.mock import AsyncMock, MagicMock

from config.settings import BusinessConfig, ConversationConfig, MailConfig, ResolutionConfig
from context.identity import IdentityResolver
from context.state_machine import DialogueEngine
from core.dispatcher import IntentDispatcher
from core.orchestrator import Orchestrator
from core.resolution import ResolutionEngine
from core.scheduler import EscalationScheduler
from database.dedup import Deduplicator
from database.session_store import SessionStore
from database.tickets import TicketIssuer
from models.schemas import (
    Customer, InboundEvent, ResolutionCatalogEntry, ResolutionResult, Session, Stage,
)


ADDRESS = "972541234567"


@pytest.fixture
def customers() -> list[Customer]:
    return [
        Customer(
            id="555",
            name="Dana Levi",
            site="Azrieli Tel Aviv Parking",
            phones=["054-1234567", "03-6081990"],
            email="dana.levi@example.co.il",
        ),
        Customer(
            id="612",
            name="Yossi Cohen",
            site="Grand Canyon Haifa",
            phones=["052-7654321"],
            email="yossi@example.co.il",
        ),
        Customer(
            id="718",
            name="Avi Mizrahi",
            site="Soroka Beer Sheva",
            phones=["050-1112233"],
        ),
    ]


@pytest.fixture
def dana(customers) -> Customer:
    return customers[0]


@pytest.fixture
def catalog() -> list[ResolutionCatalogEntry]:
    return [
        ResolutionCatalogEntry(
            label="Entry station - no power",
            steps=["Check the main breaker.", "Switch the station off and on."],
            notes="Do not open the high-voltage compartment.",
        ),
        ResolutionCatalogEntry(
            label="Barrier gate stuck",
            steps=["Press the manual open button.", "Restart the barrier controller."],
            notes="If the arm is bent, report damage instead.",
        ),
        ResolutionCatalogEntry(
            label="Ticket printer jam",
            steps=["Open the printer cover.", "Reseat the roll."],
            notes="",
        ),
    ]


@pytest.fixture
def conversation_config() -> ConversationConfig:
    return ConversationConfig(grace_period_s=60, resolution_timeout_s=1.0)


@pytest.fixture
def business() -> BusinessConfig:
    return BusinessConfig(company_name="Test Parking Systems", agent_name="Hadar")


@pytest.fixture
def identity(customers) -> IdentityResolver:
    return IdentityResolver(
        customers,
        stopwords=["parking", "park", "lot", "the", "from", "חניון"],
        aliases=[["tlv", "tel aviv"]],
    )


@pytest.fixture
def tickets() -> TicketIssuer:
    return TicketIssuer(prefix="HSC-", floor=10001)


@pytest.fixture
def found_result() -> ResolutionResult:
    return ResolutionResult(
        found=True,
        response_text="🔍 Identified issue: Barrier gate stuck\n\n🛠️ Steps:\n1. Press the manual open button.",
        source_tag="keywords",
        scenario="Barrier gate stuck",
    )


@pytest.fixture
def resolution(found_result) -> MagicMock:
    """ResolutionEngine stand-in; tests override resolve's return value or side effect."""
    engine = MagicMock(spec=ResolutionEngine)
    engine.resolve = AsyncMock(return_value=found_result)
    engine.catalog = []
    return engine


@pytest.fixture
def dialogue(identity, resolution, tickets, conversation_config, business) -> DialogueEngine:
    return DialogueEngine(
        identity=identity,
        resolution=resolution,
        tickets=tickets,
        conversation=conversation_config,
        business=business,
    )


def make_session(stage: Stage = Stage.MENU, customer: Customer = None, **data) -> Session:
    return Session(key=ADDRESS, customer=customer, stage=stage, data=data)


def event(text: str = "", attachments: list[str] = None, message_id: str = "",
          address: str = ADDRESS) -> InboundEvent:
    return InboundEvent(
        identity_address=address,
        text=text,
        attachment_refs=attachments or [],
        message_id=message_id,
    )


@pytest.fixture
def reply_sender() -> MagicMock:
    sender = MagicMock()
    sender.send_reply = AsyncMock(return_value={"status": "sent"})
    return sender


@pytest.fixture
def mail_sender() -> MagicMock:
    sender = MagicMock()
    sender.send_operational = AsyncMock(return_value={"status": "sent"})
    sender.send_customer_confirmation = AsyncMock(return_value={"status": "sent"})
    return sender


@pytest.fixture
def ledger() -> MagicMock:
    writer = MagicMock()
    writer.append = AsyncMock(return_value=None)
    return writer


@pytest.fixture
def make_orchestrator(identity, resolution, tickets, business, reply_sender, mail_sender, ledger):
    """Factory: an orchestrator with a short grace period and mocked channels."""

    def _make(grace_seconds: float = 0.1, resolution_timeout_s: float = 1.0, **conv) -> Orchestrator:
        conversation = ConversationConfig(
            grace_period_s=grace_seconds, resolution_timeout_s=resolution_timeout_s, **conv,
        )
        scheduler = EscalationScheduler(grace_seconds=grace_seconds)
        return Orchestrator(
            store=SessionStore(on_evict=scheduler.cancel),
            dedup=Deduplicator(window_seconds=300),
            identity=identity,
            dialogue=DialogueEngine(
                identity=identity,
                resolution=resolution,
                tickets=tickets,
                conversation=conversation,
                business=business,
            ),
            scheduler=scheduler,
            dispatcher=IntentDispatcher(reply_sender, mail_sender, ledger),
            resolution_timeout_s=resolution_timeout_s,
        )

    return _make


@pytest.fixture
def mail_config() -> MailConfig:
    return MailConfig(
        from_address="report@test.local",
        technician_address="service@test.local",
        office_address="office@test.local",
        sales_address="sales@test.local",
        training_address="training@test.local",
    )


@pytest.fixture
def resolution_config() -> ResolutionConfig:
    return ResolutionConfig(keyword_min_score=8)
