"""Tests for the core data models."""
import pytest
from pydantic import ValidationError

from models.schemas import (
    FRAGILE_STAGES, Customer, InboundEvent, IntentKind, RecordLedgerRow,
    ResolutionResult, SendReply, Session, Stage,
)


class TestStage:
    def test_parse_known_value(self):
        assert Stage.parse("waiting_feedback") == Stage.WAITING_FEEDBACK
        assert Stage.parse(Stage.COMPLETED) is Stage.COMPLETED

    def test_parse_unknown_falls_back_to_menu(self):
        assert Stage.parse("legacy_stage") == Stage.MENU
        assert Stage.parse(None) == Stage.MENU

    def test_fragile_stages(self):
        assert Stage.IDENTIFYING in FRAGILE_STAGES
        assert Stage.MENU not in FRAGILE_STAGES


class TestCustomer:
    def test_frozen(self, dana):
        with pytest.raises(ValidationError):
            dana.name = "Other"

    def test_at_most_five_phones(self):
        with pytest.raises(ValidationError):
            Customer(id="1", name="x", phones=[str(i) for i in range(6)])


class TestSession:
    def test_defaults(self):
        session = Session(key="972541234567")
        assert session.stage == Stage.IDENTIFYING
        assert not session.is_identified
        assert session.pending_text == ""
        assert session.attachments == []
        assert session.version == 0

    def test_attachments_returns_copy(self):
        session = Session(key="k", data={"attachments": ["a"]})
        session.attachments.append("b")
        assert session.data["attachments"] == ["a"]

    def test_sessions_do_not_share_mutable_defaults(self):
        a, b = Session(key="a"), Session(key="b")
        a.data["x"] = 1
        assert b.data == {}

    def test_json_dump(self, dana):
        dumped = Session(key="k", customer=dana, stage=Stage.MENU).model_dump(mode="json")
        assert dumped["stage"] == "menu"
        assert dumped["customer"]["id"] == "555"


class TestIntents:
    def test_type_tags(self):
        assert SendReply(identity_address="k", text="hi").type == "send_reply"
        row = RecordLedgerRow(ticket_id="HSC-10001", kind=IntentKind.GUEST)
        assert row.type == "record_ledger_row"
        assert row.resolved is False
        assert row.timestamp.tzinfo is not None

    def test_inbound_defaults(self):
        event = InboundEvent(identity_address="972541234567")
        assert event.text == ""
        assert event.attachment_refs == []

    def test_not_found_result(self):
        result = ResolutionResult.not_found("thread_1")
        assert not result.found
        assert result.thread_handle == "thread_1"
        assert result.source_tag is None
