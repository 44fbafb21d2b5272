"""
Integration tests for the Orchestrator.

Runs the full inbound → dialogue → commit → dispatch loop with a real store,
scheduler and dispatcher; only the resolution chain and the channels are mocked.
"""
import asyncio
import pytest
from unittest.mock import AsyncMock

from conftest import ADDRESS, event
from models.schemas import IntentKind, Sender, Stage


def operational_kinds(mail_sender):
    return [c.args[0].kind for c in mail_sender.send_operational.await_args_list]


async def reach_problem_confirmation(orch):
    await orch.handle_inbound(event("hi"))
    await orch.handle_inbound(event("1"))
    return await orch.handle_inbound(event("The barrier at unit 201 is stuck"))


# ══════════════════════════════════════════════════════════════
#  INBOUND
# ══════════════════════════════════════════════════════════════

class TestInbound:
    @pytest.mark.asyncio
    async def test_known_address_binds_on_first_message(self, make_orchestrator, reply_sender):
        orch = make_orchestrator()
        result = await orch.handle_inbound(event("hi", address="+972 54-123-4567"))
        await orch.drain()

        assert result["status"] == "processed"
        assert result["key"] == ADDRESS
        assert result["stage"] == "menu"
        session = orch.store.get(ADDRESS)
        assert session.customer.id == "555"
        reply_sender.send_reply.assert_awaited_once_with(ADDRESS, result["reply"])

    @pytest.mark.asyncio
    async def test_unknown_address_identifies_by_site(self, make_orchestrator):
        orch = make_orchestrator()
        first = await orch.handle_inbound(event("hello", address="972509999999"))
        assert first["stage"] == "identifying"
        second = await orch.handle_inbound(event("Grand Canyon Haifa", address="972509999999"))
        assert second["stage"] == "menu"
        assert orch.store.get("972509999999").customer.id == "612"
        await orch.drain()

    @pytest.mark.asyncio
    async def test_duplicate_message_id_dropped(self, make_orchestrator, reply_sender):
        orch = make_orchestrator()
        await orch.handle_inbound(event("hi", message_id="wamid.1"))
        result = await orch.handle_inbound(event("hi", message_id="wamid.1"))
        await orch.drain()
        assert result["status"] == "duplicate"
        assert reply_sender.send_reply.await_count == 1

    @pytest.mark.asyncio
    async def test_missing_address_ignored(self, make_orchestrator):
        orch = make_orchestrator()
        assert (await orch.handle_inbound(event("hi", address="")))["status"] == "ignored"
        assert len(orch.store) == 0

    @pytest.mark.asyncio
    async def test_history_records_both_sides(self, make_orchestrator):
        orch = make_orchestrator()
        await orch.handle_inbound(event("hi"))
        await orch.handle_inbound(event(attachments=["https://files/p1.jpg"]))
        await orch.drain()
        senders = [(t.sender, t.text) for t in orch.store.get(ADDRESS).history]
        assert senders[0] == (Sender.CUSTOMER, "hi")
        assert senders[1][0] == Sender.AGENT
        assert (Sender.CUSTOMER, "[attachment]") in senders

    @pytest.mark.asyncio
    async def test_failed_reply_does_not_revert_transition(self, make_orchestrator, reply_sender):
        reply_sender.send_reply.side_effect = RuntimeError("gateway down")
        orch = make_orchestrator()
        await orch.handle_inbound(event("hi"))
        await orch.handle_inbound(event("1"))
        await orch.drain()
        assert orch.store.get(ADDRESS).stage == Stage.PROBLEM_DESCRIPTION
        assert orch.dispatcher.stats()["failed"] == 2


# ══════════════════════════════════════════════════════════════
#  TIMERS
# ══════════════════════════════════════════════════════════════

class TestTimers:
    @pytest.mark.asyncio
    async def test_grace_stage_arms_and_reset_cancels(self, make_orchestrator):
        orch = make_orchestrator(grace_seconds=5)
        result = await reach_problem_confirmation(orch)
        assert result["stage"] == "problem_confirmation"
        assert orch.scheduler.pending(ADDRESS) is not None

        await orch.handle_inbound(event("menu"))
        assert orch.scheduler.pending(ADDRESS) is None
        await orch.stop()

    @pytest.mark.asyncio
    async def test_silent_feedback_escalates_once(self, make_orchestrator, reply_sender, mail_sender):
        orch = make_orchestrator(grace_seconds=0.1)
        await reach_problem_confirmation(orch)
        await orch.handle_inbound(event("ok"))
        await orch.drain()

        assert orch.store.get(ADDRESS).stage == Stage.WAITING_FEEDBACK
        assert orch.scheduler.pending(ADDRESS) is not None
        replies_before = reply_sender.send_reply.await_count
        assert mail_sender.send_operational.await_count == 0

        await asyncio.sleep(0.25)
        await orch.drain()

        assert orch.store.get(ADDRESS).stage == Stage.COMPLETED
        assert operational_kinds(mail_sender) == [IntentKind.TECHNICIAN]
        assert reply_sender.send_reply.await_count == replies_before + 1
        assert orch.scheduler.pending(ADDRESS) is None

    @pytest.mark.asyncio
    async def test_reply_before_deadline_wins(self, make_orchestrator, mail_sender):
        orch = make_orchestrator(grace_seconds=0.1)
        await reach_problem_confirmation(orch)
        await orch.handle_inbound(event("ok"))
        await orch.drain()

        await orch.handle_inbound(event("yes it works now"))
        await asyncio.sleep(0.2)
        await orch.drain()

        assert orch.store.get(ADDRESS).stage == Stage.COMPLETED
        assert mail_sender.send_operational.await_count == 0

    @pytest.mark.asyncio
    async def test_silent_confirmation_auto_approves(self, make_orchestrator, resolution):
        orch = make_orchestrator(grace_seconds=0.05)
        await reach_problem_confirmation(orch)
        await asyncio.sleep(0.08)
        await orch.drain()

        resolution.resolve.assert_awaited_once()
        assert orch.store.get(ADDRESS).stage == Stage.WAITING_FEEDBACK
        await orch.stop()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("fragment", ["rolls x2", "unit 305"])
    async def test_quiet_order_request_is_salvaged(self, make_orchestrator, mail_sender, ledger, fragment):
        orch = make_orchestrator(grace_seconds=0.05)
        await orch.handle_inbound(event("hi"))
        await orch.handle_inbound(event("3"))
        assert orch.scheduler.pending(ADDRESS) is None

        result = await orch.handle_inbound(event(fragment))
        assert result["stage"] == "order_request"
        assert orch.scheduler.pending(ADDRESS) is not None

        await asyncio.sleep(0.1)
        await orch.drain()

        assert orch.store.get(ADDRESS).stage == Stage.COMPLETED
        assert operational_kinds(mail_sender) == [IntentKind.ORDER]
        assert mail_sender.send_operational.await_args.args[0].payload["description"] == fragment
        row = ledger.append.await_args.args[0]
        assert row.kind == IntentKind.ORDER
        assert row.ticket_id.startswith("HSC-")

    @pytest.mark.asyncio
    async def test_quiet_order_request_without_content_returns_to_menu(self, make_orchestrator,
                                                                        mail_sender, ledger):
        orch = make_orchestrator(grace_seconds=0.05)
        await orch.handle_inbound(event("hi"))
        await orch.handle_inbound(event("3"))
        await orch.handle_inbound(event("hmm"))

        await asyncio.sleep(0.1)
        await orch.drain()

        session = orch.store.get(ADDRESS)
        assert session.stage == Stage.MENU
        assert "fragments" not in session.data
        mail_sender.send_operational.assert_not_awaited()
        ledger.append.assert_not_awaited()
        assert orch.scheduler.pending(ADDRESS) is None

    @pytest.mark.asyncio
    async def test_remove_session_cancels_timer(self, make_orchestrator):
        orch = make_orchestrator(grace_seconds=5)
        await reach_problem_confirmation(orch)
        assert orch.remove_session("+972-54-123-4567") is not None
        assert orch.scheduler.count == 0
        await orch.drain()


# ══════════════════════════════════════════════════════════════
#  FAULT RESOLUTION
# ══════════════════════════════════════════════════════════════

class TestResolution:
    @pytest.mark.asyncio
    async def test_stale_result_discarded_after_reset(self, make_orchestrator, resolution, found_result,
                                                      reply_sender):
        async def slow(*args, **kwargs):
            await asyncio.sleep(0.1)
            return found_result

        resolution.resolve = AsyncMock(side_effect=slow)
        orch = make_orchestrator(grace_seconds=5)
        await reach_problem_confirmation(orch)
        await orch.handle_inbound(event("ok"))
        await orch.handle_inbound(event("menu"))
        await orch.drain()

        session = orch.store.get(ADDRESS)
        assert session.stage == Stage.MENU
        sent = [c.args[1] for c in reply_sender.send_reply.await_args_list]
        assert found_result.response_text not in "\n".join(sent)

    @pytest.mark.asyncio
    async def test_resolution_timeout_escalates(self, make_orchestrator, resolution, found_result, mail_sender):
        async def hang(*args, **kwargs):
            await asyncio.sleep(1)
            return found_result

        resolution.resolve = AsyncMock(side_effect=hang)
        orch = make_orchestrator(grace_seconds=5, resolution_timeout_s=0.05)
        await reach_problem_confirmation(orch)
        await orch.handle_inbound(event("ok"))
        await orch.drain()

        assert orch.store.get(ADDRESS).stage == Stage.TECHNICIAN_ESCALATED
        assert operational_kinds(mail_sender) == [IntentKind.TECHNICIAN]

    @pytest.mark.asyncio
    async def test_resolution_error_escalates(self, make_orchestrator, resolution):
        resolution.resolve = AsyncMock(side_effect=RuntimeError("chain crashed"))
        orch = make_orchestrator(grace_seconds=5)
        await reach_problem_confirmation(orch)
        await orch.handle_inbound(event("ok"))
        await orch.drain()
        assert orch.store.get(ADDRESS).stage == Stage.TECHNICIAN_ESCALATED

    @pytest.mark.asyncio
    async def test_found_result_sent_with_feedback_prompt(self, make_orchestrator, found_result, reply_sender):
        orch = make_orchestrator(grace_seconds=5)
        await reach_problem_confirmation(orch)
        await orch.handle_inbound(event("ok"))
        await orch.drain()

        last = reply_sender.send_reply.await_args_list[-1].args[1]
        assert last.startswith(found_result.response_text)
        session = orch.store.get(ADDRESS)
        assert session.data["resolution_token"] is None
        assert session.data["resolution_scenario"] == "Barrier gate stuck"
        await orch.stop()

    @pytest.mark.asyncio
    async def test_stats(self, make_orchestrator):
        orch = make_orchestrator()
        await orch.handle_inbound(event("hi", message_id="a"))
        await orch.handle_inbound(event("hi", message_id="a"))
        await orch.drain()
        stats = orch.stats()
        assert stats["inbound"] == 1
        assert stats["duplicates"] == 1
        assert stats["sessions"]["sessions"] == 1
