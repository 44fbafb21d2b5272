"""
Tests for channel adapters.

Coverage:
  Base:      rate limiting, circuit breaker, delivery errors, metrics
  WhatsApp:  Green-API send, retry policy, unconfigured skip, webhook parsing, file typing
  Email:     routing, rendering, customer confirmation, suppression
  Ledger:    append, lookup, stats
"""
import asyncio
import json
import httpx
import pytest

from channels.base import (
    ChannelError, CircuitBreaker, CircuitOpenError, DeliveryError, TokenBucketRateLimiter,
)
from channels.email_adapter import EmailAdapter
from channels.ledger import InMemoryLedger
from channels.whatsapp_adapter import GreenApiWhatsAppAdapter, chat_id_for, identify_file
from models.schemas import (
    Customer, IntentKind, RecordLedgerRow, SendCustomerConfirmation, SendOperationalEmail,
)


# ── Fixtures ──────────────────────────────────────────

CREDENTIALS = {
    "api_url": "https://api.green-api.test",
    "instance_id": "1101",
    "token": "tok",
    "rate_per_second": 0,
}


def make_whatsapp(handler, credentials=None):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GreenApiWhatsAppAdapter(credentials or CREDENTIALS, client=client)


def incoming(message_data, sender="972541234567@c.us", id_message="BAE5F4886F1A"):
    return {
        "typeWebhook": "incomingMessageReceived",
        "idMessage": id_message,
        "senderData": {"chatId": sender, "sender": sender, "senderName": "Dana"},
        "messageData": message_data,
    }


@pytest.fixture
def email(mail_config, business):
    return EmailAdapter(mail_config, business, domain="test.local")


# ══════════════════════════════════════════════════════════════
#  BASE — Rate Limiter
# ══════════════════════════════════════════════════════════════

class TestTokenBucketRateLimiter:
    @pytest.mark.asyncio
    async def test_acquire_within_burst(self):
        rl = TokenBucketRateLimiter(rate=10, burst=5)
        for _ in range(5):
            assert await rl.acquire(timeout=0.1) is True

    @pytest.mark.asyncio
    async def test_acquire_exceeds_burst(self):
        rl = TokenBucketRateLimiter(rate=10, burst=2)
        assert await rl.acquire(timeout=0.1) is True
        assert await rl.acquire(timeout=0.1) is True
        # Third should timeout quickly
        assert await rl.acquire(timeout=0.05) is False

    @pytest.mark.asyncio
    async def test_refill(self):
        rl = TokenBucketRateLimiter(rate=100, burst=1)
        assert await rl.acquire(timeout=0.01) is True
        await asyncio.sleep(0.02)
        assert await rl.acquire(timeout=0.01) is True


# ══════════════════════════════════════════════════════════════
#  BASE — Circuit Breaker
# ══════════════════════════════════════════════════════════════

class TestCircuitBreaker:
    def test_opens_after_threshold(self):
        cb = CircuitBreaker(failure_threshold=3, recovery_timeout=60)
        for _ in range(2):
            cb.record_failure()
        assert cb.state == "closed"
        cb.record_failure()
        assert cb.is_open

    def test_half_open_after_recovery(self):
        cb = CircuitBreaker(failure_threshold=1, recovery_timeout=0)
        cb.record_failure()
        assert cb.state == "half_open"
        cb.record_success()
        assert cb.state == "closed"

    def test_failed_probe_reopens(self):
        now = [1000.0]
        cb = CircuitBreaker(failure_threshold=2, recovery_timeout=30, clock=lambda: now[0])
        cb.record_failure()
        cb.record_failure()
        assert cb.is_open
        now[0] += 31
        assert cb.state == "half_open"
        cb.record_failure()
        assert cb.is_open
        now[0] += 31
        cb.record_success()
        assert cb.state == "closed"


# ══════════════════════════════════════════════════════════════
#  WHATSAPP — Send
# ══════════════════════════════════════════════════════════════

class TestWhatsAppSend:
    @pytest.mark.asyncio
    async def test_send_posts_green_api_message(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"idMessage": "BAE5367237E13A87"})

        adapter = make_whatsapp(handler)
        result = await adapter.send_reply("+972-54-123-4567", "Hello Dana")

        assert result["status"] == "sent"
        assert result["channel_message_id"] == "BAE5367237E13A87"
        assert seen[0].url.path == "/waInstance1101/sendMessage/tok"
        assert json.loads(seen[0].content) == {"chatId": "972541234567@c.us", "message": "Hello Dana"}

    @pytest.mark.asyncio
    async def test_http_error_is_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500, json={"error": "boom"})

        adapter = make_whatsapp(handler)
        with pytest.raises(DeliveryError):
            await adapter.send_reply("972541234567", "hi")
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_transport_error_is_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, json={"idMessage": "BAE5"})

        adapter = make_whatsapp(handler)
        result = await adapter.send_reply("972541234567", "hi")
        assert result["channel_message_id"] == "BAE5"
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_missing_message_id_is_delivery_error(self):
        adapter = make_whatsapp(lambda request: httpx.Response(200, json={}))
        with pytest.raises(DeliveryError):
            await adapter.send_reply("972541234567", "hi")

    @pytest.mark.asyncio
    async def test_unconfigured_adapter_skips_send(self):
        calls = []
        adapter = make_whatsapp(
            lambda request: calls.append(request) or httpx.Response(200, json={"idMessage": "x"}),
            credentials={"instance_id": "${WHATSAPP_INSTANCE}", "token": "${WHATSAPP_TOKEN}",
                         "rate_per_second": 0},
        )
        assert not adapter.is_configured
        result = await adapter.send_reply("972541234567", "hi")
        assert result["status"] == "skipped"
        assert calls == []

    @pytest.mark.asyncio
    async def test_circuit_opens_after_repeated_failures(self):
        adapter = make_whatsapp(lambda request: httpx.Response(503))
        for _ in range(5):
            with pytest.raises(DeliveryError):
                await adapter.send_reply("972541234567", "hi")
        with pytest.raises(CircuitOpenError):
            await adapter.send_reply("972541234567", "hi")

        health = await adapter.health_check()
        assert health["circuit_breaker"] == "open"
        assert health["metrics"]["failed"] == 6

    def test_chat_id_for(self):
        assert chat_id_for("+972 54-123-4567") == "972541234567@c.us"


# ══════════════════════════════════════════════════════════════
#  WHATSAPP — Inbound
# ══════════════════════════════════════════════════════════════

class TestWhatsAppWebhook:
    def setup_method(self):
        self.adapter = GreenApiWhatsAppAdapter(CREDENTIALS)

    def test_text_message(self):
        event = self.adapter.parse_webhook(incoming({
            "typeMessage": "textMessage",
            "textMessageData": {"textMessage": "The gate is stuck"},
        }))
        assert event.identity_address == "972541234567"
        assert event.text == "The gate is stuck"
        assert event.message_id == "BAE5F4886F1A"
        assert event.attachment_refs == []

    def test_extended_text_message(self):
        event = self.adapter.parse_webhook(incoming({
            "typeMessage": "extendedTextMessage",
            "extendedTextMessageData": {"text": "see https://example.com"},
        }))
        assert event.text == "see https://example.com"

    def test_file_message_with_caption(self):
        event = self.adapter.parse_webhook(incoming({
            "typeMessage": "imageMessage",
            "fileMessageData": {
                "downloadUrl": "https://files.green-api.test/abc.jpg",
                "caption": "bent arm at 101",
                "fileName": "abc.jpg",
                "mimeType": "image/jpeg",
            },
        }))
        assert event.text == "bent arm at 101"
        assert event.attachment_refs == ["https://files.green-api.test/abc.jpg"]

    def test_control_characters_stripped(self):
        event = self.adapter.parse_webhook(incoming({
            "textMessageData": {"textMessage": "hi\x00 there\x07"},
        }))
        assert event.text == "hi there"

    def test_status_webhook_ignored(self):
        assert self.adapter.parse_webhook({"typeWebhook": "outgoingMessageStatus", "status": "read"}) is None

    def test_group_chat_ignored(self):
        payload = incoming({"textMessageData": {"textMessage": "hi"}}, sender="120363@g.us")
        assert self.adapter.parse_webhook(payload) is None

    @pytest.mark.parametrize("name,mime,expected", [
        ("photo.JPG", "", "image"),
        ("", "video/mp4", "video"),
        ("manual.pdf", "", "pdf"),
        ("offer.docx", "application/vnd.openxmlformats-officedocument.wordprocessingml.document", "document"),
        ("dump.bin", "application/octet-stream", "file"),
    ])
    def test_identify_file(self, name, mime, expected):
        assert identify_file(name, mime) == expected


# ══════════════════════════════════════════════════════════════
#  EMAIL
# ══════════════════════════════════════════════════════════════

class TestEmailAdapter:
    def test_routing(self, email):
        assert email.recipient_for(IntentKind.TECHNICIAN) == "service@test.local"
        assert email.recipient_for(IntentKind.DAMAGE) == "service@test.local"
        assert email.recipient_for(IntentKind.ORDER) == "sales@test.local"
        assert email.recipient_for(IntentKind.TRAINING) == "training@test.local"
        assert email.recipient_for(IntentKind.GENERAL_OFFICE) == "office@test.local"
        assert email.recipient_for(IntentKind.GUEST) == "office@test.local"

    @pytest.mark.asyncio
    async def test_urgent_technician_email(self, email, dana):
        result = await email.send_operational(SendOperationalEmail(
            kind=IntentKind.TECHNICIAN,
            customer=dana,
            payload={"ticket_id": "HSC-10001", "problem": "gate stuck", "unit": "201 (exit station)",
                     "urgent": True, "reason": "no known remedy", "address": "972541234567"},
            attachments=["https://files/p1.jpg"],
        ))
        assert result["status"] == "sent"
        sent = email.outbox[0]
        assert sent.to == "service@test.local"
        assert sent.subject == "🚨 URGENT Service call HSC-10001 - Azrieli Tel Aviv Parking"
        assert "Unit: 201 (exit station)" in sent.body
        assert "Escalation reason: no known remedy" in sent.body
        assert "  - https://files/p1.jpg" in sent.body
        assert sent.message_id.endswith("@test.local>")

    @pytest.mark.asyncio
    async def test_follow_up_subject(self, email, dana):
        await email.send_operational(SendOperationalEmail(
            kind=IntentKind.TECHNICIAN, customer=dana,
            payload={"ticket_id": "HSC-10003", "follow_up": "also bent"},
        ))
        assert email.outbox[0].subject == "Follow-up HSC-10003 - Azrieli Tel Aviv Parking"

    @pytest.mark.asyncio
    async def test_guest_email_without_customer(self, email):
        await email.send_operational(SendOperationalEmail(
            kind=IntentKind.GUEST, payload={"ticket_id": "HSC-10002", "details": "Moshe", "address": "97250"},
        ))
        assert "Customer: not identified (WhatsApp 97250)" in email.outbox[0].body

    @pytest.mark.asyncio
    async def test_customer_confirmation(self, email, dana):
        await email.send_customer_confirmation(SendCustomerConfirmation(
            kind=IntentKind.ORDER, customer=dana, ticket_id="HSC-10004", summary="20 paper rolls",
        ))
        sent = email.outbox[0]
        assert sent.to == "dana.levi@example.co.il"
        assert sent.subject == "Test Parking Systems - Quote request HSC-10004"
        assert sent.body.startswith("Hello Dana Levi,")

    @pytest.mark.asyncio
    async def test_confirmation_requires_email(self, email):
        customer = Customer(id="9", name="No Mail")
        with pytest.raises(ChannelError):
            await email.send_customer_confirmation(SendCustomerConfirmation(
                kind=IntentKind.ORDER, customer=customer, ticket_id="HSC-1", summary="x",
            ))

    @pytest.mark.asyncio
    async def test_suppressed_address_not_sent(self, email, dana):
        email.suppress("Dana.Levi@example.co.il")
        result = await email.send_customer_confirmation(SendCustomerConfirmation(
            kind=IntentKind.SUMMARY, customer=dana, ticket_id="", summary="transcript",
        ))
        assert result["status"] == "suppressed"
        assert email.outbox == []


# ══════════════════════════════════════════════════════════════
#  LEDGER
# ══════════════════════════════════════════════════════════════

class TestInMemoryLedger:
    @pytest.mark.asyncio
    async def test_append_and_find(self, dana):
        ledger = InMemoryLedger()
        await ledger.append(RecordLedgerRow(ticket_id="HSC-10001", kind=IntentKind.TECHNICIAN, customer=dana))
        await ledger.append(RecordLedgerRow(ticket_id="HSC-10002", kind=IntentKind.ORDER, resolved=True))
        assert len(ledger.find("HSC-10001")) == 1
        assert ledger.stats() == {"rows": 2, "resolved": 1}
