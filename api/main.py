"""
FastAPI Application — webhook intake and operational endpoints.

Provides:
- Green-API WhatsApp webhook
- Generic inbound message endpoint (other gateways, manual testing)
- Health, stats and session inspection for operators
- Customer directory lookup and manual operator sends
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from config.settings import get_settings
from context.identity import normalize_digits
from models.schemas import InboundEvent
from core.orchestrator import create_orchestrator
from channels.base import ChannelError
from channels.email_adapter import EmailAdapter
from channels.ledger import InMemoryLedger
from channels.whatsapp_adapter import GreenApiWhatsAppAdapter

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

_settings_boot = get_settings()
_wa_config = _settings_boot.channels.get("whatsapp")

whatsapp_adapter = GreenApiWhatsAppAdapter(_wa_config.credentials if _wa_config else {})
email_adapter = EmailAdapter(_settings_boot.mail, _settings_boot.business)
ledger = InMemoryLedger()

orchestrator = create_orchestrator(
    _settings_boot,
    reply_sender=whatsapp_adapter,
    mail_sender=email_adapter,
    ledger=ledger,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    await orchestrator.start()

    logger.info("service_desk_started",
                app=settings.app_name,
                customers=len(orchestrator.identity.customers),
                catalog=len(orchestrator.dialogue.resolution.catalog),
                whatsapp_configured=whatsapp_adapter.is_configured)
    yield

    await orchestrator.stop()
    await whatsapp_adapter.shutdown()
    logger.info("service_desk_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="Service Desk Agent API",
    description="WhatsApp service desk for parking equipment customers",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class InboundMessageRequest(BaseModel):
    sender_address: str
    text: str = ""
    attachment_refs: list[str] = []
    message_id: str = ""


class OutboundMessageRequest(BaseModel):
    recipient_address: str
    text: str


# ══════════════════════════════════════════════════════════════
#  HEALTH & DIAGNOSTICS
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "sessions": len(orchestrator.store),
        "pending_timers": orchestrator.scheduler.count,
        "whatsapp": await whatsapp_adapter.health_check(),
    }


@app.get("/api/v1/stats")
async def get_stats():
    stats = orchestrator.stats()
    stats["email"] = await email_adapter.health_check()
    stats["ledger"] = ledger.stats()
    return stats


# ══════════════════════════════════════════════════════════════
#  SESSIONS
# ══════════════════════════════════════════════════════════════

@app.get("/api/v1/sessions")
async def list_sessions():
    sessions = orchestrator.store.list_sessions()
    return {
        "count": len(sessions),
        "sessions": [
            {
                "key": s.key,
                "stage": s.stage.value,
                "customer_id": s.customer.id if s.customer else None,
                "last_activity_at": s.last_activity_at.isoformat(),
            }
            for s in sessions
        ],
    }


@app.get("/api/v1/sessions/{key}")
async def get_session(key: str):
    key = normalize_digits(key)
    session = orchestrator.store.get(key)
    if not session:
        raise HTTPException(404, "Session not found")
    timer = orchestrator.scheduler.pending(key)
    return {
        **session.model_dump(mode="json"),
        "pending_timer": {"stage": timer.stage.value, "seq": timer.seq} if timer else None,
    }


@app.delete("/api/v1/sessions/{key}")
async def delete_session(key: str):
    removed = orchestrator.remove_session(key)
    if not removed:
        raise HTTPException(404, "Session not found")
    return {"status": "removed", "key": removed.key}


# ══════════════════════════════════════════════════════════════
#  CUSTOMER DIRECTORY
# ══════════════════════════════════════════════════════════════

@app.get("/api/v1/customers")
async def list_customers():
    return [c.model_dump() for c in orchestrator.identity.customers]


@app.get("/api/v1/customers/search")
async def search_customers(q: str = ""):
    return [c.model_dump() for c in orchestrator.identity.search(q)]


@app.get("/api/v1/customers/{customer_id}")
async def get_customer(customer_id: str):
    customer = orchestrator.identity.get(customer_id)
    if not customer:
        raise HTTPException(404, "Customer not found")
    return customer.model_dump()


# ══════════════════════════════════════════════════════════════
#  OPERATOR SEND
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/messages/outbound")
async def send_operator_message(req: OutboundMessageRequest):
    address = normalize_digits(req.recipient_address)
    if not address or not req.text.strip():
        raise HTTPException(400, "recipient_address and text are required")
    try:
        result = await whatsapp_adapter.send_reply(address, req.text)
    except ChannelError as e:
        logger.warning("operator_send_failed", to=address, error=str(e))
        raise HTTPException(502, f"Send failed: {e}")
    logger.info("operator_message_sent", to=address, status=result.get("status"))
    return {"status": result.get("status"), "to": address, "result": result}


# ══════════════════════════════════════════════════════════════
#  INBOUND MESSAGES
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/messages/inbound")
async def receive_inbound_message(req: InboundMessageRequest):
    return await orchestrator.handle_inbound(InboundEvent(
        identity_address=req.sender_address,
        text=req.text,
        attachment_refs=req.attachment_refs,
        message_id=req.message_id,
    ))


# ══════════════════════════════════════════════════════════════
#  WEBHOOKS — WhatsApp (Green-API)
# ══════════════════════════════════════════════════════════════

@app.post("/webhook/whatsapp")
async def whatsapp_webhook(request: Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(400, "Invalid JSON")
    if not isinstance(body, dict):
        raise HTTPException(400, "Expected a JSON object")

    event = whatsapp_adapter.parse_webhook(body)
    if event is None:
        return {"status": "ignored", "type": body.get("typeWebhook")}
    return await orchestrator.handle_inbound(event)


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
