"""
Email Channel Adapter — operational and customer-facing mail.

Provides:
- Recipient routing per intent kind (technician / office / sales / training)
- Subject and plain-text body rendering for every intent kind
- Suppression list for customer addresses
- Outbox of rendered messages (inspected by tests and the stats endpoint)
"""
from __future__ import annotations

import uuid
import structlog
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from channels.base import ChannelError, MailSender
from config.settings import BusinessConfig, MailConfig
from models.schemas import (
    Customer, IntentKind, SendCustomerConfirmation, SendOperationalEmail,
)

logger = structlog.get_logger()

KIND_TITLES = {
    IntentKind.TECHNICIAN: "Service call",
    IntentKind.DAMAGE: "Damage report",
    IntentKind.ORDER: "Quote request",
    IntentKind.TRAINING: "Training request",
    IntentKind.GENERAL_OFFICE: "Office inquiry",
    IntentKind.SUMMARY: "Conversation summary",
    IntentKind.GUEST: "Unidentified caller",
}


@dataclass
class RenderedEmail:
    to: str
    subject: str
    body: str
    attachments: list[str] = field(default_factory=list)
    message_id: str = ""
    sent_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class EmailAdapter(MailSender):
    """
    Renders mail for every outbound email intent.

    For actual SMTP sending this adapter would hand the rendered message to
    an SMTP transport. Here _deliver records it in the outbox and logs it;
    the production version just replaces the transport call.
    """

    def __init__(self, mail: MailConfig = None, business: BusinessConfig = None, domain: str = "example.com"):
        self.mail = mail or MailConfig()
        self.business = business or BusinessConfig()
        self.domain = domain
        self.outbox: list[RenderedEmail] = []
        self._suppressed: set[str] = set()

    # ── Routing ───────────────────────────────────────────────

    def recipient_for(self, kind: IntentKind) -> str:
        routes = {
            IntentKind.TECHNICIAN: self.mail.technician_address,
            IntentKind.DAMAGE: self.mail.technician_address,
            IntentKind.ORDER: self.mail.sales_address,
            IntentKind.TRAINING: self.mail.training_address,
        }
        return routes.get(kind, self.mail.office_address)

    # ── Send ──────────────────────────────────────────────────

    async def send_operational(self, intent: SendOperationalEmail) -> dict[str, Any]:
        subject, body = self.render_operational(intent)
        return await self._deliver(RenderedEmail(
            to=self.recipient_for(intent.kind),
            subject=subject,
            body=body,
            attachments=list(intent.attachments),
        ))

    async def send_customer_confirmation(self, intent: SendCustomerConfirmation) -> dict[str, Any]:
        email = (intent.customer.email or "").lower()
        if not email:
            raise ChannelError(f"customer {intent.customer.id} has no email", "email")
        if self.is_suppressed(email):
            logger.info("email_suppressed", to=email, kind=intent.kind.value)
            return {"status": "suppressed", "to": email}
        subject, body = self.render_confirmation(intent)
        return await self._deliver(RenderedEmail(to=email, subject=subject, body=body))

    async def _deliver(self, message: RenderedEmail) -> dict[str, Any]:
        message.message_id = f"<{uuid.uuid4().hex}@{self.domain}>"
        self.outbox.append(message)
        logger.info("email_sent",
                    to=message.to,
                    subject=message.subject,
                    attachments=len(message.attachments),
                    message_id=message.message_id)
        return {"status": "sent", "channel_message_id": message.message_id, "to": message.to}

    # ── Suppression ───────────────────────────────────────────

    def is_suppressed(self, email: str) -> bool:
        return email.lower() in self._suppressed

    def suppress(self, email: str) -> None:
        self._suppressed.add(email.lower())
        logger.info("email_address_suppressed", email=email.lower())

    # ── Rendering ─────────────────────────────────────────────

    def render_operational(self, intent: SendOperationalEmail) -> tuple[str, str]:
        """Returns (subject, body) for the internal team."""
        p = intent.payload
        ticket = p.get("ticket_id", "")
        title = KIND_TITLES.get(intent.kind, intent.kind.value)
        urgent = "🚨 URGENT " if p.get("urgent") else ""
        site = intent.customer.site if intent.customer else "unidentified"

        subject = f"{urgent}{title} {ticket} - {site}".strip()
        if p.get("follow_up"):
            subject = f"Follow-up {ticket} - {site}"

        lines = [f"{title}: {ticket}", ""]
        lines += _customer_block(intent.customer, p.get("address", ""))
        for label, key in (
            ("Unit", "unit"),
            ("Problem", "problem"),
            ("Description", "description"),
            ("Details", "details"),
            ("Attempted remedy", "attempted_resolution"),
            ("Escalation reason", "reason"),
            ("Customer follow-up", "follow_up"),
        ):
            if p.get(key):
                lines.append(f"{label}: {p[key]}")
        if intent.attachments:
            lines += ["", f"Attachments ({len(intent.attachments)}):"]
            lines += [f"  - {ref}" for ref in intent.attachments]
        lines += ["", f"Sent by {self.business.agent_name} ({self.business.company_name})"]
        return subject, "\n".join(lines)

    def render_confirmation(self, intent: SendCustomerConfirmation) -> tuple[str, str]:
        """Returns (subject, body) for the customer."""
        title = KIND_TITLES.get(intent.kind, intent.kind.value)
        ref = f" {intent.ticket_id}" if intent.ticket_id else ""
        subject = f"{self.business.company_name} - {title}{ref}"
        body = (
            f"Hello {intent.customer.name},\n\n"
            f"{intent.summary}\n\n"
            + (f"Reference: {intent.ticket_id}\n" if intent.ticket_id else "")
            + f"Office hours: {self.business.office_hours}\n"
            + (f"Phone: {self.business.support_phone}\n" if self.business.support_phone else "")
            + f"\nBest regards,\n{self.business.agent_name}, {self.business.company_name}"
        )
        return subject, body

    async def health_check(self) -> dict[str, Any]:
        return {"channel": "email", "sent": len(self.outbox), "suppressed": len(self._suppressed)}


def _customer_block(customer: Optional[Customer], address: str) -> list[str]:
    if customer is None:
        return [f"Customer: not identified (WhatsApp {address})", ""]
    lines = [
        f"Customer: {customer.name} (#{customer.id})",
        f"Site: {customer.site}",
    ]
    if customer.address:
        lines.append(f"Address: {customer.address}")
    if customer.phones:
        lines.append(f"Phones: {', '.join(customer.phones)}")
    if address:
        lines.append(f"WhatsApp: {address}")
    return lines + [""]
