"""
Customer-facing reply texts.

Kept apart from the dialogue engine so wording can change without touching
transitions. Everything here is a pure function of its arguments.
"""
from __future__ import annotations

from typing import Optional

from config.settings import BusinessConfig
from models.schemas import Customer, IntentKind, Sender, Session, Stage
from utils.text import contains_any, describe_unit

MENU = (
    "How can I help today?\n"
    "1️⃣ Report a fault\n"
    "2️⃣ Report damage\n"
    "3️⃣ Price quote / order\n"
    "4️⃣ Training\n"
    "5️⃣ Office / general inquiry\n\n"
    "You can type 'menu' at any time to start over."
)

FEEDBACK_PROMPT = (
    "Did this solve the problem?\n"
    "1️⃣ Yes, solved\n"
    "2️⃣ No, send a technician"
)

TRAINING_FEEDBACK_PROMPT = (
    "Was this helpful?\n"
    "1️⃣ Yes, thanks\n"
    "2️⃣ I need more detail"
)

REQUEST_PROMPTS = {
    Stage.PROBLEM_DESCRIPTION: (
        "Please describe the fault and the unit number "
        "(e.g. 101 entry, 201 exit, 601 pay station). Is the unit powered on?"
    ),
    Stage.DAMAGE_PHOTO: (
        "Please photograph the damage and send the number of the damaged unit. "
        "Up to 4 photos."
    ),
    Stage.ORDER_REQUEST: (
        "What do you need? (tickets / paper rolls / barrier arms / other) "
        "Please include quantity and delivery address."
    ),
    Stage.TRAINING_REQUEST: (
        "Which topic? (daily operation / handling faults / new system / other)"
    ),
    Stage.GENERAL_OFFICE_REQUEST: "How can the office help you?",
}

CONFIRMATION_TITLES = {
    Stage.PROBLEM_CONFIRMATION: "Fault report",
    Stage.DAMAGE_CONFIRMATION: "Damage report",
    Stage.ORDER_CONFIRMATION: "Quote request",
    Stage.TRAINING_CONFIRMATION: "Training request",
    Stage.OFFICE_CONFIRMATION: "Office inquiry",
}

SENT_REPLIES = {
    IntentKind.DAMAGE: "📸 Damage report sent to the technical team.",
    IntentKind.ORDER: "💰 Quote request sent. A price quote will be sent within 24 hours.",
    IntentKind.TRAINING: "📚 Training request recorded.",
    IntentKind.GENERAL_OFFICE: "📋 Your inquiry was passed to the office.",
}


# ──────────────────────────────────────────────────────────────
#  Identification
# ──────────────────────────────────────────────────────────────

def ask_identity(business: BusinessConfig) -> str:
    return (
        f"Hello! 👋 I'm {business.agent_name}, the {business.company_name} virtual assistant.\n"
        "To help you, please tell me the name of your parking site or your customer number.\n"
        "(Type 'guest' to continue without identification.)"
    )


def greeting(customer: Customer, business: BusinessConfig) -> str:
    site = f" from {customer.site}" if customer.site else ""
    return f"Hello {customer.name}{site}! 👋 I'm {business.agent_name}.\n\n{MENU}"


def confirm_identity(customer: Customer) -> str:
    return f"Did you mean {customer.site} ({customer.name})? Please reply yes or no."


def identify_retry(attempt: int, max_attempts: int) -> str:
    left = max(max_attempts - attempt, 0)
    return (
        "I couldn't find that site. Please send the exact site name or your customer number"
        f" ({left} attempt{'s' if left != 1 else ''} left)."
    )


def guest_prompt() -> str:
    return (
        "No problem, let's continue as a guest. 📝\n"
        "Please send in one message: your full name, site name, phone number and what you need."
    )


def guest_done(ticket_id: str, business: BusinessConfig) -> str:
    return (
        f"✅ Thank you. Your details were passed to the office (reference {ticket_id}).\n"
        f"We will get back to you during office hours ({business.office_hours})."
    )


# ──────────────────────────────────────────────────────────────
#  Requests
# ──────────────────────────────────────────────────────────────

def too_short(stage: Stage) -> str:
    return f"Please add a few more details.\n{REQUEST_PROMPTS.get(stage, '')}".strip()


def attachment_ack(count: int, max_attachments: int) -> str:
    return (
        f"📎 Received ({count}/{max_attachments}). "
        "Send a short description when you're ready."
    )


def attachment_limit(max_attachments: int) -> str:
    return (
        f"⚠️ Up to {max_attachments} files can be attached to one request. "
        "Please send a description, or reply 'ok' to send what you have."
    )


def confirmation(stage: Stage, pending_text: str, unit: Optional[str] = None,
                 attachments: int = 0) -> str:
    lines = [f"📋 {CONFIRMATION_TITLES.get(stage, 'Request')}:", pending_text]
    if unit:
        lines.append(f"Unit: {describe_unit(unit)}")
    if attachments:
        lines.append(f"Attachments: {attachments}")
    lines += ["", "Reply 'ok' to send, or add more details."]
    return "\n".join(lines)


def checking() -> str:
    return "🔍 Checking the issue against our knowledge base, one moment..."


def still_checking() -> str:
    return "⏳ Still checking, I'll get back to you shortly."


def with_feedback_prompt(response_text: str) -> str:
    return f"{response_text}\n\n{FEEDBACK_PROMPT}"


def technician_escalated(ticket_id: str, business: BusinessConfig) -> str:
    return (
        "🔧 A service call was opened for the technical department.\n"
        f"📋 Service call: {ticket_id}\n"
        "⏰ A technician will get back to you within 4 working hours."
        + (f"\n📞 {business.support_phone}" if business.support_phone else "")
    )


def solved(ticket_id: str) -> str:
    return f"🎉 Great, glad it's working! Reference: {ticket_id}.\nAnything else? Type 'menu'."


def request_sent(kind: IntentKind, ticket_id: str) -> str:
    return f"{SENT_REPLIES.get(kind, '✅ Request sent.')}\n📋 Reference: {ticket_id}"


def follow_up_noted(ticket_id: str) -> str:
    ref = f" to service call {ticket_id}" if ticket_id else ""
    return f"📝 Added your note{ref}. The technician will see it."


def summary_sent(has_email: bool) -> str:
    if has_email:
        return "📧 A summary of our conversation is on its way to your email."
    return "I don't have an email address on file for you, please contact the office."


def welcome() -> str:
    return "You're welcome! 😊 Type 'menu' if you need anything else."


def reset() -> str:
    return f"🔄 Starting over.\n\n{MENU}"


def not_understood(stage: Stage) -> str:
    prompt = REQUEST_PROMPTS.get(stage)
    return f"Sorry, I didn't understand. {prompt}" if prompt else f"Sorry, I didn't understand.\n\n{MENU}"


# ──────────────────────────────────────────────────────────────
#  Training material
# ──────────────────────────────────────────────────────────────

TRAINING_TOPICS: dict[str, dict] = {
    "operation": {
        "keywords": ("operation", "daily", "operate", "shift", "תפעול", "יומי", "משמרת"),
        "basic": (
            "📚 Daily operation basics:\n"
            "1. Check that every entry and exit station is powered and online.\n"
            "2. Verify paper rolls in the ticket printers.\n"
            "3. Empty pay station cash boxes according to the site schedule.\n"
            "4. Run the end-of-shift report from the main computer."
        ),
        "expanded": (
            "📘 Daily operation, full guide:\n"
            "• Opening: power on stations, confirm barriers close after a test ticket.\n"
            "• During the day: watch the alerts screen, refill paper before it runs out.\n"
            "• Cash handling: use the collection key, log every box in the report.\n"
            "• Closing: run the Z report, lock pay stations, back up the daily data.\n"
            "The full manual can be sent to your email on request."
        ),
    },
    "faults": {
        "keywords": ("fault", "faults", "troubleshoot", "error", "תקלה", "תקלות"),
        "basic": (
            "📚 Handling faults:\n"
            "1. Note the unit number and the message on its display.\n"
            "2. Restart the unit from its power switch and wait 2 minutes.\n"
            "3. If the barrier is stuck, release it manually with the service key.\n"
            "4. If the fault continues, report it here with option 1."
        ),
        "expanded": (
            "📘 Handling faults, full guide:\n"
            "• Communication faults: check the network cable and the switch lights.\n"
            "• Printer faults: open the cover, remove jammed paper, reseat the roll.\n"
            "• Payment faults: restart the credit terminal, then the pay station.\n"
            "• Barrier faults: check the loop detector and the arm springs.\n"
            "Never open high-voltage compartments."
        ),
    },
    "new_system": {
        "keywords": ("new system", "new", "upgrade", "install", "מערכת חדשה", "חדשה", "התקנה"),
        "basic": (
            "📚 New system onboarding:\n"
            "1. Log in to the management software with the credentials you received.\n"
            "2. Review the tariff table and the opening hours.\n"
            "3. Issue a test ticket at each entry and pay it at a pay station."
        ),
        "expanded": (
            "📘 New system, full guide:\n"
            "• Users: create an account per operator, never share passwords.\n"
            "• Tariffs: changes take effect on the next ticket issued.\n"
            "• Subscriptions: add monthly parkers from the subscribers screen.\n"
            "• Reports: daily, monthly and occupancy reports are under Reports.\n"
            "A technician can schedule an on-site session on request."
        ),
    },
}

DEFAULT_TRAINING_TOPIC = "operation"


def training_topic(text: str) -> str:
    for topic, material in TRAINING_TOPICS.items():
        if contains_any(text, material["keywords"]):
            return topic
    return DEFAULT_TRAINING_TOPIC


def training_material(topic: str, expanded: bool = False) -> str:
    material = TRAINING_TOPICS.get(topic) or TRAINING_TOPICS[DEFAULT_TRAINING_TOPIC]
    return material["expanded" if expanded else "basic"]


# ──────────────────────────────────────────────────────────────
#  Summary
# ──────────────────────────────────────────────────────────────

def build_conversation_summary(session: Session, limit: int = 20) -> str:
    """Plain-text transcript summary used for the customer's summary email."""
    lines = []
    if session.customer:
        lines.append(f"Customer: {session.customer.name} ({session.customer.site})")
    if session.data.get("ticket_id"):
        lines.append(f"Reference: {session.data['ticket_id']}")
    if session.data.get("resolution_scenario"):
        lines.append(f"Issue: {session.data['resolution_scenario']}")
    if lines:
        lines.append("")
    for turn in session.history[-limit:]:
        who = "You" if turn.sender == Sender.CUSTOMER else "Agent"
        lines.append(f"[{turn.timestamp:%d/%m %H:%M}] {who}: {turn.text}")
    return "\n".join(lines)
