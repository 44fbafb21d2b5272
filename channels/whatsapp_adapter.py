"""
WhatsApp Channel Adapter — Green-API gateway integration.

Provides:
- Outbound: free-form text via {api_url}/waInstance{id}/sendMessage/{token}
- Inbound: incomingMessageReceived webhooks with text, extended text or
  file payloads, normalized into InboundEvent
- Attachment typing by mime type / file extension
- Every other webhook type (status updates, outgoing echoes) is ignored
"""
from __future__ import annotations

import re
import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from channels.base import DeliveryError, ReplySender, TokenBucketRateLimiter
from models.schemas import InboundEvent
from utils.text import clean_message_text

logger = structlog.get_logger()

INCOMING_MESSAGE = "incomingMessageReceived"

_IMAGE_EXT = re.compile(r"\.(jpg|jpeg|png|gif|bmp|webp)$", re.IGNORECASE)
_VIDEO_EXT = re.compile(r"\.(mp4|avi|mov|wmv|mkv)$", re.IGNORECASE)


def chat_id_for(address: str) -> str:
    """'+972-54-123-4567' -> '972541234567@c.us'."""
    return f"{re.sub(r'[^0-9]', '', address)}@c.us"


def identify_file(file_name: str = "", mime_type: str = "") -> str:
    mime_type = mime_type or ""
    if mime_type.startswith("image/") or _IMAGE_EXT.search(file_name or ""):
        return "image"
    if mime_type.startswith("video/") or _VIDEO_EXT.search(file_name or ""):
        return "video"
    if "pdf" in mime_type or (file_name or "").lower().endswith(".pdf"):
        return "pdf"
    if "msword" in mime_type or "wordprocessingml" in mime_type:
        return "document"
    return "file"


class GreenApiWhatsAppAdapter(ReplySender):
    """
    Green-API WhatsApp adapter.

    Credentials (settings.yaml → channels.whatsapp.credentials):
      api_url, instance_id, token, rate_per_second, burst
    """

    channel = "whatsapp"

    def __init__(self, config: dict[str, Any] = None, client: Optional[httpx.AsyncClient] = None):
        config = config or {}
        rate = float(config.get("rate_per_second", 5))
        super().__init__(
            rate_limiter=TokenBucketRateLimiter(rate=rate, burst=int(config.get("burst", 10)))
            if rate > 0 else None,
        )
        self.api_url = str(config.get("api_url", "https://api.green-api.com")).rstrip("/")
        self.instance_id = str(config.get("instance_id", ""))
        self.token = str(config.get("token", ""))
        self._client = client
        self._owns_client = client is None

    @property
    def is_configured(self) -> bool:
        return all(v and not v.startswith("${") for v in (self.instance_id, self.token))

    def _send_url(self) -> str:
        return f"{self.api_url}/waInstance{self.instance_id}/sendMessage/{self.token}"

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=15.0)
            self._owns_client = True
        return self._client

    # ── Send ──────────────────────────────────────────────────

    async def _do_send(self, address: str, text: str) -> dict[str, Any]:
        if not self.is_configured:
            logger.info("whatsapp_send_skipped_unconfigured", to=address, length=len(text))
            return {"status": "skipped", "chat_id": chat_id_for(address)}
        data = await self._post_message(chat_id_for(address), text)
        message_id = data.get("idMessage", "")
        if not message_id:
            raise DeliveryError(f"no idMessage in response: {data}", self.channel)
        logger.info("whatsapp_text_sent", to=address, message_id=message_id)
        return {"status": "sent", "channel_message_id": message_id}

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _post_message(self, chat_id: str, text: str) -> dict[str, Any]:
        client = await self._get_client()
        response = await client.post(self._send_url(), json={"chatId": chat_id, "message": text})
        response.raise_for_status()
        return response.json()

    # ── Inbound parsing ───────────────────────────────────────

    def parse_webhook(self, payload: dict[str, Any]) -> Optional[InboundEvent]:
        """Normalize a Green-API webhook; None for anything that is not a customer message."""
        if payload.get("typeWebhook") != INCOMING_MESSAGE:
            logger.debug("whatsapp_webhook_ignored", type=payload.get("typeWebhook"))
            return None

        sender = (payload.get("senderData") or {}).get("sender") or \
                 (payload.get("senderData") or {}).get("chatId", "")
        if not sender or sender.endswith("@g.us"):
            return None
        address = sender.split("@", 1)[0]

        message = payload.get("messageData") or {}
        text = ""
        attachments: list[str] = []

        if "textMessageData" in message:
            text = message["textMessageData"].get("textMessage", "")
        elif "extendedTextMessageData" in message:
            text = message["extendedTextMessageData"].get("text", "")
        elif "fileMessageData" in message:
            file_data = message["fileMessageData"]
            text = file_data.get("caption", "")
            url = file_data.get("downloadUrl")
            if url:
                attachments.append(url)
            logger.info("whatsapp_file_received",
                        sender=address,
                        kind=identify_file(file_data.get("fileName", ""), file_data.get("mimeType", "")),
                        size=file_data.get("fileSize", 0))
        else:
            logger.debug("whatsapp_message_type_unsupported", type=message.get("typeMessage"))

        return InboundEvent(
            identity_address=address,
            text=clean_message_text(text),
            attachment_refs=attachments,
            message_id=payload.get("idMessage", ""),
        )

    async def shutdown(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
