from fastapi import APIRouter, Request, HTTPException
from fastapi.responses import JSONResponse, PlainTextResponse
from dataclasses import dataclass, field
import os
import logging
import httpx

from .db_service import get_whatsapp_config, mark_message_processed, store_message

logger = logging.getLogger(__name__)
router = APIRouter()

WHATSAPP_API_BASE = os.getenv("WHATSAPP_API_BASE", "https://graph.facebook.com")
WHATSAPP_API_VERSION = os.getenv("WHATSAPP_API_VERSION", "v23.0")
WHATSAPP_SEND_TIMEOUT_SECONDS = float(os.getenv("WHATSAPP_SEND_TIMEOUT_SECONDS", "10"))

# Cloud API limits on interactive messages
MAX_BUTTONS = 3
MAX_BUTTON_TITLE = 20
MAX_LIST_BUTTON_TEXT = 20
MAX_LIST_TITLE = 24
MAX_LIST_ROWS = 10
MAX_LIST_ROW_DESCRIPTION = 72


@dataclass
class ChannelCredentials:
    access_token: str
    phone_number_id: str

    @classmethod
    def from_config(cls, config: dict):
        return cls(access_token=config.get("access_token"), phone_number_id=config.get("phone_number_id"))


@dataclass
class SendResult:
    ok: bool
    provider_message_id: str = None
    error: str = None
    raw: dict = field(default_factory=dict)


@dataclass
class InboundMessage:
    """What the engine needs to know about one inbound WhatsApp message."""
    type: str
    text: str = None
    button_id: str = None
    list_row_id: str = None
    message_id: str = None
    timestamp: str = None


class WhatsAppGateway:
    """
    Outbound side of the WhatsApp Cloud API. One coroutine per message shape.
    Sends never raise: failures come back as ``SendResult(ok=False, error=...)``.
    """

    def __init__(self, transport: httpx.AsyncBaseTransport = None):
        self.transport = transport

    def _messages_url(self, phone_number_id: str) -> str:
        return f"{WHATSAPP_API_BASE}/{WHATSAPP_API_VERSION}/{phone_number_id}/messages"

    async def _post(self, credentials: ChannelCredentials, payload: dict) -> SendResult:
        if not credentials.access_token or not credentials.phone_number_id:
            logger.error("[WhatsApp] Credentials missing, message not sent")
            return SendResult(ok=False, error="WhatsApp credentials missing")

        headers = {
            "Authorization": f"Bearer {credentials.access_token}",
            "Content-Type": "application/json",
        }
        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=WHATSAPP_SEND_TIMEOUT_SECONDS) as client:
                response = await client.post(self._messages_url(credentials.phone_number_id), headers=headers, json=payload)
        except httpx.HTTPError as e:
            logger.error(f"[WhatsApp] Send Failed (transport): {e}")
            return SendResult(ok=False, error=str(e))

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if response.status_code >= 400 or "error" in data:
            error = data.get("error")
            message = error.get("message") if isinstance(error, dict) else (error or response.text)
            logger.error(f"[WhatsApp] Send Failed ({response.status_code}): {message}")
            return SendResult(ok=False, error=message, raw=data)

        messages = data.get("messages") or [{}]
        return SendResult(ok=True, provider_message_id=messages[0].get("id"), raw=data)

    async def _send(self, credentials: ChannelCredentials, to: str, message_type: str, content: dict) -> SendResult:
        return await self._post(credentials, {
            "messaging_product": "whatsapp",
            "to": to,
            "type": message_type,
            message_type: content,
        })

    async def send_text(self, credentials, to, text):
        return await self._send(credentials, to, "text", {"body": text})

    async def send_text_enhanced(self, credentials, to, body_text, header_text=None, footer_text=None):
        # Interactive messages need at least one button, so header/footer are folded into plain text
        full_text = ""
        if header_text:
            full_text += f"*{header_text}*\n\n"
        full_text += body_text
        if footer_text:
            full_text += f"\n\n_{footer_text}_"
        return await self.send_text(credentials, to, full_text)

    async def send_image(self, credentials, to, image_url, caption=None):
        image = {"link": image_url}
        if caption:
            image["caption"] = caption
        return await self._send(credentials, to, "image", image)

    async def send_buttons(self, credentials, to, body_text, buttons, header_text=None, footer_text=None):
        interactive = {
            "type": "button",
            "body": {"text": body_text},
            "action": {
                "buttons": [
                    {"type": "reply", "reply": {"id": b["id"], "title": b["title"][:MAX_BUTTON_TITLE]}}
                    for b in buttons[:MAX_BUTTONS]
                ],
            },
        }
        if header_text:
            interactive["header"] = {"type": "text", "text": header_text}
        if footer_text:
            interactive["footer"] = {"text": footer_text}
        return await self._send(credentials, to, "interactive", interactive)

    async def send_list(self, credentials, to, body_text, button_text, sections, header_text=None, footer_text=None):
        wire_sections = []
        for section in sections:
            rows = []
            for row in section.get("rows", [])[:MAX_LIST_ROWS]:
                wire_row = {"id": row["id"], "title": row["title"][:MAX_LIST_TITLE]}
                if row.get("description"):
                    wire_row["description"] = row["description"][:MAX_LIST_ROW_DESCRIPTION]
                rows.append(wire_row)
            wire_section = {"rows": rows}
            if section.get("title"):
                wire_section["title"] = section["title"][:MAX_LIST_TITLE]
            wire_sections.append(wire_section)

        interactive = {
            "type": "list",
            "body": {"text": body_text},
            "action": {"button": button_text[:MAX_LIST_BUTTON_TEXT], "sections": wire_sections},
        }
        if header_text:
            interactive["header"] = {"type": "text", "text": header_text}
        if footer_text:
            interactive["footer"] = {"text": footer_text}
        return await self._send(credentials, to, "interactive", interactive)

    async def send_video(self, credentials, to, video_url, caption=None):
        video = {"link": video_url}
        if caption:
            video["caption"] = caption
        return await self._send(credentials, to, "video", video)

    async def send_audio(self, credentials, to, audio_url):
        return await self._send(credentials, to, "audio", {"link": audio_url})

    async def send_document(self, credentials, to, document_url, filename=None, caption=None):
        document = {"link": document_url}
        if filename:
            document["filename"] = filename
        if caption:
            document["caption"] = caption
        return await self._send(credentials, to, "document", document)

    async def send_location(self, credentials, to, latitude, longitude, name=None, address=None):
        location = {"latitude": str(latitude), "longitude": str(longitude)}
        if name:
            location["name"] = name
        if address:
            location["address"] = address
        return await self._send(credentials, to, "location", location)

    async def send_contact(self, credentials, to, contacts):
        return await self._post(credentials, {
            "messaging_product": "whatsapp",
            "to": to,
            "type": "contacts",
            "contacts": [
                {
                    "name": {
                        "formatted_name": c["name"],
                        "first_name": c.get("first_name") or c["name"],
                        "last_name": c.get("last_name") or "",
                    },
                    "phones": [{"phone": c["phone"], "type": "CELL"}] if c.get("phone") else [],
                    "emails": [{"email": c["email"], "type": "WORK"}] if c.get("email") else [],
                }
                for c in contacts
            ],
        })

    async def send_sticker(self, credentials, to, sticker_url):
        return await self._send(credentials, to, "sticker", {"link": sticker_url})

    async def mark_as_read(self, credentials, message_id):
        return await self._post(credentials, {
            "messaging_product": "whatsapp",
            "status": "read",
            "message_id": message_id,
        })


whatsapp_gateway = WhatsAppGateway()


def extract_message_content(message: dict) -> InboundMessage:
    """Normalises a webhook ``messages[]`` entry into an InboundMessage."""
    message_type = message.get("type")
    content = InboundMessage(type=message_type, message_id=message.get("id"), timestamp=message.get("timestamp"))

    if message_type == "text":
        content.text = message.get("text", {}).get("body")
    elif message_type == "interactive":
        interactive = message.get("interactive", {})
        if interactive.get("type") == "button_reply":
            content.button_id = interactive.get("button_reply", {}).get("id")
            content.text = interactive.get("button_reply", {}).get("title")
        elif interactive.get("type") == "list_reply":
            content.list_row_id = interactive.get("list_reply", {}).get("id")
            content.text = interactive.get("list_reply", {}).get("title")
    elif message_type == "image":
        content.text = message.get("image", {}).get("caption") or "[Image]"
    elif message_type == "document":
        content.text = message.get("document", {}).get("caption") or "[Document]"
    elif message_type == "audio":
        content.text = "[Audio]"
    elif message_type == "video":
        content.text = message.get("video", {}).get("caption") or "[Video]"
    elif message_type == "location":
        location = message.get("location", {})
        content.text = f"[Location: {location.get('latitude')}, {location.get('longitude')}]"
    else:
        content.text = f"[{message_type}]"

    return content


@router.get("/webhook/{config_id}")
async def verify_webhook(config_id: str, request: Request):
    """
    Verifies the webhook for WhatsApp (Meta callback verification).
    """
    params = request.query_params
    mode = params.get("hub.mode")
    token = params.get("hub.verify_token")
    challenge = params.get("hub.challenge")

    if mode != "subscribe":
        raise HTTPException(status_code=403, detail="Invalid mode")

    config = await get_whatsapp_config(config_id)
    if not config:
        raise HTTPException(status_code=404, detail="Config not found")

    if token != config["verify_token"]:
        raise HTTPException(status_code=403, detail="Invalid verify token")

    logger.info(f"Webhook verified successfully for config {config_id}.")
    return PlainTextResponse(challenge or "")


@router.post("/webhook/{config_id}")
async def receive_message(config_id: str, request: Request):
    """
    Receives messages from WhatsApp and hands them to the flow engine.
    """
    data = await request.json()
    if data.get("object") != "whatsapp_business_account":
        raise HTTPException(status_code=400, detail="Not a WhatsApp webhook")

    entry = (data.get("entry") or [{}])[0]
    changes = (entry.get("changes") or [{}])[0]
    value = changes.get("value", {})

    messages = value.get("messages") or []
    if not messages:
        # Status callbacks (sent/delivered/read) carry no message
        return {"status": "ignored"}

    message = messages[0]
    contact = (value.get("contacts") or [{}])[0]
    customer_id = message["from"]

    config = await get_whatsapp_config(config_id)
    if not config:
        logger.error(f"Config not found or inactive: {config_id}")
        raise HTTPException(status_code=404, detail="Config not found")

    if not await mark_message_processed(message["id"]):
        return {"status": "duplicate"}

    credentials = ChannelCredentials.from_config(config)
    await whatsapp_gateway.mark_as_read(credentials, message["id"])

    content = extract_message_content(message)
    customer_name = contact.get("profile", {}).get("name") or customer_id
    logger.info(f"Received {content.type} message from {customer_id} on config {config_id}: {content.text}")
    await store_message(config_id, customer_id, content.text, "inbound", message_type=content.type, customer_name=customer_name)

    initial_variables = {
        "customer_phone": customer_id,
        "customer_name": customer_name,
        "customer_wa_id": contact.get("wa_id") or customer_id,
    }

    from .flow_engine import flow_engine
    try:
        outcome = await flow_engine.handle_inbound(config, customer_id, content, initial_variables)
    except Exception as e:
        logger.error(f"Error processing webhook for config {config_id}: {e}")
        return JSONResponse({"status": "error"}, status_code=500)

    return {"status": outcome.action, "execution_id": outcome.execution_id, "execution_status": outcome.status}
