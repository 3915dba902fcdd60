import copy
import logging
import math
import os
import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import httpx

from services.db_service import store_message
from services.node_schemas import parse_node_config
from services.variables import (
    evaluate_condition, get_value, interpolate, interpolate_value,
    resolve_path, set_nested_value, to_number, to_text,
)
from services.whatsapp_service import whatsapp_gateway
from backend.utils.phone import format_phone_number, get_country_from_phone

logger = logging.getLogger(__name__)

API_CALL_TIMEOUT_SECONDS = float(os.getenv("API_CALL_TIMEOUT_SECONDS", "10"))


@dataclass
class NodeResult:
    """
    Outcome of dispatching one node.
    ``wait`` suspends the walk, ``end`` completes it, otherwise the engine
    follows ``output_handle`` (or the default edge when it is None).
    """
    success: bool = True
    output_handle: str = None
    wait: bool = False
    wait_for: str = None
    resume_at: datetime = None
    end: bool = False
    data: dict = field(default_factory=dict)

    def to_log(self) -> dict:
        log = {"success": self.success}
        if self.output_handle is not None:
            log["output_handle"] = self.output_handle
        if self.wait:
            log["wait"] = True
            log["wait_for"] = self.wait_for
        if self.resume_at:
            log["resume_at"] = self.resume_at.isoformat()
        if self.end:
            log["end"] = True
        log.update(self.data)
        return log


@dataclass
class DispatchContext:
    """Per-invocation state a node handler may read or mutate."""
    variables: dict
    customer_id: str
    channel_id: str
    credentials: object
    execution_id: str = None


def _number_text(value: float):
    return int(value) if float(value).is_integer() else value


def _safe_divide(a, b):
    return a / b if b else 0


def _safe_modulo(a, b):
    return a % b if b else 0


MATH_OPERATIONS = {
    "add": lambda a, b: a + b,
    "subtract": lambda a, b: a - b,
    "multiply": lambda a, b: a * b,
    "divide": _safe_divide,
    "modulo": _safe_modulo,
    "round": lambda a, b: round(a),
    "floor": lambda a, b: math.floor(a),
    "ceil": lambda a, b: math.ceil(a),
    "abs": lambda a, b: abs(a),
    "min": min,
    "max": max,
}

DATETIME_FORMATS = {
    "date": "%Y-%m-%d",
    "time": "%H:%M:%S",
    "readable": "%A, %b %d at %I:%M %p",
}


class NodeDispatcher:
    """Runs a single node against the execution's variables and channel."""

    def __init__(self, gateway=None, http_transport: httpx.AsyncBaseTransport = None, clock=None, rng=None):
        self.gateway = gateway or whatsapp_gateway
        self.http_transport = http_transport
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.rng = rng or random.Random()
        self._handlers = {
            "trigger": self._trigger,
            "sendText": self._send_text,
            "sendTextEnhanced": self._send_text_enhanced,
            "sendImage": self._send_image,
            "sendButtons": self._send_buttons,
            "sendList": self._send_list,
            "sendVideo": self._send_video,
            "sendAudio": self._send_audio,
            "sendDocument": self._send_document,
            "sendLocation": self._send_location,
            "sendContact": self._send_contact,
            "sendSticker": self._send_sticker,
            "waitForReply": self._wait_for_reply,
            "condition": self._condition,
            "setVariable": self._set_variable,
            "apiCall": self._api_call,
            "delay": self._delay,
            "loop": self._loop,
            "end": self._end,
            "getCustomerPhone": self._get_customer_phone,
            "getCustomerName": self._get_customer_name,
            "getCustomerCountry": self._get_customer_country,
            "getMessageTimestamp": self._get_message_timestamp,
            "formatPhoneNumber": self._format_phone_number,
            "randomChoice": self._random_choice,
            "dateTime": self._date_time,
            "mathOperation": self._math_operation,
            "textOperation": self._text_operation,
            "markAsRead": self._mark_as_read,
        }

    async def dispatch(self, node, ctx: DispatchContext) -> NodeResult:
        handler = self._handlers.get(node.node_type)
        if handler is None:
            # Node saved by a newer editor
            logger.warning(f"[FlowEngine] Unknown node type '{node.node_type}' on node {node.id}, skipping")
            return NodeResult(data={"skipped": "unknown_node_type", "node_type": node.node_type})

        config = parse_node_config(node.node_type, node.config)
        return await handler(node, config, ctx)

    # --- Senders ---

    async def _deliver(self, ctx, send_coro, content: str, message_type: str, media_url: str = None) -> NodeResult:
        result = await send_coro
        if result.ok:
            await store_message(
                ctx.channel_id, ctx.customer_id, content, "outbound",
                message_type=message_type, media_url=media_url,
                provider_message_id=result.provider_message_id,
            )
        else:
            # Delivery failures never stop the walk
            logger.warning(f"[FlowEngine] {message_type} message to {ctx.customer_id} failed: {result.error}")
        return NodeResult(data={
            "sent": result.ok,
            "provider_message_id": result.provider_message_id,
            "error": result.error,
        })

    async def _send_text(self, node, config, ctx):
        message = interpolate(config.message, ctx.variables)
        return await self._deliver(ctx, self.gateway.send_text(ctx.credentials, ctx.customer_id, message), message, "text")

    async def _send_text_enhanced(self, node, config, ctx):
        body = interpolate(config.body_text, ctx.variables)
        header = interpolate(config.header_text, ctx.variables) if config.header_text else None
        footer = interpolate(config.footer_text, ctx.variables) if config.footer_text else None
        send = self.gateway.send_text_enhanced(ctx.credentials, ctx.customer_id, body, header, footer)
        return await self._deliver(ctx, send, body, "text")

    async def _send_image(self, node, config, ctx):
        image_url = interpolate(config.image_url, ctx.variables)
        caption = interpolate(config.caption, ctx.variables)
        send = self.gateway.send_image(ctx.credentials, ctx.customer_id, image_url, caption or None)
        return await self._deliver(ctx, send, caption or "[Image]", "image", media_url=image_url)

    async def _send_buttons(self, node, config, ctx):
        body = interpolate(config.body_text, ctx.variables)
        buttons = [{"id": b.id, "title": interpolate(b.title, ctx.variables)} for b in config.buttons]
        header = interpolate(config.header_text, ctx.variables) if config.header_text else None
        footer = interpolate(config.footer_text, ctx.variables) if config.footer_text else None
        send = self.gateway.send_buttons(ctx.credentials, ctx.customer_id, body, buttons, header, footer)
        return await self._deliver(ctx, send, body, "interactive")

    async def _send_list(self, node, config, ctx):
        body = interpolate(config.body_text, ctx.variables)
        sections = [
            {
                "title": interpolate(section.title, ctx.variables),
                "rows": [
                    {
                        "id": row.id,
                        "title": interpolate(row.title, ctx.variables),
                        "description": interpolate(row.description, ctx.variables) if row.description else None,
                    }
                    for row in section.rows
                ],
            }
            for section in config.sections
        ]
        header = interpolate(config.header_text, ctx.variables) if config.header_text else None
        footer = interpolate(config.footer_text, ctx.variables) if config.footer_text else None
        send = self.gateway.send_list(ctx.credentials, ctx.customer_id, body, config.button_text, sections, header, footer)
        return await self._deliver(ctx, send, body, "interactive")

    async def _send_video(self, node, config, ctx):
        video_url = interpolate(config.video_url, ctx.variables)
        caption = interpolate(config.caption, ctx.variables) if config.caption else None
        send = self.gateway.send_video(ctx.credentials, ctx.customer_id, video_url, caption)
        return await self._deliver(ctx, send, caption or "[Video]", "video", media_url=video_url)

    async def _send_audio(self, node, config, ctx):
        audio_url = interpolate(config.audio_url, ctx.variables)
        send = self.gateway.send_audio(ctx.credentials, ctx.customer_id, audio_url)
        return await self._deliver(ctx, send, "[Audio]", "audio", media_url=audio_url)

    async def _send_document(self, node, config, ctx):
        document_url = interpolate(config.document_url, ctx.variables)
        filename = interpolate(config.filename, ctx.variables) if config.filename else None
        caption = interpolate(config.caption, ctx.variables) if config.caption else None
        send = self.gateway.send_document(ctx.credentials, ctx.customer_id, document_url, filename, caption)
        return await self._deliver(ctx, send, caption or filename or "[Document]", "document", media_url=document_url)

    async def _send_location(self, node, config, ctx):
        latitude = interpolate(to_text(config.latitude), ctx.variables)
        longitude = interpolate(to_text(config.longitude), ctx.variables)
        name = interpolate(config.name, ctx.variables) if config.name else None
        address = interpolate(config.address, ctx.variables) if config.address else None
        send = self.gateway.send_location(ctx.credentials, ctx.customer_id, latitude, longitude, name, address)
        return await self._deliver(ctx, send, f"[Location: {latitude}, {longitude}]", "location")

    async def _send_contact(self, node, config, ctx):
        contacts = [
            {
                "name": interpolate(c.name, ctx.variables),
                "first_name": interpolate(c.first_name, ctx.variables) if c.first_name else None,
                "last_name": interpolate(c.last_name, ctx.variables) if c.last_name else None,
                "phone": interpolate(c.phone, ctx.variables) if c.phone else None,
                "email": interpolate(c.email, ctx.variables) if c.email else None,
            }
            for c in config.contacts
        ]
        send = self.gateway.send_contact(ctx.credentials, ctx.customer_id, contacts)
        names = ", ".join(c["name"] for c in contacts)
        return await self._deliver(ctx, send, f"[Contact: {names}]", "contacts")

    async def _send_sticker(self, node, config, ctx):
        sticker_url = interpolate(config.sticker_url, ctx.variables)
        send = self.gateway.send_sticker(ctx.credentials, ctx.customer_id, sticker_url)
        return await self._deliver(ctx, send, "[Sticker]", "sticker", media_url=sticker_url)

    # --- Control ---

    async def _trigger(self, node, config, ctx):
        return NodeResult()

    async def _wait_for_reply(self, node, config, ctx):
        # The reply itself is bound on resume, using this node's variableName
        return NodeResult(wait=True, wait_for=config.expected_type or "any")

    async def _condition(self, node, config, ctx):
        for rule in config.conditions:
            if evaluate_condition(rule.variable, rule.operator, rule.value, ctx.variables):
                return NodeResult(output_handle=rule.output_handle, data={"matched": rule.variable})
        return NodeResult(output_handle=config.default_handle or "false", data={"matched": None})

    async def _set_variable(self, node, config, ctx):
        for assignment in config.assignments:
            if assignment.value_type in ("variable", "from_variable"):
                value = copy.deepcopy(get_value(ctx.variables, to_text(assignment.value)))
            else:
                value = interpolate_value(assignment.value, ctx.variables)
            set_nested_value(ctx.variables, assignment.variable_name, value)
        return NodeResult(data={"assigned": [a.variable_name for a in config.assignments]})

    async def _api_call(self, node, config, ctx):
        """
        Calls an external HTTP API. Failures are recorded in variables
        (api_success / api_error) and never stop the flow; branch on them with a
        following condition node.
        """
        variables = ctx.variables
        url = interpolate(config.url, variables)
        method = config.method
        headers = {k: interpolate(v, variables) for k, v in config.headers.items()}

        request_kwargs = {}
        if config.body is not None and method != "GET":
            if isinstance(config.body, str):
                request_kwargs["content"] = interpolate(config.body, variables)
            else:
                request_kwargs["json"] = interpolate_value(config.body, variables)
            if not any(k.lower() == "content-type" for k in headers):
                headers["Content-Type"] = "application/json"

        timeout = config.timeout_ms / 1000 if config.timeout_ms else API_CALL_TIMEOUT_SECONDS

        # Encoding errors surface while httpx builds the request (non-ASCII header values)
        try:
            async with httpx.AsyncClient(transport=self.http_transport, timeout=timeout) as client:
                response = await client.request(method, url, headers=headers, **request_kwargs)
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
            error = str(e) or e.__class__.__name__
            logger.warning(f"[FlowEngine] API call {method} {url} failed: {error}")
            variables["api_error"] = error
            variables["api_success"] = False
            return NodeResult(data={"api_success": False, "api_error": error})

        try:
            response_data = response.json()
        except ValueError:
            response_data = {}

        for mapping in config.response_mapping:
            set_nested_value(variables, mapping.variable_name, resolve_path(response_data, mapping.path))

        variables["api_status"] = response.status_code
        variables["api_success"] = response.is_success
        variables.pop("api_error", None)
        return NodeResult(data={"api_status": response.status_code, "api_success": response.is_success})

    async def _delay(self, node, config, ctx):
        seconds = max(to_number(config.delay_seconds), 0) or 1
        resume_at = self.clock() + timedelta(seconds=seconds)
        return NodeResult(wait=True, wait_for="timer", resume_at=resume_at, data={"delay_seconds": seconds})

    async def _loop(self, node, config, ctx):
        variables = ctx.variables
        loop_var = f"_loop_{node.id}"
        count = int(to_number(variables.get(loop_var, 0))) + 1
        max_iterations = config.max_iterations or 10

        if config.loop_type == "foreach" and config.collection:
            items = get_value(variables, config.collection)
            items = items if isinstance(items, list) else []
            max_iterations = min(max_iterations, len(items))
            if count <= len(items) and config.item_variable:
                set_nested_value(variables, config.item_variable, items[count - 1])

        variables[loop_var] = count
        variables["loop_index"] = count

        if count >= max_iterations:
            variables.pop(loop_var, None)
            return NodeResult(output_handle="complete", data={"iteration": count})
        return NodeResult(output_handle="loop", data={"iteration": count})

    async def _end(self, node, config, ctx):
        return NodeResult(end=True, data={"end_type": config.end_type})

    # --- Customer data ---

    async def _get_customer_phone(self, node, config, ctx):
        value = format_phone_number(ctx.customer_id, config.format)
        set_nested_value(ctx.variables, config.variable_name, value)
        return NodeResult(data={config.variable_name: value})

    async def _get_customer_name(self, node, config, ctx):
        value = ctx.variables.get("customer_name") or ctx.customer_id
        set_nested_value(ctx.variables, config.variable_name, value)
        return NodeResult(data={config.variable_name: value})

    async def _get_customer_country(self, node, config, ctx):
        value = get_country_from_phone(ctx.customer_id)
        set_nested_value(ctx.variables, config.variable_name, value)
        return NodeResult(data={config.variable_name: value})

    async def _get_message_timestamp(self, node, config, ctx):
        raw = to_text(ctx.variables.get("message_timestamp"))
        if raw.isdigit():
            value = datetime.fromtimestamp(int(raw), tz=timezone.utc).isoformat()
        else:
            value = self.clock().isoformat()
        set_nested_value(ctx.variables, config.variable_name, value)
        return NodeResult(data={config.variable_name: value})

    # --- Utilities ---

    async def _format_phone_number(self, node, config, ctx):
        source = to_text(get_value(ctx.variables, config.source_variable))
        value = format_phone_number(source, config.format)
        set_nested_value(ctx.variables, config.variable_name, value)
        return NodeResult(data={config.variable_name: value})

    async def _random_choice(self, node, config, ctx):
        choices = [interpolate(c, ctx.variables) for c in config.choices]
        if not choices:
            return NodeResult(data={"choice": None})
        choice = self.rng.choice(choices)
        if config.variable_name:
            set_nested_value(ctx.variables, config.variable_name, choice)
        return NodeResult(output_handle=choice, data={"choice": choice})

    async def _date_time(self, node, config, ctx):
        moment = self.clock()
        if config.operation == "today":
            moment = moment.replace(hour=0, minute=0, second=0, microsecond=0)
        elif config.operation == "addDays":
            moment += timedelta(days=to_number(interpolate(to_text(config.days), ctx.variables)))
        elif config.operation == "addHours":
            moment += timedelta(hours=to_number(interpolate(to_text(config.hours), ctx.variables)))

        if config.format == "iso":
            value = moment.isoformat()
        elif config.format == "timestamp":
            value = int(moment.timestamp() * 1000)
        else:
            value = moment.strftime(DATETIME_FORMATS[config.format])

        set_nested_value(ctx.variables, config.variable_name, value)
        return NodeResult(data={config.variable_name: value})

    async def _math_operation(self, node, config, ctx):
        a = to_number(interpolate(to_text(config.value_a), ctx.variables))
        b = to_number(interpolate(to_text(config.value_b), ctx.variables))
        value = _number_text(MATH_OPERATIONS[config.operation](a, b))
        set_nested_value(ctx.variables, config.variable_name, value)
        return NodeResult(data={config.variable_name: value})

    async def _text_operation(self, node, config, ctx):
        text = interpolate(config.text, ctx.variables)
        op = config.operation

        if op == "uppercase":
            value = text.upper()
        elif op == "lowercase":
            value = text.lower()
        elif op == "trim":
            value = text.strip()
        elif op == "length":
            value = len(text)
        elif op == "substring":
            value = text[config.start or 0:config.end]
        elif op == "replace":
            value = text.replace(config.search, config.replace_with or "") if config.search else text
        elif op == "split":
            value = text.split(config.delimiter or ",")
        elif op == "join":
            items = get_value(ctx.variables, config.array_variable) if config.array_variable else None
            items = items if isinstance(items, list) else []
            value = (config.delimiter if config.delimiter is not None else ", ").join(to_text(i) for i in items)
        elif op == "capitalize":
            value = text[:1].upper() + text[1:]
        else:
            value = (config.search or "").lower() in text.lower()

        set_nested_value(ctx.variables, config.variable_name, value)
        return NodeResult(data={config.variable_name: value})

    async def _mark_as_read(self, node, config, ctx):
        # The webhook marks every inbound message as read before the walk starts
        return NodeResult()
