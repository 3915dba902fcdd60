"""
Typed configuration for every node type a flow may contain.

Configs are stored as camelCase JSON by the editor (``variableName``,
``delaySeconds`` ...). The models below expose them as snake_case attributes.

Two parsing modes exist:
- walk time (``parse_node_config``): unknown keys are ignored so graphs saved
  by a newer editor still run;
- publish time (``validate_flow_graph``): unknown keys, missing trigger nodes
  and edges the node can never select are reported as errors.
"""
import typing
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel


class NodeConfig(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


PhoneFormat = Literal["e164", "local", "international"]


# --- Trigger / control ---

class TriggerConfig(NodeConfig):
    pass


class WaitForReplyConfig(NodeConfig):
    variable_name: Optional[str] = None
    expected_type: str = "any" # text, button, list, image, any
    timeout_seconds: Optional[int] = None


class ConditionRule(NodeConfig):
    variable: str
    operator: str = "equals"
    value: Any = ""
    output_handle: str


class ConditionConfig(NodeConfig):
    conditions: List[ConditionRule] = Field(default_factory=list)
    default_handle: str = "false"
    show_default_handle: bool = True


class VariableAssignment(NodeConfig):
    variable_name: str
    value_type: str = "static" # static, expression, variable, from_variable
    value: Any = ""


class SetVariableConfig(NodeConfig):
    assignments: List[VariableAssignment] = Field(default_factory=list)


class ResponseMapping(NodeConfig):
    variable_name: str
    response_path: Optional[str] = None
    json_path: Optional[str] = None

    @property
    def path(self) -> str:
        path = self.response_path or self.json_path or ""
        if path.startswith("$"):
            path = path[1:].lstrip(".")
        return path


class ApiCallConfig(NodeConfig):
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] = "GET"
    url: str = ""
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[Union[str, Dict[str, Any], List[Any]]] = None
    response_mapping: List[ResponseMapping] = Field(default_factory=list)
    timeout_ms: Optional[int] = None

    @field_validator("method", mode="before")
    @classmethod
    def upper_method(cls, v):
        return v.upper() if isinstance(v, str) else v


class DelayConfig(NodeConfig):
    delay_seconds: float = 1


class LoopConfig(NodeConfig):
    loop_type: Literal["count", "while", "foreach"] = "count"
    max_iterations: int = 10
    collection: Optional[str] = None
    item_variable: Optional[str] = None


class EndConfig(NodeConfig):
    end_type: Literal["complete", "error"] = "complete"


# --- Senders ---

class SendTextConfig(NodeConfig):
    message: str = ""


class SendTextEnhancedConfig(NodeConfig):
    body_text: str = ""
    header_text: Optional[str] = None
    footer_text: Optional[str] = None


class SendImageConfig(NodeConfig):
    image_url: str = ""
    caption: str = ""


class ButtonItem(NodeConfig):
    id: str
    title: str = ""


class SendButtonsConfig(NodeConfig):
    body_text: str = ""
    header_text: Optional[str] = None
    footer_text: Optional[str] = None
    buttons: List[ButtonItem] = Field(default_factory=list)


class ListRow(NodeConfig):
    id: str
    title: str = ""
    description: Optional[str] = None


class ListSection(NodeConfig):
    title: str = ""
    rows: List[ListRow] = Field(default_factory=list)


class SendListConfig(NodeConfig):
    body_text: str = ""
    button_text: str = "View Options"
    header_text: Optional[str] = None
    footer_text: Optional[str] = None
    sections: List[ListSection] = Field(default_factory=list)


class SendVideoConfig(NodeConfig):
    video_url: str = ""
    caption: Optional[str] = None


class SendAudioConfig(NodeConfig):
    audio_url: str = ""


class SendDocumentConfig(NodeConfig):
    document_url: str = ""
    filename: Optional[str] = None
    caption: Optional[str] = None


class SendLocationConfig(NodeConfig):
    latitude: Union[str, float] = ""
    longitude: Union[str, float] = ""
    name: Optional[str] = None
    address: Optional[str] = None


class ContactItem(NodeConfig):
    name: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None


class SendContactConfig(NodeConfig):
    contacts: List[ContactItem] = Field(default_factory=list)


class SendStickerConfig(NodeConfig):
    sticker_url: str = ""


# --- Customer data ---

class GetCustomerPhoneConfig(NodeConfig):
    variable_name: str = "customer_phone_formatted"
    format: PhoneFormat = "e164"


class GetCustomerNameConfig(NodeConfig):
    variable_name: str = "customer_name"


class GetCustomerCountryConfig(NodeConfig):
    variable_name: str = "customer_country"


class GetMessageTimestampConfig(NodeConfig):
    variable_name: str = "message_timestamp"


# --- Utilities ---

class FormatPhoneNumberConfig(NodeConfig):
    source_variable: str = "customer_phone"
    variable_name: str = "formatted_phone"
    format: PhoneFormat = "e164"


class RandomChoiceConfig(NodeConfig):
    choices: List[str] = Field(default_factory=list)
    variable_name: Optional[str] = None


class DateTimeConfig(NodeConfig):
    variable_name: str = "current_datetime"
    operation: Literal["now", "today", "addDays", "addHours"] = "now"
    format: Literal["iso", "date", "time", "timestamp", "readable"] = "iso"
    days: Optional[Union[float, str]] = None
    hours: Optional[Union[float, str]] = None


class MathOperationConfig(NodeConfig):
    variable_name: str = "math_result"
    operation: Literal[
        "add", "subtract", "multiply", "divide", "modulo",
        "round", "floor", "ceil", "abs", "min", "max",
    ] = "add"
    value_a: Union[str, float] = "0"
    value_b: Optional[Union[str, float]] = None


class TextOperationConfig(NodeConfig):
    variable_name: str = "text_result"
    operation: Literal[
        "uppercase", "lowercase", "trim", "length", "substring",
        "replace", "split", "join", "capitalize", "contains",
    ] = "uppercase"
    text: str = ""
    start: Optional[int] = None
    end: Optional[int] = None
    search: Optional[str] = None
    replace_with: Optional[str] = None
    delimiter: Optional[str] = None
    array_variable: Optional[str] = None


class MarkAsReadConfig(NodeConfig):
    pass


NODE_CONFIG_MODELS = {
    "trigger": TriggerConfig,
    "sendText": SendTextConfig,
    "sendTextEnhanced": SendTextEnhancedConfig,
    "sendImage": SendImageConfig,
    "sendButtons": SendButtonsConfig,
    "sendList": SendListConfig,
    "sendVideo": SendVideoConfig,
    "sendAudio": SendAudioConfig,
    "sendDocument": SendDocumentConfig,
    "sendLocation": SendLocationConfig,
    "sendContact": SendContactConfig,
    "sendSticker": SendStickerConfig,
    "waitForReply": WaitForReplyConfig,
    "condition": ConditionConfig,
    "setVariable": SetVariableConfig,
    "apiCall": ApiCallConfig,
    "delay": DelayConfig,
    "loop": LoopConfig,
    "end": EndConfig,
    "getCustomerPhone": GetCustomerPhoneConfig,
    "getCustomerName": GetCustomerNameConfig,
    "getCustomerCountry": GetCustomerCountryConfig,
    "getMessageTimestamp": GetMessageTimestampConfig,
    "formatPhoneNumber": FormatPhoneNumberConfig,
    "randomChoice": RandomChoiceConfig,
    "dateTime": DateTimeConfig,
    "mathOperation": MathOperationConfig,
    "textOperation": TextOperationConfig,
    "markAsRead": MarkAsReadConfig,
}

NODE_TYPES = frozenset(NODE_CONFIG_MODELS)


def parse_node_config(node_type: str, raw: Optional[dict]):
    """Walk-time parse. Returns None for node types this engine does not know."""
    model = NODE_CONFIG_MODELS.get(node_type)
    if model is None:
        return None
    return model.model_validate(raw or {})


def _nested_model(annotation):
    """The NodeConfig subclass inside ``Model``, ``List[Model]`` or ``Optional[...]`` annotations."""
    if isinstance(annotation, type) and issubclass(annotation, NodeConfig):
        return annotation
    for arg in typing.get_args(annotation):
        found = _nested_model(arg)
        if found is not None:
            return found
    return None


def unknown_config_keys(model, data, prefix: str = "") -> list:
    """Keys present in ``data`` that ``model`` does not declare, as dotted paths."""
    if not isinstance(data, dict):
        return []

    fields_by_key = {}
    for name, field in model.model_fields.items():
        fields_by_key[field.alias or name] = field
        fields_by_key[name] = field

    unknown = []
    for key, value in data.items():
        field = fields_by_key.get(key)
        if field is None:
            unknown.append(f"{prefix}{key}")
            continue
        nested = _nested_model(field.annotation)
        if nested is None:
            continue
        items = value if isinstance(value, list) else [value]
        for index, item in enumerate(items):
            label = f"{prefix}{key}[{index}]." if isinstance(value, list) else f"{prefix}{key}."
            unknown.extend(unknown_config_keys(nested, item, label))
    return unknown


def allowed_handles(node_type: str, config) -> Optional[set]:
    """
    The output handles a node can emit. ``None`` means the node does not branch
    and follows a single unlabeled edge.
    """
    if node_type == "condition":
        return {rule.output_handle for rule in config.conditions} | {config.default_handle}
    if node_type == "loop":
        return {"loop", "complete"}
    if node_type == "randomChoice":
        return set(config.choices)
    return None


def validate_flow_graph(nodes, edges) -> list:
    """
    Publish-time validation of a flow graph.
    ``nodes`` need ``id``, ``node_type`` and ``config``; ``edges`` need
    ``source_node_id``, ``target_node_id`` and ``source_handle``.
    Returns a list of human readable errors (empty when the graph is valid).
    """
    errors = []
    nodes_by_id = {n.id: n for n in nodes}

    trigger_nodes = [n for n in nodes if n.node_type == "trigger"]
    if len(trigger_nodes) != 1:
        errors.append(f"Flow must have exactly one trigger node (found {len(trigger_nodes)})")

    configs = {}
    for node in nodes:
        model = NODE_CONFIG_MODELS.get(node.node_type)
        if model is None:
            errors.append(f"Node {node.id}: unknown node type '{node.node_type}'")
            continue
        for key in unknown_config_keys(model, node.config or {}):
            errors.append(f"Node {node.id} ({node.node_type}): unknown config key '{key}'")
        try:
            configs[node.id] = model.model_validate(node.config or {})
        except ValidationError as e:
            for err in e.errors():
                location = ".".join(str(part) for part in err["loc"])
                errors.append(f"Node {node.id} ({node.node_type}): {location}: {err['msg']}")

    outgoing = {}
    for edge in edges:
        if edge.source_node_id not in nodes_by_id or edge.target_node_id not in nodes_by_id:
            errors.append(f"Edge {edge.source_node_id} -> {edge.target_node_id} references a missing node")
            continue
        outgoing.setdefault(edge.source_node_id, []).append(edge)

    for node in nodes:
        node_edges = outgoing.get(node.id, [])
        if node.id not in configs:
            continue

        if node.node_type == "end":
            if node_edges:
                errors.append(f"Node {node.id} (end): end nodes cannot have outgoing edges")
            continue

        if node.node_type == "trigger" and not node_edges:
            errors.append(f"Node {node.id} (trigger): trigger node has no outgoing edge")

        handles = allowed_handles(node.node_type, configs[node.id])
        if handles is None:
            for edge in node_edges:
                if edge.source_handle:
                    errors.append(
                        f"Node {node.id} ({node.node_type}): does not branch, edge handle '{edge.source_handle}' is never selected"
                    )
            if len(node_edges) > 1:
                errors.append(f"Node {node.id} ({node.node_type}): has {len(node_edges)} outgoing edges, only the first is followed")
        else:
            for edge in node_edges:
                if edge.source_handle not in handles:
                    errors.append(
                        f"Node {node.id} ({node.node_type}): edge handle '{edge.source_handle}' is not one of {sorted(handles)}"
                    )

    return errors
