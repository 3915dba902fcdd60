"""
Variable environment of a flow execution.

Variables are a plain (JSON-serialisable) dict addressed with dot paths:
``customer.address.city`` walks nested dicts, numeric segments index lists.
This module also renders ``{{path}}`` templates and evaluates branch
conditions against that dict.
"""
import json
import logging
import re

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")

NUMERIC_OPERATORS = {
    "gt": lambda a, b: a > b,
    "greater_than": lambda a, b: a > b,
    "gte": lambda a, b: a >= b,
    "lt": lambda a, b: a < b,
    "less_than": lambda a, b: a < b,
    "lte": lambda a, b: a <= b,
}

_MISSING = object()


def _walk(variables: dict, path: str):
    val = variables
    for part in path.split("."):
        if isinstance(val, dict):
            if part not in val:
                return _MISSING
            val = val[part]
        elif isinstance(val, list) and part.isdigit():
            index = int(part)
            if index >= len(val):
                return _MISSING
            val = val[index]
        else:
            return _MISSING
    return val


def resolve_path(data, path: str, default=None):
    """Walks ``path`` through any JSON-like value (dict or list root)."""
    if not path:
        return data
    val = _walk(data, path.strip())
    return default if val is _MISSING else val


def get_value(variables: dict, path: str, default=None):
    """
    Resolves a variable by dot path.
    Falls back to a flat key, so keys that contain dots are still reachable.
    """
    if not path or not isinstance(variables, dict):
        return default

    path = path.strip()
    val = _walk(variables, path)
    if val is _MISSING:
        val = variables.get(path, default)
    return val


def has_value(variables: dict, path: str) -> bool:
    """True when the path resolves to something other than None or an empty string."""
    val = get_value(variables, path)
    return val is not None and val != ""


def set_nested_value(variables: dict, path: str, value):
    """Assigns ``value`` at ``path``, creating intermediate dicts as needed."""
    parts = path.strip().split(".")
    target = variables
    for part in parts[:-1]:
        if not isinstance(target.get(part), dict):
            target[part] = {}
        target = target[part]
    target[parts[-1]] = value


def to_text(value) -> str:
    """String form used when a value is spliced into a message."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def interpolate(template, variables: dict):
    """
    Replaces {{path}} placeholders with values from the variable environment.
    Unknown paths render as an empty string. Non-string input is returned as is.
    """
    if not isinstance(template, str) or "{{" not in template:
        return template

    def replace_var(match):
        return to_text(get_value(variables, match.group(1)))

    return PLACEHOLDER_PATTERN.sub(replace_var, template)


def interpolate_value(value, variables: dict):
    """Interpolates every string inside nested dicts and lists."""
    if isinstance(value, str):
        return interpolate(value, variables)
    if isinstance(value, dict):
        return {k: interpolate_value(v, variables) for k, v in value.items()}
    if isinstance(value, list):
        return [interpolate_value(v, variables) for v in value]
    return value


def to_number(value) -> float:
    """Numeric coercion for comparisons and math. Anything unparsable counts as 0."""
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except (TypeError, ValueError):
        return 0.0


def evaluate_condition(variable: str, operator: str, expected, variables: dict) -> bool:
    """
    Evaluates ``variable <operator> expected`` against the environment.

    ``expected`` may itself contain {{placeholders}}. String operators compare
    case-insensitively; numeric operators coerce both sides with ``to_number``.
    """
    operator = (operator or "equals").strip().lower()

    if operator == "exists":
        return has_value(variables, variable)
    if operator == "not_exists":
        return not has_value(variables, variable)

    actual = get_value(variables, variable)
    expected = interpolate(expected, variables)

    if operator in NUMERIC_OPERATORS:
        return NUMERIC_OPERATORS[operator](to_number(actual), to_number(expected))

    if operator == "regex":
        try:
            return re.search(to_text(expected), to_text(actual)) is not None
        except re.error as e:
            logger.warning(f"[Variables] Invalid regex '{expected}' in condition on '{variable}': {e}")
            return False

    actual_text = to_text(actual).strip().lower()
    expected_text = to_text(expected).strip().lower()

    if operator == "equals":
        return actual_text == expected_text
    if operator == "not_equals":
        return actual_text != expected_text
    if operator == "contains":
        return expected_text in actual_text
    if operator == "not_contains":
        return expected_text not in actual_text
    if operator == "starts_with":
        return actual_text.startswith(expected_text)
    if operator == "ends_with":
        return actual_text.endswith(expected_text)

    logger.warning(f"[Variables] Unknown condition operator '{operator}'")
    return False
