"""
Port type system
Edge compatibility and implicit value coercion between port types
"""
import json
from typing import Any, Optional, Tuple

from ..types import PORT_TYPES
from .errors import CoercionFailed

# Pairs with a registered (non-identity) coercion, besides "anything -> array"
_COERCIONS = {
    ("string", "number"),
    ("number", "string"),
    ("object", "string"),
    ("string", "object"),
}


def is_port_type(tag: str) -> bool:
    return tag in PORT_TYPES


def is_compatible(source: str, target: str) -> bool:
    """
    Check whether an edge from a `source` port to a `target` port is valid

    Args:
        source: Semantic type of the output port
        target: Semantic type of the input port

    Returns:
        True if the types match, either side is "any", or a coercion is registered
    """
    if source == target or source == "any" or target == "any":
        return True
    if source == "file":
        return False
    if target == "array":
        return True
    return (source, target) in _COERCIONS


def infer_type(value: Any) -> str:
    """Runtime type tag of a value"""
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, dict):
        return "object"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, (bytes, bytearray)):
        return "file"
    return "any"


def _parse_number(value: str):
    text = value.strip()
    try:
        return int(text)
    except ValueError:
        pass
    try:
        number = float(text)
    except ValueError:
        raise CoercionFailed(f"cannot parse {value!r} as a number")
    if number != number or number in (float("inf"), float("-inf")):
        raise CoercionFailed(f"cannot parse {value!r} as a finite number")
    return number


def format_number(value) -> str:
    """Canonical decimal string: integral floats lose their fraction"""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return repr(value) if isinstance(value, float) else str(value)


def coerce(value: Any, source: str, target: str) -> Tuple[Any, Optional[str]]:
    """
    Convert a value flowing from a `source` port into a `target` port

    When the source port is "any", the runtime type of the value stands in for
    it. Pairs without a registered coercion pass through unchanged.

    Args:
        value: Value produced by the upstream node
        source: Semantic type of the output port
        target: Semantic type of the input port

    Returns:
        (converted value, "from->to" note or None for identity)

    Raises:
        CoercionFailed: If a registered coercion cannot convert the value
    """
    if value is None or target == "any":
        return value, None

    effective = infer_type(value) if source == "any" else source
    if effective == target or effective == "any":
        return value, None

    note = f"{effective}->{target}"

    if target == "array":
        if effective == "file" and source != "any":
            raise CoercionFailed("file values cannot be coerced")
        return [value], note

    if (effective, target) == ("string", "number"):
        return _parse_number(value), note

    if (effective, target) == ("number", "string"):
        return format_number(value), note

    if (effective, target) == ("object", "string"):
        try:
            return json.dumps(value, sort_keys=True, ensure_ascii=False), note
        except (TypeError, ValueError) as e:
            raise CoercionFailed(f"cannot encode object as JSON: {e}")

    if (effective, target) == ("string", "object"):
        try:
            decoded = json.loads(value)
        except ValueError as e:
            raise CoercionFailed(f"cannot decode JSON object: {e}")
        if not isinstance(decoded, dict):
            raise CoercionFailed(f"JSON text is a {infer_type(decoded)}, not an object")
        return decoded, note

    # Runtime values out of "any" ports without a registered rule are delivered as-is
    return value, None
