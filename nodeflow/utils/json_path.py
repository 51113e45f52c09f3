"""
JSONPath extraction and {{path}} template interpolation
Used by data-input (path narrowing) and data-transform (jsonPath / template)
"""
import json
import re
from functools import lru_cache
from typing import Any

from jsonpath_ng import parse as jsonpath_parse

TEMPLATE_TOKEN = re.compile(r"\{\{\s*(.+?)\s*\}\}")


@lru_cache(maxsize=256)
def compile_path(path: str):
    """
    Parse a JSONPath expression (cached)

    Raises:
        ValueError: If the expression does not parse
    """
    try:
        return jsonpath_parse(path)
    except Exception as e:
        raise ValueError(f"Invalid JSONPath '{path}': {e}")


def extract(data: Any, path: str) -> Any:
    """
    Extract a value by JSONPath

    Args:
        data: Decoded JSON value
        path: JSONPath expression ("$" returns data unchanged)

    Returns:
        The single match, a list when several nodes match, None when nothing matches
    """
    if not path or path.strip() == "$":
        return data
    matches = [match.value for match in compile_path(path.strip()).find(data)]
    if not matches:
        return None
    if len(matches) == 1:
        return matches[0]
    return matches


def _to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True, ensure_ascii=False)
    return str(value)


def render_template(template: str, data: Any) -> str:
    """
    Replace every {{path}} token with the value found at that path in `data`

    Missing paths render as the empty string; objects and arrays as JSON.

    Args:
        template: Text containing {{path}} tokens
        data: Value the paths are resolved against

    Returns:
        Interpolated string
    """
    def _replace(match: re.Match) -> str:
        path = match.group(1)
        if not path.startswith("$"):
            path = "$." + path
        return _to_text(extract(data, path))

    return TEMPLATE_TOKEN.sub(_replace, template)
