"""Boundary validation for planning-service responses.

Every completion is turned into either ``Parsed`` (a decoded JSON object) or
``Malformed`` (the raw text plus the reason it was rejected), so callers never
inspect ad hoc shapes of the raw payload.
"""

import json
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class Parsed:
    data: dict

    def list_of_dicts(self, key: str) -> list[dict] | None:
        """Return data[key] when it is a list, keeping only dict entries."""
        value = self.data.get(key)
        if not isinstance(value, list):
            return None
        return [item for item in value if isinstance(item, dict)]

    def list_of_str(self, key: str) -> list[str]:
        value = self.data.get(key)
        if not isinstance(value, list):
            return []
        return [str(item) for item in value if isinstance(item, (str, int, float))]


@dataclass(frozen=True)
class Malformed:
    raw: str
    reason: str


ParseResult = Parsed | Malformed


def extract_first_object(text: str) -> str | None:
    """Find the first balanced ``{...}`` span in text, honoring JSON strings."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start:i + 1]
        start = text.find("{", start + 1)
    return None


def _decode_object(text: str) -> dict | None:
    try:
        value: Any = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return None
    return value if isinstance(value, dict) else None


def parse_response(content: str | None) -> ParseResult:
    """Parse a completion: direct JSON first, then the first balanced object."""
    if not content or not content.strip():
        return Malformed(raw=content or "", reason="empty response")

    data = _decode_object(content)
    if data is not None:
        return Parsed(data)

    candidate = extract_first_object(content)
    if candidate is not None:
        data = _decode_object(candidate)
        if data is not None:
            return Parsed(data)

    return Malformed(raw=content, reason="no JSON object found")
