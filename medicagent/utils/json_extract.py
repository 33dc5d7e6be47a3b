from __future__ import annotations

import json
from typing import Any


class JSONExtractionError(ValueError):
    """Model output did not contain a parseable JSON document."""


def extract_json(text: str, *, opener: str = "{", closer: str = "}") -> Any:
    """Parse ``text`` as JSON, falling back to the outermost bracketed span."""
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        start = text.find(opener)
        end = text.rfind(closer)
        if start == -1 or end == -1 or end <= start:
            raise JSONExtractionError("response did not contain JSON") from None
        try:
            return json.loads(text[start : end + 1])
        except json.JSONDecodeError as exc:
            raise JSONExtractionError(str(exc)) from exc


def extract_json_object(text: str) -> dict[str, Any]:
    payload = extract_json(text)
    if not isinstance(payload, dict):
        raise JSONExtractionError("expected a JSON object")
    return payload


def extract_json_array(text: str) -> list[Any]:
    payload = extract_json(text, opener="[", closer="]")
    if not isinstance(payload, list):
        raise JSONExtractionError("expected a JSON array")
    return payload
