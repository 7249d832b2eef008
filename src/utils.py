"""Helpers for reading model output."""

import json
import re
from typing import Any, List

_ITEM_KEYS = ("items", "foods", "detections", "products")


def parse_json_from_text(text: str) -> Any:
    """
    Try several strategies to extract JSON from model text output.
    Raises ValueError if nothing valid is found.
    """
    if not text or not text.strip():
        raise ValueError("Empty response from model")

    # 1) Whole text
    try:
        return json.loads(text.strip())
    except json.JSONDecodeError:
        pass

    # 2) Strip ```json fences
    cleaned = re.sub(r"```(?:json)?", "", text).strip()
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    # 3) First { ... last }
    start_idx = cleaned.find("{")
    end_idx = cleaned.rfind("}") + 1
    if start_idx != -1 and end_idx > start_idx:
        try:
            return json.loads(cleaned[start_idx:end_idx])
        except json.JSONDecodeError:
            pass

    # 4) Bare array
    start_idx = cleaned.find("[")
    end_idx = cleaned.rfind("]") + 1
    if start_idx != -1 and end_idx > start_idx:
        try:
            return json.loads(cleaned[start_idx:end_idx])
        except json.JSONDecodeError:
            pass

    raise ValueError("No valid JSON found in model response")


def extract_items(payload: Any) -> List[Any]:
    """Find the list of items in whatever shape the model chose."""
    if isinstance(payload, list):
        return payload
    if not isinstance(payload, dict):
        return []
    for key in _ITEM_KEYS:
        value = payload.get(key)
        if isinstance(value, list):
            return value
    nested = payload.get("result")
    if isinstance(nested, dict):
        return extract_items(nested)
    return []
