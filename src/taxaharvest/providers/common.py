"""Helpers shared by provider adapters."""

import json
from typing import Any

from taxaharvest.fetch.models import ApiResponse
from taxaharvest.ingest.errors import DecodeError


def load_json_object(external_id: str, response: ApiResponse) -> dict[str, Any]:
    """Parse a response body that must be a JSON object.

    Args:
        external_id: Entity the response belongs to.
        response: Provider response.

    Returns:
        The decoded object.

    Raises:
        DecodeError: If the body is not a JSON object.
    """
    try:
        data = json.loads(response.body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise DecodeError(external_id, f"invalid JSON: {e}") from e
    if not isinstance(data, dict):
        msg = f"expected JSON object, got {type(data).__name__}"
        raise DecodeError(external_id, msg)
    return data


def optional_int(value: Any) -> int | None:
    """Coerce a JSON number or numeric string to int."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def optional_bool(value: Any) -> bool | None:
    """Coerce a JSON boolean or "true"/"false" string."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "false"):
        return value.lower() == "true"
    return None
