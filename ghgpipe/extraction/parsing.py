"""Reading model output as JSON."""
from __future__ import annotations

import json
import re
from typing import Any

from ghgpipe.tasks.error_handler import SchemaViolationError

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def parse_json_object(raw: str) -> dict[str, Any]:
    """Parse a model response that must be a single JSON object.

    Tolerates a surrounding markdown fence; anything else raises
    ``SchemaViolationError`` carrying the raw response.
    """
    text = _FENCE.sub("", raw.strip())
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise SchemaViolationError(f"Model output is not JSON: {exc.msg}", raw_response=raw) from exc
    if not isinstance(data, dict):
        raise SchemaViolationError(
            f"Model output is a JSON {type(data).__name__}, expected an object",
            raw_response=raw,
        )
    return data
