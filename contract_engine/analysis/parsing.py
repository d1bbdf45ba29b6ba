"""
Parsing of structured model answers.
"""

import json
import re
from typing import Any, Dict

from ..services.errors import InferenceError

_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


def parse_json_object(text: str) -> Dict[str, Any]:
    """
    Parse a model answer that should be a JSON object.

    Markdown code fences around the object are tolerated, as is leading or
    trailing chatter around the outermost braces.

    Raises:
        InferenceError: If no JSON object can be recovered
    """
    if not isinstance(text, str) or not text.strip():
        raise InferenceError("Model returned an empty answer")

    candidate = text.strip()
    fenced = _FENCE.match(candidate)
    if fenced:
        candidate = fenced.group(1)

    try:
        parsed = json.loads(candidate)
    except ValueError:
        start, end = candidate.find("{"), candidate.rfind("}")
        if start < 0 or end <= start:
            raise InferenceError("Model answer is not JSON")
        try:
            parsed = json.loads(candidate[start:end + 1])
        except ValueError as e:
            raise InferenceError(f"Model answer is not valid JSON: {e}") from e

    if not isinstance(parsed, dict):
        raise InferenceError("Model answer is not a JSON object")
    return parsed
