import json
import re
from typing import Optional

_FENCE_RE = re.compile(r"```(?:json)?\s*|```", re.IGNORECASE)
_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


def extract_json_object(content: Optional[str]) -> Optional[dict]:
    """Pull a JSON object out of a model reply.

    Accepts bare JSON, JSON wrapped in markdown fences, or JSON surrounded by
    prose. Returns None when no object can be decoded.
    """
    text = (content or "").strip()
    if not text:
        return None

    text = _FENCE_RE.sub("", text).strip()
    payload = None
    try:
        payload = json.loads(text)
    except ValueError:
        match = _OBJECT_RE.search(text)
        if match:
            try:
                payload = json.loads(match.group(0))
            except ValueError:
                payload = None

    if not isinstance(payload, dict):
        return None
    return payload
