"""
Envelope construction and parsing.
"""

import time
import uuid
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError

from subpal_bridge.models.envelope import Envelope, ResponseEnvelope


def new_message_id(prefix: str = "msg") -> str:
    """`{prefix}_{epoch_ms}_{random}`; unique enough while a request is outstanding."""
    return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:7]}"


def build_envelope(message_type: str, payload: Any, message_id: str) -> dict[str, Any]:
    """Build a request envelope as a dict ready for a channel."""
    return Envelope(id=message_id, type=message_type, payload=payload).model_dump()


def build_response(message_id: str, body: dict[str, Any]) -> dict[str, Any]:
    return ResponseEnvelope(id=message_id, response=body).model_dump()


def parse_envelope(raw: Any) -> Optional[Envelope]:
    """Parse a request envelope. Returns None for responses and anything invalid."""
    if not isinstance(raw, dict) or "response" in raw:
        return None
    try:
        return Envelope.model_validate(raw)
    except PydanticValidationError:
        return None


def parse_response(raw: Any) -> Optional[ResponseEnvelope]:
    """Parse a response envelope. Returns None if invalid."""
    if not isinstance(raw, dict) or "response" not in raw:
        return None
    try:
        return ResponseEnvelope.model_validate(raw)
    except PydanticValidationError:
        return None
