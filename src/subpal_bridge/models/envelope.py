"""
Envelope models — the minimal unit exchanged between contexts.
"""

from typing import Any, Optional
from pydantic import BaseModel, ConfigDict


class Envelope(BaseModel):
    """Outbound request: {id, type, payload}."""
    id: str
    type: str
    payload: Optional[Any] = None


class ResponseEnvelope(BaseModel):
    """Inbound response: {id, response: {success?, error?, code?, ...result}}."""
    id: str
    response: dict[str, Any] = {}


class PageFrame(BaseModel):
    """Broadcast frame on the page channel. Addressing lives beside the envelope."""
    model_config = ConfigDict(extra="allow")

    source: str
    target: Optional[str] = None
    type: Optional[str] = None
