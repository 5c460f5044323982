"""
Payload encoding for channel wrappers created with ``json=True``.

Bytes-like payloads are sent as-is; anything else is encoded as UTF-8 JSON
with support for UUID, datetime, Decimal and pydantic models.

Example:
    >>> from uuid import UUID
    >>> encode_payload({"id": UUID(int=1)}, json=True)
    b'{"id": "00000000-0000-0000-0000-000000000001"}'
"""

import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel

from resilientmq.exceptions import SerializationError

JSON_CONTENT_TYPE = "application/json"


class PayloadJSONEncoder(json.JSONEncoder):
    """
    JSON encoder for message payloads.

    Handles:
    - UUID objects: Converted to string representation
    - datetime/date objects: Converted to ISO 8601 format string
    - Decimal: Converted to string to keep precision
    - pydantic models: Dumped in JSON mode
    """

    def default(self, obj: Any) -> Any:
        if isinstance(obj, UUID):
            return str(obj)
        if isinstance(obj, datetime | date):
            return obj.isoformat()
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, BaseModel):
            return obj.model_dump(mode="json")
        return super().default(obj)


def encode_payload(content: Any, json: bool = False) -> bytes:
    """
    Turn a publish payload into message body bytes.

    Args:
        content: bytes, bytearray, memoryview, or (with json=True) any
            JSON-serializable object
        json: Whether non-bytes payloads should be JSON encoded

    Returns:
        The message body

    Raises:
        SerializationError: If the payload cannot be encoded
    """
    if isinstance(content, bytes | bytearray | memoryview):
        return bytes(content)
    if not json:
        raise SerializationError(
            type(content).__name__,
            "payload must be bytes unless the channel was created with json=True",
        )
    try:
        return _json_dumps(content).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise SerializationError(type(content).__name__, str(e)) from e


def _json_dumps(obj: Any) -> str:
    return json.dumps(obj, cls=PayloadJSONEncoder)


__all__ = [
    "JSON_CONTENT_TYPE",
    "PayloadJSONEncoder",
    "encode_payload",
]
