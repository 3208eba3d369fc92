"""
JSON message codec for the gRPC transport.

Requests and responses are UTF-8 encoded JSON objects, so the service is
registered with generic handlers instead of generated protobuf stubs.
"""

import json

from .errors import ValidationError


def encode(obj) -> bytes:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


def decode(data: bytes) -> dict:
    if not data:
        return {}
    try:
        obj = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise ValidationError("Request body must be a JSON object") from e
    if not isinstance(obj, dict):
        raise ValidationError("Request body must be a JSON object")
    return obj
