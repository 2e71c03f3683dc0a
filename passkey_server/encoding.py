"""Binary value helpers for the WebAuthn JSON wire format."""
from __future__ import annotations

import base64
import binascii
from typing import Any, Callable, Tuple

from fido2.utils import websafe_encode

__all__ = [
    "challenge_prefix",
    "decode_binary_value",
    "make_json_safe",
    "websafe_encode",
]


def _padded(text: str) -> bytes:
    return (text + "=" * (-len(text) % 4)).encode("ascii")


def _from_base64url(text: str) -> bytes:
    return base64.b64decode(_padded(text), altchars=b"-_", validate=True)


def _from_base64(text: str) -> bytes:
    return base64.b64decode(_padded(text), validate=True)


# Tried in order; browsers send base64url, older clients base64 or hex.
_TEXT_DECODERS: Tuple[Callable[[str], bytes], ...] = (_from_base64url, _from_base64, bytes.fromhex)


def decode_binary_value(value: Any) -> bytes:
    """Return the bytes behind a client-supplied binary field.

    Accepts raw bytes, a list of byte values, or text in base64url, base64
    or hex. Anything else raises ``ValueError``.
    """

    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)

    if isinstance(value, str):
        text = value.strip()
        if not text:
            raise ValueError("binary value is empty")
        for decoder in _TEXT_DECODERS:
            try:
                return decoder(text)
            except (binascii.Error, ValueError):
                continue
        raise ValueError("binary value is not base64url, base64 or hex")

    if isinstance(value, (list, tuple)):
        try:
            return bytes(value)
        except (TypeError, ValueError) as exc:
            raise ValueError("byte list holds values outside 0-255") from exc

    raise ValueError(f"cannot read binary value from {type(value).__name__}")


def make_json_safe(obj: Any) -> Any:
    """Recursively convert bytes to base64url strings for JSON serialization."""
    if isinstance(obj, (bytes, bytearray, memoryview)):
        return websafe_encode(bytes(obj))
    if isinstance(obj, dict):
        return {k: make_json_safe(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [make_json_safe(item) for item in obj]
    return obj


def challenge_prefix(challenge: bytes) -> str:
    """Short, log-safe rendering of a challenge value."""
    return websafe_encode(challenge)[:8] + "..."
