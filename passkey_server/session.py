"""Ceremony session context carried between Begin and Finish.

The context is the only state that crosses from a Begin call to its Finish
call. It is encoded and decoded as a whole: Finish works from exactly the
values that Begin produced and never rebuilds any of them.
"""
from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import datetime, timezone
from typing import Any, Dict, Tuple

import cbor2

from .errors import InvalidInput

__all__ = [
    "AUTHENTICATION",
    "CEREMONY_TYPES",
    "REGISTRATION",
    "SessionContext",
]

REGISTRATION = "registration"
AUTHENTICATION = "authentication"
CEREMONY_TYPES = (REGISTRATION, AUTHENTICATION)

_FORMAT_VERSION = 1


@dataclass(frozen=True)
class SessionContext:
    challenge: bytes
    ceremony: str
    rp_id: str
    rp_name: str
    user_id: bytes
    user_name: str
    user_display_name: str
    expires_at: datetime
    algorithms: Tuple[int, ...] = ()
    attestation: str = "none"
    attestation_formats: Tuple[str, ...] = ()
    allowed_credentials: Tuple[bytes, ...] = ()
    user_verification: str = "preferred"
    timeout_ms: int = 0

    def __post_init__(self) -> None:
        if self.ceremony not in CEREMONY_TYPES:
            raise ValueError(f"unknown ceremony type {self.ceremony!r}")
        if self.expires_at.tzinfo is None:
            raise ValueError("expires_at must be timezone-aware")

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def encode(self) -> bytes:
        """Serialize every field into a canonical CBOR map."""
        payload: Dict[str, Any] = {"v": _FORMAT_VERSION}
        for item in fields(self):
            value = getattr(self, item.name)
            if item.name == "expires_at":
                value = value.astimezone(timezone.utc).isoformat()
            elif isinstance(value, tuple):
                value = list(value)
            payload[item.name] = value
        return cbor2.dumps(payload, canonical=True)

    @classmethod
    def decode(cls, blob: bytes) -> "SessionContext":
        try:
            payload = cbor2.loads(blob)
        except (cbor2.CBORDecodeError, ValueError, TypeError) as exc:
            raise InvalidInput("session context is not valid CBOR") from exc

        if not isinstance(payload, dict) or payload.get("v") != _FORMAT_VERSION:
            raise InvalidInput("unsupported session context format")

        values: Dict[str, Any] = {}
        for item in fields(cls):
            if item.name not in payload:
                raise InvalidInput(f"session context is missing {item.name!r}")
            value = payload[item.name]
            if isinstance(value, list):
                value = tuple(value)
            values[item.name] = value

        try:
            values["expires_at"] = datetime.fromisoformat(values["expires_at"])
            return cls(**values)
        except (TypeError, ValueError) as exc:
            raise InvalidInput("session context holds invalid values") from exc
