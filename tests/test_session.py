from __future__ import annotations

from dataclasses import fields, replace
from datetime import datetime, timezone

import cbor2
import pytest

from passkey_server.errors import InvalidInput
from passkey_server.session import AUTHENTICATION, REGISTRATION, SessionContext


def _context(**overrides) -> SessionContext:
    values = dict(
        challenge=bytes(range(32)),
        ceremony=REGISTRATION,
        rp_id="login.accounts.example.org",
        rp_name="Accounts",
        user_id=b"\x01" * 16,
        user_name="alice",
        user_display_name="Alice Example",
        expires_at=datetime(2024, 5, 1, 12, 5, 0, 123456, tzinfo=timezone.utc),
        algorithms=(-8, -7, -257),
        attestation="direct",
        attestation_formats=("packed", "none"),
        allowed_credentials=(),
        user_verification="required",
        timeout_ms=300000,
    )
    values.update(overrides)
    return SessionContext(**values)


def test_round_trip_preserves_every_field() -> None:
    context = _context()

    restored = SessionContext.decode(context.encode())

    assert restored == context
    for item in fields(SessionContext):
        assert getattr(restored, item.name) == getattr(context, item.name), item.name
    assert restored.rp_id == "login.accounts.example.org"
    assert restored.algorithms == (-8, -7, -257)


def test_round_trip_of_authentication_context_keeps_allowed_credentials() -> None:
    allowed = (b"\x00cred-one", b"cred-two\xff", bytes(64))
    context = _context(ceremony=AUTHENTICATION, allowed_credentials=allowed, algorithms=())

    restored = SessionContext.decode(context.encode())

    assert restored.allowed_credentials == allowed
    assert all(isinstance(value, bytes) for value in restored.allowed_credentials)
    assert restored.challenge == context.challenge


def test_encoding_is_deterministic() -> None:
    assert _context().encode() == _context().encode()


def test_expiry_is_compared_against_now() -> None:
    context = _context()

    assert not context.is_expired(datetime(2024, 5, 1, 12, 5, tzinfo=timezone.utc))
    assert context.is_expired(context.expires_at)


def test_decode_rejects_missing_field() -> None:
    payload = cbor2.loads(_context().encode())
    del payload["rp_id"]

    with pytest.raises(InvalidInput, match="rp_id"):
        SessionContext.decode(cbor2.dumps(payload))


def test_decode_rejects_unknown_version() -> None:
    payload = cbor2.loads(_context().encode())
    payload["v"] = 99

    with pytest.raises(InvalidInput):
        SessionContext.decode(cbor2.dumps(payload))


def test_decode_rejects_garbage() -> None:
    with pytest.raises(InvalidInput):
        SessionContext.decode(b"\xff\x00not cbor")


def test_naive_expiry_is_rejected() -> None:
    with pytest.raises(ValueError):
        _context(expires_at=datetime(2024, 5, 1, 12, 5))


def test_unknown_ceremony_is_rejected() -> None:
    with pytest.raises(ValueError):
        replace(_context(), ceremony="login")
