"""Checks shared by the registration and authentication verifiers."""
from __future__ import annotations

import hashlib
import logging
import struct
from typing import Type

from fido2.webauthn import AuthenticatorData, CollectedClientData

from .config import RelyingPartyConfig
from .errors import (
    ChallengeMismatch,
    ClientDataTypeMismatch,
    InvalidInput,
    OriginMismatch,
    RPIDMismatch,
    UserNotPresent,
    UserVerificationMissing,
    VerificationError,
)
from .session import SessionContext

__all__ = [
    "check_authenticator_data",
    "check_client_data",
    "fail",
    "parse_authenticator_data",
    "parse_client_data",
    "rp_id_hash",
]

logger = logging.getLogger(__name__)

_PARSE_ERRORS = (ValueError, TypeError, KeyError, IndexError, struct.error)


def fail(error_cls: Type[VerificationError], message: str, context: SessionContext) -> VerificationError:
    """Log a failed check and return the error for the caller to raise."""

    logger.warning(
        "WebAuthn %s check failed for user %r: %s",
        context.ceremony,
        context.user_name,
        message,
    )
    return error_cls(message)


def parse_client_data(raw: bytes) -> CollectedClientData:
    try:
        return CollectedClientData(raw)
    except _PARSE_ERRORS as exc:
        raise InvalidInput("clientDataJSON could not be parsed") from exc


def parse_authenticator_data(raw: bytes) -> AuthenticatorData:
    try:
        return AuthenticatorData(raw)
    except _PARSE_ERRORS as exc:
        raise InvalidInput("authenticator data could not be parsed") from exc


def rp_id_hash(rp_id: str) -> bytes:
    return hashlib.sha256(rp_id.encode("utf-8")).digest()


def check_client_data(
    client_data: CollectedClientData,
    context: SessionContext,
    expected_type: str,
    config: RelyingPartyConfig,
) -> None:
    """Verify ceremony type, challenge and origin binding of the client data."""

    if client_data.type != expected_type:
        raise fail(
            ClientDataTypeMismatch,
            f"client data type {client_data.type!r} is not {expected_type!r}",
            context,
        )

    if bytes(client_data.challenge) != context.challenge:
        raise fail(ChallengeMismatch, "client data challenge does not match the issued challenge", context)

    # Exact string membership, never a prefix match.
    if client_data.origin not in config.origins:
        raise fail(OriginMismatch, f"origin {client_data.origin!r} is not allowed", context)

    if client_data.cross_origin and not config.allow_cross_origin:
        raise fail(OriginMismatch, "cross-origin ceremonies are not allowed", context)


def check_authenticator_data(auth_data: AuthenticatorData, context: SessionContext) -> None:
    """Verify the RP ID hash and the user presence / verification flags."""

    if bytes(auth_data.rp_id_hash) != rp_id_hash(context.rp_id):
        raise fail(RPIDMismatch, "RP ID hash does not match the relying party", context)

    if not auth_data.flags & AuthenticatorData.FLAG.UP:
        raise fail(UserNotPresent, "user presence flag is not set", context)

    if context.user_verification == "required" and not auth_data.flags & AuthenticatorData.FLAG.UV:
        raise fail(UserVerificationMissing, "user verification was required but not performed", context)
