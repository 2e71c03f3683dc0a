"""Registration path: verification of a new credential's attestation."""
from __future__ import annotations

import logging
import struct
from datetime import datetime

from fido2 import cbor
from fido2.attestation.base import (
    Attestation,
    InvalidAttestation as _InvalidAttestationStatement,
    UnsupportedAttestation as _UnsupportedAttestationType,
    UnsupportedType,
)
from fido2.cose import UnsupportedKey
from fido2.webauthn import AttestationObject, AuthenticatorData, CollectedClientData

from .config import RelyingPartyConfig
from .errors import (
    AlgorithmNotOffered,
    BackupFlagInconsistency,
    InvalidAttestation,
    InvalidInput,
    UnsupportedAttestation,
)
from .models import CreationResponse, Credential
from .session import REGISTRATION, SessionContext
from .verification import (
    check_authenticator_data,
    check_client_data,
    fail,
    parse_client_data,
)

__all__ = ["AttestationVerifier"]

logger = logging.getLogger(__name__)


def _parse_attestation_object(raw: bytes) -> AttestationObject:
    try:
        return AttestationObject(raw)
    except (ValueError, TypeError, KeyError, IndexError, AttributeError, struct.error) as exc:
        raise InvalidInput("attestationObject could not be parsed") from exc


class AttestationVerifier:
    """Turns a credential-creation response into an unsaved ``Credential``.

    Accepted statement formats come from the session context. Statements are
    checked for internal consistency through ``fido2.attestation``; no trust
    chain is evaluated, so a "none" statement trusts the key at face value.
    """

    def __init__(self, config: RelyingPartyConfig) -> None:
        self.config = config

    def verify(self, response: CreationResponse, context: SessionContext, now: datetime) -> Credential:
        if context.ceremony != REGISTRATION:
            raise InvalidInput("session context is not a registration ceremony")

        client_data = parse_client_data(response.client_data)
        check_client_data(client_data, context, CollectedClientData.TYPE.CREATE.value, self.config)

        attestation_object = _parse_attestation_object(response.attestation_object)
        auth_data = attestation_object.auth_data
        check_authenticator_data(auth_data, context)

        fmt = attestation_object.fmt
        self._verify_statement(fmt, attestation_object, client_data, context)

        credential_data = auth_data.credential_data
        if credential_data is None:
            raise fail(InvalidAttestation, "authenticator data carries no attested credential", context)
        credential_id = bytes(credential_data.credential_id)
        if credential_id != response.credential_id:
            raise fail(InvalidAttestation, "credential id differs from the attested credential id", context)

        public_key = credential_data.public_key
        algorithm = public_key.get(3)
        if algorithm not in context.algorithms:
            raise fail(AlgorithmNotOffered, f"algorithm {algorithm!r} was not offered", context)
        if isinstance(public_key, UnsupportedKey):
            raise fail(AlgorithmNotOffered, f"algorithm {algorithm!r} cannot be verified", context)

        backup_eligible = bool(auth_data.flags & AuthenticatorData.FLAG.BE)
        backup_state = bool(auth_data.flags & AuthenticatorData.FLAG.BS)
        if backup_state and not backup_eligible:
            raise fail(BackupFlagInconsistency, "backup state is set on a non-eligible credential", context)

        logger.info(
            "Verified %s attestation for user %r (algorithm %s, backup eligible %s)",
            fmt,
            context.user_name,
            algorithm,
            backup_eligible,
        )

        return Credential(
            id=credential_id,
            owner_id=context.user_id,
            public_key=cbor.encode(dict(public_key)),
            sign_count=auth_data.counter,
            backup_eligible=backup_eligible,
            backup_state=backup_state,
            attestation_type=fmt,
            aaguid=bytes(credential_data.aaguid),
            created_at=now,
            transports=frozenset(response.transports),
            public_key_algorithm=algorithm,
        )

    def _verify_statement(
        self,
        fmt: str,
        attestation_object: AttestationObject,
        client_data: CollectedClientData,
        context: SessionContext,
    ) -> None:
        if fmt not in context.attestation_formats:
            raise fail(UnsupportedAttestation, f"attestation format {fmt!r} is not accepted", context)

        attestation_cls = Attestation.for_type(fmt)
        if issubclass(attestation_cls, _UnsupportedAttestationType):
            raise fail(UnsupportedAttestation, f"attestation format {fmt!r} is not implemented", context)

        try:
            attestation_cls().verify(
                attestation_object.att_stmt,
                attestation_object.auth_data,
                client_data.hash,
            )
        except UnsupportedType as exc:
            raise fail(UnsupportedAttestation, f"attestation format {fmt!r}: {exc}", context) from exc
        except _InvalidAttestationStatement as exc:
            raise fail(InvalidAttestation, f"{fmt} attestation statement is invalid: {exc}", context) from exc
