"""Authentication path: verification of a login assertion."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Tuple

from cryptography.exceptions import InvalidSignature as _InvalidSignature
from fido2 import cbor
from fido2.cose import CoseKey
from fido2.webauthn import AuthenticatorData, CollectedClientData

from .config import Enforcement, RelyingPartyConfig
from .errors import (
    BackupFlagInconsistency,
    CredentialNotAllowed,
    InvalidInput,
    InvalidSignature,
    PossibleCloneDetected,
)
from .models import AssertionResponse, Credential
from .session import AUTHENTICATION, SessionContext
from .verification import (
    check_authenticator_data,
    check_client_data,
    fail,
    parse_authenticator_data,
    parse_client_data,
)

__all__ = ["AssertionOutcome", "AssertionVerifier"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AssertionOutcome:
    credential_id: bytes
    sign_count: int
    # False when the stored counter must stay as it is.
    advance_counter: bool
    clone_warning: bool = False
    backup_state_changed: bool = False
    warnings: Tuple[str, ...] = ()


class AssertionVerifier:
    def __init__(self, config: RelyingPartyConfig) -> None:
        self.config = config

    def verify(
        self,
        response: AssertionResponse,
        context: SessionContext,
        credential: Credential,
    ) -> AssertionOutcome:
        if context.ceremony != AUTHENTICATION:
            raise InvalidInput("session context is not an authentication ceremony")

        client_data = parse_client_data(response.client_data)
        check_client_data(client_data, context, CollectedClientData.TYPE.GET.value, self.config)
        self._check_credential_binding(response, context, credential)

        auth_data = parse_authenticator_data(response.authenticator_data)
        check_authenticator_data(auth_data, context)

        warnings: List[str] = []
        backup_state_changed = self._check_backup_flags(auth_data, context, credential, warnings)

        self._check_signature(response, client_data, context, credential)

        sign_count, advance, clone_warning = self._check_counter(
            auth_data.counter, context, credential, warnings
        )

        return AssertionOutcome(
            credential_id=credential.id,
            sign_count=sign_count,
            advance_counter=advance,
            clone_warning=clone_warning,
            backup_state_changed=backup_state_changed,
            warnings=tuple(warnings),
        )

    def _check_credential_binding(
        self,
        response: AssertionResponse,
        context: SessionContext,
        credential: Credential,
    ) -> None:
        if response.credential_id != credential.id:
            raise fail(CredentialNotAllowed, "assertion names a different credential", context)
        if credential.id not in context.allowed_credentials:
            raise fail(CredentialNotAllowed, "credential was not offered for this ceremony", context)
        if credential.owner_id != context.user_id:
            raise fail(CredentialNotAllowed, "credential belongs to another user", context)
        if response.user_handle is not None and response.user_handle != context.user_id:
            raise fail(CredentialNotAllowed, "user handle does not match the ceremony user", context)

    def _check_backup_flags(
        self,
        auth_data: AuthenticatorData,
        context: SessionContext,
        credential: Credential,
        warnings: List[str],
    ) -> bool:
        """Apply the per-flag policies; return whether backup state moved."""

        backup_eligible = bool(auth_data.flags & AuthenticatorData.FLAG.BE)
        backup_state = bool(auth_data.flags & AuthenticatorData.FLAG.BS)

        if backup_state and not backup_eligible:
            raise fail(BackupFlagInconsistency, "backup state is set on a non-eligible credential", context)

        # Eligibility is a property of the authenticator model.
        if backup_eligible != credential.backup_eligible:
            message = (
                f"backup eligibility changed from {credential.backup_eligible} to {backup_eligible}"
            )
            if self.config.backup_eligible_policy is Enforcement.REJECT:
                raise fail(BackupFlagInconsistency, message, context)
            logger.warning("Credential for user %r: %s", context.user_name, message)
            warnings.append("backup_eligible_changed")

        # Backup state may follow the user's sync settings.
        changed = backup_state != credential.backup_state
        if changed:
            message = f"backup state changed from {credential.backup_state} to {backup_state}"
            if self.config.backup_state_policy is Enforcement.REJECT:
                raise fail(BackupFlagInconsistency, message, context)
            logger.info("Credential for user %r: %s", context.user_name, message)
            warnings.append("backup_state_changed")
        return changed

    def _check_signature(
        self,
        response: AssertionResponse,
        client_data: CollectedClientData,
        context: SessionContext,
        credential: Credential,
    ) -> None:
        try:
            public_key = CoseKey.parse(cbor.decode(credential.public_key))
        except (ValueError, TypeError, KeyError) as exc:
            raise fail(InvalidSignature, "stored public key could not be decoded", context) from exc

        signed_payload = response.authenticator_data + client_data.hash
        try:
            public_key.verify(signed_payload, response.signature)
        except (_InvalidSignature, ValueError, TypeError, NotImplementedError) as exc:
            raise fail(InvalidSignature, "assertion signature did not verify", context) from exc

    def _check_counter(
        self,
        presented: int,
        context: SessionContext,
        credential: Credential,
        warnings: List[str],
    ) -> Tuple[int, bool, bool]:
        """Return ``(count, advance, clone_warning)`` for the presented counter."""

        stored = credential.sign_count
        if presented == 0 and stored == 0:
            # Authenticator does not implement a signature counter.
            return 0, False, False
        if presented > stored:
            return presented, True, False

        message = f"sign counter did not advance (stored {stored}, presented {presented})"
        if self.config.counter_policy is Enforcement.REJECT:
            raise fail(PossibleCloneDetected, message, context)
        logger.warning("Possible cloned authenticator for user %r: %s", context.user_name, message)
        warnings.append("clone_warning")
        return stored, False, True
