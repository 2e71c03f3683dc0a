"""Error kinds raised by the relying-party core."""
from __future__ import annotations

__all__ = [
    "AlgorithmNotOffered",
    "BackupFlagInconsistency",
    "ChallengeExpiredOrUnknown",
    "ChallengeMismatch",
    "ClientDataTypeMismatch",
    "ConfigurationError",
    "Conflict",
    "CredentialNotAllowed",
    "InputError",
    "InvalidAttestation",
    "InvalidInput",
    "InvalidSignature",
    "NoCredentialsRegistered",
    "NotFound",
    "OriginMismatch",
    "PersistenceError",
    "PossibleCloneDetected",
    "RPIDMismatch",
    "StoreUnavailable",
    "UnsupportedAttestation",
    "UserNotPresent",
    "UserVerificationMissing",
    "VerificationError",
    "WebAuthnError",
]


class WebAuthnError(Exception):
    """Base class for every error the core reports to its caller.

    ``code`` is a stable identifier the HTTP layer exposes to clients. The
    message names the check that failed and never carries key material.
    """

    code = "webauthn_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)


class ConfigurationError(ValueError):
    """Raised for unusable relying-party configuration values."""


# Input errors


class InputError(WebAuthnError):
    code = "invalid_request"


class InvalidInput(InputError):
    code = "invalid_input"


class NotFound(InputError):
    code = "not_found"


class NoCredentialsRegistered(InputError):
    code = "no_credentials_registered"


class Conflict(InputError):
    code = "conflict"


# Protocol verification failures


class VerificationError(WebAuthnError):
    code = "verification_failed"


class ChallengeExpiredOrUnknown(VerificationError):
    code = "challenge_expired_or_unknown"


class ChallengeMismatch(VerificationError):
    code = "challenge_mismatch"


class ClientDataTypeMismatch(VerificationError):
    code = "client_data_type_mismatch"


class OriginMismatch(VerificationError):
    code = "origin_mismatch"


class RPIDMismatch(VerificationError):
    code = "rp_id_mismatch"


class UserNotPresent(VerificationError):
    code = "user_not_present"


class UserVerificationMissing(VerificationError):
    code = "user_verification_missing"


class UnsupportedAttestation(VerificationError):
    code = "unsupported_attestation"


class InvalidAttestation(VerificationError):
    code = "invalid_attestation"


class AlgorithmNotOffered(VerificationError):
    code = "algorithm_not_offered"


class CredentialNotAllowed(VerificationError):
    code = "credential_not_allowed"


class BackupFlagInconsistency(VerificationError):
    code = "backup_flag_inconsistency"


class InvalidSignature(VerificationError):
    code = "invalid_signature"


class PossibleCloneDetected(VerificationError):
    code = "possible_clone_detected"


# Persistence failures


class PersistenceError(WebAuthnError):
    code = "persistence_error"


class StoreUnavailable(PersistenceError):
    code = "store_unavailable"
