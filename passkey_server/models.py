"""Users, credentials and the request/response values exchanged with clients."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Sequence, Tuple

from .encoding import decode_binary_value, websafe_encode
from .errors import InvalidInput

__all__ = [
    "AssertionResponse",
    "AuthenticationResult",
    "CreationOptions",
    "CreationResponse",
    "Credential",
    "RegistrationResult",
    "RequestOptions",
    "User",
]

KNOWN_TRANSPORTS = frozenset({"usb", "nfc", "ble", "internal", "hybrid", "smart-card"})


@dataclass(frozen=True)
class User:
    id: bytes
    name: str
    display_name: str
    created_at: datetime

    @property
    def identifier(self) -> bytes:
        return self.id

    def has_credentials(self, credentials: Sequence["Credential"]) -> bool:
        return any(credential.owner_id == self.id for credential in credentials)


@dataclass(frozen=True)
class Credential:
    id: bytes
    owner_id: bytes
    public_key: bytes
    sign_count: int
    backup_eligible: bool
    backup_state: bool
    attestation_type: str
    aaguid: bytes
    created_at: datetime
    transports: FrozenSet[str] = frozenset()
    public_key_algorithm: Optional[int] = None


def _binary_field(mapping: Mapping[str, Any], *keys: str, required: bool = True) -> Optional[bytes]:
    for key in keys:
        if mapping.get(key) is not None:
            try:
                return decode_binary_value(mapping[key])
            except ValueError as exc:
                raise InvalidInput(f"{key} is not a valid binary value") from exc
    if required:
        raise InvalidInput(f"{keys[0]} is required")
    return None


def _response_section(data: Any) -> Mapping[str, Any]:
    if not isinstance(data, Mapping):
        raise InvalidInput("credential response must be a JSON object")
    response = data.get("response")
    if not isinstance(response, Mapping):
        raise InvalidInput("credential response is missing the 'response' object")
    return response


def _credential_id(data: Mapping[str, Any]) -> bytes:
    credential_id = _binary_field(data, "rawId", "id")
    if not credential_id:
        raise InvalidInput("credential id must not be empty")
    return credential_id


@dataclass(frozen=True)
class CreationResponse:
    """Result of ``navigator.credentials.create()`` as raw bytes."""

    credential_id: bytes
    client_data: bytes
    attestation_object: bytes
    transports: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Any) -> "CreationResponse":
        response = _response_section(data)
        raw_transports = response.get("transports") or data.get("transports") or []
        if not isinstance(raw_transports, list):
            raise InvalidInput("transports must be a list")
        # Transport hints are advisory; unknown values are dropped.
        transports = tuple(
            transport.strip().lower()
            for transport in raw_transports
            if isinstance(transport, str) and transport.strip().lower() in KNOWN_TRANSPORTS
        )
        return cls(
            credential_id=_credential_id(data),
            client_data=_binary_field(response, "clientDataJSON"),
            attestation_object=_binary_field(response, "attestationObject"),
            transports=transports,
        )


@dataclass(frozen=True)
class AssertionResponse:
    """Result of ``navigator.credentials.get()`` as raw bytes."""

    credential_id: bytes
    client_data: bytes
    authenticator_data: bytes
    signature: bytes
    user_handle: Optional[bytes] = None

    @classmethod
    def from_dict(cls, data: Any) -> "AssertionResponse":
        response = _response_section(data)
        return cls(
            credential_id=_credential_id(data),
            client_data=_binary_field(response, "clientDataJSON"),
            authenticator_data=_binary_field(response, "authenticatorData"),
            signature=_binary_field(response, "signature"),
            user_handle=_binary_field(response, "userHandle", required=False) or None,
        )


@dataclass(frozen=True)
class CreationOptions:
    challenge: bytes
    rp_id: str
    rp_name: str
    user_id: bytes
    user_name: str
    user_display_name: str
    algorithms: Tuple[int, ...]
    timeout_ms: int
    attestation: str
    attestation_formats: Tuple[str, ...]
    user_verification: str

    def to_dict(self) -> Dict[str, Any]:
        """Render as ``PublicKeyCredentialCreationOptions`` JSON."""
        return {
            "publicKey": {
                "rp": {"id": self.rp_id, "name": self.rp_name},
                "user": {
                    "id": websafe_encode(self.user_id),
                    "name": self.user_name,
                    "displayName": self.user_display_name,
                },
                "challenge": websafe_encode(self.challenge),
                "pubKeyCredParams": [
                    {"type": "public-key", "alg": alg} for alg in self.algorithms
                ],
                "timeout": self.timeout_ms,
                "excludeCredentials": [],
                "authenticatorSelection": {
                    "residentKey": "preferred",
                    "userVerification": self.user_verification,
                },
                "attestation": self.attestation,
                "attestationFormats": list(self.attestation_formats),
            }
        }


@dataclass(frozen=True)
class RequestOptions:
    challenge: bytes
    rp_id: str
    allowed_credentials: Tuple[bytes, ...]
    transports: Tuple[Tuple[str, ...], ...]
    timeout_ms: int
    user_verification: str

    def to_dict(self) -> Dict[str, Any]:
        """Render as ``PublicKeyCredentialRequestOptions`` JSON."""
        allow: List[Dict[str, Any]] = []
        for index, credential_id in enumerate(self.allowed_credentials):
            descriptor: Dict[str, Any] = {"type": "public-key", "id": websafe_encode(credential_id)}
            if index < len(self.transports) and self.transports[index]:
                descriptor["transports"] = list(self.transports[index])
            allow.append(descriptor)
        return {
            "publicKey": {
                "challenge": websafe_encode(self.challenge),
                "rpId": self.rp_id,
                "allowCredentials": allow,
                "timeout": self.timeout_ms,
                "userVerification": self.user_verification,
            }
        }


@dataclass(frozen=True)
class RegistrationResult:
    user: User
    credential: Credential


@dataclass(frozen=True)
class AuthenticationResult:
    username: str
    user_id: bytes
    credential_id: bytes
    sign_count: int
    clone_warning: bool = False
    backup_state_changed: bool = False
    warnings: Tuple[str, ...] = field(default=())
