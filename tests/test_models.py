import base64
from datetime import datetime, timezone

import pytest

from passkey_server.encoding import challenge_prefix, decode_binary_value, make_json_safe
from passkey_server.errors import InvalidInput
from passkey_server.models import AssertionResponse, CreationResponse, Credential, RequestOptions, User


@pytest.mark.parametrize(
    "value",
    [
        base64.urlsafe_b64encode(b"\xfb\xff\x00binary").decode().rstrip("="),
        base64.urlsafe_b64encode(b"\xfb\xff\x00binary").decode(),
        b"\xfb\xff\x00binary",
        bytearray(b"\xfb\xff\x00binary"),
        list(b"\xfb\xff\x00binary"),
    ],
)
def test_decode_binary_value(value):
    assert decode_binary_value(value) == b"\xfb\xff\x00binary"


@pytest.mark.parametrize("value", [None, "", "   ", 3.5, "!!not-binary!!", [256]])
def test_decode_binary_value_rejects(value):
    with pytest.raises(ValueError):
        decode_binary_value(value)


def test_make_json_safe_is_recursive():
    assert make_json_safe({"a": [b"\x00\x01", {"b": b"\xff"}], "c": 1}) == {
        "a": ["AAE", {"b": "_w"}],
        "c": 1,
    }


def test_challenge_prefix_is_short():
    assert challenge_prefix(bytes(32)) == "AAAAAAAA..."


def test_creation_response_filters_transports():
    response = CreationResponse.from_dict(
        {
            "id": "AQID",
            "response": {
                "clientDataJSON": "e30",
                "attestationObject": "oA",
                "transports": ["USB", "internal", "carrier-pigeon", 7],
            },
        }
    )

    assert response.credential_id == b"\x01\x02\x03"
    assert response.transports == ("usb", "internal")


@pytest.mark.parametrize(
    "payload",
    [
        None,
        [],
        {"id": "AQID"},
        {"id": "", "response": {"clientDataJSON": "e30", "attestationObject": "oA"}},
        {"id": "AQID", "response": {"clientDataJSON": "e30"}},
        {"id": "AQID", "response": {"clientDataJSON": "e30", "attestationObject": "oA", "transports": "usb"}},
    ],
)
def test_creation_response_rejects(payload):
    with pytest.raises(InvalidInput):
        CreationResponse.from_dict(payload)


def test_assertion_response_user_handle_is_optional():
    response = AssertionResponse.from_dict(
        {
            "rawId": "AQID",
            "response": {"clientDataJSON": "e30", "authenticatorData": "AA", "signature": "AA"},
        }
    )

    assert response.user_handle is None
    assert response.signature == b"\x00"


def test_request_options_omit_empty_transports():
    options = RequestOptions(
        challenge=b"\x00" * 32,
        rp_id="example.test",
        allowed_credentials=(b"\x01", b"\x02"),
        transports=(("usb",), ()),
        timeout_ms=60000,
        user_verification="required",
    ).to_dict()["publicKey"]

    assert options["allowCredentials"] == [
        {"type": "public-key", "id": "AQ", "transports": ["usb"]},
        {"type": "public-key", "id": "Ag"},
    ]


def test_user_exposes_identity_and_credentials():
    user = User(id=b"\x01" * 16, name="alice", display_name="Alice", created_at=datetime(2024, 5, 1, tzinfo=timezone.utc))
    credential = Credential(
        id=b"cred",
        owner_id=user.id,
        public_key=b"",
        sign_count=0,
        backup_eligible=False,
        backup_state=False,
        attestation_type="none",
        aaguid=bytes(16),
        created_at=user.created_at,
    )

    assert user.identifier == user.id
    assert user.has_credentials([credential])
    assert not user.has_credentials([])
