"""Relying-party configuration for the passkey server."""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Iterable, Mapping, Optional, Tuple

from fido2.cose import CoseKey

from .errors import ConfigurationError

__all__ = [
    "DEFAULT_ALGORITHMS",
    "Enforcement",
    "RelyingPartyConfig",
    "USER_VERIFICATION_VALUES",
    "supported_algorithms",
]


class Enforcement(str, Enum):
    """What to do when a clone or tampering signal is observed."""

    REJECT = "reject"
    WARN = "warn"


USER_VERIFICATION_VALUES = ("required", "preferred", "discouraged")
ATTESTATION_PREFERENCES = ("none", "indirect", "direct", "enterprise")

# ES256, EdDSA, RS256
_PREFERRED_ALGORITHMS: Tuple[int, ...] = (-7, -8, -257)


def supported_algorithms(candidates: Iterable[int]) -> Tuple[int, ...]:
    """Keep the COSE algorithms the installed ``fido2`` can verify, in order."""

    available = set(CoseKey.supported_algorithms())
    return tuple(alg for alg in candidates if alg in available)


DEFAULT_ALGORITHMS: Tuple[int, ...] = supported_algorithms(_PREFERRED_ALGORITHMS)


_TRUE_WORDS = frozenset({"1", "true", "yes", "on"})
_FALSE_WORDS = frozenset({"0", "false", "no", "off"})


def _parse_flag(name: str, raw_value: Optional[str]) -> Optional[bool]:
    """``None`` when unset or blank, else the boolean spelled by ``raw_value``."""

    if raw_value is None or not raw_value.strip():
        return None
    word = raw_value.strip().lower()
    if word in _TRUE_WORDS:
        return True
    if word in _FALSE_WORDS:
        return False
    raise ConfigurationError(f"{name} must be a boolean such as 'true' or 'false'")


def _split_list(raw_value: Optional[str]) -> Tuple[str, ...]:
    """Normalise a comma, semicolon or newline separated list."""

    if raw_value is None:
        return ()
    components = re.split(r"[,;\n]+", raw_value)
    return tuple(component.strip() for component in components if component.strip())


def _parse_seconds(name: str, raw_value: str) -> float:
    try:
        value = float(raw_value)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number of seconds") from exc
    if value < 0:
        raise ConfigurationError(f"{name} must not be negative")
    return value


def _parse_enforcement(name: str, raw_value: str) -> Enforcement:
    try:
        return Enforcement(raw_value.strip().lower())
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be 'reject' or 'warn'") from exc


@dataclass(frozen=True)
class RelyingPartyConfig:
    rp_id: str
    origins: Tuple[str, ...]
    rp_name: str = "Passkey server"
    attestation_formats: Tuple[str, ...] = ("none",)
    attestation_preference: str = "none"
    algorithms: Tuple[int, ...] = DEFAULT_ALGORITHMS
    challenge_ttl: timedelta = timedelta(minutes=5)
    challenge_length: int = 32
    user_verification: str = "preferred"
    allow_cross_origin: bool = False
    counter_policy: Enforcement = Enforcement.REJECT
    backup_eligible_policy: Enforcement = Enforcement.REJECT
    backup_state_policy: Enforcement = Enforcement.WARN
    orphan_grace: timedelta = timedelta(hours=24)
    store_timeout: float = 5.0
    reclaim_interval: float = 60.0
    database: Optional[str] = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if not isinstance(self.rp_id, str) or not self.rp_id.strip():
            raise ConfigurationError("rp_id must be a non-empty domain name")
        if "://" in self.rp_id or "/" in self.rp_id:
            raise ConfigurationError("rp_id must be a bare domain, not a URL")

        origins = tuple(self.origins)
        if not origins:
            raise ConfigurationError("at least one allowed origin is required")
        for origin in origins:
            if "://" not in origin:
                raise ConfigurationError(f"origin {origin!r} must include a scheme")
        object.__setattr__(self, "origins", origins)

        formats = tuple(fmt.strip().lower() for fmt in self.attestation_formats if fmt.strip())
        if not formats:
            raise ConfigurationError("at least one attestation format must be accepted")
        object.__setattr__(self, "attestation_formats", formats)

        if self.attestation_preference not in ATTESTATION_PREFERENCES:
            raise ConfigurationError(
                f"attestation_preference must be one of {', '.join(ATTESTATION_PREFERENCES)}"
            )

        algorithms = tuple(int(alg) for alg in self.algorithms)
        if not algorithms:
            raise ConfigurationError("at least one public-key algorithm must be offered")
        unsupported = [alg for alg in algorithms if alg not in supported_algorithms(algorithms)]
        if unsupported:
            raise ConfigurationError(f"unsupported COSE algorithms: {unsupported}")
        object.__setattr__(self, "algorithms", algorithms)

        if self.challenge_length < 16:
            raise ConfigurationError("challenge_length must be at least 16 bytes")
        if self.challenge_ttl <= timedelta(0):
            raise ConfigurationError("challenge_ttl must be positive")
        if self.user_verification not in USER_VERIFICATION_VALUES:
            raise ConfigurationError(
                f"user_verification must be one of {', '.join(USER_VERIFICATION_VALUES)}"
            )
        for name in ("counter_policy", "backup_eligible_policy", "backup_state_policy"):
            object.__setattr__(self, name, Enforcement(getattr(self, name)))

    @property
    def timeout_ms(self) -> int:
        return int(self.challenge_ttl.total_seconds() * 1000)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "RelyingPartyConfig":
        """Build a configuration from ``FIDO_SERVER_*`` environment variables."""

        env = os.environ if environ is None else environ

        def get(name: str) -> Optional[str]:
            value = env.get(f"FIDO_SERVER_{name}")
            if value is None or not value.strip():
                return None
            return value.strip()

        kwargs = {
            "rp_id": get("RP_ID") or "localhost",
            "origins": _split_list(get("ORIGINS")) or ("http://localhost:5173",),
            "database": get("DATABASE"),
        }

        if get("RP_NAME"):
            kwargs["rp_name"] = get("RP_NAME")
        if get("ATTESTATION_FORMATS"):
            kwargs["attestation_formats"] = _split_list(get("ATTESTATION_FORMATS"))
        if get("ATTESTATION_PREFERENCE"):
            kwargs["attestation_preference"] = get("ATTESTATION_PREFERENCE").lower()
        if get("ALGORITHMS"):
            try:
                kwargs["algorithms"] = tuple(int(alg) for alg in _split_list(get("ALGORITHMS")))
            except ValueError as exc:
                raise ConfigurationError("FIDO_SERVER_ALGORITHMS must list integers") from exc
        if get("CHALLENGE_TTL"):
            kwargs["challenge_ttl"] = timedelta(
                seconds=_parse_seconds("FIDO_SERVER_CHALLENGE_TTL", get("CHALLENGE_TTL"))
            )
        if get("USER_VERIFICATION"):
            kwargs["user_verification"] = get("USER_VERIFICATION").lower()

        cross_origin = _parse_flag(
            "FIDO_SERVER_ALLOW_CROSS_ORIGIN", env.get("FIDO_SERVER_ALLOW_CROSS_ORIGIN")
        )
        if cross_origin is not None:
            kwargs["allow_cross_origin"] = cross_origin

        for name, attribute in (
            ("COUNTER_POLICY", "counter_policy"),
            ("BACKUP_ELIGIBLE_POLICY", "backup_eligible_policy"),
            ("BACKUP_STATE_POLICY", "backup_state_policy"),
        ):
            if get(name):
                kwargs[attribute] = _parse_enforcement(f"FIDO_SERVER_{name}", get(name))

        if get("ORPHAN_GRACE"):
            kwargs["orphan_grace"] = timedelta(
                seconds=_parse_seconds("FIDO_SERVER_ORPHAN_GRACE", get("ORPHAN_GRACE"))
            )
        if get("STORE_TIMEOUT"):
            kwargs["store_timeout"] = _parse_seconds("FIDO_SERVER_STORE_TIMEOUT", get("STORE_TIMEOUT"))
        if get("RECLAIM_INTERVAL"):
            kwargs["reclaim_interval"] = _parse_seconds(
                "FIDO_SERVER_RECLAIM_INTERVAL", get("RECLAIM_INTERVAL")
            )

        return cls(**kwargs)
