"""WebAuthn relying-party core with a thin Flask front end."""
from __future__ import annotations

from importlib import import_module
from typing import Any, TYPE_CHECKING

from .ceremony import CeremonyOrchestrator
from .config import Enforcement, RelyingPartyConfig
from .session import SessionContext

__all__ = [
    "CeremonyOrchestrator",
    "Enforcement",
    "RelyingPartyConfig",
    "SessionContext",
    "create_app",
    "main",
]

_LAZY = {"create_app", "main"}


if TYPE_CHECKING:  # pragma: no cover - import only for static analysis.
    from .app import create_app, main  # noqa: F401


def __getattr__(name: str) -> Any:
    """Import the Flask application module only when it is asked for.

    The core can then be used without loading the HTTP layer.
    """

    if name in _LAZY:
        module = import_module(".app", __name__)
        return getattr(module, name)

    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(set(globals()) | set(__all__))
