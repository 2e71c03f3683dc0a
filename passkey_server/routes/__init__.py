"""HTTP routes for the passkey server."""
from __future__ import annotations

from flask import Blueprint

bp = Blueprint("passkeys", __name__)

from . import ceremony, general  # noqa: E402,F401

__all__ = ["bp"]
