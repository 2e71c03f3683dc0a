"""Application factory and entry point for the passkey server."""
from __future__ import annotations

import logging
import os
from typing import Optional

from flask import Flask

from .ceremony import CeremonyOrchestrator
from .config import RelyingPartyConfig
from .database import Database, SqliteChallengeStore, SqliteCredentialRepository
from .reaper import start_reaper
from .storage import (
    ChallengeStore,
    CredentialRepository,
    MemoryChallengeStore,
    MemoryCredentialRepository,
)

__all__ = ["create_app", "main"]


def _default_stores(config: RelyingPartyConfig):
    if config.database:
        database = Database(config.database, timeout=config.store_timeout)
        return SqliteChallengeStore(database), SqliteCredentialRepository(database)
    return MemoryChallengeStore(), MemoryCredentialRepository()


def create_app(
    config: Optional[RelyingPartyConfig] = None,
    challenges: Optional[ChallengeStore] = None,
    repository: Optional[CredentialRepository] = None,
    start_background: bool = False,
) -> Flask:
    """Build the Flask app around a :class:`CeremonyOrchestrator`.

    Without explicit stores the app uses SQLite when ``FIDO_SERVER_DATABASE``
    (``config.database``) is set and in-memory storage otherwise.
    """

    config = config or RelyingPartyConfig.from_env()
    if challenges is None or repository is None:
        default_challenges, default_repository = _default_stores(config)
        challenges = challenges or default_challenges
        repository = repository or default_repository

    app = Flask(__name__)
    orchestrator = CeremonyOrchestrator(config, challenges, repository)
    app.extensions["passkeys"] = orchestrator

    from .routes import bp

    app.register_blueprint(bp)

    @app.cli.command("purge-challenges")
    def purge_challenges() -> None:
        """Delete expired challenges and abandoned registrations."""
        removed = orchestrator.reclaim()
        print(f"Removed {removed} expired entries.")

    if start_background and config.reclaim_interval > 0:
        start_reaper(orchestrator, config.reclaim_interval, app.logger)

    app.logger.info(
        "Passkey server configured for RP %r with origins %s",
        config.rp_id,
        ", ".join(config.origins),
    )
    return app


def main() -> None:
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))
    app = create_app(start_background=True)
    app.run(
        host=os.environ.get("HOST", "localhost"),
        port=int(os.environ.get("PORT", "8080")),
    )


if __name__ == "__main__":  # pragma: no cover - convenience script entry point.
    main()
