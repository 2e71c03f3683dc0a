"""Background reclamation of expired challenges and abandoned registrations."""
from __future__ import annotations

import logging
import threading
from typing import Optional

from .ceremony import CeremonyOrchestrator
from .errors import PersistenceError

__all__ = ["is_running", "start_reaper", "stop_reaper"]

_MIN_INTERVAL = 1.0

_reaper_thread: Optional[threading.Thread] = None
_stop_event = threading.Event()
_state_lock = threading.Lock()


def _reaper_loop(orchestrator: CeremonyOrchestrator, interval: float, logger: logging.Logger) -> None:
    logger.info("Starting challenge reaper (every %.0f seconds).", interval)
    while not _stop_event.is_set():
        try:
            orchestrator.reclaim()
        except PersistenceError as exc:
            # Reads enforce expiry, so a skipped round only delays cleanup.
            logger.warning("Challenge reclamation skipped: %s", exc)
        _stop_event.wait(interval)
    logger.info("Stopping challenge reaper.")


def start_reaper(
    orchestrator: CeremonyOrchestrator,
    interval: float,
    logger: Optional[logging.Logger] = None,
) -> None:
    """Launch the reaper thread if it is not already running."""

    global _reaper_thread

    with _state_lock:
        if _reaper_thread and _reaper_thread.is_alive():
            return

        _stop_event.clear()
        _reaper_thread = threading.Thread(
            target=_reaper_loop,
            args=(orchestrator, max(interval, _MIN_INTERVAL), logger or logging.getLogger(__name__)),
            name="challenge-reaper",
            daemon=True,
        )
        _reaper_thread.start()


def stop_reaper() -> None:
    """Request the reaper thread to stop and wait briefly for it."""

    _stop_event.set()
    with _state_lock:
        thread = _reaper_thread
    if thread and thread.is_alive():
        thread.join(timeout=5)


def is_running() -> bool:
    with _state_lock:
        return bool(_reaper_thread and _reaper_thread.is_alive())
