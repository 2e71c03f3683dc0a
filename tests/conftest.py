from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from passkey_server.ceremony import CeremonyOrchestrator
from passkey_server.config import RelyingPartyConfig
from passkey_server.database import Database, SqliteChallengeStore, SqliteCredentialRepository
from passkey_server.storage import MemoryChallengeStore, MemoryCredentialRepository

from .authenticator import ORIGIN, RP_ID, SoftwareAuthenticator


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def config() -> RelyingPartyConfig:
    return RelyingPartyConfig(rp_id=RP_ID, rp_name="Example", origins=(ORIGIN,))


@pytest.fixture(params=["memory", "sqlite"])
def stores(request, clock, tmp_path):
    if request.param == "memory":
        yield MemoryChallengeStore(clock), MemoryCredentialRepository(clock)
        return
    database = Database(str(tmp_path / "passkeys.sqlite3"))
    yield SqliteChallengeStore(database, clock), SqliteCredentialRepository(database, clock)
    database.close()


@pytest.fixture
def challenges(stores):
    return stores[0]


@pytest.fixture
def repository(stores):
    return stores[1]


@pytest.fixture
def make_orchestrator(challenges, repository, clock):
    def _make(config: RelyingPartyConfig) -> CeremonyOrchestrator:
        return CeremonyOrchestrator(config, challenges, repository, clock=clock)

    return _make


@pytest.fixture
def orchestrator(make_orchestrator, config) -> CeremonyOrchestrator:
    return make_orchestrator(config)


@pytest.fixture
def authenticator() -> SoftwareAuthenticator:
    return SoftwareAuthenticator(origin=ORIGIN)
