from __future__ import annotations

import sqlite3
import threading
from datetime import timedelta

import pytest

from passkey_server.database import Database, SqliteChallengeStore
from passkey_server.errors import Conflict, NotFound, StoreUnavailable
from passkey_server.models import Credential


def _credential(owner_id: bytes, credential_id: bytes, created_at, sign_count: int = 0) -> Credential:
    return Credential(
        id=credential_id,
        owner_id=owner_id,
        public_key=b"\xa1\x01\x02",
        sign_count=sign_count,
        backup_eligible=True,
        backup_state=False,
        attestation_type="none",
        aaguid=bytes(16),
        created_at=created_at,
        transports=frozenset({"internal", "hybrid"}),
        public_key_algorithm=-7,
    )


class TestChallengeStore:
    def test_put_get_and_delete(self, challenges, clock) -> None:
        expires = clock() + timedelta(minutes=5)
        challenges.put(b"c1", "registration", b"u" * 16, b"context", expires)

        assert challenges.get(b"c1", "registration") == b"context"
        with pytest.raises(NotFound):
            challenges.get(b"c1", "authentication")

        challenges.delete(b"c1", "registration")
        with pytest.raises(NotFound):
            challenges.delete(b"c1", "registration")

    def test_duplicate_challenge_conflicts(self, challenges, clock) -> None:
        expires = clock() + timedelta(minutes=5)
        challenges.put(b"c1", "registration", None, b"first", expires)

        with pytest.raises(Conflict):
            challenges.put(b"c1", "registration", None, b"second", expires)

        challenges.put(b"c1", "authentication", None, b"other type", expires)
        assert challenges.get(b"c1", "registration") == b"first"

    def test_consume_is_single_use(self, challenges, clock) -> None:
        challenges.put(b"c1", "authentication", None, b"context", clock() + timedelta(minutes=5))

        assert challenges.consume(b"c1", "authentication") == b"context"
        with pytest.raises(NotFound):
            challenges.consume(b"c1", "authentication")

    def test_expired_entries_are_invisible_and_consumed(self, challenges, clock) -> None:
        challenges.put(b"c1", "registration", None, b"context", clock() + timedelta(minutes=5))
        clock.advance(minutes=5)

        with pytest.raises(NotFound):
            challenges.get(b"c1", "registration")
        with pytest.raises(NotFound):
            challenges.consume(b"c1", "registration")
        assert challenges.purge_expired() == 0

    def test_purge_expired_and_pending_owners(self, challenges, clock) -> None:
        now = clock()
        challenges.put(b"old", "registration", b"a" * 16, b"x", now + timedelta(minutes=1))
        challenges.put(b"new", "registration", b"b" * 16, b"y", now + timedelta(minutes=10))
        challenges.put(b"anon", "authentication", None, b"z", now + timedelta(minutes=10))

        assert challenges.pending_owner_ids() == {b"a" * 16, b"b" * 16}
        assert challenges.purge_expired(now + timedelta(minutes=2)) == 1
        assert challenges.pending_owner_ids() == {b"b" * 16}

    def test_concurrent_consume_has_one_winner(self, challenges, clock) -> None:
        challenges.put(b"race", "authentication", None, b"context", clock() + timedelta(minutes=5))
        results = []
        barrier = threading.Barrier(8)

        def worker() -> None:
            barrier.wait()
            try:
                results.append(challenges.consume(b"race", "authentication"))
            except NotFound:
                results.append(None)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count(b"context") == 1
        assert results.count(None) == 7


class TestCredentialRepository:
    def test_users_are_found_by_name_and_id(self, repository) -> None:
        user = repository.create_user("alice", "Alice")

        assert len(user.id) == 16
        assert repository.find_user_by_name("alice") == user
        assert repository.find_user_by_id(user.id) == user
        with pytest.raises(NotFound):
            repository.find_user_by_name("bob")
        with pytest.raises(NotFound):
            repository.find_user_by_id(b"\x00" * 16)

    def test_duplicate_username_conflicts(self, repository) -> None:
        repository.create_user("alice", "Alice")

        with pytest.raises(Conflict):
            repository.create_user("alice", "Another Alice")

    def test_credentials_round_trip(self, repository, clock) -> None:
        user = repository.create_user("alice", "Alice")
        credential = _credential(user.id, b"cred-1", clock())

        assert repository.list_credentials(user.id) == []
        repository.create_credential(credential)

        stored = repository.list_credentials(user.id)
        assert [item.id for item in stored] == [b"cred-1"]
        assert stored[0].transports == frozenset({"internal", "hybrid"})
        assert stored[0].public_key == credential.public_key
        assert stored[0].backup_eligible is True
        assert stored[0].public_key_algorithm == -7

    def test_credential_ids_are_unique_across_users(self, repository, clock) -> None:
        alice = repository.create_user("alice", "Alice")
        bob = repository.create_user("bob", "Bob")
        repository.create_credential(_credential(alice.id, b"shared", clock()))

        with pytest.raises(Conflict):
            repository.create_credential(_credential(bob.id, b"shared", clock()))
        assert repository.list_credentials(bob.id) == []

    def test_credential_requires_existing_owner(self, repository, clock) -> None:
        with pytest.raises(NotFound):
            repository.create_credential(_credential(b"\x07" * 16, b"cred", clock()))

    def test_exclusive_insert_refuses_a_second_credential(self, repository, clock) -> None:
        alice = repository.create_user("alice", "Alice")
        repository.create_credential(_credential(alice.id, b"first", clock()), exclusive=True)

        with pytest.raises(Conflict):
            repository.create_credential(_credential(alice.id, b"second", clock()), exclusive=True)
        assert [item.id for item in repository.list_credentials(alice.id)] == [b"first"]

        repository.create_credential(_credential(alice.id, b"second", clock()))
        assert len(repository.list_credentials(alice.id)) == 2

    def test_sign_count_only_moves_forward(self, repository, clock) -> None:
        user = repository.create_user("alice", "Alice")
        repository.create_credential(_credential(user.id, b"cred", clock(), sign_count=5))

        repository.update_sign_count(b"cred", 6)
        assert repository.list_credentials(user.id)[0].sign_count == 6

        with pytest.raises(Conflict):
            repository.update_sign_count(b"cred", 6)
        with pytest.raises(Conflict):
            repository.update_sign_count(b"cred", 2)
        assert repository.list_credentials(user.id)[0].sign_count == 6

        with pytest.raises(NotFound):
            repository.update_sign_count(b"missing", 10)

    def test_delete_orphaned_users(self, repository, clock) -> None:
        with_credential = repository.create_user("alice", "Alice")
        repository.create_credential(_credential(with_credential.id, b"cred", clock()))
        pending = repository.create_user("bob", "Bob")
        abandoned = repository.create_user("carol", "Carol")
        clock.advance(hours=1)
        recent = repository.create_user("dave", "Dave")

        removed = repository.delete_orphaned_users(clock() - timedelta(minutes=30), keep={pending.id})

        assert removed == 1
        with pytest.raises(NotFound):
            repository.find_user_by_id(abandoned.id)
        for user in (with_credential, pending, recent):
            assert repository.find_user_by_id(user.id) == user

        # The name is free again.
        repository.create_user("carol", "Carol")


def test_sqlite_store_persists_across_connections(tmp_path, clock) -> None:
    path = str(tmp_path / "nested" / "store.sqlite3")
    first = Database(path)
    SqliteChallengeStore(first, clock).put(
        b"c1", "registration", None, b"context", clock() + timedelta(minutes=5)
    )
    first.close()

    second = Database(path)
    try:
        assert SqliteChallengeStore(second, clock).consume(b"c1", "registration") == b"context"
    finally:
        second.close()


def test_locked_database_reports_store_unavailable(tmp_path, clock) -> None:
    path = str(tmp_path / "locked.sqlite3")
    holder = Database(path)
    contender = Database(path, timeout=0.05)
    store = SqliteChallengeStore(contender, clock)
    try:
        with holder.transaction():
            with pytest.raises(StoreUnavailable):
                store.put(b"c1", "registration", None, b"x", clock() + timedelta(minutes=5))
    finally:
        contender.close()
        holder.close()


def test_failed_commit_rolls_back_and_recovers(tmp_path, clock) -> None:
    path = str(tmp_path / "busy.sqlite3")
    database = Database(path, timeout=0.05)
    store = SqliteChallengeStore(database, clock)
    expires = clock() + timedelta(minutes=5)

    reader = sqlite3.connect(path, isolation_level=None)
    try:
        # An open read transaction keeps a shared lock, so COMMIT cannot proceed.
        reader.execute("BEGIN")
        reader.execute("SELECT COUNT(*) FROM challenges").fetchone()
        with pytest.raises(StoreUnavailable):
            store.put(b"c1", "registration", None, b"first", expires)
        reader.execute("COMMIT")
    finally:
        reader.close()

    store.put(b"c2", "registration", None, b"second", expires)
    assert store.get(b"c2", "registration") == b"second"
    with pytest.raises(NotFound):
        store.get(b"c1", "registration")
    database.close()
