"""Challenge and credential storage contracts with in-memory back-ends."""
from __future__ import annotations

import abc
import os
import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from .errors import Conflict, NotFound
from .models import Credential, User

__all__ = [
    "ChallengeStore",
    "Clock",
    "CredentialRepository",
    "MemoryChallengeStore",
    "MemoryCredentialRepository",
    "USER_ID_LENGTH",
    "utcnow",
]

USER_ID_LENGTH = 16

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChallengeStore(abc.ABC):
    """Single-use, time-bounded storage of ceremony session contexts.

    Entries are keyed by ``(challenge, ceremony type)``. Expiry is enforced
    on every read, so reclaiming expired rows is housekeeping only.
    """

    @abc.abstractmethod
    def put(
        self,
        challenge: bytes,
        ceremony: str,
        owner_id: Optional[bytes],
        context: bytes,
        expires_at: datetime,
    ) -> None:
        """Persist ``context``; raises ``Conflict`` if the challenge exists."""

    @abc.abstractmethod
    def get(self, challenge: bytes, ceremony: str) -> bytes:
        """Return the stored context or raise ``NotFound``."""

    @abc.abstractmethod
    def delete(self, challenge: bytes, ceremony: str) -> None:
        """Remove the entry; raises ``NotFound`` if it was already gone."""

    @abc.abstractmethod
    def consume(self, challenge: bytes, ceremony: str) -> bytes:
        """Atomically fetch and delete an entry.

        Exactly one caller can consume a given challenge. Expired entries are
        deleted as well and reported as ``NotFound``.
        """

    @abc.abstractmethod
    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete expired entries and return how many were removed."""

    @abc.abstractmethod
    def pending_owner_ids(self) -> Set[bytes]:
        """Owner ids referenced by entries that are still stored."""


class CredentialRepository(abc.ABC):
    """Durable users and the public-key credentials bound to them."""

    @abc.abstractmethod
    def create_user(self, name: str, display_name: str) -> User:
        """Create a user with a fresh random id; ``Conflict`` if name is taken."""

    @abc.abstractmethod
    def find_user_by_name(self, name: str) -> User:
        ...

    @abc.abstractmethod
    def find_user_by_id(self, user_id: bytes) -> User:
        ...

    @abc.abstractmethod
    def list_credentials(self, owner_id: bytes) -> List[Credential]:
        """Credentials of ``owner_id``; an empty list when there are none."""

    @abc.abstractmethod
    def create_credential(self, credential: Credential, exclusive: bool = False) -> None:
        """Insert ``credential``; ``Conflict`` if its id exists for any user.

        With ``exclusive`` the insert also raises ``Conflict`` when the owner
        already has a credential. The check and the insert are one atomic step.
        """

    @abc.abstractmethod
    def update_sign_count(self, credential_id: bytes, new_count: int) -> None:
        """Move the counter forward.

        Raises ``NotFound`` if the credential vanished and ``Conflict`` if the
        stored counter is already at or beyond ``new_count``.
        """

    @abc.abstractmethod
    def delete_orphaned_users(self, created_before: datetime, keep: Iterable[bytes] = ()) -> int:
        """Delete credential-less users created before the cutoff."""


class MemoryChallengeStore(ChallengeStore):
    def __init__(self, clock: Optional[Clock] = None) -> None:
        self._clock = clock or utcnow
        self._lock = threading.Lock()
        self._entries: Dict[Tuple[bytes, str], Tuple[Optional[bytes], bytes, datetime]] = {}

    def put(self, challenge, ceremony, owner_id, context, expires_at):
        key = (bytes(challenge), ceremony)
        with self._lock:
            if key in self._entries:
                raise Conflict("challenge already stored")
            self._entries[key] = (owner_id, bytes(context), expires_at)

    def get(self, challenge, ceremony):
        key = (bytes(challenge), ceremony)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or self._clock() >= entry[2]:
                raise NotFound("challenge not found or expired")
            return entry[1]

    def delete(self, challenge, ceremony):
        with self._lock:
            if self._entries.pop((bytes(challenge), ceremony), None) is None:
                raise NotFound("challenge not found")

    def consume(self, challenge, ceremony):
        with self._lock:
            entry = self._entries.pop((bytes(challenge), ceremony), None)
        if entry is None or self._clock() >= entry[2]:
            raise NotFound("challenge not found or expired")
        return entry[1]

    def purge_expired(self, now=None):
        now = now or self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if now >= entry[2]]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def pending_owner_ids(self):
        with self._lock:
            return {entry[0] for entry in self._entries.values() if entry[0] is not None}


class MemoryCredentialRepository(CredentialRepository):
    def __init__(self, clock: Optional[Clock] = None) -> None:
        self._clock = clock or utcnow
        self._lock = threading.Lock()
        self._users: Dict[bytes, User] = {}
        self._names: Dict[str, bytes] = {}
        self._credentials: Dict[bytes, Credential] = {}

    def create_user(self, name, display_name):
        with self._lock:
            if name in self._names:
                raise Conflict(f"user {name!r} already exists")
            user_id = os.urandom(USER_ID_LENGTH)
            while user_id in self._users:
                user_id = os.urandom(USER_ID_LENGTH)
            user = User(id=user_id, name=name, display_name=display_name, created_at=self._clock())
            self._users[user_id] = user
            self._names[name] = user_id
            return user

    def find_user_by_name(self, name):
        with self._lock:
            user_id = self._names.get(name)
            if user_id is None:
                raise NotFound(f"user {name!r} not found")
            return self._users[user_id]

    def find_user_by_id(self, user_id):
        with self._lock:
            user = self._users.get(bytes(user_id))
        if user is None:
            raise NotFound("user not found")
        return user

    def list_credentials(self, owner_id):
        owner_id = bytes(owner_id)
        with self._lock:
            return sorted(
                (credential for credential in self._credentials.values() if credential.owner_id == owner_id),
                key=lambda credential: credential.created_at,
            )

    def create_credential(self, credential, exclusive=False):
        with self._lock:
            if credential.owner_id not in self._users:
                raise NotFound("credential owner not found")
            if exclusive and any(
                existing.owner_id == credential.owner_id for existing in self._credentials.values()
            ):
                raise Conflict("user already has a registered credential")
            if credential.id in self._credentials:
                raise Conflict("credential id already registered")
            self._credentials[credential.id] = credential

    def update_sign_count(self, credential_id, new_count):
        with self._lock:
            credential = self._credentials.get(bytes(credential_id))
            if credential is None:
                raise NotFound("credential not found")
            if new_count <= credential.sign_count:
                raise Conflict("stored sign counter is already at or beyond the new value")
            self._credentials[credential.id] = replace(credential, sign_count=new_count)

    def delete_orphaned_users(self, created_before, keep=()):
        keep_ids = {bytes(user_id) for user_id in keep}
        with self._lock:
            owners = {credential.owner_id for credential in self._credentials.values()}
            orphaned = [
                user
                for user in self._users.values()
                if user.id not in owners and user.id not in keep_ids and user.created_at < created_before
            ]
            for user in orphaned:
                del self._users[user.id]
                del self._names[user.name]
        return len(orphaned)
