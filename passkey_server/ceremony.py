"""Begin/Finish state machine for registration and authentication ceremonies.

No ceremony state lives in this object between Begin and Finish: Begin
writes a complete :class:`~passkey_server.session.SessionContext` to the
challenge store and Finish consumes it again. Finish consumes the challenge
before any verification runs, so every challenge is single-use whether the
ceremony succeeds or fails.
"""
from __future__ import annotations

import logging
import os
import re
from datetime import datetime
from typing import Optional

from .assertion import AssertionVerifier
from .attestation import AttestationVerifier
from .config import RelyingPartyConfig
from .encoding import challenge_prefix
from .errors import (
    ChallengeExpiredOrUnknown,
    Conflict,
    CredentialNotAllowed,
    InvalidInput,
    NoCredentialsRegistered,
    NotFound,
    PossibleCloneDetected,
)
from .models import (
    AssertionResponse,
    AuthenticationResult,
    CreationOptions,
    CreationResponse,
    RegistrationResult,
    RequestOptions,
    User,
)
from .session import AUTHENTICATION, REGISTRATION, SessionContext
from .storage import ChallengeStore, Clock, CredentialRepository, utcnow
from .verification import parse_client_data

__all__ = ["CeremonyOrchestrator", "normalize_username"]

logger = logging.getLogger(__name__)

_MAX_USERNAME_LENGTH = 255
_CONTROL_CHARACTERS = re.compile(r"[\x00-\x1f\x7f]")


def normalize_username(value: object) -> str:
    if not isinstance(value, str):
        raise InvalidInput("username must be a string")
    username = value.strip()
    if not username:
        raise InvalidInput("username must not be empty")
    if len(username) > _MAX_USERNAME_LENGTH:
        raise InvalidInput(f"username must be at most {_MAX_USERNAME_LENGTH} characters")
    if _CONTROL_CHARACTERS.search(username):
        raise InvalidInput("username must not contain control characters")
    return username


class CeremonyOrchestrator:
    def __init__(
        self,
        config: RelyingPartyConfig,
        challenges: ChallengeStore,
        repository: CredentialRepository,
        clock: Optional[Clock] = None,
    ) -> None:
        self.config = config
        self.challenges = challenges
        self.repository = repository
        self._clock = clock or utcnow
        self._attestation = AttestationVerifier(config)
        self._assertion = AssertionVerifier(config)

    # Registration

    def begin_registration(self, username: str, display_name: Optional[str] = None) -> CreationOptions:
        username = normalize_username(username)
        if display_name is not None and not isinstance(display_name, str):
            raise InvalidInput("display name must be a string")
        display_name = (display_name or "").strip() or username

        user = self._registration_user(username, display_name)
        context = self._new_context(
            REGISTRATION,
            user,
            algorithms=self.config.algorithms,
            attestation=self.config.attestation_preference,
            attestation_formats=self.config.attestation_formats,
        )
        self._store_context(context)
        logger.info("Registration begun for user %r (challenge %s)", user.name, challenge_prefix(context.challenge))

        return CreationOptions(
            challenge=context.challenge,
            rp_id=context.rp_id,
            rp_name=context.rp_name,
            user_id=context.user_id,
            user_name=context.user_name,
            user_display_name=context.user_display_name,
            algorithms=context.algorithms,
            timeout_ms=context.timeout_ms,
            attestation=context.attestation,
            attestation_formats=context.attestation_formats,
            user_verification=context.user_verification,
        )

    def finish_registration(self, response: CreationResponse) -> RegistrationResult:
        context = self._consume_context(response.client_data, REGISTRATION)
        now = self._clock()

        credential = self._attestation.verify(response, context, now)
        try:
            user = self.repository.find_user_by_id(context.user_id)
            # Another pending registration for the same user may have finished first.
            self.repository.create_credential(credential, exclusive=True)
        except NotFound as exc:
            logger.warning("Registration for %r finished after the user was removed", context.user_name)
            raise ChallengeExpiredOrUnknown("the registration is no longer pending") from exc
        except Conflict:
            logger.warning(
                "Rejected registration for user %r: credential or account already registered",
                context.user_name,
            )
            raise

        logger.info("Registered credential for user %r (%s attestation)", user.name, credential.attestation_type)
        return RegistrationResult(user=user, credential=credential)

    # Authentication

    def begin_login(self, username: str) -> RequestOptions:
        username = normalize_username(username)
        user = self.repository.find_user_by_name(username)

        credentials = self.repository.list_credentials(user.id)
        if not credentials:
            raise NoCredentialsRegistered(f"user {username!r} has no registered credentials")

        context = self._new_context(
            AUTHENTICATION,
            user,
            allowed_credentials=tuple(credential.id for credential in credentials),
        )
        self._store_context(context)
        logger.info("Login begun for user %r (challenge %s)", user.name, challenge_prefix(context.challenge))

        return RequestOptions(
            challenge=context.challenge,
            rp_id=context.rp_id,
            allowed_credentials=context.allowed_credentials,
            transports=tuple(tuple(sorted(credential.transports)) for credential in credentials),
            timeout_ms=context.timeout_ms,
            user_verification=context.user_verification,
        )

    def finish_login(self, response: AssertionResponse) -> AuthenticationResult:
        context = self._consume_context(response.client_data, AUTHENTICATION)

        # Only the session user's own credentials can be resolved.
        credentials = self.repository.list_credentials(context.user_id)
        credential = next((item for item in credentials if item.id == response.credential_id), None)
        if credential is None:
            logger.warning("Login for user %r presented a credential it does not own", context.user_name)
            raise CredentialNotAllowed("credential is not registered to this user")

        outcome = self._assertion.verify(response, context, credential)

        if outcome.advance_counter:
            try:
                self.repository.update_sign_count(credential.id, outcome.sign_count)
            except Conflict as exc:
                # A concurrent login already moved the counter to or past ours.
                logger.warning("Sign counter race for user %r", context.user_name)
                raise PossibleCloneDetected("sign counter was advanced concurrently") from exc

        logger.info("Login finished for user %r", context.user_name)
        return AuthenticationResult(
            username=context.user_name,
            user_id=context.user_id,
            credential_id=credential.id,
            sign_count=outcome.sign_count,
            clone_warning=outcome.clone_warning,
            backup_state_changed=outcome.backup_state_changed,
            warnings=outcome.warnings,
        )

    # Housekeeping

    def reclaim(self, now: Optional[datetime] = None) -> int:
        """Purge expired challenges and users whose registration was abandoned."""

        now = now or self._clock()
        purged = self.challenges.purge_expired(now)
        orphans = self.repository.delete_orphaned_users(
            now - self.config.orphan_grace,
            keep=self.challenges.pending_owner_ids(),
        )
        if purged or orphans:
            logger.info("Reclaimed %d expired challenges and %d orphaned users", purged, orphans)
        return purged + orphans

    def _registration_user(self, username: str, display_name: str) -> User:
        try:
            user = self.repository.find_user_by_name(username)
        except NotFound:
            return self.repository.create_user(username, display_name)

        # A user without credentials is an abandoned registration; resume it.
        if self.repository.list_credentials(user.id):
            raise Conflict(f"user {username!r} already exists")
        logger.info("Resuming unfinished registration for user %r", username)
        return user

    def _new_context(self, ceremony: str, user: User, **parameters) -> SessionContext:
        return SessionContext(
            challenge=os.urandom(self.config.challenge_length),
            ceremony=ceremony,
            rp_id=self.config.rp_id,
            rp_name=self.config.rp_name,
            user_id=user.id,
            user_name=user.name,
            user_display_name=user.display_name,
            expires_at=self._clock() + self.config.challenge_ttl,
            user_verification=self.config.user_verification,
            timeout_ms=self.config.timeout_ms,
            **parameters,
        )

    def _store_context(self, context: SessionContext) -> None:
        self.challenges.put(
            context.challenge,
            context.ceremony,
            context.user_id,
            context.encode(),
            context.expires_at,
        )

    def _consume_context(self, raw_client_data: bytes, ceremony: str) -> SessionContext:
        client_data = parse_client_data(raw_client_data)
        challenge = bytes(client_data.challenge)
        try:
            blob = self.challenges.consume(challenge, ceremony)
        except NotFound as exc:
            logger.warning("Unknown or expired %s challenge %s", ceremony, challenge_prefix(challenge))
            raise ChallengeExpiredOrUnknown(f"{ceremony} challenge is unknown, used or expired") from exc
        return SessionContext.decode(blob)
