"""Login, session token and credential lookup for workshop participants."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from .allocator import Allocator
from .database import Database, normalize_email
from .errors import DuplicateRecord, InvalidCredentials, InvalidInput, NotFound, Unauthenticated
from .models import Binding, ClusterCredentials, Participant

logger = logging.getLogger("workshop.sessions")

DEFAULT_MIN_PASSWORD_LENGTH = 4


@dataclass(frozen=True)
class LoginResult:
    token: str
    cluster: ClusterCredentials


def _credentials_for(binding: Binding) -> ClusterCredentials:
    return ClusterCredentials(
        name=binding.cluster.name,
        url=binding.cluster.url,
        username=binding.demo_user.username,
        password=binding.demo_user.password,
    )


class SessionGate:
    """Authenticate participants and hand out their cluster credentials.

    A participant is created the first time an email is seen. Every successful
    login mints a new token which overwrites the previous one, so each
    participant has at most one active session. Tokens do not expire unless a
    ``session_ttl`` is configured, in which case the lifetime is measured from
    the login that issued the token.
    """

    def __init__(
        self,
        database: Database,
        allocator: Allocator,
        *,
        min_password_length: int = DEFAULT_MIN_PASSWORD_LENGTH,
        session_ttl: Optional[timedelta] = None,
    ) -> None:
        self._database = database
        self._allocator = allocator
        self._min_password_length = min_password_length
        self._session_ttl = session_ttl

    @property
    def session_ttl(self) -> Optional[timedelta]:
        return self._session_ttl

    def login(self, email: Optional[str], password: Optional[str]) -> LoginResult:
        if not email or not email.strip() or not password:
            raise InvalidInput("Email and password are required")
        if len(password) < self._min_password_length:
            raise InvalidInput(f"Password must be at least {self._min_password_length} characters")

        normalized_email = normalize_email(email)
        participant = self._database.get_participant_by_email(normalized_email)
        if participant is None:
            participant = self._register(normalized_email, password)
        elif not self._database.verify_participant_password(participant.id, password):
            logger.warning("Failed login attempt for %s", normalized_email)
            raise InvalidCredentials("Invalid credentials")

        binding = self._allocator.acquire(participant)
        return LoginResult(token=binding.session_token, cluster=_credentials_for(binding))

    def authenticate(self, token: Optional[str]) -> Participant:
        if not token:
            raise Unauthenticated("No token provided")

        participant = self._database.get_participant_by_session_token(token)
        if participant is None:
            raise Unauthenticated("Invalid token")

        if self._is_expired(participant):
            self._database.clear_session_token(token)
            logger.info("Session for participant %s expired", participant.id)
            raise Unauthenticated("Session expired")

        return participant

    def logout(self, token: Optional[str]) -> None:
        if not token:
            raise InvalidInput("Token is required")
        if not self._database.clear_session_token(token):
            raise Unauthenticated("Invalid token")

    def release(self, token: Optional[str]) -> None:
        participant = self.authenticate(token)
        self._allocator.release(participant)

    def assigned_cluster(self, participant: Participant) -> ClusterCredentials:
        if participant.cluster_id is None or participant.demo_user_id is None:
            raise NotFound("No cluster assigned")

        cluster = self._database.get_cluster(participant.cluster_id)
        demo_user = self._database.get_demo_user(participant.demo_user_id)
        if cluster is None or demo_user is None:
            raise NotFound("Cluster or demo user not found")

        return ClusterCredentials(
            name=cluster.name,
            url=cluster.url,
            username=demo_user.username,
            password=demo_user.password,
        )

    def shared_cluster(self, participant: Participant) -> ClusterCredentials:
        """Shared endpoint details paired with the participant's own demo user."""

        if participant.demo_user_id is None:
            raise NotFound("No demo user assigned")

        shared = self._database.get_primary_shared_cluster()
        if shared is None:
            raise NotFound("No shared cluster configured")

        demo_user = self._database.get_demo_user(participant.demo_user_id)
        if demo_user is None:
            raise NotFound("Demo user not found")

        return ClusterCredentials(
            name=shared.name,
            url=shared.url,
            username=demo_user.username,
            password=demo_user.password,
        )

    def _register(self, email: str, password: str) -> Participant:
        try:
            participant = self._database.create_participant(email, password)
        except DuplicateRecord:
            # A concurrent login created the same email first.
            existing = self._database.get_participant_by_email(email)
            if existing is None or not self._database.verify_participant_password(existing.id, password):
                raise InvalidCredentials("Invalid credentials")
            return existing
        logger.info("Registered participant %s", participant.id)
        return participant

    def _is_expired(self, participant: Participant) -> bool:
        if self._session_ttl is None or participant.last_login is None:
            return False
        return participant.last_login + self._session_ttl <= datetime.now(timezone.utc)


__all__ = ["DEFAULT_MIN_PASSWORD_LENGTH", "LoginResult", "SessionGate"]
