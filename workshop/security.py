"""Bearer session token authentication for the participant API."""
from __future__ import annotations

import anyio
from fastapi import Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .errors import Unauthenticated
from .models import Participant
from .sessions import SessionGate


class SessionTokenAuth:
    """Resolve the ``Authorization: Bearer`` header to a participant."""

    def __init__(self, gate: SessionGate) -> None:
        self._gate = gate
        self._bearer = HTTPBearer(auto_error=False)

    async def __call__(self, request: Request) -> Participant:
        credentials: HTTPAuthorizationCredentials | None = await self._bearer(request)  # type: ignore[assignment]
        if credentials is None or credentials.scheme.lower() != "bearer":
            raise Unauthenticated("No token provided")

        token = credentials.credentials.strip()
        return await anyio.to_thread.run_sync(self._gate.authenticate, token)


__all__ = ["SessionTokenAuth"]
