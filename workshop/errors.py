"""Exception hierarchy shared by the store, allocator and HTTP layer."""

from __future__ import annotations

from fastapi import status


class WorkshopError(Exception):
    """Base class for errors that map onto an HTTP status code."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR


class InvalidInput(WorkshopError):
    """Malformed or missing request fields."""

    status_code = status.HTTP_400_BAD_REQUEST


class InvalidCredentials(WorkshopError):
    """The email is known but the password does not match."""

    status_code = status.HTTP_401_UNAUTHORIZED


class Unauthenticated(WorkshopError):
    """Missing, unknown or expired session token."""

    status_code = status.HTTP_401_UNAUTHORIZED


class NotFound(WorkshopError):
    status_code = status.HTTP_404_NOT_FOUND


class ResourceExhausted(WorkshopError):
    """No free cluster and demo user pair could be reserved."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class Conflict(WorkshopError):
    """A conditional update lost a race against another writer."""

    status_code = status.HTTP_409_CONFLICT


class DuplicateRecord(Conflict):
    """A record with the same unique key already exists."""


class StoreFailure(WorkshopError):
    """The underlying database failed to complete an operation."""


__all__ = [
    "WorkshopError",
    "InvalidInput",
    "InvalidCredentials",
    "Unauthenticated",
    "NotFound",
    "ResourceExhausted",
    "Conflict",
    "DuplicateRecord",
    "StoreFailure",
]
