"""Domain models for the workshop reservation store."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class Cluster:
    """A reservable workshop cluster."""

    id: int
    name: str
    url: str
    username: Optional[str]
    password: Optional[str]
    is_reserved: bool
    reserved_by: Optional[str]
    reserved_at: Optional[datetime]
    created_at: datetime


@dataclass(frozen=True)
class DemoUser:
    """A credential pair handed out together with a cluster."""

    id: int
    username: str
    password: str
    is_reserved: bool
    reserved_by: Optional[str]
    reserved_at: Optional[datetime]
    created_at: datetime


@dataclass(frozen=True)
class SharedCluster:
    """Cluster endpoint visible to every participant, accessed with their own demo user."""

    id: int
    name: str
    url: str
    created_at: datetime


@dataclass(frozen=True)
class Participant:
    """A workshop account. The password hash never leaves the database layer."""

    id: int
    email: str
    cluster_id: Optional[int]
    demo_user_id: Optional[int]
    session_token: Optional[str]
    created_at: datetime
    last_login: Optional[datetime]

    @property
    def is_bound(self) -> bool:
        return self.cluster_id is not None and self.demo_user_id is not None


@dataclass(frozen=True)
class Binding:
    """Result of a successful allocation."""

    participant_id: int
    cluster: Cluster
    demo_user: DemoUser
    session_token: str


@dataclass(frozen=True)
class ClusterCredentials:
    """What a participant is shown: where to log in and with which account."""

    name: str
    url: str
    username: str
    password: str


__all__ = [
    "Binding",
    "Cluster",
    "ClusterCredentials",
    "DemoUser",
    "Participant",
    "SharedCluster",
]
