"""Aggregate reservation counts for operators."""

from __future__ import annotations

from dataclasses import dataclass

from .database import Database


@dataclass(frozen=True)
class PoolCounts:
    total: int
    reserved: int

    @property
    def available(self) -> int:
        return self.total - self.reserved


@dataclass(frozen=True)
class ParticipantCounts:
    total: int
    with_binding: int


@dataclass(frozen=True)
class PoolStats:
    clusters: PoolCounts
    demo_users: PoolCounts
    participants: ParticipantCounts


def collect_stats(database: Database) -> PoolStats:
    """Read the current counts straight from the store."""

    return PoolStats(
        clusters=PoolCounts(
            total=database.count_clusters(),
            reserved=database.count_clusters(reserved=True),
        ),
        demo_users=PoolCounts(
            total=database.count_demo_users(),
            reserved=database.count_demo_users(reserved=True),
        ),
        participants=ParticipantCounts(
            total=database.count_participants(),
            with_binding=database.count_participants(bound=True),
        ),
    )


__all__ = ["ParticipantCounts", "PoolCounts", "PoolStats", "collect_stats"]
