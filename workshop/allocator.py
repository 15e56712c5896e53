"""Cluster and demo user allocation built on the store's conditional updates."""

from __future__ import annotations

import logging
import random
import secrets
from typing import Callable, List, Optional, Sequence, Set, TypeVar

from .database import Database
from .errors import Conflict, NotFound, ResourceExhausted
from .models import Binding, Cluster, DemoUser, Participant

logger = logging.getLogger("workshop.allocator")

T = TypeVar("T")


def generate_session_token() -> str:
    return secrets.token_urlsafe(32)


def shuffle_candidates(candidates: Sequence[T], rng: random.Random) -> List[T]:
    """Return a uniformly shuffled copy of ``candidates``."""

    shuffled = list(candidates)
    rng.shuffle(shuffled)
    return shuffled


def _held_by(record: Cluster | DemoUser | None, participant: Participant) -> bool:
    return record is not None and record.is_reserved and record.reserved_by == participant.email


class Allocator:
    """Bind participants to one free cluster and one free demo user.

    No in-process locking is used. Every reservation is a single conditional
    update, so when two participants race for the same cluster exactly one of
    them wins and the other moves on to its next candidate. A participant
    holding a cluster that loses a demo user race keeps the cluster and picks
    another demo user. Reservations taken during a failed attempt are released
    before the attempt is abandoned.
    """

    def __init__(
        self,
        database: Database,
        *,
        rng: Optional[random.Random] = None,
        token_factory: Callable[[], str] = generate_session_token,
    ) -> None:
        self._database = database
        self._rng = rng if rng is not None else random.SystemRandom()
        self._token_factory = token_factory

    def acquire(self, participant: Participant) -> Binding:
        """Return the participant's binding, allocating a new one if needed."""

        if participant.is_bound:
            resumed = self._resume(participant)
            if resumed is not None:
                logger.info("Participant %s resumed cluster %s", participant.id, resumed.cluster.name)
                return resumed
            participant = self._discard_stale_binding(participant)

        candidates = self._database.list_clusters(reserved=False)
        if not candidates:
            logger.warning("No clusters available for participant %s", participant.id)
            raise ResourceExhausted("No clusters available at the moment")

        attempted: Set[int] = set()
        binding = self._traverse(participant, candidates, attempted)
        if binding is None:
            # Clusters added or freed while the first pass ran get one look.
            fresh = [
                cluster
                for cluster in self._database.list_clusters(reserved=False)
                if cluster.id not in attempted
            ]
            binding = self._traverse(participant, fresh, attempted)

        if binding is None:
            logger.warning(
                "Participant %s could not reserve any of %d candidate clusters",
                participant.id,
                len(attempted),
            )
            raise ResourceExhausted("Unable to reserve any cluster at the moment")

        logger.info(
            "Participant %s reserved cluster %s with demo user %s",
            participant.id,
            binding.cluster.name,
            binding.demo_user.username,
        )
        return binding

    def release(self, participant: Participant) -> None:
        """Return the participant's cluster and demo user to the pool."""

        if participant.cluster_id is None or participant.demo_user_id is None:
            raise NotFound("No cluster assigned to release")

        released = self._database.release_binding(
            participant.id,
            cluster_id=participant.cluster_id,
            demo_user_id=participant.demo_user_id,
            reserved_by=participant.email,
        )
        if not released:
            raise NotFound("No cluster assigned to release")
        logger.info("Participant %s released cluster %s", participant.id, participant.cluster_id)

    def release_cluster(self, cluster_id: int) -> Optional[Participant]:
        """Free a cluster by id along with the demo user of whoever holds it.

        Returns the participant that was bound to the cluster, if any.
        """

        if self._database.get_cluster(cluster_id) is None:
            raise NotFound(f"Cluster with ID {cluster_id} not found")

        holder = self._database.get_participant_by_cluster(cluster_id)
        if holder is not None and holder.demo_user_id is not None:
            self._database.release_binding(
                holder.id,
                cluster_id=cluster_id,
                demo_user_id=holder.demo_user_id,
                reserved_by=holder.email,
            )

        self._database.release_cluster(cluster_id)
        logger.info("Cluster %s released by operator", cluster_id)
        return holder

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _traverse(
        self,
        participant: Participant,
        candidates: Sequence[Cluster],
        attempted: Set[int],
    ) -> Optional[Binding]:
        for cluster in shuffle_candidates(candidates, self._rng):
            attempted.add(cluster.id)
            try:
                return self._try_cluster(participant, cluster)
            except Conflict as exc:
                logger.debug("Skipping cluster %s for participant %s: %s", cluster.id, participant.id, exc)
        return None

    def _resume(self, participant: Participant) -> Optional[Binding]:
        if participant.cluster_id is None or participant.demo_user_id is None:
            return None

        cluster = self._database.get_cluster(participant.cluster_id)
        demo_user = self._database.get_demo_user(participant.demo_user_id)
        if cluster is None or demo_user is None:
            return None
        if not (_held_by(cluster, participant) and _held_by(demo_user, participant)):
            return None

        token = self._token_factory()
        if not self._database.set_session_token(participant.id, token):
            return None
        return Binding(
            participant_id=participant.id,
            cluster=cluster,
            demo_user=demo_user,
            session_token=token,
        )

    def _discard_stale_binding(self, participant: Participant) -> Participant:
        logger.warning(
            "Participant %s holds a stale binding (cluster %s, demo user %s); discarding it",
            participant.id,
            participant.cluster_id,
            participant.demo_user_id,
        )
        self._database.release_binding(
            participant.id,
            cluster_id=int(participant.cluster_id),  # type: ignore[arg-type]
            demo_user_id=int(participant.demo_user_id),  # type: ignore[arg-type]
            reserved_by=participant.email,
        )

        refreshed = self._database.get_participant(participant.id)
        if refreshed is None:
            raise NotFound("Participant no longer exists")
        return refreshed

    def _try_cluster(self, participant: Participant, cluster: Cluster) -> Binding:
        owner = participant.email
        if not self._database.reserve_cluster(cluster.id, owner):
            raise Conflict(f"cluster {cluster.id} was reserved by another participant")

        try:
            demo_user = self._reserve_demo_user(owner)
        except Exception:
            self._rollback(owner, cluster_id=cluster.id)
            raise

        token = self._token_factory()
        try:
            bound = self._database.bind_participant(
                participant.id,
                cluster_id=cluster.id,
                demo_user_id=demo_user.id,
                session_token=token,
            )
        except Exception:
            self._rollback(owner, cluster_id=cluster.id, demo_user_id=demo_user.id)
            raise

        if not bound:
            self._rollback(owner, cluster_id=cluster.id, demo_user_id=demo_user.id)
            # Another login for the same participant finished first.
            refreshed = self._database.get_participant(participant.id)
            if refreshed is not None and refreshed.is_bound:
                resumed = self._resume(refreshed)
                if resumed is not None:
                    return resumed
            raise Conflict(f"participant {participant.id} was bound concurrently")

        reserved_cluster = self._database.get_cluster(cluster.id) or cluster
        reserved_demo_user = self._database.get_demo_user(demo_user.id) or demo_user
        return Binding(
            participant_id=participant.id,
            cluster=reserved_cluster,
            demo_user=reserved_demo_user,
            session_token=token,
        )

    def _reserve_demo_user(self, owner: str) -> DemoUser:
        available = self._database.list_demo_users(reserved=False)
        # Each lost race means another participant took a demo user, so the
        # number of picks is bounded by the first listing.
        for _ in range(len(available)):
            demo_user = self._rng.choice(available)
            if self._database.reserve_demo_user(demo_user.id, owner):
                return demo_user
            logger.debug("Demo user %s was reserved by another participant", demo_user.id)
            available = self._database.list_demo_users(reserved=False)
            if not available:
                break
        raise Conflict("no demo users available")

    def _rollback(self, owner: str, *, cluster_id: int, demo_user_id: Optional[int] = None) -> None:
        try:
            self._database.release_reservations(owner, cluster_id=cluster_id, demo_user_id=demo_user_id)
        except Exception:
            logger.exception(
                "Failed to roll back reservation of cluster %s / demo user %s for %s",
                cluster_id,
                demo_user_id,
                owner,
            )
            raise


__all__ = ["Allocator", "generate_session_token", "shuffle_candidates"]
