from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest

from workshop.database import Database


@pytest.fixture()
def database(tmp_path: Path) -> Database:
    db = Database(tmp_path / "workshop.sqlite3")
    db.initialize()
    return db


@pytest.fixture()
def seed_pool(database: Database) -> Callable[[int, int], None]:
    def _seed(clusters: int, demo_users: int) -> None:
        for index in range(1, clusters + 1):
            database.create_cluster(f"cluster-{index}", f"https://console.cluster-{index}.example.com")
        for index in range(1, demo_users + 1):
            database.create_demo_user(f"demo{index}", f"secret-{index}")

    return _seed


def _assert_consistent(database: Database) -> None:
    participants = database.list_participants()
    by_cluster = {p.cluster_id: p for p in participants if p.cluster_id is not None}
    by_demo_user = {p.demo_user_id: p for p in participants if p.demo_user_id is not None}

    for participant in participants:
        assert (participant.cluster_id is None) == (participant.demo_user_id is None)

    for cluster in database.list_clusters():
        if cluster.is_reserved:
            holder = by_cluster.get(cluster.id)
            assert holder is not None, f"cluster {cluster.name} reserved without a participant"
            assert holder.email == cluster.reserved_by
            assert cluster.reserved_at is not None
        else:
            assert cluster.id not in by_cluster
            assert cluster.reserved_by is None and cluster.reserved_at is None

    for demo_user in database.list_demo_users():
        if demo_user.is_reserved:
            holder = by_demo_user.get(demo_user.id)
            assert holder is not None, f"demo user {demo_user.username} reserved without a participant"
            assert holder.email == demo_user.reserved_by
        else:
            assert demo_user.id not in by_demo_user


@pytest.fixture()
def assert_consistent() -> Callable[[Database], None]:
    return _assert_consistent
