"""Idempotent bulk loading of clusters and demo users from a YAML document."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional

import yaml

from .database import Database
from .errors import DuplicateRecord, InvalidInput

logger = logging.getLogger("workshop.loader")

DEFAULT_SHARED_CLUSTER_NAME = "shared-cluster"

SECTION_SHARED = "shared"
SECTION_CLUSTERS = "clusters"
SECTION_DEMO_USERS = "demo-users"
ALL_SECTIONS: FrozenSet[str] = frozenset({SECTION_SHARED, SECTION_CLUSTERS, SECTION_DEMO_USERS})


def _optional_text(value: object) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class SharedClusterEntry:
    url: Optional[str]
    name: str = DEFAULT_SHARED_CLUSTER_NAME

    @staticmethod
    def from_dict(data: Mapping[str, object]) -> "SharedClusterEntry":
        # ``cluster_url`` is accepted for files written for the older tooling.
        url = _optional_text(data.get("url")) or _optional_text(data.get("cluster_url"))
        name = _optional_text(data.get("name")) or DEFAULT_SHARED_CLUSTER_NAME
        return SharedClusterEntry(url=url, name=name)


@dataclass(frozen=True)
class ClusterEntry:
    cluster_url: Optional[str]
    username: Optional[str] = None

    @staticmethod
    def from_dict(data: Mapping[str, object]) -> "ClusterEntry":
        return ClusterEntry(
            cluster_url=_optional_text(data.get("cluster_url")),
            username=_optional_text(data.get("username")),
        )

    def derived_name(self, position: int) -> str:
        """Unique cluster name; ``position`` is the 1-based index in the file."""

        if self.username:
            return f"cluster-{self.username}"
        return f"cluster-{position}"


@dataclass(frozen=True)
class DemoUserEntry:
    username: Optional[str]
    password: Optional[str]

    @staticmethod
    def from_dict(data: Mapping[str, object]) -> "DemoUserEntry":
        password = data.get("password")
        return DemoUserEntry(
            username=_optional_text(data.get("username")),
            password=str(password) if password is not None and str(password) else None,
        )


@dataclass(frozen=True)
class PoolDocument:
    shared_cluster: Optional[SharedClusterEntry] = None
    user_clusters: List[ClusterEntry] = field(default_factory=list)
    demo_users: List[DemoUserEntry] = field(default_factory=list)

    @staticmethod
    def from_dict(data: Mapping[str, object]) -> "PoolDocument":
        shared_raw = data.get("shared_cluster")
        if shared_raw is not None and not isinstance(shared_raw, Mapping):
            raise InvalidInput("'shared_cluster' must be a mapping")

        return PoolDocument(
            shared_cluster=SharedClusterEntry.from_dict(shared_raw) if shared_raw is not None else None,
            user_clusters=[ClusterEntry.from_dict(item) for item in _section(data, "user_clusters")],
            demo_users=[DemoUserEntry.from_dict(item) for item in _section(data, "demo_users")],
        )


def _section(data: Mapping[str, object], key: str) -> List[Mapping[str, object]]:
    raw = data.get(key)
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise InvalidInput(f"'{key}' must be a list")
    entries: List[Mapping[str, object]] = []
    for item in raw:
        if not isinstance(item, Mapping):
            raise InvalidInput(f"Entries under '{key}' must be mappings")
        entries.append(item)
    return entries


def load_pool_document(path: Path) -> PoolDocument:
    """Parse a pool description from a YAML file."""

    try:
        with path.open("r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}
    except OSError as exc:
        raise InvalidInput(f"Unable to read {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise InvalidInput(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(raw, Mapping):
        raise InvalidInput("Pool file must contain a mapping at the top level")
    return PoolDocument.from_dict(raw)


@dataclass
class SectionReport:
    added: int = 0
    skipped: int = 0


@dataclass
class LoadReport:
    shared_cluster: SectionReport = field(default_factory=SectionReport)
    clusters: SectionReport = field(default_factory=SectionReport)
    demo_users: SectionReport = field(default_factory=SectionReport)

    def as_dict(self) -> Dict[str, Dict[str, int]]:
        return {
            "shared_cluster": {"added": self.shared_cluster.added, "skipped": self.shared_cluster.skipped},
            "clusters": {"added": self.clusters.added, "skipped": self.clusters.skipped},
            "demo_users": {"added": self.demo_users.added, "skipped": self.demo_users.skipped},
        }


class PoolLoader:
    """Insert the records a :class:`PoolDocument` describes, skipping existing keys."""

    def __init__(self, database: Database) -> None:
        self._database = database

    def load(self, document: PoolDocument, sections: Iterable[str] = ALL_SECTIONS) -> LoadReport:
        selected = frozenset(sections)
        unknown = selected - ALL_SECTIONS
        if unknown:
            raise InvalidInput(f"Unknown sections: {', '.join(sorted(unknown))}")

        report = LoadReport()
        if SECTION_SHARED in selected and document.shared_cluster is not None:
            self._load_shared_cluster(document.shared_cluster, report.shared_cluster)
        if SECTION_CLUSTERS in selected:
            self._load_clusters(document.user_clusters, report.clusters)
        if SECTION_DEMO_USERS in selected:
            self._load_demo_users(document.demo_users, report.demo_users)
        return report

    def _load_shared_cluster(self, entry: SharedClusterEntry, report: SectionReport) -> None:
        if not entry.url:
            raise InvalidInput("shared_cluster.url is required")

        if self._database.get_shared_cluster_by_name(entry.name) is not None:
            logger.info("Shared cluster %s already exists, skipping", entry.name)
            report.skipped += 1
            return

        try:
            self._database.create_shared_cluster(entry.name, entry.url)
        except DuplicateRecord:
            report.skipped += 1
            return
        logger.info("Shared cluster %s added", entry.name)
        report.added += 1

    def _load_clusters(self, entries: List[ClusterEntry], report: SectionReport) -> None:
        for position, entry in enumerate(entries, start=1):
            if not entry.cluster_url:
                logger.warning("Skipping cluster without cluster_url (user: %s)", entry.username or "unknown")
                report.skipped += 1
                continue

            name = entry.derived_name(position)
            if self._database.get_cluster_by_name(name) is not None:
                logger.info("Cluster %s already exists, skipping", name)
                report.skipped += 1
                continue

            try:
                self._database.create_cluster(name, entry.cluster_url)
            except DuplicateRecord:
                report.skipped += 1
                continue
            logger.info("Cluster %s added", name)
            report.added += 1

        logger.info("User clusters: %d added, %d skipped", report.added, report.skipped)

    def _load_demo_users(self, entries: List[DemoUserEntry], report: SectionReport) -> None:
        for entry in entries:
            if not entry.username or not entry.password:
                logger.warning("Skipping demo user with missing username or password")
                report.skipped += 1
                continue

            if self._database.get_demo_user_by_username(entry.username) is not None:
                logger.info("Demo user %s already exists, skipping", entry.username)
                report.skipped += 1
                continue

            try:
                self._database.create_demo_user(entry.username, entry.password)
            except DuplicateRecord:
                report.skipped += 1
                continue
            logger.info("Demo user %s added", entry.username)
            report.added += 1

        logger.info("Demo users: %d added, %d skipped", report.added, report.skipped)


__all__ = [
    "ALL_SECTIONS",
    "ClusterEntry",
    "DemoUserEntry",
    "LoadReport",
    "PoolDocument",
    "PoolLoader",
    "SECTION_CLUSTERS",
    "SECTION_DEMO_USERS",
    "SECTION_SHARED",
    "SectionReport",
    "SharedClusterEntry",
    "load_pool_document",
]
