"""SQLite-backed persistence for clusters, demo users and participants."""
from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Mapping, Optional

from passlib.context import CryptContext

from .errors import DuplicateRecord, StoreFailure
from .models import Cluster, DemoUser, Participant, SharedCluster

_BUSY_TIMEOUT_SECONDS = 30.0

_pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

# Columns that conditional updates may read or write, per table.
_MUTABLE_COLUMNS: Dict[str, frozenset] = {
    "clusters": frozenset({"is_reserved", "reserved_by", "reserved_at"}),
    "demo_users": frozenset({"is_reserved", "reserved_by", "reserved_at"}),
    "participants": frozenset({"cluster_id", "demo_user_id", "session_token", "last_login"}),
}


def _ensure_directory(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def resolve_database_path(env_value: Optional[str]) -> Path:
    """Resolve the on-disk path for the reservation database."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    base_dir = Path(__file__).resolve().parent.parent / "data"
    return (base_dir / "workshop.sqlite3").resolve(strict=False)


def _current_timestamp() -> datetime:
    return datetime.now(timezone.utc)


def _serialize_datetime(value: datetime) -> str:
    return value.isoformat()


def _parse_datetime(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _parse_optional_datetime(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return _parse_datetime(str(value))


def normalize_email(email: str) -> str:
    return email.strip().lower()


def hash_password(password: str) -> str:
    return _pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    try:
        return _pwd_context.verify(password, hashed)
    except ValueError:
        return False


def _reservation_changes(reserved_by: Optional[str]) -> Dict[str, object]:
    if reserved_by is None:
        return {"is_reserved": 0, "reserved_by": None, "reserved_at": None}
    return {
        "is_reserved": 1,
        "reserved_by": reserved_by,
        "reserved_at": _serialize_datetime(_current_timestamp()),
    }


def _release_held(conn: sqlite3.Connection, table: str, record_id: int, reserved_by: str) -> None:
    conn.execute(
        f"""
        UPDATE {table}
           SET is_reserved = 0, reserved_by = NULL, reserved_at = NULL
         WHERE id = ? AND is_reserved = 1 AND reserved_by = ?
        """,
        (record_id, reserved_by),
    )


class Database:
    """Thin wrapper around SQLite exposing lookups and conditional updates.

    Every public method opens its own connection, so a single instance can be
    shared by all request handlers. Writers are serialized by SQLite itself;
    :meth:`compare_and_set` is the only primitive the allocator relies on for
    mutual exclusion.
    """

    def __init__(self, path: Path) -> None:
        _ensure_directory(path)
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self._path, timeout=_BUSY_TIMEOUT_SECONDS, check_same_thread=False)
        except sqlite3.Error as exc:
            raise StoreFailure(f"Unable to open database at {self._path}: {exc}") from exc

        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys = ON")
            with conn:
                yield conn
        except sqlite3.Error as exc:
            raise StoreFailure(f"Database operation failed: {exc}") from exc
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create the required tables if they do not already exist."""

        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS clusters (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL UNIQUE,
                    url TEXT NOT NULL,
                    username TEXT,
                    password TEXT,
                    is_reserved INTEGER NOT NULL DEFAULT 0,
                    reserved_by TEXT,
                    reserved_at TEXT,
                    created_at TEXT NOT NULL,
                    CHECK (
                        (is_reserved = 0 AND reserved_by IS NULL AND reserved_at IS NULL)
                        OR (is_reserved = 1 AND reserved_by IS NOT NULL AND reserved_at IS NOT NULL)
                    )
                );

                CREATE TABLE IF NOT EXISTS demo_users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    username TEXT NOT NULL UNIQUE,
                    password TEXT NOT NULL,
                    is_reserved INTEGER NOT NULL DEFAULT 0,
                    reserved_by TEXT,
                    reserved_at TEXT,
                    created_at TEXT NOT NULL,
                    CHECK (
                        (is_reserved = 0 AND reserved_by IS NULL AND reserved_at IS NULL)
                        OR (is_reserved = 1 AND reserved_by IS NOT NULL AND reserved_at IS NOT NULL)
                    )
                );

                CREATE TABLE IF NOT EXISTS shared_clusters (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL UNIQUE,
                    url TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS participants (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    email TEXT NOT NULL UNIQUE,
                    password_hash TEXT NOT NULL,
                    cluster_id INTEGER REFERENCES clusters(id),
                    demo_user_id INTEGER REFERENCES demo_users(id),
                    session_token TEXT UNIQUE,
                    created_at TEXT NOT NULL,
                    last_login TEXT,
                    CHECK ((cluster_id IS NULL) = (demo_user_id IS NULL))
                );

                CREATE INDEX IF NOT EXISTS idx_clusters_is_reserved ON clusters(is_reserved);
                CREATE INDEX IF NOT EXISTS idx_demo_users_is_reserved ON demo_users(is_reserved);
                CREATE UNIQUE INDEX IF NOT EXISTS idx_participants_cluster_id ON participants(cluster_id);
                CREATE UNIQUE INDEX IF NOT EXISTS idx_participants_demo_user_id ON participants(demo_user_id);
                """
            )

    # ------------------------------------------------------------------
    # Conditional updates
    # ------------------------------------------------------------------
    def compare_and_set(
        self,
        table: str,
        record_id: int,
        changes: Mapping[str, object],
        expected: Mapping[str, object],
    ) -> bool:
        """Apply ``changes`` to a row only if it currently matches ``expected``.

        ``None`` in ``expected`` matches SQL ``NULL``. Returns ``True`` when the
        row was updated and ``False`` when it no longer matched (or does not
        exist). The check and the write happen in one ``UPDATE`` statement.
        """

        allowed = _MUTABLE_COLUMNS.get(table)
        if allowed is None:
            raise ValueError(f"Conditional updates are not supported for table '{table}'")
        if not changes:
            raise ValueError("At least one column must be changed")
        unknown = (set(changes) | set(expected)) - allowed
        if unknown:
            raise ValueError(f"Unsupported columns for {table}: {', '.join(sorted(unknown))}")

        assignments = [f"{column} = ?" for column in changes]
        values: List[object] = list(changes.values())
        conditions = ["id = ?"]
        values.append(record_id)
        for column, value in expected.items():
            if value is None:
                conditions.append(f"{column} IS NULL")
            else:
                conditions.append(f"{column} = ?")
                values.append(value)

        query = f"UPDATE {table} SET {', '.join(assignments)} WHERE {' AND '.join(conditions)}"
        with self._connect() as conn:
            cursor = conn.execute(query, values)
            return cursor.rowcount == 1

    def reserve_cluster(self, cluster_id: int, reserved_by: str) -> bool:
        return self.compare_and_set(
            "clusters", cluster_id, _reservation_changes(reserved_by), {"is_reserved": 0}
        )

    def release_cluster(self, cluster_id: int, reserved_by: Optional[str] = None) -> bool:
        """Un-reserve a cluster, optionally only if ``reserved_by`` still holds it."""

        expected: Dict[str, object] = {"is_reserved": 1}
        if reserved_by is not None:
            expected["reserved_by"] = reserved_by
        return self.compare_and_set("clusters", cluster_id, _reservation_changes(None), expected)

    def reserve_demo_user(self, demo_user_id: int, reserved_by: str) -> bool:
        return self.compare_and_set(
            "demo_users", demo_user_id, _reservation_changes(reserved_by), {"is_reserved": 0}
        )

    def release_demo_user(self, demo_user_id: int, reserved_by: Optional[str] = None) -> bool:
        expected: Dict[str, object] = {"is_reserved": 1}
        if reserved_by is not None:
            expected["reserved_by"] = reserved_by
        return self.compare_and_set("demo_users", demo_user_id, _reservation_changes(None), expected)

    def bind_participant(
        self,
        participant_id: int,
        *,
        cluster_id: int,
        demo_user_id: int,
        session_token: str,
    ) -> bool:
        """Record a binding on a participant that currently has none."""

        return self.compare_and_set(
            "participants",
            participant_id,
            {
                "cluster_id": cluster_id,
                "demo_user_id": demo_user_id,
                "session_token": session_token,
                "last_login": _serialize_datetime(_current_timestamp()),
            },
            {"cluster_id": None, "demo_user_id": None},
        )

    def clear_participant_binding(
        self,
        participant_id: int,
        *,
        cluster_id: int,
        demo_user_id: int,
    ) -> bool:
        return self.compare_and_set(
            "participants",
            participant_id,
            {"cluster_id": None, "demo_user_id": None},
            {"cluster_id": cluster_id, "demo_user_id": demo_user_id},
        )

    def set_session_token(self, participant_id: int, session_token: str) -> bool:
        """Store a freshly minted token, replacing any previous one."""

        return self.compare_and_set(
            "participants",
            participant_id,
            {
                "session_token": session_token,
                "last_login": _serialize_datetime(_current_timestamp()),
            },
            {},
        )

    def clear_session_token(self, session_token: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE participants SET session_token = NULL WHERE session_token = ?",
                (session_token,),
            )
            return cursor.rowcount > 0

    def release_reservations(
        self,
        reserved_by: str,
        *,
        cluster_id: int,
        demo_user_id: Optional[int] = None,
    ) -> None:
        """Free a cluster and optionally a demo user held by ``reserved_by`` in one transaction."""

        with self._connect() as conn:
            if demo_user_id is not None:
                _release_held(conn, "demo_users", demo_user_id, reserved_by)
            _release_held(conn, "clusters", cluster_id, reserved_by)

    def release_binding(
        self,
        participant_id: int,
        *,
        cluster_id: int,
        demo_user_id: int,
        reserved_by: str,
    ) -> bool:
        """Clear a participant's binding and free what it held, all or nothing.

        Returns ``False`` without touching the reservations when the
        participant no longer references this cluster and demo user.
        """

        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE participants
                   SET cluster_id = NULL, demo_user_id = NULL
                 WHERE id = ? AND cluster_id = ? AND demo_user_id = ?
                """,
                (participant_id, cluster_id, demo_user_id),
            )
            if cursor.rowcount != 1:
                return False
            _release_held(conn, "demo_users", demo_user_id, reserved_by)
            _release_held(conn, "clusters", cluster_id, reserved_by)
            return True

    # ------------------------------------------------------------------
    # Clusters
    # ------------------------------------------------------------------
    def create_cluster(
        self,
        name: str,
        url: str,
        *,
        username: Optional[str] = None,
        password: Optional[str] = None,
    ) -> Cluster:
        created_at = _current_timestamp()
        with self._connect() as conn:
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO clusters (name, url, username, password, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (name, url, username, password, _serialize_datetime(created_at)),
                )
            except sqlite3.IntegrityError as exc:
                raise DuplicateRecord(f"Cluster with name '{name}' already exists") from exc
            cluster_id = cursor.lastrowid

        return Cluster(
            id=int(cluster_id),
            name=name,
            url=url,
            username=username,
            password=password,
            is_reserved=False,
            reserved_by=None,
            reserved_at=None,
            created_at=created_at,
        )

    def get_cluster(self, cluster_id: int) -> Optional[Cluster]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM clusters WHERE id = ?", (cluster_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_cluster(row)

    def get_cluster_by_name(self, name: str) -> Optional[Cluster]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM clusters WHERE name = ?", (name,)).fetchone()
        if row is None:
            return None
        return self._row_to_cluster(row)

    def list_clusters(self, *, reserved: Optional[bool] = None) -> List[Cluster]:
        with self._connect() as conn:
            if reserved is None:
                rows = conn.execute("SELECT * FROM clusters ORDER BY id").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM clusters WHERE is_reserved = ? ORDER BY id",
                    (int(reserved),),
                ).fetchall()
        return [self._row_to_cluster(row) for row in rows]

    def count_clusters(self, *, reserved: Optional[bool] = None) -> int:
        return self._count("clusters", reserved)

    # ------------------------------------------------------------------
    # Demo users
    # ------------------------------------------------------------------
    def create_demo_user(self, username: str, password: str) -> DemoUser:
        created_at = _current_timestamp()
        with self._connect() as conn:
            try:
                cursor = conn.execute(
                    "INSERT INTO demo_users (username, password, created_at) VALUES (?, ?, ?)",
                    (username, password, _serialize_datetime(created_at)),
                )
            except sqlite3.IntegrityError as exc:
                raise DuplicateRecord(f"Demo user '{username}' already exists") from exc
            demo_user_id = cursor.lastrowid

        return DemoUser(
            id=int(demo_user_id),
            username=username,
            password=password,
            is_reserved=False,
            reserved_by=None,
            reserved_at=None,
            created_at=created_at,
        )

    def get_demo_user(self, demo_user_id: int) -> Optional[DemoUser]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM demo_users WHERE id = ?", (demo_user_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_demo_user(row)

    def get_demo_user_by_username(self, username: str) -> Optional[DemoUser]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM demo_users WHERE username = ?",
                (username,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_demo_user(row)

    def list_demo_users(self, *, reserved: Optional[bool] = None) -> List[DemoUser]:
        with self._connect() as conn:
            if reserved is None:
                rows = conn.execute("SELECT * FROM demo_users ORDER BY id").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM demo_users WHERE is_reserved = ? ORDER BY id",
                    (int(reserved),),
                ).fetchall()
        return [self._row_to_demo_user(row) for row in rows]

    def count_demo_users(self, *, reserved: Optional[bool] = None) -> int:
        return self._count("demo_users", reserved)

    # ------------------------------------------------------------------
    # Shared clusters
    # ------------------------------------------------------------------
    def create_shared_cluster(self, name: str, url: str) -> SharedCluster:
        created_at = _current_timestamp()
        with self._connect() as conn:
            try:
                cursor = conn.execute(
                    "INSERT INTO shared_clusters (name, url, created_at) VALUES (?, ?, ?)",
                    (name, url, _serialize_datetime(created_at)),
                )
            except sqlite3.IntegrityError as exc:
                raise DuplicateRecord(f"Shared cluster with name '{name}' already exists") from exc
            shared_id = cursor.lastrowid

        return SharedCluster(id=int(shared_id), name=name, url=url, created_at=created_at)

    def get_shared_cluster_by_name(self, name: str) -> Optional[SharedCluster]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM shared_clusters WHERE name = ?", (name,)).fetchone()
        if row is None:
            return None
        return self._row_to_shared_cluster(row)

    def get_primary_shared_cluster(self) -> Optional[SharedCluster]:
        """Return the oldest configured shared cluster, if any."""

        with self._connect() as conn:
            row = conn.execute("SELECT * FROM shared_clusters ORDER BY id LIMIT 1").fetchone()
        if row is None:
            return None
        return self._row_to_shared_cluster(row)

    def list_shared_clusters(self) -> List[SharedCluster]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM shared_clusters ORDER BY id").fetchall()
        return [self._row_to_shared_cluster(row) for row in rows]

    # ------------------------------------------------------------------
    # Participants
    # ------------------------------------------------------------------
    def create_participant(self, email: str, password: str) -> Participant:
        """Create a participant, hashing ``password`` before it is stored."""

        if not password:
            raise ValueError("Password must not be empty")

        normalized_email = normalize_email(email)
        password_hash = hash_password(password)
        created_at = _current_timestamp()

        with self._connect() as conn:
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO participants (email, password_hash, created_at)
                    VALUES (?, ?, ?)
                    """,
                    (normalized_email, password_hash, _serialize_datetime(created_at)),
                )
            except sqlite3.IntegrityError as exc:
                raise DuplicateRecord("A participant with that email already exists") from exc
            participant_id = cursor.lastrowid

        return Participant(
            id=int(participant_id),
            email=normalized_email,
            cluster_id=None,
            demo_user_id=None,
            session_token=None,
            created_at=created_at,
            last_login=None,
        )

    def get_participant(self, participant_id: int) -> Optional[Participant]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM participants WHERE id = ?", (participant_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_participant(row)

    def get_participant_by_email(self, email: str) -> Optional[Participant]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM participants WHERE email = ?",
                (normalize_email(email),),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_participant(row)

    def get_participant_by_session_token(self, session_token: str) -> Optional[Participant]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM participants WHERE session_token = ?",
                (session_token,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_participant(row)

    def get_participant_by_cluster(self, cluster_id: int) -> Optional[Participant]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM participants WHERE cluster_id = ?",
                (cluster_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_participant(row)

    def list_participants(self) -> List[Participant]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM participants ORDER BY id").fetchall()
        return [self._row_to_participant(row) for row in rows]

    def count_participants(self, *, bound: Optional[bool] = None) -> int:
        query = "SELECT COUNT(*) FROM participants"
        if bound is True:
            query += " WHERE cluster_id IS NOT NULL"
        elif bound is False:
            query += " WHERE cluster_id IS NULL"
        with self._connect() as conn:
            return int(conn.execute(query).fetchone()[0])

    def verify_participant_password(self, participant_id: int, password: str) -> bool:
        """Return ``True`` if the supplied password matches the stored hash."""

        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash FROM participants WHERE id = ?",
                (participant_id,),
            ).fetchone()

        if row is None:
            return False

        stored_hash = row["password_hash"]
        if not stored_hash:
            return False

        return verify_password(password, stored_hash)

    # ------------------------------------------------------------------
    # Operator maintenance
    # ------------------------------------------------------------------
    def release_all(self) -> int:
        """Free every reservation and clear every binding. Returns freed clusters."""

        with self._connect() as conn:
            conn.execute("UPDATE participants SET cluster_id = NULL, demo_user_id = NULL")
            conn.execute(
                """
                UPDATE demo_users
                   SET is_reserved = 0, reserved_by = NULL, reserved_at = NULL
                 WHERE is_reserved = 1
                """
            )
            cursor = conn.execute(
                """
                UPDATE clusters
                   SET is_reserved = 0, reserved_by = NULL, reserved_at = NULL
                 WHERE is_reserved = 1
                """
            )
            return cursor.rowcount

    def delete_participants(self) -> int:
        """Delete every participant and free the reservations they held."""

        with self._connect() as conn:
            count = int(conn.execute("SELECT COUNT(*) FROM participants").fetchone()[0])
            conn.execute("DELETE FROM participants")
            for table in ("demo_users", "clusters"):
                conn.execute(
                    f"""
                    UPDATE {table}
                       SET is_reserved = 0, reserved_by = NULL, reserved_at = NULL
                     WHERE is_reserved = 1
                    """
                )
            return count

    def delete_all(self) -> Dict[str, int]:
        """Remove every record from every table."""

        counts: Dict[str, int] = {}
        with self._connect() as conn:
            for table in ("participants", "demo_users", "clusters", "shared_clusters"):
                counts[table] = int(conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0])
                conn.execute(f"DELETE FROM {table}")
        return counts

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _count(self, table: str, reserved: Optional[bool]) -> int:
        with self._connect() as conn:
            if reserved is None:
                row = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()
            else:
                row = conn.execute(
                    f"SELECT COUNT(*) FROM {table} WHERE is_reserved = ?",
                    (int(reserved),),
                ).fetchone()
        return int(row[0])

    def _row_to_cluster(self, row: sqlite3.Row) -> Cluster:
        return Cluster(
            id=int(row["id"]),
            name=str(row["name"]),
            url=str(row["url"]),
            username=row["username"],
            password=row["password"],
            is_reserved=bool(row["is_reserved"]),
            reserved_by=row["reserved_by"],
            reserved_at=_parse_optional_datetime(row["reserved_at"]),
            created_at=_parse_datetime(str(row["created_at"])),
        )

    def _row_to_demo_user(self, row: sqlite3.Row) -> DemoUser:
        return DemoUser(
            id=int(row["id"]),
            username=str(row["username"]),
            password=str(row["password"]),
            is_reserved=bool(row["is_reserved"]),
            reserved_by=row["reserved_by"],
            reserved_at=_parse_optional_datetime(row["reserved_at"]),
            created_at=_parse_datetime(str(row["created_at"])),
        )

    def _row_to_shared_cluster(self, row: sqlite3.Row) -> SharedCluster:
        return SharedCluster(
            id=int(row["id"]),
            name=str(row["name"]),
            url=str(row["url"]),
            created_at=_parse_datetime(str(row["created_at"])),
        )

    def _row_to_participant(self, row: sqlite3.Row) -> Participant:
        return Participant(
            id=int(row["id"]),
            email=str(row["email"]),
            cluster_id=row["cluster_id"],
            demo_user_id=row["demo_user_id"],
            session_token=row["session_token"],
            created_at=_parse_datetime(str(row["created_at"])),
            last_login=_parse_optional_datetime(row["last_login"]),
        )


__all__ = [
    "Database",
    "hash_password",
    "normalize_email",
    "resolve_database_path",
    "verify_password",
]
