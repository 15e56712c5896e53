"""Command-line interface for the workshop cluster allocator."""

from __future__ import annotations
import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Sequence

from workshop.allocator import Allocator
from workshop.database import Database, resolve_database_path
from workshop.errors import WorkshopError
from workshop.loader import (
    ALL_SECTIONS,
    SECTION_CLUSTERS,
    SECTION_DEMO_USERS,
    SECTION_SHARED,
    PoolLoader,
    load_pool_document,
)
from workshop.stats import collect_stats

logger = logging.getLogger("workshop.main")

_KNOWN_COMMANDS = {
    "serve",
    "init-db",
    "status",
    "add-cluster",
    "add-demo-user",
    "add-shared-cluster",
    "load-yaml",
    "release",
    "release-all",
    "reset-users",
    "cleanup-all",
}


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--db",
        dest="db_path",
        default=None,
        help="Path to the SQLite database (defaults to WORKSHOP_DB_PATH or data/workshop.sqlite3)",
    )

    parser = argparse.ArgumentParser(description="Workshop cluster allocator utilities")
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    serve_parser = subparsers.add_parser("serve", parents=[common], help="Start the HTTP API")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Bind address for the API")
    serve_parser.add_argument("--port", type=int, default=3001, help="Port for the API (default: 3001)")
    serve_parser.add_argument("--ssl-certfile", default=None, help="Path to the TLS certificate chain in PEM format")
    serve_parser.add_argument("--ssl-keyfile", default=None, help="Path to the TLS private key in PEM format")

    subparsers.add_parser("init-db", parents=[common], help="Initialise the reservation database")
    subparsers.add_parser("status", parents=[common], help="Show clusters, participants and demo users")

    add_cluster = subparsers.add_parser("add-cluster", parents=[common], help="Add a reservable cluster")
    add_cluster.add_argument("name")
    add_cluster.add_argument("url")

    add_demo_user = subparsers.add_parser("add-demo-user", parents=[common], help="Add a demo user credential")
    add_demo_user.add_argument("username")
    add_demo_user.add_argument("password")

    add_shared = subparsers.add_parser("add-shared-cluster", parents=[common], help="Add the shared cluster")
    add_shared.add_argument("name")
    add_shared.add_argument("url")

    load_yaml = subparsers.add_parser("load-yaml", parents=[common], help="Bulk load a pool description file")
    load_yaml.add_argument("file", type=Path)
    load_yaml.add_argument(
        "--only",
        action="append",
        choices=sorted(ALL_SECTIONS),
        default=None,
        help="Restrict loading to the given section (repeatable)",
    )

    release = subparsers.add_parser("release", parents=[common], help="Release a cluster by id")
    release.add_argument("cluster_id", type=int)

    subparsers.add_parser("release-all", parents=[common], help="Release every reservation")
    subparsers.add_parser("reset-users", parents=[common], help="Delete all participants")

    cleanup = subparsers.add_parser("cleanup-all", parents=[common], help="Delete every record")
    cleanup.add_argument("--yes", action="store_true", help="Do not ask for confirmation")

    args_list = list(argv) if argv is not None else sys.argv[1:]

    if not args_list:
        args_list = ["serve"]
    else:
        first = args_list[0]
        if first in ("-h", "--help"):
            return parser.parse_args(args_list)
        if first not in _KNOWN_COMMANDS:
            if any(flag in args_list for flag in ("-h", "--help")):
                return parser.parse_args(args_list)
            args_list = ["serve", *args_list]

    return parser.parse_args(args_list)


def _initialise_database(db_path: str | None) -> Database:
    path = resolve_database_path(db_path or os.getenv("WORKSHOP_DB_PATH"))
    database = Database(path)
    database.initialize()
    logger.info("Database initialised at %s", path)
    return database


def _serve(
    *,
    database: Database,
    host: str,
    port: int,
    ssl_certfile: str | None,
    ssl_keyfile: str | None,
) -> None:
    from workshop.api import create_app
    import uvicorn

    if bool(ssl_certfile) ^ bool(ssl_keyfile):
        raise SystemExit("Both --ssl-certfile and --ssl-keyfile must be provided together.")

    protocol = "https" if ssl_certfile and ssl_keyfile else "http"
    logger.info("Starting workshop API on %s://%s:%s", protocol, host, port)

    app = create_app(database=database)
    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level="info",
        ssl_certfile=ssl_certfile,
        ssl_keyfile=ssl_keyfile,
    )


def _show_status(database: Database) -> None:
    stats = collect_stats(database)

    print("=== Cluster Status ===")
    print(
        f"Total clusters: {stats.clusters.total} "
        f"(Reserved: {stats.clusters.reserved}, Available: {stats.clusters.available})"
    )
    for cluster in database.list_clusters():
        state = f"RESERVED by {cluster.reserved_by}" if cluster.is_reserved else "AVAILABLE"
        print(f"{cluster.id:>4}  {cluster.name:<32}  {state}")

    print("\n=== Participants ===")
    print(f"Total participants: {stats.participants.total} (With binding: {stats.participants.with_binding})")
    for participant in database.list_participants():
        created = participant.created_at.strftime("%Y-%m-%d %H:%M:%S %Z")
        print(
            f"{participant.id:>4}  {participant.email:<32}  "
            f"cluster={participant.cluster_id}  demo_user={participant.demo_user_id}  {created}"
        )

    print("\n=== Demo Users ===")
    print(
        f"Total demo users: {stats.demo_users.total} "
        f"(Reserved: {stats.demo_users.reserved}, Available: {stats.demo_users.available})"
    )
    for demo_user in database.list_demo_users():
        state = f"RESERVED by {demo_user.reserved_by}" if demo_user.is_reserved else "AVAILABLE"
        print(f"{demo_user.id:>4}  {demo_user.username:<32}  {state}")

    shared = database.list_shared_clusters()
    if shared:
        print("\n=== Shared Cluster ===")
        for entry in shared:
            print(f"{entry.id:>4}  {entry.name:<32}  {entry.url}")


def _load_yaml(database: Database, path: Path, only: Sequence[str] | None) -> None:
    document = load_pool_document(path)
    sections = set(only) if only else set(ALL_SECTIONS)
    report = PoolLoader(database).load(document, sections)

    labels = (
        (SECTION_SHARED, "Shared cluster", report.shared_cluster),
        (SECTION_CLUSTERS, "User clusters", report.clusters),
        (SECTION_DEMO_USERS, "Demo users", report.demo_users),
    )
    for section, label, counts in labels:
        if section in sections:
            print(f"{label}: {counts.added} added, {counts.skipped} skipped")


def _cleanup_all(database: Database, *, assume_yes: bool) -> bool:
    if not assume_yes:
        answer = input("This deletes every cluster, demo user and participant. Continue? [y/N]: ")
        if answer.strip().lower() not in {"y", "yes"}:
            print("Cleanup cancelled.")
            return False

    counts = database.delete_all()
    print("Deleted:")
    for table, count in counts.items():
        print(f"  {table}: {count}")
    return True


def _run_command(args: argparse.Namespace, database: Database) -> int:
    command = args.command

    if command == "init-db":
        print("Database initialisation complete.")
    elif command == "status":
        _show_status(database)
    elif command == "add-cluster":
        cluster = database.create_cluster(args.name.strip(), args.url.strip())
        print(f'Cluster "{cluster.name}" added with ID: {cluster.id}')
    elif command == "add-demo-user":
        demo_user = database.create_demo_user(args.username.strip(), args.password)
        print(f'Demo user "{demo_user.username}" added with ID: {demo_user.id}')
    elif command == "add-shared-cluster":
        shared = database.create_shared_cluster(args.name.strip(), args.url.strip())
        print(f'Shared cluster "{shared.name}" added with ID: {shared.id}')
    elif command == "load-yaml":
        _load_yaml(database, args.file, args.only)
    elif command == "release":
        holder = Allocator(database).release_cluster(args.cluster_id)
        suffix = f" (was held by {holder.email})" if holder is not None else ""
        print(f"Cluster {args.cluster_id} released successfully{suffix}")
    elif command == "release-all":
        count = database.release_all()
        print(f"All clusters released successfully ({count} freed)")
    elif command == "reset-users":
        count = database.delete_participants()
        print(f"Deleted {count} participants")
    elif command == "cleanup-all":
        _cleanup_all(database, assume_yes=args.yes)
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for CLI usage."""

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

    args = _parse_args(argv)
    try:
        database = _initialise_database(args.db_path)
        if args.command == "serve":
            _serve(
                database=database,
                host=args.host,
                port=args.port,
                ssl_certfile=args.ssl_certfile,
                ssl_keyfile=args.ssl_keyfile,
            )
            return 0
        return _run_command(args, database)
    except WorkshopError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
