from pathlib import Path

from main import _parse_args, main
from workshop.database import Database


def test_default_command_invokes_serve() -> None:
    args = _parse_args([])
    assert args.command == "serve"
    assert args.host == "0.0.0.0"
    assert args.port == 3001


def test_default_command_accepts_options_without_subcommand() -> None:
    args = _parse_args(["--host", "127.0.0.1", "--port", "8080"])
    assert args.command == "serve"
    assert args.host == "127.0.0.1"
    assert args.port == 8080


def test_subcommands_accept_database_path() -> None:
    args = _parse_args(["release", "7", "--db", "/tmp/pool.sqlite3"])
    assert args.command == "release"
    assert args.cluster_id == 7
    assert args.db_path == "/tmp/pool.sqlite3"


def test_load_yaml_only_is_repeatable() -> None:
    args = _parse_args(["load-yaml", "pool.yaml", "--only", "clusters", "--only", "demo-users"])
    assert args.file == Path("pool.yaml")
    assert args.only == ["clusters", "demo-users"]


def _db_args(tmp_path: Path) -> list:
    return ["--db", str(tmp_path / "cli.sqlite3")]


def test_add_commands_and_duplicates(tmp_path: Path, capsys) -> None:
    db = _db_args(tmp_path)

    assert main(["add-cluster", "cluster-a", "https://a.example.com", *db]) == 0
    assert main(["add-demo-user", "demo1", "secret", *db]) == 0
    assert main(["add-shared-cluster", "shared-cluster", "https://shared.example.com", *db]) == 0
    out = capsys.readouterr().out
    assert 'Cluster "cluster-a" added with ID: 1' in out
    assert 'Demo user "demo1" added with ID: 1' in out
    assert 'Shared cluster "shared-cluster" added with ID: 1' in out

    assert main(["add-cluster", "cluster-a", "https://other.example.com", *db]) == 1
    assert "Error:" in capsys.readouterr().err


def test_load_yaml_and_status(tmp_path: Path, capsys) -> None:
    pool = tmp_path / "pool.yaml"
    pool.write_text(
        "user_clusters:\n"
        "  - username: alice\n"
        "    cluster_url: https://console.alice.example.com\n"
        "demo_users:\n"
        "  - username: demo1\n"
        "    password: secret-1\n",
        encoding="utf-8",
    )
    db = _db_args(tmp_path)

    assert main(["load-yaml", str(pool), "--only", "clusters", *db]) == 0
    out = capsys.readouterr().out
    assert "User clusters: 1 added, 0 skipped" in out
    assert "Demo users" not in out

    assert main(["load-yaml", str(pool), *db]) == 0
    out = capsys.readouterr().out
    assert "User clusters: 0 added, 1 skipped" in out
    assert "Demo users: 1 added, 0 skipped" in out

    assert main(["status", *db]) == 0
    out = capsys.readouterr().out
    assert "Total clusters: 1 (Reserved: 0, Available: 1)" in out
    assert "cluster-alice" in out
    assert "demo1" in out


def test_load_yaml_with_missing_file_fails(tmp_path: Path, capsys) -> None:
    assert main(["load-yaml", str(tmp_path / "missing.yaml"), *_db_args(tmp_path)]) == 1
    assert "Unable to read" in capsys.readouterr().err


def _bound_database(tmp_path: Path) -> Database:
    database = Database(tmp_path / "cli.sqlite3")
    database.initialize()
    cluster = database.create_cluster("cluster-a", "https://a.example.com")
    demo_user = database.create_demo_user("demo1", "secret")
    participant = database.create_participant("alice@example.com", "password")
    database.reserve_cluster(cluster.id, participant.email)
    database.reserve_demo_user(demo_user.id, participant.email)
    database.bind_participant(participant.id, cluster_id=cluster.id, demo_user_id=demo_user.id, session_token="t")
    return database


def test_release_by_cluster_id(tmp_path: Path, capsys) -> None:
    database = _bound_database(tmp_path)

    assert main(["release", "1", *_db_args(tmp_path)]) == 0
    assert "Cluster 1 released successfully (was held by alice@example.com)" in capsys.readouterr().out
    assert database.count_clusters(reserved=True) == 0
    assert database.count_demo_users(reserved=True) == 0
    assert database.count_participants(bound=True) == 0

    assert main(["release", "42", *_db_args(tmp_path)]) == 1
    assert "Cluster with ID 42 not found" in capsys.readouterr().err


def test_release_all_and_reset_users(tmp_path: Path, capsys) -> None:
    database = _bound_database(tmp_path)

    assert main(["release-all", *_db_args(tmp_path)]) == 0
    assert "All clusters released successfully (1 freed)" in capsys.readouterr().out
    assert database.count_participants(bound=True) == 0

    assert main(["reset-users", *_db_args(tmp_path)]) == 0
    assert "Deleted 1 participants" in capsys.readouterr().out
    assert database.count_participants() == 0
    assert database.count_clusters() == 1


def test_cleanup_all(tmp_path: Path, capsys, monkeypatch) -> None:
    database = _bound_database(tmp_path)

    monkeypatch.setattr("builtins.input", lambda _prompt: "n")
    assert main(["cleanup-all", *_db_args(tmp_path)]) == 0
    assert "Cleanup cancelled." in capsys.readouterr().out
    assert database.count_clusters() == 1

    assert main(["cleanup-all", "--yes", *_db_args(tmp_path)]) == 0
    out = capsys.readouterr().out
    assert "clusters: 1" in out
    assert database.count_clusters() == 0
    assert database.count_demo_users() == 0
    assert database.count_participants() == 0
