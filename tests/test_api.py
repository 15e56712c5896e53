from datetime import timedelta
from typing import Optional

import pytest
from fastapi.testclient import TestClient

from workshop.api import create_app
from workshop.config import Settings
from workshop.database import Database
from workshop.errors import StoreFailure


EMAIL = "participant@example.com"
PASSWORD = "super-secret"


@pytest.fixture
def api_client(database, seed_pool):
    seed_pool(2, 2)
    database.create_shared_cluster("shared-cluster", "https://console.shared.example.com")
    app = create_app(database=database, settings=Settings(database_path=database.path))
    with TestClient(app) as client:
        yield client, database


def _login(client: TestClient, email: str = EMAIL, password: str = PASSWORD):
    return client.post("/api/auth/login", json={"email": email, "password": password})


def _auth(token: str):
    return {"Authorization": f"Bearer {token}"}


def test_health(api_client):
    client, _ = api_client

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_login_returns_token_and_cluster(api_client):
    client, database = api_client

    response = _login(client)

    assert response.status_code == 200
    payload = response.json()
    assert payload["success"] is True
    assert payload["token"]
    assert set(payload["cluster"]) == {"name", "url", "username", "password"}
    assert database.count_clusters(reserved=True) == 1


def test_login_validation_errors(api_client):
    client, _ = api_client

    missing = client.post("/api/auth/login", json={"email": EMAIL})
    assert missing.status_code == 400
    assert missing.json() == {"error": "Email and password are required"}

    too_short = _login(client, password="abc")
    assert too_short.status_code == 400

    malformed = client.post("/api/auth/login", content=b"not json", headers={"Content-Type": "application/json"})
    assert malformed.status_code == 400
    assert malformed.json()["error"].startswith("Invalid request body")

    wrong_type = client.post("/api/auth/login", json={"email": 5, "password": PASSWORD})
    assert wrong_type.status_code == 400
    assert list(wrong_type.json()) == ["error"]
    assert "email" in wrong_type.json()["error"]


def test_login_with_wrong_password_is_unauthorized(api_client):
    client, _ = api_client
    assert _login(client).status_code == 200

    response = _login(client, password="wrong-password")

    assert response.status_code == 401
    assert response.json() == {"error": "Invalid credentials"}


def test_login_when_pool_is_exhausted(api_client):
    client, _ = api_client
    assert _login(client, "one@example.com").status_code == 200
    assert _login(client, "two@example.com").status_code == 200

    response = _login(client, "three@example.com")

    assert response.status_code == 503
    assert "at the moment" in response.json()["error"]


def test_user_cluster_requires_token(api_client):
    client, _ = api_client

    missing = client.get("/api/user/cluster")
    assert missing.status_code == 401
    assert missing.json() == {"error": "No token provided"}

    unknown = client.get("/api/user/cluster", headers=_auth("not-a-token"))
    assert unknown.status_code == 401
    assert unknown.json() == {"error": "Invalid token"}

    wrong_scheme = client.get("/api/user/cluster", headers={"Authorization": "Basic abc"})
    assert wrong_scheme.status_code == 401


def test_user_cluster_returns_login_credentials(api_client):
    client, _ = api_client
    login = _login(client).json()

    response = client.get("/api/user/cluster", headers=_auth(login["token"]))

    assert response.status_code == 200
    assert response.json() == {"cluster": login["cluster"]}


def test_shared_cluster_uses_own_demo_user(api_client):
    client, _ = api_client
    login = _login(client).json()

    response = client.get("/api/shared/cluster", headers=_auth(login["token"]))

    assert response.status_code == 200
    cluster = response.json()["cluster"]
    assert cluster["name"] == "shared-cluster"
    assert cluster["url"] == "https://console.shared.example.com"
    assert cluster["username"] == login["cluster"]["username"]
    assert cluster["password"] == login["cluster"]["password"]


def test_release_then_lookup_is_not_found(api_client):
    client, database = api_client
    token = _login(client).json()["token"]

    released = client.post("/api/user/release", headers=_auth(token))
    assert released.status_code == 200
    assert released.json() == {"success": True, "message": "Cluster released successfully"}
    assert database.count_clusters(reserved=True) == 0

    lookup = client.get("/api/user/cluster", headers=_auth(token))
    assert lookup.status_code == 404
    assert lookup.json() == {"error": "No cluster assigned"}

    again = client.post("/api/user/release", headers=_auth(token))
    assert again.status_code == 404

    shared = client.get("/api/shared/cluster", headers=_auth(token))
    assert shared.status_code == 404


def test_logout(api_client):
    client, database = api_client
    token = _login(client).json()["token"]

    response = client.post("/api/auth/logout", json={"token": token})
    assert response.status_code == 200
    assert response.json() == {"success": True}

    assert client.get("/api/user/cluster", headers=_auth(token)).status_code == 401
    assert database.count_clusters(reserved=True) == 1

    assert client.post("/api/auth/logout", json={}).status_code == 400
    assert client.post("/api/auth/logout", json={"token": token}).status_code == 401


def test_stats_shape(api_client):
    client, _ = api_client
    _login(client)

    response = client.get("/api/admin/stats")

    assert response.status_code == 200
    assert response.json() == {
        "clusters": {"total": 2, "reserved": 1, "available": 1},
        "demoUsers": {"total": 2, "reserved": 1, "available": 1},
        "workshopUsers": {"total": 1, "withClusters": 1},
    }


def test_store_failure_is_a_generic_500(api_client, monkeypatch):
    client, database = api_client

    def _fail(*_args, **_kwargs):
        raise StoreFailure("disk I/O error at /secret/path")

    monkeypatch.setattr(database, "get_participant_by_email", _fail)

    response = _login(client)

    assert response.status_code == 500
    assert response.json() == {"error": "Internal server error"}


def test_expired_session_is_rejected(tmp_path):
    database = Database(tmp_path / "ttl.sqlite3")
    database.initialize()
    database.create_cluster("cluster-1", "https://console.cluster-1.example.com")
    database.create_demo_user("demo1", "secret-1")
    settings = Settings(database_path=database.path, session_ttl=timedelta(minutes=5))
    app = create_app(database=database, settings=settings)

    with TestClient(app) as client:
        token = _login(client).json()["token"]
        participant = database.get_participant_by_session_token(token)
        assert participant is not None
        database.compare_and_set(
            "participants", participant.id, {"last_login": "2000-01-01T00:00:00+00:00"}, {}
        )

        response = client.get("/api/user/cluster", headers=_auth(token))

    assert response.status_code == 401
    assert response.json() == {"error": "Session expired"}


def test_unknown_route_uses_error_body(api_client):
    client, _ = api_client

    response = client.get("/api/nope")

    assert response.status_code == 404
    assert response.json() == {"error": "Route not found"}


def test_security_and_cors_headers(api_client):
    client, _ = api_client

    response = client.get("/health", headers={"Origin": "https://workshop.example.com"})

    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "SAMEORIGIN"
    assert response.headers["access-control-allow-origin"] == "*"

    preflight = client.options(
        "/api/auth/login",
        headers={
            "Origin": "https://workshop.example.com",
            "Access-Control-Request-Method": "POST",
        },
    )
    assert preflight.status_code == 200


def _limited_client(database: Database, limit: Optional[str]) -> TestClient:
    settings = Settings(database_path=database.path, rate_limit=limit)
    return TestClient(create_app(database=database, settings=settings))


def test_requests_beyond_the_limit_are_rejected(database):
    with _limited_client(database, "5 per minute") as client:
        statuses = [_login(client, password="wrong-password").status_code for _ in range(5)]
        assert 429 not in statuses

        response = _login(client, password="wrong-password")
        assert response.status_code == 429
        assert response.json() == {"error": "Too many requests from this IP, please try again later."}

        stats = client.get("/api/admin/stats")
        assert stats.status_code == 429

        # Health checks are not counted.
        assert client.get("/health").status_code == 200


def test_limit_is_tracked_per_client_address(database):
    settings = Settings(database_path=database.path, rate_limit="2 per minute", trusted_proxies="*")
    with TestClient(create_app(database=database, settings=settings)) as client:
        first = {"X-Forwarded-For": "203.0.113.10"}
        second = {"X-Forwarded-For": "203.0.113.20"}

        assert client.get("/api/admin/stats", headers=first).status_code == 200
        assert client.get("/api/admin/stats", headers=first).status_code == 200
        assert client.get("/api/admin/stats", headers=first).status_code == 429

        assert client.get("/api/admin/stats", headers=second).status_code == 200


def test_rate_limit_can_be_disabled(database):
    with _limited_client(database, None) as client:
        statuses = {client.get("/api/admin/stats").status_code for _ in range(30)}

    assert statuses == {200}
