from __future__ import annotations

import os

from fastapi.testclient import TestClient

os.environ.setdefault("QUIZRANK_DATABASE_URL", "sqlite://")

from quizrank.main import app  # noqa: E402
from quizrank.db.session import dispose_engine  # noqa: E402


def teardown_module() -> None:  # pragma: no cover - test cleanup
    dispose_engine()


def test_health_endpoint() -> None:
    client = TestClient(app)
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "mode": "leaderboard"}


def test_database_health_endpoint_success(monkeypatch, tmp_path) -> None:
    from sqlalchemy import create_engine

    engine = create_engine(f"sqlite:///{tmp_path / 'health.sqlite'}", future=True)
    monkeypatch.setattr("quizrank.main.get_engine", lambda: engine)
    client = TestClient(app)
    try:
        response = client.get("/healthz/database")
    finally:
        engine.dispose()
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ok"
    assert payload["persistence_mode"] == "database"
    assert payload["dialect"] == "sqlite"
    assert "pool" in payload


def test_database_health_endpoint_failure(monkeypatch) -> None:
    client = TestClient(app)

    def raise_runtime_error():
        raise RuntimeError("missing database url")

    monkeypatch.setattr("quizrank.main.get_engine", raise_runtime_error)
    response = client.get("/healthz/database")
    assert response.status_code == 503
    assert response.json()["detail"] == "missing database url"
