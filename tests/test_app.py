import asyncio

import mongomock
from fastapi.testclient import TestClient

import main
from main import create_app
from settings import Settings


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "OK"
    assert body["timestamp"]


def test_unknown_route(client):
    resp = client.get("/api/nothing-here")
    assert resp.status_code == 404
    assert resp.json()["message"] == "Route not found"
    assert resp.json()["status"] == "error"


def test_security_headers(client):
    resp = client.get("/health")
    assert resp.headers["X-Content-Type-Options"] == "nosniff"
    assert resp.headers["X-Frame-Options"] == "SAMEORIGIN"
    assert resp.headers["Referrer-Policy"] == "no-referrer"


def test_cors_allows_known_origin(client):
    resp = client.get("/health", headers={"Origin": "http://localhost:19006"})
    assert resp.headers["access-control-allow-origin"] == "http://localhost:19006"
    assert resp.headers["access-control-allow-credentials"] == "true"


def test_cors_ignores_unknown_origin(client):
    resp = client.get("/health", headers={"Origin": "https://evil.example"})
    assert "access-control-allow-origin" not in resp.headers


def test_body_size_ceiling(db, image_store):
    settings = Settings(environment="development", max_body_bytes=64)
    client = TestClient(create_app(settings, db=db, image_store=image_store))

    resp = client.post("/api/auth/login", json={"email": "a@example.com", "password": "x" * 200})

    assert resp.status_code == 413
    assert resp.json()["code"] == "PAYLOAD_TOO_LARGE"


def test_validation_errors_are_400(client):
    resp = client.post("/api/auth/login", json={"password": "x"})
    assert resp.status_code == 400
    body = resp.json()
    assert body["code"] == "VALIDATION_ERROR"
    assert body["details"]["errors"][0]["field"] == "email"


def test_unexpected_errors_hide_details_in_production(db, image_store):
    settings = Settings(environment="production")
    app = create_app(settings, db=db, image_store=image_store)

    @app.get("/boom")
    def boom():
        raise RuntimeError("secret internals")

    client = TestClient(app, raise_server_exceptions=False)
    resp = client.get("/boom")

    assert resp.status_code == 500
    assert resp.json()["message"] == "Internal Server Error"
    assert "stack" not in resp.json()
    assert "secret internals" not in resp.text


def test_stack_included_in_development(db, image_store):
    app = create_app(Settings(environment="development"), db=db, image_store=image_store)

    @app.get("/boom")
    def boom():
        raise RuntimeError("kaboom")

    resp = TestClient(app, raise_server_exceptions=False).get("/boom")

    assert resp.status_code == 500
    assert "kaboom" in resp.json()["stack"]


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("APP_ENV", "development")
    monkeypatch.setenv("PORT", "8080")
    monkeypatch.setenv("CORS_ORIGIN", "https://shop.example, http://localhost:3000")
    monkeypatch.setenv("MAX_BODY_MB", "2")

    settings = Settings.from_env()

    assert settings.is_development
    assert settings.port == 8080
    assert "https://shop.example" in settings.cors_origins
    assert settings.cors_origins.count("http://localhost:3000") == 1
    assert settings.max_body_bytes == 2 * 1024 * 1024
    assert settings.token_ttl_hours == 24


def _on_event_loop():
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


def test_startup_runs_blocking_setup_off_the_event_loop(monkeypatch):
    calls = []

    class PingingStore:
        def ping(self):
            calls.append(("ping", _on_event_loop()))
            return True

    def fake_connect(settings):
        calls.append(("connect", _on_event_loop()))
        return mongomock.MongoClient()

    def fake_init(db):
        calls.append(("init_database", _on_event_loop()))

    monkeypatch.setattr(main, "connect", fake_connect)
    monkeypatch.setattr(main, "init_database", fake_init)
    monkeypatch.setattr(main.ImageStore, "from_settings", lambda settings: PingingStore())
    monkeypatch.setattr(main, "_exit_on_async_error", lambda loop, context: None)

    with TestClient(create_app(Settings(environment="development"))) as client:
        assert client.get("/health").status_code == 200

    assert calls == [("connect", False), ("init_database", False), ("ping", False)]
