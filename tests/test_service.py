"""End-to-end tests for the namespace HTTP API."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Dict

import anyio
import pytest
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fakes import FakeClock, FakeRabbit, make_config  # noqa: E402
from pulse.application import Components, build_components, create_application  # noqa: E402
from pulse.database import Database  # noqa: E402
from pulse.rabbit import RabbitError  # noqa: E402
from pulse.security import ApiAuth  # noqa: E402
from pulse.service import create_app  # noqa: E402

TOKEN = "test-token-123"
READ_TOKEN = "read-token-456"
HEADERS: Dict[str, str] = {"Authorization": f"Bearer {TOKEN}"}
READ_HEADERS: Dict[str, str] = {"Authorization": f"Bearer {READ_TOKEN}"}


class RejectingRabbit(FakeRabbit):
    def create_user(self, name, password, tags) -> None:
        raise RabbitError("tags rejected", status_code=400)


def _components(tmp_path: Path, rabbit: FakeRabbit | None = None) -> Components:
    database = Database(tmp_path / "pulse.sqlite3")
    return build_components(
        make_config(),
        database=database,
        rabbit=rabbit or FakeRabbit(),
        clock=FakeClock(),
    )


def _client(components: Components) -> TestClient:
    app = create_app(
        database=components.database,
        manager=components.manager,
        scheduler=components.scheduler,
        auth=ApiAuth([TOKEN], [READ_TOKEN]),
    )
    return TestClient(app)


def test_healthcheck_is_public(tmp_path: Path) -> None:
    with _client(_components(tmp_path)) as client:
        response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_requires_bearer_token(tmp_path: Path) -> None:
    with _client(_components(tmp_path)) as client:
        missing = client.get("/v1/namespaces")
        wrong = client.get("/v1/namespaces", headers={"Authorization": "Bearer nope"})

    assert missing.status_code == 401
    assert wrong.status_code == 403


def test_claim_list_and_get(tmp_path: Path) -> None:
    components = _components(tmp_path)
    rabbit = components.rabbit

    with _client(components) as client:
        claimed = client.post("/v1/namespaces/tc-foo", json={"contact": "ops@example.com"}, headers=HEADERS)
        listing = client.get("/v1/namespaces", headers=HEADERS)
        single = client.get("/v1/namespaces/tc-foo", headers=HEADERS)
        missing = client.get("/v1/namespaces/tc-bar", headers=HEADERS)

    assert claimed.status_code == 200
    body = claimed.json()
    assert body["username"] == "tc-foo"
    assert body["vhost"] == "/"
    assert rabbit.authenticate("tc-foo", body["password"])
    assert body["connection_string"].startswith("amqp://tc-foo:")

    assert [item["name"] for item in listing.json()["namespaces"]] == ["tc-foo"]
    assert "password" not in single.json()
    assert single.json()["rotation_version"] == 1
    assert single.json()["contact"] == "ops@example.com"
    assert missing.status_code == 404


def test_claim_without_body_fields(tmp_path: Path) -> None:
    with _client(_components(tmp_path)) as client:
        response = client.post("/v1/namespaces/tc-foo", json={}, headers=HEADERS)

    assert response.status_code == 200


def test_invalid_namespace_name(tmp_path: Path) -> None:
    with _client(_components(tmp_path)) as client:
        response = client.post("/v1/namespaces/not-managed", json={}, headers=HEADERS)

    assert response.status_code == 400


def test_broker_errors_are_mapped(tmp_path: Path) -> None:
    unavailable = FakeRabbit()
    unavailable.fail = True

    with _client(_components(tmp_path / "a", unavailable)) as client:
        transient = client.post("/v1/namespaces/tc-foo", json={}, headers=HEADERS)
    with _client(_components(tmp_path / "b", RejectingRabbit())) as client:
        rejected = client.post("/v1/namespaces/tc-foo", json={}, headers=HEADERS)

    assert transient.status_code == 503
    assert rejected.status_code == 502
    assert rejected.json()["detail"] == "tags rejected"


def test_scheduler_status_and_reset(tmp_path: Path) -> None:
    components = _components(tmp_path)
    scheduler = components.scheduler
    components.rabbit.fail = True
    for _ in range(components.config.monitor.iteration_failures):
        anyio.run(scheduler.tick)
    assert scheduler.halted

    with _client(components) as client:
        health = client.get("/healthz")
        status = client.get("/v1/scheduler", headers=HEADERS)
        components.rabbit.fail = False
        reset = client.post("/v1/scheduler/reset", headers=HEADERS)
        healthy = client.get("/healthz")

    assert health.status_code == 503
    assert health.json() == {"status": "halted"}
    assert status.json()["halted"] is True
    assert status.json()["failure_limit"] == 3
    assert status.json()["last_tick"]["failed"] is True
    assert reset.json()["halted"] is False
    assert reset.json()["consecutive_failures"] == 0
    assert healthy.status_code == 200


def test_scheduler_endpoints_without_scheduler(tmp_path: Path) -> None:
    components = _components(tmp_path)
    app = create_app(
        database=components.database, manager=components.manager, auth=ApiAuth([TOKEN], [READ_TOKEN])
    )

    with TestClient(app) as client:
        response = client.get("/v1/scheduler", headers=HEADERS)

    assert response.status_code == 404


def test_read_tokens_cannot_issue_or_reset(tmp_path: Path) -> None:
    components = _components(tmp_path)

    with _client(components) as client:
        client.post("/v1/namespaces/tc-foo", json={"contact": "ops@example.com"}, headers=HEADERS)
        listing = client.get("/v1/namespaces", headers=READ_HEADERS)
        single = client.get("/v1/namespaces/tc-foo", headers=READ_HEADERS)
        status = client.get("/v1/scheduler", headers=READ_HEADERS)
        claim = client.post("/v1/namespaces/tc-foo", json={}, headers=READ_HEADERS)
        reset = client.post("/v1/scheduler/reset", headers=READ_HEADERS)

    assert listing.status_code == 200
    assert single.status_code == 200
    assert status.status_code == 200
    assert claim.status_code == 403
    assert claim.json()["detail"] == "Operator token required"
    assert reset.status_code == 403
    assert components.database.get_namespace("tc-foo").rotation_version == 1


def test_renewal_updates_contact(tmp_path: Path) -> None:
    with _client(_components(tmp_path)) as client:
        client.post("/v1/namespaces/tc-foo", json={"contact": "old@example.com"}, headers=HEADERS)
        client.post("/v1/namespaces/tc-foo", json={"contact": "new@example.com"}, headers=HEADERS)
        single = client.get("/v1/namespaces/tc-foo", headers=HEADERS)

    assert single.json()["contact"] == "new@example.com"
    assert single.json()["rotation_version"] == 2


def test_api_auth_requires_a_token() -> None:
    with pytest.raises(ValueError):
        ApiAuth([" "], [])
    with pytest.raises(ValueError):
        ApiAuth([TOKEN]).require("admin")

    auth = ApiAuth([TOKEN], [READ_TOKEN, TOKEN])
    assert auth.scope_of(TOKEN) == "operator"
    assert auth.scope_of(READ_TOKEN) == "read"
    assert auth.scope_of("nope") is None


def test_tokens_from_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PULSE_API_TOKENS", "env-token, other")
    monkeypatch.setenv("PULSE_READ_TOKENS", "env-reader")
    components = _components(tmp_path)
    app = create_app(database=components.database, manager=components.manager)

    with TestClient(app) as client:
        accepted = client.get("/v1/namespaces", headers={"Authorization": "Bearer env-token"})
        reader = client.get("/v1/namespaces", headers={"Authorization": "Bearer env-reader"})
        reader_claim = client.post(
            "/v1/namespaces/tc-foo", json={}, headers={"Authorization": "Bearer env-reader"}
        )
        rejected = client.get("/v1/namespaces", headers=HEADERS)

    assert accepted.status_code == 200
    assert reader.status_code == 200
    assert reader_claim.status_code == 403
    assert rejected.status_code == 403


def test_create_application_from_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PULSE_DB_PATH", str(tmp_path / "app.sqlite3"))
    monkeypatch.setenv("PULSE_CONFIG_API_TOKENS", TOKEN)
    monkeypatch.delenv("PULSE_API_TOKENS", raising=False)
    monkeypatch.delenv("PULSE_READ_TOKENS", raising=False)
    monkeypatch.setenv("PULSE_CONFIG_READ_TOKENS", READ_TOKEN)

    app = create_application(config_path=str(ROOT / "config.yml"), profile="test", run_scheduler=False)

    with TestClient(app) as client:
        health = client.get("/healthz")
        listing = client.get("/v1/namespaces", headers=HEADERS)
        read_listing = client.get("/v1/namespaces", headers=READ_HEADERS)
        read_claim = client.post("/v1/namespaces/tc-foo", json={}, headers=READ_HEADERS)

    assert health.status_code == 200
    assert read_listing.status_code == 200
    assert read_claim.status_code == 403
    assert listing.json() == {"namespaces": []}
    assert (tmp_path / "app.sqlite3").exists()
    app.state.components.close()
