"""Tests for the management API client against a mocked transport."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Callable, List

import httpx
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from pulse.rabbit import (  # noqa: E402
    RabbitError,
    RabbitManager,
    RabbitNotFoundError,
    TransientBrokerError,
)


def _manager(handler: Callable[[httpx.Request], httpx.Response]) -> RabbitManager:
    return RabbitManager(
        "http://rabbit.test/api/",
        "admin",
        "secret",
        transport=httpx.MockTransport(handler),
    )


def test_encode_escapes_slashes_and_spaces() -> None:
    assert RabbitManager.encode("/a b") == "%2Fa%20b"
    assert RabbitManager.encode(["/", "queue/tc-foo/x"]) == ["%2F", "queue%2Ftc-foo%2Fx"]


def test_requires_credentials() -> None:
    with pytest.raises(ValueError):
        RabbitManager("http://rabbit.test/api", "", "secret")
    with pytest.raises(ValueError):
        RabbitManager("http://rabbit.test/api", "admin", "")


def test_create_user_and_permissions_send_puts() -> None:
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(204)

    rabbit = _manager(handler)
    rabbit.create_user("tc-foo", "pw", ["pulse", "monitoring"])
    rabbit.set_user_permissions("tc-foo", "/", "^conf", "^write", "^read")

    assert [request.method for request in seen] == ["PUT", "PUT"]
    assert seen[0].url.raw_path == b"/api/users/tc-foo"
    assert json.loads(seen[0].content) == {"password": "pw", "tags": "pulse,monitoring"}
    assert seen[1].url.raw_path == b"/api/permissions/%2F/tc-foo"
    assert json.loads(seen[1].content) == {"configure": "^conf", "write": "^write", "read": "^read"}
    assert seen[0].headers["authorization"].startswith("Basic ")


def test_users_normalizes_tags() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json=[
                {"name": "old", "tags": "pulse,administrator"},
                {"name": "new", "tags": ["pulse"]},
                {"name": "other", "tags": ""},
            ],
        )

    rabbit = _manager(handler)

    assert [user["tags"] for user in rabbit.users()] == [["pulse", "administrator"], ["pulse"], []]
    assert [user["name"] for user in rabbit.users_with_all_tags(["pulse", "administrator"])] == ["old"]
    assert [user["name"] for user in rabbit.users_with_any_tags(["pulse"])] == ["old", "new"]


def test_delete_missing_resource_returns_false() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.raw_path.endswith(b"/gone"):
            return httpx.Response(404, json={"error": "Object Not Found", "reason": "Not Found"})
        return httpx.Response(204)

    rabbit = _manager(handler)

    assert rabbit.delete_user("gone") is False
    assert rabbit.delete_user("present") is True
    assert rabbit.delete_queue("gone") is False


def test_get_missing_resource_raises_not_found() -> None:
    rabbit = _manager(lambda request: httpx.Response(404, json={"reason": "Not Found"}))

    with pytest.raises(RabbitNotFoundError) as excinfo:
        rabbit.user("ghost")
    assert excinfo.value.status_code == 404


def test_server_errors_are_transient() -> None:
    rabbit = _manager(lambda request: httpx.Response(503, text="unavailable"))

    with pytest.raises(TransientBrokerError) as excinfo:
        rabbit.queues("/")
    assert excinfo.value.status_code == 503


def test_client_errors_are_not_transient() -> None:
    rabbit = _manager(lambda request: httpx.Response(400, json={"reason": "bad tags"}))

    with pytest.raises(RabbitError) as excinfo:
        rabbit.create_user("tc-foo", "pw", ["pulse"])
    assert not isinstance(excinfo.value, TransientBrokerError)
    assert str(excinfo.value) == "bad tags"


def test_timeouts_are_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(TransientBrokerError):
        _manager(handler).overview()


def test_connection_errors_are_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(TransientBrokerError):
        _manager(handler).users()


def test_queue_listing_uses_encoded_vhost() -> None:
    paths: List[bytes] = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.raw_path)
        return httpx.Response(200, json=[{"name": "queue/tc-foo/jobs", "messages": 3}])

    rabbit = _manager(handler)

    assert rabbit.queues("/")[0]["messages"] == 3
    rabbit.exchanges("/")
    rabbit.messages_from_queue("queue/tc-foo/jobs", "/")

    assert paths == [
        b"/api/queues/%2F",
        b"/api/exchanges/%2F",
        b"/api/queues/%2F/queue%2Ftc-foo%2Fjobs/get",
    ]


def test_cluster_name_requests_cluster_endpoint() -> None:
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"name": "rabbit@broker"})

    rabbit = _manager(handler)

    assert rabbit.cluster_name() == {"name": "rabbit@broker"}
    assert seen[0].method == "GET"
    assert seen[0].url.raw_path == b"/api/cluster-name"


def test_create_queue_sends_durability_flags() -> None:
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201)

    rabbit = _manager(handler)
    rabbit.create_queue("queue/tc-foo/jobs")
    rabbit.create_queue("queue/tc-foo/durable", durable=True, auto_delete=True)

    assert [request.method for request in seen] == ["PUT", "PUT"]
    assert seen[0].url.raw_path == b"/api/queues/%2F/queue%2Ftc-foo%2Fjobs"
    assert json.loads(seen[0].content) == {"durable": False, "auto_delete": False}
    assert json.loads(seen[1].content) == {"durable": True, "auto_delete": True}
