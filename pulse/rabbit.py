"""Client for the RabbitMQ management HTTP API.

Nothing in here knows about namespaces; it only exposes the administrative
primitives (users, permissions, queues, exchanges) the rest of the service
builds on.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Sequence, Union
from urllib.parse import quote

import httpx


class RabbitError(RuntimeError):
    """Raised when the management API rejects a request."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RabbitNotFoundError(RabbitError):
    """Raised when a requested resource does not exist."""


class TransientBrokerError(RabbitError):
    """Raised for timeouts, connection failures and 5xx responses."""


def _normalize_base_url(base_url: str) -> str:
    cleaned = (base_url or "").strip()
    if not cleaned:
        raise ValueError("RabbitMQ management base URL must not be empty")
    return cleaned.rstrip("/") + "/"


def _extract_error_message(payload: object, default: str) -> str:
    if isinstance(payload, dict):
        for key in ("reason", "error", "message"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return default


def _normalize_tags(tags: object) -> List[str]:
    # Older brokers report tags as a comma separated string.
    if isinstance(tags, str):
        return [tag.strip() for tag in tags.split(",") if tag.strip()]
    if isinstance(tags, (list, tuple)):
        return [str(tag) for tag in tags]
    return []


class RabbitManager:
    """Thin wrapper around the management API endpoints used by the service."""

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        *,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not username:
            raise ValueError("Must provide a rabbitmq username")
        if not password:
            raise ValueError("Must provide a rabbitmq password")
        self._client = httpx.Client(
            base_url=_normalize_base_url(base_url),
            auth=(username, password),
            headers={"Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    @staticmethod
    def encode(value: Union[str, Sequence[str]]) -> Union[str, List[str]]:
        """Percent-encode a path component, including ``/``."""

        if isinstance(value, str):
            return quote(value, safe="")
        return [quote(item, safe="") for item in value]

    def _request(self, method: str, endpoint: str, *, payload: object | None = None) -> Any:
        try:
            response = self._client.request(method, endpoint, json=payload)
        except httpx.TimeoutException as exc:
            raise TransientBrokerError(f"RabbitMQ {method} {endpoint} timed out") from exc
        except httpx.RequestError as exc:
            raise TransientBrokerError(f"Failed to contact RabbitMQ management API: {exc}") from exc

        if response.status_code >= 400:
            try:
                parsed = response.json()
            except ValueError:
                parsed = None
            message = _extract_error_message(
                parsed,
                f"RabbitMQ {method} {endpoint} failed with status {response.status_code}",
            )
            if response.status_code >= 500:
                raise TransientBrokerError(message, status_code=response.status_code)
            if response.status_code == 404:
                raise RabbitNotFoundError(message, status_code=404)
            raise RabbitError(message, status_code=response.status_code)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise RabbitError("RabbitMQ management API returned an invalid response") from exc

    def _delete(self, endpoint: str) -> bool:
        """Issue a DELETE; a missing resource counts as already deleted."""

        try:
            self._request("DELETE", endpoint)
        except RabbitNotFoundError:
            return False
        return True

    # ------------------------------------------------------------------
    # Cluster
    # ------------------------------------------------------------------
    def overview(self) -> Dict[str, Any]:
        return self._request("GET", "overview")

    def cluster_name(self) -> Dict[str, Any]:
        return self._request("GET", "cluster-name")

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------
    def users(self) -> List[Dict[str, Any]]:
        users = self._request("GET", "users") or []
        for user in users:
            user["tags"] = _normalize_tags(user.get("tags"))
        return users

    def user(self, name: str) -> Dict[str, Any]:
        user = self._request("GET", f"users/{self.encode(name)}")
        user["tags"] = _normalize_tags(user.get("tags"))
        return user

    def users_with_all_tags(self, tags: Iterable[str]) -> List[Dict[str, Any]]:
        wanted = set(tags)
        return [user for user in self.users() if wanted.issubset(user["tags"])]

    def users_with_any_tags(self, tags: Iterable[str]) -> List[Dict[str, Any]]:
        wanted = set(tags)
        return [user for user in self.users() if wanted.intersection(user["tags"])]

    def create_user(self, name: str, password: str, tags: Iterable[str]) -> None:
        """Create the user, or overwrite its password and tags if it exists."""

        payload = {"password": password, "tags": ",".join(tags)}
        self._request("PUT", f"users/{self.encode(name)}", payload=payload)

    def delete_user(self, name: str) -> bool:
        return self._delete(f"users/{self.encode(name)}")

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------
    def user_permissions(self, name: str, vhost: Optional[str] = None) -> Any:
        if vhost is None:
            return self._request("GET", f"users/{self.encode(name)}/permissions")
        return self._request("GET", f"permissions/{self.encode(vhost)}/{self.encode(name)}")

    def set_user_permissions(
        self,
        name: str,
        vhost: str,
        configure: str,
        write: str,
        read: str,
    ) -> None:
        payload = {"configure": configure, "write": write, "read": read}
        self._request("PUT", f"permissions/{self.encode(vhost)}/{self.encode(name)}", payload=payload)

    def delete_user_permissions(self, name: str, vhost: str) -> bool:
        return self._delete(f"permissions/{self.encode(vhost)}/{self.encode(name)}")

    # ------------------------------------------------------------------
    # Queues and exchanges
    # ------------------------------------------------------------------
    def queues(self, vhost: Optional[str] = None) -> List[Dict[str, Any]]:
        if vhost is None:
            return self._request("GET", "queues") or []
        return self._request("GET", f"queues/{self.encode(vhost)}") or []

    def queue(self, name: str, vhost: str = "/") -> Dict[str, Any]:
        return self._request("GET", f"queues/{self.encode(vhost)}/{self.encode(name)}")

    def create_queue(self, name: str, vhost: str = "/", *, durable: bool = False, auto_delete: bool = False) -> None:
        payload = {"durable": durable, "auto_delete": auto_delete}
        self._request("PUT", f"queues/{self.encode(vhost)}/{self.encode(name)}", payload=payload)

    def delete_queue(self, name: str, vhost: str = "/") -> bool:
        return self._delete(f"queues/{self.encode(vhost)}/{self.encode(name)}")

    def messages_from_queue(
        self,
        name: str,
        vhost: str = "/",
        *,
        count: int = 5,
        ack_mode: str = "ack_requeue_true",
    ) -> List[Dict[str, Any]]:
        payload = {"count": count, "ackmode": ack_mode, "encoding": "auto", "truncate": 50000}
        endpoint = f"queues/{self.encode(vhost)}/{self.encode(name)}/get"
        return self._request("POST", endpoint, payload=payload) or []

    def exchanges(self, vhost: Optional[str] = None) -> List[Dict[str, Any]]:
        if vhost is None:
            return self._request("GET", "exchanges") or []
        return self._request("GET", f"exchanges/{self.encode(vhost)}") or []

    def delete_exchange(self, name: str, vhost: str = "/") -> bool:
        return self._delete(f"exchanges/{self.encode(vhost)}/{self.encode(name)}")


__all__ = ["RabbitError", "RabbitManager", "RabbitNotFoundError", "TransientBrokerError"]
