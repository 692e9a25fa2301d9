"""Domain models for namespaces and queue alert records."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class Namespace:
    """A tenant's access scope as stored in the namespace table.

    ``rotation_version`` is the optimistic-lock token: every write that depends
    on this snapshot must present it unchanged.
    """

    name: str
    created: datetime
    expires: datetime
    rotation_version: int
    contact: Optional[str] = None


@dataclass(frozen=True)
class NamespaceCredentials:
    """Freshly issued broker credentials. Never persisted."""

    namespace: str
    username: str
    password: str
    vhost: str
    expires: datetime
    connection_string: str


@dataclass(frozen=True)
class AlertRecord:
    """Last time an alert fired for a queue."""

    namespace: str
    queue_name: str
    last_alert_at: datetime


__all__ = ["AlertRecord", "Namespace", "NamespaceCredentials"]
