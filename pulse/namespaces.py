"""Namespace lifecycle: issuing, rotating and reclaiming broker credentials."""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timezone
from typing import Callable, List, Optional
from urllib.parse import quote, urlsplit, urlunsplit

from .config import AppConfig
from .database import Database, PermissionConflict
from .models import Namespace, NamespaceCredentials
from .permissions import PermissionRule, validate_namespace_name
from .rabbit import RabbitManager

logger = logging.getLogger("pulse.namespaces")

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _generate_password() -> str:
    return secrets.token_urlsafe(24)


def build_connection_string(amqp_url: str, username: str, password: str, vhost: str) -> str:
    """Embed credentials and the virtual host into the configured AMQP URL."""

    parts = urlsplit(amqp_url)
    host = parts.hostname or "localhost"
    if parts.port:
        host = f"{host}:{parts.port}"
    netloc = f"{quote(username, safe='')}:{quote(password, safe='')}@{host}"
    return urlunsplit((parts.scheme or "amqp", netloc, "/" + quote(vhost, safe=""), "", ""))


class NamespaceManager:
    """Turns namespace records into broker users and permissions, and back."""

    def __init__(
        self,
        rabbit: RabbitManager,
        database: Database,
        config: AppConfig,
        *,
        clock: Clock = _utcnow,
    ) -> None:
        self._rabbit = rabbit
        self._database = database
        self._config = config
        self._clock = clock

    def permission_rule(self, name: str) -> PermissionRule:
        return self._config.permissions.render(name)

    def owns_name(self, name: str) -> bool:
        try:
            validate_namespace_name(name, self._config.namespace_prefix)
        except ValueError:
            return False
        return True

    def claim(self, name: str, contact: Optional[str] = None) -> NamespaceCredentials:
        """Create the namespace if needed and issue a fresh credential.

        The store record is written before anything exists on the broker, so a
        tagged broker user without a record is always safe to sweep.
        """

        name = validate_namespace_name(name, self._config.namespace_prefix)
        namespace = self._database.get_namespace(name)
        if namespace is None:
            now = self._clock()
            try:
                namespace = self._database.create_namespace(
                    name,
                    expires=now,
                    contact=contact,
                    created=now,
                )
                logger.info("Created namespace %s", name)
            except ValueError:
                namespace = self._database.get_namespace(name)
                if namespace is None:
                    raise PermissionConflict(name, 0)
        return self.rotate(namespace, contact=contact)

    def rotate(self, namespace: Namespace, *, contact: Optional[str] = None) -> NamespaceCredentials:
        """Overwrite the broker user's secret and advance ``expires``.

        ``contact``, when given, replaces the stored contact along with the expiry.

        Broker writes are idempotent upserts. If another process rotated the
        namespace since ``namespace`` was read, :class:`PermissionConflict` is
        raised and the store is left as the winner wrote it.
        """

        password = _generate_password()
        rule = self.permission_rule(namespace.name)
        vhost = self._config.virtualhost

        self._rabbit.create_user(namespace.name, password, self._config.user_tags)
        self._rabbit.set_user_permissions(namespace.name, vhost, **rule.to_payload())

        now = self._clock()
        expires = max(now, namespace.expires) + self._config.rotation_interval
        updated = self._database.update_namespace_expiry(
            namespace.name,
            expected_version=namespace.rotation_version,
            expires=expires,
            contact=contact,
        )
        logger.info(
            "Rotated credentials for namespace %s (version %s, expires %s)",
            updated.name,
            updated.rotation_version,
            updated.expires.isoformat(),
        )

        return NamespaceCredentials(
            namespace=updated.name,
            username=updated.name,
            password=password,
            vhost=vhost,
            expires=updated.expires,
            connection_string=build_connection_string(self._config.amqp_url, updated.name, password, vhost),
        )

    def is_reclaimable(self, namespace: Namespace) -> bool:
        return namespace.expires + self._config.expiration_delay <= self._clock()

    def reclaim(self, namespace: Namespace) -> bool:
        """Delete a namespace that went unrotated past the grace period.

        Returns ``False`` without touching anything when the namespace is still
        within its grace period.
        """

        if not self.is_reclaimable(namespace):
            return False

        self._database.delete_namespace(namespace.name, expected_version=namespace.rotation_version)
        self._database.delete_alert_records(namespace.name)
        self._delete_broker_user(namespace.name)
        logger.info("Reclaimed namespace %s (expired %s)", namespace.name, namespace.expires.isoformat())
        return True

    def sweep_orphan_users(self) -> List[str]:
        """Delete managed broker users whose namespace record no longer exists."""

        removed: List[str] = []
        for user in self._rabbit.users_with_all_tags(self._config.user_tags):
            name = str(user.get("name", ""))
            if not self.owns_name(name):
                continue
            if self._database.get_namespace(name) is not None:
                continue
            self._delete_broker_user(name)
            logger.info("Deleted orphaned broker user %s", name)
            removed.append(name)
        return removed

    def delete_queue(self, name: str) -> bool:
        deleted = self._rabbit.delete_queue(name, self._config.virtualhost)
        if deleted:
            logger.warning("Deleted queue %s", name)
        return deleted

    def delete_exchange(self, name: str) -> bool:
        deleted = self._rabbit.delete_exchange(name, self._config.virtualhost)
        if deleted:
            logger.warning("Deleted exchange %s", name)
        return deleted

    def _delete_broker_user(self, name: str) -> None:
        if not self._rabbit.delete_user_permissions(name, self._config.virtualhost):
            logger.debug("Permissions for %s were already gone", name)
        if not self._rabbit.delete_user(name):
            logger.debug("Broker user %s was already gone", name)


__all__ = ["Clock", "NamespaceManager", "build_connection_string"]
