"""SQLite-backed persistence for namespaces and queue alert records."""
from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from .models import AlertRecord, Namespace


class PermissionConflict(RuntimeError):
    """Raised when a conditional write loses to a concurrent writer."""

    def __init__(self, name: str, expected_version: int) -> None:
        super().__init__(
            f"Namespace {name!r} changed concurrently (expected rotation version {expected_version})"
        )
        self.name = name
        self.expected_version = expected_version


def _ensure_directory(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def resolve_database_path(env_value: Optional[str]) -> Path:
    """Resolve the on-disk path for the namespace table."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    base_dir = Path(__file__).resolve().parent.parent / "data"
    return (base_dir / "pulse.sqlite3").resolve(strict=False)


def _current_timestamp() -> datetime:
    return datetime.now(timezone.utc)


def _serialize_datetime(value: datetime) -> str:
    # Fixed width so that timestamps compare correctly as text inside SQL.
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_datetime(value: str) -> datetime:
    return datetime.fromisoformat(value)


class Database:
    """Namespace store with compare-and-swap semantics on ``rotation_version``."""

    def __init__(self, path: Path) -> None:
        _ensure_directory(path)
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path, check_same_thread=False, timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    def initialize(self) -> None:
        """Create the required tables if they do not already exist."""

        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS namespaces (
                    name TEXT PRIMARY KEY,
                    created TEXT NOT NULL,
                    expires TEXT NOT NULL,
                    rotation_version INTEGER NOT NULL DEFAULT 0,
                    contact TEXT
                );

                CREATE TABLE IF NOT EXISTS rabbit_queues (
                    namespace TEXT NOT NULL,
                    queue_name TEXT NOT NULL,
                    last_alert_at TEXT NOT NULL,
                    PRIMARY KEY (namespace, queue_name)
                );

                CREATE INDEX IF NOT EXISTS idx_namespaces_expires ON namespaces(expires);
                CREATE INDEX IF NOT EXISTS idx_rabbit_queues_last_alert ON rabbit_queues(last_alert_at);
                """
            )

    # ------------------------------------------------------------------
    # Namespace management
    # ------------------------------------------------------------------
    def create_namespace(
        self,
        name: str,
        *,
        expires: datetime,
        contact: Optional[str] = None,
        created: Optional[datetime] = None,
    ) -> Namespace:
        """Insert a new namespace record at rotation version 0."""

        created_at = created or _current_timestamp()
        with self._connect() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO namespaces (name, created, expires, rotation_version, contact)
                    VALUES (?, ?, ?, 0, ?)
                    """,
                    (name, _serialize_datetime(created_at), _serialize_datetime(expires), contact),
                )
            except sqlite3.IntegrityError as exc:
                raise ValueError(f"Namespace {name!r} already exists") from exc

        namespace = self.get_namespace(name)
        if namespace is None:
            raise RuntimeError("Failed to load namespace after creation")
        return namespace

    def get_namespace(self, name: str) -> Optional[Namespace]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM namespaces WHERE name = ?", (name,)).fetchone()
        if row is None:
            return None
        return self._row_to_namespace(row)

    def list_namespaces(self) -> List[Namespace]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM namespaces ORDER BY name").fetchall()
        return [self._row_to_namespace(row) for row in rows]

    def list_namespaces_expiring_before(self, cutoff: datetime) -> List[Namespace]:
        """Return namespaces whose ``expires`` is at or before ``cutoff``."""

        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM namespaces WHERE expires <= ? ORDER BY expires",
                (_serialize_datetime(cutoff),),
            ).fetchall()
        return [self._row_to_namespace(row) for row in rows]

    def update_namespace_expiry(
        self,
        name: str,
        *,
        expected_version: int,
        expires: datetime,
        contact: Optional[str] = None,
    ) -> Namespace:
        """Advance ``expires`` and bump the version if ``expected_version`` still holds.

        A non-empty ``contact`` replaces the stored one in the same statement.
        """

        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE namespaces
                   SET expires = ?, rotation_version = rotation_version + 1,
                       contact = COALESCE(?, contact)
                 WHERE name = ? AND rotation_version = ?
                """,
                (_serialize_datetime(expires), contact or None, name, expected_version),
            )
            if cursor.rowcount == 0:
                raise PermissionConflict(name, expected_version)

        refreshed = self.get_namespace(name)
        if refreshed is None:
            raise PermissionConflict(name, expected_version)
        return refreshed

    def delete_namespace(self, name: str, *, expected_version: int) -> None:
        """Remove the record if ``expected_version`` still holds."""

        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM namespaces WHERE name = ? AND rotation_version = ?",
                (name, expected_version),
            )
            if cursor.rowcount == 0:
                raise PermissionConflict(name, expected_version)

    def remove_namespace(self, name: str) -> bool:
        """Unconditionally drop a namespace record (operator action)."""

        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM namespaces WHERE name = ?", (name,))
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Alert records
    # ------------------------------------------------------------------
    def claim_alert(self, namespace: str, queue_name: str, *, now: datetime, cutoff: datetime) -> bool:
        """Record an alert unless one was recorded after ``cutoff``.

        The decision and the write are a single statement, so only one of
        several concurrent callers can claim a given window.
        """

        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO rabbit_queues (namespace, queue_name, last_alert_at)
                VALUES (?, ?, ?)
                ON CONFLICT (namespace, queue_name) DO UPDATE
                   SET last_alert_at = excluded.last_alert_at
                 WHERE rabbit_queues.last_alert_at < ?
                """,
                (namespace, queue_name, _serialize_datetime(now), _serialize_datetime(cutoff)),
            )
            return cursor.rowcount > 0

    def release_alert(self, namespace: str, queue_name: str, *, claimed_at: datetime) -> bool:
        """Give back a window claimed at ``claimed_at`` whose alert was never delivered."""

        with self._connect() as conn:
            cursor = conn.execute(
                """
                DELETE FROM rabbit_queues
                 WHERE namespace = ? AND queue_name = ? AND last_alert_at = ?
                """,
                (namespace, queue_name, _serialize_datetime(claimed_at)),
            )
            return cursor.rowcount > 0

    def get_alert_record(self, namespace: str, queue_name: str) -> Optional[AlertRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM rabbit_queues WHERE namespace = ? AND queue_name = ?",
                (namespace, queue_name),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_alert_record(row)

    def list_alert_records(self) -> List[AlertRecord]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM rabbit_queues ORDER BY namespace, queue_name").fetchall()
        return [self._row_to_alert_record(row) for row in rows]

    def expire_alert_records(self, cutoff: datetime) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM rabbit_queues WHERE last_alert_at < ?",
                (_serialize_datetime(cutoff),),
            )
            return cursor.rowcount

    def delete_alert_records(self, namespace: str) -> int:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM rabbit_queues WHERE namespace = ?", (namespace,))
            return cursor.rowcount

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _row_to_namespace(self, row: sqlite3.Row) -> Namespace:
        return Namespace(
            name=str(row["name"]),
            created=_parse_datetime(str(row["created"])),
            expires=_parse_datetime(str(row["expires"])),
            rotation_version=int(row["rotation_version"]),
            contact=row["contact"],
        )

    def _row_to_alert_record(self, row: sqlite3.Row) -> AlertRecord:
        return AlertRecord(
            namespace=str(row["namespace"]),
            queue_name=str(row["queue_name"]),
            last_alert_at=_parse_datetime(str(row["last_alert_at"])),
        )


__all__ = ["Database", "PermissionConflict", "resolve_database_path"]
