from __future__ import annotations

import sys
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from pulse.database import Database, PermissionConflict, resolve_database_path  # noqa: E402

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture()
def database(tmp_path: Path) -> Database:
    db_path = tmp_path / "pulse.sqlite3"
    db = Database(db_path)
    db.initialize()
    return db


def test_create_and_fetch_namespace(database: Database) -> None:
    created = database.create_namespace("tc-foo", expires=NOW, contact="ops@example.com", created=NOW)

    assert created.rotation_version == 0
    assert created.expires == NOW
    assert created.contact == "ops@example.com"
    assert database.get_namespace("tc-foo") == created
    assert database.get_namespace("tc-bar") is None
    assert [namespace.name for namespace in database.list_namespaces()] == ["tc-foo"]


def test_duplicate_namespace_is_rejected(database: Database) -> None:
    database.create_namespace("tc-foo", expires=NOW)

    with pytest.raises(ValueError):
        database.create_namespace("tc-foo", expires=NOW)


def test_update_expiry_bumps_version(database: Database) -> None:
    database.create_namespace("tc-foo", expires=NOW)

    updated = database.update_namespace_expiry("tc-foo", expected_version=0, expires=NOW + timedelta(hours=1))

    assert updated.rotation_version == 1
    assert updated.expires == NOW + timedelta(hours=1)


def test_update_expiry_replaces_contact_only_when_given(database: Database) -> None:
    database.create_namespace("tc-foo", expires=NOW, contact="old@example.com")

    kept = database.update_namespace_expiry("tc-foo", expected_version=0, expires=NOW + timedelta(hours=1))
    assert kept.contact == "old@example.com"

    replaced = database.update_namespace_expiry(
        "tc-foo",
        expected_version=1,
        expires=NOW + timedelta(hours=2),
        contact="new@example.com",
    )
    assert replaced.contact == "new@example.com"
    assert replaced.rotation_version == 2


def test_stale_version_conflicts(database: Database) -> None:
    database.create_namespace("tc-foo", expires=NOW)
    database.update_namespace_expiry("tc-foo", expected_version=0, expires=NOW + timedelta(hours=1))

    with pytest.raises(PermissionConflict) as excinfo:
        database.update_namespace_expiry("tc-foo", expected_version=0, expires=NOW + timedelta(hours=2))
    assert excinfo.value.expected_version == 0
    assert database.get_namespace("tc-foo").expires == NOW + timedelta(hours=1)

    with pytest.raises(PermissionConflict):
        database.delete_namespace("tc-foo", expected_version=0)
    assert database.get_namespace("tc-foo") is not None

    database.delete_namespace("tc-foo", expected_version=1)
    assert database.get_namespace("tc-foo") is None


def test_only_one_concurrent_writer_wins(database: Database) -> None:
    database.create_namespace("tc-foo", expires=NOW)
    outcomes: List[str] = []
    barrier = threading.Barrier(4)

    def rotate(offset: int) -> None:
        barrier.wait()
        try:
            database.update_namespace_expiry(
                "tc-foo", expected_version=0, expires=NOW + timedelta(minutes=offset)
            )
        except PermissionConflict:
            outcomes.append("conflict")
        else:
            outcomes.append("won")

    threads = [threading.Thread(target=rotate, args=(offset,)) for offset in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(outcomes) == ["conflict", "conflict", "conflict", "won"]
    assert database.get_namespace("tc-foo").rotation_version == 1


def test_list_namespaces_expiring_before(database: Database) -> None:
    database.create_namespace("tc-old", expires=NOW - timedelta(hours=3))
    database.create_namespace("tc-due", expires=NOW)
    database.create_namespace("tc-fresh", expires=NOW + timedelta(minutes=1))

    names = [namespace.name for namespace in database.list_namespaces_expiring_before(NOW)]

    assert names == ["tc-old", "tc-due"]


def test_remove_namespace(database: Database) -> None:
    database.create_namespace("tc-foo", expires=NOW)

    assert database.remove_namespace("tc-foo") is True
    assert database.remove_namespace("tc-foo") is False


def test_claim_alert_once_per_window(database: Database) -> None:
    window = timedelta(hours=24)

    assert database.claim_alert("tc-foo", "queue/tc-foo/q", now=NOW, cutoff=NOW - window)
    later = NOW + timedelta(hours=1)
    assert not database.claim_alert("tc-foo", "queue/tc-foo/q", now=later, cutoff=later - window)
    assert database.get_alert_record("tc-foo", "queue/tc-foo/q").last_alert_at == NOW

    much_later = NOW + timedelta(hours=25)
    assert database.claim_alert("tc-foo", "queue/tc-foo/q", now=much_later, cutoff=much_later - window)
    assert database.get_alert_record("tc-foo", "queue/tc-foo/q").last_alert_at == much_later


def test_released_alert_can_be_claimed_again(database: Database) -> None:
    window = timedelta(hours=24)
    database.claim_alert("tc-foo", "queue/tc-foo/q", now=NOW, cutoff=NOW - window)

    assert not database.release_alert("tc-foo", "queue/tc-foo/q", claimed_at=NOW - timedelta(minutes=1))
    assert database.release_alert("tc-foo", "queue/tc-foo/q", claimed_at=NOW)
    assert database.get_alert_record("tc-foo", "queue/tc-foo/q") is None

    later = NOW + timedelta(minutes=5)
    assert database.claim_alert("tc-foo", "queue/tc-foo/q", now=later, cutoff=later - window)


def test_expire_and_delete_alert_records(database: Database) -> None:
    database.claim_alert("tc-foo", "queue/tc-foo/a", now=NOW, cutoff=NOW)
    database.claim_alert("tc-foo", "queue/tc-foo/b", now=NOW + timedelta(hours=2), cutoff=NOW)
    database.claim_alert("tc-bar", "queue/tc-bar/a", now=NOW + timedelta(hours=2), cutoff=NOW)

    assert database.expire_alert_records(NOW + timedelta(hours=1)) == 1
    assert database.delete_alert_records("tc-foo") == 1
    assert [(record.namespace, record.queue_name) for record in database.list_alert_records()] == [
        ("tc-bar", "queue/tc-bar/a")
    ]


def test_resolve_database_path(tmp_path: Path) -> None:
    assert resolve_database_path(str(tmp_path / "x.sqlite3")) == (tmp_path / "x.sqlite3").resolve()
    assert resolve_database_path(None).name == "pulse.sqlite3"
