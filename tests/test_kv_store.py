from __future__ import annotations

import sqlite3
from unittest.mock import patch

import pytest

from db.kv_store import KeyValueStore
from db.sqlite import get_connection
from services.notifications import ChangeBus, StorageEvent


def _collect(store: KeyValueStore) -> list[str]:
    seen: list[str] = []
    store.bus.subscribe(lambda event: seen.append(event.key))
    return seen


def test_get_returns_default_for_missing_key(tmp_path):
    store = KeyValueStore(tmp_path / "store.db")
    assert store.get("nothing", {"a": 1}) == {"a": 1}
    assert store.get("nothing", None) is None


def test_set_get_remove_roundtrip_survives_reopen(tmp_path):
    path = tmp_path / "store.db"
    store = KeyValueStore(path)
    store.set("bookings_east_aeration", [{"booking_id": "b1", "price": "10.00"}])

    reopened = KeyValueStore(path)
    assert reopened.get("bookings_east_aeration", []) == [{"booking_id": "b1", "price": "10.00"}]

    reopened.remove("bookings_east_aeration")
    assert reopened.get("bookings_east_aeration", []) == []
    assert "bookings_east_aeration" not in reopened.keys()


def test_writer_receives_its_own_notifications(tmp_path):
    store = KeyValueStore(tmp_path / "store.db")
    seen = _collect(store)

    store.set("admin", "East Manager")
    store.remove("admin")

    assert seen == ["admin", "admin"]


def test_shared_bus_notifies_other_contexts(tmp_path):
    bus: ChangeBus[StorageEvent] = ChangeBus("shared")
    first = KeyValueStore(tmp_path / "store.db", bus=bus)
    second = KeyValueStore(tmp_path / "store.db", bus=bus)
    seen: list[str] = []
    bus.subscribe(lambda event: seen.append(event.key))

    second.set("territory_assignments", {"Map A": [1]})

    assert seen == ["territory_assignments"]
    assert first.get("territory_assignments", {}) == {"Map A": [1]}


def test_poll_detects_writes_from_another_process(tmp_path):
    path = tmp_path / "store.db"
    local = KeyValueStore(path)
    other = KeyValueStore(path)  # separate bus, like another session
    seen = _collect(local)

    other.set("active_season_id", "east-aeration")
    other.set("admin", "East Manager")

    assert local.poll_external_changes() == ["active_season_id", "admin"]
    assert seen == ["active_season_id", "admin"]
    # Nothing new on the second look
    assert local.poll_external_changes() == []


def test_poll_detects_external_removal(tmp_path):
    path = tmp_path / "store.db"
    local = KeyValueStore(path)
    local.set("admin", "East Manager")
    other = KeyValueStore(path)

    other.remove("admin")

    assert local.poll_external_changes() == ["admin"]
    assert local.get("admin", None) is None


def test_own_writes_are_not_reported_by_poll(tmp_path):
    store = KeyValueStore(tmp_path / "store.db")
    store.set("admin", "East Manager")
    assert store.poll_external_changes() == []


def test_last_writer_wins(tmp_path):
    path = tmp_path / "store.db"
    first = KeyValueStore(path)
    second = KeyValueStore(path)

    first.set("bookings_east_aeration", [{"booking_id": "from-first"}])
    second.set("bookings_east_aeration", [{"booking_id": "from-second"}])

    assert first.get("bookings_east_aeration", []) == [{"booking_id": "from-second"}]


def test_revision_is_reserved_under_write_lock(tmp_path):
    path = tmp_path / "store.db"
    local = KeyValueStore(path)
    other = KeyValueStore(path)
    reserve = local._reserve_revision
    reserved: list[int] = []

    def reserve_while_other_writes(conn):
        revision = reserve(conn)
        # Another writer cannot start until this write commits
        with pytest.raises(sqlite3.OperationalError):
            with get_connection(path, busy_timeout_ms=50) as competing:
                competing.execute("BEGIN IMMEDIATE")
        reserved.append(revision)
        return revision

    with patch.object(local, "_reserve_revision", reserve_while_other_writes):
        local.set("bookings_east_aeration", [{"booking_id": "from-local"}])
    assert reserved == [1]

    other.set("bookings_east_aeration", [{"booking_id": "from-other"}])
    assert local.poll_external_changes() == ["bookings_east_aeration"]
    assert local.get("bookings_east_aeration", []) == [{"booking_id": "from-other"}]


def test_failing_subscriber_does_not_block_others():
    bus: ChangeBus[StorageEvent] = ChangeBus("test")
    received: list[str] = []

    def broken(_event):
        raise RuntimeError("boom")

    bus.subscribe(broken)
    bus.subscribe(lambda event: received.append(event.key))
    bus.publish(StorageEvent("admin"))

    assert received == ["admin"]


def test_unsubscribe_stops_delivery():
    bus: ChangeBus[StorageEvent] = ChangeBus("test")
    received: list[str] = []
    unsubscribe = bus.subscribe(lambda event: received.append(event.key))

    unsubscribe()
    unsubscribe()  # second call is harmless
    bus.publish(StorageEvent("admin"))

    assert received == []
    assert bus.subscriber_count == 0
