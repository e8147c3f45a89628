"""Season-scoped booking repository.

Holds the raw booking collection of the active season and the view of it that
the logged-in operator may see (maps assigned to the operator's profile). The
view is kept current by listening to store change events:

* the active-season pointer or the active collection changed -> ``resync()``
  (reload records from the store);
* territory assignments, the logged-in operator or the profile list changed ->
  ``refilter()`` only (records in memory are still valid).

Writes go to the raw collection, are persisted as a whole and then re-filtered.
Other sessions writing the same key win if they write last; nothing is merged.
"""

from __future__ import annotations

import dataclasses
import itertools
import logging
import secrets
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Mapping

from config.seasons import (
    BOOKING_KEY_PREFIX,
    SEASONS,
    STORAGE_KEYS,
    booking_storage_keys,
    get_season_by_id,
    resolve_storage_key,
)
from db.kv_store import KeyValueStore
from db.models import (
    BookingRecord,
    BookingStatus,
    SeasonDescriptor,
    canonical_changes,
    normalize_booking_record,
)
from services.notifications import ChangeBus, StorageEvent
from services.territory import resolve_operator_profile_id, visible_maps
from services.validation import parse_operator_profiles

logger = logging.getLogger(__name__)


class RepositoryNotReadyError(RuntimeError):
    """Raised when a write needs an active season collection and there is none."""


class RepositoryState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"


class Invalidation(str, Enum):
    RESYNC = "resync"
    REFILTER = "refilter"
    IGNORE = "ignore"


OPERATOR_CONTEXT_KEYS = frozenset(
    {
        STORAGE_KEYS["TERRITORY_ASSIGNMENTS"],
        STORAGE_KEYS["ADMIN"],
        STORAGE_KEYS["CONSOLE_PROFILES"],
    }
)


def route_invalidation(changed_key: str, active_storage_key: str | None) -> Invalidation:
    """Decide how much work a change to ``changed_key`` requires."""
    if changed_key == STORAGE_KEYS["ACTIVE_SEASON_ID"]:
        return Invalidation.RESYNC
    if active_storage_key and changed_key == active_storage_key:
        return Invalidation.RESYNC
    if changed_key in OPERATOR_CONTEXT_KEYS:
        return Invalidation.REFILTER
    return Invalidation.IGNORE


@dataclass(frozen=True)
class BookingsRefreshed:
    storage_key: str | None
    raw_count: int
    visible_count: int


@dataclass(frozen=True)
class BookingCounts:
    total: int = 0
    completed: int = 0
    cancelled: int = 0
    pending: int = 0


def _now() -> str:
    return datetime.now().isoformat(timespec="microseconds")


# Shared by all repositories in the process so ids stay unique per process
_ID_COUNTER = itertools.count(1)


class SeasonBookingRepository:
    def __init__(
        self,
        store: KeyValueStore,
        seasons: tuple[SeasonDescriptor, ...] = SEASONS,
    ) -> None:
        self.store = store
        self.seasons = seasons
        self.raw_records: list[BookingRecord] = []
        self.filtered_records: list[BookingRecord] = []
        self.active_storage_key: str | None = None
        self.active_season: SeasonDescriptor | None = None
        self.operator_profile_id: int | None = None
        self.territory_assignments: dict[str, list[int]] = {}
        self.state = RepositoryState.UNINITIALIZED
        self.refreshed: ChangeBus[BookingsRefreshed] = ChangeBus("bookings")
        self._own_write_key: str | None = None
        self._unsubscribe = store.bus.subscribe(self._on_storage_event)

    def start(self) -> "SeasonBookingRepository":
        self.reload_operator_context()
        self.resync()
        return self

    def close(self) -> None:
        self._unsubscribe()

    # --- Loading -------------------------------------------------------

    def reload_operator_context(self) -> None:
        raw_assignments = self.store.get(STORAGE_KEYS["TERRITORY_ASSIGNMENTS"], {})
        self.territory_assignments = self._parse_assignments(raw_assignments)

        admin_title = self.store.get(STORAGE_KEYS["ADMIN"], None)
        if admin_title:
            profiles = parse_operator_profiles(self.store.get(STORAGE_KEYS["CONSOLE_PROFILES"], []))
            self.operator_profile_id = resolve_operator_profile_id(admin_title, profiles)
            logger.info("Operator profile id %s resolved for %s", self.operator_profile_id, admin_title)
        else:
            self.operator_profile_id = None
            logger.info("No operator logged in")

    @staticmethod
    def _parse_assignments(raw: Any) -> dict[str, list[int]]:
        if not isinstance(raw, Mapping):
            logger.warning("Territory assignments are not a mapping, ignoring: %r", type(raw).__name__)
            return {}
        parsed: dict[str, list[int]] = {}
        for map_name, ids in raw.items():
            values: list[int] = []
            for value in ids or []:
                try:
                    values.append(int(value))
                except (TypeError, ValueError):
                    logger.warning("Ignoring non-numeric profile id %r on map %s", value, map_name)
            parsed[str(map_name)] = values
        return parsed

    def resync(self) -> None:
        self.state = RepositoryState.LOADING
        season_id = self.store.get(STORAGE_KEYS["ACTIVE_SEASON_ID"], None)
        season = get_season_by_id(season_id, self.seasons)
        storage_key = resolve_storage_key(season)

        if storage_key is None:
            logger.warning(
                "No active/valid season key (id: %s -> key name: %s), loading empty bookings",
                season_id,
                season.storage_key_name if season else None,
            )
            self.active_season = None
            self.active_storage_key = None
            self.raw_records = []
        else:
            self.active_season = season
            self.active_storage_key = storage_key
            self.raw_records = self._load_records(storage_key)
            logger.info("Synced bookings with %s, found %s raw bookings", storage_key, len(self.raw_records))

        self.refilter()

    def _load_records(self, storage_key: str) -> list[BookingRecord]:
        stored = self.store.get(storage_key, [])
        if not isinstance(stored, list):
            logger.warning("Collection %s is not a list, treating it as empty", storage_key)
            return []
        records: list[BookingRecord] = []
        for item in stored:
            if not isinstance(item, Mapping):
                logger.warning("Skipping malformed booking in %s: %r", storage_key, item)
                continue
            records.append(normalize_booking_record(item))
        return records

    def refilter(self) -> None:
        if self.operator_profile_id is None:
            self.filtered_records = []
        else:
            allowed = visible_maps(self.territory_assignments, self.operator_profile_id)
            self.filtered_records = [r for r in self.raw_records if r.map_name and r.map_name in allowed]
            logger.debug(
                "Profile %s sees %s maps: %s",
                self.operator_profile_id, len(allowed), ", ".join(sorted(allowed)),
            )
        logger.info(
            "Filtered %s raw bookings down to %s by territory assignment",
            len(self.raw_records), len(self.filtered_records),
        )
        self.state = RepositoryState.READY
        self.refreshed.publish(
            BookingsRefreshed(self.active_storage_key, len(self.raw_records), len(self.filtered_records))
        )

    def _on_storage_event(self, event: StorageEvent) -> None:
        if self.state == RepositoryState.UNINITIALIZED:
            return
        if event.key == self._own_write_key:
            return
        action = route_invalidation(event.key, self.active_storage_key)
        if action == Invalidation.RESYNC:
            logger.info("Active season or its data changed (%s), resyncing", event.key)
            self.resync()
        elif action == Invalidation.REFILTER:
            logger.info("Assignments or profile changed (%s), refiltering", event.key)
            self.reload_operator_context()
            self.refilter()

    # --- Reads (territory-filtered) ------------------------------------

    def get_all(self) -> list[BookingRecord]:
        return list(self.filtered_records)

    def get_by_id(self, booking_id: str) -> BookingRecord | None:
        for record in self.filtered_records:
            if record.booking_id == booking_id:
                return record
        return None

    def get_for_worker(self, worker_id: str) -> list[BookingRecord]:
        if not worker_id or not str(worker_id).strip():
            return []
        worker_id = str(worker_id).strip()
        route_assignments = self.store.get(STORAGE_KEYS["ROUTE_ASSIGNMENTS"], {})
        if not isinstance(route_assignments, Mapping):
            route_assignments = {}

        result: list[BookingRecord] = []
        for record in self.filtered_records:
            if record.worker_id == worker_id:
                result.append(record)
            elif not record.worker_id and record.route_code:
                if str(route_assignments.get(record.route_code, "")) == worker_id:
                    result.append(record)
        return result

    # --- Writes (raw collection) ---------------------------------------

    def _persist(self, records: list[BookingRecord]) -> None:
        """Save ``records`` as the active collection, then adopt them in memory.

        If the store write fails the in-memory collection is left untouched.
        """
        if not self.active_storage_key:
            raise RepositoryNotReadyError("Cannot save bookings: no active booking database selected")
        self._own_write_key = self.active_storage_key
        try:
            self.store.set(self.active_storage_key, [r.to_dict() for r in records])
        finally:
            self._own_write_key = None
        self.raw_records = records
        logger.info("Saved %s raw bookings to %s", len(records), self.active_storage_key)

    def update(self, booking_id: str, changes: Mapping[str, Any]) -> BookingRecord | None:
        known, extra = canonical_changes(changes)
        if known.pop("booking_id", booking_id) != booking_id:
            logger.warning("Ignoring attempt to change the id of booking %s", booking_id)

        for index, record in enumerate(self.raw_records):
            if record.booking_id == booking_id:
                updated = dataclasses.replace(
                    record,
                    **known,
                    extra={**record.extra, **extra},
                    updated_at=_now(),
                )
                records = list(self.raw_records)
                records[index] = updated
                self._persist(records)
                self.refilter()
                return updated

        logger.warning(
            "Update failed: booking %s not found in active database (%s)", booking_id, self.active_storage_key
        )
        return None

    def _new_booking_id(self, route_code: str) -> str:
        if not self.active_storage_key:
            raise RepositoryNotReadyError("Cannot create a booking id: no active booking database selected")
        key_suffix = self.active_storage_key.removeprefix(BOOKING_KEY_PREFIX)
        unique = f"{time.time_ns():x}{next(_ID_COUNTER):05d}-{secrets.token_hex(4)}"
        if route_code:
            return f"{route_code}-{key_suffix}-{unique}"
        return f"{key_suffix}-nobooking-{unique}"

    def add(self, partial: Mapping[str, Any]) -> BookingRecord:
        if not self.active_storage_key:
            logger.error("Cannot add booking: no active booking database selected")
            raise RepositoryNotReadyError("Cannot add booking: no active booking database selected")

        known, extra = canonical_changes(partial)
        known.pop("booking_id", None)
        stamp = _now()
        known["booking_id"] = self._new_booking_id(known.get("route_code", ""))
        known["created_at"] = stamp
        known["updated_at"] = stamp
        record = normalize_booking_record({**known, "extra": extra}, now=stamp)

        self._persist([*self.raw_records, record])
        self.refilter()
        logger.info("Added booking %s", record.booking_id)
        return record

    def complete(self, booking_id: str, payment_method: str, is_paid: bool) -> BookingRecord | None:
        return self.update(
            booking_id,
            {
                "completed": True,
                "status": "",
                "payment_method": payment_method,
                "is_paid": is_paid,
                "date_completed": _now(),
            },
        )

    def cancel(self, booking_id: str) -> BookingRecord | None:
        return self.update(
            booking_id,
            {
                "status": BookingStatus.CANCELLED,
                "completed": False,
                "date_completed": _now(),
            },
        )

    def replace_all_for_key(self, records: Iterable[BookingRecord | Mapping[str, Any]], storage_key: str) -> None:
        if not storage_key or storage_key not in booking_storage_keys():
            logger.error("Invalid storage key provided for replace_all_for_key: %s", storage_key)
            raise ValueError(f"Invalid storage key: {storage_key}")

        normalized = [r if isinstance(r, BookingRecord) else normalize_booking_record(r) for r in records]
        is_active = storage_key == self.active_storage_key
        if is_active:
            self._own_write_key = storage_key
        try:
            self.store.set(storage_key, [r.to_dict() for r in normalized])
        finally:
            self._own_write_key = None

        if is_active:
            self.raw_records = list(normalized)
            self.refilter()
        logger.info("Replaced all bookings in %s. New raw count: %s", storage_key, len(normalized))

    def count_for_key(self, storage_key: str) -> BookingCounts:
        if storage_key == self.active_storage_key:
            records = self.raw_records
        else:
            records = self._load_records(storage_key)
        completed = sum(1 for r in records if r.completed)
        cancelled = sum(1 for r in records if not r.completed and r.status == BookingStatus.CANCELLED)
        return BookingCounts(
            total=len(records),
            completed=completed,
            cancelled=cancelled,
            pending=len(records) - completed - cancelled,
        )
