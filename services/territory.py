"""Territory resolution: which maps (and therefore which bookings) an operator may see.

A territory structure is ``group -> map -> [route codes]``; assignments are
``map -> [operator profile ids]``. A map with no assignment is visible to nobody.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Sequence

from db.models import BookingRecord, OperatorProfile

logger = logging.getLogger(__name__)

TerritoryStructure = Mapping[str, Mapping[str, Sequence[str]]]
TerritoryAssignments = Mapping[str, Sequence[int]]


def visible_maps(assignments: TerritoryAssignments, profile_id: int | None) -> set[str]:
    if profile_id is None:
        return set()
    return {map_name for map_name, ids in assignments.items() if ids and profile_id in ids}


def visible_maps_in_structure(
    structure: TerritoryStructure, assignments: TerritoryAssignments, profile_id: int | None
) -> set[str]:
    allowed = visible_maps(assignments, profile_id)
    return {map_name for maps in structure.values() for map_name in maps if map_name in allowed}


def build_route_index(structure: TerritoryStructure) -> dict[str, tuple[str, str]]:
    """Map each route code to its (group, map). Duplicates are logged; the first one wins."""
    index: dict[str, tuple[str, str]] = {}
    for group, maps in structure.items():
        for map_name, routes in maps.items():
            for route in routes or []:
                code = str(route).strip()
                if not code:
                    continue
                if code in index and index[code] != (group, map_name):
                    logger.warning(
                        "Route %s listed under %s/%s and %s/%s, keeping the first",
                        code, index[code][0], index[code][1], group, map_name,
                    )
                    continue
                index[code] = (group, map_name)
    return index


def locate_route(structure: TerritoryStructure, route_code: str) -> tuple[str, str] | None:
    return build_route_index(structure).get(route_code.strip())


def resolve_operator_profile_id(admin_title: str | None, profiles: Iterable[OperatorProfile]) -> int | None:
    if not admin_title:
        return None
    for profile in profiles:
        if profile.title == admin_title:
            return profile.id
    return None


def assign_maps(
    assignments: TerritoryAssignments, maps: Iterable[str], profile_ids: Iterable[int]
) -> dict[str, list[int]]:
    """Return a new table with ``profile_ids`` added to every map in ``maps``."""
    updated = {name: list(ids) for name, ids in assignments.items()}
    ids_to_add = list(dict.fromkeys(int(p) for p in profile_ids))
    for map_name in maps:
        current = updated.setdefault(map_name, [])
        for profile_id in ids_to_add:
            if profile_id not in current:
                current.append(profile_id)
    return updated


def unassign_maps(
    assignments: TerritoryAssignments, maps: Iterable[str], profile_ids: Iterable[int] | None = None
) -> dict[str, list[int]]:
    """Return a new table without ``profile_ids`` on ``maps`` (all profiles when None)."""
    updated = {name: list(ids) for name, ids in assignments.items()}
    to_remove = None if profile_ids is None else {int(p) for p in profile_ids}
    for map_name in maps:
        if map_name not in updated:
            continue
        if to_remove is None:
            updated[map_name] = []
        else:
            updated[map_name] = [p for p in updated[map_name] if p not in to_remove]
    return updated


@dataclass
class MapStats:
    group: str
    map_name: str
    booking_count: int = 0
    assigned_profile_ids: list[int] = field(default_factory=list)


def territory_summary(
    structure: TerritoryStructure,
    records: Iterable[BookingRecord],
    assignments: TerritoryAssignments,
) -> dict[str, list[MapStats]]:
    """Per group, the maps of the structure with booking counts and assignees."""
    stats: dict[tuple[str, str], MapStats] = {}
    for group, maps in structure.items():
        for map_name in maps:
            stats[(group, map_name)] = MapStats(group, map_name, 0, list(assignments.get(map_name, [])))

    for record in records:
        key = (record.group.strip(), record.map_name.strip())
        if key in stats:
            stats[key].booking_count += 1

    grouped: dict[str, list[MapStats]] = {}
    for item in stats.values():
        grouped.setdefault(item.group, []).append(item)
    for items in grouped.values():
        items.sort(key=lambda s: s.map_name)
    return grouped
