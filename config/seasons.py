from __future__ import annotations

from db.models import SeasonDescriptor, SeasonKind

# Logical key names -> persisted keys in the store
STORAGE_KEYS: dict[str, str] = {
    "ACTIVE_SEASON_ID": "active_season_id",
    "ADMIN": "admin",
    "CONSOLE_PROFILES": "console_profiles",
    "TERRITORY_ASSIGNMENTS": "territory_assignments",
    "TERRITORY_STRUCTURE": "territory_structure",
    "ROUTE_ASSIGNMENTS": "route_assignments",
    "UPSELL_MENUS": "upsell_menus",
    "CONSOLE_WORKERS": "console_workers",
    "LAST_APP_DATE": "last_app_date",
    "BOOKINGS_WEST_AERATION": "bookings_west_aeration",
    "BOOKINGS_WEST_REJUV": "bookings_west_rejuv",
    "BOOKINGS_CENTRAL_AERATION": "bookings_central_aeration",
    "BOOKINGS_CENTRAL_SEALING": "bookings_central_sealing",
    "BOOKINGS_EAST_AERATION": "bookings_east_aeration",
    "BOOKINGS_EAST_REJUV": "bookings_east_rejuv",
    "BOOKINGS_EAST_SEALING": "bookings_east_sealing",
    "BOOKINGS_EAST_CLEANING": "bookings_east_cleaning",
}

BOOKING_KEY_PREFIX = "bookings_"


SEASONS: tuple[SeasonDescriptor, ...] = (
    SeasonDescriptor("west-aeration", "West Aeration", "BOOKINGS_WEST_AERATION", SeasonKind.INDIVIDUAL, True, "West"),
    SeasonDescriptor("west-rejuv", "West Rejuv", "BOOKINGS_WEST_REJUV", SeasonKind.TEAM, True, "West"),
    SeasonDescriptor("central-aeration", "Central Aeration", "BOOKINGS_CENTRAL_AERATION", SeasonKind.INDIVIDUAL, True, "Central"),
    SeasonDescriptor("central-sealing", "Central Sealing", "BOOKINGS_CENTRAL_SEALING", SeasonKind.TEAM, True, "Central"),
    SeasonDescriptor("east-aeration", "East Aeration", "BOOKINGS_EAST_AERATION", SeasonKind.INDIVIDUAL, True, "East"),
    SeasonDescriptor("east-rejuv", "East Rejuv", "BOOKINGS_EAST_REJUV", SeasonKind.TEAM, True, "East"),
    SeasonDescriptor("east-sealing", "East Sealing", "BOOKINGS_EAST_SEALING", SeasonKind.TEAM, True, "East"),
    SeasonDescriptor("east-cleaning", "East Cleaning", "BOOKINGS_EAST_CLEANING", SeasonKind.SERVICE, False, "East"),
)


def get_season_by_id(season_id: str | None, seasons: tuple[SeasonDescriptor, ...] = SEASONS) -> SeasonDescriptor | None:
    if not season_id:
        return None
    for season in seasons:
        if season.id == season_id:
            return season
    return None


def resolve_storage_key(season: SeasonDescriptor | None) -> str | None:
    """Return the persisted key for a season, or None if its key name is unknown."""
    if season is None or not season.storage_key_name:
        return None
    return STORAGE_KEYS.get(season.storage_key_name)


def booking_storage_keys() -> set[str]:
    return {value for value in STORAGE_KEYS.values() if value.startswith(BOOKING_KEY_PREFIX)}
