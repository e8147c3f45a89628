from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from datetime import date
from pathlib import Path

from config.seasons import STORAGE_KEYS
from config.settings import CONFIG, ensure_data_directories
from db.kv_store import KeyValueStore
from db.models import PayoutPolicy
from services.booking_repository import SeasonBookingRepository
from services.payout import CartTotals, completed_jobs_for_day, compute_cart_totals
from services.validation import DEFAULT_PAYOUT_POLICY, parse_operator_profiles, parse_upsell_menus
from services.workers import group_carts, load_workers, roll_over_day, workers_for_day
from reports.payout_report import export_payout_report
from utils.logging import configure_logging

logger = logging.getLogger(__name__)


@dataclass
class Application:
    store: KeyValueStore
    bookings: SeasonBookingRepository

    def close(self) -> None:
        self.bookings.close()


def build_application(store_path: Path | str | None = None) -> Application:
    """Composition root: one store and one repository wired to its change bus."""
    store = KeyValueStore(store_path or CONFIG.store_path)
    repository = SeasonBookingRepository(store).start()
    return Application(store=store, bookings=repository)


def active_payout_policy(app: Application) -> PayoutPolicy:
    """Payout policy of the logged-in profile for the active season, or the default."""
    season = app.bookings.active_season
    if season is None:
        return DEFAULT_PAYOUT_POLICY
    for profile in parse_operator_profiles(app.store.get(STORAGE_KEYS["CONSOLE_PROFILES"], [])):
        if profile.id != app.bookings.operator_profile_id:
            continue
        for configured in profile.seasons:
            if configured.season_id == season.id and configured.payout_policy is not None:
                return configured.payout_policy
    return DEFAULT_PAYOUT_POLICY


def daily_cart_totals(app: Application, day: str) -> list[CartTotals]:
    season = app.bookings.active_season
    if season is None:
        logger.warning("No active season, nothing to pay out for %s", day)
        return []
    policy = active_payout_policy(app)
    menus = parse_upsell_menus(app.store.get(STORAGE_KEYS["UPSELL_MENUS"], []))
    workers = workers_for_day(load_workers(app.store), day)

    def jobs(worker_id: str):
        return completed_jobs_for_day(app.bookings.get_for_worker(worker_id), day)

    totals: list[CartTotals] = []
    if season.is_team:
        for cart in group_carts(workers):
            records = {wid: jobs(wid) for wid in cart.worker_ids}
            totals.append(compute_cart_totals(cart.id, records, policy, True, menus))
    else:
        for worker in workers:
            records = {worker.contractor_id: jobs(worker.contractor_id)}
            totals.append(compute_cart_totals(None, records, policy, False, menus))
    return totals


def main() -> int:
    ensure_data_directories()
    configure_logging()
    today = date.today().strftime(CONFIG.date_format)

    app = build_application()
    try:
        roll_over_day(app.store, today)
        totals = daily_cart_totals(app, today)
        for cart in totals:
            logger.info(
                "Cart %s: gross %.2f, net %.2f, EQ %.2f",
                cart.cart_id if cart.cart_id is not None else "-",
                cart.gross_sales, cart.net_sales, cart.equivalent,
            )
        if totals:
            export_payout_report(today, totals, workers=load_workers(app.store))
    finally:
        app.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
