from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any, Iterable, Mapping

from config.seasons import STORAGE_KEYS
from db.kv_store import KeyValueStore
from db.models import Bonus, Cart, Deduction, PayoutRecord, Worker
from services.payout import WorkerPayout
from services.validation import validate_date
from utils.text import round_money

logger = logging.getLogger(__name__)


def _int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _deductions(items: Any) -> list[Deduction]:
    return [
        Deduction(_int(d.get("id")), str(d.get("name") or ""), _float(d.get("amount")))
        for d in items or []
        if isinstance(d, Mapping)
    ]


def _bonuses(items: Any) -> list[Bonus]:
    return [
        Bonus(_int(b.get("id")), str(b.get("type") or ""), _float(b.get("amount")))
        for b in items or []
        if isinstance(b, Mapping)
    ]


def worker_from_dict(data: Mapping[str, Any]) -> Worker:
    cart_id = data.get("cart_id")
    history = [
        PayoutRecord(
            date=str(p.get("date") or ""),
            gross_sales=_float(p.get("gross_sales")),
            equivalent=_float(p.get("equivalent")),
            commission=_float(p.get("commission")),
            deductions=tuple(_deductions(p.get("deductions"))),
            bonuses=tuple(_bonuses(p.get("bonuses"))),
        )
        for p in data.get("payout_history") or []
        if isinstance(p, Mapping)
    ]
    return Worker(
        contractor_id=str(data.get("contractor_id") or ""),
        first_name=str(data.get("first_name") or ""),
        last_name=str(data.get("last_name") or ""),
        status=str(data.get("status") or "Rookie"),
        cart_id=_int(cart_id) if cart_id not in (None, "") else None,
        days_worked=_int(data.get("days_worked")),
        days_worked_previous_years=_int(data.get("days_worked_previous_years")),
        silvers_previous_years={str(k): _int(v) for k, v in (data.get("silvers_previous_years") or {}).items()},
        showed=bool(data.get("showed")),
        showed_date=data.get("showed_date") or None,
        payout_completed=bool(data.get("payout_completed")),
        gross_sales=_float(data.get("gross_sales")),
        equivalent=_float(data.get("equivalent")),
        commission=_float(data.get("commission")),
        deductions=_deductions(data.get("deductions")),
        bonuses=_bonuses(data.get("bonuses")),
        payout_history=history,
    )


def load_workers(store: KeyValueStore) -> list[Worker]:
    stored = store.get(STORAGE_KEYS["CONSOLE_WORKERS"], [])
    if not isinstance(stored, list):
        logger.warning("Worker roster is not a list, treating it as empty")
        return []
    return [worker_from_dict(item) for item in stored if isinstance(item, Mapping) and item.get("contractor_id")]


def save_workers(store: KeyValueStore, workers: Iterable[Worker]) -> None:
    store.set(STORAGE_KEYS["CONSOLE_WORKERS"], [asdict(w) for w in workers])


def reset_daily_fields(worker: Worker) -> None:
    worker.payout_completed = False
    worker.gross_sales = 0.0
    worker.equivalent = 0.0
    worker.commission = 0.0
    worker.deductions = []
    worker.bonuses = []


def roll_over_day(store: KeyValueStore, today: str) -> bool:
    """Reset every worker's daily payout fields once per new work day.

    Returns True when a reset happened.
    """
    validate_date(today)
    last_day = store.get(STORAGE_KEYS["LAST_APP_DATE"], None)
    if last_day == today:
        return False
    workers = load_workers(store)
    for worker in workers:
        reset_daily_fields(worker)
    save_workers(store, workers)
    store.set(STORAGE_KEYS["LAST_APP_DATE"], today)
    logger.info("New work day %s (previous %s): reset %s workers", today, last_day, len(workers))
    return True


def workers_for_day(workers: Iterable[Worker], day: str) -> list[Worker]:
    return [w for w in workers if w.showed and w.showed_date == day]


def group_carts(workers: Iterable[Worker]) -> list[Cart]:
    carts: dict[int, Cart] = {}
    for worker in workers:
        if worker.cart_id is None:
            continue
        carts.setdefault(worker.cart_id, Cart(worker.cart_id)).worker_ids.append(worker.contractor_id)
    return [carts[cart_id] for cart_id in sorted(carts)]


def finalize_payout(store: KeyValueStore, payouts: Mapping[str, WorkerPayout], day: str) -> list[Worker]:
    """Write today's payout snapshot and history entry for each paid worker.

    A second finalisation on the same date replaces that date's history entry.
    """
    validate_date(day)
    workers = load_workers(store)
    updated: list[Worker] = []
    for worker in workers:
        payout = payouts.get(worker.contractor_id)
        if payout is None:
            continue
        record = PayoutRecord(
            date=day,
            gross_sales=round_money(payout.gross_sales),
            equivalent=round_money(payout.equivalent),
            commission=round_money(payout.final_payout),
            deductions=payout.deductions,
            bonuses=payout.bonuses,
        )
        history = [p for p in worker.payout_history if p.date != day]
        history.append(record)
        history.sort(key=lambda p: p.date, reverse=True)

        worker.payout_history = history
        worker.payout_completed = True
        worker.gross_sales = record.gross_sales
        worker.equivalent = record.equivalent
        worker.commission = record.commission
        worker.deductions = list(record.deductions)
        worker.bonuses = list(record.bonuses)
        updated.append(worker)

    missing = set(payouts) - {w.contractor_id for w in updated}
    if missing:
        logger.warning("Payout for unknown workers skipped: %s", sorted(missing))
    save_workers(store, workers)
    logger.info("Finalized payout for %s workers on %s", len(updated), day)
    return updated
