from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Mapping

import pandas as pd

from config.settings import CONFIG
from db.models import Worker
from services.payout import CartTotals, WorkerPayout
from utils.text import sanitize_filename

logger = logging.getLogger(__name__)

PAYOUT_COLUMNS = [
    "Cart",
    "Worker ID",
    "Worker",
    "Jobs",
    "Gross sales",
    "Net sales",
    "EQ",
    "Rate",
    "Commission",
    "Upsell",
    "Bonuses",
    "Deductions",
    "Payout",
]


def payout_summary_df(
    carts: Iterable[CartTotals],
    payouts: Mapping[str, WorkerPayout] | None = None,
    workers: Iterable[Worker] | None = None,
) -> pd.DataFrame:
    """One row per worker of every cart; payout columns stay empty until calculated."""
    names = {w.contractor_id: w.full_name for w in workers or []}
    payouts = payouts or {}
    rows: list[dict[str, object]] = []
    for cart in carts:
        for member in cart.members:
            payout = payouts.get(member.worker_id)
            rows.append(
                {
                    "Cart": cart.cart_id,
                    "Worker ID": member.worker_id,
                    "Worker": names.get(member.worker_id, ""),
                    "Jobs": member.job_count,
                    "Gross sales": round(member.gross_sales, 2),
                    "Net sales": round(member.net_sales, 2),
                    "EQ": round(member.equivalent, 2),
                    "Rate": payout.commission_rate if payout else None,
                    "Commission": round(payout.base_commission, 2) if payout else None,
                    "Upsell": round(payout.upsell_commission, 2) if payout else None,
                    "Bonuses": round(payout.total_bonuses, 2) if payout else None,
                    "Deductions": round(payout.total_deductions + payout.machine_rental_cost, 2) if payout else None,
                    "Payout": round(payout.final_payout, 2) if payout else None,
                }
            )
    return pd.DataFrame(rows, columns=PAYOUT_COLUMNS)


def cart_summary_df(carts: Iterable[CartTotals]) -> pd.DataFrame:
    rows = [
        {
            "Cart": cart.cart_id,
            "Workers": cart.size,
            "Jobs": sum(m.job_count for m in cart.members),
            "Gross sales": round(cart.gross_sales, 2),
            "Net sales": round(cart.net_sales, 2),
            "EQ": round(cart.equivalent, 2),
        }
        for cart in carts
    ]
    return pd.DataFrame(rows, columns=["Cart", "Workers", "Jobs", "Gross sales", "Net sales", "EQ"])


def export_payout_report(
    day: str,
    carts: Iterable[CartTotals],
    payouts: Mapping[str, WorkerPayout] | None = None,
    workers: Iterable[Worker] | None = None,
    dir_path: str | Path | None = None,
) -> Path:
    carts = list(carts)
    target_dir = Path(dir_path) if dir_path else CONFIG.reports_dir
    target_dir.mkdir(parents=True, exist_ok=True)
    path = target_dir / f"{sanitize_filename(f'payout_{day}')}.xlsx"

    workers_df = payout_summary_df(carts, payouts, workers)
    carts_df = cart_summary_df(carts)
    with pd.ExcelWriter(path, engine="openpyxl") as writer:
        workers_df.to_excel(writer, sheet_name="Workers", index=False)
        carts_df.to_excel(writer, sheet_name="Carts", index=False)
    logger.info("Payout report for %s written to %s (%s rows)", day, path, len(workers_df))
    return path
