"""Payout and equivalent (EQ) calculations.

Net sales are prices weighted per payment method with tax optionally removed;
one equivalent unit is ``DOLLARS_PER_EQUIVALENT`` of net sales. Nothing here
raises on malformed bookings: a missing price counts as 0, an unknown payment
method falls back to "100% with tax removed" and a contract whose upsell menu
is unknown contributes half of its tax-adjusted price.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Mapping, Sequence

from db.models import (
    BookingRecord,
    Bonus,
    Deduction,
    PayoutPolicy,
    SeasonDescriptor,
    SeasonKind,
    UpsellMenu,
    Worker,
    record_price,
)
from services.validation import validate_splits
from utils.text import normalize_for_search

logger = logging.getLogger(__name__)

DOLLARS_PER_EQUIVALENT = 25
UNKNOWN_MENU_EQ_SHARE = 0.5
DEFAULT_PREPAY_COMMISSION_PERCENTAGE = 10.0
MACHINE_RENTAL_COST = 10.0


class PaymentBucket(str, Enum):
    PREPAID = "Prepaid"
    CASH = "Cash"
    CHEQUE = "Cheque"
    E_TRANSFER = "E-Transfer"
    CREDIT_CARD = "Credit Card"
    BILLED = "Billed"
    IOS = "IOS"
    CUSTOM = "Custom"


# Checked in order; first substring hit wins
_BUCKET_PATTERNS: tuple[tuple[str, PaymentBucket], ...] = (
    ("cash", PaymentBucket.CASH),
    ("cheque", PaymentBucket.CHEQUE),
    ("transfer", PaymentBucket.E_TRANSFER),
    ("credit", PaymentBucket.CREDIT_CARD),
    ("billed", PaymentBucket.BILLED),
    ("ios", PaymentBucket.IOS),
)


def classify_payment_method(method: str | None, prepaid: bool = False) -> PaymentBucket:
    if prepaid:
        return PaymentBucket.PREPAID
    text = normalize_for_search(method or "") or ""
    for pattern, bucket in _BUCKET_PATTERNS:
        if pattern in text:
            return bucket
    return PaymentBucket.CUSTOM


@dataclass(frozen=True)
class EquivalentResult:
    net_sales: float
    equivalent: float


def to_equivalent(net_sales: float) -> float:
    return net_sales / DOLLARS_PER_EQUIVALENT if net_sales > 0 else 0.0


def _tax_adjusted(price: float, policy: PayoutPolicy) -> float:
    return price / policy.tax_divisor


def contract_contribution(
    record: BookingRecord, policy: PayoutPolicy, upsell_menus: Mapping[str, UpsellMenu] | None
) -> float:
    net_price = _tax_adjusted(record_price(record), policy)
    menu = (upsell_menus or {}).get(record.upsell_menu_id or "")
    if menu is None:
        logger.warning(
            "Upsell menu %r not found for booking %s, counting %.0f%% of net price",
            record.upsell_menu_id, record.booking_id, UNKNOWN_MENU_EQ_SHARE * 100,
        )
        return net_price * UNKNOWN_MENU_EQ_SHARE
    if menu.eq_percentage <= 0:
        return 0.0
    return net_price * (menu.eq_percentage / 100)


def sale_contribution(record: BookingRecord, policy: PayoutPolicy) -> float:
    price = record_price(record)
    bucket = classify_payment_method(record.payment_method, record.prepaid)
    rule = policy.payment_method_percentages.get(bucket.value)
    if rule is None:
        logger.warning("Payout settings not found for method %s, using default calculation", bucket.value)
        return _tax_adjusted(price, policy)
    value = price * (rule.percentage / 100)
    if rule.apply_taxes:
        value /= policy.tax_divisor
    return value


def record_contribution(
    record: BookingRecord, policy: PayoutPolicy, upsell_menus: Mapping[str, UpsellMenu] | None = None
) -> float:
    if record.is_contract:
        return contract_contribution(record, policy, upsell_menus)
    return sale_contribution(record, policy)


def compute_equivalent(
    records: Iterable[BookingRecord],
    policy: PayoutPolicy,
    is_team_season: bool,
    upsell_menus: Mapping[str, UpsellMenu] | None = None,
) -> EquivalentResult:
    net_sales = sum((record_contribution(r, policy, upsell_menus) for r in records), 0.0)
    if is_team_season:
        net_sales *= 1 - (policy.product_cost or 0) / 100
    return EquivalentResult(net_sales=net_sales, equivalent=to_equivalent(net_sales))


def gross_sales(records: Iterable[BookingRecord]) -> float:
    return sum((record_price(r) for r in records), 0.0)


def completed_jobs_for_day(records: Iterable[BookingRecord], day: str) -> list[BookingRecord]:
    """Completed bookings whose completion timestamp falls on ``day`` (YYYY-MM-DD)."""
    return [r for r in records if r.completed and (r.date_completed or "").startswith(day)]


# --- Aggregation ----------------------------------------------------------


@dataclass(frozen=True)
class WorkerTotals:
    worker_id: str
    job_count: int
    gross_sales: float
    net_sales: float
    equivalent: float


@dataclass(frozen=True)
class CartTotals:
    cart_id: int | None
    members: tuple[WorkerTotals, ...]
    gross_sales: float
    net_sales: float
    equivalent: float

    @property
    def size(self) -> int:
        return len(self.members)

    def member(self, worker_id: str) -> WorkerTotals | None:
        for totals in self.members:
            if totals.worker_id == worker_id:
                return totals
        return None


def compute_worker_totals(
    worker_id: str,
    records: Sequence[BookingRecord],
    policy: PayoutPolicy,
    is_team_season: bool,
    upsell_menus: Mapping[str, UpsellMenu] | None = None,
) -> WorkerTotals:
    result = compute_equivalent(records, policy, is_team_season, upsell_menus)
    return WorkerTotals(
        worker_id=worker_id,
        job_count=len(records),
        gross_sales=gross_sales(records),
        net_sales=result.net_sales,
        equivalent=result.equivalent,
    )


def compute_cart_totals(
    cart_id: int | None,
    records_by_worker: Mapping[str, Sequence[BookingRecord]],
    policy: PayoutPolicy,
    is_team_season: bool,
    upsell_menus: Mapping[str, UpsellMenu] | None = None,
) -> CartTotals:
    """Totals for a cart as the sum of each member's own totals.

    Members are computed one by one and then added up; the union of all
    records is never divided as a whole.
    """
    members = tuple(
        compute_worker_totals(worker_id, records, policy, is_team_season, upsell_menus)
        for worker_id, records in records_by_worker.items()
    )
    return CartTotals(
        cart_id=cart_id,
        members=members,
        gross_sales=sum((m.gross_sales for m in members), 0.0),
        net_sales=sum((m.net_sales for m in members), 0.0),
        equivalent=sum((m.equivalent for m in members), 0.0),
    )


def upsell_commission(
    records: Iterable[BookingRecord], policy: PayoutPolicy, upsell_menus: Mapping[str, UpsellMenu] | None = None
) -> float:
    """Commission on contract sales: the part of the net price not counted as EQ."""
    total = 0.0
    for record in records:
        if not record.is_contract:
            continue
        menu = (upsell_menus or {}).get(record.upsell_menu_id or "")
        if menu is None:
            continue
        net_price = _tax_adjusted(record_price(record), policy)
        eq_portion = net_price * (menu.eq_percentage / 100) if menu.eq_percentage > 0 else 0.0
        total += (net_price - eq_portion) * (menu.prepay_commission_percentage / 100)
    return total


# --- Commission -------------------------------------------------------------

_SILVER_LINES = ("aeration", "rejuv", "sealing", "cleaning")


def silver_raise(silvers: int) -> float:
    if silvers >= 8:
        return 1.0
    if silvers >= 6:
        return 0.75
    if silvers >= 4:
        return 0.5
    if silvers >= 2:
        return 0.25
    return 0.0


def alumni_raise(lifetime_days: int) -> float:
    if lifetime_days >= 200:
        return 0.5
    if lifetime_days >= 50:
        return 0.25
    return 0.0


def silvers_for_season(worker: Worker, season: SeasonDescriptor) -> int:
    for line in _SILVER_LINES:
        if line in season.id:
            return int(worker.silvers_previous_years.get(line, 0) or 0)
    return 0


def commission_rate(worker: Worker, season: SeasonDescriptor, policy: PayoutPolicy, team_size: int) -> float:
    if season.kind == SeasonKind.INDIVIDUAL:
        base = policy.base_commission_rate
    elif season.kind == SeasonKind.TEAM:
        base = policy.team_base_commission_rate if team_size > 1 else policy.solo_base_commission_rate
    else:
        base = 0.0
    rate = base
    if policy.apply_silver_raises:
        rate += silver_raise(silvers_for_season(worker, season))
    if policy.apply_alumni_raises:
        rate += alumni_raise(worker.days_worked_previous_years + worker.days_worked)
    return rate


@dataclass(frozen=True)
class WorkerPayout:
    worker_id: str
    commission_rate: float
    equivalent: float
    gross_sales: float
    base_commission: float
    upsell_commission: float
    total_deductions: float
    total_bonuses: float
    machine_rental_cost: float
    final_payout: float
    deductions: tuple[Deduction, ...] = field(default_factory=tuple)
    bonuses: tuple[Bonus, ...] = field(default_factory=tuple)


def compute_worker_payouts(
    cart: CartTotals,
    workers: Sequence[Worker],
    season: SeasonDescriptor,
    policy: PayoutPolicy,
    upsell_total: float = 0.0,
    eq_splits: Mapping[str, float] | None = None,
    upsell_splits: Mapping[str, float] | None = None,
    deductions: Mapping[str, Sequence[Deduction]] | None = None,
    bonuses: Mapping[str, Sequence[Bonus]] | None = None,
    machine_rental: Mapping[str, bool] | None = None,
) -> dict[str, WorkerPayout]:
    """Per-worker payouts for one cart (or a single individual worker).

    Without ``eq_splits`` every member keeps their own equivalent; with splits
    the cart equivalent is shared by percentage. Gross sales are shared evenly.
    """
    if not workers:
        return {}
    if eq_splits is not None:
        validate_splits(eq_splits, "EQ")
    if upsell_splits is not None:
        validate_splits(upsell_splits, "Upsell")

    team_size = len(workers)
    deductions = deductions or {}
    bonuses = bonuses or {}
    machine_rental = machine_rental or {}
    payouts: dict[str, WorkerPayout] = {}

    for worker in workers:
        wid = worker.contractor_id
        if eq_splits is not None:
            equivalent = cart.equivalent * (float(eq_splits.get(wid, 0)) / 100)
        else:
            own = cart.member(wid)
            equivalent = own.equivalent if own else 0.0
        if upsell_splits is not None:
            upsell_share = upsell_total * (float(upsell_splits.get(wid, 0)) / 100)
        else:
            upsell_share = upsell_total / team_size

        rate = commission_rate(worker, season, policy, team_size)
        base_commission = equivalent * rate
        worker_deductions = tuple(deductions.get(wid, ()))
        worker_bonuses = tuple(bonuses.get(wid, ()))
        total_deductions = sum((d.amount for d in worker_deductions), 0.0)
        total_bonuses = sum((b.amount for b in worker_bonuses), 0.0)
        rental = MACHINE_RENTAL_COST if machine_rental.get(wid) else 0.0

        payouts[wid] = WorkerPayout(
            worker_id=wid,
            commission_rate=rate,
            equivalent=equivalent,
            gross_sales=cart.gross_sales / team_size,
            base_commission=base_commission,
            upsell_commission=upsell_share,
            total_deductions=total_deductions,
            total_bonuses=total_bonuses,
            machine_rental_cost=rental,
            final_payout=base_commission + upsell_share + total_bonuses - total_deductions - rental,
            deductions=worker_deductions,
            bonuses=worker_bonuses,
        )
    return payouts


# --- Cash reconciliation ----------------------------------------------------


@dataclass(frozen=True)
class CollectionReconciliation:
    expected_cash: float
    expected_cheque: float
    other_payments: float
    cash_discrepancy: float
    cheque_discrepancy: float
    actual_gross_sales: float


def reconcile_collections(
    records: Iterable[BookingRecord],
    verified_cash: float = 0.0,
    verified_cheque: float = 0.0,
    change_received: float = 0.0,
) -> CollectionReconciliation:
    """Compare money handed in against what the day's bookings say was collected.

    Cash and cheques are counted by hand; IOS is never collected; everything
    else (transfers, cards, billed) counts at its booked price.
    """
    expected_cash = expected_cheque = other = 0.0
    for record in records:
        method = normalize_for_search(record.payment_method or "") or ""
        price = record_price(record)
        if method == "cash":
            expected_cash += price
        elif method == "cheque":
            expected_cheque += price
        elif method != "ios":
            other += price
    return CollectionReconciliation(
        expected_cash=expected_cash,
        expected_cheque=expected_cheque,
        other_payments=other,
        cash_discrepancy=verified_cash + change_received - expected_cash,
        cheque_discrepancy=verified_cheque - expected_cheque,
        actual_gross_sales=verified_cash + change_received + verified_cheque + other,
    )
