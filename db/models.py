from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional

from utils.text import format_money, parse_money


class SeasonKind(str, Enum):
    INDIVIDUAL = "Individual"
    TEAM = "Team"
    SERVICE = "Service"


class BookingStatus:
    PENDING = "pending"
    CANCELLED = "cancelled"
    NEXT_TIME = "next_time"
    CONTRACT = "contract"
    REDO = "redo"
    REF_DNB = "ref/dnb"


@dataclass(frozen=True, slots=True)
class SeasonDescriptor:
    id: str
    name: str
    storage_key_name: str
    kind: SeasonKind
    has_payout_logic: bool
    region: str = ""

    @property
    def is_team(self) -> bool:
        return self.kind == SeasonKind.TEAM


# Spreadsheet column names accepted as aliases of record fields
_FIELD_ALIASES: dict[str, str] = {
    "Booking ID": "booking_id",
    "Route Number": "route_code",
    "Master Map": "map_name",
    "Group": "group",
    "First Name": "first_name",
    "Last Name": "last_name",
    "Full Address": "full_address",
    "Home Phone": "home_phone",
    "Cell Phone": "cell_phone",
    "Email Address": "email",
    "Price": "price",
    "Completed": "completed",
    "Date Completed": "date_completed",
    "Status": "status",
    "Payment Method": "payment_method",
    "Prepaid": "prepaid",
    "Is Paid": "is_paid",
    "Contractor Number": "worker_id",
    "isContract": "is_contract",
    "upsellMenuId": "upsell_menu_id",
    "contractTitle": "contract_title",
    "isPrebooked": "is_prebooked",
    "Log Sheet Notes": "notes",
}

_BOOL_FIELDS = {"completed", "prepaid", "is_paid", "is_contract", "is_prebooked"}


def _as_flag(value: Any) -> bool:
    # Imported sheets mark flags with "x"
    if isinstance(value, str):
        return value.strip().lower() in {"x", "true", "yes", "1"}
    return bool(value)


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


@dataclass(slots=True)
class BookingRecord:
    booking_id: str
    route_code: str = ""
    map_name: str = "Unknown"
    group: str = "Unknown"
    first_name: str = ""
    last_name: str = ""
    full_address: str = ""
    home_phone: str = ""
    cell_phone: str = ""
    email: str = ""
    price: str = "0.00"
    completed: bool = False
    date_completed: Optional[str] = None
    status: str = BookingStatus.PENDING
    payment_method: str = ""
    prepaid: bool = False
    is_paid: bool = False
    worker_id: str = ""
    is_contract: bool = False
    upsell_menu_id: Optional[str] = None
    contract_title: Optional[str] = None
    is_prebooked: bool = False
    notes: str = ""
    created_at: str = ""
    updated_at: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


_RECORD_FIELDS = {f.name for f in fields(BookingRecord)} - {"extra"}


def canonical_changes(changes: Mapping[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    """Split a partial update into (known fields, extra columns), resolving aliases."""
    known: dict[str, Any] = {}
    extra: dict[str, Any] = {}
    for key, value in changes.items():
        name = _FIELD_ALIASES.get(key, key)
        if name == "extra" and isinstance(value, Mapping):
            extra.update(value)
        elif name in _RECORD_FIELDS:
            known[name] = _coerce_field(name, value)
        else:
            extra[key] = value
    return known, extra


def _coerce_field(name: str, value: Any) -> Any:
    if name in _BOOL_FIELDS:
        return _as_flag(value)
    if name == "price":
        if value is None or value == "":
            return "0.00"
        if isinstance(value, (int, float)):
            return format_money(parse_money(value))
        return _as_text(value)
    if name in {"date_completed", "upsell_menu_id", "contract_title"}:
        return _as_text(value) or None
    if name in {"map_name", "group"}:
        return _as_text(value) or "Unknown"
    if name == "status":
        return _as_text(value)
    return _as_text(value)


def normalize_booking_record(partial: Mapping[str, Any], now: str | None = None) -> BookingRecord:
    """Build a complete record from a partial mapping, filling type-correct defaults.

    Used for records added at runtime, records loaded from the store and test
    fixtures, so defaulting is defined in one place.
    """
    known, extra = canonical_changes(partial)
    stamp = now or datetime.now().isoformat(timespec="seconds")
    known.setdefault("booking_id", "")
    known.setdefault("created_at", stamp)
    known.setdefault("updated_at", known["created_at"])
    if "status" not in known:
        known["status"] = BookingStatus.PENDING
    return BookingRecord(**known, extra=extra)


def record_price(record: BookingRecord) -> float:
    """Price as a float; unparseable or missing prices count as 0."""
    return parse_money(record.price)


@dataclass(frozen=True, slots=True)
class PaymentMethodRule:
    percentage: float
    apply_taxes: bool = True


@dataclass(frozen=True, slots=True)
class PayoutPolicy:
    tax_rate: float
    payment_method_percentages: Mapping[str, PaymentMethodRule]
    product_cost: Optional[float] = None
    base_commission_rate: float = 0.0
    solo_base_commission_rate: float = 0.0
    team_base_commission_rate: float = 0.0
    apply_silver_raises: bool = False
    apply_alumni_raises: bool = False

    @property
    def tax_divisor(self) -> float:
        return 1 + self.tax_rate / 100


@dataclass(frozen=True, slots=True)
class UpsellMenu:
    id: str
    name: str = ""
    eq_percentage: float = 0.0
    prepay_commission_percentage: float = 10.0


@dataclass(slots=True)
class ConfiguredSeason:
    season_id: str
    enabled: bool = True
    payout_policy: Optional[PayoutPolicy] = None


@dataclass(slots=True)
class OperatorProfile:
    id: int
    title: str
    region: str = ""
    username: str = ""
    seasons: list[ConfiguredSeason] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class Deduction:
    id: int
    name: str
    amount: float


@dataclass(frozen=True, slots=True)
class Bonus:
    id: int
    type: str
    amount: float


@dataclass(frozen=True, slots=True)
class PayoutRecord:
    date: str
    gross_sales: float
    equivalent: float
    commission: float
    deductions: tuple[Deduction, ...] = ()
    bonuses: tuple[Bonus, ...] = ()


@dataclass(slots=True)
class Worker:
    contractor_id: str
    first_name: str = ""
    last_name: str = ""
    status: str = "Rookie"
    cart_id: Optional[int] = None
    days_worked: int = 0
    days_worked_previous_years: int = 0
    silvers_previous_years: dict[str, int] = field(default_factory=dict)
    showed: bool = False
    showed_date: Optional[str] = None
    payout_completed: bool = False
    gross_sales: float = 0.0
    equivalent: float = 0.0
    commission: float = 0.0
    deductions: list[Deduction] = field(default_factory=list)
    bonuses: list[Bonus] = field(default_factory=list)
    payout_history: list[PayoutRecord] = field(default_factory=list)

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)


@dataclass(slots=True)
class Cart:
    id: int
    worker_ids: list[str] = field(default_factory=list)
