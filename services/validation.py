from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Mapping

from config.settings import CONFIG
from db.models import ConfiguredSeason, OperatorProfile, PaymentMethodRule, PayoutPolicy, UpsellMenu

logger = logging.getLogger(__name__)


class ValidationError(ValueError):
    pass


def validate_date(date_str: str) -> None:
    try:
        dt.datetime.strptime(date_str, CONFIG.date_format)
    except (TypeError, ValueError) as exc:  # noqa: TRY003
        raise ValidationError(f"Invalid date: {date_str!r}. Expected {CONFIG.date_format}") from exc


def clamp_percentage(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if number != number:  # NaN
        return 0.0
    return min(100.0, max(0.0, number))


def validate_splits(splits: Mapping[str, float], label: str, tolerance: float = 0.1) -> None:
    total = sum(float(v) for v in splits.values())
    if abs(total - 100) > tolerance:
        raise ValidationError(f"{label} splits must total 100% (got {total:.2f}%)")


def _as_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


DEFAULT_PAYMENT_METHOD_PERCENTAGES: dict[str, PaymentMethodRule] = {
    "Cash": PaymentMethodRule(100, True),
    "Cheque": PaymentMethodRule(100, True),
    "E-Transfer": PaymentMethodRule(100, True),
    "Credit Card": PaymentMethodRule(100, True),
    "Prepaid": PaymentMethodRule(50, True),
    "Billed": PaymentMethodRule(50, True),
}

DEFAULT_PAYOUT_POLICY = PayoutPolicy(
    tax_rate=13,
    product_cost=20,
    base_commission_rate=8.0,
    solo_base_commission_rate=6.0,
    team_base_commission_rate=8.0,
    apply_silver_raises=True,
    apply_alumni_raises=True,
    payment_method_percentages=DEFAULT_PAYMENT_METHOD_PERCENTAGES,
)


def parse_payout_policy(data: Mapping[str, Any] | None) -> PayoutPolicy:
    """Build a policy from a stored mapping (camelCase or snake_case keys).

    Percentages are clamped to [0, 100]; a missing mapping yields the default policy.
    """
    if not data:
        return DEFAULT_PAYOUT_POLICY

    def pick(*names: str, default: Any = None) -> Any:
        for name in names:
            if name in data and data[name] is not None:
                return data[name]
        return default

    raw_methods = pick("payment_method_percentages", "paymentMethodPercentages", default={}) or {}
    methods: dict[str, PaymentMethodRule] = {}
    for method, rule in raw_methods.items():
        if isinstance(rule, PaymentMethodRule):
            methods[method] = PaymentMethodRule(clamp_percentage(rule.percentage), rule.apply_taxes)
            continue
        if not isinstance(rule, Mapping):
            logger.warning("Ignoring malformed payout rule for method %s: %r", method, rule)
            continue
        methods[method] = PaymentMethodRule(
            percentage=clamp_percentage(rule.get("percentage", 0)),
            apply_taxes=bool(rule.get("apply_taxes", rule.get("applyTaxes", True))),
        )

    tax_rate = _as_float(pick("tax_rate", "taxRate"), DEFAULT_PAYOUT_POLICY.tax_rate)
    if tax_rate < 0:
        raise ValidationError(f"Tax rate cannot be negative: {tax_rate}")
    product_cost = pick("product_cost", "productCost")

    return PayoutPolicy(
        tax_rate=tax_rate,
        product_cost=clamp_percentage(product_cost) if product_cost is not None else None,
        payment_method_percentages=methods,
        base_commission_rate=_as_float(pick("base_commission_rate", "baseCommissionRate")),
        solo_base_commission_rate=_as_float(pick("solo_base_commission_rate", "soloBaseCommissionRate")),
        team_base_commission_rate=_as_float(pick("team_base_commission_rate", "teamBaseCommissionRate")),
        apply_silver_raises=bool(pick("apply_silver_raises", "applySilverRaises", default=False)),
        apply_alumni_raises=bool(pick("apply_alumni_raises", "applyAlumniRaises", default=False)),
    )


def _parse_configured_season(item: Any, profile_title: str) -> ConfiguredSeason | None:
    if not isinstance(item, Mapping):
        logger.warning("Skipping malformed season entry on profile %s: %r", profile_title, item)
        return None
    season_id = item.get("season_id", item.get("hardcodedId"))
    if not season_id:
        logger.warning("Skipping season entry without id on profile %s", profile_title)
        return None
    raw_policy = item.get("payout_policy", item.get("payoutLogic"))
    policy = None
    if isinstance(raw_policy, Mapping) and raw_policy:
        try:
            policy = parse_payout_policy(raw_policy)
        except ValidationError as exc:
            logger.warning("Invalid payout policy for %s on profile %s, using default: %s", season_id, profile_title, exc)
    return ConfiguredSeason(
        season_id=str(season_id),
        enabled=bool(item.get("enabled", True)),
        payout_policy=policy,
    )


def parse_operator_profiles(items: Any) -> list[OperatorProfile]:
    """Operator profiles from the stored profile list; malformed entries are skipped."""
    profiles: list[OperatorProfile] = []
    for item in items or []:
        if not isinstance(item, Mapping):
            logger.warning("Skipping malformed operator profile: %r", item)
            continue
        title = str(item.get("title") or "")
        try:
            profile_id = int(item.get("id"))
        except (TypeError, ValueError):
            logger.warning("Profile %r has a non-numeric id %r", title, item.get("id"))
            continue
        seasons = [
            season
            for season in (_parse_configured_season(s, title) for s in item.get("seasons") or [])
            if season is not None
        ]
        profiles.append(
            OperatorProfile(
                id=profile_id,
                title=title,
                region=str(item.get("region") or ""),
                username=str(item.get("username") or ""),
                seasons=seasons,
            )
        )
    return profiles


def parse_upsell_menus(items: Any) -> dict[str, UpsellMenu]:
    menus: dict[str, UpsellMenu] = {}
    for item in items or []:
        if not isinstance(item, Mapping) or not item.get("id"):
            logger.warning("Skipping malformed upsell menu: %r", item)
            continue
        menu_id = str(item["id"])
        menus[menu_id] = UpsellMenu(
            id=menu_id,
            name=str(item.get("name") or ""),
            eq_percentage=clamp_percentage(item.get("eq_percentage", item.get("eqPercentage", 0))),
            prepay_commission_percentage=clamp_percentage(
                item.get("prepay_commission_percentage", item.get("prePayCommissionPercentage", 10))
            ),
        )
    return menus
