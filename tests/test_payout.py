from __future__ import annotations

import pytest

from config.seasons import get_season_by_id
from db.models import Bonus, Deduction, PaymentMethodRule, PayoutPolicy, UpsellMenu, Worker, normalize_booking_record
from services.payout import (
    DOLLARS_PER_EQUIVALENT,
    PaymentBucket,
    alumni_raise,
    classify_payment_method,
    commission_rate,
    completed_jobs_for_day,
    compute_cart_totals,
    compute_equivalent,
    compute_worker_payouts,
    gross_sales,
    reconcile_collections,
    record_contribution,
    silver_raise,
    to_equivalent,
    upsell_commission,
)
from services.validation import ValidationError, parse_payout_policy


def booking(price="100.00", method="Cash", **extra):
    return normalize_booking_record({"booking_id": extra.pop("booking_id", "b"), "price": price, "payment_method": method, **extra})


CASH_ONLY = PayoutPolicy(tax_rate=13, payment_method_percentages={"Cash": PaymentMethodRule(100, True)})


class TestClassifyPaymentMethod:
    """Payment method labels map to a fixed set of buckets."""

    @pytest.mark.parametrize(
        ("label", "bucket"),
        [
            ("Cash", PaymentBucket.CASH),
            ("CASH ", PaymentBucket.CASH),
            ("cheque #123", PaymentBucket.CHEQUE),
            ("E-Transfer", PaymentBucket.E_TRANSFER),
            ("Visa Credit", PaymentBucket.CREDIT_CARD),
            ("Billed to account", PaymentBucket.BILLED),
            ("IOS", PaymentBucket.IOS),
            ("Cash: $50, Cheque: $50", PaymentBucket.CASH),
            ("Debit", PaymentBucket.CUSTOM),
            ("", PaymentBucket.CUSTOM),
            (None, PaymentBucket.CUSTOM),
        ],
    )
    def test_labels(self, label, bucket):
        assert classify_payment_method(label) == bucket

    def test_prepaid_flag_wins(self):
        assert classify_payment_method("Cash", prepaid=True) == PaymentBucket.PREPAID


class TestComputeEquivalent:
    def test_cash_example(self):
        result = compute_equivalent([booking()], CASH_ONLY, is_team_season=False)
        assert result.net_sales == pytest.approx(88.4956, abs=1e-4)
        assert result.equivalent == pytest.approx(3.53982, abs=1e-5)

    def test_half_percentage(self):
        policy = PayoutPolicy(tax_rate=13, payment_method_percentages={"Cash": PaymentMethodRule(50, True)})
        result = compute_equivalent([booking()], policy, False)
        assert result.net_sales == pytest.approx(44.2478, abs=1e-4)

    def test_without_tax_removal(self):
        policy = PayoutPolicy(tax_rate=13, payment_method_percentages={"Cash": PaymentMethodRule(100, False)})
        assert compute_equivalent([booking()], policy, False).net_sales == pytest.approx(100.0)

    def test_unconfigured_bucket_falls_back_to_tax_removed_price(self):
        record = booking(method="Debit card terminal")
        assert classify_payment_method(record.payment_method) == PaymentBucket.CUSTOM
        assert record_contribution(record, CASH_ONLY) == 100 / 1.13

    def test_unconfigured_transfer_label_falls_back(self):
        result = compute_equivalent([booking(method="Interac E-Transfer-XYZ")], CASH_ONLY, False)
        assert result.net_sales == pytest.approx(88.4956, abs=1e-4)

    def test_prepaid_uses_prepaid_rule(self):
        result = compute_equivalent([booking(prepaid="x")], parse_payout_policy(None), False)
        assert result.net_sales == pytest.approx(44.2478, abs=1e-4)

    def test_malformed_records_never_raise(self):
        records = [
            booking(price=None, method=None),
            booking(price="abc", method=""),
            booking(price="", method="Cash"),
        ]
        result = compute_equivalent(records, CASH_ONLY, False)
        assert result.net_sales == 0
        assert result.equivalent == 0

    @pytest.mark.parametrize("bad_price", ["NaN", "Infinity", "-Infinity", float("nan"), float("inf")])
    def test_non_finite_price_counts_as_zero(self, bad_price):
        records = [booking(booking_id="ok"), booking(booking_id="bad", price=bad_price)]
        result = compute_equivalent(records, CASH_ONLY, False)
        assert result.net_sales == pytest.approx(88.4956, abs=1e-4)
        assert result.equivalent == pytest.approx(3.53982, abs=1e-5)
        assert gross_sales(records) == pytest.approx(100.0)

    def test_non_finite_price_in_cart_member(self):
        cart = compute_cart_totals(
            1, {"W1": [booking()], "W2": [booking(price="NaN")]}, CASH_ONLY, True
        )
        assert cart.net_sales == pytest.approx(88.4956, abs=1e-4)
        assert cart.member("W2").equivalent == 0

    def test_price_with_currency_symbol(self):
        result = compute_equivalent([booking(price="$1,130.00")], CASH_ONLY, False)
        assert result.net_sales == pytest.approx(1000.0)

    def test_non_positive_net_gives_zero_equivalent(self):
        result = compute_equivalent([booking(price="-50.00")], CASH_ONLY, False)
        assert result.net_sales < 0
        assert result.equivalent == 0

    def test_product_cost_only_for_team_seasons(self):
        policy = PayoutPolicy(tax_rate=0, product_cost=20, payment_method_percentages={"Cash": PaymentMethodRule(100, False)})
        assert compute_equivalent([booking()], policy, False).net_sales == pytest.approx(100.0)
        team = compute_equivalent([booking()], policy, True)
        assert team.net_sales == pytest.approx(80.0)
        assert team.equivalent == pytest.approx(80.0 / DOLLARS_PER_EQUIVALENT)

    def test_empty_records(self):
        result = compute_equivalent([], CASH_ONLY, True)
        assert (result.net_sales, result.equivalent) == (0, 0)


class TestContracts:
    MENUS = {
        "aer-plus": UpsellMenu("aer-plus", "Aeration Plus", eq_percentage=40, prepay_commission_percentage=10),
        "no-eq": UpsellMenu("no-eq", "Commission only", eq_percentage=0),
    }

    def test_menu_percentage_of_tax_adjusted_price(self):
        record = booking(is_contract=True, upsell_menu_id="aer-plus", method="Cash")
        assert record_contribution(record, CASH_ONLY, self.MENUS) == pytest.approx(100 / 1.13 * 0.4)

    def test_missing_menu_uses_half_heuristic(self):
        record = booking(is_contract=True, upsell_menu_id="gone")
        assert record_contribution(record, CASH_ONLY, self.MENUS) == pytest.approx(100 / 1.13 * 0.5)
        assert record_contribution(booking(is_contract=True), CASH_ONLY) == pytest.approx(100 / 1.13 * 0.5)

    def test_zero_eq_menu_contributes_nothing(self):
        record = booking(is_contract=True, upsell_menu_id="no-eq")
        assert record_contribution(record, CASH_ONLY, self.MENUS) == 0

    def test_upsell_commission(self):
        records = [
            booking(is_contract=True, upsell_menu_id="aer-plus"),
            booking(is_contract=True, upsell_menu_id="gone"),
            booking(),
        ]
        net = 100 / 1.13
        assert upsell_commission(records, CASH_ONLY, self.MENUS) == pytest.approx((net - net * 0.4) * 0.1)


class TestCartTotals:
    """Cart totals are the sum of each member's own totals."""

    POLICY = PayoutPolicy(
        tax_rate=13,
        product_cost=20,
        payment_method_percentages={"Cash": PaymentMethodRule(100, True), "Cheque": PaymentMethodRule(100, True)},
    )

    def test_single_member_cart_equals_member(self):
        records = [booking(), booking(price="57.35", method="Cheque")]
        cart = compute_cart_totals(1, {"W1": records}, self.POLICY, True)
        member = compute_equivalent(records, self.POLICY, True)
        assert cart.size == 1
        assert cart.equivalent == member.equivalent
        assert cart.net_sales == member.net_sales
        assert cart.gross_sales == pytest.approx(157.35)

    def test_multi_member_cart_sums_member_equivalents(self):
        w1 = [booking(price="100.00"), booking(price="33.33", method="Cheque")]
        w2 = [booking(price="71.17", method="Cheque")]
        cart = compute_cart_totals(7, {"W1": w1, "W2": w2}, self.POLICY, True)

        e1 = compute_equivalent(w1, self.POLICY, True).equivalent
        e2 = compute_equivalent(w2, self.POLICY, True).equivalent
        assert cart.equivalent == e1 + e2
        assert cart.member("W1").equivalent == e1
        assert cart.member("W2").equivalent == e2
        assert cart.member("W3") is None
        assert cart.gross_sales == pytest.approx(204.50)

    def test_sum_matches_combined_when_no_product_cost(self):
        policy = PayoutPolicy(tax_rate=13, payment_method_percentages=self.POLICY.payment_method_percentages)
        w1 = [booking(price="100.00")]
        w2 = [booking(price="45.00", method="Cheque")]
        cart = compute_cart_totals(2, {"W1": w1, "W2": w2}, policy, True)
        combined = compute_equivalent(w1 + w2, policy, True)
        assert cart.equivalent == pytest.approx(combined.equivalent)

    def test_cart_keeps_member_equivalents_when_one_member_nets_negative(self):
        w1 = [booking(price="100.00")]
        w2 = [booking(price="-200.00")]
        cart = compute_cart_totals(4, {"W1": w1, "W2": w2}, self.POLICY, True)

        e1 = compute_equivalent(w1, self.POLICY, True).equivalent
        assert e1 > 0
        assert cart.member("W2").equivalent == 0
        assert cart.net_sales < 0
        # The combined net is negative and would give no EQ at all
        assert to_equivalent(cart.net_sales) == 0
        assert cart.equivalent == e1

    def test_member_without_jobs(self):
        cart = compute_cart_totals(3, {"W1": [booking()], "W2": []}, self.POLICY, True)
        assert cart.member("W2").equivalent == 0
        assert cart.member("W2").job_count == 0
        assert cart.equivalent == cart.member("W1").equivalent


class TestCommission:
    def test_silver_and_alumni_raises(self):
        assert [silver_raise(n) for n in (0, 1, 2, 4, 6, 8, 12)] == [0, 0, 0.25, 0.5, 0.75, 1.0, 1.0]
        assert [alumni_raise(n) for n in (0, 49, 50, 199, 200)] == [0, 0, 0.25, 0.25, 0.5]

    def test_commission_rate_by_season_kind(self):
        policy = parse_payout_policy(None)
        rookie = Worker("W1")
        veteran = Worker(
            "W2", days_worked=10, days_worked_previous_years=190, silvers_previous_years={"rejuv": 6, "aeration": 2}
        )
        aeration = get_season_by_id("east-aeration")
        rejuv = get_season_by_id("east-rejuv")
        cleaning = get_season_by_id("east-cleaning")

        assert commission_rate(rookie, aeration, policy, 1) == 8.0
        assert commission_rate(rookie, rejuv, policy, 1) == 6.0
        assert commission_rate(rookie, rejuv, policy, 2) == 8.0
        assert commission_rate(veteran, rejuv, policy, 2) == 8.0 + 0.75 + 0.5
        assert commission_rate(veteran, aeration, policy, 1) == 8.0 + 0.25 + 0.5
        assert commission_rate(rookie, cleaning, policy, 1) == 0.0

    def test_worker_payouts_use_own_equivalent_by_default(self):
        policy = parse_payout_policy(None)
        season = get_season_by_id("east-rejuv")
        cart = compute_cart_totals(
            1, {"W1": [booking(price="250.00")], "W2": [booking(price="125.00")]}, policy, True
        )
        payouts = compute_worker_payouts(
            cart,
            [Worker("W1"), Worker("W2")],
            season,
            policy,
            deductions={"W1": [Deduction(1, "Gas", 5.0)]},
            bonuses={"W2": [Bonus(1, "Referral", 20.0)]},
            machine_rental={"W2": True},
        )
        w1, w2 = payouts["W1"], payouts["W2"]
        assert w1.equivalent == cart.member("W1").equivalent
        assert w2.equivalent == cart.member("W2").equivalent
        assert w1.commission_rate == 8.0
        assert w1.final_payout == pytest.approx(w1.equivalent * 8.0 - 5.0)
        assert w2.final_payout == pytest.approx(w2.equivalent * 8.0 + 20.0 - 10.0)
        assert w1.gross_sales == pytest.approx(187.5)

    def test_worker_payouts_with_splits(self):
        policy = parse_payout_policy(None)
        season = get_season_by_id("east-rejuv")
        cart = compute_cart_totals(1, {"W1": [booking()], "W2": [booking()]}, policy, True)
        payouts = compute_worker_payouts(
            cart,
            [Worker("W1"), Worker("W2")],
            season,
            policy,
            upsell_total=30.0,
            eq_splits={"W1": 75, "W2": 25},
            upsell_splits={"W1": 50, "W2": 50},
        )
        assert payouts["W1"].equivalent == pytest.approx(cart.equivalent * 0.75)
        assert payouts["W2"].upsell_commission == pytest.approx(15.0)

    def test_splits_must_total_100(self):
        policy = parse_payout_policy(None)
        cart = compute_cart_totals(1, {"W1": [booking()]}, policy, True)
        with pytest.raises(ValidationError):
            compute_worker_payouts(cart, [Worker("W1")], get_season_by_id("east-rejuv"), policy, eq_splits={"W1": 90})

    def test_no_workers(self):
        cart = compute_cart_totals(1, {}, CASH_ONLY, True)
        assert compute_worker_payouts(cart, [], get_season_by_id("east-rejuv"), CASH_ONLY) == {}


def test_gross_sales_and_completed_jobs_for_day():
    records = [
        booking(booking_id="a", completed=True, date_completed="2026-05-02T10:00:00"),
        booking(booking_id="b", completed=True, date_completed="2026-05-01T18:00:00"),
        booking(booking_id="c", completed=False, date_completed="2026-05-02T09:00:00"),
        booking(booking_id="d", completed="x", date_completed=None),
    ]
    today = completed_jobs_for_day(records, "2026-05-02")
    assert [r.booking_id for r in today] == ["a"]
    assert gross_sales(records) == pytest.approx(400.0)


def test_reconcile_collections():
    records = [
        booking(price="100.00", method="Cash"),
        booking(price="50.00", method="cheque"),
        booking(price="80.00", method="E-Transfer"),
        booking(price="40.00", method="IOS"),
    ]
    result = reconcile_collections(records, verified_cash=95.0, verified_cheque=50.0, change_received=5.0)
    assert result.expected_cash == 100.0
    assert result.expected_cheque == 50.0
    assert result.other_payments == 80.0
    assert result.cash_discrepancy == 0.0
    assert result.cheque_discrepancy == 0.0
    assert result.actual_gross_sales == 230.0


def test_parse_payout_policy_clamps_percentages():
    policy = parse_payout_policy(
        {
            "taxRate": 13,
            "productCost": 120,
            "paymentMethodPercentages": {
                "Cash": {"percentage": 150, "applyTaxes": True},
                "Billed": {"percentage": -5, "applyTaxes": False},
                "Broken": "nope",
            },
        }
    )
    assert policy.payment_method_percentages["Cash"].percentage == 100
    assert policy.payment_method_percentages["Billed"].percentage == 0
    assert policy.payment_method_percentages["Billed"].apply_taxes is False
    assert "Broken" not in policy.payment_method_percentages
    assert policy.product_cost == 100


def test_parse_payout_policy_rejects_negative_tax():
    with pytest.raises(ValidationError):
        parse_payout_policy({"taxRate": -1})
