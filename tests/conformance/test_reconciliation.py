"""
Reconciliation Conformance Tests

INVARIANT: Equity credited over a contract equals the purchase price exactly.

    ∀ price p, percent c ∈ (0, 100], count n ≤ p in cents:
        Σ equity_portion(i) = p
        total_amount(i) = equity_portion(i) + rental_portion(i)
        platform_fee(i) + lender_payout(i) = total_amount(i)

Schedules are strictly increasing and follow the payment frequency. A paid
contract's progress agrees with its rows.
"""

from calendar import monthrange
from datetime import date, timedelta
from decimal import Decimal

from hypothesis import assume, given, settings
from hypothesis import strategies as st

from rto_engine import (
    FREQUENCY_BIWEEKLY,
    FREQUENCY_MONTHLY,
    FREQUENCY_WEEKLY,
    InMemoryListingDirectory,
    build_amortization,
    build_schedule,
    split_payment,
)

from tests.conftest import BORROWER, FIRST_DUE, LENDER, drill_listing, make_service


prices = st.integers(min_value=1, max_value=10_000_000).map(lambda c: Decimal(c) / 100)
percents = st.integers(min_value=1, max_value=10_000).map(lambda bp: Decimal(bp) / 100)
counts = st.integers(min_value=1, max_value=60)
fees = st.integers(min_value=0, max_value=1_000).map(lambda bp: Decimal(bp) / 100)
anchors = st.dates(min_value=date(2000, 1, 1), max_value=date(2090, 12, 31))
frequencies = st.sampled_from([FREQUENCY_WEEKLY, FREQUENCY_BIWEEKLY, FREQUENCY_MONTHLY])


class TestEquityReconciliation:
    """Property-based reconciliation of amortization tables."""

    @given(prices, percents, counts, fees)
    @settings(max_examples=300)
    def test_equity_sums_to_price(self, price, percent, n, fee):
        assume(price * 100 >= n)
        am = build_amortization(price, percent, n, FIRST_DUE, FREQUENCY_MONTHLY, fee)

        assert sum(i.equity_portion for i in am.installments) == price
        assert am.total_equity == price
        assert len(am.installments) == n

    @given(prices, percents, counts, fees)
    @settings(max_examples=300)
    def test_rows_add_up(self, price, percent, n, fee):
        assume(price * 100 >= n)
        am = build_amortization(price, percent, n, FIRST_DUE, FREQUENCY_MONTHLY, fee)

        for row in am.installments:
            assert row.total_amount == row.equity_portion + row.rental_portion
            assert row.platform_fee + row.lender_payout == row.total_amount
            assert row.rental_portion >= 0
            assert row.platform_fee >= 0
            assert row.equity_portion > 0
        assert am.total_cost == am.total_equity + am.total_rental

    @given(prices, percents, counts)
    @settings(max_examples=300)
    def test_uniform_rows_and_residual(self, price, percent, n):
        assume(price * 100 >= n)
        am = build_amortization(price, percent, n, FIRST_DUE, FREQUENCY_MONTHLY)
        rows = am.installments

        assert len({r.rental_portion for r in rows}) == 1
        assert all(r.equity_portion == am.equity_per_payment for r in rows[:-1])
        assert all(r.total_amount == am.payment_amount for r in rows[:-1])
        residual = rows[-1].equity_portion - am.equity_per_payment
        assert Decimal("0") <= residual < Decimal(n) / 100

    @given(prices, percents, counts)
    @settings(max_examples=300)
    def test_equity_share_never_exceeds_percent(self, price, percent, n):
        assume(price * 100 >= n)
        am = build_amortization(price, percent, n, FIRST_DUE, FREQUENCY_MONTHLY)

        assert am.payment_amount >= am.equity_per_payment
        assert am.equity_per_payment * 100 <= am.payment_amount * percent
        assert split_payment(am.payment_amount, percent).equity_portion == am.equity_per_payment
        for row in am.installments[:-1]:
            assert row.equity_portion * 100 <= row.total_amount * percent


class TestScheduleProperties:
    """Due dates follow the frequency."""

    @given(anchors, frequencies, st.integers(min_value=1, max_value=60))
    @settings(max_examples=300)
    def test_strictly_increasing(self, anchor, frequency, n):
        dates = build_schedule(anchor, frequency, n)
        assert len(dates) == n
        assert dates[0] == anchor
        assert all(a < b for a, b in zip(dates, dates[1:]))

    @given(anchors, st.sampled_from([FREQUENCY_WEEKLY, FREQUENCY_BIWEEKLY]), st.integers(min_value=2, max_value=60))
    @settings(max_examples=200)
    def test_fixed_day_gaps(self, anchor, frequency, n):
        gap = timedelta(days=7 if frequency == FREQUENCY_WEEKLY else 14)
        dates = build_schedule(anchor, frequency, n)
        assert all(b - a == gap for a, b in zip(dates, dates[1:]))

    @given(anchors, st.integers(min_value=1, max_value=60))
    @settings(max_examples=300)
    def test_monthly_keeps_anchor_day(self, anchor, n):
        for offset, due in enumerate(build_schedule(anchor, FREQUENCY_MONTHLY, n)):
            months = anchor.month - 1 + offset
            assert (due.year, due.month) == (anchor.year + months // 12, months % 12 + 1)
            assert due.day == min(anchor.day, monthrange(due.year, due.month)[1])


class TestServiceReconciliation:
    """A fully paid contract reconciles through the service."""

    @given(
        st.integers(min_value=100, max_value=500_000).map(lambda c: Decimal(c) / 100),
        st.integers(min_value=1, max_value=12),
    )
    @settings(max_examples=25, deadline=None)
    def test_paid_contract_progress(self, price, n):
        listings = InMemoryListingDirectory([drill_listing(rto_purchase_price=price)])
        with make_service(listings) as service:
            contract_id = service.create("drill-1", BORROWER, n, FIRST_DUE).contract_id
            service.approve(contract_id, LENDER)
            for _ in range(n):
                view = service.pay(contract_id, BORROWER)

            assert view.progress.equity_accumulated == price
            assert view.progress.remaining_equity == Decimal("0")
            assert view.progress.rental_paid == sum(p.rental_portion for p in view.payments)
            assert view.progress.payments_remaining == 0
