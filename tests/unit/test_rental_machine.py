"""
test_rental_machine.py - Unit tests for rental transactions

Tests:
- Pure transitions and their actor checks
- Condition-based return vs dispute
- Ratings completing a returned transaction
- Rent-to-own binding rules
- RentalRegistry requests, hooks and audit log
"""

import pytest
from datetime import date, datetime
from decimal import Decimal

from rto_engine import (
    InvalidStateError,
    InvalidTermsError,
    NotAuthorizedError,
    RentalRegistry,
    RentalTransaction,
    TransactionNotFoundError,
    TXN_APPROVED,
    TXN_CANCELLED,
    TXN_COMPLETED,
    TXN_DISPUTED,
    TXN_PAID,
    TXN_PICKED_UP,
    TXN_RETURN_PENDING,
    TXN_RETURNED,
    compute_rental_quote,
    condition_worsened,
)
from rto_engine import rental

from tests.conftest import BORROWER, LENDER, STRANGER, drill_listing


T0 = datetime(2025, 1, 1, 12, 0)


def _txn(**overrides) -> RentalTransaction:
    fields = dict(transaction_id="t-1", listing_id="drill-1", borrower_id=BORROWER, lender_id=LENDER)
    fields.update(overrides)
    return RentalTransaction(**fields)


def _picked_up(condition="good") -> RentalTransaction:
    txn = rental.approve(_txn(), LENDER)
    txn = rental.confirm_payment(txn, BORROWER)
    return rental.confirm_pickup(txn, LENDER, T0, condition)


class TestQuote:
    """Tests for compute_rental_quote."""

    def test_fee_deposit_and_payout(self):
        quote = compute_rental_quote(Decimal("5.00"), 3, Decimal("20.00"), Decimal("2"))
        assert quote.rental_fee == Decimal("15.00")
        assert quote.platform_fee == Decimal("0.30")
        assert quote.lender_payout == Decimal("14.70")
        assert quote.total_charge == Decimal("35.00")

    def test_free_borrow(self):
        quote = compute_rental_quote(Decimal("0"), 7)
        assert quote.rental_fee == Decimal("0.00")
        assert quote.lender_payout == Decimal("0.00")

    def test_rejects_zero_days(self):
        with pytest.raises(InvalidTermsError):
            compute_rental_quote(Decimal("5.00"), 0)

    def test_rejects_negative_rate(self):
        with pytest.raises(InvalidTermsError):
            compute_rental_quote(Decimal("-1.00"), 2)


class TestTransitions:
    """Happy path and guards of the pure transitions."""

    def test_happy_path(self):
        txn = rental.approve(_txn(), LENDER, "Enjoy")
        assert txn.status == TXN_APPROVED
        assert txn.lender_response == "Enjoy"
        txn = rental.confirm_payment(txn, BORROWER)
        assert txn.status == TXN_PAID
        txn = rental.confirm_pickup(txn, LENDER, T0, "like_new")
        assert txn.status == TXN_PICKED_UP
        assert txn.condition_at_pickup == "like_new"
        txn = rental.request_return(txn, BORROWER)
        assert txn.status == TXN_RETURN_PENDING
        txn = rental.confirm_return(txn, LENDER, T0, "like_new")
        assert txn.status == TXN_RETURNED

    def test_borrower_cannot_approve(self):
        with pytest.raises(NotAuthorizedError):
            rental.approve(_txn(), BORROWER)

    def test_decline(self):
        txn = rental.decline(_txn(), LENDER, T0, "Busy")
        assert txn.status == TXN_CANCELLED
        assert txn.cancelled_at == T0

    def test_cancel_from_approved(self):
        txn = rental.cancel(rental.approve(_txn(), LENDER), BORROWER, T0)
        assert txn.status == TXN_CANCELLED

    def test_cannot_cancel_after_payment(self):
        txn = rental.confirm_payment(rental.approve(_txn(), LENDER), BORROWER)
        with pytest.raises(InvalidStateError):
            rental.cancel(txn, BORROWER, T0)

    def test_pickup_requires_payment(self):
        with pytest.raises(InvalidStateError):
            rental.confirm_pickup(rental.approve(_txn(), LENDER), LENDER, T0)

    def test_unknown_condition(self):
        txn = rental.confirm_payment(rental.approve(_txn(), LENDER), BORROWER)
        with pytest.raises(InvalidTermsError):
            rental.confirm_pickup(txn, LENDER, T0, "pristine")

    def test_return_straight_from_picked_up(self):
        txn = rental.confirm_return(_picked_up(), LENDER, T0, "good")
        assert txn.status == TXN_RETURNED


class TestReturnCondition:
    """Worse return condition opens a dispute."""

    def test_condition_worsened(self):
        assert condition_worsened("good", "fair")
        assert not condition_worsened("good", "good")
        assert not condition_worsened("fair", "like_new")
        assert not condition_worsened(None, "worn")

    def test_worse_condition_disputes(self):
        txn = rental.confirm_return(_picked_up("good"), LENDER, T0, "worn", "Cracked casing")
        assert txn.status == TXN_DISPUTED
        assert "good → worn" in txn.dispute_reason
        assert "Cracked casing" in txn.dispute_reason

    def test_better_condition_returns(self):
        txn = rental.confirm_return(_picked_up("fair"), LENDER, T0, "good")
        assert txn.status == TXN_RETURNED
        assert txn.condition_at_return == "good"


class TestDispute:
    """Tests for open_dispute."""

    def test_either_party_can_dispute(self):
        assert rental.open_dispute(_txn(), BORROWER, "No response").status == TXN_DISPUTED
        assert rental.open_dispute(_picked_up(), LENDER, "Late").status == TXN_DISPUTED

    def test_stranger_cannot_dispute(self):
        with pytest.raises(NotAuthorizedError):
            rental.open_dispute(_txn(), STRANGER, "Hmm")

    def test_reason_required(self):
        with pytest.raises(InvalidTermsError):
            rental.open_dispute(_txn(), BORROWER, "  ")

    @pytest.mark.parametrize("step", [
        lambda: rental.open_dispute(_txn(), BORROWER, 42),
        lambda: rental.decline(_txn(), LENDER, T0, ["Busy"]),
    ])
    def test_text_fields_must_be_strings(self, step):
        with pytest.raises(InvalidTermsError, match="must be text"):
            step()

    def test_cannot_dispute_returned(self):
        txn = rental.confirm_return(_picked_up(), LENDER, T0, "good")
        with pytest.raises(InvalidStateError):
            rental.open_dispute(txn, BORROWER, "Too late")


class TestRating:
    """Ratings complete a returned transaction."""

    def test_both_ratings_complete(self):
        txn = rental.confirm_return(_picked_up(), LENDER, T0, "good")
        txn = rental.rate(txn, BORROWER, 5, T0)
        assert txn.status == TXN_RETURNED
        txn = rental.rate(txn, LENDER, 4, T0)
        assert txn.status == TXN_COMPLETED
        assert txn.ratings_dict == {BORROWER: 5, LENDER: 4}

    def test_rating_overwrites(self):
        txn = rental.confirm_return(_picked_up(), LENDER, T0, "good")
        txn = rental.rate(rental.rate(txn, BORROWER, 2, T0), BORROWER, 3, T0)
        assert txn.ratings_dict == {BORROWER: 3}

    @pytest.mark.parametrize("value", [0, 6, 4.5, True])
    def test_rating_range(self, value):
        txn = rental.confirm_return(_picked_up(), LENDER, T0, "good")
        with pytest.raises(InvalidTermsError):
            rental.rate(txn, BORROWER, value, T0)

    def test_cannot_rate_before_return(self):
        with pytest.raises(InvalidStateError):
            rental.rate(_picked_up(), BORROWER, 5, T0)


class TestRentToOwnBinding:
    """Transactions bound to an active contract."""

    def _bound(self):
        return _txn(status=TXN_PICKED_UP, rto_contract_id="c-1", rto_active=True)

    def test_return_refused_while_active(self):
        with pytest.raises(InvalidStateError, match="active"):
            rental.request_return(self._bound(), BORROWER)
        with pytest.raises(InvalidStateError, match="active"):
            rental.confirm_return(self._bound(), LENDER, T0)

    def test_completion_requires_completed_contract(self):
        with pytest.raises(InvalidStateError):
            rental.complete_ownership_transfer(self._bound(), "active", T0)
        done = rental.complete_ownership_transfer(self._bound(), "completed", T0)
        assert done.status == TXN_COMPLETED
        assert not done.rto_active

    def test_plain_transaction_cannot_transfer_ownership(self):
        with pytest.raises(InvalidStateError, match="not bound"):
            rental.complete_ownership_transfer(_picked_up(), "completed", T0)


class TestRegistry:
    """Tests for RentalRegistry."""

    def test_request_prices_from_listing(self):
        registry = RentalRegistry(Decimal("2"))
        txn = registry.request(drill_listing(), BORROWER, date(2025, 1, 1), date(2025, 1, 4), T0)
        assert txn.quote.rental_fee == Decimal("15.00")
        assert txn.quote.deposit_amount == Decimal("20.00")
        assert registry.get(txn.transaction_id) == txn

    def test_request_own_item(self):
        with pytest.raises(NotAuthorizedError):
            RentalRegistry().request(drill_listing(), LENDER, date(2025, 1, 1), date(2025, 1, 2), T0)

    def test_request_unavailable_item(self):
        with pytest.raises(InvalidStateError):
            RentalRegistry().request(
                drill_listing(is_available=False), BORROWER, date(2025, 1, 1), date(2025, 1, 2), T0,
            )

    def test_transitions_are_logged(self):
        registry = RentalRegistry()
        txn = registry.request(drill_listing(), BORROWER, date(2025, 1, 1), date(2025, 1, 3), T0)
        registry.approve(txn.transaction_id, LENDER, T0)
        registry.confirm_payment(txn.transaction_id, BORROWER, T0)
        registry.confirm_pickup(txn.transaction_id, LENDER, T0, "good")
        assert [c.new_status for c in registry.audit_log] == [TXN_APPROVED, TXN_PAID, TXN_PICKED_UP]

    def test_failed_transition_keeps_state(self):
        registry = RentalRegistry()
        txn = registry.request(drill_listing(), BORROWER, date(2025, 1, 1), date(2025, 1, 3), T0)
        with pytest.raises(NotAuthorizedError):
            registry.approve(txn.transaction_id, BORROWER, T0)
        assert registry.get(txn.transaction_id) == txn
        assert registry.audit_log == []

    def test_unknown_transaction(self):
        with pytest.raises(TransactionNotFoundError):
            RentalRegistry().get("nope")

    def test_contract_hooks(self):
        registry = RentalRegistry()
        transaction_id = registry.on_contract_activated("c-1", "drill-1", BORROWER, LENDER, T0)
        bound = registry.for_contract("c-1")
        assert bound.transaction_id == transaction_id
        assert bound.status == TXN_PICKED_UP and bound.rto_active
        with pytest.raises(InvalidStateError):
            registry.request_return(transaction_id, BORROWER, T0)
        assert registry.on_contract_completed("c-1", T0).status == TXN_COMPLETED

    def test_contract_bound_once(self):
        registry = RentalRegistry()
        registry.on_contract_activated("c-1", "drill-1", BORROWER, LENDER, T0)
        with pytest.raises(InvalidStateError):
            registry.on_contract_activated("c-1", "drill-1", BORROWER, LENDER, T0)

    def test_contract_cancelled_hook(self):
        registry = RentalRegistry()
        registry.on_contract_activated("c-1", "drill-1", BORROWER, LENDER, T0)
        assert registry.on_contract_cancelled("c-1", T0).status == TXN_CANCELLED

    def test_contract_defaulted_releases_binding(self):
        registry = RentalRegistry()
        transaction_id = registry.on_contract_activated("c-1", "drill-1", BORROWER, LENDER, T0)
        released = registry.on_contract_defaulted("c-1", T0)
        assert released.status == TXN_PICKED_UP
        assert not released.rto_active
        returned = registry.confirm_return(transaction_id, LENDER, T0, "good")
        assert returned.status == TXN_RETURNED

    def test_hook_for_unbound_contract(self):
        with pytest.raises(TransactionNotFoundError):
            RentalRegistry().on_contract_completed("c-404", T0)
