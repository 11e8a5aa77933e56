"""
test_rto_rental_coupling.py - Contract and rental transaction kept in step

Tests:
- Approval binds a transaction in picked_up
- Return is refused while the contract is active
- Completion, cancellation and default each move the bound transaction
- Ordinary rentals of the same listing after a contract ends
"""

import pytest
from datetime import date, datetime, timezone

from rto_engine import (
    CONTRACT_DEFAULTED,
    InvalidStateError,
    TXN_CANCELLED,
    TXN_COMPLETED,
    TXN_PICKED_UP,
    TXN_RETURNED,
)

from tests.conftest import BORROWER, FIRST_DUE, LENDER, make_service
from tests.fakes import FakeClock


class TestBinding:
    """Approval creates the bound transaction."""

    def test_bound_transaction(self, service, active_id):
        contract = service.get(active_id, BORROWER).contract
        txn = service.rentals.get(contract.transaction_id)
        assert txn.rto_contract_id == active_id
        assert txn.rto_active
        assert txn.status == TXN_PICKED_UP
        assert txn.borrower_id == BORROWER and txn.lender_id == LENDER
        assert txn.listing_id == contract.listing_id

    def test_pending_contract_has_no_transaction(self, service, pending_id):
        assert service.get(pending_id, BORROWER).contract.transaction_id is None

    def test_return_refused_while_active(self, service, clock, active_id):
        txn_id = service.get(active_id, BORROWER).contract.transaction_id
        with pytest.raises(InvalidStateError):
            service.rentals.request_return(txn_id, BORROWER, clock())
        with pytest.raises(InvalidStateError):
            service.rentals.confirm_return(txn_id, LENDER, clock(), "good")
        with pytest.raises(InvalidStateError):
            service.rentals.open_dispute(txn_id, LENDER, clock(), "Want it back")
        assert service.rentals.get(txn_id).status == TXN_PICKED_UP


class TestContractOutcomes:
    """Each terminal contract outcome updates the transaction."""

    def test_completion_completes_transaction(self, service, active_id):
        for _ in range(12):
            service.pay(active_id, BORROWER)
        txn = service.rentals.for_contract(active_id)
        assert txn.status == TXN_COMPLETED
        assert not txn.rto_active
        assert txn.completed_at is not None

    def test_cancellation_cancels_transaction(self, service, active_id):
        service.pay(active_id, BORROWER)
        service.cancel(active_id, LENDER, "Need it back")
        txn = service.rentals.for_contract(active_id)
        assert txn.status == TXN_CANCELLED
        assert not txn.rto_active

    def test_default_releases_binding_for_return(self):
        clock = FakeClock(datetime(2025, 1, 15, tzinfo=timezone.utc))
        service = make_service(clock=clock, grace_period_days=2)
        contract_id = service.create("drill-1", BORROWER, 3, FIRST_DUE).contract_id
        service.approve(contract_id, LENDER)

        service.run_due_events(datetime(2025, 2, 4))
        assert service.get(contract_id, LENDER).status == CONTRACT_DEFAULTED

        txn = service.rentals.for_contract(contract_id)
        assert txn.status == TXN_PICKED_UP and not txn.rto_active
        returned = service.rentals.confirm_return(txn.transaction_id, LENDER, clock(), "good")
        assert returned.status == TXN_RETURNED
        service.close()

    def test_manual_default_then_clean_return(self, service, clock, active_id):
        service.mark_defaulted(active_id)
        txn = service.rentals.for_contract(active_id)
        service.rentals.request_return(txn.transaction_id, BORROWER, clock())
        returned = service.rentals.confirm_return(txn.transaction_id, LENDER, clock(), "like_new")
        assert returned.status == TXN_RETURNED


class TestAfterContract:
    """The listing can be rented again once a contract ends."""

    def test_new_owner_rents_out(self, service, listings, clock, active_id):
        for _ in range(12):
            service.pay(active_id, BORROWER)
        listing = listings.get_listing("drill-1")
        txn = service.rentals.request(listing, "carol", date(2025, 3, 1), date(2025, 3, 3), clock())
        assert txn.lender_id == BORROWER
        assert txn.rto_contract_id is None

    def test_rent_after_cancel(self, service, listings, clock, active_id):
        service.cancel(active_id, BORROWER, "Moving")
        listing = listings.get_listing("drill-1")
        txn = service.rentals.request(listing, "carol", date(2025, 3, 1), date(2025, 3, 3), clock())
        assert txn.lender_id == LENDER
