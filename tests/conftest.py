"""
conftest.py - Shared pytest fixtures for rent-to-own engine tests

Provides common fixtures used across unit, functional and conformance tests:
- Listings and an in-memory listing directory
- Fake capture collaborator and deterministic clock
- A ready ContractService and contracts in pending/active states
"""

import pytest
from datetime import date
from decimal import Decimal

from rto_engine import (
    ContractService,
    EngineConfig,
    InMemoryListingDirectory,
    Listing,
    PaymentLedger,
    build_terms,
    new_contract,
)

from tests.fakes import FakeCapture, FakeClock, SequentialIds


LENDER = "alice"
BORROWER = "bob"
STRANGER = "mallory"
FIRST_DUE = date(2025, 2, 1)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def drill_listing(**overrides) -> Listing:
    """RTO listing: 1200.00 at 50% credit, 1..24 payments, owned by alice."""
    fields = dict(
        listing_id="drill-1",
        owner_id=LENDER,
        title="Cordless drill",
        rto_available=True,
        rto_purchase_price=Decimal("1200.00"),
        rto_rental_credit_percent=Decimal("50"),
        rto_min_payments=1,
        rto_max_payments=24,
        price_per_day=Decimal("5.00"),
        deposit_amount=Decimal("20.00"),
    )
    fields.update(overrides)
    return Listing(**fields)


def make_service(listings=None, capture=None, clock=None, **config_overrides) -> ContractService:
    """ContractService over in-memory collaborators with a 0% platform fee unless overridden."""
    config_fields = dict(platform_fee_percent=Decimal("0"), capture_timeout_seconds=2.0)
    config_fields.update(config_overrides)
    return ContractService(
        listings if listings is not None else InMemoryListingDirectory([drill_listing()]),
        capture if capture is not None else FakeCapture(),
        config=EngineConfig(**config_fields),
        clock=clock or FakeClock(),
        id_factory=SequentialIds(),
    )


def pending_contract(contract_id="c-1", total_payments=12, **listing_overrides):
    """A bare pending contract plus a fresh ledger, for state-machine tests."""
    listing = drill_listing(**listing_overrides)
    terms = build_terms(
        listing.rto_purchase_price, listing.rto_rental_credit_percent,
        total_payments, "monthly", FIRST_DUE,
    )
    clock = FakeClock()
    return new_contract(contract_id, listing, BORROWER, terms, clock()), PaymentLedger()


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def capture():
    fake = FakeCapture()
    yield fake
    fake.release()


@pytest.fixture
def listings():
    return InMemoryListingDirectory([drill_listing()])


@pytest.fixture
def service(listings, capture, clock):
    svc = make_service(listings, capture, clock)
    yield svc
    svc.close()


@pytest.fixture
def pending_id(service):
    """Id of a pending 12-payment monthly contract bob requested on alice's drill."""
    return service.create("drill-1", BORROWER, 12, FIRST_DUE).contract_id


@pytest.fixture
def active_id(service, pending_id):
    """Id of the same contract after alice approved it."""
    service.approve(pending_id, LENDER)
    return pending_id
