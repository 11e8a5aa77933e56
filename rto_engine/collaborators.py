"""
collaborators.py - Interfaces to the systems around the contract engine

Classes:
- PaymentCapture: Protocol for the external payment processor
- ListingDirectory: Protocol for the listing/ownership service
- SettlementPolicy: Protocol receiving cancellation snapshots
- InMemoryListingDirectory: Dict-backed ListingDirectory
- RecordingSettlementPolicy: Default policy that only records snapshots

The engine never talks to a payment processor or a database directly; the
service is handed implementations of these protocols.
"""

from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Dict, List, Optional, Protocol, runtime_checkable
import threading

from .core import CancellationSettlement, Listing, ListingNotFoundError
from .logging import get_logger

logger = get_logger(__name__)


# ============================================================================
# PAYMENT CAPTURE
# ============================================================================

@dataclass(frozen=True, slots=True)
class CaptureRequest:
    """
    One charge against the borrower.

    idempotency_key is "{contract_id}:{payment_number}", so a processor that
    honours idempotency keys never charges the same installment twice.
    """
    contract_id: str
    payment_number: int
    payer_id: str
    payee_id: str
    amount: Decimal
    currency: str
    idempotency_key: str


@dataclass(frozen=True, slots=True)
class CaptureReceipt:
    """Processor response. succeeded=False means the charge was declined."""
    succeeded: bool
    reference: Optional[str] = None
    failure_reason: Optional[str] = None


@runtime_checkable
class PaymentCapture(Protocol):
    """
    Protocol for the payment processor.

    capture() may block on network I/O; the service bounds it with a timeout.
    """

    def capture(self, request: CaptureRequest) -> CaptureReceipt:
        ...


# ============================================================================
# LISTINGS
# ============================================================================

@runtime_checkable
class ListingDirectory(Protocol):
    """Protocol for the listing/ownership service."""

    def get_listing(self, listing_id: str) -> Listing:
        """Raises ListingNotFoundError for unknown ids."""
        ...

    def set_available(self, listing_id: str, available: bool) -> Listing:
        ...

    def transfer_ownership(self, listing_id: str, new_owner_id: str) -> Listing:
        ...

    def update_terms(self, listing_id: str, **changes) -> Listing:
        ...


class InMemoryListingDirectory:
    """
    Listing directory backed by a dict of frozen Listing records.

    Every change replaces the stored record.
    """

    def __init__(self, listings: Optional[List[Listing]] = None):
        self._listings: Dict[str, Listing] = {l.listing_id: l for l in (listings or [])}
        self._lock = threading.Lock()

    def add(self, listing: Listing) -> Listing:
        with self._lock:
            self._listings[listing.listing_id] = listing
        return listing

    def get_listing(self, listing_id: str) -> Listing:
        try:
            return self._listings[listing_id]
        except KeyError:
            raise ListingNotFoundError(f"Listing {listing_id} not found") from None

    def set_available(self, listing_id: str, available: bool) -> Listing:
        return self._replace(listing_id, is_available=available)

    def transfer_ownership(self, listing_id: str, new_owner_id: str) -> Listing:
        listing = self._replace(listing_id, owner_id=new_owner_id)
        logger.info("Transferred ownership of listing %s to %s", listing_id, new_owner_id)
        return listing

    def update_terms(self, listing_id: str, **changes) -> Listing:
        return self._replace(listing_id, **changes)

    def _replace(self, listing_id: str, **changes) -> Listing:
        with self._lock:
            listing = replace(self.get_listing(listing_id), **changes)
            self._listings[listing_id] = listing
            return listing

    def __repr__(self):
        return f"InMemoryListingDirectory({len(self._listings)} listings)"


# ============================================================================
# SETTLEMENT
# ============================================================================

@runtime_checkable
class SettlementPolicy(Protocol):
    """
    Decides what happens to equity accrued by a cancelled active contract.

    Forfeit, refund or partial ownership is a business decision made outside
    the engine; the engine only hands over the frozen snapshot.
    """

    def on_cancelled(self, settlement: CancellationSettlement) -> None:
        ...


class RecordingSettlementPolicy:
    """Keeps every snapshot it receives; moves no money."""

    def __init__(self):
        self.settlements: List[CancellationSettlement] = []

    def on_cancelled(self, settlement: CancellationSettlement) -> None:
        self.settlements.append(settlement)
        logger.info(
            "Recorded cancellation settlement for contract %s (equity %s)",
            settlement.contract_id, settlement.equity_accumulated,
        )
