"""
rental.py - Rental Transaction State Machine

The borrow/lend lifecycle shared by free borrows, paid rentals and
rent-to-own contracts:

    pending ──approve──▶ approved ──confirm_payment──▶ paid ──confirm_pickup──▶ picked_up
       │                    │                                                    │
       └─decline/cancel─────┴──────────▶ cancelled          request_return ◀─────┤
                                                                  │              │
                                               return_pending ◀───┘              │
                                                     │                           │
                                   confirm_return ───┴───────────────────────────┘
                                        │
                    returned (same or better condition) / disputed (worse condition)
                        │
                   both parties rate
                        │
                    completed

Any of pending, approved, paid, picked_up can move to disputed via
open_dispute. Leaving disputed is the dispute-resolution collaborator's job.

=== RENT-TO-OWN COUPLING ===

A transaction bound to an RTO contract is created directly in picked_up and
stays there for the whole active life of the contract:
    - request_return / confirm_return are refused while the contract is active
    - picked_up -> completed (ownership transfer) is refused until the contract
      has completed
    - contract cancellation drives the transaction to cancelled
    - contract default releases the binding so the item can be returned

=== PURE FUNCTIONS ===

Each transition is a pure function (transaction, actor, ...) -> transaction.
RentalRegistry is the stateful shell that stores transactions, serializes
writers per transaction and keeps the audit log.
"""
from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple
import uuid

from .amortization import compute_platform_fee
from .core import (
    Listing, StatusChange,
    TXN_PENDING, TXN_APPROVED, TXN_PAID, TXN_PICKED_UP, TXN_RETURN_PENDING,
    TXN_RETURNED, TXN_COMPLETED, TXN_CANCELLED, TXN_DISPUTED,
    CONTRACT_COMPLETED, MAX_REASON_LENGTH,
    InvalidStateError, InvalidTermsError, NotAuthorizedError, TransactionNotFoundError,
    to_decimal, to_minor_units, from_minor_units,
)
from .locks import KeyedLocks
from .logging import get_logger

logger = get_logger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

# Best first. A return later in this tuple than the pickup condition is worse.
CONDITION_SCALE = ("like_new", "good", "fair", "worn")

ACTION_APPROVE = "approve"
ACTION_DECLINE = "decline"
ACTION_CANCEL = "cancel"
ACTION_CONFIRM_PAYMENT = "confirm_payment"
ACTION_PICKUP = "confirm_pickup"
ACTION_REQUEST_RETURN = "request_return"
ACTION_CONFIRM_RETURN = "confirm_return"
ACTION_DISPUTE = "open_dispute"
ACTION_RATE = "rate"
ACTION_OWNERSHIP_TRANSFER = "complete_ownership_transfer"
ACTION_CONTRACT_CANCELLED = "contract_cancelled"
ACTION_CONTRACT_DEFAULTED = "contract_defaulted"
ACTION_ROLLBACK = "rollback"

ALLOWED_FROM = {
    ACTION_APPROVE: frozenset({TXN_PENDING}),
    ACTION_DECLINE: frozenset({TXN_PENDING}),
    ACTION_CANCEL: frozenset({TXN_PENDING, TXN_APPROVED}),
    ACTION_CONFIRM_PAYMENT: frozenset({TXN_APPROVED}),
    ACTION_PICKUP: frozenset({TXN_PAID}),
    ACTION_REQUEST_RETURN: frozenset({TXN_PICKED_UP}),
    ACTION_CONFIRM_RETURN: frozenset({TXN_PICKED_UP, TXN_RETURN_PENDING}),
    ACTION_DISPUTE: frozenset({TXN_PENDING, TXN_APPROVED, TXN_PAID, TXN_PICKED_UP}),
    ACTION_RATE: frozenset({TXN_RETURNED, TXN_COMPLETED}),
    ACTION_OWNERSHIP_TRANSFER: frozenset({TXN_PICKED_UP}),
    ACTION_CONTRACT_CANCELLED: frozenset({TXN_PICKED_UP}),
    ACTION_CONTRACT_DEFAULTED: frozenset({TXN_PICKED_UP}),
}

# Actions that physical custody of an RTO item may not take while its contract is active.
RTO_LOCKED_ACTIONS = frozenset({
    ACTION_REQUEST_RETURN, ACTION_CONFIRM_RETURN, ACTION_DISPUTE,
})


# =============================================================================
# DATACLASSES
# =============================================================================

@dataclass(frozen=True, slots=True)
class RentalQuote:
    """Money terms of an ordinary paid rental."""
    rental_days: int
    daily_rate: Decimal
    rental_fee: Decimal
    deposit_amount: Decimal
    platform_fee: Decimal
    lender_payout: Decimal

    @property
    def total_charge(self) -> Decimal:
        return self.rental_fee + self.deposit_amount


@dataclass(frozen=True, slots=True)
class RentalTransaction:
    """
    One borrow of one item.

    rto_contract_id is set for transactions bound to a rent-to-own contract;
    rto_active is True while that contract is active.
    """
    transaction_id: str
    listing_id: str
    borrower_id: str
    lender_id: str
    status: str = TXN_PENDING
    quote: Optional[RentalQuote] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    rto_contract_id: Optional[str] = None
    rto_active: bool = False
    condition_at_pickup: Optional[str] = None
    condition_at_return: Optional[str] = None
    condition_notes: Optional[str] = None
    lender_response: Optional[str] = None
    dispute_reason: Optional[str] = None
    ratings: Tuple[Tuple[str, int], ...] = ()
    created_at: Optional[datetime] = None
    picked_up_at: Optional[datetime] = None
    returned_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @property
    def is_rto(self) -> bool:
        return self.rto_contract_id is not None

    @property
    def ratings_dict(self) -> Dict[str, int]:
        return dict(self.ratings)

    def is_party(self, actor: str) -> bool:
        return actor in (self.borrower_id, self.lender_id)


# =============================================================================
# PURE FUNCTIONS
# =============================================================================

def compute_rental_quote(
    daily_rate,
    rental_days: int,
    deposit_amount=Decimal("0"),
    platform_fee_percent=Decimal("0"),
) -> RentalQuote:
    """
    rental_fee = daily_rate * rental_days; the platform fee is taken from the
    rental fee (never from the deposit).
    """
    if rental_days < 1:
        raise InvalidTermsError(f"rental_days must be at least 1, got {rental_days}")
    rate = to_decimal(daily_rate, "daily_rate")
    deposit = to_decimal(deposit_amount, "deposit_amount")
    if rate < 0 or deposit < 0:
        raise InvalidTermsError("daily_rate and deposit_amount cannot be negative")
    fee_minor = to_minor_units(rate) * rental_days
    rental_fee = from_minor_units(fee_minor)
    platform_fee = compute_platform_fee(rental_fee, platform_fee_percent)
    return RentalQuote(
        rental_days=rental_days,
        daily_rate=from_minor_units(to_minor_units(rate)),
        rental_fee=rental_fee,
        deposit_amount=from_minor_units(to_minor_units(deposit)),
        platform_fee=platform_fee,
        lender_payout=rental_fee - platform_fee,
    )


def condition_worsened(at_pickup: Optional[str], at_return: Optional[str]) -> bool:
    """True if the return condition ranks below the pickup condition."""
    if at_pickup is None or at_return is None:
        return False
    return CONDITION_SCALE.index(at_return) > CONDITION_SCALE.index(at_pickup)


def _validate_condition(condition: Optional[str]) -> None:
    if condition is not None and condition not in CONDITION_SCALE:
        raise InvalidTermsError(f"Unknown condition {condition!r}; expected one of {CONDITION_SCALE}")


def _validate_text(text: Optional[str], what: str) -> Optional[str]:
    if text is not None and not isinstance(text, str):
        raise InvalidTermsError(f"{what} must be text, got {type(text).__name__}")
    if text is not None and len(text) > MAX_REASON_LENGTH:
        raise InvalidTermsError(f"{what} cannot exceed {MAX_REASON_LENGTH} characters")
    return text


def _require(txn: RentalTransaction, action: str) -> None:
    if txn.status not in ALLOWED_FROM[action]:
        raise InvalidStateError(
            f"Cannot {action} transaction {txn.transaction_id}: status is {txn.status}"
        )
    if txn.rto_active and action in RTO_LOCKED_ACTIONS:
        raise InvalidStateError(
            f"Cannot {action} transaction {txn.transaction_id}: "
            f"rent-to-own contract {txn.rto_contract_id} is active"
        )


def _require_actor(txn: RentalTransaction, actor: str, expected: str, action: str) -> None:
    expected_id = txn.lender_id if expected == "lender" else txn.borrower_id
    if actor != expected_id:
        raise NotAuthorizedError(f"Only the {expected} may {action} transaction {txn.transaction_id}")


def approve(txn: RentalTransaction, actor: str, response: Optional[str] = None) -> RentalTransaction:
    _require_actor(txn, actor, "lender", ACTION_APPROVE)
    _require(txn, ACTION_APPROVE)
    return replace(txn, status=TXN_APPROVED, lender_response=_validate_text(response, "response"))


def decline(txn: RentalTransaction, actor: str, at: datetime, reason: Optional[str] = None) -> RentalTransaction:
    _require_actor(txn, actor, "lender", ACTION_DECLINE)
    _require(txn, ACTION_DECLINE)
    return replace(txn, status=TXN_CANCELLED, lender_response=_validate_text(reason, "reason"), cancelled_at=at)


def cancel(txn: RentalTransaction, actor: str, at: datetime) -> RentalTransaction:
    """Borrower withdraws a request before pickup is paid for."""
    _require_actor(txn, actor, "borrower", ACTION_CANCEL)
    _require(txn, ACTION_CANCEL)
    return replace(txn, status=TXN_CANCELLED, cancelled_at=at)


def confirm_payment(txn: RentalTransaction, actor: str) -> RentalTransaction:
    _require_actor(txn, actor, "borrower", ACTION_CONFIRM_PAYMENT)
    _require(txn, ACTION_CONFIRM_PAYMENT)
    return replace(txn, status=TXN_PAID)


def confirm_pickup(txn: RentalTransaction, actor: str, at: datetime, condition: Optional[str] = None) -> RentalTransaction:
    """Pickup is recorded when the lender confirms handing the item over."""
    _require_actor(txn, actor, "lender", ACTION_PICKUP)
    _require(txn, ACTION_PICKUP)
    _validate_condition(condition)
    return replace(
        txn, status=TXN_PICKED_UP, picked_up_at=at,
        condition_at_pickup=condition or txn.condition_at_pickup,
    )


def request_return(txn: RentalTransaction, actor: str) -> RentalTransaction:
    _require_actor(txn, actor, "borrower", ACTION_REQUEST_RETURN)
    _require(txn, ACTION_REQUEST_RETURN)
    return replace(txn, status=TXN_RETURN_PENDING)


def confirm_return(
    txn: RentalTransaction,
    actor: str,
    at: datetime,
    condition: Optional[str] = None,
    notes: Optional[str] = None,
) -> RentalTransaction:
    """
    Lender confirms the item came back.

    A condition worse than at pickup opens a dispute instead of returning.
    """
    _require_actor(txn, actor, "lender", ACTION_CONFIRM_RETURN)
    _require(txn, ACTION_CONFIRM_RETURN)
    _validate_condition(condition)
    notes = _validate_text(notes, "notes")

    if condition_worsened(txn.condition_at_pickup, condition):
        reason = f"Item returned in worse condition: {txn.condition_at_pickup} → {condition}."
        if notes:
            reason = f"{reason} {notes}"
        return replace(
            txn, status=TXN_DISPUTED, condition_at_return=condition, condition_notes=notes,
            returned_at=at, dispute_reason=reason,
        )
    return replace(txn, status=TXN_RETURNED, condition_at_return=condition, condition_notes=notes, returned_at=at)


def open_dispute(txn: RentalTransaction, actor: str, reason: str) -> RentalTransaction:
    if not txn.is_party(actor):
        raise NotAuthorizedError(f"{actor} is not a party to transaction {txn.transaction_id}")
    _require(txn, ACTION_DISPUTE)
    reason = _validate_text(reason, "reason")
    if not reason or not reason.strip():
        raise InvalidTermsError("A dispute reason is required")
    return replace(txn, status=TXN_DISPUTED, dispute_reason=reason.strip())


def rate(txn: RentalTransaction, actor: str, rating: int, at: datetime) -> RentalTransaction:
    """
    Record (or overwrite) one party's rating.

    Once both parties have rated a returned transaction it completes.
    """
    if not txn.is_party(actor):
        raise NotAuthorizedError(f"{actor} is not a party to transaction {txn.transaction_id}")
    _require(txn, ACTION_RATE)
    if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
        raise InvalidTermsError(f"rating must be an integer from 1 to 5, got {rating!r}")

    ratings = dict(txn.ratings)
    ratings[actor] = rating
    rated = replace(txn, ratings=tuple(sorted(ratings.items())))
    if rated.status == TXN_RETURNED and {txn.borrower_id, txn.lender_id} <= set(ratings):
        rated = replace(rated, status=TXN_COMPLETED, completed_at=at)
    return rated


def complete_ownership_transfer(txn: RentalTransaction, contract_status: str, at: datetime) -> RentalTransaction:
    """
    picked_up -> completed for a transaction bound to a completed RTO contract.

    Raises:
        InvalidStateError: If the transaction is not RTO-bound, not picked up,
            or the contract has not completed.
    """
    if not txn.is_rto:
        raise InvalidStateError(f"Transaction {txn.transaction_id} is not bound to a rent-to-own contract")
    _require(txn, ACTION_OWNERSHIP_TRANSFER)
    if contract_status != CONTRACT_COMPLETED:
        raise InvalidStateError(
            f"Transaction {txn.transaction_id} cannot complete: contract {txn.rto_contract_id} "
            f"is {contract_status}"
        )
    return replace(txn, status=TXN_COMPLETED, rto_active=False, completed_at=at)


# =============================================================================
# REGISTRY
# =============================================================================

class RentalRegistry:
    """
    Stores rental transactions and applies transitions under a per-transaction lock.

    Also the receiving end of the contract service's hooks:
    on_contract_activated, on_contract_completed, on_contract_cancelled and
    on_contract_defaulted.
    """

    def __init__(self, platform_fee_percent=Decimal("0")):
        self._transactions: Dict[str, RentalTransaction] = {}
        self._by_contract: Dict[str, str] = {}
        self._locks = KeyedLocks()
        self.platform_fee_percent = to_decimal(platform_fee_percent, "platform_fee_percent")
        self.audit_log: List[StatusChange] = []

    # ------------------------------------------------------------------ reads

    def get(self, transaction_id: str) -> RentalTransaction:
        try:
            return self._transactions[transaction_id]
        except KeyError:
            raise TransactionNotFoundError(f"Transaction {transaction_id} not found") from None

    def for_contract(self, contract_id: str) -> Optional[RentalTransaction]:
        transaction_id = self._by_contract.get(contract_id)
        return self._transactions.get(transaction_id) if transaction_id else None

    # ---------------------------------------------------------------- creation

    def request(
        self,
        listing: Listing,
        borrower_id: str,
        start_date: date,
        end_date: date,
        at: datetime,
    ) -> RentalTransaction:
        """Create a pending borrow request priced from the listing."""
        if borrower_id == listing.owner_id:
            raise NotAuthorizedError("Cannot borrow your own item")
        if not listing.is_available:
            raise InvalidStateError(f"Listing {listing.listing_id} is not available")
        rental_days = (end_date - start_date).days
        quote = compute_rental_quote(
            listing.price_per_day, rental_days, listing.deposit_amount, self.platform_fee_percent,
        )
        txn = RentalTransaction(
            transaction_id=str(uuid.uuid4()),
            listing_id=listing.listing_id,
            borrower_id=borrower_id,
            lender_id=listing.owner_id,
            quote=quote,
            start_date=start_date,
            end_date=end_date,
            created_at=at,
        )
        self._transactions[txn.transaction_id] = txn
        logger.info("Created rental transaction %s for listing %s", txn.transaction_id, listing.listing_id)
        return txn

    # ------------------------------------------------------------ transitions

    def apply(self, transaction_id: str, action: str, actor: Optional[str], at: datetime, step) -> RentalTransaction:
        """
        Run ``step(current) -> new`` under the transaction's writer lock and log it.

        The step is one of the pure functions of this module, partially applied.
        """
        with self._locks.hold(transaction_id):
            current = self.get(transaction_id)
            updated = step(current)
            self._transactions[transaction_id] = updated
            self._log(current, updated, action, actor, at)
            return updated

    def approve(self, transaction_id: str, actor: str, at: datetime, response: Optional[str] = None):
        return self.apply(transaction_id, ACTION_APPROVE, actor, at, lambda t: approve(t, actor, response))

    def decline(self, transaction_id: str, actor: str, at: datetime, reason: Optional[str] = None):
        return self.apply(transaction_id, ACTION_DECLINE, actor, at, lambda t: decline(t, actor, at, reason))

    def cancel(self, transaction_id: str, actor: str, at: datetime):
        return self.apply(transaction_id, ACTION_CANCEL, actor, at, lambda t: cancel(t, actor, at))

    def confirm_payment(self, transaction_id: str, actor: str, at: datetime):
        return self.apply(transaction_id, ACTION_CONFIRM_PAYMENT, actor, at, lambda t: confirm_payment(t, actor))

    def confirm_pickup(self, transaction_id: str, actor: str, at: datetime, condition: Optional[str] = None):
        return self.apply(
            transaction_id, ACTION_PICKUP, actor, at, lambda t: confirm_pickup(t, actor, at, condition),
        )

    def request_return(self, transaction_id: str, actor: str, at: datetime):
        return self.apply(transaction_id, ACTION_REQUEST_RETURN, actor, at, lambda t: request_return(t, actor))

    def confirm_return(self, transaction_id: str, actor: str, at: datetime,
                       condition: Optional[str] = None, notes: Optional[str] = None):
        return self.apply(
            transaction_id, ACTION_CONFIRM_RETURN, actor, at,
            lambda t: confirm_return(t, actor, at, condition, notes),
        )

    def open_dispute(self, transaction_id: str, actor: str, at: datetime, reason: str):
        return self.apply(transaction_id, ACTION_DISPUTE, actor, at, lambda t: open_dispute(t, actor, reason))

    def rate(self, transaction_id: str, actor: str, rating: int, at: datetime):
        return self.apply(transaction_id, ACTION_RATE, actor, at, lambda t: rate(t, actor, rating, at))

    # ------------------------------------------------------ contract hooks

    def on_contract_activated(
        self,
        contract_id: str,
        listing_id: str,
        borrower_id: str,
        lender_id: str,
        at: datetime,
    ) -> str:
        """Bind a new transaction in picked_up to an activated contract; returns its id."""
        if contract_id in self._by_contract:
            raise InvalidStateError(f"Contract {contract_id} is already bound to a transaction")
        txn = RentalTransaction(
            transaction_id=str(uuid.uuid4()),
            listing_id=listing_id,
            borrower_id=borrower_id,
            lender_id=lender_id,
            status=TXN_PICKED_UP,
            rto_contract_id=contract_id,
            rto_active=True,
            created_at=at,
            picked_up_at=at,
        )
        self._transactions[txn.transaction_id] = txn
        self._by_contract[contract_id] = txn.transaction_id
        self.audit_log.append(StatusChange(
            entity_id=txn.transaction_id, old_status=TXN_PICKED_UP, new_status=TXN_PICKED_UP,
            action="bind_contract", actor=None, at=at, details=(("contract_id", contract_id),),
        ))
        logger.info("Bound transaction %s to contract %s", txn.transaction_id, contract_id)
        return txn.transaction_id

    def on_contract_completed(self, contract_id: str, at: datetime) -> RentalTransaction:
        """Drive the bound transaction picked_up -> completed."""
        transaction_id = self._bound(contract_id)
        return self.apply(
            transaction_id, ACTION_OWNERSHIP_TRANSFER, None, at,
            lambda t: complete_ownership_transfer(t, CONTRACT_COMPLETED, at),
        )

    def on_contract_cancelled(self, contract_id: str, at: datetime) -> RentalTransaction:
        """Drive the bound transaction to cancelled."""
        transaction_id = self._bound(contract_id)

        def step(txn: RentalTransaction) -> RentalTransaction:
            _require(txn, ACTION_CONTRACT_CANCELLED)
            return replace(txn, status=TXN_CANCELLED, rto_active=False, cancelled_at=at)

        return self.apply(transaction_id, ACTION_CONTRACT_CANCELLED, None, at, step)

    def on_contract_defaulted(self, contract_id: str, at: datetime) -> RentalTransaction:
        """Release the RTO binding; the item now follows the ordinary return path."""
        transaction_id = self._bound(contract_id)

        def step(txn: RentalTransaction) -> RentalTransaction:
            _require(txn, ACTION_CONTRACT_DEFAULTED)
            return replace(txn, rto_active=False)

        return self.apply(transaction_id, ACTION_CONTRACT_DEFAULTED, None, at, step)

    def restore(self, previous: RentalTransaction, at: datetime) -> RentalTransaction:
        """Put a transaction back to an earlier snapshot after a failed contract operation."""
        return self.apply(previous.transaction_id, ACTION_ROLLBACK, None, at, lambda t: previous)

    # --------------------------------------------------------------- internal

    def _bound(self, contract_id: str) -> str:
        transaction_id = self._by_contract.get(contract_id)
        if transaction_id is None:
            raise TransactionNotFoundError(f"No transaction bound to contract {contract_id}")
        return transaction_id

    def _log(self, old: RentalTransaction, new: RentalTransaction, action: str,
             actor: Optional[str], at: datetime) -> None:
        self.audit_log.append(StatusChange(
            entity_id=old.transaction_id,
            old_status=old.status,
            new_status=new.status,
            action=action,
            actor=actor,
            at=at,
        ))
        if old.status != new.status:
            logger.info(
                "Transaction %s: %s -> %s (%s)", old.transaction_id, old.status, new.status, action,
            )
