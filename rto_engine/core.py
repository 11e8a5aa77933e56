"""
Core types and pure helpers for the rent-to-own contract engine.

This module provides the foundational data structures for the engine:
1. Decimal context and money helpers (minor-unit conversion, rounding table)
2. Status constants for contracts, payments and rental transactions
3. Exceptions: RTOError and the domain error taxonomy
4. Immutable data structures: Listing, ContractTerms, RTOContract, Payment,
   Progress, StatusChange, CancellationSettlement, ContractView

Nothing in this module performs I/O or mutates shared state.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, ROUND_CEILING, ROUND_HALF_EVEN, ROUND_UP, getcontext
from typing import Dict, Optional, Tuple, Any


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# Money math must be deterministic. The global context is configured once at
# import time; code that needs a different context uses decimal.localcontext().
#
#   - prec=50: plenty for prices, percents and intermediate quotients
#   - rounding=ROUND_HALF_EVEN: banker's rounding (unbiased)
#
_RTO_DECIMAL_CONTEXT = getcontext()
_RTO_DECIMAL_CONTEXT.prec = 50
_RTO_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN


# ============================================================================
# CONSTANTS
# ============================================================================

# Minor units per major unit (cents per dollar).
MINOR_UNIT_PLACES = 2
MINOR_UNITS_PER_MAJOR = 10 ** MINOR_UNIT_PLACES
CENT = Decimal(1).scaleb(-MINOR_UNIT_PLACES)

HUNDRED = Decimal("100")

DECIMAL_ROUNDING = {
    'MONEY': ROUND_HALF_EVEN,
    'FEES': ROUND_UP,
    'PAYMENT': ROUND_CEILING,
}

# Payment frequencies (strings, matching the wire format).
FREQUENCY_WEEKLY = "weekly"
FREQUENCY_BIWEEKLY = "biweekly"
FREQUENCY_MONTHLY = "monthly"
PAYMENT_FREQUENCIES = frozenset({FREQUENCY_WEEKLY, FREQUENCY_BIWEEKLY, FREQUENCY_MONTHLY})

# Contract statuses
CONTRACT_PENDING = "pending"
CONTRACT_ACTIVE = "active"
CONTRACT_COMPLETED = "completed"
CONTRACT_DEFAULTED = "defaulted"
CONTRACT_CANCELLED = "cancelled"
CONTRACT_TERMINAL_STATUSES = frozenset({
    CONTRACT_COMPLETED, CONTRACT_DEFAULTED, CONTRACT_CANCELLED,
})

# Payment (ledger row) statuses
PAYMENT_PENDING = "pending"
PAYMENT_COMPLETED = "completed"

# Rental transaction statuses
TXN_PENDING = "pending"
TXN_APPROVED = "approved"
TXN_PAID = "paid"
TXN_PICKED_UP = "picked_up"
TXN_RETURN_PENDING = "return_pending"
TXN_RETURNED = "returned"
TXN_COMPLETED = "completed"
TXN_CANCELLED = "cancelled"
TXN_DISPUTED = "disputed"

# Party roles
ROLE_BORROWER = "borrower"
ROLE_LENDER = "lender"

DEFAULT_DECLINE_REASON = "Declined by lender"
MAX_REASON_LENGTH = 500


# ============================================================================
# EXCEPTIONS
# ============================================================================

class RTOError(Exception):
    """Base exception for all rent-to-own engine errors."""
    code = "rto_error"
    # Caller may retry the same call unchanged.
    retryable = False
    # Caller should reload the contract view and show the current status.
    refetch = False


class InvalidTermsError(RTOError):
    """Raised when amortization inputs or contract terms are invalid."""
    code = "invalid_terms"


class OutOfRangeError(RTOError):
    """Raised when the payment count is outside the listing's bounds."""
    code = "out_of_range"


class NotAuthorizedError(RTOError):
    """Raised when the acting user may not perform the operation."""
    code = "not_authorized"


class InvalidStateError(RTOError):
    """Raised when a transition is not legal from the current status."""
    code = "invalid_state"
    refetch = True


class ListingLockedError(InvalidStateError):
    """Raised when a listing is edited while an active contract references it."""
    code = "listing_locked"


class AlreadySeededError(RTOError):
    """Raised when a contract's payment schedule is seeded a second time."""
    code = "already_seeded"


class PaymentNotFoundError(RTOError):
    """Raised when a payment number does not exist for a contract."""
    code = "payment_not_found"


class AlreadyPaidError(RTOError):
    """Raised when a payment that is already completed is paid again."""
    code = "already_paid"
    refetch = True


class OutOfOrderError(RTOError):
    """Raised when a payment is recorded while an earlier one is pending."""
    code = "out_of_order"
    refetch = True


class CaptureTimeoutError(RTOError):
    """Raised when the external payment capture does not confirm in time."""
    code = "capture_timeout"
    retryable = True


class PaymentCaptureError(RTOError):
    """Raised when the external payment capture declines or fails."""
    code = "capture_failed"


class ContractNotFoundError(RTOError):
    """Raised when a contract id is unknown (or not visible to the actor)."""
    code = "contract_not_found"


class ListingNotFoundError(RTOError):
    """Raised when a listing id is unknown."""
    code = "listing_not_found"


class TransactionNotFoundError(RTOError):
    """Raised when a rental transaction id is unknown."""
    code = "transaction_not_found"


class ConfigurationError(RTOError):
    """Raised when engine configuration is invalid or missing."""
    code = "configuration_error"


# ============================================================================
# MONEY HELPERS
# ============================================================================

def to_decimal(value: Any, what: str = "amount") -> Decimal:
    """
    Coerce an int, str or Decimal into a Decimal.

    Floats are refused: a binary float has already lost the cents.

    Raises:
        InvalidTermsError: If the value is a float, NaN, infinite or unparsable.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise InvalidTermsError(f"{what} must be Decimal, int or str, got {type(value).__name__}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(value)
        except ArithmeticError:
            raise InvalidTermsError(f"{what} is not a number: {value!r}") from None
    else:
        raise InvalidTermsError(f"{what} must be Decimal, int or str, got {type(value).__name__}")
    if result.is_nan() or result.is_infinite():
        raise InvalidTermsError(f"{what} must be finite, got {result}")
    return result


def to_minor_units(amount: Any) -> int:
    """
    Convert a money amount to integer minor units (cents).

    Amounts with sub-cent precision are rounded half-even.
    """
    value = to_decimal(amount)
    scaled = value.scaleb(MINOR_UNIT_PLACES).quantize(Decimal(1), rounding=DECIMAL_ROUNDING['MONEY'])
    return int(scaled)


def from_minor_units(minor: int) -> Decimal:
    """Convert integer minor units back to a Decimal quantized to the cent."""
    return Decimal(minor).scaleb(-MINOR_UNIT_PLACES).quantize(CENT)


def quantize_money(amount: Any) -> Decimal:
    """Round a money amount to the cent with banker's rounding."""
    return to_decimal(amount).quantize(CENT, rounding=DECIMAL_ROUNDING['MONEY'])


# ============================================================================
# LISTING
# ============================================================================

@dataclass(frozen=True, slots=True)
class Listing:
    """
    An item eligible for borrowing and, optionally, rent-to-own.

    Attributes:
        listing_id: Unique listing identifier.
        owner_id: User who owns the item (the lender in any contract).
        title: Display title.
        rto_available: Whether the owner offers rent-to-own on this item.
        rto_purchase_price: Purchase price for RTO (None if not offered).
        rto_rental_credit_percent: Share of each payment credited as equity.
        rto_min_payments / rto_max_payments: Bounds for total_payments.
        is_available: False while the item is out on a rental or contract.
        price_per_day: Daily rate for ordinary rentals (0 = free borrow).
        deposit_amount: Refundable deposit for ordinary rentals.
    """
    listing_id: str
    owner_id: str
    title: str = ""
    rto_available: bool = False
    rto_purchase_price: Optional[Decimal] = None
    rto_rental_credit_percent: Optional[Decimal] = None
    rto_min_payments: Optional[int] = None
    rto_max_payments: Optional[int] = None
    is_available: bool = True
    price_per_day: Decimal = Decimal("0")
    deposit_amount: Decimal = Decimal("0")

    def __post_init__(self):
        if not self.listing_id or not self.listing_id.strip():
            raise ValueError("Listing listing_id cannot be empty")
        if not self.owner_id or not self.owner_id.strip():
            raise ValueError("Listing owner_id cannot be empty")
        if self.rto_purchase_price is not None and not isinstance(self.rto_purchase_price, Decimal):
            object.__setattr__(self, 'rto_purchase_price', to_decimal(self.rto_purchase_price, "rto_purchase_price"))
        if self.rto_rental_credit_percent is not None and not isinstance(self.rto_rental_credit_percent, Decimal):
            object.__setattr__(
                self, 'rto_rental_credit_percent',
                to_decimal(self.rto_rental_credit_percent, "rto_rental_credit_percent"),
            )
        if not isinstance(self.price_per_day, Decimal):
            object.__setattr__(self, 'price_per_day', to_decimal(self.price_per_day, "price_per_day"))
        if not isinstance(self.deposit_amount, Decimal):
            object.__setattr__(self, 'deposit_amount', to_decimal(self.deposit_amount, "deposit_amount"))


# ============================================================================
# CONTRACT TERMS AND CONTRACT
# ============================================================================

@dataclass(frozen=True, slots=True)
class ContractTerms:
    """
    Immutable term sheet of an RTO contract.

    Fixed at creation, revisable only while the contract is pending, and
    never changed after activation.
    """
    purchase_price: Decimal
    total_payments: int
    payment_frequency: str
    rental_credit_percent: Decimal
    payment_amount: Decimal
    first_payment_date: date


@dataclass(frozen=True, slots=True)
class RTOContract:
    """
    Rent-to-own contract record.

    Status changes produce a new instance via dataclasses.replace(); the
    progress fields live in the payment ledger and are joined in ContractView.
    """
    contract_id: str
    listing_id: str
    borrower_id: str
    lender_id: str
    terms: ContractTerms
    status: str = CONTRACT_PENDING
    created_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    defaulted_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    transaction_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in CONTRACT_TERMINAL_STATUSES

    def role_of(self, actor: str) -> Optional[str]:
        """Return the actor's role in this contract, or None for a third party."""
        if actor == self.borrower_id:
            return ROLE_BORROWER
        if actor == self.lender_id:
            return ROLE_LENDER
        return None


# ============================================================================
# PAYMENTS AND PROGRESS
# ============================================================================

@dataclass(frozen=True, slots=True)
class Payment:
    """
    One row of a contract's payment ledger.

    Invariant: total_amount == equity_portion + rental_portion, and
    paid_at is set if and only if status is completed.
    """
    contract_id: str
    payment_number: int
    due_date: date
    total_amount: Decimal
    equity_portion: Decimal
    rental_portion: Decimal
    platform_fee: Decimal = Decimal("0.00")
    lender_payout: Decimal = Decimal("0.00")
    status: str = PAYMENT_PENDING
    paid_at: Optional[datetime] = None
    capture_reference: Optional[str] = None

    def __post_init__(self):
        if self.payment_number < 1:
            raise ValueError(f"payment_number must be >= 1, got {self.payment_number}")
        if self.equity_portion + self.rental_portion != self.total_amount:
            raise ValueError(
                f"Payment {self.payment_number}: equity {self.equity_portion} + "
                f"rental {self.rental_portion} != total {self.total_amount}"
            )
        if (self.status == PAYMENT_COMPLETED) != (self.paid_at is not None):
            raise ValueError("paid_at must be set exactly when the payment is completed")

    @property
    def is_paid(self) -> bool:
        return self.status == PAYMENT_COMPLETED


@dataclass(frozen=True, slots=True)
class Progress:
    """Derived contract progress, aggregated from completed ledger rows."""
    purchase_price: Decimal
    total_payments: int
    payments_completed: int = 0
    equity_accumulated: Decimal = Decimal("0.00")
    rental_paid: Decimal = Decimal("0.00")
    next_payment_date: Optional[date] = None

    @property
    def remaining_equity(self) -> Decimal:
        return self.purchase_price - self.equity_accumulated

    @property
    def payments_remaining(self) -> int:
        return self.total_payments - self.payments_completed

    @property
    def progress_percent(self) -> Decimal:
        """Equity accumulated as a percent of the purchase price, clamped to [0, 100]."""
        if self.purchase_price <= 0:
            return Decimal("0")
        pct = self.equity_accumulated / self.purchase_price * HUNDRED
        return min(max(pct, Decimal("0")), HUNDRED)

    @classmethod
    def empty(cls, terms: ContractTerms) -> 'Progress':
        """Progress of a contract whose ledger has not been seeded yet."""
        return cls(
            purchase_price=terms.purchase_price,
            total_payments=terms.total_payments,
            next_payment_date=terms.first_payment_date,
        )


# ============================================================================
# AUDIT RECORDS
# ============================================================================

@dataclass(frozen=True, slots=True)
class StatusChange:
    """
    Record of one state-machine transition.

    Attributes:
        entity_id: Contract or transaction id.
        old_status: Status before the transition.
        new_status: Status after the transition.
        action: Operation that caused it ("approve", "pay", ...).
        actor: Acting user id, or None for system-driven transitions.
        at: Time of the transition.
        details: Extra audit fields (reason, payment number, ...).
    """
    entity_id: str
    old_status: str
    new_status: str
    action: str
    actor: Optional[str]
    at: datetime
    details: Tuple[Tuple[str, Any], ...] = ()

    @property
    def details_dict(self) -> Dict[str, Any]:
        return dict(self.details)

    def __repr__(self) -> str:
        return f"StatusChange({self.entity_id}: {self.old_status}→{self.new_status} via {self.action})"


@dataclass(frozen=True, slots=True)
class CancellationSettlement:
    """
    Snapshot of accrued value at the moment an active contract is cancelled.

    The engine records this and hands it to the settlement collaborator;
    it does not decide whether equity is forfeited, refunded or converted.
    """
    contract_id: str
    listing_id: str
    cancelled_by: str
    cancelled_role: str
    reason: str
    cancelled_at: datetime
    payments_completed: int
    equity_accumulated: Decimal
    rental_paid: Decimal
    remaining_equity: Decimal


# ============================================================================
# VIEW
# ============================================================================

@dataclass(frozen=True, slots=True)
class ContractView:
    """Consistent snapshot returned by every service operation."""
    contract: RTOContract
    payments: Tuple[Payment, ...]
    progress: Progress

    @property
    def contract_id(self) -> str:
        return self.contract.contract_id

    @property
    def status(self) -> str:
        return self.contract.status

    @property
    def next_due(self) -> Optional[Payment]:
        for payment in self.payments:
            if not payment.is_paid:
                return payment
        return None
