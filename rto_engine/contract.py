"""
contract.py - Rent-to-Own Contract State Machine

    pending ──approve──▶ active ──pay (last)──▶ completed
       │                   │
       │                   ├──mark_defaulted──▶ defaulted
       │                   │
       └──decline──▶ cancelled ◀──cancel──┘

completed, defaulted and cancelled are terminal.

=== PURE FUNCTION PATTERN ===

Every transition takes the current (immutable) contract and returns a
Transition holding the new contract and a StatusChange audit record. The
only side effect is on the PaymentLedger (seeded by approve, appended to by
pay). Transitions validate everything before touching the ledger, so a
rejected call leaves both contract and ledger unchanged.

Callers must serialize transitions of one contract (ContractService holds a
per-contract lock); the functions themselves hold no locks.
"""
from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from .amortization import build_amortization, compute_payment_amount, build_schedule
from .core import (
    ContractTerms, RTOContract, Payment, StatusChange, CancellationSettlement, Listing,
    CONTRACT_PENDING, CONTRACT_ACTIVE, CONTRACT_COMPLETED, CONTRACT_DEFAULTED, CONTRACT_CANCELLED,
    ROLE_BORROWER, DEFAULT_DECLINE_REASON, MAX_REASON_LENGTH,
    InvalidStateError, InvalidTermsError, NotAuthorizedError,
    to_decimal,
)
from .payment_ledger import PaymentLedger


# =============================================================================
# TRANSITION TABLE
# =============================================================================

ACTION_APPROVE = "approve"
ACTION_DECLINE = "decline"
ACTION_PAY = "pay"
ACTION_CANCEL = "cancel"
ACTION_DEFAULT = "mark_defaulted"
ACTION_REVISE = "revise_terms"

# action -> statuses it is legal from
ALLOWED_FROM = {
    ACTION_APPROVE: frozenset({CONTRACT_PENDING}),
    ACTION_DECLINE: frozenset({CONTRACT_PENDING}),
    ACTION_REVISE: frozenset({CONTRACT_PENDING}),
    ACTION_PAY: frozenset({CONTRACT_ACTIVE}),
    ACTION_CANCEL: frozenset({CONTRACT_ACTIVE}),
    ACTION_DEFAULT: frozenset({CONTRACT_ACTIVE}),
}


def can(contract: RTOContract, action: str) -> bool:
    """True if the action is legal from the contract's current status."""
    return contract.status in ALLOWED_FROM[action]


def _require_status(contract: RTOContract, action: str) -> None:
    if not can(contract, action):
        raise InvalidStateError(
            f"Cannot {action} contract {contract.contract_id}: status is {contract.status}"
        )


def _require_lender(contract: RTOContract, actor: str, action: str) -> None:
    if actor != contract.lender_id:
        raise NotAuthorizedError(
            f"Only the lender may {action} contract {contract.contract_id}"
        )


def _validate_reason(reason: Optional[str], required: bool) -> Optional[str]:
    if reason is not None and not isinstance(reason, str):
        raise InvalidTermsError(f"Reason must be text, got {type(reason).__name__}")
    if reason is not None:
        reason = reason.strip()
    if required and not reason:
        raise InvalidTermsError("A cancellation reason is required")
    if reason and len(reason) > MAX_REASON_LENGTH:
        raise InvalidTermsError(f"Reason cannot exceed {MAX_REASON_LENGTH} characters")
    return reason or None


@dataclass(frozen=True, slots=True)
class Transition:
    """Outcome of one state-machine step."""
    contract: RTOContract
    change: StatusChange
    payment: Optional[Payment] = None
    settlement: Optional[CancellationSettlement] = None

    @property
    def completed(self) -> bool:
        return self.change.new_status == CONTRACT_COMPLETED


def _change(contract: RTOContract, new_status: str, action: str, actor: Optional[str], at: datetime,
            **details) -> StatusChange:
    return StatusChange(
        entity_id=contract.contract_id,
        old_status=contract.status,
        new_status=new_status,
        action=action,
        actor=actor,
        at=at,
        details=tuple(sorted(details.items())),
    )


# =============================================================================
# CREATION
# =============================================================================

def build_terms(
    purchase_price,
    rental_credit_percent,
    total_payments: int,
    payment_frequency: str,
    first_payment_date: date,
) -> ContractTerms:
    """
    Validate inputs and derive payment_amount.

    Raises:
        InvalidTermsError: On bad amounts, frequency or date.
    """
    if isinstance(first_payment_date, datetime):
        first_payment_date = first_payment_date.date()
    payment_amount = compute_payment_amount(purchase_price, rental_credit_percent, total_payments)
    # validates frequency and date
    build_schedule(first_payment_date, payment_frequency, total_payments)
    return ContractTerms(
        purchase_price=to_decimal(purchase_price, "purchase_price"),
        total_payments=total_payments,
        payment_frequency=payment_frequency,
        rental_credit_percent=to_decimal(rental_credit_percent, "rental_credit_percent"),
        payment_amount=payment_amount,
        first_payment_date=first_payment_date,
    )


def new_contract(
    contract_id: str,
    listing: Listing,
    borrower_id: str,
    terms: ContractTerms,
    created_at: datetime,
) -> RTOContract:
    """A pending contract between the listing's owner and the borrower."""
    if borrower_id == listing.owner_id:
        raise NotAuthorizedError("Cannot create a rent-to-own contract for your own item")
    return RTOContract(
        contract_id=contract_id,
        listing_id=listing.listing_id,
        borrower_id=borrower_id,
        lender_id=listing.owner_id,
        terms=terms,
        status=CONTRACT_PENDING,
        created_at=created_at,
    )


def revise_terms(
    contract: RTOContract,
    actor: str,
    at: datetime,
    total_payments: Optional[int] = None,
    payment_frequency: Optional[str] = None,
    first_payment_date: Optional[date] = None,
) -> Transition:
    """
    Edit payment count, frequency or first date of a pending contract.

    Only the borrower may revise; the lender sees the revised terms when
    deciding. Status stays pending.
    """
    if actor != contract.borrower_id:
        raise NotAuthorizedError(f"Only the borrower may revise contract {contract.contract_id}")
    _require_status(contract, ACTION_REVISE)

    old = contract.terms
    terms = build_terms(
        old.purchase_price,
        old.rental_credit_percent,
        old.total_payments if total_payments is None else total_payments,
        old.payment_frequency if payment_frequency is None else payment_frequency,
        old.first_payment_date if first_payment_date is None else first_payment_date,
    )
    revised = replace(contract, terms=terms)
    change = _change(
        contract, CONTRACT_PENDING, ACTION_REVISE, actor, at,
        total_payments=terms.total_payments,
        payment_frequency=terms.payment_frequency,
        payment_amount=str(terms.payment_amount),
    )
    return Transition(contract=revised, change=change)


# =============================================================================
# TRANSITIONS
# =============================================================================

def require_approvable(contract: RTOContract, actor: str) -> None:
    """Guards of approve() without seeding the ledger."""
    _require_lender(contract, actor, ACTION_APPROVE)
    _require_status(contract, ACTION_APPROVE)


def approve(
    contract: RTOContract,
    actor: str,
    ledger: PaymentLedger,
    at: datetime,
    platform_fee_percent=Decimal("0"),
) -> Transition:
    """
    Lender approves: seed the ledger from the stored terms and go active.

    Raises:
        NotAuthorizedError: If actor is not the lender.
        InvalidStateError: If the contract is not pending.
        AlreadySeededError: If the ledger already holds rows for this contract.
    """
    require_approvable(contract, actor)

    terms = contract.terms
    amortization = build_amortization(
        terms.purchase_price,
        terms.rental_credit_percent,
        terms.total_payments,
        terms.first_payment_date,
        terms.payment_frequency,
        platform_fee_percent,
    )
    ledger.seed(contract, amortization, at)

    activated = replace(contract, status=CONTRACT_ACTIVE, approved_at=at)
    return Transition(contract=activated, change=_change(contract, CONTRACT_ACTIVE, ACTION_APPROVE, actor, at))


def decline(contract: RTOContract, actor: str, at: datetime, reason: Optional[str] = None) -> Transition:
    """
    Lender declines a pending request. No ledger side effects.

    Raises:
        NotAuthorizedError: If actor is not the lender.
        InvalidStateError: If the contract is not pending.
    """
    _require_lender(contract, actor, ACTION_DECLINE)
    _require_status(contract, ACTION_DECLINE)
    reason = _validate_reason(reason, required=False) or DEFAULT_DECLINE_REASON

    declined = replace(contract, status=CONTRACT_CANCELLED, cancelled_at=at, cancellation_reason=reason)
    return Transition(
        contract=declined,
        change=_change(contract, CONTRACT_CANCELLED, ACTION_DECLINE, actor, at, reason=reason),
    )


def require_payable(contract: RTOContract, actor: Optional[str] = None) -> None:
    """
    Guards of pay() without the ledger write.

    The service runs this before the external capture so an illegal pay is
    refused before any money moves.
    """
    if actor is not None and actor != contract.borrower_id:
        raise NotAuthorizedError(f"Only the borrower may pay contract {contract.contract_id}")
    _require_status(contract, ACTION_PAY)


def pay(
    contract: RTOContract,
    ledger: PaymentLedger,
    at: datetime,
    capture_reference: Optional[str] = None,
    actor: Optional[str] = None,
    payment_number: Optional[int] = None,
) -> Transition:
    """
    Record the next-due payment (funds already captured upstream).

    When the recorded payment is the last one the contract becomes completed.

    Args:
        payment_number: Expected payment number; when given, the ledger's
            order and duplicate guards apply to exactly that row, which makes
            a retried call for the same number fail AlreadyPaidError instead
            of silently paying the next one.

    Raises:
        NotAuthorizedError: If an actor is given and is not the borrower.
        InvalidStateError: If the contract is not active.
        AlreadyPaidError / OutOfOrderError / PaymentNotFoundError: From the ledger.
    """
    require_payable(contract, actor)

    if payment_number is None:
        next_payment = ledger.next_due(contract.contract_id)
        if next_payment is None:
            raise InvalidStateError(f"Contract {contract.contract_id} has no pending payments")
        payment_number = next_payment.payment_number

    paid = ledger.mark_paid(contract.contract_id, payment_number, at, capture_reference)

    if paid.payment_number == contract.terms.total_payments:
        completed = replace(contract, status=CONTRACT_COMPLETED, completed_at=at)
        change = _change(contract, CONTRACT_COMPLETED, ACTION_PAY, actor, at, payment_number=paid.payment_number)
        return Transition(contract=completed, change=change, payment=paid)

    change = _change(contract, CONTRACT_ACTIVE, ACTION_PAY, actor, at, payment_number=paid.payment_number)
    return Transition(contract=contract, change=change, payment=paid)


def cancel(
    contract: RTOContract,
    actor: str,
    reason: str,
    ledger: PaymentLedger,
    at: datetime,
) -> Transition:
    """
    Either party cancels an active contract.

    The stored reason is prefixed with the actor's role. Accrued equity is
    frozen into a CancellationSettlement; what happens to it is decided by
    the settlement collaborator, not here.

    Raises:
        NotAuthorizedError: If actor is not a party to the contract.
        InvalidStateError: If the contract is not active.
        InvalidTermsError: If the reason is empty or too long.
    """
    role = contract.role_of(actor)
    if role is None:
        raise NotAuthorizedError(f"{actor} is not a party to contract {contract.contract_id}")
    _require_status(contract, ACTION_CANCEL)
    reason = _validate_reason(reason, required=True)
    stored_reason = f"{'Borrower' if role == ROLE_BORROWER else 'Lender'}: {reason}"

    progress = ledger.progress(contract.contract_id)
    settlement = CancellationSettlement(
        contract_id=contract.contract_id,
        listing_id=contract.listing_id,
        cancelled_by=actor,
        cancelled_role=role,
        reason=reason,
        cancelled_at=at,
        payments_completed=progress.payments_completed,
        equity_accumulated=progress.equity_accumulated,
        rental_paid=progress.rental_paid,
        remaining_equity=progress.remaining_equity,
    )
    cancelled = replace(
        contract, status=CONTRACT_CANCELLED, cancelled_at=at, cancellation_reason=stored_reason,
    )
    change = _change(
        contract, CONTRACT_CANCELLED, ACTION_CANCEL, actor, at,
        reason=stored_reason, equity_accumulated=str(progress.equity_accumulated),
    )
    return Transition(contract=cancelled, change=change, settlement=settlement)


def mark_defaulted(contract: RTOContract, at: datetime, payment_number: Optional[int] = None) -> Transition:
    """
    Move an active contract to defaulted.

    Invoked by the scheduling collaborator once a due payment missed its
    grace window; the grace policy itself lives in configuration.
    """
    _require_status(contract, ACTION_DEFAULT)
    defaulted = replace(contract, status=CONTRACT_DEFAULTED, defaulted_at=at)
    details = {} if payment_number is None else {"payment_number": payment_number}
    return Transition(
        contract=defaulted,
        change=_change(contract, CONTRACT_DEFAULTED, ACTION_DEFAULT, None, at, **details),
    )
