"""
payment_ledger.py - Append-Only Payment Ledger for RTO Contracts

The PaymentLedger owns the ordered sequence of Payment rows of every
contract. It is the only module that mutates payment rows.

Key responsibilities:
    - Seeds a contract's schedule exactly once, at activation
    - Records completed payments strictly in order, exactly once
    - Takes back a seed or the latest payment when the surrounding operation fails
    - Aggregates progress (equity, rental paid, remaining) from completed rows
    - Logs every mutation in an append-only entry log

Rows are stored as tuples of frozen Payment objects and replaced wholesale
on every mutation (copy-on-write), so readers always see a complete snapshot
without taking the writer's lock.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple
import threading

from .amortization import Amortization
from .core import (
    Payment, Progress, RTOContract,
    PAYMENT_COMPLETED, PAYMENT_PENDING,
    AlreadySeededError, PaymentNotFoundError, AlreadyPaidError, OutOfOrderError,
    InvalidStateError, InvalidTermsError,
)
from .logging import get_logger

logger = get_logger(__name__)


ENTRY_SEEDED = "SEEDED"
ENTRY_PAID = "PAID"
ENTRY_UNSEEDED = "UNSEEDED"
ENTRY_REVERTED = "REVERTED"


@dataclass(frozen=True, slots=True)
class LedgerEntry:
    """
    Immutable record of one ledger mutation.

    Attributes:
        sequence_number: Monotonic across the whole ledger.
        contract_id: Contract the entry belongs to.
        kind: ENTRY_SEEDED, ENTRY_PAID, ENTRY_UNSEEDED or ENTRY_REVERTED.
        at: Logical time of the mutation.
        payment_number: Paid or reverted row (None for SEEDED and UNSEEDED).
        amount: Total seeded, paid or taken back by the entry.
    """
    sequence_number: int
    contract_id: str
    kind: str
    at: datetime
    payment_number: Optional[int] = None
    amount: Decimal = Decimal("0.00")

    def __repr__(self) -> str:
        number = f" #{self.payment_number}" if self.payment_number is not None else ""
        return f"LedgerEntry({self.sequence_number}: {self.kind} {self.contract_id}{number} {self.amount})"


class PaymentLedger:
    """
    Payment rows for every contract, with ordering and idempotency guards.

    Thread Safety:
        Mutations of different contracts may run concurrently. Mutations of
        the same contract must be serialized by the caller (the contract
        service holds a per-contract lock). Reads never block.

    Example:
        ledger = PaymentLedger()
        ledger.seed(contract, amortization, at=now)
        ledger.mark_paid(contract.contract_id, 1, paid_at=now)
        ledger.progress(contract.contract_id).equity_accumulated
    """

    def __init__(self):
        self._rows: Dict[str, Tuple[Payment, ...]] = {}
        self._purchase_prices: Dict[str, Decimal] = {}
        self.entry_log: List[LedgerEntry] = []
        self._next_sequence: int = 0
        self._log_lock = threading.Lock()

    # ========================================================================
    # READS
    # ========================================================================

    def is_seeded(self, contract_id: str) -> bool:
        return contract_id in self._rows

    def payments(self, contract_id: str) -> Tuple[Payment, ...]:
        """All rows of a contract ordered by payment number (empty if not seeded)."""
        return self._rows.get(contract_id, ())

    def get_payment(self, contract_id: str, payment_number: int) -> Payment:
        """
        Look up one row.

        Raises:
            PaymentNotFoundError: If the contract is not seeded or the number is out of range.
        """
        rows = self._rows.get(contract_id, ())
        if not 1 <= payment_number <= len(rows):
            raise PaymentNotFoundError(
                f"Contract {contract_id} has no payment #{payment_number}"
            )
        return rows[payment_number - 1]

    def next_due(self, contract_id: str) -> Optional[Payment]:
        """The lowest-numbered pending row, or None when everything is paid."""
        for payment in self._rows.get(contract_id, ()):
            if not payment.is_paid:
                return payment
        return None

    def progress(self, contract_id: str) -> Progress:
        """
        Aggregate progress over completed rows.

        Raises:
            PaymentNotFoundError: If the contract has not been seeded.
        """
        return self.snapshot(contract_id)[1]

    def snapshot(self, contract_id: str) -> Tuple[Tuple[Payment, ...], Progress]:
        """
        Rows and the progress aggregated from those same rows.

        Raises:
            PaymentNotFoundError: If the contract has not been seeded.
        """
        rows = self._rows.get(contract_id)
        if rows is None:
            raise PaymentNotFoundError(f"Contract {contract_id} has no payment schedule")
        completed = [p for p in rows if p.is_paid]
        next_payment = next((p for p in rows if not p.is_paid), None)
        return rows, Progress(
            purchase_price=self._purchase_prices[contract_id],
            total_payments=len(rows),
            payments_completed=len(completed),
            equity_accumulated=sum((p.equity_portion for p in completed), Decimal("0.00")),
            rental_paid=sum((p.rental_portion for p in completed), Decimal("0.00")),
            next_payment_date=next_payment.due_date if next_payment else None,
        )

    def entries_for(self, contract_id: str) -> List[LedgerEntry]:
        return [e for e in self.entry_log if e.contract_id == contract_id]

    # ========================================================================
    # MUTATIONS
    # ========================================================================

    def seed(self, contract: RTOContract, amortization: Amortization, at: datetime) -> Tuple[Payment, ...]:
        """
        Create the contract's pending rows from its amortization.

        Called once, at activation.

        Raises:
            AlreadySeededError: If the contract already has rows. The existing
                rows are left untouched.
            InvalidTermsError: If the amortization does not match the contract's terms.
        """
        contract_id = contract.contract_id
        if contract_id in self._rows:
            raise AlreadySeededError(f"Contract {contract_id} payment schedule already seeded")

        terms = contract.terms
        if amortization.total_payments != terms.total_payments:
            raise InvalidTermsError(
                f"Amortization has {amortization.total_payments} payments, "
                f"contract {contract_id} expects {terms.total_payments}"
            )
        if amortization.total_equity != terms.purchase_price:
            raise InvalidTermsError(
                f"Amortization equity {amortization.total_equity} does not reconcile "
                f"to purchase price {terms.purchase_price}"
            )

        rows = tuple(
            Payment(
                contract_id=contract_id,
                payment_number=i.payment_number,
                due_date=i.due_date,
                total_amount=i.total_amount,
                equity_portion=i.equity_portion,
                rental_portion=i.rental_portion,
                platform_fee=i.platform_fee,
                lender_payout=i.lender_payout,
            )
            for i in amortization.installments
        )
        self._purchase_prices[contract_id] = terms.purchase_price
        self._rows[contract_id] = rows
        self._append(contract_id, ENTRY_SEEDED, at, amount=amortization.total_cost)
        logger.info(
            "Seeded %d payments for contract %s (total %s)",
            len(rows), contract_id, amortization.total_cost,
        )
        return rows

    def mark_paid(
        self,
        contract_id: str,
        payment_number: int,
        paid_at: datetime,
        capture_reference: Optional[str] = None,
    ) -> Payment:
        """
        Transition exactly one pending row to completed.

        Raises:
            PaymentNotFoundError: If the number does not exist.
            AlreadyPaidError: If the row is already completed.
            OutOfOrderError: If an earlier row is still pending.
        """
        payment = self.get_payment(contract_id, payment_number)
        if payment.is_paid:
            raise AlreadyPaidError(
                f"Payment #{payment_number} of contract {contract_id} already paid at {payment.paid_at}"
            )
        next_payment = self.next_due(contract_id)
        if next_payment is not None and next_payment.payment_number < payment_number:
            raise OutOfOrderError(
                f"Payment #{payment_number} of contract {contract_id} cannot be recorded "
                f"before payment #{next_payment.payment_number}"
            )

        paid = replace(payment, status=PAYMENT_COMPLETED, paid_at=paid_at, capture_reference=capture_reference)
        rows = list(self._rows[contract_id])
        rows[payment_number - 1] = paid
        self._rows[contract_id] = tuple(rows)
        self._append(contract_id, ENTRY_PAID, paid_at, payment_number=payment_number, amount=paid.total_amount)
        logger.info("Recorded payment #%d of contract %s (%s)", payment_number, contract_id, paid.total_amount)
        return paid

    def unseed(self, contract_id: str, at: datetime) -> None:
        """
        Drop the rows of a contract whose activation did not go through.

        Raises:
            PaymentNotFoundError: If the contract is not seeded.
            InvalidStateError: If any row is already paid.
        """
        rows = self._rows.get(contract_id)
        if rows is None:
            raise PaymentNotFoundError(f"Contract {contract_id} has no payment schedule")
        if any(p.is_paid for p in rows):
            raise InvalidStateError(f"Contract {contract_id} has paid rows and cannot be unseeded")
        del self._rows[contract_id]
        del self._purchase_prices[contract_id]
        self._append(contract_id, ENTRY_UNSEEDED, at, amount=sum((p.total_amount for p in rows), Decimal("0.00")))
        logger.warning("Unseeded %d payments for contract %s", len(rows), contract_id)

    def revert_payment(self, contract_id: str, payment_number: int, at: datetime) -> Payment:
        """
        Return the latest completed row to pending.

        Raises:
            PaymentNotFoundError: If the number does not exist.
            InvalidStateError: If the row is not paid or a later row is.
        """
        payment = self.get_payment(contract_id, payment_number)
        rows = list(self._rows[contract_id])
        if not payment.is_paid or any(p.is_paid for p in rows[payment_number:]):
            raise InvalidStateError(
                f"Payment #{payment_number} of contract {contract_id} is not the latest paid row"
            )
        pending = replace(payment, status=PAYMENT_PENDING, paid_at=None, capture_reference=None)
        rows[payment_number - 1] = pending
        self._rows[contract_id] = tuple(rows)
        self._append(contract_id, ENTRY_REVERTED, at, payment_number=payment_number, amount=payment.total_amount)
        logger.warning("Reverted payment #%d of contract %s", payment_number, contract_id)
        return pending

    # ========================================================================
    # INTERNAL
    # ========================================================================

    def _append(self, contract_id: str, kind: str, at: datetime, payment_number: Optional[int] = None,
                amount: Decimal = Decimal("0.00")) -> None:
        with self._log_lock:
            self.entry_log.append(LedgerEntry(
                sequence_number=self._next_sequence,
                contract_id=contract_id,
                kind=kind,
                at=at,
                payment_number=payment_number,
                amount=amount,
            ))
            self._next_sequence += 1

    def __repr__(self) -> str:
        return f"PaymentLedger({len(self._rows)} contracts, {len(self.entry_log)} entries)"
