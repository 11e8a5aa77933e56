"""
service.py - Rent-to-Own Contract Service

The ContractService is the stateful shell around the pure contract state
machine. It is the only module that stores contracts.

Key responsibilities:
    - Validates create requests against the listing and the configured bounds
    - Runs every state change of one contract under that contract's writer lock
    - Captures funds through the PaymentCapture collaborator before recording a payment
    - Keeps the listing directory and the rental transaction in step with the contract
    - Records every transition in an append-only audit log
    - Returns a consistent ContractView from every operation

Lock order: contract lock, then listing lock. Nothing acquires them the
other way round.
"""

from __future__ import annotations
from concurrent.futures import Future, TimeoutError as FutureTimeoutError
from contextlib import ExitStack, contextmanager
from dataclasses import replace
from datetime import date, datetime, timezone
from typing import Callable, Dict, Iterator, List, Optional, Set
import logging
import threading
import uuid

from . import contract as machine
from .amortization import Amortization, quote_terms
from .collaborators import (
    CaptureReceipt, CaptureRequest, ListingDirectory, PaymentCapture,
    RecordingSettlementPolicy, SettlementPolicy,
)
from .config import EngineConfig
from .core import (
    ContractView, Listing, Payment, Progress, RTOContract, StatusChange,
    CONTRACT_ACTIVE, CONTRACT_PENDING, FREQUENCY_MONTHLY, ROLE_BORROWER, ROLE_LENDER,
    RTOError, CaptureTimeoutError, ContractNotFoundError, InvalidStateError, InvalidTermsError,
    ListingLockedError, NotAuthorizedError, OutOfRangeError, PaymentCaptureError,
    to_decimal,
)
from .locks import KeyedLocks
from .logging import get_logger
from .payment_ledger import PaymentLedger
from .rental import RentalRegistry
from .scheduled_events import ACTION_GRACE_EXPIRY, Event, EventScheduler, grace_expiry_event

logger = get_logger(__name__)

ACTION_CREATE = "create"

# Listing fields an owner may edit through update_listing_terms().
EDITABLE_LISTING_FIELDS = frozenset({
    "title", "rto_available", "rto_purchase_price", "rto_rental_credit_percent",
    "rto_min_payments", "rto_max_payments", "price_per_day", "deposit_amount",
})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ContractService:
    """
    Orchestrates rent-to-own contracts between borrowers and lenders.

    Thread Safety:
        Safe for concurrent use. Writers on the same contract serialize on a
        per-contract lock; the loser of a race sees InvalidStateError (or
        AlreadyPaidError) and should refetch with get(). Reads take no lock.

    Example:
        service = ContractService(listings, capture)
        view = service.create("listing-1", "bob", 12, date(2025, 2, 1))
        service.approve(view.contract_id, "alice")
        service.pay(view.contract_id, "bob")
    """

    def __init__(
        self,
        listings: ListingDirectory,
        capture: PaymentCapture,
        config: Optional[EngineConfig] = None,
        ledger: Optional[PaymentLedger] = None,
        rentals: Optional[RentalRegistry] = None,
        settlement: Optional[SettlementPolicy] = None,
        clock: Optional[Callable[[], datetime]] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ):
        self.config = (config or EngineConfig()).validate()
        self.listings = listings
        self.capture = capture
        self.ledger = ledger or PaymentLedger()
        self.rentals = rentals or RentalRegistry(self.config.platform_fee_percent)
        self.settlement = settlement or RecordingSettlementPolicy()
        self.scheduler = EventScheduler()
        self.scheduler.register(ACTION_GRACE_EXPIRY, self._handle_grace_expiry)
        self.audit_log: List[StatusChange] = []

        self._clock = clock or _utcnow
        self._new_id = id_factory or (lambda: str(uuid.uuid4()))
        self._contracts: Dict[str, RTOContract] = {}
        self._contract_locks = KeyedLocks()
        self._listing_locks = KeyedLocks()
        self._audit_lock = threading.Lock()
        self._scheduler_lock = threading.Lock()
        self._inflight: Set[threading.Thread] = set()
        self._inflight_lock = threading.Lock()

    def close(self, timeout: Optional[float] = None) -> None:
        """
        Wait for in-flight captures to finish.

        Each capture runs on its own daemon thread, so a capture that never
        returns does not hold up later payments or interpreter exit.
        Waits at most ``timeout`` seconds per thread (default: the capture timeout).
        """
        timeout = self.config.capture_timeout_seconds if timeout is None else timeout
        with self._inflight_lock:
            workers = list(self._inflight)
        for worker in workers:
            worker.join(timeout)

    def __enter__(self) -> ContractService:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ========================================================================
    # READS
    # ========================================================================

    def get(self, contract_id: str, actor: str) -> ContractView:
        """
        Contract, payment rows and progress as one snapshot.

        Contracts the actor is not a party to are reported as not found.
        """
        contract = self._contracts.get(contract_id)
        if contract is None or contract.role_of(actor) is None:
            raise ContractNotFoundError(f"Contract {contract_id} not found")
        return self._view(contract_id)

    def list_contracts(
        self,
        user_id: str,
        role: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[ContractView]:
        """Contracts the user is party to, newest first."""
        if role not in (None, ROLE_BORROWER, ROLE_LENDER):
            raise InvalidTermsError(f"role must be {ROLE_BORROWER!r} or {ROLE_LENDER!r}, got {role!r}")
        views = []
        for contract in list(self._contracts.values()):
            contract_role = contract.role_of(user_id)
            if contract_role is None or (role is not None and contract_role != role):
                continue
            if status is not None and contract.status != status:
                continue
            views.append(self._view(contract.contract_id))
        views.sort(key=lambda v: (v.contract.created_at, v.contract_id), reverse=True)
        return views

    def quote(
        self,
        listing_id: str,
        total_payments: int,
        first_payment_date: date,
        payment_frequency: str = FREQUENCY_MONTHLY,
    ) -> Amortization:
        """Preview the schedule a create() with these inputs would produce."""
        listing = self.listings.get_listing(listing_id)
        self._check_payment_bounds(listing, total_payments)
        return quote_terms(
            listing, total_payments, payment_frequency, first_payment_date,
            self.config.default_rental_credit_percent, self.config.platform_fee_percent,
        )

    # ========================================================================
    # OPERATIONS
    # ========================================================================

    def create(
        self,
        listing_id: str,
        borrower_id: str,
        total_payments: int,
        first_payment_date: date,
        payment_frequency: str = FREQUENCY_MONTHLY,
    ) -> ContractView:
        """
        Persist a pending contract request for a listing.

        Raises:
            ListingNotFoundError: Unknown listing.
            NotAuthorizedError: The borrower owns the listing.
            InvalidStateError: The listing offers no rent-to-own or is unavailable.
            OutOfRangeError: total_payments outside the listing's (and global) bounds.
            InvalidTermsError: Bad price, percent, frequency or date.
        """
        with self._logged(ACTION_CREATE, None, borrower_id):
            listing = self.listings.get_listing(listing_id)
            if borrower_id == listing.owner_id:
                raise NotAuthorizedError("Cannot create a rent-to-own contract for your own item")
            if not listing.rto_available or listing.rto_purchase_price is None:
                raise InvalidStateError(f"Listing {listing_id} does not offer rent-to-own")
            if not listing.is_available:
                raise InvalidStateError(f"Listing {listing_id} is not available")
            self._check_payment_bounds(listing, total_payments)

            percent = listing.rto_rental_credit_percent or self.config.default_rental_credit_percent
            terms = machine.build_terms(
                listing.rto_purchase_price, percent, total_payments, payment_frequency, first_payment_date,
            )
            now = self._clock()
            contract = machine.new_contract(self._new_id(), listing, borrower_id, terms, now)
            with self._contract_locks.hold(contract.contract_id):
                self._contracts[contract.contract_id] = contract
                self._record(StatusChange(
                    entity_id=contract.contract_id, old_status="", new_status=CONTRACT_PENDING,
                    action=ACTION_CREATE, actor=borrower_id, at=now,
                    details=(("listing_id", listing_id), ("total_payments", total_payments)),
                ))
            return self._view(contract.contract_id)

    def revise_terms(
        self,
        contract_id: str,
        actor: str,
        total_payments: Optional[int] = None,
        payment_frequency: Optional[str] = None,
        first_payment_date: Optional[date] = None,
    ) -> ContractView:
        """Borrower edits the terms of a pending request."""
        with self._logged(machine.ACTION_REVISE, contract_id, actor):
            with self._contract_locks.hold(contract_id):
                contract = self._get_contract(contract_id)
                if total_payments is not None and actor == contract.borrower_id:
                    self._check_payment_bounds(self.listings.get_listing(contract.listing_id), total_payments)
                transition = machine.revise_terms(
                    contract, actor, self._clock(),
                    total_payments=total_payments,
                    payment_frequency=payment_frequency,
                    first_payment_date=first_payment_date,
                )
                self._commit(transition)
            return self._view(contract_id)

    def approve(self, contract_id: str, actor: str) -> ContractView:
        """
        Lender approves: seed the ledger, take the listing off the market and
        bind a rental transaction in picked_up.

        If any step fails the earlier ones are undone and the contract stays
        pending, so approve() can be retried.
        """
        with self._logged(machine.ACTION_APPROVE, contract_id, actor):
            with self._contract_locks.hold(contract_id):
                contract = self._get_contract(contract_id)
                machine.require_approvable(contract, actor)
                with self._listing_locks.hold(contract.listing_id), ExitStack() as rollback:
                    listing = self.listings.get_listing(contract.listing_id)
                    if not listing.is_available:
                        raise InvalidStateError(f"Listing {listing.listing_id} is no longer available")

                    now = self._clock()
                    transition = machine.approve(
                        contract, actor, self.ledger, now, self.config.platform_fee_percent,
                    )
                    rollback.callback(self.ledger.unseed, contract_id, now)
                    self.listings.set_available(listing.listing_id, False)
                    rollback.callback(self.listings.set_available, listing.listing_id, True)
                    transaction_id = self.rentals.on_contract_activated(
                        contract_id, contract.listing_id, contract.borrower_id, contract.lender_id, now,
                    )
                    rollback.pop_all()
                    self._commit(replace(
                        transition, contract=replace(transition.contract, transaction_id=transaction_id),
                    ))
            self._schedule_grace_events(contract_id)
            return self._view(contract_id)

    def decline(self, contract_id: str, actor: str, reason: Optional[str] = None) -> ContractView:
        with self._logged(machine.ACTION_DECLINE, contract_id, actor):
            with self._contract_locks.hold(contract_id):
                contract = self._get_contract(contract_id)
                self._commit(machine.decline(contract, actor, self._clock(), reason))
            return self._view(contract_id)

    def pay(self, contract_id: str, actor: str) -> ContractView:
        """
        Capture and record the next-due payment.

        The capture runs under the contract lock and must confirm before the
        ledger is touched. A timed-out capture may still complete at the
        processor; a retry reuses the idempotency key of the same payment
        number, so the processor charges it at most once. The same holds when
        a completing payment fails to hand the item over: the row is reverted
        and the retry captures under the same key.

        Raises:
            NotAuthorizedError: The actor is not the borrower.
            InvalidStateError: The contract is not active.
            CaptureTimeoutError: The capture did not confirm in time (retryable).
            PaymentCaptureError: The capture was declined or failed.
        """
        with self._logged(machine.ACTION_PAY, contract_id, actor):
            with self._contract_locks.hold(contract_id):
                contract = self._get_contract(contract_id)
                machine.require_payable(contract, actor)
                payment = self.ledger.next_due(contract_id)
                if payment is None:
                    raise InvalidStateError(f"Contract {contract_id} has no pending payments")

                receipt = self._capture(contract, payment)
                now = self._clock()
                with self._listing_locks.hold(contract.listing_id), ExitStack() as rollback:
                    transition = machine.pay(
                        contract, self.ledger, now, receipt.reference, actor, payment.payment_number,
                    )
                    rollback.callback(self.ledger.revert_payment, contract_id, payment.payment_number, now)
                    if transition.completed:
                        self._transfer_ownership(transition.contract, rollback)
                    rollback.pop_all()
                    self._commit(transition)
            return self._view(contract_id)

    def cancel(self, contract_id: str, actor: str, reason: str) -> ContractView:
        """
        Either party cancels an active contract.

        The listing goes back on the market, the bound transaction is
        cancelled and the settlement policy receives the equity snapshot.
        The contract is only committed as cancelled once all three succeeded.
        """
        with self._logged(machine.ACTION_CANCEL, contract_id, actor):
            with self._contract_locks.hold(contract_id):
                contract = self._get_contract(contract_id)
                transition = machine.cancel(contract, actor, reason, self.ledger, self._clock())
                at = transition.change.at
                with self._listing_locks.hold(contract.listing_id), ExitStack() as rollback:
                    self.listings.set_available(contract.listing_id, True)
                    rollback.callback(self.listings.set_available, contract.listing_id, False)
                    if contract.transaction_id is not None:
                        bound = self.rentals.get(contract.transaction_id)
                        self.rentals.on_contract_cancelled(contract_id, at)
                        rollback.callback(self.rentals.restore, bound, at)
                    self.settlement.on_cancelled(transition.settlement)
                    rollback.pop_all()
                    self._commit(transition)
            return self._view(contract_id)

    def mark_defaulted(self, contract_id: str, payment_number: Optional[int] = None) -> ContractView:
        """Move an active contract to defaulted (called by the scheduling collaborator)."""
        with self._logged(machine.ACTION_DEFAULT, contract_id, None):
            with self._contract_locks.hold(contract_id):
                self._default(self._get_contract(contract_id), payment_number)
            return self._view(contract_id)

    def update_listing_terms(self, listing_id: str, actor: str, **changes) -> Listing:
        """
        Owner edits a listing.

        Raises:
            NotAuthorizedError: The actor does not own the listing.
            ListingLockedError: An active contract references the listing.
            InvalidTermsError: An unknown or non-editable field was given.
        """
        with self._logged("update_listing_terms", None, actor):
            unknown = set(changes) - EDITABLE_LISTING_FIELDS
            if unknown:
                raise InvalidTermsError(f"Listing fields not editable: {sorted(unknown)}")
            with self._listing_locks.hold(listing_id):
                listing = self.listings.get_listing(listing_id)
                if actor != listing.owner_id:
                    raise NotAuthorizedError(f"Only the owner may edit listing {listing_id}")
                for contract in list(self._contracts.values()):
                    if contract.listing_id == listing_id and contract.status == CONTRACT_ACTIVE:
                        raise ListingLockedError(
                            f"Listing {listing_id} is locked by active contract {contract.contract_id}"
                        )
                for key in ("rto_purchase_price", "rto_rental_credit_percent", "price_per_day", "deposit_amount"):
                    if changes.get(key) is not None:
                        changes[key] = to_decimal(changes[key], key)
                return self.listings.update_terms(listing_id, **changes)

    def run_due_events(self, as_of: datetime) -> List[ContractView]:
        """
        Process grace-expiry events due at ``as_of``.

        Returns the views of the contracts that were marked defaulted.
        """
        if as_of.tzinfo is not None:
            as_of = as_of.astimezone(timezone.utc).replace(tzinfo=None)
        with self._scheduler_lock:
            return self.scheduler.step(as_of)

    # ========================================================================
    # INTERNAL
    # ========================================================================

    def _get_contract(self, contract_id: str) -> RTOContract:
        try:
            return self._contracts[contract_id]
        except KeyError:
            raise ContractNotFoundError(f"Contract {contract_id} not found") from None

    def _view(self, contract_id: str) -> ContractView:
        # Contract first: the ledger is written before the contract, so the
        # rows read here are at least as new as the contract status.
        contract = self._contracts[contract_id]
        if self.ledger.is_seeded(contract_id):
            payments, progress = self.ledger.snapshot(contract_id)
        else:
            payments, progress = (), Progress.empty(contract.terms)
        return ContractView(contract=contract, payments=payments, progress=progress)

    def _check_payment_bounds(self, listing: Listing, total_payments: int) -> None:
        if isinstance(total_payments, bool) or not isinstance(total_payments, int):
            raise InvalidTermsError(f"total_payments must be an integer, got {total_payments!r}")
        low = max(listing.rto_min_payments or self.config.min_payments, self.config.min_payments)
        high = min(listing.rto_max_payments or self.config.max_payments, self.config.max_payments)
        if not low <= total_payments <= high:
            raise OutOfRangeError(
                f"total_payments must be between {low} and {high} for listing "
                f"{listing.listing_id}, got {total_payments}"
            )

    def _capture(self, contract: RTOContract, payment: Payment) -> CaptureReceipt:
        request = CaptureRequest(
            contract_id=contract.contract_id,
            payment_number=payment.payment_number,
            payer_id=contract.borrower_id,
            payee_id=contract.lender_id,
            amount=payment.total_amount,
            currency=self.config.currency,
            idempotency_key=f"{contract.contract_id}:{payment.payment_number}",
        )
        future: Future = Future()

        def run() -> None:
            try:
                future.set_result(self.capture.capture(request))
            except Exception as exc:
                future.set_exception(exc)
            finally:
                with self._inflight_lock:
                    self._inflight.discard(threading.current_thread())

        worker = threading.Thread(
            target=run, name=f"rto-capture-{request.idempotency_key}", daemon=True,
        )
        with self._inflight_lock:
            self._inflight.add(worker)
        worker.start()
        try:
            receipt = future.result(timeout=self.config.capture_timeout_seconds)
        except FutureTimeoutError:
            raise CaptureTimeoutError(
                f"Capture of payment #{payment.payment_number} for contract {contract.contract_id} "
                f"did not confirm within {self.config.capture_timeout_seconds}s"
            ) from None
        except RTOError:
            raise
        except Exception as exc:
            raise PaymentCaptureError(
                f"Capture of payment #{payment.payment_number} for contract {contract.contract_id} failed: {exc}"
            ) from exc
        if not receipt.succeeded:
            raise PaymentCaptureError(
                f"Capture of payment #{payment.payment_number} for contract {contract.contract_id} "
                f"declined: {receipt.failure_reason or 'no reason given'}"
            )
        return receipt

    def _commit(self, transition: machine.Transition) -> None:
        self._contracts[transition.contract.contract_id] = transition.contract
        self._record(transition.change)

    def _record(self, change: StatusChange) -> None:
        with self._audit_lock:
            self.audit_log.append(change)
        if change.old_status != change.new_status:
            logger.info(
                "Contract %s: %s -> %s (%s)",
                change.entity_id, change.old_status or "-", change.new_status, change.action,
                extra={"contract_id": change.entity_id, "operation": change.action},
            )

    def _transfer_ownership(self, contract: RTOContract, rollback: ExitStack) -> None:
        """
        Hand the item to the borrower, registering the undo of each step on
        ``rollback``. The caller holds the listing lock.
        """
        self.listings.transfer_ownership(contract.listing_id, contract.borrower_id)
        rollback.callback(self.listings.transfer_ownership, contract.listing_id, contract.lender_id)
        self.listings.set_available(contract.listing_id, True)
        rollback.callback(self.listings.set_available, contract.listing_id, False)
        if contract.transaction_id is not None:
            self.rentals.on_contract_completed(contract.contract_id, contract.completed_at)

    def _default(self, contract: RTOContract, payment_number: Optional[int]) -> machine.Transition:
        transition = machine.mark_defaulted(contract, self._clock(), payment_number)
        if contract.transaction_id is not None:
            self.rentals.on_contract_defaulted(contract.contract_id, transition.change.at)
        self._commit(transition)
        return transition

    def _schedule_grace_events(self, contract_id: str) -> None:
        grace = self.config.grace_period_days
        if grace is None:
            return
        events = [
            grace_expiry_event(contract_id, p.payment_number, p.due_date, grace)
            for p in self.ledger.payments(contract_id)
        ]
        with self._scheduler_lock:
            self.scheduler.schedule_many(events)

    def _handle_grace_expiry(self, event: Event) -> Optional[ContractView]:
        payment_number = event.payment_number
        contract_id = event.contract_id
        with self._contract_locks.hold(contract_id):
            contract = self._contracts.get(contract_id)
            if contract is None or contract.status != CONTRACT_ACTIVE:
                return None
            if self.ledger.get_payment(contract_id, payment_number).is_paid:
                return None
            logger.warning(
                "Payment #%d of contract %s missed its grace period",
                payment_number, contract_id,
                extra={"contract_id": contract_id, "operation": machine.ACTION_DEFAULT},
            )
            self._default(contract, payment_number)
        return self._view(contract_id)

    @contextmanager
    def _logged(self, operation: str, contract_id: Optional[str], actor: Optional[str]) -> Iterator[None]:
        """Log failures of one service operation and re-raise them."""
        extra = {"contract_id": contract_id, "operation": operation, "actor": actor}
        try:
            yield
        except RTOError as exc:
            level = logging.WARNING if (exc.retryable or exc.refetch) else logging.INFO
            logger.log(
                level, "%s on contract %s refused: %s [%s]", operation, contract_id, exc, exc.code,
                extra={**extra, "error_code": exc.code},
            )
            raise
        except Exception:
            logger.exception("Unexpected error in %s on contract %s", operation, contract_id, extra=extra)
            raise
