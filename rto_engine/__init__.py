"""
rto_engine - Rent-to-Own Contract Engine

Installment contracts where each payment builds ownership equity in a
borrowed item, transferring ownership once every payment is completed.

Usage:
    from datetime import date
    from decimal import Decimal
    from rto_engine import ContractService, InMemoryListingDirectory, Listing

    listings = InMemoryListingDirectory([
        Listing("drill-1", owner_id="alice", rto_available=True,
                rto_purchase_price=Decimal("1200.00"), rto_rental_credit_percent=Decimal("50")),
    ])
    service = ContractService(listings, capture=my_processor)

    view = service.create("drill-1", "bob", total_payments=12, first_payment_date=date(2025, 2, 1))
    service.approve(view.contract_id, "alice")
    view = service.pay(view.contract_id, "bob")
    view.progress.equity_accumulated   # Decimal('100.00')
"""

# Core types
from .core import (
    Listing,
    ContractTerms,
    RTOContract,
    Payment,
    Progress,
    StatusChange,
    CancellationSettlement,
    ContractView,
    to_decimal,
    to_minor_units,
    from_minor_units,
    quantize_money,
    FREQUENCY_WEEKLY,
    FREQUENCY_BIWEEKLY,
    FREQUENCY_MONTHLY,
    CONTRACT_PENDING,
    CONTRACT_ACTIVE,
    CONTRACT_COMPLETED,
    CONTRACT_DEFAULTED,
    CONTRACT_CANCELLED,
    PAYMENT_PENDING,
    PAYMENT_COMPLETED,
    TXN_PENDING,
    TXN_APPROVED,
    TXN_PAID,
    TXN_PICKED_UP,
    TXN_RETURN_PENDING,
    TXN_RETURNED,
    TXN_COMPLETED,
    TXN_CANCELLED,
    TXN_DISPUTED,
    ROLE_BORROWER,
    ROLE_LENDER,
)

# Errors
from .core import (
    RTOError,
    InvalidTermsError,
    OutOfRangeError,
    NotAuthorizedError,
    InvalidStateError,
    ListingLockedError,
    AlreadySeededError,
    PaymentNotFoundError,
    AlreadyPaidError,
    OutOfOrderError,
    CaptureTimeoutError,
    PaymentCaptureError,
    ContractNotFoundError,
    ListingNotFoundError,
    TransactionNotFoundError,
    ConfigurationError,
)

# Amortization
from .amortization import (
    PaymentSplit,
    Installment,
    Amortization,
    compute_equity_per_payment,
    compute_payment_amount,
    split_payment,
    compute_platform_fee,
    add_months,
    build_schedule,
    build_amortization,
    quote_terms,
)

# Ledger and state machines
from .payment_ledger import PaymentLedger, LedgerEntry
from .contract import Transition, build_terms, new_contract
from .rental import (
    RentalTransaction,
    RentalQuote,
    RentalRegistry,
    CONDITION_SCALE,
    compute_rental_quote,
    condition_worsened,
)

# Scheduling
from .scheduled_events import Event, EventScheduler, grace_expiry_event, grace_expiry_time

# Collaborators
from .collaborators import (
    CaptureRequest,
    CaptureReceipt,
    PaymentCapture,
    ListingDirectory,
    SettlementPolicy,
    InMemoryListingDirectory,
    RecordingSettlementPolicy,
)

# Service and facade
from .service import ContractService
from .api import RTOApi, error_payload

# Ambient
from .config import EngineConfig
from .logging import setup_logging, get_logger, JsonFormatter

__all__ = [
    # Core
    'Listing', 'ContractTerms', 'RTOContract', 'Payment', 'Progress', 'StatusChange',
    'CancellationSettlement', 'ContractView',
    'to_decimal', 'to_minor_units', 'from_minor_units', 'quantize_money',
    'FREQUENCY_WEEKLY', 'FREQUENCY_BIWEEKLY', 'FREQUENCY_MONTHLY',
    'CONTRACT_PENDING', 'CONTRACT_ACTIVE', 'CONTRACT_COMPLETED', 'CONTRACT_DEFAULTED', 'CONTRACT_CANCELLED',
    'PAYMENT_PENDING', 'PAYMENT_COMPLETED',
    'TXN_PENDING', 'TXN_APPROVED', 'TXN_PAID', 'TXN_PICKED_UP', 'TXN_RETURN_PENDING',
    'TXN_RETURNED', 'TXN_COMPLETED', 'TXN_CANCELLED', 'TXN_DISPUTED',
    'ROLE_BORROWER', 'ROLE_LENDER',
    # Errors
    'RTOError', 'InvalidTermsError', 'OutOfRangeError', 'NotAuthorizedError', 'InvalidStateError',
    'ListingLockedError', 'AlreadySeededError', 'PaymentNotFoundError', 'AlreadyPaidError',
    'OutOfOrderError', 'CaptureTimeoutError', 'PaymentCaptureError', 'ContractNotFoundError',
    'ListingNotFoundError', 'TransactionNotFoundError', 'ConfigurationError',
    # Amortization
    'PaymentSplit', 'Installment', 'Amortization',
    'compute_equity_per_payment', 'compute_payment_amount', 'split_payment', 'compute_platform_fee',
    'add_months', 'build_schedule', 'build_amortization', 'quote_terms',
    # Ledger and state machines
    'PaymentLedger', 'LedgerEntry', 'Transition', 'build_terms', 'new_contract',
    'RentalTransaction', 'RentalQuote', 'RentalRegistry', 'CONDITION_SCALE',
    'compute_rental_quote', 'condition_worsened',
    # Scheduling
    'Event', 'EventScheduler', 'grace_expiry_event', 'grace_expiry_time',
    # Collaborators
    'CaptureRequest', 'CaptureReceipt', 'PaymentCapture', 'ListingDirectory', 'SettlementPolicy',
    'InMemoryListingDirectory', 'RecordingSettlementPolicy',
    # Service
    'ContractService', 'RTOApi', 'error_payload',
    # Ambient
    'EngineConfig', 'setup_logging', 'get_logger', 'JsonFormatter',
]
