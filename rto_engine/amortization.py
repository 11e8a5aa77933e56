"""
amortization.py - Rent-to-Own Amortization Calculator

Pure, stateless functions that turn contract terms into money amounts and
due dates. No I/O, no clock, no shared state.

    equity_per_payment = purchase_price / total_payments     (truncated to the cent)
    payment_amount     = equity_per_payment / (rental_credit_percent / 100)
    rental_portion     = payment_amount - equity_per_payment

=== RECONCILIATION ===

The equity portions of a schedule always sum to the purchase price exactly:

    equity_1 .. equity_{n-1} = equity_per_payment
    equity_n                 = purchase_price - equity_per_payment * (n - 1)

Early payments stay uniform (they are the amounts shown to the borrower
before commitment). The rental portion is uniform too, so the final payment's
total grows by whatever residual the division left behind.

All arithmetic on amounts is done in integer minor units.
"""
from __future__ import annotations
from calendar import monthrange
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import List, Tuple

from .core import (
    CENT, HUNDRED, DECIMAL_ROUNDING,
    FREQUENCY_WEEKLY, FREQUENCY_BIWEEKLY, FREQUENCY_MONTHLY, PAYMENT_FREQUENCIES,
    InvalidTermsError, Listing,
    to_decimal, to_minor_units, from_minor_units,
)


# Days between payments for the fixed-interval frequencies.
FREQUENCY_DAYS = {
    FREQUENCY_WEEKLY: 7,
    FREQUENCY_BIWEEKLY: 14,
}


# =============================================================================
# DATACLASSES
# =============================================================================

@dataclass(frozen=True, slots=True)
class PaymentSplit:
    """A payment amount split into its equity and rental parts."""
    equity_portion: Decimal
    rental_portion: Decimal

    @property
    def total(self) -> Decimal:
        return self.equity_portion + self.rental_portion


@dataclass(frozen=True, slots=True)
class Installment:
    """One scheduled installment of an amortization."""
    payment_number: int
    due_date: date
    total_amount: Decimal
    equity_portion: Decimal
    rental_portion: Decimal
    platform_fee: Decimal
    lender_payout: Decimal


@dataclass(frozen=True, slots=True)
class Amortization:
    """Complete amortization of a contract's terms."""
    purchase_price: Decimal
    rental_credit_percent: Decimal
    total_payments: int
    payment_amount: Decimal
    equity_per_payment: Decimal
    installments: Tuple[Installment, ...]

    @property
    def total_equity(self) -> Decimal:
        return sum((i.equity_portion for i in self.installments), Decimal("0.00"))

    @property
    def total_rental(self) -> Decimal:
        return sum((i.rental_portion for i in self.installments), Decimal("0.00"))

    @property
    def total_cost(self) -> Decimal:
        return sum((i.total_amount for i in self.installments), Decimal("0.00"))


# =============================================================================
# VALIDATION
# =============================================================================

def _validate_terms(purchase_price, rental_credit_percent, total_payments) -> Tuple[int, Decimal, int]:
    """Normalize and validate amortization inputs. Returns (price_minor, percent, n)."""
    price = to_decimal(purchase_price, "purchase_price")
    percent = to_decimal(rental_credit_percent, "rental_credit_percent")
    if isinstance(total_payments, bool) or not isinstance(total_payments, int):
        raise InvalidTermsError(f"total_payments must be an integer, got {total_payments!r}")

    if price <= 0:
        raise InvalidTermsError(f"purchase_price must be positive, got {price}")
    if percent <= 0:
        raise InvalidTermsError(f"rental_credit_percent must be positive, got {percent}")
    if percent > HUNDRED:
        raise InvalidTermsError(f"rental_credit_percent cannot exceed 100, got {percent}")
    if total_payments <= 0:
        raise InvalidTermsError(f"total_payments must be positive, got {total_payments}")
    if price.quantize(CENT) != price:
        raise InvalidTermsError(f"purchase_price has sub-cent precision: {price}")

    price_minor = to_minor_units(price)
    if price_minor < total_payments:
        raise InvalidTermsError(
            f"purchase_price {price} is too small to spread over {total_payments} payments"
        )
    return price_minor, percent, total_payments


# =============================================================================
# PURE CALCULATIONS
# =============================================================================

def compute_equity_per_payment(purchase_price, total_payments: int) -> Decimal:
    """
    Uniform equity credited by each of the first n-1 payments.

    Truncated to the cent so the final payment's residual is never negative.
    """
    price_minor, _, n = _validate_terms(purchase_price, HUNDRED, total_payments)
    return from_minor_units(price_minor // n)


def compute_payment_amount(purchase_price, rental_credit_percent, total_payments: int) -> Decimal:
    """
    Per-payment total for a contract.

        equity_per_payment / (rental_credit_percent / 100)

    Rounded up to the cent, so the equity it carries never exceeds the
    stated percent and split_payment() of the result gives back exactly
    equity_per_payment.

    Raises:
        InvalidTermsError: If any input is non-positive or the percent exceeds 100.
    """
    price_minor, percent, n = _validate_terms(purchase_price, rental_credit_percent, total_payments)
    equity_minor = Decimal(price_minor // n)
    amount_minor = (equity_minor * HUNDRED / percent).quantize(
        Decimal(1), rounding=DECIMAL_ROUNDING['PAYMENT']
    )
    return from_minor_units(int(amount_minor))


def split_payment(payment_amount, rental_credit_percent) -> PaymentSplit:
    """
    Split a payment into equity and rental portions.

    equity = payment_amount * rental_credit_percent / 100, rounded half-even
    in minor units. If rounding pushed equity above the exact percentage the
    extra cent goes back to the rental portion, so equity never exceeds the
    stated share.
    """
    percent = to_decimal(rental_credit_percent, "rental_credit_percent")
    if percent <= 0 or percent > HUNDRED:
        raise InvalidTermsError(f"rental_credit_percent must be in (0, 100], got {percent}")
    amount_minor = to_minor_units(payment_amount)
    if amount_minor < 0:
        raise InvalidTermsError(f"payment_amount cannot be negative, got {payment_amount}")

    exact = Decimal(amount_minor) * percent / HUNDRED
    equity_minor = int(exact.quantize(Decimal(1), rounding=DECIMAL_ROUNDING['MONEY']))
    if equity_minor > exact:
        equity_minor -= 1
    return PaymentSplit(
        equity_portion=from_minor_units(equity_minor),
        rental_portion=from_minor_units(amount_minor - equity_minor),
    )


def compute_platform_fee(total_amount, fee_percent) -> Decimal:
    """Platform fee on one payment, rounded up to the cent."""
    percent = to_decimal(fee_percent, "platform_fee_percent")
    if percent < 0 or percent > HUNDRED:
        raise InvalidTermsError(f"platform_fee_percent must be in [0, 100], got {percent}")
    amount_minor = to_minor_units(total_amount)
    fee_minor = (Decimal(amount_minor) * percent / HUNDRED).quantize(
        Decimal(1), rounding=DECIMAL_ROUNDING['FEES']
    )
    return from_minor_units(int(fee_minor))


# =============================================================================
# SCHEDULE
# =============================================================================

def add_months(anchor: date, months: int) -> date:
    """
    Shift a date by whole calendar months, keeping the day of month.

    Clamps to the last day when the target month is shorter
    (Jan 31 + 1 month = Feb 28/29).
    """
    month_index = anchor.month - 1 + months
    year = anchor.year + month_index // 12
    month = month_index % 12 + 1
    day = min(anchor.day, monthrange(year, month)[1])
    return anchor.replace(year=year, month=month, day=day)


def build_schedule(first_payment_date: date, frequency: str, total_payments: int) -> List[date]:
    """
    Due dates for a contract.

    Weekly and biweekly advance by 7 and 14 days. Monthly dates are computed
    from the anchor each time (not from the previous clamped date), so a
    schedule anchored on the 31st returns to the 31st whenever it can.

    Raises:
        InvalidTermsError: If the frequency is unknown or total_payments < 1.
    """
    if frequency not in PAYMENT_FREQUENCIES:
        raise InvalidTermsError(
            f"Unknown payment frequency {frequency!r}; expected one of {sorted(PAYMENT_FREQUENCIES)}"
        )
    if isinstance(total_payments, bool) or not isinstance(total_payments, int) or total_payments < 1:
        raise InvalidTermsError(f"total_payments must be a positive integer, got {total_payments!r}")
    if isinstance(first_payment_date, datetime):
        first_payment_date = first_payment_date.date()
    if not isinstance(first_payment_date, date):
        raise InvalidTermsError(f"first_payment_date must be a date, got {first_payment_date!r}")

    if frequency == FREQUENCY_MONTHLY:
        return [add_months(first_payment_date, i) for i in range(total_payments)]
    step = timedelta(days=FREQUENCY_DAYS[frequency])
    return [first_payment_date + step * i for i in range(total_payments)]


# =============================================================================
# AMORTIZATION
# =============================================================================

def build_amortization(
    purchase_price,
    rental_credit_percent,
    total_payments: int,
    first_payment_date: date,
    frequency: str,
    platform_fee_percent=Decimal("0"),
) -> Amortization:
    """
    Full installment table for a set of terms.

    Payments 1..n-1 carry the uniform equity and rental portions; payment n
    carries the equity residual on top of the same rental portion.

    Example:
        am = build_amortization(Decimal("100.00"), Decimal("50"), 3,
                                date(2025, 1, 1), "monthly")
        [i.equity_portion for i in am.installments]
        # [Decimal('33.33'), Decimal('33.33'), Decimal('33.34')]
    """
    price_minor, percent, n = _validate_terms(purchase_price, rental_credit_percent, total_payments)
    due_dates = build_schedule(first_payment_date, frequency, n)

    payment_amount = compute_payment_amount(purchase_price, percent, n)
    equity_minor = price_minor // n
    amount_minor = to_minor_units(payment_amount)
    rental_minor = amount_minor - equity_minor
    final_equity_minor = price_minor - equity_minor * (n - 1)

    installments = []
    for number, due in enumerate(due_dates, start=1):
        equity = final_equity_minor if number == n else equity_minor
        total = equity + rental_minor
        total_amount = from_minor_units(total)
        fee = compute_platform_fee(total_amount, platform_fee_percent)
        installments.append(Installment(
            payment_number=number,
            due_date=due,
            total_amount=total_amount,
            equity_portion=from_minor_units(equity),
            rental_portion=from_minor_units(rental_minor),
            platform_fee=fee,
            lender_payout=total_amount - fee,
        ))

    return Amortization(
        purchase_price=from_minor_units(price_minor),
        rental_credit_percent=percent,
        total_payments=n,
        payment_amount=payment_amount,
        equity_per_payment=from_minor_units(equity_minor),
        installments=tuple(installments),
    )


def quote_terms(
    listing: Listing,
    total_payments: int,
    frequency: str,
    first_payment_date: date,
    default_rental_credit_percent=Decimal("50"),
    platform_fee_percent=Decimal("0"),
) -> Amortization:
    """
    Preview the amortization a borrower would commit to for a listing.

    Read-only; does not check the listing's payment bounds (the service does).
    """
    if not listing.rto_available or listing.rto_purchase_price is None:
        raise InvalidTermsError(f"Listing {listing.listing_id} does not offer rent-to-own")
    percent = listing.rto_rental_credit_percent or to_decimal(default_rental_credit_percent)
    return build_amortization(
        listing.rto_purchase_price, percent, total_payments,
        first_payment_date, frequency, platform_fee_percent,
    )
