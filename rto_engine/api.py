"""
api.py - JSON facade over the ContractService

Each handler takes the authenticated user id and a decoded request body and
returns ``(http_status, body)`` where body is a JSON-ready dict: camelCase
keys, money as decimal strings, dates as ISO strings.

Domain errors become ``{error, code, retryable, refetch}`` payloads so the
client knows whether to show the message, retry the call, or reload the
contract. Unexpected exceptions propagate to the web layer.
"""

from __future__ import annotations
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Tuple

from .core import ContractView, Payment, RTOError, InvalidTermsError, FREQUENCY_MONTHLY
from .service import ContractService

Response = Tuple[int, Dict[str, Any]]

HTTP_STATUS = {
    "invalid_terms": 400,
    "out_of_range": 400,
    "capture_failed": 402,
    "not_authorized": 403,
    "contract_not_found": 404,
    "listing_not_found": 404,
    "transaction_not_found": 404,
    "payment_not_found": 404,
    "invalid_state": 409,
    "listing_locked": 409,
    "already_seeded": 409,
    "already_paid": 409,
    "out_of_order": 409,
    "capture_timeout": 504,
}


# ============================================================================
# SERIALIZATION
# ============================================================================

def _money(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


def _iso(value) -> Optional[str]:
    return None if value is None else value.isoformat()


def payment_to_dict(payment: Payment) -> Dict[str, Any]:
    return {
        "paymentNumber": payment.payment_number,
        "totalAmount": _money(payment.total_amount),
        "equityPortion": _money(payment.equity_portion),
        "rentalPortion": _money(payment.rental_portion),
        "platformFee": _money(payment.platform_fee),
        "lenderPayout": _money(payment.lender_payout),
        "dueDate": _iso(payment.due_date),
        "paidAt": _iso(payment.paid_at),
        "status": payment.status,
    }


def contract_to_dict(view: ContractView, user_id: str) -> Dict[str, Any]:
    """Full contract detail as returned by get_rto_contract."""
    contract, progress, terms = view.contract, view.progress, view.contract.terms
    return {
        "id": contract.contract_id,
        "status": contract.status,
        "listingId": contract.listing_id,
        "borrowerId": contract.borrower_id,
        "lenderId": contract.lender_id,
        "transactionId": contract.transaction_id,
        "purchasePrice": _money(terms.purchase_price),
        "totalPayments": terms.total_payments,
        "paymentAmount": _money(terms.payment_amount),
        "rentalCreditPercent": str(terms.rental_credit_percent),
        "paymentFrequency": terms.payment_frequency,
        "firstPaymentDate": _iso(terms.first_payment_date),
        "nextPaymentDate": _iso(progress.next_payment_date),
        "paymentsCompleted": progress.payments_completed,
        "paymentsRemaining": progress.payments_remaining,
        "equityAccumulated": _money(progress.equity_accumulated),
        "rentalPaid": _money(progress.rental_paid),
        "remainingEquity": _money(progress.remaining_equity),
        "progressPercent": str(progress.progress_percent.quantize(Decimal("0.01"))),
        "payments": [payment_to_dict(p) for p in view.payments],
        "cancellationReason": contract.cancellation_reason,
        "createdAt": _iso(contract.created_at),
        "approvedAt": _iso(contract.approved_at),
        "completedAt": _iso(contract.completed_at),
        "cancelledAt": _iso(contract.cancelled_at),
        "defaultedAt": _iso(contract.defaulted_at),
        "isBorrower": contract.borrower_id == user_id,
        "isLender": contract.lender_id == user_id,
    }


def contract_summary(view: ContractView, user_id: str) -> Dict[str, Any]:
    """Row of the contract list."""
    contract, progress = view.contract, view.progress
    return {
        "id": contract.contract_id,
        "status": contract.status,
        "listingId": contract.listing_id,
        "purchasePrice": _money(contract.terms.purchase_price),
        "totalPayments": contract.terms.total_payments,
        "paymentsCompleted": progress.payments_completed,
        "paymentAmount": _money(contract.terms.payment_amount),
        "equityAccumulated": _money(progress.equity_accumulated),
        "nextPaymentDate": _iso(progress.next_payment_date),
        "isBorrower": contract.borrower_id == user_id,
        "createdAt": _iso(contract.created_at),
    }


def error_payload(exc: RTOError) -> Dict[str, Any]:
    return {
        "error": str(exc),
        "code": exc.code,
        "retryable": exc.retryable,
        "refetch": exc.refetch,
    }


def _parse_date(value: Any, field: str) -> date:
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    if not isinstance(value, str):
        raise InvalidTermsError(f"{field} must be an ISO 8601 date")
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        raise InvalidTermsError(f"{field} is not an ISO 8601 date: {value!r}") from None


def _require_field(body: Dict[str, Any], field: str) -> Any:
    if body.get(field) is None:
        raise InvalidTermsError(f"{field} is required")
    return body[field]


# ============================================================================
# HANDLERS
# ============================================================================

class RTOApi:
    """
    Request handlers for the rent-to-own routes.

    Example:
        api = RTOApi(service)
        status, body = api.create_rto_contract("bob", {
            "listingId": "listing-1", "totalPayments": 12,
            "firstPaymentDate": "2025-02-01",
        })
    """

    def __init__(self, service: ContractService):
        self.service = service

    def _handle(self, call: Callable[[], Dict[str, Any]], ok_status: int = 200) -> Response:
        try:
            return ok_status, call()
        except RTOError as exc:
            return HTTP_STATUS.get(exc.code, 500), error_payload(exc)

    def list_rto_contracts(self, user_id: str, role: Optional[str] = None, status: Optional[str] = None) -> Response:
        return self._handle(lambda: {
            "contracts": [
                contract_summary(v, user_id)
                for v in self.service.list_contracts(user_id, role=role, status=status)
            ],
        })

    def get_rto_contract(self, user_id: str, contract_id: str) -> Response:
        return self._handle(lambda: contract_to_dict(self.service.get(contract_id, user_id), user_id))

    def create_rto_contract(self, user_id: str, body: Dict[str, Any]) -> Response:
        def call():
            total_payments = _require_field(body, "totalPayments")
            view = self.service.create(
                listing_id=_require_field(body, "listingId"),
                borrower_id=user_id,
                total_payments=total_payments,
                first_payment_date=_parse_date(_require_field(body, "firstPaymentDate"), "firstPaymentDate"),
                payment_frequency=body.get("paymentFrequency") or FREQUENCY_MONTHLY,
            )
            return {
                "id": view.contract_id,
                "paymentAmount": _money(view.contract.terms.payment_amount),
                "status": view.status,
            }
        return self._handle(call, ok_status=201)

    def approve_rto_contract(self, user_id: str, contract_id: str) -> Response:
        return self._handle(lambda: contract_to_dict(self.service.approve(contract_id, user_id), user_id))

    def decline_rto_contract(self, user_id: str, contract_id: str, body: Optional[Dict[str, Any]] = None) -> Response:
        reason = (body or {}).get("reason")
        return self._handle(lambda: contract_to_dict(self.service.decline(contract_id, user_id, reason), user_id))

    def make_rto_payment(self, user_id: str, contract_id: str) -> Response:
        return self._handle(lambda: contract_to_dict(self.service.pay(contract_id, user_id), user_id))

    def cancel_rto_contract(self, user_id: str, contract_id: str, body: Optional[Dict[str, Any]] = None) -> Response:
        reason = (body or {}).get("reason")
        return self._handle(lambda: contract_to_dict(self.service.cancel(contract_id, user_id, reason), user_id))
