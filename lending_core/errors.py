"""
Error Taxonomy Module

Every error raised by the engine carries a stable machine-readable ``code``
distinct from its human message, plus an HTTP-style ``status_code`` hint for
collaborators that expose the engine over a transport.
"""

from typing import Any, Dict, Optional


class LendingError(Exception):
    """Base class for all engine errors"""

    code = "LENDING_ERROR"
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class InvalidLoanTerms(LendingError):
    """Loan terms rejected at origination; the loan is never created"""
    code = "INVALID_LOAN_TERMS"


class LoanNotFound(LendingError):
    code = "LOAN_NOT_FOUND"
    status_code = 404

    def __init__(self, loan_id: str):
        super().__init__(f"Loan {loan_id} not found", {"loan_id": loan_id})


class LoanAlreadyCanceled(LendingError):
    code = "LOAN_ALREADY_CANCELED"
    status_code = 409

    def __init__(self, loan_id: str):
        super().__init__(f"Loan {loan_id} is already canceled", {"loan_id": loan_id})


class PaymentNotAllowed(LendingError):
    """Loan is PAID or CANCELED, or has nothing left to pay"""
    code = "PAYMENT_NOT_ALLOWED"

    def __init__(self, loan_id: str, status: str, reason: Optional[str] = None):
        message = f"Cannot register payment on loan {loan_id} with status {status}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, {"loan_id": loan_id, "status": status})


class InvalidPaymentAmount(LendingError):
    code = "INVALID_PAYMENT_AMOUNT"


class PaymentNotFound(LendingError):
    code = "PAYMENT_NOT_FOUND"
    status_code = 404

    def __init__(self, payment_id: str):
        super().__init__(f"Payment {payment_id} not found", {"payment_id": payment_id})


class CannotReversePayment(LendingError):
    code = "CANNOT_REVERSE_PAYMENT"

    def __init__(self, payment_id: str, reason: str):
        super().__init__(
            f"Cannot reverse payment {payment_id}: {reason}",
            {"payment_id": payment_id, "reason": reason},
        )
