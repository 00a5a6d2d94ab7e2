"""
Typed errors for the auction / funding / order-book core.

Every error carries a machine-readable ``code``, a ``kind`` from the taxonomy
below and a ``context`` dict, so route handlers never parse messages:

    FactorlyError
    +-- ValidationError            (400)  malformed / out-of-range input
    |   +-- InvalidAmount
    |   +-- NegativeResult
    |   +-- InvalidAuctionParams
    |   +-- SelfFill
    |   +-- InsufficientPayment
    +-- StateConflictError         (409)  wrong status for the operation
    |   +-- InvoiceNotFundable
    |   +-- AuctionEnded
    |   +-- InvalidInvoiceStatus
    |   +-- OrderNotFillable
    |   +-- OrderAlreadyTerminal
    |   +-- InsuranceAlreadyClaimed
    |   +-- IdempotencyConflict
    |   +-- ConcurrentUpdate
    +-- InsufficientResourceError  (400)  quantity exceeds what is available
    |   +-- InsufficientTokens
    |   +-- NoHolding
    +-- ExternalDependencyError    (503)  oracle / proof source unavailable
    |   +-- SettlementOracleUnavailable
    |   +-- MissingTransactionReference
    +-- NotFoundError              (404)
    |   +-- InvoiceNotFound
    |   +-- OrderNotFound
    +-- ForbiddenError             (403)
        +-- NotOrderOwner
        +-- NotInvoiceParty
"""
from typing import Optional


class FactorlyError(Exception):
    kind = "internal"
    code = "FACTORLY_ERROR"
    http_status = 500

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "code": self.code,
            "kind": self.kind,
            "context": {k: _render(v) for k, v in self.context.items()},
        }


def _render(value):
    # ints and Amounts cross the boundary as decimal strings
    if value is None or isinstance(value, (bool, str)):
        return value
    return str(value)


class LedgerInvariantViolation(FactorlyError):
    code = "LEDGER_INVARIANT_VIOLATION"


# ── Validation ──

class ValidationError(FactorlyError):
    kind = "validation"
    code = "VALIDATION_ERROR"
    http_status = 400


class InvalidAmount(ValidationError):
    code = "INVALID_AMOUNT"


class NegativeResult(ValidationError):
    code = "NEGATIVE_RESULT"


class InvalidAuctionParams(ValidationError):
    code = "INVALID_AUCTION_PARAMS"


class SelfFill(ValidationError):
    code = "SELF_FILL"


class InsufficientPayment(ValidationError):
    code = "INSUFFICIENT_PAYMENT"


# ── State conflicts ──

class StateConflictError(FactorlyError):
    kind = "state_conflict"
    code = "STATE_CONFLICT"
    http_status = 409

    def __init__(self, message: str, current_status: Optional[str] = None, **context):
        super().__init__(message, current_status=current_status, **context)
        self.current_status = current_status


class InvoiceNotFundable(StateConflictError):
    code = "INVOICE_NOT_FUNDABLE"


class AuctionEnded(StateConflictError):
    code = "AUCTION_ENDED"


class InvalidInvoiceStatus(StateConflictError):
    code = "INVALID_INVOICE_STATUS"


class OrderNotFillable(StateConflictError):
    code = "ORDER_NOT_FILLABLE"


class OrderAlreadyTerminal(StateConflictError):
    code = "ORDER_ALREADY_TERMINAL"


class InsuranceAlreadyClaimed(StateConflictError):
    code = "INSURANCE_ALREADY_CLAIMED"


class IdempotencyConflict(StateConflictError):
    code = "IDEMPOTENCY_CONFLICT"


class ConcurrentUpdate(StateConflictError):
    code = "CONCURRENT_UPDATE"


# ── Insufficient resources ──

class InsufficientResourceError(FactorlyError):
    kind = "insufficient_resource"
    code = "INSUFFICIENT_RESOURCE"
    http_status = 400

    def __init__(self, message: str, available=None, requested=None, **context):
        super().__init__(message, available=available, requested=requested, **context)
        self.available = available
        self.requested = requested


class InsufficientTokens(InsufficientResourceError):
    code = "INSUFFICIENT_TOKENS"


class NoHolding(InsufficientResourceError):
    code = "NO_HOLDING"


# ── External dependencies ──

class ExternalDependencyError(FactorlyError):
    kind = "external_dependency"
    code = "EXTERNAL_DEPENDENCY_ERROR"
    http_status = 503


class SettlementOracleUnavailable(ExternalDependencyError):
    code = "SETTLEMENT_ORACLE_UNAVAILABLE"


class MissingTransactionReference(ExternalDependencyError):
    code = "MISSING_TRANSACTION_REFERENCE"
    http_status = 400


# ── Lookup / authorization ──

class NotFoundError(FactorlyError):
    kind = "not_found"
    code = "NOT_FOUND"
    http_status = 404


class InvoiceNotFound(NotFoundError):
    code = "INVOICE_NOT_FOUND"


class OrderNotFound(NotFoundError):
    code = "ORDER_NOT_FOUND"


class ForbiddenError(FactorlyError):
    kind = "forbidden"
    code = "FORBIDDEN"
    http_status = 403


class NotOrderOwner(ForbiddenError):
    code = "NOT_ORDER_OWNER"


class NotInvoiceParty(ForbiddenError):
    code = "NOT_INVOICE_PARTY"
