"""
Funding Ledger
══════════════
Records investor purchases against an invoice's fixed token supply.

One confirmation = one atomic unit of work:

  1. dedupe on tx_hash (unique on investments)
  2. lock the invoice row, check FUNDING + auction window + supply
     (tokens_remaining, capped by what the supplier still holds)
  3. price the tokens at the current clearing price
  4. debit the supply, append Investment + SupplierPayout
  5. commit; the invoice's version column rejects lost updates

Invariant after every commit:
    tokens_sold + tokens_remaining == total_tokens, both >= 0
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from models import (
    Invoice, Investment, SupplierPayout, InvoiceStatus, User, ACQUIRED_PRIMARY, INVESTMENT_COMPLETED,
)
from services.activity import record_activity
from services.auction_pricing import AuctionParams, get_current_price
from services.clock import Clock
from services.errors import (
    AuctionEnded, ConcurrentUpdate, IdempotencyConflict, InsufficientTokens, InvoiceNotFundable,
    LedgerInvariantViolation, MissingTransactionReference,
)
from services.holdings import holding_of
from services.lookup import get_invoice
from services.money import Amount, AmountLike, require_positive
from services.settlement import record_payout

logger = logging.getLogger("factorly.ledger")


@dataclass(frozen=True)
class LedgerSnapshot:
    status: str
    total_tokens: Amount
    tokens_sold: Amount
    tokens_remaining: Amount
    amount_raised: Amount

    @classmethod
    def of(cls, invoice: Invoice) -> "LedgerSnapshot":
        return cls(
            status=invoice.status,
            total_tokens=invoice.total_tokens or Amount.zero(),
            tokens_sold=invoice.tokens_sold or Amount.zero(),
            tokens_remaining=invoice.tokens_remaining or Amount.zero(),
            amount_raised=invoice.amount_raised or Amount.zero(),
        )

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "total_tokens": str(self.total_tokens),
            "tokens_sold": str(self.tokens_sold),
            "tokens_remaining": str(self.tokens_remaining),
            "amount_raised": str(self.amount_raised),
        }


@dataclass
class FundingResult:
    investment: Investment
    payout: Optional[SupplierPayout]
    ledger: LedgerSnapshot
    replayed: bool = False


def check_conservation(invoice: Invoice) -> None:
    total = invoice.total_tokens or Amount.zero()
    sold = invoice.tokens_sold or Amount.zero()
    remaining = invoice.tokens_remaining or Amount.zero()
    if sold + remaining != total:
        raise LedgerInvariantViolation(
            "Token supply does not balance",
            invoice_id=invoice.id, total=total, sold=sold, remaining=remaining,
        )


def _replay(db: Session, existing: Investment, invoice_id: int, investor: User, token_amount: Amount) -> FundingResult:
    if existing.invoice_id != invoice_id or existing.investor_id != investor.id \
            or existing.token_amount != token_amount:
        raise IdempotencyConflict(
            "Transaction reference was already used for a different investment",
            tx_hash=existing.tx_hash, investment_id=existing.id,
        )
    payout = db.query(SupplierPayout).filter(SupplierPayout.investment_id == existing.id).first()
    logger.info(f"Replayed funding confirmation {existing.tx_hash} -> investment {existing.id}")
    return FundingResult(investment=existing, payout=payout, ledger=LedgerSnapshot.of(existing.invoice), replayed=True)


def fund_invoice(db: Session, invoice_ref, investor: User, token_amount: AmountLike,
                 tx_hash: Optional[str], clock: Clock) -> FundingResult:
    if not tx_hash or not tx_hash.strip():
        raise MissingTransactionReference("Funding requires the transaction hash that proves payment")
    tx_hash = tx_hash.strip()
    requested = require_positive(token_amount, "token_amount")

    invoice = get_invoice(db, invoice_ref, for_update=True)
    invoice_id = invoice.id

    existing = db.query(Investment).filter(Investment.tx_hash == tx_hash).first()
    if existing is not None:
        return _replay(db, existing, invoice_id, investor, requested)

    if invoice.status != InvoiceStatus.FUNDING:
        raise InvoiceNotFundable(
            "Invoice is not open for funding", current_status=invoice.status,
        )

    params = AuctionParams.from_invoice(invoice)
    now = clock.now()
    if params is None or now > params.auction_end:
        raise AuctionEnded(
            "Auction has ended", current_status=invoice.status,
            auction_end=params.auction_end.isoformat() if params else None,
        )

    # Supplier tokens already sold on the order book are gone from the auction too
    remaining = invoice.tokens_remaining
    available = min(remaining, holding_of(db, invoice, invoice.supplier_id))
    if requested > available:
        logger.warning(
            f"Rejected oversell on invoice {invoice.id}: requested {requested}, "
            f"available {available} (remaining {remaining})"
        )
        raise InsufficientTokens(
            "Requested more tokens than remain in the auction", available=available, requested=requested,
        )

    quote = get_current_price(params, now)
    payment = requested.mul_div(quote.price.value, invoice.total_tokens.value)

    invoice.tokens_sold = invoice.tokens_sold + requested
    invoice.tokens_remaining = remaining - requested
    check_conservation(invoice)
    if (available - requested).is_zero():
        invoice.status = InvoiceStatus.FUNDED
        invoice.funded_at = now

    investment = Investment(
        invoice_id=invoice.id,
        investor_id=investor.id,
        token_amount=requested,
        purchase_price=payment,
        acquired_via=ACQUIRED_PRIMARY,
        status=INVESTMENT_COMPLETED,
        tx_hash=tx_hash,
        invested_at=now,
    )
    db.add(investment)
    payout = record_payout(db, invoice, investment, payment, tx_hash=tx_hash)
    record_activity(
        db, "invoice", invoice.id, "invoice_funded" if invoice.status == InvoiceStatus.FUNDED else "tokens_purchased",
        f"{investor.name} bought {requested.display()} tokens for {payment.display()} at {quote.price.display()}",
        user_id=investor.id, token_amount=requested, payment=payment, price=quote.price, tx_hash=tx_hash,
    )

    try:
        db.commit()
    except IntegrityError:
        # Same tx_hash committed concurrently
        db.rollback()
        existing = db.query(Investment).filter(Investment.tx_hash == tx_hash).first()
        if existing is None:
            raise
        return _replay(db, existing, invoice_id, investor, requested)
    except StaleDataError:
        db.rollback()
        # The concurrent writer may have been this same confirmation
        existing = db.query(Investment).filter(Investment.tx_hash == tx_hash).first()
        if existing is not None:
            return _replay(db, existing, invoice_id, investor, requested)
        raise ConcurrentUpdate("Invoice supply changed during funding; refresh and retry", invoice_id=invoice_id)

    db.refresh(invoice)
    db.refresh(investment)
    logger.info(
        f"Investment {investment.id}: investor {investor.id} bought {requested} of invoice {invoice.id} "
        f"for {payment} (remaining {invoice.tokens_remaining})"
    )
    if invoice.status == InvoiceStatus.FUNDED:
        logger.info(f"Invoice {invoice.id} fully funded")
    return FundingResult(investment=investment, payout=payout, ledger=LedgerSnapshot.of(invoice))
