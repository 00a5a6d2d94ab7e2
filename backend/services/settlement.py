"""
Settlement & Payout Calculator
══════════════════════════════
Money flows that happen after tokens change hands:

  Flow                     Formula
  ───────────────────────  ───────────────────────────────────────────────
  Investment payout        cut = gross * 200 / 10000, net = gross - cut
  Buyer settlement         oracle amount (authoritative), face on fallback
  Accrued estimate         face + face * rate * days / (10000 * 365)
                             rate = 1000 bps before due, 2400 bps after
  Holder distribution      payment split by holdings, remainder to supplier
  Insurance claim          basis of the tokens still held / 2, once per investor

All arithmetic is exact integer math on Amount.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from models import (
    Invoice, Investment, SupplierPayout, InsuranceClaim, InvoiceStatus, User, INVESTMENT_COMPLETED,
)
from services.activity import record_activity
from services.clock import Clock, as_utc
from services.errors import (
    ConcurrentUpdate, InsufficientPayment, InsuranceAlreadyClaimed, InvalidInvoiceStatus,
    NoHolding, NotInvoiceParty, SettlementOracleUnavailable,
)
from services.holdings import holding_of, token_holdings
from services.lookup import get_invoice
from services.money import Amount, BPS_DENOMINATOR, AmountLike
from services.settlement_oracle import SettlementOracle

logger = logging.getLogger("factorly.settlement")

INSURANCE_CUT_BPS = 200
BASE_INTEREST_RATE_BPS = 1000  # 10% APR before due date
PENALTY_RATE_BPS = 2400  # 24% APR after due date
GRACE_PERIOD_DAYS = 30
DAYS_PER_YEAR = 365

SETTLABLE_STATUSES = (
    InvoiceStatus.FUNDED, InvoiceStatus.VERIFIED, InvoiceStatus.FUNDING, InvoiceStatus.OVERDUE,
)
MATURING_STATUSES = SETTLABLE_STATUSES


# ═══════════════════════════════════════════════
#  PAYOUT SPLIT
# ═══════════════════════════════════════════════

@dataclass(frozen=True)
class PayoutSplit:
    gross: Amount
    insurance_cut: Amount
    net_amount: Amount

    def to_dict(self) -> dict:
        return {
            "gross_amount": str(self.gross),
            "insurance_cut": str(self.insurance_cut),
            "net_amount": str(self.net_amount),
        }


def compute_payout_split(gross: AmountLike) -> PayoutSplit:
    gross = Amount.parse(gross)
    cut = gross.apply_bps(INSURANCE_CUT_BPS)
    return PayoutSplit(gross=gross, insurance_cut=cut, net_amount=gross - cut)


def record_payout(db: Session, invoice: Invoice, investment: Investment, gross: Amount,
                  tx_hash: Optional[str] = None) -> SupplierPayout:
    """
    Adds the SupplierPayout for one investment and grows the invoice's
    amount_raised by the net. Runs inside the caller's unit of work; the
    caller commits.
    """
    split = compute_payout_split(gross)
    payout = SupplierPayout(
        invoice_id=invoice.id,
        supplier_id=invoice.supplier_id,
        investment=investment,
        gross_amount=split.gross,
        insurance_cut=split.insurance_cut,
        net_amount=split.net_amount,
        tx_hash=tx_hash,
    )
    db.add(payout)
    invoice.amount_raised = (invoice.amount_raised or Amount.zero()) + split.net_amount
    return payout


def supplier_payout_summary(db: Session, supplier: User) -> dict:
    """Payouts grouped per invoice with overall totals, newest first."""
    payouts = db.query(SupplierPayout).filter(
        SupplierPayout.supplier_id == supplier.id,
    ).order_by(SupplierPayout.created_at.desc(), SupplierPayout.id.desc()).all()

    groups: Dict[int, dict] = {}
    totals = {"net": Amount.zero(), "insurance": Amount.zero(), "gross": Amount.zero()}
    for p in payouts:
        group = groups.setdefault(p.invoice_id, {
            "invoice_id": p.invoice_id,
            "on_chain_id": p.invoice.on_chain_id if p.invoice else None,
            "payouts": [],
            "net": Amount.zero(),
            "insurance": Amount.zero(),
            "gross": Amount.zero(),
            "investors": set(),
        })
        group["payouts"].append({
            "id": p.id,
            "investment_id": p.investment_id,
            "gross_amount": str(p.gross_amount),
            "insurance_cut": str(p.insurance_cut),
            "net_amount": str(p.net_amount),
            "tx_hash": p.tx_hash,
            "created_at": p.created_at.isoformat() if p.created_at else None,
        })
        group["net"] += p.net_amount
        group["insurance"] += p.insurance_cut
        group["gross"] += p.gross_amount
        if p.investment is not None:
            group["investors"].add(p.investment.investor_id)
        totals["net"] += p.net_amount
        totals["insurance"] += p.insurance_cut
        totals["gross"] += p.gross_amount

    return {
        "invoices": [{
            "invoice_id": g["invoice_id"],
            "on_chain_id": g["on_chain_id"],
            "total_net": str(g["net"]),
            "total_insurance": str(g["insurance"]),
            "total_gross": str(g["gross"]),
            "investor_count": len(g["investors"]),
            "payouts": g["payouts"],
        } for g in groups.values()],
        "totals": {
            "net": str(totals["net"]),
            "insurance": str(totals["insurance"]),
            "gross": str(totals["gross"]),
            "payout_count": len(payouts),
        },
    }


# ═══════════════════════════════════════════════
#  MATURITY
# ═══════════════════════════════════════════════

def derive_maturity_status(status: str, due_date: datetime, repaid: bool, now: datetime) -> str:
    """OVERDUE after the due date, DEFAULTED after the grace period, if still unpaid."""
    if status not in MATURING_STATUSES or repaid:
        return status
    due_date, now = as_utc(due_date), as_utc(now)
    if now > due_date + timedelta(days=GRACE_PERIOD_DAYS):
        return InvoiceStatus.DEFAULTED
    if now > due_date:
        return InvoiceStatus.OVERDUE
    return status


def refresh_maturity_status(db: Session, invoice: Invoice, clock: Clock, commit: bool = True) -> str:
    """
    Applies any due-date transition. With ``commit=False`` the change is only
    flushed, so a caller that holds the row lock keeps it until its own commit.
    """
    repaid = invoice.repayment_received is not None and invoice.repayment_received.is_positive()
    new_status = derive_maturity_status(invoice.status, invoice.due_date, repaid, clock.now())
    if new_status != invoice.status:
        old_status = invoice.status
        invoice.status = new_status
        record_activity(
            db, "invoice", invoice.id, f"invoice_{new_status.lower()}",
            f"Invoice moved from {old_status} to {new_status} (due {as_utc(invoice.due_date).date()})",
        )
        try:
            if commit:
                db.commit()
            else:
                db.flush()
        except StaleDataError:
            db.rollback()
            raise ConcurrentUpdate("Invoice changed while its status was being refreshed", current_status=old_status)
        logger.info(f"Invoice {invoice.id} {old_status} -> {new_status}")
    return invoice.status


# ═══════════════════════════════════════════════
#  BUYER SETTLEMENT
# ═══════════════════════════════════════════════

def estimate_accrued_settlement(invoice: Invoice, now: datetime) -> Amount:
    """Display-only estimate of face plus accrued interest or penalty."""
    now = as_utc(now)
    created = as_utc(invoice.created_at) if invoice.created_at else now
    days = max(0, (now - created) // timedelta(days=1))
    rate = PENALTY_RATE_BPS if now > as_utc(invoice.due_date) else BASE_INTEREST_RATE_BPS
    face = invoice.amount
    return face + face.mul_div(rate * days, BPS_DENOMINATOR * DAYS_PER_YEAR)


@dataclass(frozen=True)
class SettlementQuote:
    amount: Amount
    source: str  # "oracle" or "face_value_fallback"
    degraded: bool
    accrued_estimate: Amount

    def to_dict(self) -> dict:
        return {
            "settlement_amount": str(self.amount),
            "source": self.source,
            "degraded": self.degraded,
            "accrued_estimate": str(self.accrued_estimate),
        }


def resolve_settlement_amount(invoice: Invoice, oracle: SettlementOracle, clock: Clock) -> SettlementQuote:
    ref = invoice.on_chain_id or str(invoice.id)
    estimate = estimate_accrued_settlement(invoice, clock.now())
    try:
        amount = oracle.get_settlement_amount(ref)
    except SettlementOracleUnavailable as e:
        logger.warning(f"Settlement oracle unavailable for invoice {invoice.id}, falling back to face value: {e.message}")
        return SettlementQuote(
            amount=invoice.amount, source="face_value_fallback", degraded=True, accrued_estimate=estimate,
        )
    return SettlementQuote(amount=amount, source="oracle", degraded=False, accrued_estimate=estimate)


@dataclass
class SettlementResult:
    invoice: Invoice
    quote: SettlementQuote
    payment: Amount
    distribution: List[dict] = field(default_factory=list)


def distribute_settlement(db: Session, invoice: Invoice, payment: Amount) -> List[dict]:
    """
    Split the settlement across token holders by position. The supplier is the
    last party and absorbs the rounding remainder, so shares sum to payment.
    """
    holdings = token_holdings(db, invoice)
    supplier_holding = holdings.pop(invoice.supplier_id, Amount.zero())
    holders = sorted(holdings.items())
    weights = [h.value for _, h in holders] + [supplier_holding.value]
    shares = payment.split(weights)
    parties = [uid for uid, _ in holders] + [invoice.supplier_id]
    tokens = [h for _, h in holders] + [supplier_holding]
    return [
        {"user_id": uid, "tokens": str(t), "share": str(s)}
        for uid, t, s in zip(parties, tokens, shares)
    ]


def settle_invoice(db: Session, invoice_ref, buyer: User, oracle: SettlementOracle, clock: Clock,
                   payment_amount: Optional[AmountLike] = None, tx_hash: Optional[str] = None) -> SettlementResult:
    invoice = get_invoice(db, invoice_ref, for_update=True)
    if invoice.buyer_id != buyer.id:
        raise NotInvoiceParty("Only the invoice's buyer can settle it", invoice_id=invoice.id)

    # Maturity is derived lazily; an overdue invoice is still settlable. Flush only, the lock
    # above is held until the settlement commits.
    refresh_maturity_status(db, invoice, clock, commit=False)
    if invoice.status not in SETTLABLE_STATUSES:
        raise InvalidInvoiceStatus(
            f"Invoice cannot be settled in status {invoice.status}", current_status=invoice.status,
        )

    quote = resolve_settlement_amount(invoice, oracle, clock)
    payment = quote.amount
    if payment_amount is not None:
        payment = Amount.parse(payment_amount)
        if payment < quote.amount:
            raise InsufficientPayment(
                "Payment is below the settlement amount",
                required=quote.amount, offered=payment, source=quote.source,
            )

    distribution = distribute_settlement(db, invoice, payment)
    now = clock.now()
    invoice.status = InvoiceStatus.SETTLED
    invoice.settled_at = now
    invoice.repayment_received = payment
    record_activity(
        db, "invoice", invoice.id, "invoice_settled",
        f"Invoice settled for {payment.display()} across {len(distribution)} holders",
        user_id=buyer.id, payment=payment, source=quote.source, degraded=quote.degraded, tx_hash=tx_hash,
    )
    try:
        db.commit()
    except StaleDataError:
        db.rollback()
        raise ConcurrentUpdate("Invoice changed during settlement", current_status=None, invoice_id=invoice.id)
    db.refresh(invoice)
    logger.info(f"Invoice {invoice.id} settled by buyer {buyer.id} for {payment} ({quote.source})")
    return SettlementResult(invoice=invoice, quote=quote, payment=payment, distribution=distribution)


# ═══════════════════════════════════════════════
#  INSURANCE
# ═══════════════════════════════════════════════

def insurance_claim_amount(acquired_price: AmountLike) -> Amount:
    return Amount.parse(acquired_price).mul_div(1, 2)


def claim_insurance(db: Session, invoice_ref, investor: User, clock: Clock) -> InsuranceClaim:
    invoice = get_invoice(db, invoice_ref)
    refresh_maturity_status(db, invoice, clock)
    if invoice.status != InvoiceStatus.DEFAULTED:
        raise InvalidInvoiceStatus(
            "Insurance can only be claimed on defaulted invoices", current_status=invoice.status,
        )

    existing = db.query(InsuranceClaim).filter(
        InsuranceClaim.invoice_id == invoice.id,
        InsuranceClaim.investor_id == investor.id,
    ).first()
    if existing is not None:
        raise InsuranceAlreadyClaimed(
            "Insurance already claimed for this invoice", current_status=existing.status, claim_id=existing.id,
        )

    investments = db.query(Investment).filter(
        Investment.invoice_id == invoice.id,
        Investment.investor_id == investor.id,
        Investment.status == INVESTMENT_COMPLETED,
    ).all()
    held = holding_of(db, invoice, investor.id)
    if not investments or held.is_zero():
        raise NoHolding("You hold no tokens of this invoice", available=Amount.zero())

    # Basis at average cost, for the tokens still held; sold tokens are the new holder's claim
    bought = Amount.sum(i.token_amount for i in investments)
    tokens = min(held, bought)
    basis = Amount.sum(i.purchase_price for i in investments).mul_div(tokens.value, bought.value)
    claim = InsuranceClaim(
        invoice_id=invoice.id,
        investor_id=investor.id,
        token_amount=tokens,
        acquired_price=basis,
        claim_amount=insurance_claim_amount(basis),
        status="PENDING",
    )
    db.add(claim)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        raise InsuranceAlreadyClaimed("Insurance already claimed for this invoice", current_status="PENDING")
    record_activity(
        db, "insurance_claim", claim.id, "insurance_claimed",
        f"Investor {investor.id} claimed {claim.claim_amount.display()} on defaulted invoice {invoice.id}",
        user_id=investor.id, invoice_id=invoice.id, claim_amount=claim.claim_amount,
    )
    db.commit()
    db.refresh(claim)
    logger.info(f"Insurance claim {claim.id}: investor {investor.id} invoice {invoice.id} amount {claim.claim_amount}")
    return claim
