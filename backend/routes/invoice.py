from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import Optional

from database import get_db
from models import Invoice, User, Role
from routes.auth import get_current_user, require_role, get_clock
from schemas import (
    InvoiceCreate, StartAuctionRequest, FundRequest, SettleRequest,
    invoice_to_dict, investment_to_dict, payout_to_dict, order_to_dict,
)
from services.auction_pricing import AuctionParams, get_current_price
from services.clock import Clock
from services.funding_ledger import LedgerSnapshot, fund_invoice
from services.invoice_lifecycle import create_invoice, approve_invoice, start_auction
from services.lookup import get_invoice
from services.order_book import open_orders_for_invoice
from services.settlement import (
    refresh_maturity_status, resolve_settlement_amount, settle_invoice,
)
from services.settlement_oracle import SettlementOracle, get_settlement_oracle
from config import DEFAULT_PRICE_DROP_RATE_BPS

router = APIRouter(prefix="/api/invoices", tags=["invoices"])


def _quote(invoice: Invoice, clock: Clock) -> Optional[dict]:
    params = AuctionParams.from_invoice(invoice)
    if params is None:
        return None
    return get_current_price(params, clock.now()).to_dict()


@router.get("")
def list_invoices(status: Optional[str] = None, page: int = 1, limit: int = 20,
                  db: Session = Depends(get_db), current_user: User = Depends(get_current_user),
                  clock: Clock = Depends(get_clock)):
    """Marketplace browse; suppliers and buyers only see their own invoices."""
    q = db.query(Invoice)
    if current_user.role == Role.SUPPLIER:
        q = q.filter(Invoice.supplier_id == current_user.id)
    elif current_user.role == Role.BUYER:
        q = q.filter(Invoice.buyer_id == current_user.id)
    if status:
        q = q.filter(Invoice.status == status.upper())
    page, limit = max(1, page), min(max(1, limit), 100)
    total = q.count()
    invoices = q.order_by(Invoice.created_at.desc(), Invoice.id.desc()).offset((page - 1) * limit).limit(limit).all()
    return {
        "invoices": [{**invoice_to_dict(i), "price": _quote(i, clock)} for i in invoices],
        "page": page,
        "limit": limit,
        "total": total,
    }


@router.post("", status_code=201)
def create(data: InvoiceCreate, db: Session = Depends(get_db),
           current_user: User = Depends(require_role(Role.SUPPLIER)), clock: Clock = Depends(get_clock)):
    invoice = create_invoice(
        db, current_user, data.buyer_id, data.amount, data.due_date, clock,
        description=data.description, purchase_order=data.purchase_order,
        on_chain_id=data.on_chain_id, document_hash=data.document_hash,
    )
    return invoice_to_dict(invoice)


@router.get("/{invoice_ref}")
def get_detail(invoice_ref: str, db: Session = Depends(get_db),
               current_user: User = Depends(get_current_user), clock: Clock = Depends(get_clock)):
    invoice = get_invoice(db, invoice_ref)
    refresh_maturity_status(db, invoice, clock)
    return {
        **invoice_to_dict(invoice),
        "ledger": LedgerSnapshot.of(invoice).to_dict(),
        "price": _quote(invoice, clock),
        "open_orders": [order_to_dict(o) for o in open_orders_for_invoice(db, invoice.id)],
    }


@router.post("/{invoice_ref}/approve")
def approve(invoice_ref: str, db: Session = Depends(get_db),
            current_user: User = Depends(require_role(Role.BUYER)), clock: Clock = Depends(get_clock)):
    return invoice_to_dict(approve_invoice(db, invoice_ref, current_user, clock))


@router.post("/{invoice_ref}/auction")
def open_auction(invoice_ref: str, data: StartAuctionRequest, db: Session = Depends(get_db),
                 current_user: User = Depends(require_role(Role.SUPPLIER)), clock: Clock = Depends(get_clock)):
    rate = data.price_drop_rate_bps if data.price_drop_rate_bps is not None else DEFAULT_PRICE_DROP_RATE_BPS
    params = start_auction(db, invoice_ref, current_user, data.duration_hours, data.max_discount_bps, clock, rate)
    return {
        "auction_start": params.auction_start.isoformat(),
        "auction_end": params.auction_end.isoformat(),
        "start_price": str(params.start_price),
        "min_price": str(params.min_price),
        "price_drop_rate_bps": params.price_drop_rate_bps,
        "price": get_current_price(params, clock.now()).to_dict(),
    }


@router.get("/{invoice_ref}/price")
def price(invoice_ref: str, db: Session = Depends(get_db), clock: Clock = Depends(get_clock)):
    invoice = get_invoice(db, invoice_ref)
    quote = _quote(invoice, clock)
    if quote is None:
        raise HTTPException(status_code=404, detail="Auction has not started for this invoice")
    return quote


@router.post("/{invoice_ref}/fund", status_code=201)
def fund(invoice_ref: str, data: FundRequest, db: Session = Depends(get_db),
         current_user: User = Depends(require_role(Role.INVESTOR)), clock: Clock = Depends(get_clock)):
    if current_user.kyc_status != "APPROVED":
        raise HTTPException(status_code=403, detail="KYC approval is required before investing")
    result = fund_invoice(db, invoice_ref, current_user, data.token_amount, data.tx_hash, clock)
    return {
        "investment": investment_to_dict(result.investment),
        "payout": payout_to_dict(result.payout) if result.payout else None,
        "ledger": result.ledger.to_dict(),
        "replayed": result.replayed,
    }


@router.get("/{invoice_ref}/settle")
def settlement_amount(invoice_ref: str, db: Session = Depends(get_db),
                      current_user: User = Depends(get_current_user), clock: Clock = Depends(get_clock),
                      oracle: SettlementOracle = Depends(get_settlement_oracle)):
    invoice = get_invoice(db, invoice_ref)
    return {
        "invoice_id": invoice.id,
        "status": invoice.status,
        **resolve_settlement_amount(invoice, oracle, clock).to_dict(),
    }


@router.post("/{invoice_ref}/settle")
def settle(invoice_ref: str, data: Optional[SettleRequest] = None, db: Session = Depends(get_db),
           current_user: User = Depends(require_role(Role.BUYER)), clock: Clock = Depends(get_clock),
           oracle: SettlementOracle = Depends(get_settlement_oracle)):
    data = data or SettleRequest()
    result = settle_invoice(db, invoice_ref, current_user, oracle, clock, data.payment_amount, data.tx_hash)
    return {
        "invoice": invoice_to_dict(result.invoice),
        "payment_amount": str(result.payment),
        "settlement": result.quote.to_dict(),
        "distribution": result.distribution,
    }


@router.post("/{invoice_ref}/status")
def refresh_status(invoice_ref: str, db: Session = Depends(get_db),
                   current_user: User = Depends(get_current_user), clock: Clock = Depends(get_clock)):
    """Re-derive OVERDUE / DEFAULTED from the due date."""
    invoice = get_invoice(db, invoice_ref)
    previous = invoice.status
    status = refresh_maturity_status(db, invoice, clock)
    return {"invoice_id": invoice.id, "previous_status": previous, "status": status,
            "changed": previous != status}
