"""
Invoice lifecycle up to the auction: DRAFT -> VERIFIED -> FUNDING.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from config import DEFAULT_PRICE_DROP_RATE_BPS
from models import Invoice, InvoiceStatus, User, Role
from services.activity import record_activity
from services.auction_pricing import AuctionParams, build_auction_params
from services.clock import Clock, as_utc
from services.errors import (
    ConcurrentUpdate, InvalidInvoiceStatus, NotInvoiceParty, ValidationError, StateConflictError,
)
from services.lookup import get_invoice
from services.money import Amount, require_positive

logger = logging.getLogger("factorly.invoices")


def _commit(db: Session, invoice: Invoice, action: str):
    try:
        db.commit()
    except StaleDataError:
        db.rollback()
        raise ConcurrentUpdate(f"Invoice changed during {action}", invoice_id=invoice.id)
    db.refresh(invoice)


def create_invoice(db: Session, supplier: User, buyer_id: int, amount, due_date: datetime, clock: Clock,
                   description: Optional[str] = None, purchase_order: Optional[str] = None,
                   on_chain_id: Optional[str] = None, document_hash: Optional[str] = None) -> Invoice:
    face = require_positive(amount, "amount")
    now = clock.now()
    if as_utc(due_date) <= now:
        raise ValidationError("Due date must be in the future", due_date=as_utc(due_date).isoformat())

    buyer = db.query(User).filter(User.id == buyer_id).first()
    if buyer is None or buyer.role != Role.BUYER:
        raise ValidationError("Buyer not found", buyer_id=buyer_id)
    if buyer.id == supplier.id:
        raise ValidationError("Supplier and buyer must differ")

    invoice = Invoice(
        on_chain_id=on_chain_id,
        supplier_id=supplier.id,
        buyer_id=buyer.id,
        amount=face,
        description=description,
        purchase_order=purchase_order,
        document_hash=document_hash,
        due_date=as_utc(due_date),
        status=InvoiceStatus.DRAFT,
        amount_raised=Amount.zero(),
        created_at=now,
    )
    db.add(invoice)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        raise StateConflictError("An invoice with this on-chain id already exists", on_chain_id=on_chain_id)
    record_activity(
        db, "invoice", invoice.id, "invoice_created",
        f"Invoice for {face.display()} created by {supplier.name}", user_id=supplier.id,
    )
    db.commit()
    db.refresh(invoice)
    logger.info(f"Invoice {invoice.id} created by supplier {supplier.id} for {face}")
    return invoice


def approve_invoice(db: Session, invoice_ref, buyer: User, clock: Clock) -> Invoice:
    invoice = get_invoice(db, invoice_ref, for_update=True)
    if invoice.buyer_id != buyer.id:
        raise NotInvoiceParty("Only the invoice's buyer can approve it", invoice_id=invoice.id)
    if invoice.status != InvoiceStatus.DRAFT:
        raise InvalidInvoiceStatus(
            "Only DRAFT invoices can be approved", current_status=invoice.status,
        )
    invoice.status = InvoiceStatus.VERIFIED
    invoice.verified_at = clock.now()
    record_activity(db, "invoice", invoice.id, "invoice_verified", f"Buyer {buyer.name} approved invoice", user_id=buyer.id)
    _commit(db, invoice, "approval")
    logger.info(f"Invoice {invoice.id} verified by buyer {buyer.id}")
    return invoice


def start_auction(db: Session, invoice_ref, supplier: User, duration_hours: int, max_discount_bps: int,
                  clock: Clock, price_drop_rate_bps: int = DEFAULT_PRICE_DROP_RATE_BPS) -> AuctionParams:
    """
    Opens the Dutch auction on a VERIFIED invoice and mints the token supply
    1:1 with face value. Returns the stored auction parameters.
    """
    invoice = get_invoice(db, invoice_ref, for_update=True)
    if invoice.supplier_id != supplier.id:
        raise NotInvoiceParty("Only the invoice's supplier can start its auction", invoice_id=invoice.id)
    if invoice.status != InvoiceStatus.VERIFIED:
        raise InvalidInvoiceStatus(
            "Auction can only start on a VERIFIED invoice", current_status=invoice.status,
        )

    params = build_auction_params(
        invoice.amount, duration_hours, max_discount_bps, clock.now(), price_drop_rate_bps,
    )
    invoice.auction_start = params.auction_start
    invoice.auction_end = params.auction_end
    invoice.start_price = params.start_price
    invoice.min_price = params.min_price
    invoice.price_drop_rate_bps = params.price_drop_rate_bps
    invoice.total_tokens = invoice.amount
    invoice.tokens_sold = Amount.zero()
    invoice.tokens_remaining = invoice.amount
    invoice.status = InvoiceStatus.FUNDING

    record_activity(
        db, "invoice", invoice.id, "auction_started",
        f"Dutch auction started for {duration_hours}h, floor {params.min_price.display()}",
        user_id=supplier.id, start_price=params.start_price, min_price=params.min_price,
        price_drop_rate_bps=params.price_drop_rate_bps, auction_end=params.auction_end.isoformat(),
    )
    _commit(db, invoice, "auction start")
    logger.info(
        f"Auction started on invoice {invoice.id}: {params.start_price} -> {params.min_price}, "
        f"{params.price_drop_rate_bps} bps/h until {params.auction_end.isoformat()}"
    )
    return params
