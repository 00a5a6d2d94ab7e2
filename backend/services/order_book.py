"""
Secondary Market Order Book
═══════════════════════════
Holders list fractional positions as sell orders; buyers fill them in whole
or in part. There is no matching engine: buyers pick an order, and open
orders are shown best price first.

  OPEN ──fill──> PARTIALLY_FILLED ──fill──> FILLED
    │                  │
    └──── cancel ──────┴──> CANCELLED

Availability is never stored. It is re-derived from the ledger on every
request:

    available = holding - tokens still listed on the seller's live orders
"""
import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from models import (
    Invoice, Investment, SellOrder, OrderFill, InvoiceStatus, OrderStatus, User,
    ACQUIRED_SECONDARY, ACQUIRED_PRIMARY, INVESTMENT_COMPLETED,
)
from services.activity import record_activity
from services.clock import Clock
from services.errors import (
    ConcurrentUpdate, InsufficientTokens, InvalidInvoiceStatus, NotOrderOwner,
    OrderAlreadyTerminal, OrderNotFillable, SelfFill, ValidationError,
)
from services.holdings import holding_of, listed_amount, token_holdings, touch_positions
from services.lookup import get_invoice, get_order
from services.money import Amount, AmountLike, require_positive

logger = logging.getLogger("factorly.orders")

TRADABLE_STATUSES = (InvoiceStatus.VERIFIED, InvoiceStatus.FUNDING, InvoiceStatus.FUNDED)

STATUS_FILTERS = {
    "open": OrderStatus.LIVE,
    "filled": (OrderStatus.FILLED,),
    "cancelled": (OrderStatus.CANCELLED,),
}


def available_to_sell(db: Session, invoice: Invoice, seller_id: int) -> Amount:
    held = holding_of(db, invoice, seller_id)
    return held.saturating_sub(listed_amount(db, invoice.id, seller_id))


def _commit(db: Session, order_id: int, what: str):
    try:
        db.commit()
    except StaleDataError:
        db.rollback()
        raise ConcurrentUpdate(f"Order changed during {what}; refresh and retry", order_id=order_id)


# ═══════════════════════════════════════════════
#  CREATE
# ═══════════════════════════════════════════════

def create_sell_order(db: Session, invoice_ref, seller: User, token_amount: AmountLike,
                      price_per_token: AmountLike, clock: Clock, on_chain_order_id: Optional[str] = None,
                      tx_hash: Optional[str] = None) -> SellOrder:
    amount = require_positive(token_amount, "token_amount")
    price = require_positive(price_per_token, "price_per_token")

    # Row lock where the backend has one; the version bump below covers SQLite
    invoice = get_invoice(db, invoice_ref, for_update=True)
    invoice_id = invoice.id
    if invoice.status not in TRADABLE_STATUSES:
        raise InvalidInvoiceStatus(
            f"Orders can only be listed on {', '.join(TRADABLE_STATUSES)} invoices",
            current_status=invoice.status,
        )

    available = available_to_sell(db, invoice, seller.id)
    if amount > available:
        logger.warning(
            f"Rejected oversell listing by {seller.id} on invoice {invoice.id}: "
            f"requested {amount}, available {available}"
        )
        raise InsufficientTokens(
            "Not enough unlisted tokens to create this order", available=available, requested=amount,
        )

    now = clock.now()
    order = SellOrder(
        on_chain_order_id=on_chain_order_id,
        invoice_id=invoice.id,
        seller_id=seller.id,
        token_amount=amount,
        price_per_token=price,
        tokens_remaining=amount,
        status=OrderStatus.OPEN,
        tx_hash=tx_hash,
        created_at=now,
    )
    db.add(order)
    touch_positions(invoice, now)
    try:
        db.flush()
    except StaleDataError:
        db.rollback()
        raise ConcurrentUpdate("Invoice positions changed during listing; refresh and retry", invoice_id=invoice_id)
    record_activity(
        db, "order", order.id, "order_created",
        f"{seller.name} listed {amount.display()} tokens of invoice {invoice.id} at {price.display()}",
        user_id=seller.id, invoice_id=invoice.id, token_amount=amount, price_per_token=price,
    )
    _commit(db, order.id, "listing")
    db.refresh(order)
    logger.info(f"Order {order.id} opened by {seller.id}: {amount} @ {price} on invoice {invoice.id}")
    return order


# ═══════════════════════════════════════════════
#  FILL
# ═══════════════════════════════════════════════

@dataclass
class FillResult:
    order: SellOrder
    fill: OrderFill
    investment: Investment


def fill_order(db: Session, order_ref, buyer: User, fill_amount: AmountLike, clock: Clock,
               tx_hash: Optional[str] = None) -> FillResult:
    amount = require_positive(fill_amount, "fill_amount")
    order = get_order(db, order_ref, for_update=True)
    order_id = order.id

    if order.status not in OrderStatus.LIVE:
        raise OrderNotFillable(f"Order is {order.status}", current_status=order.status)
    if order.seller_id == buyer.id:
        raise SelfFill("Cannot fill your own order", order_id=order.id)
    if amount > order.tokens_remaining:
        raise OrderNotFillable(
            "Fill amount exceeds tokens remaining on the order",
            current_status=order.status, available=order.tokens_remaining, requested=amount,
        )

    # The seller's position may have moved since listing (e.g. supplier tokens sold in the auction)
    invoice = order.invoice
    seller_free = holding_of(db, invoice, order.seller_id).saturating_sub(
        listed_amount(db, invoice.id, order.seller_id, exclude_order_id=order.id)
    )
    if amount > seller_free:
        raise OrderNotFillable(
            "Seller no longer holds enough tokens to fill this order",
            current_status=order.status, available=seller_free, requested=amount,
        )

    now = clock.now()
    payment = Amount(amount.value * order.price_per_token.value)
    order.tokens_remaining = order.tokens_remaining - amount
    order.status = OrderStatus.FILLED if order.tokens_remaining.is_zero() else OrderStatus.PARTIALLY_FILLED

    fill = OrderFill(
        order_id=order.id,
        buyer_id=buyer.id,
        token_amount=amount,
        payment_amount=payment,
        tx_hash=tx_hash,
        filled_at=now,
    )
    investment = Investment(
        invoice_id=order.invoice_id,
        investor_id=buyer.id,
        token_amount=amount,
        purchase_price=payment,
        acquired_via=ACQUIRED_SECONDARY,
        status=INVESTMENT_COMPLETED,
        invested_at=now,
    )
    db.add(fill)
    db.add(investment)
    touch_positions(invoice, now)
    record_activity(
        db, "order", order.id, "order_filled" if order.status == OrderStatus.FILLED else "order_partially_filled",
        f"{buyer.name} bought {amount.display()} tokens for {payment.display()}",
        user_id=buyer.id, token_amount=amount, payment=payment, tx_hash=tx_hash,
    )
    _commit(db, order_id, "fill")
    db.refresh(order)
    db.refresh(fill)
    db.refresh(investment)
    logger.info(f"Order {order.id} filled {amount} by {buyer.id}; {order.tokens_remaining} left ({order.status})")
    return FillResult(order=order, fill=fill, investment=investment)


# ═══════════════════════════════════════════════
#  CANCEL
# ═══════════════════════════════════════════════

def cancel_order(db: Session, order_ref, requester: User, clock: Clock) -> SellOrder:
    order = get_order(db, order_ref, for_update=True)
    if order.seller_id != requester.id:
        raise NotOrderOwner("Only the seller can cancel this order", order_id=order.id)
    if order.status not in OrderStatus.LIVE:
        raise OrderAlreadyTerminal(f"Order is already {order.status}", current_status=order.status)

    order.status = OrderStatus.CANCELLED
    order.cancelled_at = clock.now()
    record_activity(
        db, "order", order.id, "order_cancelled",
        f"Order cancelled with {order.tokens_remaining.display()} tokens unfilled",
        user_id=requester.id, tokens_released=order.tokens_remaining,
    )
    _commit(db, order.id, "cancel")
    db.refresh(order)
    logger.info(f"Order {order.id} cancelled by {requester.id}; {order.tokens_remaining} tokens released")
    return order


# ═══════════════════════════════════════════════
#  QUERIES
# ═══════════════════════════════════════════════

def list_orders(db: Session, invoice_ref=None, status: Optional[str] = None, seller_id: Optional[int] = None,
                page: int = 1, limit: int = 20) -> dict:
    q = db.query(SellOrder)
    if invoice_ref is not None:
        q = q.filter(SellOrder.invoice_id == get_invoice(db, invoice_ref).id)
    if status:
        statuses = STATUS_FILTERS.get(status.lower())
        if statuses is None:
            raise ValidationError(f"Unknown status filter '{status}'", allowed=", ".join(STATUS_FILTERS))
        q = q.filter(SellOrder.status.in_(statuses))
    if seller_id is not None:
        q = q.filter(SellOrder.seller_id == seller_id)

    page = max(1, page)
    limit = min(max(1, limit), 100)
    total = q.count()
    orders = q.order_by(SellOrder.created_at.desc(), SellOrder.id.desc()) \
        .offset((page - 1) * limit).limit(limit).all()
    return {
        "orders": orders,
        "page": page,
        "limit": limit,
        "total": total,
        "pages": (total + limit - 1) // limit,
    }


def open_orders_for_invoice(db: Session, invoice_ref) -> List[SellOrder]:
    """Live orders on one invoice, cheapest first."""
    invoice = get_invoice(db, invoice_ref)
    orders = db.query(SellOrder).filter(
        SellOrder.invoice_id == invoice.id,
        SellOrder.status.in_(OrderStatus.LIVE),
    ).all()
    # Amounts are stored as strings, so order numerically here
    return sorted(orders, key=lambda o: (o.price_per_token, o.id))


def portfolio(db: Session, user: User) -> dict:
    """Caller's net position per invoice, with purchase basis and current value."""
    invoice_ids = {i for (i,) in db.query(Investment.invoice_id).filter(
        Investment.investor_id == user.id, Investment.status == INVESTMENT_COMPLETED,
    ).distinct().all()}
    invoice_ids |= {i for (i,) in db.query(SellOrder.invoice_id).filter(SellOrder.seller_id == user.id).distinct().all()}
    invoices = db.query(Invoice).filter(Invoice.id.in_(invoice_ids)).order_by(Invoice.id).all() if invoice_ids else []

    holdings = []
    total_tokens = Amount.zero()
    total_basis = Amount.zero()
    total_value = Amount.zero()
    for invoice in invoices:
        held = token_holdings(db, invoice).get(user.id, Amount.zero())
        investments = db.query(Investment).filter(
            Investment.invoice_id == invoice.id,
            Investment.investor_id == user.id,
            Investment.status == INVESTMENT_COMPLETED,
        ).all()
        basis = Amount.sum(i.purchase_price for i in investments)
        value = held.mul_div(1, 2) if invoice.status == InvoiceStatus.DEFAULTED else held
        listed = listed_amount(db, invoice.id, user.id)
        holdings.append({
            "invoice_id": invoice.id,
            "on_chain_id": invoice.on_chain_id,
            "invoice_status": invoice.status,
            "face_amount": str(invoice.amount),
            "due_date": invoice.due_date.isoformat() if invoice.due_date else None,
            "token_amount": str(held),
            "listed_amount": str(listed),
            "available_to_sell": str(held.saturating_sub(listed)),
            "purchase_basis": str(basis),
            "current_value": str(value),
            "primary_tokens": str(Amount.sum(i.token_amount for i in investments if i.acquired_via == ACQUIRED_PRIMARY)),
            "secondary_tokens": str(Amount.sum(i.token_amount for i in investments if i.acquired_via == ACQUIRED_SECONDARY)),
        })
        total_tokens += held
        total_basis += basis
        total_value += value

    return {
        "holdings": holdings,
        "totals": {
            "token_amount": str(total_tokens),
            "purchase_basis": str(total_basis),
            "current_value": str(total_value),
            "invoice_count": len(holdings),
        },
    }
