"""
Token holdings derived from the ledger.

Nothing stores a per-holder balance. A holder's position on an invoice is
recomputed from the append-only facts every time it is needed:

    supplier's unsold allocation      (invoice.tokens_remaining, or face before auction)
  + COMPLETED investments             (primary buys and secondary fills bought)
  - order fills sold                  (secondary fills on the holder's own orders)
"""
from collections import defaultdict
from typing import Dict

from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified

from models import Investment, SellOrder, OrderFill, OrderStatus, INVESTMENT_COMPLETED
from services.money import Amount


def supplier_allocation(invoice) -> Amount:
    """Tokens the supplier still holds from the original mint."""
    if invoice.tokens_remaining is not None:
        return invoice.tokens_remaining
    return invoice.amount


def token_holdings(db: Session, invoice) -> Dict[int, Amount]:
    """Net token position per user id on one invoice. Zero positions are dropped."""
    positions = defaultdict(int)
    positions[invoice.supplier_id] += supplier_allocation(invoice).value

    investments = db.query(Investment).filter(
        Investment.invoice_id == invoice.id,
        Investment.status == INVESTMENT_COMPLETED,
    ).all()
    for inv in investments:
        positions[inv.investor_id] += inv.token_amount.value

    sold = db.query(OrderFill.token_amount, SellOrder.seller_id).join(
        SellOrder, OrderFill.order_id == SellOrder.id,
    ).filter(SellOrder.invoice_id == invoice.id).all()
    for token_amount, seller_id in sold:
        positions[seller_id] -= token_amount.value

    # A negative position means the ledger is already broken; surface it as zero
    return {uid: Amount(max(0, v)) for uid, v in positions.items() if v > 0}


def holding_of(db: Session, invoice, user_id: int) -> Amount:
    total = supplier_allocation(invoice).value if user_id == invoice.supplier_id else 0

    for (token_amount,) in db.query(Investment.token_amount).filter(
        Investment.invoice_id == invoice.id,
        Investment.investor_id == user_id,
        Investment.status == INVESTMENT_COMPLETED,
    ).all():
        total += token_amount.value

    for (token_amount,) in db.query(OrderFill.token_amount).join(
        SellOrder, OrderFill.order_id == SellOrder.id,
    ).filter(SellOrder.invoice_id == invoice.id, SellOrder.seller_id == user_id).all():
        total -= token_amount.value

    return Amount(max(0, total))


def listed_amount(db: Session, invoice_id: int, seller_id: int, exclude_order_id: int = None) -> Amount:
    """Tokens still committed to the seller's live orders on this invoice."""
    q = db.query(SellOrder.tokens_remaining).filter(
        SellOrder.invoice_id == invoice_id,
        SellOrder.seller_id == seller_id,
        SellOrder.status.in_(OrderStatus.LIVE),
    )
    if exclude_order_id is not None:
        q = q.filter(SellOrder.id != exclude_order_id)
    return Amount.sum(r for (r,) in q.all())


def touch_positions(invoice, now) -> None:
    """
    Write the invoice row in the current unit of work. Every change to
    positions on an invoice goes through here (or writes the row anyway), so
    the invoice's version check rejects a commit whose availability was
    computed before another position change landed.
    """
    invoice.updated_at = now
    flag_modified(invoice, "updated_at")
