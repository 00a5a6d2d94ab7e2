from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import Optional

from database import get_db
from models import User
from routes.auth import get_current_user, get_clock
from schemas import SellOrderCreate, FillOrderRequest, order_to_dict, fill_to_dict, investment_to_dict
from services.clock import Clock
from services.lookup import get_invoice, get_order
from services.order_book import (
    available_to_sell, cancel_order, create_sell_order, fill_order, list_orders, open_orders_for_invoice,
)

router = APIRouter(prefix="/api/orders", tags=["orders"])


@router.get("")
def list_all(invoice_id: Optional[str] = None, status: Optional[str] = None, seller_id: Optional[int] = None,
             page: int = 1, limit: int = 20, db: Session = Depends(get_db),
             current_user: User = Depends(get_current_user)):
    result = list_orders(db, invoice_ref=invoice_id, status=status, seller_id=seller_id, page=page, limit=limit)
    return {**result, "orders": [order_to_dict(o) for o in result["orders"]]}


@router.get("/available")
def available(invoice_id: str, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    """Tokens the caller can still list on an invoice."""
    invoice = get_invoice(db, invoice_id)
    return {
        "invoice_id": invoice.id,
        "seller_id": current_user.id,
        "available": str(available_to_sell(db, invoice, current_user.id)),
    }


@router.get("/book/{invoice_ref}")
def book(invoice_ref: str, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    """Live orders on one invoice, best price first."""
    return {"orders": [order_to_dict(o) for o in open_orders_for_invoice(db, invoice_ref)]}


@router.post("", status_code=201)
def create(data: SellOrderCreate, db: Session = Depends(get_db),
           current_user: User = Depends(get_current_user), clock: Clock = Depends(get_clock)):
    order = create_sell_order(
        db, data.invoice_id, current_user, data.token_amount, data.price_per_token, clock,
        on_chain_order_id=data.on_chain_order_id, tx_hash=data.tx_hash,
    )
    return order_to_dict(order)


@router.get("/{order_ref}")
def detail(order_ref: str, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    order = get_order(db, order_ref)
    return {**order_to_dict(order), "fills": [fill_to_dict(f) for f in order.fills]}


@router.post("/{order_ref}/fill")
def fill(order_ref: str, data: FillOrderRequest, db: Session = Depends(get_db),
         current_user: User = Depends(get_current_user), clock: Clock = Depends(get_clock)):
    result = fill_order(db, order_ref, current_user, data.token_amount, clock, tx_hash=data.tx_hash)
    return {
        "order": order_to_dict(result.order),
        "fill": fill_to_dict(result.fill),
        "investment": investment_to_dict(result.investment),
    }


@router.post("/{order_ref}/cancel")
def cancel(order_ref: str, db: Session = Depends(get_db),
           current_user: User = Depends(get_current_user), clock: Clock = Depends(get_clock)):
    return order_to_dict(cancel_order(db, order_ref, current_user, clock))
