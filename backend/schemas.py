from pydantic import BaseModel, Field, field_validator
from datetime import datetime
from typing import Optional
import re

from models import Invoice, Investment, SellOrder, OrderFill, InsuranceClaim, SupplierPayout

_AMOUNT = re.compile(r"^\d+$")


def _amount_string(v: str) -> str:
    """Money crosses the API as a decimal string of the smallest unit (stroops)."""
    v = v.strip()
    if not _AMOUNT.match(v):
        raise ValueError("Amounts must be non-negative integer strings in stroops, e.g. \"15000000\"")
    return v


# ═══════════════════════════════════════════════
#  REQUESTS
# ═══════════════════════════════════════════════

class InvoiceCreate(BaseModel):
    buyer_id: int
    amount: str = Field(..., max_length=78)
    due_date: datetime
    description: Optional[str] = Field(default=None, max_length=2000)
    purchase_order: Optional[str] = Field(default=None, max_length=100)
    on_chain_id: Optional[str] = Field(default=None, max_length=100)
    document_hash: Optional[str] = Field(default=None, max_length=128)

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: str) -> str:
        return _amount_string(v)


class StartAuctionRequest(BaseModel):
    duration_hours: int
    max_discount_bps: int
    price_drop_rate_bps: Optional[int] = None


class FundRequest(BaseModel):
    token_amount: str = Field(..., max_length=78)
    tx_hash: Optional[str] = Field(default=None, max_length=128)

    @field_validator("token_amount")
    @classmethod
    def validate_amount(cls, v: str) -> str:
        return _amount_string(v)


class SettleRequest(BaseModel):
    payment_amount: Optional[str] = Field(default=None, max_length=78)
    tx_hash: Optional[str] = Field(default=None, max_length=128)

    @field_validator("payment_amount")
    @classmethod
    def validate_amount(cls, v: Optional[str]) -> Optional[str]:
        return _amount_string(v) if v is not None else v


class SellOrderCreate(BaseModel):
    invoice_id: str = Field(..., min_length=1, max_length=100)  # primary id or on-chain id
    token_amount: str = Field(..., max_length=78)
    price_per_token: str = Field(..., max_length=78)
    on_chain_order_id: Optional[str] = Field(default=None, max_length=100)
    tx_hash: Optional[str] = Field(default=None, max_length=128)

    @field_validator("token_amount", "price_per_token")
    @classmethod
    def validate_amount(cls, v: str) -> str:
        return _amount_string(v)


class FillOrderRequest(BaseModel):
    token_amount: str = Field(..., max_length=78)
    tx_hash: Optional[str] = Field(default=None, max_length=128)

    @field_validator("token_amount")
    @classmethod
    def validate_amount(cls, v: str) -> str:
        return _amount_string(v)


class InsuranceClaimRequest(BaseModel):
    invoice_id: str = Field(..., min_length=1, max_length=100)


# ═══════════════════════════════════════════════
#  RESPONSES
# ═══════════════════════════════════════════════

def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def _str(amount) -> Optional[str]:
    return str(amount) if amount is not None else None


def invoice_to_dict(invoice: Invoice) -> dict:
    return {
        "id": invoice.id,
        "on_chain_id": invoice.on_chain_id,
        "supplier_id": invoice.supplier_id,
        "buyer_id": invoice.buyer_id,
        "amount": _str(invoice.amount),
        "currency": invoice.currency,
        "description": invoice.description,
        "purchase_order": invoice.purchase_order,
        "due_date": _iso(invoice.due_date),
        "status": invoice.status,
        "auction": {
            "auction_start": _iso(invoice.auction_start),
            "auction_end": _iso(invoice.auction_end),
            "start_price": _str(invoice.start_price),
            "min_price": _str(invoice.min_price),
            "price_drop_rate_bps": invoice.price_drop_rate_bps,
        } if invoice.auction_start else None,
        "total_tokens": _str(invoice.total_tokens),
        "tokens_sold": _str(invoice.tokens_sold),
        "tokens_remaining": _str(invoice.tokens_remaining),
        "amount_raised": _str(invoice.amount_raised),
        "repayment_received": _str(invoice.repayment_received),
        "verified_at": _iso(invoice.verified_at),
        "funded_at": _iso(invoice.funded_at),
        "settled_at": _iso(invoice.settled_at),
        "created_at": _iso(invoice.created_at),
    }


def investment_to_dict(inv: Investment) -> dict:
    return {
        "id": inv.id,
        "invoice_id": inv.invoice_id,
        "investor_id": inv.investor_id,
        "token_amount": _str(inv.token_amount),
        "purchase_price": _str(inv.purchase_price),
        "acquired_via": inv.acquired_via,
        "status": inv.status,
        "tx_hash": inv.tx_hash,
        "invested_at": _iso(inv.invested_at),
    }


def payout_to_dict(p: SupplierPayout) -> dict:
    return {
        "id": p.id,
        "invoice_id": p.invoice_id,
        "investment_id": p.investment_id,
        "gross_amount": _str(p.gross_amount),
        "insurance_cut": _str(p.insurance_cut),
        "net_amount": _str(p.net_amount),
        "tx_hash": p.tx_hash,
    }


def order_to_dict(order: SellOrder) -> dict:
    filled = order.token_amount - order.tokens_remaining
    return {
        "id": order.id,
        "on_chain_order_id": order.on_chain_order_id,
        "invoice_id": order.invoice_id,
        "seller_id": order.seller_id,
        "token_amount": _str(order.token_amount),
        "price_per_token": _str(order.price_per_token),
        "tokens_remaining": _str(order.tokens_remaining),
        "tokens_filled": _str(filled),
        "status": order.status,
        "tx_hash": order.tx_hash,
        "created_at": _iso(order.created_at),
        "cancelled_at": _iso(order.cancelled_at),
    }


def fill_to_dict(fill: OrderFill) -> dict:
    return {
        "id": fill.id,
        "order_id": fill.order_id,
        "buyer_id": fill.buyer_id,
        "token_amount": _str(fill.token_amount),
        "payment_amount": _str(fill.payment_amount),
        "tx_hash": fill.tx_hash,
        "filled_at": _iso(fill.filled_at),
    }


def claim_to_dict(claim: InsuranceClaim) -> dict:
    return {
        "id": claim.id,
        "invoice_id": claim.invoice_id,
        "investor_id": claim.investor_id,
        "token_amount": _str(claim.token_amount),
        "acquired_price": _str(claim.acquired_price),
        "claim_amount": _str(claim.claim_amount),
        "status": claim.status,
        "created_at": _iso(claim.created_at),
    }
