from sqlalchemy import (
    Column, Integer, String, DateTime, Text, Boolean, ForeignKey, UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from sqlalchemy.types import TypeDecorator

from database import Base
from services.money import Amount


class AmountType(TypeDecorator):
    """Stores an Amount as its canonical decimal string; loads it back as Amount."""

    impl = String(78)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return str(Amount.parse(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Amount.parse(value)


# ════════════════════════════════════════════════
#  STATUS VALUES
# ════════════════════════════════════════════════
class InvoiceStatus:
    DRAFT = "DRAFT"
    VERIFIED = "VERIFIED"
    FUNDING = "FUNDING"
    FUNDED = "FUNDED"
    SETTLED = "SETTLED"
    DEFAULTED = "DEFAULTED"
    DISPUTED = "DISPUTED"
    REVOKED = "REVOKED"
    OVERDUE = "OVERDUE"


class OrderStatus:
    OPEN = "OPEN"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    CANCELLED = "CANCELLED"

    LIVE = (OPEN, PARTIALLY_FILLED)


class Role:
    SUPPLIER = "SUPPLIER"
    BUYER = "BUYER"
    INVESTOR = "INVESTOR"
    ADMIN = "ADMIN"


ACQUIRED_PRIMARY = "PRIMARY_AUCTION"
ACQUIRED_SECONDARY = "SECONDARY_MARKET"
INVESTMENT_COMPLETED = "COMPLETED"


# ════════════════════════════════════════════════
#  USER (mirror of the external identity service)
# ════════════════════════════════════════════════
class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    email = Column(String(200), unique=True, nullable=True, index=True)
    role = Column(String(20), nullable=False)  # SUPPLIER, BUYER, INVESTOR, ADMIN
    wallet_address = Column(String(64), unique=True, nullable=True, index=True)
    kyc_status = Column(String(20), nullable=False, default="PENDING")  # PENDING, APPROVED, REJECTED
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


# ════════════════════════════════════════════════
#  ACTIVITY LOG
# ════════════════════════════════════════════════
class ActivityLog(Base):
    __tablename__ = "activity_logs"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    entity_type = Column(String(50), nullable=False)  # invoice, order, insurance_claim
    entity_id = Column(Integer, nullable=False)
    action = Column(String(100), nullable=False)
    description = Column(Text, nullable=False)
    user_id = Column(Integer, nullable=True)
    metadata_json = Column(Text, nullable=True)  # JSON string
    created_at = Column(DateTime(timezone=True), server_default=func.now())


# ════════════════════════════════════════════════
#  INVOICE
# ════════════════════════════════════════════════
class Invoice(Base):
    __tablename__ = "invoices"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    on_chain_id = Column(String(100), unique=True, nullable=True, index=True)
    supplier_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    buyer_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    amount = Column(AmountType, nullable=False)  # face value, stroops
    currency = Column(String(10), default="USDC")
    description = Column(Text, nullable=True)
    purchase_order = Column(String(100), nullable=True)
    document_hash = Column(String(128), nullable=True)
    due_date = Column(DateTime(timezone=True), nullable=False)
    status = Column(String(20), nullable=False, default=InvoiceStatus.DRAFT)

    # Dutch auction
    auction_start = Column(DateTime(timezone=True), nullable=True)
    auction_end = Column(DateTime(timezone=True), nullable=True)
    start_price = Column(AmountType, nullable=True)
    min_price = Column(AmountType, nullable=True)
    price_drop_rate_bps = Column(Integer, nullable=True)

    # Token supply (1 token = 1 stroop of face value)
    total_tokens = Column(AmountType, nullable=True)
    tokens_sold = Column(AmountType, nullable=True)
    tokens_remaining = Column(AmountType, nullable=True)

    amount_raised = Column(AmountType, nullable=False, default="0")
    repayment_received = Column(AmountType, nullable=True)

    verified_at = Column(DateTime(timezone=True), nullable=True)
    funded_at = Column(DateTime(timezone=True), nullable=True)
    settled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    version = Column(Integer, nullable=False)

    supplier = relationship("User", foreign_keys=[supplier_id])
    buyer = relationship("User", foreign_keys=[buyer_id])
    investments = relationship("Investment", back_populates="invoice")

    __mapper_args__ = {"version_id_col": version}


# ════════════════════════════════════════════════
#  INVESTMENT (primary auction buys and secondary fills)
# ════════════════════════════════════════════════
class Investment(Base):
    __tablename__ = "investments"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    invoice_id = Column(Integer, ForeignKey("invoices.id"), nullable=False, index=True)
    investor_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    token_amount = Column(AmountType, nullable=False)
    purchase_price = Column(AmountType, nullable=False)  # payment made for these tokens
    acquired_via = Column(String(20), nullable=False, default=ACQUIRED_PRIMARY)
    status = Column(String(20), nullable=False, default=INVESTMENT_COMPLETED)
    tx_hash = Column(String(128), unique=True, nullable=True)  # funding idempotency key
    invested_at = Column(DateTime(timezone=True), server_default=func.now())

    invoice = relationship("Invoice", back_populates="investments")
    investor = relationship("User")


# ════════════════════════════════════════════════
#  SECONDARY MARKET
# ════════════════════════════════════════════════
class SellOrder(Base):
    __tablename__ = "sell_orders"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    on_chain_order_id = Column(String(100), unique=True, nullable=True, index=True)
    invoice_id = Column(Integer, ForeignKey("invoices.id"), nullable=False, index=True)
    seller_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    token_amount = Column(AmountType, nullable=False)
    price_per_token = Column(AmountType, nullable=False)
    tokens_remaining = Column(AmountType, nullable=False)
    status = Column(String(20), nullable=False, default=OrderStatus.OPEN)
    tx_hash = Column(String(128), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, nullable=False)

    invoice = relationship("Invoice")
    seller = relationship("User")
    fills = relationship("OrderFill", back_populates="order")

    __mapper_args__ = {"version_id_col": version}


class OrderFill(Base):
    __tablename__ = "order_fills"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("sell_orders.id"), nullable=False, index=True)
    buyer_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    token_amount = Column(AmountType, nullable=False)
    payment_amount = Column(AmountType, nullable=False)
    tx_hash = Column(String(128), nullable=True)
    filled_at = Column(DateTime(timezone=True), server_default=func.now())

    order = relationship("SellOrder", back_populates="fills")


# ════════════════════════════════════════════════
#  PAYOUTS / INSURANCE
# ════════════════════════════════════════════════
class SupplierPayout(Base):
    __tablename__ = "supplier_payouts"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    invoice_id = Column(Integer, ForeignKey("invoices.id"), nullable=False, index=True)
    supplier_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    investment_id = Column(Integer, ForeignKey("investments.id"), nullable=False)
    gross_amount = Column(AmountType, nullable=False)
    insurance_cut = Column(AmountType, nullable=False)
    net_amount = Column(AmountType, nullable=False)
    tx_hash = Column(String(128), nullable=True)
    status = Column(String(20), nullable=False, default="COMPLETED")
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    invoice = relationship("Invoice")
    investment = relationship("Investment")


class InsuranceClaim(Base):
    __tablename__ = "insurance_claims"
    __table_args__ = (UniqueConstraint("invoice_id", "investor_id", name="uq_claim_invoice_investor"),)

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    invoice_id = Column(Integer, ForeignKey("invoices.id"), nullable=False, index=True)
    investor_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    token_amount = Column(AmountType, nullable=False)
    acquired_price = Column(AmountType, nullable=False)
    claim_amount = Column(AmountType, nullable=False)
    status = Column(String(20), nullable=False, default="PENDING")  # PENDING, PAID, REJECTED
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    invoice = relationship("Invoice")
