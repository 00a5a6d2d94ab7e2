import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base, get_db
from main import app, install_rate_limiters
from models import User, Role
from routes.auth import create_access_token, get_clock
from services.clock import FixedClock
from services.errors import SettlementOracleUnavailable
from services.invoice_lifecycle import create_invoice, approve_invoice, start_auction
from services.money import Amount
from services.settlement_oracle import SettlementOracle, get_settlement_oracle

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class StubOracle(SettlementOracle):
    """Returns a fixed amount, or raises when ``amount`` is None."""

    def __init__(self, amount=None):
        self.amount = amount
        self.calls = []

    def get_settlement_amount(self, invoice_ref):
        self.calls.append(invoice_ref)
        if self.amount is None:
            raise SettlementOracleUnavailable("stub oracle offline", invoice_ref=invoice_ref)
        return Amount.parse(self.amount)


@pytest.fixture
def engine():
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=eng)
    yield eng
    Base.metadata.drop_all(bind=eng)
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FixedClock(T0)


@pytest.fixture
def oracle():
    return StubOracle()


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(role, name=None, kyc_status="APPROVED"):
        counter["n"] += 1
        user = User(
            name=name or f"{role.title()} {counter['n']}",
            email=f"{role.lower()}{counter['n']}@example.com",
            role=role,
            wallet_address=f"G{role[:3]}{counter['n']:04d}",
            kyc_status=kyc_status,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def supplier(make_user):
    return make_user(Role.SUPPLIER, "Acme Supplies")


@pytest.fixture
def buyer(make_user):
    return make_user(Role.BUYER, "Globex Buyer")


@pytest.fixture
def investor(make_user):
    return make_user(Role.INVESTOR, "Ivy Investor")


@pytest.fixture
def other_investor(make_user):
    return make_user(Role.INVESTOR, "Otto Investor")


@pytest.fixture
def make_invoice(db, clock, supplier, buyer):
    """Builds an invoice and walks it to the requested stage."""

    def _make(amount="1000", stage="FUNDING", duration_hours=100, max_discount_bps=5000,
              price_drop_rate_bps=100, due_in_days=90, on_chain_id=None):
        invoice = create_invoice(
            db, supplier, buyer.id, amount, clock.now() + timedelta(days=due_in_days), clock,
            on_chain_id=on_chain_id,
        )
        if stage in ("VERIFIED", "FUNDING"):
            approve_invoice(db, invoice.id, buyer, clock)
        if stage == "FUNDING":
            start_auction(db, invoice.id, supplier, duration_hours, max_discount_bps, clock, price_drop_rate_bps)
        db.refresh(invoice)
        return invoice

    return _make


@pytest.fixture
def client(session_factory, clock, oracle):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_settlement_oracle] = lambda: oracle
    install_rate_limiters(app)
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def auth(user):
    return {"Authorization": f"Bearer {create_access_token({'sub': str(user.id)})}"}
