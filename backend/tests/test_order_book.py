import pytest

from models import Investment, OrderFill, OrderStatus, ACQUIRED_SECONDARY
from services.errors import (
    InsufficientTokens, InvalidAmount, InvalidInvoiceStatus, NotOrderOwner, OrderAlreadyTerminal,
    OrderNotFillable, SelfFill,
)
from services.funding_ledger import fund_invoice
from services.money import Amount
from services.order_book import (
    available_to_sell, cancel_order, create_sell_order, fill_order, list_orders, open_orders_for_invoice, portfolio,
)
from services.settlement import settle_invoice
from conftest import StubOracle


@pytest.fixture
def funded_position(db, clock, make_invoice, investor):
    """Investor holding 100 tokens of a FUNDING invoice."""
    invoice = make_invoice(amount="1000")
    fund_invoice(db, invoice.id, investor, "100", "tx-pos", clock)
    return invoice


class TestAvailability:
    def test_investor_availability_is_holding(self, db, funded_position, investor):
        assert available_to_sell(db, funded_position, investor.id) == Amount(100)

    def test_supplier_availability_is_unsold_allocation(self, db, funded_position, supplier):
        assert available_to_sell(db, funded_position, supplier.id) == Amount(900)

    def test_supplier_availability_before_auction_is_face(self, db, make_invoice, supplier):
        invoice = make_invoice(amount="500", stage="VERIFIED")
        assert available_to_sell(db, invoice, supplier.id) == Amount(500)

    def test_listing_reduces_availability(self, db, clock, funded_position, investor):
        create_sell_order(db, funded_position.id, investor, "40", "2", clock)
        assert available_to_sell(db, funded_position, investor.id) == Amount(60)

    def test_cancel_frees_remainder(self, db, clock, funded_position, investor, other_investor):
        order = create_sell_order(db, funded_position.id, investor, "40", "2", clock)
        fill_order(db, order.id, other_investor, "15", clock)
        cancel_order(db, order.id, investor, clock)
        # 15 sold through the fill, 25 released back
        assert available_to_sell(db, funded_position, investor.id) == Amount(85)

    def test_sold_tokens_cannot_be_relisted(self, db, clock, funded_position, investor, other_investor):
        order = create_sell_order(db, funded_position.id, investor, "100", "2", clock)
        fill_order(db, order.id, other_investor, "100", clock)
        assert available_to_sell(db, funded_position, investor.id) == Amount.zero()
        with pytest.raises(InsufficientTokens):
            create_sell_order(db, funded_position.id, investor, "1", "2", clock)


class TestCreate:
    def test_creates_open_order(self, db, clock, funded_position, investor):
        order = create_sell_order(db, funded_position.id, investor, "50", "3", clock)
        assert order.status == OrderStatus.OPEN
        assert order.tokens_remaining == Amount(50)

    def test_oversell_reports_available(self, db, clock, funded_position, investor):
        with pytest.raises(InsufficientTokens) as exc:
            create_sell_order(db, funded_position.id, investor, "150", "1", clock)
        assert exc.value.available == Amount(100)

    def test_outstanding_listings_never_exceed_holding(self, db, clock, funded_position, investor):
        create_sell_order(db, funded_position.id, investor, "70", "1", clock)
        with pytest.raises(InsufficientTokens) as exc:
            create_sell_order(db, funded_position.id, investor, "31", "1", clock)
        assert exc.value.available == Amount(30)

    @pytest.mark.parametrize("amount,price", [("0", "1"), ("1", "0")])
    def test_rejects_non_positive(self, db, clock, funded_position, investor, amount, price):
        with pytest.raises(InvalidAmount):
            create_sell_order(db, funded_position.id, investor, amount, price, clock)

    def test_rejects_non_tradable_invoice(self, db, clock, make_invoice, supplier):
        invoice = make_invoice(stage="DRAFT")
        with pytest.raises(InvalidInvoiceStatus) as exc:
            create_sell_order(db, invoice.id, supplier, "1", "1", clock)
        assert exc.value.current_status == "DRAFT"

    def test_rejects_settled_invoice(self, db, clock, funded_position, investor, buyer):
        settle_invoice(db, funded_position.id, buyer, StubOracle("1000"), clock)
        with pytest.raises(InvalidInvoiceStatus):
            create_sell_order(db, funded_position.id, investor, "1", "1", clock)


class TestFill:
    @pytest.mark.parametrize("fills", [["10"], ["40"], ["10", "30"], ["1", "1", "38"]])
    def test_fill_conservation(self, db, clock, funded_position, investor, other_investor, fills):
        order = create_sell_order(db, funded_position.id, investor, "40", "2", clock)
        filled = 0
        for f in fills:
            result = fill_order(db, order.id, other_investor, f, clock)
            filled += int(f)
            assert result.order.tokens_remaining == Amount(40 - filled)
        expected = OrderStatus.FILLED if filled == 40 else OrderStatus.PARTIALLY_FILLED
        assert result.order.status == expected

    def test_fill_records_fill_and_credits_buyer(self, db, clock, funded_position, investor, other_investor):
        order = create_sell_order(db, funded_position.id, investor, "40", "3", clock)
        result = fill_order(db, order.id, other_investor, "10", clock, tx_hash="tx-fill")

        assert result.fill.payment_amount == Amount(30)
        assert db.query(OrderFill).count() == 1
        inv = db.query(Investment).filter(Investment.investor_id == other_investor.id).one()
        assert inv.acquired_via == ACQUIRED_SECONDARY
        assert inv.token_amount == Amount(10)
        assert inv.purchase_price == Amount(30)
        assert inv.tx_hash is None
        assert available_to_sell(db, funded_position, other_investor.id) == Amount(10)

    def test_overfill_rejected(self, db, clock, funded_position, investor, other_investor):
        order = create_sell_order(db, funded_position.id, investor, "40", "2", clock)
        with pytest.raises(OrderNotFillable) as exc:
            fill_order(db, order.id, other_investor, "41", clock)
        assert exc.value.context["available"] == Amount(40)

    @pytest.mark.parametrize("finish", ["fill", "cancel"])
    def test_terminal_orders_not_fillable(self, db, clock, funded_position, investor, other_investor, finish):
        order = create_sell_order(db, funded_position.id, investor, "40", "2", clock)
        if finish == "fill":
            fill_order(db, order.id, other_investor, "40", clock)
        else:
            cancel_order(db, order.id, investor, clock)
        with pytest.raises(OrderNotFillable) as exc:
            fill_order(db, order.id, other_investor, "1", clock)
        assert exc.value.current_status in (OrderStatus.FILLED, OrderStatus.CANCELLED)

    def test_cannot_fill_own_order(self, db, clock, funded_position, investor):
        order = create_sell_order(db, funded_position.id, investor, "40", "2", clock)
        with pytest.raises(SelfFill):
            fill_order(db, order.id, investor, "1", clock)

    def test_supplier_order_unfillable_once_auction_sold_the_tokens(
            self, db, clock, make_invoice, supplier, investor, other_investor):
        invoice = make_invoice(amount="100")
        order = create_sell_order(db, invoice.id, supplier, "50", "1", clock)
        fund_invoice(db, invoice.id, investor, "100", "tx-all", clock)
        with pytest.raises(OrderNotFillable):
            fill_order(db, order.id, other_investor, "1", clock)


class TestCancel:
    def test_seller_cancels(self, db, clock, funded_position, investor):
        order = create_sell_order(db, funded_position.id, investor, "40", "2", clock)
        cancelled = cancel_order(db, order.id, investor, clock)
        assert cancelled.status == OrderStatus.CANCELLED
        assert cancelled.cancelled_at is not None

    def test_non_owner_cannot_cancel(self, db, clock, funded_position, investor, other_investor):
        order = create_sell_order(db, funded_position.id, investor, "40", "2", clock)
        with pytest.raises(NotOrderOwner):
            cancel_order(db, order.id, other_investor, clock)

    def test_cancel_twice_rejected(self, db, clock, funded_position, investor):
        order = create_sell_order(db, funded_position.id, investor, "40", "2", clock)
        cancel_order(db, order.id, investor, clock)
        with pytest.raises(OrderAlreadyTerminal):
            cancel_order(db, order.id, investor, clock)


class TestQueries:
    def test_open_orders_sorted_by_price(self, db, clock, funded_position, investor, supplier):
        create_sell_order(db, funded_position.id, investor, "10", "30", clock)
        create_sell_order(db, funded_position.id, investor, "10", "4", clock)
        create_sell_order(db, funded_position.id, supplier, "10", "100", clock)
        prices = [o.price_per_token for o in open_orders_for_invoice(db, funded_position.id)]
        assert prices == [Amount(4), Amount(30), Amount(100)]

    def test_list_filters(self, db, clock, funded_position, investor, supplier, other_investor):
        a = create_sell_order(db, funded_position.id, investor, "10", "1", clock)
        create_sell_order(db, funded_position.id, supplier, "10", "1", clock)
        fill_order(db, a.id, other_investor, "10", clock)

        assert list_orders(db, status="open")["total"] == 1
        assert list_orders(db, status="filled")["total"] == 1
        assert list_orders(db, seller_id=investor.id)["total"] == 1
        assert list_orders(db, invoice_ref=funded_position.id, limit=1)["pages"] == 2

    def test_portfolio_reports_net_position(self, db, clock, funded_position, investor, other_investor):
        order = create_sell_order(db, funded_position.id, investor, "30", "2", clock)
        fill_order(db, order.id, other_investor, "30", clock)

        mine = portfolio(db, investor)
        assert mine["holdings"][0]["token_amount"] == "70"
        assert mine["holdings"][0]["purchase_basis"] == "100"
        theirs = portfolio(db, other_investor)
        assert theirs["holdings"][0]["token_amount"] == "30"
        assert theirs["holdings"][0]["secondary_tokens"] == "30"
