from datetime import datetime, timedelta, timezone

import pytest

from conftest import StubOracle
from models import InsuranceClaim, InvoiceStatus
from services.errors import (
    InsufficientPayment, InsuranceAlreadyClaimed, InvalidInvoiceStatus, NoHolding, NotInvoiceParty,
)
from services.funding_ledger import fund_invoice
from services.money import Amount
from services.order_book import create_sell_order, fill_order
from services.settlement import (
    GRACE_PERIOD_DAYS, claim_insurance, compute_payout_split, derive_maturity_status,
    estimate_accrued_settlement, insurance_claim_amount, refresh_maturity_status,
    resolve_settlement_amount, settle_invoice, supplier_payout_summary,
)

DUE = datetime(2026, 6, 1, tzinfo=timezone.utc)


class TestPayoutSplit:
    @pytest.mark.parametrize("gross", [0, 1, 49, 50, 199, 10_000, 123_456_789, 10 ** 20 + 7])
    def test_split_is_exact(self, gross):
        split = compute_payout_split(str(gross))
        assert split.insurance_cut.value + split.net_amount.value == gross
        assert split.insurance_cut.value == gross * 200 // 10_000

    def test_known_values(self):
        split = compute_payout_split("10000")
        assert split.to_dict() == {"gross_amount": "10000", "insurance_cut": "200", "net_amount": "9800"}


class TestInsuranceAmount:
    @pytest.mark.parametrize("basis,expected", [("2000", 1000), ("2001", 1000), ("1", 0), ("0", 0)])
    def test_half_truncated(self, basis, expected):
        assert insurance_claim_amount(basis) == Amount(expected)


class TestMaturity:
    @pytest.mark.parametrize("status", ["VERIFIED", "FUNDING", "FUNDED"])
    def test_before_due_unchanged(self, status):
        assert derive_maturity_status(status, DUE, False, DUE - timedelta(days=1)) == status

    @pytest.mark.parametrize("status", ["VERIFIED", "FUNDING", "FUNDED", "OVERDUE"])
    def test_overdue_after_due_date(self, status):
        assert derive_maturity_status(status, DUE, False, DUE + timedelta(days=1)) == InvoiceStatus.OVERDUE

    def test_defaulted_after_grace(self):
        now = DUE + timedelta(days=GRACE_PERIOD_DAYS, seconds=1)
        assert derive_maturity_status("FUNDED", DUE, False, now) == InvoiceStatus.DEFAULTED

    def test_exactly_at_grace_end_is_overdue(self):
        now = DUE + timedelta(days=GRACE_PERIOD_DAYS)
        assert derive_maturity_status("FUNDED", DUE, False, now) == InvoiceStatus.OVERDUE

    @pytest.mark.parametrize("status", ["DRAFT", "SETTLED", "DISPUTED", "REVOKED", "DEFAULTED"])
    def test_other_statuses_never_mature(self, status):
        assert derive_maturity_status(status, DUE, False, DUE + timedelta(days=365)) == status

    def test_repaid_invoice_does_not_mature(self):
        assert derive_maturity_status("FUNDED", DUE, True, DUE + timedelta(days=365)) == "FUNDED"

    def test_refresh_persists_transition(self, db, clock, make_invoice):
        invoice = make_invoice(due_in_days=10)
        clock.advance(days=11)
        assert refresh_maturity_status(db, invoice, clock) == InvoiceStatus.OVERDUE
        db.expire_all()
        assert invoice.status == InvoiceStatus.OVERDUE


class TestSettlementAmount:
    def test_oracle_is_authoritative(self, db, clock, make_invoice):
        invoice = make_invoice(amount="1000")
        quote = resolve_settlement_amount(invoice, StubOracle("1042"), clock)
        assert quote.amount == Amount(1042)
        assert quote.source == "oracle"
        assert not quote.degraded

    def test_falls_back_to_face_value_and_flags_degraded(self, db, clock, make_invoice, caplog):
        invoice = make_invoice(amount="1000")
        with caplog.at_level("WARNING", logger="factorly.settlement"):
            quote = resolve_settlement_amount(invoice, StubOracle(None), clock)
        assert quote.amount == Amount(1000)
        assert quote.degraded
        assert quote.source == "face_value_fallback"
        assert "falling back to face value" in caplog.text

    def test_accrued_estimate_before_and_after_due(self, db, clock, make_invoice):
        invoice = make_invoice(amount="3650000", due_in_days=30)
        # 10 days at 1000 bps: 3650000 * 1000 * 10 / 3650000
        assert estimate_accrued_settlement(invoice, clock.now() + timedelta(days=10)) == Amount(3650000 + 10000)
        # 40 days, past due, at 2400 bps
        assert estimate_accrued_settlement(invoice, clock.now() + timedelta(days=40)) == Amount(3650000 + 96000)


class TestSettleInvoice:
    def test_settles_and_distributes_to_holders(self, db, clock, make_invoice, buyer, supplier, investor):
        invoice = make_invoice(amount="1000")
        fund_invoice(db, invoice.id, investor, "600", "tx-1", clock)

        result = settle_invoice(db, invoice.id, buyer, StubOracle("1100"), clock)

        assert result.invoice.status == InvoiceStatus.SETTLED
        assert result.invoice.repayment_received == Amount(1100)
        shares = {d["user_id"]: Amount.parse(d["share"]) for d in result.distribution}
        assert shares[investor.id] == Amount(660)
        assert shares[supplier.id] == Amount(440)
        assert sum(s.value for s in shares.values()) == 1100

    def test_rounding_remainder_goes_to_supplier(self, db, clock, make_invoice, make_user, buyer, supplier):
        invoice = make_invoice(amount="3")
        for i in range(3):
            fund_invoice(db, invoice.id, make_user("INVESTOR"), "1", f"tx-{i}", clock)
        result = settle_invoice(db, invoice.id, buyer, StubOracle("100"), clock)
        shares = [Amount.parse(d["share"]).value for d in result.distribution]
        assert shares == [33, 33, 33, 1]
        assert result.distribution[-1]["user_id"] == supplier.id

    def test_degraded_settlement_uses_face(self, db, clock, make_invoice, buyer):
        invoice = make_invoice(amount="1000")
        result = settle_invoice(db, invoice.id, buyer, StubOracle(None), clock)
        assert result.payment == Amount(1000)
        assert result.quote.degraded

    def test_underpayment_rejected(self, db, clock, make_invoice, buyer):
        invoice = make_invoice(amount="1000")
        with pytest.raises(InsufficientPayment):
            settle_invoice(db, invoice.id, buyer, StubOracle("1050"), clock, payment_amount="1000")

    def test_overpayment_accepted(self, db, clock, make_invoice, buyer):
        invoice = make_invoice(amount="1000")
        result = settle_invoice(db, invoice.id, buyer, StubOracle("1050"), clock, payment_amount="1100")
        assert result.payment == Amount(1100)

    def test_only_buyer_may_settle(self, db, clock, make_invoice, make_user):
        invoice = make_invoice()
        with pytest.raises(NotInvoiceParty):
            settle_invoice(db, invoice.id, make_user("BUYER"), StubOracle("1"), clock)

    def test_draft_cannot_be_settled(self, db, clock, make_invoice, buyer):
        invoice = make_invoice(stage="DRAFT")
        with pytest.raises(InvalidInvoiceStatus) as exc:
            settle_invoice(db, invoice.id, buyer, StubOracle("1000"), clock)
        assert exc.value.current_status == "DRAFT"

    def test_overdue_invoice_can_still_settle(self, db, clock, make_invoice, buyer):
        invoice = make_invoice(due_in_days=5)
        clock.advance(days=6)
        result = settle_invoice(db, invoice.id, buyer, StubOracle("1001"), clock)
        assert result.invoice.status == InvoiceStatus.SETTLED

    def test_settled_invoice_cannot_settle_twice(self, db, clock, make_invoice, buyer):
        invoice = make_invoice()
        settle_invoice(db, invoice.id, buyer, StubOracle("1000"), clock)
        with pytest.raises(InvalidInvoiceStatus):
            settle_invoice(db, invoice.id, buyer, StubOracle("1000"), clock)


class TestInsuranceClaim:
    def _defaulted(self, db, clock, make_invoice, investor):
        invoice = make_invoice(amount="4000", due_in_days=10)
        fund_invoice(db, invoice.id, investor, "2000", "tx-ins", clock)
        clock.advance(days=10 + GRACE_PERIOD_DAYS + 1)
        return invoice

    def test_claim_half_of_acquired_price(self, db, clock, make_invoice, investor):
        invoice = self._defaulted(db, clock, make_invoice, investor)
        claim = claim_insurance(db, invoice.id, investor, clock)
        assert claim.acquired_price == Amount(2000)
        assert claim.claim_amount == Amount(1000)
        assert claim.status == "PENDING"
        db.refresh(invoice)
        assert invoice.status == InvoiceStatus.DEFAULTED

    def test_second_claim_rejected(self, db, clock, make_invoice, investor):
        invoice = self._defaulted(db, clock, make_invoice, investor)
        claim_insurance(db, invoice.id, investor, clock)
        with pytest.raises(InsuranceAlreadyClaimed):
            claim_insurance(db, invoice.id, investor, clock)
        assert db.query(InsuranceClaim).count() == 1

    def test_requires_default(self, db, clock, make_invoice, investor):
        invoice = make_invoice()
        fund_invoice(db, invoice.id, investor, "10", "tx-nd", clock)
        with pytest.raises(InvalidInvoiceStatus) as exc:
            claim_insurance(db, invoice.id, investor, clock)
        assert exc.value.current_status == InvoiceStatus.FUNDING

    def test_requires_holding(self, db, clock, make_invoice, investor, other_investor):
        invoice = self._defaulted(db, clock, make_invoice, investor)
        with pytest.raises(NoHolding):
            claim_insurance(db, invoice.id, other_investor, clock)

    def test_secondary_buyer_claims_on_fill_price(self, db, clock, make_invoice, investor, other_investor):
        invoice = make_invoice(amount="4000", due_in_days=10)
        fund_invoice(db, invoice.id, investor, "2000", "tx-s", clock)
        order = create_sell_order(db, invoice.id, investor, "100", "3", clock)
        fill_order(db, order.id, other_investor, "100", clock)
        clock.advance(days=10 + GRACE_PERIOD_DAYS + 1)
        claim = claim_insurance(db, invoice.id, other_investor, clock)
        assert claim.claim_amount == Amount(150)

    def test_fully_exited_seller_cannot_claim(self, db, clock, make_invoice, investor, other_investor):
        invoice = make_invoice(amount="4000", due_in_days=10)
        fund_invoice(db, invoice.id, investor, "2000", "tx-exit", clock)
        order = create_sell_order(db, invoice.id, investor, "2000", "1", clock)
        fill_order(db, order.id, other_investor, "2000", clock)
        clock.advance(days=10 + GRACE_PERIOD_DAYS + 1)

        with pytest.raises(NoHolding):
            claim_insurance(db, invoice.id, investor, clock)
        claim = claim_insurance(db, invoice.id, other_investor, clock)
        assert claim.token_amount == Amount(2000)
        assert claim.claim_amount == Amount(1000)
        assert db.query(InsuranceClaim).count() == 1

    def test_partial_exit_claims_on_tokens_still_held(self, db, clock, make_invoice, investor, other_investor):
        invoice = make_invoice(amount="4000", due_in_days=10)
        fund_invoice(db, invoice.id, investor, "2000", "tx-part", clock)
        order = create_sell_order(db, invoice.id, investor, "100", "3", clock)
        fill_order(db, order.id, other_investor, "100", clock)
        clock.advance(days=10 + GRACE_PERIOD_DAYS + 1)

        claim = claim_insurance(db, invoice.id, investor, clock)
        assert claim.token_amount == Amount(1900)
        assert claim.acquired_price == Amount(1900)
        assert claim.claim_amount == Amount(950)


def test_supplier_payout_summary_groups_by_invoice(db, clock, make_invoice, supplier, investor, other_investor):
    first = make_invoice(amount="10000")
    second = make_invoice(amount="5000")
    fund_invoice(db, first.id, investor, "5000", "tx-a", clock)
    fund_invoice(db, first.id, other_investor, "5000", "tx-b", clock)
    fund_invoice(db, second.id, investor, "5000", "tx-c", clock)

    summary = supplier_payout_summary(db, supplier)

    assert summary["totals"] == {"net": "14700", "insurance": "300", "gross": "15000", "payout_count": 3}
    by_invoice = {g["invoice_id"]: g for g in summary["invoices"]}
    assert by_invoice[first.id]["investor_count"] == 2
    assert by_invoice[first.id]["total_net"] == "9800"
    assert by_invoice[second.id]["total_gross"] == "5000"
