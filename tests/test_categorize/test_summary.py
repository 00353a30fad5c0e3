"""Tests for tax summary aggregation."""

from datetime import date
from decimal import Decimal

import pytest

from taxshield.categorize.summary import (
    expense_amount,
    potential_credits,
    qbi_deduction,
    self_employment_tax,
    summarize,
)
from taxshield.config import Config
from taxshield.database.models import Invoice, TaxAnalysis, Transaction
from tests.conftest import FIXTURE_CONFIG_DIR


@pytest.fixture(scope="module")
def table():
    return Config(FIXTURE_CONFIG_DIR).tax_line_table()


def _txn(**kw) -> Transaction:
    defaults = dict(
        id="t1", date=date(2026, 2, 1), vendor="Acme",
        amount=Decimal("10"), category="Office", source="manual",
    )
    defaults.update(kw)
    return Transaction(**defaults)


def _inv(amount, status="Paid", issue=date(2026, 1, 15), **kw) -> Invoice:
    return Invoice(
        invoice_number=kw.get("number", "INV-1"), client_name="Client",
        issue_date=issue, amount=Decimal(amount), status=status,
    )


def _analysed(amount) -> TaxAnalysis:
    return TaxAnalysis(deductible_amount=Decimal(amount), risk_level="Low")


class TestWorkedExample:
    @pytest.fixture
    def summary(self, table):
        txns = [
            _txn(id="a", category="Rent", amount=Decimal("1000")),
            _txn(id="b", category="Software/SaaS", amount=Decimal("40")),
            _txn(id="c", category="Mystery", amount=Decimal("25")),
        ]
        return summarize(txns, [], table)

    def test_total_expenses(self, summary):
        assert summary.total_expenses == Decimal("1065")

    def test_line_assignments(self, summary):
        assert summary.line_assignments == {
            "a": "line20b", "b": "line27a", "c": "line27a",
        }

    def test_line_totals(self, summary):
        assert summary.line_totals["line20b"] == Decimal("1000")
        assert summary.line_totals["line27a"] == Decimal("65")

    def test_totals_reconcile(self, summary):
        assert sum(summary.line_totals.values()) == summary.total_expenses
        assert sum(summary.expenses_by_category.values()) == summary.total_expenses

    def test_no_analysis_means_no_credits(self, summary):
        assert summary.potential_credits == Decimal("0")


class TestNetProfitSign:
    def test_loss_clamps_estimates_to_zero(self, table):
        s = summarize(
            [_txn(amount=Decimal("800"))], [_inv("500")], table,
        )
        assert s.gross_income == Decimal("500")
        assert s.total_expenses == Decimal("800")
        assert s.net_profit == Decimal("-300")
        assert s.estimated_self_employment_tax == Decimal("0")
        assert s.estimated_qbi == Decimal("0")

    def test_profit_estimates(self, table):
        s = summarize([_txn(amount=Decimal("2000"))], [_inv("12000")], table)
        assert s.net_profit == Decimal("10000")
        assert s.estimated_self_employment_tax == Decimal("10000") * Decimal("0.9235") * Decimal("0.153")
        assert s.estimated_qbi == Decimal("2000.00")

    def test_estimates_do_not_feed_back(self, table):
        s = summarize([_txn(amount=Decimal("100"))], [_inv("1100")], table)
        assert s.net_profit == s.gross_income - s.total_expenses


class TestDeductibleAmount:
    def test_analysis_amount_replaces_raw(self, table):
        txn = _txn(amount=Decimal("100"), analysis=_analysed("60"))
        s = summarize([txn], [], table)
        assert s.total_expenses == Decimal("60")
        assert expense_amount(txn) == Decimal("60")

    def test_analysis_without_amount_uses_raw(self, table):
        txn = _txn(amount=Decimal("100"), analysis=TaxAnalysis(risk_level="High"))
        assert expense_amount(txn) == Decimal("100")
        assert summarize([txn], [], table).potential_credits == Decimal("0")

    def test_zero_deductible_counts_as_zero(self, table):
        txn = _txn(amount=Decimal("100"), analysis=_analysed("0"))
        assert summarize([txn], [], table).total_expenses == Decimal("0")

    def test_credits_from_supplied_deductibles_only(self, table):
        txns = [
            _txn(id="a", amount=Decimal("100"), analysis=_analysed("50")),
            _txn(id="b", amount=Decimal("999")),
        ]
        s = summarize(txns, [], table)
        assert s.potential_credits == Decimal("3.00")


class TestGrossIncome:
    def test_only_paid_invoices_count(self, table):
        invoices = [
            _inv("1000", "Paid"), _inv("700", "Sent"),
            _inv("300", "Draft"), _inv("200", "paid"),
        ]
        assert summarize([], invoices, table).gross_income == Decimal("1200")

    def test_no_invoices(self, table):
        s = summarize([_txn()], [], table)
        assert s.gross_income == Decimal("0")
        assert s.net_profit == Decimal("-10")


class TestYearFilter:
    def test_filters_transactions_and_invoices(self, table):
        txns = [
            _txn(id="a", date=date(2025, 12, 31), amount=Decimal("5")),
            _txn(id="b", date=date(2026, 1, 1), amount=Decimal("7")),
        ]
        invoices = [_inv("100", issue=date(2025, 6, 1)), _inv("40", issue=date(2026, 6, 1))]
        s = summarize(txns, invoices, table, year=2026)
        assert s.year == 2026
        assert s.total_expenses == Decimal("7")
        assert s.gross_income == Decimal("40")
        assert list(s.line_assignments) == ["b"]


class TestLineTotalsShape:
    def test_every_line_present_in_table_order(self, table):
        s = summarize([], [], table)
        assert list(s.line_totals) == table.line_ids
        assert all(v == Decimal("0") for v in s.line_totals.values())

    def test_expenses_by_category(self, table):
        txns = [
            _txn(id="a", category="Office", amount=Decimal("3")),
            _txn(id="b", category="Office", amount=Decimal("4")),
            _txn(id="c", category="Rent", amount=Decimal("5")),
        ]
        s = summarize(txns, [], table)
        assert s.expenses_by_category == {"Office": Decimal("7"), "Rent": Decimal("5")}


class TestBadRecords:
    def test_unaggregatable_record_skipped_and_counted(self, table):
        bad = _txn(id="bad", amount="not money")
        good = _txn(id="good", amount=Decimal("12"))
        s = summarize([bad, good], [], table)
        assert s.skipped_count == 1
        assert s.total_expenses == Decimal("12")
        assert "bad" not in s.line_assignments

    def test_record_without_date_skipped_when_filtering(self, table):
        bad = _txn(id="bad", date=None)
        s = summarize([bad], [], table, year=2026)
        assert s.skipped_count == 1


class TestFormulas:
    def test_se_tax_negative_clamped(self):
        assert self_employment_tax(Decimal("-1")) == Decimal("0")

    def test_qbi(self):
        assert qbi_deduction(Decimal("50")) == Decimal("10.00")

    def test_credits(self):
        assert potential_credits(Decimal("1000")) == Decimal("60.00")
