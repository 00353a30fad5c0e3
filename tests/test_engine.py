"""Tests for the recompute pipeline and the tenant Ledger."""

import json
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from taxshield.config import Config
from taxshield.database.models import (
    BANK_SYNC_A,
    CARD_IMPORT,
    MANUAL,
    Bill,
    Invoice,
    Receipt,
    Transaction,
    TransactionBatch,
)
from taxshield.engine import Ledger, new_manual_transaction, recompute
from taxshield.parsers.base import InvalidRecord
from taxshield.receipts.linker import ReceiptNotFound
from tests.conftest import FIXTURE_CONFIG_DIR

T0 = datetime(2026, 3, 1, tzinfo=timezone.utc)
TODAY = date(2026, 3, 10)

FEED = [
    {
        "id": "t1", "postedAt": "2026-02-03", "counterpartyName": "Amazon Web Services",
        "amount": -84.12, "bankDescription": "AWS",
    },
    {
        "id": "t2", "postedAt": "2026-02-20", "counterpartyName": "PG&E",
        "amount": -140.00, "bankDescription": "PG&E WEB ONLINE",
    },
]

STATEMENT = """\
Date,Description,Amount
02/05/2026,GITHUB INC,21.00
02/06/2026,CORNER STORE,0.00
"""


@pytest.fixture(scope="module")
def config():
    return Config(FIXTURE_CONFIG_DIR)


@pytest.fixture
def ledger(repo, config):
    return Ledger(repo, config, tenant_id="acme")


@pytest.fixture
def feed_file(tmp_path):
    path = tmp_path / "feed.json"
    path.write_text(json.dumps({"transactions": FEED}))
    return path


@pytest.fixture
def statement_file(tmp_path):
    path = tmp_path / "ink.csv"
    path.write_text(STATEMENT)
    return path


def _txn(**kw) -> Transaction:
    defaults = dict(
        id="m1", date=date(2026, 2, 3), vendor="Amazon Web Services",
        amount=Decimal("84.12"), category="Software/SaaS", source=MANUAL,
    )
    defaults.update(kw)
    return Transaction(**defaults)


# ── Pure recompute ────────────────────────────────────────


class TestRecompute:
    def test_snapshot_views(self, config):
        batches = [
            TransactionBatch(MANUAL, [_txn(), _txn(id="m2", vendor="Rent Co", category="Rent",
                                                  amount=Decimal("1000"))], T0),
            TransactionBatch(BANK_SYNC_A, [_txn(id="merc_t1", source=BANK_SYNC_A, verified=True)], T0),
        ]
        receipts = [Receipt(id="r1", captured_at=T0, document_ref="x", linked_transaction_id="m1")]
        view = recompute(
            batches, [], receipts, [], config.tax_line_table(), today=TODAY,
        )
        assert view.merge.ids == ["merc_t1", "m2"]
        assert view.merge.duplicate_count == 1
        # m1 lost the merge, so its receipt link is hidden
        assert view.links == {}
        assert view.summary.total_expenses == Decimal("1084.12")

    def test_idempotent(self, config):
        batches = [TransactionBatch(MANUAL, [_txn()], T0)]
        table = config.tax_line_table()
        first = recompute(batches, [], [], [], table, today=TODAY)
        second = recompute(batches, [], [], [], table, today=TODAY)
        assert first.merge.ids == second.merge.ids
        assert first.summary.line_totals == second.summary.line_totals

    def test_empty_snapshot(self, config):
        view = recompute([], [], [], [], config.tax_line_table(), today=TODAY)
        assert view.transactions == []
        assert view.summary.net_profit == Decimal("0")


class TestNewManualTransaction:
    def test_builds_manual_record(self):
        txn = new_manual_transaction(" Staples ", "$12.99", "2026-02-01", "Supplies")
        assert txn.id.startswith("manual_")
        assert txn.vendor == "Staples"
        assert txn.amount == Decimal("12.99")
        assert txn.source == MANUAL
        assert txn.verified is False

    def test_ids_unique(self):
        a = new_manual_transaction("X", "1", "2026-02-01")
        b = new_manual_transaction("X", "1", "2026-02-01")
        assert a.id != b.id

    @pytest.mark.parametrize("vendor,amount,day", [
        ("", "1", "2026-02-01"),
        ("X", "lots", "2026-02-01"),
        ("X", "1", "someday"),
    ])
    def test_invalid(self, vendor, amount, day):
        with pytest.raises(InvalidRecord):
            new_manual_transaction(vendor, amount, day)


# ── Ledger ingestion ──────────────────────────────────────


class TestSync:
    def test_sync_stores_batch(self, ledger, feed_file):
        batch = ledger.sync(BANK_SYNC_A, feed_file)
        assert batch.error is None
        assert [t.id for t in ledger.transactions()] == ["merc_t1", "merc_t2"]

    def test_resync_replaces(self, ledger, feed_file, tmp_path):
        ledger.sync(BANK_SYNC_A, feed_file)
        smaller = tmp_path / "smaller.json"
        smaller.write_text(json.dumps(FEED[:1]))
        ledger.sync(BANK_SYNC_A, smaller)
        assert [t.id for t in ledger.transactions()] == ["merc_t1"]

    def test_failed_sync_keeps_cached_batch(self, ledger, feed_file, tmp_path):
        ledger.sync(BANK_SYNC_A, feed_file)
        batch = ledger.sync(BANK_SYNC_A, tmp_path / "missing.json")
        assert batch.error
        assert batch.transactions == []
        assert len(ledger.transactions()) == 2

    def test_non_bank_source(self, ledger, feed_file):
        with pytest.raises(ValueError):
            ledger.sync(CARD_IMPORT, feed_file)


class TestImportCard:
    def test_import_then_reimport(self, ledger, statement_file):
        assert ledger.import_card(statement_file) == (1, 0, 1)
        assert ledger.import_card(statement_file) == (0, 1, 1)
        [txn] = ledger.transactions()
        assert txn.context == "Credit Card: ink"

    def test_card_name(self, ledger, statement_file):
        ledger.import_card(statement_file, card_name="Ink Business")
        assert ledger.transactions()[0].context == "Credit Card: Ink Business"


class TestManualEntries:
    def test_bank_record_supersedes_manual_duplicate(self, ledger, feed_file):
        ledger.add_manual(_txn())
        ledger.sync(BANK_SYNC_A, feed_file)
        view = ledger.view(today=TODAY)
        assert "m1" not in view.merge.ids
        assert view.merge.duplicate_count == 1

    def test_delete(self, ledger):
        ledger.add_manual(_txn())
        assert ledger.delete_transaction("m1") == [MANUAL]
        assert ledger.transactions() == []

    def test_tenants_isolated(self, repo, config, ledger):
        ledger.add_manual(_txn())
        assert Ledger(repo, config, tenant_id="other").transactions() == []


# ── Bills, receipts, summary ──────────────────────────────


class TestLedgerViews:
    def test_bill_picks_up_feed_payment(self, ledger, feed_file):
        ledger.sync(BANK_SYNC_A, feed_file)
        ledger.save_bill(Bill(
            category="electricity", provider="PG&E", amount=Decimal("140.00"),
            due_date=date(2026, 3, 20),
        ))
        [bill_view] = ledger.view(today=TODAY).bills
        assert [t.id for t in bill_view.matched_transactions] == ["merc_t2"]
        assert bill_view.status == "Upcoming"

    def test_receipt_link_round_trip(self, ledger, feed_file):
        ledger.sync(BANK_SYNC_A, feed_file)
        receipt = ledger.add_receipt("vault/aws.pdf", datetime(2026, 2, 4, tzinfo=timezone.utc))
        [suggestion] = ledger.suggest_receipts("merc_t1")
        assert suggestion.receipt.id == receipt.id
        assert suggestion.confidence == "date_proximate"

        ledger.link_receipt(receipt.id, "merc_t1")
        assert ledger.view(today=TODAY).links == {receipt.id: "merc_t1"}
        assert ledger.suggest_receipts("merc_t1") == []

        ledger.unlink_receipt(receipt.id)
        assert ledger.view(today=TODAY).links == {}

    def test_link_to_deleted_transaction_hidden(self, ledger):
        ledger.add_manual(_txn())
        receipt = ledger.add_receipt("vault/a.pdf")
        ledger.link_receipt(receipt.id, "m1")
        ledger.delete_transaction("m1")
        assert ledger.view(today=TODAY).links == {}
        assert ledger.repo.get_receipt("acme", receipt.id).linked_transaction_id == "m1"

    def test_suggest_for_unknown_transaction(self, ledger):
        with pytest.raises(KeyError):
            ledger.suggest_receipts("nope")

    def test_summary_with_invoices(self, ledger, feed_file):
        ledger.sync(BANK_SYNC_A, feed_file)
        ledger.repo.upsert_invoice("acme", Invoice(
            invoice_number="INV-1", client_name="Client", issue_date=date(2026, 1, 20),
            amount=Decimal("5000"), status="Paid",
        ))
        summary = ledger.view(today=TODAY, year=2026).summary
        assert summary.gross_income == Decimal("5000")
        assert summary.total_expenses == Decimal("224.12")
        assert summary.net_profit == Decimal("4775.88")


class TestLedgerBills:
    def test_save_rejects_blank_provider(self, ledger):
        with pytest.raises(InvalidRecord, match="provider"):
            ledger.save_bill(Bill(
                category="rent", provider="  ", amount=Decimal("10"),
                due_date=date(2026, 3, 1),
            ))
        assert ledger.bills() == []

    def test_mark_paid_records_payment_and_rolls_forward(self, ledger):
        bill = ledger.save_bill(Bill(
            category="internet", provider="Spectrum", amount=Decimal("89.99"),
            due_date=date(2026, 3, 5),
        ))
        paid, upcoming, payment = ledger.mark_bill_paid(bill.id, date(2026, 3, 4), "ACH")
        assert ledger.bill(bill.id).is_paid is True
        assert ledger.bill(upcoming.id).due_date == date(2026, 4, 5)
        [recorded] = ledger.payment_history(bill.id)
        assert recorded.id == payment.id
        assert recorded.payment_method == "ACH"
        assert recorded.amount == Decimal("89.99")

    def test_history_across_bills_newest_first(self, ledger):
        first = ledger.save_bill(Bill(
            category="rent", provider="Landlord LLC", amount=Decimal("1000"),
            due_date=date(2026, 1, 1), frequency="one-time",
        ))
        second = ledger.save_bill(Bill(
            category="rent", provider="Landlord LLC", amount=Decimal("1000"),
            due_date=date(2026, 2, 1), frequency="one-time",
        ))
        ledger.mark_bill_paid(first.id, date(2026, 1, 2))
        ledger.mark_bill_paid(second.id, date(2026, 2, 2))
        assert [p.bill_id for p in ledger.payment_history()] == [second.id, first.id]

    def test_cannot_pay_other_tenants_bill(self, repo, config, ledger):
        other = Ledger(repo, config, tenant_id="other")
        theirs = other.save_bill(Bill(
            category="rent", provider="Landlord LLC", amount=Decimal("1000"),
            due_date=date(2026, 3, 1),
        ))
        with pytest.raises(KeyError):
            ledger.mark_bill_paid(theirs.id, TODAY)
        assert other.bill(theirs.id).is_paid is False
        assert ledger.bills() == []
        assert len(other.bills()) == 1
        assert other.payment_history() == []

    def test_cannot_link_other_tenants_receipt(self, repo, config, ledger):
        other = Ledger(repo, config, tenant_id="other")
        receipt = other.add_receipt("vault/theirs.pdf")
        with pytest.raises(ReceiptNotFound):
            ledger.link_receipt(receipt.id, "m1")
        assert repo.get_receipt("other", receipt.id).linked_transaction_id is None

    def test_delete_removes_natural_key_duplicates(self, ledger, feed_file):
        ledger.add_manual(_txn())
        ledger.sync(BANK_SYNC_A, feed_file)
        ledger.delete_transaction("merc_t1")
        assert "m1" not in [t.id for t in ledger.transactions()]
