"""End-to-end recompute: merge -> match bills -> link receipts -> summarize.

recompute() is a pure function of its snapshot and can be re-run any number
of times. Ledger wraps it with the tenant's persisted state (cached source
batches, bills, receipts, invoices) for the CLI and the drop-folder watcher.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from uuid import uuid4

from taxshield.bills.matcher import (
    DUE_SOON_DAYS,
    BillWithPayments,
    mark_paid,
    match_bills,
    provider_keyword,
)
from taxshield.categorize.summary import TaxSummary, summarize
from taxshield.categorize.tax_lines import TaxLineTable
from taxshield.config import Config
from taxshield.database.merge import MergeResult, merge
from taxshield.database.models import (
    BANK_SOURCES,
    MANUAL,
    SOURCES,
    DEFAULT_PAYMENT_METHOD,
    Bill,
    BillPayment,
    Invoice,
    Receipt,
    Transaction,
    TransactionBatch,
)
from taxshield.database.repository import Repository
from taxshield.database.source_cache import SourceCache
from taxshield.parsers.bank_feed import BankFeedParser
from taxshield.parsers.base import InvalidRecord, parse_amount, parse_date
from taxshield.parsers.card_csv import CardStatementParser
from taxshield.receipts.linker import ReceiptLinker, ReceiptSuggestion

logger = logging.getLogger(__name__)


@dataclass
class LedgerView:
    """Everything derived from one snapshot."""
    merge: MergeResult
    bills: list[BillWithPayments]
    links: dict[str, str]
    summary: TaxSummary
    computed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def transactions(self) -> list[Transaction]:
        return self.merge.transactions


def recompute(
    batches: Iterable[TransactionBatch],
    bills: Iterable[Bill],
    receipts: Iterable[Receipt],
    invoices: Iterable[Invoice],
    table: TaxLineTable,
    today: date | None = None,
    year: int | None = None,
    priority: Iterable[str] = SOURCES,
    due_soon_days: int = DUE_SOON_DAYS,
) -> LedgerView:
    """Derive the canonical ledger and every view built on it."""
    merged = merge(batches, priority)
    canonical = merged.transactions
    linker = ReceiptLinker(receipts)
    return LedgerView(
        merge=merged,
        bills=match_bills(bills, canonical, today=today, due_soon_days=due_soon_days),
        links=linker.link_table({t.id for t in canonical}),
        summary=summarize(canonical, invoices, table, year=year),
    )


def new_manual_transaction(
    vendor: str,
    amount,
    txn_date,
    category: str = "",
    context: str | None = None,
) -> Transaction:
    """Build a user-entered transaction.

    Raises:
        InvalidRecord: On an empty vendor or a bad date/amount.
    """
    if not vendor or not vendor.strip():
        raise InvalidRecord("missing vendor")
    return Transaction(
        id=f"manual_{uuid4().hex[:12]}",
        date=parse_date(txn_date),
        vendor=vendor.strip(),
        amount=parse_amount(amount),
        category=category,
        source=MANUAL,
        context=context,
    )


class Ledger:
    """One tenant's ledger over the repository.

    Args:
        repo: Repository with migrations applied.
        config: Application config.
        tenant_id: Already-resolved tenant scope.
    """

    def __init__(self, repo: Repository, config: Config, tenant_id: str = "default"):
        self.repo = repo
        self.config = config
        self.tenant_id = tenant_id
        self.cache = SourceCache(repo, tenant_id)

    # ── Ingestion ────────────────────────────────────────────

    def sync(self, source: str, file_path: Path) -> TransactionBatch:
        """Load a bank-feed export, replacing the source's cached batch.

        A file that cannot be read leaves the cache untouched and comes back
        as an empty batch with error set.
        """
        if source not in BANK_SOURCES:
            raise ValueError(f"Not a bank feed source: {source}")
        parser = BankFeedParser(
            source,
            category_guesses=self.config.category_guesses,
            default_category=self.config.default_category,
            category_map=self.config.feed_category_map,
        )
        try:
            transactions = parser.parse(Path(file_path))
        except (OSError, ValueError) as e:
            logger.warning("Sync of %s failed, keeping cached batch: %s", source, e)
            return TransactionBatch(source, [], error=str(e))
        batch = TransactionBatch(source, transactions)
        self.cache.store(batch)
        if parser.skipped_count:
            logger.warning("%s: %d record(s) skipped", source, parser.skipped_count)
        return batch

    def import_card(
        self, file_path: Path, card_name: str | None = None,
    ) -> tuple[int, int, int]:
        """Append a card statement to the card-import cache entry.

        Returns (added, duplicates, skipped).
        """
        parser = CardStatementParser(
            card_name or Path(file_path).stem,
            category_guesses=self.config.category_guesses,
            default_category=self.config.default_category,
        )
        transactions = parser.parse(Path(file_path))
        added, duplicates = self.cache.append(parser.source, transactions)
        return added, duplicates, parser.skipped_count

    def add_manual(self, txn: Transaction) -> Transaction:
        self.cache.append(MANUAL, [txn])
        return txn

    def delete_transaction(self, transaction_id: str) -> list[str]:
        return self.cache.remove_transaction(transaction_id)

    # ── Bills ────────────────────────────────────────────────

    def bills(self) -> list[Bill]:
        return self.repo.get_bills(self.tenant_id)

    def bill(self, bill_id: str) -> Bill:
        """Raises KeyError if the tenant has no such bill."""
        bill = self.repo.get_bill(self.tenant_id, bill_id)
        if bill is None:
            raise KeyError(bill_id)
        return bill

    def save_bill(self, bill: Bill) -> Bill:
        """Persist a bill.

        Raises:
            InvalidRecord: If the provider is blank.
        """
        provider_keyword(bill.provider)
        return self.repo.upsert_bill(self.tenant_id, bill)

    def mark_bill_paid(
        self,
        bill_id: str,
        paid_date: date | None = None,
        payment_method: str = DEFAULT_PAYMENT_METHOD,
    ) -> tuple[Bill, Bill | None, BillPayment]:
        """Mark one of the tenant's bills paid, record the payment and
        store the next occurrence of a recurring bill.

        Raises:
            KeyError: If the tenant has no such bill.
        """
        paid, upcoming, payment = mark_paid(self.bill(bill_id), paid_date, payment_method)
        self.save_bill(paid)
        self.repo.insert_bill_payment(self.tenant_id, payment)
        if upcoming is not None:
            self.save_bill(upcoming)
        return paid, upcoming, payment

    def payment_history(self, bill_id: str | None = None) -> list[BillPayment]:
        """Recorded bill payments, newest first; all bills when bill_id is None."""
        return self.repo.get_bill_payments(self.tenant_id, bill_id)

    # ── Receipts ─────────────────────────────────────────────

    def linker(self) -> ReceiptLinker:
        return ReceiptLinker(
            self.repo.get_receipts(self.tenant_id),
            window_days=self.config.receipt_window_days,
            fallback_limit=self.config.receipt_fallback_limit,
        )

    def add_receipt(self, document_ref: str, captured_at: datetime | None = None) -> Receipt:
        receipt = Receipt(
            captured_at=captured_at or datetime.now(timezone.utc),
            document_ref=document_ref,
        )
        return self.repo.upsert_receipt(self.tenant_id, receipt)

    def link_receipt(self, receipt_id: str, transaction_id: str) -> Receipt:
        receipt = self.linker().link(receipt_id, transaction_id)
        self.repo.set_receipt_link(self.tenant_id, receipt_id, transaction_id)
        return receipt

    def unlink_receipt(self, receipt_id: str) -> Receipt:
        receipt = self.linker().unlink(receipt_id)
        self.repo.set_receipt_link(self.tenant_id, receipt_id, None)
        return receipt

    def suggest_receipts(self, transaction_id: str) -> list[ReceiptSuggestion]:
        """Suggestions for a transaction in the current canonical ledger.

        Raises:
            KeyError: If the transaction is not in the ledger.
        """
        for txn in self.transactions():
            if txn.id == transaction_id:
                return self.linker().suggest(txn)
        raise KeyError(transaction_id)

    # ── Views ────────────────────────────────────────────────

    def transactions(self) -> list[Transaction]:
        return merge(self.cache.batches(), self.config.source_priority).transactions

    def view(self, today: date | None = None, year: int | None = None) -> LedgerView:
        view = recompute(
            self.cache.batches(),
            self.repo.get_bills(self.tenant_id),
            self.repo.get_receipts(self.tenant_id),
            self.repo.get_invoices(self.tenant_id),
            self.config.tax_line_table(),
            today=today,
            year=year,
            priority=self.config.source_priority,
            due_soon_days=self.config.due_soon_days,
        )
        logger.info(
            "Recomputed %s: %d transaction(s), %d bill(s), %d link(s), expenses %s",
            self.tenant_id, len(view.transactions), len(view.bills),
            len(view.links), view.summary.total_expenses,
        )
        return view
