"""Receipt linking: receipt -> transaction links and link suggestions.

Each receipt links to at most one transaction; a transaction can carry many
receipts. The inverse lookup is rebuilt from the full link set on every call,
so an unlink is visible immediately.

Suggestions are two-tiered. Unlinked receipts captured within the window
(default ±7 calendar days, inclusive) of the transaction date are
"date_proximate", closest first. If nothing falls in the window, the most
recently captured unlinked receipts come back tagged "fallback" so the
caller can present them as a weaker guess.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime, timezone

from taxshield.database.models import Receipt, Transaction

logger = logging.getLogger(__name__)

WINDOW_DAYS = 7
FALLBACK_LIMIT = 5

DATE_PROXIMATE = "date_proximate"
FALLBACK = "fallback"


class ReceiptNotFound(KeyError):
    """Raised when linking or unlinking a receipt id the linker doesn't hold."""

    def __init__(self, receipt_id: str):
        self.receipt_id = receipt_id
        super().__init__(receipt_id)

    def __str__(self) -> str:
        return f"Receipt not found: {self.receipt_id}"


@dataclass
class ReceiptSuggestion:
    receipt: Receipt
    confidence: str  # "date_proximate" or "fallback"
    day_distance: int


@dataclass
class TransactionSuggestion:
    transaction: Transaction
    confidence: str
    day_distance: int


def captured_key(receipt: Receipt) -> datetime:
    """Capture time as an aware datetime; naive times are taken as UTC."""
    dt = receipt.captured_at
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


def day_distance(receipt: Receipt, on: date) -> int:
    """Whole calendar days between a receipt's capture date and a date."""
    return abs((receipt.captured_at.date() - on).days)


def suggest_receipts(
    txn: Transaction,
    receipts: Iterable[Receipt],
    window_days: int = WINDOW_DAYS,
    fallback_limit: int = FALLBACK_LIMIT,
) -> list[ReceiptSuggestion]:
    """Propose unlinked receipts for a transaction."""
    unlinked = [r for r in receipts if not r.linked_transaction_id]

    nearby = [
        ReceiptSuggestion(r, DATE_PROXIMATE, day_distance(r, txn.date))
        for r in unlinked
        if day_distance(r, txn.date) <= window_days
    ]
    if nearby:
        # Closest first; same distance -> newest capture, then id for stability
        nearby.sort(key=lambda s: s.receipt.id)
        nearby.sort(key=lambda s: captured_key(s.receipt), reverse=True)
        nearby.sort(key=lambda s: s.day_distance)
        return nearby

    recent = sorted(unlinked, key=lambda r: r.id)
    recent.sort(key=captured_key, reverse=True)
    return [
        ReceiptSuggestion(r, FALLBACK, day_distance(r, txn.date))
        for r in recent[:fallback_limit]
    ]


def suggest_transactions(
    receipt: Receipt,
    transactions: Iterable[Transaction],
    window_days: int = WINDOW_DAYS,
    fallback_limit: int = FALLBACK_LIMIT,
) -> list[TransactionSuggestion]:
    """Propose transactions for a receipt, mirroring suggest_receipts."""
    txns = list(transactions)
    nearby = [
        TransactionSuggestion(t, DATE_PROXIMATE, day_distance(receipt, t.date))
        for t in txns
        if day_distance(receipt, t.date) <= window_days
    ]
    if nearby:
        # Stable sort keeps canonical order within the same distance
        nearby.sort(key=lambda s: s.day_distance)
        return nearby

    recent = sorted(txns, key=lambda t: t.date, reverse=True)
    return [
        TransactionSuggestion(t, FALLBACK, day_distance(receipt, t.date))
        for t in recent[:fallback_limit]
    ]


class ReceiptLinker:
    """In-memory link state over a set of receipts.

    Seed it from the persisted receipt table; link() and unlink() mutate the
    held Receipt objects' linked_transaction_id only. Persisting the change
    is the caller's job.

    Args:
        receipts: Receipts to manage, keyed internally by id.
        window_days: Suggestion window, inclusive on both sides.
        fallback_limit: Max fallback suggestions.
    """

    def __init__(
        self,
        receipts: Iterable[Receipt] = (),
        window_days: int = WINDOW_DAYS,
        fallback_limit: int = FALLBACK_LIMIT,
    ):
        self._receipts: dict[str, Receipt] = {r.id: r for r in receipts}
        self.window_days = window_days
        self.fallback_limit = fallback_limit

    @property
    def receipts(self) -> list[Receipt]:
        return list(self._receipts.values())

    def add(self, receipt: Receipt) -> None:
        self._receipts[receipt.id] = receipt

    def get(self, receipt_id: str) -> Receipt:
        try:
            return self._receipts[receipt_id]
        except KeyError:
            raise ReceiptNotFound(receipt_id) from None

    def link(self, receipt_id: str, transaction_id: str) -> Receipt:
        """Link a receipt to a transaction, replacing any previous link."""
        receipt = self.get(receipt_id)
        previous = receipt.linked_transaction_id
        receipt.linked_transaction_id = transaction_id
        if previous and previous != transaction_id:
            logger.info(
                "Relinked receipt %s: %s -> %s", receipt_id, previous, transaction_id,
            )
        else:
            logger.debug("Linked receipt %s to %s", receipt_id, transaction_id)
        return receipt

    def unlink(self, receipt_id: str) -> Receipt:
        receipt = self.get(receipt_id)
        receipt.linked_transaction_id = None
        logger.debug("Unlinked receipt %s", receipt_id)
        return receipt

    def transaction_for(self, receipt_id: str) -> str | None:
        return self.get(receipt_id).linked_transaction_id

    def receipts_for(self, transaction_id: str) -> list[Receipt]:
        """All receipts currently linked to a transaction, oldest capture first."""
        linked = [
            r for r in self._receipts.values()
            if r.linked_transaction_id == transaction_id
        ]
        return sorted(linked, key=captured_key)

    def link_table(self, valid_transaction_ids: Iterable[str] | None = None) -> dict[str, str]:
        """receipt_id -> transaction_id for every linked receipt.

        With valid_transaction_ids, links to transactions no longer in the
        canonical list (deleted records) are left out.
        """
        valid = set(valid_transaction_ids) if valid_transaction_ids is not None else None
        table: dict[str, str] = {}
        for r in self._receipts.values():
            if not r.linked_transaction_id:
                continue
            if valid is not None and r.linked_transaction_id not in valid:
                logger.info(
                    "Receipt %s links to missing transaction %s; hiding link",
                    r.id, r.linked_transaction_id,
                )
                continue
            table[r.id] = r.linked_transaction_id
        return table

    def suggest(self, txn: Transaction) -> list[ReceiptSuggestion]:
        return suggest_receipts(
            txn, self._receipts.values(),
            window_days=self.window_days,
            fallback_limit=self.fallback_limit,
        )
