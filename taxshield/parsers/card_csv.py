"""Credit-card statement CSV parser.

Detects the layout from the header row:

  capital_one  Transaction Date,Posted Date,Card No.,Description,Category,Debit,Credit
  chase        Transaction Date,Post Date,Description,Category,Type,Amount,Memo
  amex         Date,Description,Amount   (also any generic date/description/amount file)

Card statements are unverified. Rows with a zero, blank or unparseable
amount, or an unparseable date, are skipped. Capital One credits (payments
to the card) have no Debit value and are skipped too.

Ids are deterministic: card name + date + description + amount, plus an
occurrence counter for identical rows within one file. Re-importing the
same statement, or an overlapping one, reproduces the same ids.
"""

from __future__ import annotations

import csv
import logging
from decimal import Decimal
from pathlib import Path

from taxshield.database.models import CARD_IMPORT, Transaction

from .bank_feed import guess_category
from .base import BaseParser, InvalidRecord, compute_record_id, parse_amount, parse_date

logger = logging.getLogger(__name__)

DEFAULT_CARD_NAME = "External Card"

# format -> (date column, description column, amount column, category column)
_LAYOUTS = {
    "capital_one": ("posted date", "description", "debit", "category"),
    "chase": ("transaction date", "description", "amount", "category"),
    "amex": ("date", "description", "amount", None),
}


def detect_layout(header: list[str]) -> str | None:
    cols = {h.strip().lower() for h in header}
    if "posted date" in cols and "debit" in cols:
        return "capital_one"
    if "transaction date" in cols and "amount" in cols:
        return "chase"
    if {"date", "description", "amount"} <= cols:
        return "amex"
    return None


class CardStatementParser(BaseParser):
    """Parse card statement CSV exports into card-import transactions.

    Args:
        card_name: Label for the card, used in ids and context.
        category_guesses: Keyword rules for rows without a category column.
        default_category: Used when no guess matches.
    """

    source = CARD_IMPORT

    def __init__(
        self,
        card_name: str = DEFAULT_CARD_NAME,
        category_guesses: list[dict] | None = None,
        default_category: str = "Operations",
    ):
        super().__init__()
        self.card_name = card_name or DEFAULT_CARD_NAME
        self.category_guesses = category_guesses or []
        self.default_category = default_category
        self.layout: str | None = None

    def detect(self, file_path: Path) -> bool:
        try:
            with open(file_path, "r", newline="", errors="replace") as f:
                header = next(csv.reader(f), [])
        except (OSError, UnicodeDecodeError):
            return False
        return detect_layout(header) is not None

    def parse(self, file_path: Path) -> list[Transaction]:
        with open(file_path, "r", newline="", encoding="utf-8-sig", errors="replace") as f:
            return self.parse_lines(f)

    def parse_lines(self, lines) -> list[Transaction]:
        """Parse an iterable of CSV lines (header first)."""
        self.skipped_count = 0  # Reset for each parse
        reader = csv.reader(lines)
        header = next(reader, None)
        if not header:
            return []
        self.layout = detect_layout(header)
        if self.layout is None:
            raise ValueError(f"Unrecognised card statement header: {header}")

        index = {h.strip().lower(): i for i, h in enumerate(header)}
        date_col, desc_col, amount_col, cat_col = _LAYOUTS[self.layout]

        transactions: list[Transaction] = []
        occurrences: dict[tuple, int] = {}
        for row in reader:
            if not any(cell.strip() for cell in row):
                continue
            try:
                txn_date = parse_date(_cell(row, index, date_col))
                raw_amount = _cell(row, index, amount_col)
                if not raw_amount:
                    raise InvalidRecord("no charge amount")
                amount = parse_amount(raw_amount)
                if amount == Decimal("0"):
                    raise InvalidRecord("zero amount")
            except InvalidRecord as e:
                self._skip(e)
                continue

            vendor = _cell(row, index, desc_col) or "Unknown"
            category = _cell(row, index, cat_col) if cat_col else ""
            if not category:
                category = guess_category(vendor, self.category_guesses, self.default_category)

            key = (txn_date, vendor, amount)
            occurrences[key] = occurrences.get(key, 0) + 1
            transactions.append(Transaction(
                id=compute_record_id(
                    "cc", self.card_name, txn_date.isoformat(), vendor,
                    amount, occurrences[key],
                ),
                date=txn_date,
                vendor=vendor,
                amount=amount,
                category=category,
                source=CARD_IMPORT,
                context=f"Credit Card: {self.card_name}",
            ))

        logger.info(
            "Parsed %d transaction(s) from %s statement (%s), skipped %d",
            len(transactions), self.card_name, self.layout, self.skipped_count,
        )
        return transactions


def _cell(row: list[str], index: dict[str, int], column: str | None) -> str:
    if column is None or column not in index:
        return ""
    i = index[column]
    return row[i].strip() if i < len(row) else ""
