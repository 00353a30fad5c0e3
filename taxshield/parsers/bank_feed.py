"""Bank-feed parser: raw bank-sync JSON exports -> verified Transactions.

Two feed shapes are supported:

bank-sync-A  {"id", "postedAt" | "createdAt", "counterpartyName", "amount",
              "bankDescription", "note" | "externalMemo"}
bank-sync-B  {"transaction_id", "date", "merchant_name" | "name", "amount",
              "category": [top, sub, ...], "payment_channel"}

Ids are prefixed per source ("merc_", "plaid_") so feeds can never
collide with each other, and re-syncs reproduce the same ids. Amounts
become magnitudes. Records lacking id, date or amount are skipped.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from taxshield.database.models import BANK_SYNC_A, BANK_SYNC_B, Transaction

from .base import BaseParser, InvalidRecord, parse_amount, parse_date

logger = logging.getLogger(__name__)

ID_PREFIXES = {BANK_SYNC_A: "merc_", BANK_SYNC_B: "plaid_"}

DEFAULT_CATEGORY = "Operations"
UNMAPPED_FEED_CATEGORY = "Other Expenses"


def guess_category(
    text: str,
    guesses: list[dict] | None,
    default: str = DEFAULT_CATEGORY,
) -> str:
    """First guess whose keyword appears in the text, else the default.

    guesses: [{"category": "Software/SaaS", "keywords": ["aws", ...]}, ...]
    """
    haystack = (text or "").lower()
    for rule in guesses or []:
        for keyword in rule.get("keywords", []):
            if keyword and str(keyword).lower() in haystack:
                return rule["category"]
    return default


def load_feed_records(file_path: Path) -> list:
    """Read a feed export: a JSON list, or an object with a
    "transactions" list (the shape both feed APIs return)."""
    with open(file_path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("transactions")
    if not isinstance(data, list):
        raise ValueError(f"No transaction list in {file_path}")
    return data


class BankFeedParser(BaseParser):
    """Map one bank feed's raw records onto Transactions.

    Args:
        source: BANK_SYNC_A or BANK_SYNC_B.
        category_guesses: Keyword rules for records without a category.
            Configure in config/rules.yaml.
        default_category: Used when no guess matches.
        category_map: bank-sync-B top-level category -> ledger category.
    """

    def __init__(
        self,
        source: str,
        category_guesses: list[dict] | None = None,
        default_category: str = DEFAULT_CATEGORY,
        category_map: dict[str, str] | None = None,
    ):
        super().__init__()
        if source not in ID_PREFIXES:
            raise ValueError(f"Not a bank feed source: {source}")
        self.source = source
        self.category_guesses = category_guesses or []
        self.default_category = default_category
        self.category_map = category_map or {}

    def detect(self, file_path: Path) -> bool:
        """True for a JSON export whose first record has this feed's id field."""
        if Path(file_path).suffix.lower() != ".json":
            return False
        try:
            records = load_feed_records(file_path)
        except (OSError, ValueError):
            return False
        if not records or not isinstance(records[0], dict):
            return False
        id_field = "id" if self.source == BANK_SYNC_A else "transaction_id"
        return id_field in records[0]

    def parse(self, file_path: Path) -> list[Transaction]:
        return self.parse_records(load_feed_records(file_path))

    def parse_records(self, records: list) -> list[Transaction]:
        transactions: list[Transaction] = []
        self.skipped_count = 0  # Reset for each parse

        for record in records:
            try:
                if not isinstance(record, dict):
                    raise InvalidRecord(f"expected a mapping, got {type(record).__name__}")
                if self.source == BANK_SYNC_A:
                    transactions.append(self._map_sync_a(record))
                else:
                    transactions.append(self._map_sync_b(record))
            except InvalidRecord as e:
                self._skip(e)

        logger.info(
            "%s: parsed %d record(s), skipped %d",
            self.source, len(transactions), self.skipped_count,
        )
        return transactions

    def _record_id(self, native_id) -> str:
        native = str(native_id)
        prefix = ID_PREFIXES[self.source]
        return native if native.startswith(prefix) else f"{prefix}{native}"

    def _map_sync_a(self, record: dict) -> Transaction:
        native_id = record.get("id")
        if not native_id:
            raise InvalidRecord("missing id")
        try:
            txn_date = parse_date(record.get("postedAt") or record.get("createdAt"))
            amount = parse_amount(record.get("amount"))
        except InvalidRecord as e:
            raise InvalidRecord(e.reason, str(native_id)) from e

        vendor = (record.get("counterpartyName") or "").strip() or "Unknown Vendor"
        description = record.get("bankDescription") or ""
        note = record.get("note") or record.get("externalMemo") or description
        return Transaction(
            id=self._record_id(native_id),
            date=txn_date,
            vendor=vendor,
            amount=amount,
            category=guess_category(
                f"{description} {vendor}", self.category_guesses, self.default_category,
            ),
            source=self.source,
            context=note or "Bank transfer",
            external_id=str(native_id),
            verified=True,
        )

    def _map_sync_b(self, record: dict) -> Transaction:
        native_id = record.get("transaction_id")
        if not native_id:
            raise InvalidRecord("missing transaction_id")
        try:
            txn_date = parse_date(record.get("date"))
            amount = parse_amount(record.get("amount"))
        except InvalidRecord as e:
            raise InvalidRecord(e.reason, str(native_id)) from e

        vendor = (record.get("merchant_name") or record.get("name") or "").strip()
        if not vendor:
            raise InvalidRecord("missing merchant name", str(native_id))

        path = [str(c) for c in record.get("category") or []]
        if path:
            category = self.category_map.get(path[0], UNMAPPED_FEED_CATEGORY)
        else:
            category = guess_category(vendor, self.category_guesses, self.default_category)

        context_parts = [" > ".join(path)] if path else []
        if record.get("payment_channel"):
            context_parts.append(str(record["payment_channel"]))
        return Transaction(
            id=self._record_id(native_id),
            date=txn_date,
            vendor=vendor,
            amount=amount,
            category=category,
            source=self.source,
            context=" | ".join(context_parts) or None,
            external_id=str(native_id),
            verified=True,
        )
