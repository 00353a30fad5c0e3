"""Base parser: shared interface, record validation, and utility functions."""

from __future__ import annotations

import hashlib
import logging
import re
from abc import ABC, abstractmethod
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from pathlib import Path

from taxshield.database.models import (
    BANK_SOURCES,
    REMOTE_STORE,
    SOURCES,
    Attachment,
    TaxAnalysis,
    Transaction,
)

logger = logging.getLogger(__name__)


class InvalidRecord(ValueError):
    """Raised when a raw record is missing a required field or is malformed."""

    def __init__(self, reason: str, record_id: str | None = None):
        self.reason = reason
        self.record_id = record_id
        label = f" ({record_id})" if record_id else ""
        super().__init__(f"Invalid record{label}: {reason}")


class BaseParser(ABC):
    """Abstract base for all source parsers.

    Attributes:
        skipped_count: Number of records dropped during parsing (missing
            fields, unparseable dates or amounts). Check this after parse()
            to report "N records skipped" to the caller.
    """

    source: str = ""

    def __init__(self):
        self.skipped_count: int = 0

    @abstractmethod
    def parse(self, file_path: Path) -> list[Transaction]:
        """Parse an export file and return normalized transactions.

        Implementations should increment self.skipped_count for every record
        dropped as an InvalidRecord.
        """

    @abstractmethod
    def detect(self, file_path: Path) -> bool:
        """Return True if this parser can handle the given file."""

    def _skip(self, err: InvalidRecord) -> None:
        self.skipped_count += 1
        logger.warning("%s: skipping record: %s", self.source or "parser", err)


# ── Field normalisation ───────────────────────────────────


_DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%m/%d/%y", "%m-%d-%Y")


def parse_amount(value) -> Decimal:
    """Parse an amount into a non-negative Decimal magnitude.

    Accepts numbers and strings with currency symbols or thousands
    separators ("$1,234.50", "-12.00"). Floats go through str() so 0.1
    stays 0.1 rather than its binary expansion.
    """
    if value is None or isinstance(value, bool):
        raise InvalidRecord(f"missing amount: {value!r}")
    if isinstance(value, Decimal):
        amount = value
    else:
        text = str(value).strip().replace("$", "").replace(",", "")
        if not text:
            raise InvalidRecord("missing amount")
        try:
            amount = Decimal(text)
        except InvalidOperation as e:
            raise InvalidRecord(f"bad amount: {value!r}") from e
    if not amount.is_finite():
        raise InvalidRecord(f"bad amount: {value!r}")
    return abs(amount)


def parse_date(value) -> date:
    """Parse a calendar date, dropping any time component.

    Handles ISO dates, ISO timestamps ("2026-01-15T08:30:00Z"), and
    US-style M/D/YYYY or M/D/YY dates.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not value or not isinstance(value, str):
        raise InvalidRecord(f"missing date: {value!r}")
    text = value.strip()
    # Timestamps: keep only the calendar part
    if re.match(r"^\d{4}-\d{2}-\d{2}[T ]", text):
        text = text[:10]
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    raise InvalidRecord(f"bad date: {value!r}")


def parse_datetime(value) -> datetime:
    """Parse an ISO timestamp. Naive values are treated as UTC."""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError as e:
            raise InvalidRecord(f"bad timestamp: {value!r}") from e
    else:
        raise InvalidRecord(f"missing timestamp: {value!r}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def compute_record_id(prefix: str, *parts) -> str:
    """Deterministic id for sources that don't supply one.

    SHA256 over the joined parts, truncated. Re-importing the same file
    yields the same ids.
    """
    key = "|".join(str(p) for p in parts)
    digest = hashlib.sha256(key.encode()).hexdigest()[:16]
    return f"{prefix}_{digest}"


# ── Canonical dict form (cache payloads, manual/remote-store records) ──


def transaction_from_dict(record: dict, source: str | None = None) -> Transaction:
    """Build a Transaction from its canonical dict form.

    Raises:
        InvalidRecord: If id, date, vendor or amount is missing or malformed.
    """
    if not isinstance(record, dict):
        raise InvalidRecord(f"expected a mapping, got {type(record).__name__}")
    txn_id = record.get("id")
    if not txn_id:
        raise InvalidRecord("missing id")
    vendor = record.get("vendor")
    if not vendor or not str(vendor).strip():
        raise InvalidRecord("missing vendor", str(txn_id))

    src = source or record.get("source")
    if src not in SOURCES:
        raise InvalidRecord(f"unknown source: {src!r}", str(txn_id))

    try:
        txn_date = parse_date(record.get("date"))
        amount = parse_amount(record.get("amount"))
    except InvalidRecord as e:
        raise InvalidRecord(e.reason, str(txn_id)) from e

    analysis = None
    raw_analysis = record.get("analysis")
    if isinstance(raw_analysis, dict):
        deductible = raw_analysis.get("deductible_amount")
        analysis = TaxAnalysis(
            deductible_amount=(
                parse_amount(deductible) if deductible is not None else None
            ),
            risk_level=raw_analysis.get("risk_level"),
            cited_sections=list(raw_analysis.get("cited_sections") or []),
            status=raw_analysis.get("status"),
        )

    attachments = [
        Attachment(
            id=a.get("id") or f"att_{i}",
            name=a.get("name", ""),
            url=a.get("url", ""),
            content_type=a.get("content_type"),
            date_added=a.get("date_added"),
        )
        for i, a in enumerate(record.get("attachments") or [])
        if isinstance(a, dict)
    ]

    return Transaction(
        id=str(txn_id),
        date=txn_date,
        vendor=str(vendor),
        amount=amount,
        category=str(record.get("category") or ""),
        source=src,
        context=record.get("context"),
        external_id=record.get("external_id"),
        verified=_is_verified(src, record),
        attachments=attachments,
        analysis=analysis,
    )


def _is_verified(source: str, record: dict) -> bool:
    """Bank feeds are always verified; remote-store copies keep their flag."""
    if source in BANK_SOURCES:
        return True
    if source == REMOTE_STORE:
        return bool(record.get("verified", False))
    return False


def transaction_to_dict(txn: Transaction) -> dict:
    """Inverse of transaction_from_dict. JSON-safe."""
    analysis = None
    if txn.analysis is not None:
        deductible = txn.analysis.deductible_amount
        analysis = {
            "deductible_amount": str(deductible) if deductible is not None else None,
            "risk_level": txn.analysis.risk_level,
            "cited_sections": list(txn.analysis.cited_sections),
            "status": txn.analysis.status,
        }
    return {
        "id": txn.id,
        "date": txn.date.isoformat(),
        "vendor": txn.vendor,
        "amount": str(txn.amount),
        "category": txn.category,
        "source": txn.source,
        "context": txn.context,
        "external_id": txn.external_id,
        "verified": txn.verified,
        "attachments": [
            {
                "id": a.id,
                "name": a.name,
                "url": a.url,
                "content_type": a.content_type,
                "date_added": a.date_added,
            }
            for a in txn.attachments
        ],
        "analysis": analysis,
    }


def parse_records(
    records: list, source: str,
) -> tuple[list[Transaction], int]:
    """Convert canonical dict records, dropping invalid ones.

    Returns (transactions, skipped_count).
    """
    transactions: list[Transaction] = []
    skipped = 0
    for record in records:
        try:
            transactions.append(transaction_from_dict(record, source))
        except InvalidRecord as e:
            skipped += 1
            logger.warning("%s: skipping record: %s", source, e)
    return transactions, skipped
