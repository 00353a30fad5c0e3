"""Dataclass models shared by the engine and the SQLite schema.

Amounts are Decimal magnitudes (never negative). Dates are datetime.date;
receipt capture times and batch fetch times are timezone-aware datetimes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from uuid import uuid4


# Source identifiers, in fixed merge priority order.
BANK_SYNC_A = "bank-sync-A"
BANK_SYNC_B = "bank-sync-B"
CARD_IMPORT = "card-import"
MANUAL = "manual"
REMOTE_STORE = "remote-store"

SOURCES = (BANK_SYNC_A, BANK_SYNC_B, CARD_IMPORT, MANUAL, REMOTE_STORE)
BANK_SOURCES = frozenset({BANK_SYNC_A, BANK_SYNC_B})

BILL_CATEGORIES = (
    "rent", "electricity", "gas", "water", "trash",
    "internet", "phone", "insurance", "other",
)
BILL_FREQUENCIES = ("monthly", "quarterly", "annually", "one-time")
DEFAULT_PAYMENT_METHOD = "Company Card"

INVOICE_PAID = "Paid"


def _new_id() -> str:
    return str(uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Attachment:
    name: str
    url: str
    id: str = field(default_factory=_new_id)
    content_type: str | None = None
    date_added: str | None = None


@dataclass
class TaxAnalysis:
    """Externally produced tax opinion. The engine only reads it."""
    deductible_amount: Decimal | None = None
    risk_level: str | None = None
    cited_sections: list[str] = field(default_factory=list)
    status: str | None = None


@dataclass
class Transaction:
    id: str
    date: date
    vendor: str
    amount: Decimal
    category: str
    source: str
    context: str | None = None
    external_id: str | None = None
    verified: bool = False
    attachments: list[Attachment] = field(default_factory=list)
    analysis: TaxAnalysis | None = None

    @property
    def natural_key(self) -> tuple[str, date, Decimal]:
        return (self.vendor, self.date, self.amount)


@dataclass
class TransactionBatch:
    """One source's records as fetched at a point in time."""
    source: str
    transactions: list[Transaction] = field(default_factory=list)
    fetched_at: datetime = field(default_factory=_now)
    error: str | None = None

    @property
    def verified(self) -> bool:
        return self.source in BANK_SOURCES


@dataclass
class Bill:
    category: str
    provider: str
    amount: Decimal
    due_date: date
    id: str = field(default_factory=lambda: f"bill_{uuid4().hex[:12]}")
    frequency: str = "monthly"
    is_paid: bool = False
    paid_date: date | None = None
    notes: str | None = None


@dataclass
class BillPayment:
    """A payment recorded when a bill is marked paid."""
    bill_id: str
    amount: Decimal
    paid_date: date
    payment_method: str = DEFAULT_PAYMENT_METHOD
    id: str = field(default_factory=lambda: f"pay_{uuid4().hex[:12]}")
    confirmation_number: str | None = None
    notes: str | None = None


@dataclass
class Receipt:
    captured_at: datetime
    document_ref: str
    id: str = field(default_factory=_new_id)
    linked_transaction_id: str | None = None


@dataclass
class Invoice:
    invoice_number: str
    client_name: str
    issue_date: date
    amount: Decimal
    id: str = field(default_factory=_new_id)
    due_date: date | None = None
    status: str = "Draft"
    description: str | None = None

    @property
    def is_paid(self) -> bool:
        return self.status.lower() == INVOICE_PAID.lower()
