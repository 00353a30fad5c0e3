"""Bill matching: attaches transactions to user-declared recurring bills.

A bill's keyword is the first whitespace-delimited token of its provider,
case-folded. A transaction is a payment candidate when the keyword appears
in its vendor, or its whole vendor appears in the provider name. Containment
in either direction tolerates abbreviations on both sides:

  provider "PG&E"                  vendor "Pacific Gas and Electric PG&E Online"  -> match
  provider "Spectrum Internet"     vendor "Spectrum"                             -> match
  provider "Pacific Gas and Electric"  vendor "PG&E"                             -> no match

There is no date window and no exclusivity. A transaction can pay several
bills, and a bill with a short common token ("Water") can over-attract
payments. Both are accepted limitations of the heuristic.
"""

from __future__ import annotations

import calendar
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from datetime import date, timedelta
from decimal import Decimal

from taxshield.database.models import (
    BILL_CATEGORIES,
    DEFAULT_PAYMENT_METHOD,
    Bill,
    BillPayment,
    Transaction,
)
from taxshield.parsers.base import InvalidRecord

logger = logging.getLogger(__name__)

DUE_SOON_DAYS = 7
UPCOMING_DAYS = 30

STATUS_PAID = "Paid"
STATUS_OVERDUE = "Overdue"
STATUS_DUE_SOON = "DueSoon"
STATUS_UPCOMING = "Upcoming"


@dataclass
class BillWithPayments:
    """A bill plus the transactions that plausibly paid it."""
    bill: Bill
    status: str
    matched_transactions: list[Transaction] = field(default_factory=list)
    total_paid_amount: Decimal = Decimal("0")

    @property
    def payment_history(self) -> list[Transaction]:
        """Matched payments, newest first."""
        return self.matched_transactions


def provider_keyword(provider: str) -> str:
    """First whitespace token of the provider, case-folded.

    Raises:
        InvalidRecord: If the provider is empty; it is the only match seed.
    """
    tokens = (provider or "").split()
    if not tokens:
        raise InvalidRecord("bill provider is empty")
    return tokens[0].casefold()


def transaction_matches_bill(txn: Transaction, bill: Bill) -> bool:
    keyword = provider_keyword(bill.provider)
    vendor = (txn.vendor or "").strip().casefold()
    if not vendor:
        return False
    return keyword in vendor or vendor in bill.provider.casefold()


def bill_status(
    bill: Bill, today: date, due_soon_days: int = DUE_SOON_DAYS,
) -> str:
    if bill.is_paid:
        return STATUS_PAID
    if bill.due_date < today:
        return STATUS_OVERDUE
    if bill.due_date <= today + timedelta(days=due_soon_days):
        return STATUS_DUE_SOON
    return STATUS_UPCOMING


def match_bill(
    bill: Bill,
    transactions: Iterable[Transaction],
    today: date,
    due_soon_days: int = DUE_SOON_DAYS,
) -> BillWithPayments:
    """Build the payments view for one bill.

    Raises:
        InvalidRecord: If the bill has no provider.
    """
    provider_keyword(bill.provider)
    matched = [t for t in transactions if transaction_matches_bill(t, bill)]
    # Newest first; stable sort keeps canonical order for same-day payments
    matched.sort(key=lambda t: t.date, reverse=True)
    total = sum((t.amount for t in matched), Decimal("0"))
    return BillWithPayments(
        bill=bill,
        status=bill_status(bill, today, due_soon_days),
        matched_transactions=matched,
        total_paid_amount=total,
    )


def match_bills(
    bills: Iterable[Bill],
    transactions: Iterable[Transaction],
    today: date | None = None,
    due_soon_days: int = DUE_SOON_DAYS,
) -> list[BillWithPayments]:
    """Match every bill against the canonical transaction list.

    Bills come back sorted by due date. A bill without a provider is skipped
    and logged rather than failing the whole view.
    """
    today = today or date.today()
    txns = list(transactions)
    results: list[BillWithPayments] = []
    for bill in sorted(bills, key=lambda b: b.due_date):
        try:
            results.append(match_bill(bill, txns, today, due_soon_days))
        except InvalidRecord as e:
            logger.warning("Skipping bill %s: %s", bill.id, e)
    return results


# ── Recurring bills ───────────────────────────────────────


def _add_months(d: date, months: int) -> date:
    month_index = d.month - 1 + months
    year = d.year + month_index // 12
    month = month_index % 12 + 1
    day = min(d.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def next_due_date(due_date: date, frequency: str) -> date:
    """Due date of the next occurrence. One-time bills keep their date.

    Month-end dates clamp (Jan 31 monthly -> Feb 28/29).
    """
    if frequency == "monthly":
        return _add_months(due_date, 1)
    if frequency == "quarterly":
        return _add_months(due_date, 3)
    if frequency == "annually":
        return _add_months(due_date, 12)
    if frequency == "one-time":
        return due_date
    raise ValueError(f"Unknown bill frequency: {frequency}")


def mark_paid(
    bill: Bill,
    paid_date: date | None = None,
    payment_method: str = DEFAULT_PAYMENT_METHOD,
) -> tuple[Bill, Bill | None, BillPayment]:
    """Mark a bill paid and roll recurring bills forward.

    Returns (paid_bill, next_occurrence, payment). next_occurrence is None
    for one-time bills. payment records the bill's amount against its id.
    The input bill is not modified.
    """
    paid_on = paid_date or date.today()
    paid = replace(bill, is_paid=True, paid_date=paid_on)
    payment = BillPayment(
        bill_id=bill.id, amount=bill.amount, paid_date=paid_on,
        payment_method=payment_method,
    )
    if bill.frequency == "one-time":
        return paid, None, payment
    upcoming = Bill(
        category=bill.category,
        provider=bill.provider,
        amount=bill.amount,
        due_date=next_due_date(bill.due_date, bill.frequency),
        frequency=bill.frequency,
        notes=bill.notes,
    )
    logger.info(
        "Bill %s paid on %s; next %s due %s",
        bill.id, paid_on, upcoming.id, upcoming.due_date,
    )
    return paid, upcoming, payment


def upcoming_bills(
    bills: Iterable[Bill], today: date, days: int = UPCOMING_DAYS,
) -> list[Bill]:
    """Unpaid bills due between today and today + days, inclusive."""
    horizon = today + timedelta(days=days)
    return sorted(
        (b for b in bills if not b.is_paid and today <= b.due_date <= horizon),
        key=lambda b: b.due_date,
    )


def overdue_bills(bills: Iterable[Bill], today: date) -> list[Bill]:
    return sorted(
        (b for b in bills if not b.is_paid and b.due_date < today),
        key=lambda b: b.due_date,
    )


@dataclass
class MonthlyBillSummary:
    total_due: Decimal
    total_paid: Decimal
    by_category: dict[str, Decimal]
    bills: list[Bill]


def monthly_bill_summary(
    bills: Iterable[Bill], year: int, month: int,
) -> MonthlyBillSummary:
    """Totals for bills due in the given month. month is 1-12."""
    month_bills = [
        b for b in bills if b.due_date.year == year and b.due_date.month == month
    ]
    by_category = {c: Decimal("0") for c in BILL_CATEGORIES}
    for b in month_bills:
        key = b.category if b.category in by_category else "other"
        by_category[key] += b.amount
    return MonthlyBillSummary(
        total_due=sum((b.amount for b in month_bills), Decimal("0")),
        total_paid=sum((b.amount for b in month_bills if b.is_paid), Decimal("0")),
        by_category=by_category,
        bills=sorted(month_bills, key=lambda b: b.due_date),
    )


# ── Category keywords ─────────────────────────────────────

# Vendor/context substrings that identify a bill category's payments.
# Checked in this order by detect_bill_category.
BILL_CATEGORY_KEYWORDS: dict[str, tuple[str, ...]] = {
    "rent": ("rent", "landlord", "property management"),
    "electricity": ("edison", "electric", "pg&e", "power co"),
    "gas": ("socalgas", "socal gas", "gas company"),
    "water": ("water utility", "water bill", "water district"),
    "trash": ("waste management", "wm.com", "trash", "recycling", "garbage"),
    "internet": ("spectrum", "charter", "comcast", "internet", "broadband", "wifi"),
    "phone": ("verizon", "at&t", "t-mobile", "tmobile", "phone"),
    "insurance": ("insurance", "geico", "state farm", "allstate", "progressive"),
    "other": (),
}


def _search_text(txn: Transaction) -> str:
    return f"{txn.vendor or ''} {txn.context or ''}".casefold()


def matches_bill_category(txn: Transaction, category: str) -> bool:
    keywords = BILL_CATEGORY_KEYWORDS.get(category, ())
    text = _search_text(txn)
    return any(k in text for k in keywords)


def detect_bill_category(txn: Transaction) -> str | None:
    """First bill category whose keywords appear in the vendor or context."""
    text = _search_text(txn)
    for category, keywords in BILL_CATEGORY_KEYWORDS.items():
        if any(k in text for k in keywords):
            return category
    return None


@dataclass
class CategoryPaymentSummary:
    category: str
    total_paid: Decimal
    transaction_count: int
    average_payment: Decimal
    last_payment: Transaction | None
    payments: list[Transaction]


def category_payment_summary(
    transactions: Iterable[Transaction], category: str,
) -> CategoryPaymentSummary:
    """Totals for every transaction that looks like a payment in a bill category.

    Payments are newest first; "other" has no keywords and never matches.
    """
    matched = [t for t in transactions if matches_bill_category(t, category)]
    matched.sort(key=lambda t: t.date, reverse=True)
    total = sum((t.amount for t in matched), Decimal("0"))
    count = len(matched)
    return CategoryPaymentSummary(
        category=category,
        total_paid=total,
        transaction_count=count,
        average_payment=total / count if count else Decimal("0"),
        last_payment=matched[0] if matched else None,
        payments=matched,
    )
