"""Tax summary: per-line expense totals, gross income, and tax estimates.

Every transaction contributes one amount: its externally supplied
deductible amount when an analysis exists, else the raw amount
(unanalyzed transactions count as fully deductible until analyzed).
That same amount feeds the line total and the category total, and
total_expenses is the sum of the line totals, so the figures always
reconcile exactly.

The estimates are independent formulas and never feed back into net profit:
  self-employment tax = max(0, net) * 0.9235 * 0.153
  QBI deduction       = max(0, net) * 0.20
  potential credits   = sum(deductible amounts from analyses) * 0.06
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from decimal import Decimal

from taxshield.categorize.tax_lines import TaxLineTable, classify
from taxshield.database.models import Invoice, Transaction

logger = logging.getLogger(__name__)

SE_TAX_BASE_RATE = Decimal("0.9235")
SE_TAX_RATE = Decimal("0.153")
QBI_RATE = Decimal("0.20")
CREDIT_RATE = Decimal("0.06")

ZERO = Decimal("0")


@dataclass
class TaxSummary:
    """Derived per-period aggregate. Recomputed, never stored."""
    gross_income: Decimal
    line_totals: dict[str, Decimal]
    expenses_by_category: dict[str, Decimal]
    total_expenses: Decimal
    net_profit: Decimal
    estimated_self_employment_tax: Decimal
    estimated_qbi: Decimal
    potential_credits: Decimal
    year: int | None = None
    line_assignments: dict[str, str] = field(default_factory=dict)
    skipped_count: int = 0


def expense_amount(txn: Transaction) -> Decimal:
    """Amount a transaction contributes to expense totals."""
    if txn.analysis is not None and txn.analysis.deductible_amount is not None:
        return txn.analysis.deductible_amount
    return txn.amount


def self_employment_tax(net_profit: Decimal) -> Decimal:
    return max(ZERO, net_profit) * SE_TAX_BASE_RATE * SE_TAX_RATE


def qbi_deduction(net_profit: Decimal) -> Decimal:
    return max(ZERO, net_profit) * QBI_RATE


def potential_credits(deductible_total: Decimal) -> Decimal:
    return deductible_total * CREDIT_RATE


def summarize(
    transactions: Iterable[Transaction],
    invoices: Iterable[Invoice],
    table: TaxLineTable,
    year: int | None = None,
) -> TaxSummary:
    """Aggregate transactions and invoices into a TaxSummary.

    Args:
        transactions: Canonical transaction list.
        invoices: Invoices; only those in a paid state count as income.
        table: Ordered tax-line rule table.
        year: If given, only transactions dated and invoices issued in this
            calendar year are included.

    A transaction that cannot be aggregated (e.g. a non-numeric amount from
    a hand-edited record) is skipped, logged, and counted in skipped_count.
    """
    line_totals: dict[str, Decimal] = {line_id: ZERO for line_id in table.line_ids}
    by_category: dict[str, Decimal] = {}
    assignments: dict[str, str] = {}
    deductible_total = ZERO
    skipped = 0

    for txn in transactions:
        try:
            if year is not None and txn.date.year != year:
                continue
            amount = Decimal(expense_amount(txn))
            line_id = classify(txn, table)
            analysed = (
                txn.analysis is not None
                and txn.analysis.deductible_amount is not None
            )
            deductible = Decimal(txn.analysis.deductible_amount) if analysed else ZERO
        except (TypeError, ValueError, ArithmeticError, AttributeError) as e:
            skipped += 1
            logger.warning("Skipping transaction %s in summary: %s", getattr(txn, "id", "?"), e)
            continue

        line_totals[line_id] += amount
        by_category[txn.category] = by_category.get(txn.category, ZERO) + amount
        assignments[txn.id] = line_id
        deductible_total += deductible

    gross_income = ZERO
    for inv in invoices:
        if year is not None and inv.issue_date.year != year:
            continue
        if inv.is_paid:
            gross_income += inv.amount

    total_expenses = sum(line_totals.values(), ZERO)
    net_profit = gross_income - total_expenses

    if skipped:
        logger.warning("Tax summary skipped %d transaction(s)", skipped)

    return TaxSummary(
        year=year,
        gross_income=gross_income,
        line_totals=line_totals,
        expenses_by_category=by_category,
        total_expenses=total_expenses,
        net_profit=net_profit,
        estimated_self_employment_tax=self_employment_tax(net_profit),
        estimated_qbi=qbi_deduction(net_profit),
        potential_credits=potential_credits(deductible_total),
        line_assignments=assignments,
        skipped_count=skipped,
    )
