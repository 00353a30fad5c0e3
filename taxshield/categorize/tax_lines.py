"""Tax-line classification: maps free-text categories onto reporting lines.

The rule table is closed and ordered. A transaction lands on the first line
where its category contains one of the line's keywords, or one of the
keywords contains the category (case-insensitive, either direction). First
match wins, so table order is the tie-break. Anything that matches nothing,
including an empty category, lands on the designated fallback line.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from taxshield.database.models import Transaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TaxLineRule:
    """One reporting line and the category keywords that route to it."""
    line_id: str
    line: str
    label: str
    keywords: tuple[str, ...]


@dataclass(frozen=True)
class TaxLineTable:
    rules: tuple[TaxLineRule, ...]
    fallback_line_id: str

    def __iter__(self):
        return iter(self.rules)

    def __len__(self) -> int:
        return len(self.rules)

    @property
    def line_ids(self) -> list[str]:
        return [r.line_id for r in self.rules]

    def rule(self, line_id: str) -> TaxLineRule | None:
        for r in self.rules:
            if r.line_id == line_id:
                return r
        return None


@dataclass
class LineMatch:
    """Outcome of classifying a single category."""
    line_id: str
    keyword: str | None = None
    is_fallback: bool = False


def load_table(lines: list[dict], fallback_line: str | None) -> TaxLineTable:
    """Build a TaxLineTable from the tax_lines.yaml structure.

    Raises:
        ValueError: On a duplicate line id, a line without an id, or a
            fallback that is missing or not one of the lines.
    """
    rules: list[TaxLineRule] = []
    seen: set[str] = set()
    for entry in lines:
        line_id = entry.get("id")
        if not line_id:
            raise ValueError(f"Tax line missing id: {entry!r}")
        if line_id in seen:
            raise ValueError(f"Duplicate tax line id: {line_id}")
        seen.add(line_id)
        keywords = tuple(
            str(k) for k in entry.get("keywords", []) if str(k).strip()
        )
        rules.append(TaxLineRule(
            line_id=line_id,
            line=str(entry.get("line", "")),
            label=entry.get("label", line_id),
            keywords=keywords,
        ))
    if not fallback_line:
        raise ValueError("tax_lines.yaml must name a fallback_line")
    if fallback_line not in seen:
        raise ValueError(f"Fallback line '{fallback_line}' is not in the table")
    return TaxLineTable(rules=tuple(rules), fallback_line_id=fallback_line)


def keyword_matches(text: str, keyword: str) -> bool:
    """Bidirectional case-insensitive substring containment.

    Empty strings never match: "" would otherwise be contained in every
    keyword and swallow blank categories into the first line.
    """
    a = text.strip().casefold()
    b = keyword.strip().casefold()
    if not a or not b:
        return False
    return b in a or a in b


def explain(category: str | None, table: TaxLineTable) -> LineMatch:
    """Classify a category string, reporting which keyword decided it."""
    if category:
        text = str(category)
        for rule in table:
            for keyword in rule.keywords:
                if keyword_matches(text, keyword):
                    return LineMatch(line_id=rule.line_id, keyword=keyword)
    return LineMatch(line_id=table.fallback_line_id, is_fallback=True)


def classify(txn: Transaction, table: TaxLineTable) -> str:
    """Return the reporting line id for a transaction. Never raises."""
    result = explain(txn.category, table)
    if result.is_fallback:
        logger.debug(
            "No tax line for category %r (txn %s), using %s",
            txn.category, txn.id, result.line_id,
        )
    return result.line_id
