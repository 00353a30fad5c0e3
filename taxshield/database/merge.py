"""Merge/dedup engine: N source batches -> one canonical transaction list.

Rules, applied in order:
1. Latest batch per source. A fresh sync replaces the prior cached batch
   for that source in full; older batches of the same source are ignored.
2. Source priority. Batches are concatenated in priority order (bank feeds
   first, then card-import, manual, remote-store). Records within a batch
   keep their order.
3. Natural key (vendor, date, amount). Records sharing a key are one
   economic event and exactly one survives. A verified record beats an
   unverified one; between verified records the more recently fetched
   batch wins; otherwise the first record in output order wins. Losers
   are dropped whole, never merged field by field.
4. Id uniqueness. A surviving record whose id was already emitted is
   dropped, so ids stay unique in the canonical list.

The engine is pure. It never rewrites ids and never persists anything.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone

from taxshield.database.models import SOURCES, Transaction, TransactionBatch

logger = logging.getLogger(__name__)


class SourceUnavailable(Exception):
    """Raised by a fetcher when its source batch cannot be loaded."""

    def __init__(self, source: str, reason: str = ""):
        self.source = source
        self.reason = reason
        detail = f": {reason}" if reason else ""
        super().__init__(f"Source '{source}' unavailable{detail}")


@dataclass
class MergeResult:
    """Canonical list plus what the merge discarded."""
    transactions: list[Transaction] = field(default_factory=list)
    duplicate_count: int = 0
    id_collision_count: int = 0
    superseded_batch_count: int = 0
    per_source: dict[str, int] = field(default_factory=dict)
    unavailable_sources: list[str] = field(default_factory=list)

    @property
    def ids(self) -> list[str]:
        return [t.id for t in self.transactions]


@dataclass
class _Candidate:
    txn: Transaction
    fetched_at: datetime
    position: int


def _aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


def latest_batches(
    batches: Iterable[TransactionBatch],
) -> tuple[dict[str, TransactionBatch], int]:
    """Keep the most recently fetched batch per source.

    Returns (source -> batch, number of superseded batches). On equal
    fetch times the batch supplied later wins.
    """
    latest: dict[str, TransactionBatch] = {}
    superseded = 0
    for batch in batches:
        current = latest.get(batch.source)
        if current is not None:
            superseded += 1
            if _aware(batch.fetched_at) < _aware(current.fetched_at):
                continue
        latest[batch.source] = batch
    return latest, superseded


def _ordered_sources(
    present: Iterable[str], priority: Iterable[str],
) -> list[str]:
    order = list(priority)
    extra = sorted(s for s in present if s not in order)
    if extra:
        logger.warning("Sources without a priority merge last: %s", extra)
    return [s for s in order if s in present] + extra


def _beats(challenger: _Candidate, holder: _Candidate) -> bool:
    if not challenger.txn.verified:
        return False
    if not holder.txn.verified:
        return True
    return challenger.fetched_at > holder.fetched_at


def merge(
    batches: Iterable[TransactionBatch],
    priority: Iterable[str] = SOURCES,
) -> MergeResult:
    """Merge source batches into the canonical transaction list.

    Args:
        batches: One or more batches per source, each pre-ordered.
        priority: Source names in output order.

    Returns:
        MergeResult with the canonical list. Merging the same inputs twice
        yields the same list in the same order.
    """
    latest, superseded = latest_batches(batches)
    result = MergeResult(superseded_batch_count=superseded)

    candidates: list[_Candidate] = []
    for source in _ordered_sources(latest, priority):
        batch = latest[source]
        if batch.error:
            logger.warning("Source %s unavailable: %s", source, batch.error)
            result.unavailable_sources.append(source)
        fetched_at = _aware(batch.fetched_at)
        for txn in batch.transactions:
            candidates.append(_Candidate(txn, fetched_at, len(candidates)))

    # Pick one winner per natural key
    winners: dict[tuple, _Candidate] = {}
    for cand in candidates:
        key = cand.txn.natural_key
        holder = winners.get(key)
        if holder is None or _beats(cand, holder):
            winners[key] = cand

    emitted_ids: set[str] = set()
    for cand in candidates:
        txn = cand.txn
        if winners[txn.natural_key] is not cand:
            result.duplicate_count += 1
            logger.debug(
                "Dropping duplicate %s from %s (%s, %s, %s)",
                txn.id, txn.source, txn.vendor, txn.date, txn.amount,
            )
            continue
        if txn.id in emitted_ids:
            result.id_collision_count += 1
            logger.warning(
                "Dropping %s from %s: id already present in ledger",
                txn.id, txn.source,
            )
            continue
        emitted_ids.add(txn.id)
        result.transactions.append(txn)
        result.per_source[txn.source] = result.per_source.get(txn.source, 0) + 1

    logger.info(
        "Merged %d record(s) from %d source(s): %d kept, %d duplicate(s), "
        "%d id collision(s)",
        len(candidates), len(latest), len(result.transactions),
        result.duplicate_count, result.id_collision_count,
    )
    return result


Fetcher = Callable[[], "list[Transaction] | TransactionBatch"]


def fetch_batches(
    fetchers: Mapping[str, Fetcher],
    now: datetime | None = None,
) -> list[TransactionBatch]:
    """Call one fetcher per source and wrap the results as batches.

    A fetcher that raises degrades to an empty batch with error set; the
    remaining sources are still fetched.
    """
    fetched_at = now or datetime.now(timezone.utc)
    batches: list[TransactionBatch] = []
    for source, fetcher in fetchers.items():
        try:
            payload = fetcher()
        except SourceUnavailable as e:
            logger.warning("%s", e)
            batches.append(TransactionBatch(source, [], fetched_at, error=str(e)))
            continue
        except Exception as e:
            logger.exception("Fetching %s failed", source)
            batches.append(TransactionBatch(source, [], fetched_at, error=str(e)))
            continue
        if isinstance(payload, TransactionBatch):
            batches.append(payload)
        else:
            batches.append(TransactionBatch(source, list(payload), fetched_at))
    return batches
