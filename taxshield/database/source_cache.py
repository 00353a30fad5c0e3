"""Per-(tenant, source) cache of the last fetched batch.

Bank syncs replace their entry wholesale on every refresh: records missing
from the new sync are gone. Card imports and manual entries accumulate,
so they append to the existing entry (deduplicated by id). The merge
engine reads the cached batches and never touches the cache itself.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from datetime import datetime, timezone

from taxshield.database.models import SOURCES, Transaction, TransactionBatch
from taxshield.database.repository import Repository
from taxshield.parsers.base import parse_datetime, parse_records, transaction_to_dict

logger = logging.getLogger(__name__)


class SourceCache:
    """Cache entries for one tenant, backed by the source_batches table.

    Args:
        repo: Repository with migrations applied.
        tenant_id: Already-resolved tenant scope.
    """

    def __init__(self, repo: Repository, tenant_id: str):
        self.repo = repo
        self.tenant_id = tenant_id

    def store(self, batch: TransactionBatch) -> None:
        """Replace the cached batch for batch.source."""
        _check_source(batch.source)
        payload = json.dumps([transaction_to_dict(t) for t in batch.transactions])
        self.repo.upsert_source_batch(
            self.tenant_id, batch.source, payload,
            _as_utc(batch.fetched_at).isoformat(), batch.error,
        )
        logger.info(
            "Cached %d record(s) for %s/%s",
            len(batch.transactions), self.tenant_id, batch.source,
        )

    def append(
        self, source: str, transactions: Iterable[Transaction],
        fetched_at: datetime | None = None,
    ) -> tuple[int, int]:
        """Add records to a source's entry, skipping ids already cached.

        Returns (added_count, duplicate_count).
        """
        existing = self.get(source)
        records = list(existing.transactions) if existing else []
        seen = {t.id for t in records}
        added = duplicates = 0
        for txn in transactions:
            if txn.id in seen:
                duplicates += 1
                continue
            seen.add(txn.id)
            records.append(txn)
            added += 1
        self.store(TransactionBatch(
            source=source,
            transactions=records,
            fetched_at=fetched_at or datetime.now(timezone.utc),
        ))
        return added, duplicates

    def get(self, source: str) -> TransactionBatch | None:
        """Load a cached batch. A corrupt payload loads as an empty batch
        with error set rather than failing the whole ledger."""
        row = self.repo.get_source_batch(self.tenant_id, source)
        if row is None:
            return None
        try:
            fetched_at = parse_datetime(row.fetched_at)
        except ValueError:
            fetched_at = datetime.fromtimestamp(0, timezone.utc)
        try:
            records = json.loads(row.payload)
            if not isinstance(records, list):
                raise ValueError("payload is not a list")
        except ValueError as e:
            logger.warning("Corrupt cache entry for %s/%s: %s", self.tenant_id, source, e)
            return TransactionBatch(source, [], fetched_at, error=f"corrupt cache: {e}")

        transactions, skipped = parse_records(records, source)
        if skipped:
            logger.warning(
                "Dropped %d invalid cached record(s) for %s/%s",
                skipped, self.tenant_id, source,
            )
        return TransactionBatch(source, transactions, fetched_at, error=row.error)

    def batches(self) -> list[TransactionBatch]:
        """Every cached batch for the tenant, in source priority order."""
        out = []
        for source in SOURCES:
            batch = self.get(source)
            if batch is not None:
                out.append(batch)
        return out

    def drop(self, source: str) -> bool:
        return self.repo.delete_source_batch(self.tenant_id, source)

    def remove_transaction(self, transaction_id: str) -> list[str]:
        """Delete a transaction from every cached batch holding it.

        Records in any source that share its natural key (vendor, date,
        amount) go too, so a lower-priority duplicate does not take its
        place in the ledger. Returns the sources touched. A later bank sync
        that still carries the record brings it back.
        """
        batches = self.batches()
        keys = {
            t.natural_key
            for batch in batches
            for t in batch.transactions
            if t.id == transaction_id
        }
        removed_from: list[str] = []
        for batch in batches:
            kept = [
                t for t in batch.transactions
                if t.id != transaction_id and t.natural_key not in keys
            ]
            if len(kept) == len(batch.transactions):
                continue
            self.store(TransactionBatch(
                batch.source, kept, batch.fetched_at, batch.error,
            ))
            removed_from.append(batch.source)
        if removed_from:
            logger.info("Removed %s from %s", transaction_id, ", ".join(removed_from))
        return removed_from


def _check_source(source: str) -> None:
    if source not in SOURCES:
        raise ValueError(f"Unknown source: {source}")


def _as_utc(dt: datetime) -> datetime:
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)
