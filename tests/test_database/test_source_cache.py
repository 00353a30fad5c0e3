"""Tests for the per-(tenant, source) batch cache."""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from taxshield.database.models import (
    BANK_SYNC_A,
    CARD_IMPORT,
    MANUAL,
    REMOTE_STORE,
    TaxAnalysis,
    Transaction,
    TransactionBatch,
)
from taxshield.database.source_cache import SourceCache

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def cache(repo):
    return SourceCache(repo, "acme")


def _txn(**kw) -> Transaction:
    defaults = dict(
        id="t1", date=date(2026, 2, 14), vendor="Vercel",
        amount=Decimal("40.00"), category="Software/SaaS", source=MANUAL,
    )
    defaults.update(kw)
    return Transaction(**defaults)


class TestStore:
    def test_round_trip(self, cache):
        txn = _txn(
            id="merc_1", source=BANK_SYNC_A, verified=True,
            analysis=TaxAnalysis(deductible_amount=Decimal("32.50"), risk_level="Low"),
        )
        cache.store(TransactionBatch(BANK_SYNC_A, [txn], T0))
        batch = cache.get(BANK_SYNC_A)
        assert batch.fetched_at == T0
        assert batch.transactions == [txn]

    def test_store_replaces_whole_batch(self, cache):
        cache.store(TransactionBatch(BANK_SYNC_A, [
            _txn(id="merc_1", source=BANK_SYNC_A),
            _txn(id="merc_2", source=BANK_SYNC_A),
        ], T0))
        cache.store(TransactionBatch(BANK_SYNC_A, [_txn(id="merc_3", source=BANK_SYNC_A)], T0))
        assert [t.id for t in cache.get(BANK_SYNC_A).transactions] == ["merc_3"]

    def test_unknown_source_rejected(self, cache):
        with pytest.raises(ValueError, match="Unknown source"):
            cache.store(TransactionBatch("fax-machine", []))

    def test_missing_entry_is_none(self, cache):
        assert cache.get(MANUAL) is None

    def test_tenants_isolated(self, repo, cache):
        cache.store(TransactionBatch(MANUAL, [_txn()], T0))
        assert SourceCache(repo, "someone-else").get(MANUAL) is None

    def test_bank_records_load_verified(self, cache):
        cache.store(TransactionBatch(BANK_SYNC_A, [_txn(source=BANK_SYNC_A)], T0))
        assert cache.get(BANK_SYNC_A).transactions[0].verified is True

    def test_remote_store_keeps_verified_flag(self, cache):
        cache.store(TransactionBatch(REMOTE_STORE, [
            _txn(id="r1", source=REMOTE_STORE, verified=True),
            _txn(id="r2", vendor="X", source=REMOTE_STORE, verified=False),
        ], T0))
        flags = [t.verified for t in cache.get(REMOTE_STORE).transactions]
        assert flags == [True, False]


class TestAppend:
    def test_appends_and_dedups_by_id(self, cache):
        assert cache.append(CARD_IMPORT, [_txn(id="cc_1", source=CARD_IMPORT)], T0) == (1, 0)
        added, dupes = cache.append(CARD_IMPORT, [
            _txn(id="cc_1", source=CARD_IMPORT),
            _txn(id="cc_2", vendor="Uber", source=CARD_IMPORT),
        ], T0)
        assert (added, dupes) == (1, 1)
        assert [t.id for t in cache.get(CARD_IMPORT).transactions] == ["cc_1", "cc_2"]

    def test_append_to_empty_creates_entry(self, cache):
        cache.append(MANUAL, [_txn()])
        assert len(cache.get(MANUAL).transactions) == 1


class TestCorruption:
    def test_corrupt_payload_loads_as_error_batch(self, repo, cache):
        repo.upsert_source_batch("acme", MANUAL, "{not json", T0.isoformat())
        batch = cache.get(MANUAL)
        assert batch.transactions == []
        assert batch.error.startswith("corrupt cache")

    def test_non_list_payload(self, repo, cache):
        repo.upsert_source_batch("acme", MANUAL, '{"id": "x"}', T0.isoformat())
        assert cache.get(MANUAL).error is not None

    def test_invalid_records_dropped(self, repo, cache):
        payload = (
            '[{"id": "m1", "date": "2026-02-14", "vendor": "AWS", "amount": "12.00"},'
            ' {"id": "m2", "date": "not a date", "vendor": "AWS", "amount": "12.00"},'
            ' {"id": "m3", "date": "2026-02-14", "vendor": "", "amount": "1"}]'
        )
        repo.upsert_source_batch("acme", MANUAL, payload, T0.isoformat())
        batch = cache.get(MANUAL)
        assert [t.id for t in batch.transactions] == ["m1"]
        assert batch.error is None


class TestBatchesAndRemoval:
    def test_batches_in_priority_order(self, cache):
        cache.store(TransactionBatch(MANUAL, [_txn()], T0))
        cache.store(TransactionBatch(BANK_SYNC_A, [_txn(id="a", source=BANK_SYNC_A)], T0))
        assert [b.source for b in cache.batches()] == [BANK_SYNC_A, MANUAL]

    def test_drop(self, cache):
        cache.store(TransactionBatch(MANUAL, [_txn()], T0))
        assert cache.drop(MANUAL) is True
        assert cache.batches() == []

    def test_remove_transaction_from_every_batch(self, cache):
        cache.store(TransactionBatch(MANUAL, [_txn(id="dup"), _txn(id="keep", vendor="X")], T0))
        cache.store(TransactionBatch(REMOTE_STORE, [_txn(id="dup", source=REMOTE_STORE)], T0))
        assert cache.remove_transaction("dup") == [MANUAL, REMOTE_STORE]
        assert [t.id for t in cache.get(MANUAL).transactions] == ["keep"]
        assert cache.get(REMOTE_STORE).transactions == []

    def test_remove_takes_natural_key_duplicates(self, cache):
        cache.store(TransactionBatch(BANK_SYNC_A, [_txn(id="merc_1", source=BANK_SYNC_A)], T0))
        cache.store(TransactionBatch(
            CARD_IMPORT, [_txn(id="cc_1", source=CARD_IMPORT), _txn(id="cc_2", vendor="X", source=CARD_IMPORT)], T0,
        ))
        assert cache.remove_transaction("merc_1") == [BANK_SYNC_A, CARD_IMPORT]
        assert [t.id for t in cache.get(CARD_IMPORT).transactions] == ["cc_2"]

    def test_remove_unknown_is_noop(self, cache):
        cache.store(TransactionBatch(MANUAL, [_txn()], T0))
        assert cache.remove_transaction("nope") == []

    def test_removal_keeps_fetch_time(self, cache):
        cache.store(TransactionBatch(MANUAL, [_txn(id="a"), _txn(id="b", vendor="X")], T0))
        cache.remove_transaction("a")
        assert cache.get(MANUAL).fetched_at == T0
