"""
Document store tests

Tests cover:
1. Transaction atomicity (rollback on a raising callback)
2. No lost updates under sequential and threaded writers
3. Busy policy when the mutation lock is held
4. Cached reads and forced-fresh reads
5. Write failures surfaced to the caller
6. Audit entries written only after commit
"""

import json
import threading
from unittest.mock import Mock, patch

import pytest

from franchise_signage.audit import AuditLogger
from franchise_signage.database import DocumentStore
from franchise_signage.errors import Corrupt, StoreBusy, StoreWriteError
from franchise_signage.models import MutationResult, empty_document


# ============================================================
# Fixtures
# ============================================================

@pytest.fixture
def audit_file(tmp_path):
    return tmp_path / "audit.log"


@pytest.fixture
def store(tmp_path, audit_file):
    """Store over a freshly initialized document"""
    store = DocumentStore(str(tmp_path / "database.json"),
                          audit_logger=AuditLogger(str(audit_file)),
                          cache_ttl=60, lock_timeout=0.2)
    doc = empty_document()
    doc['counter'] = 0
    store.write(doc)
    return store


def _increment(db):
    db['counter'] += 1
    return db['counter']


# ============================================================
# Test: Atomicity
# ============================================================

class TestTransactionAtomicity:

    def test_raising_callback_leaves_file_untouched(self, store):
        """A failed mutation persists nothing"""
        with open(store.db_file, 'rb') as f:
            before = f.read()

        def broken(db):
            db['counter'] = 99
            db['franchises'].append({'id': 'half-written'})
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            store.transact(broken)

        with open(store.db_file, 'rb') as f:
            assert f.read() == before
        assert store.load(fresh=True)['counter'] == 0

    def test_callback_gets_private_copy(self, store):
        """Mutating a loaded document does not leak into the store"""
        snapshot = store.load()
        snapshot['counter'] = 42
        assert store.load()['counter'] == 0

    def test_plain_return_value_passes_through(self, store):
        assert store.transact(_increment) == 1

    def test_mutation_result_value_is_unwrapped(self, store):
        result = store.transact(lambda db: MutationResult(value={'ok': True}))
        assert result == {'ok': True}


# ============================================================
# Test: No Lost Updates
# ============================================================

class TestNoLostUpdates:

    def test_sequential_increments(self, store):
        for _ in range(25):
            store.transact(_increment)
        assert store.load(fresh=True)['counter'] == 25

    def test_threaded_increments_with_retry(self, store):
        """Concurrent writers that retry on StoreBusy never lose an update"""
        workers, per_worker = 4, 10

        def worker():
            done = 0
            while done < per_worker:
                try:
                    store.transact(_increment, timeout=5)
                    done += 1
                except StoreBusy:
                    continue

        threads = [threading.Thread(target=worker) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert store.load(fresh=True)['counter'] == workers * per_worker


# ============================================================
# Test: Busy Policy
# ============================================================

class TestBusyPolicy:

    def test_fails_fast_while_lock_held(self, store):
        store._write_lock.acquire()
        try:
            with pytest.raises(StoreBusy):
                store.transact(_increment, timeout=0)
        finally:
            store._write_lock.release()
        assert store.load(fresh=True)['counter'] == 0

    def test_bounded_wait_then_busy(self, store):
        store._write_lock.acquire()
        try:
            with pytest.raises(StoreBusy):
                store.transact(_increment, timeout=0.05)
        finally:
            store._write_lock.release()

    def test_nested_transaction_is_rejected(self, store):
        """A callback cannot start a second transaction"""
        def outer(db):
            store.transact(_increment, timeout=0)

        with pytest.raises(StoreBusy):
            store.transact(outer)
        assert store.load(fresh=True)['counter'] == 0


# ============================================================
# Test: Cache
# ============================================================

class TestCache:

    def test_cached_read_can_be_stale(self, tmp_path):
        clock = Mock(return_value=100.0)
        store = DocumentStore(str(tmp_path / "db.json"), cache_ttl=5, clock=clock)
        store.write(empty_document())
        store.load()

        # Another writer replaces the file behind our back
        doc = empty_document()
        doc['franchises'].append({'id': 'external'})
        with open(store.db_file, 'w') as f:
            json.dump(doc, f)

        assert store.load()['franchises'] == []
        assert store.load(fresh=True)['franchises'] == [{'id': 'external'}]

    def test_cache_expires(self, tmp_path):
        now = [100.0]
        store = DocumentStore(str(tmp_path / "db.json"), cache_ttl=5, clock=lambda: now[0])
        store.write(empty_document())

        doc = empty_document()
        doc['content'].append({'id': 'c1'})
        with open(store.db_file, 'w') as f:
            json.dump(doc, f)

        now[0] += 6
        assert store.load()['content'] == [{'id': 'c1'}]

    def test_commit_refreshes_cache(self, store):
        store.load()
        store.transact(_increment)
        assert store.load()['counter'] == 1


# ============================================================
# Test: Failures
# ============================================================

class TestFailures:

    def test_write_failure_is_surfaced(self, store):
        with patch('franchise_signage.database.os.replace', side_effect=OSError("disk full")):
            with pytest.raises(StoreWriteError):
                store.transact(_increment)
        assert store.load(fresh=True)['counter'] == 0

    def test_unserializable_document_is_rejected(self, store):
        def bad(db):
            db['counter'] = object()

        with pytest.raises(StoreWriteError):
            store.transact(bad)
        assert store.load(fresh=True)['counter'] == 0

    def test_lock_released_after_failure(self, store):
        with pytest.raises(ValueError):
            store.transact(Mock(side_effect=ValueError("nope")))
        assert store.transact(_increment) == 1

    def test_corrupt_file_raises_corrupt(self, tmp_path):
        path = tmp_path / "db.json"
        path.write_text("{not json")
        with pytest.raises(Corrupt):
            DocumentStore(str(path)).read_file()


# ============================================================
# Test: Audit
# ============================================================

class TestAudit:

    def test_audit_written_after_commit(self, store, audit_file):
        store.transact(lambda db: MutationResult(audit=('REGISTER_FRANCHISE', {'deviceId': 'dev-1'})))
        line = audit_file.read_text().strip()
        assert '[REGISTER_FRANCHISE]' in line
        assert line.endswith('{"deviceId": "dev-1"}')

    def test_no_audit_on_rollback(self, store, audit_file):
        def failing(db):
            raise RuntimeError("no")

        with pytest.raises(RuntimeError):
            store.transact(failing)
        assert not audit_file.exists()

    def test_audit_failure_does_not_undo_commit(self, tmp_path):
        store = DocumentStore(str(tmp_path / "db.json"),
                              audit_logger=AuditLogger(str(tmp_path / "missing-dir" / "audit.log")))
        doc = empty_document()
        doc['counter'] = 0
        store.write(doc)

        def bump(db):
            db['counter'] += 1
            return MutationResult(value=db['counter'], audit=('BUMP', {}))

        assert store.transact(bump) == 1
        assert store.load(fresh=True)['counter'] == 1
