"""
Backup and recovery tests

Tests cover:
1. Hour-keyed snapshots (one per hour, same hour overwrites)
2. Rotation keeps only the newest snapshots
3. Restore skips unparseable snapshots
4. Startup recovery for missing and corrupt documents
"""

import os
import json
import time
from datetime import datetime, timedelta, timezone

import pytest

from franchise_signage.backup import BackupManager
from franchise_signage.database import DocumentStore
from franchise_signage.models import empty_document


# ============================================================
# Fixtures
# ============================================================

@pytest.fixture
def store(tmp_path):
    return DocumentStore(str(tmp_path / "database.json"), cache_ttl=0)


@pytest.fixture
def backups(store, tmp_path):
    return BackupManager(store, str(tmp_path / "backups"), max_backups=24)


def _doc_with(marker):
    doc = empty_document()
    doc['franchises'].append({'id': marker, 'deviceId': marker})
    return doc


def _write_snapshot(backups, name, content, mtime):
    path = os.path.join(backups.backup_dir, name)
    with open(path, 'w') as f:
        f.write(content)
    os.utime(path, (mtime, mtime))
    return path


START = datetime(2024, 5, 1, 0, 0, tzinfo=timezone.utc)


# ============================================================
# Test: Snapshots
# ============================================================

class TestSnapshots:

    def test_snapshot_name_has_hour_granularity(self):
        name = BackupManager.snapshot_name(datetime(2024, 5, 1, 13, 59, tzinfo=timezone.utc))
        assert name == "db-2024-05-01-13.json"

    def test_backup_copies_document(self, store, backups):
        store.write(_doc_with('f1'))
        path = backups.backup_database(START)
        with open(path) as f:
            assert json.load(f)['franchises'][0]['id'] == 'f1'

    def test_same_hour_overwrites(self, store, backups):
        store.write(_doc_with('first'))
        backups.backup_database(START)
        store.write(_doc_with('second'))
        path = backups.backup_database(START + timedelta(minutes=30))

        assert len(backups.list_backups()) == 1
        with open(path) as f:
            assert json.load(f)['franchises'][0]['id'] == 'second'

    def test_missing_database_skips_backup(self, backups):
        assert backups.backup_database(START) is None
        assert backups.list_backups() == []


# ============================================================
# Test: Rotation
# ============================================================

class TestRotation:

    def test_thirty_hourly_cycles_keep_newest_24(self, store, backups):
        store.write(empty_document())
        for hour in range(30):
            backups.backup_database(START + timedelta(hours=hour))

        remaining = sorted(os.path.basename(p) for p in backups.list_backups())
        expected = sorted(BackupManager.snapshot_name(START + timedelta(hours=h)) for h in range(6, 30))
        assert remaining == expected

    def test_rotation_orders_by_mtime(self, backups):
        now = time.time()
        for i in range(5):
            _write_snapshot(backups, f"db-2024-01-0{i + 1}-00.json", "{}", now - (5 - i) * 3600)
        backups.max_backups = 2

        removed = backups.rotate_backups()

        assert len(removed) == 3
        assert sorted(os.path.basename(p) for p in backups.list_backups()) == [
            "db-2024-01-04-00.json", "db-2024-01-05-00.json"]

    def test_unrelated_files_are_ignored(self, backups):
        _write_snapshot(backups, "notes.txt", "keep me", time.time() - 10 ** 6)
        backups.max_backups = 0
        backups.rotate_backups()
        assert os.path.exists(os.path.join(backups.backup_dir, "notes.txt"))


# ============================================================
# Test: Restore
# ============================================================

class TestRestore:

    def test_restores_newest_valid_snapshot(self, store, backups):
        now = time.time()
        _write_snapshot(backups, "db-2024-01-01-00.json", json.dumps(_doc_with('old')), now - 7200)
        _write_snapshot(backups, "db-2024-01-01-01.json", json.dumps(_doc_with('new')), now - 3600)

        assert backups.restore_latest() is True
        assert store.load(fresh=True)['franchises'][0]['id'] == 'new'

    def test_skips_corrupt_snapshot(self, store, backups):
        now = time.time()
        _write_snapshot(backups, "db-2024-01-01-00.json", json.dumps(_doc_with('good')), now - 7200)
        _write_snapshot(backups, "db-2024-01-01-01.json", '{"truncated": ', now - 3600)

        assert backups.restore_latest() is True
        assert store.load(fresh=True)['franchises'][0]['id'] == 'good'

    def test_no_valid_snapshot(self, store, backups):
        _write_snapshot(backups, "db-2024-01-01-00.json", 'garbage', time.time())
        assert backups.restore_latest() is False
        assert not store.exists()


# ============================================================
# Test: Startup Recovery
# ============================================================

class TestRecovery:

    def test_valid_database_is_loaded(self, store, backups):
        store.write(_doc_with('live'))
        assert backups.recover() == 'loaded'
        assert store.load(fresh=True)['franchises'][0]['id'] == 'live'

    def test_missing_database_restored_from_backup(self, store, backups):
        _write_snapshot(backups, "db-2024-01-01-00.json", json.dumps(_doc_with('saved')), time.time())
        assert backups.recover() == 'restored'
        assert store.load(fresh=True)['franchises'][0]['id'] == 'saved'

    def test_missing_database_without_backup_initializes_empty(self, store, backups):
        assert backups.recover() == 'initialized'
        doc = store.load(fresh=True)
        assert doc['_metadata']['version'] == 0
        assert doc['franchises'] == [] and doc['assignments'] == {}

    def test_corrupt_database_is_preserved_and_restored(self, store, backups, tmp_path):
        _write_snapshot(backups, "db-2024-01-01-00.json", json.dumps(_doc_with('saved')), time.time())
        with open(store.db_file, 'w') as f:
            f.write('{"franchises": [')

        assert backups.recover() == 'restored'
        corrupt = [name for name in os.listdir(tmp_path) if name.startswith('database.json.corrupt.')]
        assert len(corrupt) == 1
        with open(tmp_path / corrupt[0]) as f:
            assert f.read() == '{"franchises": ['

    def test_corrupt_database_without_backup(self, store, backups, tmp_path):
        with open(store.db_file, 'w') as f:
            f.write('[1, 2')

        assert backups.recover() == 'initialized'
        assert any(name.startswith('database.json.corrupt.') for name in os.listdir(tmp_path))
        assert store.load(fresh=True)['_metadata']['version'] == 0


# ============================================================
# Test: Schedule
# ============================================================

class TestSchedule:

    def test_start_runs_initial_backup(self, store, backups):
        store.write(empty_document())
        backups.interval = 3600
        backups.start_schedule()
        try:
            assert len(backups.list_backups()) == 1
        finally:
            backups.stop_schedule()
