"""
Migration runner tests

Tests cover:
1. Pending migrations applied in ascending order with one write
2. Re-running is a no-op
3. A failing step is discarded and halts the batch
4. The built-in schema upgrades
"""

import copy
from unittest.mock import patch

import pytest

from franchise_signage.database import DocumentStore
from franchise_signage.migrations import (MIGRATIONS, Migration, MigrationRunner,
                                          apply_migrations, current_version, upgrade)


# ============================================================
# Fixtures
# ============================================================

@pytest.fixture
def store(tmp_path):
    return DocumentStore(str(tmp_path / "database.json"), cache_ttl=0)


def legacy_document():
    """A version-0 document written before folders and tagged items existed"""
    return {
        'franchises': [
            {'id': 'f1', 'deviceId': 'dev-1', 'name': 'Mall', 'token': 't1'},
            {'id': 'f2', 'deviceId': 'dev-2', 'name': 'Airport', 'token': 't2',
             'createdAt': '2023-01-01T00:00:00Z', 'playbackOrder': 'random'},
        ],
        'content': [{'id': 'c1'}, {'id': 'c2'}],
        'assignments': {'dev-1': ['c1', {'type': 'content', 'id': 'c2'}, '']},
        '_metadata': {'version': 0},
    }


# ============================================================
# Test: Runner
# ============================================================

class TestMigrationRunner:

    def test_applies_all_pending_in_order(self, store):
        store.write(legacy_document())
        calls = []
        migrations = [
            Migration(2, 'second', lambda db: calls.append(2)),
            Migration(1, 'first', lambda db: calls.append(1)),
            Migration(3, 'third', lambda db: calls.append(3)),
        ]

        applied = MigrationRunner(store, migrations).run()

        assert applied == [1, 2, 3]
        assert calls == [1, 2, 3]
        assert current_version(store.load(fresh=True)) == 3

    def test_skips_already_applied(self, store):
        doc = legacy_document()
        doc['_metadata']['version'] = 2
        store.write(doc)
        calls = []
        migrations = [Migration(v, f'm{v}', lambda db, v=v: calls.append(v)) for v in (1, 2, 3)]

        assert MigrationRunner(store, migrations).run() == [3]
        assert calls == [3]

    def test_single_write_per_batch(self, store):
        store.write(legacy_document())
        with patch.object(store, 'write', wraps=store.write) as write:
            MigrationRunner(store).run()
        assert write.call_count == 1

    def test_second_run_leaves_document_unchanged(self, store):
        store.write(legacy_document())
        runner = MigrationRunner(store)
        runner.run()
        with open(store.db_file, 'rb') as f:
            before = f.read()

        assert runner.run() == []
        with open(store.db_file, 'rb') as f:
            assert f.read() == before
        assert runner.pending() == []

    def test_failing_step_is_discarded_and_halts(self, store):
        store.write(legacy_document())

        def touch(key):
            def up(db):
                db[key] = True
            return up

        def explode(db):
            db['partial'] = True
            raise RuntimeError("bad migration")

        migrations = [
            Migration(1, 'one', touch('one')),
            Migration(2, 'two', explode),
            Migration(3, 'three', touch('three')),
        ]

        applied = MigrationRunner(store, migrations).run()

        doc = store.load(fresh=True)
        assert applied == [1]
        assert current_version(doc) == 1
        assert doc.get('one') is True
        assert 'partial' not in doc
        assert 'three' not in doc

        runner = MigrationRunner(store, migrations)
        assert runner.run() == []
        assert runner.last_failure.version == 2
        assert 'two' in runner.last_failure.message

    def test_failed_step_retried_next_start(self, store):
        store.write(legacy_document())
        attempts = []

        def flaky(db):
            attempts.append(1)
            if len(attempts) == 1:
                raise RuntimeError("transient")
            db['flaky'] = True

        migrations = [Migration(1, 'flaky', flaky)]
        assert MigrationRunner(store, migrations).run() == []
        runner = MigrationRunner(store, migrations)
        assert runner.run() == [1]
        assert runner.last_failure is None
        assert store.load(fresh=True)['flaky'] is True

    def test_failure_is_reported(self):
        doc = legacy_document()
        migrations = [Migration(1, 'ok', lambda db: None), Migration(2, 'broken', lambda db: db['missing'])]
        applied, failure = upgrade(doc, migrations)
        assert applied == [1]
        assert failure.version == 2
        assert current_version(doc) == 1

    def test_missing_version_defaults_to_zero(self):
        assert current_version({}) == 0
        assert current_version({'_metadata': {'version': 'junk'}}) == 0


# ============================================================
# Test: Built-in Migrations
# ============================================================

class TestBuiltinMigrations:

    def test_versions_are_unique_and_ascending(self):
        versions = [m.version for m in MIGRATIONS]
        assert versions == sorted(set(versions))

    def test_legacy_document_upgraded(self):
        doc = legacy_document()
        applied = apply_migrations(doc)

        assert applied == [m.version for m in MIGRATIONS]
        assert doc['_metadata']['version'] == MIGRATIONS[-1].version
        assert doc['folders'] == [] and doc['otpTokens'] == {} and doc['analytics'] == []
        assert doc['assignments']['dev-1'] == [
            {'type': 'content', 'id': 'c1'},
            {'type': 'content', 'id': 'c2'},
        ]
        assert doc['franchises'][0]['createdAt']
        assert doc['franchises'][1]['createdAt'] == '2023-01-01T00:00:00Z'
        assert doc['franchises'][0]['playbackOrder'] == 'sequential'
        assert doc['franchises'][1]['playbackOrder'] == 'random'

    def test_builtins_are_idempotent(self):
        doc = legacy_document()
        apply_migrations(doc)
        upgraded = copy.deepcopy(doc)

        doc['_metadata']['version'] = 0
        apply_migrations(doc)
        doc['_metadata'].pop('createdAt', None)
        upgraded['_metadata'].pop('createdAt', None)
        assert doc == upgraded
