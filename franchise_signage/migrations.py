"""
@migrations
Ordered schema upgrades, tracked by ``_metadata.version``
"""

import copy
import logging
from collections import namedtuple
from typing import Dict, List, Optional, Sequence, Tuple

from .database import DocumentStore
from .errors import MigrationFailed
from .models import COLLECTIONS, SEQUENTIAL, normalize_items, utc_now_iso

logger = logging.getLogger(__name__)

Migration = namedtuple('Migration', ['version', 'name', 'up'])


def _initial_metadata(db: Dict) -> None:
    metadata = db.setdefault('_metadata', {})
    metadata.setdefault('createdAt', utc_now_iso())
    if not isinstance(db.get('assignments'), dict):
        db['assignments'] = {}
    for franchise in db.setdefault('franchises', []):
        if not franchise.get('createdAt'):
            franchise['createdAt'] = utc_now_iso()


def _ensure_collections(db: Dict) -> None:
    for name, factory in COLLECTIONS.items():
        if not isinstance(db.get(name), factory):
            db[name] = factory()


def _tag_assignment_items(db: Dict) -> None:
    assignments = db.get('assignments') or {}
    for device_id, raw_items in list(assignments.items()):
        assignments[device_id] = [item.to_dict() for item in normalize_items(raw_items)]


def _default_playback_order(db: Dict) -> None:
    for franchise in db.get('franchises', []):
        if franchise.get('playbackOrder') not in ('sequential', 'random'):
            franchise['playbackOrder'] = SEQUENTIAL


MIGRATIONS = (
    Migration(1, 'initial_metadata', _initial_metadata),
    Migration(2, 'ensure_collections', _ensure_collections),
    Migration(3, 'tag_assignment_items', _tag_assignment_items),
    Migration(4, 'default_playback_order', _default_playback_order),
)


def current_version(db: Dict) -> int:
    metadata = db.get('_metadata') or {}
    try:
        return int(metadata.get('version') or 0)
    except (TypeError, ValueError):
        return 0


def upgrade(db: Dict, migrations: Sequence[Migration] = MIGRATIONS) -> Tuple[List[int], Optional[MigrationFailed]]:
    """Upgrade ``db`` in place; return the versions applied and the failure, if any.

    Each step runs against a scratch copy so a step that raises leaves no
    trace. The batch stops at the first failure and the version stays at the
    last successful step, so the failed step is retried on the next start.
    """
    start = current_version(db)
    applied = []
    for migration in sorted(migrations, key=lambda m: m.version):
        if migration.version <= start:
            continue
        scratch = copy.deepcopy(db)
        try:
            migration.up(scratch)
        except Exception as e:
            failure = MigrationFailed(migration.version, f'Migration {migration.version} ({migration.name}) failed: {e}')
            logger.error(f"[Migration] {failure.message}")
            return applied, failure
        db.clear()
        db.update(scratch)
        db.setdefault('_metadata', {})['version'] = migration.version
        applied.append(migration.version)
        logger.info(f"[Migration] Applied {migration.version:03d}_{migration.name}")
    return applied, None


def apply_migrations(db: Dict, migrations: Sequence[Migration] = MIGRATIONS) -> List[int]:
    return upgrade(db, migrations)[0]


class MigrationRunner:
    """Runs pending migrations against the store with a single write."""

    def __init__(self, store: DocumentStore, migrations: Optional[Sequence[Migration]] = None):
        self.store = store
        self.migrations = MIGRATIONS if migrations is None else tuple(migrations)
        self.last_failure = None

    def run(self) -> List[int]:
        db = self.store.load(fresh=True)
        applied, self.last_failure = upgrade(db, self.migrations)
        if applied:
            self.store.write(db)
            logger.info(f"[Migration] Database schema updated to version {applied[-1]}.")
        elif self.last_failure is None:
            logger.info(f"[Migration] Schema up to date (version {current_version(db)}).")
        return applied

    def pending(self) -> List[Migration]:
        version = current_version(self.store.load(fresh=True))
        return [m for m in sorted(self.migrations, key=lambda m: m.version) if m.version > version]
