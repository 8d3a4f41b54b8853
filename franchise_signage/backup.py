"""
@backup_manager
Startup recovery, hourly snapshots and snapshot rotation
"""

import os
import json
import time
import shutil
import logging
import threading
from datetime import datetime, timezone
from typing import List, Optional

from .database import DocumentStore
from .errors import Corrupt
from .models import empty_document

logger = logging.getLogger(__name__)

BACKUP_PREFIX = 'db-'
BACKUP_SUFFIX = '.json'


class BackupManager:
    """Keeps hour-keyed copies of the database file and restores from them."""

    def __init__(self, store: DocumentStore, backup_dir: str,
                 max_backups: int = 24, interval: int = 60 * 60):
        self.store = store
        self.backup_dir = backup_dir
        self.max_backups = max_backups
        self.interval = interval
        self._stop = threading.Event()
        self._thread = None
        os.makedirs(self.backup_dir, exist_ok=True)

    @staticmethod
    def snapshot_name(now: Optional[datetime] = None) -> str:
        """Snapshot filename with hour granularity, e.g. ``db-2024-05-01-13.json``"""
        now = now or datetime.now(timezone.utc)
        return f"{BACKUP_PREFIX}{now.strftime('%Y-%m-%d-%H')}{BACKUP_SUFFIX}"

    def list_backups(self) -> List[str]:
        """@backup_listing - Snapshot paths, newest first"""
        entries = []
        for name in os.listdir(self.backup_dir):
            if not (name.startswith(BACKUP_PREFIX) and name.endswith(BACKUP_SUFFIX)):
                continue
            path = os.path.join(self.backup_dir, name)
            try:
                entries.append((os.stat(path).st_mtime, name, path))
            except FileNotFoundError:
                continue
        entries.sort(reverse=True)
        return [path for _, _, path in entries]

    def backup_database(self, now: Optional[datetime] = None) -> Optional[str]:
        """@backup_create - Copy the live file into this hour's snapshot slot"""
        if not self.store.exists():
            logger.warning("[Backup] Database file not found, skipping backup.")
            return None

        backup_file = os.path.join(self.backup_dir, self.snapshot_name(now))
        tmp_file = backup_file + '.tmp'
        try:
            shutil.copyfile(self.store.db_file, tmp_file)
            os.replace(tmp_file, backup_file)
        except OSError as e:
            logger.error(f"[Backup] Failed: {e}")
            if os.path.exists(tmp_file):
                os.remove(tmp_file)
            return None

        logger.info(f"[Backup] Created: {backup_file}")
        self.rotate_backups()
        return backup_file

    def rotate_backups(self) -> List[str]:
        """@backup_rotation - Delete everything beyond the newest ``max_backups``"""
        removed = []
        for path in self.list_backups()[self.max_backups:]:
            try:
                os.remove(path)
                removed.append(path)
                logger.info(f"[Backup] Rotated/Deleted old backup: {os.path.basename(path)}")
            except OSError as e:
                logger.error(f"[Backup] Cleanup failed for {path}: {e}")
        return removed

    def restore_latest(self) -> bool:
        """@backup_restore - Promote the newest snapshot that parses"""
        candidates = self.list_backups()
        if not candidates:
            logger.error("[Restore] No backups available.")
            return False

        for path in candidates:
            try:
                with open(path, 'r', encoding='utf-8') as f:
                    document = json.load(f)
            except (OSError, ValueError, UnicodeDecodeError) as e:
                logger.warning(f"[Restore] Skipping unreadable backup {os.path.basename(path)}: {e}")
                continue
            if not isinstance(document, dict):
                logger.warning(f"[Restore] Skipping backup without a document: {os.path.basename(path)}")
                continue

            logger.info(f"[Restore] Restoring from {os.path.basename(path)}...")
            self.store.write(document)
            logger.info("[Restore] Success!")
            return True

        logger.error("[Restore] No valid backups found.")
        return False

    def _quarantine(self) -> str:
        corrupt_path = f"{self.store.db_file}.corrupt.{int(time.time() * 1000)}"
        os.replace(self.store.db_file, corrupt_path)
        logger.warning(f"[DB] Corrupt file moved to: {corrupt_path}")
        return corrupt_path

    def recover(self) -> str:
        """@db_recovery - Make sure a parseable document is live

        Returns ``'loaded'``, ``'restored'`` or ``'initialized'``. Failing to
        write even an empty document propagates and is fatal.
        """
        if self.store.exists():
            try:
                self.store.read_file()
                logger.info("[DB] Database loaded successfully")
                return 'loaded'
            except Corrupt as e:
                logger.error(f"[DB] Corrupted database detected! {e}")
                self._quarantine()
        else:
            logger.warning("[DB] Database file missing. Attempting restoration...")

        if self.restore_latest():
            logger.info("[DB] Recovered from backup.")
            return 'restored'

        logger.info("[DB] No backup found. Initializing new database.")
        self.store.write(empty_document())
        return 'initialized'

    # -------------------------------------------------------------------------
    # Schedule
    # -------------------------------------------------------------------------
    def start_schedule(self) -> None:
        """Run one backup now and then every ``interval`` seconds."""
        if self._thread is not None and self._thread.is_alive():
            return
        logger.info("[DB] Running initial backup...")
        self.backup_database()
        self._stop.clear()
        self._thread = threading.Thread(target=self._run_loop, name='backup-scheduler', daemon=True)
        self._thread.start()

    def stop_schedule(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None

    def _run_loop(self) -> None:
        while not self._stop.wait(self.interval):
            logger.info("[DB] Running scheduled backup...")
            try:
                self.backup_database()
            except Exception as e:
                logger.error(f"[Backup] Scheduled backup crashed: {e}")
