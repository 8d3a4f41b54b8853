"""
@core
Wires the store, recovery, migrations and services together.
"""

import time
import random
import logging
from typing import Callable, Dict, Optional

from .audit import AuditLogger
from .backup import BackupManager
from .config import AppConfig
from .database import DocumentStore
from .device_auth import DevicePairing
from .files import FileManager
from .migrations import MigrationRunner, current_version
from .services import AssignmentService, ContentService, DeviceService, FolderService, FranchiseService
from .sms import create_sender

logger = logging.getLogger(__name__)


class SignageCore:
    """Everything the HTTP layer needs, built from one AppConfig."""

    def __init__(self, config: AppConfig, sender=None, clock: Callable[[], float] = time.time,
                 rng: Optional[random.Random] = None):
        self.config = config
        config.ensure_directories()

        self.audit = AuditLogger(config.AUDIT_LOG)
        self.store = DocumentStore(config.DB_FILE, audit_logger=self.audit,
                                   cache_ttl=config.CACHE_TTL, lock_timeout=config.LOCK_TIMEOUT)
        self.backups = BackupManager(self.store, config.BACKUP_DIR,
                                     max_backups=config.MAX_BACKUPS, interval=config.BACKUP_INTERVAL)
        self.migrations = MigrationRunner(self.store)
        self.files = FileManager(config.CONTENT_FOLDER, config.ALLOWED_MIME_TYPES)

        self.franchises = FranchiseService(self.store, online_window=config.ONLINE_WINDOW_SECONDS)
        self.content = ContentService(self.store, default_duration=config.DEFAULT_DURATION)
        self.folders = FolderService(self.store)
        self.assignments = AssignmentService(self.store)
        self.devices = DeviceService(self.store, analytics_limit=config.ANALYTICS_LIMIT, rng=rng)
        self.pairing = DevicePairing(
            self.store,
            sender if sender is not None else create_sender(config),
            clock=clock,
            rng=rng,
            expiry_seconds=config.OTP_EXPIRY_SECONDS,
            max_attempts=config.OTP_MAX_ATTEMPTS,
            code_length=config.OTP_LENGTH,
        )
        self.ready = False

    def recover_and_migrate(self) -> Dict:
        """@startup - Recover the document and bring its schema up to date

        Must finish before requests other than the health check are served.
        """
        status = self.backups.recover()
        applied = self.migrations.run()
        self.ready = True
        version = current_version(self.store.load(fresh=True))
        logger.info(f"[DB] Ready: {status}, schema version {version}")
        failure = self.migrations.last_failure
        return {'recovery': status, 'applied': applied, 'version': version,
                'failed': failure.version if failure else None}

    def start_background(self) -> None:
        self.backups.start_schedule()

    def shutdown(self) -> None:
        self.backups.stop_schedule()

    def resolve_playlist(self, device_id: str, base_url: Optional[str] = None) -> Dict:
        return self.devices.get_playlist(device_id, base_url)
