"""
@database_manager
JSON document store with whole-document transactions
"""

import os
import copy
import json
import time
import logging
import tempfile
import threading
from typing import Any, Callable, Dict, Optional

from .audit import AuditLogger
from .errors import Corrupt, SignageError, StoreBusy, StoreWriteError
from .models import MutationResult, utc_now_iso

logger = logging.getLogger(__name__)


# =============================================================================
# @document_store - Persistence and Transactions
# =============================================================================
class DocumentStore:
    """Owns the persisted application document.

    Reads go through ``load`` and may be served from a short-lived cache.
    Writes go through ``transact``: one mutation at a time, applied to a deep
    copy and committed only if the callback returns normally.
    """

    def __init__(self, db_file: str, audit_logger: Optional[AuditLogger] = None,
                 cache_ttl: float = 2.0, lock_timeout: float = 0.5,
                 clock: Callable[[], float] = time.monotonic):
        self.db_file = db_file
        self.audit_logger = audit_logger
        self.cache_ttl = cache_ttl
        self.lock_timeout = lock_timeout
        self._clock = clock
        self._write_lock = threading.Lock()
        self._cache_lock = threading.Lock()
        self._cache = None
        self._cache_loaded_at = 0.0

    # -------------------------------------------------------------------------
    # Raw file access
    # -------------------------------------------------------------------------
    def exists(self) -> bool:
        return os.path.isfile(self.db_file)

    def read_file(self) -> Dict:
        """@db_read - Parse the persisted document, raising Corrupt on bad content"""
        try:
            with open(self.db_file, 'r', encoding='utf-8') as f:
                document = json.load(f)
        except (ValueError, UnicodeDecodeError) as e:
            raise Corrupt(f'{self.db_file} is not valid JSON: {e}') from e
        if not isinstance(document, dict):
            raise Corrupt(f'{self.db_file} does not contain a JSON object')
        return document

    def write(self, document: Dict) -> None:
        """@db_write - Atomically replace the persisted document"""
        document.setdefault('_metadata', {})
        document['_metadata']['lastModified'] = utc_now_iso()
        try:
            payload = json.dumps(document, indent=2)
        except (TypeError, ValueError) as e:
            raise StoreWriteError(f'Document is not serializable: {e}') from e

        directory = os.path.dirname(os.path.abspath(self.db_file))
        tmp_path = None
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix='.database-', suffix='.tmp', dir=directory)
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.db_file)
            tmp_path = None
        except OSError as e:
            logger.error(f"[DB] Failed to write database: {e}")
            raise StoreWriteError(f'Failed to write database: {e}') from e
        finally:
            if tmp_path and os.path.exists(tmp_path):
                os.remove(tmp_path)

        self._remember(json.loads(payload))

    # -------------------------------------------------------------------------
    # Cached reads
    # -------------------------------------------------------------------------
    def _remember(self, document: Dict) -> None:
        with self._cache_lock:
            self._cache = document
            self._cache_loaded_at = self._clock()

    def invalidate_cache(self) -> None:
        with self._cache_lock:
            self._cache = None

    def load(self, fresh: bool = False) -> Dict:
        """@db_load - Deep copy of the current document

        Pass ``fresh=True`` to bypass the cache and read the file.
        """
        if not fresh:
            with self._cache_lock:
                if self._cache is not None and self._clock() - self._cache_loaded_at < self.cache_ttl:
                    return copy.deepcopy(self._cache)

        document = self.read_file()
        self._remember(document)
        return copy.deepcopy(document)

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------
    def _acquire(self, timeout: Optional[float]) -> bool:
        timeout = self.lock_timeout if timeout is None else timeout
        if timeout <= 0:
            return self._write_lock.acquire(blocking=False)
        return self._write_lock.acquire(timeout=timeout)

    def transact(self, mutate: Callable[[Dict], Any], timeout: Optional[float] = None) -> Any:
        """@db_transaction - Atomic read-modify-write of the whole document

        ``mutate`` receives a private copy of the document. If it raises, the
        copy is discarded and nothing is persisted. It may return a
        ``MutationResult`` to attach an audit entry; any other return value is
        passed straight back to the caller.
        """
        if not self._acquire(timeout):
            raise StoreBusy('Database is locked. Try again later.')

        try:
            working = self.read_file()
            result = mutate(working)
            self.write(working)
        except SignageError as e:
            logger.info(f"[DB] Transaction rolled back: {e.message}")
            raise
        except Exception as e:
            logger.error(f"[DB] Transaction failed. Rolled back. {e}")
            raise
        finally:
            self._write_lock.release()

        if isinstance(result, MutationResult):
            if result.audit and self.audit_logger is not None:
                action, details = result.audit
                self.audit_logger.log(action, details)
            return result.value
        return result
