"""
@audit_log
Append-only record of committed mutations
"""

import json
import logging
import threading
from datetime import datetime, timezone
from typing import Dict, Optional

logger = logging.getLogger(__name__)


class AuditLogger:
    """Writes ``[timestamp] [action] {details}`` lines to the audit file."""

    def __init__(self, log_file: str):
        self.log_file = log_file
        self._lock = threading.Lock()

    def log(self, action: str, details: Optional[Dict] = None) -> bool:
        """@audit_write - Append one entry; never raises"""
        timestamp = datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')
        try:
            entry = f"[{timestamp}] [{action}] {json.dumps(details if details is not None else {}, default=str)}\n"
            with self._lock:
                with open(self.log_file, 'a', encoding='utf-8') as f:
                    f.write(entry)
            return True
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"[Audit] Failed to write log: {e}")
            return False
