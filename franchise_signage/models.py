"""
@models
Document shape, assignment items and transaction results
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

CONTENT = 'content'
FOLDER = 'folder'
ITEM_TYPES = (CONTENT, FOLDER)

SEQUENTIAL = 'sequential'
RANDOM = 'random'
PLAYBACK_ORDERS = (SEQUENTIAL, RANDOM)

COLLECTIONS = {
    'franchises': list,
    'content': list,
    'folders': list,
    'assignments': dict,
    'otpTokens': dict,
    'analytics': list,
}


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


def empty_document() -> Dict:
    """@empty_schema - Fresh document at schema version 0"""
    document = {name: factory() for name, factory in COLLECTIONS.items()}
    document['_metadata'] = {'version': 0, 'createdAt': utc_now_iso()}
    return document


@dataclass(frozen=True)
class AssignmentItem:
    """One entry of a device's assignment list, always in tagged form."""

    type: str
    id: str

    @classmethod
    def normalize(cls, raw) -> Optional['AssignmentItem']:
        """Accept a legacy bare content id or a ``{type, id}`` mapping.

        Returns None for entries that carry no usable id.
        """
        if isinstance(raw, AssignmentItem):
            return raw
        if isinstance(raw, str):
            return cls(CONTENT, raw) if raw else None
        if isinstance(raw, dict):
            item_id = raw.get('id')
            item_type = raw.get('type') or CONTENT
            if not isinstance(item_id, str) or not item_id or item_type not in ITEM_TYPES:
                return None
            return cls(item_type, item_id)
        return None

    def to_dict(self) -> Dict[str, str]:
        return {'type': self.type, 'id': self.id}


def normalize_items(raw_items) -> List[AssignmentItem]:
    """Normalize a stored assignment list, dropping unusable entries."""
    if not isinstance(raw_items, list):
        return []
    items = []
    for raw in raw_items:
        item = AssignmentItem.normalize(raw)
        if item is not None:
            items.append(item)
    return items


@dataclass
class MutationResult:
    """What a transaction callback hands back to the store.

    ``value`` is returned to the caller of ``transact``; ``audit`` is an
    ``(action, details)`` pair written to the audit log after commit.
    """

    value: Any = None
    audit: Optional[tuple] = None
