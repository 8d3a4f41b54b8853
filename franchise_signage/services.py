"""
@services
Business operations over the document store. Every write goes through
``DocumentStore.transact``; every read through ``DocumentStore.load``.
"""

import re
import uuid
import random
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from .database import DocumentStore
from .errors import AuthenticationError, Conflict, NotFound, ValidationError
from .models import (CONTENT, FOLDER, PLAYBACK_ORDERS, SEQUENTIAL, AssignmentItem,
                     MutationResult, normalize_items, utc_now_iso)
from .playlist import find_franchise, playback_order_of, resolve_playlist

logger = logging.getLogger(__name__)

MASKED_TOKEN = '***MASKED***'
NAME_PATTERN = re.compile(r'^[a-zA-Z0-9\s\-_.]+$')
LOCATION_PATTERN = re.compile(r'^[a-zA-Z0-9\s\-_.,]+$')
DEVICE_ID_PATTERN = re.compile(r'^[a-zA-Z0-9\-_]+$')
UNSAFE_NAME_CHARS = re.compile(r'[^a-zA-Z0-9\s\-_.]')


def _check(value, pattern, max_length: int, label: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f'{label} is required')
    value = value.strip()
    if len(value) > max_length:
        raise ValidationError(f'{label} must be at most {max_length} characters')
    if not pattern.match(value):
        raise ValidationError(f'{label} contains invalid characters')
    return value


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except (AttributeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def franchise_status(franchise: Dict, online_window: int, now: Optional[datetime] = None) -> str:
    """Online when the last sync is recent enough, offline otherwise."""
    last_sync = _parse_time(franchise.get('lastSync'))
    if last_sync is None:
        return 'offline'
    now = now or datetime.now(timezone.utc)
    return 'online' if (now - last_sync).total_seconds() <= online_window else 'offline'


def _find_index(rows: List[Dict], row_id: str) -> int:
    for idx, row in enumerate(rows):
        if row.get('id') == row_id:
            return idx
    return -1


def _optional_name(value, label: str) -> None:
    if value is not None and not isinstance(value, str):
        raise ValidationError(f'{label} must be a string')


def _strip_items(db: Dict, item_type: str, ids) -> None:
    """Remove matching items from every assignment list, storing tagged form."""
    ids = set(ids)
    assignments = db.setdefault('assignments', {})
    for device_id, raw_items in list(assignments.items()):
        assignments[device_id] = [
            item.to_dict() for item in normalize_items(raw_items)
            if not (item.type == item_type and item.id in ids)
        ]


# =============================================================================
# @franchise_service - Franchise (partner device) Registration
# =============================================================================
class FranchiseService:
    """Handles franchise registration, updates and device tokens"""

    def __init__(self, store: DocumentStore, online_window: int = 300):
        self.store = store
        self.online_window = online_window

    def _public(self, franchise: Dict) -> Dict:
        view = dict(franchise)
        view['token'] = MASKED_TOKEN
        view['status'] = franchise_status(franchise, self.online_window)
        view.setdefault('playbackOrder', SEQUENTIAL)
        return view

    def register(self, name: str, location: str, device_id: str) -> Dict:
        """@franchise_register - Create a franchise; the token is only returned here"""
        name = _check(name, NAME_PATTERN, 100, 'Name')
        location = _check(location, LOCATION_PATTERN, 200, 'Location')
        device_id = _check(device_id, DEVICE_ID_PATTERN, 50, 'Device ID')

        def create(db):
            franchises = db.setdefault('franchises', [])
            if any(f.get('deviceId') == device_id for f in franchises):
                raise Conflict('Device ID already registered')
            franchise = {
                'id': str(uuid.uuid4()),
                'name': name,
                'location': location,
                'deviceId': device_id,
                'token': str(uuid.uuid4()),
                'status': 'offline',
                'playbackOrder': SEQUENTIAL,
                'lastSync': None,
                'createdAt': utc_now_iso(),
            }
            franchises.append(franchise)
            return MutationResult(
                value=dict(franchise),
                audit=('REGISTER_FRANCHISE', {'name': name, 'deviceId': device_id}),
            )

        return self.store.transact(create)

    def list_franchises(self) -> List[Dict]:
        return [self._public(f) for f in self.store.load().get('franchises') or []]

    def get_franchise(self, franchise_id: str) -> Dict:
        for franchise in self.store.load().get('franchises') or []:
            if franchise.get('id') == franchise_id:
                return self._public(franchise)
        raise NotFound('Franchise not found')

    def update_franchise(self, franchise_id: str, name: Optional[str] = None,
                         location: Optional[str] = None,
                         playback_order: Optional[str] = None) -> Dict:
        if name:
            name = _check(name, NAME_PATTERN, 100, 'Name')
        if location:
            location = _check(location, LOCATION_PATTERN, 200, 'Location')
        if playback_order and playback_order not in PLAYBACK_ORDERS:
            raise ValidationError(f'playbackOrder must be one of {", ".join(PLAYBACK_ORDERS)}')

        def update(db):
            franchises = db.get('franchises') or []
            idx = _find_index(franchises, franchise_id)
            if idx == -1:
                raise NotFound('Franchise not found')
            franchise = franchises[idx]
            if name:
                franchise['name'] = name
            if location:
                franchise['location'] = location
            if playback_order:
                franchise['playbackOrder'] = playback_order
            franchise['updatedAt'] = utc_now_iso()
            return MutationResult(
                value=self._public(franchise),
                audit=('UPDATE_FRANCHISE', {'id': franchise_id, 'name': name, 'location': location}),
            )

        return self.store.transact(update)

    def delete_franchise(self, franchise_id: str) -> None:
        def delete(db):
            franchises = db.get('franchises') or []
            idx = _find_index(franchises, franchise_id)
            if idx == -1:
                raise NotFound('Franchise not found')
            franchise = franchises.pop(idx)
            (db.get('assignments') or {}).pop(franchise.get('deviceId'), None)
            return MutationResult(audit=('DELETE_FRANCHISE', {'id': franchise_id, 'deviceId': franchise.get('deviceId')}))

        self.store.transact(delete)

    def regenerate_token(self, franchise_id: str) -> str:
        def regenerate(db):
            franchises = db.get('franchises') or []
            idx = _find_index(franchises, franchise_id)
            if idx == -1:
                raise NotFound('Franchise not found')
            token = str(uuid.uuid4())
            franchises[idx]['token'] = token
            return MutationResult(value=token, audit=('REGENERATE_TOKEN', {'id': franchise_id}))

        return self.store.transact(regenerate)

    def authenticate_device(self, token: Optional[str]) -> Dict:
        """@device_auth - Resolve the franchise owning a bearer token"""
        if not token:
            raise AuthenticationError('Missing device token')
        for franchise in self.store.load().get('franchises') or []:
            if franchise.get('token') == token:
                return franchise
        raise AuthenticationError('Invalid device token')


# =============================================================================
# @content_service - Media Library
# =============================================================================
class ContentService:
    """Handles content records. Files themselves are handled by FileManager."""

    def __init__(self, store: DocumentStore, default_duration: int = 10):
        self.store = store
        self.default_duration = default_duration

    def _duration(self, value) -> int:
        if value is None or value == '':
            return self.default_duration
        try:
            duration = int(value)
        except (TypeError, ValueError):
            raise ValidationError('Duration must be a whole number of seconds')
        if duration < 1 or duration > 3600:
            raise ValidationError('Duration must be between 1 and 3600 seconds')
        return duration

    def add_content(self, filename: str, mime_type: str, size: int, base_url: str,
                    name: Optional[str] = None, duration=None) -> Dict:
        """@content_creation - Record an uploaded file"""
        display_name = UNSAFE_NAME_CHARS.sub('', name or '').strip() or filename
        record = {
            'id': str(uuid.uuid4()),
            'name': display_name,
            'filename': filename,
            'type': 'video' if mime_type.startswith('video') else 'image',
            'mimeType': mime_type,
            'size': size,
            'url': f"{base_url.rstrip('/')}/content/{filename}",
            'duration': self._duration(duration),
            'uploadDate': utc_now_iso(),
        }

        def insert(db):
            db.setdefault('content', []).append(record)
            return MutationResult(
                value=dict(record),
                audit=('UPLOAD_CONTENT', {'name': display_name, 'file': filename}),
            )

        return self.store.transact(insert)

    def list_content(self) -> List[Dict]:
        return self.store.load().get('content') or []

    def get_content(self, content_id: str) -> Dict:
        for content in self.list_content():
            if content.get('id') == content_id:
                return content
        raise NotFound('Content not found')

    def update_content(self, content_id: str, name: Optional[str] = None, duration=None) -> Dict:
        _optional_name(name, 'Name')
        new_duration = self._duration(duration) if duration not in (None, '') else None

        def update(db):
            rows = db.get('content') or []
            idx = _find_index(rows, content_id)
            if idx == -1:
                raise NotFound('Content not found')
            if name:
                rows[idx]['name'] = UNSAFE_NAME_CHARS.sub('', name).strip() or rows[idx]['name']
            if new_duration is not None:
                rows[idx]['duration'] = new_duration
            rows[idx]['updatedAt'] = utc_now_iso()
            return MutationResult(
                value=dict(rows[idx]),
                audit=('UPDATE_CONTENT', {'id': content_id, 'name': name, 'duration': new_duration}),
            )

        return self.store.transact(update)

    def delete_content(self, content_id: str) -> str:
        """@content_deletion - Drop the record and its assignments; returns the filename"""
        def delete(db):
            rows = db.get('content') or []
            idx = _find_index(rows, content_id)
            if idx == -1:
                raise NotFound('Content not found')
            filename = rows.pop(idx).get('filename')
            _strip_items(db, CONTENT, [content_id])
            return MutationResult(value=filename, audit=('DELETE_CONTENT', {'id': content_id, 'filename': filename}))

        return self.store.transact(delete)


# =============================================================================
# @folder_service - Content Folders
# =============================================================================
class FolderService:
    """Named, ordered groups of content ids"""

    def __init__(self, store: DocumentStore):
        self.store = store

    @staticmethod
    def _content_ids(content_ids) -> List[str]:
        if content_ids is None:
            return []
        if not isinstance(content_ids, list) or not all(isinstance(c, str) for c in content_ids):
            raise ValidationError('contentIds must be an array of ids')
        return list(content_ids)

    def list_folders(self) -> List[Dict]:
        return self.store.load().get('folders') or []

    def create_folder(self, name: str, content_ids=None) -> Dict:
        if not isinstance(name, str) or not name.strip():
            raise ValidationError('Folder name is required')
        folder = {
            'id': str(uuid.uuid4()),
            'name': name.strip(),
            'contentIds': self._content_ids(content_ids),
            'createdAt': utc_now_iso(),
            'updatedAt': utc_now_iso(),
        }

        def insert(db):
            db.setdefault('folders', []).append(folder)
            return MutationResult(value=dict(folder), audit=('CREATE_FOLDER', {'id': folder['id'], 'name': folder['name']}))

        return self.store.transact(insert)

    def update_folder(self, folder_id: str, name: Optional[str] = None, content_ids=None) -> Dict:
        _optional_name(name, 'Folder name')
        new_ids = self._content_ids(content_ids) if content_ids is not None else None

        def update(db):
            folders = db.setdefault('folders', [])
            idx = _find_index(folders, folder_id)
            if idx == -1:
                raise NotFound('Folder not found')
            folder = folders[idx]
            if name and name.strip():
                folder['name'] = name.strip()
            if new_ids is not None:
                folder['contentIds'] = new_ids
            folder['updatedAt'] = utc_now_iso()
            return MutationResult(value=dict(folder), audit=('UPDATE_FOLDER', {'id': folder_id, 'name': name}))

        return self.store.transact(update)

    def delete_folder(self, folder_id: str) -> None:
        def delete(db):
            folders = db.setdefault('folders', [])
            idx = _find_index(folders, folder_id)
            if idx == -1:
                raise NotFound('Folder not found')
            folder_name = folders.pop(idx).get('name')
            _strip_items(db, FOLDER, [folder_id])
            return MutationResult(audit=('DELETE_FOLDER', {'id': folder_id, 'name': folder_name}))

        self.store.transact(delete)


# =============================================================================
# @assignment_service - Device Assignments
# =============================================================================
class AssignmentService:
    """Per-device ordered lists of content and folder references"""

    def __init__(self, store: DocumentStore):
        self.store = store

    @staticmethod
    def _enrich(db: Dict, items: List[AssignmentItem]) -> List[Dict]:
        content_by_id = {c.get('id'): c for c in db.get('content') or []}
        folders_by_id = {f.get('id'): f for f in db.get('folders') or []}
        enriched = []
        for item in items:
            if item.type == FOLDER:
                folder = folders_by_id.get(item.id)
                if folder is not None:
                    enriched.append({**item.to_dict(), 'name': folder.get('name'),
                                     'childCount': len(folder.get('contentIds') or [])})
            else:
                content = content_by_id.get(item.id)
                if content is not None:
                    enriched.append({**item.to_dict(), 'name': content.get('name'),
                                     'contentType': content.get('type')})
        return enriched

    @staticmethod
    def _franchise_summary(franchise: Dict) -> Dict:
        return {
            'id': franchise.get('id'),
            'name': franchise.get('name'),
            'location': franchise.get('location'),
            'playbackOrder': playback_order_of(franchise),
        }

    def set_assignments(self, device_id: str, items, playback_order: Optional[str] = None) -> Dict:
        """@device_assignment - Replace a device's assignment list

        Items referencing content or folders that do not exist are dropped
        and reported back as ``invalidItems``.
        """
        if not device_id or not isinstance(items, list):
            raise ValidationError('Invalid request body')
        if playback_order and playback_order not in PLAYBACK_ORDERS:
            raise ValidationError(f'playbackOrder must be one of {", ".join(PLAYBACK_ORDERS)}')

        def assign(db):
            franchise = find_franchise(db, device_id)
            if franchise is None:
                raise NotFound('Partner not found')
            if playback_order:
                franchise['playbackOrder'] = playback_order

            content_ids = {c.get('id') for c in db.get('content') or []}
            folder_ids = {f.get('id') for f in db.get('folders') or []}
            valid, invalid = [], []
            for raw in items:
                item = AssignmentItem.normalize(raw)
                if item is None:
                    invalid.append(raw)
                elif item.id in (folder_ids if item.type == FOLDER else content_ids):
                    valid.append(item.to_dict())
                else:
                    invalid.append(item.to_dict())

            if invalid:
                logger.warning(f"[Assignments] Invalid items ignored: {invalid}")
            db.setdefault('assignments', {})[device_id] = valid

            result = {
                'deviceId': device_id,
                'assignedItems': valid,
                'playbackOrder': playback_order_of(franchise),
            }
            if invalid:
                result['invalidItems'] = invalid
            return MutationResult(value=result, audit=('UPDATE_ASSIGNMENTS', {'deviceId': device_id, 'count': len(valid)}))

        return self.store.transact(assign)

    def list_assignments(self) -> List[Dict]:
        db = self.store.load()
        listing = []
        for device_id, raw_items in (db.get('assignments') or {}).items():
            franchise = find_franchise(db, device_id)
            items = self._enrich(db, normalize_items(raw_items))
            listing.append({
                'deviceId': device_id,
                'franchise': self._franchise_summary(franchise) if franchise else None,
                'itemCount': len(items),
                'items': items,
            })
        return listing

    def get_assignments(self, device_id: str) -> Dict:
        db = self.store.load()
        franchise = find_franchise(db, device_id)
        if franchise is None:
            raise NotFound('Partner not found')
        raw_items = (db.get('assignments') or {}).get(device_id) or []
        return {
            'deviceId': device_id,
            'franchise': self._franchise_summary(franchise),
            'assignments': self._enrich(db, normalize_items(raw_items)),
        }

    def clear_assignments(self, device_id: str) -> int:
        def clear(db):
            if find_franchise(db, device_id) is None:
                raise NotFound('Partner not found')
            assignments = db.setdefault('assignments', {})
            previous = len(assignments.get(device_id) or [])
            assignments[device_id] = []
            return MutationResult(value=previous, audit=('CLEAR_ASSIGNMENTS', {'deviceId': device_id, 'previousCount': previous}))

        return self.store.transact(clear)

    @staticmethod
    def _id_list(content_ids) -> List[str]:
        if not isinstance(content_ids, list):
            raise ValidationError('contentIds must be an array')
        return [c for c in content_ids if isinstance(c, str)]

    def add_content(self, device_id: str, content_ids) -> Dict:
        content_ids = self._id_list(content_ids)

        def add(db):
            if find_franchise(db, device_id) is None:
                raise NotFound('Partner not found')
            assignments = db.setdefault('assignments', {})
            current = normalize_items(assignments.get(device_id) or [])
            existing = {item.id for item in current if item.type == CONTENT}
            known = {c.get('id') for c in db.get('content') or []}
            added = []
            for content_id in content_ids:
                if content_id in known and content_id not in existing:
                    added.append(AssignmentItem(CONTENT, content_id))
                    existing.add(content_id)
            assignments[device_id] = [item.to_dict() for item in current + added]
            return MutationResult(
                value={'deviceId': device_id, 'added': len(added), 'total': len(assignments[device_id])},
                audit=('ADD_ASSIGNMENTS', {'deviceId': device_id, 'added': len(added)}),
            )

        return self.store.transact(add)

    def remove_content(self, device_id: str, content_ids) -> Dict:
        content_ids = set(self._id_list(content_ids))

        def remove(db):
            if find_franchise(db, device_id) is None:
                raise NotFound('Partner not found')
            assignments = db.setdefault('assignments', {})
            current = normalize_items(assignments.get(device_id) or [])
            kept = [item for item in current if not (item.type == CONTENT and item.id in content_ids)]
            assignments[device_id] = [item.to_dict() for item in kept]
            removed = len(current) - len(kept)
            return MutationResult(
                value={'deviceId': device_id, 'removed': removed, 'total': len(kept)},
                audit=('REMOVE_ASSIGNMENTS', {'deviceId': device_id, 'removed': removed}),
            )

        return self.store.transact(remove)


# =============================================================================
# @device_service - Device Check-in, Playlists and Reports
# =============================================================================
class DeviceService:
    """Handles device heartbeats, playlist generation and playback reports"""

    def __init__(self, store: DocumentStore, analytics_limit: int = 10000,
                 rng: Optional[random.Random] = None):
        self.store = store
        self.analytics_limit = analytics_limit
        self.rng = rng

    def heartbeat(self, franchise_id: str) -> str:
        """@device_checkin - Mark the device online and stamp lastSync"""
        def checkin(db):
            franchises = db.get('franchises') or []
            idx = _find_index(franchises, franchise_id)
            if idx == -1:
                raise NotFound('Partner not found during update')
            franchises[idx]['status'] = 'online'
            franchises[idx]['lastSync'] = utc_now_iso()
            return franchises[idx]['lastSync']

        return self.store.transact(checkin)

    def get_playlist(self, device_id: str, base_url: Optional[str] = None) -> Dict:
        """@device_playlist - Resolve the device's playlist from a cached read"""
        return resolve_playlist(self.store.load(), device_id, base_url=base_url, rng=self.rng)

    def record_event(self, franchise: Dict, content_id: Optional[str], action: Optional[str],
                     timestamp: Optional[str] = None, duration=None) -> None:
        """@playback_report - Append one analytics event, keeping the newest entries"""
        if not action:
            raise ValidationError('action is required')
        event = {
            'deviceId': franchise.get('deviceId'),
            'franchiseId': franchise.get('id'),
            'contentId': content_id,
            'action': action,
            'timestamp': timestamp or utc_now_iso(),
            'duration': duration,
        }

        def append(db):
            analytics = db.setdefault('analytics', [])
            analytics.append(event)
            if len(analytics) > self.analytics_limit:
                del analytics[:len(analytics) - self.analytics_limit]

        self.store.transact(append)
        logger.info(f"[Device Report] {event['deviceId']}: {action} - {content_id}")
