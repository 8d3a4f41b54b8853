"""
@playlist_resolver
Turns a device's assignment list into the ordered content it should play.

Assignment lists may hold legacy bare content ids or tagged
``{type, id}`` items; both are normalized before anything else looks at
them. Folders expand in place, in the folder's stored order. Anything that
no longer resolves (deleted content, deleted folders, stale folder members)
is dropped without error.
"""

import copy
import random
from datetime import datetime, timezone
from typing import Dict, List, Optional
from urllib.parse import urlsplit, urlunsplit

from .errors import NotFound
from .models import FOLDER, PLAYBACK_ORDERS, RANDOM, SEQUENTIAL, AssignmentItem, normalize_items

CONTENT_MOUNT = '/content/'


def find_franchise(document: Dict, device_id: str) -> Optional[Dict]:
    for franchise in document.get('franchises') or []:
        if franchise.get('deviceId') == device_id:
            return franchise
    return None


def playback_order_of(franchise: Dict) -> str:
    order = franchise.get('playbackOrder')
    return order if order in PLAYBACK_ORDERS else SEQUENTIAL


def expand_items(document: Dict, items: List[AssignmentItem]) -> List[Dict]:
    """@playlist_expand - Resolve items to content rows in assignment order"""
    content_by_id = {c.get('id'): c for c in document.get('content') or []}
    folders_by_id = {f.get('id'): f for f in document.get('folders') or []}

    playlist = []
    for item in items:
        if item.type == FOLDER:
            folder = folders_by_id.get(item.id)
            if folder is None:
                continue
            for content_id in folder.get('contentIds') or []:
                content = content_by_id.get(content_id)
                if content is not None:
                    playlist.append(copy.deepcopy(content))
        else:
            content = content_by_id.get(item.id)
            if content is not None:
                playlist.append(copy.deepcopy(content))
    return playlist


def shuffle_playlist(playlist: List[Dict], rng: Optional[random.Random] = None) -> List[Dict]:
    """Uniform Fisher-Yates permutation of the whole flattened playlist."""
    rng = rng or random.SystemRandom()
    shuffled = list(playlist)
    for i in range(len(shuffled) - 1, 0, -1):
        j = rng.randint(0, i)
        shuffled[i], shuffled[j] = shuffled[j], shuffled[i]
    return shuffled


def rewrite_url(url: str, base_url: Optional[str]) -> str:
    """@url_rewrite - Re-base a content URL onto the requesting host

    Only URLs served from our own content mount are touched; the path,
    query and filename are preserved exactly. URLs already on ``base_url``
    come back unchanged.
    """
    if not url or not base_url:
        return url
    parts = urlsplit(url)
    if not parts.path.startswith(CONTENT_MOUNT):
        return url
    base = urlsplit(base_url)
    if not base.netloc:
        return url
    if (parts.scheme, parts.netloc) == (base.scheme, base.netloc):
        return url
    return urlunsplit((base.scheme or parts.scheme, base.netloc, parts.path, parts.query, parts.fragment))


def resolve_playlist(document: Dict, device_id: str, base_url: Optional[str] = None,
                     rng: Optional[random.Random] = None,
                     now: Optional[datetime] = None) -> Dict:
    """@playlist_build - Build a device's playlist from a loaded document

    Raises NotFound for an unknown device. The returned ``items`` are copies;
    the document is never modified.
    """
    franchise = find_franchise(document, device_id)
    if franchise is None:
        raise NotFound('Partner not found')

    raw_items = (document.get('assignments') or {}).get(device_id) or []
    playlist = expand_items(document, normalize_items(raw_items))

    playback_order = playback_order_of(franchise)
    if playback_order == RANDOM:
        playlist = shuffle_playlist(playlist, rng)

    for content in playlist:
        content['url'] = rewrite_url(content.get('url'), base_url)

    resolved_at = (now or datetime.now(timezone.utc)).isoformat().replace('+00:00', 'Z')
    return {
        'items': playlist,
        'playbackOrder': playback_order,
        'meta': {
            'deviceId': device_id,
            'partnerName': franchise.get('name'),
            'location': franchise.get('location'),
            'playbackOrder': playback_order,
            'playlistCount': len(playlist),
            'lastUpdated': resolved_at,
        },
    }
