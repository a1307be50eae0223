"""Shared helpers for MongoDB documents used across the songbook stores."""
from __future__ import annotations

import copy
import re
import secrets
import string
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import bson
from bson import ObjectId
from bson.errors import InvalidId

from errors import Conflict, Forbidden, NotFound, Unauthorized, ValidationError


MUSICAL_KEYS = [
    'C', 'C#', 'Db', 'D', 'D#', 'Eb', 'E', 'F', 'F#',
    'Gb', 'G', 'G#', 'Ab', 'A', 'A#', 'Bb', 'B',
]

DIFFICULTIES = ['beginner', 'intermediate', 'advanced']

USER_LEVEL = 1
MODERATOR_LEVEL = 50
ADMIN_LEVEL = 100

SLUG_ALPHABET = string.ascii_lowercase + string.digits

_SLUG_STRIP_RE = re.compile(r'[^a-z0-9\s-]')
_SLUG_SPACE_RE = re.compile(r'\s+')


@dataclass(frozen=True)
class Actor:
    """The user a store operation runs on behalf of."""

    username: Optional[str] = None
    level: int = 0

    @property
    def authenticated(self) -> bool:
        return bool(self.username)

    @property
    def is_moderator(self) -> bool:
        return self.level >= MODERATOR_LEVEL

    @property
    def is_admin(self) -> bool:
        return self.level >= ADMIN_LEVEL

    @property
    def role(self) -> str:
        if self.is_admin:
            return 'ADMIN'
        if self.is_moderator:
            return 'MODERATOR'
        return 'USER'

    def owns(self, owner: Optional[str]) -> bool:
        return self.authenticated and owner == self.username


ANONYMOUS = Actor()


def role_for_level(level: Optional[int]) -> str:
    return Actor('-', level or 0).role


def utcnow() -> datetime:
    # pymongo hands back naive UTC datetimes, so keep stored values naive as well
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_object_id(value: Any, label: str = 'id') -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise ValidationError('Invalid %s' % label, code='INVALID_ID')


def is_object_id(value: Any) -> bool:
    return isinstance(value, ObjectId) or ObjectId.is_valid(str(value))


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Accept datetimes, epoch milliseconds or ISO strings and return naive UTC."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc).replace(tzinfo=None)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        return parse_timestamp(parsed)
    return None


def to_millis(value: Optional[datetime]) -> Optional[int]:
    if value is None:
        return None
    return int(value.replace(tzinfo=timezone.utc).timestamp() * 1000)


def serialize(value: Any) -> Any:
    """Convert a MongoDB document into JSON friendly data.

    ``_id`` keys become ``id``, ObjectIds become strings, datetimes become
    ISO-8601 strings with a ``Z`` suffix and binary payloads are dropped.
    """

    if isinstance(value, dict):
        output = {}
        for key, item in value.items():
            if isinstance(item, (bytes, bytearray)):
                continue
            output['id' if key == '_id' else key] = serialize(item)
        return output
    if isinstance(value, (list, tuple)):
        return [serialize(item) for item in value]
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat() + 'Z'
    return value


def document_size(document: dict) -> int:
    return len(bson.encode(document))


def slugify(text: str) -> str:
    slug = _SLUG_STRIP_RE.sub('', (text or '').lower()).strip()
    return _SLUG_SPACE_RE.sub('-', slug)


def random_suffix(length: int) -> str:
    return ''.join(secrets.choice(SLUG_ALPHABET) for _ in range(length))


def split_csv(value: Optional[str]) -> list:
    if not value:
        return []
    return [part.strip() for part in value.split(',') if part.strip()]


def owner_of(document: dict) -> Optional[str]:
    if document.get('createdBy'):
        return document['createdBy']
    return (document.get('metadata') or {}).get('createdBy')


def check_visible(document: dict, actor: Actor, label: str) -> None:
    metadata = document.get('metadata') or {}
    if metadata.get('isPublic', True):
        return
    if actor.owns(owner_of(document)) or actor.is_moderator:
        return
    raise Forbidden('Access denied to private %s' % label)


def check_editable(document: dict, actor: Actor, label: str, level: int = MODERATOR_LEVEL) -> None:
    """Owners may always modify their documents; others need ``level``."""

    if not actor.authenticated:
        raise Unauthorized('Login required')
    if actor.owns(owner_of(document)) or actor.level >= level:
        return
    raise Forbidden('You do not have permission to modify this %s' % label)


def apply_set(document: dict, updates: dict) -> dict:
    """Return a copy of ``document`` with dotted ``$set`` style updates applied."""

    merged = copy.deepcopy(document)
    for dotted, value in updates.items():
        target = merged
        parts = dotted.split('.')
        for part in parts[:-1]:
            if not isinstance(target.get(part), dict):
                target[part] = {}
            target = target[part]
        target[parts[-1]] = value
    return merged


def rate_document(collection, document_id: ObjectId, rating: Any, label: str) -> Dict[str, Any]:
    """Fold one rating into ``metadata.ratings`` with an optimistic count check."""

    if isinstance(rating, bool) or not isinstance(rating, (int, float)) or not 1 <= rating <= 5:
        raise ValidationError('Rating must be between 1 and 5', code='INVALID_RATING')

    for attempt in range(3):
        document = collection.find_one({'_id': document_id})
        if not document:
            raise NotFound('%s not found' % label.capitalize())
        ratings = (document.get('metadata') or {}).get('ratings') or {}
        count = ratings.get('count') or 0
        average = ratings.get('average') or 0
        new_average = (average * count + rating) / (count + 1)
        result = collection.update_one(
            {'_id': document_id, 'metadata.ratings.count': count},
            {'$set': {'metadata.ratings.average': new_average, 'metadata.ratings.count': count + 1}},
        )
        if result.modified_count:
            return {'average': round(new_average, 2), 'count': count + 1}
        time.sleep(0.05 * (attempt + 1))
    raise Conflict('Rating changed concurrently, please retry', code='RATING_CONFLICT')


def remove_song_references(db, song_ids: List[ObjectId]) -> None:
    """Drop verses, comments and favorites pointing at deleted songs."""
    if not song_ids:
        return
    db.verses.delete_many({'songId': {'$in': song_ids}})
    db.comments.delete_many({'songId': {'$in': song_ids}})
    db.users.update_many({'favoriteSongs': {'$in': song_ids}}, {'$pull': {'favoriteSongs': {'$in': song_ids}}})


def remove_arrangement_references(db, arrangement_ids: List[ObjectId]) -> None:
    if not arrangement_ids:
        return
    db.songs.update_many({'defaultArrangement': {'$in': arrangement_ids}}, {'$set': {'defaultArrangement': None}})
    db.reviews.delete_many({'arrangementId': {'$in': arrangement_ids}})
    db.users.update_many(
        {'favoriteArrangements': {'$in': arrangement_ids}},
        {'$pull': {'favoriteArrangements': {'$in': arrangement_ids}}},
    )
