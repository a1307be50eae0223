"""Song catalog backed by the ``songs`` collection."""
from __future__ import annotations

import logging
import time
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, TEXT
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import chordpro
import schema
from documents import (
    ANONYMOUS,
    ADMIN_LEVEL,
    MUSICAL_KEYS,
    Actor,
    apply_set,
    check_editable,
    check_visible,
    document_size,
    parse_object_id,
    random_suffix,
    rate_document,
    remove_song_references,
    slugify,
    utcnow,
)
from errors import Conflict, NotFound, Unauthorized, ValidationError

LOGGER = logging.getLogger(__name__)

SLUG_SUFFIX_LENGTH = 6
BASIC_CHORD_LIMIT = 5
RECENT_DAYS = 7
MAX_SEARCH_LIMIT = 50

UPDATABLE_FIELDS = ('title', 'artist', 'source', 'lyrics', 'notes', 'timeSignature', 'difficulty', 'key', 'tempo')

LIST_PROJECTION = {'compressedChordData': False}


def normalize_themes(themes: Optional[List[str]]) -> List[str]:
    result: List[str] = []
    for theme in themes or []:
        value = theme.strip().lower()
        if value and value not in result:
            result.append(value)
    return result


def song_to_client(song: Dict[str, Any]) -> Dict[str, Any]:
    metadata = song.get('metadata') or {}
    ratings = metadata.get('ratings') or {}
    default_arrangement = song.get('defaultArrangement')
    return {
        'id': str(song['_id']),
        'title': song.get('title'),
        'artist': song.get('artist'),
        'slug': song.get('slug'),
        'key': song.get('key'),
        'tempo': song.get('tempo'),
        'timeSignature': song.get('timeSignature'),
        'difficulty': song.get('difficulty'),
        'themes': song.get('themes') or [],
        'source': song.get('source'),
        'viewCount': metadata.get('views') or 0,
        'avgRating': round(ratings.get('average') or 0, 2),
        'ratingCount': ratings.get('count') or 0,
        'isPublic': metadata.get('isPublic', True),
        'createdBy': metadata.get('createdBy'),
        'basicChords': chordpro.extract_chords(song.get('chordData'), BASIC_CHORD_LIMIT),
        'chordData': song.get('chordData'),
        'defaultArrangementId': str(default_arrangement) if default_arrangement else None,
        'updatedAt': song['updatedAt'].isoformat() + 'Z' if song.get('updatedAt') else None,
    }


def song_summary(song: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'id': str(song['_id']),
        'title': song.get('title'),
        'artist': song.get('artist'),
        'slug': song.get('slug'),
    }


class SongCatalog:
    def __init__(self, db: Database) -> None:
        self.db = db
        self.collection = db.songs

    def ensure_indexes(self) -> None:
        self.collection.create_index('slug', unique=True)
        self.collection.create_index([('metadata.isPublic', ASCENDING), ('createdAt', DESCENDING)])
        self.collection.create_index('metadata.createdBy')
        try:
            self.collection.create_index(
                [('title', TEXT), ('artist', TEXT), ('themes', TEXT)],
                weights={'title': 10, 'artist': 8, 'themes': 6},
                name='song_text',
            )
        except Exception:
            LOGGER.debug('Could not ensure song text index')

    def _compress(self, chord_data: str) -> bytes:
        compressed = chordpro.compress(chord_data)
        if len(compressed) > chordpro.MAX_SONG_COMPRESSED_BYTES:
            raise ValidationError(
                'Chord data exceeds %d KB after compression' % (chordpro.MAX_SONG_COMPRESSED_BYTES // 1024),
                code='CHORD_DATA_TOO_LARGE',
            )
        return compressed

    def get_raw(self, song_id: Any) -> Dict[str, Any]:
        song = self.collection.find_one({'_id': parse_object_id(song_id, 'song id')})
        if not song:
            raise NotFound('Song not found')
        return song

    def list_songs(
        self,
        actor: Actor = ANONYMOUS,
        *,
        search: Optional[str] = None,
        key: Optional[str] = None,
        difficulty: Optional[str] = None,
        themes: Optional[List[str]] = None,
        limit: int = 20,
        offset: int = 0,
        is_public: bool = True,
    ) -> Tuple[List[Dict[str, Any]], Dict[str, Any]]:
        meta = {'total': 0, 'page': offset // limit + 1, 'limit': limit, 'offset': offset}
        query: Dict[str, Any] = {'metadata.isPublic': is_public}
        if not is_public and not actor.is_moderator:
            if not actor.authenticated:
                return [], meta
            query['metadata.createdBy'] = actor.username
        if key:
            query['key'] = key
        if difficulty:
            query['difficulty'] = difficulty
        if themes:
            query['themes'] = {'$in': normalize_themes(themes)}

        projection = dict(LIST_PROJECTION)
        if search:
            query['$text'] = {'$search': search}
            projection = {'score': {'$meta': 'textScore'}}
            sort = [('score', {'$meta': 'textScore'})]
        else:
            sort = [('createdAt', DESCENDING)]

        cursor = self.collection.find(query, projection).sort(sort).skip(offset).limit(limit)
        songs = list(cursor)
        meta['total'] = self.collection.count_documents(query)
        return songs, meta

    def get_song(self, song_id: Any, actor: Actor = ANONYMOUS, count_view: bool = True) -> Dict[str, Any]:
        song = self.get_raw(song_id)
        return self._viewed(song, actor, count_view)

    def get_by_slug(self, slug: str, actor: Actor = ANONYMOUS, count_view: bool = True) -> Dict[str, Any]:
        song = self.collection.find_one({'slug': slug})
        if not song:
            raise NotFound('Song not found')
        return self._viewed(song, actor, count_view)

    def _viewed(self, song: Dict[str, Any], actor: Actor, count_view: bool) -> Dict[str, Any]:
        check_visible(song, actor, 'song')
        if count_view:
            self.collection.update_one({'_id': song['_id']}, {'$inc': {'metadata.views': 1}})
            metadata = song.setdefault('metadata', {})
            metadata['views'] = (metadata.get('views') or 0) + 1
        return song

    def create_song(self, data: Dict[str, Any], actor: Actor) -> Dict[str, Any]:
        if not actor.authenticated:
            raise Unauthorized('Login required')
        schema.check(data, schema.song_create, 'Invalid song data')

        chord_data = data['chordData']
        key = data.get('key')
        if not key:
            detected = chordpro.detect_key(chord_data)
            key = detected if detected in MUSICAL_KEYS else None

        now = utcnow()
        song: Dict[str, Any] = {
            'title': data['title'].strip(),
            'artist': (data.get('artist') or '').strip(),
            'chordData': chord_data,
            'compressedChordData': self._compress(chord_data),
            'key': key,
            'tempo': data.get('tempo'),
            'timeSignature': data.get('timeSignature') or '4/4',
            'difficulty': data.get('difficulty') or 'intermediate',
            'themes': normalize_themes(data.get('themes')),
            'source': (data.get('source') or '').strip(),
            'lyrics': data.get('lyrics') or '',
            'notes': data.get('notes') or '',
            'metadata': {
                'createdBy': actor.username,
                'isPublic': data.get('isPublic', True),
                'ratings': {'average': 0, 'count': 0},
                'views': 0,
            },
            'defaultArrangement': None,
            'documentSize': 0,
            'createdAt': now,
            'updatedAt': now,
        }

        base_slug = slugify(song['title']) or 'song'
        for attempt in range(3):
            song['slug'] = '%s-%s' % (base_slug, random_suffix(SLUG_SUFFIX_LENGTH))
            song['documentSize'] = document_size(song)
            try:
                result = self.collection.insert_one(song)
                break
            except DuplicateKeyError:
                song.pop('_id', None)
                time.sleep(0.05 * (attempt + 1))
        else:
            raise Conflict('Song with similar title already exists', code='DUPLICATE_SLUG')

        song['_id'] = result.inserted_id
        self.db.users.update_one({'username': actor.username}, {'$inc': {'stats.songsCreated': 1}})
        LOGGER.info('Song %s created by %s', song['slug'], actor.username)
        return song

    def update_song(self, song_id: Any, data: Dict[str, Any], actor: Actor) -> Dict[str, Any]:
        schema.check(data, schema.song_update, 'Invalid update data')
        song = self.get_raw(song_id)
        check_editable(song, actor, 'song')

        updates: Dict[str, Any] = {}
        for field in UPDATABLE_FIELDS:
            if field in data:
                value = data[field]
                updates[field] = value.strip() if isinstance(value, str) and field in ('title', 'artist', 'source') else value
        if 'themes' in data:
            updates['themes'] = normalize_themes(data['themes'])
        if 'chordData' in data:
            updates['chordData'] = data['chordData']
            updates['compressedChordData'] = self._compress(data['chordData'])
        if 'isPublic' in data:
            updates['metadata.isPublic'] = data['isPublic']
        updates['updatedAt'] = utcnow()
        updates['documentSize'] = document_size(apply_set(song, updates))

        self.collection.update_one({'_id': song['_id']}, {'$set': updates})
        return apply_set(song, updates)

    def delete_song(self, song_id: Any, actor: Actor) -> ObjectId:
        song = self.get_raw(song_id)
        check_editable(song, actor, 'song', level=ADMIN_LEVEL)
        self.collection.delete_one({'_id': song['_id']})
        remove_song_references(self.db, [song['_id']])
        LOGGER.info('Song %s deleted by %s', song.get('slug'), actor.username)
        return song['_id']

    def rate_song(self, song_id: Any, rating: Any, actor: Actor = ANONYMOUS) -> Dict[str, Any]:
        song = self.get_raw(song_id)
        check_visible(song, actor, 'song')
        return rate_document(self.collection, song['_id'], rating, 'song')

    def search(self, query: Optional[str], limit: int = 20) -> List[Dict[str, Any]]:
        if not query or not query.strip():
            raise ValidationError('Search query is required', code='MISSING_QUERY')
        limit = max(1, min(limit, MAX_SEARCH_LIMIT))
        cursor = self.collection.find(
            {'$text': {'$search': query.strip()}, 'metadata.isPublic': True},
            {'score': {'$meta': 'textScore'}},
        ).sort([('score', {'$meta': 'textScore'})]).limit(limit)
        return list(cursor)

    def find_by_difficulty(self, difficulty: str, limit: int = 20) -> List[Dict[str, Any]]:
        return self._public_sorted({'difficulty': difficulty}, limit)

    def find_by_key(self, key: str, limit: int = 20) -> List[Dict[str, Any]]:
        return self._public_sorted({'key': key}, limit)

    def _public_sorted(self, query: Dict[str, Any], limit: int) -> List[Dict[str, Any]]:
        query = dict(query, **{'metadata.isPublic': True})
        cursor = self.collection.find(query, LIST_PROJECTION).sort(
            [('metadata.ratings.average', DESCENDING), ('metadata.views', DESCENDING)]
        ).limit(limit)
        return list(cursor)

    def stats(self) -> Dict[str, Any]:
        since = utcnow() - timedelta(days=RECENT_DAYS)
        public = {'metadata.isPublic': True}
        contributors = self.collection.aggregate([
            {'$match': public},
            {'$group': {'_id': '$metadata.createdBy', 'songCount': {'$sum': 1}}},
            {'$sort': {'songCount': -1}},
            {'$limit': 5},
        ])
        return {
            'totalSongs': self.collection.count_documents(public),
            'recentlyAdded': self.collection.count_documents(dict(public, createdAt={'$gte': since})),
            'totalSetlists': self.db.setlists.count_documents({}),
            'topContributors': [
                {'username': row['_id'], 'songCount': row['songCount']}
                for row in contributors if row.get('_id')
            ],
        }
