"""Arrangements: keyed, tempo'd chord charts for one song or a mashup of several."""
from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo import DESCENDING, TEXT
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import chordpro
import schema
from documents import (
    ANONYMOUS,
    ADMIN_LEVEL,
    Actor,
    apply_set,
    check_editable,
    check_visible,
    document_size,
    parse_object_id,
    random_suffix,
    rate_document,
    remove_arrangement_references,
    slugify,
    utcnow,
)
from errors import Conflict, NotFound, Unauthorized, ValidationError

LOGGER = logging.getLogger(__name__)

SLUG_SUFFIX_LENGTH = 5
UPDATABLE_FIELDS = ('name', 'key', 'tempo', 'timeSignature', 'difficulty', 'description')
PUBLIC_SORT = [('metadata.ratings.average', DESCENDING), ('metadata.views', DESCENDING)]


def mashup_duration(arrangement: Dict[str, Any]) -> int:
    """Total bar count across the mashup sections."""

    sections = (arrangement.get('metadata') or {}).get('mashupSections') or []
    return sum(section['endBar'] - section['startBar'] + 1 for section in sections)


def _normalize_tags(tags: Optional[List[str]]) -> List[str]:
    result: List[str] = []
    for tag in tags or []:
        value = tag.strip().lower()
        if value and value not in result:
            result.append(value)
    return result


class ArrangementCatalog:
    def __init__(self, db: Database) -> None:
        self.db = db
        self.collection = db.arrangements

    def ensure_indexes(self) -> None:
        self.collection.create_index('slug', unique=True, sparse=True)
        self.collection.create_index('songIds')
        self.collection.create_index('createdBy')
        try:
            self.collection.create_index(
                [('name', TEXT), ('description', TEXT), ('tags', TEXT)],
                name='arrangement_text',
            )
        except Exception:
            LOGGER.debug('Could not ensure arrangement text index')

    def get_raw(self, arrangement_id: Any) -> Dict[str, Any]:
        arrangement = self.collection.find_one({'_id': parse_object_id(arrangement_id, 'arrangement id')})
        if not arrangement:
            raise NotFound('Arrangement not found')
        return arrangement

    def _load_songs(self, song_ids: List[Any]) -> List[Dict[str, Any]]:
        ids: List[ObjectId] = []
        for song_id in song_ids:
            oid = parse_object_id(song_id, 'song id')
            if oid not in ids:
                ids.append(oid)
        found = {song['_id']: song for song in self.db.songs.find({'_id': {'$in': ids}}, {'title': 1})}
        missing = [str(oid) for oid in ids if oid not in found]
        if missing:
            raise ValidationError('One or more songs do not exist', code='INVALID_SONGS', details=missing)
        return [found[oid] for oid in ids]

    def _check_chord_data(self, chord_data: str) -> bytes:
        if not chordpro.is_valid_chord_data(chord_data):
            raise ValidationError('Chord data must be plain ChordPro text', code='INVALID_CHORD_DATA')
        compressed = chordpro.compress(chord_data)
        if len(compressed) > chordpro.MAX_ARRANGEMENT_COMPRESSED_BYTES:
            raise ValidationError(
                'Chord data exceeds %d KB after compression' % (chordpro.MAX_ARRANGEMENT_COMPRESSED_BYTES // 1024),
                code='CHORD_DATA_TOO_LARGE',
            )
        return compressed

    def _build_sections(self, songs: List[Dict[str, Any]], sections: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
        """Validate mashup sections against the arrangement's songs."""

        if len(songs) == 1:
            if sections:
                raise ValidationError('Only mashups can define sections', code='INVALID_MASHUP')
            return []
        titles = {song['_id']: song.get('title') for song in songs}
        result = []
        for section in sections or []:
            song_id = parse_object_id(section['songId'], 'song id')
            if song_id not in titles:
                raise ValidationError('Mashup section references a song outside the arrangement', code='INVALID_MASHUP')
            if section['endBar'] < section['startBar']:
                raise ValidationError('Mashup section ends before it starts', code='INVALID_MASHUP')
            result.append({
                'songId': song_id,
                'title': section.get('title') or titles[song_id],
                'startBar': section['startBar'],
                'endBar': section['endBar'],
            })
        return result

    def list_for_song(self, song_id: Any, limit: int = 50) -> List[Dict[str, Any]]:
        oid = parse_object_id(song_id, 'song id')
        cursor = self.collection.find(
            {'songIds': oid, 'metadata.isPublic': True},
            {'compressedChordData': False},
        ).sort(PUBLIC_SORT).limit(limit)
        return list(cursor)

    def get_arrangement(self, arrangement_id: Any, actor: Actor = ANONYMOUS, count_view: bool = True) -> Dict[str, Any]:
        arrangement = self.get_raw(arrangement_id)
        check_visible(arrangement, actor, 'arrangement')
        if count_view:
            self.collection.update_one({'_id': arrangement['_id']}, {'$inc': {'metadata.views': 1}})
            metadata = arrangement.setdefault('metadata', {})
            metadata['views'] = (metadata.get('views') or 0) + 1
        return arrangement

    def create_arrangement(self, data: Dict[str, Any], actor: Actor) -> Dict[str, Any]:
        if not actor.authenticated:
            raise Unauthorized('Login required')
        schema.check(data, schema.arrangement_create, 'Invalid arrangement data')

        songs = self._load_songs(data['songIds'])
        sections = self._build_sections(songs, data.get('mashupSections'))
        compressed = self._check_chord_data(data['chordData'])

        now = utcnow()
        arrangement: Dict[str, Any] = {
            'name': data['name'].strip(),
            'songIds': [song['_id'] for song in songs],
            'createdBy': actor.username,
            'chordData': data['chordData'],
            'compressedChordData': compressed,
            'key': data['key'],
            'tempo': data.get('tempo'),
            'timeSignature': data.get('timeSignature') or '4/4',
            'difficulty': data.get('difficulty') or 'intermediate',
            'description': data.get('description') or '',
            'tags': _normalize_tags(data.get('tags')),
            'metadata': {
                'isMashup': len(songs) > 1,
                'mashupSections': sections,
                'isPublic': data.get('isPublic', True),
                'ratings': {'average': 0, 'count': 0},
                'views': 0,
                'reviewCount': 0,
            },
            'stats': {'usageCount': 0, 'lastUsed': None},
            'createdAt': now,
            'updatedAt': now,
        }

        base_slug = slugify(songs[0].get('title') or '') or 'arrangement'
        for attempt in range(3):
            arrangement['slug'] = '%s-%s' % (base_slug, random_suffix(SLUG_SUFFIX_LENGTH))
            arrangement['documentSize'] = document_size(arrangement)
            try:
                result = self.collection.insert_one(arrangement)
                break
            except DuplicateKeyError:
                arrangement.pop('_id', None)
                time.sleep(0.05 * (attempt + 1))
        else:
            raise Conflict('Could not allocate a unique arrangement slug', code='DUPLICATE_SLUG')

        arrangement['_id'] = result.inserted_id
        if len(songs) == 1:
            self.db.songs.update_one(
                {'_id': songs[0]['_id'], 'defaultArrangement': None},
                {'$set': {'defaultArrangement': result.inserted_id}},
            )
        self.db.users.update_one({'username': actor.username}, {'$inc': {'stats.arrangementsCreated': 1}})
        return arrangement

    def update_arrangement(self, arrangement_id: Any, data: Dict[str, Any], actor: Actor) -> Dict[str, Any]:
        schema.check(data, schema.arrangement_update, 'Invalid update data')
        arrangement = self.get_raw(arrangement_id)
        check_editable(arrangement, actor, 'arrangement')

        updates: Dict[str, Any] = {}
        for field in UPDATABLE_FIELDS:
            if field in data:
                updates[field] = data[field]
        if 'tags' in data:
            updates['tags'] = _normalize_tags(data['tags'])
        if 'chordData' in data:
            updates['chordData'] = data['chordData']
            updates['compressedChordData'] = self._check_chord_data(data['chordData'])
        if 'songIds' in data or 'mashupSections' in data:
            songs = self._load_songs(data.get('songIds') or arrangement['songIds'])
            current_sections = (arrangement.get('metadata') or {}).get('mashupSections') or []
            sections = data['mashupSections'] if 'mashupSections' in data else (current_sections if len(songs) > 1 else [])
            updates['songIds'] = [song['_id'] for song in songs]
            updates['metadata.isMashup'] = len(songs) > 1
            updates['metadata.mashupSections'] = self._build_sections(songs, sections)
        if 'isPublic' in data:
            updates['metadata.isPublic'] = data['isPublic']
        updates['updatedAt'] = utcnow()
        updates['documentSize'] = document_size(apply_set(arrangement, updates))

        self.collection.update_one({'_id': arrangement['_id']}, {'$set': updates})
        return apply_set(arrangement, updates)

    def delete_arrangement(self, arrangement_id: Any, actor: Actor) -> ObjectId:
        arrangement = self.get_raw(arrangement_id)
        check_editable(arrangement, actor, 'arrangement', level=ADMIN_LEVEL)
        in_use = self.db.setlists.count_documents({'songs.arrangementId': arrangement['_id']})
        if in_use:
            raise Conflict('Arrangement is used in %d setlist(s)' % in_use, code='ARRANGEMENT_IN_USE')

        self.collection.delete_one({'_id': arrangement['_id']})
        remove_arrangement_references(self.db, [arrangement['_id']])
        return arrangement['_id']

    def rate_arrangement(self, arrangement_id: Any, rating: Any, actor: Actor = ANONYMOUS) -> Dict[str, Any]:
        arrangement = self.get_raw(arrangement_id)
        check_visible(arrangement, actor, 'arrangement')
        return rate_document(self.collection, arrangement['_id'], rating, 'arrangement')

    def transpose(self, arrangement_id: Any, steps: int, actor: Actor = ANONYMOUS) -> Dict[str, Any]:
        arrangement = self.get_raw(arrangement_id)
        check_visible(arrangement, actor, 'arrangement')
        try:
            chord_data = chordpro.transpose(arrangement.get('chordData') or '', steps, key=arrangement.get('key'))
            key = chordpro.transposed_key(arrangement.get('key'), steps)
        except ValueError as exc:
            raise ValidationError(str(exc), code='INVALID_TRANSPOSE')
        return {
            'id': str(arrangement['_id']),
            'originalKey': arrangement.get('key'),
            'key': key,
            'steps': steps,
            'chordData': chord_data,
        }

    def increment_usage(self, arrangement_ids: List[ObjectId]) -> int:
        if not arrangement_ids:
            return 0
        result = self.collection.update_many(
            {'_id': {'$in': list(arrangement_ids)}},
            {'$inc': {'stats.usageCount': 1}, '$set': {'stats.lastUsed': utcnow()}},
        )
        return result.modified_count

    def find_mashups(self, limit: int = 20) -> List[Dict[str, Any]]:
        cursor = self.collection.find(
            {'metadata.isMashup': True, 'metadata.isPublic': True},
            {'compressedChordData': False},
        ).sort([('metadata.views', DESCENDING)]).limit(limit)
        return list(cursor)

    def search(self, query: str, limit: int = 20) -> List[Dict[str, Any]]:
        if not query or not query.strip():
            raise ValidationError('Search query is required', code='MISSING_QUERY')
        cursor = self.collection.find(
            {'$text': {'$search': query.strip()}, 'metadata.isPublic': True},
            {'score': {'$meta': 'textScore'}},
        ).sort([('score', {'$meta': 'textScore'})]).limit(limit)
        return list(cursor)
