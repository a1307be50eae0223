"""Setlists: ordered songs (optionally pinned to an arrangement) for a service."""
from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, TEXT
from pymongo.database import Database

import schema
from arrangements import ArrangementCatalog
from documents import (
    ANONYMOUS,
    ADMIN_LEVEL,
    Actor,
    check_editable,
    check_visible,
    parse_object_id,
    utcnow,
)
from errors import Conflict, Forbidden, NotFound, Unauthorized, ValidationError

LOGGER = logging.getLogger(__name__)

MINUTES_PER_SONG = 4
MAX_ESTIMATED_DURATION = 500
SHARE_TOKEN_BYTES = 16


def prepare_setlist(setlist: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize a setlist before it is written.

    Items are sorted by their ``order`` and renumbered from zero, public
    setlists receive a share token and private ones lose theirs, and the
    estimated duration follows the number of songs.
    """

    metadata = setlist.setdefault('metadata', {})
    items = sorted(enumerate(setlist.get('songs') or []), key=lambda pair: (pair[1].get('order', pair[0]), pair[0]))
    setlist['songs'] = []
    for position, (_, item) in enumerate(items):
        item['order'] = position
        setlist['songs'].append(item)

    if metadata.get('isPublic'):
        if not metadata.get('shareToken'):
            metadata['shareToken'] = os.urandom(SHARE_TOKEN_BYTES).hex()
    else:
        metadata.pop('shareToken', None)

    metadata['estimatedDuration'] = min(len(setlist['songs']) * MINUTES_PER_SONG, MAX_ESTIMATED_DURATION)
    return setlist


def reorder_items(items: List[Dict[str, Any]], song_ids: List[ObjectId]) -> List[Dict[str, Any]]:
    """Move the named songs to the front in the given order; ignore unknown ids."""

    by_song = {item['songId']: item for item in items}
    ordered: List[Dict[str, Any]] = []
    for song_id in song_ids:
        item = by_song.pop(song_id, None)
        if item is not None:
            ordered.append(item)
    remaining = [item for item in items if item['songId'] in by_song]
    for position, item in enumerate(ordered + remaining):
        item['order'] = position
    return ordered + remaining


class SetlistBook:
    def __init__(self, db: Database, arrangements: Optional[ArrangementCatalog] = None) -> None:
        self.db = db
        self.collection = db.setlists
        self.arrangements = arrangements or ArrangementCatalog(db)

    def ensure_indexes(self) -> None:
        self.collection.create_index('metadata.shareToken', unique=True, sparse=True)
        self.collection.create_index([('createdBy', ASCENDING), ('updatedAt', DESCENDING)])
        self.collection.create_index('tags')
        try:
            self.collection.create_index(
                [('name', TEXT), ('description', TEXT), ('tags', TEXT)],
                name='setlist_text',
            )
        except Exception:
            LOGGER.debug('Could not ensure setlist text index')

    def get_raw(self, setlist_id: Any) -> Dict[str, Any]:
        setlist = self.collection.find_one({'_id': parse_object_id(setlist_id, 'setlist id')})
        if not setlist:
            raise NotFound('Setlist not found')
        return setlist

    def _build_items(self, items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        built = []
        seen = set()
        for index, item in enumerate(items):
            song_id = parse_object_id(item['songId'], 'song id')
            if song_id in seen:
                raise ValidationError('A song can only appear once in a setlist', code='DUPLICATE_SONG')
            seen.add(song_id)
            arrangement_id = item.get('arrangementId')
            built.append({
                'songId': song_id,
                'arrangementId': parse_object_id(arrangement_id, 'arrangement id') if arrangement_id else None,
                'transpose': item.get('transpose', 0),
                'notes': item.get('notes') or '',
                'order': item.get('order', index),
            })
        self._check_references(built)
        return built

    def _check_references(self, items: List[Dict[str, Any]]) -> None:
        song_ids = [item['songId'] for item in items]
        if song_ids:
            found = {song['_id'] for song in self.db.songs.find({'_id': {'$in': song_ids}}, {'_id': 1})}
            missing = [str(song_id) for song_id in song_ids if song_id not in found]
            if missing:
                raise ValidationError('One or more songs do not exist', code='INVALID_SONGS', details=missing)
        for item in items:
            if item['arrangementId'] is None:
                continue
            arrangement = self.db.arrangements.find_one({'_id': item['arrangementId']}, {'songIds': 1})
            if not arrangement or item['songId'] not in (arrangement.get('songIds') or []):
                raise ValidationError('Arrangement does not belong to the song', code='INVALID_ARRANGEMENT')

    def _save(self, setlist: Dict[str, Any]) -> Dict[str, Any]:
        prepare_setlist(setlist)
        setlist['updatedAt'] = utcnow()
        self.collection.replace_one({'_id': setlist['_id']}, setlist)
        return setlist

    def _owned(self, setlist_id: Any, actor: Actor) -> Dict[str, Any]:
        setlist = self.get_raw(setlist_id)
        if not actor.authenticated:
            raise Unauthorized('Login required')
        if not actor.owns(setlist.get('createdBy')):
            raise Forbidden('Only the owner can modify this setlist')
        return setlist

    def list_setlists(
        self,
        actor: Actor = ANONYMOUS,
        *,
        search: Optional[str] = None,
        created_by: Optional[str] = None,
        tags: Optional[List[str]] = None,
        is_public: Optional[bool] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[Dict[str, Any]], Dict[str, Any]]:
        clauses: List[Dict[str, Any]] = []
        if not actor.is_moderator:
            visible: List[Dict[str, Any]] = [{'metadata.isPublic': True}]
            if actor.authenticated:
                visible.append({'createdBy': actor.username})
            clauses.append({'$or': visible})
        if is_public is not None:
            clauses.append({'metadata.isPublic': is_public})
        if created_by:
            clauses.append({'createdBy': created_by})
        if tags:
            clauses.append({'tags': {'$in': [tag.lower() for tag in tags]}})

        query: Dict[str, Any] = {'$and': clauses} if clauses else {}
        projection = None
        sort = [('updatedAt', DESCENDING)]
        if search:
            query['$text'] = {'$search': search}
            projection = {'score': {'$meta': 'textScore'}}
            sort = [('score', {'$meta': 'textScore'})]

        setlists = list(self.collection.find(query, projection).sort(sort).skip(offset).limit(limit))
        meta = {'total': self.collection.count_documents(query), 'limit': limit, 'offset': offset}
        return setlists, meta

    def get_setlist(self, setlist_id: Any, actor: Actor = ANONYMOUS) -> Dict[str, Any]:
        setlist = self.get_raw(setlist_id)
        check_visible(setlist, actor, 'setlist')
        return setlist

    def get_by_share_token(self, token: str) -> Dict[str, Any]:
        setlist = self.collection.find_one({'metadata.shareToken': token, 'metadata.isPublic': True})
        if not setlist:
            raise NotFound('Shared setlist not found')
        return setlist

    def create_setlist(self, data: Dict[str, Any], actor: Actor) -> Dict[str, Any]:
        if not actor.authenticated:
            raise Unauthorized('Login required')
        schema.check(data, schema.setlist_create, 'Invalid setlist data')

        now = utcnow()
        setlist: Dict[str, Any] = {
            '_id': ObjectId(),
            'name': data['name'].strip(),
            'description': data.get('description') or '',
            'createdBy': actor.username,
            'tags': [tag.strip().lower() for tag in data.get('tags') or [] if tag.strip()],
            'songs': self._build_items(data.get('songs') or []),
            'metadata': {
                'isPublic': data.get('isPublic', False),
                'lastUsedAt': None,
                'usageCount': 0,
            },
            'createdAt': now,
            'updatedAt': now,
        }
        prepare_setlist(setlist)
        self.collection.insert_one(setlist)
        self.db.users.update_one({'username': actor.username}, {'$inc': {'stats.setlistsCreated': 1}})
        return setlist

    def update_setlist(self, setlist_id: Any, data: Dict[str, Any], actor: Actor) -> Dict[str, Any]:
        schema.check(data, schema.setlist_update, 'Invalid update data')
        setlist = self._owned(setlist_id, actor)
        if 'name' in data:
            setlist['name'] = data['name'].strip()
        if 'description' in data:
            setlist['description'] = data['description']
        if 'tags' in data:
            setlist['tags'] = [tag.strip().lower() for tag in data['tags'] if tag.strip()]
        if 'songs' in data:
            setlist['songs'] = self._build_items(data['songs'])
        if 'isPublic' in data:
            setlist.setdefault('metadata', {})['isPublic'] = data['isPublic']
        return self._save(setlist)

    def delete_setlist(self, setlist_id: Any, actor: Actor) -> ObjectId:
        setlist = self.get_raw(setlist_id)
        check_editable(setlist, actor, 'setlist', level=ADMIN_LEVEL)
        self.collection.delete_one({'_id': setlist['_id']})
        return setlist['_id']

    def add_song(self, setlist_id: Any, data: Dict[str, Any], actor: Actor) -> Dict[str, Any]:
        schema.check(data, schema.setlist_item, 'Invalid setlist item')
        setlist = self._owned(setlist_id, actor)
        song_id = parse_object_id(data['songId'], 'song id')
        if any(item['songId'] == song_id for item in setlist.get('songs') or []):
            raise Conflict('Song is already in this setlist', code='SONG_ALREADY_IN_SETLIST')
        item = self._build_items([dict(data, order=len(setlist.get('songs') or []))])[0]
        setlist.setdefault('songs', []).append(item)
        return self._save(setlist)

    def remove_song(self, setlist_id: Any, song_id: Any, actor: Actor) -> Dict[str, Any]:
        setlist = self._owned(setlist_id, actor)
        oid = parse_object_id(song_id, 'song id')
        remaining = [item for item in setlist.get('songs') or [] if item['songId'] != oid]
        if len(remaining) == len(setlist.get('songs') or []):
            raise NotFound('Song is not in this setlist', code='SONG_NOT_IN_SETLIST')
        setlist['songs'] = remaining
        return self._save(setlist)

    def reorder(self, setlist_id: Any, data: Dict[str, Any], actor: Actor) -> Dict[str, Any]:
        schema.check(data, schema.setlist_reorder, 'Invalid reorder request')
        setlist = self._owned(setlist_id, actor)
        song_ids = [ObjectId(value) for value in data['songIds'] if ObjectId.is_valid(value)]
        setlist['songs'] = reorder_items(setlist.get('songs') or [], song_ids)
        return self._save(setlist)

    def set_transpose(self, setlist_id: Any, song_id: Any, data: Dict[str, Any], actor: Actor) -> Dict[str, Any]:
        schema.check(data, schema.setlist_transpose, 'Invalid transpose value')
        setlist = self._owned(setlist_id, actor)
        oid = parse_object_id(song_id, 'song id')
        for item in setlist.get('songs') or []:
            if item['songId'] == oid:
                item['transpose'] = data['transpose']
                return self._save(setlist)
        raise NotFound('Song is not in this setlist', code='SONG_NOT_IN_SETLIST')

    def mark_used(self, setlist_id: Any, actor: Actor = ANONYMOUS) -> Dict[str, Any]:
        setlist = self.get_setlist(setlist_id, actor)
        now = utcnow()
        self.collection.update_one(
            {'_id': setlist['_id']},
            {'$inc': {'metadata.usageCount': 1}, '$set': {'metadata.lastUsedAt': now}},
        )
        arrangement_ids = [item['arrangementId'] for item in setlist.get('songs') or [] if item.get('arrangementId')]
        self.arrangements.increment_usage(arrangement_ids)
        metadata = setlist.setdefault('metadata', {})
        metadata['usageCount'] = (metadata.get('usageCount') or 0) + 1
        metadata['lastUsedAt'] = now
        return setlist

    def find_public(self, limit: int = 20) -> List[Dict[str, Any]]:
        cursor = self.collection.find({'metadata.isPublic': True}).sort([('metadata.usageCount', DESCENDING)]).limit(limit)
        return list(cursor)

    def find_by_user(self, username: str, include_private: bool = False, limit: int = 20) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {'createdBy': username}
        if not include_private:
            query['metadata.isPublic'] = True
        return list(self.collection.find(query).sort([('updatedAt', DESCENDING)]).limit(limit))

    def find_by_tag(self, tag: str, limit: int = 20) -> List[Dict[str, Any]]:
        query = {'tags': tag.strip().lower(), 'metadata.isPublic': True}
        return list(self.collection.find(query).sort([('updatedAt', DESCENDING)]).limit(limit))

    def search(self, query: str, limit: int = 20) -> List[Dict[str, Any]]:
        if not query or not query.strip():
            raise ValidationError('Search query is required', code='MISSING_QUERY')
        cursor = self.collection.find(
            {'$text': {'$search': query.strip()}, 'metadata.isPublic': True},
            {'score': {'$meta': 'textScore'}},
        ).sort([('score', {'$meta': 'textScore'})]).limit(limit)
        return list(cursor)
