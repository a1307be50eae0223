"""Scripture verses submitted against songs, approved by moderators."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo import ASCENDING
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import schema
from documents import ANONYMOUS, Actor, check_visible, parse_object_id, utcnow
from errors import Conflict, Forbidden, NotFound, Unauthorized

LOGGER = logging.getLogger(__name__)

STATUSES = ('pending', 'approved', 'rejected')


class VerseBoard:
    def __init__(self, db: Database) -> None:
        self.db = db
        self.collection = db.verses

    def ensure_indexes(self) -> None:
        self.collection.create_index(
            [('songId', ASCENDING), ('reference', ASCENDING), ('submittedBy', ASCENDING)],
            unique=True,
        )
        self.collection.create_index([('status', ASCENDING), ('createdAt', ASCENDING)])

    def get_raw(self, verse_id: Any) -> Dict[str, Any]:
        verse = self.collection.find_one({'_id': parse_object_id(verse_id, 'verse id')})
        if not verse:
            raise NotFound('Verse not found', code='VERSE_NOT_FOUND')
        return verse

    def _song(self, song_id: Any, actor: Actor) -> Dict[str, Any]:
        song = self.db.songs.find_one({'_id': parse_object_id(song_id, 'song id')})
        if not song:
            raise NotFound('Song not found', code='SONG_NOT_FOUND')
        check_visible(song, actor, 'song')
        return song

    def list_for_song(self, song_id: Any, actor: Actor = ANONYMOUS, status: Optional[str] = None) -> List[Dict[str, Any]]:
        song = self._song(song_id, actor)
        query: Dict[str, Any] = {'songId': song['_id']}
        if actor.is_moderator:
            if status in STATUSES:
                query['status'] = status
        else:
            query['status'] = 'approved'
        verses = list(self.collection.find(query))
        return sorted(
            verses,
            key=lambda verse: (len(verse.get('upvotes') or []), verse.get('createdAt') or datetime.min),
            reverse=True,
        )

    def submit(self, song_id: Any, data: Dict[str, Any], actor: Actor) -> Dict[str, Any]:
        if not actor.authenticated:
            raise Unauthorized('Login required')
        schema.check(data, schema.verse_submit, 'Invalid verse data')
        song = self._song(song_id, actor)
        now = utcnow()
        verse = {
            'songId': song['_id'],
            'reference': data['reference'].strip(),
            'text': data['text'].strip(),
            'submittedBy': actor.username,
            'upvotes': [],
            'status': 'pending',
            'createdAt': now,
            'updatedAt': now,
        }
        try:
            self.collection.insert_one(verse)
        except DuplicateKeyError:
            raise Conflict('You have already submitted this verse for this song', code='VERSE_ALREADY_EXISTS')
        return verse

    def toggle_upvote(self, verse_id: Any, actor: Actor) -> Dict[str, Any]:
        if not actor.authenticated:
            raise Unauthorized('Login required')
        verse = self.get_raw(verse_id)
        if verse.get('status') != 'approved':
            raise Forbidden('Only approved verses can be upvoted', code='VERSE_NOT_APPROVED')
        upvoted = actor.username in (verse.get('upvotes') or [])
        if upvoted:
            self.collection.update_one({'_id': verse['_id']}, {'$pull': {'upvotes': actor.username}})
        else:
            self.collection.update_one({'_id': verse['_id']}, {'$addToSet': {'upvotes': actor.username}})
        count = len(verse.get('upvotes') or []) + (-1 if upvoted else 1)
        return {'id': str(verse['_id']), 'upvoted': not upvoted, 'upvoteCount': count}

    def moderate(self, verse_id: Any, data: Dict[str, Any], actor: Actor) -> Dict[str, Any]:
        if not actor.is_moderator:
            raise Forbidden('Moderator access required')
        schema.check(data, schema.verse_moderate, 'Invalid moderation request')
        verse = self.get_raw(verse_id)
        updates: Dict[str, Any] = {
            'status': data['status'],
            'reviewedBy': actor.username,
            'reviewedAt': utcnow(),
            'updatedAt': utcnow(),
        }
        update: Dict[str, Any] = {'$set': updates}
        if data['status'] == 'rejected':
            updates['rejectionReason'] = (data.get('rejectionReason') or '').strip()
        else:
            update['$unset'] = {'rejectionReason': ''}
            verse.pop('rejectionReason', None)
        self.collection.update_one({'_id': verse['_id']}, update)
        verse.update(updates)
        return verse

    def delete(self, verse_id: Any, actor: Actor) -> ObjectId:
        if not actor.is_admin:
            raise Forbidden('Admin access required')
        verse = self.get_raw(verse_id)
        self.collection.delete_one({'_id': verse['_id']})
        return verse['_id']

    def find_pending(self, actor: Actor, limit: int = 50) -> List[Dict[str, Any]]:
        if not actor.is_moderator:
            raise Forbidden('Moderator access required')
        cursor = self.collection.find({'status': 'pending'}).sort([('createdAt', ASCENDING)]).limit(limit)
        return list(cursor)
