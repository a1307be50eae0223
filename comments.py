"""Threaded song comments (one level of replies)."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Tuple

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING
from pymongo.database import Database

import schema
from documents import ANONYMOUS, Actor, check_visible, parse_object_id, utcnow
from errors import Forbidden, NotFound, Unauthorized, ValidationError

LOGGER = logging.getLogger(__name__)


class CommentThread:
    def __init__(self, db: Database) -> None:
        self.db = db
        self.collection = db.comments

    def ensure_indexes(self) -> None:
        self.collection.create_index([('songId', ASCENDING), ('parentId', ASCENDING), ('createdAt', DESCENDING)])
        self.collection.create_index('author')

    def _song(self, song_id: Any, actor: Actor) -> Dict[str, Any]:
        song = self.db.songs.find_one({'_id': parse_object_id(song_id, 'song id')})
        if not song:
            raise NotFound('Song not found', code='SONG_NOT_FOUND')
        check_visible(song, actor, 'song')
        return song

    def get_raw(self, comment_id: Any) -> Dict[str, Any]:
        comment = self.collection.find_one({'_id': parse_object_id(comment_id, 'comment id')})
        if not comment:
            raise NotFound('Comment not found', code='COMMENT_NOT_FOUND')
        return comment

    def list_for_song(
        self,
        song_id: Any,
        actor: Actor = ANONYMOUS,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[Dict[str, Any]], Dict[str, Any]]:
        song = self._song(song_id, actor)
        query = {'songId': song['_id'], 'parentId': None}
        comments = list(self.collection.find(query).sort([('createdAt', DESCENDING)]).skip(offset).limit(limit))
        replies: Dict[ObjectId, List[Dict[str, Any]]] = {comment['_id']: [] for comment in comments}
        if replies:
            cursor = self.collection.find({'parentId': {'$in': list(replies)}}).sort([('createdAt', ASCENDING)])
            for reply in cursor:
                replies[reply['parentId']].append(reply)
        for comment in comments:
            comment['replies'] = replies[comment['_id']]
        meta = {'total': self.collection.count_documents(query), 'limit': limit, 'offset': offset}
        return comments, meta

    def add(self, song_id: Any, data: Dict[str, Any], actor: Actor) -> Dict[str, Any]:
        if not actor.authenticated:
            raise Unauthorized('Login required')
        schema.check(data, schema.comment_create, 'Invalid comment')
        song = self._song(song_id, actor)
        parent_id = None
        if data.get('parentId'):
            parent = self.get_raw(data['parentId'])
            if parent['songId'] != song['_id'] or parent.get('parentId') is not None:
                raise ValidationError('Replies must target a top-level comment on the same song', code='INVALID_PARENT')
            parent_id = parent['_id']
        now = utcnow()
        comment = {
            'songId': song['_id'],
            'parentId': parent_id,
            'author': actor.username,
            'text': data['text'].strip(),
            'edited': False,
            'createdAt': now,
            'updatedAt': now,
        }
        self.collection.insert_one(comment)
        return comment

    def edit(self, comment_id: Any, data: Dict[str, Any], actor: Actor) -> Dict[str, Any]:
        schema.check(data, schema.comment_update, 'Invalid comment')
        comment = self.get_raw(comment_id)
        if not actor.owns(comment.get('author')):
            raise Forbidden('Only the author can edit this comment')
        updates = {'text': data['text'].strip(), 'edited': True, 'updatedAt': utcnow()}
        self.collection.update_one({'_id': comment['_id']}, {'$set': updates})
        comment.update(updates)
        return comment

    def delete(self, comment_id: Any, actor: Actor) -> int:
        comment = self.get_raw(comment_id)
        if not (actor.owns(comment.get('author')) or actor.is_moderator):
            raise Forbidden('Only the author or a moderator can delete this comment')
        result = self.collection.delete_many({'$or': [{'_id': comment['_id']}, {'parentId': comment['_id']}]})
        return result.deleted_count

    def delete_by_author(self, username: str) -> int:
        authored = [comment['_id'] for comment in self.collection.find({'author': username}, {'_id': 1})]
        if not authored:
            return 0
        result = self.collection.delete_many({'$or': [{'_id': {'$in': authored}}, {'parentId': {'$in': authored}}]})
        return result.deleted_count
