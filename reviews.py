"""Arrangement reviews with helpful marks and moderation reports."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Tuple

from bson import ObjectId
from pymongo import ASCENDING
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import schema
from documents import ANONYMOUS, Actor, check_visible, parse_object_id, utcnow
from errors import Forbidden, NotFound, Unauthorized, ValidationError

LOGGER = logging.getLogger(__name__)


def sort_reviews(reviews: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Most helpful first, newest first among equals."""

    return sorted(
        reviews,
        key=lambda review: (len(review.get('helpful') or []), review.get('createdAt') or datetime.min),
        reverse=True,
    )


class ReviewBoard:
    def __init__(self, db: Database) -> None:
        self.db = db
        self.collection = db.reviews

    def ensure_indexes(self) -> None:
        self.collection.create_index([('arrangementId', ASCENDING), ('userId', ASCENDING)], unique=True)
        self.collection.create_index('userId')
        self.collection.create_index([('reported', ASCENDING), ('reportedAt', ASCENDING)])

    def get_raw(self, review_id: Any) -> Dict[str, Any]:
        review = self.collection.find_one({'_id': parse_object_id(review_id, 'review id')})
        if not review:
            raise NotFound('Review not found', code='REVIEW_NOT_FOUND')
        return review

    def _arrangement(self, arrangement_id: Any, actor: Actor) -> Dict[str, Any]:
        arrangement = self.db.arrangements.find_one({'_id': parse_object_id(arrangement_id, 'arrangement id')})
        if not arrangement:
            raise NotFound('Arrangement not found', code='ARRANGEMENT_NOT_FOUND')
        check_visible(arrangement, actor, 'arrangement')
        return arrangement

    def average_rating(self, arrangement_id: ObjectId) -> Tuple[float, int]:
        ratings = [
            review['rating']
            for review in self.collection.find({'arrangementId': arrangement_id, 'reported': {'$ne': True}}, {'rating': 1})
        ]
        if not ratings:
            return 0, 0
        return round(sum(ratings) / len(ratings), 1), len(ratings)

    def recompute(self, arrangement_id: ObjectId) -> Dict[str, Any]:
        average, count = self.average_rating(arrangement_id)
        self.db.arrangements.update_one(
            {'_id': arrangement_id},
            {'$set': {
                'metadata.ratings': {'average': average, 'count': count},
                'metadata.reviewCount': count,
            }},
        )
        return {'average': average, 'count': count}

    def list_for_arrangement(
        self,
        arrangement_id: Any,
        actor: Actor = ANONYMOUS,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Dict[str, Any]], Dict[str, Any]]:
        arrangement = self._arrangement(arrangement_id, actor)
        query: Dict[str, Any] = {'arrangementId': arrangement['_id']}
        if not actor.is_moderator:
            query['reported'] = {'$ne': True}
        reviews = sort_reviews(list(self.collection.find(query)))
        average, count = self.average_rating(arrangement['_id'])
        meta = {
            'total': len(reviews),
            'limit': limit,
            'offset': offset,
            'averageRating': average,
            'reviewCount': count,
        }
        return reviews[offset:offset + limit], meta

    def upsert_review(self, arrangement_id: Any, data: Dict[str, Any], actor: Actor) -> Tuple[Dict[str, Any], bool]:
        """Create the caller's review or update it; returns ``(review, created)``."""

        if not actor.authenticated:
            raise Unauthorized('Login required')
        schema.check(data, schema.review, 'Invalid review data')
        arrangement = self._arrangement(arrangement_id, actor)
        key = {'arrangementId': arrangement['_id'], 'userId': actor.username}
        now = utcnow()

        created = False
        existing = self.collection.find_one(key)
        if existing is None:
            review = dict(key, rating=data['rating'], comment=data['comment'].strip(), helpful=[],
                          reported=False, createdAt=now, updatedAt=now)
            try:
                self.collection.insert_one(review)
                created = True
            except DuplicateKeyError:
                review.pop('_id', None)
                LOGGER.debug('Review by %s raced with another request, updating instead', actor.username)
        if not created:
            self.collection.update_one(key, {'$set': {
                'rating': data['rating'],
                'comment': data['comment'].strip(),
                'updatedAt': now,
            }})
            review = self.collection.find_one(key)

        self.recompute(arrangement['_id'])
        return review, created

    def toggle_helpful(self, review_id: Any, actor: Actor) -> Dict[str, Any]:
        if not actor.authenticated:
            raise Unauthorized('Login required')
        review = self.get_raw(review_id)
        if review.get('userId') == actor.username:
            raise ValidationError('You cannot mark your own review as helpful', code='CANNOT_MARK_OWN_REVIEW')
        helpful = actor.username in (review.get('helpful') or [])
        if helpful:
            self.collection.update_one({'_id': review['_id']}, {'$pull': {'helpful': actor.username}})
        else:
            self.collection.update_one({'_id': review['_id']}, {'$addToSet': {'helpful': actor.username}})
        count = len(review.get('helpful') or []) + (-1 if helpful else 1)
        return {'id': str(review['_id']), 'helpful': not helpful, 'helpfulCount': count}

    def report(self, review_id: Any, data: Dict[str, Any], actor: Actor) -> Dict[str, Any]:
        if not actor.authenticated:
            raise Unauthorized('Login required')
        schema.check(data, schema.review_report, 'Invalid report')
        review = self.get_raw(review_id)
        if review.get('userId') == actor.username:
            raise ValidationError('You cannot report your own review', code='CANNOT_REPORT_OWN_REVIEW')
        updates = {
            'reported': True,
            'reportReason': data['reason'].strip(),
            'reportedBy': actor.username,
            'reportedAt': utcnow(),
        }
        self.collection.update_one({'_id': review['_id']}, {'$set': updates})
        self.recompute(review['arrangementId'])
        review.update(updates)
        return review

    def clear_report(self, review_id: Any, actor: Actor) -> Dict[str, Any]:
        if not actor.is_moderator:
            raise Forbidden('Moderator access required')
        review = self.get_raw(review_id)
        self.collection.update_one(
            {'_id': review['_id']},
            {'$set': {'reported': False}, '$unset': {'reportReason': '', 'reportedBy': '', 'reportedAt': ''}},
        )
        self.recompute(review['arrangementId'])
        for field in ('reportReason', 'reportedBy', 'reportedAt'):
            review.pop(field, None)
        review['reported'] = False
        return review

    def find_reported(self, actor: Actor, limit: int = 50) -> List[Dict[str, Any]]:
        if not actor.is_moderator:
            raise Forbidden('Moderator access required')
        cursor = self.collection.find({'reported': True}).sort([('reportedAt', ASCENDING)]).limit(limit)
        return list(cursor)

    def delete_review(self, review_id: Any, actor: Actor) -> ObjectId:
        if not actor.is_admin:
            raise Forbidden('Admin access required')
        review = self.get_raw(review_id)
        self.collection.delete_one({'_id': review['_id']})
        self.recompute(review['arrangementId'])
        return review['_id']

    def delete_by_user(self, username: str) -> int:
        arrangement_ids = {review['arrangementId'] for review in self.collection.find({'userId': username}, {'arrangementId': 1})}
        result = self.collection.delete_many({'userId': username})
        self.collection.update_many({'helpful': username}, {'$pull': {'helpful': username}})
        for arrangement_id in arrangement_ids:
            self.recompute(arrangement_id)
        return result.deleted_count
