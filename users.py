"""User profiles, privacy settings, favorites and activity feeds."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo import DESCENDING
from pymongo.database import Database

import schema
from documents import ANONYMOUS, USER_LEVEL, Actor, parse_object_id, role_for_level, utcnow
from errors import Conflict, Forbidden, NotFound, Unauthorized, ValidationError

LOGGER = logging.getLogger(__name__)

DEFAULT_PRIVACY = {flag: False for flag in schema.PRIVACY_FLAGS}
DEFAULT_PRIVACY['showContributions'] = True

# showContributions survives a private profile
CASCADED_FLAGS = [flag for flag in schema.PRIVACY_FLAGS if flag not in ('isPublic', 'showContributions')]

DEFAULT_PREFERENCES = {'defaultKey': None, 'notation': 'english', 'fontSize': 16, 'theme': 'light'}

DEFAULT_STATS = {'songsCreated': 0, 'arrangementsCreated': 0, 'setlistsCreated': 0, 'lastLoginAt': None}

EMPTY_STATS = {'songsCreated': 0, 'arrangementsCreated': 0, 'setlistsCreated': 0}

FAVORITE_FIELDS = {'songs': 'favoriteSongs', 'arrangements': 'favoriteArrangements'}

CONTRIBUTION_LIMIT = 20
ACTIVITY_PER_KIND = 5
ACTIVITY_LIMIT = 20


def new_user_document(username: str, hashed_password: bytes, session_id: str) -> Dict[str, Any]:
    now = utcnow()
    return {
        'username': username,
        'username_lower': username.lower(),
        'password': hashed_password,
        'display_name': username,
        'user_level': USER_LEVEL,
        'session_id': session_id,
        'profile': {},
        'preferences': dict(DEFAULT_PREFERENCES),
        'profilePrivacy': dict(DEFAULT_PRIVACY),
        'stats': dict(DEFAULT_STATS),
        'favoriteSongs': [],
        'favoriteArrangements': [],
        'createdAt': now,
        'updatedAt': now,
    }


def cascade_privacy(privacy: Dict[str, bool]) -> Dict[str, bool]:
    """A private profile turns off every dependent visibility flag."""

    if not privacy.get('isPublic'):
        for flag in CASCADED_FLAGS:
            privacy[flag] = False
    return privacy


def _stat_counts(stats: Optional[Dict[str, Any]]) -> Dict[str, int]:
    stats = stats or {}
    return {name: stats.get(name) or 0 for name in EMPTY_STATS}


def apply_privacy_filter(user: Dict[str, Any], full_access: bool) -> Dict[str, Any]:
    """Return the profile fields the requester is allowed to see."""

    preferences = dict(DEFAULT_PREFERENCES, **(user.get('preferences') or {}))
    base = {
        'username': user['username'],
        'display_name': user.get('display_name') or user['username'],
        'role': role_for_level(user.get('user_level')),
        'preferences': preferences,
        'createdAt': user.get('createdAt'),
    }
    if full_access:
        base.update({
            'profile': user.get('profile') or {},
            'profilePrivacy': dict(DEFAULT_PRIVACY, **(user.get('profilePrivacy') or {})),
            'stats': dict(DEFAULT_STATS, **(user.get('stats') or {})),
            'favoriteSongs': user.get('favoriteSongs') or [],
            'favoriteArrangements': user.get('favoriteArrangements') or [],
            'updatedAt': user.get('updatedAt'),
        })
        return base

    privacy = dict(DEFAULT_PRIVACY, **(user.get('profilePrivacy') or {}))
    if not privacy['isPublic']:
        base.update({
            'profile': {},
            'stats': _stat_counts(user.get('stats')) if privacy['showContributions'] else dict(EMPTY_STATS),
            'isPublic': False,
        })
        return base

    profile = user.get('profile') or {}
    visible_profile = {}
    for field, flag in (('bio', 'showBio'), ('website', 'showWebsite'), ('location', 'showLocation')):
        if privacy[flag] and profile.get(field) is not None:
            visible_profile[field] = profile[field]
    base.update({
        'profile': visible_profile,
        'stats': _stat_counts(user.get('stats')) if privacy['showStats'] else dict(EMPTY_STATS),
        'favoriteSongs': (user.get('favoriteSongs') or []) if privacy['showFavorites'] else [],
        'favoriteArrangements': (user.get('favoriteArrangements') or []) if privacy['showFavorites'] else [],
        'allowContact': privacy['allowContact'],
        'isPublic': True,
    })
    return base


class UserDirectory:
    def __init__(self, db: Database) -> None:
        self.db = db
        self.collection = db.users

    def ensure_indexes(self) -> None:
        self.collection.create_index('username_lower', unique=True)
        self.collection.create_index('session_id')

    def get_user(self, username: str) -> Dict[str, Any]:
        user = self.collection.find_one({'username_lower': (username or '').lower()})
        if not user:
            raise NotFound('User not found', code='USER_NOT_FOUND')
        return user

    def _full_access(self, user: Dict[str, Any], actor: Actor) -> bool:
        return actor.owns(user['username']) or actor.is_moderator

    def _require_owner(self, user: Dict[str, Any], actor: Actor, allow_moderator: bool = False) -> None:
        if not actor.authenticated:
            raise Unauthorized('Login required')
        if actor.owns(user['username']) or (allow_moderator and actor.is_moderator):
            return
        raise Forbidden('You can only modify your own profile')

    def record_login(self, username: str) -> None:
        self.collection.update_one({'username': username}, {'$set': {'stats.lastLoginAt': utcnow()}})

    def profile(self, username: str, actor: Actor = ANONYMOUS) -> Dict[str, Any]:
        user = self.get_user(username)
        return apply_privacy_filter(user, self._full_access(user, actor))

    def update_profile(self, username: str, data: Dict[str, Any], actor: Actor) -> Dict[str, Any]:
        schema.check(data, schema.profile_update, 'Invalid profile data')
        user = self.get_user(username)
        self._require_owner(user, actor)

        updates: Dict[str, Any] = {}
        if 'display_name' in data:
            display_name = data['display_name'].strip()
            if not display_name:
                raise ValidationError('Display name cannot be empty', code='INVALID_DISPLAY_NAME')
            updates['display_name'] = display_name
        for field, value in (data.get('profile') or {}).items():
            updates['profile.%s' % field] = value.strip()
        for field, value in (data.get('preferences') or {}).items():
            updates['preferences.%s' % field] = value
        updates['updatedAt'] = utcnow()
        self.collection.update_one({'_id': user['_id']}, {'$set': updates})
        return apply_privacy_filter(self.get_user(username), True)

    def update_privacy(self, username: str, data: Dict[str, Any], actor: Actor) -> Dict[str, bool]:
        schema.check(data, schema.privacy_update, 'Invalid privacy settings')
        user = self.get_user(username)
        self._require_owner(user, actor, allow_moderator=True)
        privacy = dict(DEFAULT_PRIVACY, **(user.get('profilePrivacy') or {}))
        privacy.update(data['profilePrivacy'])
        cascade_privacy(privacy)
        self.collection.update_one(
            {'_id': user['_id']},
            {'$set': {'profilePrivacy': privacy, 'updatedAt': utcnow()}},
        )
        return privacy

    def _favorite_field(self, kind: str) -> str:
        if kind not in FAVORITE_FIELDS:
            raise ValidationError('Favorite type must be songs or arrangements', code='INVALID_FAVORITE_TYPE')
        return FAVORITE_FIELDS[kind]

    def favorites(self, username: str, kind: str = 'both', actor: Actor = ANONYMOUS) -> Dict[str, List[Dict[str, Any]]]:
        user = self.get_user(username)
        if not self._full_access(user, actor):
            privacy = cascade_privacy(dict(DEFAULT_PRIVACY, **(user.get('profilePrivacy') or {})))
            if not privacy['showFavorites']:
                raise Forbidden('Favorites are private')
        kinds = list(FAVORITE_FIELDS) if kind == 'both' else [kind]
        result = {}
        for name in kinds:
            field = self._favorite_field(name)
            ids = user.get(field) or []
            if name == 'songs':
                projection = {'title': 1, 'artist': 1, 'slug': 1, 'key': 1, 'metadata.ratings': 1}
            else:
                projection = {'name': 1, 'slug': 1, 'key': 1, 'songIds': 1, 'metadata.ratings': 1}
            found = {doc['_id']: doc for doc in self.db[name].find({'_id': {'$in': ids}}, projection)}
            result[name] = [found[oid] for oid in ids if oid in found]
        return result

    def add_favorite(self, username: str, kind: str, target_id: Any, actor: Actor) -> List[ObjectId]:
        field = self._favorite_field(kind)
        user = self.get_user(username)
        self._require_owner(user, actor)
        oid = parse_object_id(target_id, '%s id' % kind[:-1])
        if not self.db[kind].find_one({'_id': oid}, {'_id': 1}):
            raise NotFound('%s not found' % kind[:-1].capitalize())
        result = self.collection.update_one(
            {'_id': user['_id'], field: {'$ne': oid}},
            {'$addToSet': {field: oid}},
        )
        if not result.matched_count:
            raise Conflict('Already in favorites', code='ALREADY_FAVORITED')
        return (user.get(field) or []) + [oid]

    def remove_favorite(self, username: str, kind: str, target_id: Any, actor: Actor) -> List[ObjectId]:
        field = self._favorite_field(kind)
        user = self.get_user(username)
        self._require_owner(user, actor)
        oid = parse_object_id(target_id, '%s id' % kind[:-1])
        result = self.collection.update_one({'_id': user['_id'], field: oid}, {'$pull': {field: oid}})
        if not result.matched_count:
            raise NotFound('Not in favorites', code='NOT_FAVORITED')
        return [item for item in user.get(field) or [] if item != oid]

    def is_favorite(self, username: str, song_id: Any) -> bool:
        user = self.get_user(username)
        return parse_object_id(song_id, 'song id') in (user.get('favoriteSongs') or [])

    def contributions(self, username: str, actor: Actor = ANONYMOUS) -> Dict[str, List[Dict[str, Any]]]:
        user = self.get_user(username)
        privacy = dict(DEFAULT_PRIVACY, **(user.get('profilePrivacy') or {}))
        if not actor.owns(user['username']) and not privacy['showContributions']:
            raise Forbidden('Contributions are private')
        name = user['username']
        newest = [('createdAt', DESCENDING)]
        return {
            'arrangements': list(self.db.arrangements.find(
                {'createdBy': name, 'metadata.isPublic': True},
                {'name': 1, 'slug': 1, 'songIds': 1, 'metadata.ratings': 1, 'metadata.views': 1, 'createdAt': 1},
            ).sort(newest).limit(CONTRIBUTION_LIMIT)),
            'verses': list(self.db.verses.find(
                {'submittedBy': name, 'status': 'approved'},
                {'songId': 1, 'reference': 1, 'text': 1, 'upvotes': 1, 'createdAt': 1},
            ).sort(newest).limit(CONTRIBUTION_LIMIT)),
            'reviews': list(self.db.reviews.find(
                {'userId': name, 'reported': {'$ne': True}},
                {'arrangementId': 1, 'rating': 1, 'comment': 1, 'helpful': 1, 'createdAt': 1},
            ).sort(newest).limit(CONTRIBUTION_LIMIT)),
            'setlists': list(self.db.setlists.find(
                {'createdBy': name, 'metadata.isPublic': True},
                {'name': 1, 'description': 1, 'songs': 1, 'metadata': 1, 'createdAt': 1},
            ).sort(newest).limit(CONTRIBUTION_LIMIT)),
        }

    def activity(self, username: str, actor: Actor = ANONYMOUS) -> List[Dict[str, Any]]:
        user = self.get_user(username)
        privacy = cascade_privacy(dict(DEFAULT_PRIVACY, **(user.get('profilePrivacy') or {})))
        if not actor.owns(user['username']) and not privacy['showActivity']:
            raise Forbidden('Activity is private')
        name = user['username']
        newest = [('createdAt', DESCENDING)]
        activities: List[Dict[str, Any]] = []

        def recent(collection, query, projection):
            return self.db[collection].find(query, projection).sort(newest).limit(ACTIVITY_PER_KIND)

        for song in recent('songs', {'metadata.createdBy': name, 'metadata.isPublic': True}, {'title': 1, 'artist': 1, 'slug': 1, 'createdAt': 1}):
            activities.append({
                'type': 'song_created',
                'timestamp': song['createdAt'],
                'details': {'id': song.get('slug'), 'title': song.get('title'), 'subtitle': song.get('artist')},
            })

        arrangements = list(recent('arrangements', {'createdBy': name, 'metadata.isPublic': True}, {'name': 1, 'songIds': 1, 'createdAt': 1}))
        song_ids = {oid for arrangement in arrangements for oid in arrangement.get('songIds') or []}
        titles = {song['_id']: song.get('title') for song in self.db.songs.find({'_id': {'$in': list(song_ids)}}, {'title': 1})}
        for arrangement in arrangements:
            activities.append({
                'type': 'arrangement_created',
                'timestamp': arrangement['createdAt'],
                'details': {
                    'id': str(arrangement['_id']),
                    'title': arrangement.get('name'),
                    'subtitle': ', '.join(titles[oid] for oid in arrangement.get('songIds') or [] if titles.get(oid)),
                },
            })

        for setlist in recent('setlists', {'createdBy': name, 'metadata.isPublic': True}, {'name': 1, 'createdAt': 1}):
            activities.append({
                'type': 'setlist_created',
                'timestamp': setlist['createdAt'],
                'details': {'id': str(setlist['_id']), 'title': setlist.get('name')},
            })

        verses = list(recent('verses', {'submittedBy': name, 'status': 'approved'}, {'songId': 1, 'reference': 1, 'createdAt': 1}))
        verse_songs = {song['_id']: song.get('title') for song in self.db.songs.find({'_id': {'$in': [verse['songId'] for verse in verses]}}, {'title': 1})}
        for verse in verses:
            activities.append({
                'type': 'verse_submitted',
                'timestamp': verse['createdAt'],
                'details': {
                    'id': str(verse['songId']),
                    'title': 'Verse for %s' % (verse_songs.get(verse['songId']) or 'Unknown Song'),
                },
            })

        reviews = list(recent('reviews', {'userId': name, 'reported': {'$ne': True}}, {'arrangementId': 1, 'createdAt': 1}))
        names = {doc['_id']: doc.get('name') for doc in self.db.arrangements.find({'_id': {'$in': [review['arrangementId'] for review in reviews]}}, {'name': 1})}
        for review in reviews:
            activities.append({
                'type': 'review_posted',
                'timestamp': review['createdAt'],
                'details': {
                    'id': str(review['arrangementId']),
                    'title': 'Review for %s' % (names.get(review['arrangementId']) or 'Unknown Arrangement'),
                },
            })

        activities.sort(key=lambda item: item['timestamp'] or datetime.min, reverse=True)
        return activities[:ACTIVITY_LIMIT]

    def top_contributors(self, limit: int = 10) -> List[Dict[str, Any]]:
        users = self.collection.find(
            {'profilePrivacy.showContributions': {'$ne': False}},
            {'username': 1, 'display_name': 1, 'stats': 1},
        )
        ranked = []
        for user in users:
            stats = _stat_counts(user.get('stats'))
            total = sum(stats.values())
            if total:
                ranked.append({
                    'username': user['username'],
                    'display_name': user.get('display_name') or user['username'],
                    'stats': stats,
                    'total': total,
                })
        ranked.sort(key=lambda entry: entry['total'], reverse=True)
        return ranked[:limit]

    def public_users(self, limit: int = 50) -> List[Dict[str, Any]]:
        cursor = self.collection.find({'profilePrivacy.isPublic': True}).sort([('createdAt', DESCENDING)]).limit(limit)
        return [apply_privacy_filter(user, False) for user in cursor]

    def delete_user_content(self, username: str) -> None:
        """Detach a removed account from the documents that still reference it."""

        self.db.verses.update_many({'upvotes': username}, {'$pull': {'upvotes': username}})
        self.db.verses.delete_many({'submittedBy': username, 'status': {'$ne': 'approved'}})
        LOGGER.info('Removed pending contributions for %s', username)
