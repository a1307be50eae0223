"""Category browsing: songs grouped by theme, source, artist and title rules."""
from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from pymongo.database import Database
from pymongo.errors import PyMongoError

from documents import utcnow
from errors import NotFound, ServiceUnavailable, ValidationError

LOGGER = logging.getLogger(__name__)

THEME_SCORE = 10
SOURCE_SCORE = 8
ARTIST_SCORE = 7
TITLE_SCORE = 6
MIN_SCORE = 5

RECENT_DAYS = 7
TOP_SONG_RATING = 4.0
TOP_SONG_COUNT = 3

STATS_SORTS = {
    'popularity': {'popularityScore': -1},
    'count': {'songCount': -1},
    'rating': {'avgRating': -1},
    'alphabetical': {'name': 1},
}

SONG_SORTS = {
    'popular': [('metadata.views', -1), ('metadata.ratings.average', -1)],
    'recent': [('createdAt', -1)],
    'rating': [('metadata.ratings.average', -1), ('metadata.views', -1)],
    'title': [('title', 1)],
}


@dataclass(frozen=True)
class CategoryRule:
    id: str
    name: str
    themes: List[str] = field(default_factory=list)
    sources: List[str] = field(default_factory=list)
    artists: List[str] = field(default_factory=list)
    title_patterns: List[str] = field(default_factory=list)


CATEGORY_RULES = [
    CategoryRule(
        'traditional-holy', 'Traditional Holy Songs',
        themes=['holy', 'sacred', 'divine principle', 'true parents'],
        sources=['holy songbook', 'unification hymnal'],
        title_patterns=['holy', 'sacred', 'divine'],
    ),
    CategoryRule(
        'new-holy', 'New Holy Songs',
        themes=['new age', 'restoration', 'cheon il guk'],
        sources=['recent compositions', 'modern holy songs'],
    ),
    CategoryRule(
        'american-pioneer', 'American Pioneer Songs',
        themes=['pioneering', 'witnessing', 'generation of righteousness'],
        sources=['american pioneers', '1970s-1980s'],
        artists=['joshua cotter', 'dan fefferman', 'julia moon'],
    ),
    CategoryRule(
        'contemporary-christian', 'Contemporary Christian',
        themes=['praise', 'contemporary worship', 'modern christian'],
        sources=['hillsong', 'bethel', 'elevation', 'ccm'],
        artists=['chris tomlin', 'hillsong', 'bethel music'],
    ),
    CategoryRule(
        'classic-hymns', 'Classic Hymns',
        themes=['hymn', 'traditional', 'classic', 'historic'],
        sources=['hymnal', 'traditional hymns', 'church history'],
        title_patterns=['amazing grace', 'how great thou art', 'blessed assurance'],
    ),
    CategoryRule(
        'original-interchurch', 'Original Interchurch',
        themes=['community', 'fellowship', 'local church'],
        sources=['community submitted', 'interchurch', 'user contributed'],
    ),
]

RULES_BY_ID = {rule.id: rule for rule in CATEGORY_RULES}


def get_rule(category_id: str) -> CategoryRule:
    try:
        return RULES_BY_ID[category_id]
    except KeyError:
        raise NotFound('Category not found', code='CATEGORY_NOT_FOUND')


def _matches_any(field: str, patterns: List[str]) -> Dict[str, Any]:
    return {'$gt': [
        {'$size': {'$filter': {
            'input': patterns,
            'cond': {'$regexMatch': {'input': {'$toLower': field}, 'regex': '$$this'}},
        }}},
        0,
    ]}


def _rule_score(rule: CategoryRule) -> Dict[str, Any]:
    return {'$add': [
        {'$cond': [{'$gt': [{'$size': {'$setIntersection': [{'$ifNull': ['$themes', []]}, rule.themes]}}, 0]}, THEME_SCORE, 0]},
        {'$cond': [{'$and': [{'$ne': ['$source', None]}, _matches_any('$source', rule.sources)]}, SOURCE_SCORE, 0]},
        {'$cond': [{'$and': [{'$ne': ['$artist', None]}, _matches_any('$artist', rule.artists)]}, ARTIST_SCORE, 0]},
        {'$cond': [_matches_any('$title', rule.title_patterns), TITLE_SCORE, 0]},
    ]}


def build_stats_pipeline(sort_by: str = 'popularity', limit: int = 20, include_empty: bool = False,
                         now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Aggregation over ``songs`` producing one row per matched category."""

    now = now or utcnow()
    pipeline: List[Dict[str, Any]] = [
        {'$match': {
            'metadata.isPublic': True,
            '$or': [
                {'themes': {'$exists': True, '$not': {'$size': 0}}},
                {'source': {'$exists': True, '$ne': ''}},
                {'artist': {'$exists': True, '$ne': ''}},
            ],
        }},
        {'$addFields': {
            'assignedCategories': {'$filter': {
                'input': [{'categoryId': rule.id, 'name': rule.name, 'score': _rule_score(rule)} for rule in CATEGORY_RULES],
                'cond': {'$gte': ['$$this.score', MIN_SCORE]},
            }},
        }},
        {'$unwind': {'path': '$assignedCategories', 'preserveNullAndEmptyArrays': False}},
        {'$group': {
            '_id': '$assignedCategories.categoryId',
            'name': {'$first': '$assignedCategories.name'},
            'songCount': {'$sum': 1},
            'avgRating': {'$avg': '$metadata.ratings.average'},
            'totalViews': {'$sum': '$metadata.views'},
            'recentCount': {'$sum': {'$cond': [{'$gte': ['$createdAt', now - timedelta(days=RECENT_DAYS)]}, 1, 0]}},
            'topSongs': {'$push': {'$cond': [
                {'$gte': ['$metadata.ratings.average', TOP_SONG_RATING]},
                {'id': {'$toString': '$_id'}, 'title': '$title', 'artist': '$artist',
                 'rating': {'$round': ['$metadata.ratings.average', 2]}},
                '$$REMOVE',
            ]}},
        }},
        {'$addFields': {
            'popularityScore': {'$add': [
                {'$multiply': [{'$ifNull': ['$avgRating', 0]}, 2]},
                {'$divide': [{'$ifNull': ['$totalViews', 0]}, 100]},
                {'$multiply': ['$recentCount', 3]},
            ]},
            'topSongs': {'$slice': [{'$sortArray': {'input': '$topSongs', 'sortBy': {'rating': -1}}}, TOP_SONG_COUNT]},
        }},
    ]
    if not include_empty:
        pipeline.append({'$match': {'songCount': {'$gt': 0}}})
    pipeline.extend([
        {'$sort': STATS_SORTS[sort_by]},
        {'$limit': limit},
        {'$project': {
            '_id': 0,
            'id': '$_id',
            'name': 1,
            'songCount': 1,
            'avgRating': {'$round': [{'$ifNull': ['$avgRating', 0]}, 1]},
            'recentCount': 1,
            'popularityScore': {'$round': ['$popularityScore', 1]},
            'topSongs': 1,
        }},
    ])
    return pipeline


def score_song(song: Dict[str, Any], rule: CategoryRule) -> int:
    themes = {theme.lower() for theme in song.get('themes') or []}
    source = (song.get('source') or '').lower()
    artist = (song.get('artist') or '').lower()
    title = (song.get('title') or '').lower()
    score = 0
    if themes & set(rule.themes):
        score += THEME_SCORE
    if source and any(re.search(pattern, source) for pattern in rule.sources):
        score += SOURCE_SCORE
    if artist and any(re.search(pattern, artist) for pattern in rule.artists):
        score += ARTIST_SCORE
    if any(re.search(pattern, title) for pattern in rule.title_patterns):
        score += TITLE_SCORE
    return score


def match_categories(song: Dict[str, Any]) -> List[str]:
    return [rule.id for rule in CATEGORY_RULES if score_song(song, rule) >= MIN_SCORE]


def build_songs_filter(rule: CategoryRule, search: Optional[str] = None) -> Dict[str, Any]:
    query: Dict[str, Any] = {'metadata.isPublic': True}
    alternatives = []
    for field_name, patterns in (('themes', rule.themes), ('source', rule.sources),
                                 ('artist', rule.artists), ('title', rule.title_patterns)):
        if patterns:
            alternatives.append({field_name: {'$in': [re.compile(pattern, re.IGNORECASE) for pattern in patterns]}})
    if alternatives:
        query['$or'] = alternatives
    if search and search.strip():
        query['$text'] = {'$search': search.strip()}
    return query


def category_song(song: Dict[str, Any]) -> Dict[str, Any]:
    metadata = song.get('metadata') or {}
    return {
        'id': str(song['_id']),
        'title': song.get('title'),
        'artist': song.get('artist') or '',
        'slug': song.get('slug'),
        'themes': song.get('themes') or [],
        'source': song.get('source') or '',
        'viewCount': metadata.get('views') or 0,
        'avgRating': round((metadata.get('ratings') or {}).get('average') or 0, 2),
        'createdAt': song.get('createdAt'),
    }


class CategoryBrowser:
    def __init__(self, db: Database) -> None:
        self.db = db

    def _ensure_available(self) -> None:
        try:
            self.db.command('ping')
        except PyMongoError:
            LOGGER.warning('Database ping failed while browsing categories')
            raise ServiceUnavailable('Database connection is not available')

    def stats(self, sort_by: str = 'popularity', limit: int = 20,
              include_empty: bool = False) -> Tuple[List[Dict[str, Any]], Dict[str, Any]]:
        if sort_by not in STATS_SORTS:
            raise ValidationError('Invalid sortBy', details=['sortBy: must be one of %s' % ', '.join(STATS_SORTS)])
        if not 1 <= limit <= 50:
            raise ValidationError('Invalid limit', details=['limit: must be between 1 and 50'])
        self._ensure_available()

        now = utcnow()
        rows = list(self.db.songs.aggregate(build_stats_pipeline(sort_by, limit, include_empty, now)))
        for row in rows:
            row['lastUpdated'] = now
        if include_empty:
            # empty categories land after the limit
            present = {row['id'] for row in rows}
            for rule in CATEGORY_RULES:
                if rule.id not in present:
                    rows.append({
                        'id': rule.id,
                        'name': rule.name,
                        'songCount': 0,
                        'avgRating': 0,
                        'recentCount': 0,
                        'popularityScore': 0,
                        'topSongs': [],
                        'lastUpdated': now,
                    })
        meta = {'totalCategories': len(rows), 'generated': now, 'cacheHit': False}
        return rows, meta

    def songs(self, category_id: str, page: int = 1, limit: int = 20, sort_by: str = 'popular',
              search: Optional[str] = None) -> Tuple[List[Dict[str, Any]], Dict[str, Any]]:
        problems = []
        if page < 1:
            problems.append('page: must be at least 1')
        if not 1 <= limit <= 100:
            problems.append('limit: must be between 1 and 100')
        if sort_by not in SONG_SORTS:
            problems.append('sortBy: must be one of %s' % ', '.join(SONG_SORTS))
        if problems:
            raise ValidationError('Invalid query parameters', details=problems)
        self._ensure_available()
        rule = get_rule(category_id)

        query = build_songs_filter(rule, search)
        sort = list(SONG_SORTS[sort_by])
        projection: Dict[str, Any] = {'title': 1, 'artist': 1, 'slug': 1, 'themes': 1, 'source': 1, 'metadata': 1, 'createdAt': 1}
        if '$text' in query:
            projection['score'] = {'$meta': 'textScore'}
            sort.insert(0, ('score', {'$meta': 'textScore'}))

        cursor = self.db.songs.find(query, projection).sort(sort).skip((page - 1) * limit).limit(limit)
        songs = [category_song(song) for song in cursor]
        total = self.db.songs.count_documents(query)
        total_pages = math.ceil(total / limit)
        meta = {
            'pagination': {
                'page': page,
                'limit': limit,
                'total': total,
                'totalPages': total_pages,
                'hasNextPage': page < total_pages,
                'hasPrevPage': page > 1,
            },
            'category': {'id': rule.id, 'name': rule.name},
            'appliedFilters': {'sortBy': sort_by, 'searchQuery': search or None},
        }
        return songs, meta
