"""Database storage usage, cleanup of stale documents and compression stats."""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, List, Tuple

from pymongo import DESCENDING
from pymongo.database import Database
from pymongo.errors import PyMongoError

from documents import remove_arrangement_references, remove_song_references, utcnow

LOGGER = logging.getLogger(__name__)

DEFAULT_LIMIT_MB = 512
WARNING_PERCENT = 80
CRITICAL_PERCENT = 90
LARGEST_LIMIT = 10

UNUSED_ARRANGEMENT_AGE = timedelta(days=180)
STALE_SONG_AGE = timedelta(days=90)
EMPTY_SETLIST_AGE = timedelta(days=90)
STALE_SONG_MAX_VIEWS = 5
STALE_SONG_MAX_RATING = 2.5

COUNTED_COLLECTIONS = ('songs', 'arrangements', 'setlists', 'users', 'reviews', 'verses', 'comments')


def _mb(size: float) -> float:
    return round(size / 1024 / 1024, 2)


def recommendations(percentage: float, data_size: float, index_size: float) -> List[str]:
    advice = []
    if percentage > CRITICAL_PERCENT:
        advice.append('CRITICAL: Database storage usage above 90%. Immediate cleanup required.')
    elif percentage > WARNING_PERCENT:
        advice.append('WARNING: Database storage usage above 80%. Consider cleanup.')
    if percentage > 70:
        advice.append('Consider increasing compression levels or archiving old data.')
    if data_size > index_size * 10:
        advice.append('Index size is relatively small. Storage usage is mainly data.')
    elif index_size > data_size * 0.3:
        advice.append('Index size is large. Consider optimizing indexes.')
    return advice


class StorageMonitor:
    def __init__(self, db: Database, limit_mb: float = DEFAULT_LIMIT_MB) -> None:
        self.db = db
        self.limit_mb = limit_mb

    def usage(self) -> Dict[str, Any]:
        stats = self.db.command('dbstats')
        data_size = stats.get('dataSize') or 0
        index_size = stats.get('indexSize') or 0
        usage = _mb(data_size + index_size)
        return {
            'usage': usage,
            'limit': self.limit_mb,
            'percentage': round(usage / self.limit_mb * 100, 2) if self.limit_mb else 0,
            'dataSize': data_size,
            'indexSize': index_size,
            'collections': stats.get('collections') or 0,
            'objects': stats.get('objects') or 0,
        }

    def stats(self) -> Dict[str, Any]:
        usage = self.usage()
        largest_songs = self.db.songs.find({}, {'title': 1, 'artist': 1, 'documentSize': 1}).sort(
            [('documentSize', DESCENDING)]).limit(LARGEST_LIMIT)
        largest_arrangements = self.db.arrangements.find({}, {'name': 1, 'documentSize': 1}).sort(
            [('documentSize', DESCENDING)]).limit(LARGEST_LIMIT)
        return {
            'database': usage,
            'collections': {name: self.db[name].count_documents({}) for name in COUNTED_COLLECTIONS},
            'largest': {
                'songs': list(largest_songs),
                'arrangements': list(largest_arrangements),
            },
            'recommendations': recommendations(usage['percentage'], usage['dataSize'], usage['indexSize']),
        }

    def _duplicate_slug_ids(self) -> List[Any]:
        groups = self.db.songs.aggregate([
            {'$sort': {'createdAt': 1}},
            {'$group': {'_id': '$slug', 'count': {'$sum': 1}, 'ids': {'$push': '$_id'}}},
            {'$match': {'count': {'$gt': 1}}},
        ])
        ids = []
        for group in groups:
            # the oldest copy keeps the slug
            ids.extend(group['ids'][1:])
        return ids

    def _setlist_arrangement_ids(self) -> List[Any]:
        ids = set()
        for setlist in self.db.setlists.find({}, {'songs': 1}):
            for entry in setlist.get('songs') or []:
                if entry.get('arrangementId'):
                    ids.add(entry['arrangementId'])
        return list(ids)

    def cleanup_candidates(self) -> Dict[str, List[Any]]:
        now = utcnow()
        unused_arrangements = self.db.arrangements.find({
            '_id': {'$nin': self._setlist_arrangement_ids()},
            'metadata.isPublic': False,
            'createdAt': {'$lt': now - UNUSED_ARRANGEMENT_AGE},
            '$or': [
                {'stats.lastUsed': {'$lt': now - UNUSED_ARRANGEMENT_AGE}},
                {'stats.lastUsed': None},
                {'stats.usageCount': 0},
            ],
        }, {'_id': 1})
        stale_songs = self.db.songs.find({
            'metadata.isPublic': False,
            'updatedAt': {'$lt': now - STALE_SONG_AGE},
            'metadata.views': {'$lt': STALE_SONG_MAX_VIEWS},
            'metadata.ratings.average': {'$lt': STALE_SONG_MAX_RATING},
        }, {'_id': 1})
        empty_setlists = self.db.setlists.find({
            'songs': {'$size': 0},
            'updatedAt': {'$lt': now - EMPTY_SETLIST_AGE},
        }, {'_id': 1})
        return {
            'duplicateSlugs': self._duplicate_slug_ids(),
            'unusedArrangements': [doc['_id'] for doc in unused_arrangements],
            'oldUnusedSongs': [doc['_id'] for doc in stale_songs],
            'emptySetlists': [doc['_id'] for doc in empty_setlists],
        }

    def cleanup(self, dry_run: bool = True) -> Dict[str, Any]:
        candidates = self.cleanup_candidates()
        if not dry_run:
            song_ids = list(candidates['duplicateSlugs']) + list(candidates['oldUnusedSongs'])
            if song_ids:
                self.db.songs.delete_many({'_id': {'$in': song_ids}})
                remove_song_references(self.db, song_ids)
            if candidates['unusedArrangements']:
                self.db.arrangements.delete_many({'_id': {'$in': candidates['unusedArrangements']}})
                remove_arrangement_references(self.db, candidates['unusedArrangements'])
            if candidates['emptySetlists']:
                self.db.setlists.delete_many({'_id': {'$in': candidates['emptySetlists']}})
        results = {name: len(ids) for name, ids in candidates.items()}
        LOGGER.info('Storage cleanup (%s): %s', 'dry run' if dry_run else 'applied', results)
        return {
            'dryRun': dry_run,
            'results': results,
            'ids': {name: [str(oid) for oid in ids] for name, ids in candidates.items()},
            'message': 'Cleanup analysis completed (no changes made)' if dry_run else 'Cleanup completed successfully',
        }

    def _compression_for(self, collection) -> Dict[str, Any]:
        count = 0
        original = 0
        compressed = 0
        for doc in collection.find({'compressedChordData': {'$exists': True}}, {'chordData': 1, 'compressedChordData': 1}):
            if not doc.get('chordData') or not doc.get('compressedChordData'):
                continue
            count += 1
            original += len(doc['chordData'].encode('utf-8'))
            compressed += len(doc['compressedChordData'])
        return {
            'count': count,
            'originalBytes': original,
            'compressedBytes': compressed,
            'averageOriginalBytes': round(original / count) if count else 0,
            'averageCompressedBytes': round(compressed / count) if count else 0,
            'compressionRatio': round((original - compressed) / original * 100, 2) if original else 0,
        }

    def compression(self) -> Dict[str, Any]:
        return {
            'songs': self._compression_for(self.db.songs),
            'arrangements': self._compression_for(self.db.arrangements),
        }

    def health(self) -> Tuple[Dict[str, Any], int]:
        try:
            self.db.command('ping')
            usage = self.usage()
        except PyMongoError:
            LOGGER.exception('Storage health check failed')
            return {
                'status': 'unhealthy',
                'database': {'connected': False},
                'code': 'DATABASE_DISCONNECTED',
            }, 503
        degraded = usage['percentage'] >= CRITICAL_PERCENT
        return {
            'status': 'degraded' if degraded else 'healthy',
            'database': {
                'connected': True,
                'usage': '%sMB / %sMB' % (usage['usage'], usage['limit']),
                'percentage': usage['percentage'],
            },
            'warnings': ['High storage usage'] if usage['percentage'] > WARNING_PERCENT else [],
        }, 200
