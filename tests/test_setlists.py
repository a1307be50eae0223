from pathlib import Path
import sys
import unittest

from bson import ObjectId

sys.path.append(str(Path(__file__).resolve().parents[1]))

from documents import ANONYMOUS, Actor
from errors import Conflict, Forbidden, NotFound, ValidationError
from memory_db import MemoryDB
from setlists import SetlistBook, prepare_setlist, reorder_items


class SetlistHelperTests(unittest.TestCase):
    def test_prepare_setlist_renumbers_and_caps_duration(self):
        setlist = {'songs': [{'songId': i, 'order': 200 - i} for i in range(200)], 'metadata': {'isPublic': False}}
        prepare_setlist(setlist)
        self.assertEqual([item['order'] for item in setlist['songs'][:3]], [0, 1, 2])
        self.assertEqual(setlist['songs'][0]['songId'], 199)
        self.assertEqual(setlist['metadata']['estimatedDuration'], 500)
        self.assertNotIn('shareToken', setlist['metadata'])

    def test_prepare_setlist_manages_share_token(self):
        setlist = {'songs': [], 'metadata': {'isPublic': True}}
        prepare_setlist(setlist)
        token = setlist['metadata']['shareToken']
        self.assertEqual(len(token), 32)
        prepare_setlist(setlist)
        self.assertEqual(setlist['metadata']['shareToken'], token)
        setlist['metadata']['isPublic'] = False
        prepare_setlist(setlist)
        self.assertNotIn('shareToken', setlist['metadata'])

    def test_reorder_items_moves_named_songs_first(self):
        items = [{'songId': 'a', 'order': 0}, {'songId': 'b', 'order': 1}, {'songId': 'c', 'order': 2}]
        result = reorder_items(items, ['c', 'x', 'a'])
        self.assertEqual([item['songId'] for item in result], ['c', 'a', 'b'])
        self.assertEqual([item['order'] for item in result], [0, 1, 2])


class SetlistBookTests(unittest.TestCase):
    def setUp(self):
        self.db = MemoryDB()
        self.book = SetlistBook(self.db)
        self.book.ensure_indexes()
        self.alice = Actor('alice', 1)
        self.bob = Actor('bob', 1)
        self.mod = Actor('mod', 50)
        self.admin = Actor('admin', 100)
        self.songs = [
            self.db.songs.insert_one({'title': title, 'metadata': {'isPublic': True}}).inserted_id
            for title in ('Amazing Grace', 'Be Thou My Vision', 'Holy Holy Holy')
        ]
        self.arrangement = self.db.arrangements.insert_one({
            'name': 'Acoustic', 'songIds': [self.songs[0]], 'stats': {'usageCount': 0, 'lastUsed': None},
        }).inserted_id
        self.db.users.insert_one({'username': 'alice', 'stats': {}})

    def _create(self, actor=None, **fields):
        data = {
            'name': 'Sunday Morning',
            'tags': ['Sunday', ' Morning '],
            'songs': [
                {'songId': str(self.songs[0]), 'arrangementId': str(self.arrangement), 'transpose': 2},
                {'songId': str(self.songs[1])},
            ],
        }
        data.update(fields)
        return self.book.create_setlist(data, actor or self.alice)

    def test_create_setlist(self):
        setlist = self._create()
        self.assertEqual(setlist['createdBy'], 'alice')
        self.assertEqual(setlist['tags'], ['sunday', 'morning'])
        self.assertFalse(setlist['metadata']['isPublic'])
        self.assertNotIn('shareToken', setlist['metadata'])
        self.assertEqual(setlist['metadata']['estimatedDuration'], 8)
        self.assertEqual([item['order'] for item in setlist['songs']], [0, 1])
        self.assertEqual(setlist['songs'][0]['arrangementId'], self.arrangement)
        self.assertIsNone(setlist['songs'][1]['arrangementId'])
        self.assertEqual(self.db.users.find_one({'username': 'alice'})['stats']['setlistsCreated'], 1)

    def test_create_rejects_duplicate_songs(self):
        with self.assertRaises(ValidationError) as ctx:
            self._create(songs=[{'songId': str(self.songs[0])}, {'songId': str(self.songs[0])}])
        self.assertEqual(ctx.exception.code, 'DUPLICATE_SONG')

    def test_create_rejects_foreign_arrangement(self):
        with self.assertRaises(ValidationError) as ctx:
            self._create(songs=[{'songId': str(self.songs[1]), 'arrangementId': str(self.arrangement)}])
        self.assertEqual(ctx.exception.code, 'INVALID_ARRANGEMENT')

    def test_create_rejects_missing_songs(self):
        with self.assertRaises(ValidationError) as ctx:
            self._create(songs=[{'songId': str(ObjectId())}])
        self.assertEqual(ctx.exception.code, 'INVALID_SONGS')

    def test_share_token_follows_visibility(self):
        setlist = self._create(isPublic=True)
        token = setlist['metadata']['shareToken']
        self.assertEqual(self.book.get_by_share_token(token)['_id'], setlist['_id'])
        self.book.update_setlist(setlist['_id'], {'isPublic': False}, self.alice)
        with self.assertRaises(NotFound):
            self.book.get_by_share_token(token)
        self.assertNotIn('shareToken', self.db.setlists.find_one({'_id': setlist['_id']})['metadata'])

    def test_only_owner_can_update(self):
        setlist = self._create()
        for actor in (self.bob, self.mod):
            with self.assertRaises(Forbidden):
                self.book.update_setlist(setlist['_id'], {'name': 'Renamed'}, actor)
        updated = self.book.update_setlist(setlist['_id'], {'name': ' Evening '}, self.alice)
        self.assertEqual(updated['name'], 'Evening')

    def test_add_and_remove_songs(self):
        setlist = self._create()
        updated = self.book.add_song(setlist['_id'], {'songId': str(self.songs[2]), 'notes': 'Key change'}, self.alice)
        self.assertEqual([item['songId'] for item in updated['songs']], self.songs)
        self.assertEqual(updated['songs'][2]['order'], 2)
        self.assertEqual(updated['metadata']['estimatedDuration'], 12)
        with self.assertRaises(Conflict) as ctx:
            self.book.add_song(setlist['_id'], {'songId': str(self.songs[2])}, self.alice)
        self.assertEqual(ctx.exception.code, 'SONG_ALREADY_IN_SETLIST')

        updated = self.book.remove_song(setlist['_id'], str(self.songs[0]), self.alice)
        self.assertEqual([item['songId'] for item in updated['songs']], self.songs[1:])
        self.assertEqual([item['order'] for item in updated['songs']], [0, 1])
        with self.assertRaises(NotFound) as ctx:
            self.book.remove_song(setlist['_id'], str(self.songs[0]), self.alice)
        self.assertEqual(ctx.exception.code, 'SONG_NOT_IN_SETLIST')

    def test_reorder_and_transpose(self):
        setlist = self._create()
        updated = self.book.reorder(setlist['_id'], {'songIds': [str(self.songs[1]), 'bogus']}, self.alice)
        self.assertEqual([item['songId'] for item in updated['songs']], [self.songs[1], self.songs[0]])
        updated = self.book.set_transpose(setlist['_id'], str(self.songs[0]), {'transpose': -3}, self.alice)
        self.assertEqual(updated['songs'][1]['transpose'], -3)
        stored = self.db.setlists.find_one({'_id': setlist['_id']})
        self.assertEqual(stored['songs'][1]['transpose'], -3)
        with self.assertRaises(ValidationError):
            self.book.set_transpose(setlist['_id'], str(self.songs[0]), {'transpose': 12}, self.alice)

    def test_delete_setlist(self):
        setlist = self._create()
        with self.assertRaises(Forbidden):
            self.book.delete_setlist(setlist['_id'], self.mod)
        self.book.delete_setlist(setlist['_id'], self.admin)
        self.assertEqual(self.db.setlists.count_documents({}), 0)

    def test_mark_used_updates_arrangement_stats(self):
        setlist = self._create(isPublic=True)
        used = self.book.mark_used(setlist['_id'])
        self.assertEqual(used['metadata']['usageCount'], 1)
        stored = self.db.setlists.find_one({'_id': setlist['_id']})
        self.assertEqual(stored['metadata']['usageCount'], 1)
        self.assertEqual(self.db.arrangements.find_one({'_id': self.arrangement})['stats']['usageCount'], 1)

    def test_list_and_get_visibility(self):
        private = self._create()
        public = self._create(name='Christmas', isPublic=True, tags=['christmas'])

        listed, meta = self.book.list_setlists(ANONYMOUS)
        self.assertEqual([item['_id'] for item in listed], [public['_id']])
        self.assertEqual(meta['total'], 1)

        listed, _ = self.book.list_setlists(self.alice)
        self.assertEqual({item['_id'] for item in listed}, {private['_id'], public['_id']})

        listed, _ = self.book.list_setlists(self.alice, tags=['Christmas'])
        self.assertEqual([item['_id'] for item in listed], [public['_id']])

        with self.assertRaises(Forbidden):
            self.book.get_setlist(private['_id'], self.bob)
        self.assertEqual(self.book.get_setlist(private['_id'], self.mod)['_id'], private['_id'])

    def test_finders(self):
        public = self._create(name='Easter Sunrise', isPublic=True, tags=['easter'])
        self._create(name='Private Easter')
        self.assertEqual([item['_id'] for item in self.book.find_public()], [public['_id']])
        self.assertEqual(len(self.book.find_by_user('alice', include_private=True)), 2)
        self.assertEqual([item['_id'] for item in self.book.find_by_tag(' EASTER ')], [public['_id']])
        self.assertEqual([item['_id'] for item in self.book.search('sunrise')], [public['_id']])


if __name__ == '__main__':
    unittest.main()
