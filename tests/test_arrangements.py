from pathlib import Path
import sys
import unittest

from bson import ObjectId

sys.path.append(str(Path(__file__).resolve().parents[1]))

from arrangements import ArrangementCatalog, mashup_duration
from documents import ANONYMOUS, Actor
from errors import Conflict, Forbidden, ValidationError
from memory_db import MemoryDB

CHORDS = '{key: G}\n[G]Amazing [C]grace how [D]sweet'


class ArrangementCatalogTests(unittest.TestCase):
    def setUp(self):
        self.db = MemoryDB()
        self.catalog = ArrangementCatalog(self.db)
        self.catalog.ensure_indexes()
        self.alice = Actor('alice', 1)
        self.bob = Actor('bob', 1)
        self.admin = Actor('admin', 100)
        self.grace = self.db.songs.insert_one({
            'title': 'Amazing Grace', 'metadata': {'isPublic': True}, 'defaultArrangement': None,
        }).inserted_id
        self.vision = self.db.songs.insert_one({
            'title': 'Be Thou My Vision', 'metadata': {'isPublic': True}, 'defaultArrangement': None,
        }).inserted_id
        self.db.users.insert_one({'username': 'alice', 'stats': {}, 'favoriteArrangements': []})

    def _create(self, actor=None, **fields):
        data = {'name': 'Acoustic', 'songIds': [str(self.grace)], 'chordData': CHORDS, 'key': 'G'}
        data.update(fields)
        return self.catalog.create_arrangement(data, actor or self.alice)

    def test_create_single_song_arrangement(self):
        arrangement = self._create(tags=['Acoustic', 'acoustic', 'Slow'])
        self.assertTrue(arrangement['slug'].startswith('amazing-grace-'))
        self.assertFalse(arrangement['metadata']['isMashup'])
        self.assertEqual(arrangement['metadata']['mashupSections'], [])
        self.assertEqual(arrangement['tags'], ['acoustic', 'slow'])
        self.assertEqual(arrangement['stats'], {'usageCount': 0, 'lastUsed': None})
        self.assertEqual(self.db.songs.find_one({'_id': self.grace})['defaultArrangement'], arrangement['_id'])
        self.assertEqual(self.db.users.find_one({'username': 'alice'})['stats']['arrangementsCreated'], 1)

    def test_default_arrangement_is_only_set_once(self):
        first = self._create()
        self._create(name='Full band')
        self.assertEqual(self.db.songs.find_one({'_id': self.grace})['defaultArrangement'], first['_id'])

    def test_create_rejects_unknown_songs(self):
        missing = str(ObjectId())
        with self.assertRaises(ValidationError) as ctx:
            self._create(songIds=[str(self.grace), missing])
        self.assertEqual(ctx.exception.code, 'INVALID_SONGS')
        self.assertEqual(ctx.exception.details, [missing])

    def test_create_mashup(self):
        arrangement = self._create(
            name='Grace and Vision',
            songIds=[str(self.grace), str(self.vision)],
            mashupSections=[
                {'songId': str(self.grace), 'startBar': 1, 'endBar': 8},
                {'songId': str(self.vision), 'startBar': 1, 'endBar': 16, 'title': 'Bridge'},
            ],
        )
        metadata = arrangement['metadata']
        self.assertTrue(metadata['isMashup'])
        self.assertEqual([section['title'] for section in metadata['mashupSections']], ['Amazing Grace', 'Bridge'])
        self.assertEqual(mashup_duration(arrangement), 24)
        self.assertIsNone(self.db.songs.find_one({'_id': self.grace})['defaultArrangement'])

    def test_mashup_section_validation(self):
        with self.assertRaises(ValidationError) as ctx:
            self._create(mashupSections=[{'songId': str(self.grace), 'startBar': 1, 'endBar': 4}])
        self.assertEqual(ctx.exception.code, 'INVALID_MASHUP')
        with self.assertRaises(ValidationError) as ctx:
            self._create(
                songIds=[str(self.grace), str(self.vision)],
                mashupSections=[{'songId': str(self.grace), 'startBar': 9, 'endBar': 4}],
            )
        self.assertEqual(ctx.exception.code, 'INVALID_MASHUP')

    def test_create_rejects_binary_chord_data(self):
        with self.assertRaises(ValidationError) as ctx:
            self._create(chordData='[G]Amazing\x00grace')
        self.assertEqual(ctx.exception.code, 'INVALID_CHORD_DATA')

    def test_update_permissions_and_mashup_promotion(self):
        arrangement = self._create()
        with self.assertRaises(Forbidden):
            self.catalog.update_arrangement(arrangement['_id'], {'name': 'Mine now'}, self.bob)
        updated = self.catalog.update_arrangement(
            arrangement['_id'], {'songIds': [str(self.grace), str(self.vision)]}, self.alice)
        self.assertTrue(updated['metadata']['isMashup'])
        self.assertEqual(updated['songIds'], [self.grace, self.vision])

    def test_transpose(self):
        arrangement = self._create()
        result = self.catalog.transpose(arrangement['_id'], 2)
        self.assertEqual(result['originalKey'], 'G')
        self.assertEqual(result['key'], 'A')
        self.assertEqual(result['chordData'], '{key: A}\n[A]Amazing [D]grace how [E]sweet')
        with self.assertRaises(ValidationError) as ctx:
            self.catalog.transpose(arrangement['_id'], 12)
        self.assertEqual(ctx.exception.code, 'INVALID_TRANSPOSE')

    def test_transpose_by_zero_keeps_key_spelling(self):
        arrangement = self._create(key='A#')
        result = self.catalog.transpose(arrangement['_id'], 0)
        self.assertEqual(result['key'], 'A#')
        self.assertEqual(result['originalKey'], 'A#')
        self.assertEqual(result['chordData'], CHORDS)

    def test_delete_refuses_arrangement_in_setlist(self):
        arrangement = self._create()
        self.db.setlists.insert_one({'songs': [{'songId': self.grace, 'arrangementId': arrangement['_id']}]})
        with self.assertRaises(Conflict) as ctx:
            self.catalog.delete_arrangement(arrangement['_id'], self.alice)
        self.assertEqual(ctx.exception.code, 'ARRANGEMENT_IN_USE')

    def test_delete_cascades(self):
        arrangement = self._create()
        self.db.reviews.insert_one({'arrangementId': arrangement['_id'], 'userId': 'bob', 'rating': 5})
        self.db.users.update_one({'username': 'alice'}, {'$push': {'favoriteArrangements': arrangement['_id']}})
        with self.assertRaises(Forbidden):
            self.catalog.delete_arrangement(arrangement['_id'], self.bob)
        self.catalog.delete_arrangement(arrangement['_id'], self.admin)
        self.assertEqual(self.db.arrangements.count_documents({}), 0)
        self.assertEqual(self.db.reviews.count_documents({}), 0)
        self.assertIsNone(self.db.songs.find_one({'_id': self.grace})['defaultArrangement'])
        self.assertEqual(self.db.users.find_one({'username': 'alice'})['favoriteArrangements'], [])

    def test_list_for_song_hides_private(self):
        public = self._create()
        self._create(name='Draft', isPublic=False)
        listed = self.catalog.list_for_song(self.grace)
        self.assertEqual([item['_id'] for item in listed], [public['_id']])

    def test_private_arrangement_visibility(self):
        arrangement = self._create(isPublic=False)
        with self.assertRaises(Forbidden):
            self.catalog.get_arrangement(arrangement['_id'], ANONYMOUS)
        self.assertEqual(self.catalog.get_arrangement(arrangement['_id'], self.alice)['metadata']['views'], 1)

    def test_increment_usage_and_mashups(self):
        single = self._create()
        mashup = self._create(name='Medley', songIds=[str(self.grace), str(self.vision)])
        self.assertEqual(self.catalog.increment_usage([single['_id'], mashup['_id']]), 2)
        self.assertEqual(self.db.arrangements.find_one({'_id': single['_id']})['stats']['usageCount'], 1)
        self.assertIsNotNone(self.db.arrangements.find_one({'_id': single['_id']})['stats']['lastUsed'])
        self.assertEqual([item['_id'] for item in self.catalog.find_mashups()], [mashup['_id']])
        self.assertEqual(self.catalog.increment_usage([]), 0)


if __name__ == '__main__':
    unittest.main()
