from datetime import datetime, timedelta
from pathlib import Path
import sys
import unittest

from bson import ObjectId

sys.path.append(str(Path(__file__).resolve().parents[1]))

from documents import ANONYMOUS, Actor, to_millis, utcnow
from errors import Forbidden, Unauthorized, ValidationError
from memory_db import MemoryDB
from sync import SyncService
from users import new_user_document

CHORDS = '{key: G}\n[G]Amazing [C]grace'


def _operation(op_id, operation, entity, entity_id, data=None):
    return {'id': op_id, 'operation': operation, 'entity': entity, 'entityId': entity_id,
            'data': data, 'timestamp': 1700000000000}


class SyncServiceTests(unittest.TestCase):
    def setUp(self):
        self.db = MemoryDB()
        self.service = SyncService(self.db)
        self.service.ensure_indexes()
        self.service.songs.ensure_indexes()
        self.alice = Actor('alice', 1)
        self.bob = Actor('bob', 1)
        self.db.users.insert_one(new_user_document('alice', b'hash', 's1'))
        self.db.users.insert_one(new_user_document('bob', b'hash', 's2'))

    def _create_song(self, op_id='op-1', **data):
        payload = {'title': 'Amazing Grace', 'chordData': CHORDS}
        payload.update(data)
        return self.service.batch({'operations': [_operation(op_id, 'create', 'song', 'temp-1', payload)]}, self.alice)

    def test_batch_applies_create(self):
        result = self._create_song(unknownField='dropped')
        self.assertEqual(len(result['results']), 1)
        entry = result['results'][0]
        self.assertTrue(entry['success'])
        self.assertEqual(entry['result']['title'], 'Amazing Grace')
        self.assertNotIn('compressedChordData', entry['result'])
        self.assertEqual(result['conflicts'], [])
        self.assertEqual(result['serverChanges'], [])
        self.assertIsInstance(result['serverTimestamp'], int)
        self.assertEqual(self.db.songs.count_documents({}), 1)
        record = self.db.sync_operations.find_one({'operationId': 'op-1'})
        self.assertEqual(record['status'], 'applied')

    def test_replayed_operation_is_not_applied_twice(self):
        first = self._create_song()
        second = self._create_song()
        self.assertTrue(second['results'][0]['duplicate'])
        self.assertEqual(second['results'][0]['result'], first['results'][0]['result'])
        self.assertEqual(self.db.songs.count_documents({}), 1)

    def test_operation_ids_are_scoped_per_user(self):
        self._create_song()
        payload = {'title': 'Holy Holy Holy', 'chordData': CHORDS}
        result = self.service.batch({'operations': [_operation('op-1', 'create', 'song', 'temp-1', payload)]}, self.bob)
        self.assertNotIn('duplicate', result['results'][0])
        self.assertEqual(self.db.songs.count_documents({}), 2)

    def test_failed_operation_can_be_retried(self):
        result = self._create_song(title='')
        entry = result['results'][0]
        self.assertFalse(entry['success'])
        self.assertEqual(entry['error']['code'], 'SYNC_FAILED')
        self.assertEqual(self.db.sync_operations.find_one({'operationId': 'op-1'})['status'], 'failed')

        retried = self._create_song()
        self.assertTrue(retried['results'][0]['success'])
        self.assertNotIn('duplicate', retried['results'][0])

    def test_update_conflict_keeps_server_version(self):
        song_id = str(self._create_song()['results'][0]['result']['id'])
        stale = to_millis(utcnow() - timedelta(minutes=5))
        result = self.service.batch({'operations': [
            _operation('op-2', 'update', 'song', song_id, {'title': 'Offline edit', 'updatedAt': stale}),
        ]}, self.alice)
        self.assertEqual(result['results'], [])
        conflict = result['conflicts'][0]
        self.assertEqual(conflict['operationId'], 'op-2')
        self.assertEqual(conflict['serverData']['title'], 'Amazing Grace')
        self.assertEqual(conflict['clientData']['title'], 'Offline edit')
        self.assertIsInstance(conflict['lastModified'], int)
        self.assertEqual(self.db.songs.find_one({'_id': ObjectId(song_id)})['title'], 'Amazing Grace')

    def test_update_without_client_timestamp_applies(self):
        song_id = str(self._create_song()['results'][0]['result']['id'])
        result = self.service.batch({'operations': [
            _operation('op-2', 'update', 'song', song_id, {'title': 'Renamed'}),
        ]}, self.alice)
        self.assertTrue(result['results'][0]['success'])
        self.assertEqual(self.db.songs.find_one({'_id': ObjectId(song_id)})['title'], 'Renamed')

    def test_permissions_flow_through_stores(self):
        song_id = str(self._create_song()['results'][0]['result']['id'])
        result = self.service.batch({'operations': [
            _operation('op-9', 'update', 'song', song_id, {'title': 'Not mine'}),
        ]}, self.bob)
        self.assertFalse(result['results'][0]['success'])

    def test_delete_missing_document_succeeds(self):
        result = self.service.batch({'operations': [
            _operation('op-3', 'delete', 'setlist', str(ObjectId())),
        ]}, self.alice)
        self.assertEqual(result['results'][0]['result'], {'deleted': True})

    def test_user_entity_is_limited_to_caller(self):
        with self.assertRaises(Forbidden):
            self.service.apply(_operation('x', 'update', 'user', 'bob', {'display_name': 'Bobby'}), self.alice)
        with self.assertRaises(Forbidden):
            self.service.apply(_operation('x', 'delete', 'user', 'alice'), self.alice)
        profile = self.service.apply(_operation('x', 'update', 'user', 'alice', {'display_name': 'Ally', 'password': 'x'}), self.alice)
        self.assertEqual(profile['display_name'], 'Ally')

    def test_batch_validation(self):
        with self.assertRaises(Unauthorized):
            self.service.batch({'operations': []}, ANONYMOUS)
        with self.assertRaises(ValidationError):
            self.service.batch({'operations': [{'id': 'x'}]}, self.alice)
        with self.assertRaises(ValidationError):
            self.service.batch({'operations': [_operation(str(i), 'create', 'song', 't') for i in range(51)]}, self.alice)

    def test_status(self):
        self._create_song()
        statuses = self.service.status(['op-1', 'op-missing'], self.alice)
        self.assertEqual(statuses[0]['status'], 'applied')
        self.assertIsInstance(statuses[0]['timestamp'], int)
        self.assertEqual(statuses[1], {'operationId': 'op-missing', 'status': 'not_found', 'timestamp': None})
        self.assertEqual(self.service.status(['op-1'], self.bob)[0]['status'], 'not_found')
        with self.assertRaises(ValidationError) as ctx:
            self.service.status([], self.alice)
        self.assertEqual(ctx.exception.code, 'MISSING_OPERATION_IDS')

    def test_resolve(self):
        song_id = str(self._create_song()['results'][0]['result']['id'])
        results = self.service.resolve({'resolutions': [
            {'operationId': 'op-2', 'choice': 'server', 'entity': 'song', 'entityId': song_id},
            {'operationId': 'op-3', 'choice': 'client', 'entity': 'song', 'entityId': song_id,
             'data': {'title': 'Client wins', 'updatedAt': 0}},
            {'operationId': 'op-4', 'choice': 'client', 'entity': 'song', 'entityId': str(ObjectId()), 'data': {}},
        ]}, self.alice)
        self.assertEqual(results[0]['result'], {'message': 'Server version kept'})
        self.assertTrue(results[1]['success'])
        self.assertEqual(results[1]['result']['title'], 'Client wins')
        self.assertFalse(results[2]['success'])
        self.assertEqual(results[2]['error']['code'], 'RESOLUTION_FAILED')
        with self.assertRaises(ValidationError) as ctx:
            self.service.resolve({'resolutions': 'all'}, self.alice)
        self.assertEqual(ctx.exception.code, 'INVALID_RESOLUTIONS')

    def test_server_changes_respect_visibility(self):
        since = to_millis(utcnow() - timedelta(minutes=1))
        self._create_song()
        self._create_song('op-2', title='Secret', isPublic=False)
        self.service.batch({'operations': [
            _operation('op-3', 'create', 'song', 'temp', {'title': 'Bob Secret', 'chordData': CHORDS, 'isPublic': False}),
        ]}, self.bob)

        changes = self.service.server_changes(since, self.alice)
        self.assertEqual(sorted(change['data']['title'] for change in changes), ['Amazing Grace', 'Secret'])
        self.assertTrue(all(change['entity'] == 'song' for change in changes))

        result = self.service.batch({'operations': [], 'clientLastSync': since}, self.bob)
        self.assertEqual(sorted(change['data']['title'] for change in result['serverChanges']), ['Amazing Grace', 'Bob Secret'])
        self.assertEqual(self.service.server_changes(to_millis(datetime(2100, 1, 1)), self.alice), [])


if __name__ == '__main__':
    unittest.main()
