"""Server side of the offline sync protocol.

Clients queue create/update/delete operations while offline and replay them in
batches. Every operation goes through the owning store so that validation and
permission checks match the regular endpoints. Outcomes are recorded in
``sync_operations`` keyed by user and operation id, which makes a replayed
batch idempotent: an operation that was already applied returns its recorded
result instead of being applied twice.

Conflicts are decided by the server: an update whose target changed after the
client's copy (``data.updatedAt``) is reported back with the server version
and left untouched.
"""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import schema
from arrangements import ArrangementCatalog
from documents import Actor, parse_object_id, parse_timestamp, serialize, to_millis, utcnow
from errors import ApiError, Forbidden, NotFound, Unauthorized, ValidationError
from setlists import SetlistBook
from songs import SongCatalog
from users import UserDirectory

LOGGER = logging.getLogger(__name__)

CHANGES_PER_ENTITY = 200
RECORD_TTL = timedelta(days=30)

ENTITY_COLLECTIONS = {'song': 'songs', 'setlist': 'setlists', 'arrangement': 'arrangements'}

# where each collection keeps its visibility flag and owner
VISIBILITY_FIELDS = {
    'songs': ('metadata.isPublic', 'metadata.createdBy'),
    'setlists': ('metadata.isPublic', 'createdBy'),
    'arrangements': ('metadata.isPublic', 'createdBy'),
}


class SyncConflict(Exception):
    def __init__(self, server_data: Dict[str, Any], last_modified: Optional[int]) -> None:
        super().__init__('Data conflict detected')
        self.server_data = server_data
        self.last_modified = last_modified


def _fields(data: Any, definition: Dict[str, Any]) -> Dict[str, Any]:
    """Keep only the keys the store schema knows about."""

    if not isinstance(data, dict):
        return {}
    allowed = definition.get('properties') or {}
    return {key: value for key, value in data.items() if key in allowed}


class SyncService:
    def __init__(
        self,
        db: Database,
        songs: Optional[SongCatalog] = None,
        arrangements: Optional[ArrangementCatalog] = None,
        setlists: Optional[SetlistBook] = None,
        users: Optional[UserDirectory] = None,
    ) -> None:
        self.db = db
        self.operations = db.sync_operations
        self.songs = songs or SongCatalog(db)
        self.arrangements = arrangements or ArrangementCatalog(db)
        self.setlists = setlists or SetlistBook(db, self.arrangements)
        self.users = users or UserDirectory(db)

    def ensure_indexes(self) -> None:
        self.operations.create_index([('username', ASCENDING), ('operationId', ASCENDING)], unique=True)
        try:
            self.operations.create_index('processedAt', expireAfterSeconds=int(RECORD_TTL.total_seconds()))
        except Exception:
            LOGGER.debug('Could not ensure sync operation TTL index')

    # operation records

    def _claim(self, actor: Actor, operation_id: str) -> Optional[Dict[str, Any]]:
        """Reserve an operation id; return the existing record when it is not ours to apply."""

        key = {'username': actor.username, 'operationId': operation_id}
        try:
            self.operations.insert_one(dict(key, status='processing', processedAt=utcnow()))
            return None
        except DuplicateKeyError:
            pass
        claimed = self.operations.find_one_and_update(
            dict(key, status={'$in': ['failed', 'conflict']}),
            {'$set': {'status': 'processing', 'processedAt': utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if claimed is not None:
            return None
        return self.operations.find_one(key)

    def _record(self, actor: Actor, operation_id: str, status: str, result: Any = None,
                error: Optional[Dict[str, Any]] = None) -> None:
        self.operations.update_one(
            {'username': actor.username, 'operationId': operation_id},
            {'$set': {'status': status, 'result': result, 'error': error, 'processedAt': utcnow()}},
        )

    # applying operations

    def _check_conflict(self, document: Dict[str, Any], data: Any) -> None:
        client_modified = parse_timestamp(data.get('updatedAt')) if isinstance(data, dict) else None
        server_modified = document.get('updatedAt')
        if client_modified is None or server_modified is None:
            return
        if server_modified > client_modified:
            raise SyncConflict(serialize(document), to_millis(server_modified))

    def _apply_user(self, operation: str, entity_id: str, data: Any, actor: Actor) -> Any:
        if (entity_id or '').lower() != actor.username.lower():
            raise Forbidden('You can only sync your own account')
        if operation == 'delete':
            raise Forbidden('Accounts cannot be removed through sync')
        updates = _fields(data, schema.profile_update)
        if not updates:
            return self.users.profile(actor.username, actor)
        return self.users.update_profile(actor.username, updates, actor)

    def apply(self, operation: Dict[str, Any], actor: Actor, force: bool = False) -> Any:
        """Apply one operation through its store and return the resulting document."""

        entity = operation.get('entity')
        op = operation.get('operation')
        entity_id = operation.get('entityId')
        data = operation.get('data') or {}
        if entity == 'user':
            return self._apply_user(op, entity_id, data, actor)
        if entity not in ENTITY_COLLECTIONS:
            raise ValidationError('Unknown entity type: %s' % entity)
        if op not in ('create', 'update', 'delete'):
            raise ValidationError('Unknown operation: %s' % op)

        if entity == 'song':
            create, update, delete = self.songs.create_song, self.songs.update_song, self.songs.delete_song
            create_schema, update_schema = schema.song_create, schema.song_update
        elif entity == 'arrangement':
            create, update = self.arrangements.create_arrangement, self.arrangements.update_arrangement
            delete = self.arrangements.delete_arrangement
            create_schema, update_schema = schema.arrangement_create, schema.arrangement_update
        else:
            create, update, delete = self.setlists.create_setlist, self.setlists.update_setlist, self.setlists.delete_setlist
            create_schema, update_schema = schema.setlist_create, schema.setlist_update

        if op == 'create':
            return create(_fields(data, create_schema), actor)

        collection = self.db[ENTITY_COLLECTIONS[entity]]
        current = collection.find_one({'_id': parse_object_id(entity_id, '%s id' % entity)})
        if op == 'delete':
            if current is None:
                return {'deleted': True}
            delete(current['_id'], actor)
            return {'deleted': True}

        if current is None:
            raise NotFound('%s not found' % entity.capitalize())
        if not force:
            self._check_conflict(current, data)
        return update(current['_id'], _fields(data, update_schema), actor)

    # endpoints

    def batch(self, payload: Dict[str, Any], actor: Actor) -> Dict[str, Any]:
        if not actor.authenticated:
            raise Unauthorized('Login required')
        schema.check(payload, schema.sync_batch, 'Invalid sync data')

        results: List[Dict[str, Any]] = []
        conflicts: List[Dict[str, Any]] = []
        for operation in payload['operations']:
            operation_id = operation['id']
            record = self._claim(actor, operation_id)
            if record is not None:
                if record.get('status') == 'applied':
                    results.append({'operationId': operation_id, 'success': True,
                                    'result': record.get('result'), 'duplicate': True})
                else:
                    results.append({'operationId': operation_id, 'success': False, 'duplicate': True,
                                    'error': {'code': 'SYNC_IN_PROGRESS', 'message': 'Operation is already being applied'}})
                continue

            try:
                result = serialize(self.apply(operation, actor))
            except SyncConflict as conflict:
                LOGGER.warning('Sync conflict on %s %s for %s', operation['entity'], operation['entityId'], actor.username)
                self._record(actor, operation_id, 'conflict')
                conflicts.append({
                    'operationId': operation_id,
                    'type': 'conflict',
                    'serverData': conflict.server_data,
                    'clientData': operation.get('data'),
                    'lastModified': conflict.last_modified,
                })
            except ApiError as e:
                LOGGER.warning('Sync operation %s failed for %s: %s', operation_id, actor.username, e.message)
                error = {'code': 'SYNC_FAILED', 'message': e.message}
                self._record(actor, operation_id, 'failed', error=error)
                results.append({'operationId': operation_id, 'success': False, 'error': error})
            except Exception:
                self._record(actor, operation_id, 'failed', error={'code': 'SYNC_FAILED', 'message': 'Internal error'})
                raise
            else:
                self._record(actor, operation_id, 'applied', result=result)
                results.append({'operationId': operation_id, 'success': True, 'result': result})

        server_timestamp = to_millis(utcnow())
        client_last_sync = payload.get('clientLastSync')
        changes = self.server_changes(client_last_sync, actor) if client_last_sync else []
        return {
            'results': results,
            'conflicts': conflicts,
            'serverChanges': changes,
            'serverTimestamp': server_timestamp,
        }

    def status(self, operation_ids: List[str], actor: Actor) -> List[Dict[str, Any]]:
        if not operation_ids:
            raise ValidationError('Operation IDs are required', code='MISSING_OPERATION_IDS')
        records = {
            record['operationId']: record
            for record in self.operations.find({'username': actor.username, 'operationId': {'$in': operation_ids}})
        }
        statuses = []
        for operation_id in operation_ids:
            record = records.get(operation_id)
            statuses.append({
                'operationId': operation_id,
                'status': record['status'] if record else 'not_found',
                'timestamp': to_millis(record.get('processedAt')) if record else None,
            })
        return statuses

    def resolve(self, payload: Any, actor: Actor) -> List[Dict[str, Any]]:
        if not actor.authenticated:
            raise Unauthorized('Login required')
        resolutions = payload.get('resolutions') if isinstance(payload, dict) else None
        if not isinstance(resolutions, list):
            raise ValidationError('Resolutions must be an array', code='INVALID_RESOLUTIONS')

        results = []
        for resolution in resolutions:
            operation_id = resolution.get('operationId') if isinstance(resolution, dict) else None
            try:
                schema.check(resolution, schema.sync_resolution, 'Invalid resolution')
                if resolution['choice'] == 'server':
                    result: Any = {'message': 'Server version kept'}
                else:
                    result = serialize(self.apply({
                        'operation': 'update',
                        'entity': resolution.get('entity'),
                        'entityId': resolution.get('entityId'),
                        'data': resolution.get('data'),
                    }, actor, force=True))
                self._record(actor, operation_id, 'applied', result=result)
                results.append({'operationId': operation_id, 'success': True, 'result': result})
            except ApiError as e:
                results.append({
                    'operationId': operation_id,
                    'success': False,
                    'error': {'code': 'RESOLUTION_FAILED', 'message': e.message},
                })
        return results

    def server_changes(self, since_ms: Any, actor: Actor) -> List[Dict[str, Any]]:
        since = parse_timestamp(since_ms)
        if since is None:
            return []
        changes = []
        for entity, name in ENTITY_COLLECTIONS.items():
            query: Dict[str, Any] = {'updatedAt': {'$gt': since}}
            if not actor.is_moderator:
                public_field, owner_field = VISIBILITY_FIELDS[name]
                query['$or'] = [{public_field: True}, {owner_field: actor.username}]
            cursor = self.db[name].find(query, {'compressedChordData': False}).sort(
                [('updatedAt', ASCENDING)]
            ).limit(CHANGES_PER_ENTITY)
            changes.extend({'entity': entity, 'data': serialize(document)} for document in cursor)
        return changes
