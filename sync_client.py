"""Offline sync client for the songbook API.

Operations made while offline are kept in a JSON file queue and replayed
against ``/api/sync/batch`` once the server is reachable again. Entities the
server sends back are kept in a small JSON cache.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import time
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests

LOGGER = logging.getLogger(__name__)

OPERATIONS = ('create', 'update', 'delete')
ENTITIES = ('song', 'setlist', 'arrangement', 'user')

PENDING = 'pending'
PROCESSING = 'processing'
FAILED = 'failed'
SYNCED = 'synced'


def _write_json(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile('w', encoding='utf-8', dir=str(path.parent),
                                     prefix=path.name, suffix='.tmp', delete=False) as tmp:
        json.dump(payload, tmp, indent=2)
        tmp_path = tmp.name
    os.replace(tmp_path, path)


def _read_json(path: Path, default: Any) -> Any:
    if not path.exists():
        return default
    try:
        return json.loads(path.read_text(encoding='utf-8'))
    except (OSError, ValueError):
        LOGGER.warning('Could not read %s, starting empty', path)
        return default


@dataclass
class SyncOperation:
    operation: str
    entity: str
    entity_id: str
    data: Any = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))
    retries: int = 0
    status: str = PENDING
    last_error: Optional[str] = None
    next_attempt_at: float = 0.0

    def to_payload(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'operation': self.operation,
            'entity': self.entity,
            'entityId': self.entity_id,
            'data': self.data,
            'timestamp': self.timestamp,
        }


class SyncQueue:
    """Pending operations persisted to a JSON file."""

    def __init__(self, path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()
        raw = _read_json(self.path, {'operations': []})
        self._operations: List[SyncOperation] = [SyncOperation(**item) for item in raw.get('operations', [])]
        # anything left mid-flight by a crash goes back to pending
        for operation in self._operations:
            if operation.status == PROCESSING:
                operation.status = PENDING

    def _save(self) -> None:
        _write_json(self.path, {'operations': [asdict(operation) for operation in self._operations]})

    def _find(self, operation_id: str) -> Optional[SyncOperation]:
        for operation in self._operations:
            if operation.id == operation_id:
                return operation
        return None

    def add(self, operation: SyncOperation) -> SyncOperation:
        with self._lock:
            self._operations.append(operation)
            self._save()
        return operation

    def get(self, operation_id: str) -> Optional[SyncOperation]:
        with self._lock:
            return self._find(operation_id)

    def all(self) -> List[SyncOperation]:
        with self._lock:
            return list(self._operations)

    def ready(self, now: Optional[float] = None) -> List[SyncOperation]:
        now = time.time() if now is None else now
        with self._lock:
            return [op for op in self._operations if op.status == PENDING and op.next_attempt_at <= now]

    def mark_processing(self, operation_ids: List[str]) -> None:
        self._set_status(operation_ids, PROCESSING)

    def release(self, operation_ids: List[str]) -> None:
        self._set_status(operation_ids, PENDING)

    def _set_status(self, operation_ids: List[str], status: str) -> None:
        with self._lock:
            for operation_id in operation_ids:
                operation = self._find(operation_id)
                if operation:
                    operation.status = status
            self._save()

    def remove(self, operation_id: str) -> None:
        with self._lock:
            self._operations = [op for op in self._operations if op.id != operation_id]
            self._save()

    def mark_failed(self, operation_id: str, error: str, retry_delay: float, max_retries: int) -> Optional[SyncOperation]:
        """Count one failed attempt; the operation is parked once it runs out of retries."""

        with self._lock:
            operation = self._find(operation_id)
            if operation is None:
                return None
            operation.retries += 1
            operation.last_error = error
            if operation.retries >= max_retries:
                operation.status = FAILED
            else:
                operation.status = PENDING
                operation.next_attempt_at = time.time() + retry_delay * operation.retries
            self._save()
            return operation

    def reset_failed(self) -> int:
        with self._lock:
            count = 0
            for operation in self._operations:
                if operation.status == FAILED:
                    operation.status = PENDING
                    operation.retries = 0
                    operation.last_error = None
                    operation.next_attempt_at = 0.0
                    count += 1
            self._save()
            return count

    def clear(self) -> None:
        with self._lock:
            self._operations = []
            self._save()

    def counts(self) -> Dict[str, int]:
        with self._lock:
            counts = {PENDING: 0, PROCESSING: 0, FAILED: 0}
            for operation in self._operations:
                counts[operation.status] = counts.get(operation.status, 0) + 1
            return counts


class LocalCache:
    """Server copies of entities plus the time of the last successful sync."""

    def __init__(self, path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()
        raw = _read_json(self.path, {})
        self._entities: Dict[str, Dict[str, Any]] = raw.get('entities', {})
        self._last_sync: Optional[int] = raw.get('last_sync')

    def _save(self) -> None:
        _write_json(self.path, {'entities': self._entities, 'last_sync': self._last_sync})

    @property
    def last_sync(self) -> Optional[int]:
        return self._last_sync

    @last_sync.setter
    def last_sync(self, value: Optional[int]) -> None:
        with self._lock:
            self._last_sync = value
            self._save()

    def put(self, entity: str, data: Dict[str, Any]) -> None:
        entity_id = data.get('id') or data.get('_id')
        if not entity_id:
            return
        with self._lock:
            self._entities.setdefault(entity, {})[str(entity_id)] = data
            self._save()

    def get(self, entity: str, entity_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._entities.get(entity, {}).get(entity_id)

    def delete(self, entity: str, entity_id: str) -> None:
        with self._lock:
            self._entities.get(entity, {}).pop(entity_id, None)
            self._save()

    def entities(self, entity: str) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._entities.get(entity, {}).values())


class SyncManager:
    def __init__(
        self,
        base_url: str,
        queue: SyncQueue,
        cache: LocalCache,
        session: Optional[requests.Session] = None,
        retry_delay: float = 5.0,
        max_retries: int = 3,
        batch_size: int = 50,
        timeout: float = 10,
        use_csrf: bool = False,
    ) -> None:
        self.base_url = base_url.rstrip('/') + '/'
        self.queue = queue
        self.cache = cache
        self.session = session or requests.Session()
        self.retry_delay = retry_delay
        self.max_retries = max_retries
        self.batch_size = batch_size
        self.timeout = timeout
        self.use_csrf = use_csrf
        self.online = True
        self._csrf_token: Optional[str] = None
        self._processing = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _url(self, path: str) -> str:
        return self.base_url + 'api/' + path

    def _headers(self) -> Dict[str, str]:
        if not self.use_csrf:
            return {}
        if self._csrf_token is None:
            resp = self.session.get(self._url('csrftoken'), timeout=self.timeout)
            resp.raise_for_status()
            self._csrf_token = resp.json()['token']
        return {'X-CSRFToken': self._csrf_token}

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        resp = self.session.post(self._url(path), json=payload, headers=self._headers(), timeout=self.timeout)
        resp.raise_for_status()
        body = resp.json()
        return body.get('data', body)

    def login(self, username: str, password: str) -> Dict[str, Any]:
        resp = self.session.post(self._url('login'), json={'username': username, 'password': password},
                                 headers=self._headers(), timeout=self.timeout)
        resp.raise_for_status()
        return resp.json()

    def add_operation(self, operation: str, entity: str, entity_id: str, data: Any = None,
                      sync_now: bool = True) -> SyncOperation:
        if operation not in OPERATIONS:
            raise ValueError('Unknown operation: %s' % operation)
        if entity not in ENTITIES:
            raise ValueError('Unknown entity: %s' % entity)
        queued = self.queue.add(SyncOperation(operation=operation, entity=entity, entity_id=entity_id, data=data))
        LOGGER.info('Added to sync queue: %s %s', operation, entity)
        if sync_now and self.online:
            self.process_sync_queue()
        return queued

    def process_sync_queue(self) -> Dict[str, int]:
        summary = {'synced': 0, 'failed': 0, 'conflicts': 0}
        if not self._processing.acquire(blocking=False):
            return summary
        try:
            ready = self.queue.ready()
            if not ready:
                return summary
            grouped: Dict[str, List[SyncOperation]] = {}
            for operation in ready:
                grouped.setdefault(operation.entity, []).append(operation)
            for entity, operations in grouped.items():
                for start in range(0, len(operations), self.batch_size):
                    if not self._sync_batch(operations[start:start + self.batch_size], summary):
                        return summary
            return summary
        finally:
            self._processing.release()

    def _sync_batch(self, operations: List[SyncOperation], summary: Dict[str, int]) -> bool:
        """Send one batch; returns False when the server could not be reached."""

        ids = [operation.id for operation in operations]
        self.queue.mark_processing(ids)
        payload: Dict[str, Any] = {'operations': [operation.to_payload() for operation in operations]}
        if self.cache.last_sync:
            payload['clientLastSync'] = self.cache.last_sync
        try:
            data = self._post('sync/batch', payload)
        except (requests.ConnectionError, requests.Timeout):
            LOGGER.info('Offline, keeping %d operations queued', len(ids))
            self.online = False
            self.queue.release(ids)
            return False
        except (requests.RequestException, ValueError) as e:
            LOGGER.warning('Sync batch failed: %s', e)
            for operation_id in ids:
                self.queue.mark_failed(operation_id, str(e), self.retry_delay, self.max_retries)
            summary['failed'] += len(ids)
            return True

        self.online = True
        by_id = {operation.id: operation for operation in operations}
        handled = set()
        for result in data.get('results', []):
            operation_id = result.get('operationId')
            if operation_id not in by_id:
                continue
            handled.add(operation_id)
            if result.get('success'):
                self.queue.remove(operation_id)
                summary['synced'] += 1
            else:
                message = (result.get('error') or {}).get('message') or 'Sync failed'
                self.queue.mark_failed(operation_id, message, self.retry_delay, self.max_retries)
                summary['failed'] += 1

        conflicts = [conflict for conflict in data.get('conflicts', []) if conflict.get('operationId') in by_id]
        if conflicts:
            self._resolve_conflicts(conflicts, by_id)
            for conflict in conflicts:
                handled.add(conflict['operationId'])
                self.queue.remove(conflict['operationId'])
            summary['conflicts'] += len(conflicts)

        for operation_id in ids:
            if operation_id not in handled:
                self.queue.mark_failed(operation_id, 'No result returned', self.retry_delay, self.max_retries)
                summary['failed'] += 1

        for change in data.get('serverChanges', []):
            if isinstance(change.get('data'), dict):
                self.cache.put(change.get('entity'), change['data'])
        if data.get('serverTimestamp'):
            self.cache.last_sync = data['serverTimestamp']
        return True

    def _resolve_conflicts(self, conflicts: List[Dict[str, Any]], by_id: Dict[str, SyncOperation]) -> None:
        """The server copy wins: cache it and tell the server the conflict is settled."""

        resolutions = []
        for conflict in conflicts:
            operation = by_id[conflict['operationId']]
            LOGGER.warning('Sync conflict on %s %s, keeping server version', operation.entity, operation.entity_id)
            if isinstance(conflict.get('serverData'), dict):
                self.cache.put(operation.entity, conflict['serverData'])
            resolutions.append({
                'operationId': operation.id,
                'choice': 'server',
                'entity': operation.entity,
                'entityId': operation.entity_id,
            })
        try:
            self._post('sync/resolve', {'resolutions': resolutions})
        except (requests.RequestException, ValueError) as e:
            LOGGER.warning('Could not report conflict resolution: %s', e)

    def auto_sync_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start_auto_sync(self, interval: float = 30) -> None:
        if self.auto_sync_running():
            return
        self._stop.clear()

        def run():
            while not self._stop.wait(interval):
                try:
                    self.process_sync_queue()
                except Exception:
                    LOGGER.exception('Auto sync pass failed')

        self._thread = threading.Thread(target=run, name='songbook-sync', daemon=True)
        self._thread.start()
        LOGGER.info('Auto-sync started')

    def stop_auto_sync(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
        LOGGER.info('Auto-sync stopped')

    def get_sync_status(self) -> Dict[str, Any]:
        counts = self.queue.counts()
        return {
            'pendingCount': counts.get(PENDING, 0) + counts.get(PROCESSING, 0),
            'failedCount': counts.get(FAILED, 0),
            'isProcessing': self._processing.locked(),
            'lastSync': self.cache.last_sync,
        }

    def retry_failed_operations(self) -> int:
        count = self.queue.reset_failed()
        if count and self.online:
            self.process_sync_queue()
        return count

    def clear_sync_queue(self) -> None:
        self.queue.clear()
