"""In-memory stand-ins for the pymongo collection and database used by the stores."""
import copy
import re
import threading
from types import SimpleNamespace

from bson import ObjectId
from pymongo.errors import DuplicateKeyError, ServerSelectionTimeoutError

_MISSING = object()


def _leaves(value, parts):
    if not parts:
        return [value]
    head, rest = parts[0], parts[1:]
    if isinstance(value, dict):
        if head in value:
            return _leaves(value[head], rest)
        return []
    if isinstance(value, list):
        if head.isdigit():
            index = int(head)
            return _leaves(value[index], rest) if index < len(value) else []
        found = []
        for item in value:
            if isinstance(item, dict):
                found.extend(_leaves(item, parts))
        return found
    return []


def resolve(doc, dotted):
    return _leaves(doc, dotted.split('.'))


def _candidates(doc, dotted):
    found = []
    for leaf in resolve(doc, dotted):
        found.append(leaf)
        if isinstance(leaf, list):
            found.extend(leaf)
    return found


def _equals(candidate, expected):
    if isinstance(expected, re.Pattern):
        return isinstance(candidate, str) and expected.search(candidate) is not None
    return candidate == expected


def _compare(candidates, expected, op):
    for candidate in candidates:
        if candidate is None or isinstance(candidate, list):
            continue
        try:
            if op(candidate, expected):
                return True
        except TypeError:
            continue
    return False


def _text_matches(doc, search):
    words = [word.lower() for word in search.split() if word]
    texts = []
    for value in doc.values():
        if isinstance(value, str):
            texts.append(value.lower())
        elif isinstance(value, list):
            texts.extend(item.lower() for item in value if isinstance(item, str))
    return any(word in text for word in words for text in texts)


def _field_matches(doc, key, condition):
    candidates = _candidates(doc, key)
    if isinstance(condition, dict) and condition and all(name.startswith('$') for name in condition):
        for op, expected in condition.items():
            if op == '$ne':
                if expected is None:
                    if not candidates or any(c is None for c in candidates):
                        return False
                elif any(_equals(c, expected) for c in candidates):
                    return False
            elif op == '$in':
                if not any(_value_matches(candidates, option) for option in expected):
                    return False
            elif op == '$nin':
                if any(_value_matches(candidates, option) for option in expected):
                    return False
            elif op == '$gt':
                if not _compare(candidates, expected, lambda a, b: a > b):
                    return False
            elif op == '$gte':
                if not _compare(candidates, expected, lambda a, b: a >= b):
                    return False
            elif op == '$lt':
                if not _compare(candidates, expected, lambda a, b: a < b):
                    return False
            elif op == '$lte':
                if not _compare(candidates, expected, lambda a, b: a <= b):
                    return False
            elif op == '$exists':
                if bool(resolve(doc, key)) != bool(expected):
                    return False
            elif op == '$size':
                if not any(isinstance(leaf, list) and len(leaf) == expected for leaf in resolve(doc, key)):
                    return False
            elif op == '$not':
                if _field_matches(doc, key, expected):
                    return False
            elif op == '$regex':
                pattern = re.compile(expected, re.IGNORECASE if 'i' in condition.get('$options', '') else 0)
                if not any(_equals(c, pattern) for c in candidates):
                    return False
            elif op == '$options':
                continue
            else:
                raise NotImplementedError(op)
        return True
    return _value_matches(candidates, condition)


def _value_matches(candidates, expected):
    if expected is None:
        return not candidates or any(c is None for c in candidates)
    return any(_equals(c, expected) for c in candidates)


def matches(doc, filter_):
    if not filter_:
        return True
    for key, condition in filter_.items():
        if key == '$or':
            if not any(matches(doc, clause) for clause in condition):
                return False
        elif key == '$and':
            if not all(matches(doc, clause) for clause in condition):
                return False
        elif key == '$nor':
            if any(matches(doc, clause) for clause in condition):
                return False
        elif key == '$text':
            if not _text_matches(doc, condition['$search']):
                return False
        elif not _field_matches(doc, key, condition):
            return False
    return True


def _parent(doc, dotted, create=True):
    parts = dotted.split('.')
    target = doc
    for part in parts[:-1]:
        if isinstance(target, list):
            target = target[int(part)]
            continue
        if part not in target or not isinstance(target[part], (dict, list)):
            if not create:
                return None, parts[-1]
            target[part] = {}
        target = target[part]
    return target, parts[-1]


def _get(doc, dotted, default=_MISSING):
    target, last = _parent(doc, dotted, create=False)
    if target is None:
        return default
    if isinstance(target, list):
        return target[int(last)]
    return target.get(last, default)


def _set(doc, dotted, value):
    target, last = _parent(doc, dotted)
    if isinstance(target, list):
        target[int(last)] = value
    else:
        target[last] = value


def apply_update(doc, update, inserting=False):
    for op, fields in update.items():
        if op == '$setOnInsert' and not inserting:
            continue
        for dotted, value in fields.items():
            if op in ('$set', '$setOnInsert'):
                _set(doc, dotted, copy.deepcopy(value))
            elif op == '$unset':
                target, last = _parent(doc, dotted, create=False)
                if isinstance(target, dict):
                    target.pop(last, None)
            elif op == '$inc':
                current = _get(doc, dotted, 0)
                _set(doc, dotted, (current or 0) + value)
            elif op in ('$push', '$addToSet'):
                current = _get(doc, dotted, _MISSING)
                if current is _MISSING or current is None:
                    current = []
                    _set(doc, dotted, current)
                items = value['$each'] if isinstance(value, dict) and '$each' in value else [value]
                for item in items:
                    if op == '$push' or item not in current:
                        current.append(copy.deepcopy(item))
            elif op == '$pull':
                current = _get(doc, dotted, _MISSING)
                if isinstance(current, list):
                    if isinstance(value, dict) and '$in' in value:
                        current[:] = [item for item in current if item not in value['$in']]
                    else:
                        current[:] = [item for item in current if item != value]
            else:
                raise NotImplementedError(op)
    return doc


def project(doc, projection):
    result = copy.deepcopy(doc)
    if not projection:
        return result
    fields = {key: value for key, value in projection.items() if not isinstance(value, dict)}
    if not fields:
        return result
    if any(bool(value) for value in fields.values()):
        projected = {}
        if fields.get('_id', True) and '_id' in doc:
            projected['_id'] = result['_id']
        for key, value in fields.items():
            if key == '_id' or not value:
                continue
            found = _get(result, key)
            if found is not _MISSING:
                _set(projected, key, found)
        return projected
    for key in fields:
        target, last = _parent(result, key, create=False)
        if isinstance(target, dict):
            target.pop(last, None)
    return result


def _sort_key(value):
    if value is None:
        return (0, 0)
    return (1, value)


def sort_documents(docs, spec):
    if isinstance(spec, dict):
        spec = list(spec.items())
    for key, direction in reversed(list(spec)):
        if isinstance(direction, dict):
            continue
        docs.sort(
            key=lambda doc: _sort_key(next(iter(resolve(doc, key)), None)),
            reverse=direction == -1,
        )
    return docs


class MemoryCursor:
    def __init__(self, docs, projection=None):
        self._docs = docs
        self._projection = projection
        self._skip = 0
        self._limit = 0

    def sort(self, spec, direction=None):
        if isinstance(spec, str):
            spec = [(spec, direction or 1)]
        sort_documents(self._docs, spec)
        return self

    def skip(self, count):
        self._skip = count
        return self

    def limit(self, count):
        self._limit = count
        return self

    def _selected(self):
        docs = self._docs[self._skip:]
        if self._limit:
            docs = docs[:self._limit]
        return [project(doc, self._projection) for doc in docs]

    def __iter__(self):
        return iter(self._selected())


class MemoryCollection:
    def __init__(self, name='collection'):
        self.name = name
        self._docs = []
        self._lock = threading.Lock()
        self._unique = []
        self.indexes = []
        self.pipelines = []
        self.aggregate_results = None

    # indexes

    def create_index(self, keys, unique=False, sparse=False, **kwargs):
        if isinstance(keys, str):
            fields = [keys]
        else:
            fields = [key for key, _ in keys]
        self.indexes.append((fields, dict(kwargs, unique=unique, sparse=sparse)))
        if unique:
            self._unique.append(fields)
        return '_'.join(fields)

    def _check_unique(self, candidate, ignore_id=None):
        for fields in self._unique:
            values = [next(iter(resolve(candidate, field)), None) for field in fields]
            if all(value is None for value in values):
                continue
            for doc in self._docs:
                if doc.get('_id') == ignore_id:
                    continue
                if [next(iter(resolve(doc, field)), None) for field in fields] == values:
                    raise DuplicateKeyError('E11000 duplicate key error collection: %s index: %s' % (self.name, fields))

    # reads

    def _matching(self, filter_):
        return [doc for doc in self._docs if matches(doc, filter_ or {})]

    def find(self, filter_=None, projection=None, **kwargs):
        with self._lock:
            return MemoryCursor([copy.deepcopy(doc) for doc in self._matching(filter_)], projection)

    def find_one(self, filter_=None, projection=None, **kwargs):
        with self._lock:
            found = self._matching(filter_)
            return project(found[0], projection) if found else None

    def count_documents(self, filter_=None, **kwargs):
        with self._lock:
            return len(self._matching(filter_))

    # writes

    def insert_one(self, document, **kwargs):
        with self._lock:
            if '_id' not in document:
                document['_id'] = ObjectId()
            self._check_unique(document)
            self._docs.append(copy.deepcopy(document))
            return SimpleNamespace(inserted_id=document['_id'], acknowledged=True)

    def insert_many(self, documents, **kwargs):
        return SimpleNamespace(inserted_ids=[self.insert_one(doc).inserted_id for doc in documents])

    def _update(self, filter_, update, many=False, upsert=False):
        matched = 0
        modified = 0
        upserted_id = None
        with self._lock:
            targets = self._matching(filter_)
            if not many:
                targets = targets[:1]
            for doc in targets:
                matched += 1
                updated = apply_update(copy.deepcopy(doc), update)
                if updated != doc:
                    self._check_unique(updated, ignore_id=doc['_id'])
                    doc.clear()
                    doc.update(updated)
                    modified += 1
            if not targets and upsert:
                seed = {key: value for key, value in (filter_ or {}).items()
                        if not key.startswith('$') and not isinstance(value, dict)}
                created = {}
                for key, value in seed.items():
                    _set(created, key, copy.deepcopy(value))
                apply_update(created, update, inserting=True)
                created.setdefault('_id', ObjectId())
                self._check_unique(created)
                self._docs.append(created)
                upserted_id = created['_id']
        return SimpleNamespace(matched_count=matched, modified_count=modified, upserted_id=upserted_id, acknowledged=True)

    def update_one(self, filter_, update, upsert=False, **kwargs):
        return self._update(filter_, update, upsert=upsert)

    def update_many(self, filter_, update, upsert=False, **kwargs):
        return self._update(filter_, update, many=True, upsert=upsert)

    def replace_one(self, filter_, replacement, upsert=False, **kwargs):
        with self._lock:
            targets = self._matching(filter_)
            if not targets:
                if upsert:
                    created = copy.deepcopy(replacement)
                    created.setdefault('_id', ObjectId())
                    self._check_unique(created)
                    self._docs.append(created)
                    return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=created['_id'])
                return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)
            doc = targets[0]
            replaced = copy.deepcopy(replacement)
            replaced['_id'] = doc['_id']
            self._check_unique(replaced, ignore_id=doc['_id'])
            changed = replaced != doc
            doc.clear()
            doc.update(replaced)
            return SimpleNamespace(matched_count=1, modified_count=1 if changed else 0, upserted_id=None)

    def find_one_and_update(self, filter_, update, projection=None, upsert=False, return_document=False, **kwargs):
        with self._lock:
            found = self._matching(filter_)
            before = copy.deepcopy(found[0]) if found else None
        if before is None and not upsert:
            return None
        if before is not None:
            self._update({'_id': before['_id']}, update)
            after = self.find_one({'_id': before['_id']})
        else:
            result = self._update(filter_, update, upsert=True)
            after = self.find_one({'_id': result.upserted_id})
        chosen = after if return_document else before
        return project(chosen, projection) if chosen is not None else None

    def delete_one(self, filter_, **kwargs):
        with self._lock:
            found = self._matching(filter_)
            if found:
                self._docs.remove(found[0])
            return SimpleNamespace(deleted_count=1 if found else 0)

    def delete_many(self, filter_, **kwargs):
        with self._lock:
            found = self._matching(filter_)
            self._docs = [doc for doc in self._docs if doc not in found]
            return SimpleNamespace(deleted_count=len(found))

    # aggregation

    def aggregate(self, pipeline, **kwargs):
        self.pipelines.append(pipeline)
        if self.aggregate_results is not None:
            return iter(copy.deepcopy(self.aggregate_results))
        with self._lock:
            docs = [copy.deepcopy(doc) for doc in self._docs]
        for stage in pipeline:
            (name, spec), = stage.items()
            if name == '$match':
                docs = [doc for doc in docs if matches(doc, spec)]
            elif name == '$sort':
                sort_documents(docs, spec)
            elif name == '$limit':
                docs = docs[:spec]
            elif name == '$skip':
                docs = docs[spec:]
            elif name == '$unwind':
                path = (spec['path'] if isinstance(spec, dict) else spec)[1:]
                unwound = []
                for doc in docs:
                    for item in _get(doc, path, None) or []:
                        clone = copy.deepcopy(doc)
                        _set(clone, path, item)
                        unwound.append(clone)
                docs = unwound
            elif name == '$group':
                docs = _group(docs, spec)
            elif name == '$addFields':
                for doc in docs:
                    values = {key: evaluate(expression, doc) for key, expression in spec.items()}
                    for key, value in values.items():
                        _set(doc, key, value)
            elif name == '$project':
                docs = [_project_stage(doc, spec) for doc in docs]
            else:
                raise NotImplementedError(name)
        return iter(docs)

    # helpers for tests

    def all(self):
        return [copy.deepcopy(doc) for doc in self._docs]


_REMOVE = object()


def _variable(expression, variables):
    name, _, rest = expression[2:].partition('.')
    if name == 'REMOVE':
        return _REMOVE
    value = variables[name]
    if rest:
        value = next(iter(_leaves(value, rest.split('.'))), None)
    return value


def _cmp(left, right):
    left_key, right_key = _sort_key(left), _sort_key(right)
    return (left_key > right_key) - (left_key < right_key)


def evaluate(expression, doc, variables=None):
    """Evaluate an aggregation expression against one document."""
    variables = variables or {}
    if isinstance(expression, str):
        if expression.startswith('$$'):
            return _variable(expression, variables)
        if expression.startswith('$'):
            return next(iter(resolve(doc, expression[1:])), None)
        return expression
    if isinstance(expression, list):
        return [evaluate(item, doc, variables) for item in expression]
    if isinstance(expression, dict):
        if len(expression) == 1:
            (op, args), = expression.items()
            if op.startswith('$'):
                return _operator(op, args, doc, variables)
        return {key: evaluate(value, doc, variables) for key, value in expression.items()}
    return expression


def _operator(op, args, doc, variables):
    if op == '$filter':
        alias = args.get('as', 'this')
        items = evaluate(args['input'], doc, variables) or []
        return [item for item in items
                if evaluate(args['cond'], doc, dict(variables, **{alias: item}))]
    if op == '$cond':
        if isinstance(args, dict):
            condition, then, otherwise = args['if'], args['then'], args['else']
        else:
            condition, then, otherwise = args
        branch = then if evaluate(condition, doc, variables) else otherwise
        return evaluate(branch, doc, variables)
    if op == '$sortArray':
        items = list(evaluate(args['input'], doc, variables) or [])
        return sort_documents(items, args['sortBy'])
    if op == '$regexMatch':
        text = evaluate(args['input'], doc, variables)
        pattern = evaluate(args['regex'], doc, variables)
        return isinstance(text, str) and re.search(pattern, text) is not None

    values = evaluate(args, doc, variables) if isinstance(args, list) else [evaluate(args, doc, variables)]
    value = values[0]
    if op == '$add':
        return sum(values)
    if op == '$subtract':
        return values[0] - values[1]
    if op == '$multiply':
        product = 1
        for number in values:
            product *= number
        return product
    if op == '$divide':
        return values[0] / values[1]
    if op == '$eq':
        return _cmp(values[0], values[1]) == 0
    if op == '$ne':
        return _cmp(values[0], values[1]) != 0
    if op == '$gt':
        return _cmp(values[0], values[1]) > 0
    if op == '$gte':
        return _cmp(values[0], values[1]) >= 0
    if op == '$lt':
        return _cmp(values[0], values[1]) < 0
    if op == '$lte':
        return _cmp(values[0], values[1]) <= 0
    if op == '$and':
        return all(values)
    if op == '$or':
        return any(values)
    if op == '$ifNull':
        return next((item for item in values[:-1] if item is not None), values[-1])
    if op == '$size':
        return len(value)
    if op == '$setIntersection':
        common = []
        for item in values[0]:
            if item not in common and all(item in other for other in values[1:]):
                common.append(item)
        return common
    if op == '$toLower':
        return '' if value is None else str(value).lower()
    if op == '$toString':
        return None if value is None else str(value)
    if op == '$slice':
        return list(values[0] or [])[:values[1]]
    if op == '$round':
        return None if value is None else round(value, values[1] if len(values) > 1 else 0)
    raise NotImplementedError(op)


def _project_stage(doc, spec):
    projected = {}
    if spec.get('_id', 1) and '_id' in doc:
        projected['_id'] = doc['_id']
    for key, value in spec.items():
        if key == '_id' and isinstance(value, (bool, int)):
            continue
        if isinstance(value, (bool, int)):
            if value:
                found = _get(doc, key)
                if found is not _MISSING:
                    _set(projected, key, copy.deepcopy(found))
            continue
        _set(projected, key, evaluate(value, doc))
    return projected


def _group(docs, spec):
    groups = {}
    order = []
    for doc in docs:
        key = evaluate(spec['_id'], doc)
        hashable = repr(key)
        if hashable not in groups:
            groups[hashable] = {'_id': key, '_docs': []}
            order.append(hashable)
        groups[hashable]['_docs'].append(doc)

    results = []
    for hashable in order:
        group = groups[hashable]
        row = {'_id': group['_id']}
        for field, accumulator in spec.items():
            if field == '_id':
                continue
            (op, expression), = accumulator.items()
            values = [evaluate(expression, doc) for doc in group['_docs']]
            if op == '$sum':
                row[field] = sum(value for value in values if isinstance(value, (int, float)) and not isinstance(value, bool))
            elif op == '$avg':
                numbers = [value for value in values if isinstance(value, (int, float))]
                row[field] = sum(numbers) / len(numbers) if numbers else None
            elif op == '$first':
                row[field] = values[0] if values else None
            elif op == '$push':
                row[field] = [value for value in values if value is not _REMOVE]
            else:
                raise NotImplementedError(op)
        results.append(row)
    return results


class MemoryDB:
    """Collections are created on first access, like a real database."""

    def __init__(self):
        self._collections = {}
        self.name = 'songbook_test'
        self.dbstats = {'dataSize': 0, 'indexSize': 0, 'collections': 0, 'objects': 0}
        self.offline = False

    def __getitem__(self, name):
        if name not in self._collections:
            self._collections[name] = MemoryCollection(name)
        return self._collections[name]

    def __getattr__(self, name):
        if name.startswith('_'):
            raise AttributeError(name)
        return self[name]

    def command(self, name, *args, **kwargs):
        if self.offline:
            raise ServerSelectionTimeoutError('No servers found yet')
        if name == 'ping':
            return {'ok': 1.0}
        if name == 'dbstats':
            return dict(self.dbstats, db=self.name, ok=1.0)
        raise NotImplementedError(name)
