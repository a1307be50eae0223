#!/usr/bin/env python3

import bcrypt
import importlib
import importlib.util
import os
import re
import schema
from functools import wraps
from pathlib import Path

from flask import Flask, g, jsonify, request, session
from flask_caching import Cache
from flask_session import Session
from flask_wtf.csrf import CSRFProtect, generate_csrf, CSRFError
from pymongo import MongoClient
from pymongo.errors import PyMongoError
from redis import Redis

from arrangements import ArrangementCatalog, mashup_duration
from categories import CategoryBrowser, match_categories
from comments import CommentThread
from documents import ANONYMOUS, USER_LEVEL, Actor, serialize, split_csv
from errors import ApiError, ServiceUnavailable, ValidationError
from reviews import ReviewBoard
from setlists import SetlistBook
from songs import SongCatalog, song_to_client
from storage import DEFAULT_LIMIT_MB, StorageMonitor
from sync import SyncService
from users import UserDirectory, new_user_document
from verses import VerseBoard


def _load_config_module():
    """Load configuration module from several possible locations."""

    module_name = os.environ.get("SONGBOOK_CONFIG_MODULE")
    search_order = []
    if module_name:
        search_order.append(module_name)
    search_order.extend(["config.config", "config"])

    for name in search_order:
        try:
            return importlib.import_module(name)
        except ModuleNotFoundError:
            continue

    path_candidates = [
        Path(os.environ.get("SONGBOOK_CONFIG_PATH", "config.py")),
        Path("config/config.py"),
    ]
    for config_path in path_candidates:
        if not config_path.exists():
            continue
        spec = importlib.util.spec_from_file_location("config", config_path)
        if spec and spec.loader:
            module = importlib.util.module_from_spec(spec)
            spec.loader.exec_module(module)  # type: ignore[attr-defined]
            return module

    raise FileNotFoundError('No such file or directory: \'config.py\'. Copy the example config file config.example.py to config.py')


config = _load_config_module()


def take_config(name, required=False):
    if hasattr(config, name):
        return getattr(config, name)
    if required:
        raise ValueError('Required option is not defined in the config.py file: {}'.format(name))
    return None


def _coerce_bool(value, default):
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    text = str(value).strip().lower()
    if not text:
        return default
    return text not in {'0', 'false', 'no', 'off'}


app = Flask(__name__)

mongo_config = take_config('MONGO') or {}
mongo_uri = os.environ.get("SONGBOOK_MONGO_URI") or mongo_config.get('uri')
mongo_host = os.environ.get("SONGBOOK_MONGO_HOST") or mongo_config.get('host')

if mongo_uri:
    client = MongoClient(mongo_uri)
else:
    if not mongo_host:
        mongo_host = ['127.0.0.1:27017']
    client = MongoClient(host=mongo_host)

basedir = os.environ.get('BASEDIR') or take_config('BASEDIR') or '/'
api = basedir + 'api/'

app.secret_key = take_config('SECRET_KEY') or 'change-me'
app.config['SESSION_TYPE'] = 'redis'
redis_config = dict(take_config('REDIS', required=True))
redis_host_env = os.environ.get("SONGBOOK_REDIS_HOST")
if redis_host_env:
    redis_config['CACHE_REDIS_HOST'] = redis_host_env
redis_port_env = os.environ.get("SONGBOOK_REDIS_PORT")
if redis_port_env:
    redis_config['CACHE_REDIS_PORT'] = int(redis_port_env)
redis_password_env = os.environ.get("SONGBOOK_REDIS_PASSWORD")
if redis_password_env is not None:
    redis_config['CACHE_REDIS_PASSWORD'] = redis_password_env or None
redis_db_env = os.environ.get("SONGBOOK_REDIS_DB")
if redis_db_env is not None:
    redis_config['CACHE_REDIS_DB'] = int(redis_db_env)
# cache clears only touch keys under this prefix, sessions live elsewhere
redis_config.setdefault('CACHE_KEY_PREFIX', 'songbook_cache:')
app.config['SESSION_REDIS'] = Redis(
    host=redis_config['CACHE_REDIS_HOST'],
    port=redis_config['CACHE_REDIS_PORT'],
    password=redis_config.get('CACHE_REDIS_PASSWORD'),
    db=redis_config.get('CACHE_REDIS_DB'),
)
app.cache = Cache(app, config=redis_config)
sess = Session()
sess.init_app(app)

CSRF_ENABLED = _coerce_bool(os.environ.get('SONGBOOK_CSRF_ENABLED'), _coerce_bool(take_config('CSRF_ENABLED'), True))
if CSRF_ENABLED:
    csrf = CSRFProtect(app)

CACHE_TIMEOUT = take_config('CACHE_TIMEOUT') or 60
STORAGE_LIMIT_MB = take_config('STORAGE_LIMIT_MB') or DEFAULT_LIMIT_MB

db_name = os.environ.get("SONGBOOK_MONGO_DB") or mongo_config.get('database') or 'songbook'
db = client[db_name]

songs = SongCatalog(db)
arrangements = ArrangementCatalog(db)
setlists = SetlistBook(db, arrangements)
reviews = ReviewBoard(db)
verses = VerseBoard(db)
comments = CommentThread(db)
users = UserDirectory(db)
categories = CategoryBrowser(db)
sync_service = SyncService(db, songs, arrangements, setlists, users)
storage = StorageMonitor(db, limit_mb=STORAGE_LIMIT_MB)

for store in (songs, arrangements, setlists, reviews, verses, comments, users, sync_service):
    try:
        store.ensure_indexes()
    except PyMongoError:
        app.logger.debug('Could not ensure indexes for %s', type(store).__name__)


@app.route('/healthz')
def route_healthcheck():
    status = {'status': 'ok'}
    try:
        client.admin.command('ping')
        status['mongo'] = 'ok'
    except Exception:
        status['status'] = 'error'
        status['mongo'] = 'error'
        return jsonify(status), 503
    try:
        redis_client = app.config.get('SESSION_REDIS')
        if redis_client:
            redis_client.ping()
        status['redis'] = 'ok'
    except Exception:
        status['status'] = 'error'
        status['redis'] = 'error'
        return jsonify(status), 503
    return jsonify(status)


def api_error(message, status=200):
    return jsonify({'status': 'error', 'message': message}), status


def ok(data=None, meta=None, status=200):
    payload = {'status': 'ok', 'data': serialize(data)}
    if meta is not None:
        payload['meta'] = serialize(meta)
    return jsonify(payload), status


def current_actor():
    if 'actor' not in g:
        actor = ANONYMOUS
        username = session.get('username')
        if username:
            user = db.users.find_one({'username': username}, {'user_level': 1})
            if user:
                actor = Actor(username, user.get('user_level') or USER_LEVEL)
        g.actor = actor
    return g.actor


def json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    return data


def _int_arg(name, default, minimum=None, maximum=None):
    value = request.args.get(name)
    if value is None or value.strip() == '':
        return default
    try:
        number = int(value)
    except ValueError:
        raise ValidationError('Invalid query parameters', details=['%s: must be an integer' % name])
    if (minimum is not None and number < minimum) or (maximum is not None and number > maximum):
        raise ValidationError('Invalid query parameters', details=['%s: must be between %s and %s' % (name, minimum, maximum)])
    return number


def _bool_arg(name, default):
    return _coerce_bool(request.args.get(name), default)


def login_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not session.get('username'):
            return api_error('not_logged_in', 401)
        return f(*args, **kwargs)
    return decorated_function


def admin_required(level):
    def decorated_function(f):
        @wraps(f)
        def wrapper(*args, **kwargs):
            if current_actor().level < level:
                return jsonify({'status': 'error', 'code': 'FORBIDDEN', 'message': 'Insufficient permissions'}), 403
            return f(*args, **kwargs)
        return wrapper
    return decorated_function


def _logged_in():
    return bool(session.get('username'))


def invalidate_song_cache():
    try:
        app.cache.clear()
    except Exception:
        app.logger.debug('Could not clear the response cache')


@app.errorhandler(ApiError)
def handle_api_error(e):
    return jsonify(e.to_dict()), e.status


@app.errorhandler(PyMongoError)
def handle_database_error(e):
    app.logger.exception('Database error while handling %s', request.path)
    return jsonify(ServiceUnavailable('Database connection is not available').to_dict()), 503


@app.errorhandler(CSRFError)
def handle_csrf_error(e):
    return api_error('invalid_csrf', 400)


@app.before_request
def before_request_func():
    if session.get('session_id'):
        if not db.users.find_one({'session_id': session.get('session_id')}):
            session.clear()


@app.route(api + 'csrftoken')
def route_csrftoken():
    return jsonify({'status': 'ok', 'token': generate_csrf()})


# songs

@app.route(api + 'songs')
@app.cache.cached(timeout=CACHE_TIMEOUT, query_string=True, unless=_logged_in)
def route_api_songs():
    result, meta = songs.list_songs(
        current_actor(),
        search=request.args.get('search') or None,
        key=request.args.get('key') or None,
        difficulty=request.args.get('difficulty') or None,
        themes=split_csv(request.args.get('themes')),
        limit=_int_arg('limit', 20, 1, 50),
        offset=_int_arg('offset', 0, 0),
        is_public=_bool_arg('isPublic', True),
    )
    return ok([song_to_client(song) for song in result], meta)


@app.route(api + 'songs', methods=['POST'])
@login_required
def route_api_songs_create():
    song = songs.create_song(json_body(), current_actor())
    invalidate_song_cache()
    return ok(song_to_client(song), status=201)


@app.route(api + 'songs/search')
def route_api_songs_search():
    result = songs.search(request.args.get('q'), _int_arg('limit', 20, 1))
    return ok([song_to_client(song) for song in result], {'total': len(result)})


@app.route(api + 'songs/stats')
@app.cache.cached(timeout=CACHE_TIMEOUT)
def route_api_songs_stats():
    return ok(songs.stats())


def _song_detail(song):
    detail = song_to_client(song)
    detail['lyrics'] = song.get('lyrics')
    detail['notes'] = song.get('notes')
    detail['categories'] = match_categories(song)
    return detail


@app.route(api + 'songs/slug/<slug>')
def route_api_song_by_slug(slug):
    return ok(_song_detail(songs.get_by_slug(slug, current_actor())))


@app.route(api + 'songs/<song_id>')
def route_api_song(song_id):
    return ok(_song_detail(songs.get_song(song_id, current_actor())))


@app.route(api + 'songs/<song_id>', methods=['PUT'])
@login_required
def route_api_song_update(song_id):
    song = songs.update_song(song_id, json_body(), current_actor())
    invalidate_song_cache()
    return ok(song_to_client(song))


@app.route(api + 'songs/<song_id>', methods=['DELETE'])
@login_required
def route_api_song_delete(song_id):
    deleted = songs.delete_song(song_id, current_actor())
    invalidate_song_cache()
    return ok({'id': deleted})


@app.route(api + 'songs/<song_id>/rate', methods=['POST'])
def route_api_song_rate(song_id):
    data = schema.check(json_body(), schema.rating, 'Invalid rating')
    ratings = songs.rate_song(song_id, data['rating'], current_actor())
    invalidate_song_cache()
    return ok(ratings)


# categories

@app.route(api + 'categories/stats')
@app.cache.cached(timeout=CACHE_TIMEOUT, query_string=True)
def route_api_category_stats():
    data, meta = categories.stats(
        sort_by=request.args.get('sortBy') or 'popularity',
        limit=_int_arg('limit', 20, 1, 50),
        include_empty=_bool_arg('includeEmpty', False),
    )
    return ok(data, meta)


@app.route(api + 'categories/<category_id>/songs')
@app.cache.cached(timeout=CACHE_TIMEOUT, query_string=True)
def route_api_category_songs(category_id):
    data, meta = categories.songs(
        category_id,
        page=_int_arg('page', 1, 1),
        limit=_int_arg('limit', 20, 1, 100),
        sort_by=request.args.get('sortBy') or 'popular',
        search=request.args.get('searchQuery') or None,
    )
    return ok(data, meta)


# arrangements

@app.route(api + 'songs/<song_id>/arrangements')
def route_api_song_arrangements(song_id):
    songs.get_song(song_id, current_actor(), count_view=False)
    return ok(arrangements.list_for_song(song_id))


@app.route(api + 'arrangements', methods=['POST'])
@login_required
def route_api_arrangements_create():
    arrangement = arrangements.create_arrangement(json_body(), current_actor())
    invalidate_song_cache()
    return ok(arrangement, status=201)


@app.route(api + 'arrangements/mashups')
def route_api_arrangements_mashups():
    return ok(arrangements.find_mashups(_int_arg('limit', 20, 1, 50)))


@app.route(api + 'arrangements/search')
def route_api_arrangements_search():
    return ok(arrangements.search(request.args.get('q'), _int_arg('limit', 20, 1, 50)))


@app.route(api + 'arrangements/<arrangement_id>')
def route_api_arrangement(arrangement_id):
    arrangement = arrangements.get_arrangement(arrangement_id, current_actor())
    if (arrangement.get('metadata') or {}).get('isMashup'):
        arrangement['mashupDuration'] = mashup_duration(arrangement)
    return ok(arrangement)


@app.route(api + 'arrangements/<arrangement_id>', methods=['PUT'])
@login_required
def route_api_arrangement_update(arrangement_id):
    return ok(arrangements.update_arrangement(arrangement_id, json_body(), current_actor()))


@app.route(api + 'arrangements/<arrangement_id>', methods=['DELETE'])
@login_required
def route_api_arrangement_delete(arrangement_id):
    deleted = arrangements.delete_arrangement(arrangement_id, current_actor())
    invalidate_song_cache()
    return ok({'id': deleted})


@app.route(api + 'arrangements/<arrangement_id>/rate', methods=['POST'])
def route_api_arrangement_rate(arrangement_id):
    data = schema.check(json_body(), schema.rating, 'Invalid rating')
    return ok(arrangements.rate_arrangement(arrangement_id, data['rating'], current_actor()))


@app.route(api + 'arrangements/<arrangement_id>/transpose')
def route_api_arrangement_transpose(arrangement_id):
    steps = _int_arg('steps', 0, -11, 11)
    return ok(arrangements.transpose(arrangement_id, steps, current_actor()))


# reviews

@app.route(api + 'arrangements/<arrangement_id>/reviews')
def route_api_arrangement_reviews(arrangement_id):
    data, meta = reviews.list_for_arrangement(
        arrangement_id,
        current_actor(),
        limit=_int_arg('limit', 50, 1, 100),
        offset=_int_arg('offset', 0, 0),
    )
    return ok(data, meta)


@app.route(api + 'arrangements/<arrangement_id>/reviews', methods=['POST'])
@login_required
def route_api_arrangement_review(arrangement_id):
    review, created = reviews.upsert_review(arrangement_id, json_body(), current_actor())
    return ok(review, status=201 if created else 200)


@app.route(api + 'reviews/reported')
@admin_required(level=50)
def route_api_reviews_reported():
    return ok(reviews.find_reported(current_actor()))


@app.route(api + 'reviews/<review_id>/helpful', methods=['POST'])
@login_required
def route_api_review_helpful(review_id):
    return ok(reviews.toggle_helpful(review_id, current_actor()))


@app.route(api + 'reviews/<review_id>/report', methods=['POST'])
@login_required
def route_api_review_report(review_id):
    return ok(reviews.report(review_id, json_body(), current_actor()))


@app.route(api + 'reviews/<review_id>/clear-report', methods=['PUT'])
@admin_required(level=50)
def route_api_review_clear_report(review_id):
    return ok(reviews.clear_report(review_id, current_actor()))


@app.route(api + 'reviews/<review_id>', methods=['DELETE'])
@admin_required(level=100)
def route_api_review_delete(review_id):
    return ok({'id': reviews.delete_review(review_id, current_actor())})


# verses

@app.route(api + 'songs/<song_id>/verses')
def route_api_song_verses(song_id):
    return ok(verses.list_for_song(song_id, current_actor(), request.args.get('status')))


@app.route(api + 'songs/<song_id>/verses', methods=['POST'])
@login_required
def route_api_song_verse_submit(song_id):
    return ok(verses.submit(song_id, json_body(), current_actor()), status=201)


@app.route(api + 'verses/pending')
@admin_required(level=50)
def route_api_verses_pending():
    return ok(verses.find_pending(current_actor()))


@app.route(api + 'verses/<verse_id>/upvote', methods=['POST'])
@login_required
def route_api_verse_upvote(verse_id):
    return ok(verses.toggle_upvote(verse_id, current_actor()))


@app.route(api + 'verses/<verse_id>', methods=['PUT'])
@admin_required(level=50)
def route_api_verse_moderate(verse_id):
    return ok(verses.moderate(verse_id, json_body(), current_actor()))


@app.route(api + 'verses/<verse_id>', methods=['DELETE'])
@admin_required(level=100)
def route_api_verse_delete(verse_id):
    return ok({'id': verses.delete(verse_id, current_actor())})


# comments

@app.route(api + 'songs/<song_id>/comments')
def route_api_song_comments(song_id):
    data, meta = comments.list_for_song(
        song_id,
        current_actor(),
        limit=_int_arg('limit', 20, 1, 100),
        offset=_int_arg('offset', 0, 0),
    )
    return ok(data, meta)


@app.route(api + 'songs/<song_id>/comments', methods=['POST'])
@login_required
def route_api_song_comment_add(song_id):
    return ok(comments.add(song_id, json_body(), current_actor()), status=201)


@app.route(api + 'comments/<comment_id>', methods=['PUT'])
@login_required
def route_api_comment_edit(comment_id):
    return ok(comments.edit(comment_id, json_body(), current_actor()))


@app.route(api + 'comments/<comment_id>', methods=['DELETE'])
@login_required
def route_api_comment_delete(comment_id):
    return ok({'deleted': comments.delete(comment_id, current_actor())})


# setlists

@app.route(api + 'setlists')
def route_api_setlists():
    is_public = request.args.get('isPublic')
    data, meta = setlists.list_setlists(
        current_actor(),
        search=request.args.get('search') or None,
        created_by=request.args.get('createdBy') or None,
        tags=split_csv(request.args.get('tags')),
        is_public=None if is_public is None else _coerce_bool(is_public, True),
        limit=_int_arg('limit', 20, 1, 50),
        offset=_int_arg('offset', 0, 0),
    )
    return ok(data, meta)


@app.route(api + 'setlists', methods=['POST'])
@login_required
def route_api_setlists_create():
    return ok(setlists.create_setlist(json_body(), current_actor()), status=201)


@app.route(api + 'setlists/share/<token>')
def route_api_setlist_shared(token):
    return ok(setlists.get_by_share_token(token))


@app.route(api + 'setlists/<setlist_id>')
def route_api_setlist(setlist_id):
    return ok(setlists.get_setlist(setlist_id, current_actor()))


@app.route(api + 'setlists/<setlist_id>', methods=['PUT'])
@login_required
def route_api_setlist_update(setlist_id):
    return ok(setlists.update_setlist(setlist_id, json_body(), current_actor()))


@app.route(api + 'setlists/<setlist_id>', methods=['DELETE'])
@login_required
def route_api_setlist_delete(setlist_id):
    return ok({'id': setlists.delete_setlist(setlist_id, current_actor())})


@app.route(api + 'setlists/<setlist_id>/songs', methods=['POST'])
@login_required
def route_api_setlist_add_song(setlist_id):
    return ok(setlists.add_song(setlist_id, json_body(), current_actor()))


@app.route(api + 'setlists/<setlist_id>/songs/<song_id>', methods=['DELETE'])
@login_required
def route_api_setlist_remove_song(setlist_id, song_id):
    return ok(setlists.remove_song(setlist_id, song_id, current_actor()))


@app.route(api + 'setlists/<setlist_id>/reorder', methods=['PUT'])
@login_required
def route_api_setlist_reorder(setlist_id):
    return ok(setlists.reorder(setlist_id, json_body(), current_actor()))


@app.route(api + 'setlists/<setlist_id>/songs/<song_id>/transpose', methods=['PUT'])
@login_required
def route_api_setlist_transpose(setlist_id, song_id):
    return ok(setlists.set_transpose(setlist_id, song_id, json_body(), current_actor()))


@app.route(api + 'setlists/<setlist_id>/use', methods=['POST'])
def route_api_setlist_use(setlist_id):
    return ok(setlists.mark_used(setlist_id, current_actor()))


# users

@app.route(api + 'users')
def route_api_users():
    return ok(users.public_users(_int_arg('limit', 50, 1, 100)))


@app.route(api + 'users/top-contributors')
def route_api_users_top_contributors():
    return ok(users.top_contributors(_int_arg('limit', 10, 1, 50)))


@app.route(api + 'users/<username>/profile')
def route_api_user_profile(username):
    return ok(users.profile(username, current_actor()))


@app.route(api + 'users/<username>/profile', methods=['PUT'])
@login_required
def route_api_user_profile_update(username):
    return ok(users.update_profile(username, json_body(), current_actor()))


@app.route(api + 'users/<username>/privacy', methods=['PUT'])
@login_required
def route_api_user_privacy(username):
    return ok({'profilePrivacy': users.update_privacy(username, json_body(), current_actor())})


@app.route(api + 'users/<username>/favorites')
def route_api_user_favorites(username):
    kind = request.args.get('type') or 'both'
    if kind not in ('songs', 'arrangements', 'both'):
        raise ValidationError('Invalid query parameters', details=['type: must be songs, arrangements or both'])
    return ok(users.favorites(username, kind, current_actor()))


@app.route(api + 'users/<username>/favorites/check/<song_id>')
def route_api_user_favorite_check(username, song_id):
    return ok({'isFavorite': users.is_favorite(username, song_id)})


@app.route(api + 'users/<username>/favorites/<kind>/<target_id>', methods=['POST'])
@login_required
def route_api_user_favorite_add(username, kind, target_id):
    favorites = users.add_favorite(username, kind, target_id, current_actor())
    return ok({'favorites': favorites}, status=201)


@app.route(api + 'users/<username>/favorites/<kind>/<target_id>', methods=['DELETE'])
@login_required
def route_api_user_favorite_remove(username, kind, target_id):
    return ok({'favorites': users.remove_favorite(username, kind, target_id, current_actor())})


# Older clients favorite songs without naming the kind
@app.route(api + 'users/<username>/favorites/<song_id>', methods=['POST'])
@login_required
def route_api_user_favorite_song_add(username, song_id):
    return route_api_user_favorite_add(username, 'songs', song_id)


@app.route(api + 'users/<username>/favorites/<song_id>', methods=['DELETE'])
@login_required
def route_api_user_favorite_song_remove(username, song_id):
    return route_api_user_favorite_remove(username, 'songs', song_id)


@app.route(api + 'users/<username>/contributions')
def route_api_user_contributions(username):
    return ok(users.contributions(username, current_actor()))


@app.route(api + 'users/<username>/activity')
def route_api_user_activity(username):
    return ok(users.activity(username, current_actor()))


# sync

@app.route(api + 'sync/batch', methods=['POST'])
@login_required
def route_api_sync_batch():
    result = sync_service.batch(json_body(), current_actor())
    if result['results'] or result['conflicts']:
        invalidate_song_cache()
    return ok(result)


@app.route(api + 'sync/status')
@login_required
def route_api_sync_status():
    ids = split_csv(request.args.get('operationIds'))
    return ok({'statuses': sync_service.status(ids, current_actor())})


@app.route(api + 'sync/resolve', methods=['POST'])
@login_required
def route_api_sync_resolve():
    results = sync_service.resolve(request.get_json(silent=True), current_actor())
    invalidate_song_cache()
    return ok({'results': results})


# storage

@app.route(api + 'storage/stats')
@admin_required(level=50)
def route_api_storage_stats():
    return ok(storage.stats())


@app.route(api + 'storage/cleanup', methods=['POST'])
@admin_required(level=100)
def route_api_storage_cleanup():
    data = schema.check(request.get_json(silent=True) or {}, schema.storage_cleanup, 'Invalid cleanup request')
    dry_run = data.get('dryRun', _bool_arg('dryRun', True))
    result = storage.cleanup(dry_run=dry_run)
    if not dry_run:
        invalidate_song_cache()
    return ok(result)


@app.route(api + 'storage/compression')
@admin_required(level=50)
def route_api_storage_compression():
    return ok(storage.compression())


@app.route(api + 'storage/health')
def route_api_storage_health():
    payload, status = storage.health()
    return jsonify(serialize(payload)), status


# accounts

@app.route(api + 'register', methods=['POST'])
def route_api_register():
    data = request.get_json(silent=True)
    if not schema.validate(data, schema.register):
        return api_error('invalid_request', 400)

    if session.get('username'):
        session.clear()

    username = data.get('username', '')
    if len(username) < 3 or len(username) > 20 or not re.match('^[a-zA-Z0-9_]{3,20}$', username):
        return api_error('invalid_username')

    if db.users.find_one({'username_lower': username.lower()}):
        return api_error('username_in_use')

    password = data.get('password', '').encode('utf-8')
    if not 6 <= len(password) <= 5000:
        return api_error('invalid_password')

    salt = bcrypt.gensalt()
    hashed = bcrypt.hashpw(password, salt)

    session_id = os.urandom(24).hex()
    db.users.insert_one(new_user_document(username, hashed, session_id))

    session['session_id'] = session_id
    session['username'] = username
    session.permanent = True
    return jsonify({'status': 'ok', 'username': username, 'display_name': username, 'role': 'USER'})


@app.route(api + 'login', methods=['POST'])
def route_api_login():
    data = request.get_json(silent=True)
    if not schema.validate(data, schema.login):
        return api_error('invalid_request', 400)

    if session.get('username'):
        session.clear()

    username = data.get('username', '')
    result = db.users.find_one({'username_lower': username.lower()})
    if not result:
        return api_error('invalid_username_password')

    password = data.get('password', '').encode('utf-8')
    if not bcrypt.checkpw(password, result['password']):
        return api_error('invalid_username_password')

    session['session_id'] = result['session_id']
    session['username'] = result['username']
    session.permanent = True if data.get('remember') else False
    users.record_login(result['username'])

    actor = Actor(result['username'], result.get('user_level') or USER_LEVEL)
    return jsonify({'status': 'ok', 'username': result['username'], 'display_name': result['display_name'], 'role': actor.role})


@app.route(api + 'logout', methods=['POST'])
@login_required
def route_api_logout():
    session.clear()
    return jsonify({'status': 'ok'})


@app.route(api + 'account/display_name', methods=['POST'])
@login_required
def route_api_account_display_name():
    data = request.get_json(silent=True)
    if not schema.validate(data, schema.update_display_name):
        return api_error('invalid_request', 400)

    display_name = data.get('display_name', '').strip()
    if not display_name:
        display_name = session.get('username')
    elif len(display_name) > 25:
        return api_error('invalid_display_name')

    db.users.update_one({'username': session.get('username')}, {
        '$set': {'display_name': display_name}
    })

    return jsonify({'status': 'ok', 'display_name': display_name})


@app.route(api + 'account/password', methods=['POST'])
@login_required
def route_api_account_password():
    data = request.get_json(silent=True)
    if not schema.validate(data, schema.update_password):
        return api_error('invalid_request', 400)

    user = db.users.find_one({'username': session.get('username')})
    current_password = data.get('current_password', '').encode('utf-8')
    if not bcrypt.checkpw(current_password, user['password']):
        return api_error('current_password_invalid')

    new_password = data.get('new_password', '').encode('utf-8')
    if not 6 <= len(new_password) <= 5000:
        return api_error('invalid_new_password')

    salt = bcrypt.gensalt()
    hashed = bcrypt.hashpw(new_password, salt)
    session_id = os.urandom(24).hex()

    db.users.update_one({'username': session.get('username')}, {
        '$set': {'password': hashed, 'session_id': session_id}
    })

    session['session_id'] = session_id
    return jsonify({'status': 'ok'})


@app.route(api + 'account/remove', methods=['POST'])
@login_required
def route_api_account_remove():
    data = request.get_json(silent=True)
    if not schema.validate(data, schema.delete_account):
        return api_error('invalid_request', 400)

    username = session.get('username')
    user = db.users.find_one({'username': username})
    password = data.get('password', '').encode('utf-8')
    if not bcrypt.checkpw(password, user['password']):
        return api_error('verify_password_invalid')

    reviews.delete_by_user(username)
    comments.delete_by_author(username)
    users.delete_user_content(username)
    db.setlists.delete_many({'createdBy': username})
    db.sync_operations.delete_many({'username': username})
    db.users.delete_one({'username': username})
    app.logger.info('Account %s removed', username)

    session.clear()
    return jsonify({'status': 'ok'})


if __name__ == '__main__':
    import argparse

    parser = argparse.ArgumentParser(description='Run the songbook development server.')
    parser.add_argument('port', type=int, metavar='PORT', nargs='?', default=34801, help='Port to listen on.')
    parser.add_argument('-b', '--bind-address', default='localhost', help='Bind server to address.')
    parser.add_argument('-d', '--debug', action='store_true', help='Enable debug mode.')
    args = parser.parse_args()

    app.run(host=args.bind_address, port=args.port, debug=args.debug)
