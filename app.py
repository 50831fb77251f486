#!/usr/bin/env python3

import importlib
import importlib.util
import os
import threading
from functools import wraps
from pathlib import Path

from flask import Flask, jsonify, request, abort
from pymongo import MongoClient
from pymongo.errors import PyMongoError

import schema
from catalog_queries import CatalogQueries, LibraryUser, QueryError
from catalog_store import DEFAULT_SAVE_INTERVAL_MS, CatalogStore, OverlayStore, StoreOpenError
from library_scanner import ScanJob, start_watcher
from library_sync import LibrarySync


def _load_config_module():
    """Load configuration module from several possible locations."""

    module_name = os.environ.get("SONGSHELF_CONFIG_MODULE")
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
        Path(os.environ.get("SONGSHELF_CONFIG_PATH", "config.py")),
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
mongo_uri = os.environ.get("SONGSHELF_MONGO_URI") or mongo_config.get('uri') or 'mongodb://127.0.0.1:27017'
client = MongoClient(mongo_uri)
db_name = os.environ.get("SONGSHELF_MONGO_DB") or mongo_config.get('database') or 'songshelf'
db = client[db_name]

FOLDERS = take_config('FOLDERS', required=True)
DEFAULT_USER = take_config('DEFAULT_USER') or 'songshelf-user'
SCAN_PAUSE_MS = take_config('SCAN_PAUSE_MS') or 0
SAVE_INTERVAL_MS = take_config('SAVE_INTERVAL_MS')
if SAVE_INTERVAL_MS is None:
    SAVE_INTERVAL_MS = DEFAULT_SAVE_INTERVAL_MS
SKIP_ALBUM_ART = _coerce_bool(take_config('SKIP_ALBUM_ART'), False)
ALBUM_ART_DIR = take_config('ALBUM_ART_DIR')
SCAN_ON_START = _coerce_bool(os.environ.get('SCAN_ON_START'), _coerce_bool(take_config('SCAN_ON_START'), True))
ENABLE_LIBRARY_WATCHER = _coerce_bool(
    os.environ.get('ENABLE_LIBRARY_WATCHER'),
    _coerce_bool(take_config('ENABLE_LIBRARY_WATCHER'), True),
)
ADMIN_SCAN_TOKEN = os.environ.get('ADMIN_SCAN_TOKEN') or take_config('ADMIN_SCAN_TOKEN') or 'change-me'

catalog_store = CatalogStore(db, SAVE_INTERVAL_MS)
overlay_store = OverlayStore(db)
queries = CatalogQueries(catalog_store, overlay_store, FOLDERS)

_scan_lock = threading.Lock()
_library_watchers = []


def api_error(message):
    return jsonify({'status': 'error', 'message': message})


@app.errorhandler(QueryError)
def handle_query_error(e):
    return api_error(e.message), e.status_code


def current_user():
    return LibraryUser(username=DEFAULT_USER, vpaths=list(FOLDERS.keys()))


def json_body(body_schema):
    def decorated_function(f):
        @wraps(f)
        def wrapper(*args, **kwargs):
            data = request.get_json(silent=True)
            if data is None:
                data = {}
            if not schema.validate(data, body_schema):
                return api_error('invalid_request'), 400
            return f(data, *args, **kwargs)
        return wrapper
    return decorated_function


def scan_job_for(vpath):
    folder = FOLDERS[vpath]
    return ScanJob(
        vpath=vpath,
        root_directory=Path(folder['root']).expanduser(),
        store_path=mongo_uri,
        pause_ms=int(SCAN_PAUSE_MS),
        save_interval_ms=int(SAVE_INTERVAL_MS),
        skip_album_art=SKIP_ALBUM_ART,
        album_art_directory=Path(ALBUM_ART_DIR).expanduser() if ALBUM_ART_DIR else None,
    )


def perform_library_scan(vpaths=None):
    summaries = {}
    with _scan_lock:
        for vpath in vpaths or list(FOLDERS.keys()):
            store = CatalogStore(db, SAVE_INTERVAL_MS)
            summaries[vpath] = LibrarySync(scan_job_for(vpath), store=store).sync()
            app.logger.info("Library scan of %s finished: %s", vpath, summaries[vpath])
    return summaries


@app.route('/healthz')
def route_healthcheck():
    status = {'status': 'ok'}
    try:
        client.admin.command('ping')
        status['mongo'] = 'ok'
    except PyMongoError:
        app.logger.exception('Health check could not reach MongoDB')
        status['status'] = 'error'
        status['mongo'] = 'error'
        return jsonify(status), 503
    return jsonify(status)


def _get_scan_token():
    header_token = request.headers.get('X-Scan-Token')
    if header_token:
        return header_token.strip()
    auth_header = request.headers.get('Authorization', '')
    if auth_header.lower().startswith('bearer '):
        return auth_header[7:].strip()
    request_json = request.get_json(silent=True) or {}
    if isinstance(request_json, dict) and request_json.get('token'):
        return str(request_json['token'])
    return request.args.get('token')


@app.route('/api/admin/scan', methods=['POST'])
def route_admin_scan():
    token = _get_scan_token()
    if ADMIN_SCAN_TOKEN and token != ADMIN_SCAN_TOKEN:
        app.logger.warning('Unauthorized scan attempt')
        return abort(403)

    payload = request.get_json(silent=True) or {}
    if not schema.validate(payload, schema.scan):
        return api_error('invalid_request'), 400
    vpath = payload.get('vpath')
    if vpath and vpath not in FOLDERS:
        return api_error('unknown_vpath'), 404
    try:
        summaries = perform_library_scan([vpath] if vpath else None)
    except StoreOpenError:
        app.logger.exception('Library scan could not open the catalog store')
        return api_error('store_unavailable'), 503
    return jsonify({'status': 'ok', 'summary': summaries})


@app.route('/ping')
def route_ping():
    user = current_user()
    return jsonify({'vpaths': user.vpaths, 'playlists': queries.playlist_names(user)})


@app.route('/db/status')
def route_db_status():
    user = current_user()
    return jsonify({'totalFileCount': queries.file_count(user), 'locked': _scan_lock.locked()})


@app.route('/db/metadata', methods=['POST'])
@json_body(schema.filepath)
def route_db_metadata(data):
    return jsonify(queries.metadata(current_user(), data.get('filepath')))


@app.route('/db/artists')
def route_db_artists():
    return jsonify({'artists': queries.artists(current_user())})


@app.route('/db/artists-albums', methods=['POST'])
@json_body(schema.artist_albums)
def route_db_artists_albums(data):
    return jsonify({'albums': queries.artist_albums(current_user(), data.get('artist'))})


@app.route('/db/albums')
def route_db_albums():
    return jsonify({'albums': queries.albums(current_user())})


@app.route('/db/album-songs', methods=['POST'])
@json_body(schema.album_songs)
def route_db_album_songs(data):
    return jsonify(queries.album_songs(current_user(), data.get('album'), data.get('artist')))


@app.route('/db/rate-song', methods=['POST'])
@json_body(schema.rate_song)
def route_db_rate_song(data):
    return jsonify(queries.rate_song(current_user(), data.get('filepath'), data.get('rating')))


@app.route('/db/rated-song', methods=['POST'])
@json_body(schema.filepath)
def route_db_rated_song(data):
    return jsonify(queries.get_rating(current_user(), data.get('filepath')))


@app.route('/db/delete-rated', methods=['POST'])
@json_body(schema.filepath)
def route_db_delete_rated(data):
    removed = queries.unrate_song(current_user(), data.get('filepath'))
    return jsonify({'removed': removed})


@app.route('/db/clear-rated', methods=['POST'])
def route_db_clear_rated():
    return jsonify({'removed': queries.clear_ratings(current_user())})


@app.route('/db/amount-rated-songs')
def route_db_amount_rated():
    return jsonify({'amountOfRated': queries.rated_count(current_user())})


@app.route('/db/get-rated')
def route_db_get_rated():
    return jsonify(queries.rated_songs(current_user(), request.args.get('limit')))


@app.route('/db/random-songs', methods=['POST'])
@json_body(schema.random_songs)
def route_db_random_songs(data):
    result = queries.random_song(
        current_user(),
        ignore_list=data.get('ignoreList'),
        ignore_vpaths=data.get('ignoreVPaths'),
        min_rating=data.get('minRating'),
        max_rating=data.get('maxRating'),
        ignore_percentage=data.get('ignorePercentage'),
    )
    return jsonify({'songs': result['songs'], 'ignoreList': result['ignore_list']})


@app.route('/db/search', methods=['POST'])
@json_body(schema.search)
def route_db_search(data):
    return jsonify(queries.search(
        current_user(),
        data.get('search'),
        no_artists=data.get('noArtists') is True,
        no_albums=data.get('noAlbums') is True,
        no_files=data.get('noFiles') is True,
        no_titles=data.get('noTitles') is True,
    ))


@app.route('/db/recent/added', methods=['POST'])
@json_body(schema.recently_added)
def route_db_recent_added(data):
    return jsonify(queries.recently_added(current_user(), data.get('limit')))


@app.route('/playlist/add-song', methods=['POST'])
@json_body(schema.playlist_add_song)
def route_playlist_add_song(data):
    record_id = queries.add_playlist_song(current_user(), data.get('playlist'), data.get('song'))
    return jsonify({'success': True, 'id': record_id})


@app.route('/playlist/remove-song', methods=['POST'])
@json_body(schema.playlist_remove_song)
def route_playlist_remove_song(data):
    removed = queries.remove_playlist_record(current_user(), data.get('id'))
    return jsonify({'success': removed})


@app.route('/playlist/save', methods=['POST'])
@json_body(schema.playlist_save)
def route_playlist_save(data):
    queries.save_playlist(current_user(), data.get('title'), data.get('songs'))
    return jsonify({'success': True})


@app.route('/playlist/getall')
def route_playlist_getall():
    return jsonify(queries.playlist_names(current_user()))


@app.route('/playlist/load', methods=['POST'])
@json_body(schema.playlist_name)
def route_playlist_load(data):
    return jsonify(queries.load_playlist(current_user(), data.get('playlistname')))


@app.route('/playlist/delete', methods=['POST'])
@json_body(schema.playlist_name)
def route_playlist_delete(data):
    queries.delete_playlist(current_user(), data.get('playlistname'))
    return jsonify({'success': True})


def _run_startup_scan():
    try:
        perform_library_scan()
    except Exception:
        app.logger.exception('Automatic library scan failed')


if SCAN_ON_START:
    threading.Thread(target=_run_startup_scan, name='library-scan', daemon=True).start()


def _start_library_watchers():
    if _library_watchers:
        return
    if not ENABLE_LIBRARY_WATCHER:
        app.logger.info('Library watcher disabled')
        return

    for vpath, folder in FOLDERS.items():
        root = Path(folder['root']).expanduser()
        if not root.is_dir():
            app.logger.warning('Library directory %s missing; live updates disabled for %s', root, vpath)
            continue

        def _run_scan(vpath=vpath):
            try:
                perform_library_scan([vpath])
            except Exception:
                app.logger.exception('Live library scan of %s failed', vpath)

        try:
            _library_watchers.append(start_watcher(root, _run_scan, debounce_seconds=0.75))
            app.logger.info('Library watcher started for %s', vpath)
        except OSError:
            app.logger.exception('Failed to start library watcher for %s', vpath)


_watchers_started = threading.Event()
_watchers_guard = threading.Lock()


@app.before_request
def _ensure_library_watchers_started():
    if _watchers_started.is_set():
        return
    with _watchers_guard:
        if _watchers_started.is_set():
            return
        _watchers_started.set()
    _start_library_watchers()


if __name__ == '__main__':
    import argparse

    parser = argparse.ArgumentParser(description='Run the songshelf development server.')
    parser.add_argument('port', type=int, metavar='PORT', nargs='?', default=3000, help='Port to listen on.')
    parser.add_argument('-b', '--bind-address', default='localhost', help='Bind server to address.')
    parser.add_argument('-d', '--debug', action='store_true', help='Enable debug mode.')
    args = parser.parse_args()

    app.run(host=args.bind_address, port=args.port, debug=args.debug)
