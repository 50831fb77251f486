"""MongoDB-backed catalog and overlay stores."""
from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field, fields
from typing import Dict, Iterable, List, Optional

from bson import ObjectId
from pymongo import MongoClient
from pymongo.database import Database
from pymongo.errors import BulkWriteError, DuplicateKeyError, PyMongoError


LOGGER = logging.getLogger(__name__)

DEFAULT_DATABASE = 'songshelf'
DEFAULT_SAVE_INTERVAL_MS = 10000
SERVER_SELECTION_TIMEOUT_MS = 5000


class StoreOpenError(Exception):
    pass


def empty_number_pair() -> Dict[str, Optional[int]]:
    return {'no': None, 'of': None}


@dataclass
class CatalogEntry:
    vpath: str
    filepath: str
    artist: Optional[str] = None
    album: Optional[str] = None
    title: Optional[str] = None
    track: Dict[str, Optional[int]] = field(default_factory=empty_number_pair)
    disk: Dict[str, Optional[int]] = field(default_factory=empty_number_pair)
    year: Optional[int] = None
    format: Optional[str] = None
    modified: Optional[int] = None
    hash: Optional[str] = None
    album_art: Optional[str] = None
    embedded_art: Optional[str] = None
    ts: Optional[int] = None

    def to_document(self) -> Dict[str, object]:
        return asdict(self)

    @classmethod
    def from_document(cls, doc: Dict[str, object]) -> 'CatalogEntry':
        values = {f.name: doc.get(f.name) for f in fields(cls)}
        for key in ('track', 'disk'):
            if not isinstance(values[key], dict):
                values[key] = empty_number_pair()
        return cls(**values)


def connect(uri: str, *, timeout_ms: int = SERVER_SELECTION_TIMEOUT_MS) -> Database:
    """Connect to ``uri`` and return its database, failing fast if the server is down."""

    client = MongoClient(uri, serverSelectionTimeoutMS=timeout_ms)
    client.admin.command('ping')
    return client.get_default_database(default=DEFAULT_DATABASE)


class CatalogStore:
    """Catalog entries for every vpath, one document per ``(vpath, filepath)``.

    Inserts are buffered and written in bulk once ``save_interval_ms`` has
    passed since the last save, or when :meth:`save` is called. Updates and
    deletes are written immediately.
    """

    def __init__(self, db: Database, save_interval_ms: int = 0) -> None:
        self.db = db
        self.files = db.files
        self.save_interval_ms = max(0, int(save_interval_ms or 0))
        self.failed_inserts = 0
        self._pending: List[Dict[str, object]] = []
        self._last_save = time.monotonic()
        try:
            self.files.create_index([('vpath', 1), ('filepath', 1)], unique=True)
        except PyMongoError:
            LOGGER.debug('Failed to ensure unique index for files collection')

    @classmethod
    def open(cls, path: str, save_interval_ms: int = DEFAULT_SAVE_INTERVAL_MS) -> 'CatalogStore':
        try:
            db = connect(path)
        except PyMongoError as exc:
            raise StoreOpenError('Failed to open catalog store: %s' % exc) from exc
        return cls(db, save_interval_ms)

    def entries_for_vpath(self, vpath: str) -> List[CatalogEntry]:
        return [CatalogEntry.from_document(doc) for doc in self.files.find({'vpath': vpath})]

    def find_entries(self, query: Dict[str, object]) -> List[CatalogEntry]:
        return [CatalogEntry.from_document(doc) for doc in self.files.find(query)]

    def find_entry(self, vpath: str, relative_path: str) -> Optional[CatalogEntry]:
        doc = self.files.find_one({'vpath': vpath, 'filepath': relative_path})
        return CatalogEntry.from_document(doc) if doc else None

    def count(self, vpaths: Iterable[str]) -> int:
        return self.files.count_documents({'vpath': {'$in': list(vpaths)}})

    def batch_update(self, entries: Iterable[CatalogEntry]) -> int:
        updated = 0
        for entry in entries:
            changes = {
                key: value for key, value in entry.to_document().items()
                if key not in {'vpath', 'filepath', 'ts'}
            }
            self.files.update_one({'vpath': entry.vpath, 'filepath': entry.filepath}, {'$set': changes})
            updated += 1
        return updated

    def insert(self, entries: Iterable[CatalogEntry], vpath: str) -> None:
        now = int(time.time())
        for entry in entries:
            doc = entry.to_document()
            doc['vpath'] = vpath
            doc['ts'] = now
            self._pending.append(doc)
        elapsed_ms = (time.monotonic() - self._last_save) * 1000
        if elapsed_ms >= self.save_interval_ms:
            self.save()

    def delete(self, vpath: str, relative_path: str) -> None:
        self.files.delete_one({'vpath': vpath, 'filepath': relative_path})

    def save(self) -> bool:
        pending, self._pending = self._pending, []
        self._last_save = time.monotonic()
        if not pending:
            return True
        try:
            self.files.insert_many(pending, ordered=False)
        except BulkWriteError as exc:
            write_errors = exc.details.get('writeErrors', [])
            for error in write_errors:
                doc = pending[error.get('index', 0)]
                LOGGER.warning(
                    'Failed to add file %s to database: %s',
                    doc.get('filepath'),
                    error.get('errmsg'),
                )
            self.failed_inserts += len(write_errors)
        except PyMongoError:
            LOGGER.exception('Failed to save %d catalog entries', len(pending))
            self._pending = pending + self._pending
            return False
        return True


class OverlayStore:
    """Per-user ratings keyed by content hash, and playlists."""

    def __init__(self, db: Database) -> None:
        self.db = db
        self.ratings = db.user_metadata
        self.playlists = db.playlists
        try:
            self.ratings.create_index([('hash', 1), ('user', 1)], unique=True)
        except PyMongoError:
            LOGGER.debug('Failed to ensure unique index for user_metadata collection')
        try:
            self.playlists.create_index([('user', 1), ('name', 1)])
        except PyMongoError:
            LOGGER.debug('Failed to ensure index for playlists collection')

    @classmethod
    def open(cls, path: str) -> 'OverlayStore':
        try:
            db = connect(path)
        except PyMongoError as exc:
            raise StoreOpenError('Failed to open overlay store: %s' % exc) from exc
        return cls(db)

    def find_rating(self, content_hash: str, user: str) -> Optional[int]:
        doc = self.ratings.find_one({'hash': content_hash, 'user': user})
        return doc.get('rating') if doc else None

    def upsert_rating(self, content_hash: str, user: str, rating: int) -> str:
        key = {'hash': content_hash, 'user': user}
        if self.ratings.find_one(key) is None:
            try:
                self.ratings.insert_one({'hash': content_hash, 'user': user, 'rating': rating})
                return 'insert'
            except DuplicateKeyError:
                LOGGER.debug('Rating for %s inserted concurrently; updating instead', content_hash)
        self.ratings.update_one(key, {'$set': {'rating': rating}})
        return 'update'

    def remove_rating(self, content_hash: str, user: str) -> bool:
        result = self.ratings.delete_one({'hash': content_hash, 'user': user})
        return result.deleted_count > 0

    def clear_ratings(self, user: str) -> int:
        return self.ratings.delete_many({'user': user}).deleted_count

    def ratings_for_user(self, user: str) -> List[Dict[str, object]]:
        return list(self.ratings.find({'user': user}))

    def count_ratings(self, user: str) -> int:
        return self.ratings.count_documents({'user': user})

    def add_playlist_song(self, name: str, filepath: str, user: str) -> str:
        result = self.playlists.insert_one({'name': name, 'filepath': filepath, 'user': user})
        return str(result.inserted_id)

    def remove_playlist_record(self, record_id: str, user: str) -> bool:
        # bson.errors.InvalidId propagates for malformed ids
        result = self.playlists.delete_one({'_id': ObjectId(record_id), 'user': user})
        return result.deleted_count > 0

    def replace_playlist(self, name: str, user: str, songs: Iterable[str]) -> None:
        self.playlists.delete_many({'user': user, 'name': name})
        docs = [{'name': name, 'filepath': song, 'user': user} for song in songs]
        if docs:
            self.playlists.insert_many(docs)

    def playlist_names(self, user: str) -> List[str]:
        names: List[str] = []
        for doc in self.playlists.find({'user': user}):
            if doc.get('name') not in names:
                names.append(doc.get('name'))
        return names

    def playlist_records(self, name: str, user: str) -> List[Dict[str, object]]:
        return list(self.playlists.find({'user': user, 'name': name}))

    def delete_playlist(self, name: str, user: str) -> int:
        return self.playlists.delete_many({'user': user, 'name': name}).deleted_count
