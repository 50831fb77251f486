"""Read (and small write) operations over the catalog joined with per-user overlay data."""
from __future__ import annotations

import locale
import logging
import random
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from bson.errors import InvalidId

from catalog_store import CatalogEntry, CatalogStore, OverlayStore


LOGGER = logging.getLogger(__name__)

DEFAULT_LIMIT = 100
DEFAULT_IGNORE_PERCENTAGE = 0.5
MIN_RATING = 1
MAX_RATING = 10


class QueryError(Exception):
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidRequest(QueryError):
    status_code = 400


class FileNotFound(QueryError):
    status_code = 404


class NotRated(QueryError):
    status_code = 404


class NoMatch(QueryError):
    status_code = 444


class StoreNotReady(QueryError):
    status_code = 503


@dataclass
class LibraryUser:
    username: str
    vpaths: List[str] = field(default_factory=list)


@dataclass
class PathInfo:
    vpath: str
    relative_path: str


@dataclass
class RatedSong:
    entry: CatalogEntry
    rating: Optional[int] = None

    @property
    def public_path(self) -> str:
        return public_path(self.entry)

    def metadata(self) -> Dict[str, object]:
        entry = self.entry
        return {
            'artist': entry.artist,
            'hash': entry.hash,
            'album': entry.album,
            'track': entry.track.get('no'),
            'disk': entry.disk.get('no'),
            'title': entry.title,
            'year': entry.year,
            'album_art': entry.album_art,
            'embedded_art': entry.embedded_art,
            'filename': entry.filepath.rsplit('/', 1)[-1],
            'rating': self.rating,
        }

    def to_response(self) -> Dict[str, object]:
        return {'filepath': self.public_path, 'metadata': self.metadata()}


def public_path(entry: CatalogEntry) -> str:
    return '%s/%s' % (entry.vpath, entry.filepath)


def resolve_path(filepath: Optional[str], folders: Dict[str, object], user: Optional[LibraryUser] = None) -> PathInfo:
    """Split ``<vpath>/<relative path>`` and check the vpath is configured and accessible."""

    if not filepath:
        raise FileNotFound('Could not find file')
    normalised = str(filepath).replace('\\', '/').lstrip('/')
    vpath, _, relative_path = normalised.partition('/')
    if not vpath or not relative_path or vpath not in folders:
        raise FileNotFound('Could not find file')
    if user is not None and vpath not in user.vpaths:
        raise FileNotFound('Could not find file')
    return PathInfo(vpath=vpath, relative_path=relative_path)


def join_overlay(entries: Iterable[CatalogEntry], overlay_rows: Iterable[Dict[str, object]], username: str) -> List[RatedSong]:
    """Left join catalog entries to overlay rows on ``(hash, user)``."""

    index: Dict[Tuple[object, object], Dict[str, object]] = {}
    for row in overlay_rows:
        index[(row.get('hash'), row.get('user'))] = row
    joined = []
    for entry in entries:
        row = index.get((entry.hash, username))
        joined.append(RatedSong(entry=entry, rating=row.get('rating') if row else None))
    return joined


def join_rated(overlay_rows: Iterable[Dict[str, object]], entries: Iterable[CatalogEntry]) -> List[RatedSong]:
    """Inner join overlay rows to every catalog entry carrying the same hash."""

    by_hash: Dict[object, List[CatalogEntry]] = {}
    for entry in entries:
        by_hash.setdefault(entry.hash, []).append(entry)
    joined = []
    for row in overlay_rows:
        for entry in by_hash.get(row.get('hash'), []):
            joined.append(RatedSong(entry=entry, rating=row.get('rating')))
    return joined


def parse_limit(value: object) -> int:
    try:
        limit = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return DEFAULT_LIMIT
    return limit if limit > 0 else DEFAULT_LIMIT


def _is_number(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _rating_range(min_rating: object, max_rating: object) -> Optional[Tuple[float, float]]:
    if not (_is_number(min_rating) and _is_number(max_rating)):
        return None
    if not (MIN_RATING <= min_rating <= MAX_RATING and MIN_RATING <= max_rating <= MAX_RATING):
        return None
    return min_rating, max_rating


def _number_order(pair: Dict[str, Optional[int]]) -> Tuple[bool, int]:
    number = pair.get('no')
    return number is not None, number or 0


class CatalogQueries:
    def __init__(
        self,
        catalog: Optional[CatalogStore],
        overlay: Optional[OverlayStore],
        folders: Dict[str, object],
        rng: Optional[random.Random] = None,
    ) -> None:
        self.catalog = catalog
        self.overlay = overlay
        self.folders = folders
        self._rng = rng or random.Random()

    def _require_catalog(self) -> CatalogStore:
        if self.catalog is None:
            raise StoreNotReady('No DB')
        return self.catalog

    def _require_overlay(self) -> OverlayStore:
        if self.overlay is None:
            raise StoreNotReady('No DB')
        return self.overlay

    def _entries(self, vpaths: Iterable[str], criteria: Optional[Dict[str, object]] = None) -> List[CatalogEntry]:
        if self.catalog is None:
            return []
        query: Dict[str, object] = {'vpath': {'$in': list(vpaths)}}
        query.update(criteria or {})
        return self.catalog.find_entries(query)

    def _user_ratings(self, user: LibraryUser) -> List[Dict[str, object]]:
        if self.overlay is None:
            return []
        return self.overlay.ratings_for_user(user.username)

    def _lookup(self, user: LibraryUser, filepath: Optional[str]) -> Tuple[PathInfo, CatalogEntry]:
        info = resolve_path(filepath, self.folders, user)
        entry = self._require_catalog().find_entry(info.vpath, info.relative_path)
        if entry is None or not entry.hash:
            raise FileNotFound(
                'File not found in DB with relpath %s and vpath %s' % (info.relative_path, info.vpath)
            )
        return info, entry

    def artists(self, user: LibraryUser) -> List[str]:
        values = {entry.artist for entry in self._entries(user.vpaths) if entry.artist is not None}
        return sorted(values, key=locale.strxfrm)

    def albums(self, user: LibraryUser) -> List[Dict[str, object]]:
        albums: Dict[str, Dict[str, object]] = {}
        for entry in self._entries(user.vpaths):
            if entry.album is None or entry.album in albums:
                continue
            albums[entry.album] = {'name': entry.album, 'album_art_file': entry.album_art}
        return [albums[name] for name in sorted(albums, key=locale.strxfrm)]

    def artist_albums(self, user: LibraryUser, artist: str) -> List[Dict[str, object]]:
        entries = self._entries(user.vpaths, {'artist': str(artist)})
        entries.sort(key=lambda entry: (entry.year is not None, entry.year or 0), reverse=True)
        albums: List[Dict[str, object]] = []
        seen = set()
        for entry in entries:
            if entry.album in seen:
                continue
            seen.add(entry.album)
            albums.append({'name': entry.album, 'album_art_file': entry.album_art})
        return albums

    def album_songs(self, user: LibraryUser, album: Optional[str], artist: Optional[str] = None) -> List[Dict[str, object]]:
        criteria: Dict[str, object] = {'album': str(album) if album else None}
        if artist:
            criteria['artist'] = str(artist)
        entries = self._entries(user.vpaths, criteria)
        entries.sort(key=lambda entry: (_number_order(entry.disk), _number_order(entry.track), entry.filepath))
        songs = join_overlay(entries, self._user_ratings(user), user.username)
        return [song.to_response() for song in songs]

    def metadata(self, user: LibraryUser, filepath: Optional[str]) -> Dict[str, object]:
        info = resolve_path(filepath, self.folders, user)
        empty = {'filepath': filepath, 'metadata': {}}
        if self.catalog is None:
            return empty
        entry = self.catalog.find_entry(info.vpath, info.relative_path)
        if entry is None:
            return empty
        song = join_overlay([entry], self._user_ratings(user), user.username)[0]
        return {'filepath': filepath, 'metadata': song.metadata()}

    def rate_song(self, user: LibraryUser, filepath: Optional[str], rating: object) -> Dict[str, object]:
        if not filepath or rating is None:
            raise InvalidRequest('Bad input data %s %s' % (filepath, rating))
        if not _is_number(rating) or not MIN_RATING <= rating <= MAX_RATING:
            raise InvalidRequest('Rating must be between %d and %d' % (MIN_RATING, MAX_RATING))
        overlay = self._require_overlay()
        _, entry = self._lookup(user, filepath)
        type_save = overlay.upsert_rating(entry.hash, user.username, rating)
        LOGGER.info('Rating %s for %s (%s)', rating, filepath, type_save)
        return {'saved_song': entry.hash, 'type_save': type_save}

    def get_rating(self, user: LibraryUser, filepath: Optional[str]) -> Dict[str, object]:
        overlay = self._require_overlay()
        info, entry = self._lookup(user, filepath)
        rating = overlay.find_rating(entry.hash, user.username)
        if rating is None:
            raise NotRated(
                'File with relpath %s and vpath %s is not rated yet' % (info.relative_path, info.vpath)
            )
        return {'song': info.relative_path, 'rating': rating}

    def unrate_song(self, user: LibraryUser, filepath: Optional[str]) -> bool:
        if not filepath:
            raise InvalidRequest('A filepath is needed in order to remove a song')
        overlay = self._require_overlay()
        _, entry = self._lookup(user, filepath)
        LOGGER.info('Removing rated song with hash %s', entry.hash)
        return overlay.remove_rating(entry.hash, user.username)

    def clear_ratings(self, user: LibraryUser) -> int:
        return self._require_overlay().clear_ratings(user.username)

    def rated_count(self, user: LibraryUser) -> int:
        return self._require_overlay().count_ratings(user.username)

    def rated_songs(self, user: LibraryUser, limit: object = None) -> List[Dict[str, object]]:
        rows = [row for row in self._user_ratings(user) if _is_number(row.get('rating')) and row['rating'] > 0]
        if not rows:
            return []
        entries = self._entries(user.vpaths, {'hash': {'$in': [row.get('hash') for row in rows]}})
        songs = join_rated(rows, entries)
        songs.sort(key=lambda song: song.rating, reverse=True)
        return [song.to_response() for song in songs[:parse_limit(limit)]]

    def recently_added(self, user: LibraryUser, limit: object = None) -> List[Dict[str, object]]:
        entries = self._entries(user.vpaths, {'ts': {'$gt': 0}})
        entries.sort(key=lambda entry: entry.ts, reverse=True)
        songs = join_overlay(entries[:parse_limit(limit)], self._user_ratings(user), user.username)
        return [song.to_response() for song in songs]

    def file_count(self, user: LibraryUser) -> int:
        if self.catalog is None:
            return 0
        return self.catalog.count(user.vpaths)

    def random_song(
        self,
        user: LibraryUser,
        ignore_list: Optional[List[int]] = None,
        ignore_vpaths: object = None,
        min_rating: object = None,
        max_rating: object = None,
        ignore_percentage: object = None,
    ) -> Dict[str, object]:
        """Pick one song, avoiding indexes the caller was recently served.

        The caller keeps ``ignore_list`` between calls; the returned list has
        been trimmed to the current eligible set and includes the new pick.
        """

        self._require_catalog()
        if isinstance(ignore_vpaths, dict):
            excluded = {vpath for vpath, flag in ignore_vpaths.items() if flag is True}
        else:
            excluded = set(ignore_vpaths or [])
        vpaths = [vpath for vpath in user.vpaths if vpath not in excluded]

        entries = self._entries(vpaths) if vpaths else []
        entries.sort(key=lambda entry: (entry.vpath, entry.filepath))
        songs = join_overlay(entries, self._user_ratings(user), user.username)

        bounds = _rating_range(min_rating, max_rating)
        if bounds is not None:
            low, high = bounds
            songs = [song for song in songs if _is_number(song.rating) and low <= song.rating <= high]

        count = len(songs)
        if count == 0:
            raise NoMatch('No songs that match criteria')

        percentage = DEFAULT_IGNORE_PERCENTAGE
        if _is_number(ignore_percentage) and 0 < ignore_percentage < 1:
            percentage = ignore_percentage

        ignored = [index for index in (ignore_list or []) if isinstance(index, int) and not isinstance(index, bool)]
        while len(ignored) > count * percentage:
            ignored.pop(0)

        pick = self._rng.randrange(count)
        while pick in ignored:
            pick = self._rng.randrange(count)
        ignored.append(pick)

        return {'songs': [songs[pick].to_response()], 'ignore_list': ignored}

    def search(
        self,
        user: LibraryUser,
        term: Optional[str],
        *,
        no_artists: bool = False,
        no_albums: bool = False,
        no_files: bool = False,
        no_titles: bool = False,
    ) -> Dict[str, List[Dict[str, object]]]:
        if not term:
            raise InvalidRequest('Bad input data')
        return {
            'artists': [] if no_artists else self._search_field(user, 'artist', term),
            'albums': [] if no_albums else self._search_field(user, 'album', term),
            'files': [] if no_files else self._search_field(user, 'filepath', term),
            'title': [] if no_titles else self._search_field(user, 'title', term),
        }

    def _search_field(self, user: LibraryUser, field_name: str, term: str) -> List[Dict[str, object]]:
        pattern = {'$regex': re.escape(str(term)), '$options': 'i'}
        results: List[Dict[str, object]] = []
        seen = set()
        for entry in self._entries(user.vpaths, {field_name: pattern}):
            filepath = None
            if field_name == 'filepath':
                name = filepath = public_path(entry)
            elif field_name == 'title':
                name = '%s - %s' % (entry.artist, entry.title)
                filepath = public_path(entry)
            else:
                name = getattr(entry, field_name)
            if name in seen:
                continue
            seen.add(name)
            results.append({'name': name, 'album_art_file': entry.album_art, 'filepath': filepath})
        return results

    def playlist_names(self, user: LibraryUser) -> List[Dict[str, str]]:
        if self.overlay is None:
            return []
        return [{'name': name} for name in self.overlay.playlist_names(user.username)]

    def add_playlist_song(self, user: LibraryUser, playlist: Optional[str], song: Optional[str]) -> str:
        if not playlist or not song:
            raise InvalidRequest('Missing Params')
        return self._require_overlay().add_playlist_song(playlist, song, user.username)

    def remove_playlist_record(self, user: LibraryUser, record_id: Optional[str]) -> bool:
        if not record_id:
            raise InvalidRequest('Missing Params')
        overlay = self._require_overlay()
        try:
            return overlay.remove_playlist_record(str(record_id), user.username)
        except InvalidId:
            raise InvalidRequest('Invalid playlist record id %s' % record_id)

    def save_playlist(self, user: LibraryUser, title: Optional[str], songs: Optional[List[str]]) -> None:
        if not title or not isinstance(songs, list):
            raise InvalidRequest('Missing Params')
        self._require_overlay().replace_playlist(title, user.username, [str(song) for song in songs])

    def load_playlist(self, user: LibraryUser, name: Optional[str]) -> List[Dict[str, object]]:
        overlay = self._require_overlay()
        ratings = self._user_ratings(user)
        loaded = []
        for record in overlay.playlist_records(str(name), user.username):
            metadata: Dict[str, object] = {}
            entry = None
            try:
                info = resolve_path(record.get('filepath'), self.folders, user)
            except FileNotFound:
                LOGGER.debug('Playlist %s references unknown file %s', name, record.get('filepath'))
            else:
                if self.catalog is not None:
                    entry = self.catalog.find_entry(info.vpath, info.relative_path)
            if entry is not None:
                metadata = join_overlay([entry], ratings, user.username)[0].metadata()
            loaded.append({
                'id': str(record.get('_id')),
                'filepath': record.get('filepath'),
                'metadata': metadata,
            })
        return loaded

    def delete_playlist(self, user: LibraryUser, name: Optional[str]) -> int:
        if not name:
            raise InvalidRequest('Missing Params')
        return self._require_overlay().delete_playlist(str(name), user.username)
