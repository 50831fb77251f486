"""Directory scanning, album art resolution and tag extraction for the catalog."""
from __future__ import annotations

import hashlib
import logging
import os
import re
import stat as stat_module
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set, Tuple

import mutagen
from mutagen.flac import FLAC
from mutagen.id3 import ID3
from mutagen.mp4 import MP4Cover, MP4Tags
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from catalog_store import DEFAULT_SAVE_INTERVAL_MS, CatalogEntry, empty_number_pair


LOGGER = logging.getLogger(__name__)


SUPPORTED_AUDIO_EXTS = ["mp3", "flac", "wav", "ogg", "aac", "m4a", "opus"]

# Compared verbatim, so "cover.Jpg" is not picked up as album art.
ALBUM_ART_EXTS = ["png", "jpg", "PNG", "JPG"]

HASH_CHUNK_SIZE = 64 * 1024

WATCHED_EVENT_TYPES = {"created", "deleted", "modified", "moved"}

PICTURE_MIME_EXTS = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
}

NEW = "new"
UNCHANGED = "unchanged"
ART_UPDATE = "art-update"
STALE = "stale"

_YEAR_RE = re.compile(r"(\d{4})")
_NUMBER_RE = re.compile(r"^\s*(\d+)")

Picture = Tuple[bytes, str]
TagReader = Callable[[Path, bool], Optional[Dict[str, object]]]


@dataclass
class ScanJob:
    vpath: str
    root_directory: Path
    store_path: str = ""
    pause_ms: int = 0
    save_interval_ms: int = DEFAULT_SAVE_INTERVAL_MS
    skip_album_art: bool = False
    album_art_directory: Optional[Path] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, object]) -> "ScanJob":
        """Build a job from the JSON configuration accepted by ``sync_job``."""

        art_dir = payload.get("albumArtDirectory")
        save_interval = payload.get("saveInterval")
        return cls(
            vpath=str(payload["vpath"]),
            root_directory=Path(str(payload["directory"])),
            store_path=str(payload["dbPath"]),
            pause_ms=int(payload.get("pause") or 0),
            save_interval_ms=DEFAULT_SAVE_INTERVAL_MS if save_interval is None else int(save_interval),
            skip_album_art=payload.get("skipImg") is True,
            album_art_directory=Path(str(art_dir)) if art_dir else None,
        )


@dataclass
class ScanContext:
    """Mutable state of one synchronization pass; never shared between passes."""

    job: ScanJob
    snapshot: Dict[str, CatalogEntry] = field(default_factory=dict)
    album_art: Dict[Path, Optional[str]] = field(default_factory=dict)
    new: List[str] = field(default_factory=list)
    art_updates: List[CatalogEntry] = field(default_factory=list)
    stale: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    found: int = 0
    unchanged: int = 0
    visited: Set[Tuple[int, int]] = field(default_factory=set)


def file_type(name: str) -> str:
    return name.rsplit(".", 1)[1] if "." in name else ""


def modified_ms(file_stat: os.stat_result) -> int:
    return file_stat.st_mtime_ns // 1_000_000


def md5_bytes(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()


def hash_file(path: Path, chunk_size: int = HASH_CHUNK_SIZE) -> str:
    digest = hashlib.md5()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _relative_to_root(context: ScanContext, path: Path) -> str:
    return path.relative_to(context.job.root_directory).as_posix()


def pick_album_art(images: List[str]) -> Optional[str]:
    if not images:
        return None
    if len(images) == 1:
        return images[0]
    for name in images:
        if "front" in name.lower():
            return name
    return images[0]


def resolve_album_art(context: ScanContext, directory: Path) -> Optional[str]:
    """Return the root-relative album art path for ``directory``, memoized per scan."""

    if context.job.skip_album_art:
        return None
    if directory in context.album_art:
        return context.album_art[directory]

    try:
        names = sorted(os.listdir(directory))
    except OSError:
        LOGGER.debug("Could not list %s for album art", directory)
        names = []

    images = [
        name for name in names
        if file_type(name) in ALBUM_ART_EXTS and (directory / name).is_file()
    ]
    choice = pick_album_art(images)
    result = _relative_to_root(context, directory / choice) if choice else None
    context.album_art[directory] = result
    return result


def classify_file(context: ScanContext, relative_path: str, modified: int, album_art: Optional[str]) -> str:
    entry = context.snapshot.pop(relative_path, None)
    if entry is None:
        context.new.append(relative_path)
        return NEW
    if entry.modified != modified:
        context.stale.append(relative_path)
        return STALE
    if album_art is not None and album_art != entry.album_art:
        LOGGER.info("New cover file %s for %s", album_art, relative_path)
        entry.album_art = album_art
        context.art_updates.append(entry)
        return ART_UPDATE
    context.unchanged += 1
    return UNCHANGED


def _scan_tree(context: ScanContext, directory: Path) -> None:
    try:
        dir_stat = directory.stat()
        names = sorted(os.listdir(directory))
    except OSError:
        LOGGER.debug("Skipping unreadable directory %s", directory)
        return

    # Followed symlinks can loop back into an ancestor.
    identity = (dir_stat.st_dev, dir_stat.st_ino)
    if identity in context.visited:
        LOGGER.debug("Skipping already visited directory %s", directory)
        return
    context.visited.add(identity)

    album_art = resolve_album_art(context, directory)

    for name in names:
        path = directory / name
        try:
            file_stat = path.stat()
        except OSError:
            LOGGER.debug("Skipping unreadable file %s", path)
            continue

        if stat_module.S_ISDIR(file_stat.st_mode):
            _scan_tree(context, path)
            continue
        if not stat_module.S_ISREG(file_stat.st_mode):
            continue
        if file_type(name).lower() not in SUPPORTED_AUDIO_EXTS:
            continue

        context.found += 1
        classify_file(context, _relative_to_root(context, path), modified_ms(file_stat), album_art)


def scan_directory(context: ScanContext) -> ScanContext:
    """Walk the job's root directory and sort every audio file into the context's buckets.

    Snapshot entries that were never matched by a file on disk end up in
    ``context.removed``.
    """

    _scan_tree(context, context.job.root_directory)
    context.removed = sorted(context.snapshot)
    context.snapshot.clear()
    return context


def _first_tag(tags, key: str) -> Optional[str]:
    try:
        values = tags.get(key)
    except (KeyError, ValueError):
        return None
    if not values:
        return None
    value = values[0] if isinstance(values, list) else values
    text = str(value).strip()
    return text or None


def _parse_number(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    match = _NUMBER_RE.match(value)
    return int(match.group(1)) if match else None


def parse_number_pair(value: Optional[str], total: Optional[str] = None) -> Dict[str, Optional[int]]:
    """Split tag values like ``"3/12"`` into ``{'no': 3, 'of': 12}``."""

    pair = empty_number_pair()
    if value:
        number, _, of = value.partition("/")
        pair["no"] = _parse_number(number)
        pair["of"] = _parse_number(of)
    if pair["of"] is None:
        pair["of"] = _parse_number(total)
    return pair


def parse_year(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    match = _YEAR_RE.search(value)
    return int(match.group(1)) if match else None


def _embedded_picture(path: Path) -> Optional[Picture]:
    audio = mutagen.File(str(path))
    if audio is None:
        return None
    if isinstance(audio, FLAC) and audio.pictures:
        picture = audio.pictures[0]
        return picture.data, PICTURE_MIME_EXTS.get(picture.mime, "jpg")
    tags = audio.tags
    if isinstance(tags, ID3):
        frames = tags.getall("APIC")
        if frames:
            return frames[0].data, PICTURE_MIME_EXTS.get(frames[0].mime, "jpg")
    elif isinstance(tags, MP4Tags):
        covers = tags.get("covr") or []
        if covers:
            ext = "png" if covers[0].imageformat == MP4Cover.FORMAT_PNG else "jpg"
            return bytes(covers[0]), ext
    return None


def read_tags(path: Path, skip_covers: bool = False) -> Optional[Dict[str, object]]:
    """Read common tags with mutagen; ``None`` when the container is not recognised."""

    audio = mutagen.File(str(path), easy=True)
    if audio is None:
        return None
    tags = audio.tags if audio.tags is not None else {}
    info: Dict[str, object] = {
        "artist": _first_tag(tags, "artist"),
        "album": _first_tag(tags, "album"),
        "title": _first_tag(tags, "title"),
        "track": parse_number_pair(
            _first_tag(tags, "tracknumber"),
            _first_tag(tags, "totaltracks") or _first_tag(tags, "tracktotal"),
        ),
        "disk": parse_number_pair(
            _first_tag(tags, "discnumber"),
            _first_tag(tags, "totaldiscs") or _first_tag(tags, "disctotal"),
        ),
        "year": parse_year(_first_tag(tags, "date") or _first_tag(tags, "year")),
    }
    if not skip_covers:
        info["picture"] = _embedded_picture(path)
    return info


def minimal_tags() -> Dict[str, object]:
    return {
        "artist": None,
        "album": None,
        "title": None,
        "track": empty_number_pair(),
        "disk": empty_number_pair(),
        "year": None,
    }


def store_embedded_art(picture: Picture, album_art_directory: Path) -> Optional[str]:
    data, ext = picture
    filename = "%s.%s" % (md5_bytes(data), ext)
    target = album_art_directory / filename
    try:
        if not target.exists():
            album_art_directory.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
    except OSError as exc:
        LOGGER.warning("Failed to write album art %s: %s", target, exc)
        return None
    return filename


def extract_metadata(path: Path, context: ScanContext, tag_reader: TagReader = read_tags) -> Optional[CatalogEntry]:
    """Build the catalog entry for one audio file.

    Returns ``None`` when the file vanished or could not be hashed. Tag
    parsing failures never drop the file; it is catalogued without tags.
    """

    job = context.job
    try:
        file_stat = path.stat()
    except OSError:
        file_stat = None
    if file_stat is None or not stat_module.S_ISREG(file_stat.st_mode):
        LOGGER.warning("Failed to parse file %s: no longer a regular file", path)
        return None

    try:
        tags = tag_reader(path, job.skip_album_art)
    except Exception as exc:
        LOGGER.warning("Metadata parse error on %s: %s", path, exc)
        tags = None
    if tags is None:
        LOGGER.warning("No readable tags in %s; cataloguing without metadata", path)
        tags = minimal_tags()

    # album_art is root-relative; embedded_art names a file in album_art_directory.
    album_art = None
    embedded_art = None
    if not job.skip_album_art:
        album_art = resolve_album_art(context, path.parent)
        picture = tags.get("picture")
        if album_art is None and picture and job.album_art_directory:
            embedded_art = store_embedded_art(picture, job.album_art_directory)

    try:
        content_hash = hash_file(path)
    except OSError as exc:
        LOGGER.warning("Failed to hash %s: %s", path, exc)
        return None

    return CatalogEntry(
        vpath=job.vpath,
        filepath=_relative_to_root(context, path),
        artist=tags.get("artist"),
        album=tags.get("album"),
        title=tags.get("title"),
        track=tags.get("track") or empty_number_pair(),
        disk=tags.get("disk") or empty_number_pair(),
        year=tags.get("year"),
        format=file_type(path.name),
        modified=modified_ms(file_stat),
        hash=content_hash,
        album_art=album_art,
        embedded_art=embedded_art,
    )


class _WatcherHandle:
    def __init__(self, observer: Observer) -> None:
        self._observer = observer

    def stop(self) -> None:
        self._observer.stop()
        self._observer.join(timeout=5)


class _LibraryEventHandler(FileSystemEventHandler):
    def __init__(self, trigger: Callable[[], None], debounce: float) -> None:
        super().__init__()
        self._trigger = trigger
        self._debounce = debounce
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()

    def _schedule(self) -> None:
        with self._lock:
            if self._timer:
                self._timer.cancel()
            self._timer = threading.Timer(self._debounce, self._trigger)
            self._timer.daemon = True
            self._timer.start()

    def on_any_event(self, event):  # type: ignore[override]
        if getattr(event, "is_directory", False):
            return
        # opened/closed events fire on every read, including our own hashing
        if getattr(event, "event_type", None) not in WATCHED_EVENT_TYPES:
            return
        path = getattr(event, "dest_path", "") or getattr(event, "src_path", "")
        ext = file_type(Path(str(path)).name)
        if ext.lower() not in SUPPORTED_AUDIO_EXTS and ext not in ALBUM_ART_EXTS:
            return
        self._schedule()


def start_watcher(directory: Path, callback: Callable[[], None], debounce_seconds: float = 1.0) -> _WatcherHandle:
    """Call ``callback`` once changes to audio or art files under ``directory`` settle."""

    observer = Observer()
    observer.daemon = True
    observer.schedule(_LibraryEventHandler(callback, debounce_seconds), str(directory), recursive=True)
    observer.start()
    return _WatcherHandle(observer)
