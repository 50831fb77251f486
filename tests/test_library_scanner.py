from pathlib import Path
from types import SimpleNamespace
from unittest import mock
import hashlib
import os
import struct
import sys
import tempfile
import threading
import unittest

from mutagen.flac import FLAC, Picture
from watchdog.events import (
    DirCreatedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
)

sys.path.append(str(Path(__file__).resolve().parents[1]))

from catalog_store import CatalogEntry
from library_scanner import (
    ART_UPDATE,
    NEW,
    STALE,
    UNCHANGED,
    ScanContext,
    ScanJob,
    classify_file,
    extract_metadata,
    hash_file,
    parse_number_pair,
    parse_year,
    pick_album_art,
    read_tags,
    resolve_album_art,
    scan_directory,
    _LibraryEventHandler,
)


def _static_tags(path, skip_covers):
    return {
        'artist': 'The Beatles',
        'album': 'Abbey Road',
        'title': 'Something',
        'track': {'no': 2, 'of': 17},
        'disk': {'no': 1, 'of': 1},
        'year': 1969,
    }


class TestLibraryScanner(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.root = Path(self._tmp.name) / 'library'
        self.root.mkdir()

    def _context(self, **job_overrides):
        job = ScanJob(vpath='music', root_directory=self.root, **job_overrides)
        return ScanContext(job=job)

    def _write(self, relative, data=b'audio'):
        path = self.root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return path

    def _set_mtime_ms(self, path, value_ms):
        ns = value_ms * 1_000_000
        os.utime(path, ns=(ns, ns))

    def test_pick_album_art_rules(self):
        self.assertIsNone(pick_album_art([]))
        self.assertEqual(pick_album_art(['cover.png']), 'cover.png')
        self.assertEqual(pick_album_art(['folder.jpg', 'front-cover.jpg']), 'front-cover.jpg')
        self.assertEqual(pick_album_art(['a.jpg', 'FRONT.JPG']), 'FRONT.JPG')
        self.assertEqual(pick_album_art(['back.jpg', 'inlay.png']), 'back.jpg')

    def test_resolve_album_art_single_image(self):
        self._write('Album/cover.png', b'png')
        self._write('Album/01.mp3')
        context = self._context()
        self.assertEqual(resolve_album_art(context, self.root / 'Album'), 'Album/cover.png')

    def test_resolve_album_art_prefers_front(self):
        self._write('Album/folder.jpg', b'jpg')
        self._write('Album/front-cover.jpg', b'jpg')
        context = self._context()
        self.assertEqual(resolve_album_art(context, self.root / 'Album'), 'Album/front-cover.jpg')

    def test_resolve_album_art_empty_directory(self):
        (self.root / 'Empty').mkdir()
        context = self._context()
        self.assertIsNone(resolve_album_art(context, self.root / 'Empty'))
        self.assertIn(self.root / 'Empty', context.album_art)

    def test_resolve_album_art_extension_is_case_sensitive(self):
        self._write('Album/cover.Jpg', b'jpg')
        self._write('Album/scan.jpeg', b'jpg')
        context = self._context()
        self.assertIsNone(resolve_album_art(context, self.root / 'Album'))

    def test_resolve_album_art_ignores_directories(self):
        (self.root / 'Album' / 'art.png').mkdir(parents=True)
        context = self._context()
        self.assertIsNone(resolve_album_art(context, self.root / 'Album'))

    def test_resolve_album_art_is_memoized(self):
        self._write('Album/cover.png', b'png')
        context = self._context()
        first = resolve_album_art(context, self.root / 'Album')
        (self.root / 'Album' / 'cover.png').unlink()
        self.assertEqual(resolve_album_art(context, self.root / 'Album'), first)

    def test_resolve_album_art_skipped(self):
        self._write('Album/cover.png', b'png')
        context = self._context(skip_album_art=True)
        self.assertIsNone(resolve_album_art(context, self.root / 'Album'))
        self.assertEqual(context.album_art, {})

    def test_classify_file_buckets(self):
        context = self._context()
        context.snapshot = {
            'same.mp3': CatalogEntry(vpath='music', filepath='same.mp3', modified=100, album_art='cover.png'),
            'touched.mp3': CatalogEntry(vpath='music', filepath='touched.mp3', modified=100),
            'art.mp3': CatalogEntry(vpath='music', filepath='art.mp3', modified=100, album_art=None),
        }
        self.assertEqual(classify_file(context, 'fresh.mp3', 100, None), NEW)
        self.assertEqual(classify_file(context, 'same.mp3', 100, 'cover.png'), UNCHANGED)
        self.assertEqual(classify_file(context, 'touched.mp3', 200, None), STALE)
        self.assertEqual(classify_file(context, 'art.mp3', 100, 'cover.png'), ART_UPDATE)
        self.assertEqual(context.new, ['fresh.mp3'])
        self.assertEqual(context.stale, ['touched.mp3'])
        self.assertEqual([entry.filepath for entry in context.art_updates], ['art.mp3'])
        self.assertEqual(context.art_updates[0].album_art, 'cover.png')
        self.assertEqual(context.unchanged, 1)
        self.assertEqual(context.snapshot, {})

    def test_classify_file_missing_art_does_not_clear_pointer(self):
        context = self._context()
        context.snapshot = {
            'song.mp3': CatalogEntry(vpath='music', filepath='song.mp3', modified=100, album_art='old.png'),
        }
        self.assertEqual(classify_file(context, 'song.mp3', 100, None), UNCHANGED)
        self.assertEqual(context.art_updates, [])

    def test_stale_takes_precedence_over_art_update(self):
        context = self._context()
        context.snapshot = {
            'song.mp3': CatalogEntry(vpath='music', filepath='song.mp3', modified=100, album_art=None),
        }
        self.assertEqual(classify_file(context, 'song.mp3', 200, 'cover.png'), STALE)
        self.assertEqual(context.art_updates, [])

    def test_scan_directory_classifies_tree(self):
        kept = self._write('A/kept.mp3')
        self._set_mtime_ms(kept, 1_000_000)
        changed = self._write('A/changed.FLAC')
        self._set_mtime_ms(changed, 2_000_000)
        self._write('B/new.opus')
        self._write('B/notes.txt')
        self._write('B/cover.png', b'png')

        context = self._context()
        context.snapshot = {
            'A/kept.mp3': CatalogEntry(vpath='music', filepath='A/kept.mp3', modified=1_000_000),
            'A/changed.FLAC': CatalogEntry(vpath='music', filepath='A/changed.FLAC', modified=1),
            'gone/missing.mp3': CatalogEntry(vpath='music', filepath='gone/missing.mp3', modified=1),
        }
        scan_directory(context)

        self.assertEqual(context.found, 3)
        self.assertEqual(context.new, ['B/new.opus'])
        self.assertEqual(context.stale, ['A/changed.FLAC'])
        self.assertEqual(context.removed, ['gone/missing.mp3'])
        self.assertEqual(context.unchanged, 1)
        self.assertEqual(context.album_art[self.root / 'B'], 'B/cover.png')

    def test_scan_directory_skips_unreadable_subtree(self):
        self._write('ok/song.mp3')
        context = self._context()
        context.job.root_directory = self.root / 'does-not-exist'
        scan_directory(context)
        self.assertEqual(context.found, 0)
        self.assertEqual(context.new, [])

    def test_unlistable_subdirectory_entries_are_removed(self):
        self._write('open/a.mp3')
        self._write('locked/b.mp3')
        context = self._context()
        context.snapshot = {
            'locked/b.mp3': CatalogEntry(vpath='music', filepath='locked/b.mp3', modified=1),
        }
        real_listdir = os.listdir

        def _listdir(path):
            if Path(path).name == 'locked':
                raise PermissionError('denied')
            return real_listdir(path)

        with mock.patch('library_scanner.os.listdir', side_effect=_listdir):
            scan_directory(context)

        self.assertEqual(context.new, ['open/a.mp3'])
        self.assertEqual(context.removed, ['locked/b.mp3'])

    def test_hash_file_streams_in_chunks(self):
        data = os.urandom(10_000)
        path = self._write('big.flac', data)
        self.assertEqual(hash_file(path, chunk_size=1024), hashlib.md5(data).hexdigest())

    def test_extract_metadata_builds_entry(self):
        path = self._write('Abbey Road/02 Something.mp3', b'something')
        self._write('Abbey Road/front.jpg', b'jpg')
        self._set_mtime_ms(path, 1_234_000)
        context = self._context()

        entry = extract_metadata(path, context, tag_reader=_static_tags)

        self.assertEqual(entry.vpath, 'music')
        self.assertEqual(entry.filepath, 'Abbey Road/02 Something.mp3')
        self.assertEqual(entry.artist, 'The Beatles')
        self.assertEqual(entry.track, {'no': 2, 'of': 17})
        self.assertEqual(entry.year, 1969)
        self.assertEqual(entry.format, 'mp3')
        self.assertEqual(entry.modified, 1_234_000)
        self.assertEqual(entry.hash, hashlib.md5(b'something').hexdigest())
        self.assertEqual(entry.album_art, 'Abbey Road/front.jpg')

    def test_extract_metadata_degrades_on_parse_failure(self):
        path = self._write('broken.ogg', b'not really ogg')

        def _failing_reader(path, skip_covers):
            raise ValueError('corrupt header')

        with self.assertLogs('library_scanner', level='WARNING'):
            entry = extract_metadata(path, self._context(), tag_reader=_failing_reader)

        self.assertIsNotNone(entry)
        self.assertIsNone(entry.artist)
        self.assertIsNone(entry.title)
        self.assertEqual(entry.track, {'no': None, 'of': None})
        self.assertEqual(entry.disk, {'no': None, 'of': None})
        self.assertEqual(entry.hash, hashlib.md5(b'not really ogg').hexdigest())

    def test_extract_metadata_skips_vanished_file(self):
        with self.assertLogs('library_scanner', level='WARNING'):
            entry = extract_metadata(self.root / 'gone.mp3', self._context(), tag_reader=_static_tags)
        self.assertIsNone(entry)

    def test_extract_metadata_passes_skip_flag_and_omits_art(self):
        path = self._write('Album/song.m4a')
        self._write('Album/cover.png', b'png')
        seen = []

        def _reader(path, skip_covers):
            seen.append(skip_covers)
            return _static_tags(path, skip_covers)

        entry = extract_metadata(path, self._context(skip_album_art=True), tag_reader=_reader)
        self.assertEqual(seen, [True])
        self.assertIsNone(entry.album_art)
        self.assertIsNone(entry.embedded_art)

    def test_directory_art_wins_over_embedded_cover(self):
        path = self._write('Album/song.flac')
        self._write('Album/cover.png', b'png')
        art_dir = Path(self._tmp.name) / 'album-art'

        def _reader(path, skip_covers):
            tags = _static_tags(path, skip_covers)
            tags['picture'] = (b'embedded-cover', 'png')
            return tags

        entry = extract_metadata(path, self._context(album_art_directory=art_dir), tag_reader=_reader)
        self.assertEqual(entry.album_art, 'Album/cover.png')
        self.assertIsNone(entry.embedded_art)
        self.assertFalse(art_dir.exists())

    def test_extract_metadata_writes_embedded_art(self):
        path = self._write('Album/song.flac')
        art_dir = Path(self._tmp.name) / 'album-art'

        def _reader(path, skip_covers):
            tags = _static_tags(path, skip_covers)
            tags['picture'] = (b'embedded-cover', 'png')
            return tags

        entry = extract_metadata(path, self._context(album_art_directory=art_dir), tag_reader=_reader)
        expected = hashlib.md5(b'embedded-cover').hexdigest() + '.png'
        self.assertEqual(entry.embedded_art, expected)
        self.assertIsNone(entry.album_art)
        self.assertEqual((art_dir / expected).read_bytes(), b'embedded-cover')

    def test_parse_number_pair_and_year(self):
        self.assertEqual(parse_number_pair('3/12'), {'no': 3, 'of': 12})
        self.assertEqual(parse_number_pair('7', '10'), {'no': 7, 'of': 10})
        self.assertEqual(parse_number_pair(None), {'no': None, 'of': None})
        self.assertEqual(parse_number_pair('A1'), {'no': None, 'of': None})
        self.assertEqual(parse_year('1969-09-26'), 1969)
        self.assertIsNone(parse_year('unknown'))

    def test_scan_job_from_payload(self):
        job = ScanJob.from_payload({
            'vpath': 'metal',
            'directory': '/music/metal',
            'dbPath': 'mongodb://localhost/songshelf',
            'pause': 500,
            'saveInterval': 1000,
            'skipImg': True,
            'albumArtDirectory': '/art',
        })
        self.assertEqual(job.vpath, 'metal')
        self.assertEqual(job.root_directory, Path('/music/metal'))
        self.assertEqual(job.pause_ms, 500)
        self.assertEqual(job.save_interval_ms, 1000)
        self.assertTrue(job.skip_album_art)
        self.assertEqual(job.album_art_directory, Path('/art'))


def _write_flac(path, tags, picture=None):
    # STREAMINFO only: 44.1 kHz, stereo, 16 bit, zero samples
    streaminfo = struct.pack('>HH', 4096, 4096) + b'\x00' * 6
    streaminfo += struct.pack('>Q', (44100 << 44) | (1 << 41) | (15 << 36))
    streaminfo += b'\x00' * 16
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b'fLaC' + b'\x80\x00\x00\x22' + streaminfo)

    audio = FLAC(str(path))
    for key, value in tags.items():
        audio[key] = value
    if picture is not None:
        audio.add_picture(picture)
    audio.save()
    return path


class TestReadTags(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.root = Path(self._tmp.name) / 'library'
        self.art_dir = Path(self._tmp.name) / 'album-art'
        self.context = ScanContext(job=ScanJob(
            vpath='music',
            root_directory=self.root,
            album_art_directory=self.art_dir,
        ))

    def _cover(self):
        picture = Picture()
        picture.type = 3
        picture.mime = 'image/png'
        picture.data = b'flac-cover'
        return picture

    def test_default_reader_parses_flac_tags(self):
        path = _write_flac(self.root / 'Nevermind' / '03.flac', {
            'artist': 'Nirvana',
            'album': 'Nevermind',
            'title': 'Come as You Are',
            'tracknumber': '3/12',
            'discnumber': '1',
            'totaldiscs': '2',
            'date': '1991-09-24',
        })

        entry = extract_metadata(path, self.context)

        self.assertEqual(entry.artist, 'Nirvana')
        self.assertEqual(entry.album, 'Nevermind')
        self.assertEqual(entry.title, 'Come as You Are')
        self.assertEqual(entry.track, {'no': 3, 'of': 12})
        self.assertEqual(entry.disk, {'no': 1, 'of': 2})
        self.assertEqual(entry.year, 1991)
        self.assertEqual(entry.format, 'flac')
        self.assertEqual(entry.hash, hashlib.md5(path.read_bytes()).hexdigest())

    def test_default_reader_extracts_embedded_cover(self):
        path = _write_flac(self.root / 'Album' / 'song.flac', {'artist': 'Someone'}, self._cover())

        self.assertEqual(read_tags(path)['picture'], (b'flac-cover', 'png'))
        self.assertNotIn('picture', read_tags(path, skip_covers=True))

        entry = extract_metadata(path, self.context)
        expected = hashlib.md5(b'flac-cover').hexdigest() + '.png'
        self.assertEqual(entry.embedded_art, expected)
        self.assertIsNone(entry.album_art)
        self.assertEqual((self.art_dir / expected).read_bytes(), b'flac-cover')

    def test_default_reader_degrades_on_garbage(self):
        path = self.root / 'broken.mp3'
        path.parent.mkdir(parents=True)
        path.write_bytes(b'not audio at all ' * 64)

        with self.assertLogs('library_scanner', level='WARNING'):
            entry = extract_metadata(path, self.context)

        self.assertIsNotNone(entry)
        self.assertEqual(entry.filepath, 'broken.mp3')
        self.assertIsNone(entry.artist)
        self.assertIsNone(entry.year)
        self.assertEqual(entry.track, {'no': None, 'of': None})
        self.assertIsNone(entry.embedded_art)


class TestLibraryEventHandler(unittest.TestCase):
    def _scheduled(self, event):
        handler = _LibraryEventHandler(mock.Mock(), debounce=60)
        with mock.patch.object(handler, '_schedule') as schedule:
            handler.on_any_event(event)
        return schedule.called

    def test_changes_to_audio_and_art_schedule_a_rescan(self):
        for event in (
            FileCreatedEvent('/lib/a.mp3'),
            FileModifiedEvent('/lib/cover.png'),
            FileDeletedEvent('/lib/b.FLAC'),
            FileMovedEvent('/lib/c.part', '/lib/c.opus'),
        ):
            with self.subTest(event=event):
                self.assertTrue(self._scheduled(event))

    def test_irrelevant_events_are_ignored(self):
        for event in (
            FileCreatedEvent('/lib/notes.txt'),
            FileCreatedEvent('/lib/cover.Jpg'),
            DirCreatedEvent('/lib/New Album'),
            SimpleNamespace(event_type='opened', src_path='/lib/a.mp3', is_directory=False),
            SimpleNamespace(event_type='closed', src_path='/lib/a.mp3', is_directory=False),
            SimpleNamespace(event_type='closed_no_write', src_path='/lib/a.mp3', is_directory=False),
        ):
            with self.subTest(event=event):
                self.assertFalse(self._scheduled(event))

    def test_bursts_are_debounced(self):
        fired = threading.Event()
        trigger = mock.Mock(side_effect=fired.set)
        handler = _LibraryEventHandler(trigger, debounce=0.05)

        handler.on_any_event(FileCreatedEvent('/lib/a.mp3'))
        handler.on_any_event(FileModifiedEvent('/lib/a.mp3'))

        self.assertTrue(fired.wait(5))
        self.assertEqual(trigger.call_count, 1)


if __name__ == '__main__':
    unittest.main()
