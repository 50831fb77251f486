from pathlib import Path
from unittest import mock
import json
import sys
import unittest

sys.path.append(str(Path(__file__).resolve().parents[1]))

import schema
import sync_job
from catalog_store import StoreOpenError


def _payload(**overrides):
    payload = {
        'vpath': 'metal',
        'directory': '/music/metal',
        'dbPath': 'mongodb://localhost:27017/songshelf',
        'pause': 0,
        'saveInterval': 1000,
        'skipImg': False,
    }
    payload.update(overrides)
    return payload


class TestSyncJob(unittest.TestCase):
    def test_parse_job(self):
        job = sync_job.parse_job(['sync_job.py', json.dumps(_payload(pause=200))])
        self.assertEqual(job.vpath, 'metal')
        self.assertEqual(job.root_directory, Path('/music/metal'))
        self.assertEqual(job.store_path, 'mongodb://localhost:27017/songshelf')
        self.assertEqual(job.pause_ms, 200)
        self.assertIsNone(job.album_art_directory)

    def test_invalid_json_exits_1(self):
        with self.assertLogs('sync_job', level='ERROR'):
            self.assertEqual(sync_job.main(['{not json']), 1)

    def test_missing_fields_exit_1(self):
        payload = _payload()
        del payload['dbPath']
        with self.assertLogs('sync_job', level='ERROR'):
            self.assertEqual(sync_job.main([json.dumps(payload)]), 1)

    def test_no_arguments_exit_1(self):
        with self.assertLogs('sync_job', level='ERROR'):
            self.assertEqual(sync_job.main([]), 1)

    def test_store_open_failure_exits_1(self):
        with mock.patch('library_sync.CatalogStore.open', side_effect=StoreOpenError('connection refused')):
            with self.assertLogs('sync_job', level='ERROR'):
                self.assertEqual(sync_job.main([json.dumps(_payload())]), 1)

    def test_completed_pass_exits_0(self):
        with mock.patch('sync_job.LibrarySync') as runner:
            runner.return_value.sync.return_value = {'inserted': 0}
            self.assertEqual(sync_job.main([json.dumps(_payload())]), 0)
        job = runner.call_args[0][0]
        self.assertEqual(job.vpath, 'metal')
        runner.return_value.sync.assert_called_once_with()


class TestSchema(unittest.TestCase):
    def test_scan_job_schema(self):
        self.assertTrue(schema.validate(_payload(), schema.scan_job))
        self.assertTrue(schema.validate(_payload(albumArtDirectory=None, pause=None), schema.scan_job))
        self.assertFalse(schema.validate(_payload(pause=-1), schema.scan_job))
        self.assertFalse(schema.validate(_payload(vpath=''), schema.scan_job))
        self.assertFalse(schema.validate(['not', 'an', 'object'], schema.scan_job))

    def test_describe_errors(self):
        errors = schema.describe_errors({'vpath': 'metal'}, schema.scan_job)
        self.assertEqual(len(errors), 2)
        self.assertTrue(all('is a required property' in error for error in errors))

    def test_request_schemas(self):
        self.assertTrue(schema.validate({'filepath': 'music/a.mp3', 'rating': 7}, schema.rate_song))
        self.assertFalse(schema.validate({'rating': 'seven'}, schema.rate_song))
        self.assertTrue(schema.validate({'ignoreVPaths': {'music': True}}, schema.random_songs))
        self.assertTrue(schema.validate({'ignoreVPaths': ['music']}, schema.random_songs))
        self.assertFalse(schema.validate({'ignoreList': ['a']}, schema.random_songs))
        self.assertFalse(schema.validate({'songs': 'music/a.mp3'}, schema.playlist_save))


if __name__ == '__main__':
    unittest.main()
