#!/usr/bin/env python3
"""Synchronize one vpath with its directory and exit.

The job configuration is the last command line argument, as JSON::

    python sync_job.py '{"vpath": "metal", "directory": "/music/metal",
                         "dbPath": "mongodb://localhost:27017/songshelf",
                         "pause": 500, "saveInterval": 1000, "skipImg": false,
                         "albumArtDirectory": "/var/lib/songshelf/album-art"}'

Exits 0 when the pass completes and 1 when the configuration cannot be
parsed or the catalog store cannot be opened.
"""
from __future__ import annotations

import json
import logging
import os
import sys
from typing import List, Optional

import schema
from catalog_store import StoreOpenError
from library_scanner import ScanJob
from library_sync import LibrarySync


LOGGER = logging.getLogger(__name__)


class JobConfigError(Exception):
    pass


def parse_job(argv: List[str]) -> ScanJob:
    if not argv:
        raise JobConfigError('missing JSON job configuration')
    try:
        payload = json.loads(argv[-1])
    except ValueError as exc:
        raise JobConfigError('invalid JSON: %s' % exc) from exc
    if not schema.validate(payload, schema.scan_job):
        raise JobConfigError('; '.join(schema.describe_errors(payload, schema.scan_job)))
    return ScanJob.from_payload(payload)


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(
        level=os.environ.get('SONGSHELF_LOG_LEVEL', 'INFO').upper(),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )
    if argv is None:
        argv = sys.argv[1:]

    try:
        job = parse_job(argv)
    except JobConfigError as exc:
        LOGGER.error('Failed to parse JSON input: %s', exc)
        return 1

    try:
        summary = LibrarySync(job).sync()
    except StoreOpenError as exc:
        LOGGER.error('Failed to load database: %s', exc)
        return 1

    LOGGER.info('Sync of vpath %s finished: %s', job.vpath, summary)
    return 0


if __name__ == '__main__':
    sys.exit(main())
