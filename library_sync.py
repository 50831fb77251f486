"""Incremental synchronization of one vpath's catalog with its directory tree."""
from __future__ import annotations

import logging
import time
from typing import Callable, Dict, Optional

from pymongo.errors import PyMongoError

from catalog_store import CatalogStore
from library_scanner import ScanContext, ScanJob, TagReader, extract_metadata, read_tags, scan_directory


LOGGER = logging.getLogger(__name__)


class LibrarySync:
    """Run synchronization passes for a single :class:`ScanJob`.

    A pass opens the store, loads the vpath's entries, walks the directory,
    applies album art updates and deletes, then extracts and inserts new and
    stale files one at a time before saving. Callers must not run two passes
    over the same vpath at once.
    """

    def __init__(
        self,
        job: ScanJob,
        *,
        store: Optional[CatalogStore] = None,
        tag_reader: TagReader = read_tags,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.job = job
        self._store = store
        self._tag_reader = tag_reader
        self._sleep = sleep

    def sync(self) -> Dict[str, object]:
        start_time = time.perf_counter()
        summary = self._sync_impl()
        summary['duration_seconds'] = round(time.perf_counter() - start_time, 3)
        return summary

    def _open_store(self) -> CatalogStore:
        if self._store is None:
            LOGGER.debug('Opening catalog store for vpath %s', self.job.vpath)
            self._store = CatalogStore.open(self.job.store_path, self.job.save_interval_ms)
        return self._store

    def _sync_impl(self) -> Dict[str, object]:
        summary: Dict[str, object] = {
            'found': 0,
            'inserted': 0,
            'updated': 0,
            'deleted': 0,
            'unchanged': 0,
            'errors': 0,
            'saved': True,
        }
        job = self.job

        # checkpoint: store-open (StoreOpenError propagates to the caller)
        store = self._open_store()
        failed_before = store.failed_inserts

        # A missing root scans as empty; its entries are removed below.
        if not job.root_directory.is_dir():
            LOGGER.warning('Library directory %s for vpath %s does not exist', job.root_directory, job.vpath)

        context = ScanContext(job=job)
        for entry in store.entries_for_vpath(job.vpath):
            context.snapshot[entry.filepath] = entry
        LOGGER.info('Loaded %d catalog entries for vpath %s', len(context.snapshot), job.vpath)

        scan_directory(context)
        summary['found'] = context.found
        summary['unchanged'] = context.unchanged
        LOGGER.info(
            'Scan of %s: %d new, %d stale, %d art updates, %d removed',
            job.root_directory,
            len(context.new),
            len(context.stale),
            len(context.art_updates),
            len(context.removed),
        )

        if context.art_updates:
            try:
                summary['updated'] = store.batch_update(context.art_updates)
            except PyMongoError:
                LOGGER.exception('Failed to update album art for vpath %s', job.vpath)
                summary['errors'] += len(context.art_updates)

        for relative_path in context.stale + context.removed:
            try:
                store.delete(job.vpath, relative_path)
            except PyMongoError:
                LOGGER.exception('Failed to delete %s from vpath %s', relative_path, job.vpath)
                summary['errors'] += 1
                continue
            summary['deleted'] += 1

        pending = context.new + context.stale
        for index, relative_path in enumerate(pending):
            # checkpoint: per-file
            if self._ingest(store, context, relative_path):
                summary['inserted'] += 1
            else:
                summary['errors'] += 1
            if job.pause_ms > 0 and index < len(pending) - 1:
                self._sleep(job.pause_ms / 1000.0)

        # checkpoint: store-save
        if not store.save():
            LOGGER.error('Failed to save catalog store for vpath %s', job.vpath)
            summary['saved'] = False

        failed_inserts = store.failed_inserts - failed_before
        summary['inserted'] -= failed_inserts
        summary['errors'] += failed_inserts
        return summary

    def _ingest(self, store: CatalogStore, context: ScanContext, relative_path: str) -> bool:
        path = self.job.root_directory / relative_path
        entry = extract_metadata(path, context, self._tag_reader)
        if entry is None:
            return False
        try:
            store.insert([entry], self.job.vpath)
        except PyMongoError as exc:
            LOGGER.warning('Failed to add file %s to database: %s', path, exc)
            return False
        return True
