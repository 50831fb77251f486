# Copy this file to config.py and adjust it.

# MongoDB connection; SONGSHELF_MONGO_URI and SONGSHELF_MONGO_DB override these.
MONGO = {
    'uri': 'mongodb://127.0.0.1:27017',
    'database': 'songshelf',
}

# vpath name -> library root directory.
FOLDERS = {
    'music': {'root': '~/Music'},
}

# Single-user mode: this user owns ratings and playlists and sees every vpath.
DEFAULT_USER = 'songshelf-user'

# Sleep between files during a library scan, in milliseconds.
SCAN_PAUSE_MS = 0

# How often buffered catalog inserts are written during a scan, in milliseconds.
SAVE_INTERVAL_MS = 10000

# Do not look for album art in directories or embedded in files.
SKIP_ALBUM_ART = False

# Embedded covers are extracted here when a directory has no image of its own.
ALBUM_ART_DIR = None

# Scan every vpath when the server starts (env: SCAN_ON_START).
SCAN_ON_START = True

# Rescan a vpath when audio or image files under it change (env: ENABLE_LIBRARY_WATCHER).
ENABLE_LIBRARY_WATCHER = True

# Token required by POST /api/admin/scan (env: ADMIN_SCAN_TOKEN).
ADMIN_SCAN_TOKEN = 'change-me'
