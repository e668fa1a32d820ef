"""
fssync
- Watches a directory tree with inotify and mirrors it to a destination with rsync.
- Only allow-listed paths (and their descendants) trigger a sync.
- Bursts of changes are debounced into a single rsync run; never two at once.
"""

__version__ = "1.0.0"
