"""DASH Watcher: converts videos dropped into a folder to DASH streams.

Watches a folder for newly-arrived video files and, once each has
finished copying, runs ffmpeg to produce a DASH manifest and segments
in a sibling directory named after the file.
"""

__version__ = "1.0.0"
__app_name__ = "DASH Watcher"
