"""
Waypost - a local journal of geolocated visits.

Waypost keeps tamper-evident visit records (check-ins) together with a
mutable annotation layer, a small taxonomy of labels, groups and members,
and attached photos. Everything lives in a single SQLite store plus a
directory of photo files, and can be moved between installations as one
portable backup archive.

Key Features:
    - SQLite store with explicit, id-indexed taxonomy relations
    - Versioned ZIP backup archives (manifest + JSON documents + photos)
    - Identity-preserving, batched restore that tolerates bad rows
    - Backward-compatible decoding of archives from older exporters

Design Principles:
    - Integrity records are carried verbatim, never reinterpreted
    - Restore never mutates the store before the archive is validated
    - One writer at a time
"""

__version__ = "0.1.0"
__author__ = ""
__email__ = ""

from waypost.config.settings import Settings, load_config

__all__ = [
    "__version__",
    "Settings",
    "load_config",
]
