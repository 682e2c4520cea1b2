"""
ranchvault - Ranch backup and restore engine

Exports one ranch's records and photo media into a portable, self-describing
archive and restores that archive into a live ranch store.

Key Features:
    - Streaming export: records are paged, photos are spooled one at a time
    - Self-verifying archives with SHA-256 checksums in a JSON manifest
    - Two restore modes: "missing" (additive merge) and "replace" (destructive)
    - Parent links (mother/father) reconciled across two passes
    - Broken or missing photos never block the rest of a restore
    - Per-ranch restore lock and cooperative cancellation

Design Principles:
    - Explicit stores: record and blob stores are injected, never global
    - Bounded memory: nothing loads a whole ranch
    - Validate first: no live data changes until the archive checks out
"""

__version__ = "0.1.0"
__author__ = ""
__email__ = ""

from ranchvault.config.settings import Settings, load_config

__all__ = [
    "__version__",
    "Settings",
    "load_config",
]
