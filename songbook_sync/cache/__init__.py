"""
Cache layer: collection cache, change detection and migrations.
"""

from songbook_sync.cache.change_detector import ChangeDetector
from songbook_sync.cache.collection_cache import (
    CACHE_VERSION,
    CacheHit,
    CollectionCache,
    LookupPlan,
    content_hash,
    lookup_plan,
)
from songbook_sync.cache.migration import (
    CURRENT_MIGRATION_VERSION,
    MigrationGate,
    MigrationStep,
)

__all__ = [
    "CACHE_VERSION",
    "CacheHit",
    "CollectionCache",
    "LookupPlan",
    "content_hash",
    "lookup_plan",
    "ChangeDetector",
    "CURRENT_MIGRATION_VERSION",
    "MigrationGate",
    "MigrationStep",
]
