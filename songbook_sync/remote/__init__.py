"""
Remote document store access.

    - client: RemoteStore interface and the Firebase REST implementation
    - parsing: payload normalization and tolerant record parsing
"""

from songbook_sync.remote.client import (
    FirebaseRestStore,
    RemoteStore,
    UnconfiguredRemoteStore,
)
from songbook_sync.remote.parsing import (
    children,
    key_order,
    parse_collections,
    parse_song,
    parse_songs,
    sort_by_number,
)

__all__ = [
    "RemoteStore",
    "FirebaseRestStore",
    "UnconfiguredRemoteStore",
    "children",
    "key_order",
    "parse_collections",
    "parse_song",
    "parse_songs",
    "sort_by_number",
]
