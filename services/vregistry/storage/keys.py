"""
Key path helpers for object storage.

Provides consistent key naming for all stored blobs.
All keys are relative to the storage backend's root.
"""

import os


def cache_entry_prefix(package_type: str, group_id: int, upstream_id: str) -> str:
    """Prefix shared by every blob cached from one upstream."""
    return f"virtual_registries/{package_type}/{group_id}/upstream/{upstream_id}/cache/entry"


def new_cache_entry_key(package_type: str, group_id: int, upstream_id: str) -> str:
    """A fresh, random key for a newly cached blob.

    Not derived from the relative path: the key is generated once when the
    cache entry row is created and stays frozen for the row's lifetime.
    """
    digest = os.urandom(32).hex()
    prefix = cache_entry_prefix(package_type, group_id, upstream_id)
    return f"{prefix}/{digest[0:2]}/{digest[2:4]}/{digest}"
