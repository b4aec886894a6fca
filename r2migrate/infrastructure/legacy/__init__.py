"""
Legacy asset hosting integration.

Downloads the original video and thumbnail files that are being moved
into the new object store.
"""

from .client import LegacySourceClient, SourcePayload

__all__ = ["LegacySourceClient", "SourcePayload"]
