"""
Object storage integration.

Talks to R2 (Cloudflare) or any S3-compatible store with hand-rolled
SigV4 signing over httpx. Includes an in-memory mock for local
development without credentials.
"""

from .client import ObjectStoreClient, StorageConfig, create_object_store_client

__all__ = ["ObjectStoreClient", "StorageConfig", "create_object_store_client"]
