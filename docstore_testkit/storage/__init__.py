"""Document store backends and the factory the harness uses to pick one."""

from __future__ import annotations

from docstore_testkit.config import ConnectionSettings
from docstore_testkit.storage.base import DocumentSession, DocumentStore
from docstore_testkit.storage.memory_store import MemoryDocumentStore
from docstore_testkit.storage.mongo_store import MongoDocumentStore

__all__ = [
    "DocumentSession",
    "DocumentStore",
    "MemoryDocumentStore",
    "MongoDocumentStore",
    "create_store",
]


def create_store(settings: ConnectionSettings | None) -> DocumentStore:
    """In-memory store when settings is None, MongoDB otherwise."""
    if settings is None:
        return MemoryDocumentStore()
    return MongoDocumentStore(settings)
