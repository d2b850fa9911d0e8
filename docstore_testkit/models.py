"""Immutable value objects reported by document stores.

All dataclasses are frozen. Each has a to_document() method producing a
plain dict, which is what gets attached to lifecycle events and logs.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ServerError:
    """A document or index error reported by the store.

    Attributes:
        document_id: Document being processed, if any.
        index_name: Index that failed, if any.
        message: Error text from the store.
    """

    document_id: str | None = None
    index_name: str | None = None
    message: str | None = None

    def format(self) -> str:
        """Render as "Document: ..; Index: ..; Error: .." with placeholders."""
        return "Document: {}; Index: {}; Error: {}".format(
            self.document_id or "No Document Id",
            self.index_name or "No Index",
            self.message or "No Error message",
        )

    def to_document(self) -> dict:
        return {
            "document_id": self.document_id,
            "index_name": self.index_name,
            "message": self.message,
        }


@dataclass(frozen=True)
class StoreStatistics:
    """Point-in-time statistics for one database of a store.

    Attributes:
        database: Database (tenant) name.
        document_count: Stored documents, including identity bookkeeping.
        index_count: Built indexes.
        stale_indexes: Names of indexes behind the latest committed writes.
        errors: Server-reported document/index errors.
    """

    database: str
    document_count: int
    index_count: int
    stale_indexes: tuple[str, ...] = ()
    errors: tuple[ServerError, ...] = ()

    def to_document(self) -> dict:
        """Convert to a summary dict. Errors are rendered as counts only."""
        return {
            "database": self.database,
            "document_count": self.document_count,
            "index_count": self.index_count,
            "stale_index_count": len(self.stale_indexes),
            "error_count": len(self.errors),
        }


@dataclass(frozen=True)
class SeedSummary:
    """Outcome of a seeding attempt.

    Attributes:
        seeded: False when the store already held documents.
        collections: (entity type name, count) per seed collection.
    """

    seeded: bool
    collections: tuple[tuple[str, int], ...] = ()

    @property
    def entity_count(self) -> int:
        return sum(count for _, count in self.collections)

    def to_document(self) -> dict:
        return {
            "seeded": self.seeded,
            "entity_count": self.entity_count,
            "collections": [
                {"entity_type": name, "count": count}
                for name, count in self.collections
            ],
        }
