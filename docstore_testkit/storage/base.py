"""Protocols every document store backend implements.

The harness and the initializer only talk to a store through these two
protocols, so a test can hand the harness any object that satisfies
them (a MagicMock included).
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from docstore_testkit.listeners import QueryListener
from docstore_testkit.models import StoreStatistics


@runtime_checkable
class DocumentSession(Protocol):
    """A unit of work against one database of a store."""

    def store(self, entity: Any) -> str:
        """Track an entity for the next commit; assigns its id if missing."""
        ...

    def commit(self) -> None:
        """Write every tracked entity as one batch. Raises CommitError."""
        ...

    def load(self, entity_type: type, doc_id: str) -> Any | None:
        ...

    def query(
        self,
        entity_type: type | None = None,
        index: type | None = None,
        transformer: type | None = None,
        **filters: Any,
    ) -> list[Any]:
        ...

    def close(self) -> None:
        ...


@runtime_checkable
class DocumentStore(Protocol):
    """A connection to a document database."""

    def initialize(self) -> None:
        """Connect. Raises ConnectError."""
        ...

    def build_index(self, definition: type) -> None:
        """Build an index definition. Building it again is a no-op."""
        ...

    def build_transformer(self, definition: type) -> None:
        ...

    def open_session(self, database: str | None = None) -> DocumentSession:
        ...

    def get_statistics(self) -> StoreStatistics:
        ...

    def register_query_listener(self, listener: QueryListener) -> None:
        ...

    def close(self) -> None:
        ...
