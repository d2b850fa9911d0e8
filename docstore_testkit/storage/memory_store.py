"""Embedded in-memory document store.

This is the default backend: fast, isolated per harness, and gone when
the harness closes. It behaves enough like a real document database for
integration tests:

- identifiers come from a per-collection identity counter shared by all
  sessions, and each counter is itself stored as a bookkeeping document
  ("@identities/Users") that counts towards the document total
- indexes are (re)computed by a background worker thread, so an index is
  genuinely stale between a commit and the worker catching up
- an exception raised by an index's map or reduce is recorded as a
  ServerError instead of propagating
- queries run every registered listener first and, when asked to, block
  until the indexes are no longer stale
"""

from __future__ import annotations

import copy
import logging
import threading
from typing import Any

from docstore_testkit.config import DEFAULT_DATABASE
from docstore_testkit.conventions import (
    IDENTITY_PREFIX,
    collection_name,
    document_id,
    from_document,
    id_sort_key,
    identity_document_id,
    to_document,
)
from docstore_testkit.errors import (
    CommitError,
    ConnectError,
    StaleIndexTimeout,
    StoreClosedError,
)
from docstore_testkit.indexes import IndexDefinition, TransformerDefinition
from docstore_testkit.listeners import QueryCustomization, QueryListener
from docstore_testkit.models import ServerError, StoreStatistics

logger = logging.getLogger(__name__)

IDENTITIES_COLLECTION = IDENTITY_PREFIX.rstrip("/")
DEFAULT_QUERY_TIMEOUT = 15.0


class _Index:
    def __init__(self, definition_type: type[IndexDefinition]) -> None:
        self.definition_type = definition_type
        self.definition = definition_type()
        self.name = definition_type.index_name()
        self.indexed_etag = -1
        self.entries: list[dict[str, Any]] = []


class _Database:
    """State of one database (tenant). Guarded by the store's condition."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.documents: dict[str, tuple[str, dict[str, Any]]] = {}
        self.identities: dict[str, int] = {}
        self.indexes: dict[str, _Index] = {}
        self.transformers: dict[str, TransformerDefinition] = {}
        self.errors: list[ServerError] = []
        self.etag = 0

    def stale_indexes(self) -> tuple[str, ...]:
        return tuple(
            name
            for name, index in self.indexes.items()
            if index.indexed_etag < self.etag
        )


class MemoryDocumentStore:
    """In-process document store backed by dicts and one indexing thread.

    Args:
        database: Name of the default database.
        indexing_delay: Seconds the indexing worker waits before catching
            up with new writes. Zero indexes as soon as it can.
        query_timeout: Seconds a query waits for non-stale results.
    """

    def __init__(
        self,
        database: str = DEFAULT_DATABASE,
        indexing_delay: float = 0.0,
        query_timeout: float = DEFAULT_QUERY_TIMEOUT,
    ) -> None:
        self.database = database
        self._indexing_delay = indexing_delay
        self._query_timeout = query_timeout
        self._condition = threading.Condition()
        self._stopped = threading.Event()
        self._databases: dict[str, _Database] = {}
        self._listeners: list[QueryListener] = []
        self._worker: threading.Thread | None = None
        self._initialized = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def initialize(self) -> None:
        with self._condition:
            if self._closed:
                raise ConnectError("Cannot initialize a closed store")
            if self._initialized:
                return
            self._get_database(self.database)
            self._worker = threading.Thread(
                target=self._run_indexing,
                name=f"memory-store-indexing-{self.database}",
                daemon=True,
            )
            self._worker.start()
            self._initialized = True
        logger.info("In-memory document store '%s' initialized", self.database)

    def build_index(self, definition: type[IndexDefinition]) -> None:
        with self._condition:
            db = self._require_database(self.database)
            name = definition.index_name()
            if name in db.indexes:
                return
            db.indexes[name] = _Index(definition)
            self._condition.notify_all()
        logger.info("Built index %s", name)

    def build_transformer(self, definition: type[TransformerDefinition]) -> None:
        with self._condition:
            db = self._require_database(self.database)
            name = definition.transformer_name()
            if name in db.transformers:
                return
            db.transformers[name] = definition()
        logger.info("Built transformer %s", name)

    def open_session(self, database: str | None = None) -> MemoryDocumentSession:
        name = database or self.database
        with self._condition:
            self._require_database(name)
        return MemoryDocumentSession(self, name)

    def get_statistics(self, database: str | None = None) -> StoreStatistics:
        with self._condition:
            db = self._require_database(database or self.database)
            return StoreStatistics(
                database=db.name,
                document_count=len(db.documents),
                index_count=len(db.indexes),
                stale_indexes=db.stale_indexes(),
                errors=tuple(db.errors),
            )

    def register_query_listener(self, listener: QueryListener) -> None:
        with self._condition:
            self._listeners.append(listener)

    def close(self) -> None:
        with self._condition:
            if self._closed:
                return
            self._closed = True
            self._stopped.set()
            self._condition.notify_all()
        if self._worker is not None:
            self._worker.join(timeout=5.0)
        logger.info("In-memory document store '%s' closed", self.database)

    # Used by sessions. Callers must hold self._condition.

    def _get_database(self, name: str) -> _Database:
        if name not in self._databases:
            self._databases[name] = _Database(name)
        return self._databases[name]

    def _require_database(self, name: str) -> _Database:
        if self._closed:
            raise StoreClosedError("The document store has been closed")
        if not self._initialized:
            raise ConnectError("The document store has not been initialized")
        return self._get_database(name)

    def _next_identity(self, db: _Database, collection: str) -> str:
        number = db.identities.get(collection, 0) + 1
        db.identities[collection] = number
        db.documents[identity_document_id(collection)] = (
            IDENTITIES_COLLECTION,
            {"collection": collection, "max": number},
        )
        return document_id(collection, number)

    def _before_query(self) -> QueryCustomization:
        customization = QueryCustomization()
        for listener in list(self._listeners):
            listener.before_query_executed(customization)
        return customization

    def _wait_for_non_stale(self, db: _Database) -> None:
        caught_up = self._condition.wait_for(
            lambda: self._closed or not db.stale_indexes(),
            timeout=self._query_timeout,
        )
        if not caught_up:
            raise StaleIndexTimeout(db.stale_indexes(), self._query_timeout)

    # Indexing worker.

    def _has_pending_work(self) -> bool:
        return any(db.stale_indexes() for db in self._databases.values())

    def _run_indexing(self) -> None:
        while True:
            with self._condition:
                self._condition.wait_for(
                    lambda: self._closed or self._has_pending_work()
                )
                if self._closed:
                    return

            if self._indexing_delay and self._stopped.wait(self._indexing_delay):
                return

            with self._condition:
                if self._closed:
                    return
                for db in self._databases.values():
                    for index in db.indexes.values():
                        if index.indexed_etag < db.etag:
                            self._reindex_or_record(db, index)
                self._condition.notify_all()

    def _reindex_or_record(self, db: _Database, index: _Index) -> None:
        # One broken index must not stop the worker; the others keep indexing.
        try:
            self._reindex(db, index)
        except Exception as exc:
            logger.exception("Indexing %s failed", index.name)
            db.errors = [e for e in db.errors if e.index_name != index.name]
            db.errors.append(ServerError(None, index.name, str(exc)))
            index.entries = []
            index.indexed_etag = db.etag

    def _reindex(self, db: _Database, index: _Index) -> None:
        source = index.definition_type.source_collection()
        db.errors = [e for e in db.errors if e.index_name != index.name]

        mapped: list[dict[str, Any]] = []
        for doc_id in sorted(db.documents, key=id_sort_key):
            collection, fields = db.documents[doc_id]
            if collection == IDENTITIES_COLLECTION:
                continue
            if source is not None and collection != source:
                continue
            document = {"id": doc_id, **copy.deepcopy(fields)}
            try:
                entries = [
                    {**entry, "__document_id": doc_id}
                    for entry in index.definition.map(document)
                ]
            except Exception as exc:
                logger.warning(
                    "Index %s failed on %s: %s", index.name, doc_id, exc
                )
                db.errors.append(ServerError(doc_id, index.name, str(exc)))
                continue
            mapped.extend(entries)

        if index.definition_type.is_map_reduce():
            plain = [
                {k: v for k, v in entry.items() if k != "__document_id"}
                for entry in mapped
            ]
            try:
                mapped = [{**result} for result in index.definition.reduce(plain)]
            except Exception as exc:
                logger.warning("Reduce for index %s failed: %s", index.name, exc)
                db.errors.append(ServerError(None, index.name, str(exc)))
                mapped = []

        index.entries = mapped
        index.indexed_etag = db.etag


class MemoryDocumentSession:
    """Unit of work against one database of a MemoryDocumentStore."""

    def __init__(self, store: MemoryDocumentStore, database: str) -> None:
        self._store = store
        self.database = database
        self._pending: dict[str, Any] = {}
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def store(self, entity: Any) -> str:
        self._check_open()
        collection = collection_name(type(entity))
        if getattr(entity, "id", None) is None:
            with self._store._condition:
                db = self._store._require_database(self.database)
                entity.id = self._store._next_identity(db, collection)
        self._pending[entity.id] = entity
        return entity.id

    def commit(self) -> None:
        self._check_open()
        if not self._pending:
            return
        try:
            documents = {
                doc_id: (collection_name(type(entity)), to_document(entity))
                for doc_id, entity in self._pending.items()
            }
        except TypeError as exc:
            raise CommitError(f"Could not serialize pending entities: {exc}") from exc

        with self._store._condition:
            if self._store.closed:
                raise CommitError("Cannot commit: the document store has been closed")
            db = self._store._get_database(self.database)
            db.documents.update(copy.deepcopy(documents))
            db.etag += 1
            self._store._condition.notify_all()

        logger.debug("Committed %d documents to %s", len(documents), self.database)
        self._pending.clear()

    def load(self, entity_type: type, doc_id: str) -> Any | None:
        self._check_open()
        if doc_id in self._pending:
            return self._pending[doc_id]
        with self._store._condition:
            db = self._store._require_database(self.database)
            stored = db.documents.get(doc_id)
            if stored is None:
                return None
            fields = copy.deepcopy(stored[1])
        return from_document(entity_type, doc_id, fields)

    def query(
        self,
        entity_type: type | None = None,
        index: type[IndexDefinition] | None = None,
        transformer: type[TransformerDefinition] | None = None,
        **filters: Any,
    ) -> list[Any]:
        """Query a collection, or an index when ``index`` is given.

        Collection and map-index queries return entities (or plain dicts
        when no entity type is known); map/reduce index queries return the
        reduce results. ``filters`` match fields for equality. A
        transformer, when given, turns every result into its output dict.
        """
        self._check_open()
        if entity_type is None and index is None:
            raise ValueError("query() needs an entity type or an index")

        customization = self._store._before_query()
        with self._store._condition:
            db = self._store._require_database(self.database)
            if customization.wait_for_non_stale_results:
                self._store._wait_for_non_stale(db)

            transform = None
            if transformer is not None:
                name = transformer.transformer_name()
                if name not in db.transformers:
                    raise LookupError(f"Transformer '{name}' has not been built")
                transform = db.transformers[name].transform

            if index is None:
                rows = self._collection_rows(db, collection_name(entity_type), filters)
            else:
                rows, entity_type = self._index_rows(db, index, entity_type, filters)

        if transform is not None:
            return [transform(self._as_dict(row)) for row in rows]
        if entity_type is None:
            return [self._as_dict(row) for row in rows]
        return [
            from_document(entity_type, row[0], row[1]) if isinstance(row, tuple) else row
            for row in rows
        ]

    def close(self) -> None:
        self._pending.clear()
        self._closed = True

    def _check_open(self) -> None:
        if self._closed:
            raise StoreClosedError("The document session has been closed")

    @staticmethod
    def _as_dict(row: Any) -> dict[str, Any]:
        if isinstance(row, tuple):
            return {"id": row[0], **row[1]}
        return row

    @staticmethod
    def _matches(fields: dict[str, Any], filters: dict[str, Any]) -> bool:
        return all(fields.get(key) == value for key, value in filters.items())

    def _collection_rows(
        self, db: _Database, collection: str, filters: dict[str, Any]
    ) -> list[tuple[str, dict[str, Any]]]:
        rows = []
        for doc_id in sorted(db.documents, key=id_sort_key):
            doc_collection, fields = db.documents[doc_id]
            if doc_collection == collection and self._matches(fields, filters):
                rows.append((doc_id, copy.deepcopy(fields)))
        return rows

    def _index_rows(
        self,
        db: _Database,
        index: type[IndexDefinition],
        entity_type: type | None,
        filters: dict[str, Any],
    ) -> tuple[list[Any], type | None]:
        name = index.index_name()
        if name not in db.indexes:
            raise LookupError(f"Index '{name}' has not been built")
        built = db.indexes[name]
        entries = [e for e in built.entries if self._matches(e, filters)]

        if index.is_map_reduce():
            return copy.deepcopy(entries), None

        rows = []
        seen: set[str] = set()
        for entry in entries:
            doc_id = entry["__document_id"]
            if doc_id in seen or doc_id not in db.documents:
                continue
            seen.add(doc_id)
            rows.append((doc_id, copy.deepcopy(db.documents[doc_id][1])))
        return rows, entity_type or index.entity_type
