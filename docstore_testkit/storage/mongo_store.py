"""MongoDB document store backend.

Used when a harness is given ConnectionSettings, typically to look at
what a test actually stored. Maps the document store operations onto
MongoDB:

- each entity collection is a MongoDB collection, keyed by "_id" = "Users/1"
- identity counters live in the "@identities" collection and are bumped
  atomically with find_one_and_update, so ids stay sequential across
  sessions and processes
- index definitions with ``fields`` become named secondary indexes;
  definitions with a ``pipeline`` become read-only views
- commit sends one bulk_write of upserting ReplaceOnes per collection

MongoDB indexes are maintained synchronously, so this backend never
reports stale indexes, and it has no notion of per-document index errors.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any

from pymongo import ASCENDING, IndexModel, MongoClient, ReplaceOne, ReturnDocument
from pymongo.database import Database
from pymongo.errors import PyMongoError

from docstore_testkit.config import ConnectionSettings
from docstore_testkit.conventions import (
    IDENTITY_PREFIX,
    collection_name,
    document_id,
    from_document,
    id_sort_key,
    to_document,
)
from docstore_testkit.errors import CommitError, ConnectError, StoreClosedError
from docstore_testkit.indexes import IndexDefinition, TransformerDefinition
from docstore_testkit.listeners import QueryCustomization, QueryListener
from docstore_testkit.models import StoreStatistics

logger = logging.getLogger(__name__)

IDENTITIES_COLLECTION = IDENTITY_PREFIX.rstrip("/")
SERVER_SELECTION_TIMEOUT_MS = 5000


class MongoDocumentStore:
    """Document store backed by a MongoDB server.

    Args:
        settings: Connection URL and database name.
        max_pool_size: Connection pool size for the MongoClient.
    """

    def __init__(self, settings: ConnectionSettings, max_pool_size: int = 10) -> None:
        self.settings = settings
        self.database = settings.database
        self._max_pool_size = max_pool_size
        self._client: MongoClient | None = None
        self._transformers: dict[str, TransformerDefinition] = {}
        self._listeners: list[QueryListener] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def initialize(self) -> None:
        """Create the MongoClient and check the server answers a ping.

        Raises:
            ConnectError: If the server can't be reached.
        """
        if self._closed:
            raise ConnectError("Cannot initialize a closed store")
        if self._client is not None:
            return

        logger.info("Creating new MongoDB connection for '%s'", self.database)
        client = MongoClient(
            self.settings.url,
            maxPoolSize=self._max_pool_size,
            serverSelectionTimeoutMS=SERVER_SELECTION_TIMEOUT_MS,
        )
        try:
            client.admin.command("ping")
        except PyMongoError as exc:
            client.close()
            raise ConnectError(f"Could not connect to MongoDB: {exc}") from exc
        self._client = client

    def build_index(self, definition: type[IndexDefinition]) -> None:
        """Create the index or view for a definition. Safe to repeat."""
        db = self._db()
        name = definition.index_name()
        source = definition.source_collection()
        if source is None:
            raise ValueError(
                f"Index {name} must declare an entity_type or collection "
                "to be built on MongoDB"
            )

        if definition.pipeline is not None:
            if name not in db.list_collection_names():
                db.create_collection(
                    name, viewOn=source, pipeline=definition.pipeline
                )
            logger.info("Ensured view %s on %s", name, source)
        elif definition.fields:
            model = IndexModel(
                [(f, ASCENDING) for f in definition.fields], name=name
            )
            db[source].create_indexes([model])
            logger.info("Ensured index %s on %s", name, source)
        else:
            raise ValueError(
                f"Index {name} declares neither fields nor a pipeline; "
                "MongoDB can't build it"
            )

    def build_transformer(self, definition: type[TransformerDefinition]) -> None:
        """Transformers run client-side; building one just registers it."""
        self._db()
        self._transformers.setdefault(definition.transformer_name(), definition())

    def open_session(self, database: str | None = None) -> MongoDocumentSession:
        client = self._require_client()
        return MongoDocumentSession(self, client[database or self.database])

    def get_statistics(self) -> StoreStatistics:
        db = self._db()
        document_count = 0
        index_count = 0
        for info in db.list_collections():
            name = info["name"]
            if name.startswith("system."):
                continue
            if info.get("type") == "view":
                index_count += 1
                continue
            document_count += db[name].count_documents({})
            index_count += sum(
                1 for ix in db[name].list_indexes() if ix["name"] != "_id_"
            )
        return StoreStatistics(
            database=self.database,
            document_count=document_count,
            index_count=index_count,
        )

    def register_query_listener(self, listener: QueryListener) -> None:
        self._listeners.append(listener)

    def close(self) -> None:
        """Close the client. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        if self._client is not None:
            self._client.close()
            self._client = None
            logger.info("MongoDB connection closed")

    def _require_client(self) -> MongoClient:
        if self._closed:
            raise StoreClosedError("The document store has been closed")
        if self._client is None:
            raise ConnectError("The document store has not been initialized")
        return self._client

    def _db(self) -> Database:
        return self._require_client()[self.database]

    def _next_identity(self, db: Database, collection: str) -> str:
        counter = db[IDENTITIES_COLLECTION].find_one_and_update(
            {"_id": collection},
            {"$inc": {"max": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return document_id(collection, counter["max"])

    def _run_query_listeners(self) -> None:
        customization = QueryCustomization()
        for listener in self._listeners:
            listener.before_query_executed(customization)

    def _transformer(self, definition: type[TransformerDefinition]) -> TransformerDefinition:
        name = definition.transformer_name()
        if name not in self._transformers:
            raise LookupError(f"Transformer '{name}' has not been built")
        return self._transformers[name]


class MongoDocumentSession:
    """Unit of work against one MongoDB database."""

    def __init__(self, store: MongoDocumentStore, db: Database) -> None:
        self._store = store
        self._db = db
        self.database = db.name
        self._pending: dict[str, Any] = {}
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def store(self, entity: Any) -> str:
        self._check_open()
        if getattr(entity, "id", None) is None:
            try:
                entity.id = self._store._next_identity(
                    self._db, collection_name(type(entity))
                )
            except PyMongoError as exc:
                raise CommitError(f"Could not allocate an id: {exc}") from exc
        self._pending[entity.id] = entity
        return entity.id

    def commit(self) -> None:
        """Upsert every pending entity, one bulk_write per collection.

        Raises:
            CommitError: If MongoDB rejects the write.
        """
        self._check_open()
        if not self._pending:
            return

        operations: dict[str, list[ReplaceOne]] = defaultdict(list)
        for doc_id, entity in self._pending.items():
            operations[collection_name(type(entity))].append(
                ReplaceOne(
                    {"_id": doc_id},
                    {"_id": doc_id, **to_document(entity)},
                    upsert=True,
                )
            )

        try:
            for collection, ops in operations.items():
                result = self._db[collection].bulk_write(ops, ordered=True)
                logger.info(
                    "Committed %d %s (%d upserted, %d modified)",
                    len(ops),
                    collection,
                    result.upserted_count,
                    result.modified_count,
                )
        except PyMongoError as exc:
            raise CommitError(f"Commit failed: {exc}") from exc
        self._pending.clear()

    def load(self, entity_type: type, doc_id: str) -> Any | None:
        self._check_open()
        if doc_id in self._pending:
            return self._pending[doc_id]
        document = self._db[collection_name(entity_type)].find_one({"_id": doc_id})
        if document is None:
            return None
        return from_document(entity_type, document.pop("_id"), document)

    def query(
        self,
        entity_type: type | None = None,
        index: type[IndexDefinition] | None = None,
        transformer: type[TransformerDefinition] | None = None,
        **filters: Any,
    ) -> list[Any]:
        """Query a collection, an index's collection, or a view.

        Query listeners still run, but MongoDB reads never see stale
        indexes so a wait-for-non-stale request needs no extra work.
        """
        self._check_open()
        if entity_type is None and index is None:
            raise ValueError("query() needs an entity type or an index")
        self._store._run_query_listeners()

        transform = None
        if transformer is not None:
            transform = self._store._transformer(transformer).transform

        if index is not None and index.pipeline is not None:
            results = [
                {"id": row.pop("_id"), **row}
                for row in self._db[index.index_name()].find(filters)
            ]
            if transform is not None:
                return [transform(row) for row in results]
            return results

        if index is not None:
            entity_type = entity_type or index.entity_type
            source = index.source_collection()
        else:
            source = collection_name(entity_type)

        rows = sorted(
            self._db[source].find(filters), key=lambda row: id_sort_key(row["_id"])
        )
        if transform is not None:
            return [transform({"id": row.pop("_id"), **row}) for row in rows]
        if entity_type is None:
            return [{"id": row.pop("_id"), **row} for row in rows]
        return [from_document(entity_type, row.pop("_id"), row) for row in rows]

    def close(self) -> None:
        self._pending.clear()
        self._closed = True

    def _check_open(self) -> None:
        if self._closed:
            raise StoreClosedError("The document session has been closed")
