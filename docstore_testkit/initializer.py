"""Store initialization: connect, build indexes, seed, check for errors.

initialize_store() runs these steps strictly in order, each one seeing the
effects of the previous ones:

    1. Initialize (connect) the store; register the no-stale-queries
       listener when the consistency policy asks for it
    2. Build the index/transformer descriptors, or every definition in the
       index registry when no descriptors were given
    3. Seed the store, but only if it holds no documents yet, then wait for
       the indexes to catch up
    4. Fail if the store reports server errors (or log them, when errors
       are downgraded to warnings)
    5. Emit a summary of the resulting store

Nothing is rolled back when a step fails. The store is left as the
completed steps made it, and can still be closed.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Iterable

from docstore_testkit.config import STALE_POLL_INTERVAL, HarnessConfig
from docstore_testkit.errors import (
    InvalidIndexDescriptor,
    ServerReportedErrors,
    StaleIndexTimeout,
)
from docstore_testkit.events import EventSink, LoggingEventSink, emit
from docstore_testkit.indexes import invalid_descriptors, is_index_definition
from docstore_testkit.listeners import NoStaleQueriesListener
from docstore_testkit.models import SeedSummary, StoreStatistics
from docstore_testkit.storage.base import DocumentStore


def initialize_store(
    store: DocumentStore,
    config: HarnessConfig,
    sink: EventSink | None = None,
) -> StoreStatistics:
    """Bring a freshly created store to a usable state.

    Args:
        store: The store to initialize. Must not have been initialized
            with a different configuration.
        config: Frozen harness configuration.
        sink: Receives lifecycle events. Defaults to logging.

    Returns:
        Store statistics after initialization.

    Raises:
        ConnectError: The store could not connect (from store.initialize()).
        InvalidIndexDescriptor: A descriptor is neither kind of definition.
        CommitError: Seed data could not be committed.
        StaleIndexTimeout: Indexes did not catch up after seeding.
        ServerReportedErrors: The store reported errors and errors are not
            downgraded to warnings.
    """
    sink = sink or LoggingEventSink()

    store.initialize()
    if config.wait_for_non_stale_results:
        store.register_query_listener(NoStaleQueriesListener())

    build_indexes(store, config, sink)

    if config.seed_data:
        seed_store(
            store,
            config.seed_data,
            sink,
            timeout=config.stale_index_timeout,
            interval=config.stale_poll_interval,
        )

    assert_no_server_errors(store, config.errors_as_warnings, sink)

    stats = store.get_statistics()
    emit(sink, "store.initialized", **stats.to_document())
    return stats


def build_indexes(
    store: DocumentStore, config: HarnessConfig, sink: EventSink
) -> int:
    """Build descriptors, else the registry. Returns how many were built.

    Descriptors are all validated before anything is built, so one bad
    descriptor means no index at all.
    """
    if config.index_descriptors:
        invalid = invalid_descriptors(config.index_descriptors)
        if invalid:
            raise InvalidIndexDescriptor(invalid)
        definitions: Iterable[type] = config.index_descriptors
        source = "descriptors"
    elif config.index_registry is not None and len(config.index_registry):
        definitions = config.index_registry
        source = "registry"
    else:
        emit(sink, "indexes.none")
        return 0

    built = 0
    for definition in definitions:
        if is_index_definition(definition):
            store.build_index(definition)
        else:
            store.build_transformer(definition)
        built += 1
    emit(sink, "indexes.built", source=source, count=built)
    return built


def seed_store(
    store: DocumentStore,
    seed_data: Iterable[Iterable[Any]],
    sink: EventSink | None = None,
    timeout: float = 30.0,
    interval: float = STALE_POLL_INTERVAL,
) -> SeedSummary:
    """Store every seed entity in one commit, if the store is empty.

    Entities are stored collection by collection, in iteration order. A
    store that already holds any document is left untouched; this is a
    best-effort check, not a guard against concurrent seeders.
    """
    sink = sink or LoggingEventSink()
    session = store.open_session()
    try:
        existing = store.get_statistics().document_count
        if existing > 0:
            emit(sink, "seed.skipped", existing_documents=existing)
            return SeedSummary(seeded=False)

        collections: list[tuple[str, int]] = []
        for collection in seed_data:
            count = 0
            entity_type = "Unknown"
            for entity in collection:
                if count == 0:
                    entity_type = type(entity).__name__
                session.store(entity)
                count += 1
            collections.append((entity_type, count))
            emit(sink, "seed.collection", entity_type=entity_type, count=count)

        session.commit()
        summary = SeedSummary(seeded=True, collections=tuple(collections))
        emit(sink, "seed.committed", **summary.to_document())
    finally:
        session.close()

    wait_for_non_stale_indexes(store, timeout=timeout, interval=interval, sink=sink)
    return summary


def wait_for_non_stale_indexes(
    store: DocumentStore,
    timeout: float = 30.0,
    interval: float = STALE_POLL_INTERVAL,
    sink: EventSink | None = None,
) -> None:
    """Poll statistics at a fixed interval until no index is stale.

    Raises:
        StaleIndexTimeout: Indexes were still stale after ``timeout`` seconds.
    """
    deadline = time.monotonic() + timeout
    waited = False
    while True:
        stale = store.get_statistics().stale_indexes
        if not stale:
            break
        if time.monotonic() >= deadline:
            raise StaleIndexTimeout(stale, timeout)
        if not waited and sink is not None:
            emit(sink, "indexes.waiting", level=logging.DEBUG, stale=list(stale))
        waited = True
        time.sleep(interval)


def assert_no_server_errors(
    store: DocumentStore,
    errors_as_warnings: bool = False,
    sink: EventSink | None = None,
) -> None:
    """Raise ServerReportedErrors if the store reports any errors.

    With ``errors_as_warnings`` the errors are reported as a warning
    event instead.
    """
    errors = store.get_statistics().errors
    if not errors:
        return

    if not errors_as_warnings:
        raise ServerReportedErrors(errors)

    emit(
        sink or LoggingEventSink(),
        "server_errors.ignored",
        level=logging.WARNING,
        errors=[error.format() for error in errors],
    )
