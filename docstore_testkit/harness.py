"""Lazily constructed document store with named sessions, for tests.

A DocumentStoreHarness is configured first and used second. Nothing is
created until the store (or a session) is first asked for; at that
moment the configuration is frozen, the store is created and initialized
exactly once, and from then on every configuration write fails::

    harness = DocumentStoreHarness()
    harness.seed_data = [users]
    harness.index_descriptors = [Users_Search]

    session = harness.default_session        # store built here
    other = harness.session("other")         # same store, second session
    harness.close()                          # asserts no server errors

Construction is single-flight: threads that ask for the store while it is
being built wait for that one construction and then share its store, or
its exception.
"""

from __future__ import annotations

import enum
import logging
import threading
from types import TracebackType
from typing import Any, Callable, Iterable

from docstore_testkit.config import (
    DEFAULT_STALE_INDEX_TIMEOUT,
    ConnectionSettings,
    HarnessConfig,
    freeze_seed_data,
)
from docstore_testkit.errors import (
    ConfigurationLocked,
    HarnessDisposed,
    ReentrantConstruction,
)
from docstore_testkit.events import EventSink, LoggingEventSink, emit
from docstore_testkit.indexes import IndexRegistry
from docstore_testkit.initializer import assert_no_server_errors, initialize_store
from docstore_testkit.models import StoreStatistics
from docstore_testkit.storage import create_store
from docstore_testkit.storage.base import DocumentSession, DocumentStore

DEFAULT_SESSION_KEY = "default"

StoreFactory = Callable[[ConnectionSettings | None], DocumentStore]


class HarnessState(enum.Enum):
    UNCONSTRUCTED = "unconstructed"
    CONSTRUCTING = "constructing"
    READY = "ready"
    FAILED = "failed"
    DISPOSED = "disposed"


class DocumentStoreHarness:
    """Owns one document store and the sessions opened against it.

    Args:
        store_factory: Creates the (uninitialized) store from the
            connection settings. Defaults to in-memory/MongoDB selection.
        sink: Receives lifecycle events. Defaults to logging.

    The remaining keyword arguments set the configuration properties of
    the same name.
    """

    def __init__(
        self,
        store_factory: StoreFactory = create_store,
        sink: EventSink | None = None,
        *,
        seed_data: Iterable[Iterable[Any]] | None = None,
        index_descriptors: Iterable[type] = (),
        index_registry: IndexRegistry | None = None,
        connection_settings: ConnectionSettings | None = None,
        wait_for_non_stale_results: bool = True,
        errors_as_warnings: bool = False,
        stale_index_timeout: float = DEFAULT_STALE_INDEX_TIMEOUT,
    ) -> None:
        self._store_factory = store_factory
        self._sink = sink or LoggingEventSink()
        self._lock = threading.Lock()
        self._sessions_lock = threading.Lock()
        self._state = HarnessState.UNCONSTRUCTED
        self._store: DocumentStore | None = None
        self._config: HarnessConfig | None = None
        self._error: Exception | None = None
        self._error_traceback: TracebackType | None = None
        self._constructing_thread: int | None = None
        self._sessions: dict[str, DocumentSession] = {}
        self.statistics: StoreStatistics | None = None

        self._seed_data = seed_data
        self._index_descriptors = tuple(index_descriptors)
        self._index_registry = index_registry
        self._connection_settings = connection_settings
        self._wait_for_non_stale_results = wait_for_non_stale_results
        self._errors_as_warnings = errors_as_warnings
        self._stale_index_timeout = stale_index_timeout

    def __enter__(self) -> DocumentStoreHarness:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def state(self) -> HarnessState:
        return self._state

    # Configuration. Writable only until the store is constructed.

    def _set(self, field: str, value: Any) -> None:
        if self._constructing_thread == threading.get_ident():
            raise ConfigurationLocked(field)
        with self._lock:
            if self._state is not HarnessState.UNCONSTRUCTED:
                raise ConfigurationLocked(field)
            setattr(self, f"_{field}", value)

    @property
    def seed_data(self) -> Iterable[Iterable[Any]] | None:
        return self._seed_data

    @seed_data.setter
    def seed_data(self, value: Iterable[Iterable[Any]] | None) -> None:
        self._set("seed_data", value)

    @property
    def index_descriptors(self) -> tuple[type, ...]:
        return self._index_descriptors

    @index_descriptors.setter
    def index_descriptors(self, value: Iterable[type] | None) -> None:
        self._set("index_descriptors", tuple(value or ()))

    @property
    def index_registry(self) -> IndexRegistry | None:
        return self._index_registry

    @index_registry.setter
    def index_registry(self, value: IndexRegistry | None) -> None:
        self._set("index_registry", value)

    @property
    def connection_settings(self) -> ConnectionSettings | None:
        return self._connection_settings

    @connection_settings.setter
    def connection_settings(self, value: ConnectionSettings | None) -> None:
        self._set("connection_settings", value)

    @property
    def wait_for_non_stale_results(self) -> bool:
        return self._wait_for_non_stale_results

    @wait_for_non_stale_results.setter
    def wait_for_non_stale_results(self, value: bool) -> None:
        self._set("wait_for_non_stale_results", value)

    @property
    def errors_as_warnings(self) -> bool:
        return self._errors_as_warnings

    @errors_as_warnings.setter
    def errors_as_warnings(self, value: bool) -> None:
        self._set("errors_as_warnings", value)

    @property
    def stale_index_timeout(self) -> float:
        return self._stale_index_timeout

    @stale_index_timeout.setter
    def stale_index_timeout(self, value: float) -> None:
        self._set("stale_index_timeout", value)

    # Store and sessions.

    @property
    def store(self) -> DocumentStore:
        return self.get_store()

    def get_store(self) -> DocumentStore:
        """Return the store, creating and initializing it on first use.

        Raises:
            HarnessDisposed: The harness has been closed.
            ReentrantConstruction: Called from the store factory or from
                initialization, on the thread that is constructing.
            Exception: Whatever the one construction attempt raised; it is
                raised again on every later call.
        """
        if self._constructing_thread == threading.get_ident():
            raise ReentrantConstruction()
        with self._lock:
            if self._state is HarnessState.READY:
                return self._store
            if self._state is HarnessState.DISPOSED:
                raise HarnessDisposed()
            if self._state is HarnessState.FAILED:
                raise self._error.with_traceback(self._error_traceback)

            self._state = HarnessState.CONSTRUCTING
            self._config = self._snapshot()
            emit(
                self._sink,
                "store.constructing",
                database=self._config.database,
                in_memory=self._config.connection_settings is None,
            )
            self._constructing_thread = threading.get_ident()
            try:
                self._store = self._store_factory(self._config.connection_settings)
                self.statistics = initialize_store(
                    self._store, self._config, self._sink
                )
            except Exception as exc:
                self._state = HarnessState.FAILED
                self._error = exc
                self._error_traceback = exc.__traceback__
                emit(
                    self._sink,
                    "store.failed",
                    level=logging.ERROR,
                    error=f"{type(exc).__name__}: {exc}",
                )
                raise
            finally:
                self._constructing_thread = None

            self._state = HarnessState.READY
            return self._store

    def session(self, key: str = DEFAULT_SESSION_KEY) -> DocumentSession:
        """Return the session for ``key``, opening it on first use."""
        store = self.get_store()
        with self._sessions_lock:
            if key not in self._sessions:
                self._sessions[key] = store.open_session()
                emit(self._sink, "session.opened", key=key, level=logging.DEBUG)
            return self._sessions[key]

    @property
    def default_session(self) -> DocumentSession:
        return self.session(DEFAULT_SESSION_KEY)

    def close(self) -> None:
        """Assert no server errors, close every session, close the store.

        A harness that was never used just becomes disposed. Every session
        close is attempted even when one fails, and the store is closed
        either way; the first failure (server errors first) is raised
        once everything has been released.
        """
        if self._constructing_thread == threading.get_ident():
            raise ReentrantConstruction()
        with self._lock:
            state = self._state
            if state is HarnessState.DISPOSED:
                return
            self._state = HarnessState.DISPOSED

        if state is HarnessState.UNCONSTRUCTED:
            emit(self._sink, "harness.closed", constructed=False)
            return

        first_error: Exception | None = None
        if state is HarnessState.READY:
            try:
                assert_no_server_errors(
                    self._store, self._config.errors_as_warnings, self._sink
                )
            except Exception as exc:
                first_error = exc

        with self._sessions_lock:
            sessions = list(self._sessions.items())
            self._sessions.clear()

        for key, session in sessions:
            try:
                session.close()
            except Exception as exc:
                emit(
                    self._sink,
                    "session.close_failed",
                    level=logging.WARNING,
                    key=key,
                    error=str(exc),
                )
                if first_error is None:
                    first_error = exc

        if self._store is not None:
            try:
                self._store.close()
            except Exception as exc:
                if first_error is None:
                    first_error = exc

        emit(self._sink, "harness.closed", constructed=True, sessions=len(sessions))
        if first_error is not None:
            raise first_error

    def _snapshot(self) -> HarnessConfig:
        return HarnessConfig(
            seed_data=freeze_seed_data(self._seed_data),
            index_descriptors=self._index_descriptors,
            index_registry=self._index_registry,
            connection_settings=self._connection_settings,
            wait_for_non_stale_results=self._wait_for_non_stale_results,
            errors_as_warnings=self._errors_as_warnings,
            stale_index_timeout=self._stale_index_timeout,
        )
