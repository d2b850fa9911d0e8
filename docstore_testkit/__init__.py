"""Lazily initialized, seeded document stores for integration tests."""

from docstore_testkit.config import ConnectionSettings, load_connection_settings
from docstore_testkit.errors import (
    CommitError,
    ConfigurationLocked,
    ConnectError,
    HarnessDisposed,
    HarnessError,
    InvalidIndexDescriptor,
    ReentrantConstruction,
    ServerReportedErrors,
    StaleIndexTimeout,
    StoreClosedError,
)
from docstore_testkit.harness import DocumentStoreHarness, HarnessState
from docstore_testkit.indexes import (
    IndexDefinition,
    IndexRegistry,
    TransformerDefinition,
)
from docstore_testkit.initializer import (
    assert_no_server_errors,
    initialize_store,
    wait_for_non_stale_indexes,
)
from docstore_testkit.listeners import NoStaleQueriesListener

__all__ = [
    "CommitError",
    "ConfigurationLocked",
    "ConnectError",
    "ConnectionSettings",
    "DocumentStoreHarness",
    "HarnessDisposed",
    "HarnessError",
    "HarnessState",
    "IndexDefinition",
    "IndexRegistry",
    "InvalidIndexDescriptor",
    "NoStaleQueriesListener",
    "ReentrantConstruction",
    "ServerReportedErrors",
    "StaleIndexTimeout",
    "StoreClosedError",
    "TransformerDefinition",
    "assert_no_server_errors",
    "initialize_store",
    "load_connection_settings",
    "wait_for_non_stale_indexes",
]
