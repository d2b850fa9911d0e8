"""Configuration for the document store test harness.

Connection settings select the backend: no settings means the embedded
in-memory store, settings with a MongoDB URL mean a real server. The
harness freezes everything it was given into a HarnessConfig snapshot
the moment the store is first constructed.

Settings can also come from environment variables so a CI job can point
an existing test suite at a real server without code changes.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Iterable
from urllib.parse import urlparse

from docstore_testkit.indexes import IndexRegistry

DEFAULT_DATABASE = "UnitTests"
DEFAULT_STALE_INDEX_TIMEOUT = 30.0
STALE_POLL_INTERVAL = 0.05

URL_ENV_VAR = "DOCSTORE_TESTKIT_URL"
DATABASE_ENV_VAR = "DOCSTORE_TESTKIT_DATABASE"

_VALID_SCHEMES = ("mongodb", "mongodb+srv")


@dataclass(frozen=True)
class ConnectionSettings:
    """Where to find an existing document store.

    Rarely used: most tests run against the in-memory store. Pointing a
    test at a real server is handy when you need to look at what was
    actually stored.

    Attributes:
        url: MongoDB connection URL (e.g. "mongodb://localhost:27017").
        database: Database (tenant) name. Blank values fall back to
            "UnitTests".
    """

    url: str
    database: str = DEFAULT_DATABASE

    def __post_init__(self) -> None:
        if not self.url or not self.url.strip():
            raise ValueError("Connection settings require a store url")

        parsed = urlparse(self.url)
        if parsed.scheme not in _VALID_SCHEMES:
            raise ValueError(
                f"Invalid store url scheme: '{parsed.scheme}'. "
                "Expected 'mongodb' or 'mongodb+srv'."
            )

        if not self.database or not self.database.strip():
            object.__setattr__(self, "database", DEFAULT_DATABASE)


@dataclass(frozen=True)
class HarnessConfig:
    """Snapshot of harness configuration observed during initialization.

    Attributes:
        seed_data: Collections of entities stored once into an empty store.
        index_descriptors: Index/transformer definition classes to build.
        index_registry: Used instead of index_descriptors when those are empty.
        connection_settings: None selects the in-memory backend.
        wait_for_non_stale_results: Force every query to wait for indexes.
        errors_as_warnings: Log server errors instead of failing.
        stale_index_timeout: Seconds to wait for indexes after seeding.
        stale_poll_interval: Seconds between stale-index checks.
    """

    seed_data: tuple[tuple[Any, ...], ...] = ()
    index_descriptors: tuple[type, ...] = ()
    index_registry: IndexRegistry | None = None
    connection_settings: ConnectionSettings | None = None
    wait_for_non_stale_results: bool = True
    errors_as_warnings: bool = False
    stale_index_timeout: float = DEFAULT_STALE_INDEX_TIMEOUT
    stale_poll_interval: float = STALE_POLL_INTERVAL

    @property
    def database(self) -> str:
        if self.connection_settings is None:
            return DEFAULT_DATABASE
        return self.connection_settings.database


def freeze_seed_data(
    seed_data: Iterable[Iterable[Any]] | None,
) -> tuple[tuple[Any, ...], ...]:
    """Materialize seed collections so later mutation can't leak in."""
    if not seed_data:
        return ()
    return tuple(tuple(collection) for collection in seed_data)


def load_connection_settings() -> ConnectionSettings | None:
    """Load optional connection settings from environment variables.

    Reads DOCSTORE_TESTKIT_URL and DOCSTORE_TESTKIT_DATABASE. An unset or
    empty URL means "use the in-memory store".

    Returns:
        ConnectionSettings, or None when no URL is configured.

    Raises:
        ValueError: If the URL has an invalid scheme.
    """
    url = os.environ.get(URL_ENV_VAR, "")
    if not url.strip():
        return None

    return ConnectionSettings(
        url=url,
        database=os.environ.get(DATABASE_ENV_VAR, DEFAULT_DATABASE),
    )
