"""pytest integration.

Registered through the ``pytest11`` entry point, so installing the
package makes the ``docstore_harness`` fixture available everywhere::

    def test_users_are_seeded(docstore_harness):
        docstore_harness.seed_data = [make_users()]
        users = docstore_harness.default_session.query(User)
        assert len(users) == 4

The fixture reads DOCSTORE_TESTKIT_URL / DOCSTORE_TESTKIT_DATABASE, so a
suite can be pointed at a real MongoDB without code changes. Teardown
closes the harness, which fails the test if the store reported errors.
"""

from __future__ import annotations

from typing import Iterator

import pytest

from docstore_testkit.config import load_connection_settings
from docstore_testkit.harness import DocumentStoreHarness
from docstore_testkit.logging_setup import configure_logging


def pytest_addoption(parser: pytest.Parser) -> None:
    group = parser.getgroup("docstore-testkit")
    group.addoption(
        "--docstore-json-logs",
        action="store_true",
        default=False,
        help="Emit docstore-testkit logs as single-line JSON.",
    )


def pytest_configure(config: pytest.Config) -> None:
    if config.getoption("--docstore-json-logs"):
        configure_logging()


@pytest.fixture
def docstore_harness() -> Iterator[DocumentStoreHarness]:
    """A fresh, unconfigured harness, closed after the test."""
    harness = DocumentStoreHarness(connection_settings=load_connection_settings())
    yield harness
    harness.close()
