"""Query listeners.

A store calls every registered listener before it executes a query,
passing a QueryCustomization the listener may adjust.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass
class QueryCustomization:
    """Per-query options a listener may change before execution."""

    wait_for_non_stale_results: bool = False

    def wait_for_non_stale(self) -> None:
        self.wait_for_non_stale_results = True


class QueryListener(Protocol):
    def before_query_executed(self, customization: QueryCustomization) -> None:
        ...


class NoStaleQueriesListener:
    """Forces every query to wait for non-stale results.

    Meant for tests only: in production this trades latency for a
    consistency guarantee nobody asked for.
    """

    def before_query_executed(self, customization: QueryCustomization) -> None:
        customization.wait_for_non_stale()
