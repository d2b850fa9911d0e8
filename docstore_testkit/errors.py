"""Exceptions raised by the harness, the initializer and the backends.

None of these are retried. They surface synchronously from the call that
detected them; the only exception that can be downgraded is
ServerReportedErrors, when a harness is told to treat server errors as
warnings.
"""

from __future__ import annotations

from typing import Iterable

from docstore_testkit.models import ServerError


class HarnessError(Exception):
    """Base class for all docstore_testkit errors."""


class ConfigurationLocked(HarnessError):
    """A configuration field was set after the store was constructed."""

    def __init__(self, field: str) -> None:
        self.field = field
        super().__init__(
            f"Cannot set '{field}': the document store has already been "
            "created. Configure the harness before first use."
        )


class InvalidIndexDescriptor(HarnessError):
    """One or more descriptors are neither an index nor a transformer."""

    def __init__(self, descriptors: Iterable[object]) -> None:
        self.descriptors = tuple(descriptors)
        names = ", ".join(_describe(d) for d in self.descriptors)
        super().__init__(
            "Every index descriptor must be an IndexDefinition or "
            f"TransformerDefinition subclass. Invalid: {names}"
        )


class ConnectError(HarnessError):
    """The backing store could not be initialized or reached."""


class CommitError(HarnessError):
    """A session failed to commit its pending changes."""


class StoreClosedError(HarnessError):
    """An operation was attempted on a closed store or session."""


class HarnessDisposed(HarnessError):
    """The harness was used after close()."""

    def __init__(self) -> None:
        super().__init__("The document store harness has been closed")


class ReentrantConstruction(HarnessError):
    """The store factory or initialization called back into its own harness."""

    def __init__(self) -> None:
        super().__init__(
            "The document store harness was used while it was constructing "
            "its store. Store factories and index definitions must not call "
            "back into the harness."
        )


class StaleIndexTimeout(HarnessError):
    """Indexes were still stale when the wait timed out."""

    def __init__(self, stale_indexes: Iterable[str], timeout: float) -> None:
        self.stale_indexes = tuple(stale_indexes)
        self.timeout = timeout
        super().__init__(
            f"Indexes still stale after {timeout:.2f}s: "
            + ", ".join(self.stale_indexes)
        )


class ServerReportedErrors(HarnessError):
    """The store reported document or index errors."""

    def __init__(self, errors: Iterable[ServerError]) -> None:
        self.errors = tuple(errors)
        self.lines = tuple(error.format() for error in self.errors)
        super().__init__(
            f"Document store reported {len(self.errors)} error(s):\n"
            + "\n".join(self.lines)
        )


def _describe(descriptor: object) -> str:
    if isinstance(descriptor, type):
        return f"{descriptor.__module__}.{descriptor.__qualname__}"
    return repr(descriptor)
