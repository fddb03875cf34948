"""Error taxonomy for the linking pass.

Every store failure aborts the whole pass; nothing is retried here.
An unmatched record is not an error and has no exception type.
"""

from __future__ import annotations


class LinkerError(Exception):
    """Base class for linking pass failures."""


class LinkingPassAbortedError(LinkerError):
    """Raised when the store rejects part of the pass and it is rolled back.

    Attributes:
        pass_id: Identifier of the aborted pass.
        original_error: The underlying store exception.
    """

    def __init__(self, pass_id: str, original_error: Exception) -> None:
        self.pass_id = pass_id
        self.original_error = original_error
        super().__init__(
            f"Linking pass {pass_id} aborted and rolled back: {original_error}"
        )


class StoreUnavailableError(LinkingPassAbortedError):
    """Raised when the store connection or transaction cannot be used."""


class LinkingPassBusyError(LinkerError):
    """Raised when another linking pass holds the pass lock."""

    def __init__(self, lock_key: int) -> None:
        self.lock_key = lock_key
        super().__init__(
            f"Another linking pass holds advisory lock {lock_key}; try again later"
        )


class LinkOrderError(RuntimeError):
    """Raised when deals are linked before contacts in the same pass."""
