"""Typed exceptions for score-tracking operations.

Everything raised on purpose by the tally core derives from TallyError.
The mutation API in tally.service catches TallyError at its boundary and
turns it into a notification plus a falsy return value.
"""


class TallyError(Exception):
    """Base exception for expected, user-reportable failures."""

    title = "Error"


class InvalidInputError(TallyError):
    """Rejected command input: empty name, duplicate name, unknown player, etc."""


class GameNotFoundError(TallyError):
    """No game with the requested id or join code."""

    title = "Game not found"


class RoundNotFoundError(TallyError):
    """The game exists but has no round with the requested id."""

    title = "Round not found"


class CodeExhaustedError(TallyError):
    """No free join code could be drawn."""

    title = "Could not create game code"


class ImportFormatError(TallyError):
    """Import payload is structurally invalid; nothing was applied."""

    title = "Import failed"


class RemoteSyncError(TallyError):
    """A remote read or write failed.

    Attributes:
        operation: Name of the repository operation (e.g. "save_all").
        failures: Per-step error messages when several steps were attempted.

    """

    title = "Sync failed"

    def __init__(self, operation: str, message: str, failures: list[str] | None = None) -> None:
        self.operation = operation
        self.failures = failures or []
        super().__init__(f"{operation}: {message}")
