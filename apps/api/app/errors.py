from __future__ import annotations


class MessageValidationError(ValueError):
    """Raised when a send request cannot enter the queue."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors) if errors else "invalid message")
        self.errors = errors


class OptOutLookupError(RuntimeError):
    """The opt-out registry could not answer; callers must treat the number as blocked."""
