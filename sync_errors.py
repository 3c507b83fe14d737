from __future__ import annotations


class WordSyncError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


class ValidationError(WordSyncError):
    """Bad input or a request the current session state cannot accept."""


class DuplicateWordError(WordSyncError):
    def __init__(self, word: str, round_number: int | None = None):
        super().__init__(
            "That word was already used in an earlier round. Try a different word!",
            409,
        )
        self.word = word
        self.round_number = round_number


class TransitionConflict(WordSyncError):
    """A conditional write lost the race to another observer."""

    def __init__(
        self, message: str = "Session state already changed.", status_code: int = 409
    ):
        super().__init__(message, status_code)


class StoreUnavailable(WordSyncError):
    def __init__(
        self,
        message: str = "The session store is unavailable.",
        status_code: int = 503,
    ):
        super().__init__(message, status_code)
