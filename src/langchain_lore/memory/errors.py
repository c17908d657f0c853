"""
Error types raised inside the memory engine.

None of these reach the prompt-assembly host: the engine's public entry
points catch them and degrade to "no memory available".
"""


class MemoryEngineError(Exception):
    """Base class for memory engine errors."""


class TransientProviderError(MemoryEngineError):
    """The completion provider failed or returned empty text."""

    def __init__(self, message: str, attempt: int = 0, fallback: bool = False):
        super().__init__(message)
        self.attempt = attempt
        self.fallback = fallback


class RecordValidationError(MemoryEngineError):
    """A persisted record failed shape or hash checks."""

    def __init__(self, message: str, index: int | None = None):
        super().__init__(message)
        self.index = index


class StuckStateError(MemoryEngineError):
    """The queue busy flag is set but no work is in progress."""
