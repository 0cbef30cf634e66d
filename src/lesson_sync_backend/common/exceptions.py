"""
This file contains custom, application-specific exceptions.

NotFoundError, ConflictError and StateError are deterministic: they are
surfaced to the caller immediately and never retried.
TransientStorageError is the only retryable error, and only the cascade
engine and the job processor retry it.
"""

class LessonSyncError(Exception):
    """Base class for all domain errors raised by the core."""
    pass

class NotFoundError(LessonSyncError):
    """Raised when a referenced teacher, student, slot or assignment is absent."""
    pass

class ConflictError(LessonSyncError):
    """Raised on a time overlap or a double booking."""
    pass

class StateError(LessonSyncError):
    """Raised when an operation is invalid for the current state of a record."""
    pass

class TransientStorageError(LessonSyncError):
    """Raised when the storage layer fails in a way that may succeed on retry."""
    pass

class FatalError(LessonSyncError):
    """Raised when the retry budget is exhausted or an invariant cannot be repaired safely."""
    pass
