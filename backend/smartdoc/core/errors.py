"""
Error taxonomy shared by every layer.

Each failure carries an ErrorKind tag, a human-readable message and a
numeric code. The HTTP layer maps the code straight onto the response
status; the job queue reads ``retryable`` to decide between a delayed
retry and a terminal failure.

    kind                  code  retryable
    ───────────────────   ────  ─────────
    validation             400  no
    not_found              404  no
    conflict               409  no
    unsupported_type       415  yes
    extraction             422  yes
    no_relevant_content    422  no
    dimension_mismatch     500  no
    internal               500  yes
    embedding              502  yes
    llm                    502  yes
    storage                502  yes
    queue                  503  yes
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    VALIDATION          = "validation"
    NOT_FOUND           = "not_found"
    CONFLICT            = "conflict"
    UNSUPPORTED_TYPE    = "unsupported_type"
    EXTRACTION          = "extraction"
    NO_RELEVANT_CONTENT = "no_relevant_content"
    DIMENSION_MISMATCH  = "dimension_mismatch"
    EMBEDDING           = "embedding"
    LLM                 = "llm"
    STORAGE             = "storage"
    QUEUE               = "queue"
    INTERNAL            = "internal"


_CODES: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION:          400,
    ErrorKind.NOT_FOUND:           404,
    ErrorKind.CONFLICT:            409,
    ErrorKind.UNSUPPORTED_TYPE:    415,
    ErrorKind.EXTRACTION:          422,
    ErrorKind.NO_RELEVANT_CONTENT: 422,
    ErrorKind.DIMENSION_MISMATCH:  500,
    ErrorKind.INTERNAL:            500,
    ErrorKind.EMBEDDING:           502,
    ErrorKind.LLM:                 502,
    ErrorKind.STORAGE:             502,
    ErrorKind.QUEUE:               503,
}

# Never worth another attempt: the same input will fail the same way.
NON_RETRYABLE_KINDS: frozenset[ErrorKind] = frozenset(
    {
        ErrorKind.VALIDATION,
        ErrorKind.NOT_FOUND,
        ErrorKind.CONFLICT,
        ErrorKind.NO_RELEVANT_CONTENT,
        ErrorKind.DIMENSION_MISMATCH,
    }
)


class SmartDocError(Exception):
    """Base class for every error raised deliberately by smartdoc."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str, *, code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code if code is not None else _CODES[self.kind]

    @property
    def retryable(self) -> bool:
        return self.kind not in NON_RETRYABLE_KINDS

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "message": self.message, "code": self.code}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value!r}, message={self.message!r})"


class ValidationError(SmartDocError):
    kind = ErrorKind.VALIDATION


class NotFoundError(SmartDocError):
    kind = ErrorKind.NOT_FOUND


class ConflictError(SmartDocError):
    kind = ErrorKind.CONFLICT


class UnsupportedTypeError(SmartDocError):
    kind = ErrorKind.UNSUPPORTED_TYPE


class ExtractionError(SmartDocError):
    kind = ErrorKind.EXTRACTION


class NoRelevantContentError(SmartDocError):
    kind = ErrorKind.NO_RELEVANT_CONTENT


class DimensionMismatchError(SmartDocError):
    kind = ErrorKind.DIMENSION_MISMATCH


class EmbeddingError(SmartDocError):
    kind = ErrorKind.EMBEDDING


class LLMError(SmartDocError):
    kind = ErrorKind.LLM


class StorageError(SmartDocError):
    kind = ErrorKind.STORAGE


class QueueError(SmartDocError):
    kind = ErrorKind.QUEUE


def is_retryable(exc: BaseException) -> bool:
    """
    Retry decision for arbitrary exceptions raised inside a job.

    Untagged exceptions (timeouts, driver errors, bugs) are treated as
    transient; the attempt limit bounds the damage.
    """
    if isinstance(exc, SmartDocError):
        return exc.retryable
    return True
