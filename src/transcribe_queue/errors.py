from __future__ import annotations

from transcribe_queue.types import ErrorInfo, ErrorKind


class TranscribeError(RuntimeError):
    kind: ErrorKind = "internal"

    def to_info(self) -> ErrorInfo:
        message = str(self).strip() or self.__class__.__name__
        return ErrorInfo(kind=self.kind, message=message)


class DecodeError(TranscribeError):
    """Media could not be decoded into PCM. Not retried."""

    kind: ErrorKind = "decode"


class EmptyMediaError(TranscribeError):
    kind: ErrorKind = "empty_media"


class InsufficientContentError(TranscribeError):
    kind: ErrorKind = "insufficient_content"


class RateLimited(TranscribeError):
    kind: ErrorKind = "rate_limited"


class NetworkError(TranscribeError):
    kind: ErrorKind = "network"


class ServiceError(TranscribeError):
    """The remote service rejected the request or returned an unusable body."""

    kind: ErrorKind = "service"


class JobCancelled(Exception):
    """Raised inside a job routine once its job has been removed."""


def error_info(exc: BaseException) -> ErrorInfo:
    if isinstance(exc, TranscribeError):
        return exc.to_info()
    message = str(exc).strip() or "Unknown worker error"
    return ErrorInfo(kind="internal", message=message[:2000])
