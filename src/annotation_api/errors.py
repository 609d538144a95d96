"""
Exception hierarchy for the annotation API.

Every error that crosses the HTTP boundary derives from APIError and carries
the status code it maps to. The FastAPI exception handlers in main translate
these into the shared response envelope.
"""

from __future__ import annotations

from typing import Any, Optional


class APIError(Exception):
    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(APIError):
    status_code = 400


class Unauthenticated(APIError):
    status_code = 401


class Forbidden(APIError):
    status_code = 403


class NotFound(APIError):
    status_code = 404


class Conflict(APIError):
    status_code = 409


class BackendUnavailable(APIError):
    status_code = 503


# Identity

class AlreadyExists(Conflict):
    pass


class InvalidCredentials(Unauthenticated):
    pass


# Text extraction

class UnsupportedType(ValidationError):
    pass


class ExtractionError(APIError):
    status_code = 500


class ExtractionFailed(ExtractionError):
    pass


class NoTextFound(ExtractionError):
    pass


# Annotation generation

class GenerationError(APIError):
    status_code = 500


class TransportError(BackendUnavailable):
    """The generation backend could not be reached or timed out."""


class BadStatus(GenerationError):
    def __init__(self, message: str, upstream_status: Optional[int] = None) -> None:
        super().__init__(message)
        self.upstream_status = upstream_status


class EmptyResponse(GenerationError):
    pass


# Orchestration

class EmptyBody(ValidationError):
    pass


class PublisherUnavailable(BackendUnavailable):
    pass


class InvalidTransition(Conflict):
    pass


class PipelineError(APIError):
    """
    Raised when the upload pipeline fails after the record was persisted.

    The failed record travels with the error so the HTTP layer can return it
    alongside the failure; the status code is taken from the underlying cause.
    """

    def __init__(self, cause: Exception, annotation: Any) -> None:
        status_code = cause.status_code if isinstance(cause, APIError) else 500
        super().__init__(str(cause), status_code=status_code)
        self.cause = cause
        self.annotation = annotation
