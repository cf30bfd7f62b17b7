"""HTTP error types raised by the service layer.

Each error is an ``HTTPException`` so FastAPI renders it as a JSON body of the
form ``{"detail": "<message>"}`` with the matching status code.
"""

import logging
from typing import NoReturn

from fastapi import HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


class ServiceError(HTTPException):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, detail: str) -> None:
        super().__init__(status_code=self.status_code, detail=detail)


class ValidationError(ServiceError):
    """A required field is missing or empty."""

    status_code = status.HTTP_400_BAD_REQUEST


class UploadRejected(ServiceError):
    """The file type is not allowed or the file is too large."""

    status_code = status.HTTP_400_BAD_REQUEST


class Unauthorized(ServiceError):
    status_code = status.HTTP_401_UNAUTHORIZED


class NotFound(ServiceError):
    status_code = status.HTTP_404_NOT_FOUND


class Conflict(ServiceError):
    status_code = status.HTTP_409_CONFLICT


class StorageError(ServiceError):
    """The database or the filesystem failed."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


def handle_service_error(session: Session, exc: Exception, message: str = "Database error") -> NoReturn:
    """Rollback the transaction and re-raise ``exc`` as an HTTP error."""
    session.rollback()
    if isinstance(exc, HTTPException):
        raise exc
    logger.exception("service layer error", exc_info=exc)
    if isinstance(exc, (SQLAlchemyError, OSError)):
        raise StorageError(message) from exc
    raise exc
