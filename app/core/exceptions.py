"""
Typed service errors.

All of them are ``HTTPException`` subclasses so FastAPI renders them directly;
``detail`` is either a plain message or a dict carrying ``message``,
``error_code`` and whatever structured context the caller needs to act on.
"""
import functools
from typing import Any, Optional, Union

from fastapi import HTTPException, status

from app.core.logger import logger


class AppError(HTTPException):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, detail: Union[str, dict[str, Any]], headers: Optional[dict] = None):
        super().__init__(status_code=self.status_code, detail=detail, headers=headers)

    @property
    def message(self) -> str:
        if isinstance(self.detail, dict):
            return self.detail.get("message", "")
        return self.detail

    @property
    def error_code(self) -> Optional[str]:
        if isinstance(self.detail, dict):
            return self.detail.get("error_code")
        return None


class NotFoundError(AppError):
    status_code = status.HTTP_404_NOT_FOUND


class ValidationError(AppError):
    status_code = status.HTTP_400_BAD_REQUEST


class ConflictError(AppError):
    status_code = status.HTTP_409_CONFLICT


class InternalError(AppError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


def service_operation(error_message: str):
    """
    Wrap an async service method so that only typed errors leave it.

    Domain errors propagate unchanged; anything else is logged with its
    traceback and replaced by ``InternalError(error_message)``.
    """
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except AppError:
                raise
            except Exception as exc:
                logger.exception(f"{func.__qualname__} failed: {exc}")
                raise InternalError(error_message) from exc
        return wrapper
    return decorator
