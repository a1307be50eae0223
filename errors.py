"""Error types raised by the songbook stores and rendered by the API."""
from __future__ import annotations

from typing import Any, Dict, Optional


class ApiError(Exception):
    status = 400
    code = 'BAD_REQUEST'

    def __init__(self, message: str, code: Optional[str] = None, status: Optional[int] = None, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status is not None:
            self.status = status
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {'status': 'error', 'code': self.code, 'message': self.message}
        if self.details is not None:
            payload['details'] = self.details
        return payload


class ValidationError(ApiError):
    status = 400
    code = 'VALIDATION_ERROR'


class Unauthorized(ApiError):
    status = 401
    code = 'UNAUTHORIZED'


class Forbidden(ApiError):
    status = 403
    code = 'FORBIDDEN'


class NotFound(ApiError):
    status = 404
    code = 'NOT_FOUND'


class Conflict(ApiError):
    status = 409
    code = 'CONFLICT'


class ServiceUnavailable(ApiError):
    status = 503
    code = 'DATABASE_UNAVAILABLE'
