"""Error taxonomy shared by every router.

Each class maps to one HTTP status so callers can always tell a bad request,
a missing record, a permission problem and a state conflict apart.
"""
from typing import Iterable, Optional

from fastapi import HTTPException, status


class ValidationError(HTTPException):
    def __init__(self, field: str, message: str, extra: Optional[Iterable[dict]] = None):
        errors = [{"field": field, "message": message}]
        errors.extend(extra or [])
        super().__init__(status.HTTP_422_UNPROCESSABLE_ENTITY, {"errors": errors})


class NotFound(HTTPException):
    def __init__(self, detail: str = "not found"):
        super().__init__(status.HTTP_404_NOT_FOUND, detail)


class Forbidden(HTTPException):
    def __init__(self, detail: str = "not authorized"):
        super().__init__(status.HTTP_403_FORBIDDEN, detail)


class Conflict(HTTPException):
    def __init__(self, detail: str):
        super().__init__(status.HTTP_409_CONFLICT, detail)


class UpstreamFailure(HTTPException):
    def __init__(self, detail: str):
        super().__init__(status.HTTP_502_BAD_GATEWAY, detail)
