"""Error types shared by the services.

ValidationError / NotFoundError are HTTPExceptions so services can raise them
directly and FastAPI turns them into 400 / 404 responses.
"""
from fastapi import HTTPException


class ValidationError(HTTPException):
    """Malformed handle, out-of-range config, unknown enum value"""

    def __init__(self, detail: str):
        super().__init__(status_code=400, detail=detail)


class NotFoundError(HTTPException):
    """Unknown experiment or goal"""

    def __init__(self, detail: str):
        super().__init__(status_code=404, detail=detail)


class PersistenceUnavailable(Exception):
    """Storage failed for a reason other than a constraint violation"""

