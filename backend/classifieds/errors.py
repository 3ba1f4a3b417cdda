from __future__ import annotations


class ApiError(Exception):
    """Base for errors that map onto a JSON API response."""

    status_code = 500
    code = "INTERNAL_SERVER_ERROR"

    def __init__(self, message: str = "", *, code: str | None = None, details: dict | None = None):
        self.message = str(message or self.default_message())
        if code:
            self.code = str(code)
        self.details = dict(details or {})
        super().__init__(self.message)

    @classmethod
    def default_message(cls) -> str:
        return cls.__name__

    def to_dict(self) -> dict:
        payload = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = dict(self.details)
        return payload


class BadRequest(ApiError):
    status_code = 400
    code = "BAD_REQUEST"


class Unauthorized(ApiError):
    status_code = 401
    code = "UNAUTHORIZED"


class Forbidden(ApiError):
    status_code = 403
    code = "FORBIDDEN"


class NotFound(ApiError):
    status_code = 404
    code = "NOT_FOUND"


class Conflict(ApiError):
    status_code = 409
    code = "CONFLICT"


class InternalServerError(ApiError):
    status_code = 500
    code = "INTERNAL_SERVER_ERROR"


class ServiceUnavailable(ApiError):
    status_code = 503
    code = "SERVICE_UNAVAILABLE"
