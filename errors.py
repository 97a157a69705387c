"""
API errors

Every failure the service reports on purpose is an ApiError subclass. The
status code lives on the class so routes and the lifecycle code can simply
raise, and main.py turns them into {"detail": ...} responses.
"""


class ApiError(Exception):
    status_code = 500
    default_detail = "Internal server error"

    def __init__(self, detail: str = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class Unauthenticated(ApiError):
    status_code = 401
    default_detail = "Token missing or invalid. Unauthorized access"


class Forbidden(ApiError):
    status_code = 403
    default_detail = "forbidden access"


class NotFound(ApiError):
    status_code = 404
    default_detail = "Not found"


class InvalidId(ApiError):
    status_code = 400
    default_detail = "Invalid object id"


class InvalidTransition(ApiError):
    status_code = 400
    default_detail = "Status change not allowed"


class ValidationFailed(ApiError):
    status_code = 400
    default_detail = "Validation failed"


class Conflict(ApiError):
    status_code = 409
    default_detail = "Request was modified concurrently"
