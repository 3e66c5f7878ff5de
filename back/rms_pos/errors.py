"""
Error types raised by the POS engine.

Every error carries a machine-readable code and the HTTP status the API
layer should answer with.
"""


class POSError(Exception):
    """Base class for all engine errors"""
    code = "INTERNAL_SERVER_ERROR"
    status_code = 500

    def __init__(self, message: str, details: dict | list | None = None):
        self.message = message
        self.details = details
        super().__init__(message)


class ValidationError(POSError):
    """Malformed input or a business rule violation (caller-correctable)"""
    code = "VALIDATION_ERROR"
    status_code = 400


class ResourceNotFoundError(POSError):
    code = "RESOURCE_NOT_FOUND"
    status_code = 404

    def __init__(self, resource: str, resource_id: object = None):
        self.resource = resource
        self.resource_id = resource_id
        if resource_id is not None:
            message = f"{resource} not found: {resource_id}"
        else:
            message = f"{resource} not found"
        super().__init__(message)


class UnauthorizedError(POSError):
    code = "UNAUTHORIZED"
    status_code = 401


class DatabaseError(POSError):
    """Persistence failure. Keeps the original exception as `cause`."""
    code = "DATABASE_ERROR"
    status_code = 500

    def __init__(self, message: str, cause: BaseException | None = None):
        self.cause = cause
        super().__init__(message, details=str(cause) if cause is not None else None)
