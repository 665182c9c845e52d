# services/errors.py
"""
Exceptions raised by the service layer

The application factory renders every ServiceError as
{"success": false, "error": message} with the exception's status code.
"""


class ServiceError(Exception):
    """Base exception for service operations"""
    status_code = 400

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(ServiceError):
    """Input failed validation"""
    status_code = 400


class AuthenticationError(ServiceError):
    status_code = 401


class PermissionDenied(ServiceError):
    status_code = 403


class NotFoundError(ServiceError):
    status_code = 404


class ConflictError(ServiceError):
    """Operation conflicts with the current state of a record"""
    status_code = 409


class LimitExceeded(ServiceError):
    """Subscription limit reached"""
    status_code = 403
