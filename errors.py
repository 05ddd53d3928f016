class POSError(Exception):
    """Base error raised by the service modules and rendered as JSON by the API."""
    status_code = 400

    def __init__(self, message, status_code=None, details=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details

    def to_dict(self):
        body = {'message': self.message}
        if self.details:
            body['details'] = self.details
        return body


class ValidationError(POSError):
    status_code = 400


class InvalidTransition(POSError):
    status_code = 400


class PermissionDenied(POSError):
    status_code = 403


class NotFoundError(POSError):
    status_code = 404


class ConflictError(POSError):
    status_code = 409
