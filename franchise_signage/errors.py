"""
@errors
Error taxonomy shared by the store, the resolver, device pairing and the HTTP layer.
"""


class SignageError(Exception):
    """Base class for expected, caller-recoverable failures."""

    status_code = 500

    def __init__(self, message: str = None, status_code: int = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code

    default_message = 'Internal server error'


class ValidationError(SignageError):
    status_code = 400
    default_message = 'Invalid request'

    def __init__(self, message: str = None, details=None):
        super().__init__(message)
        self.details = details


class AuthenticationError(SignageError):
    status_code = 401
    default_message = 'Authentication failed'


class NotFound(SignageError):
    status_code = 404
    default_message = 'Resource not found'


class Conflict(SignageError):
    status_code = 409
    default_message = 'Resource already exists'


class StoreBusy(SignageError):
    status_code = 503
    default_message = 'Server busy, please try again'


class StoreWriteError(SignageError):
    status_code = 500
    default_message = 'Failed to persist changes'


class Corrupt(SignageError):
    default_message = 'Persisted document could not be parsed'


class MigrationFailed(SignageError):
    default_message = 'Migration failed'

    def __init__(self, version: int, message: str = None):
        super().__init__(message or f'Migration {version} failed')
        self.version = version


class OtpExpired(SignageError):
    status_code = 401
    default_message = 'OTP expired or not found. Please request a new OTP.'


class OtpExhausted(SignageError):
    status_code = 401
    default_message = 'Too many failed attempts. Please request a new OTP.'


class OtpMismatch(SignageError):
    status_code = 401

    def __init__(self, remaining: int):
        super().__init__(f'Invalid OTP. {remaining} attempts remaining.')
        self.remaining = remaining


class DispatchFailed(SignageError):
    status_code = 502
    default_message = 'Failed to send OTP'
