"""
Error taxonomy for sync and stock operations.

- Batch operations catch these per record and report them as data.
- Single business transactions let them propagate after rollback; the app-level
  errorhandler turns them into {"error": message} with the class status code.
"""


class AppError(Exception):
    status_code = 400

    def __init__(self, message=None, status_code=None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self):
        return {'error': self.message}


class InvalidInput(AppError):
    """Request payload is structurally unusable (e.g. empty sync data)."""


class ValidationError(AppError):
    """A single record is malformed or missing a required field."""


class InsufficientStockError(ValidationError):
    pass


class NotFoundError(AppError):
    status_code = 404


class ReferentialIntegrityError(AppError):
    """Delete refused because other rows still reference the target."""


class TransientStoreError(AppError):
    status_code = 503


class TransactionTimeout(TransientStoreError):
    pass
