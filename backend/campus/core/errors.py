"""Application error taxonomy.

Services raise these; ``campus.main`` renders them into the error envelope.
"""


class AppError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, *, code: str | None = None, status_code: int | None = None, errors=None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.errors = errors


class ValidationError(AppError):
    status_code = 400
    code = "validation_error"


class DuplicateError(AppError):
    status_code = 409
    code = "duplicate"


class AuthError(AppError):
    status_code = 401
    code = "invalid_credentials"


class StateGateError(AppError):
    status_code = 403
    code = "state_gate"


class NotFoundError(AppError):
    status_code = 404
    code = "not_found"


class InternalError(AppError):
    status_code = 500
    code = "internal_error"


def unverified(message: str = "Your account is pending verification. Please wait for administrator approval.") -> StateGateError:
    return StateGateError(message, code="unverified", status_code=403)
