"""Structured domain errors.

Every rejection carries a ``kind`` the HTTP layer maps to a status code, so
callers can handle domain failures uniformly instead of parsing messages.
"""


class GameError(Exception):
    kind = 'error'
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self):
        return {'error': self.message, 'kind': self.kind}


class ValidationError(GameError):
    kind = 'validation'
    status_code = 400


class ForbiddenError(GameError):
    kind = 'forbidden'
    status_code = 403


class NotFoundError(GameError):
    kind = 'not_found'
    status_code = 404


class ConflictError(GameError):
    kind = 'conflict'
    status_code = 409
