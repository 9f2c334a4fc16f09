# errors.py
class EngineError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(EngineError):
    status_code = 400


class NotFound(EngineError):
    status_code = 404


class Forbidden(EngineError):
    status_code = 403


class InvalidState(EngineError):
    """Operation is not allowed in the current state of the occurrence."""

    status_code = 400


class Conflict(EngineError):
    status_code = 409
