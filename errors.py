"""
Error taxonomy for the Tuitron API.

Services raise these; main.py turns them into JSON responses of the form
{"detail": message} with the class status code.
"""


class TuitronError(Exception):
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class Unauthenticated(TuitronError):
    status_code = 401


class Forbidden(TuitronError):
    status_code = 403


class ValidationError(TuitronError):
    status_code = 400


class NotFound(TuitronError):
    status_code = 404


class Conflict(TuitronError):
    status_code = 409


class InvariantViolation(TuitronError):
    """A request that would break an account invariant (last admin, self-demotion)."""
    status_code = 400


class ExternalServiceError(TuitronError):
    """Identity provider, payment provider or document store failed or timed out."""
    status_code = 502
