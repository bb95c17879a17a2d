"""Circulation errors.

Every failure the lifecycle can report is a ``LibraryError`` subclass. The HTTP
layer turns them into ``{"error": kind, "message": ...}`` responses, so callers
only ever see a kind and a human readable message.
"""


class LibraryError(Exception):
    kind = "LibraryError"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.kind, "message": self.message}


class ValidationError(LibraryError):
    kind = "ValidationError"
    status_code = 400


class RoleError(LibraryError):
    kind = "RoleError"
    status_code = 403


class NotOwner(LibraryError):
    kind = "NotOwner"
    status_code = 403


class NotFound(LibraryError):
    kind = "NotFound"
    status_code = 404


class NotPending(LibraryError):
    kind = "NotPending"
    status_code = 409


class NotActive(LibraryError):
    kind = "NotActive"
    status_code = 409


class OutOfStock(LibraryError):
    kind = "OutOfStock"
    status_code = 409
