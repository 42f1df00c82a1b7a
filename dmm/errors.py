from __future__ import annotations


class DmmError(Exception):
    """Base error; `status_code` is what the control API answers with."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(DmmError):
    status_code = 400


class NotFound(DmmError):
    status_code = 404


class BuildError(DmmError):
    status_code = 500


class LifecycleError(DmmError):
    status_code = 500


class OperationTimeout(DmmError):
    status_code = 504


class AuthenticationError(DmmError):
    status_code = 401


class PermissionDenied(DmmError):
    status_code = 403


class CollaboratorError(DmmError):
    status_code = 502
