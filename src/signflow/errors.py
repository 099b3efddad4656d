"""Exception hierarchy for SignFlow.

Every error carries a short message that is safe to show to a user.
The API maps each kind to an HTTP status; the CLI prints it in red.
"""


class SignFlowError(Exception):
    """Base class for all SignFlow errors."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(SignFlowError):
    """Required input is missing or malformed."""

    status_code = 400


class AuthenticationError(SignFlowError):
    """No caller identity was supplied."""

    status_code = 401


class AuthorizationError(SignFlowError):
    """Actor is not the assigned signer or the owning uploader."""

    status_code = 403


class DocumentNotFoundError(SignFlowError):
    """No document with the requested id."""

    status_code = 404


class StateConflictError(SignFlowError):
    """Transition attempted from a status that does not allow it."""

    status_code = 409


class EmbedError(SignFlowError):
    """Image could not be decoded or the PDF is corrupt."""

    status_code = 422


class StorageError(SignFlowError):
    """Artifact put/get/replace failed."""

    status_code = 502


class AuditWriteError(SignFlowError):
    """Audit append failed. Never propagated past the recorder."""
