"""
Error taxonomy for the CSPM integration engine.

Every failure raised by the connectors and the reconciler derives from
ReconcileError, so callers can catch a single type and still branch on the
concrete class when they need to.
"""

from typing import Optional


class ReconcileError(Exception):
    """Base class for every failure surfaced by the engine."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        integration_name: Optional[str] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.integration_name = integration_name
        self.code = code

    def wrap(self, operation: str, integration_name: str) -> "ReconcileError":
        """
        Build an error of the same class describing the failing step.

        The caller is expected to ``raise err.wrap(...) from err`` so the
        original error stays on the causal chain.
        """
        return self.__class__(
            f"{operation} failed for integration '{integration_name}': {self.message}",
            operation=operation,
            integration_name=integration_name,
            code=self.code,
        )

    def __str__(self):
        return self.message


class AuthError(ReconcileError):
    """Credential resolution or role assumption failed."""


class NotFoundError(ReconcileError):
    """Role, policy or bucket does not exist."""


class ConflictError(ReconcileError):
    """The provider refused the change because of existing state."""


class ResourceExistsConflict(ConflictError):
    """A resource with the same name already exists."""


class PermissionDeniedError(ReconcileError):
    """The authenticated principal is not allowed to perform the call."""


class ValidationError(ReconcileError):
    """Invalid configuration or malformed policy document."""


class TransientProviderError(ReconcileError):
    """Throttling, server-side or connection failure from the cloud API."""


class ProviderError(ReconcileError):
    """Any other cloud API failure."""


NOT_FOUND_CODES = {"NoSuchEntity", "NoSuchBucket", "NotFound", "404", "AccountNotFoundException"}
EXISTS_CODES = {"EntityAlreadyExists", "BucketAlreadyExists", "BucketAlreadyOwnedByYou"}
CONFLICT_CODES = {"DeleteConflict", "LimitExceeded", "ConcurrentModification"}
PERMISSION_CODES = {
    "AccessDenied",
    "AccessDeniedException",
    "UnauthorizedOperation",
    "Forbidden",
    "403",
    "AWSOrganizationsNotInUseException",
}
VALIDATION_CODES = {"MalformedPolicyDocument", "InvalidInput", "ValidationError", "ValidationException"}
TRANSIENT_CODES = {
    "Throttling",
    "ThrottlingException",
    "TooManyRequestsException",
    "RequestLimitExceeded",
    "ServiceFailure",
    "ServiceUnavailable",
    "InternalError",
    "InternalFailure",
    "SlowDown",
}


def error_class_for(code: str, status_code: Optional[int] = None) -> type:
    """Map an AWS error code (and HTTP status) to an engine error class."""
    if code in NOT_FOUND_CODES:
        return NotFoundError
    if code in EXISTS_CODES:
        return ResourceExistsConflict
    if code in CONFLICT_CODES:
        return ConflictError
    if code in PERMISSION_CODES:
        return PermissionDeniedError
    if code in VALIDATION_CODES:
        return ValidationError
    if code in TRANSIENT_CODES:
        return TransientProviderError
    if status_code is not None:
        if status_code == 404:
            return NotFoundError
        if status_code == 403:
            return PermissionDeniedError
        if status_code >= 500:
            return TransientProviderError
    return ProviderError
