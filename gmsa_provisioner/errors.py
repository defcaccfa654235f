"""Error kinds raised while provisioning a group managed service account."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    VALIDATION_ERROR = "ValidationError"
    MALFORMED_PAYLOAD = "MalformedPayload"
    UNAUTHORIZED = "Unauthorized"
    CREDENTIAL_UNAVAILABLE = "CredentialUnavailable"
    DIRECTORY_UNREACHABLE = "DirectoryUnreachable"
    ALREADY_EXISTS = "AlreadyExists"
    PERMISSION_DENIED = "PermissionDenied"
    INVALID_PARAMETER = "InvalidParameter"
    VERIFICATION_FAILED = "VerificationFailed"
    ROOT_KEY_NOT_READY = "RootKeyNotReady"
    CANCELLED = "Cancelled"


class ProvisioningError(Exception):
    """Base error carrying the kind reported back to the caller."""

    kind: ErrorKind = ErrorKind.DIRECTORY_UNREACHABLE

    def __init__(self, message: str, kind: ErrorKind | None = None) -> None:
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind


class RequestValidationError(ProvisioningError):
    kind = ErrorKind.VALIDATION_ERROR


class MalformedPayloadError(ProvisioningError):
    kind = ErrorKind.MALFORMED_PAYLOAD


class UnauthorizedError(ProvisioningError):
    kind = ErrorKind.UNAUTHORIZED


class CredentialUnavailableError(ProvisioningError):
    kind = ErrorKind.CREDENTIAL_UNAVAILABLE


class DirectoryUnreachableError(ProvisioningError):
    kind = ErrorKind.DIRECTORY_UNREACHABLE


class AlreadyExistsError(ProvisioningError):
    kind = ErrorKind.ALREADY_EXISTS


class PermissionDeniedError(ProvisioningError):
    kind = ErrorKind.PERMISSION_DENIED


class InvalidParameterError(ProvisioningError):
    kind = ErrorKind.INVALID_PARAMETER


class VerificationFailedError(ProvisioningError):
    kind = ErrorKind.VERIFICATION_FAILED


class RootKeyNotReadyError(ProvisioningError):
    kind = ErrorKind.ROOT_KEY_NOT_READY


class ProvisioningCancelledError(ProvisioningError):
    kind = ErrorKind.CANCELLED
