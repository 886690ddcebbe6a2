"""Error taxonomy for certificate generation and verification, plus API response helpers."""

from typing import Any, Dict, Optional

from fastapi.responses import JSONResponse


class CertKitError(Exception):
    """
    Base class for all CertKit errors.

    Subclasses set ``code`` (stable machine-readable identifier),
    ``status_code`` (HTTP mapping) and ``retriable`` (whether the caller
    may retry the same request and expect a different outcome).
    """

    code = "CERTKIT_ERROR"
    status_code = 500
    retriable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for JSON serialization."""
        body: Dict[str, Any] = {
            "error": self.code,
            "message": self.message,
            "retriable": self.retriable,
        }
        if self.details:
            body["details"] = self.details
        return body


class ConfigurationError(CertKitError):
    """Raised when settings or key material are missing or invalid."""

    code = "CONFIGURATION_ERROR"


class AccessDenied(CertKitError):
    """Template ownership check failed; never proceeds to signing or rendering."""

    code = "ACCESS_DENIED"
    status_code = 403


class NotFoundError(CertKitError):
    """Requested record does not exist (or is not visible to the caller)."""

    code = "NOT_FOUND"
    status_code = 404


class ArtifactNotFoundError(NotFoundError):
    """Certificate record exists but its rendered artifact is missing."""

    code = "ARTIFACT_NOT_FOUND"


class RenderFailure(CertKitError):
    """Artifact generation failed (malformed content or encoder error)."""

    code = "RENDER_FAILURE"
    status_code = 422


class ArtifactIOError(RenderFailure):
    """Writing or reading artifact bytes failed at the storage layer."""

    code = "ARTIFACT_IO_ERROR"
    status_code = 503
    retriable = True


class SigningFailure(CertKitError):
    """
    The cryptographic primitive or key material failed.

    Fatal: generation must halt rather than produce unsigned certificates.
    """

    code = "SIGNING_FAILURE"


class UnknownKeyError(SigningFailure):
    """A signature key id could not be resolved in the keyring."""

    code = "UNKNOWN_KEY"


class CanonicalizationError(CertKitError):
    """Certificate data cannot be serialized into a canonical payload."""

    code = "CANONICALIZATION_ERROR"
    status_code = 400


class DeserializationFailure(CertKitError):
    """Stored certificate data cannot be parsed back into a data map."""

    code = "DESERIALIZATION_FAILURE"


class BatchValidationError(CertKitError):
    """Batch request is empty or exceeds the maximum batch size."""

    code = "BATCH_VALIDATION_ERROR"
    status_code = 400


class PersistenceError(CertKitError):
    """Record or audit event could not be stored; the certificate was rolled back."""

    code = "PERSISTENCE_ERROR"
    status_code = 503
    retriable = True


def error_response(exc: CertKitError) -> JSONResponse:
    """Create a standardized JSON error response for a CertKit error."""
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())
