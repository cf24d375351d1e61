"""
Document System Exceptions

Every failure the document pipeline reports carries a stable error code,
so callers can decide retry vs. abort without inspecting message text.
"""

from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCode(str, Enum):
    """Stable error codes surfaced to API callers."""
    VALIDATION_ERROR = 'VALIDATION_ERROR'
    NOT_FOUND = 'NOT_FOUND'
    TEMPLATE_NOT_FOUND = 'TEMPLATE_NOT_FOUND'
    TEMPLATE_LOAD_FAILED = 'TEMPLATE_LOAD_FAILED'
    TEMPLATE_GEOMETRY_MISMATCH = 'TEMPLATE_GEOMETRY_MISMATCH'
    FIELD_OUT_OF_BOUNDS = 'FIELD_OUT_OF_BOUNDS'
    INVALID_TRANSITION = 'INVALID_TRANSITION'
    STALE_STATE = 'STALE_STATE'
    STORAGE_UNAVAILABLE = 'STORAGE_UNAVAILABLE'
    TIMEOUT = 'TIMEOUT'
    CONFIGURATION_ERROR = 'CONFIGURATION_ERROR'


class DocumentError(Exception):
    """Base exception for all document system errors."""
    code = ErrorCode.VALIDATION_ERROR
    http_status = 400
    retryable = False

    def __init__(self, message: str, **details: Any):
        self.message = message
        self.details = {k: v for k, v in details.items() if v is not None}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the `{code, message}` error shape."""
        data = {'code': self.code.value, 'message': self.message, 'retryable': self.retryable}
        if self.details:
            data['details'] = self.details
        return data


class ConfigurationError(DocumentError):
    """
    Raised when document configuration is invalid.

    This includes YAML syntax errors, schema validation failures,
    and referential integrity issues (e.g., dependsOn names an unknown field).
    """
    code = ErrorCode.CONFIGURATION_ERROR
    http_status = 500


class ValidationError(DocumentError):
    """
    Raised when submitted field data fails resolution.

    Carries every field-level error so the caller can correct them in one pass.
    """
    code = ErrorCode.VALIDATION_ERROR
    http_status = 400

    def __init__(self, message: str, errors: Optional[List[Any]] = None, template_code: str = None):
        self.errors = list(errors or [])
        super().__init__(message, template_code=template_code)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['errors'] = [e.to_dict() for e in self.errors]
        return data


class NotFoundError(DocumentError):
    """Template, document, or artifact absent."""
    code = ErrorCode.NOT_FOUND
    http_status = 404


class TemplateAssetMissingError(NotFoundError):
    """A registered template whose base PDF file is missing."""
    code = ErrorCode.TEMPLATE_NOT_FOUND
    http_status = 500


class TemplateLoadError(DocumentError):
    """Base PDF is corrupt, unparsable, or its permissions forbid filling."""
    code = ErrorCode.TEMPLATE_LOAD_FAILED
    http_status = 500


class TemplateGeometryError(DocumentError):
    """Base PDF page count or page size disagrees with the field schema."""
    code = ErrorCode.TEMPLATE_GEOMETRY_MISMATCH
    http_status = 500


class FieldOutOfBoundsError(DocumentError):
    """A placement falls outside its page. Only raised under the `fail` policy."""
    code = ErrorCode.FIELD_OUT_OF_BOUNDS
    http_status = 500


class InvalidTransitionError(DocumentError):
    """Requested status change is not an edge of the lifecycle graph."""
    code = ErrorCode.INVALID_TRANSITION
    http_status = 409


class StaleStateError(DocumentError):
    """The document changed since it was read; the caller lost the race."""
    code = ErrorCode.STALE_STATE
    http_status = 409


class StorageUnavailableError(DocumentError):
    """Blob or record store temporarily unreachable. Safe to retry with backoff."""
    code = ErrorCode.STORAGE_UNAVAILABLE
    http_status = 503
    retryable = True


class OperationTimeoutError(DocumentError):
    """Operation aborted after the caller-supplied timeout. Safe to retry."""
    code = ErrorCode.TIMEOUT
    http_status = 504
    retryable = True


class ArtifactMissingError(StorageUnavailableError):
    """
    The document record exists but its stored PDF does not.

    Reported as STORAGE_UNAVAILABLE so a download can tell it apart from an
    unknown document (NOT_FOUND). Retrying will not help; the document has to
    be regenerated.
    """
    retryable = False
