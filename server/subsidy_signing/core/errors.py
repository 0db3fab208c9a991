"""
Error taxonomy for the signing pipeline.

Every error carries a human readable message, a short machine code and a
details dictionary so the HTTP boundary can log full context and render
``{error, message, details}`` without inspecting provider payloads.
"""

from typing import Any, Dict, List, Optional


class SubsidySigningError(Exception):
    """Base class for all pipeline errors."""

    http_status: int = 500

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.error_message = message
        self.error_code = error_code or "internal_error"
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.error_code,
            "message": self.error_message,
            "details": self.details,
        }


class ValidationError(SubsidySigningError):
    """Intake shape is wrong. Caller's fault, never retried."""

    http_status = 400

    def __init__(self, message: str, errors: Optional[List[str]] = None, **kwargs: Any):
        details = kwargs.pop("details", None) or {}
        if errors:
            details["validation_errors"] = errors
        super().__init__(message, kwargs.pop("error_code", "validation_error"), details)
        self.errors = errors or []


class TemplateFieldError(SubsidySigningError):
    """PDF template and field catalog disagree. Configuration bug, fatal."""

    def __init__(self, message: str, template_id: str, field_name: str, error_code: str = "template_field_error"):
        super().__init__(message, error_code, {"template_id": template_id, "field": field_name})
        self.template_id = template_id
        self.field_name = field_name


class FieldNotFoundError(TemplateFieldError):
    def __init__(self, template_id: str, field_name: str):
        super().__init__(
            f"Field '{field_name}' does not exist in template '{template_id}'",
            template_id,
            field_name,
            error_code="field_not_found",
        )


class InvalidOptionError(TemplateFieldError):
    def __init__(self, template_id: str, field_name: str, value: str, options: List[str]):
        super().__init__(
            f"Value '{value}' is not an option of field '{field_name}' in template '{template_id}'",
            template_id,
            field_name,
            error_code="invalid_option",
        )
        self.value = value
        self.options = options
        self.details["value"] = value
        self.details["options"] = options


class ProviderApiError(SubsidySigningError):
    """Remote e-signature API answered with a non-success status."""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        code: Optional[str] = None,
        raw_body: Optional[str] = None,
        provider: Optional[str] = None,
        operation: Optional[str] = None,
    ):
        super().__init__(
            message,
            code or "provider_error",
            {
                "status": status,
                "code": code,
                "raw_body": raw_body,
                "provider": provider,
                "operation": operation,
            },
        )
        self.status = status
        self.code = code
        self.raw_body = raw_body
        self.provider = provider
        self.operation = operation

    @property
    def http_status(self) -> int:  # type: ignore[override]
        if self.status is not None and 400 <= self.status < 500 and self.status not in (401, 403):
            return 422
        return 500


class AuthError(SubsidySigningError):
    """Token or credential acquisition failed."""

    http_status = 401

    def __init__(self, message: str, provider: Optional[str] = None, status: Optional[int] = None, raw_body: Optional[str] = None):
        super().__init__(message, "auth_error", {"provider": provider, "status": status, "raw_body": raw_body})
        self.provider = provider
        self.status = status


class StorageError(SubsidySigningError):
    """Drive folder resolution or upload failed."""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        path: Optional[str] = None,
        raw_body: Optional[str] = None,
        retryable: bool = False,
    ):
        super().__init__(message, "storage_error", {"status": status, "path": path, "raw_body": raw_body})
        self.status = status
        self.path = path
        self.raw_body = raw_body
        self.retryable = retryable


class ConfigurationError(SubsidySigningError):
    """Required settings are missing for the requested operation."""

    http_status = 503

    def __init__(self, message: str, missing: Optional[List[str]] = None):
        super().__init__(message, "not_configured", {"missing": missing or []})
        self.missing = missing or []
