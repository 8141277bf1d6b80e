"""
Unified exception hierarchy for the flashcard pipeline.

All domain exceptions inherit from FlashcardError and carry:
- error_code: machine-readable string (e.g. "DECK_NOT_FOUND")
- status_code: HTTP status code
- message: human-readable description
- context: optional structured metadata dict
"""

from typing import Optional, Dict, Any


class FlashcardError(Exception):
    """Base exception for all flashcard pipeline errors."""

    def __init__(
        self,
        message: str,
        error_code: str = "INTERNAL_ERROR",
        status_code: int = 500,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.context = context or {}
        super().__init__(message)


class ConfigurationError(FlashcardError):
    """Missing credential, collection or other fatal setup problem. Never retried."""

    def __init__(self, message: str, config_key: Optional[str] = None, context: Optional[Dict[str, Any]] = None):
        ctx = {"config_key": config_key} if config_key else {}
        if context:
            ctx.update(context)
        self.config_key = config_key
        super().__init__(message, error_code="CONFIGURATION_ERROR", status_code=500, context=ctx)


class NetworkError(FlashcardError):
    """Vector store, embedding backend or LLM unreachable. Retried by with_retry."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        http_status: Optional[int] = None,
        retry_after: Optional[float] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.provider = provider
        self.http_status = http_status
        self.retry_after = retry_after
        ctx = {"provider": provider, "http_status": http_status}
        if context:
            ctx.update(context)
        super().__init__(message, error_code="NETWORK_ERROR", status_code=503, context=ctx)


class ParseError(FlashcardError):
    """LLM output that is not JSON or does not match the expected schema."""

    def __init__(
        self,
        message: str,
        error_code: str = "PARSE_ERROR",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, error_code=error_code, status_code=502, context=context)


class ValidationError(FlashcardError):
    """400-level validation / bad-request errors."""

    def __init__(
        self,
        message: str,
        error_code: str = "VALIDATION_ERROR",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, error_code=error_code, status_code=400, context=context)


class NotFoundError(FlashcardError):
    """404 resource-not-found errors (jobs, decks, cards, modules)."""

    def __init__(
        self,
        message: str,
        error_code: str = "NOT_FOUND",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, error_code=error_code, status_code=404, context=context)


class StorageError(FlashcardError):
    """500-level deck store / job store failures."""

    def __init__(
        self,
        message: str,
        error_code: str = "STORAGE_ERROR",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, error_code=error_code, status_code=500, context=context)


class GenerationCancelledError(FlashcardError):
    """A generation run observed its cancellation signal."""

    def __init__(self, module_id: str, step: str):
        self.module_id = module_id
        self.step = step
        super().__init__(
            f"Generation for {module_id} cancelled before {step}",
            error_code="CANCELLED",
            status_code=499,
            context={"module_id": module_id, "step": step},
        )


class GenerationError(FlashcardError):
    """A module run finished as FAILED (Stage B or persistence failure)."""

    def __init__(
        self,
        message: str,
        error_code: str = "GENERATION_FAILED",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, error_code=error_code, status_code=500, context=context)


class PermissionDeniedError(FlashcardError):
    """Caller lacks the role an endpoint requires."""

    def __init__(self, message: str = "Admin role required", context: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code="FORBIDDEN", status_code=403, context=context)
