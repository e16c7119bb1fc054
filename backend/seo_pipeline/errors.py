from typing import Optional

# Substrings that mark an error message as transient.
TRANSIENT_MARKERS = ("timeout", "rate limit", "ratelimit", "429", "502", "503")


class AppError(Exception):
    """Base class for errors surfaced to callers of the pipeline."""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(AppError):
    status_code = 400


class NotFoundError(AppError):
    status_code = 404

    def __init__(self, resource: str):
        super().__init__(f"{resource} not found")
        self.resource = resource


class ConflictError(AppError):
    status_code = 409


class ExternalServiceError(AppError):
    status_code = 502

    def __init__(self, service: str, message: str):
        super().__init__(f"{service} error: {message}")
        self.service = service


class RateLimitError(ExternalServiceError):
    status_code = 429

    def __init__(self, service: str, retry_after: Optional[float] = None):
        super().__init__(service, "rate limit exceeded")
        self.retry_after = retry_after


class LLMError(AppError):
    def __init__(self, provider: str, message: str):
        super().__init__(f"LLM error ({provider}): {message}")
        self.provider = provider


class WorkflowFailedError(AppError):
    def __init__(self, workflow_id: str, message: str):
        super().__init__(message)
        self.workflow_id = workflow_id


class ResearchFailedError(AppError):
    """A background research run ended in an error; carries that error's status."""

    status_code = 502

    def __init__(self, research_id: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"Research {research_id} failed: {message}", status_code)
        self.research_id = research_id


def is_transient_error(error: BaseException) -> bool:
    """Default retry classifier."""
    if isinstance(error, RateLimitError):
        return True
    if isinstance(error, (ValidationError, NotFoundError, ConflictError)):
        return False
    # SDK errors such as APITimeoutError carry the signal in their class name
    haystack = f"{type(error).__name__} {error}".lower()
    return any(marker in haystack for marker in TRANSIENT_MARKERS)
