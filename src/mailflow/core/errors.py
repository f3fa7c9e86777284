"""Custom exception types for mailflow.

Error messages follow one standard:
- What failed (specific operation or component)
- Why it failed (the specific condition)
- How to fix it (actionable guidance), where there is something to fix

Retry semantics are carried by the type. The queue consumer never retries
PayloadValidationError; everything else raised out of a job handler is
retried up to the job's attempt limit.
"""


class MailflowError(Exception):
    """Base exception for all mailflow errors."""

    pass


class ConfigValidationError(MailflowError):
    """Raised when config.yaml fails Pydantic validation.

    Includes specific field errors with actionable messages.
    """

    pass


class ConfigLoadError(MailflowError):
    """Raised when config.yaml cannot be loaded (file not found, YAML parse error)."""

    pass


class DatabaseError(MailflowError):
    """Raised when SQLite operations fail."""

    pass


class PayloadValidationError(MailflowError):
    """Raised when a job payload does not match its schema.

    Fatal to the single invocation: the job is recorded as failed and never
    retried, because a malformed payload will not fix itself.

    Attributes:
        job_name: Name of the job whose payload was rejected
        errors: Field-level error strings
    """

    def __init__(self, message: str, job_name: str | None = None, errors: list[str] | None = None):
        super().__init__(message)
        self.job_name = job_name
        self.errors = errors or []


class NotFoundError(MailflowError):
    """Raised when a referenced account, job or row does not exist.

    Retried up to the job's attempt limit; the referenced row is left in a
    recoverable state.

    Attributes:
        entity: Kind of entity that was missing ("account", "message", ...)
        entity_id: Identifier that was looked up
    """

    def __init__(self, message: str, entity: str | None = None, entity_id: str | None = None):
        super().__init__(message)
        self.entity = entity
        self.entity_id = entity_id


class AuthenticationError(MailflowError):
    """Raised when an account has no usable provider credentials."""

    pass


class ProviderError(MailflowError):
    """Raised when a mail provider API call fails.

    Attributes:
        status_code: HTTP status code from the API (None for network errors)
        error_code: Error code from the provider response (if available)
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_code: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code

    @property
    def retryable(self) -> bool:
        """Network failures, throttling and server errors are transient."""
        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500


class RateLimitExceeded(ProviderError):
    """Raised when API rate limits are exceeded and cannot be recovered locally.

    Also raised by the token bucket when a wait would be excessive
    (>20 seconds) rather than blocking indefinitely.
    """

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message, status_code=429, error_code="TooManyRequests")
        self.retry_after = retry_after


class MessageNotFoundError(ProviderError):
    """Raised when the target message or thread no longer exists at the provider."""

    def __init__(self, message: str, message_id: str | None = None):
        super().__init__(message, status_code=404, error_code="ItemNotFound")
        self.message_id = message_id


class QueueError(MailflowError):
    """Raised when the durable queue cannot accept or update a job."""

    pass


class JobFailedError(MailflowError):
    """Raised by an outermost job handler to hand a failure to the retry policy.

    Internal helpers return structured results; only this exception (or any
    other exception escaping the handler) makes the queue retry.

    Attributes:
        job_name: Name of the failing job
        result: The structured result that was translated into this error
    """

    def __init__(self, message: str, job_name: str | None = None, result: dict | None = None):
        super().__init__(message)
        self.job_name = job_name
        self.result = result or {}


class SummarizationError(MailflowError):
    """Raised when the digest summarizer fails after the SDK's own retries."""

    pass


class DigestError(MailflowError):
    """Raised when a digest cannot be rendered or delivered."""

    pass


class ActionValidationError(MailflowError):
    """Raised when an action cannot be scheduled or performed as specified.

    Examples: an action type that cannot be delayed, a non-positive delay,
    or a LABEL action without a label. Never retried.
    """

    def __init__(self, message: str, action_type: str | None = None):
        super().__init__(message)
        self.action_type = action_type


class JobConflictError(MailflowError):
    """Raised when a bulk job is started while another one is still active.

    Attributes:
        active_job_id: The job that is already PENDING or RUNNING
    """

    def __init__(self, message: str, active_job_id: str | None = None):
        super().__init__(message)
        self.active_job_id = active_job_id
