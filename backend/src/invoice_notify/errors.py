from __future__ import annotations


class PipelineError(Exception):
    """Base class for errors raised by the notification pipeline."""


class ConfigurationError(PipelineError):
    """A required URL, secret or API key is missing."""


class AuthenticationError(PipelineError):
    """A shared secret was missing or did not match."""


class ValidationError(PipelineError):
    """A request payload was malformed."""


class UpstreamServiceError(PipelineError):
    """The rendering service or the email provider failed (5xx, network, timeout)."""

    def __init__(self, message: str, *, status_code: int | None = None, body: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class NotFoundError(KeyError):
    """Raised when an invoice, client or payment does not exist for the workspace."""

    def __init__(self, entity: str, identifier: object) -> None:
        super().__init__(f"{entity} not found: {identifier}")
        self.entity = entity
        self.identifier = identifier

    def __str__(self) -> str:
        return str(self.args[0])


class RecipientValidationError(PipelineError):
    """The recipient address is permanently invalid; retrying will not help."""

    def __init__(self, recipient: str, reason: str) -> None:
        super().__init__(f"recipient rejected: {reason}")
        self.recipient = recipient
        self.reason = reason


class InvalidTransitionError(PipelineError):
    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"invoice status transition not allowed: {current} -> {target}")
        self.current = current
        self.target = target


class JobDecodeError(PipelineError):
    """A queued message could not be decoded against any known job schema."""


class PermanentJobError(PipelineError):
    """Wraps a failure that must not be retried by the queue."""

    def __init__(self, cause: BaseException) -> None:
        super().__init__(str(cause))
        self.cause = cause
