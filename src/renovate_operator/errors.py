"""
Error kinds raised by the operator core.

The executor and scheduler tell these apart:
- NotFoundError: resource or workload absent (often recovered by inference)
- ConflictError: optimistic-concurrency version mismatch (retried locally)
- UnparsableError: log or discovery output malformed
- UnauthorizedError: webhook trust check failed (never retried)
"""


class OperatorError(Exception):
    """Base exception for the renovate operator."""
    pass


class NotFoundError(OperatorError):
    """The requested resource or workload does not exist."""

    def __init__(self, kind: str, name: str):
        super().__init__(f"{kind} '{name}' not found")
        self.kind = kind
        self.name = name


class ConflictError(OperatorError):
    """
    Write rejected because the stored resource version moved on.

    Callers re-read and retry (see retry.retry_on_conflict).
    """
    pass


class UnparsableError(OperatorError):
    """Log or discovery output could not be parsed."""
    pass


class DiscoveryParseError(UnparsableError):
    """Discovery output did not contain a JSON array of project names."""
    pass


class DiscoveryError(OperatorError):
    """Discovery workload failed or could not be started."""
    pass


class UnauthorizedError(OperatorError):
    """Webhook token or signature rejected."""
    pass


class WebhookConfigError(OperatorError):
    """Webhook authentication is enabled but its secret is misconfigured."""
    pass
