"""Error taxonomy shared by the queue, the AI client and the generation pipeline."""

from __future__ import annotations


class PipelineError(RuntimeError):
    """Pipeline failure with a retryability hint for the job queue."""

    transient = False

    def __init__(self, message: str, *, transient: bool | None = None) -> None:
        super().__init__(message)
        if transient is not None:
            self.transient = transient


class ConfigurationError(PipelineError):
    """Malformed or missing job payload fields. Never retried."""


class TransientProviderError(PipelineError):
    """Network failure, 429 or 5xx from the LLM API."""

    transient = True


class MalformedResponseError(TransientProviderError):
    """Plan response text failed JSON decoding or schema validation."""


class PersistenceError(PipelineError):
    """A storage write failed mid-pipeline."""


class LoggingError(PipelineError):
    """Usage ledger or audit trail write failed. Caught at the writer boundary."""


class ProviderRequestError(RuntimeError):
    """LLM API request failed after the client's own retry policy."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        detail: str | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail
        self.retryable = retryable
