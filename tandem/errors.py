"""Exception hierarchy shared by the providers, the agent loop and the CLI."""


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (missing model, bad API key, etc.)."""


class ProviderError(AgentError):
    """Base class for failures of a remote inference call."""


class TransportError(ProviderError):
    """Network/HTTP failure, or an error payload returned by the remote API."""


class RateLimitedError(ProviderError):
    """The remote API asked us to slow down."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class MalformedResponseError(ProviderError):
    """The response could not be parsed, or carried no usable choice."""


class SummarizationError(AgentError):
    """Compacting the conversation failed."""


class EmptySummaryError(SummarizationError):
    """The summarization call returned no usable text."""


class Canceled(Exception):
    """The user interrupted the current loop.

    Not an AgentError: the agent loop reports it as the "canceled" outcome.
    """
