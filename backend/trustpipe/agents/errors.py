"""
Error taxonomy for generative agent calls.
"""


class AgentProcessingError(Exception):
    """Raised when an agent fails to process content."""
    pass


class AgentAuthenticationError(AgentProcessingError):
    """Raised when the agent rejects our credentials. Never retried."""
    pass


class AgentTransientError(AgentProcessingError):
    """Raised for rate limits, timeouts and network failures. Safe to retry."""
    pass


def is_authentication_error(error: BaseException) -> bool:
    """Check whether an error is a credential failure."""
    return isinstance(error, AgentAuthenticationError)


def is_transient_error(error: BaseException) -> bool:
    """Check whether an error is worth retrying."""
    return isinstance(error, (AgentTransientError, TimeoutError, ConnectionError))
