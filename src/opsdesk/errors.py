# errors.py
# Exceptions that cross the agent boundary. Business-rule failures are never
# raised: executors return a Failure outcome instead.


class AgentError(Exception):
    """Base class for faults that end a request."""


class AuthenticationError(AgentError):
    """Raised when a credential does not resolve to a known user."""


class ModelCallError(AgentError):
    """Raised when the inference call fails or times out. Always fatal to the request."""


class ConfigurationError(AgentError):
    """Raised when required settings (API key, database URL) are missing."""
