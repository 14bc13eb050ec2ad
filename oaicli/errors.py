"""Exception taxonomy for the agent."""


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (missing credentials, bad config file, etc.)."""


class ModelQueryError(AgentError):
    """Raised when a model query times out, fails in transport, or returns garbage."""


class CompressionError(AgentError):
    """Raised when the history snapshot could not be produced."""
