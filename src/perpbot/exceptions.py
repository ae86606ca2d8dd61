"""Startup-fatal error types shared across the engine."""


class PerpbotError(Exception):
    """Base class for engine errors."""


class ConfigurationError(PerpbotError):
    """Bot configuration or strategy directives are invalid; fatal at startup."""


class CredentialError(PerpbotError):
    """Stored credentials are missing or cannot be decrypted; fatal at startup."""


class StateInvariantError(PerpbotError):
    """A state transition would break a state-machine invariant."""
