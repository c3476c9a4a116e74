"""
Error types for the ACR keeper.

Three severities exist:
- Fatal configuration errors stop the process before any cycle runs.
- Fatal cycle errors abort the current refresh cycle (auth, enumeration).
- Recoverable errors (one registry, one sink) are logged and skipped.
"""


class AcrKeeperError(Exception):
    """Base class for all ACR keeper errors."""
    pass


class ConfigError(AcrKeeperError):
    """Raised when the configuration is missing or malformed."""
    pass


class CycleError(AcrKeeperError):
    """Raised when a whole refresh cycle cannot proceed."""
    pass


class FetchError(AcrKeeperError):
    """Raised when a single registry credential cannot be obtained."""
    pass


class TokenExchangeError(FetchError):
    """Raised when the registry refuses or fails the token exchange."""
    pass


class TokenDecodeError(FetchError):
    """Raised when a registry token payload cannot be decoded."""
    pass


class PublishError(AcrKeeperError):
    """Raised when a sink fails to persist the credential document."""
    pass


__all__ = [
    "AcrKeeperError",
    "ConfigError",
    "CycleError",
    "FetchError",
    "TokenExchangeError",
    "TokenDecodeError",
    "PublishError",
]
