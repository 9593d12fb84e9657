"""Custom exceptions for the address pool and egress selection."""


class ProxyError(Exception):
    """Base class for proxy-related errors."""


class ProxyUnavailableError(ProxyError):
    """Raised when no local egress address can be selected."""


class ProxyConfigurationError(ProxyError):
    """Raised when proxy configuration is invalid or incomplete."""


class PoolConstructionError(ProxyConfigurationError):
    """Raised when a subnet token cannot be parsed into a pool entry."""

    def __init__(self, message: str, token: str | None = None) -> None:
        super().__init__(message)
        self.token = token
