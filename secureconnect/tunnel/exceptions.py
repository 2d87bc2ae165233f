"""Custom exceptions for tunnel management."""


class TunnelError(Exception):
    """Base exception for tunnel-related errors."""
    pass


class ConfigurationError(TunnelError):
    """Raised when there's an issue with client or tunnel configuration"""
    pass


class InterfaceError(TunnelError):
    """Raised when there's an issue with network interfaces"""
    pass


class ControlPlaneError(TunnelError):
    """Raised when the remote control plane refuses a request or is unreachable"""
    pass


class NegotiationError(TunnelError):
    """Raised when tunnel parameters could not be obtained for a connect"""
    pass


class TunnelUpError(TunnelError):
    """Raised when the privileged bring-up of the tunnel interface fails"""

    def __init__(self, message: str, diagnostic: str = ""):
        super().__init__(message)
        self.diagnostic = diagnostic


class ProxyStartError(TunnelError):
    """Raised when the local obfuscation relay could not be started"""
    pass


class BusyError(TunnelError):
    """Raised when a connect or disconnect is already in flight"""
    pass
