"""Error taxonomy for the device gateway."""


class GatewayError(Exception):
    """Base error for the gateway."""


class TransportError(GatewayError):
    """Raised when the broker connection cannot carry a request."""


class NotConnectedError(TransportError):
    """Raised when publishing while the client is not connected."""


class ProtocolError(GatewayError):
    """Raised when a device payload is unusable for its purpose."""


class RegistrationError(GatewayError):
    """Raised when no account resolves for a device identity claim."""


class CommandError(GatewayError):
    """Raised when a command cannot be addressed to its target device."""
