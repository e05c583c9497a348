"""Exceptions raised by the registry clients."""


class RegistryError(RuntimeError):
    """Raised when a registry request fails (transport error or unexpected HTTP status)."""


class RegistryResponseError(RegistryError):
    """Raised when a registry payload does not have the expected shape."""
