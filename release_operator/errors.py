"""Exception types raised by the release operator."""


class ReleaseOperatorError(Exception):
    """Base class for release operator errors"""


class ConfigurationError(ReleaseOperatorError, ValueError):
    """Invalid strategy, criteria or persisted rollout state"""


class UpstreamError(ReleaseOperatorError):
    """An external call (metrics backend, service registry) failed"""


class MetricsError(UpstreamError):
    """The metrics backend could not provide a value"""


class ServiceRegistryError(UpstreamError):
    """The service registry rejected a read or a write"""


class NotFoundError(ServiceRegistryError):
    """The requested service does not exist"""


class ConflictError(ServiceRegistryError):
    """The service was modified concurrently (stale resource version)"""
