"""Exception types raised by the registration pipeline."""


class ConfigurationError(ValueError):
    """Invalid sizes, alignment or parameters, detected before anything is enqueued."""


class BackendError(RuntimeError):
    """Allocation or kernel execution failure on the compute backend."""
