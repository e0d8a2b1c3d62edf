"""Exception hierarchy for the PCISPH solver."""

from typing import Any, Dict, Optional


class PCISPHError(Exception):
    """Base class for all solver errors."""


class ConfigurationError(PCISPHError, ValueError):
    """Inconsistent model input or invalid solver parameters.

    Raised before any kernel runs, e.g. when the particle type counts do not
    add up to the particle count, or when a watch path selects a particle
    index outside the buffers.
    """


class BackendError(PCISPHError, RuntimeError):
    """Compute backend failure (kernel lookup, dispatch, buffer mapping).

    Device state after such a failure is not trusted, so there is no retry.
    """

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        self.context = dict(context or {})
        if self.context:
            details = ", ".join(f"{k}={v}" for k, v in self.context.items())
            message = f"{message} ({details})"
        super().__init__(message)
