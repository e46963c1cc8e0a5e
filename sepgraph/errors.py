# sepgraph/errors.py


class ConfigurationError(ValueError):
    """Bad problem setup: dimensions, kernel kinds, weights, pointer arrays."""


class NumericalFailure(RuntimeError):
    """Non-finite residuals or a breakdown inside a projector."""
