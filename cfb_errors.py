"""
Error taxonomy for the CFB model.

Missing stats, ratings or lines are not exceptions: callers log them and
lower confidence or skip the entity. The classes below abort a computation.
"""


class CfbModelError(Exception):
    """Base class for all model errors."""


class ConfigError(CfbModelError, ValueError):
    """Invalid configuration value or unreadable config file."""


class InsufficientSampleError(CfbModelError, ValueError):
    """Training/calibration input is below the minimum usable size."""

    def __init__(self, what: str, n: int, required: int):
        self.what = what
        self.n = n
        self.required = required
        super().__init__(f"{what}: {n} samples, need at least {required}")


class InvariantViolation(CfbModelError, RuntimeError):
    """A model invariant was broken; the batch run must stop."""


class NumericInstabilityError(CfbModelError, ArithmeticError):
    """A fit produced NaN/inf coefficients or metrics."""
