"""Exceptions raised by the solver framework.

Only misconfiguration and unrecoverable numerical corruption are raised.
Non-convergence and singular systems are reported through
:class:`~LDU.datastructures.SolverPerformance`.
"""


class ConfigurationError(ValueError):
    """Unknown solver/preconditioner name or malformed solver controls."""


class NumericalCorruptionError(FloatingPointError):
    """A solution update produced values that are no longer finite."""
