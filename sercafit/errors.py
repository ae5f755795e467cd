"""
Exception hierarchy for sercafit.

ConfigError is raised before any simulation work starts, NumericDegeneracy is
raised per evaluation and turned into the worst possible fitness by the
fitness oracle, SimulationCancelled unwinds a cooperative cancel request.
"""


class SercaFitError(Exception):
    """Base class for all sercafit errors."""


class ConfigError(SercaFitError, ValueError):
    """Malformed topology, out-of-range run sizes or inconsistent inputs."""


class NumericDegeneracy(SercaFitError, ArithmeticError):
    """NaN/Inf reached an occupancy, a curve or a residual."""


class SimulationCancelled(SercaFitError, RuntimeError):
    """A cancel callback asked a sweep to stop between titration points."""
