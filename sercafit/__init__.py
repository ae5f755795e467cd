"""
sercafit: kinetic Monte Carlo simulation of the SERCA pump cycle and
particle-swarm fitting of its rate constants against titration curves.
"""

__version__ = "0.1.0"

from sercafit.errors import ConfigError, NumericDegeneracy, SimulationCancelled, SercaFitError
from sercafit.network import Transition, ReactionNetwork, build_network
from sercafit.engine import step
from sercafit.simulate import run_sweep, SweepResult, Titration
from sercafit.lossfn import LinearReadout, score
from sercafit.pso import ParticleSwarm, SwarmResult

__all__ = [
    "ConfigError",
    "NumericDegeneracy",
    "SimulationCancelled",
    "SercaFitError",
    "Transition",
    "ReactionNetwork",
    "build_network",
    "step",
    "run_sweep",
    "SweepResult",
    "Titration",
    "LinearReadout",
    "score",
    "ParticleSwarm",
    "SwarmResult",
]
