import logging

import numpy as np
from pymoo.core.problem import ElementwiseProblem

from config.constants import FAIL_VALUE
from sercafit.errors import NumericDegeneracy
from sercafit.lossfn import score
from sercafit.simulate import candidate_seed, run_sweep

logger = logging.getLogger(__name__)


class ResidualProblem(ElementwiseProblem):
    """
    Single objective: F = [residual of the simulated titration curve].

    Each evaluation runs a full ensemble sweep with the candidate rates and
    a seed derived from (seed, x); degenerate evaluations (non-finite
    candidate, NaN/Inf occupancy or residual) report ``fail_value``.
    """

    def __init__(self, network, space, species, titration, readout, sim, seed=None,
                 fail_value=FAIL_VALUE, elementwise_runner=None, cancel=None):
        kwargs = {}
        # pymoo keeps its looped runner unless a parallel one is given
        if elementwise_runner is not None:
            kwargs["elementwise_runner"] = elementwise_runner
        super().__init__(
            n_var=space.n_var,
            n_obj=1,
            n_ieq_constr=0,
            xl=space.xl,
            xu=space.xu,
            **kwargs
        )
        self.network = network
        self.space = space
        self.species = dict(species)
        self.titration = titration
        self.readout = readout
        self.sim = sim
        self.seed = seed
        self.fail_value = float(fail_value)
        # In-process only: a parallel runner pickles the problem
        self.cancel = cancel

    def simulate(self, rates, seed=None, cancel=None):
        """Ensemble sweep for a full rate vector; ``cancel`` is checked before each point."""
        return run_sweep(
            self.network,
            rates,
            self.species,
            self.titration,
            n_molecules=self.sim.n_molecules,
            n_steps=self.sim.n_steps,
            sample_interval=self.sim.sample_interval,
            tail_window=self.sim.tail_window,
            dt=self.sim.dt,
            seed=seed,
            initial_state=self.sim.initial_state,
            cancel=cancel,
        )

    def residual_of(self, x) -> float:
        x = np.asarray(x, dtype=float)
        if not np.all(np.isfinite(x)):
            raise NumericDegeneracy("candidate rate vector contains NaN/Inf")
        result = self.simulate(self.space.unpack(x), seed=candidate_seed(self.seed, x), cancel=self.cancel)
        return score(result.steady_state, self.readout, self.titration.experimental)

    def _evaluate(self, x, out, *args, **kwargs):
        try:
            value = self.residual_of(x)
        except NumericDegeneracy as exc:
            logger.debug(f"[Fit] Degenerate candidate {self.space.free(x)}: {exc}")
            value = self.fail_value
        out["F"] = np.array([value], dtype=float)
