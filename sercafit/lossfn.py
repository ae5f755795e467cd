# lossfn.py
from typing import Callable, Mapping

import numpy as np

from sercafit.errors import ConfigError, NumericDegeneracy


class LinearReadout:
    """
    Fixed linear combination of state occupancies, e.g. bound Ca per pump:
    singly-bound states weighted 1, doubly-bound states weighted 2.

    Called with a (n_states,) occupancy it returns a float; with a
    (n_points, n_states) array it returns one value per point.
    """

    def __init__(self, weights: Mapping[int, float], n_states: int):
        self.n_states = int(n_states)
        w = np.zeros(self.n_states, dtype=np.float64)
        for state, weight in weights.items():
            state = int(state)
            if not (0 <= state < self.n_states):
                raise ConfigError(f"readout weight on state {state}, valid states are 0..{self.n_states - 1}")
            w[state] = float(weight)
        if not np.any(w):
            raise ConfigError("readout has no non-zero weight")
        self.weights = w

    @classmethod
    def from_dict(cls, table: Mapping, n_states: int) -> "LinearReadout":
        """``[readout]`` table: ``states = [...]`` and ``weights = [...]`` (default 1)."""
        states = list(table.get("states", []) or [])
        weights = table.get("weights")
        if weights is None:
            weights = [1.0] * len(states)
        if len(weights) != len(states):
            raise ConfigError(f"readout has {len(states)} states but {len(weights)} weights")
        return cls(dict(zip(states, weights)), n_states)

    def __call__(self, occupancy):
        occ = np.asarray(occupancy, dtype=np.float64)
        if occ.shape[-1] != self.n_states:
            raise ConfigError(f"occupancy has {occ.shape[-1]} states, readout expects {self.n_states}")
        out = occ @ self.weights
        return float(out) if out.ndim == 0 else out

    def __repr__(self):
        terms = " + ".join(f"{w:g}*S{i}" for i, w in enumerate(self.weights) if w)
        return f"LinearReadout({terms})"


def readout_curve(occupancy_by_point, weighting_fn: Callable) -> np.ndarray:
    occ = np.asarray(occupancy_by_point, dtype=np.float64)
    if occ.ndim != 2:
        raise ConfigError(f"occupancy must be (n_points, n_states), got shape {occ.shape}")
    if not np.all(np.isfinite(occ)):
        raise NumericDegeneracy("occupancy contains NaN/Inf")
    return np.array([float(weighting_fn(row)) for row in occ], dtype=np.float64)


def normalize_by_max(curve) -> np.ndarray:
    curve = np.asarray(curve, dtype=np.float64)
    if not np.all(np.isfinite(curve)):
        raise NumericDegeneracy("readout curve contains NaN/Inf")
    peak = curve.max()
    if not peak > 0.0:
        raise NumericDegeneracy(f"readout curve maximum is {peak}, cannot normalize")
    return curve / peak


def residual(experimental, simulated) -> float:
    """Root of the summed squared differences (not a mean)."""
    experimental = np.asarray(experimental, dtype=np.float64)
    simulated = np.asarray(simulated, dtype=np.float64)
    if experimental.shape != simulated.shape:
        raise ConfigError(f"experimental curve has {experimental.size} points, simulated has {simulated.size}")
    diff = experimental - simulated
    value = float(np.sqrt(np.sum(diff * diff)))
    if not np.isfinite(value):
        raise NumericDegeneracy("residual is not finite")
    return value


def score(occupancy_by_point, weighting_fn: Callable, experimental_curve) -> float:
    """
    Residual of one sweep against the experimental curve.

    Each point's occupancy is reduced with ``weighting_fn``, the curve is
    divided by its maximum, and the root-sum-of-squares distance to the
    experimental normalized curve is returned.

    Raises:
        NumericDegeneracy: non-finite occupancy or residual, or a curve whose
            maximum is not positive.
        ConfigError: curve lengths differ.
    """
    simulated = normalize_by_max(readout_curve(occupancy_by_point, weighting_fn))
    return residual(experimental_curve, simulated)
