from typing import Mapping

import numpy as np

from sercafit.errors import ConfigError


class RateSpace:
    """
    Maps the optimizer's flat decision vector onto a full rate vector.

    Free rates are searched inside ``bounds`` (insertion order fixes the
    vector layout), fixed rates are merged in unchanged.
    """

    def __init__(self, bounds: Mapping[str, tuple], fixed: Mapping[str, float] | None = None):
        fixed = dict(fixed or {})
        if not bounds:
            raise ConfigError("no free rate constants: [bounds] is empty")

        names, lo, hi = [], [], []
        for k, v in bounds.items():
            if not (isinstance(v, (list, tuple)) and len(v) == 2):
                raise ConfigError(f"bounds.{k} must be a 2-element array [min, max], got: {v}")
            a, b = float(v[0]), float(v[1])
            if not (np.isfinite(a) and np.isfinite(b)):
                raise ConfigError(f"bounds.{k} must be finite, got [{a}, {b}]")
            if a >= b:
                raise ConfigError(f"bounds.{k}: min ({a}) must be smaller than max ({b})")
            if k in fixed:
                raise ConfigError(f"rate '{k}' is both fixed in [rates] and free in [bounds]")
            names.append(k)
            lo.append(a)
            hi.append(b)

        for k, v in fixed.items():
            fixed[k] = float(v)

        self.names = tuple(names)
        self.fixed = fixed
        self.xl = np.array(lo, dtype=float)
        self.xu = np.array(hi, dtype=float)

    @property
    def n_var(self) -> int:
        return len(self.names)

    def unpack(self, x) -> dict:
        x = np.asarray(x, dtype=float)
        if x.shape != (self.n_var,):
            raise ConfigError(f"decision vector has shape {x.shape}, expected ({self.n_var},)")
        rates = dict(self.fixed)
        rates.update({k: float(v) for k, v in zip(self.names, x)})
        return rates

    def pack(self, rates: Mapping[str, float]) -> np.ndarray:
        missing = [k for k in self.names if k not in rates]
        if missing:
            raise ConfigError(f"no value for free rate(s): {', '.join(missing)}")
        return np.array([float(rates[k]) for k in self.names], dtype=float)

    def free(self, x) -> dict:
        """Only the searched rates, in vector order."""
        return {k: float(v) for k, v in zip(self.names, np.asarray(x, dtype=float))}

    def check_network(self, network) -> None:
        known = set(self.names) | set(self.fixed)
        missing = [r for r in network.rate_ids if r not in known]
        if missing:
            raise ConfigError(f"rate constant(s) used by the network but neither fixed nor bounded: {', '.join(missing)}")
        unused = [r for r in known if r not in set(network.rate_ids)]
        if unused:
            raise ConfigError(f"rate constant(s) not used by any transition: {', '.join(sorted(unused))}")
