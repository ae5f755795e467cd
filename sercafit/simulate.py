from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Mapping, Sequence

import numba
import numpy as np
import pandas as pd
from numba import njit, prange

from sercafit.engine import select_transition
from sercafit.errors import ConfigError, SimulationCancelled

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Titration:
    """
    Calibration curve: the titrated species, its concentrations and the
    experimental normalized readout at each of them (same length, same order).
    """
    species: str
    values: np.ndarray
    experimental: np.ndarray | None = None

    def __post_init__(self):
        values = np.asarray(self.values, dtype=float).ravel()
        object.__setattr__(self, "values", values)
        if values.size == 0:
            raise ConfigError(f"titration of '{self.species}' has no points")
        if self.experimental is not None:
            exp = np.asarray(self.experimental, dtype=float).ravel()
            if exp.size != values.size:
                raise ConfigError(
                    f"titration of '{self.species}' has {values.size} concentrations "
                    f"but {exp.size} experimental values"
                )
            object.__setattr__(self, "experimental", exp)

    def __len__(self):
        return self.values.size


@dataclass(frozen=True)
class SweepResult:
    """
    Output of one titration sweep.

    histograms[p, b, s] counts molecules found in state s at the end of
    bucket b of titration point p. steady_state[p] is the tail-window average
    of histograms[p] divided by n_molecules.
    """
    species: str
    values: np.ndarray
    steady_state: np.ndarray
    histograms: np.ndarray
    time: np.ndarray
    n_molecules: int
    tail_window: int
    labels: tuple = ()

    @property
    def n_points(self) -> int:
        return self.values.size

    def occupancy(self, point: int) -> np.ndarray:
        """Fraction of molecules per state for every bucket of one point."""
        return self.histograms[point] / float(self.n_molecules)

    def time_course(self, point: int = 0) -> pd.DataFrame:
        labels = list(self.labels) or [f"S{i}" for i in range(self.histograms.shape[2])]
        df = pd.DataFrame(self.occupancy(point), columns=labels)
        df.insert(0, "time", self.time)
        return df

    def steady_state_frame(self) -> pd.DataFrame:
        labels = list(self.labels) or [f"S{i}" for i in range(self.steady_state.shape[1])]
        df = pd.DataFrame(self.steady_state, columns=labels)
        df.insert(0, self.species, self.values)
        return df


@njit(cache=True, nogil=True, parallel=True)
def simulate_ensemble(indptr, targets, probs, n_states, initial_state, seeds,
                      n_steps, sample_interval, n_chunks):
    """
    Run len(seeds) independent trajectories and count states per bucket.

    Molecules are split into n_chunks contiguous blocks; each block fills its
    own slice of ``partial`` so no counter is shared between threads. Each
    trajectory reseeds the thread's generator from its own seed, so counts do
    not depend on how blocks are scheduled.

    Returns:
        int64 array (n_chunks, n_buckets, n_states) of partial counts.
    """
    n_molecules = seeds.size
    n_buckets = n_steps // sample_interval
    partial = np.zeros((n_chunks, n_buckets, n_states), dtype=np.int64)
    chunk = (n_molecules + n_chunks - 1) // n_chunks
    for c in prange(n_chunks):
        lo = c * chunk
        hi = min(lo + chunk, n_molecules)
        for m in range(lo, hi):
            np.random.seed(seeds[m])
            state = initial_state
            tick = 0
            bucket = 0
            for n in range(n_steps):
                u = np.float32(np.random.random())
                state = select_transition(u, state, indptr, targets, probs)
                tick += 1
                if tick == sample_interval:
                    partial[c, bucket, state] += 1
                    bucket += 1
                    tick = 0
    return partial


def validate_run(network, n_molecules, n_steps, sample_interval, tail_window, dt, initial_state=0):
    """Raise ConfigError for run sizes the tail average cannot be computed from."""
    if int(n_molecules) <= 0:
        raise ConfigError(f"n_molecules must be positive, got {n_molecules}")
    if int(n_steps) <= 0:
        raise ConfigError(f"n_steps must be positive, got {n_steps}")
    if int(sample_interval) < 1:
        raise ConfigError(f"sample_interval must be >= 1, got {sample_interval}")
    if int(sample_interval) > int(n_steps):
        raise ConfigError(f"sample_interval ({sample_interval}) exceeds n_steps ({n_steps})")
    if int(tail_window) < 1:
        raise ConfigError(f"tail_window must be >= 1, got {tail_window}")
    if int(tail_window) >= int(n_steps):
        raise ConfigError(f"tail_window ({tail_window}) must be smaller than n_steps ({n_steps})")
    n_buckets = int(n_steps) // int(sample_interval)
    if int(tail_window) > n_buckets:
        raise ConfigError(
            f"tail_window ({tail_window}) exceeds the {n_buckets} buckets recorded "
            f"with n_steps={n_steps}, sample_interval={sample_interval}"
        )
    if not (np.isfinite(dt) and dt > 0):
        raise ConfigError(f"dt must be a positive finite number, got {dt}")
    if not (0 <= int(initial_state) < network.n_states):
        raise ConfigError(f"initial_state {initial_state} is outside 0..{network.n_states - 1}")


def molecule_seeds(seed_seq: np.random.SeedSequence, n_molecules: int) -> np.ndarray:
    return seed_seq.generate_state(int(n_molecules), dtype=np.uint32)


def candidate_seed(base_seed, x) -> int:
    """
    Seed for evaluating candidate ``x``: a pure function of the base seed
    and the bytes of ``x``, so an evaluation gives the same result in any
    worker process and in any order.
    """
    words = np.frombuffer(np.ascontiguousarray(x, dtype=np.float64).tobytes(), dtype=np.uint32)
    entropy = [int(base_seed or 0), *(int(w) for w in words)]
    return int(np.random.SeedSequence(entropy).generate_state(1, dtype=np.uint64)[0])


def run_sweep(network, rates: Mapping[str, float], species_fixed: Mapping[str, float],
              titration: Titration, n_molecules: int, n_steps: int, sample_interval: int,
              tail_window: int, dt: float, seed=None, initial_state: int = 0,
              cancel: Callable[[], bool] | None = None, n_chunks: int | None = None) -> SweepResult:
    """
    Simulate the ensemble at every titration point and reduce it to a
    steady-state occupancy per state.

    Args:
        network (ReactionNetwork): state graph.
        rates: rate id -> value (every rate of the network).
        species_fixed: species held constant over the sweep.
        titration (Titration): titrated species and its concentrations.
        n_molecules, n_steps: ensemble size and trajectory length.
        sample_interval: steps per histogram bucket.
        tail_window: number of trailing buckets averaged.
        dt: step length in seconds.
        seed: base seed; None draws fresh entropy.
        initial_state: state every trajectory starts from.
        cancel: checked before every titration point.
        n_chunks: molecule blocks run in parallel, defaults to numba's thread count.

    Returns:
        SweepResult
    """
    validate_run(network, n_molecules, n_steps, sample_interval, tail_window, dt, initial_state)
    if titration.species in species_fixed:
        logger.debug(f"[Sweep] Titrated species '{titration.species}' overrides its fixed concentration.")

    conc = dict(species_fixed)
    conc[titration.species] = float(titration.values[0])
    network.check_inputs(rates, conc)

    n_chunks = int(n_chunks or numba.get_num_threads())
    n_chunks = max(1, min(n_chunks, int(n_molecules)))
    n_buckets = int(n_steps) // int(sample_interval)

    children = np.random.SeedSequence(seed).spawn(len(titration))
    hist = np.zeros((len(titration), n_buckets, network.n_states), dtype=np.int64)
    steady = np.zeros((len(titration), network.n_states), dtype=np.float64)

    for p, value in enumerate(titration.values):
        if cancel is not None and cancel():
            raise SimulationCancelled(f"sweep cancelled before point {p + 1}/{len(titration)}")

        conc[titration.species] = float(value)
        probs = network.edge_probabilities(rates, conc, dt)
        seeds = molecule_seeds(children[p], n_molecules)
        partial = simulate_ensemble(
            network.indptr, network.targets, probs, network.n_states, int(initial_state),
            seeds, int(n_steps), int(sample_interval), n_chunks,
        )
        hist[p] = partial.sum(axis=0)
        steady[p] = hist[p, -int(tail_window):].mean(axis=0) / float(n_molecules)

    time = (np.arange(1, n_buckets + 1) * int(sample_interval)) * float(dt)
    return SweepResult(
        species=titration.species,
        values=titration.values.copy(),
        steady_state=steady,
        histograms=hist,
        time=time,
        n_molecules=int(n_molecules),
        tail_window=int(tail_window),
        labels=network.labels,
    )


def run_point(network, rates, concentrations, n_molecules, n_steps, sample_interval,
              dt, seed=None, initial_state=0, tail_window=1) -> SweepResult:
    """
    Single-concentration run, e.g. a time course at a reference Ca level.
    The first species of ``concentrations`` is reported as the swept one.
    """
    conc = dict(concentrations)
    species = next(iter(conc), "none")
    titration = Titration(species, [conc.pop(species, 0.0)])
    return run_sweep(network, rates, conc, titration, n_molecules, n_steps, sample_interval,
                     tail_window, dt, seed=seed, initial_state=initial_state)


def summarize(result: SweepResult, readout=None) -> Sequence[str]:
    """One log line per titration point."""
    lines = []
    for p, value in enumerate(result.values):
        row = result.steady_state[p]
        top = np.argsort(row)[::-1][:3]
        parts = ", ".join(f"{result.labels[s] if result.labels else s}={row[s]:.3f}" for s in top)
        extra = f" readout={readout(row):.4g}" if readout is not None else ""
        lines.append(f"{result.species}={value:.4g}: {parts}{extra}")
    return lines
