from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable

import numpy as np
from tqdm import tqdm

from config.constants import C1, C2, CLAMP_POSITIONS, N_ITERATIONS, N_PARTICLES, VELOCITY_SCALE, W_MAX, W_MIN
from config.logconf import TqdmToLogger
from sercafit.errors import ConfigError, SimulationCancelled

logger = logging.getLogger(__name__)


@dataclass
class Particle:
    position: np.ndarray
    velocity: np.ndarray
    best_position: np.ndarray
    best_fitness: float
    fitness: float


@dataclass
class SwarmState:
    """
    Whole swarm as row-aligned arrays; row i is particle i.

    ``history[k]`` is the global best fitness after iteration k
    (k = 0 is the initial evaluation).
    """
    positions: np.ndarray
    velocities: np.ndarray
    fitness: np.ndarray
    best_positions: np.ndarray
    best_fitness: np.ndarray
    global_best_position: np.ndarray
    global_best_fitness: float
    iteration: int = 0
    history: list = field(default_factory=list)

    @property
    def n_particles(self) -> int:
        return self.positions.shape[0]

    def particle(self, i: int) -> Particle:
        return Particle(
            position=self.positions[i].copy(),
            velocity=self.velocities[i].copy(),
            best_position=self.best_positions[i].copy(),
            best_fitness=float(self.best_fitness[i]),
            fitness=float(self.fitness[i]),
        )

    @property
    def particles(self) -> list[Particle]:
        return [self.particle(i) for i in range(self.n_particles)]


@dataclass(frozen=True)
class SwarmResult:
    best_position: np.ndarray
    best_fitness: float
    best_rates: dict
    history: np.ndarray
    n_iterations: int
    n_evaluations: int
    cancelled: bool
    elapsed: float


class ParticleSwarm:
    """
    Inertia-weighted particle swarm minimizing a single-objective pymoo problem.

    Each iteration is two-phase: every particle is moved and evaluated (the
    batch may run in parallel through the problem's elementwise runner), then
    personal and global bests are synchronized. A particle therefore always
    moves with the global best of the previous iteration.

    Bests are replaced on ``<=`` so ties go to the newest candidate. A
    non-finite fitness (the problem's failure sentinel) never replaces a best.
    Positions are not clipped to the bounds unless ``clamp_positions`` is set.
    """

    def __init__(self, problem, n_particles=N_PARTICLES, n_iterations=N_ITERATIONS,
                 w_max=W_MAX, w_min=W_MIN, c1=C1, c2=C2, clamp_positions=CLAMP_POSITIONS,
                 seed=None, names=None, reporter=None, cancel: Callable[[], bool] | None = None,
                 progress=False):
        if int(n_particles) < 1:
            raise ConfigError(f"n_particles must be >= 1, got {n_particles}")
        if int(n_iterations) < 1:
            raise ConfigError(f"n_iterations must be >= 1, got {n_iterations}")
        if w_min > w_max:
            raise ConfigError(f"w_min ({w_min}) must not exceed w_max ({w_max})")
        if c1 < 0 or c2 < 0:
            raise ConfigError(f"acceleration coefficients must be non-negative, got c1={c1}, c2={c2}")

        self.problem = problem
        self.xl = np.asarray(problem.xl, dtype=float)
        self.xu = np.asarray(problem.xu, dtype=float)
        self.n_particles = int(n_particles)
        self.n_iterations = int(n_iterations)
        self.w_max = float(w_max)
        self.w_min = float(w_min)
        self.c1 = float(c1)
        self.c2 = float(c2)
        self.clamp_positions = bool(clamp_positions)
        self.rng = np.random.default_rng(seed)
        if names is None:
            space = getattr(problem, "space", None)
            names = space.names if space is not None else [f"x{i}" for i in range(self.xl.size)]
        self.names = tuple(names)
        self.reporter = reporter
        self.cancel = cancel
        self.progress = progress
        self.n_evaluations = 0

    def inertia(self, iteration: int) -> float:
        """Linear decay: w_max at iteration 1, w_min at the last iteration."""
        if self.n_iterations == 1:
            return self.w_max
        frac = (iteration - 1) / (self.n_iterations - 1)
        return self.w_max - (self.w_max - self.w_min) * frac

    def rates(self, x) -> dict:
        return {k: float(v) for k, v in zip(self.names, x)}

    def evaluate(self, X) -> np.ndarray:
        out = self.problem.evaluate(X, return_as_dictionary=True)
        self.n_evaluations += X.shape[0]
        return np.asarray(out["F"], dtype=float).reshape(X.shape[0], -1)[:, 0]

    def _report_particles(self, iteration, X, F):
        if self.reporter is None:
            return
        for i in range(X.shape[0]):
            self.reporter.particle_evaluated(iteration, i, self.rates(X[i]), float(F[i]))

    def _report_iteration(self, state):
        if self.reporter is not None:
            self.reporter.iteration_completed(
                state.iteration, state.global_best_fitness, self.rates(state.global_best_position)
            )

    def initialize(self) -> SwarmState:
        n, d = self.n_particles, self.xl.size
        span = self.xu - self.xl
        X = self.xl + span * self.rng.random((n, d))
        V = VELOCITY_SCALE * span * self.rng.random((n, d))

        F = self.evaluate(X)
        self._report_particles(0, X, F)

        ok = np.isfinite(F)
        best_f = np.where(ok, F, np.inf)
        if np.any(ok):
            g = int(np.argmin(best_f))
            g_pos, g_f = X[g].copy(), float(best_f[g])
        else:
            logger.warning("[PSO] No particle produced a finite residual at initialization.")
            g_pos, g_f = X[0].copy(), float(np.inf)

        state = SwarmState(
            positions=X,
            velocities=V,
            fitness=F,
            best_positions=X.copy(),
            best_fitness=best_f,
            global_best_position=g_pos,
            global_best_fitness=g_f,
            iteration=0,
            history=[g_f],
        )
        self._report_iteration(state)
        return state

    def step(self, state: SwarmState) -> SwarmState:
        """Move every particle, evaluate all, then synchronize bests."""
        k = state.iteration + 1
        w = self.inertia(k)
        X, V = state.positions, state.velocities
        n, d = X.shape

        r1 = self.rng.random((n, d))
        r2 = self.rng.random((n, d))
        V = (w * V
             + self.c1 * r1 * (state.best_positions - X)
             + self.c2 * r2 * (state.global_best_position - X))
        X = X + V
        if self.clamp_positions:
            X = np.clip(X, self.xl, self.xu)

        F = self.evaluate(X)
        self._report_particles(k, X, F)

        ok = np.isfinite(F)
        n_bad = int(np.sum(~ok))
        if n_bad:
            logger.debug(f"[PSO] Iteration {k}: {n_bad} degenerate evaluation(s) excluded from bests.")

        improved = ok & (F <= state.best_fitness)
        best_pos = state.best_positions.copy()
        best_f = state.best_fitness.copy()
        best_pos[improved] = X[improved]
        best_f[improved] = F[improved]

        g_pos, g_f = state.global_best_position, state.global_best_fitness
        if np.any(ok):
            i = int(np.argmin(np.where(ok, F, np.inf)))
            if F[i] <= g_f:
                g_pos, g_f = X[i].copy(), float(F[i])

        new_state = SwarmState(
            positions=X,
            velocities=V,
            fitness=F,
            best_positions=best_pos,
            best_fitness=best_f,
            global_best_position=g_pos,
            global_best_fitness=g_f,
            iteration=k,
            history=state.history + [g_f],
        )
        self._report_iteration(new_state)
        return new_state

    def run(self) -> SwarmResult:
        t0 = time.time()
        logger.info(
            f"[PSO] particles={self.n_particles}, iterations={self.n_iterations}, n_var={self.xl.size}, "
            f"w={self.w_max}->{self.w_min}, c1={self.c1}, c2={self.c2}, clamp={self.clamp_positions}"
        )
        state = self.initialize()
        logger.info(f"[PSO] Initial global best residual: {state.global_best_fitness:.6g}")

        cancelled = False
        bar = tqdm(
            range(1, self.n_iterations + 1),
            desc="PSO",
            disable=not self.progress,
            file=TqdmToLogger(logger),
            mininterval=5,
            ascii=True,
        )
        for _ in bar:
            if self.cancel is not None and self.cancel():
                logger.warning(f"[PSO] Cancelled after iteration {state.iteration}; keeping best so far.")
                cancelled = True
                break
            try:
                state = self.step(state)
            except SimulationCancelled as exc:
                # the interrupted iteration is discarded
                logger.warning(f"[PSO] {exc}; keeping best of iteration {state.iteration}.")
                cancelled = True
                break
            bar.set_postfix(best=f"{state.global_best_fitness:.4g}")
        bar.close()

        elapsed = time.time() - t0
        return SwarmResult(
            best_position=state.global_best_position.copy(),
            best_fitness=float(state.global_best_fitness),
            best_rates=self.rates(state.global_best_position),
            history=np.asarray(state.history, dtype=float),
            n_iterations=state.iteration,
            n_evaluations=self.n_evaluations,
            cancelled=cancelled,
            elapsed=elapsed,
        )
