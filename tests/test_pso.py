import numpy as np
import pytest
from pymoo.core.problem import ElementwiseProblem

from sercafit.errors import ConfigError
from sercafit.pso import ParticleSwarm


class Sphere(ElementwiseProblem):
    def __init__(self, n_var=3):
        super().__init__(n_var=n_var, n_obj=1, xl=-5.0 * np.ones(n_var), xu=5.0 * np.ones(n_var))

    def _evaluate(self, x, out, *args, **kwargs):
        out["F"] = np.array([float(np.sum((x - 1.0) ** 2))])


class Constant(ElementwiseProblem):
    def __init__(self, value=1.0):
        super().__init__(n_var=2, n_obj=1, xl=np.zeros(2), xu=np.ones(2))
        self.value = value

    def _evaluate(self, x, out, *args, **kwargs):
        out["F"] = np.array([self.value])


class HalfBroken(ElementwiseProblem):
    """Finite only for x[0] < 0.5; NaN otherwise."""

    def __init__(self):
        super().__init__(n_var=1, n_obj=1, xl=np.zeros(1), xu=np.ones(1))

    def _evaluate(self, x, out, *args, **kwargs):
        out["F"] = np.array([float(x[0]) if x[0] < 0.5 else np.nan])


class Recorder:
    def __init__(self):
        self.particles = []
        self.iterations = []

    def particle_evaluated(self, iteration, particle_id, rates, residual):
        self.particles.append((iteration, particle_id, rates, residual))

    def iteration_completed(self, iteration, global_best_fitness, global_best_rates):
        self.iterations.append((iteration, global_best_fitness, global_best_rates))

    def final_curve(self, values, simulated, experimental):
        pass


@pytest.mark.parametrize("seed", [0, 1, 2, 3, 4])
def test_global_best_never_increases(seed):
    result = ParticleSwarm(Sphere(), n_particles=15, n_iterations=25, seed=seed).run()
    assert result.history.size == 26
    assert np.all(np.diff(result.history) <= 0.0)
    assert result.best_fitness == result.history[-1]


def test_swarm_approaches_minimum():
    result = ParticleSwarm(Sphere(), n_particles=30, n_iterations=60, seed=1, clamp_positions=True).run()
    assert result.best_fitness < 5e-2
    assert np.allclose(result.best_position, 1.0, atol=0.25)
    assert result.n_evaluations == 30 * 61


def test_initialization_draws():
    swarm = ParticleSwarm(Sphere(n_var=2), n_particles=200, n_iterations=1, seed=3)
    state = swarm.initialize()
    assert np.all(state.positions >= -5.0) and np.all(state.positions <= 5.0)
    assert np.all(state.velocities >= 0.0) and np.all(state.velocities <= 0.25 * 10.0)
    assert np.array_equal(state.best_positions, state.positions)
    g = int(np.argmin(state.fitness))
    assert state.global_best_fitness == state.fitness[g]
    assert np.array_equal(state.global_best_position, state.positions[g])


def test_inertia_decays_linearly():
    swarm = ParticleSwarm(Sphere(), n_particles=2, n_iterations=8, w_max=1.0, w_min=0.3)
    assert swarm.inertia(1) == pytest.approx(1.0)
    assert swarm.inertia(8) == pytest.approx(0.3)
    ws = [swarm.inertia(k) for k in range(1, 9)]
    assert np.allclose(np.diff(ws), -0.1)
    assert ParticleSwarm(Sphere(), n_particles=2, n_iterations=1).inertia(1) == 1.0


def test_positions_unclamped_by_default():
    # large velocities push particles outside the bounds
    swarm = ParticleSwarm(Sphere(), n_particles=20, n_iterations=3, w_max=5.0, w_min=5.0, seed=8)
    state = swarm.initialize()
    for _ in range(3):
        state = swarm.step(state)
    assert np.any(np.abs(state.positions) > 5.0)


def test_clamp_toggle_keeps_positions_in_bounds():
    swarm = ParticleSwarm(Sphere(), n_particles=20, n_iterations=3, w_max=5.0, w_min=5.0, seed=8,
                          clamp_positions=True)
    state = swarm.initialize()
    for _ in range(3):
        state = swarm.step(state)
        assert np.all(state.positions >= -5.0) and np.all(state.positions <= 5.0)


def test_ties_favor_newest_candidate():
    swarm = ParticleSwarm(Constant(), n_particles=4, n_iterations=2, seed=0)
    state = swarm.initialize()
    new = swarm.step(state)
    assert np.array_equal(new.best_positions, new.positions)
    assert np.array_equal(new.global_best_position, new.positions[0])
    assert not np.array_equal(new.global_best_position, state.global_best_position)


def test_degenerate_fitness_never_becomes_best():
    swarm = ParticleSwarm(HalfBroken(), n_particles=30, n_iterations=10, seed=5)
    state = swarm.initialize()
    for _ in range(10):
        state = swarm.step(state)
        assert np.isfinite(state.global_best_fitness)
        assert state.global_best_position[0] < 0.5
        finite = np.isfinite(state.best_fitness)
        assert np.all(state.best_positions[finite, 0] < 0.5)
    assert np.all(np.diff(state.history) <= 0.0)


def test_all_degenerate_keeps_sentinel():
    result = ParticleSwarm(Constant(np.inf), n_particles=5, n_iterations=3, seed=0).run()
    assert result.best_fitness == np.inf
    assert np.all(np.isinf(result.history))


def test_reporter_receives_every_record():
    rec = Recorder()
    ParticleSwarm(Sphere(n_var=2), n_particles=6, n_iterations=4, seed=2, reporter=rec,
                  names=["k_a", "k_b"]).run()
    assert len(rec.particles) == 6 * 5
    assert [it for it, _, _ in rec.iterations] == [0, 1, 2, 3, 4]
    assert set(rec.particles[0][2]) == {"k_a", "k_b"}
    bests = [f for _, f, _ in rec.iterations]
    assert bests == sorted(bests, reverse=True)


def test_cancel_stops_between_iterations():
    checks = []

    def cancel():
        checks.append(1)
        return len(checks) > 2

    result = ParticleSwarm(Sphere(), n_particles=4, n_iterations=10, seed=0, cancel=cancel).run()
    assert result.cancelled
    assert result.n_iterations == 2
    assert result.history.size == 3


def test_same_seed_same_search():
    a = ParticleSwarm(Sphere(), n_particles=8, n_iterations=5, seed=42).run()
    b = ParticleSwarm(Sphere(), n_particles=8, n_iterations=5, seed=42).run()
    assert np.array_equal(a.history, b.history)
    assert np.array_equal(a.best_position, b.best_position)


def test_particle_view():
    swarm = ParticleSwarm(Sphere(), n_particles=3, n_iterations=1, seed=0)
    state = swarm.initialize()
    particles = state.particles
    assert len(particles) == 3
    assert np.array_equal(particles[1].position, state.positions[1])
    assert particles[1].best_fitness == state.best_fitness[1]


@pytest.mark.parametrize("kw", [
    dict(n_particles=0),
    dict(n_iterations=0),
    dict(w_max=0.3, w_min=1.0),
    dict(c1=-1.0),
])
def test_invalid_settings(kw):
    with pytest.raises(ConfigError):
        ParticleSwarm(Sphere(), **kw)
