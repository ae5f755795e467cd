import dataclasses

import numpy as np
import pytest

from sercafit.config import SimulationSettings
from sercafit.errors import ConfigError, SimulationCancelled
from sercafit.lossfn import LinearReadout
from sercafit.network import build_network
from sercafit.optproblem import ResidualProblem
from sercafit.params import RateSpace
from sercafit.simulate import Titration

# open fraction 2L / (2L + 1) normalized at L = 10, i.e. k01 = 2, k10 = 1
LIGAND = [0.05, 0.15, 0.5, 1.5, 5.0, 10.0]
EXPERIMENTAL = [0.095455, 0.242308, 0.525, 0.7875, 0.954545, 1.0]


@pytest.fixture
def space():
    return RateSpace({"k01": (0.1, 5.0)}, {"k10": 1.0})


@pytest.fixture
def problem(space):
    network = build_network(2, [(0, 1, "k01", "ligand"), (1, 0, "k10")])
    sim = SimulationSettings(n_molecules=1000, n_steps=5000, dt=1e-3, sample_interval=50, tail_window=50)
    return ResidualProblem(
        network=network,
        space=space,
        species={},
        titration=Titration("ligand", LIGAND, EXPERIMENTAL),
        readout=LinearReadout({1: 1.0}, 2),
        sim=sim,
        seed=11,
    )


def test_unpack_merges_fixed_rates(space):
    assert space.unpack([2.0]) == {"k10": 1.0, "k01": 2.0}
    assert space.pack({"k01": 3.0, "k10": 1.0}).tolist() == [3.0]
    assert space.xl.tolist() == [0.1]
    assert space.xu.tolist() == [5.0]


@pytest.mark.parametrize("bounds, fixed", [
    ({"k": (1.0, 1.0)}, {}),
    ({"k": (2.0, 1.0)}, {}),
    ({"k": (0.0, np.inf)}, {}),
    ({"k": [1.0]}, {}),
    ({"k": (0.0, 1.0)}, {"k": 0.5}),
    ({}, {"k": 0.5}),
])
def test_bad_bounds_are_config_errors(bounds, fixed):
    with pytest.raises(ConfigError):
        RateSpace(bounds, fixed)


def test_unpack_checks_shape(space):
    with pytest.raises(ConfigError):
        space.unpack([1.0, 2.0])


def test_check_network_reports_missing_and_unused(space):
    with pytest.raises(ConfigError):
        space.check_network(build_network(2, [(0, 1, "k01"), (1, 0, "kother")]))
    with pytest.raises(ConfigError):
        space.check_network(build_network(2, [(0, 1, "k01")]))
    space.check_network(build_network(2, [(0, 1, "k01"), (1, 0, "k10")]))


def test_true_rates_fit_better_than_wrong_ones(problem):
    good = problem.residual_of(np.array([2.0]))
    bad = problem.residual_of(np.array([0.2]))
    assert good < 0.1
    assert bad > 0.3


def test_evaluation_is_reproducible(problem):
    X = np.array([[2.0], [0.7]])
    first = problem.evaluate(X, return_as_dictionary=True)["F"]
    second = problem.evaluate(X[::-1], return_as_dictionary=True)["F"][::-1]
    assert np.array_equal(first, second)


@pytest.mark.parametrize("x", [[np.nan], [np.inf]])
def test_non_finite_candidate_gets_fail_value(problem, x):
    F = problem.evaluate(np.array([x]), return_as_dictionary=True)["F"]
    assert F.shape == (1, 1)
    assert F[0, 0] == np.inf


def test_all_negative_rates_get_fail_value(space):
    # nothing ever opens, so the readout curve is flat zero and cannot be normalized
    network = build_network(2, [(0, 1, "k01", "ligand"), (1, 0, "k10")])
    problem = ResidualProblem(
        network, space, {}, Titration("ligand", LIGAND, EXPERIMENTAL), LinearReadout({1: 1.0}, 2),
        SimulationSettings(n_molecules=50, n_steps=200, dt=1e-3, sample_interval=10, tail_window=5),
        seed=0,
    )
    F = problem.evaluate(np.array([[-3.0]]), return_as_dictionary=True)["F"]
    assert F[0, 0] == np.inf


def test_simulate_returns_sweep(problem):
    small = dataclasses.replace(problem.sim, n_molecules=100, n_steps=500, tail_window=5)
    problem.sim = small
    res = problem.simulate({"k01": 2.0, "k10": 1.0}, seed=1)
    assert res.steady_state.shape == (6, 2)


def test_cancel_flag_reaches_the_sweep(space):
    calls = []

    def cancel():
        calls.append(1)
        return len(calls) > 2

    problem = ResidualProblem(
        network=build_network(2, [(0, 1, "k01", "ligand"), (1, 0, "k10")]),
        space=space,
        species={},
        titration=Titration("ligand", LIGAND, EXPERIMENTAL),
        readout=LinearReadout({1: 1.0}, 2),
        sim=SimulationSettings(n_molecules=50, n_steps=200, dt=1e-3, sample_interval=10, tail_window=5),
        seed=11,
        cancel=cancel,
    )
    with pytest.raises(SimulationCancelled):
        problem.evaluate(np.array([[2.0]]))
    # checked before each titration point, stopped at the third
    assert len(calls) == 3
    # explicit sweeps (final run) ignore the flag
    assert problem.simulate({"k01": 2.0, "k10": 1.0}, seed=1).n_points == len(LIGAND)
