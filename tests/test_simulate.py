import numpy as np
import pytest

from sercafit.errors import ConfigError, SimulationCancelled
from sercafit.network import build_network
from sercafit.simulate import Titration, candidate_seed, run_point, run_sweep


def _sweep(network, rates, titration, **kw):
    params = dict(n_molecules=500, n_steps=400, sample_interval=20, tail_window=5, dt=0.01, seed=5)
    params.update(kw)
    return run_sweep(network, rates, {}, titration, **params)


@pytest.mark.parametrize("k01, k10, expected_open", [(1.0, 1.0, 0.5), (2.0, 1.0, 2.0 / 3.0)])
def test_two_state_steady_state(two_state_network, single_point, k01, k10, expected_open):
    res = run_sweep(
        two_state_network, {"k01": k01, "k10": k10}, {}, single_point,
        n_molecules=20000, n_steps=5000, sample_interval=1, tail_window=1000, dt=0.01, seed=2024,
    )
    closed, opened = res.steady_state[0]
    assert opened == pytest.approx(expected_open, abs=0.02)
    assert closed == pytest.approx(1.0 - expected_open, abs=0.02)


def test_occupancy_is_conserved(two_state_network):
    titration = Titration("none", [1.0, 2.0, 3.0])
    res = _sweep(two_state_network, {"k01": 3.0, "k10": 1.0}, titration)
    assert res.histograms.shape == (3, 20, 2)
    assert np.all(res.histograms.sum(axis=2) == 500)
    assert np.allclose(res.steady_state.sum(axis=1), 1.0)
    for p in range(3):
        assert np.allclose(res.occupancy(p).sum(axis=1), 1.0)


def test_same_seed_same_histograms(two_state_network, single_point):
    a = _sweep(two_state_network, {"k01": 1.0, "k10": 1.0}, single_point)
    b = _sweep(two_state_network, {"k01": 1.0, "k10": 1.0}, single_point)
    assert np.array_equal(a.histograms, b.histograms)


def test_result_does_not_depend_on_chunking(two_state_network, single_point):
    rates = {"k01": 1.5, "k10": 1.0}
    one = _sweep(two_state_network, rates, single_point, n_chunks=1)
    many = _sweep(two_state_network, rates, single_point, n_chunks=7)
    assert np.array_equal(one.histograms, many.histograms)


def test_different_seeds_differ(two_state_network, single_point):
    a = _sweep(two_state_network, {"k01": 1.0, "k10": 1.0}, single_point, seed=1)
    b = _sweep(two_state_network, {"k01": 1.0, "k10": 1.0}, single_point, seed=2)
    assert not np.array_equal(a.histograms, b.histograms)


def test_titrated_species_varies_per_point():
    net = build_network(2, [(0, 1, "kon", "lig")])  # state 1 absorbing
    res = run_sweep(net, {"kon": 1.0}, {"lig": 123.0}, Titration("lig", [0.0, 1e6]),
                    n_molecules=100, n_steps=50, sample_interval=10, tail_window=2, dt=0.01, seed=0)
    assert res.steady_state[0].tolist() == [1.0, 0.0]
    assert res.steady_state[1].tolist() == [0.0, 1.0]


def test_initial_state_is_used(two_state_network, single_point):
    res = _sweep(two_state_network, {"k01": 0.0, "k10": 0.0}, single_point, initial_state=1)
    assert res.steady_state[0].tolist() == [0.0, 1.0]


def test_bucket_times(two_state_network, single_point):
    res = _sweep(two_state_network, {"k01": 1.0, "k10": 1.0}, single_point)
    assert res.time[0] == pytest.approx(0.2)
    assert res.time[-1] == pytest.approx(4.0)
    df = res.time_course(0)
    assert list(df.columns) == ["time", "closed", "open"]
    assert len(df) == 20


def test_steady_state_frame(two_state_network):
    res = _sweep(two_state_network, {"k01": 1.0, "k10": 1.0}, Titration("ligand", [1.0, 2.0]))
    df = res.steady_state_frame()
    assert list(df.columns) == ["ligand", "closed", "open"]
    assert df["ligand"].tolist() == [1.0, 2.0]


@pytest.mark.parametrize("kw", [
    dict(tail_window=400),
    dict(tail_window=500),
    dict(tail_window=21),
    dict(tail_window=0),
    dict(n_molecules=0),
    dict(n_molecules=-5),
    dict(n_steps=0),
    dict(sample_interval=0),
    dict(sample_interval=401),
    dict(dt=0.0),
    dict(dt=float("nan")),
    dict(initial_state=2),
])
def test_invalid_run_sizes_fail_before_simulating(two_state_network, single_point, kw):
    with pytest.raises(ConfigError):
        _sweep(two_state_network, {"k01": 1.0, "k10": 1.0}, single_point, **kw)


def test_missing_rate_is_config_error(two_state_network, single_point):
    with pytest.raises(ConfigError):
        _sweep(two_state_network, {"k01": 1.0}, single_point)


def test_titration_lengths_must_match():
    with pytest.raises(ConfigError):
        Titration("ca", [1.0, 2.0], [0.5])
    with pytest.raises(ConfigError):
        Titration("ca", [])


def test_cancel_between_points(two_state_network):
    calls = []

    def cancel():
        calls.append(1)
        return len(calls) > 1

    with pytest.raises(SimulationCancelled):
        _sweep(two_state_network, {"k01": 1.0, "k10": 1.0}, Titration("none", [1.0, 2.0, 3.0]), cancel=cancel)
    assert len(calls) == 2


def test_negative_rates_do_not_break_the_sweep(two_state_network, single_point):
    res = _sweep(two_state_network, {"k01": -1.0, "k10": 1.0}, single_point)
    assert res.steady_state[0].tolist() == [1.0, 0.0]


def test_run_point_reports_first_species(two_state_network):
    res = run_point(two_state_network, {"k01": 1.0, "k10": 1.0}, {"ligand": 2.0}, 100, 200, 10, 0.01, seed=1)
    assert res.species == "ligand"
    assert res.values.tolist() == [2.0]
    assert res.histograms.shape == (1, 20, 2)


def test_candidate_seed_is_pure():
    x = np.array([1.0, 2.5e7])
    assert candidate_seed(42, x) == candidate_seed(42, x.copy())
    assert candidate_seed(42, x) != candidate_seed(43, x)
    assert candidate_seed(42, x) != candidate_seed(42, np.array([1.0, 2.5e7 + 1.0]))
