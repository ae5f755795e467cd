from pathlib import Path

import numpy as np
import pytest

from sercafit.network import build_network
from sercafit.simulate import Titration

ROOT = Path(__file__).resolve().parent.parent
CONFIGS = ROOT / "configs"

TWO_STATE_TOML = """
[general]
output_dir = "out"
seed = 3
progress = false

[simulation]
n_molecules = 200
n_steps = 1000
dt = 1e-3
sample_interval = 50
tail_window = 10

[optimization]
n_particles = 4
n_iterations = 2

[species]

[titration]
species = "ligand"
values = [0.5, 5.0]
experimental = [0.5, 1.0]

[readout]
states = [1]

[bounds]
k01 = [0.1, 5.0]

[rates]
k10 = 1.0

[network]
n_states = 2

[[network.transitions]]
from = 0
to = 1
rate = "k01"
species = "ligand"

[[network.transitions]]
from = 1
to = 0
rate = "k10"
"""


class FixedDraw:
    """Random source that always returns the same value and counts draws."""

    def __init__(self, u):
        self.u = u
        self.calls = 0

    def random(self):
        self.calls += 1
        return self.u


@pytest.fixture
def two_state_network():
    return build_network(2, [(0, 1, "k01"), (1, 0, "k10")], labels=["closed", "open"])


@pytest.fixture
def fork_network():
    # state 0 splits to 1 (ka) or 2 (kb); 1 and 2 are absorbing
    return build_network(3, [(0, 1, "ka"), (0, 2, "kb")])


@pytest.fixture
def single_point():
    return Titration("none", [1.0])


@pytest.fixture
def write_config(tmp_path):
    def _write(text=TWO_STATE_TOML, name="config.toml"):
        path = tmp_path / name
        path.write_text(text)
        return path
    return _write


@pytest.fixture
def occupancy():
    return np.array([
        [0.9, 0.1, 0.0],
        [0.5, 0.3, 0.2],
        [0.2, 0.4, 0.4],
    ])


@pytest.fixture
def fixed_draw():
    return FixedDraw


@pytest.fixture
def configs_dir():
    return CONFIGS


@pytest.fixture
def default_config_path():
    return ROOT / "config.toml"


@pytest.fixture
def two_state_toml():
    return TWO_STATE_TOML
