"""
Configuration for sercafit runs.

A run is described by one TOML file (see config.toml at the project root):

    [general]       output_dir, seed, cores, log_level, progress
    [simulation]    n_molecules, n_steps, dt, sample_interval, tail_window, initial_state
    [optimization]  n_particles, n_iterations, w_max, w_min, c1, c2, clamp_positions
    [species]       fixed concentrations (M)
    [titration]     species, values, experimental
    [readout]       states, weights
    [rates]         fixed rate constants
    [bounds]        searched rate constants as [min, max]
    [network]       n_states, labels, [[network.transitions]]
    [final_run]     reference_concentration, sample_interval (optional)
    [modes.<name>]  tables deep-merged over the above when the mode is selected

Every structural problem raises ConfigError before any simulation starts.
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

try:
    import tomllib  # py>=3.11
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # py<3.11

from config.constants import (
    C1, C2, CLAMP_POSITIONS, CORES, DEFAULT_CONFIG, DT, INITIAL_STATE, N_ITERATIONS, N_MOLECULES,
    N_PARTICLES, N_STEPS, OUT_DIR, SAMPLE_INTERVAL, SEED, TAIL_WINDOW, W_MAX, W_MIN,
)
from sercafit.errors import ConfigError
from sercafit.lossfn import LinearReadout
from sercafit.network import ReactionNetwork
from sercafit.params import RateSpace
from sercafit.simulate import Titration, validate_run


@dataclass(frozen=True)
class SimulationSettings:
    n_molecules: int = N_MOLECULES
    n_steps: int = N_STEPS
    dt: float = DT
    sample_interval: int = SAMPLE_INTERVAL
    tail_window: int = TAIL_WINDOW
    initial_state: int = INITIAL_STATE


@dataclass(frozen=True)
class OptimizationSettings:
    n_particles: int = N_PARTICLES
    n_iterations: int = N_ITERATIONS
    w_max: float = W_MAX
    w_min: float = W_MIN
    c1: float = C1
    c2: float = C2
    clamp_positions: bool = CLAMP_POSITIONS


@dataclass(frozen=True)
class FinalRunSettings:
    # Single-point time course recorded after the fit
    reference_concentration: float | None = None
    sample_interval: int | None = None


@dataclass(frozen=True)
class FitConfig:
    network: ReactionNetwork
    space: RateSpace
    species: dict
    titration: Titration
    readout: LinearReadout
    simulation: SimulationSettings
    optimization: OptimizationSettings
    final_run: FinalRunSettings

    output_dir: str | Path = OUT_DIR
    seed: int | None = SEED
    cores: int = CORES
    log_level: str = "INFO"
    progress: bool = True

    name: str = "sercafit"
    mode: str | None = None
    source: str | Path | None = None


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Recursively merge two dictionaries, with override taking precedence.
    """
    out = dict(base)
    for k, v in (override or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _get(table: dict, key: str, default, cast, section: str):
    value = table.get(key, default)
    if value is None:
        return None
    try:
        return cast(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{section}.{key}: cannot read {value!r} as {cast.__name__}") from exc


def _as_int(value) -> int:
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise ValueError(value)
    return int(value)


def _float_map(table: dict, section: str) -> dict[str, float]:
    return {k: _get(table, k, None, float, section) for k in table}


def read_toml(path: str | Path, mode: str | None = None) -> dict[str, Any]:
    """Raw TOML with the selected mode merged in (the ``modes`` table is dropped)."""
    path = Path(path)
    if not path.is_file():
        raise ConfigError(f"config file not found: {path}")
    with path.open("rb") as f:
        try:
            raw = tomllib.load(f)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"{path}: {exc}") from exc

    modes = raw.pop("modes", {}) or {}
    if mode:
        if mode not in modes:
            raise ConfigError(f"{path}: unknown mode '{mode}', available: {sorted(modes) or 'none'}")
        raw = _deep_merge(raw, modes[mode])
    return raw


def config_from_dict(raw: dict[str, Any], mode: str | None = None, source=None) -> FitConfig:
    gen = raw.get("general", {}) or {}
    sim_cfg = raw.get("simulation", {}) or {}
    opt_cfg = raw.get("optimization", {}) or {}
    tit_cfg = raw.get("titration", {}) or {}
    fin_cfg = raw.get("final_run", {}) or {}

    # -------------------------
    # 1) Topology
    # -------------------------
    if "network" not in raw:
        raise ConfigError("missing [network] table")
    network = ReactionNetwork.from_dict(raw["network"])

    # -------------------------
    # 2) Rates: fixed + searched
    # -------------------------
    fixed = _float_map(raw.get("rates", {}) or {}, "rates")
    space = RateSpace(raw.get("bounds", {}) or {}, fixed)
    space.check_network(network)

    # -------------------------
    # 3) Species + titration
    # -------------------------
    species = _float_map(raw.get("species", {}) or {}, "species")
    if "species" not in tit_cfg:
        raise ConfigError("titration.species is required")
    if "experimental" not in tit_cfg:
        raise ConfigError("titration.experimental is required")
    titration = Titration(str(tit_cfg["species"]), tit_cfg.get("values", []), tit_cfg["experimental"])
    network.check_inputs(space.unpack(space.xl), {**species, titration.species: 0.0})

    readout = LinearReadout.from_dict(raw.get("readout", {}) or {}, network.n_states)

    # -------------------------
    # 4) Simulation + PSO knobs
    # -------------------------
    sim = SimulationSettings(
        n_molecules=_get(sim_cfg, "n_molecules", N_MOLECULES, _as_int, "simulation"),
        n_steps=_get(sim_cfg, "n_steps", N_STEPS, _as_int, "simulation"),
        dt=_get(sim_cfg, "dt", DT, float, "simulation"),
        sample_interval=_get(sim_cfg, "sample_interval", SAMPLE_INTERVAL, _as_int, "simulation"),
        tail_window=_get(sim_cfg, "tail_window", TAIL_WINDOW, _as_int, "simulation"),
        initial_state=_get(sim_cfg, "initial_state", INITIAL_STATE, _as_int, "simulation"),
    )
    validate_run(network, sim.n_molecules, sim.n_steps, sim.sample_interval, sim.tail_window,
                 sim.dt, sim.initial_state)

    opt = OptimizationSettings(
        n_particles=_get(opt_cfg, "n_particles", N_PARTICLES, _as_int, "optimization"),
        n_iterations=_get(opt_cfg, "n_iterations", N_ITERATIONS, _as_int, "optimization"),
        w_max=_get(opt_cfg, "w_max", W_MAX, float, "optimization"),
        w_min=_get(opt_cfg, "w_min", W_MIN, float, "optimization"),
        c1=_get(opt_cfg, "c1", C1, float, "optimization"),
        c2=_get(opt_cfg, "c2", C2, float, "optimization"),
        clamp_positions=bool(opt_cfg.get("clamp_positions", CLAMP_POSITIONS)),
    )
    if opt.n_particles < 1 or opt.n_iterations < 1:
        raise ConfigError("optimization.n_particles and optimization.n_iterations must be >= 1")
    if opt.w_min > opt.w_max:
        raise ConfigError(f"optimization.w_min ({opt.w_min}) exceeds w_max ({opt.w_max})")

    final = FinalRunSettings(
        reference_concentration=_get(fin_cfg, "reference_concentration", None, float, "final_run"),
        sample_interval=_get(fin_cfg, "sample_interval", None, _as_int, "final_run"),
    )
    if final.sample_interval is not None and not (1 <= final.sample_interval <= sim.n_steps):
        raise ConfigError(f"final_run.sample_interval must be in 1..{sim.n_steps}")

    cores = _get(gen, "cores", CORES, _as_int, "general")
    seed = _get(gen, "seed", SEED, _as_int, "general")

    return FitConfig(
        network=network,
        space=space,
        species=species,
        titration=titration,
        readout=readout,
        simulation=sim,
        optimization=opt,
        final_run=final,
        output_dir=gen.get("output_dir", gen.get("output_directory", str(OUT_DIR))),
        seed=seed,
        cores=max(1, cores),
        log_level=str(gen.get("log_level", "INFO")).upper(),
        progress=bool(gen.get("progress", True)),
        name=str(gen.get("name", "sercafit")),
        mode=mode,
        source=source,
    )


def load_config(path: str | Path | None = None, mode: str | None = None) -> FitConfig:
    """
    Load and validate a run description.

    Args:
        path: TOML file, defaults to config.toml at the project root.
        mode: name of a ``[modes.<name>]`` override table.

    Returns:
        FitConfig
    """
    path = Path(path) if path is not None else DEFAULT_CONFIG
    return config_from_dict(read_toml(path, mode), mode=mode, source=path)
