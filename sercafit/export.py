import json
import logging
import os
from typing import Protocol

import numpy as np
import pandas as pd
from matplotlib import pyplot as plt

from config.helpers import format_rates
from sercafit.errors import NumericDegeneracy
from sercafit.lossfn import normalize_by_max, readout_curve, residual
from sercafit.simulate import candidate_seed, run_point, summarize

logger = logging.getLogger(__name__)


class Reporter(Protocol):
    """Sink for optimizer progress and for the calibrated curve."""

    def particle_evaluated(self, iteration: int, particle_id: int, rates: dict, residual: float) -> None: ...

    def iteration_completed(self, iteration: int, global_best_fitness: float, global_best_rates: dict) -> None: ...

    def final_curve(self, values, simulated, experimental) -> None: ...


class LoggingReporter:
    """Writes one log line per iteration (and per particle at debug level)."""

    def __init__(self, log=None, every=1):
        self.log = log or logger
        self.every = max(1, int(every))

    def particle_evaluated(self, iteration, particle_id, rates, residual):
        self.log.debug(f"[PSO] it={iteration} particle={particle_id} residual={residual:.6g} | {format_rates(rates)}")

    def iteration_completed(self, iteration, global_best_fitness, global_best_rates):
        if iteration % self.every == 0:
            self.log.info(f"[PSO] it={iteration} global best={global_best_fitness:.6g} | {format_rates(global_best_rates)}")

    def final_curve(self, values, simulated, experimental):
        for v, s, e in zip(values, simulated, experimental):
            self.log.info(f"[Final] {v:.4e}: simulated={s:.4f} experimental={e:.4f}")


class CsvReporter:
    """
    Collects every record in memory and writes them with pandas:
    particles.csv, iterations_vs_global_best.csv and final_curve.csv.
    """

    def __init__(self, output_dir):
        self.output_dir = str(output_dir)
        self.particles = []
        self.iterations = []
        self.curve = None

    def particle_evaluated(self, iteration, particle_id, rates, residual):
        self.particles.append({"iteration": iteration, "particle": particle_id, **rates, "residual": residual})

    def iteration_completed(self, iteration, global_best_fitness, global_best_rates):
        self.iterations.append({"iteration": iteration, "global_best": global_best_fitness, **global_best_rates})

    def final_curve(self, values, simulated, experimental):
        self.curve = pd.DataFrame({
            "concentration": np.asarray(values, dtype=float),
            "simulated": np.asarray(simulated, dtype=float),
            "experimental": np.asarray(experimental, dtype=float),
        })

    def save(self):
        os.makedirs(self.output_dir, exist_ok=True)
        paths = {}
        if self.particles:
            paths["particles"] = os.path.join(self.output_dir, "particles.csv")
            pd.DataFrame(self.particles).to_csv(paths["particles"], index=False)
        if self.iterations:
            paths["iterations"] = os.path.join(self.output_dir, "iterations_vs_global_best.csv")
            pd.DataFrame(self.iterations).to_csv(paths["iterations"], index=False)
        if self.curve is not None:
            paths["final_curve"] = os.path.join(self.output_dir, "final_curve.csv")
            self.curve.to_csv(paths["final_curve"], index=False)
        return paths


class MultiReporter:
    def __init__(self, *reporters):
        self.reporters = [r for r in reporters if r is not None]

    def particle_evaluated(self, iteration, particle_id, rates, residual):
        for r in self.reporters:
            r.particle_evaluated(iteration, particle_id, rates, residual)

    def iteration_completed(self, iteration, global_best_fitness, global_best_rates):
        for r in self.reporters:
            r.iteration_completed(iteration, global_best_fitness, global_best_rates)

    def final_curve(self, values, simulated, experimental):
        for r in self.reporters:
            r.final_curve(values, simulated, experimental)


def plot_fit_curve(values, simulated, experimental, species, out_path, dpi=300):
    fig, ax = plt.subplots(figsize=(7, 4.5))
    ax.semilogx(values, experimental, "o", markersize=6, label="Experimental")
    ax.semilogx(values, simulated, "-s", linewidth=2, markersize=4, label="Simulated (global best)")
    ax.set_xlabel(f"[{species}] (M)")
    ax.set_ylabel("Normalized readout")
    ax.set_ylim(-0.05, 1.05)
    ax.grid(True, alpha=0.3)
    ax.legend()
    fig.tight_layout()
    fig.savefig(out_path, dpi=dpi, bbox_inches="tight")
    plt.close(fig)
    return out_path


def plot_convergence(history, out_path, dpi=300):
    history = np.asarray(history, dtype=float)
    fig, ax = plt.subplots(figsize=(6, 4))
    ax.plot(np.arange(history.size), history, lw=2)
    ax.set_xlabel("Iteration")
    ax.set_ylabel("Global best residual")
    ax.set_title("PSO Convergence")
    ax.grid(alpha=0.3)
    fig.tight_layout()
    fig.savefig(out_path, dpi=dpi)
    plt.close(fig)
    return out_path


def plot_time_course(df, out_path, dpi=300):
    fig, ax = plt.subplots(figsize=(8, 4.5))
    for col in df.columns[1:]:
        ax.plot(df["time"].to_numpy(), df[col].to_numpy(), linewidth=1.5, label=col)
    ax.set_xlabel("Time (s)")
    ax.set_ylabel("Fraction of molecules")
    ax.grid(True, alpha=0.3)
    ax.legend(ncol=2, fontsize="small")
    fig.tight_layout()
    fig.savefig(out_path, dpi=dpi, bbox_inches="tight")
    plt.close(fig)
    return out_path


def final_run(problem, rates, output_dir, reporter=None, seed=None, final=None, history=None, plots=True):
    """
    Re-run the sweep once with the best rates and write the calibration artefacts.

    Writes fit_curve.csv, steady_state_gbest.csv, time_data_gbest.csv and
    best_rates.json (plus fit_curve.png / convergence.png / time_course.png
    when ``plots``). The calibrated (concentration, normalized simulated)
    curve is emitted once through ``reporter.final_curve``.

    A degenerate readout (flat zero or NaN curve) skips the fit curve:
    ``simulated`` is None and the residual is ``inf``, while the steady
    state and the time course are still written.

    Returns:
        dict with the curve, the residual and the written paths.
    """
    os.makedirs(output_dir, exist_ok=True)
    titration = problem.titration

    if seed is None:
        seed = candidate_seed(problem.seed, problem.space.pack(rates))
    result = problem.simulate(rates, seed=seed)
    for line in summarize(result, problem.readout):
        logger.debug(f"[Final] {line}")

    try:
        simulated = normalize_by_max(readout_curve(result.steady_state, problem.readout))
        res = residual(titration.experimental, simulated)
        logger.info(f"[Final] Residual with global best rates: {res:.6g}")
    except NumericDegeneracy as exc:
        logger.warning(f"[Final] No fit curve for the global best rates: {exc}")
        simulated, res = None, float("inf")

    if reporter is not None and simulated is not None:
        reporter.final_curve(titration.values, simulated, titration.experimental)

    paths = {}
    if simulated is not None:
        df_fit = pd.DataFrame({
            titration.species: titration.values,
            "simulated": simulated,
            "experimental": titration.experimental,
        })
        paths["fit_curve"] = os.path.join(output_dir, "fit_curve.csv")
        df_fit.to_csv(paths["fit_curve"], index=False)

    paths["steady_state"] = os.path.join(output_dir, "steady_state_gbest.csv")
    result.steady_state_frame().to_csv(paths["steady_state"], index=False)

    # Time course at one reference concentration
    sim = problem.sim
    ref = titration.values[0]
    interval = sim.sample_interval
    if final is not None:
        if final.reference_concentration is not None:
            ref = final.reference_concentration
        if final.sample_interval is not None:
            interval = final.sample_interval
    conc = {titration.species: float(ref), **{k: v for k, v in problem.species.items() if k != titration.species}}
    course = run_point(problem.network, rates, conc, sim.n_molecules, sim.n_steps, interval, sim.dt,
                       seed=seed, initial_state=sim.initial_state).time_course(0)
    paths["time_data"] = os.path.join(output_dir, "time_data_gbest.csv")
    course.to_csv(paths["time_data"], index=False)

    paths["best_rates"] = os.path.join(output_dir, "best_rates.json")
    with open(paths["best_rates"], "w") as f:
        json.dump({
            "residual": res if np.isfinite(res) else None,
            "rates": {k: float(v) for k, v in rates.items()},
        }, f, indent=2)

    if plots:
        if simulated is not None:
            paths["fit_plot"] = plot_fit_curve(
                titration.values, simulated, titration.experimental, titration.species,
                os.path.join(output_dir, "fit_curve.png"),
            )
        paths["time_plot"] = plot_time_course(course, os.path.join(output_dir, "time_course.png"))
        if history is not None and len(history) > 0:
            finite = np.where(np.isfinite(history), history, np.nan)
            paths["convergence_plot"] = plot_convergence(finite, os.path.join(output_dir, "convergence.png"))

    return {"values": titration.values, "simulated": simulated, "residual": res, "paths": paths, "sweep": result}
