import argparse
import dataclasses
import logging
import multiprocessing as mp
import os
import signal
import sys
import threading

import numba
import numpy as np

from config.constants import DEFAULT_CONFIG
from config.helpers import format_duration, format_rates
from config.logconf import setup_logger
from sercafit.config import load_config
from sercafit.errors import ConfigError, SimulationCancelled
from sercafit.export import CsvReporter, LoggingReporter, MultiReporter, final_run
from sercafit.optproblem import ResidualProblem
from sercafit.pso import ParticleSwarm


def build_parser():
    parser = argparse.ArgumentParser(
        prog="sercafit",
        description="Fit SERCA rate constants to a titration curve with kinetic Monte Carlo + PSO.",
    )
    parser.add_argument("--config", default=str(DEFAULT_CONFIG), help="TOML run description")
    parser.add_argument("--mode", default=None, help="name of a [modes.<name>] override table")
    parser.add_argument("--output-dir", default=None)
    parser.add_argument("--cores", type=int, default=None, help="worker processes for particle evaluation")
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--particles", type=int, default=None)
    parser.add_argument("--iterations", type=int, default=None)
    parser.add_argument("--no-progress", action="store_true")
    parser.add_argument("--no-plots", action="store_true")
    return parser


def apply_overrides(cfg, args):
    """Command-line values win over the TOML file."""
    changes = {}
    if args.output_dir is not None:
        changes["output_dir"] = args.output_dir
    if args.cores is not None:
        changes["cores"] = max(1, args.cores)
    if args.seed is not None:
        changes["seed"] = args.seed
    if args.no_progress:
        changes["progress"] = False
    opt = {}
    if args.particles is not None:
        opt["n_particles"] = args.particles
    if args.iterations is not None:
        opt["n_iterations"] = args.iterations
    if opt:
        if min(opt.values()) < 1:
            raise ConfigError("--particles and --iterations must be >= 1")
        changes["optimization"] = dataclasses.replace(cfg.optimization, **opt)
    return dataclasses.replace(cfg, **changes) if changes else cfg


def log_config(logger, cfg):
    sim, opt = cfg.simulation, cfg.optimization
    logger.info(f"[Config] Source: {cfg.source} (mode: {cfg.mode or 'default'})")
    logger.info(f"[Config] Network: {cfg.network.n_states} states, {cfg.network.n_edges} transitions")
    logger.info(f"[Config] Titration: {cfg.titration.species}, {len(cfg.titration)} points")
    logger.info(f"[Config] Readout: {cfg.readout!r}")
    logger.info(
        f"[Config] Simulation: n_molecules={sim.n_molecules}, n_steps={sim.n_steps}, dt={sim.dt:g}, "
        f"sample_interval={sim.sample_interval}, tail_window={sim.tail_window}"
    )
    logger.info(
        f"[Config] PSO: particles={opt.n_particles}, iterations={opt.n_iterations}, "
        f"w={opt.w_max}->{opt.w_min}, c1={opt.c1}, c2={opt.c2}, clamp={opt.clamp_positions}"
    )
    for name, lo, hi in zip(cfg.space.names, cfg.space.xl, cfg.space.xu):
        logger.info(f"[Config] Free rate {name}: [{lo:.4g}, {hi:.4g}]")
    logger.info(f"[Config] Output directory: {cfg.output_dir}, cores={cfg.cores}, seed={cfg.seed}")


def check_probabilities(logger, cfg):
    """Warn when the widest bounds push a state's exit probability above 1."""
    conc = dict(cfg.species)
    worst = 0.0
    for value in cfg.titration.values:
        conc[cfg.titration.species] = float(value)
        worst = max(worst, cfg.network.max_exit_probability(cfg.space.unpack(cfg.space.xu), conc, cfg.simulation.dt))
    if worst >= 1.0:
        logger.warning(
            f"[Config] Summed exit probability reaches {worst:.3g} at the upper bounds; "
            f"transitions past the first unit of mass are unreachable. Consider a smaller dt."
        )
    else:
        logger.info(f"[Config] Largest summed exit probability at the upper bounds: {worst:.3g}")


def worker_threads(cores):
    """numba threads per pool worker so that cores x threads fits the machine."""
    return max(1, numba.config.NUMBA_NUM_THREADS // max(1, cores))


def _init_worker(n_threads):
    numba.set_num_threads(n_threads)


def fit(cfg, logger, cancel=None, plots=True):
    """Run the swarm and the final calibration run; returns (SwarmResult, final_run dict)."""
    os.makedirs(cfg.output_dir, exist_ok=True)

    runner = None
    pool = None
    if cfg.cores > 1:
        from pymoo.core.problem import StarmapParallelization
        n_threads = worker_threads(cfg.cores)
        pool = mp.Pool(cfg.cores, initializer=_init_worker, initargs=(n_threads,))
        runner = StarmapParallelization(pool.starmap)
        logger.info(f"[Fit] Parallel particle evaluation enabled with {cfg.cores} workers x {n_threads} numba threads.")
    else:
        logger.info("[Fit] Particles evaluated in-process; molecules spread over numba threads.")

    problem = ResidualProblem(
        network=cfg.network,
        space=cfg.space,
        species=cfg.species,
        titration=cfg.titration,
        readout=cfg.readout,
        sim=cfg.simulation,
        seed=cfg.seed,
        elementwise_runner=runner,
        # workers only see the flag between iterations
        cancel=cancel if pool is None else None,
    )

    csv = CsvReporter(cfg.output_dir)
    reporter = MultiReporter(LoggingReporter(logger), csv)
    opt = cfg.optimization
    swarm = ParticleSwarm(
        problem,
        n_particles=opt.n_particles,
        n_iterations=opt.n_iterations,
        w_max=opt.w_max,
        w_min=opt.w_min,
        c1=opt.c1,
        c2=opt.c2,
        clamp_positions=opt.clamp_positions,
        seed=cfg.seed,
        reporter=reporter,
        cancel=cancel,
        progress=cfg.progress,
    )
    try:
        try:
            result = swarm.run()
        finally:
            if pool is not None:
                pool.close()
                pool.join()

        logger.info(
            f"[Fit] Best residual {result.best_fitness:.6g} after {result.n_iterations} iterations, "
            f"{result.n_evaluations} evaluations in {format_duration(result.elapsed)}"
        )
        logger.info(f"[Fit] Best rates: {format_rates(result.best_rates)}")
        if not np.isfinite(result.best_fitness):
            logger.warning("[Fit] No candidate produced a finite residual; the final run may have no fit curve.")

        rates = cfg.space.unpack(result.best_position)
        final = final_run(
            problem, rates, cfg.output_dir, reporter=reporter, final=cfg.final_run,
            history=result.history, plots=plots,
        )
    finally:
        # search records survive a failed or interrupted final run
        for key, path in csv.save().items():
            logger.info(f"[Done] {key}: {path}")
    for key, path in final["paths"].items():
        logger.info(f"[Done] {key}: {path}")
    return result, final


def main(argv=None):
    args = build_parser().parse_args(argv)

    try:
        cfg = apply_overrides(load_config(args.config, mode=args.mode), args)
    except ConfigError as exc:
        print(f"[Config] {exc}", file=sys.stderr)
        return 2

    logger = setup_logger(
        name="sercafit",
        level=getattr(logging, cfg.log_level, logging.INFO),
        log_dir=os.path.join(str(cfg.output_dir), "logs"),
    )
    log_config(logger, cfg)
    check_probabilities(logger, cfg)

    stop = threading.Event()

    def _on_sigint(signum, frame):
        if stop.is_set():
            raise KeyboardInterrupt
        logger.warning("[Fit] Interrupt received; stopping after the current iteration (Ctrl-C again to abort).")
        stop.set()

    previous = signal.signal(signal.SIGINT, _on_sigint)
    try:
        result, _ = fit(cfg, logger, cancel=stop.is_set, plots=not args.no_plots)
    except ConfigError as exc:
        logger.error(f"[Config] {exc}")
        return 2
    except SimulationCancelled as exc:
        logger.warning(f"[Fit] {exc}")
        return 130
    finally:
        signal.signal(signal.SIGINT, previous)

    return 130 if result.cancelled else 0


if __name__ == "__main__":
    try:
        mp.set_start_method("fork", force=True)
    except (RuntimeError, ValueError):
        pass
    sys.exit(main())
