from pathlib import Path

import numpy as np

########################################################################################################################
# PATHS
# PROJECT_ROOT is the directory holding the default config.toml.
# Results and logs are written below OUT_DIR unless the run overrides output_dir.
########################################################################################################################
PROJECT_ROOT = Path(__file__).resolve().parent.parent
DEFAULT_CONFIG = PROJECT_ROOT / "config.toml"
OUT_DIR = PROJECT_ROOT / "results"
LOG_DIR = OUT_DIR / "logs"

########################################################################################################################
# SIMULATION DEFAULTS
# Used when a config.toml leaves a key of the [simulation] table out.
########################################################################################################################
# Number of independent molecules simulated per titration point.
N_MOLECULES = 10000
# Number of fixed time steps per trajectory.
N_STEPS = 100000
# Length of one time step in seconds.
# The per-step probability of an edge is rate * concentration * DT, so DT must keep
# the summed exit probability of every state below 1 for the fastest rates of the model.
# The fastest edge of the SERCA model, k_S3_S4 * MgATP = 3e5 s^-1, gives p = 0.03 at 1e-7 s.
DT = 1e-7
# Every SAMPLE_INTERVAL-th step the state of each molecule is counted into one histogram bucket.
SAMPLE_INTERVAL = 1000
# Number of trailing buckets averaged into the steady-state occupancy.
# 10 buckets of 1000 steps = last 10000 steps of the trajectory.
TAIL_WINDOW = 10
# Resting state every trajectory starts from (E, calcium-free enzyme).
INITIAL_STATE = 0

########################################################################################################################
# PSO DEFAULTS
# Inertia decays linearly from W_MAX to W_MIN over the iteration budget.
# C1 pulls a particle towards its personal best, C2 towards the global best.
# Velocities are initialised uniformly in [0, VELOCITY_SCALE * (upper - lower)].
########################################################################################################################
N_PARTICLES = 100
N_ITERATIONS = 100
W_MAX = 1.0
W_MIN = 0.3
C1 = 1.05
C2 = 1.05
VELOCITY_SCALE = 0.25
# Positions are allowed to leave their initialisation bounds during the search.
# Set to True (or clamp_positions = true in the config) to clip them back.
CLAMP_POSITIONS = False

########################################################################################################################
# RUN DEFAULTS
########################################################################################################################
SEED = 42
# Worker processes for particle evaluation. 1 keeps evaluation in-process;
# molecule trajectories are still spread over numba threads.
CORES = 1
# Fitness assigned to a candidate whose evaluation degenerated (NaN/Inf).
FAIL_VALUE = np.inf
