import numpy as np
from numba import njit

from sercafit.errors import ConfigError


# fastmath is off: NaN probabilities must compare False so the molecule stays put
@njit(cache=True, nogil=True)
def select_transition(u, state, indptr, targets, probs):
    """
    Competing-probabilities choice for one molecule and one step.

    Walks the edges of ``state`` in order with a float32 running sum and
    returns the target of the first edge with ``u < cum``. If ``u`` is past
    the last threshold (or the state has no edges) the state is kept.
    Mass above 1 is unreachable; an edge with negative probability lowers
    the running sum below the previous threshold, so it is never taken.
    """
    cum = np.float32(0.0)
    for e in range(indptr[state], indptr[state + 1]):
        cum += probs[e]
        if u < cum:
            return targets[e]
    return state


def step(network, current_state, rates, concentrations, dt, rng):
    """
    Advance one molecule by one fixed time step.

    Args:
        network (ReactionNetwork): state graph.
        current_state (int): state of the molecule.
        rates (Mapping[str, float]): rate id -> value.
        concentrations (Mapping[str, float]): species id -> concentration.
        dt (float): step length.
        rng: random source with a ``random()`` method returning a float in
            [0, 1), e.g. ``numpy.random.default_rng(seed)``. Exactly one
            draw is consumed, also for absorbing states.

    Returns:
        int: the next state.
    """
    current_state = int(current_state)
    if not (0 <= current_state < network.n_states):
        raise ConfigError(f"state {current_state} is outside 0..{network.n_states - 1}")
    probs = network.edge_probabilities(rates, concentrations, dt)
    u = np.float32(rng.random())
    return int(select_transition(u, current_state, network.indptr, network.targets, probs))
