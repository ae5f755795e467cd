from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping

import numpy as np

from sercafit.errors import ConfigError


@dataclass(frozen=True)
class Transition:
    """
    One directed edge of the pump cycle.

    The per-step probability of taking the edge is
    ``rates[rate] * (concentrations[species] if species else 1.0) * dt``.
    """
    source: int
    target: int
    rate: str
    species: str | None = None


class ReactionNetwork:
    """
    Immutable state graph shared read-only by every simulated molecule.

    Edges keep their declaration order inside each source state; the
    transition kernel tests them in that order against cumulative thresholds.
    The graph is flattened CSR-style: edges of state ``s`` occupy
    ``indptr[s]:indptr[s + 1]`` of ``targets`` / ``transitions``.
    """

    def __init__(self, n_states: int, transitions: Iterable[Transition], labels=None):
        n_states = int(n_states)
        if n_states < 1:
            raise ConfigError(f"network needs at least one state, got n_states={n_states}")

        edges = list(transitions)
        for e in edges:
            if not isinstance(e.rate, str) or not e.rate.strip():
                raise ConfigError(f"transition {e.source}->{e.target} has no rate id")
            for end in (e.source, e.target):
                if not (0 <= int(end) < n_states):
                    raise ConfigError(
                        f"transition {e.source}->{e.target} ({e.rate}) references state {end}, "
                        f"valid states are 0..{n_states - 1}"
                    )

        if labels is None:
            labels = [f"S{i}" for i in range(n_states)]
        labels = tuple(str(lbl) for lbl in labels)
        if len(labels) != n_states:
            raise ConfigError(f"got {len(labels)} state labels for {n_states} states")

        # stable grouping by source keeps declaration order inside each state
        by_state: list[list[Transition]] = [[] for _ in range(n_states)]
        for e in edges:
            by_state[int(e.source)].append(e)

        self.n_states = n_states
        self.labels = labels
        self._outgoing = tuple(tuple(lst) for lst in by_state)
        self.transitions = tuple(e for lst in self._outgoing for e in lst)

        indptr = np.zeros(n_states + 1, dtype=np.int32)
        indptr[1:] = np.cumsum([len(lst) for lst in by_state])
        self.indptr = indptr
        self.targets = np.array([e.target for e in self.transitions], dtype=np.int32)
        self.indptr.setflags(write=False)
        self.targets.setflags(write=False)

    @classmethod
    def from_dict(cls, spec: Mapping) -> "ReactionNetwork":
        """
        Build from a ``[network]`` TOML table::

            n_states = 2
            labels = ["closed", "open"]
            [[network.transitions]]
            from = 0
            to = 1
            rate = "k01"
            species = "ligand"   # optional
        """
        if "n_states" not in spec:
            raise ConfigError("network.n_states is required")
        rows = spec.get("transitions", []) or []
        edges = []
        for i, row in enumerate(rows):
            missing = [k for k in ("from", "to", "rate") if k not in row]
            if missing:
                raise ConfigError(f"network.transitions[{i}] is missing {missing}")
            species = row.get("species") or None
            edges.append(Transition(int(row["from"]), int(row["to"]), str(row["rate"]), species))
        return cls(spec["n_states"], edges, labels=spec.get("labels"))

    def outgoing(self, state: int) -> tuple[Transition, ...]:
        return self._outgoing[state]

    @property
    def n_edges(self) -> int:
        return len(self.transitions)

    @property
    def rate_ids(self) -> tuple[str, ...]:
        return tuple(dict.fromkeys(e.rate for e in self.transitions))

    @property
    def species_ids(self) -> tuple[str, ...]:
        return tuple(dict.fromkeys(e.species for e in self.transitions if e.species))

    def check_inputs(self, rates: Mapping[str, float], concentrations: Mapping[str, float]) -> None:
        missing_rates = [r for r in self.rate_ids if r not in rates]
        if missing_rates:
            raise ConfigError(f"no value for rate constant(s): {', '.join(missing_rates)}")
        missing_species = [s for s in self.species_ids if s not in concentrations]
        if missing_species:
            raise ConfigError(f"no concentration for species: {', '.join(missing_species)}")

    def edge_probabilities(self, rates: Mapping[str, float], concentrations: Mapping[str, float],
                           dt: float) -> np.ndarray:
        """
        Per-edge probability of one step, in CSR edge order, single precision.

        No clipping and no renormalization: negative or NaN rates give
        negative or NaN probabilities, and a state whose probabilities sum
        above 1 keeps that sum.
        """
        self.check_inputs(rates, concentrations)
        dt32 = np.float32(dt)
        probs = np.empty(self.n_edges, dtype=np.float32)
        for i, e in enumerate(self.transitions):
            conc = np.float32(concentrations[e.species]) if e.species else np.float32(1.0)
            probs[i] = np.float32(rates[e.rate]) * conc * dt32
        return probs

    def exit_probabilities(self, rates, concentrations, dt) -> np.ndarray:
        """Summed exit probability per state (0 for absorbing states)."""
        probs = self.edge_probabilities(rates, concentrations, dt)
        out = np.zeros(self.n_states, dtype=np.float64)
        for s in range(self.n_states):
            out[s] = float(np.sum(probs[self.indptr[s]:self.indptr[s + 1]], dtype=np.float64))
        return out

    def max_exit_probability(self, rates, concentrations, dt) -> float:
        return float(np.max(self.exit_probabilities(rates, concentrations, dt)))

    def __repr__(self) -> str:
        return f"ReactionNetwork(n_states={self.n_states}, n_edges={self.n_edges})"

    def __eq__(self, other) -> bool:
        if not isinstance(other, ReactionNetwork):
            return NotImplemented
        return (self.n_states, self.labels, self.transitions) == (other.n_states, other.labels, other.transitions)

    def __hash__(self) -> int:
        return hash((self.n_states, self.labels, self.transitions))

    def __getstate__(self):
        return {"n_states": self.n_states, "transitions": self.transitions, "labels": self.labels}

    def __setstate__(self, state):
        self.__init__(state["n_states"], state["transitions"], labels=state["labels"])


def build_network(n_states: int, transitions: Iterable, labels=None) -> ReactionNetwork:
    """
    Build a ReactionNetwork from ``Transition`` objects or plain
    ``(source, target, rate[, species])`` tuples.

    Raises ConfigError on dangling state references.
    """
    edges = []
    for t in transitions:
        if isinstance(t, Transition):
            edges.append(t)
        else:
            edges.append(Transition(*t))
    return ReactionNetwork(n_states, edges, labels=labels)
