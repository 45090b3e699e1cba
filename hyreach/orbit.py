"""
Evolution records.

An `Orbit` is the append-only output of `hyreach.evolution.Evolver`: a
flat list of `OrbitNode` records tagged with the branch that produced them,
plus a `Branch` table recording where every branch forked from its parent.

Nodes are snapshots at instants of continuous time: the initial set, the
end of every flow step, the set at a fork and the post-jump set of every
discrete transition. Besides the snapshot every node carries a reach
enclosure covering the span ``[start, time]`` that led to it: the tube of a
flow step, or the flowed post-jump set of a jump taken anywhere inside an
enabling window. The last node of every branch carries the
`TerminationReason` of that branch.

Queries for analysis and plotting::

    >>> for sample in orbit.samples(0):
    ...     print(sample.time, sample.location, sample.enclosure["energy_tank_m"])
    >>> orbit.range_of("energy_tank_m", 0.0, 10.0)
    [0.1, 1]
    >>> traj = orbit.trajectory(0)
    >>> plt.plot(traj.t, traj("energy_tank_m"))
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from enum import Enum, auto
from typing import Optional

import numpy as np

from hyreach.backends.interval import Box, Interval
from hyreach.composition import CompositeLocation


class TerminationReason(Enum):
    """Why a branch stopped."""

    TIME_EXPIRED = auto()  # Continuous-time budget reached
    STEP_BUDGET_EXPIRED = auto()  # Discrete-transition budget reached
    BLOCKED = auto()  # Deadlock or an urgent guard that can never be met
    ENCLOSURE_TOO_LARGE = auto()  # Enclosure radius above the configured bound


class NodeKind(Enum):
    """Event that produced an orbit node."""

    INITIAL = auto()
    FLOW = auto()
    JUMP = auto()
    BRANCH = auto()


@dataclass(frozen=True)
class OrbitNode:
    """
    Immutable snapshot of one branch.

    ``enclosure`` bounds the state quantities and ``auxiliary`` the
    auxiliary quantities at ``time``; ``reach`` bounds both over
    ``[start, time]``. ``steps`` counts the discrete transitions taken so
    far. ``event`` is set on JUMP nodes.
    """

    branch: int
    kind: NodeKind
    time: float
    steps: int
    location: CompositeLocation
    enclosure: Box
    auxiliary: Box
    reach: Box
    start: float
    event: Optional[str] = None
    termination: Optional[TerminationReason] = None

    @property
    def is_terminal(self) -> bool:
        return self.termination is not None

    def bounds(self) -> Box:
        """State and auxiliary bounds together."""
        return self.enclosure.join(self.auxiliary)

    def __repr__(self) -> str:
        s = f"OrbitNode(branch={self.branch}, {self.kind.name}, t={self.time:.6g}, steps={self.steps}, {self.location}"
        if self.event is not None:
            s += f", event={self.event}"
        if self.termination is not None:
            s += f", {self.termination.name}"
        return s + ")"


@dataclass(frozen=True)
class Branch:
    """
    One continuation of the evolution.

    ``parent`` and ``fork`` are None for the root branch; otherwise ``fork``
    is the index in `Orbit.nodes` of the parent's BRANCH node.
    """

    id: int
    parent: Optional[int] = None
    fork: Optional[int] = None


@dataclass(frozen=True)
class Sample:
    """
    Snapshot of a branch at ``time``, with the bounds it reached since
    ``start``.
    """

    time: float
    location: CompositeLocation
    enclosure: Box
    start: float
    reach: Box


class SampleSequence:
    """
    Lazy, finite and restartable sequence of samples of one branch.

    Iteration walks the ancestry of the branch from the root, so every
    iteration starts again from the initial set.
    """

    def __init__(self, orbit: "Orbit", branch: int):
        self._orbit = orbit
        self._branch = branch

    def _indices(self) -> Iterator[int]:
        orbit = self._orbit
        chain: list[Branch] = []
        b: Optional[int] = self._branch
        while b is not None:
            chain.append(orbit.branch(b))
            b = orbit.branch(b).parent
        chain.reverse()
        for k, br in enumerate(chain):
            stop = chain[k + 1].fork if k + 1 < len(chain) else None
            for i in orbit._by_branch[br.id]:
                if stop is not None and i > stop:
                    break
                yield i

    def __iter__(self) -> Iterator[Sample]:
        nodes = self._orbit.nodes
        for i in self._indices():
            n = nodes[i]
            yield Sample(n.time, n.location, n.bounds(), n.start, n.reach)

    def __len__(self) -> int:
        return sum(1 for _ in self._indices())


class OrbitTrajectory:
    """
    Array view of the samples of one branch, for plotting.

    Attributes
    ----------
    t : np.ndarray
        Sample times (repeated at jumps)
    t_start : np.ndarray
        Start of the span covered by the reach bounds of each sample
    names : tuple
        Quantities available through `lower`, `upper`, `reach_lower`,
        `reach_upper` and calling
    """

    def __init__(self, samples: list[Sample]):
        self.t = np.array([s.time for s in samples])
        self.t_start = np.array([s.start for s in samples])
        self.locations = [s.location for s in samples]
        self.names: tuple[str, ...] = samples[0].enclosure.names if samples else ()
        self._lower = {n: np.array([s.enclosure[n].lower for s in samples]) for n in self.names}
        self._upper = {n: np.array([s.enclosure[n].upper for s in samples]) for n in self.names}
        self._reach_lower = {n: np.array([s.reach[n].lower for s in samples]) for n in self.names}
        self._reach_upper = {n: np.array([s.reach[n].upper for s in samples]) for n in self.names}

    def lower(self, name: str) -> np.ndarray:
        return self._lower[name]

    def upper(self, name: str) -> np.ndarray:
        return self._upper[name]

    def reach_lower(self, name: str) -> np.ndarray:
        return self._reach_lower[name]

    def reach_upper(self, name: str) -> np.ndarray:
        return self._reach_upper[name]

    def __call__(self, name: str) -> np.ndarray:
        """Midpoints of the bounds of ``name``."""
        return 0.5 * (self._lower[name] + self._upper[name])

    def __len__(self) -> int:
        return len(self.t)

    def __repr__(self) -> str:
        return f"OrbitTrajectory(n_points={len(self.t)}, names={list(self.names)})"


class Orbit:
    """
    Append-only record of an evolution.

    Only the evolver appends; every query returns immutable data.
    """

    def __init__(self):
        self._nodes: list[OrbitNode] = []
        self._branches: list[Branch] = []
        self._by_branch: dict[int, list[int]] = {}

    # Construction, used by the evolver --------------------------------------

    def _new_branch(self, parent: Optional[int] = None, fork: Optional[int] = None) -> int:
        b = Branch(len(self._branches), parent, fork)
        self._branches.append(b)
        self._by_branch[b.id] = []
        return b.id

    def _append(self, node: OrbitNode) -> int:
        index = len(self._nodes)
        self._nodes.append(node)
        self._by_branch[node.branch].append(index)
        return index

    # Queries -----------------------------------------------------------------

    @property
    def nodes(self) -> tuple[OrbitNode, ...]:
        return tuple(self._nodes)

    @property
    def branches(self) -> tuple[Branch, ...]:
        return tuple(self._branches)

    def branch(self, id: int) -> Branch:
        return self._branches[id]

    def branch_nodes(self, id: int) -> tuple[OrbitNode, ...]:
        """Nodes produced by branch ``id`` itself, without its ancestry."""
        return tuple(self._nodes[i] for i in self._by_branch[id])

    def final_nodes(self) -> tuple[OrbitNode, ...]:
        """Terminal node of every branch, by branch id."""
        finals = []
        for b in self._branches:
            ids = self._by_branch[b.id]
            finals.append(self._nodes[ids[-1]])
        return tuple(finals)

    def terminations(self) -> dict[int, TerminationReason]:
        return {n.branch: n.termination for n in self.final_nodes()}

    def reached_locations(self) -> tuple[CompositeLocation, ...]:
        """Distinct composite locations visited, in order of first visit."""
        return tuple(dict.fromkeys(n.location for n in self._nodes))

    def samples(self, branch: int = 0) -> SampleSequence:
        if not 0 <= branch < len(self._branches):
            raise KeyError(f"Orbit has no branch {branch}, it has {len(self._branches)}")
        return SampleSequence(self, branch)

    def trajectory(self, branch: int = 0) -> OrbitTrajectory:
        return OrbitTrajectory(list(self.samples(branch)))

    def range_of(self, name: str, t_lo: float, t_hi: float, branch: Optional[int] = None) -> Interval:
        """
        Hull of the bounds of ``name`` over ``[t_lo, t_hi]``.

        Joins the reach bounds of every sample whose span ``[start, time]``
        meets the interval, of one branch or, when ``branch`` is None, of
        every branch.

        Raises
        ------
        ValueError
            If the time interval is empty or no branch reaches it.
        KeyError
            If ``name`` is not a quantity of the system.
        """
        if t_lo > t_hi:
            raise ValueError(f"Empty time interval [{t_lo}, {t_hi}]")
        branches = range(len(self._branches)) if branch is None else (branch,)
        result: Optional[Interval] = None
        for b in branches:
            for s in self.samples(b):
                if s.start > t_hi or s.time < t_lo:
                    continue
                iv = s.reach[name]
                result = iv if result is None else result.hull(iv)
        if result is None:
            raise ValueError(f"No branch reaches the time interval [{t_lo}, {t_hi}]")
        return result

    def __len__(self) -> int:
        return len(self._nodes)

    def __repr__(self) -> str:
        return f"Orbit(nodes={len(self._nodes)}, branches={len(self._branches)})"
