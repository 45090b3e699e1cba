"""
Reachability evolution of composite hybrid automata.

The `Evolver` alternates continuous flow and discrete jumps for every
branch of the evolution::

    FLOWING -> (guard crossing) -> JUMPING -> FLOWING -> ...

until the branch ends with one of the `TerminationReason`s. Continuous
flow, step tubes, guard bounds and resets are delegated to an injected
`hyreach.backends.base.FlowSolver`; this module only decides when and how
that arithmetic is invoked.

Guards are bounded over enclosures, so a guard ``g >= 0`` is either

- definitely satisfied: ``g >= 0`` on the whole enclosure, or
- possibly satisfied: ``g >= 0`` somewhere in the enclosure.

Flow steps watch the tube of the whole step, so a guard that holds only
briefly inside a step is still found. A definitely satisfied urgent
guard forces the jump. While a guard is only possibly satisfied, the
enclosure keeps flowing and, under UPPER semantics, the states that may
jump are collected in a window: the hull of the pre-jump tubes since the
guard first became possibly satisfied. When the window closes, the jump
is taken from that hull and the post-jump set is flowed on over the
window's duration, so it encloses jumps taken at any instant of it.

Branches are explored through an explicit work queue. The queue is drained
in waves: every task of a wave runs to its termination or to a fork,
optionally on a thread pool, and the results are merged into the orbit in
task order, so the orbit is identical for any number of workers.

Example::

    >>> system = teleop_composite()
    >>> evolver = Evolver(system, EvolverConfiguration(maximum_step_size=1.25))
    >>> orbit = evolver.orbit(teleop_initial_set(), HybridTime(10.0, 50), Semantics.UPPER)
    >>> orbit.terminations()
    {0: <TerminationReason.TIME_EXPIRED: 1>}
"""

from __future__ import annotations

import math
import warnings
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from enum import Enum, auto
from typing import Optional

import numpy as np

from hyreach.backends.base import Dynamics, FlowSolver
from hyreach.backends.interval import Box, Interval
from hyreach.composition import CompositeAutomaton, CompositeLocation, CompositeTransition, DiscreteMode
from hyreach.ir.expr import constant_value
from hyreach.orbit import NodeKind, Orbit, OrbitNode, TerminationReason
from hyreach.sets import HybridSet


class Semantics(Enum):
    """
    UPPER: over-approximation; non-determinism produces branches.
    LOWER: a single trajectory; the first enabled transition (by event
    name) is taken as soon as its guard is definitely satisfied and
    nothing branches.
    """

    UPPER = auto()
    LOWER = auto()


@dataclass(frozen=True)
class HybridTime:
    """Evolution budget: continuous duration and number of transitions."""

    continuous_time: float
    discrete_transitions: int

    def __post_init__(self):
        if not self.continuous_time >= 0.0:
            raise ValueError(f"continuous_time must be non-negative, got {self.continuous_time}")
        if self.discrete_transitions < 0:
            raise ValueError(f"discrete_transitions must be non-negative, got {self.discrete_transitions}")


@dataclass
class EvolverConfiguration:
    """
    Evolver settings.

    Attributes
    ----------
    maximum_enclosure_radius : float
        Branches whose enclosure radius exceeds this end ENCLOSURE_TOO_LARGE
    maximum_step_size : float
        Longest single flow step; steps are halved while the solver finds
        no tube enclosure for them
    crossing_tolerance : float
        Width of the time bracket at which guard-crossing bisection stops,
        and the shortest step tried before giving up on a tube
    maximum_bisections : int
        Bisection iterations per crossing
    guard_tolerance : float
        A guard ``g >= 0`` is definitely satisfied when ``g >= -guard_tolerance``
        holds over the whole enclosure and possibly satisfied when it holds
        somewhere in it
    workers : int
        Threads evaluating the tasks of one wave (1 runs in the caller)
    """

    maximum_enclosure_radius: float = math.inf
    maximum_step_size: float = 1.0
    crossing_tolerance: float = 1e-10
    maximum_bisections: int = 200
    guard_tolerance: float = 1e-12
    workers: int = 1

    def __post_init__(self):
        if not self.maximum_enclosure_radius > 0.0:
            raise ValueError(f"maximum_enclosure_radius must be positive, got {self.maximum_enclosure_radius}")
        if not (self.maximum_step_size > 0.0 and math.isfinite(self.maximum_step_size)):
            raise ValueError(f"maximum_step_size must be positive and finite, got {self.maximum_step_size}")
        if not self.crossing_tolerance > 0.0:
            raise ValueError(f"crossing_tolerance must be positive, got {self.crossing_tolerance}")
        if self.maximum_bisections < 1:
            raise ValueError(f"maximum_bisections must be at least 1, got {self.maximum_bisections}")
        if not self.guard_tolerance >= 0.0:
            raise ValueError(f"guard_tolerance must be non-negative, got {self.guard_tolerance}")
        if self.workers < 1:
            raise ValueError(f"workers must be at least 1, got {self.workers}")


@dataclass(frozen=True)
class _Window:
    """States that may take ``transition`` at some instant of ``[start, now]``."""

    transition: CompositeTransition
    start: float
    hull: Box


@dataclass
class _Task:
    """Continuation of one branch."""

    branch: int
    location: CompositeLocation
    box: Box
    time: float
    steps: int
    step: float
    windows: dict[int, _Window] = field(default_factory=dict)
    # guards possibly but not definitely satisfied at the current instant
    open: frozenset[int] = frozenset()
    open_orphans: frozenset[int] = frozenset()
    pending: Optional[_Window] = None
    initial: bool = False


@dataclass
class _Result:
    nodes: list[OrbitNode] = field(default_factory=list)
    children: list[_Task] = field(default_factory=list)
    # whether the first child carries on the branch that produced the nodes
    continues: bool = True


def _entire(names: tuple[str, ...]) -> Box:
    return Box(names, np.full(len(names), -np.inf), np.full(len(names), np.inf))


def _finite(box: Box) -> bool:
    return bool(np.all(np.isfinite(box.lower)) and np.all(np.isfinite(box.upper)))


class Evolver:
    """
    Computes orbits of a composite automaton.

    Parameters
    ----------
    system : CompositeAutomaton
        The automaton to evolve (shared read-only by all branches)
    configuration : EvolverConfiguration, optional
        Defaults to ``EvolverConfiguration()``
    solver : FlowSolver, optional
        Continuous-flow capability; defaults to `CasadiFlowSolver`
    verbosity : int
        0 is silent; 1 prints one line per wave; 2 also prints every jump
    """

    def __init__(
        self,
        system: CompositeAutomaton,
        configuration: Optional[EvolverConfiguration] = None,
        solver: Optional[FlowSolver] = None,
        verbosity: int = 0,
    ):
        if solver is None:
            from hyreach.backends.casadi import CasadiFlowSolver

            solver = CasadiFlowSolver()
        self.system = system
        self.configuration = configuration if configuration is not None else EvolverConfiguration()
        self.solver = solver
        self.verbosity = verbosity

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def orbit(
        self,
        initial_set: HybridSet,
        evolution_time: HybridTime,
        semantics: Semantics = Semantics.UPPER,
    ) -> Orbit:
        """
        Evolve ``initial_set`` within the ``evolution_time`` budget.

        Raises
        ------
        ValueError
            If the initial set does not match the system's state quantities.
        ConflictingDynamics
            If a reached composite location cannot be instantiated.
        """
        location, box = initial_set.resolve(self.system)
        orbit = Orbit()
        root = orbit._new_branch()
        step = self.configuration.maximum_step_size
        queue = [_Task(root, location, box, 0.0, 0, step, initial=True)]
        wave = 0
        while queue:
            results = self._run_wave(queue, evolution_time, semantics)
            queue = []
            for result in results:
                last = -1
                for node in result.nodes:
                    last = orbit._append(node)
                for k, child in enumerate(result.children):
                    if k > 0 or not result.continues:
                        child.branch = orbit._new_branch(parent=child.branch, fork=last)
                    queue.append(child)
            if self.verbosity > 0:
                print(f"wave {wave}: {len(results)} task(s), {len(orbit)} node(s), {len(orbit.branches)} branch(es)")
            wave += 1
        return orbit

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------

    def _run_wave(self, tasks: list[_Task], budget: HybridTime, semantics: Semantics) -> list[_Result]:
        workers = self.configuration.workers
        if workers == 1 or len(tasks) == 1:
            return [self._run(t, budget, semantics) for t in tasks]
        with ThreadPoolExecutor(max_workers=min(workers, len(tasks))) as pool:
            return list(pool.map(lambda t: self._run(t, budget, semantics), tasks))

    # -------------------------------------------------------------------------
    # Nodes and children
    # -------------------------------------------------------------------------

    def _node(
        self,
        task: _Task,
        kind: NodeKind,
        mode: DiscreteMode,
        event: Optional[str] = None,
        reach: Optional[Box] = None,
        start: Optional[float] = None,
    ) -> OrbitNode:
        auxiliary = self._auxiliary(mode, task.box)
        if reach is None:
            bounds = task.box.join(auxiliary)
        else:
            bounds = reach.join(self._auxiliary(mode, reach))
        return OrbitNode(
            branch=task.branch,
            kind=kind,
            time=task.time,
            steps=task.steps,
            location=task.location,
            enclosure=task.box,
            auxiliary=auxiliary,
            reach=bounds,
            start=task.time if start is None else start,
            event=event,
        )

    def _auxiliary(self, mode: DiscreteMode, box: Box) -> Box:
        names = tuple(n for n, _ in mode.auxiliary)
        if not names:
            return Box((), np.zeros(0), np.zeros(0))
        if not _finite(box):
            return _entire(names)
        bounds = [self.solver.evaluate(e, box) for _, e in mode.auxiliary]
        return Box(names, np.array([b.lower for b in bounds]), np.array([b.upper for b in bounds]))

    def _branch_point(self, task: _Task, mode: DiscreteMode, result: _Result, node: Optional[OrbitNode]) -> OrbitNode:
        # A BRANCH node stands in for a plain flow snapshot at the same instant
        if node is None:
            return self._node(task, NodeKind.BRANCH, mode)
        if node.kind == NodeKind.FLOW:
            return replace(node, kind=NodeKind.BRANCH)
        result.nodes.append(node)
        return self._node(task, NodeKind.BRANCH, mode)

    def _fork(
        self, task: _Task, mode: DiscreteMode, result: _Result, node: Optional[OrbitNode], children: list[_Task]
    ) -> _Result:
        result.nodes.append(self._branch_point(task, mode, result, node))
        result.children = children
        return result

    def _terminate(
        self, task: _Task, mode: DiscreteMode, result: _Result, node: Optional[OrbitNode], reason: TerminationReason
    ) -> _Result:
        if task.windows:
            # jumps that may still have been taken start branches of their own
            last = self._branch_point(task, mode, result, node)
            result.children = [self._child(task, w) for _, w in sorted(task.windows.items())]
            result.continues = False
        else:
            last = node if node is not None else self._node(task, NodeKind.FLOW, mode)
        last = replace(last, termination=reason)
        result.nodes.append(last)
        if reason in (TerminationReason.BLOCKED, TerminationReason.ENCLOSURE_TOO_LARGE):
            warnings.warn(
                f"Branch {last.branch} ended {reason.name} at t={last.time:.6g} in {last.location}",
                RuntimeWarning,
            )
        return result

    def _child(self, task: _Task, window: Optional[_Window] = None) -> _Task:
        """The flowing continuation of ``task``, or a task taking the jump of ``window``."""
        child = _Task(
            branch=task.branch,
            location=task.location,
            box=task.box,
            time=task.time,
            steps=task.steps,
            step=task.step,
        )
        if window is None:
            child.windows = dict(task.windows)
            child.open = task.open
            child.open_orphans = task.open_orphans
        else:
            child.pending = window
        return child

    # -------------------------------------------------------------------------
    # Guards
    # -------------------------------------------------------------------------

    def _definitely(self, bound: Interval) -> bool:
        return bound.lower >= -self.configuration.guard_tolerance

    def _possibly(self, bound: Interval) -> bool:
        return bound.upper >= -self.configuration.guard_tolerance

    def _stagnant(self, mode: DiscreteMode) -> bool:
        """All exits urgent, and no guard function can ever increase."""
        if not mode.transitions or not all(t.is_urgent for t in mode.transitions):
            return False
        for rate in mode.guard_rates:
            value = None if rate is None else constant_value(rate)
            if value is None or value > 0.0:
                return False
        return True

    def _closing(self, task: _Task, mode: DiscreteMode, i: int) -> _Window:
        """Jump of transition ``i`` now, merged with its open window."""
        window = task.windows.get(i)
        if window is None:
            return _Window(mode.transitions[i], task.time, task.box)
        return replace(window, hull=window.hull.hull(task.box))

    # -------------------------------------------------------------------------
    # Single branch
    # -------------------------------------------------------------------------

    def _run(self, task: _Task, budget: HybridTime, semantics: Semantics) -> _Result:
        """Evolve one branch until it terminates or forks."""
        cfg = self.configuration
        upper = semantics == Semantics.UPPER
        result = _Result()
        mode = self.system.mode(task.location)
        # Snapshot of the current state not yet recorded; None for the
        # flowing child of a fork, whose start is the fork node itself
        node = self._node(task, NodeKind.INITIAL, mode) if task.initial else None

        while True:
            if task.pending is not None:
                window, task.pending = task.pending, None
                if node is not None:
                    result.nodes.append(node)
                node, mode = self._jump(task, window)
                if self.verbosity > 1:
                    print(f"  branch {task.branch}: t={task.time:.6g} {window.transition.event} -> {task.location}")
                if task.steps >= budget.discrete_transitions:
                    return self._terminate(task, mode, result, node, TerminationReason.STEP_BUDGET_EXPIRED)

            box = task.box
            if not _finite(box) or box.radius > cfg.maximum_enclosure_radius:
                return self._terminate(task, mode, result, node, TerminationReason.ENCLOSURE_TOO_LARGE)

            orphans = [self.solver.evaluate(o.guard_function, box) for o in mode.orphans]
            if any(self._definitely(g) for g in orphans):
                return self._terminate(task, mode, result, node, TerminationReason.BLOCKED)

            guards = [self.solver.evaluate(t.guard_function, box) for t in mode.transitions]
            urgent = [i for i, t in enumerate(mode.transitions) if t.is_urgent and self._definitely(guards[i])]
            if urgent:
                if task.steps >= budget.discrete_transitions:
                    return self._terminate(task, mode, result, node, TerminationReason.STEP_BUDGET_EXPIRED)
                jumps = [self._closing(task, mode, i) for i in urgent]
                others = [w for i, w in sorted(task.windows.items()) if i not in urgent]
                if not upper or (len(jumps) == 1 and not others):
                    task.pending = jumps[0]
                    continue
                return self._fork(task, mode, result, node, [self._child(task, w) for w in jumps + others])

            if not upper and task.steps < budget.discrete_transitions:
                enabled = [i for i, g in enumerate(guards) if self._definitely(g)]
                if enabled:
                    task.pending = _Window(mode.transitions[enabled[0]], task.time, box)
                    continue

            # Windows follow the guards that are possibly satisfied here
            possible = frozenset(i for i, g in enumerate(guards) if self._possibly(g))
            closed = [w for i, w in sorted(task.windows.items()) if i not in possible]
            task.windows = {i: w for i, w in task.windows.items() if i in possible}
            if upper and task.steps < budget.discrete_transitions:
                for i in sorted(possible - set(task.windows)):
                    task.windows[i] = _Window(mode.transitions[i], task.time, box)
            task.open = possible
            task.open_orphans = frozenset(k for k, g in enumerate(orphans) if self._possibly(g))
            if closed:
                children = [self._child(task)] + [self._child(task, w) for w in closed]
                return self._fork(task, mode, result, node, children)

            if budget.continuous_time - task.time <= 0.0:
                return self._terminate(task, mode, result, node, TerminationReason.TIME_EXPIRED)

            if self._stagnant(mode):
                return self._terminate(task, mode, result, node, TerminationReason.BLOCKED)

            if node is not None:
                result.nodes.append(node)
            start = task.time
            tube = self._advance(task, mode, budget.continuous_time, upper)
            node = self._node(task, NodeKind.FLOW, mode, reach=tube, start=start)

    def _jump(self, task: _Task, window: _Window) -> tuple[OrbitNode, DiscreteMode]:
        """Apply the resets of ``window`` and move ``task`` to its target."""
        transition = window.transition
        box = self.solver.apply(transition.reset_map(), window.hull)
        task.location = transition.target
        task.steps += 1
        task.windows = {}
        task.open = frozenset()
        task.open_orphans = frozenset()
        mode = self.system.mode(task.location)
        if task.time > window.start:
            # states that jumped early have been flowing since
            box = self._sweep(mode.dynamics, box, task.time - window.start)
        task.box = box
        return self._node(task, NodeKind.JUMP, mode, transition.event, start=window.start), mode

    def _advance(self, task: _Task, mode: DiscreteMode, horizon: float, upper: bool) -> Box:
        """
        Flow ``task`` one step and return the tube of the step.

        The step is truncated at the first instant one of these happens:

        - a guard that is not open becomes possibly satisfied on the tube,
        - an open urgent guard (or, under LOWER semantics, any open guard)
          or an open orphan becomes definitely satisfied at the end,
        - the guard of an open window stops being possibly satisfied.

        The instant is bracketed by bisection, keeping the end of the
        bracket where the watch fires.
        """
        cfg = self.configuration
        dynamics = mode.dynamics
        box = task.box
        entering = [t.guard_function for i, t in enumerate(mode.transitions) if i not in task.open]
        entering += [o.guard_function for k, o in enumerate(mode.orphans) if k not in task.open_orphans]
        settling = [
            mode.transitions[i].guard_function for i in sorted(task.open) if mode.transitions[i].is_urgent or not upper
        ]
        settling += [mode.orphans[k].guard_function for k in sorted(task.open_orphans)]
        leaving = [mode.transitions[i].guard_function for i in sorted(task.windows)]

        def watched(end: Box, tube: Box) -> bool:
            if any(self._possibly(self.solver.evaluate(g, tube)) for g in entering):
                return True
            if any(self._definitely(self.solver.evaluate(g, end)) for g in settling):
                return True
            return any(not self._possibly(self.solver.evaluate(g, end)) for g in leaving)

        remaining = horizon - task.time
        h = min(2.0 * task.step, cfg.maximum_step_size)
        while True:
            s = min(h, remaining)
            end = self.solver.flow(dynamics, box, s)
            tube = self.solver.reach(dynamics, box, s, end) if _finite(end) else None
            if tube is not None:
                break
            h = 0.5 * s
            if h < cfg.crossing_tolerance:
                end = tube = _entire(box.names)
                break
        if s == h:
            task.step = h

        if _finite(tube) and (entering or settling or leaving) and watched(end, tube):
            s_lo, s_hi = 0.0, s
            for _ in range(cfg.maximum_bisections):
                if s_hi - s_lo <= cfg.crossing_tolerance:
                    break
                mid = 0.5 * (s_lo + s_hi)
                mid_end = self.solver.flow(dynamics, box, mid)
                mid_tube = self.solver.reach(dynamics, box, mid, mid_end)
                if mid_tube is None or watched(mid_end, mid_tube):
                    # a longer step's tube still encloses the shorter one
                    s_hi, end = mid, mid_end
                    if mid_tube is not None:
                        tube = mid_tube
                else:
                    s_lo = mid
            s = s_hi

        tube = tube.hull(end)
        task.box = end
        task.time = horizon if s == remaining else task.time + s
        for i, w in task.windows.items():
            task.windows[i] = replace(w, hull=w.hull.hull(tube))
        return tube

    def _sweep(self, dynamics: Dynamics, box: Box, duration: float) -> Box:
        """Hull of every state reached from ``box`` within ``duration``."""
        cfg = self.configuration
        swept = box
        elapsed = 0.0
        h = cfg.maximum_step_size
        while elapsed < duration:
            if not _finite(box):
                return _entire(swept.names)
            s = min(h, duration - elapsed)
            end = self.solver.flow(dynamics, box, s)
            tube = self.solver.reach(dynamics, box, s, end)
            if tube is None:
                h = 0.5 * s
                if h < cfg.crossing_tolerance:
                    return _entire(swept.names)
                continue
            swept = swept.hull(tube).hull(end)
            box = end
            elapsed += s
        return swept


def evolve(
    composite: CompositeAutomaton,
    initial_set: HybridSet,
    time_budget: float,
    max_transitions: int,
    semantics: Semantics = Semantics.UPPER,
    configuration: Optional[EvolverConfiguration] = None,
    solver: Optional[FlowSolver] = None,
) -> Orbit:
    """Evolve ``initial_set`` for ``time_budget`` time and ``max_transitions`` jumps."""
    evolver = Evolver(composite, configuration, solver)
    return evolver.orbit(initial_set, HybridTime(time_budget, max_transitions), semantics)
