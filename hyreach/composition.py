"""
Synchronized product of hybrid automata.

`compose` merges atomic automata into one `CompositeAutomaton`:

- A composite location is an ordered tuple of member locations.
- The continuous state is the union of the members' quantities; equal
  names denote the same shared quantity.
- Events declared by two or more members are shared and fire in lock-step,
  with the conjunction of the participants' guards and the union of their
  resets.

The product space is never materialised. `CompositeAutomaton.mode`
instantiates a composite location on first use and caches the resulting
`DiscreteMode`, which holds everything the evolution engine needs: the
algebraic assignments in dependency order, the vector field over the state
quantities, and the candidate transitions with auxiliary quantities
substituted away.

Example::

    >>> system = compose([motor_master(), motor_slave(), teleop_system(), motor_controllers()])
    >>> loc = system.location({name: "moving" for name in system.member_names})
    >>> system.mode(loc).dynamics.names
    ('energy_tank_m', 'old_ref_m', 'position_m', ...)
"""

from __future__ import annotations

import itertools
import threading
from collections import deque
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from functools import reduce
from typing import Any, Optional, Union

from hyreach.backends.base import Dynamics
from hyreach.errors import ConflictingDynamics, MalformedModel
from hyreach.ir.assignment import Assignment
from hyreach.ir.automaton import AtomicAutomaton, DiscreteEvent, Location, Transition, build_atomic_automaton
from hyreach.ir.expr import ZERO, Expr, free_quantities, guard_function, lie_derivative, named_constants, simplify, substitute
from hyreach.ir.types import AssignmentKind, EventKind


@dataclass(frozen=True)
class CompositeLocation:
    """Ordered ``(automaton, location)`` pairs, one per member."""

    pairs: tuple[tuple[str, str], ...]

    def __getitem__(self, automaton: str) -> str:
        for name, loc in self.pairs:
            if name == automaton:
                return loc
        raise KeyError(automaton)

    @property
    def automata(self) -> tuple[str, ...]:
        return tuple(name for name, _ in self.pairs)

    def as_dict(self) -> dict[str, str]:
        return dict(self.pairs)

    def advance(self, targets: Mapping[str, str]) -> "CompositeLocation":
        """Copy with some members moved to new locations."""
        return CompositeLocation(tuple((name, targets.get(name, loc)) for name, loc in self.pairs))

    def __str__(self) -> str:
        return ",".join(f"{name}|{loc}" for name, loc in self.pairs)


@dataclass(frozen=True)
class CompositeTransition:
    """
    Discrete transition of the product.

    ``guard`` and ``resets`` are expressed over state quantities only;
    ``guard_function`` is ``g`` with ``guard <=> g >= 0``.
    """

    event: str
    source: CompositeLocation
    target: CompositeLocation
    participants: tuple[str, ...]
    guard: Optional[Expr]
    guard_function: Expr
    resets: tuple[Assignment, ...]
    kind: EventKind

    @property
    def is_urgent(self) -> bool:
        return self.kind == EventKind.URGENT

    def reset_map(self) -> dict[str, Expr]:
        return {a.target: a.expr for a in self.resets}

    def __repr__(self) -> str:
        return f"{self.source} -{self.event}-> {self.target} [{self.kind.name.lower()}, guard={self.guard}]"


@dataclass(frozen=True)
class Orphan:
    """Urgent transition of a shared event that no partner can join."""

    automaton: str
    transition: Transition
    guard_function: Expr


@dataclass(frozen=True)
class DiscreteMode:
    """Instantiated composite location."""

    location: CompositeLocation
    algebraic: tuple[Assignment, ...]
    auxiliary: tuple[tuple[str, Expr], ...]
    dynamics: Dynamics
    transitions: tuple[CompositeTransition, ...]
    guard_rates: tuple[Optional[Expr], ...]
    orphans: tuple[Orphan, ...]

    def auxiliary_expressions(self) -> dict[str, Expr]:
        """Auxiliary quantities as functions of the state."""
        return dict(self.auxiliary)


# =============================================================================
# Dependency ordering
# =============================================================================


def _tarjan_scc(nodes: list[int], adj: dict[int, list[int]]) -> list[list[int]]:
    """Strongly connected components, each emitted after those it points to."""
    index_counter = [0]
    stack: list[int] = []
    lowlink: dict[int, int] = {}
    index: dict[int, int] = {}
    on_stack: dict[int, bool] = {}
    sccs: list[list[int]] = []

    def strongconnect(node: int) -> None:
        index[node] = index_counter[0]
        lowlink[node] = index_counter[0]
        index_counter[0] += 1
        stack.append(node)
        on_stack[node] = True

        for successor in adj.get(node, []):
            if successor not in index:
                strongconnect(successor)
                lowlink[node] = min(lowlink[node], lowlink[successor])
            elif on_stack.get(successor, False):
                lowlink[node] = min(lowlink[node], index[successor])

        if lowlink[node] == index[node]:
            scc: list[int] = []
            while True:
                successor = stack.pop()
                on_stack[successor] = False
                scc.append(successor)
                if successor == node:
                    break
            sccs.append(scc)

    for node in nodes:
        if node not in index:
            strongconnect(node)

    return sccs


def _sort_algebraic(
    assignments: list[tuple[str, Assignment]], location: CompositeLocation
) -> list[tuple[str, Assignment]]:
    """
    Order algebraic assignments so every one reads only earlier ones.

    Raises
    ------
    ConflictingDynamics
        If the assignments form an algebraic loop.
    """
    defined = {a.target: i for i, (_, a) in enumerate(assignments)}
    adj = {
        i: sorted(defined[q] for q in free_quantities(a.expr) if q in defined)
        for i, (_, a) in enumerate(assignments)
    }
    order: list[int] = []
    for scc in _tarjan_scc(list(range(len(assignments))), adj):
        if len(scc) > 1 or scc[0] in adj[scc[0]]:
            loop = sorted(assignments[i][1].target for i in scc)
            owners = tuple(sorted({assignments[i][0] for i in scc}))
            raise ConflictingDynamics(loop[0], owners, f"algebraic loop {loop} in location {location}")
        order.append(scc[0])
    return [assignments[i] for i in order]


# =============================================================================
# Composite automaton
# =============================================================================


def _conjunction(guards: Iterable[Optional[Expr]]) -> Optional[Expr]:
    present = [g for g in guards if g is not None]
    if not present:
        return None
    return reduce(lambda a, b: a & b, present)


@dataclass(frozen=True)
class CompositeAutomaton:
    """
    Immutable synchronized product of atomic automata.

    Build with `compose`. Instances are safe to share between threads:
    the only mutable state is the mode cache, which is guarded by a lock.
    """

    members: tuple[AtomicAutomaton, ...]
    shared_events: frozenset[str]
    state_quantities: tuple[str, ...]
    auxiliary_quantities: tuple[str, ...]
    mode_arena: tuple = field(default=(), init=False, repr=False, compare=False)
    event_arena: tuple = field(default=(), init=False, repr=False, compare=False)
    transition_arena: tuple = field(default=(), init=False, repr=False, compare=False)
    _locations: dict = field(default_factory=dict, init=False, repr=False, compare=False)
    _outgoing: dict = field(default_factory=dict, init=False, repr=False, compare=False)
    _modes: dict = field(default_factory=dict, init=False, repr=False, compare=False)
    _lock: Any = field(default_factory=threading.Lock, init=False, repr=False, compare=False)

    def __post_init__(self):
        # Owner-tagged arenas of every member; the product reads only these
        modes: list[tuple[str, Location]] = []
        events: list[tuple[str, DiscreteEvent]] = []
        transitions: list[tuple[str, Transition]] = []
        for m in self.members:
            for loc in m.locations:
                self._locations[(m.name, loc.name)] = len(modes)
                self._outgoing[(m.name, loc.name)] = []
                modes.append((m.name, loc))
            events.extend((m.name, e) for e in m.events)
            for t in m.transitions:
                self._outgoing.setdefault((m.name, t.source), []).append(len(transitions))
                transitions.append((m.name, t))
        object.__setattr__(self, "mode_arena", tuple(modes))
        object.__setattr__(self, "event_arena", tuple(events))
        object.__setattr__(self, "transition_arena", tuple(transitions))

    @property
    def name(self) -> str:
        return "|".join(m.name for m in self.members)

    @property
    def member_names(self) -> tuple[str, ...]:
        return tuple(m.name for m in self.members)

    @property
    def events(self) -> tuple[str, ...]:
        """All event names, sorted."""
        return tuple(sorted({e.name for _, e in self.event_arena}))

    def member(self, name: str) -> AtomicAutomaton:
        for m in self.members:
            if m.name == name:
                return m
        raise KeyError(f"Composite has no member '{name}'. Available: {self.member_names}")

    def participants(self, event: str) -> tuple[str, ...]:
        """Members declaring ``event``, in member order."""
        return tuple(dict.fromkeys(owner for owner, e in self.event_arena if e.name == event))

    def location(self, value: Union[CompositeLocation, Mapping[str, str]]) -> CompositeLocation:
        """
        Composite location from a ``{automaton: location}`` mapping.

        Raises
        ------
        ValueError
            If a member is missing, an automaton is unknown, or a location
            is not declared by its automaton.
        """
        mapping = value.as_dict() if isinstance(value, CompositeLocation) else dict(value)
        unknown = sorted(set(mapping) - set(self.member_names))
        if unknown:
            raise ValueError(f"Unknown automata in location: {unknown}")
        missing = [n for n in self.member_names if n not in mapping]
        if missing:
            raise ValueError(f"Location does not name a location of: {missing}")
        for name in self.member_names:
            if (name, mapping[name]) not in self._locations:
                available = tuple(loc.name for owner, loc in self.mode_arena if owner == name)
                raise ValueError(f"Automaton '{name}' has no location '{mapping[name]}'. Available: {available}")
        return CompositeLocation(tuple((n, mapping[n]) for n in self.member_names))

    # -------------------------------------------------------------------------
    # Discrete structure
    # -------------------------------------------------------------------------

    def _candidates(
        self, location: CompositeLocation
    ) -> tuple[list[tuple[str, tuple[tuple[str, Transition], ...]]], list[tuple[str, Transition]]]:
        """
        Participant transitions of every composite transition leaving
        ``location``, sorted by event name, and the orphaned urgent ones.
        """
        candidates: list[tuple[str, tuple[tuple[str, Transition], ...]]] = []
        orphans: list[tuple[str, Transition]] = []
        for event in self.events:
            labelled: list[list[tuple[str, Transition]]] = []
            for name in self.participants(event):
                out = [(name, t) for t in self._leaving(name, location[name]) if t.event == event]
                labelled.append(out)
            if all(labelled):
                for combo in itertools.product(*labelled):
                    candidates.append((event, tuple(combo)))
            elif event in self.shared_events:
                orphans.extend(p for out in labelled for p in out if p[1].is_urgent)
        return candidates, orphans

    def successors(self, location: CompositeLocation) -> tuple[tuple[str, CompositeLocation], ...]:
        """Guard-free ``(event, target)`` successors of a location."""
        candidates, _ = self._candidates(location)
        return tuple(
            (event, location.advance({name: t.target for name, t in combo})) for event, combo in candidates
        )

    def reachable_locations(
        self, initial: Union[CompositeLocation, Mapping[str, str]]
    ) -> tuple[CompositeLocation, ...]:
        """Locations reachable in the discrete graph, ignoring guards, in BFS order."""
        start = self.location(initial)
        seen = {start}
        order = [start]
        queue = deque([start])
        while queue:
            loc = queue.popleft()
            for _, target in self.successors(loc):
                if target not in seen:
                    seen.add(target)
                    order.append(target)
                    queue.append(target)
        return tuple(order)

    # -------------------------------------------------------------------------
    # Lazy instantiation
    # -------------------------------------------------------------------------

    def mode(self, location: Union[CompositeLocation, Mapping[str, str]]) -> DiscreteMode:
        """
        Instantiate (once) the composite location ``location``.

        Raises
        ------
        ConflictingDynamics
            On an algebraic loop, or when an auxiliary quantity is read in a
            location where no member defines it.
        """
        loc = self.location(location)
        with self._lock:
            mode = self._modes.get(loc)
            if mode is None:
                mode = self._instantiate(loc)
                self._modes[loc] = mode
        return mode

    def _local(self, owner: str, location: str) -> Location:
        return self.mode_arena[self._locations[(owner, location)]][1]

    def _leaving(self, owner: str, location: str) -> tuple[Transition, ...]:
        return tuple(self.transition_arena[i][1] for i in self._outgoing[(owner, location)])

    def transitions(self, location: Union[CompositeLocation, Mapping[str, str]]) -> tuple[CompositeTransition, ...]:
        return self.mode(location).transitions

    def _instantiate(self, loc: CompositeLocation) -> DiscreteMode:
        algebraic: list[tuple[str, Assignment]] = []
        rates: dict[str, Expr] = {}
        for name in self.member_names:
            local = self._local(name, loc[name])
            algebraic.extend((name, a) for a in local.algebraic)
            rates.update((a.target, a.expr) for a in local.differential)

        aux_here = {a.target for _, a in algebraic}
        aux_all = set(self.auxiliary_quantities)

        def check_reads(owner: str, expr: Expr, what: str) -> None:
            undefined = sorted((free_quantities(expr) & aux_all) - aux_here)
            if undefined:
                raise ConflictingDynamics(
                    undefined[0], (owner,), f"{what} reads an auxiliary quantity undefined in location {loc}"
                )

        for name in self.member_names:
            for a in self._local(name, loc[name]).assignments:
                check_reads(name, a.expr, f"assignment {a}")
            for t in self._leaving(name, loc[name]):
                if t.guard is not None:
                    check_reads(name, t.guard, f"guard of '{t.event}'")
                for r in t.resets:
                    check_reads(name, r.expr, f"reset {r}")

        ordered = _sort_algebraic(algebraic, loc)
        resolved: dict[str, Expr] = {}
        for _, a in ordered:
            resolved[a.target] = simplify(substitute(a.expr, resolved))

        dynamics = Dynamics(
            self.state_quantities,
            tuple(simplify(substitute(rates.get(q, ZERO), resolved)) for q in self.state_quantities),
        )
        field_rates = dynamics.as_dict()

        candidates, orphaned = self._candidates(loc)
        transitions: list[CompositeTransition] = []
        guard_rates: list[Optional[Expr]] = []
        for event, combo in candidates:
            guard = _conjunction(t.guard for _, t in combo)
            if guard is not None:
                guard = substitute(guard, resolved)
            g = guard_function(guard)
            resets = tuple(
                Assignment(r.target, simplify(substitute(r.expr, resolved)), AssignmentKind.RESET)
                for _, t in combo
                for r in t.resets
            )
            urgent = any(t.is_urgent for _, t in combo)
            transitions.append(
                CompositeTransition(
                    event=event,
                    source=loc,
                    target=loc.advance({name: t.target for name, t in combo}),
                    participants=tuple(name for name, _ in combo),
                    guard=guard,
                    guard_function=g,
                    resets=resets,
                    kind=EventKind.URGENT if urgent else EventKind.PERMISSIVE,
                )
            )
            guard_rates.append(lie_derivative(g, field_rates))

        orphans = tuple(
            Orphan(name, t, guard_function(None if t.guard is None else substitute(t.guard, resolved)))
            for name, t in orphaned
        )

        return DiscreteMode(
            location=loc,
            algebraic=tuple(a for _, a in ordered),
            auxiliary=tuple(resolved.items()),
            dynamics=dynamics,
            transitions=tuple(transitions),
            guard_rates=tuple(guard_rates),
            orphans=orphans,
        )

    # -------------------------------------------------------------------------
    # Projection
    # -------------------------------------------------------------------------

    def project(self, name: str) -> AtomicAutomaton:
        """
        Rebuild the member automaton ``name`` from the product's arenas.

        Raises
        ------
        KeyError
            If ``name`` is not a member.
        """
        if name not in self.member_names:
            raise KeyError(f"Composite has no member '{name}'. Available: {self.member_names}")
        return build_atomic_automaton(
            name,
            [loc for owner, loc in self.mode_arena if owner == name],
            [e for owner, e in self.event_arena if owner == name],
            [t for owner, t in self.transition_arena if owner == name],
        )

    def __str__(self) -> str:
        lines = [f"CompositeAutomaton '{self.name}'"]
        lines.append(f"  state: {', '.join(self.state_quantities)}")
        if self.auxiliary_quantities:
            lines.append(f"  auxiliary: {', '.join(self.auxiliary_quantities)}")
        if self.shared_events:
            lines.append(f"  shared events: {', '.join(sorted(self.shared_events))}")
        return "\n".join(lines)


# =============================================================================
# compose
# =============================================================================


def _flatten(automata: Sequence[Union[AtomicAutomaton, CompositeAutomaton]]) -> tuple[AtomicAutomaton, ...]:
    members: list[AtomicAutomaton] = []
    for a in automata:
        if isinstance(a, CompositeAutomaton):
            members.extend(a.members)
        else:
            members.append(a)
    return tuple(members)


def _defined(m: AtomicAutomaton, kind: AssignmentKind) -> set[str]:
    return {a.target for loc in m.locations for a in loc.assignments if a.kind == kind}


def _constants(m: AtomicAutomaton) -> dict[str, float]:
    found: dict[str, float] = {}
    for loc in m.locations:
        for a in loc.assignments:
            found.update(named_constants(a.expr))
    for t in m.transitions:
        if t.guard is not None:
            found.update(named_constants(t.guard))
        for r in t.resets:
            found.update(named_constants(r.expr))
    return found


def _check_conflicts(members: tuple[AtomicAutomaton, ...], shared: frozenset[str]) -> None:
    # Every pair of member locations occurs in the product
    for a, b in itertools.combinations(members, 2):
        for la in a.locations:
            for lb in b.locations:
                common = sorted(la.defined & lb.defined)
                if common:
                    raise ConflictingDynamics(
                        common[0],
                        (a.name, b.name),
                        f"defined in both '{a.name}|{la.name}' and '{b.name}|{lb.name}'",
                    )

    states: dict[str, str] = {}
    auxiliaries: dict[str, str] = {}
    for m in members:
        for q in sorted(_defined(m, AssignmentKind.DIFFERENTIAL)):
            states.setdefault(q, m.name)
        for q in sorted(_defined(m, AssignmentKind.ALGEBRAIC)):
            auxiliaries.setdefault(q, m.name)
    for q in sorted(set(states) & set(auxiliaries)):
        owners = tuple(dict.fromkeys((states[q], auxiliaries[q])))
        raise ConflictingDynamics(q, owners, "differential in one location and algebraic in another")

    for m in members:
        for t in m.transitions:
            for r in t.resets:
                if r.target in auxiliaries:
                    raise ConflictingDynamics(
                        r.target, (m.name,), f"reset on '{t.event}' targets an auxiliary quantity"
                    )

    for event in sorted(shared):
        targets: list[tuple[str, set[str]]] = []
        for m in members:
            if event in m.event_names:
                targets.append((m.name, {r.target for t in m.transitions if t.event == event for r in t.resets}))
        for (na, ta), (nb, tb) in itertools.combinations(targets, 2):
            common = sorted(ta & tb)
            if common:
                raise ConflictingDynamics(common[0], (na, nb), f"both reset it on shared event '{event}'")

    values: dict[str, tuple[float, str]] = {}
    variables = set()
    for m in members:
        variables.update(m.quantities())
    for m in members:
        for name, value in _constants(m).items():
            if name in variables:
                raise ConflictingDynamics(name, (m.name,), "used as a constant and as a variable")
            if name in values and values[name][0] != value:
                raise ConflictingDynamics(
                    name, (values[name][1], m.name), f"constant values {values[name][0]} and {value} differ"
                )
            values.setdefault(name, (value, m.name))


def compose(automata: Sequence[Union[AtomicAutomaton, CompositeAutomaton]]) -> CompositeAutomaton:
    """
    Synchronized product of automata.

    Composite arguments are flattened into their members, so composition is
    associative; reordering the arguments only permutes location tuples.

    Raises
    ------
    MalformedModel
        If no automaton is given or two members share a name.
    ConflictingDynamics
        If two members define the same quantity in locations that can be
        active together, a quantity is both differential and algebraic, two
        participants of a shared event reset the same quantity, or a reset
        targets an auxiliary quantity.
    """
    members = _flatten(automata)
    if not members:
        raise MalformedModel("<composite>", "cannot compose an empty collection of automata")
    names = [m.name for m in members]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise MalformedModel(duplicates[0], "automaton appears more than once in the composition")

    counts: dict[str, int] = {}
    for m in members:
        for e in m.event_names:
            counts[e] = counts.get(e, 0) + 1
    shared = frozenset(e for e, c in counts.items() if c > 1)

    _check_conflicts(members, shared)

    auxiliary: set[str] = set()
    everything: set[str] = set()
    for m in members:
        auxiliary.update(_defined(m, AssignmentKind.ALGEBRAIC))
        everything.update(m.quantities())

    return CompositeAutomaton(
        members=members,
        shared_events=shared,
        state_quantities=tuple(sorted(everything - auxiliary)),
        auxiliary_quantities=tuple(sorted(auxiliary)),
    )
