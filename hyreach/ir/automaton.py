"""
Atomic hybrid automata.

An atomic automaton is a single discrete-continuous state machine: named
locations, each owning the assignments active while resident there, and
labelled transitions between them. Everything is plain data; locations and
transitions are kept in arenas (tuples) and transitions are indexed by their
source location.

Automata are immutable once built. Use `build_atomic_automaton` (or the
`AutomatonBuilder` authoring helper) which validates the description and
raises `MalformedModel` when it is inconsistent::

    >>> from hyreach.ir import RealVariable, RealConstant, dot, prime
    >>> x = RealVariable("x")
    >>> b = AutomatonBuilder("heater")
    >>> b.new_mode("on", dot({x: 1.0}))
    >>> b.new_mode("off", dot({x: -1.0}))
    >>> b.new_transition("on", "switch_off", "off", prime({x: x}), x >= 10.0)
    >>> b.new_transition("off", "switch_on", "on", prime({x: x}), x <= 5.0)
    >>> heater = b.build()
    >>> heater.location_names
    ('on', 'off')
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from hyreach.errors import MalformedModel
from hyreach.ir.assignment import Assignment
from hyreach.ir.expr import Expr, free_quantities, to_expr
from hyreach.ir.types import AssignmentKind, EventKind


@dataclass(frozen=True)
class DiscreteEvent:
    """Named discrete label. Events with equal names are shared."""

    name: str

    def __repr__(self) -> str:
        return self.name


@dataclass(frozen=True)
class Location:
    """Discrete mode of one automaton and its active assignments."""

    name: str
    assignments: tuple[Assignment, ...] = ()

    @property
    def algebraic(self) -> tuple[Assignment, ...]:
        return tuple(a for a in self.assignments if a.kind == AssignmentKind.ALGEBRAIC)

    @property
    def differential(self) -> tuple[Assignment, ...]:
        return tuple(a for a in self.assignments if a.kind == AssignmentKind.DIFFERENTIAL)

    @property
    def defined(self) -> frozenset[str]:
        """Quantities given an algebraic or differential definition here."""
        return frozenset(a.target for a in self.assignments)

    def __repr__(self) -> str:
        return f"Location({self.name}, {list(self.assignments)})"


@dataclass(frozen=True)
class Transition:
    """
    Discrete transition.

    A missing guard is always satisfied. Quantities without a reset keep
    their value across the jump.
    """

    source: str
    event: str
    target: str
    guard: Optional[Expr] = None
    resets: tuple[Assignment, ...] = ()
    kind: EventKind = EventKind.URGENT

    @property
    def is_urgent(self) -> bool:
        return self.kind == EventKind.URGENT

    def __repr__(self) -> str:
        return (
            f"{self.source} -{self.event}-> {self.target} "
            f"[{self.kind.name.lower()}, guard={self.guard}, resets={list(self.resets)}]"
        )


@dataclass(frozen=True)
class AtomicAutomaton:
    """Immutable single hybrid automaton."""

    name: str
    locations: tuple[Location, ...]
    events: tuple[DiscreteEvent, ...]
    transitions: tuple[Transition, ...]
    _outgoing: dict = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self):
        outgoing: dict[str, list[int]] = {loc.name: [] for loc in self.locations}
        for i, t in enumerate(self.transitions):
            outgoing.setdefault(t.source, []).append(i)
        object.__setattr__(self, "_outgoing", {k: tuple(v) for k, v in outgoing.items()})

    @property
    def location_names(self) -> tuple[str, ...]:
        return tuple(loc.name for loc in self.locations)

    @property
    def event_names(self) -> frozenset[str]:
        return frozenset(e.name for e in self.events)

    def location(self, name: str) -> Location:
        for loc in self.locations:
            if loc.name == name:
                return loc
        raise KeyError(f"Automaton '{self.name}' has no location '{name}'. Available: {self.location_names}")

    def outgoing(self, location: str) -> tuple[Transition, ...]:
        """Transitions leaving ``location``, in declaration order."""
        return tuple(self.transitions[i] for i in self._outgoing.get(location, ()))

    def quantities(self) -> frozenset[str]:
        """Names of the variable quantities this automaton reads or writes."""
        names: set[str] = set()
        for loc in self.locations:
            for a in loc.assignments:
                names.add(a.target)
                names.update(free_quantities(a.expr))
        for t in self.transitions:
            if t.guard is not None:
                names.update(free_quantities(t.guard))
            for a in t.resets:
                names.add(a.target)
                names.update(free_quantities(a.expr))
        return frozenset(names)

    def __str__(self) -> str:
        lines = [f"AtomicAutomaton '{self.name}'"]
        for loc in self.locations:
            lines.append(f"  location {loc.name}:")
            for a in loc.assignments:
                lines.append(f"    {a}")
        for t in self.transitions:
            lines.append(f"  {t}")
        return "\n".join(lines)


def _as_location(loc: Union[Location, str]) -> Location:
    return loc if isinstance(loc, Location) else Location(loc)


def _as_event(event: Union[DiscreteEvent, str]) -> DiscreteEvent:
    return event if isinstance(event, DiscreteEvent) else DiscreteEvent(event)


def build_atomic_automaton(
    name: str,
    locations: Iterable[Union[Location, str]],
    events: Iterable[Union[DiscreteEvent, str]],
    transitions: Iterable[Transition],
) -> AtomicAutomaton:
    """
    Build and validate an atomic automaton.

    Raises
    ------
    MalformedModel
        If a quantity has duplicate assignments within one location, a
        transition references an undeclared location or event, or any other
        error reported by `validate_automaton`.
    """
    from hyreach.ir.validation import validate_automaton

    automaton = AtomicAutomaton(
        name=name,
        locations=tuple(_as_location(loc) for loc in locations),
        events=tuple(_as_event(e) for e in events),
        transitions=tuple(transitions),
    )
    result = validate_automaton(automaton)
    if result.has_errors:
        raise MalformedModel(name, "; ".join(i.message for i in result.errors), result)
    return automaton


class AutomatonBuilder:
    """
    Incremental authoring helper for atomic automata.

    Modes and transitions are added in any order; events are collected from
    the transitions. `build` validates the result.
    """

    def __init__(self, name: str):
        self.name = name
        self._modes: dict[str, list[Assignment]] = {}
        self._events: dict[str, DiscreteEvent] = {}
        self._transitions: list[Transition] = []

    def new_mode(self, location: Union[Location, str], *assignments: Sequence[Assignment]) -> None:
        """Add a location with one or more groups of assignments."""
        loc = _as_location(location)
        if loc.name in self._modes:
            raise MalformedModel(self.name, f"location '{loc.name}' already exists")
        merged = list(loc.assignments)
        for group in assignments:
            merged.extend(group)
        self._modes[loc.name] = merged

    def new_event(self, event: Union[DiscreteEvent, str]) -> None:
        """Declare an event that no transition of this automaton uses yet."""
        e = _as_event(event)
        self._events.setdefault(e.name, e)

    def new_transition(
        self,
        source: Union[Location, str],
        event: Union[DiscreteEvent, str],
        target: Union[Location, str],
        resets: Sequence[Assignment] = (),
        guard: Optional[Any] = None,
        kind: EventKind = EventKind.URGENT,
    ) -> None:
        """Add a transition; ``guard`` may be any boolean expression."""
        e = _as_event(event)
        self._events.setdefault(e.name, e)
        self._transitions.append(
            Transition(
                source=_as_location(source).name,
                event=e.name,
                target=_as_location(target).name,
                guard=None if guard is None else to_expr(guard),
                resets=tuple(resets),
                kind=kind,
            )
        )

    def build(self) -> AtomicAutomaton:
        return build_atomic_automaton(
            self.name,
            [Location(n, tuple(a)) for n, a in self._modes.items()],
            list(self._events.values()),
            self._transitions,
        )
