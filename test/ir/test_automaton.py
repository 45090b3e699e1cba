"""Tests for atomic automata and their builders (hyreach.ir.automaton)."""

import pytest

from hyreach.errors import MalformedModel
from hyreach.ir import (
    AssignmentKind,
    AutomatonBuilder,
    EventKind,
    Location,
    RealConstant,
    RealVariable,
    Transition,
    build_atomic_automaton,
    dot,
    let,
    prime,
)


@pytest.fixture
def heater():
    x = RealVariable("x")
    b = AutomatonBuilder("heater")
    b.new_mode("on", dot({x: 1.0}))
    b.new_mode("off", dot({x: -1.0}))
    b.new_transition("on", "switch_off", "off", prime({x: x}), x >= 10.0)
    b.new_transition("off", "switch_on", "on", (), x <= 5.0, EventKind.PERMISSIVE)
    return b.build()


class TestAssignments:
    def test_builders_set_kind(self) -> None:
        x, y = RealVariable("x"), RealVariable("y")
        assert all(a.kind == AssignmentKind.DIFFERENTIAL for a in dot({x: y, y: -x}))
        assert let({y: 2 * x})[0].is_algebraic
        assert prime({x: 0.0})[0].is_reset

    def test_repr(self) -> None:
        x = RealVariable("x")
        assert repr(dot({x: 1.0})[0]) == "dot(x) = 1.0"
        assert repr(prime({x: 0.0})[0]) == "next(x) = 0.0"
        assert repr(let({x: 2.0})[0]) == "x = 2.0"

    def test_constant_target_rejected(self) -> None:
        k = RealConstant("k", 1.0)
        with pytest.raises(ValueError, match="constant"):
            dot({k: 1.0})


class TestAtomicAutomaton:
    def test_structure(self, heater) -> None:
        assert heater.name == "heater"
        assert heater.location_names == ("on", "off")
        assert heater.event_names == frozenset({"switch_on", "switch_off"})

    def test_outgoing_index(self, heater) -> None:
        (t,) = heater.outgoing("on")
        assert t.event == "switch_off"
        assert t.target == "off"
        assert t.is_urgent
        (t,) = heater.outgoing("off")
        assert not t.is_urgent

    def test_location_lookup(self, heater) -> None:
        loc = heater.location("on")
        assert loc.defined == frozenset({"x"})
        assert len(loc.differential) == 1
        assert loc.algebraic == ()
        with pytest.raises(KeyError):
            heater.location("idle")

    def test_quantities(self, heater) -> None:
        assert heater.quantities() == frozenset({"x"})

    def test_immutable(self, heater) -> None:
        with pytest.raises(AttributeError):
            heater.name = "other"

    def test_str_lists_locations(self, heater) -> None:
        s = str(heater)
        assert "location on" in s
        assert "switch_off" in s


class TestBuildErrors:
    def test_duplicate_differential(self) -> None:
        x = RealVariable("x")
        loc = Location("a", dot({x: 1.0}) + dot({x: 2.0}))
        with pytest.raises(MalformedModel, match="more than one differential"):
            build_atomic_automaton("bad", [loc], [], [])

    def test_duplicate_algebraic(self) -> None:
        y = RealVariable("y")
        loc = Location("a", let({y: 1.0}) + let({y: 2.0}))
        with pytest.raises(MalformedModel) as exc:
            build_atomic_automaton("bad", [loc], [], [])
        assert exc.value.automaton == "bad"
        assert exc.value.result.has_errors

    def test_algebraic_and_differential(self) -> None:
        x = RealVariable("x")
        loc = Location("a", let({x: 1.0}) + dot({x: 2.0}))
        with pytest.raises(MalformedModel, match="both an algebraic and a differential"):
            build_atomic_automaton("bad", [loc], [], [])

    def test_undeclared_location(self) -> None:
        t = Transition("a", "go", "nowhere")
        with pytest.raises(MalformedModel, match="undeclared target location 'nowhere'"):
            build_atomic_automaton("bad", ["a"], ["go"], [t])

    def test_undeclared_event(self) -> None:
        t = Transition("a", "go", "a")
        with pytest.raises(MalformedModel, match="undeclared event 'go'"):
            build_atomic_automaton("bad", ["a"], [], [t])

    def test_duplicate_location(self) -> None:
        with pytest.raises(MalformedModel, match="duplicate location"):
            build_atomic_automaton("bad", ["a", "a"], [], [])

    def test_builder_duplicate_mode(self) -> None:
        b = AutomatonBuilder("bad")
        b.new_mode("a")
        with pytest.raises(MalformedModel, match="already exists"):
            b.new_mode("a")

    def test_error_is_value_error(self) -> None:
        with pytest.raises(ValueError):
            build_atomic_automaton("bad", ["a", "a"], [], [])

    def test_message_names_automaton(self) -> None:
        with pytest.raises(MalformedModel, match="Malformed automaton 'bad'"):
            build_atomic_automaton("bad", ["a", "a"], [], [])
