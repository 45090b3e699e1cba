"""
Tests for the synchronized product (hyreach.composition).
"""

from concurrent.futures import ThreadPoolExecutor

import pytest

from hyreach import ConflictingDynamics, MalformedModel, compose
from hyreach.composition import CompositeLocation
from hyreach.ir import AutomatonBuilder, EventKind, RealConstant, dot, let, prime, variables
from hyreach.ir.expr import constant_value, literal, substitute
from hyreach.ir.types import AssignmentKind

x, y, u, w = variables("x y u w")


def _left():
    b = AutomatonBuilder("left")
    b.new_mode("a0", dot({x: 1.0}))
    b.new_mode("a1", dot({x: -1.0}))
    b.new_transition("a0", "go", "a1", prime({x: 0.0}), x >= 1.0, EventKind.URGENT)
    b.new_transition("a1", "back", "a0", (), x <= -1.0, EventKind.URGENT)
    return b.build()


def _right():
    b = AutomatonBuilder("right")
    b.new_mode("b0", dot({y: 2.0}))
    b.new_mode("b1", dot({y: 0.0}))
    b.new_transition("b0", "go", "b1", (), y >= 2.0, EventKind.PERMISSIVE)
    return b.build()


def _clock():
    t = variables("t")[0]
    b = AutomatonBuilder("clock")
    b.new_mode("run", dot({t: 1.0}))
    b.new_transition("run", "tick", "run", prime({t: 0.0}), t >= 1.0)
    return b.build()


# ---------------------------------------------------------------------------
# Product structure
# ---------------------------------------------------------------------------


class TestProduct:
    def test_shared_events_and_quantities(self) -> None:
        system = compose([_left(), _right()])
        assert system.shared_events == frozenset({"go"})
        assert system.events == ("back", "go")
        assert system.state_quantities == ("x", "y")
        assert system.auxiliary_quantities == ()
        assert system.member_names == ("left", "right")
        assert system.participants("go") == ("left", "right")
        assert system.participants("back") == ("left",)

    def test_shared_transition_is_conjunction(self) -> None:
        system = compose([_left(), _right()])
        (t,) = system.transitions(dict(left="a0", right="b0"))
        assert t.event == "go"
        assert t.participants == ("left", "right")
        assert t.target.as_dict() == {"left": "a1", "right": "b1"}
        assert t.guard == (x >= 1.0) & (y >= 2.0)
        assert t.reset_map() == {"x": literal(0.0)}
        assert all(r.kind == AssignmentKind.RESET for r in t.resets)

    def test_urgent_if_any_participant_is(self) -> None:
        system = compose([_left(), _right()])
        (t,) = system.transitions(dict(left="a0", right="b0"))
        assert t.kind == EventKind.URGENT
        assert t.is_urgent

    def test_unshared_events_interleave(self) -> None:
        system = compose([_left(), _clock()])
        events = sorted(t.event for t in system.transitions(dict(left="a0", clock="run")))
        assert events == ["go", "tick"]
        tick = [t for t in system.transitions(dict(left="a0", clock="run")) if t.event == "tick"][0]
        assert tick.participants == ("clock",)
        assert tick.target == tick.source

    def test_orphaned_urgent_transition(self) -> None:
        system = compose([_left(), _right()])
        mode = system.mode(dict(left="a0", right="b1"))
        assert mode.transitions == ()
        (orphan,) = mode.orphans
        assert orphan.automaton == "left"
        assert orphan.transition.event == "go"

    def test_permissive_partner_is_not_orphaned(self) -> None:
        system = compose([_left(), _right()])
        mode = system.mode(dict(left="a1", right="b0"))
        assert mode.orphans == ()
        assert [t.event for t in mode.transitions] == ["back"]

    def test_guard_rates(self) -> None:
        system = compose([_left(), _right()])
        mode = system.mode(dict(left="a0", right="b0"))
        # d/dt min(x - 1, y - 2) is not smooth
        assert mode.guard_rates == (None,)
        mode = system.mode(dict(left="a1", right="b1"))
        (rate,) = mode.guard_rates
        assert constant_value(rate) == pytest.approx(1.0)

    def test_location_string(self) -> None:
        loc = CompositeLocation((("left", "a0"), ("right", "b1")))
        assert str(loc) == "left|a0,right|b1"
        assert loc["right"] == "b1"
        assert loc.advance({"left": "a1"}).as_dict() == {"left": "a1", "right": "b1"}


# ---------------------------------------------------------------------------
# Auxiliary quantities
# ---------------------------------------------------------------------------


class TestAuxiliary:
    def _system(self):
        sensor = AutomatonBuilder("sensor")
        sensor.new_mode("on", let({u: w + 1.0, w: 2 * x}))
        sensor.new_mode("off")
        sensor.new_transition("on", "fail", "off", (), None, EventKind.PERMISSIVE)
        plant = AutomatonBuilder("plant")
        plant.new_mode("run", dot({x: u}))
        return compose([sensor.build(), plant.build()])

    def test_dependency_order(self) -> None:
        system = self._system()
        assert system.auxiliary_quantities == ("u", "w")
        mode = system.mode(dict(sensor="on", plant="run"))
        assert [a.target for a in mode.algebraic] == ["w", "u"]

    def test_substituted_into_rates(self) -> None:
        mode = self._system().mode(dict(sensor="on", plant="run"))
        rate = mode.dynamics.rate("x")
        assert constant_value(substitute(rate, {"x": literal(3.0)})) == pytest.approx(7.0)
        aux = mode.auxiliary_expressions()
        assert constant_value(substitute(aux["u"], {"x": literal(3.0)})) == pytest.approx(7.0)

    def test_undefined_auxiliary_read(self) -> None:
        system = self._system()
        with pytest.raises(ConflictingDynamics, match="undefined in location") as exc:
            system.mode(dict(sensor="off", plant="run"))
        assert exc.value.quantity == "u"
        assert exc.value.automata == ("plant",)

    def test_algebraic_loop(self) -> None:
        first = AutomatonBuilder("first")
        first.new_mode("m", let({u: w + 1.0}), dot({x: 1.0}))
        second = AutomatonBuilder("second")
        second.new_mode("m", let({w: u * 2.0}))
        system = compose([first.build(), second.build()])
        with pytest.raises(ConflictingDynamics, match="algebraic loop"):
            system.mode(dict(first="m", second="m"))


# ---------------------------------------------------------------------------
# Conflicts rejected by compose
# ---------------------------------------------------------------------------


class TestConflicts:
    def test_empty(self) -> None:
        with pytest.raises(MalformedModel, match="empty"):
            compose([])

    def test_duplicate_member(self) -> None:
        with pytest.raises(MalformedModel, match="more than once"):
            compose([_left(), _left()])

    def test_same_quantity_defined_twice(self) -> None:
        other = AutomatonBuilder("other")
        other.new_mode("m", dot({x: 2.0}))
        with pytest.raises(ConflictingDynamics) as exc:
            compose([_left(), other.build()])
        assert exc.value.quantity == "x"
        assert exc.value.automata == ("left", "other")

    def test_state_and_auxiliary(self) -> None:
        b = AutomatonBuilder("mixed")
        b.new_mode("p", dot({x: 1.0}))
        b.new_mode("q", let({x: 2.0}))
        with pytest.raises(ConflictingDynamics, match="differential in one location and algebraic"):
            compose([b.build()])

    def test_reset_of_auxiliary(self) -> None:
        b = AutomatonBuilder("bad")
        b.new_mode("m", let({u: 2 * x}), dot({x: 1.0}))
        b.new_transition("m", "jump", "m", prime({u: 0.0}), x >= 1.0)
        with pytest.raises(ConflictingDynamics, match="targets an auxiliary"):
            compose([b.build()])

    def test_shared_event_resets_same_quantity(self) -> None:
        other = AutomatonBuilder("other")
        other.new_mode("m", dot({y: 1.0}))
        other.new_transition("m", "go", "m", prime({x: 5.0}))
        with pytest.raises(ConflictingDynamics, match="shared event 'go'") as exc:
            compose([_left(), other.build()])
        assert exc.value.quantity == "x"

    def test_conflicting_constant_values(self) -> None:
        a = AutomatonBuilder("a")
        a.new_mode("m", dot({x: RealConstant("k", 1.0)}))
        b = AutomatonBuilder("b")
        b.new_mode("m", dot({y: RealConstant("k", 2.0)}))
        with pytest.raises(ConflictingDynamics, match="constant values"):
            compose([a.build(), b.build()])

    def test_constant_and_variable(self) -> None:
        a = AutomatonBuilder("a")
        a.new_mode("m", dot({x: RealConstant("y", 1.0)}))
        with pytest.raises(ConflictingDynamics, match="constant and as a variable"):
            compose([a.build(), _right()])

    def test_conflict_is_value_error(self) -> None:
        with pytest.raises(ValueError):
            compose([_left(), _left()])


# ---------------------------------------------------------------------------
# Algebraic properties
# ---------------------------------------------------------------------------


class TestAlgebra:
    def test_associative(self) -> None:
        one = compose([compose([_left(), _right()]), _clock()])
        two = compose([_left(), compose([_right(), _clock()])])
        assert one.members == two.members
        loc = dict(left="a0", right="b0", clock="run")
        assert one.mode(loc).dynamics == two.mode(loc).dynamics
        assert one.transitions(loc) == two.transitions(loc)

    def test_commutative_up_to_order(self) -> None:
        ab = compose([_left(), _right()])
        ba = compose([_right(), _left()])
        assert ab.state_quantities == ba.state_quantities
        for loc in ab.reachable_locations(dict(left="a0", right="b0")):
            mapping = loc.as_dict()
            assert ab.mode(mapping).dynamics == ba.mode(mapping).dynamics
            left = {(t.event, frozenset(t.target.pairs), t.kind) for t in ab.transitions(mapping)}
            right = {(t.event, frozenset(t.target.pairs), t.kind) for t in ba.transitions(mapping)}
            assert left == right

    def test_projection_round_trip(self) -> None:
        left, right, clock = _left(), _right(), _clock()
        system = compose([compose([clock, right]), left])
        for member in (left, right, clock):
            projected = system.project(member.name)
            assert projected is not member
            assert projected == member
            for loc in member.location_names:
                assert projected.outgoing(loc) == member.outgoing(loc)
        with pytest.raises(KeyError):
            system.project("missing")

    def test_arenas_are_owner_tagged(self) -> None:
        left, right = _left(), _right()
        system = compose([left, right])
        assert [owner for owner, _ in system.mode_arena] == ["left", "left", "right", "right"]
        assert [(owner, t.event) for owner, t in system.transition_arena] == [
            ("left", "go"),
            ("left", "back"),
            ("right", "go"),
        ]
        assert [(owner, e.name) for owner, e in system.event_arena if e.name == "go"] == [
            ("left", "go"),
            ("right", "go"),
        ]

    def test_product_reads_arenas(self) -> None:
        system = compose([_left(), _right()])
        (go,) = system.transitions({"left": "a0", "right": "b0"})
        # the shared transition combines both owners' arena entries
        arena = [t for _, t in system.transition_arena if t.event == "go"]
        assert go.guard == arena[0].guard & arena[1].guard
        assert go.reset_map() == {r.target: r.expr for t in arena for r in t.resets}


# ---------------------------------------------------------------------------
# Locations and discrete reachability
# ---------------------------------------------------------------------------


class TestLocations:
    def test_location_validation(self) -> None:
        system = compose([_left(), _right()])
        with pytest.raises(ValueError, match="Unknown automata"):
            system.location({"left": "a0", "right": "b0", "ghost": "x"})
        with pytest.raises(ValueError, match="right"):
            system.location({"left": "a0"})
        with pytest.raises(ValueError, match="no location 'a9'"):
            system.location({"left": "a9", "right": "b0"})

    def test_location_order_follows_members(self) -> None:
        system = compose([_left(), _right()])
        loc = system.location({"right": "b0", "left": "a0"})
        assert loc.automata == ("left", "right")

    def test_reachable_locations(self) -> None:
        system = compose([_left(), _right()])
        reached = system.reachable_locations(dict(left="a0", right="b0"))
        assert [loc.as_dict() for loc in reached] == [
            {"left": "a0", "right": "b0"},
            {"left": "a1", "right": "b1"},
            {"left": "a0", "right": "b1"},
        ]

    def test_mode_is_cached(self) -> None:
        system = compose([_left(), _right()])
        loc = dict(left="a0", right="b0")
        with ThreadPoolExecutor(max_workers=4) as pool:
            modes = list(pool.map(lambda _: system.mode(loc), range(8)))
        assert all(m is modes[0] for m in modes)

    def test_str(self) -> None:
        text = str(compose([_left(), _right()]))
        assert "left|right" in text
        assert "shared events: go" in text
