"""
Tests for orbit queries (hyreach.orbit).
"""

import numpy as np
import pytest

from hyreach import Evolver, EvolverConfiguration, HybridSet, HybridTime, NodeKind, compose
from hyreach.backends import PointFlowSolver
from hyreach.ir import AutomatonBuilder, EventKind, dot, let, variables

e, pct, v, x = variables("e pct v x")


@pytest.fixture
def tank_orbit():
    b = AutomatonBuilder("tank")
    b.new_mode("drain", dot({e: -1.0}), let({pct: 100 * e}))
    b.new_mode("fill", dot({e: 2.0}), let({pct: 100 * e}))
    b.new_transition("drain", "empty", "fill", (), e <= 0.0)
    b.new_transition("fill", "full", "drain", (), e >= 1.0)
    evolver = Evolver(compose([b.build()]), EvolverConfiguration(maximum_step_size=0.25), PointFlowSolver())
    return evolver.orbit(HybridSet({"tank": "drain"}, {e: 0.5}), HybridTime(3.0, 10))


@pytest.fixture
def hub_orbit():
    b = AutomatonBuilder("hub")
    b.new_mode("idle", dot({x: 1.0}))
    b.new_mode("left", dot({x: 0.0}))
    b.new_mode("right", dot({x: -1.0}))
    b.new_transition("idle", "go_left", "left", (), x >= 1.0, EventKind.PERMISSIVE)
    b.new_transition("idle", "go_right", "right", (), x >= 1.0, EventKind.PERMISSIVE)
    evolver = Evolver(compose([b.build()]), solver=PointFlowSolver())
    return evolver.orbit(HybridSet({"hub": "idle"}, {x: 0.0}), HybridTime(2.0, 5))


class TestSamples:
    def test_samples_follow_branch(self, tank_orbit) -> None:
        samples = list(tank_orbit.samples(0))
        assert len(samples) == len(tank_orbit)
        assert samples[0].time == 0.0
        assert samples[-1].time == 3.0
        times = [s.time for s in samples]
        assert times == sorted(times)

    def test_samples_include_auxiliary(self, tank_orbit) -> None:
        first = next(iter(tank_orbit.samples()))
        assert first.enclosure.names == ("e", "pct")
        assert first.enclosure["pct"].midpoint == pytest.approx(50.0)

    def test_sequence_is_restartable(self, tank_orbit) -> None:
        seq = tank_orbit.samples(0)
        assert list(seq) == list(seq)
        assert len(seq) == len(list(seq))

    def test_child_branch_replays_ancestry(self, hub_orbit) -> None:
        samples = list(hub_orbit.samples(1))
        fork = hub_orbit.branch(1).fork
        assert hub_orbit.nodes[fork].kind == NodeKind.BRANCH
        hubs = [s.location.as_dict()["hub"] for s in samples]
        assert hubs == ["idle", "idle", "idle", "left"]
        assert samples[2].time == samples[3].time == 2.0
        # the jump may have been taken anywhere since the guard opened
        assert samples[3].start == pytest.approx(1.0)

    def test_unknown_branch(self, hub_orbit) -> None:
        with pytest.raises(KeyError):
            hub_orbit.samples(7)


class TestQueries:
    def test_range_of_whole_horizon(self, tank_orbit) -> None:
        r = tank_orbit.range_of("e", 0.0, 3.0)
        assert r.lower == pytest.approx(0.0, abs=1e-6)
        assert r.upper == pytest.approx(1.0, abs=1e-6)

    def test_range_of_brackets_interval(self, tank_orbit) -> None:
        r = tank_orbit.range_of("e", 0.1, 0.2)
        # the step over [0, 0.25] covers the interval
        assert r.lower == pytest.approx(0.25)
        assert r.upper == pytest.approx(0.5)
        assert r.contains(0.5 - 0.15)

    def test_range_of_auxiliary(self, tank_orbit) -> None:
        r = tank_orbit.range_of("pct", 0.0, 0.25)
        assert r.upper == pytest.approx(50.0)

    def test_range_of_errors(self, tank_orbit) -> None:
        with pytest.raises(ValueError, match="Empty time interval"):
            tank_orbit.range_of("e", 2.0, 1.0)
        with pytest.raises(ValueError, match="No branch reaches"):
            tank_orbit.range_of("e", 5.0, 6.0)
        with pytest.raises(KeyError):
            tank_orbit.range_of("missing", 0.0, 1.0)

    def test_range_of_all_branches(self, hub_orbit) -> None:
        r = hub_orbit.range_of("x", 1.5, 2.0)
        assert r.lower == pytest.approx(0.0, abs=1e-6)
        assert r.upper == pytest.approx(2.0, abs=1e-6)
        only_left = hub_orbit.range_of("x", 1.5, 2.0, branch=1)
        assert only_left.lower == pytest.approx(1.0, abs=1e-6)
        assert only_left.upper == pytest.approx(2.0, abs=1e-6)

    def test_range_of_covers_peak_between_samples(self) -> None:
        b = AutomatonBuilder("spring")
        b.new_mode("free", dot({x: v, v: -x}))
        evolver = Evolver(compose([b.build()]), EvolverConfiguration(maximum_step_size=1.0), PointFlowSolver())
        orbit = evolver.orbit(HybridSet({"spring": "free"}, {x: 0.0, v: 1.0}), HybridTime(3.0, 0))
        # x = sin t peaks at t = pi / 2, strictly between samples
        assert all(abs(s.time - np.pi / 2) > 1e-3 for s in orbit.samples())
        assert max(s.enclosure["x"].upper for s in orbit.samples()) < 1.0
        r = orbit.range_of("x", 0.0, 3.0)
        assert r.contains(1.0)
        near_peak = orbit.range_of("x", 1.55, 1.6)
        assert near_peak.contains(1.0)

    def test_reach_bounds_cover_sample_span(self, tank_orbit) -> None:
        for s in tank_orbit.samples():
            assert s.start <= s.time
            assert s.reach.contains(s.enclosure)

    def test_trajectory(self, tank_orbit) -> None:
        traj = tank_orbit.trajectory(0)
        assert len(traj) == len(tank_orbit)
        assert traj.names == ("e", "pct")
        np.testing.assert_allclose(traj("e"), 0.5 * (traj.lower("e") + traj.upper("e")))
        assert traj.t[0] == 0.0
        assert traj.t_start[0] == 0.0
        np.testing.assert_allclose(traj.t_start[1:], traj.t[:-1])
        assert np.all(traj.reach_lower("e") <= traj.lower("e"))
        assert np.all(traj.reach_upper("e") >= traj.upper("e"))
        assert "n_points" in repr(traj)

    def test_reached_locations(self, hub_orbit) -> None:
        reached = [loc.as_dict()["hub"] for loc in hub_orbit.reached_locations()]
        assert reached == ["idle", "left", "right"]

    def test_final_nodes(self, hub_orbit) -> None:
        finals = hub_orbit.final_nodes()
        assert [n.branch for n in finals] == [0, 1, 2]
        assert all(n.is_terminal for n in finals)
        for b in range(3):
            nodes = hub_orbit.branch_nodes(b)
            assert sum(n.is_terminal for n in nodes) == 1
            assert nodes[-1].is_terminal

    def test_branch_starts_with_jump(self, hub_orbit) -> None:
        first = hub_orbit.branch_nodes(2)[0]
        assert first.kind == NodeKind.JUMP
        assert first.event == "go_right"
        assert first.steps == 1

    def test_repr(self, hub_orbit) -> None:
        assert repr(hub_orbit) == f"Orbit(nodes={len(hub_orbit)}, branches=3)"
        assert "BRANCH" in repr(hub_orbit.nodes[2])
