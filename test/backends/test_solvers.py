"""
Tests for the flow solvers: PointFlowSolver (NumPy) and CasadiFlowSolver.
"""

import math

import casadi as ca
import numpy as np
import pytest

from hyreach.backends import Box, CasadiFlowSolver, Dynamics, Interval, PointFlowSolver
from hyreach.backends.casadi import to_casadi
from hyreach.backends.integrators import rk4
from hyreach.ir import RealVariable, sin, variables
from hyreach.ir.expr import literal

SOLVERS = [PointFlowSolver, CasadiFlowSolver]


# ---------------------------------------------------------------------------
# Dynamics
# ---------------------------------------------------------------------------


class TestDynamics:
    def test_rate_lookup(self) -> None:
        x, v = variables("x v")
        dyn = Dynamics(("v", "x"), (-x, v.expr))
        assert dyn.rate("x") == v.expr
        assert set(dyn.as_dict()) == {"v", "x"}

    def test_length_mismatch(self) -> None:
        with pytest.raises(ValueError, match="one rate per quantity"):
            Dynamics(("x",), ())


# ---------------------------------------------------------------------------
# Shared solver contract
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("solver_cls", SOLVERS)
class TestFlowContract:
    def test_constant_rate_is_exact(self, solver_cls) -> None:
        solver = solver_cls()
        dyn = Dynamics(("x",), (literal(1.0),))
        box = Box.from_bounds({"x": (0.0, 1.0)})
        out = solver.flow(dyn, box, 0.5)
        assert out["x"].lower == pytest.approx(0.5)
        assert out["x"].upper == pytest.approx(1.5)

    def test_zero_duration_returns_box(self, solver_cls) -> None:
        solver = solver_cls()
        x = RealVariable("x")
        dyn = Dynamics(("x",), (-x,))
        box = Box.from_bounds({"x": (1.0, 2.0)})
        assert solver.flow(dyn, box, 0.0) is box

    def test_exponential_decay(self, solver_cls) -> None:
        solver = solver_cls()
        x = RealVariable("x")
        dyn = Dynamics(("x",), (-x,))
        out = solver.flow(dyn, Box.from_bounds({"x": (1.0, 2.0)}), 1.0)
        assert out["x"].lower == pytest.approx(math.exp(-1.0), rel=1e-6)
        assert out["x"].upper == pytest.approx(2.0 * math.exp(-1.0), rel=1e-6)

    def test_point_follows_single_trajectory(self, solver_cls) -> None:
        solver = solver_cls()
        x, v = variables("x v")
        dyn = Dynamics(("v", "x"), (-x, v.expr))
        out = solver.flow(dyn, Box.from_bounds({"v": 0.0, "x": 1.0}), 1.0)
        assert out.is_point
        assert out["x"].lower == pytest.approx(math.cos(1.0), rel=1e-6)
        assert out["v"].lower == pytest.approx(-math.sin(1.0), rel=1e-6)

    def test_divergence_is_unbounded(self, solver_cls) -> None:
        solver = solver_cls()
        x = RealVariable("x")
        dyn = Dynamics(("x",), (x * x,))
        out = solver.flow(dyn, Box.from_bounds({"x": 1.0}), 2.0)
        assert out["x"] == Interval.entire()

    def test_apply_is_simultaneous(self, solver_cls) -> None:
        solver = solver_cls()
        x, y = variables("x y")
        box = Box.from_bounds({"x": (0.0, 1.0), "y": (2.0, 3.0), "z": 5.0})
        out = solver.apply({"x": y.expr, "y": x.expr}, box)
        assert out["x"] == Interval(2.0, 3.0)
        assert out["y"] == Interval(0.0, 1.0)
        assert out["z"] == Interval(5.0, 5.0)

    def test_evaluate_bounds_expression(self, solver_cls) -> None:
        solver = solver_cls()
        x, y = variables("x y")
        box = Box.from_bounds({"x": (0.0, 1.0), "y": (2.0, 3.0)})
        assert solver.evaluate(x + y, box) == Interval(2.0, 4.0)

    def test_rejects_non_positive_step(self, solver_cls) -> None:
        with pytest.raises(ValueError, match="integration_step"):
            solver_cls(integration_step=0.0)

    def test_reach_of_constant_rate_is_exact(self, solver_cls) -> None:
        solver = solver_cls()
        dyn = Dynamics(("x",), (literal(1.0),))
        box = Box.from_bounds({"x": (0.0, 1.0)})
        tube = solver.reach(dyn, box, 0.5)
        assert tube["x"] == Interval(0.0, 1.5)
        assert solver.reach(dyn, box, 0.0) is box

    def test_reach_fails_on_long_growth_step(self, solver_cls) -> None:
        solver = solver_cls()
        x = RealVariable("x")
        dyn = Dynamics(("x",), (x.expr,))
        box = Box.from_bounds({"x": 1.0})
        assert solver.reach(dyn, box, 1.0) is None
        tube = solver.reach(dyn, box, 0.25)
        assert tube["x"].contains(math.exp(0.25))

    def test_reach_covers_peak_inside_step(self, solver_cls) -> None:
        solver = solver_cls()
        x, v = variables("x v")
        dyn = Dynamics(("v", "x"), (-x, v.expr))
        # x = sin t from t = 1.3 to 1.8, through its peak at pi / 2
        box = Box.from_bounds({"v": math.cos(1.3), "x": math.sin(1.3)})
        end = solver.flow(dyn, box, 0.5)
        assert max(box["x"].upper, end["x"].upper) < 1.0
        tube = solver.reach(dyn, box, 0.5, end)
        assert tube["x"].contains(1.0)
        assert tube.contains(end, tol=1e-9)


# ---------------------------------------------------------------------------
# CasADi specifics
# ---------------------------------------------------------------------------


class TestCasadiFlowSolver:
    def test_rotation_maps_radius(self) -> None:
        solver = CasadiFlowSolver()
        x, v = variables("x v")
        dyn = Dynamics(("v", "x"), (-x, v.expr))
        box = Box.from_bounds({"v": 0.0, "x": (0.9, 1.1)})
        out = solver.flow(dyn, box, math.pi / 2)
        # a quarter turn moves the uncertainty from x to v
        assert out["x"].midpoint == pytest.approx(0.0, abs=1e-6)
        assert out["x"].radius == pytest.approx(0.0, abs=1e-6)
        assert out["v"].lower == pytest.approx(-1.1, rel=1e-6)
        assert out["v"].upper == pytest.approx(-0.9, rel=1e-6)

    def test_compiled_step_is_cached(self) -> None:
        solver = CasadiFlowSolver()
        x = RealVariable("x")
        dyn = Dynamics(("x",), (sin(x),))
        assert solver.compile(dyn) is solver.compile(dyn)

    def test_to_casadi_unknown_variable(self) -> None:
        with pytest.raises(ValueError, match="Unknown variable"):
            to_casadi(RealVariable("y").expr, {"x": ca.SX.sym("x")})

    def test_rk4_step(self) -> None:
        x = ca.SX.sym("x")
        f = ca.Function("f", [x], [-x])
        step = rk4(f)
        xf = float(step(1.0, 0.1))
        assert xf == pytest.approx(math.exp(-0.1), rel=1e-6)


class TestPointFlowSolver:
    def test_wide_linear_box_hull(self) -> None:
        solver = PointFlowSolver()
        x, y = variables("x y")
        dyn = Dynamics(("x", "y"), (literal(1.0), -y))
        box = Box.from_bounds({"x": (0.0, 1.0), "y": (1.0, 2.0)})
        out = solver.flow(dyn, box, 1.0)
        assert out["x"].lower == pytest.approx(1.0)
        assert out["x"].upper == pytest.approx(2.0)
        assert out["y"].upper == pytest.approx(2.0 * math.exp(-1.0), rel=1e-6)

    def test_many_dimensions_sample_extreme_corners(self) -> None:
        solver = PointFlowSolver(max_vertices=4)
        names = tuple(f"x{i}" for i in range(4))
        dyn = Dynamics(names, tuple(literal(0.0) for _ in names))
        box = Box(names, np.zeros(4), np.ones(4))
        assert solver.flow(dyn, box, 1.0) == box
