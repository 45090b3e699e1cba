"""
CasADi flow solver.

Compiles the dynamics of each composite location to CasADi symbolic
expressions and integrates them with fixed-step RK4, enabling:
- Compiled evaluation of the vector field
- Automatic differentiation of the step map

Enclosures are propagated to first order: the centre of the box is
integrated and the radius is mapped through the absolute value of the
step sensitivity ``dx(h)/dx(0)``. This is exact for linear dynamics and a
linearisation otherwise.
"""

import math
import threading

import casadi as ca
import numpy as np

from hyreach.backends.base import Dynamics, FlowSolver
from hyreach.backends.integrators import rk4
from hyreach.backends.interval import Box
from hyreach.ir.expr import Expr, ExprKind

_BINARY = {
    ExprKind.ADD: lambda l, r: l + r,
    ExprKind.SUB: lambda l, r: l - r,
    ExprKind.MUL: lambda l, r: l * r,
    ExprKind.DIV: lambda l, r: l / r,
    ExprKind.POW: lambda l, r: l**r,
    ExprKind.MIN: ca.fmin,
    ExprKind.MAX: ca.fmax,
}

_UNARY = {
    ExprKind.NEG: lambda a: -a,
    ExprKind.SIN: ca.sin,
    ExprKind.COS: ca.cos,
    ExprKind.TAN: ca.tan,
    ExprKind.EXP: ca.exp,
    ExprKind.LOG: ca.log,
    ExprKind.SQRT: ca.sqrt,
    ExprKind.ABS: ca.fabs,
}


def to_casadi(expr: Expr, symbols: dict[str, ca.SX]) -> ca.SX:
    """Convert an arithmetic expression to a CasADi expression."""
    k = expr.kind
    if k == ExprKind.CONSTANT:
        return ca.SX(expr.value)
    if k == ExprKind.VARIABLE:
        if expr.name not in symbols:
            available = sorted(symbols.keys())
            raise ValueError(f"Unknown variable: '{expr.name}'\n" f"Available variables: {', '.join(available)}")
        return symbols[expr.name]
    if k in _UNARY:
        return _UNARY[k](to_casadi(expr.children[0], symbols))
    if k in _BINARY:
        return _BINARY[k](to_casadi(expr.children[0], symbols), to_casadi(expr.children[1], symbols))
    raise ValueError(f"Unsupported expression type: {k}")


class CasadiFlowSolver(FlowSolver):
    """
    RK4 flow solver with first-order enclosure propagation.

    Parameters
    ----------
    integration_step : float
        Largest RK4 substep
    """

    def __init__(self, integration_step: float = 0.01):
        if integration_step <= 0.0:
            raise ValueError(f"integration_step must be positive, got {integration_step}")
        self.integration_step = integration_step
        self._compiled: dict[Dynamics, ca.Function] = {}
        self._lock = threading.Lock()

    def compile(self, dynamics: Dynamics) -> ca.Function:
        """
        One RK4 step with its sensitivity.

        Returns
        -------
        ca.Function
            ``step(x, h) -> (xf, dxf_dx)``
        """
        with self._lock:
            step = self._compiled.get(dynamics)
            if step is None:
                step = self._build(dynamics)
                self._compiled[dynamics] = step
        return step

    def _build(self, dynamics: Dynamics) -> ca.Function:
        n = len(dynamics.names)
        x = ca.SX.sym("x", n)
        symbols = {name: x[i] for i, name in enumerate(dynamics.names)}
        xdot = ca.vertcat(*[to_casadi(r, symbols) for r in dynamics.rates]) if n > 0 else ca.SX(0, 1)
        f = ca.Function("f", [x], [xdot], ["x"], ["xdot"])

        rk = rk4(f)
        xs = ca.SX.sym("x", n)
        h = ca.SX.sym("h")
        xf = rk(xs, h)
        return ca.Function("step", [xs, h], [xf, ca.jacobian(xf, xs)], ["x", "h"], ["xf", "jac"])

    def flow(self, dynamics: Dynamics, box: Box, h: float) -> Box:
        if h == 0.0 or len(box) == 0:
            return box
        step = self.compile(dynamics)
        n = max(1, math.ceil(h / self.integration_step - 1e-9))
        dt = h / n

        xc = box.center
        radius = 0.5 * box.widths
        phi = np.eye(len(box))
        with np.errstate(all="ignore"):
            for _ in range(n):
                xf, jac = step(xc, dt)
                xc = np.array(xf).reshape(-1)
                phi = np.array(jac) @ phi
            r = np.zeros(len(box)) if box.is_point else np.abs(phi) @ radius
            lower, upper = xc - r, xc + r
        diverged = ~(np.isfinite(lower) & np.isfinite(upper))
        lower[diverged] = -np.inf
        upper[diverged] = np.inf
        return Box(box.names, lower, upper)
