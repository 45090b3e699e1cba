"""NumPy point-integrator flow solver.

Deterministic stand-in for a validated solver. Rates are compiled to NumPy
closures and integrated with fixed-step RK4 from a set of sample points of
the enclosure (its centre and its vertices, or only its extreme corners
when there are too many vertices); the result is the hull of the sampled
end points.

Use this solver for:
- Testing the discrete logic of the evolver
- Point (zero-width) initial sets, where it follows a single trajectory

NOT recommended for:
- Wide enclosures of nonlinear systems (the hull is not guaranteed)
"""

import itertools
import math
from collections.abc import Callable

import numpy as np

from hyreach.backends.base import Dynamics, FlowSolver
from hyreach.backends.interval import Box
from hyreach.ir.expr import Expr, ExprKind

_BINARY = {
    ExprKind.ADD: np.add,
    ExprKind.SUB: np.subtract,
    ExprKind.MUL: np.multiply,
    ExprKind.DIV: np.divide,
    ExprKind.POW: np.power,
    ExprKind.MIN: np.minimum,
    ExprKind.MAX: np.maximum,
}

_UNARY = {
    ExprKind.NEG: np.negative,
    ExprKind.SIN: np.sin,
    ExprKind.COS: np.cos,
    ExprKind.TAN: np.tan,
    ExprKind.EXP: np.exp,
    ExprKind.LOG: np.log,
    ExprKind.SQRT: np.sqrt,
    ExprKind.ABS: np.abs,
}


def compile_numpy(expr: Expr, index: dict[str, int]) -> Callable[[np.ndarray], np.ndarray]:
    """
    Compile an arithmetic expression to a vectorised NumPy closure.

    The closure maps an array of points of shape ``(n, len(index))`` to the
    ``n`` values of the expression.
    """
    k = expr.kind
    if k == ExprKind.CONSTANT:
        value = expr.value
        return lambda X: np.full(X.shape[0], value)
    if k == ExprKind.VARIABLE:
        if expr.name not in index:
            raise ValueError(f"Unknown variable: '{expr.name}'. Available variables: {', '.join(sorted(index))}")
        i = index[expr.name]
        return lambda X: X[:, i]
    if k in _UNARY:
        f = _UNARY[k]
        a = compile_numpy(expr.children[0], index)
        return lambda X: f(a(X))
    if k in _BINARY:
        f = _BINARY[k]
        a = compile_numpy(expr.children[0], index)
        b = compile_numpy(expr.children[1], index)
        return lambda X: f(a(X), b(X))
    raise ValueError(f"Unsupported expression for numeric evaluation: {expr}")


class PointFlowSolver(FlowSolver):
    """
    Fixed-step RK4 integration of sample points.

    Parameters
    ----------
    integration_step : float
        Largest RK4 substep
    max_vertices : int
        Vertex sampling is used while a box has at most this many vertices
    """

    def __init__(self, integration_step: float = 0.01, max_vertices: int = 64):
        if integration_step <= 0.0:
            raise ValueError(f"integration_step must be positive, got {integration_step}")
        self.integration_step = integration_step
        self.max_vertices = max_vertices
        self._compiled: dict[Dynamics, Callable[[np.ndarray], np.ndarray]] = {}

    def _rhs(self, dynamics: Dynamics) -> Callable[[np.ndarray], np.ndarray]:
        rhs = self._compiled.get(dynamics)
        if rhs is None:
            index = {n: i for i, n in enumerate(dynamics.names)}
            funcs = [compile_numpy(r, index) for r in dynamics.rates]

            def rhs(X: np.ndarray) -> np.ndarray:
                if not funcs:
                    return np.zeros_like(X)
                return np.stack([f(X) for f in funcs], axis=1)

            self._compiled[dynamics] = rhs
        return rhs

    def _samples(self, box: Box) -> np.ndarray:
        if box.is_point:
            return box.center.reshape(1, -1)
        wide = [i for i in range(len(box)) if box.widths[i] > 0.0]
        points = [box.center]
        if 2 ** len(wide) <= self.max_vertices:
            for corner in itertools.product((0, 1), repeat=len(wide)):
                p = box.lower.copy()
                for i, c in zip(wide, corner):
                    if c:
                        p[i] = box.upper[i]
                points.append(p)
        else:
            points.extend([box.lower, box.upper])
        return np.array(points)

    def integrate(self, dynamics: Dynamics, X: np.ndarray, h: float) -> np.ndarray:
        """Advance the rows of ``X`` by time ``h`` with RK4."""
        rhs = self._rhs(dynamics)
        n = max(1, math.ceil(h / self.integration_step - 1e-9))
        dt = h / n
        for _ in range(n):
            k1 = rhs(X)
            k2 = rhs(X + dt / 2 * k1)
            k3 = rhs(X + dt / 2 * k2)
            k4 = rhs(X + dt * k3)
            X = X + dt / 6 * (k1 + 2 * k2 + 2 * k3 + k4)
        return X

    def flow(self, dynamics: Dynamics, box: Box, h: float) -> Box:
        if h == 0.0:
            return box
        with np.errstate(all="ignore"):
            X = self.integrate(dynamics, self._samples(box), h)
        lower, upper = X.min(axis=0), X.max(axis=0)
        # Diverged components are unbounded
        diverged = ~np.all(np.isfinite(X), axis=0)
        lower[diverged] = -np.inf
        upper[diverged] = np.inf
        return Box(box.names, lower, upper)
