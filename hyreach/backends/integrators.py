"""
Custom explicit Runge–Kutta integrators in CasADi.

This module provides:
- build_rk_integrator: generic explicit RK step builder from a Butcher tableau
- rk4: classic 4th-order RK one-step integrator

Both operate on an autonomous ODE x_dot = f(x) given as a CasADi Function of
one input and return a Function F(x, h) -> xf taking the step size as a
symbolic input, so a single compiled step serves every step length.
"""

from __future__ import annotations

from collections.abc import Sequence

import casadi as ca

RK4_TABLEAU = {
    "A": [
        [0.0, 0.0, 0.0, 0.0],
        [0.5, 0.0, 0.0, 0.0],
        [0.0, 0.5, 0.0, 0.0],
        [0.0, 0.0, 1.0, 0.0],
    ],
    "b": [1.0 / 6.0, 1.0 / 3.0, 1.0 / 3.0, 1.0 / 6.0],
    "c": [0.0, 0.5, 0.5, 1.0],
}


def build_rk_integrator(
    f: ca.Function,
    tableau: dict[str, Sequence],
    name: str = "rk_step",
) -> ca.Function:
    """
    Build a one-step explicit Runge–Kutta integrator from a Butcher tableau.

    Parameters
    ----------
    f : ca.Function
        Dynamics function f(x) -> x_dot of shape (nx, 1)
    tableau : dict
        Dictionary with keys 'A', 'b', 'c':
          - A: list of lists (s x s) lower-triangular coefficients
          - b: list of length s (weights)
          - c: list of length s (nodes)
    name : str
        Name of the resulting CasADi function

    Returns
    -------
    ca.Function
        Function F(x, h) -> xf applying one RK step of size h
    """
    A = tableau["A"]
    b = tableau["b"]
    c = tableau["c"]
    s = len(b)
    assert len(A) == s and all(len(row) == s for row in A), "Invalid A size"
    assert len(c) == s, "Invalid c size"

    x = ca.SX.sym("x", f.size1_in(0))
    h = ca.SX.sym("h")

    # Stage storage
    K = [None] * s

    for i in range(s):
        # Sum_{j=0}^{i-1} a_ij * K_j
        inc = 0
        for j in range(i):
            a_ij = A[i][j]
            if a_ij != 0:
                inc = inc + a_ij * K[j]
        K[i] = f(x + h * inc)

    x_next = x
    for i in range(s):
        b_i = b[i]
        if b_i != 0:
            x_next = x_next + h * b_i * K[i]

    return ca.Function(name, [x, h], [x_next], ["x", "h"], ["xf"])


def rk4(f: ca.Function, name: str = "rk4_step") -> ca.Function:
    """
    Classic 4th-order Runge–Kutta (RK4) one-step integrator builder.

    Uses 4 stages with the standard Butcher tableau::

        0   |
        1/2 | 1/2
        1/2 | 0     1/2
        1   | 0     0     1
        ----------------------
              1/6   1/3   1/3   1/6
    """
    return build_rk_integrator(f, RK4_TABLEAU, name=name)
