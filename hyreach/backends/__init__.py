"""
Enclosure arithmetic and continuous-flow solvers.

Solvers implement `FlowSolver` and are injected into the evolver:
- CasADi: compiled RK4 with first-order enclosure propagation (default)
- NumPy: RK4 of sample points, a deterministic stand-in for tests
"""

from hyreach.backends.base import Dynamics, FlowSolver
from hyreach.backends.casadi import CasadiFlowSolver
from hyreach.backends.interval import Box, Interval, evaluate_interval
from hyreach.backends.point import PointFlowSolver

__all__ = [
    "Box",
    "CasadiFlowSolver",
    "Dynamics",
    "FlowSolver",
    "Interval",
    "PointFlowSolver",
    "evaluate_interval",
]
