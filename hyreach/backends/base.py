"""
Continuous-flow solver interface.

The evolution engine never integrates or evaluates anything itself. It
consumes a `FlowSolver`, an injected strategy object that

- advances an enclosure along the active dynamics (`flow`),
- encloses every state visited during a step (`reach`),
- bounds an expression over an enclosure (`evaluate`),
- applies reset assignments to an enclosure (`apply`).

Any solver that returns enclosures containing every trajectory of the
input enclosure satisfies the engine's contract. The solvers in this package
are stand-ins: `PointFlowSolver` (pure NumPy) for deterministic tests and
`CasadiFlowSolver` for compiled integration.
"""

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Optional

import numpy as np

from hyreach.backends.interval import Box, Interval, evaluate_interval
from hyreach.ir.expr import Expr


@dataclass(frozen=True)
class Dynamics:
    """
    Vector field of one composite location.

    ``rates[i]`` is the time derivative of ``names[i]``; rates only read
    state quantities and constants.
    """

    names: tuple[str, ...]
    rates: tuple[Expr, ...]

    def __post_init__(self):
        if len(self.names) != len(self.rates):
            raise ValueError(f"Dynamics needs one rate per quantity, got {len(self.names)} and {len(self.rates)}")

    def rate(self, name: str) -> Expr:
        return self.rates[self.names.index(name)]

    def as_dict(self) -> dict[str, Expr]:
        return dict(zip(self.names, self.rates))


class FlowSolver(ABC):
    """Abstract continuous-flow capability consumed by the evolver."""

    picard_iterations = 12

    @abstractmethod
    def flow(self, dynamics: Dynamics, box: Box, h: float) -> Box:
        """
        Enclosure of the states reached after flowing ``box`` for time ``h``.

        Parameters
        ----------
        dynamics : Dynamics
            Active vector field; ``box.names`` equals ``dynamics.names``
        box : Box
            Enclosure at the start of the step
        h : float
            Duration, ``h >= 0``

        Returns
        -------
        Box
            Enclosure at time ``h``, same component order as ``box``
        """
        pass

    def reach(self, dynamics: Dynamics, box: Box, h: float, end: Optional[Box] = None) -> Optional[Box]:
        """
        Enclosure of every state visited while flowing ``box`` over ``[0, h]``.

        A candidate ``B`` is accepted once ``box + [0, h] * f(B)`` lies
        inside it, which by the Picard-Lindelof operator bounds every
        trajectory over the whole step. The candidate starts from the hull of
        ``box`` and ``end`` and is inflated until it is accepted.

        Returns
        -------
        Box or None
            None when no enclosure is found within `picard_iterations`;
            a shorter step then has to be tried.
        """
        if h == 0.0 or len(box) == 0:
            return box
        candidate = box if end is None else box.hull(end)
        for _ in range(self.picard_iterations):
            rates = [self.evaluate(r, candidate) for r in dynamics.rates]
            lo = np.array([min(0.0, r.lower) for r in rates])
            hi = np.array([max(0.0, r.upper) for r in rates])
            lower = box.lower + h * lo
            upper = box.upper + h * hi
            if not (np.all(np.isfinite(lower)) and np.all(np.isfinite(upper))):
                return None
            if np.all(candidate.lower <= lower) and np.all(upper <= candidate.upper):
                return Box(box.names, lower, upper)
            lower = np.minimum(lower, candidate.lower)
            upper = np.maximum(upper, candidate.upper)
            pad = 0.1 * (upper - lower) + 1e-12 * (1.0 + np.maximum(np.abs(lower), np.abs(upper)))
            candidate = Box(box.names, lower - pad, upper + pad)
        return None

    def evaluate(self, expr: Expr, box: Box) -> Interval:
        """Bound a real-valued expression over ``box``."""
        return evaluate_interval(expr, box.env())

    def apply(self, resets: Mapping[str, Expr], box: Box) -> Box:
        """
        Apply reset assignments simultaneously.

        Every right-hand side is evaluated on the pre-jump enclosure;
        components without a reset keep their bounds.
        """
        env = box.env()
        values = {name: evaluate_interval(expr, env) for name, expr in resets.items()}
        return box.replace(values)
