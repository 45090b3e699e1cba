"""
Initial sets for evolution.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Union

import numpy as np

from hyreach.backends.interval import Box, Interval
from hyreach.composition import CompositeAutomaton, CompositeLocation
from hyreach.ir.quantity import Quantity


def _key(name: Union[str, Quantity]) -> str:
    return name if isinstance(name, str) else name.name


class HybridSet:
    """
    A composite location and bounds on the continuous state.

    Bounds are given per quantity as a value, a ``(lo, hi)`` pair or an
    `Interval`; keys may be names or quantities.

    Example::

        >>> HybridSet({"tank": "moving", ...}, {"energy": (0.4, 0.5), "x": 0.0, ...})
    """

    def __init__(
        self,
        location: Union[CompositeLocation, Mapping[str, str]],
        bounds: Mapping[Any, Union[float, tuple, Interval]],
    ):
        self.location = location
        self.bounds: dict[str, Union[float, tuple, Interval]] = {_key(k): v for k, v in bounds.items()}

    def resolve(self, system: CompositeAutomaton) -> tuple[CompositeLocation, Box]:
        """
        Composite location and state box in the order of
        ``system.state_quantities``.

        Raises
        ------
        ValueError
            If a state quantity is unbounded, a bound names something that
            is not a state quantity, or a bound is empty or NaN.
        """
        location = system.location(self.location)
        states = system.state_quantities
        extra = sorted(set(self.bounds) - set(states))
        if extra:
            hint = [n for n in extra if n in system.auxiliary_quantities]
            msg = f"Initial set bounds unknown state quantities: {extra}"
            if hint:
                msg += f" ({hint} are auxiliary and computed from the state)"
            raise ValueError(msg)
        missing = [n for n in states if n not in self.bounds]
        if missing:
            raise ValueError(f"Initial set must bound every state quantity, missing: {missing}")
        box = Box.from_bounds({n: self.bounds[n] for n in states})
        if not bool(np.all(np.isfinite(box.lower)) and np.all(np.isfinite(box.upper))):
            raise ValueError(f"Initial set must be bounded: {box}")
        return location, box

    def __repr__(self) -> str:
        loc = self.location if isinstance(self.location, CompositeLocation) else dict(self.location)
        return f"HybridSet({loc}, {self.bounds})"
