"""
Interval enclosures.

`Interval` is a closed real interval with conservative (natural extension)
arithmetic and `Box` is an axis-aligned enclosure of a set of continuous
states, indexed by quantity name.

Floating point rounding is round-to-nearest: the enclosures are as good as
the arithmetic of the flow solver that produces them. Rigorous outward
rounding is the business of a validated solver plugged in through
`hyreach.backends.base.FlowSolver`.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Union

import numpy as np

from hyreach.ir.expr import Expr, ExprKind

Number = Union[int, float]


@dataclass(frozen=True)
class Interval:
    """Closed interval ``[lower, upper]``."""

    lower: float
    upper: float

    def __post_init__(self):
        lo, hi = float(self.lower), float(self.upper)
        if math.isnan(lo) or math.isnan(hi):
            raise ValueError(f"Interval bounds must not be NaN: [{lo}, {hi}]")
        if lo > hi:
            raise ValueError(f"Empty interval: [{lo}, {hi}]")
        object.__setattr__(self, "lower", lo)
        object.__setattr__(self, "upper", hi)

    @classmethod
    def point(cls, value: Number) -> "Interval":
        return cls(value, value)

    @classmethod
    def entire(cls) -> "Interval":
        return cls(-math.inf, math.inf)

    @property
    def width(self) -> float:
        return self.upper - self.lower

    @property
    def midpoint(self) -> float:
        if math.isinf(self.lower) or math.isinf(self.upper):
            return 0.0 if self.lower == -self.upper else (self.lower if math.isinf(self.upper) else self.upper)
        return 0.5 * (self.lower + self.upper)

    @property
    def radius(self) -> float:
        return 0.5 * self.width

    def contains(self, value: Union[Number, "Interval"], tol: float = 0.0) -> bool:
        if isinstance(value, Interval):
            return self.lower - tol <= value.lower and value.upper <= self.upper + tol
        return self.lower - tol <= value <= self.upper + tol

    def hull(self, other: "Interval") -> "Interval":
        return Interval(min(self.lower, other.lower), max(self.upper, other.upper))

    def __repr__(self) -> str:
        return f"[{self.lower:.6g}, {self.upper:.6g}]"

    # Arithmetic --------------------------------------------------------------

    def __add__(self, other: Union[Number, "Interval"]) -> "Interval":
        o = _as_interval(other)
        return Interval(self.lower + o.lower, self.upper + o.upper)

    __radd__ = __add__

    def __sub__(self, other: Union[Number, "Interval"]) -> "Interval":
        o = _as_interval(other)
        return Interval(self.lower - o.upper, self.upper - o.lower)

    def __rsub__(self, other: Union[Number, "Interval"]) -> "Interval":
        return _as_interval(other) - self

    def __neg__(self) -> "Interval":
        return Interval(-self.upper, -self.lower)

    def __mul__(self, other: Union[Number, "Interval"]) -> "Interval":
        o = _as_interval(other)
        products = [_mul(a, b) for a in (self.lower, self.upper) for b in (o.lower, o.upper)]
        return Interval(min(products), max(products))

    __rmul__ = __mul__

    def __truediv__(self, other: Union[Number, "Interval"]) -> "Interval":
        o = _as_interval(other)
        if o.lower <= 0.0 <= o.upper:
            if self.lower == 0.0 and self.upper == 0.0 and not (o.lower == 0.0 and o.upper == 0.0):
                return Interval(0.0, 0.0)
            return Interval.entire()
        return self * Interval(1.0 / o.upper, 1.0 / o.lower)

    def __rtruediv__(self, other: Union[Number, "Interval"]) -> "Interval":
        return _as_interval(other) / self


def _mul(a: float, b: float) -> float:
    # 0 * inf is 0 for enclosure purposes
    if a == 0.0 or b == 0.0:
        return 0.0
    return a * b


def _as_interval(x: Union[Number, Interval]) -> Interval:
    return x if isinstance(x, Interval) else Interval(x, x)


# =============================================================================
# Elementary functions
# =============================================================================


def _pow(base: Interval, exponent: Interval) -> Interval:
    if exponent.width == 0.0 and float(exponent.lower).is_integer():
        n = int(exponent.lower)
        if n == 0:
            return Interval(1.0, 1.0)
        if n < 0:
            return Interval(1.0, 1.0) / _pow(base, Interval.point(-n))
        lo, hi = base.lower**n, base.upper**n
        if n % 2 == 1:
            return Interval(lo, hi)
        if base.lower <= 0.0 <= base.upper:
            return Interval(0.0, max(lo, hi))
        return Interval(min(lo, hi), max(lo, hi))
    if base.lower <= 0.0:
        raise ValueError(f"Non-integer power of a non-positive interval: {base} ** {exponent}")
    return _exp(exponent * _log(base))


def _exp(x: Interval) -> Interval:
    return Interval(math.exp(min(x.lower, 709.0)) if x.lower > -math.inf else 0.0, _safe_exp(x.upper))


def _safe_exp(v: float) -> float:
    return math.inf if v > 709.0 else math.exp(v)


def _log(x: Interval) -> Interval:
    if x.upper <= 0.0:
        raise ValueError(f"Logarithm of a non-positive interval: {x}")
    lo = -math.inf if x.lower <= 0.0 else math.log(x.lower)
    return Interval(lo, math.log(x.upper))


def _sqrt(x: Interval) -> Interval:
    if x.upper < 0.0:
        raise ValueError(f"Square root of a negative interval: {x}")
    return Interval(math.sqrt(max(x.lower, 0.0)), math.sqrt(x.upper))


def _sin(x: Interval) -> Interval:
    if x.width >= 2.0 * math.pi or math.isinf(x.width):
        return Interval(-1.0, 1.0)
    lo, hi = sorted((math.sin(x.lower), math.sin(x.upper)))
    # Maxima at pi/2 + 2k pi, minima at -pi/2 + 2k pi
    k = math.ceil((x.lower - math.pi / 2) / (2 * math.pi))
    if math.pi / 2 + 2 * math.pi * k <= x.upper:
        hi = 1.0
    k = math.ceil((x.lower + math.pi / 2) / (2 * math.pi))
    if -math.pi / 2 + 2 * math.pi * k <= x.upper:
        lo = -1.0
    return Interval(lo, hi)


def _cos(x: Interval) -> Interval:
    return _sin(x + math.pi / 2)


def _tan(x: Interval) -> Interval:
    if x.width >= math.pi or math.isinf(x.width):
        return Interval.entire()
    k = math.ceil((x.lower - math.pi / 2) / math.pi)
    if math.pi / 2 + math.pi * k <= x.upper:
        return Interval.entire()
    return Interval(math.tan(x.lower), math.tan(x.upper))


def _abs(x: Interval) -> Interval:
    if x.lower >= 0.0:
        return x
    if x.upper <= 0.0:
        return -x
    return Interval(0.0, max(-x.lower, x.upper))


_UNARY = {
    ExprKind.SIN: _sin,
    ExprKind.COS: _cos,
    ExprKind.TAN: _tan,
    ExprKind.EXP: _exp,
    ExprKind.LOG: _log,
    ExprKind.SQRT: _sqrt,
    ExprKind.ABS: _abs,
}


def evaluate_interval(expr: Expr, env: Mapping[str, Interval]) -> Interval:
    """
    Natural interval extension of an arithmetic expression.

    Raises
    ------
    KeyError
        If a variable quantity is missing from ``env``.
    ValueError
        For boolean expressions; convert guards with
        `hyreach.ir.expr.guard_function` first.
    """
    k = expr.kind
    if k == ExprKind.CONSTANT:
        return Interval(expr.value, expr.value)
    if k == ExprKind.VARIABLE:
        if expr.name not in env:
            raise KeyError(f"Unknown quantity: '{expr.name}'. Available: {', '.join(sorted(env))}")
        return env[expr.name]
    if expr.is_boolean:
        raise ValueError(f"Cannot evaluate boolean expression as an interval: {expr}")

    args = [evaluate_interval(c, env) for c in expr.children]
    if k == ExprKind.NEG:
        return -args[0]
    if k == ExprKind.ADD:
        return args[0] + args[1]
    if k == ExprKind.SUB:
        return args[0] - args[1]
    if k == ExprKind.MUL:
        if expr.children[0] == expr.children[1]:
            return _pow(args[0], Interval.point(2))
        return args[0] * args[1]
    if k == ExprKind.DIV:
        return args[0] / args[1]
    if k == ExprKind.POW:
        return _pow(args[0], args[1])
    if k == ExprKind.MIN:
        return Interval(min(args[0].lower, args[1].lower), min(args[0].upper, args[1].upper))
    if k == ExprKind.MAX:
        return Interval(max(args[0].lower, args[1].lower), max(args[0].upper, args[1].upper))
    if k in _UNARY:
        return _UNARY[k](args[0])
    raise ValueError(f"Unsupported expression kind: {k}")


# =============================================================================
# Boxes
# =============================================================================


class Box:
    """
    Axis-aligned enclosure of continuous states.

    Boxes are immutable: operations return new boxes and the bound arrays
    are read-only.
    """

    def __init__(self, names: tuple[str, ...], lower: np.ndarray, upper: np.ndarray):
        lower = np.array(lower, dtype=float).reshape(-1)
        upper = np.array(upper, dtype=float).reshape(-1)
        if not (len(names) == lower.size == upper.size):
            raise ValueError(f"Box needs one bound per name, got {len(names)} names, {lower.size}/{upper.size} bounds")
        if len(set(names)) != len(names):
            raise ValueError(f"Box names must be unique: {names}")
        if np.any(np.isnan(lower)) or np.any(np.isnan(upper)):
            raise ValueError("Box bounds must not be NaN")
        if np.any(lower > upper):
            bad = [n for n, lo, hi in zip(names, lower, upper) if lo > hi]
            raise ValueError(f"Empty box in {bad}")
        lower.flags.writeable = False
        upper.flags.writeable = False
        self._names = tuple(names)
        self._index = {n: i for i, n in enumerate(names)}
        self._lower = lower
        self._upper = upper

    @classmethod
    def from_bounds(cls, bounds: Mapping[str, Union[Number, tuple, Interval]]) -> "Box":
        """Build a box from values, ``(lo, hi)`` pairs or intervals."""
        names = tuple(bounds)
        lower, upper = [], []
        for name in names:
            b = bounds[name]
            if isinstance(b, Interval):
                lower.append(b.lower)
                upper.append(b.upper)
            elif isinstance(b, tuple):
                lower.append(float(b[0]))
                upper.append(float(b[1]))
            else:
                lower.append(float(b))
                upper.append(float(b))
        return cls(names, np.array(lower), np.array(upper))

    @classmethod
    def point(cls, names: tuple[str, ...], values: np.ndarray) -> "Box":
        return cls(names, values, values)

    @property
    def names(self) -> tuple[str, ...]:
        return self._names

    @property
    def lower(self) -> np.ndarray:
        return self._lower

    @property
    def upper(self) -> np.ndarray:
        return self._upper

    @property
    def center(self) -> np.ndarray:
        return 0.5 * (self._lower + self._upper)

    @property
    def widths(self) -> np.ndarray:
        return self._upper - self._lower

    @property
    def radius(self) -> float:
        """Largest half-width over all components (0 for an empty name set)."""
        if not self._names:
            return 0.0
        return float(0.5 * np.max(self.widths))

    @property
    def is_point(self) -> bool:
        return bool(np.all(self._lower == self._upper))

    def __len__(self) -> int:
        return len(self._names)

    def __contains__(self, name: object) -> bool:
        return name in self._index

    def interval(self, name: str) -> Interval:
        i = self._index[name]
        return Interval(self._lower[i], self._upper[i])

    def __getitem__(self, name: str) -> Interval:
        return self.interval(name)

    def env(self) -> dict[str, Interval]:
        """Component intervals by name."""
        return {n: Interval(lo, hi) for n, lo, hi in zip(self._names, self._lower, self._upper)}

    def hull(self, other: "Box") -> "Box":
        if other.names != self._names:
            other = other.reorder(self._names)
        return Box(self._names, np.minimum(self._lower, other.lower), np.maximum(self._upper, other.upper))

    def contains(self, other: "Box", tol: float = 0.0) -> bool:
        other = other.reorder(self._names)
        return bool(np.all(self._lower - tol <= other.lower) and np.all(other.upper <= self._upper + tol))

    def reorder(self, names: tuple[str, ...]) -> "Box":
        """Same box with components in the order of ``names``."""
        if names == self._names:
            return self
        idx = [self._index[n] for n in names]
        return Box(tuple(names), self._lower[idx], self._upper[idx])

    def replace(self, values: Mapping[str, Interval]) -> "Box":
        """Copy with some components replaced."""
        lower = self._lower.copy()
        upper = self._upper.copy()
        for name, iv in values.items():
            i = self._index[name]
            lower[i] = iv.lower
            upper[i] = iv.upper
        return Box(self._names, lower, upper)

    def join(self, other: "Box") -> "Box":
        """Cartesian product with a box over disjoint names."""
        return Box(
            self._names + other.names,
            np.concatenate([self._lower, other.lower]),
            np.concatenate([self._upper, other.upper]),
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Box):
            return NotImplemented
        return (
            self._names == other.names
            and bool(np.array_equal(self._lower, other.lower))
            and bool(np.array_equal(self._upper, other.upper))
        )

    __hash__ = None

    def __repr__(self) -> str:
        parts = [f"{n}={Interval(lo, hi)}" for n, lo, hi in zip(self._names, self._lower, self._upper)]
        return f"Box({', '.join(parts)})"
