"""
Expression tree representation for hybrid automata.

Expressions describe the right-hand sides of assignments and the guards of
transitions. They are immutable trees of `Expr` nodes that are interpreted
by the enclosure arithmetic and compiled by the flow solvers.

The tree is backend-agnostic: nothing in here depends on CasADi or on a
particular enclosure representation.

Python operators build trees::

    >>> x = Expr(ExprKind.VARIABLE, name="x")
    >>> x * 2 + 1
    ((x * 2.0) + 1.0)
    >>> (x <= 0.1) & (x >= 0.0)
    ((x <= 0.1) and (x >= 0.0))

Equality (``==``) is NOT overloaded: it stays structural so that models can
be compared and used as dictionary keys.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Optional

import numpy as np


class ExprKind(Enum):
    """Kinds of expression nodes."""

    # Leaf nodes
    VARIABLE = auto()  # Named variable quantity
    CONSTANT = auto()  # Literal or named constant (value always set)

    # Arithmetic
    NEG = auto()
    ADD = auto()
    SUB = auto()
    MUL = auto()
    DIV = auto()
    POW = auto()

    # Math functions
    SIN = auto()
    COS = auto()
    TAN = auto()
    EXP = auto()
    LOG = auto()
    SQRT = auto()
    ABS = auto()
    MIN = auto()
    MAX = auto()

    # Relations
    LT = auto()
    LE = auto()
    GT = auto()
    GE = auto()

    # Boolean connectives
    AND = auto()
    OR = auto()
    NOT = auto()


UNARY_FUNCTIONS = (
    ExprKind.SIN,
    ExprKind.COS,
    ExprKind.TAN,
    ExprKind.EXP,
    ExprKind.LOG,
    ExprKind.SQRT,
    ExprKind.ABS,
)

RELATIONS = (ExprKind.LT, ExprKind.LE, ExprKind.GT, ExprKind.GE)

BOOLEAN_KINDS = RELATIONS + (ExprKind.AND, ExprKind.OR, ExprKind.NOT)

_BINARY_SYMBOLS = {
    ExprKind.ADD: "+",
    ExprKind.SUB: "-",
    ExprKind.MUL: "*",
    ExprKind.DIV: "/",
    ExprKind.POW: "**",
    ExprKind.LT: "<",
    ExprKind.LE: "<=",
    ExprKind.GT: ">",
    ExprKind.GE: ">=",
    ExprKind.AND: "and",
    ExprKind.OR: "or",
}


class ExprOperators:
    """Operator overloads shared by `Expr` and quantities."""

    def __add__(self, other: Any) -> "Expr":
        return Expr(ExprKind.ADD, (to_expr(self), to_expr(other)))

    def __radd__(self, other: Any) -> "Expr":
        return Expr(ExprKind.ADD, (to_expr(other), to_expr(self)))

    def __sub__(self, other: Any) -> "Expr":
        return Expr(ExprKind.SUB, (to_expr(self), to_expr(other)))

    def __rsub__(self, other: Any) -> "Expr":
        return Expr(ExprKind.SUB, (to_expr(other), to_expr(self)))

    def __mul__(self, other: Any) -> "Expr":
        return Expr(ExprKind.MUL, (to_expr(self), to_expr(other)))

    def __rmul__(self, other: Any) -> "Expr":
        return Expr(ExprKind.MUL, (to_expr(other), to_expr(self)))

    def __truediv__(self, other: Any) -> "Expr":
        return Expr(ExprKind.DIV, (to_expr(self), to_expr(other)))

    def __rtruediv__(self, other: Any) -> "Expr":
        return Expr(ExprKind.DIV, (to_expr(other), to_expr(self)))

    def __pow__(self, other: Any) -> "Expr":
        return Expr(ExprKind.POW, (to_expr(self), to_expr(other)))

    def __rpow__(self, other: Any) -> "Expr":
        return Expr(ExprKind.POW, (to_expr(other), to_expr(self)))

    def __neg__(self) -> "Expr":
        return Expr(ExprKind.NEG, (to_expr(self),))

    def __pos__(self) -> "Expr":
        return to_expr(self)

    # Relational operators - return Boolean Expr
    def __lt__(self, other: Any) -> "Expr":
        return Expr(ExprKind.LT, (to_expr(self), to_expr(other)))

    def __le__(self, other: Any) -> "Expr":
        return Expr(ExprKind.LE, (to_expr(self), to_expr(other)))

    def __gt__(self, other: Any) -> "Expr":
        return Expr(ExprKind.GT, (to_expr(self), to_expr(other)))

    def __ge__(self, other: Any) -> "Expr":
        return Expr(ExprKind.GE, (to_expr(self), to_expr(other)))

    # Boolean connectives (Python's and/or/not cannot be overloaded)
    def __and__(self, other: Any) -> "Expr":
        return Expr(ExprKind.AND, (to_expr(self), to_expr(other)))

    def __or__(self, other: Any) -> "Expr":
        return Expr(ExprKind.OR, (to_expr(self), to_expr(other)))

    def __invert__(self) -> "Expr":
        return Expr(ExprKind.NOT, (to_expr(self),))


@dataclass(frozen=True)
class Expr(ExprOperators):
    """
    Immutable expression tree node.

    ``name`` is set for VARIABLE nodes and for named constants, ``value`` is
    set for every CONSTANT node.
    """

    kind: ExprKind
    children: tuple["Expr", ...] = ()
    name: Optional[str] = None
    value: Optional[float] = None

    def __repr__(self) -> str:
        if self.kind == ExprKind.VARIABLE:
            return f"{self.name}"
        elif self.kind == ExprKind.CONSTANT:
            return self.name if self.name else f"{self.value}"
        elif self.kind == ExprKind.NEG:
            return f"(-{self.children[0]})"
        elif self.kind == ExprKind.NOT:
            return f"(not {self.children[0]})"
        elif self.kind in _BINARY_SYMBOLS:
            return f"({self.children[0]} {_BINARY_SYMBOLS[self.kind]} {self.children[1]})"
        elif self.kind in UNARY_FUNCTIONS:
            return f"{self.kind.name.lower()}({self.children[0]})"
        elif self.kind in (ExprKind.MIN, ExprKind.MAX):
            return f"{self.kind.name.lower()}({self.children[0]}, {self.children[1]})"
        return f"Expr({self.kind})"

    __str__ = __repr__

    @property
    def is_boolean(self) -> bool:
        """True if this node is a relation or a boolean connective."""
        return self.kind in BOOLEAN_KINDS

    @property
    def is_constant(self) -> bool:
        """True if no variable quantity occurs in the tree."""
        return not free_quantities(self)


def to_expr(x: Any) -> Expr:
    """Convert numbers, quantities and expressions to `Expr`."""
    if isinstance(x, Expr):
        return x
    # Import here to avoid circular imports
    from hyreach.ir.quantity import Quantity

    if isinstance(x, Quantity):
        return x.expr
    if isinstance(x, (int, float, np.integer, np.floating)):
        return Expr(ExprKind.CONSTANT, value=float(x))
    if isinstance(x, np.ndarray) and x.size == 1:
        return Expr(ExprKind.CONSTANT, value=float(x.flat[0]))
    raise TypeError(f"Cannot convert {type(x)} to Expr")


def literal(value: float) -> Expr:
    """Unnamed constant."""
    return Expr(ExprKind.CONSTANT, value=float(value))


ZERO = literal(0.0)
ONE = literal(1.0)

pi = Expr(ExprKind.CONSTANT, name="pi", value=math.pi)


def sin(x: Any) -> Expr:
    return Expr(ExprKind.SIN, (to_expr(x),))


def cos(x: Any) -> Expr:
    return Expr(ExprKind.COS, (to_expr(x),))


def tan(x: Any) -> Expr:
    return Expr(ExprKind.TAN, (to_expr(x),))


def exp(x: Any) -> Expr:
    return Expr(ExprKind.EXP, (to_expr(x),))


def log(x: Any) -> Expr:
    return Expr(ExprKind.LOG, (to_expr(x),))


def sqrt(x: Any) -> Expr:
    return Expr(ExprKind.SQRT, (to_expr(x),))


def fabs(x: Any) -> Expr:
    return Expr(ExprKind.ABS, (to_expr(x),))


def fmin(x: Any, y: Any) -> Expr:
    return Expr(ExprKind.MIN, (to_expr(x), to_expr(y)))


def fmax(x: Any, y: Any) -> Expr:
    return Expr(ExprKind.MAX, (to_expr(x), to_expr(y)))


# =============================================================================
# Tree queries and rewrites
# =============================================================================


def free_quantities(expr: Expr) -> frozenset[str]:
    """Names of the variable quantities an expression reads."""
    if expr.kind == ExprKind.VARIABLE:
        return frozenset((expr.name,))
    result: set[str] = set()
    for child in expr.children:
        result.update(free_quantities(child))
    return frozenset(result)


def named_constants(expr: Expr) -> dict[str, float]:
    """Named constants occurring in an expression, by name."""
    if expr.kind == ExprKind.CONSTANT:
        return {expr.name: expr.value} if expr.name else {}
    result: dict[str, float] = {}
    for child in expr.children:
        result.update(named_constants(child))
    return result


def substitute(expr: Expr, mapping: Mapping[str, Expr]) -> Expr:
    """Replace variable quantities by expressions."""
    if expr.kind == ExprKind.VARIABLE:
        return mapping.get(expr.name, expr)
    if not expr.children:
        return expr
    children = tuple(substitute(c, mapping) for c in expr.children)
    if children == expr.children:
        return expr
    return Expr(expr.kind, children, expr.name, expr.value)


def constant_value(expr: Expr) -> Optional[float]:
    """Numeric value of a variable-free arithmetic expression, else None."""
    if expr.kind == ExprKind.CONSTANT:
        return expr.value
    if expr.kind == ExprKind.VARIABLE or expr.is_boolean:
        return None
    args = []
    for child in expr.children:
        v = constant_value(child)
        if v is None:
            return None
        args.append(v)
    try:
        return float(_NUMERIC[expr.kind](*args))
    except (ValueError, TypeError, ZeroDivisionError, OverflowError):
        return None


_NUMERIC = {
    ExprKind.NEG: lambda a: -a,
    ExprKind.ADD: lambda a, b: a + b,
    ExprKind.SUB: lambda a, b: a - b,
    ExprKind.MUL: lambda a, b: a * b,
    ExprKind.DIV: lambda a, b: a / b,
    ExprKind.POW: lambda a, b: a**b,
    ExprKind.SIN: math.sin,
    ExprKind.COS: math.cos,
    ExprKind.TAN: math.tan,
    ExprKind.EXP: math.exp,
    ExprKind.LOG: math.log,
    ExprKind.SQRT: math.sqrt,
    ExprKind.ABS: abs,
    ExprKind.MIN: min,
    ExprKind.MAX: max,
}


def _is_value(expr: Expr, value: float) -> bool:
    return expr.kind == ExprKind.CONSTANT and expr.value == value


def simplify(expr: Expr) -> Expr:
    """Fold constant subtrees and drop neutral elements."""
    if not expr.children:
        return expr
    children = tuple(simplify(c) for c in expr.children)
    node = Expr(expr.kind, children, expr.name, expr.value)
    if not node.is_boolean and all(c.kind == ExprKind.CONSTANT for c in children):
        value = constant_value(node)
        if value is not None:
            return literal(value)

    k = node.kind
    if k == ExprKind.ADD:
        a, b = children
        if _is_value(a, 0.0):
            return b
        if _is_value(b, 0.0):
            return a
    elif k == ExprKind.SUB:
        a, b = children
        if _is_value(b, 0.0):
            return a
        if _is_value(a, 0.0):
            return simplify(Expr(ExprKind.NEG, (b,)))
    elif k == ExprKind.MUL:
        a, b = children
        if _is_value(a, 0.0) or _is_value(b, 0.0):
            return ZERO
        if _is_value(a, 1.0):
            return b
        if _is_value(b, 1.0):
            return a
    elif k == ExprKind.DIV:
        a, b = children
        if _is_value(a, 0.0) and not _is_value(b, 0.0):
            return ZERO
        if _is_value(b, 1.0):
            return a
    elif k == ExprKind.NEG:
        (a,) = children
        if a.kind == ExprKind.NEG:
            return a.children[0]
    return node


def differentiate(expr: Expr, name: str) -> Expr:
    """
    Symbolic partial derivative with respect to the variable ``name``.

    Raises
    ------
    ValueError
        For non-smooth or boolean nodes (min, max, relations).
    """
    k = expr.kind
    if k == ExprKind.VARIABLE:
        return ONE if expr.name == name else ZERO
    if k == ExprKind.CONSTANT:
        return ZERO
    if name not in free_quantities(expr):
        return ZERO

    d = [differentiate(c, name) for c in expr.children]
    if k == ExprKind.NEG:
        return -d[0]
    if k == ExprKind.ADD:
        return d[0] + d[1]
    if k == ExprKind.SUB:
        return d[0] - d[1]
    a = expr.children[0]
    if k == ExprKind.MUL:
        b = expr.children[1]
        return d[0] * b + a * d[1]
    if k == ExprKind.DIV:
        b = expr.children[1]
        return (d[0] * b - a * d[1]) / (b * b)
    if k == ExprKind.POW:
        b = expr.children[1]
        if name not in free_quantities(b):
            return b * a ** (b - 1.0) * d[0]
        return expr * (d[1] * log(a) + b * d[0] / a)
    if k == ExprKind.SIN:
        return cos(a) * d[0]
    if k == ExprKind.COS:
        return -sin(a) * d[0]
    if k == ExprKind.TAN:
        return d[0] / (cos(a) * cos(a))
    if k == ExprKind.EXP:
        return expr * d[0]
    if k == ExprKind.LOG:
        return d[0] / a
    if k == ExprKind.SQRT:
        return d[0] / (2.0 * expr)
    if k == ExprKind.ABS:
        return a / expr * d[0]
    raise ValueError(f"Cannot differentiate {k.name.lower()} node: {expr}")


def lie_derivative(expr: Expr, rates: Mapping[str, Expr]) -> Optional[Expr]:
    """
    Time derivative of ``expr`` along the vector field ``rates``.

    Quantities absent from ``rates`` are constant. Returns None when the
    expression is not differentiable.
    """
    total: Expr = ZERO
    try:
        for name in sorted(free_quantities(expr)):
            rate = rates.get(name)
            if rate is None:
                continue
            total = total + differentiate(expr, name) * rate
    except ValueError:
        return None
    return simplify(total)


def guard_function(guard: Optional[Expr]) -> Expr:
    """
    Real-valued function ``g`` with ``guard <=> g >= 0``.

    Strict relations are replaced by their closures. A missing guard is
    always satisfied.
    """
    if guard is None:
        return ONE
    k = guard.kind
    if k in (ExprKind.LE, ExprKind.LT):
        return simplify(guard.children[1] - guard.children[0])
    if k in (ExprKind.GE, ExprKind.GT):
        return simplify(guard.children[0] - guard.children[1])
    if k == ExprKind.AND:
        return fmin(guard_function(guard.children[0]), guard_function(guard.children[1]))
    if k == ExprKind.OR:
        return fmax(guard_function(guard.children[0]), guard_function(guard.children[1]))
    if k == ExprKind.NOT:
        return simplify(-guard_function(guard.children[0]))
    raise ValueError(f"Guard must be a relation or boolean connective, got: {guard}")
