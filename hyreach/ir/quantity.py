"""
Quantity representation in the IR.

A quantity is a named real-valued continuous variable or a named constant.
Identity is by name: two `RealVariable("x")` objects denote the same
quantity, which is how automata share state.
"""

from dataclasses import dataclass
from typing import Optional

from hyreach.ir.expr import Expr, ExprKind, ExprOperators
from hyreach.ir.types import QuantityKind


@dataclass(frozen=True)
class Quantity(ExprOperators):
    """Named continuous variable or constant."""

    name: str
    kind: QuantityKind = QuantityKind.VARIABLE
    value: Optional[float] = None

    def __post_init__(self):
        if not self.name:
            raise ValueError("Quantity name must not be empty")
        if self.kind == QuantityKind.CONSTANT and self.value is None:
            raise ValueError(f"Constant '{self.name}' needs a value")
        if self.kind == QuantityKind.VARIABLE and self.value is not None:
            raise ValueError(f"Variable '{self.name}' cannot carry a value")
        if self.value is not None:
            object.__setattr__(self, "value", float(self.value))

    @property
    def is_constant(self) -> bool:
        return self.kind == QuantityKind.CONSTANT

    @property
    def expr(self) -> Expr:
        """Expression node referring to this quantity."""
        if self.is_constant:
            return Expr(ExprKind.CONSTANT, name=self.name, value=self.value)
        return Expr(ExprKind.VARIABLE, name=self.name)

    def __repr__(self) -> str:
        if self.is_constant:
            return f"{self.name}:={self.value}"
        return self.name

    __str__ = __repr__


def RealVariable(name: str) -> Quantity:
    """Create a real variable quantity."""
    return Quantity(name)


def RealConstant(name: str, value: float) -> Quantity:
    """Create a named real constant."""
    return Quantity(name, QuantityKind.CONSTANT, value)


def variables(names: str) -> tuple[Quantity, ...]:
    """
    Create several variables at once.

    Example
    -------
    >>> x, v = variables("x v")
    >>> x.name, v.name
    ('x', 'v')
    """
    return tuple(RealVariable(n) for n in names.replace(",", " ").split())
