"""
Assignments binding a quantity to an expression.

Three kinds exist: algebraic (``q = f(...)`` while a location is active),
differential (``dq/dt = f(...)`` while a location is active) and reset
(``q' = f(...)`` at the instant a transition fires).

The builders mirror the way models are usually written down::

    >>> from hyreach.ir.quantity import RealVariable
    >>> x, v = RealVariable("x"), RealVariable("v")
    >>> dot({x: v, v: -x})
    (dot(x) = v, dot(v) = (-x))
"""

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Union

from hyreach.ir.expr import Expr, to_expr
from hyreach.ir.quantity import Quantity
from hyreach.ir.types import AssignmentKind

_FORMAT = {
    AssignmentKind.ALGEBRAIC: "{target} = {expr}",
    AssignmentKind.DIFFERENTIAL: "dot({target}) = {expr}",
    AssignmentKind.RESET: "next({target}) = {expr}",
}


@dataclass(frozen=True)
class Assignment:
    """One quantity bound to one expression."""

    target: str
    expr: Expr
    kind: AssignmentKind

    def __repr__(self) -> str:
        return _FORMAT[self.kind].format(target=self.target, expr=self.expr)

    __str__ = __repr__

    @property
    def is_algebraic(self) -> bool:
        return self.kind == AssignmentKind.ALGEBRAIC

    @property
    def is_differential(self) -> bool:
        return self.kind == AssignmentKind.DIFFERENTIAL

    @property
    def is_reset(self) -> bool:
        return self.kind == AssignmentKind.RESET


def _target_name(target: Union[Quantity, str]) -> str:
    if isinstance(target, str):
        return target
    if target.is_constant:
        raise ValueError(f"Cannot assign to constant '{target.name}'")
    return target.name


def _build(bindings: Mapping[Any, Any], kind: AssignmentKind) -> tuple[Assignment, ...]:
    return tuple(Assignment(_target_name(q), to_expr(e), kind) for q, e in bindings.items())


def let(bindings: Mapping[Any, Any]) -> tuple[Assignment, ...]:
    """Algebraic assignments ``q = e``."""
    return _build(bindings, AssignmentKind.ALGEBRAIC)


def dot(bindings: Mapping[Any, Any]) -> tuple[Assignment, ...]:
    """Differential assignments ``dq/dt = e``."""
    return _build(bindings, AssignmentKind.DIFFERENTIAL)


def prime(bindings: Mapping[Any, Any]) -> tuple[Assignment, ...]:
    """Reset assignments ``q' = e`` applied when a transition fires."""
    return _build(bindings, AssignmentKind.RESET)
