"""
Intermediate Representation (IR) for hybrid automata.

This module provides the declarative data structures models are built from:
quantities, expressions, assignments, locations, transitions and atomic
automata.
"""

from hyreach.ir.types import AssignmentKind, EventKind, QuantityKind
from hyreach.ir.expr import (
    Expr,
    ExprKind,
    to_expr,
    pi,
    sin,
    cos,
    tan,
    exp,
    log,
    sqrt,
    fabs,
    fmin,
    fmax,
    free_quantities,
    substitute,
    simplify,
    differentiate,
    lie_derivative,
    guard_function,
)
from hyreach.ir.quantity import Quantity, RealVariable, RealConstant, variables
from hyreach.ir.assignment import Assignment, let, dot, prime
from hyreach.ir.automaton import (
    AtomicAutomaton,
    AutomatonBuilder,
    DiscreteEvent,
    Location,
    Transition,
    build_atomic_automaton,
)
from hyreach.ir.validation import ValidationResult, validate_automaton

__all__ = [
    # Types
    "AssignmentKind",
    "EventKind",
    "QuantityKind",
    # Expressions
    "Expr",
    "ExprKind",
    "to_expr",
    "pi",
    "sin",
    "cos",
    "tan",
    "exp",
    "log",
    "sqrt",
    "fabs",
    "fmin",
    "fmax",
    "free_quantities",
    "substitute",
    "simplify",
    "differentiate",
    "lie_derivative",
    "guard_function",
    # Quantities and assignments
    "Quantity",
    "RealVariable",
    "RealConstant",
    "variables",
    "Assignment",
    "let",
    "dot",
    "prime",
    # Automata
    "AtomicAutomaton",
    "AutomatonBuilder",
    "DiscreteEvent",
    "Location",
    "Transition",
    "build_atomic_automaton",
    # Validation
    "ValidationResult",
    "validate_automaton",
]
