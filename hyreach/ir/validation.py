"""
Automaton validation utilities.

Provides validation for atomic automata, including:
- Duplicate location and event names
- Duplicate or conflicting assignments within a location
- Assignments and resets targeting constants
- References to undeclared locations and events
- Guard well-formedness
- Scope consistency of quantity names
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from hyreach.ir.automaton import AtomicAutomaton
from hyreach.ir.expr import Expr, ExprKind
from hyreach.ir.types import AssignmentKind


class ValidationSeverity(Enum):
    """Severity level of a validation issue."""

    ERROR = "error"  # Rejects the automaton
    WARNING = "warning"  # Suspicious but accepted
    INFO = "info"  # Informational note


class ValidationCategory(Enum):
    """Category of validation issue."""

    DUPLICATE_NAME = "duplicate_name"
    CONFLICTING_ASSIGNMENT = "conflicting_assignment"
    CONSTANT_TARGET = "constant_target"
    UNDECLARED_REFERENCE = "undeclared_reference"
    INVALID_GUARD = "invalid_guard"
    SCOPE = "scope"
    NONDETERMINISM = "nondeterminism"


@dataclass
class ValidationIssue:
    """A single validation issue."""

    severity: ValidationSeverity
    category: ValidationCategory
    message: str
    location: Optional[str] = None  # e.g. "location moving", "transition 2"
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        loc = f" at {self.location}" if self.location else ""
        return f"[{self.severity.value.upper()}] {self.category.value}: {self.message}{loc}"


@dataclass
class ValidationResult:
    """Result of automaton validation."""

    issues: list[ValidationIssue] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        """True if there are any errors."""
        return any(i.severity == ValidationSeverity.ERROR for i in self.issues)

    @property
    def has_warnings(self) -> bool:
        """True if there are any warnings."""
        return any(i.severity == ValidationSeverity.WARNING for i in self.issues)

    @property
    def is_valid(self) -> bool:
        """True if there are no errors (warnings are OK)."""
        return not self.has_errors

    @property
    def errors(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity == ValidationSeverity.ERROR]

    @property
    def warnings(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity == ValidationSeverity.WARNING]

    def categories(self) -> set[ValidationCategory]:
        """Categories of all recorded errors."""
        return {i.category for i in self.errors}

    def add_error(
        self,
        category: ValidationCategory,
        message: str,
        location: Optional[str] = None,
        **details,
    ) -> None:
        self.issues.append(ValidationIssue(ValidationSeverity.ERROR, category, message, location, details))

    def add_warning(
        self,
        category: ValidationCategory,
        message: str,
        location: Optional[str] = None,
        **details,
    ) -> None:
        self.issues.append(ValidationIssue(ValidationSeverity.WARNING, category, message, location, details))

    def summary(self) -> str:
        """Get a summary of validation results."""
        status = "VALID" if self.is_valid else "INVALID"
        lines = [
            f"Validation Result: {status}",
            f"  Errors: {len(self.errors)}",
            f"  Warnings: {len(self.warnings)}",
        ]
        if self.issues:
            lines.append("\nIssues:")
            for issue in self.issues:
                lines.append(f"  - {issue}")
        return "\n".join(lines)

    def __str__(self) -> str:
        return self.summary()


def _collect_names(expr: Expr, variables: set[str], constants: list[tuple[str, float]]) -> None:
    if expr.kind == ExprKind.VARIABLE:
        variables.add(expr.name)
    elif expr.kind == ExprKind.CONSTANT and expr.name:
        constants.append((expr.name, expr.value))
    for child in expr.children:
        _collect_names(child, variables, constants)


def _check_duplicates(result: ValidationResult, names: list[str], what: str) -> None:
    seen: set[str] = set()
    for name in names:
        if name in seen:
            result.add_error(ValidationCategory.DUPLICATE_NAME, f"duplicate {what} '{name}'", f"{what} {name}")
        seen.add(name)


def _check_location(result: ValidationResult, loc) -> None:
    where = f"location {loc.name}"
    by_kind: dict[AssignmentKind, set[str]] = {AssignmentKind.ALGEBRAIC: set(), AssignmentKind.DIFFERENTIAL: set()}
    for a in loc.assignments:
        if a.kind == AssignmentKind.RESET:
            result.add_error(
                ValidationCategory.CONFLICTING_ASSIGNMENT,
                f"reset assignment for '{a.target}' used as location dynamics",
                where,
            )
            continue
        if a.target in by_kind[a.kind]:
            result.add_error(
                ValidationCategory.CONFLICTING_ASSIGNMENT,
                f"quantity '{a.target}' has more than one {a.kind.name.lower()} assignment",
                where,
                quantity=a.target,
            )
        by_kind[a.kind].add(a.target)
    for name in sorted(by_kind[AssignmentKind.ALGEBRAIC] & by_kind[AssignmentKind.DIFFERENTIAL]):
        result.add_error(
            ValidationCategory.CONFLICTING_ASSIGNMENT,
            f"quantity '{name}' has both an algebraic and a differential assignment",
            where,
            quantity=name,
        )


def _is_guard(expr: Expr) -> bool:
    if expr.kind in (ExprKind.AND, ExprKind.OR, ExprKind.NOT):
        return all(_is_guard(c) for c in expr.children)
    if expr.kind in (ExprKind.LT, ExprKind.LE, ExprKind.GT, ExprKind.GE):
        return not any(c.is_boolean for c in expr.children)
    return False


def _check_transition(result: ValidationResult, index: int, t, locations: set[str], events: set[str]) -> None:
    where = f"transition {index} ({t.source} -{t.event}-> {t.target})"
    if t.source not in locations:
        result.add_error(ValidationCategory.UNDECLARED_REFERENCE, f"undeclared source location '{t.source}'", where)
    if t.target not in locations:
        result.add_error(ValidationCategory.UNDECLARED_REFERENCE, f"undeclared target location '{t.target}'", where)
    if t.event not in events:
        result.add_error(ValidationCategory.UNDECLARED_REFERENCE, f"undeclared event '{t.event}'", where)
    if t.guard is not None and not _is_guard(t.guard):
        result.add_error(ValidationCategory.INVALID_GUARD, f"guard is not a boolean expression: {t.guard}", where)
    targets: set[str] = set()
    for a in t.resets:
        if a.kind != AssignmentKind.RESET:
            result.add_error(
                ValidationCategory.CONFLICTING_ASSIGNMENT,
                f"{a.kind.name.lower()} assignment for '{a.target}' used as a reset",
                where,
            )
        if a.target in targets:
            result.add_error(
                ValidationCategory.CONFLICTING_ASSIGNMENT,
                f"quantity '{a.target}' is reset more than once",
                where,
                quantity=a.target,
            )
        targets.add(a.target)


def validate_automaton(automaton: AtomicAutomaton) -> ValidationResult:
    """
    Validate an atomic automaton.

    Returns
    -------
    ValidationResult
        Errors make `build_atomic_automaton` reject the automaton.
    """
    result = ValidationResult()

    _check_duplicates(result, [loc.name for loc in automaton.locations], "location")
    _check_duplicates(result, [e.name for e in automaton.events], "event")

    for loc in automaton.locations:
        _check_location(result, loc)

    locations = set(automaton.location_names)
    events = set(automaton.event_names)
    for i, t in enumerate(automaton.transitions):
        _check_transition(result, i, t, locations, events)

    # Scope: one meaning per name
    variables: set[str] = set()
    constants: list[tuple[str, float]] = []
    targets: set[str] = set()
    for loc in automaton.locations:
        for a in loc.assignments:
            targets.add(a.target)
            _collect_names(a.expr, variables, constants)
    for t in automaton.transitions:
        if t.guard is not None:
            _collect_names(t.guard, variables, constants)
        for a in t.resets:
            targets.add(a.target)
            _collect_names(a.expr, variables, constants)

    values: dict[str, float] = {}
    for name, value in constants:
        if name in values and values[name] != value:
            result.add_error(
                ValidationCategory.SCOPE,
                f"constant '{name}' has conflicting values {values[name]} and {value}",
                quantity=name,
            )
        values.setdefault(name, value)
    for name in sorted(set(values) & targets):
        result.add_error(ValidationCategory.CONSTANT_TARGET, f"constant '{name}' is assigned to", quantity=name)
    for name in sorted(set(values) & variables - targets):
        result.add_error(
            ValidationCategory.SCOPE,
            f"name '{name}' denotes both a constant and a variable",
            quantity=name,
        )

    # Several urgent transitions for one (source, event) pair
    seen: dict[tuple[str, str], int] = {}
    for t in automaton.transitions:
        if t.is_urgent:
            key = (t.source, t.event)
            seen[key] = seen.get(key, 0) + 1
    for (source, event), count in sorted(seen.items()):
        if count > 1:
            result.add_warning(
                ValidationCategory.NONDETERMINISM,
                f"{count} urgent transitions labelled '{event}' leave '{source}'",
                f"location {source}",
            )

    return result
