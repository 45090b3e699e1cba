"""
Exceptions raised while building and composing hybrid automata.

Construction and composition errors are not recoverable: they reject the
model and name the offending automaton or quantity. Conditions met while
evolving a model are not exceptions, they are recorded on the orbit as a
`hyreach.orbit.TerminationReason`.
"""

from typing import Any, Optional


class HybridModelError(ValueError):
    """Base class of model construction errors."""


class MalformedModel(HybridModelError):
    """An automaton description is inconsistent."""

    def __init__(self, automaton: str, message: str, result: Optional[Any] = None):
        self.automaton = automaton
        self.result = result
        super().__init__(f"Malformed automaton '{automaton}': {message}")


class ConflictingDynamics(HybridModelError):
    """Composed automata define the same quantity ambiguously."""

    def __init__(self, quantity: str, automata: tuple[str, ...], message: str):
        self.quantity = quantity
        self.automata = automata
        super().__init__(f"Conflicting dynamics for '{quantity}' in {', '.join(automata)}: {message}")
