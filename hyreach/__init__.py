"""
hyreach - Reachability of composed hybrid automata

Build atomic automata from quantities and assignments, compose them into a
synchronized product and evolve an initial set into an orbit.
"""

from beartype import BeartypeConf
from beartype.claw import beartype_package

beartype_package(__name__, conf=BeartypeConf(is_pep484_tower=True))

__version__ = "0.1.0"

from . import ir
from .composition import CompositeAutomaton, CompositeLocation, compose
from .errors import ConflictingDynamics, HybridModelError, MalformedModel
from .evolution import Evolver, EvolverConfiguration, HybridTime, Semantics, evolve
from .orbit import NodeKind, Orbit, OrbitNode, TerminationReason
from .sets import HybridSet

__all__ = [
    "ir",
    "__version__",
    "CompositeAutomaton",
    "CompositeLocation",
    "compose",
    "ConflictingDynamics",
    "HybridModelError",
    "MalformedModel",
    "Evolver",
    "EvolverConfiguration",
    "HybridTime",
    "Semantics",
    "evolve",
    "NodeKind",
    "Orbit",
    "OrbitNode",
    "TerminationReason",
    "HybridSet",
]
