"""
Example hybrid automata.
"""

from hyreach.models.teleop import (
    motor_controllers,
    motor_master,
    motor_slave,
    teleop_composite,
    teleop_initial_set,
    teleop_system,
)

__all__ = [
    "motor_controllers",
    "motor_master",
    "motor_slave",
    "teleop_composite",
    "teleop_initial_set",
    "teleop_system",
]
