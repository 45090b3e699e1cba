"""
Master-slave teleoperation with a passivity energy tank.

Four automata share quantities by name:

- motor_master: master motor, velocity driven by torque_m
- motor_slave: slave motor, velocity driven by torque_s
- motor_controllers: proportional control laws (algebraic)
- teleop_system: reference generation and the energy tank

While ``moving`` the tank drains at ``beta``; below 0.1 the system is forced
to ``stationary`` where the reference is frozen at zero (its value is kept
in ``old_ref_m``) and the tank recharges at ``alpha``; above 1.0 it is forced
back to ``moving`` and the reference is restored.
"""

from hyreach.composition import CompositeAutomaton, compose
from hyreach.ir import AutomatonBuilder, AtomicAutomaton, EventKind, RealConstant, cos, dot, let, pi, prime, variables
from hyreach.sets import HybridSet

# shared variables
(
    t,
    ref_m,
    ref_s,
    old_ref_m,
    energy_tank_m,
    position_m,
    velocity_m,
    torque_m,
    position_s,
    velocity_s,
    torque_s,
    pos_err,
) = variables(
    "t ref_m ref_s old_ref_m energy_tank_m position_m velocity_m torque_m position_s velocity_s torque_s pos_err"
)

LOWER_THRESHOLD = 0.1
UPPER_THRESHOLD = 1.0


def motor_master(Jm: float = 2.2) -> AtomicAutomaton:
    J = RealConstant("Jm", Jm)
    b = AutomatonBuilder("motor_master")
    b.new_mode("moving", dot({velocity_m: torque_m / J, position_m: velocity_m}))
    return b.build()


def motor_slave(Js: float = 0.2) -> AtomicAutomaton:
    J = RealConstant("Js", Js)
    b = AutomatonBuilder("motor_slave")
    b.new_mode("moving", dot({velocity_s: torque_s / J, position_s: velocity_s}))
    return b.build()


def motor_controllers(Kp: float = 10.2) -> AtomicAutomaton:
    gain = RealConstant("Kp", Kp)
    b = AutomatonBuilder("motor_controllers")
    b.new_mode(
        "moving",
        let(
            {
                torque_m: gain * (ref_m - velocity_m),  # master tracks the reference velocity
                torque_s: gain * (ref_s - position_s),  # slave tracks the master position
                pos_err: position_m - position_s,
            }
        ),
    )
    return b.build()


def teleop_system(
    freq: float = 0.25,
    amp: float = 1.0,
    alpha: float = 0.2,
    beta: float = 0.1,
) -> AtomicAutomaton:
    """Reference generator gated by the energy tank."""
    c_freq = RealConstant("freq", freq)
    c_amp = RealConstant("amp", amp)
    c_alpha = RealConstant("alpha", alpha)
    c_beta = RealConstant("beta", beta)

    b = AutomatonBuilder("teleop_system")
    b.new_mode(
        "moving",
        dot(
            {
                t: 1.0,
                ref_m: c_amp * 2 * pi * c_freq * cos(2 * pi * t * c_freq),
                ref_s: velocity_m,
                energy_tank_m: -c_beta,
                old_ref_m: 0.0,
            }
        ),
    )
    b.new_mode(
        "stationary",
        dot({t: 0.0, ref_m: 0.0, ref_s: velocity_m, energy_tank_m: c_alpha, old_ref_m: 0.0}),
    )

    # checkpoint the reference on the way out, restore it on the way back
    b.new_transition(
        "moving",
        "to_stop",
        "stationary",
        prime({ref_m: 0.0, old_ref_m: ref_m}),
        energy_tank_m <= LOWER_THRESHOLD,
        EventKind.URGENT,
    )
    b.new_transition(
        "stationary",
        "to_move",
        "moving",
        prime({ref_m: old_ref_m}),
        energy_tank_m >= UPPER_THRESHOLD,
        EventKind.URGENT,
    )
    return b.build()


def teleop_composite() -> CompositeAutomaton:
    return compose([motor_master(), motor_slave(), teleop_system(), motor_controllers()])


def teleop_initial_set(energy: float = 0.5) -> HybridSet:
    """Everything at rest in ``moving`` with the tank at ``energy``."""
    return HybridSet(
        {
            "motor_master": "moving",
            "motor_slave": "moving",
            "teleop_system": "moving",
            "motor_controllers": "moving",
        },
        {
            position_m: 0.0,
            velocity_m: 0.0,
            ref_m: 0.0,
            position_s: 0.0,
            velocity_s: 0.0,
            ref_s: 0.0,
            t: 0.0,
            energy_tank_m: energy,
            old_ref_m: 0.0,
        },
    )
