"""
MODULE: MAP_SIGNAL_INTERCEPTOR
SENSOR: 0.5-4.5V MANIFOLD PRESSURE (GAUGE)

DESCRIPTION:
    Converts between the MAP sensor voltage seen by the factory ECU and
    boost pressure in PSI, and models the piggyback module sitting on that
    wire.

    When decoded boost climbs above the module's target, the module rewrites
    the voltage so the factory ECU reads exactly the target instead. The ECU
    never sees the real pressure, so its native boost-cut never trips.

    CALIBRATION:
    0.5V = 0 PSI, 4.5V = PSI_MAX. PSI_MAX differs between sensor revisions
    (29-30 PSI) so every function accepts it as a parameter.
"""

V_OFFSET = 0.5   # Sensor output at 0 PSI
V_SPAN = 4.0     # Usable window 0.5V -> 4.5V
PSI_MAX = 29.0   # Full scale of the stock 3-bar sensor


def voltage_to_psi(voltage: float, psi_max: float = PSI_MAX) -> float:
    return (voltage - V_OFFSET) * (psi_max / V_SPAN)


def psi_to_voltage(psi: float, psi_max: float = PSI_MAX) -> float:
    return V_OFFSET + psi * (V_SPAN / psi_max)


def intercept_map_signal(raw_voltage: float, boost_target: float,
                         psi_max: float = PSI_MAX) -> float:
    """
    Returns the voltage forwarded to the ECU.

    Capping only happens when decoded PSI is strictly above a positive
    target. A target <= 0 means the interceptor is disarmed (pass-through).
    """
    if boost_target <= 0:
        return raw_voltage

    if voltage_to_psi(raw_voltage, psi_max) > boost_target:
        # Report the target, not the real pressure
        return psi_to_voltage(boost_target, psi_max)

    return raw_voltage
