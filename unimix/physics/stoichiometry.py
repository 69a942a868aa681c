"""
MODULE: CLOSED_LOOP_FUEL_TRIM (STOICHIOMETRY)
PROFILE: PUMP GASOLINE / E85 (SPARK IGNITION)

DESCRIPTION:
    Proportional fuel trim from the wideband AFR reading.

    The trim is the percentage of extra (positive) or removed (negative) fuel
    needed to pull the measured mixture back onto the target:
        Lean  (AFR above target) -> positive correction, add fuel.
        Rich  (AFR below target) -> negative correction, remove fuel.

    The band is asymmetric. Adding fuel is always the safe direction under
    load, so it gets more authority (+25%) than leaning out (-15%).
"""

import math

STOICH_AFR = 14.7   # Stoichiometric gasoline

# --- CONTROLLER CONSTANTS ---
P_GAIN = 1.4
MAX_ENRICH_PCT = 25.0
MAX_LEAN_PCT = 15.0


def calculate_fuel_trim(current_afr: float, target_afr: float,
                        p_gain: float = P_GAIN,
                        max_enrich: float = MAX_ENRICH_PCT,
                        max_lean: float = MAX_LEAN_PCT) -> float:
    """Returns the clamped proportional correction in percent."""
    if math.isnan(current_afr) or math.isnan(target_afr) or target_afr <= 0:
        return 0.0

    error = current_afr - target_afr
    correction = (error / target_afr) * 100.0 * p_gain

    return max(-max_lean, min(max_enrich, correction))
