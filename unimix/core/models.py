"""
MODULE: DOMAIN_MODELS
PROFILE: UNIMIX PIGGYBACK (ALL VEHICLES)

DESCRIPTION:
    The three data shapes shared by every kernel in the suite.

    Telemetry      - Immutable snapshot produced once per tick.
    TuneSettings   - The user's live calibration. Read every tick, merged
                     field-by-field when the optimizer or advisor suggests
                     changes.
    VehicleProfile - Reference data for the selected car. Read-only.
"""

import math
import logging
from dataclasses import dataclass, asdict, fields, replace
from typing import Any, Dict, Optional

logger = logging.getLogger("UNIMIX.CORE.MODELS")

# --- INDUCTION TYPES ---
INDUCTION_TURBO = "Turbo"
INDUCTION_SUPERCHARGED = "Supercharged"
INDUCTION_NA = "N/A"

# --- CHIP VARIANTS ---
# Performance multiplier of the piggyback hardware. A higher grade chip
# resolves knock faster and needs less protective retard per knock volt.
CHIP_PERFORMANCE = {
    "STANDARD": 1.0,
    "PRO": 1.25,
    "RACE": 1.5,
}
DEFAULT_CHIP = "STANDARD"


@dataclass(frozen=True)
class Telemetry:
    rpm: float
    boost: float            # PSI gauge (negative = vacuum)
    afr: float
    coolant_temp: float     # C
    oil_pressure: float     # PSI
    speed: float            # km/h
    iat: float              # C
    throttle: float         # 0-100 %
    knock: float            # Knock sensor volts
    map_voltage: float      # Voltage the factory ECU sees
    stft: float             # Short term fuel trim %
    ltft: float             # Long term fuel trim %
    fuel_pressure: float    # PSI
    inj_duty_cycle: float   # %
    g_force: float
    zero_to_sixty: Optional[float]
    timestamp: float

    @classmethod
    def initial(cls, now: float) -> "Telemetry":
        """Engine-off snapshot used to seed a session."""
        return cls(
            rpm=0.0, boost=0.0, afr=14.7, coolant_temp=90.0,
            oil_pressure=45.0, speed=0.0, iat=30.0, throttle=0.0,
            knock=0.0, map_voltage=0.5, stft=0.0, ltft=0.0,
            fuel_pressure=58.0, inj_duty_cycle=0.0, g_force=0.0,
            zero_to_sixty=None, timestamp=now,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TuneSettings:
    afr_target: float = 14.7
    boost_limit: float = 0.0           # PSI. <= 0 disables MAP interception
    ignition_offset: float = 0.0       # Degrees
    fuel_correction: float = 0.0       # %
    timing_retard_per_psi: float = 0.5
    rev_limit: float = 7000.0
    top_speed_limit: float = 260.0     # km/h
    global_offset: float = 0.0         # % scaling of the torque/RPM curve
    crackle_intensity: float = 0.0     # 0-100
    chip_type: str = DEFAULT_CHIP

    # Hard bounds used by sanitized(). Values outside are clamped, never rejected.
    LIMITS = {
        "afr_target": (8.0, 22.0),
        "boost_limit": (-1.0, 60.0),
        "ignition_offset": (-20.0, 20.0),
        "fuel_correction": (-50.0, 50.0),
        "timing_retard_per_psi": (0.0, 5.0),
        "rev_limit": (0.0, 12000.0),
        "top_speed_limit": (0.0, 400.0),
        "global_offset": (-100.0, 100.0),
        "crackle_intensity": (0.0, 100.0),
    }

    def sanitized(self) -> "TuneSettings":
        """
        Returns a copy safe to feed into the simulator.
        NaN / inf / non-numeric fields fall back to the field default,
        everything else is clamped into LIMITS.
        """
        defaults = TuneSettings()
        clean: Dict[str, Any] = {}
        for name, (lo, hi) in self.LIMITS.items():
            value = _finite_or(getattr(self, name), getattr(defaults, name))
            clean[name] = min(hi, max(lo, value))

        chip = self.chip_type if self.chip_type in CHIP_PERFORMANCE else DEFAULT_CHIP
        return replace(self, chip_type=chip, **clean)

    def merged(self, adjustment: Dict[str, Any]) -> "TuneSettings":
        """Non-destructive merge of a partial adjustment."""
        known = {f.name for f in fields(self)}
        accepted = {k: v for k, v in adjustment.items() if k in known}
        dropped = set(adjustment) - set(accepted)
        if dropped:
            logger.warning(f"Ignoring unknown tune fields: {sorted(dropped)}")
        return replace(self, **accepted)

    @property
    def chip_multiplier(self) -> float:
        return CHIP_PERFORMANCE.get(self.chip_type, 1.0)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class VehicleProfile:
    id: str
    name: str
    engine: str
    ecu_type: str
    vin_prefix: str
    max_boost: float
    safe_afr: float
    displacement: float
    induction: str = INDUCTION_TURBO
    fuel_type: str = "93"
    turbo_size: str = ""


def _finite_or(value: Any, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(number) or math.isinf(number):
        return default
    return number
