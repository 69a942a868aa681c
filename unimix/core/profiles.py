"""
MODULE: VEHICLE_PROFILE_CATALOGUE

DESCRIPTION:
    Built-in reference vehicles selectable at session start, and the
    baseline tune every session begins from.
"""

import logging
from typing import Dict, Optional

from unimix.core.models import (
    INDUCTION_NA,
    INDUCTION_SUPERCHARGED,
    INDUCTION_TURBO,
    TuneSettings,
    VehicleProfile,
)

logger = logging.getLogger("UNIMIX.CORE.PROFILES")

VEHICLE_PROFILES = (
    VehicleProfile(
        id="motec-m1", name="MoTeC M1 Series", engine="V8 Twin Turbo (Proprietary)",
        ecu_type="MoTeC M150", vin_prefix="MOT", max_boost=45.0, safe_afr=11.2,
        displacement=5.2, induction=INDUCTION_TURBO, fuel_type="E85",
        turbo_size="Precision 7675",
    ),
    VehicleProfile(
        id="haltech-nexus", name="Haltech Nexus R5", engine="2JZ-GTE Custom",
        ecu_type="Haltech VCU", vin_prefix="HAL", max_boost=35.0, safe_afr=11.0,
        displacement=3.0, induction=INDUCTION_TURBO, fuel_type="Racing",
        turbo_size="Garrett G42",
    ),
    VehicleProfile(
        id="unichip-q4", name="UniChip Q4 Piggyback", engine="Modern Turbo Diesel",
        ecu_type="UniChip Q4", vin_prefix="UNI", max_boost=28.0, safe_afr=17.5,
        displacement=2.8, induction=INDUCTION_TURBO, fuel_type="93",
        turbo_size="VGT",
    ),
    VehicleProfile(
        id="hellcat", name="Dodge Challenger Hellcat", engine="6.2L Supercharged V8",
        ecu_type="FCA GPEC2A", vin_prefix="2C3", max_boost=22.0, safe_afr=11.5,
        displacement=6.2, induction=INDUCTION_SUPERCHARGED, fuel_type="93",
        turbo_size="2.4L IHI",
    ),
    VehicleProfile(
        id="acura-k20", name="Acura RSX Type-S", engine="K20A2 2.0L I4",
        ecu_type="Hondata K-Pro", vin_prefix="JH4", max_boost=0.0, safe_afr=12.8,
        displacement=2.0, induction=INDUCTION_NA, fuel_type="93",
    ),
    VehicleProfile(
        id="universal", name="Universal ECU Template", engine="Generic Forced Induction",
        ecu_type="Piggyback/Standalone", vin_prefix="XXX", max_boost=30.0, safe_afr=11.0,
        displacement=3.0, induction=INDUCTION_TURBO, fuel_type="93",
        turbo_size="Garrett G35",
    ),
)

INITIAL_TUNE = TuneSettings()

# One-touch calibrations. Partial adjustments, merged over the live tune.
TUNE_PRESETS: Dict[str, Dict[str, float]] = {
    "street-safe": {
        "afr_target": 11.5, "boost_limit": 12.0, "ignition_offset": -1.0,
        "fuel_correction": 5.0, "timing_retard_per_psi": 0.5, "rev_limit": 6500.0,
    },
    "track-attack": {
        "afr_target": 11.8, "boost_limit": 18.0, "ignition_offset": 2.0,
        "fuel_correction": 10.0, "timing_retard_per_psi": 0.3, "rev_limit": 7500.0,
    },
    "valet": {
        "afr_target": 14.7, "boost_limit": 3.0, "ignition_offset": -5.0,
        "fuel_correction": 0.0, "timing_retard_per_psi": 1.0, "rev_limit": 3000.0,
    },
    # Factory OEM: everything back to baseline. Chip selection is hardware, not tune.
    "stock": {k: v for k, v in INITIAL_TUNE.to_dict().items() if k != "chip_type"},
}


def get_preset(name: str) -> Dict[str, float]:
    try:
        return dict(TUNE_PRESETS[name])
    except KeyError:
        raise ValueError(f"Unknown tune preset '{name}'. Options: {sorted(TUNE_PRESETS)}") from None


def get_profile(profile_id: Optional[str]) -> VehicleProfile:
    """Looks up a profile by id. Unknown ids fall back to the first entry."""
    for profile in VEHICLE_PROFILES:
        if profile.id == profile_id:
            return profile
    logger.warning(f"Unknown vehicle profile '{profile_id}'. Using {VEHICLE_PROFILES[0].id}.")
    return VEHICLE_PROFILES[0]
