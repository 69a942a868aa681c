"""
MODULE: LOCAL_TUNE_OPTIMIZER
PROFILE: UNIMIX PIGGYBACK (OFFLINE CALIBRATION)

DESCRIPTION:
    Derives a partial tune adjustment from recorded telemetry.

    The optimizer is a pure function of (history, tune, profile). It never
    mutates its inputs and never touches randomness, so two calls with the
    same log return the same suggestion.

    RULE ORDER:
    1. Window selection   - power pulls (throttle > 50%) if any, else everything.
    2. Profile rules      - boost headroom + richer target on cool high-boost
                            builds; timing pull on heat-soaked builds.
    3. Knock protection   - retard scaled down by the chip performance grade.
    4. Fuel type          - small advance on high-octane fuel with no knock.
    5. Integral fuel trim - residual AFR error folded into fuel_correction.

    Only fields that actually change are returned so the caller can merge
    the result into the live tune without clobbering anything.
"""

import inspect
import logging
from typing import Any, Dict, Optional, Sequence

import numpy as np

from unimix.core.models import (
    INDUCTION_SUPERCHARGED,
    Telemetry,
    TuneSettings,
    VehicleProfile,
)
from unimix.physics.stoichiometry import MAX_ENRICH_PCT, MAX_LEAN_PCT

logger = logging.getLogger("UNIMIX.PHYSICS.OPTIMIZER")


class LocalTuneOptimizer:
    """
    Rule-based calibration assistant.
    """

    # Builds with forged internals and big fuel systems
    HIGH_BOOST_PROFILES = ("motec-m1", "haltech-nexus")
    # Builds that heat-soak quickly (roots blower, diesel VGT)
    THERMAL_PROFILES = ("hellcat", "unichip-q4")
    HIGH_OCTANE_FUELS = ("E85", "Racing")

    def __init__(self, min_samples: int = 5, pull_throttle: float = 50.0,
                 knock_threshold: float = 0.8, knock_retard_gain: float = 1.0,
                 cool_iat: float = 40.0, hot_iat: float = 50.0,
                 afr_step: float = 0.3, boost_step: float = 1.5,
                 thermal_timing_pull: float = 1.5, octane_advance: float = 0.5,
                 negligible_knock: float = 0.1, integral_share: float = 0.5,
                 ignition_min: float = -15.0, ignition_max: float = 10.0):
        self.min_samples = int(min_samples)
        self.pull_throttle = pull_throttle
        self.knock_threshold = knock_threshold
        self.knock_retard_gain = knock_retard_gain
        self.cool_iat = cool_iat
        self.hot_iat = hot_iat
        self.afr_step = afr_step
        self.boost_step = boost_step
        self.thermal_timing_pull = thermal_timing_pull
        self.octane_advance = octane_advance
        self.negligible_knock = negligible_knock
        self.integral_share = integral_share
        self.ignition_min = ignition_min
        self.ignition_max = ignition_max

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "LocalTuneOptimizer":
        if not data:
            return cls()
        accepted = inspect.signature(cls.__init__).parameters
        return cls(**{k: float(v) for k, v in data.items() if k in accepted and k != "self"})

    def optimize(self, history: Sequence[Telemetry], current_tune: TuneSettings,
                 profile: VehicleProfile) -> Dict[str, float]:
        # Too few samples to say anything useful
        if len(history) < self.min_samples:
            return {}

        current_tune = current_tune.sanitized()

        # 1. WINDOW SELECTION
        pulls = [t for t in history if t.throttle > self.pull_throttle]
        window = pulls if pulls else list(history)

        afr = np.array([t.afr for t in window], dtype=float)
        knock = np.array([t.knock for t in window], dtype=float)
        iat = np.array([t.iat for t in window], dtype=float)
        boost = np.array([t.boost for t in window], dtype=float)

        mean_afr = float(np.mean(afr))
        peak_knock = float(np.max(knock))
        mean_iat = float(np.mean(iat))

        afr_target = current_tune.afr_target
        boost_limit = current_tune.boost_limit
        ignition = current_tune.ignition_offset

        # 2. PROFILE CALIBRATION
        if profile.id in self.HIGH_BOOST_PROFILES and mean_iat < self.cool_iat:
            afr_target = max(profile.safe_afr, afr_target - self.afr_step)
            base_boost = boost_limit if boost_limit > 0 else float(np.max(boost))
            boost_limit = min(profile.max_boost, base_boost + self.boost_step)
            logger.info(f"Cool charge ({mean_iat:.1f}C): target AFR {afr_target:.2f}, "
                        f"boost {boost_limit:.1f} PSI")

        is_thermal = (profile.id in self.THERMAL_PROFILES
                      or profile.induction == INDUCTION_SUPERCHARGED)
        if is_thermal and mean_iat > self.hot_iat:
            ignition -= self.thermal_timing_pull
            logger.info(f"Heat soak ({mean_iat:.1f}C): pulling {self.thermal_timing_pull:.1f} deg")

        # 3. KNOCK PROTECTION
        if peak_knock > self.knock_threshold:
            retard = (peak_knock * self.knock_retard_gain) / current_tune.chip_multiplier
            ignition -= retard
            logger.info(f"Knock peak {peak_knock:.2f}V: retarding {retard:.2f} deg "
                        f"(chip {current_tune.chip_type})")

        # 4. FUEL GRADE
        if profile.fuel_type in self.HIGH_OCTANE_FUELS and peak_knock < self.negligible_knock:
            ignition += self.octane_advance

        ignition = min(self.ignition_max, max(self.ignition_min, ignition))

        # 5. INTEGRAL FUEL CORRECTION
        residual = mean_afr - afr_target
        fuel_correction = (current_tune.fuel_correction
                           + (residual / afr_target) * 100.0 * self.integral_share)
        fuel_correction = min(MAX_ENRICH_PCT, max(-MAX_LEAN_PCT, fuel_correction))

        adjustment: Dict[str, float] = {}
        self._set_if_changed(adjustment, "afr_target", current_tune.afr_target, afr_target)
        self._set_if_changed(adjustment, "boost_limit", current_tune.boost_limit, boost_limit)
        self._set_if_changed(adjustment, "ignition_offset", current_tune.ignition_offset, ignition)
        self._set_if_changed(adjustment, "fuel_correction", current_tune.fuel_correction, fuel_correction)

        logger.info(f"Optimizer window: {len(window)} samples, mean AFR {mean_afr:.2f}, "
                    f"adjustment {adjustment}")
        return adjustment

    @staticmethod
    def _set_if_changed(adjustment: Dict[str, float], name: str, old: float, new: float):
        new = round(new, 2)
        if abs(new - old) > 1e-6:
            adjustment[name] = new
