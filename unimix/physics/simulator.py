"""
MODULE: TELEMETRY_SIMULATOR
PROFILE: UNIMIX PIGGYBACK (VIRTUAL ENGINE)

DESCRIPTION:
    A deterministic, tick-based engine emulator. Every ~100ms it turns the
    previous snapshot, the live tune and the vehicle profile into the next
    snapshot of RPM, boost, AFR, knock, speed and temperatures.

    The output is plausible rather than exact. It is tuned for responsive
    gauges: smooth throttle, hard clamped limits, lean-under-load knock.

    Randomness comes only from the `rng` callable passed to step(), so a
    seeded source (or a constant lambda) replays a run exactly. Side effects
    the piggyback would send to the car (torque cut, ignition retard) are
    returned as intent strings and never broadcast from here.
"""

import logging
from dataclasses import dataclass, field, fields
from typing import Any, Callable, Dict, List, Optional

from unimix.core.models import (
    INDUCTION_NA,
    INDUCTION_TURBO,
    Telemetry,
    TuneSettings,
    VehicleProfile,
)
from unimix.physics.signal import PSI_MAX, intercept_map_signal, psi_to_voltage, voltage_to_psi
from unimix.physics.stoichiometry import STOICH_AFR, calculate_fuel_trim

logger = logging.getLogger("UNIMIX.PHYSICS.SIM")

Rng = Callable[[], float]

GRAVITY = 9.81


@dataclass
class SimulatorConfig:
    """Calibration constants. Tuned for a 100ms tick."""
    tick_seconds: float = 0.1
    psi_max: float = PSI_MAX

    # Driver model
    wot_stab_probability: float = 0.08
    cruise_throttle_min: float = 5.0
    cruise_throttle_span: float = 15.0
    throttle_smoothing: float = 0.15

    # Crank
    idle_rpm: float = 800.0
    rpm_per_throttle_pct: float = 75.0
    rpm_jitter: float = 30.0

    # Chassis (km/h per tick)
    accel_per_tick: float = 1.8
    drag_per_tick: float = 0.004
    coast_throttle: float = 5.0
    brake_per_tick: float = 0.8
    torque_cut_event_probability: float = 0.1

    # Induction
    raw_boost_max: float = 24.0
    vacuum_floor: float = -3.0
    turbo_spool_exponent: float = 1.5

    # Mixture
    wot_throttle: float = 85.0
    part_throttle: float = 45.0
    part_throttle_afr: float = 13.0
    afr_smoothing: float = 0.15
    afr_noise: float = 0.05

    # Overrun pops
    crackle_throttle: float = 15.0
    crackle_rpm: float = 1500.0
    crackle_afr_drop: float = 3.0

    # Detonation
    lean_knock_afr: float = 13.8
    knock_max: float = 6.0
    knock_timing_sensitivity: float = 0.05

    # Thermal
    ambient_temp: float = 25.0
    thermostat_temp: float = 88.0
    coolant_max: float = 125.0
    coolant_heat_throttle: float = 60.0
    coolant_heat_rate: float = 0.08
    coolant_cool_rate: float = 0.04
    iat_per_psi: float = 1.8
    iat_smoothing: float = 0.02

    # Derived sensors
    oil_base: float = 15.0
    oil_per_rpm: float = 0.008
    fuel_base_pressure: float = 58.0
    fuel_pressure_per_psi: float = 0.6
    injector_rpm_scale: float = 6500.0
    injector_max_duty: float = 90.0

    # Acceleration timer
    launch_target_speed: float = 60.0

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SimulatorConfig":
        if not data:
            return cls()
        known = {f.name for f in fields(cls)}
        return cls(**{k: float(v) for k, v in data.items() if k in known})


@dataclass
class StepResult:
    telemetry: Telemetry
    intents: List[str] = field(default_factory=list)


class AccelerationTimer:
    """
    Zero-to-threshold stopwatch carried between ticks.

    IDLE -> RUNNING when speed leaves zero.
    RUNNING -> IDLE when speed crosses the threshold, publishing the time.
    A run abandoned before the threshold is only cleared by the next launch.
    """

    def __init__(self, threshold: float = 60.0):
        self.threshold = threshold
        self.start_time: Optional[float] = None

    @property
    def running(self) -> bool:
        return self.start_time is not None

    def update(self, prev_speed: float, new_speed: float, now: float) -> Optional[float]:
        """Returns the elapsed seconds when a run completes on this tick."""
        if prev_speed <= 0.0 and new_speed > 0.0:
            self.start_time = now

        if prev_speed < self.threshold <= new_speed and self.start_time is not None:
            elapsed = now - self.start_time
            self.start_time = None
            return elapsed

        return None

    def reset(self):
        self.start_time = None


class TelemetrySimulator:
    """
    One transition per tick. The only state kept between calls is the
    acceleration timer marker; everything else flows through `prev`.
    """

    def __init__(self, config: Optional[SimulatorConfig] = None,
                 timer: Optional[AccelerationTimer] = None):
        self.config = config or SimulatorConfig()
        self.timer = timer or AccelerationTimer(self.config.launch_target_speed)

    def step(self, prev: Telemetry, tune: TuneSettings, profile: VehicleProfile,
             now: float, rng: Rng) -> StepResult:
        cfg = self.config
        tune = tune.sanitized()
        intents: List[str] = []

        # Torque/RPM curve scaling
        curve_gain = 1.0 + tune.global_offset / 100.0

        # 1. DRIVER PEDAL
        # Occasional full-throttle stab, otherwise a light cruise request
        if rng() > 1.0 - cfg.wot_stab_probability:
            target_throttle = 100.0
        else:
            target_throttle = rng() * cfg.cruise_throttle_span + cfg.cruise_throttle_min
        throttle = prev.throttle + (target_throttle - prev.throttle) * cfg.throttle_smoothing
        throttle = min(100.0, max(0.0, throttle))

        # 2. CRANK SPEED
        rpm = cfg.idle_rpm + throttle * cfg.rpm_per_throttle_pct * curve_gain + rng() * cfg.rpm_jitter
        rpm = min(tune.rev_limit, max(0.0, rpm))

        # 3. VEHICLE SPEED
        if throttle < cfg.coast_throttle:
            delta = -cfg.brake_per_tick
        else:
            accel = (throttle / 100.0) * cfg.accel_per_tick * curve_gain
            delta = accel - prev.speed * cfg.drag_per_tick
        speed = max(0.0, prev.speed + delta)

        if speed > tune.top_speed_limit:
            speed = tune.top_speed_limit
            # Limiter is holding. Only report some of the cuts.
            if rng() < cfg.torque_cut_event_probability:
                intents.append(f"TORQUE_CUT: VMAX {tune.top_speed_limit:.0f} KMH")

        # 4. MANIFOLD PRESSURE (through the piggyback)
        load = throttle / 100.0
        spool = load ** cfg.turbo_spool_exponent if profile.induction == INDUCTION_TURBO else load
        raw_psi = cfg.vacuum_floor + spool * (cfg.raw_boost_max - cfg.vacuum_floor)
        raw_voltage = psi_to_voltage(raw_psi, cfg.psi_max)

        boost_target = tune.boost_limit
        if boost_target > 0 and profile.max_boost > 0:
            boost_target = min(boost_target, profile.max_boost)

        ecu_voltage = intercept_map_signal(raw_voltage, boost_target, cfg.psi_max)
        boost = voltage_to_psi(ecu_voltage, cfg.psi_max)
        if profile.induction == INDUCTION_NA:
            boost = 0.0

        # 5. MIXTURE
        # Lift-off overrun: dump fuel and retard spark for pops
        crackle_active = (tune.crackle_intensity > 0
                          and throttle < cfg.crackle_throttle
                          and throttle < prev.throttle
                          and rpm > cfg.crackle_rpm)
        if crackle_active:
            afr_target = STOICH_AFR - cfg.crackle_afr_drop * (tune.crackle_intensity / 100.0)
            intents.append(f"IGN_RETARD: OVERRUN CRACKLE {tune.crackle_intensity:.0f}%")
        elif throttle > cfg.wot_throttle:
            afr_target = tune.afr_target
        elif throttle > cfg.part_throttle:
            afr_target = cfg.part_throttle_afr
        else:
            afr_target = STOICH_AFR

        fueled_target = afr_target / (1.0 + tune.fuel_correction / 100.0)
        afr = prev.afr + (fueled_target - prev.afr) * cfg.afr_smoothing + rng() * cfg.afr_noise

        # 6. DETONATION
        knock = 0.0
        if throttle > cfg.wot_throttle and afr > cfg.lean_knock_afr and not crackle_active:
            timing = tune.ignition_offset - tune.timing_retard_per_psi * max(boost, 0.0)
            timing_factor = min(1.5, max(0.25, 1.0 + timing * cfg.knock_timing_sensitivity))
            knock = rng() * cfg.knock_max * timing_factor

        # 7. DERIVED SENSORS
        g_force = ((speed - prev.speed) / 3.6) / cfg.tick_seconds / GRAVITY

        injector_duty = ((rpm / cfg.injector_rpm_scale) * load * cfg.injector_max_duty
                         * (1.0 + tune.fuel_correction / 100.0))
        injector_duty = min(100.0, max(0.0, injector_duty))

        fuel_pressure = cfg.fuel_base_pressure + boost * cfg.fuel_pressure_per_psi

        if throttle > cfg.coolant_heat_throttle:
            coolant = prev.coolant_temp + cfg.coolant_heat_rate
        else:
            coolant = prev.coolant_temp - cfg.coolant_cool_rate
        coolant = min(cfg.coolant_max, max(cfg.thermostat_temp, coolant))

        # Compressor heat soaks the charge, ambient pulls it back
        iat_target = cfg.ambient_temp + max(boost, 0.0) * cfg.iat_per_psi
        iat = prev.iat + (iat_target - prev.iat) * cfg.iat_smoothing

        oil_pressure = cfg.oil_base + rpm * cfg.oil_per_rpm

        # 8. ZERO-TO-SIXTY
        zero_to_sixty = prev.zero_to_sixty
        elapsed = self.timer.update(prev.speed, speed, now)
        if elapsed is not None:
            zero_to_sixty = elapsed
            logger.info(f"0-{self.timer.threshold:.0f} run completed in {elapsed:.2f}s")

        for intent in intents:
            logger.debug(f"Intent: {intent}")

        # 9. SNAPSHOT
        telemetry = Telemetry(
            rpm=rpm,
            boost=boost,
            afr=afr,
            coolant_temp=coolant,
            oil_pressure=oil_pressure,
            speed=speed,
            iat=iat,
            throttle=throttle,
            knock=knock,
            map_voltage=psi_to_voltage(boost, cfg.psi_max),
            stft=calculate_fuel_trim(afr, afr_target),
            ltft=tune.fuel_correction,
            fuel_pressure=fuel_pressure,
            inj_duty_cycle=injector_duty,
            g_force=g_force,
            zero_to_sixty=zero_to_sixty,
            timestamp=now,
        )
        return StepResult(telemetry=telemetry, intents=intents)
