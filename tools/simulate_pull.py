"""
TOOL: HEADLESS PULL SIMULATOR

DESCRIPTION:
    Runs the virtual engine offline with a seeded random source, faster than
    real time, then reports the 0-60 result, knock events and the adjustment
    the local optimizer would write.

    Useful for checking a calibration change without the live dashboard.

    USAGE:
    python tools/simulate_pull.py --profile hellcat --ticks 600 --seed 7 --boost 15
"""

import argparse
import logging
import os
import sys

import numpy as np

# Add project root to path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from unimix.core.models import Telemetry
from unimix.core.profiles import INITIAL_TUNE, VEHICLE_PROFILES, get_profile
from unimix.core.telemetry_log import TelemetryLog
from unimix.physics.optimizer import LocalTuneOptimizer
from unimix.physics.simulator import SimulatorConfig, TelemetrySimulator

logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
                    handlers=[logging.StreamHandler()])
logger = logging.getLogger("UNIMIX.TOOLS.PULL")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Headless piggyback pull simulation")
    parser.add_argument("--profile", default="motec-m1", choices=[p.id for p in VEHICLE_PROFILES])
    parser.add_argument("--ticks", type=int, default=600)
    parser.add_argument("--seed", type=int, default=42)
    parser.add_argument("--boost", type=float, default=INITIAL_TUNE.boost_limit,
                        help="Boost target in PSI (0 = no interception)")
    parser.add_argument("--afr", type=float, default=INITIAL_TUNE.afr_target)
    return parser.parse_args(argv)


def simulate(profile_id: str, ticks: int, seed: int, boost: float, afr: float):
    profile = get_profile(profile_id)
    tune = INITIAL_TUNE.merged({"boost_limit": boost, "afr_target": afr})
    config = SimulatorConfig()
    simulator = TelemetrySimulator(config)
    rng = np.random.default_rng(seed).random

    log = TelemetryLog(max(ticks, 1))
    frame = Telemetry.initial(0.0)
    intents = []
    for i in range(ticks):
        result = simulator.step(frame, tune, profile, (i + 1) * config.tick_seconds, rng)
        frame = result.telemetry
        log.append(frame)
        intents.extend(result.intents)

    return profile, tune, log, intents


def main(argv=None):
    args = parse_args(argv)
    profile, tune, log, intents = simulate(args.profile, args.ticks, args.seed, args.boost, args.afr)
    history = log.snapshot()

    knock_frames = [f for f in history if f.knock > 0]
    last = history[-1] if history else None
    zero_to_sixty = last.zero_to_sixty if last else None

    print(f"\n=== PULL REPORT: {profile.name} ({args.ticks} ticks, seed {args.seed}) ===")
    print(f"0-60:         {zero_to_sixty:.2f} s" if zero_to_sixty is not None else "0-60:         no completed run")
    print(f"Peak boost:   {max((f.boost for f in history), default=0.0):.2f} PSI")
    print(f"Peak knock:   {max((f.knock for f in history), default=0.0):.2f} V "
          f"({len(knock_frames)} frames)")
    print(f"Intents:      {len(intents)}")

    adjustment = LocalTuneOptimizer().optimize(history, tune, profile)
    print(f"Optimizer:    {adjustment or 'no change'}")


if __name__ == "__main__":
    main()
