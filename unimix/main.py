"""
PROJECT: UNIMIX PRO (PIGGYBACK TUNING SUITE)
FILE: MAIN
STATUS: CONSOLE DASHBOARD

DESCRIPTION:
    Boots a tuning session from config/settings.yaml, runs the virtual engine
    through the piggyback model and renders a live terminal dashboard with
    boost interception, AFR, knock and 0-60 tracking.

    USAGE:
    python -m unimix.main [path/to/settings.yaml]
"""

import asyncio
import itertools
import logging
import os
import signal
import sys
from datetime import datetime

from unimix.ai.advisor import build_advisor
from unimix.core.config import load_settings, resolve_path
from unimix.core.database import SessionRecorder
from unimix.core.models import Telemetry
from unimix.core.orchestrator import TuningSession

logger = logging.getLogger("UNIMIX.MAIN")

RENDER_EVERY_TICKS = 5   # 2Hz refresh at a 100ms tick


def configure_logging(settings):
    log_cfg = settings['logging']
    log_dir = resolve_path(log_cfg['directory'])
    os.makedirs(log_dir, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, str(log_cfg['level']).upper(), logging.INFO),
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        handlers=[logging.FileHandler(os.path.join(log_dir, "unimix_debug.log"))]
    )


def build_session(settings) -> TuningSession:
    recorder = None
    db_path = settings['database'].get('path')
    if db_path:
        try:
            recorder = SessionRecorder(resolve_path(db_path),
                                       settings['database'].get('commit_every', 10))
        except OSError as e:
            logger.warning(f"Recorder unavailable ({e}). Running in volatile mode.")

    session = TuningSession(
        settings=settings,
        advisor=build_advisor(settings['advisor']),
        recorder=recorder,
    )

    preset = settings['session'].get('preset')
    if preset:
        try:
            session.apply_preset(preset)
        except ValueError as e:
            logger.warning(f"{e}. Starting from the baseline tune.")
    return session


def render_dashboard(session: TuningSession, f: Telemetry, tick_count: int):
    if tick_count % RENDER_EVERY_TICKS:
        return

    os.system('cls' if os.name == 'nt' else 'clear')
    c_reset = "\033[0m"
    c_green = "\033[92m"
    c_red = "\033[91m"
    c_yellow = "\033[93m"
    c_purple = "\033[95m"

    knocking = f.knock > 1.5
    header_color = c_red if knocking else c_purple
    status_msg = f"DETONATION DETECTED: RETARDING {f.knock:.1f}" if knocking else "COMBUSTION STABILITY: NOMINAL"

    print(f"{header_color}=== UNIMIX PRO LIVE MONITOR ({session.profile.name.upper()}) ==={c_reset}")
    print(f"SESSION: {session.session_id} | LINK: {session.link.get_link_status().upper()} | "
          f"{datetime.now().strftime('%H:%M:%S')} | REC: {'ON' if session.recording else 'OFF'} "
          f"({len(session.log)}/{session.log.capacity})")
    print(f"{header_color}STATUS:  {status_msg}{c_reset}")
    print("=" * 64)

    # --- ROW 1: ENGINE VITALS ---
    afr_color = c_red if f.afr < 11.5 else (c_yellow if f.afr > 15.5 else c_green)
    print(f"{c_yellow}[ ENGINE VITALS ]{c_reset}")
    print(f"RPM:   {f.rpm:>5.0f}  | THROTTLE: {f.throttle:>5.1f}% | AFR: {afr_color}{f.afr:>5.2f}{c_reset}")
    print(f"ECT:   {f.coolant_temp:>5.1f}C | IAT: {f.iat:>5.1f}C      | OIL: {f.oil_pressure:>5.1f} PSI")
    print("-" * 64)

    # --- ROW 2: PIGGYBACK ---
    print(f"{c_yellow}[ SIGNAL INTERCEPTION ]{c_reset}")
    print(f"BOOST (ECU VIEW):   {f.boost:>6.2f} PSI   | MAP SIGNAL: {f.map_voltage:>5.3f} V")
    print(f"BOOST TARGET:       {session.tune.boost_limit:>6.2f} PSI   | KNOCK:      {f.knock:>5.2f} V")
    print(f"STFT: {f.stft:>+6.1f}% | LTFT: {f.ltft:>+6.1f}% | INJ DUTY: {f.inj_duty_cycle:>5.1f}% | "
          f"FUEL: {f.fuel_pressure:>5.1f} PSI")
    print("-" * 64)

    # --- ROW 3: PERFORMANCE ---
    zero_to_sixty = f"{f.zero_to_sixty:.2f}" if f.zero_to_sixty is not None else "--.--"
    print(f"{c_yellow}[ PERFORMANCE ]{c_reset}")
    print(f"SPEED: {f.speed:>5.0f} KM/H | 0-60: {zero_to_sixty} S | G: {f.g_force:>+5.2f}")
    print("-" * 64)

    # --- ROW 4: TUNE ---
    t = session.tune
    print(f"{c_yellow}[ ACTIVE TUNE ]{c_reset}")
    print(f"AFR TGT: {t.afr_target:>5.2f} | IGN: {t.ignition_offset:>+5.1f} | FUEL CORR: {t.fuel_correction:>+5.1f}% "
          f"| CHIP: {t.chip_type}")
    row, col, fuel_cell, ign_cell = session.traced_cell()
    print(f"{c_yellow}[ BASE MAPS ]{c_reset} TRACE R{row:02d} C{col:02d} | FUEL: {fuel_cell:>5.2f} AFR | IGN: {ign_cell:>+5.1f} DEG")
    if session.optimizing:
        print(f"{c_purple}>>> OPTIMIZER RUNNING <<<{c_reset}")
    for warning in session.envelope_warnings:
        print(f"{c_red}ENVELOPE: {warning}{c_reset}")
    if session.advisor_notice:
        print(f"{c_yellow}{session.advisor_notice}{c_reset}")

    print("=" * 64)


async def run_dashboard(session: TuningSession):
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, session.stop)
        except NotImplementedError:
            pass  # Windows

    ticks = itertools.count()

    def on_tick(s: TuningSession, frame: Telemetry):
        render_dashboard(s, frame, next(ticks))

    try:
        await session.run(on_tick=on_tick)
    finally:
        await session.close()


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    settings = load_settings(argv[0] if argv else None)
    configure_logging(settings)

    session = build_session(settings)
    try:
        asyncio.run(run_dashboard(session))
    except KeyboardInterrupt:
        print("\n[STOP] User Halt. Closing Session.")


if __name__ == "__main__":
    try:
        main()
    except Exception as e:
        logger.critical(f"FATAL SYSTEM ERROR: {e}")
        raise
