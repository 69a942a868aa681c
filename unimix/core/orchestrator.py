"""
MODULE: TUNING_SESSION (ORCHESTRATOR)
PROFILE: UNIMIX PIGGYBACK

DESCRIPTION:
    Owns one live tuning session and wires the kernels together.

    tick loop (every tick_seconds)
        simulator.step -> telemetry -> log / recorder -> intents to the link
    optimizer (every optimizer_interval_seconds, or on demand)
        log snapshot -> optimize in a worker thread -> merge into the tune
    advisor (optional, every advisor_interval_seconds, or on demand)
        background request, last result wins -> merge + safe envelope

    CONCURRENCY:
    Single event loop, single writer. Each tick is synchronous. The optimizer
    is single-flight: a request while one is running is dropped. Link
    intents and advisor calls are fire-and-forget, so a slow adapter or a
    slow network can never stall the next tick.
"""

import asyncio
import json
import logging
import time
import uuid
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import numpy as np

from unimix.ai.advisor import AdvisorSuggestion, AdvisoryDispatcher, RemoteAdvisor, check_envelope
from unimix.core.config import merge_settings
from unimix.core.database import SessionRecorder
from unimix.core.maps import MAP_FUEL, MAP_IGNITION, BaseMap, cell_index
from unimix.core.models import DEFAULT_CHIP, Telemetry, TuneSettings
from unimix.core.profiles import INITIAL_TUNE, get_preset, get_profile
from unimix.core.telemetry_log import TelemetryLog
from unimix.hardware.link import FaultCode, HardwareLink, connect_link
from unimix.physics.optimizer import LocalTuneOptimizer
from unimix.physics.simulator import Rng, SimulatorConfig, TelemetrySimulator

logger = logging.getLogger("UNIMIX.SESSION")

TickCallback = Callable[["TuningSession", Telemetry], None]


class TuningSession:
    """
    The Master Controller.
    """
    def __init__(self, settings: Optional[Dict[str, Any]] = None,
                 link: Optional[HardwareLink] = None,
                 advisor: Optional[RemoteAdvisor] = None,
                 recorder: Optional[SessionRecorder] = None,
                 rng: Optional[Rng] = None,
                 clock: Callable[[], float] = time.time):
        self.settings = merge_settings(settings)
        session_cfg = self.settings['session']

        self.session_id = str(uuid.uuid4())[:8]
        self.clock = clock
        self.rng = rng or np.random.default_rng().random

        # 1. Vehicle + baseline tune
        self.profile = get_profile(session_cfg.get('profile'))
        self.tune = replace(INITIAL_TUNE, chip_type=session_cfg.get('chip_type', DEFAULT_CHIP))
        self.maps = {MAP_FUEL: BaseMap(MAP_FUEL), MAP_IGNITION: BaseMap(MAP_IGNITION)}

        # 2. Kernels
        sim_cfg = dict(self.settings.get('simulator') or {})
        sim_cfg.setdefault('psi_max', self.settings['signal']['psi_max'])
        sim_cfg.setdefault('tick_seconds', session_cfg['tick_seconds'])
        self.simulator = TelemetrySimulator(SimulatorConfig.from_dict(sim_cfg))
        self.optimizer = LocalTuneOptimizer.from_dict(self.settings.get('optimizer'))

        # 3. Buffers + collaborators
        self.log = TelemetryLog(int(session_cfg['log_capacity']))
        self.link = link or connect_link(self.settings['hardware'])
        self.recorder = recorder
        self.dispatcher = AdvisoryDispatcher(advisor, self._apply_suggestion) if advisor else None

        self.telemetry = Telemetry.initial(self.clock())
        self.recording = bool(session_cfg.get('record_on_start', True))
        self.envelope_warnings: List[str] = []
        self.running = False
        self._optimizing = False
        self._background: Set[asyncio.Future] = set()

        if self.recorder:
            self.recorder.start_session(self.session_id, self.profile.id, self.tune.chip_type)

        logger.info(f"Session {self.session_id} ready. Profile: {self.profile.name}, "
                    f"link: {self.link.get_link_status()}")

    # ------------------ Tick ------------------
    def tick(self) -> Telemetry:
        result = self.simulator.step(self.telemetry, self.tune, self.profile, self.clock(), self.rng)
        self.telemetry = result.telemetry

        if self.recording:
            self.log.append(self.telemetry)
            if self.recorder:
                self.recorder.log_packet(self.telemetry)

        for intent in result.intents:
            self._emit(intent)

        if self.dispatcher and self.dispatcher.latest:
            self.envelope_warnings = check_envelope(
                self.telemetry, self.tune, self.dispatcher.latest.safe_envelope)

        return self.telemetry

    def _emit(self, intent: str):
        """Fire-and-forget a command intent onto the link."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.link.send_command(intent)
            return

        future = loop.run_in_executor(None, self.link.send_command, intent)
        self._track(future)

    def _track(self, future: "asyncio.Future"):
        self._background.add(future)
        future.add_done_callback(self._background_done)

    def _background_done(self, future: "asyncio.Future"):
        self._background.discard(future)
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error(f"Background job failed: {exc}")

    # ------------------ Tune edits ------------------
    def apply_adjustment(self, adjustment: Dict[str, Any], source: str) -> TuneSettings:
        if not adjustment:
            return self.tune

        self.tune = self.tune.merged(adjustment)
        fields_txt = " ".join(f"{k}={v}" for k, v in sorted(adjustment.items()))
        self._emit(f"RAM_WRITE {source}: {fields_txt}")
        logger.info(f"Tune updated by {source}: {fields_txt}")

        if self.recorder:
            self.recorder.log_event("TUNE_UPDATE", "INFO", json.dumps({"source": source, **adjustment}))
        return self.tune

    def update_tune(self, **changes: Any) -> TuneSettings:
        return self.apply_adjustment(changes, "USER")

    def apply_preset(self, name: str) -> TuneSettings:
        """One-touch calibration. Raises ValueError for unknown presets."""
        adjustment = get_preset(name)
        logger.info(f"Loading preset '{name}'")
        return self.apply_adjustment(adjustment, "PRESET")

    # ------------------ Base maps ------------------
    @property
    def fuel_map(self) -> BaseMap:
        return self.maps[MAP_FUEL]

    @property
    def ignition_map(self) -> BaseMap:
        return self.maps[MAP_IGNITION]

    def _map(self, kind: str) -> BaseMap:
        try:
            return self.maps[kind]
        except KeyError:
            raise ValueError(f"Unknown map type: {kind}") from None

    def traced_cell(self) -> Tuple[int, int, float, float]:
        """(row, col, fuel AFR, ignition deg) of the cell the engine is running in."""
        row, col = cell_index(self.telemetry.rpm, self.telemetry.throttle)
        return row, col, self.fuel_map.get_cell(row, col), self.ignition_map.get_cell(row, col)

    def edit_map_cell(self, kind: str, row: int, col: int, value: Any) -> float:
        written = self._map(kind).set_cell(row, col, value)
        self._emit(f"RAM_WRITE MAP {kind}: [{row},{col}]={written:.2f}")

        if self.recorder:
            self.recorder.log_event("MAP_UPDATE", "INFO",
                                    json.dumps({"map": kind, "row": row, "col": col, "value": written}))
        return written

    def calibrate_high_load(self, kind: str) -> int:
        touched = self._map(kind).calibrate_high_load()
        self._emit(f"RAM_WRITE MAP {kind}: HIGH_LOAD_CALIBRATION {touched} CELLS")

        if self.recorder:
            self.recorder.log_event("MAP_UPDATE", "INFO",
                                    json.dumps({"map": kind, "calibration": "HIGH_LOAD", "cells": touched}))
        return touched

    # ------------------ Optimizer ------------------
    def run_optimizer(self) -> Dict[str, float]:
        """Synchronous optimization pass on a snapshot of the log."""
        adjustment = self.optimizer.optimize(self.log.snapshot(), self.tune, self.profile)
        self.apply_adjustment(adjustment, "OPTIMIZER")
        return adjustment

    async def optimize_async(self) -> Optional[Dict[str, float]]:
        """Single-flight: returns None if a pass is already running."""
        if self._optimizing:
            logger.info("Optimization already in flight. Request dropped.")
            return None

        self._optimizing = True
        try:
            history = self.log.snapshot()
            loop = asyncio.get_running_loop()
            adjustment = await loop.run_in_executor(
                None, self.optimizer.optimize, history, self.tune, self.profile)
        finally:
            self._optimizing = False

        self.apply_adjustment(adjustment, "OPTIMIZER")
        return adjustment

    @property
    def optimizing(self) -> bool:
        return self._optimizing

    # ------------------ Advisor ------------------
    def request_advice(self) -> Optional["asyncio.Task"]:
        if not self.dispatcher:
            return None
        window = int(self.settings['advisor'].get('history_window', 20))
        history = self.log.latest(window) or [self.telemetry]
        return self.dispatcher.request(self.profile, self.tune, history)

    def _apply_suggestion(self, suggestion: AdvisorSuggestion):
        if suggestion.reasoning:
            logger.info(f"Advisor reasoning: {suggestion.reasoning}")
        self.apply_adjustment(suggestion.as_adjustment(self.profile), "ADVISOR")

    @property
    def advisor_notice(self) -> Optional[str]:
        return self.dispatcher.notice if self.dispatcher else None

    # ------------------ Data logger ------------------
    def start_recording(self):
        self.recording = True

    def stop_recording(self):
        self.recording = False

    def clear_log(self):
        self.log.clear()

    def reset_zero_to_sixty(self):
        self.simulator.timer.reset()
        self.telemetry = replace(self.telemetry, zero_to_sixty=None)

    # ------------------ Diagnostics ------------------
    def read_fault_codes(self) -> List[FaultCode]:
        codes = self.link.read_fault_codes()
        logger.info(f"{len(codes)} fault codes reported")
        return codes

    def clear_fault_codes(self) -> bool:
        cleared = self.link.clear_fault_codes()
        if self.recorder:
            self.recorder.log_event("DTC_CLEAR", "WARNING", "OK" if cleared else "REJECTED")
        return cleared

    # ------------------ Main loop ------------------
    async def run(self, duration: Optional[float] = None, on_tick: Optional[TickCallback] = None):
        session_cfg = self.settings['session']
        tick_seconds = float(session_cfg['tick_seconds'])
        optimizer_interval = float(session_cfg['optimizer_interval_seconds'])
        advisor_interval = float(session_cfg.get('advisor_interval_seconds', 0))

        loop = asyncio.get_running_loop()
        started = loop.time()
        last_optimize = last_advice = started
        self.running = True

        try:
            while self.running:
                loop_start = loop.time()

                frame = self.tick()
                if on_tick:
                    on_tick(self, frame)

                if optimizer_interval > 0 and loop_start - last_optimize >= optimizer_interval:
                    last_optimize = loop_start
                    self._track(loop.create_task(self.optimize_async()))

                if (self.dispatcher and advisor_interval > 0
                        and loop_start - last_advice >= advisor_interval):
                    last_advice = loop_start
                    self.request_advice()

                if duration is not None and loop_start - started >= duration:
                    break

                elapsed = loop.time() - loop_start
                await asyncio.sleep(max(0.0, tick_seconds - elapsed))
        finally:
            self.running = False

    def stop(self):
        self.running = False

    async def close(self):
        self.running = False
        if self.dispatcher:
            await self.dispatcher.close()

        # Queued link writes and optimizer passes must not land on a closed link
        pending = list(self._background)
        for future in pending:
            future.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.debug(f"Cancelled {len(pending)} background jobs")

        self.link.close()
        if self.recorder:
            self.recorder.close()
        logger.info(f"Session {self.session_id} closed.")
