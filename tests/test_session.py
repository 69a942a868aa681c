"""
UNIT TEST: TUNING SESSION + INFRASTRUCTURE

DESCRIPTION:
    Exercises the session controller end to end against the simulated
    link, plus the telemetry log, settings loader and SQLite recorder.
"""

import asyncio
import itertools
import os
import sys
import tempfile
import threading
import unittest
import logging
from dataclasses import replace

# Add project root to path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from unimix.core.config import DEFAULT_SETTINGS, load_settings, merge_settings
from unimix.core.database import SessionRecorder
from unimix.core.maps import MAP_FUEL, MAP_IGNITION
from unimix.core.models import Telemetry
from unimix.core.orchestrator import TuningSession
from unimix.core.profiles import INITIAL_TUNE, TUNE_PRESETS
from unimix.core.telemetry_log import TelemetryLog
from unimix.hardware.link import SimulatedLink

SETTINGS = {
    'session': {'profile': 'motec-m1', 'tick_seconds': 0.01, 'optimizer_interval_seconds': 0},
    'hardware': {'simulation_mode': True},
}


def make_session(**kwargs):
    ticks = itertools.count(1)
    kwargs.setdefault('settings', SETTINGS)
    kwargs.setdefault('link', SimulatedLink())
    return TuningSession(rng=lambda: 0.95, clock=lambda: next(ticks) * 0.1, **kwargs)


class TestTelemetryLog(unittest.TestCase):

    def test_fifo_eviction(self):
        log = TelemetryLog(3)
        for i in range(5):
            log.append(Telemetry.initial(float(i)))

        self.assertEqual(len(log), 3)
        self.assertEqual([f.timestamp for f in log.snapshot()], [2.0, 3.0, 4.0])
        self.assertEqual([f.timestamp for f in log.latest(2)], [3.0, 4.0])
        self.assertEqual(log.latest(0), [])

    def test_snapshot_is_a_copy(self):
        log = TelemetryLog(10)
        log.append(Telemetry.initial(0.0))

        snap = log.snapshot()
        snap.clear()

        self.assertEqual(len(log), 1)

    def test_invalid_capacity(self):
        with self.assertRaises(ValueError):
            TelemetryLog(0)


class TestTuningSession(unittest.TestCase):

    def setUp(self):
        logging.disable(logging.CRITICAL)

    def test_ticks_record_only_while_recording(self):
        session = make_session()
        for _ in range(10):
            session.tick()
        self.assertEqual(len(session.log), 10)

        session.stop_recording()
        session.tick()
        self.assertEqual(len(session.log), 10)

        session.start_recording()
        session.tick()
        self.assertEqual(len(session.log), 11)

        session.clear_log()
        self.assertEqual(len(session.log), 0)

    def test_user_edit_writes_ram(self):
        session = make_session()

        tune = session.update_tune(boost_limit=12.0, afr_target=11.8)

        self.assertEqual(tune.boost_limit, 12.0)
        self.assertEqual(session.tune.afr_target, 11.8)
        self.assertEqual(session.link.tx_history[-1][1], "RAM_WRITE USER: afr_target=11.8 boost_limit=12.0")

    def test_empty_adjustment_is_silent(self):
        session = make_session()
        before = session.tune
        session.apply_adjustment({}, "OPTIMIZER")
        self.assertIs(session.tune, before)
        self.assertEqual(len(session.link.tx_history), 0)

    def test_run_optimizer_merges_partial_adjustment(self):
        session = make_session()
        session.update_tune(top_speed_limit=180.0)
        for _ in range(60):
            session.tick()

        adjustment = session.run_optimizer()

        self.assertTrue(adjustment)
        self.assertEqual(session.tune.top_speed_limit, 180.0)
        for name, value in adjustment.items():
            self.assertEqual(getattr(session.tune, name), value)

    def test_zero_to_sixty_reset(self):
        session = make_session()
        for _ in range(120):
            session.tick()
        self.assertIsNotNone(session.telemetry.zero_to_sixty)

        session.reset_zero_to_sixty()

        self.assertIsNone(session.telemetry.zero_to_sixty)
        self.assertFalse(session.simulator.timer.running)

    def test_fault_codes(self):
        session = make_session()

        self.assertEqual(len(session.read_fault_codes()), 2)
        self.assertTrue(session.clear_fault_codes())
        self.assertEqual(session.read_fault_codes(), [])

        sent = [text for _, text in session.link.tx_history]
        self.assertEqual(sent, ["03", "04", "03"])

    def test_unknown_profile_falls_back(self):
        session = make_session(settings={'session': {'profile': 'delorean'}})
        self.assertEqual(session.profile.id, "motec-m1")

    def test_recorder_persists_frames(self):
        recorder = SessionRecorder(":memory:")
        session = make_session(recorder=recorder)
        for _ in range(5):
            session.tick()

        frames = recorder.fetch_frames(limit=3)

        self.assertEqual(len(frames), 3)
        self.assertEqual(frames[-1]['timestamp'], session.telemetry.timestamp)
        recorder.close()

    def test_recorder_commits_in_batches(self):
        recorder = SessionRecorder(":memory:", commit_every=10)
        session = make_session(recorder=recorder)

        def stored():
            return recorder.conn.execute("SELECT COUNT(*) FROM telemetry_frames").fetchone()[0]

        for _ in range(5):
            session.tick()
        self.assertEqual(stored(), 0)
        self.assertEqual(recorder.pending, 5)

        for _ in range(5):
            session.tick()
        self.assertEqual(stored(), 10)
        self.assertEqual(recorder.pending, 0)

        # A partial batch is written when a reader asks for frames
        session.tick()
        self.assertEqual(len(recorder.fetch_frames(limit=50)), 11)
        recorder.close()


class TestPresetsAndMaps(unittest.TestCase):

    def setUp(self):
        logging.disable(logging.CRITICAL)
        self.session = make_session()

    def sent(self):
        return [text for _, text in self.session.link.tx_history]

    def test_preset_writes_ram(self):
        tune = self.session.apply_preset("valet")

        self.assertEqual(tune.rev_limit, 3000.0)
        self.assertEqual(tune.boost_limit, 3.0)
        self.assertEqual(tune.ignition_offset, -5.0)
        self.assertEqual(self.sent()[-1],
                         "RAM_WRITE PRESET: afr_target=14.7 boost_limit=3.0 fuel_correction=0.0 "
                         "ignition_offset=-5.0 rev_limit=3000.0 timing_retard_per_psi=1.0")

    def test_every_preset_applies(self):
        for name, adjustment in TUNE_PRESETS.items():
            tune = self.session.apply_preset(name)
            for field, value in adjustment.items():
                self.assertEqual(getattr(tune, field), value, f"{name}.{field}")
        self.assertEqual(len(self.sent()), len(TUNE_PRESETS))

    def test_stock_preset_restores_baseline(self):
        self.session.update_tune(boost_limit=30.0, crackle_intensity=80.0, top_speed_limit=120.0)

        tune = self.session.apply_preset("stock")

        self.assertEqual(tune, replace(INITIAL_TUNE, chip_type=tune.chip_type))
        self.assertEqual(tune.chip_type, "STANDARD")

    def test_unknown_preset(self):
        before = self.session.tune
        with self.assertRaises(ValueError):
            self.session.apply_preset("drift-king")
        self.assertIs(self.session.tune, before)
        self.assertEqual(self.sent(), [])

    def test_traced_cell_follows_engine(self):
        self.session.telemetry = replace(self.session.telemetry, rpm=3000.0, throttle=50.0)

        row, col, fuel, ignition = self.session.traced_cell()

        self.assertEqual((row, col), (8, 6))
        self.assertEqual(fuel, self.session.fuel_map.get_cell(8, 6))
        self.assertEqual(ignition, self.session.ignition_map.get_cell(8, 6))

    def test_map_edit_writes_ram(self):
        self.session.telemetry = replace(self.session.telemetry, rpm=3000.0, throttle=50.0)

        self.assertEqual(self.session.edit_map_cell(MAP_FUEL, 8, 6, 12.5), 12.5)
        self.assertEqual(self.session.traced_cell()[2], 12.5)
        self.assertEqual(self.sent()[-1], "RAM_WRITE MAP FUEL: [8,6]=12.50")

        self.assertEqual(self.session.edit_map_cell(MAP_FUEL, 8, 6, float('nan')), 0.0)
        self.assertEqual(self.sent()[-1], "RAM_WRITE MAP FUEL: [8,6]=0.00")

    def test_high_load_calibration_writes_ram(self):
        before = self.session.ignition_map.get_cell(0, 0)

        self.assertEqual(self.session.calibrate_high_load(MAP_IGNITION), 96)

        self.assertAlmostEqual(self.session.ignition_map.get_cell(0, 0), before + 2.0)
        self.assertEqual(self.sent()[-1], "RAM_WRITE MAP IGNITION: HIGH_LOAD_CALIBRATION 96 CELLS")

    def test_unknown_map(self):
        with self.assertRaises(ValueError):
            self.session.edit_map_cell("BOOST", 0, 0, 1.0)
        with self.assertRaises(ValueError):
            self.session.calibrate_high_load("BOOST")
        self.assertEqual(self.sent(), [])

    def test_map_edits_are_recorded(self):
        recorder = SessionRecorder(":memory:")
        session = make_session(recorder=recorder)

        session.edit_map_cell(MAP_FUEL, 1, 2, 11.0)
        session.apply_preset("track-attack")

        kinds = [event_type for event_type, _, _ in recorder.fetch_events()]
        self.assertEqual(kinds, ["SESSION_START", "MAP_UPDATE", "TUNE_UPDATE"])
        recorder.close()


class TestSessionConcurrency(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        logging.disable(logging.CRITICAL)

    async def test_optimizer_single_flight(self):
        class BlockingOptimizer:
            def __init__(self):
                self.release = threading.Event()
                self.calls = 0

            def optimize(self, history, tune, profile):
                self.calls += 1
                self.release.wait(5)
                return {"ignition_offset": -1.0}

        session = make_session()
        session.optimizer = BlockingOptimizer()

        first = asyncio.create_task(session.optimize_async())
        await asyncio.sleep(0)
        self.assertTrue(session.optimizing)

        # Ticks keep running while the pass is in flight
        session.tick()
        self.assertIsNone(await session.optimize_async())

        session.optimizer.release.set()
        self.assertEqual(await first, {"ignition_offset": -1.0})

        self.assertEqual(session.optimizer.calls, 1)
        self.assertFalse(session.optimizing)
        self.assertEqual(session.tune.ignition_offset, -1.0)

    async def test_run_for_duration(self):
        session = make_session()
        seen = []

        await session.run(duration=0.1, on_tick=lambda s, f: seen.append(f))
        await session.close()

        self.assertGreater(len(seen), 1)
        self.assertFalse(session.running)
        self.assertEqual(seen[-1], session.telemetry)

    async def test_stop_ends_loop(self):
        session = make_session()

        def stop_after_three(s, f):
            if len(s.log) >= 3:
                s.stop()

        await asyncio.wait_for(session.run(on_tick=stop_after_three), timeout=5)
        self.assertEqual(len(session.log), 3)

    async def test_close_cancels_background_jobs(self):
        release = threading.Event()

        class BlockingOptimizer:
            def optimize(self, history, tune, profile):
                release.wait(5)
                return {"ignition_offset": -3.0}

        settings = {
            'session': {'profile': 'motec-m1', 'tick_seconds': 0.01, 'optimizer_interval_seconds': 0.01},
            'hardware': {'simulation_mode': True},
        }
        session = make_session(settings=settings)
        session.optimizer = BlockingOptimizer()

        try:
            await session.run(duration=0.05)
            self.assertTrue(session.optimizing)

            await session.close()

            self.assertFalse(session.optimizing)
            self.assertEqual(session._background, set())
        finally:
            release.set()

        # The worker finishing late must not touch the closed session
        await asyncio.sleep(0.05)
        self.assertEqual(session.tune.ignition_offset, INITIAL_TUNE.ignition_offset)
        self.assertFalse(any("OPTIMIZER" in text for _, text in session.link.tx_history))


class TestSettings(unittest.TestCase):

    def test_merge_keeps_defaults(self):
        merged = merge_settings({'session': {'profile': 'hellcat'}})

        self.assertEqual(merged['session']['profile'], 'hellcat')
        self.assertEqual(merged['session']['tick_seconds'], DEFAULT_SETTINGS['session']['tick_seconds'])
        self.assertEqual(DEFAULT_SETTINGS['session']['profile'], 'motec-m1')

    def test_missing_file_means_defaults(self):
        logging.disable(logging.CRITICAL)
        self.assertEqual(load_settings("/nonexistent/settings.yaml"), merge_settings(None))

    def test_yaml_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "settings.yaml")
            with open(path, 'w') as f:
                f.write("session:\n  chip_type: RACE\nsimulator:\n  accel_per_tick: 2.2\n")

            settings = load_settings(path)

        self.assertEqual(settings['session']['chip_type'], 'RACE')
        self.assertEqual(settings['simulator'], {'accel_per_tick': 2.2})
        self.assertFalse(settings['advisor']['enabled'])

    def test_shipped_settings_file_loads(self):
        settings = load_settings()
        self.assertEqual(settings['session']['profile'], 'motec-m1')
        self.assertEqual(settings['signal']['psi_max'], 29.0)


if __name__ == '__main__':
    unittest.main()
