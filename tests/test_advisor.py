"""
UNIT TEST: REMOTE ADVISOR + HARDWARE LINK

DESCRIPTION:
    The Gemini client is driven through respx-mocked routes, never the
    network. The dispatcher is checked for last-result-wins behaviour and
    for swallowing advisor outages. The OBD link is checked against mocked
    python-OBD connections.
"""

import asyncio
import json
import os
import sys
import unittest
import logging
from unittest import mock

import httpx
import respx

# Add project root to path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from unimix.ai.advisor import (
    GEMINI_BASE_URL,
    AdvisorSuggestion,
    AdvisoryDispatcher,
    GeminiAdvisor,
    RemoteAdvisor,
    SafeEnvelope,
    build_advisor,
    check_envelope,
)
from unimix.ai.exceptions import AdvisorResponseError, AdvisorUnavailableError
from unimix.core.models import Telemetry, TuneSettings
from unimix.core.profiles import get_profile
from unimix.hardware.link import (
    LINK_SIMULATED,
    STATUS_DISCONNECTED,
    STATUS_OK,
    ObdLink,
    SimulatedLink,
    connect_link,
)

SUGGESTION = {
    "afrTarget": 11.8,
    "boostLimit": 50.0,
    "ignitionOffset": -2.0,
    "reasoning": "Charge temps are healthy, knock is clean.",
    "safeEnvelope": {"boost": [0, 20], "afr": [11.0, 13.0], "ignition": [-5, 5]},
}

ENDPOINT = f"{GEMINI_BASE_URL}/models/gemini-test:generateContent"


def gemini_body(text):
    return {"candidates": [{"content": {"role": "model", "parts": [{"text": text}]}}]}


class ScriptedAdvisor(RemoteAdvisor):
    """Replies with (delay, reply) pairs in call order."""

    def __init__(self, replies):
        self.replies = list(replies)
        self.closed = False

    async def suggest(self, profile, current_tune, recent_history):
        delay, reply = self.replies.pop(0)
        await asyncio.sleep(delay)
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def close(self):
        self.closed = True


class TestGeminiAdvisor(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        logging.disable(logging.CRITICAL)
        self.profile = get_profile("motec-m1")
        self.history = [Telemetry.initial(float(i)) for i in range(30)]
        self.advisor = GeminiAdvisor(api_key="test-key", model="gemini-test", history_window=5)

    async def asyncTearDown(self):
        await self.advisor.close()

    @respx.mock
    async def test_suggestion_parsed(self):
        route = respx.post(ENDPOINT).mock(
            return_value=httpx.Response(200, json=gemini_body(json.dumps(SUGGESTION)))
        )

        suggestion = await self.advisor.suggest(self.profile, TuneSettings(), self.history)

        self.assertTrue(route.called)
        request = route.calls.last.request
        self.assertEqual(request.headers["x-goog-api-key"], "test-key")
        body = json.loads(request.content)
        self.assertEqual(body['generationConfig']['responseMimeType'], "application/json")

        self.assertEqual(suggestion.afr_target, 11.8)
        self.assertEqual(suggestion.safe_envelope.boost, (0.0, 20.0))
        # Suggested boost above the profile ceiling is clamped on merge
        self.assertEqual(suggestion.as_adjustment(self.profile),
                         {"afr_target": 11.8, "boost_limit": 45.0, "ignition_offset": -2.0})

    def test_prompt_carries_only_recent_history(self):
        payload = self.advisor.build_request(self.profile, TuneSettings(), self.history)

        prompt = payload['contents'][0]['parts'][0]['text']
        logs = json.loads(prompt.split("Logs (Historical Driving Data): ")[1].split("\n")[0])
        self.assertEqual([f['timestamp'] for f in logs], [25.0, 26.0, 27.0, 28.0, 29.0])

    @respx.mock
    async def test_http_error_is_unavailable(self):
        respx.post(ENDPOINT).mock(return_value=httpx.Response(503, text="overloaded"))

        with self.assertRaises(AdvisorUnavailableError) as ctx:
            await self.advisor.suggest(self.profile, TuneSettings(), self.history)

        self.assertEqual(ctx.exception.status_code, 503)

    @respx.mock
    async def test_transport_failure_is_unavailable(self):
        respx.post(ENDPOINT).mock(side_effect=httpx.ConnectError("connection refused"))

        with self.assertRaises(AdvisorUnavailableError):
            await self.advisor.suggest(self.profile, TuneSettings(), self.history)

    @respx.mock
    async def test_timeout_is_unavailable(self):
        respx.post(ENDPOINT).mock(side_effect=httpx.ReadTimeout("slow model"))

        with self.assertRaises(AdvisorUnavailableError):
            await self.advisor.suggest(self.profile, TuneSettings(), self.history)

    @respx.mock
    async def test_malformed_answer(self):
        respx.post(ENDPOINT).mock(return_value=httpx.Response(200, json=gemini_body("not json")))

        with self.assertRaises(AdvisorResponseError):
            await self.advisor.suggest(self.profile, TuneSettings(), self.history)

    @respx.mock
    async def test_unexpected_shape(self):
        respx.post(ENDPOINT).mock(return_value=httpx.Response(200, json={"candidates": []}))

        with self.assertRaises(AdvisorResponseError):
            await self.advisor.suggest(self.profile, TuneSettings(), self.history)

    @respx.mock
    async def test_blank_answer_is_no_suggestion(self):
        respx.post(ENDPOINT).mock(return_value=httpx.Response(200, json=gemini_body("  ")))

        self.assertIsNone(await self.advisor.suggest(self.profile, TuneSettings(), self.history))

    def test_build_advisor_needs_key(self):
        self.assertIsNone(build_advisor({'enabled': False}))
        with mock.patch.dict(os.environ, {}, clear=True):
            self.assertIsNone(build_advisor({'enabled': True, 'api_key_env': 'UNIMIX_TEST_KEY'}))


class TestAdvisoryDispatcher(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        logging.disable(logging.CRITICAL)
        self.profile = get_profile("hellcat")
        self.tune = TuneSettings()
        self.history = [Telemetry.initial(0.0)]

    async def test_last_result_wins(self):
        applied = []
        advisor = ScriptedAdvisor([
            (0.2, AdvisorSuggestion(afr_target=12.0)),
            (0.01, AdvisorSuggestion(afr_target=11.5)),
        ])
        dispatcher = AdvisoryDispatcher(advisor, applied.append)

        stale = dispatcher.request(self.profile, self.tune, self.history)
        await asyncio.sleep(0.01)
        fresh = dispatcher.request(self.profile, self.tune, self.history)

        results = await asyncio.gather(stale, fresh, return_exceptions=True)

        self.assertIsInstance(results[0], asyncio.CancelledError)
        self.assertEqual(results[1].afr_target, 11.5)
        self.assertEqual([s.afr_target for s in applied], [11.5])
        self.assertEqual(dispatcher.latest.afr_target, 11.5)
        self.assertFalse(dispatcher.in_flight)

        await dispatcher.close()
        self.assertTrue(advisor.closed)

    async def test_outage_leaves_tune_alone(self):
        applied = []
        advisor = ScriptedAdvisor([(0.0, AdvisorUnavailableError("timeout"))])
        dispatcher = AdvisoryDispatcher(advisor, applied.append)

        result = await dispatcher.request(self.profile, self.tune, self.history)

        self.assertIsNone(result)
        self.assertEqual(applied, [])
        self.assertIsNone(dispatcher.latest)
        self.assertIn("unavailable", dispatcher.notice)

    async def test_no_suggestion_keeps_previous(self):
        advisor = ScriptedAdvisor([
            (0.0, AdvisorSuggestion(boost_limit=15.0)),
            (0.0, None),
        ])
        dispatcher = AdvisoryDispatcher(advisor)

        await dispatcher.request(self.profile, self.tune, self.history)
        await dispatcher.request(self.profile, self.tune, self.history)

        self.assertEqual(dispatcher.latest.boost_limit, 15.0)
        self.assertIsNotNone(dispatcher.notice)

    async def test_unexpected_backend_error_is_contained(self):
        applied = []
        advisor = ScriptedAdvisor([
            (0.0, RuntimeError("backend exploded")),
            (0.0, ConnectionResetError("socket dropped")),
        ])
        dispatcher = AdvisoryDispatcher(advisor, applied.append)

        for _ in range(2):
            task = dispatcher.request(self.profile, self.tune, self.history)
            self.assertIsNone(await task)
            self.assertIsNone(task.exception())

        self.assertEqual(applied, [])
        self.assertIsNone(dispatcher.latest)
        self.assertIn("unavailable", dispatcher.notice)


class TestSafeEnvelope(unittest.TestCase):

    def test_deviation_warnings(self):
        envelope = SafeEnvelope(boost=(0.0, 20.0), afr=(11.0, 13.0))
        telemetry = Telemetry.initial(0.0)

        warnings = check_envelope(telemetry, TuneSettings(), envelope)

        # Idle AFR 14.7 is outside the WOT band, boost 0 is inside
        self.assertEqual(len(warnings), 1)
        self.assertTrue(warnings[0].startswith("AFR 14.7"))

    def test_no_envelope(self):
        self.assertEqual(check_envelope(Telemetry.initial(0.0), TuneSettings(), None), [])

    def test_reversed_band(self):
        envelope = SafeEnvelope(ignition=(5.0, -5.0))
        self.assertEqual(check_envelope(Telemetry.initial(0.0), TuneSettings(), envelope), [])


class TestHardwareLink(unittest.TestCase):

    def setUp(self):
        logging.disable(logging.CRITICAL)

    def test_simulated_link(self):
        link = SimulatedLink(history_size=2)

        self.assertEqual(link.get_link_status(), LINK_SIMULATED)
        for text in ("A", "B", "C"):
            self.assertEqual(link.send_command(text), STATUS_OK)

        self.assertEqual([t for _, t in link.tx_history], ["B", "C"])

    def test_demo_fault_codes(self):
        link = SimulatedLink()
        codes = link.read_fault_codes()

        self.assertEqual([c for c, _ in codes], ["P0171", "P0300"])
        self.assertTrue(link.clear_fault_codes())
        self.assertEqual(link.read_fault_codes(), [])

    def test_simulation_mode_forced(self):
        with mock.patch("obd.OBD") as obd_open:
            link = connect_link({'simulation_mode': True})
        self.assertIsInstance(link, SimulatedLink)
        obd_open.assert_not_called()

    def test_missing_adapter_falls_back(self):
        dead = mock.MagicMock()
        dead.is_connected.return_value = False

        with mock.patch("obd.OBD", return_value=dead):
            link = connect_link({'simulation_mode': False, 'port': '/dev/ttyUSB9'})

        self.assertIsInstance(link, SimulatedLink)
        dead.close.assert_called_once()

    def test_obd_link_sends_forced_commands(self):
        connection = mock.MagicMock()
        connection.is_connected.return_value = True
        link = ObdLink(connection)

        self.assertEqual(link.send_command("RAM_WRITE USER: boost_limit=10.0"), STATUS_OK)
        command = connection.query.call_args[0][0]
        self.assertEqual(command.command, b"RAM_WRITE USER: boost_limit=10.0")
        self.assertTrue(connection.query.call_args[1]['force'])

        connection.is_connected.return_value = False
        self.assertEqual(link.send_command("04"), STATUS_DISCONNECTED)

    def test_obd_link_fault_codes(self):
        connection = mock.MagicMock()
        response = mock.MagicMock()
        response.is_null.return_value = False
        response.value = [("P0420", "Catalyst System Efficiency Below Threshold")]
        connection.query.return_value = response

        link = ObdLink(connection)

        self.assertEqual(link.read_fault_codes(), [("P0420", "Catalyst System Efficiency Below Threshold")])


if __name__ == '__main__':
    unittest.main()
