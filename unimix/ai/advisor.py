"""
MODULE: REMOTE_CALIBRATION_ADVISOR
BACKEND: GOOGLE GEMINI (generateContent REST)

DESCRIPTION:
    Optional second opinion on the tune from a hosted language model.

    The advisor receives the profile, the live tune and a short slice of
    recent telemetry, and may answer with new AFR / boost / ignition values,
    a reasoning string and a safe operating envelope used for live
    deviation warnings.

    The advisor is never trusted to exist. Network failures, timeouts and
    malformed answers all collapse into "no suggestion" at the dispatcher,
    with a notice for the UI. The tick loop never waits on it.

    DISPATCH POLICY:
    Last result wins. A new request cancels the one in flight, and a late
    answer from a superseded request is discarded.
"""

import asyncio
import json
import logging
import os
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from unimix.ai.exceptions import AdvisorError, AdvisorResponseError, AdvisorUnavailableError
from unimix.core.models import Telemetry, TuneSettings, VehicleProfile

logger = logging.getLogger("UNIMIX.AI.ADVISOR")

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_MODEL = "gemini-2.5-pro"
DEFAULT_TIMEOUT = 30.0

Band = Tuple[float, float]


class SafeEnvelope(BaseModel):
    """Min/max bounds the advisor considers safe for this car."""

    model_config = ConfigDict(frozen=True)

    boost: Optional[Band] = None
    afr: Optional[Band] = None
    ignition: Optional[Band] = None


class AdvisorSuggestion(BaseModel):
    """A calibration suggestion. Every tune field is optional."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    afr_target: Optional[float] = Field(default=None, alias="afrTarget")
    boost_limit: Optional[float] = Field(default=None, alias="boostLimit")
    ignition_offset: Optional[float] = Field(default=None, alias="ignitionOffset")
    reasoning: str = ""
    safe_envelope: Optional[SafeEnvelope] = Field(default=None, alias="safeEnvelope")

    def as_adjustment(self, profile: VehicleProfile) -> Dict[str, float]:
        """Partial tune update. Suggested boost never exceeds the profile max."""
        adjustment: Dict[str, float] = {}
        if self.afr_target is not None:
            adjustment["afr_target"] = self.afr_target
        if self.boost_limit is not None:
            boost = self.boost_limit
            if profile.max_boost > 0:
                boost = min(boost, profile.max_boost)
            adjustment["boost_limit"] = boost
        if self.ignition_offset is not None:
            adjustment["ignition_offset"] = self.ignition_offset
        return adjustment


class RemoteAdvisor:
    """Contract for advisory backends."""

    async def suggest(self, profile: VehicleProfile, current_tune: TuneSettings,
                      recent_history: Sequence[Telemetry]) -> Optional[AdvisorSuggestion]:
        raise NotImplementedError

    async def close(self):
        pass


_BAND_SCHEMA = {"type": "ARRAY", "items": {"type": "NUMBER"}, "minItems": 2, "maxItems": 2}

RESPONSE_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "afrTarget": {"type": "NUMBER", "description": "New optimized target AFR"},
        "boostLimit": {"type": "NUMBER", "description": "New optimized safe boost limit (PSI)"},
        "ignitionOffset": {"type": "NUMBER", "description": "New timing advance/retard (deg)"},
        "reasoning": {"type": "STRING", "description": "Calibration reasoning"},
        "safeEnvelope": {
            "type": "OBJECT",
            "properties": {"boost": _BAND_SCHEMA, "afr": _BAND_SCHEMA, "ignition": _BAND_SCHEMA},
        },
    },
    "required": ["reasoning"],
}

SYSTEM_INSTRUCTION = (
    "You are the UniMix calibration advisor. Analyze piggyback telemetry and "
    "suggest tune parameters for maximum safe power. "
    "1. Knock above 2.0V: retard timing and enrich AFR. "
    "2. Target roughly 11.8 AFR at wide open throttle. "
    "3. Never suggest boost above the profile maximum. "
    "4. Return a safe envelope (min/max) for boost, AFR and ignition."
)


class GeminiAdvisor(RemoteAdvisor):
    """Async Gemini client over httpx."""

    def __init__(self, api_key: str, model: str = DEFAULT_MODEL,
                 timeout: float = DEFAULT_TIMEOUT, history_window: int = 20,
                 base_url: str = GEMINI_BASE_URL):
        self.model = model
        self.history_window = int(history_window)
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={"x-goog-api-key": api_key, "Accept": "application/json"},
        )

    def build_request(self, profile: VehicleProfile, current_tune: TuneSettings,
                      recent_history: Sequence[Telemetry]) -> Dict[str, Any]:
        logs = [t.to_dict() for t in list(recent_history)[-self.history_window:]]
        prompt = (
            f"Vehicle: {profile.name} ({profile.engine}), induction {profile.induction}, "
            f"max boost {profile.max_boost} PSI, safe AFR {profile.safe_afr}\n"
            f"Fuel: {profile.fuel_type}\n"
            f"Current Settings: {json.dumps(current_tune.to_dict())}\n"
            f"Logs (Historical Driving Data): {json.dumps(logs)}\n"
            "Output the optimized parameters in JSON."
        )
        return {
            "systemInstruction": {"parts": [{"text": SYSTEM_INSTRUCTION}]},
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "responseMimeType": "application/json",
                "responseSchema": RESPONSE_SCHEMA,
            },
        }

    async def suggest(self, profile: VehicleProfile, current_tune: TuneSettings,
                      recent_history: Sequence[Telemetry]) -> Optional[AdvisorSuggestion]:
        payload = self.build_request(profile, current_tune, recent_history)
        try:
            response = await self._client.post(f"/models/{self.model}:generateContent", json=payload)
        except httpx.TimeoutException as exc:
            raise AdvisorUnavailableError(f"Timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise AdvisorUnavailableError(str(exc)) from exc

        if response.status_code >= 400:
            raise AdvisorUnavailableError(response.text, status_code=response.status_code)

        return self._parse(response)

    @staticmethod
    def _parse(response: httpx.Response) -> Optional[AdvisorSuggestion]:
        try:
            body = response.json()
            text = body["candidates"][0]["content"]["parts"][0]["text"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise AdvisorResponseError(f"Unexpected response shape: {exc}") from exc

        if not text or not text.strip():
            return None

        try:
            return AdvisorSuggestion.model_validate_json(text)
        except ValidationError as exc:
            raise AdvisorResponseError(f"Invalid suggestion payload: {exc}") from exc

    async def close(self):
        await self._client.aclose()


def build_advisor(config: Dict[str, Any]) -> Optional[RemoteAdvisor]:
    """GeminiAdvisor from the `advisor` settings section, or None if disabled."""
    if not config.get('enabled', False):
        return None

    api_key = os.environ.get(config.get('api_key_env', 'GEMINI_API_KEY'), '')
    if not api_key:
        logger.warning("Advisor enabled but no API key in environment. Running without it.")
        return None

    return GeminiAdvisor(
        api_key=api_key,
        model=config.get('model', DEFAULT_MODEL),
        timeout=float(config.get('timeout', DEFAULT_TIMEOUT)),
        history_window=int(config.get('history_window', 20)),
    )


def check_envelope(telemetry: Telemetry, tune: TuneSettings,
                   envelope: Optional[SafeEnvelope]) -> List[str]:
    """Live deviation warnings against the advisor's safe envelope."""
    if envelope is None:
        return []

    warnings = []
    checks = (
        ("BOOST", telemetry.boost, envelope.boost, "PSI"),
        ("AFR", telemetry.afr, envelope.afr, ""),
        ("IGNITION", tune.ignition_offset, envelope.ignition, "DEG"),
    )
    for label, value, band, unit in checks:
        if band is None:
            continue
        low, high = min(band), max(band)
        if not low <= value <= high:
            warnings.append(f"{label} {value:.1f}{unit} OUTSIDE SAFE ENVELOPE [{low:.1f}, {high:.1f}]")
    return warnings


class AdvisoryDispatcher:
    """
    Runs advisor calls in the background with last-result-wins semantics.
    """

    def __init__(self, advisor: RemoteAdvisor,
                 on_suggestion: Optional[Callable[[AdvisorSuggestion], None]] = None):
        self.advisor = advisor
        self.on_suggestion = on_suggestion
        self.latest: Optional[AdvisorSuggestion] = None
        self.notice: Optional[str] = None
        self._task: Optional[asyncio.Task] = None
        self._generation = 0

    @property
    def in_flight(self) -> bool:
        return self._task is not None and not self._task.done()

    def request(self, profile: VehicleProfile, current_tune: TuneSettings,
                recent_history: Sequence[Telemetry]) -> "asyncio.Task":
        """Must be called from inside the running event loop."""
        if self.in_flight:
            logger.debug("Superseding in-flight advisor request")
            self._task.cancel()

        self._generation += 1
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(
            self._consult(self._generation, profile, current_tune, list(recent_history))
        )
        return self._task

    async def _consult(self, generation: int, profile: VehicleProfile,
                       current_tune: TuneSettings,
                       history: List[Telemetry]) -> Optional[AdvisorSuggestion]:
        try:
            suggestion = await self.advisor.suggest(profile, current_tune, history)
        except AdvisorError as e:
            logger.warning(f"Advisor unavailable: {e}")
            if generation == self._generation:
                self.notice = "AI advisor unavailable. Tune unchanged."
            return None
        except Exception as e:
            # Third-party backends may fail outside the AdvisorError hierarchy
            logger.warning(f"Advisor failed unexpectedly: {e!r}")
            if generation == self._generation:
                self.notice = "AI advisor unavailable. Tune unchanged."
            return None

        if generation != self._generation:
            logger.debug("Discarding superseded advisor result")
            return None

        if suggestion is None:
            self.notice = "AI advisor had no suggestion. Tune unchanged."
            return None

        self.notice = None
        self.latest = suggestion
        if self.on_suggestion:
            self.on_suggestion(suggestion)
        return suggestion

    async def close(self):
        if self.in_flight:
            self._task.cancel()
        await self.advisor.close()
