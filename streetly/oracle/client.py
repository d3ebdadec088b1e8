"""
Compatibility Oracle — LLM-backed scorer for a pair of profiles.

The oracle is a pure request/response collaborator: it receives two profiles
and returns free-form text that embeds one JSON object. Parsing that text into
a MatchDecision is done here, not by the oracle.
"""

import json
import logging
from typing import Optional, Protocol

import httpx
from pydantic import ValidationError

from streetly.errors import OracleFailure
from streetly.models.match import MatchDecision
from streetly.models.profile import UserProfile
from streetly.settings import Settings

logger = logging.getLogger(__name__)


class CompatibilityOracle(Protocol):
    """Protocol for compatibility scoring — pluggable backend."""

    async def score(self, profile_a: UserProfile, profile_b: UserProfile) -> str: ...


def build_matching_prompt(profile_a: UserProfile, profile_b: UserProfile) -> str:
    """Prompt asking for a JSON decision about two profiles."""
    shared = sorted(profile_a.interests & profile_b.interests)

    def describe(label: str, profile: UserProfile) -> str:
        interests = ", ".join(sorted(profile.interests)) or "None listed"
        age = profile.age if profile.age is not None else "unknown"
        return (
            f"{label} ({profile.name}):\n"
            f"- Age: {age}\n"
            f"- Bio: \"{profile.bio}\"\n"
            f"- Interests: {interests}"
        )

    return (
        "Two people using a social discovery app are standing near each other. "
        "Decide whether they should be introduced. Lean towards introducing "
        "people who share or complement each other's interests.\n\n"
        f"{describe('USER 1', profile_a)}\n\n"
        f"{describe('USER 2', profile_b)}\n\n"
        f"SHARED INTERESTS: {', '.join(shared) if shared else 'None'}\n\n"
        "Consider exact and related interests, age compatibility, and "
        "personality cues from the bios.\n\n"
        "Reply with exactly one JSON object:\n"
        "{\n"
        '  "isMatch": true or false,\n'
        '  "compatibilityScore": number between 0.0 and 1.0,\n'
        '  "reasoning": "one or two sentences naming the specific connection",\n'
        '  "commonInterests": ["interest", ...]\n'
        "}\n"
    )


def parse_decision(response: str) -> MatchDecision:
    """
    Parse the substring between the first '{' and the last '}' as the decision.
    Missing fields take their defaults; no brace pair is a hard failure.
    """
    start = response.find("{")
    end = response.rfind("}")
    if start == -1 or end == -1 or end < start:
        raise OracleFailure("No JSON object found in oracle response")

    try:
        data = json.loads(response[start:end + 1])
    except json.JSONDecodeError as e:
        raise OracleFailure(f"Malformed JSON in oracle response: {e}") from e

    if not isinstance(data, dict):
        raise OracleFailure("Oracle response JSON is not an object")

    # null counts as missing
    data = {k: v for k, v in data.items() if v is not None}
    try:
        return MatchDecision.model_validate(data)
    except ValidationError as e:
        raise OracleFailure(f"Invalid decision payload: {e.error_count()} error(s)") from e


class GeminiOracle:
    """
    Oracle backed by the Generative Language REST API.
    Uses one shared httpx.AsyncClient; pass `client` to inject a transport.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or Settings()
        self._client = client or httpx.AsyncClient(
            base_url=self.settings.oracle_base_url,
            timeout=self.settings.oracle_timeout_seconds,
        )

    @property
    def endpoint(self) -> str:
        return f"/v1beta/models/{self.settings.oracle_model}:generateContent"

    def _payload(self, prompt: str) -> dict:
        return {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": self.settings.oracle_temperature,
                "topK": 1,
                "topP": 1,
                "maxOutputTokens": self.settings.oracle_max_output_tokens,
            },
        }

    async def score(self, profile_a: UserProfile, profile_b: UserProfile) -> str:
        api_key = self.settings.gemini_api_key
        if not api_key:
            raise OracleFailure("GEMINI_API_KEY is not configured")

        prompt = build_matching_prompt(profile_a, profile_b)
        try:
            response = await self._client.post(
                self.endpoint,
                params={"key": api_key},
                json=self._payload(prompt),
            )
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as e:
            raise OracleFailure(f"Oracle request failed: {e}") from e
        except ValueError as e:
            raise OracleFailure(f"Oracle returned non-JSON body: {e}") from e

        try:
            text = body["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError) as e:
            raise OracleFailure("Oracle response carried no candidate text") from e

        logger.debug("Oracle replied for %s/%s", profile_a.user_id, profile_b.user_id)
        return text

    async def aclose(self) -> None:
        await self._client.aclose()
