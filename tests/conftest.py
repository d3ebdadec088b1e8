"""Shared fixtures: a scripted compatibility oracle and fresh stores."""

import asyncio
import json
from typing import List, Optional, Tuple

import pytest

from streetly.models.profile import UserProfile
from streetly.store.memory import InMemoryStore


def _decision_text(is_match: bool = True, score: float = 0.8, reasoning: str = "Both hike") -> str:
    payload = {
        "isMatch": is_match,
        "compatibilityScore": score,
        "reasoning": reasoning,
        "commonInterests": ["hiking"] if is_match else [],
    }
    return f"Here is my answer: {json.dumps(payload)}"


class FakeOracle:
    """Returns a canned reply; counts calls; can block on a gate or raise."""

    def __init__(self, response: Optional[str] = None):
        self.response = response if response is not None else _decision_text()
        self.error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None
        self.calls: List[Tuple[str, str]] = []

    async def score(self, profile_a: UserProfile, profile_b: UserProfile) -> str:
        self.calls.append((profile_a.user_id, profile_b.user_id))
        if self.gate is not None:
            await self.gate.wait()
        else:
            await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return self.response


@pytest.fixture
def oracle():
    return FakeOracle()


@pytest.fixture
def store():
    return InMemoryStore()
