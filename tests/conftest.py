"""
Shared test setup: puts ``src`` on the import path and provides scripted
collaborators so pipeline tests never call a model or sleep.
"""

import sys
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
from langchain_core.messages import AIMessage, HumanMessage

# 添加 src 目录到 PYTHONPATH
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from langchain_lore.memory.scheduler import AsyncioScheduler  # noqa: E402


class ScriptedProvider:
    """Completion provider that replays canned responses; exceptions are raised."""

    def __init__(self, responses=(), fallback_responses=()):
        self.responses = list(responses)
        self.fallback_responses = list(fallback_responses)
        self.prompts: list[str] = []
        self.fallback_prompts: list[str] = []

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        return self._next(self.responses)

    async def generate_fallback(self, prompt: str) -> str:
        self.fallback_prompts.append(prompt)
        return self._next(self.fallback_responses)

    @staticmethod
    def _next(queue: list):
        if not queue:
            raise RuntimeError("no scripted response left")
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def build_turns(*texts: str, first_is_user: bool = True) -> list:
    """Alternate human/AI messages, starting with a human turn by default."""
    turns = []
    for i, text in enumerate(texts):
        is_user = (i % 2 == 0) == first_is_user
        turns.append(HumanMessage(content=text) if is_user else AIMessage(content=text))
    return turns


@pytest.fixture
def scripted_provider():
    return ScriptedProvider


@pytest.fixture
def make_turns():
    return build_turns


@pytest.fixture
def fake_sleep():
    return AsyncMock()


@pytest.fixture
def scheduler(fake_sleep):
    return AsyncioScheduler(sleep=fake_sleep)
