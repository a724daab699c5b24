# tests/operators/conftest.py
"""
Shared fixtures for operator tests.

Provides scripted fake model clients that record prompts and track how
many calls are in flight at once.
"""

import asyncio
import json
import sys
from pathlib import Path

import pytest

# Add source to path for testing
sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))


class ScriptedClient:
    """
    Fake model client.

    ``script`` maps an input's text to a list of responses returned on
    successive calls; an Exception instance in the list is raised instead.
    Inputs without a script echo ``{"label": <text>}``.
    """

    def __init__(self, script=None, delay=0.01):
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.delay = delay
        self.prompts = []
        self.schemas = []
        self.in_flight = 0
        self.peak = 0

    async def call(self, prompt, schema=None):
        self.prompts.append(prompt)
        self.schemas.append(schema)
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            text = json.loads(prompt.split("ITEM:", 1)[1])["text"]
            queue = self.script.get(text)
            response = queue.pop(0) if queue else json.dumps({"label": text})
            if isinstance(response, Exception):
                raise response
            return response
        finally:
            self.in_flight -= 1


@pytest.fixture
def scripted_client():
    return ScriptedClient


@pytest.fixture
def items():
    """Ten inputs whose prompt payload carries a ``text`` field."""
    return [{"text": f"item-{i}"} for i in range(10)]
