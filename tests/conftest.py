"""
Shared fixtures for the voice builder tests.

All tests are offline: the agent socket, client socket and Groq client are
replaced with small in-memory fakes inside each test module.
"""

import pytest

from config import EngineConfig
from extraction import SpecExtractor, Specification

SPEC_BODY = (
    "name: A\n"
    "description: d\n"
    "users: [x]\n"
    "goal: [g]\n"
    "features: [f]\n"
    "tech_stack:\n"
    "  frontend: y\n"
    "ui_style: s"
)

SPEC_TEXT = "Here is the plan. ```yaml\n" + SPEC_BODY + "\n```"


@pytest.fixture
def spec_body():
    return SPEC_BODY


@pytest.fixture
def spec_text():
    return SPEC_TEXT


@pytest.fixture
def engine_config():
    return EngineConfig()


@pytest.fixture
def extractor(engine_config):
    return SpecExtractor(engine_config.extraction)


@pytest.fixture
def specification(extractor):
    spec = extractor.extract(SPEC_TEXT)
    assert spec is not None
    return spec


@pytest.fixture
def make_specification():
    """Build a Specification from explicit field values (bypasses extraction)."""
    def _make(**overrides):
        fields = {
            "name": "A",
            "description": "d",
            "users": "[x]",
            "goal": "[g]",
            "features": "[f]",
            "tech_stack": "frontend: y",
            "ui_style": "s",
        }
        for key, value in overrides.items():
            if value is None:
                fields.pop(key, None)
            else:
                fields[key] = value
        return Specification(text="\n".join(f"{k}: {v}" for k, v in fields.items()), fields=fields)
    return _make
