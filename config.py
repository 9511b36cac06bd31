"""
config.py — Voice Builder · Runtime Configuration
==================================================
Pydantic models for every tunable parameter across the service.
Serialises to / deserialises from JSON.  Used by:
  • server.py  : GET/PUT /config endpoints, builds each relay from the active config
  • relay.py   : phrase tables, codegen and session settings per connection
  • agent.py   : upstream agent handshake (audio format, models, prompt, greeting)

The phrase and pattern tables live here as data so they can be tuned without
touching control flow.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

log = logging.getLogger("voice_builder.config")

# ---------------------------------------------------------------------------
# Default agent prompt (kept here so config.py is the single source of truth)
# ---------------------------------------------------------------------------

DEFAULT_SYSTEM_PROMPT = """\
You are a sharp, friendly product partner helping someone shape an app idea.
Ask ONE probing question at a time. Challenge vague answers, push for what would
make the idea ten times better than what already exists, and never repeat a question.

After three or four exchanges, or as soon as the user sounds ready to build,
give a short spoken summary of the app (name, who it is for, the main problem,
two or three key features, style and tech stack) and ask whether it is ready.

IMMEDIATELY after the summary, in the SAME response, output the technical spec
exactly in this format. It is hidden from the user automatically:

```yaml
project_name: <name>
project_description: |
  <what the app does and why>
users:
  - <primary user type>
goal:
  - <main problem being solved>
features:
  - <core feature>
  - Landing page
  - Dashboard
  - Login/signup flow
tech_stack:
  frontend: Next.js
  backend: Node.js
ui_style: <style description>
```

All seven fields are required and the block must end with the closing fence.
If the user wants changes, revise and send the full block again.
If they approve, reply briefly, for example "Perfect! Let's build it!", and stop.
"""

DEFAULT_GREETING = (
    "Hey there! What problem are you trying to solve? "
    "I'm here to help you think it through and push it somewhere new."
)


# ---------------------------------------------------------------------------
# Per-component config sections
# ---------------------------------------------------------------------------

class AudioConfig(BaseModel):
    """Raw audio format negotiated with the upstream agent (client must match)."""
    input_encoding: str = Field(default="linear16", description="Mic audio encoding")
    input_sample_rate: int = Field(default=24000, ge=8000, le=48000, description="Mic sample rate (Hz)")
    output_encoding: str = Field(default="linear16", description="Agent speech encoding")
    output_sample_rate: int = Field(default=24000, ge=8000, le=48000, description="Agent speech sample rate (Hz)")
    output_container: str = Field(default="none", description="Container for agent speech frames")


class AgentConfig(BaseModel):
    """Upstream conversational agent parameters (sent in the Settings handshake)."""
    url: str = Field(default="wss://agent.deepgram.com/v1/agent/converse", description="Agent WebSocket URL")
    listen_model: str = Field(default="nova-3", description="Speech-to-text model")
    think_provider: str = Field(default="open_ai", description="LLM provider type")
    think_model: str = Field(default="gpt-4o-mini", description="LLM model ID")
    think_endpoint: Optional[str] = Field(default=None, description="Custom LLM endpoint URL (BYO provider)")
    speak_model: str = Field(default="aura-2-arcas-en", description="Text-to-speech voice model")
    system_prompt: str = Field(default=DEFAULT_SYSTEM_PROMPT, description="Instruction for the agent")
    greeting: str = Field(default=DEFAULT_GREETING, description="First thing the agent says")
    connect_timeout_sec: float = Field(default=10.0, gt=0.0, le=60.0, description="Handshake timeout")
    keepalive_sec: float = Field(default=5.0, gt=0.0, le=60.0, description="KeepAlive message interval")


def _default_required_fields() -> dict[str, list[str]]:
    # Longer spellings first: the key scanner tries alternatives in order.
    return {
        "name": ["project_name", "name"],
        "description": ["project_description", "description"],
        "users": ["users"],
        "goal": ["goals", "goal"],
        "features": ["features"],
        "tech_stack": ["tech_stack"],
        "ui_style": ["ui_style", "style"],
    }


class ExtractionConfig(BaseModel):
    """Pattern and phrase tables for spec block detection and extraction."""
    block_patterns: list[str] = Field(
        default_factory=lambda: [
            r"```yaml\n(.*?)\n```",   # tagged fence, newline before close
            r"```yaml(.*?)```",       # tagged fence, no newlines
            r"```\n(.*?)\n```",       # generic fence
            r"yaml\n(.*)\Z",          # tag without a closing fence
        ],
        description="Structural patterns in priority order (DOTALL, group 1 = body)",
    )
    required_fields: dict[str, list[str]] = Field(
        default_factory=_default_required_fields,
        description="Canonical field → accepted key spellings",
    )
    open_markers: list[str] = Field(default_factory=lambda: ["```yaml"], description="Block-open markers")
    close_marker: str = Field(default="```", description="Block-close marker")
    moving_on_phrases: list[str] = Field(
        default_factory=lambda: [
            "would you like to edit",
            "is it ready",
            "starting code generation",
            "great!",
            "perfect!",
            "let me know",
            "you're welcome",
            "if you're ready",
        ],
        description="Agent phrases that force an open block to complete",
    )
    closing_phrases: list[str] = Field(
        default_factory=lambda: ["How does that"],
        description="Phrases ending an unfenced spec during the fallback scan",
    )


class ApprovalConfig(BaseModel):
    """Phrases that count as the user accepting the spec."""
    phrases: list[str] = Field(
        default_factory=lambda: [
            "looks good",
            "that looks good",
            "yes",
            "perfect",
            "great",
            "awesome",
            "i like that",
            "that works",
            "let's build",
            "let's go",
            "ready",
            "is ready",
            "it's ready",
            "the prompt is ready",
            "prompt is ready",
            "approved",
            "correct",
            "that's right",
            "sounds good",
            "good to go",
            "let's do it",
            "let's start",
            "move on",
            "next step",
            "continue",
            "proceed",
        ],
    )
    corrective_message: str = Field(
        default="Please generate the complete spec first before proceeding to build.",
        description="Sent to the client when approval arrives with no confirmed spec",
    )


class CodegenConfig(BaseModel):
    """Groq code generation backend parameters."""
    model: str = Field(default="llama-3.3-70b-versatile", description="Groq model ID")
    max_tokens: int = Field(default=8000, ge=1, description="Max completion tokens")
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0, description="Randomness (0.0–2.0)")
    output_dir: str = Field(default="generated", description="Root for per-session artifact trees")
    timeout_sec: float = Field(default=600.0, gt=0.0, description="Upper bound for one generation")
    preview_base_url: str = Field(default="/preview", description="URL prefix the output dir is served under")


class SessionConfig(BaseModel):
    """Generation session lifecycle tuning."""
    stale_after_sec: float = Field(default=1800.0, gt=0.0, description="Evict non-ready sessions older than this")
    sweep_interval_sec: float = Field(default=300.0, gt=0.0, description="Delay between staleness sweeps")


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------

class EngineConfig(BaseModel):
    """Complete runtime configuration for the voice builder."""
    audio: AudioConfig = Field(default_factory=AudioConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    approval: ApprovalConfig = Field(default_factory=ApprovalConfig)
    codegen: CodegenConfig = Field(default_factory=CodegenConfig)
    sessions: SessionConfig = Field(default_factory=SessionConfig)

    # -- Persistence -----------------------------------------------------------

    @classmethod
    def load(cls, path: str | Path) -> "EngineConfig":
        """Load config from a JSON file.  Returns defaults if file doesn't exist."""
        p = Path(path)
        if not p.exists():
            log.info("event=config_load_defaults path=%s", p)
            return cls()
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
            config = cls.model_validate(data)
            log.info("event=config_loaded path=%s", p)
            return config
        except Exception as exc:
            log.warning("event=config_load_error path=%s error=%s using_defaults=true", p, exc)
            return cls()

    def save(self, path: str | Path) -> None:
        """Persist config to a JSON file (pretty-printed)."""
        p = Path(path)
        p.write_text(
            self.model_dump_json(indent=2, exclude_none=True),
            encoding="utf-8",
        )
        log.info("event=config_saved path=%s", p)

    def merge_patch(self, patch: dict) -> "EngineConfig":
        """Return a new config with `patch` merged over `self`.

        Supports nested partial updates, e.g.:
            {"codegen": {"temperature": 0.2}}
        only changes codegen.temperature, leaving everything else intact.
        """
        base = self.model_dump()
        _deep_merge(base, patch)
        return EngineConfig.model_validate(base)


def _deep_merge(base: dict, patch: dict) -> None:
    """Recursively merge `patch` into `base` in-place."""
    for key, value in patch.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
