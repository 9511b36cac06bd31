"""
agent.py — Voice Builder · Upstream Conversational Agent Client
================================================================
Thin client for the voice agent WebSocket (Deepgram Agent API, V1 Settings).

Protocol
--------
  1. connect with ``Authorization: Token <DEEPGRAM_API_KEY>``
  2. send one ``Settings`` message (audio format, listen/think/speak, prompt, greeting)
  3. then, interleaved:
       • binary frames  → raw agent speech (linear16)
       • text frames    → JSON events: Welcome, SettingsApplied,
                          ConversationText{role, content}, Error, ...
  4. raw mic audio is sent as binary frames with no envelope
  5. ``{"type": "KeepAlive"}`` every ``keepalive_sec`` while the socket is open
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Optional, Union

import websockets
from pydantic import BaseModel, ConfigDict, ValidationError
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from config import AgentConfig, AudioConfig

log = logging.getLogger("voice_builder.agent")


class AgentMessage(BaseModel):
    """One JSON event from the agent.  Unknown fields are kept as extras."""
    model_config = ConfigDict(extra="allow")

    type: str
    role: Optional[str] = None
    content: Optional[str] = None
    description: Optional[str] = None


AgentEvent = Union[AgentMessage, bytes]


def build_settings(
    agent: AgentConfig,
    audio: AudioConfig,
    think_api_key: Optional[str] = None,
) -> dict[str, Any]:
    """The ``Settings`` handshake payload."""
    think: dict[str, Any] = {
        "provider": {"type": agent.think_provider, "model": agent.think_model},
        "prompt": agent.system_prompt,
    }
    if agent.think_endpoint:
        endpoint: dict[str, Any] = {"url": agent.think_endpoint}
        if think_api_key:
            endpoint["headers"] = {"authorization": f"Bearer {think_api_key}"}
        think["endpoint"] = endpoint

    return {
        "type": "Settings",
        "audio": {
            "input": {
                "encoding": audio.input_encoding,
                "sample_rate": audio.input_sample_rate,
            },
            "output": {
                "encoding": audio.output_encoding,
                "sample_rate": audio.output_sample_rate,
                "container": audio.output_container,
            },
        },
        "agent": {
            "listen": {"provider": {"type": "deepgram", "model": agent.listen_model}},
            "think": think,
            "speak": {"provider": {"type": "deepgram", "model": agent.speak_model}},
            "greeting": agent.greeting,
        },
    }


class AgentConnection:
    """One upstream agent socket for one conversation."""

    def __init__(
        self,
        config: AgentConfig,
        audio: AudioConfig,
        api_key: str,
        think_api_key: Optional[str] = None,
    ) -> None:
        self._config = config
        self._audio = audio
        self._api_key = api_key
        self._think_api_key = think_api_key
        self._ws = None
        self._keepalive_task: Optional[asyncio.Task] = None

    @property
    def is_open(self) -> bool:
        return self._ws is not None and self._ws.state is State.OPEN

    def settings_message(self) -> dict[str, Any]:
        return build_settings(self._config, self._audio, self._think_api_key)

    async def connect(self) -> None:
        headers = {"Authorization": f"Token {self._api_key}"}
        log.info("event=agent_connecting url=%s", self._config.url)
        self._ws = await websockets.connect(
            self._config.url,
            additional_headers=headers,
            open_timeout=self._config.connect_timeout_sec,
            max_size=None,
        )
        await self._ws.send(json.dumps(self.settings_message()))
        log.info(
            "event=agent_connected think_model=%s speak_model=%s",
            self._config.think_model, self._config.speak_model,
        )
        self._keepalive_task = asyncio.create_task(self._keepalive(), name="agent_keepalive")

    async def send_audio(self, frame: bytes) -> bool:
        """Forward one raw audio frame.  Dropped if the socket is not open."""
        if not self.is_open:
            return False
        try:
            await self._ws.send(frame)
            return True
        except ConnectionClosed:
            log.debug("event=agent_audio_dropped reason=closed")
            return False

    async def events(self) -> AsyncIterator[AgentEvent]:
        """Yield agent events until the socket closes."""
        if self._ws is None:
            return
        try:
            async for message in self._ws:
                if isinstance(message, bytes):
                    yield message
                    continue
                try:
                    yield AgentMessage.model_validate(json.loads(message))
                except (json.JSONDecodeError, ValidationError) as exc:
                    log.warning("event=agent_bad_message error=%s raw=%.120r", exc, message)
        except ConnectionClosed as exc:
            log.info("event=agent_closed code=%s reason=%s", exc.rcvd.code if exc.rcvd else None, exc.rcvd.reason if exc.rcvd else "")

    async def _keepalive(self) -> None:
        payload = json.dumps({"type": "KeepAlive"})
        try:
            while True:
                await asyncio.sleep(self._config.keepalive_sec)
                if not self.is_open:
                    return
                await self._ws.send(payload)
                log.debug("event=agent_keepalive")
        except ConnectionClosed:
            return

    async def close(self) -> None:
        if self._keepalive_task is not None:
            self._keepalive_task.cancel()
            self._keepalive_task = None
        if self._ws is not None and self._ws.state is not State.CLOSED:
            await self._ws.close()
            log.info("event=agent_disconnected")
