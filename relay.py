"""
relay.py — Voice Builder · Client ⇄ Agent Stream Relay
=======================================================
Moves data between the browser client and the upstream voice agent for one
conversation, and drives the phase machine from the agent's text events.

    client ──binary (mic)──────────────────────▶ agent
    client ◀─binary (speech)─────────────────── agent
    client ◀─text / phase_transition / codegen-*── relay ◀── ConversationText

Rules
-----
  • Binary frames are forwarded verbatim, only while the destination is open.
    Nothing is buffered or replayed.
  • Assistant text that looks like a spec block is withheld from the client;
    it only feeds the extraction pipeline.
  • Agent disconnect → close the client.  Client disconnect → close the agent
    and cancel any bound generation session.
  • ``RelayHub`` keeps at most one active client; a new one closes the old one.

Every client event carries ``sessionId`` and an ISO-8601 ``timestamp``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional, Union

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from agent import AgentConnection, AgentMessage
from approval import ApprovalDetector
from config import EngineConfig
from extraction import SpecExtractor, Specification
from phases import Phase, PhaseMachine, UserDecision
from sessions import GenerationOutcome, GenerationSession, GenerationSessionManager, SessionListener
from stream_buffer import StreamBuffer

log = logging.getLogger("voice_builder.relay")


# ---------------------------------------------------------------------------
# Client side
# ---------------------------------------------------------------------------

class ClientChannel:
    """The browser's WebSocket, with sends that never raise on a dead peer."""

    def __init__(self, ws: WebSocket) -> None:
        self._ws = ws
        self._closed = False

    @property
    def is_open(self) -> bool:
        return (
            not self._closed
            and self._ws.client_state == WebSocketState.CONNECTED
            and self._ws.application_state == WebSocketState.CONNECTED
        )

    async def send_event(self, type: str, session_id: Optional[str] = None, **data: Any) -> bool:
        if not self.is_open:
            return False
        event = {
            "type": type,
            **data,
            "sessionId": session_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        try:
            await self._ws.send_text(json.dumps(event))
            return True
        except (WebSocketDisconnect, RuntimeError) as exc:
            self._closed = True
            log.debug("event=client_send_failed type=%s error=%s", type, exc)
            return False

    async def send_bytes(self, frame: bytes) -> bool:
        if not self.is_open:
            return False
        try:
            await self._ws.send_bytes(frame)
            return True
        except (WebSocketDisconnect, RuntimeError) as exc:
            self._closed = True
            log.debug("event=client_audio_dropped error=%s", exc)
            return False

    async def receive(self) -> Optional[Union[bytes, str]]:
        """Next client frame, or None once the client has gone away."""
        if self._closed:
            return None
        try:
            message = await self._ws.receive()
        except (WebSocketDisconnect, RuntimeError):
            self._closed = True
            return None
        if message["type"] == "websocket.disconnect":
            self._closed = True
            return None
        if message.get("bytes") is not None:
            return message["bytes"]
        return message.get("text") or ""

    async def close(self, code: int = 1000) -> None:
        if self.is_open:
            try:
                await self._ws.close(code=code)
            except RuntimeError as exc:
                log.debug("event=client_close_failed error=%s", exc)
        self._closed = True


class ClientEventSink(SessionListener):
    """Reports generation session progress to the client as ``codegen-*`` events."""

    def __init__(self, client: ClientChannel) -> None:
        self._client = client

    async def on_start(self, session: GenerationSession) -> None:
        await self._client.send_event("codegen-start", session.session_id, spec=session.specification.text)

    async def on_validation_passed(self, session: GenerationSession) -> None:
        await self._client.send_event("codegen-validation-passed", session.session_id)

    async def on_log(self, session: GenerationSession, chunk: str) -> None:
        await self._client.send_event("codegen-log", session.session_id, chunk=chunk)

    async def on_file_tree(self, session: GenerationSession, tree: dict) -> None:
        await self._client.send_event("codegen-file-tree", session.session_id, tree=tree)

    async def on_preview_ready(self, session: GenerationSession, url: str) -> None:
        await self._client.send_event("codegen-preview-ready", session.session_id, url=url)

    async def on_complete(self, session: GenerationSession, duration_ms: int) -> None:
        await self._client.send_event(
            "codegen-complete",
            session.session_id,
            url=session.preview_endpoint,
            artifactPath=session.artifact_path,
            durationMs=duration_ms,
        )

    async def on_error(self, session: GenerationSession, error: str, duration_ms: int) -> None:
        await self._client.send_event("codegen-error", session.session_id, error=error, durationMs=duration_ms)

    async def on_cancelled(self, session: GenerationSession) -> None:
        await self._client.send_event("codegen-cancelled", session.session_id)


# ---------------------------------------------------------------------------
# Relay
# ---------------------------------------------------------------------------

def build_phase_machine(config: EngineConfig) -> PhaseMachine:
    extractor = SpecExtractor(config.extraction)
    return PhaseMachine(
        extractor=extractor,
        buffer=StreamBuffer(extractor, config.extraction),
        detector=ApprovalDetector.from_config(config.approval),
    )


class ConversationRelay:
    def __init__(
        self,
        client: ClientChannel,
        agent: AgentConnection,
        manager: GenerationSessionManager,
        config: EngineConfig,
        machine: Optional[PhaseMachine] = None,
    ) -> None:
        self._client = client
        self._agent = agent
        self._manager = manager
        self._config = config
        self._machine = machine or build_phase_machine(config)
        self._sink = ClientEventSink(client)
        self._generation: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def machine(self) -> PhaseMachine:
        return self._machine

    @property
    def generation_task(self) -> Optional[asyncio.Task]:
        return self._generation

    @property
    def session_id(self) -> Optional[str]:
        return self._machine.state.session_id

    # -----------------------------------------------------------------------
    # Main loop
    # -----------------------------------------------------------------------

    async def run(self) -> None:
        """Connect upstream, pump both directions until either side goes away."""
        try:
            await self._agent.connect()
        except Exception as exc:
            log.error("event=agent_connect_failed error=%s", exc)
            await self._client.send_event("error", None, error="Could not connect to the voice agent.")
            await self._client.close(code=1011)
            await self._agent.close()
            return
        if self._closed:
            # Replaced by a newer client while the handshake was in flight.
            log.info("event=relay_closed_during_connect")
            await self._agent.close()
            return

        pumps = [
            asyncio.create_task(self._pump_client(), name="relay_client_pump"),
            asyncio.create_task(self._pump_agent(), name="relay_agent_pump"),
        ]
        try:
            done, _ = await asyncio.wait(pumps, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    log.error("event=relay_pump_failed task=%s error=%s", task.get_name(), task.exception())
        finally:
            for task in pumps:
                task.cancel()
            await asyncio.gather(*pumps, return_exceptions=True)
            await self.close()

    async def close(self) -> None:
        """Tear down both peers and cancel a generation that is still running."""
        if self._closed:
            return
        self._closed = True
        await self._agent.close()

        task = self._generation
        if task is not None and not task.done():
            if self.session_id:
                await self._manager.cancel(self.session_id)
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        await self._client.close()
        log.info("event=relay_closed phase=%s session_id=%s", self._machine.phase.value, self.session_id)

    # -----------------------------------------------------------------------
    # Client → agent
    # -----------------------------------------------------------------------

    async def _pump_client(self) -> None:
        while True:
            message = await self._client.receive()
            if message is None:
                log.info("event=client_disconnected")
                return
            if isinstance(message, bytes):
                await self._agent.send_audio(message)
            else:
                await self._handle_client_text(message)

    async def _handle_client_text(self, raw: str) -> None:
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            log.debug("event=client_text_ignored raw=%.80r", raw)
            return
        if not isinstance(payload, dict):
            return
        if payload.get("type") == "cancel":
            await self.cancel_generation()
        else:
            log.debug("event=client_message_ignored type=%s", payload.get("type"))

    async def cancel_generation(self) -> bool:
        session_id = self.session_id
        if not session_id:
            log.info("event=cancel_ignored reason=no_session")
            return False
        return await self._manager.cancel(session_id)

    # -----------------------------------------------------------------------
    # Agent → client
    # -----------------------------------------------------------------------

    async def _pump_agent(self) -> None:
        async for event in self._agent.events():
            if isinstance(event, bytes):
                await self._client.send_bytes(event)
            else:
                await self.handle_agent_message(event)
        log.info("event=agent_stream_ended")

    async def handle_agent_message(self, message: AgentMessage) -> None:
        if message.type == "ConversationText":
            content = message.content or ""
            if message.role == "assistant":
                await self._on_assistant_text(content)
            elif message.role == "user":
                await self._on_user_text(content)
            return

        if message.type == "Welcome":
            log.info("event=agent_welcome")
        elif message.type == "SettingsApplied":
            log.info("event=agent_settings_applied")
        elif message.type == "Error":
            log.error("event=agent_error description=%s", message.description)
            await self._client.send_event(
                "error", self.session_id, error=message.description or "Voice agent error"
            )
            return

        extras = message.model_dump(exclude={"type"}, exclude_none=True)
        await self._client.send_event(message.type, self.session_id, **extras)

    async def _on_assistant_text(self, text: str) -> None:
        outcome = self._machine.on_agent_text(text)
        if outcome.withhold:
            log.debug("event=assistant_text_withheld len=%d", len(text))
        else:
            await self._client.send_event("text", self.session_id, role="assistant", content=text)
        if outcome.entered_review:
            await self._client.send_event("phase_transition", self.session_id, phase=Phase.SPEC_REVIEW.value)

    async def _on_user_text(self, text: str) -> None:
        await self._client.send_event("text", self.session_id, role="user", content=text)
        outcome = self._machine.on_user_text(text)

        if outcome.decision is UserDecision.NEEDS_SPEC:
            await self._client.send_event(
                "text", self.session_id, role="system", content=self._config.approval.corrective_message
            )
        elif outcome.decision is UserDecision.APPROVED:
            await self._begin_generation(outcome.specification, outcome.session_id)

    # -----------------------------------------------------------------------
    # Generation
    # -----------------------------------------------------------------------

    async def _begin_generation(self, specification: Specification, session_id: str) -> None:
        self._machine.begin_generation()
        await self._client.send_event("phase_transition", session_id, phase=Phase.GENERATING.value)
        self._generation = asyncio.create_task(
            self._run_generation(specification, session_id),
            name=f"generation_{session_id}",
        )

    async def _run_generation(self, specification: Specification, session_id: str) -> GenerationOutcome:
        outcome = await self._manager.start(specification, session_id, self._sink)
        if outcome.success:
            log.info("event=generation_succeeded session_id=%s preview=%s", session_id, outcome.preview_endpoint)
            return outcome

        if self._machine.state.session_id == session_id:
            self._machine.generation_failed()
        await self._client.send_event("phase_transition", session_id, phase=Phase.IDEATION.value)
        return outcome


class RelayHub:
    """Owns the single active conversation for this process."""

    def __init__(self) -> None:
        self._active: Optional[ConversationRelay] = None

    @property
    def active(self) -> Optional[ConversationRelay]:
        return self._active

    async def attach(self, relay: ConversationRelay) -> None:
        previous = self._active
        self._active = relay
        if previous is not None and previous is not relay:
            log.info("event=client_replaced previous_session=%s", previous.session_id)
            await previous.close()

    def detach(self, relay: ConversationRelay) -> None:
        if self._active is relay:
            self._active = None
