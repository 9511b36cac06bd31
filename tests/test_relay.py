"""
Unit tests for ConversationRelay and RelayHub with in-memory client/agent fakes.
"""
import asyncio

import pytest

from agent import AgentMessage
from phases import Phase
from relay import ConversationRelay, RelayHub
from sessions import (
    GenerationCancelled,
    GenerationResult,
    GenerationSessionManager,
    SessionStatus,
    SessionStore,
)

APPROVE = "That looks great, let's build it!"


class FakeClient:
    def __init__(self):
        self.events = []
        self.audio = []
        self.inbox = asyncio.Queue()
        self.closed = False

    @property
    def is_open(self):
        return not self.closed

    async def send_event(self, type, session_id=None, **data):
        if self.closed:
            return False
        self.events.append({"type": type, "sessionId": session_id, **data})
        return True

    async def send_bytes(self, frame):
        if self.closed:
            return False
        self.audio.append(frame)
        return True

    async def receive(self):
        return await self.inbox.get()

    async def close(self, code=1000):
        self.closed = True

    def of_type(self, type):
        return [e for e in self.events if e["type"] == type]


class FakeAgent:
    def __init__(self, fail_connect=False):
        self.fail_connect = fail_connect
        self.audio = []
        self.outbox = asyncio.Queue()
        self.closed = False

    @property
    def is_open(self):
        return not self.closed

    async def connect(self):
        if self.fail_connect:
            raise OSError("connection refused")

    async def send_audio(self, frame):
        if self.closed:
            return False
        self.audio.append(frame)
        return True

    async def events(self):
        while True:
            event = await self.outbox.get()
            if event is None:
                return
            yield event

    async def close(self):
        self.closed = True
        self.outbox.put_nowait(None)


class SlowConnectAgent(FakeAgent):
    """Handshake that completes only when released; the socket opens at that point."""

    def __init__(self):
        super().__init__()
        self.connecting = asyncio.Event()
        self.release = asyncio.Event()
        self.connected = False

    async def connect(self):
        self.connecting.set()
        await self.release.wait()
        self.connected = True
        self.closed = False


class ScriptedBackend:
    def __init__(self, mode="succeed"):
        self.mode = mode
        self.started = asyncio.Event()

    async def generate(self, specification, session_id, callbacks, cancel):
        self.started.set()
        if self.mode == "fail":
            raise RuntimeError("backend down")
        if self.mode == "block":
            await cancel.wait()
            raise GenerationCancelled()
        await callbacks.on_log("wrote index.html")
        await callbacks.on_preview_ready(f"/preview/{session_id}/repo/")
        return GenerationResult(artifact_path="repo", preview_endpoint=f"/preview/{session_id}/repo/")


def text(role, content):
    return AgentMessage(type="ConversationText", role=role, content=content)


@pytest.fixture
def client():
    return FakeClient()


@pytest.fixture
def agent():
    return FakeAgent()


def make_relay(client, agent, engine_config, tmp_path, mode="succeed"):
    backend = ScriptedBackend(mode)
    manager = GenerationSessionManager(
        SessionStore(),
        backend,
        output_dir=tmp_path,
        required_fields=engine_config.extraction.required_fields,
    )
    return ConversationRelay(client, agent, manager, engine_config), manager, backend


class TestTextHandling:
    @pytest.mark.asyncio
    async def test_spec_block_is_withheld_and_review_starts(self, client, agent, engine_config, tmp_path, spec_text):
        relay, _, _ = make_relay(client, agent, engine_config, tmp_path)

        await relay.handle_agent_message(text("assistant", "Here's what I heard."))
        await relay.handle_agent_message(text("assistant", spec_text))

        shown = [e["content"] for e in client.of_type("text")]
        assert shown == ["Here's what I heard."]
        assert client.of_type("phase_transition")[-1]["phase"] == Phase.SPEC_REVIEW.value
        assert relay.machine.phase is Phase.SPEC_REVIEW

    @pytest.mark.asyncio
    async def test_user_text_is_forwarded(self, client, agent, engine_config, tmp_path):
        relay, _, _ = make_relay(client, agent, engine_config, tmp_path)

        await relay.handle_agent_message(text("user", "I want a tide app"))

        assert client.of_type("text") == [
            {"type": "text", "sessionId": None, "role": "user", "content": "I want a tide app"},
        ]

    @pytest.mark.asyncio
    async def test_approval_without_spec_sends_corrective_prompt(self, client, agent, engine_config, tmp_path):
        relay, _, _ = make_relay(client, agent, engine_config, tmp_path)

        await relay.handle_agent_message(text("user", "looks good"))

        system = [e for e in client.of_type("text") if e["role"] == "system"]
        assert system[0]["content"] == engine_config.approval.corrective_message
        assert relay.machine.phase is Phase.IDEATION

    @pytest.mark.asyncio
    async def test_agent_error_event_reaches_client(self, client, agent, engine_config, tmp_path):
        relay, _, _ = make_relay(client, agent, engine_config, tmp_path)

        await relay.handle_agent_message(AgentMessage(type="Error", description="bad settings"))

        assert client.of_type("error")[0]["error"] == "bad settings"

    @pytest.mark.asyncio
    async def test_other_agent_events_pass_through(self, client, agent, engine_config, tmp_path):
        relay, _, _ = make_relay(client, agent, engine_config, tmp_path)

        await relay.handle_agent_message(AgentMessage(type="UserStartedSpeaking"))

        assert client.of_type("UserStartedSpeaking")


class TestGeneration:
    @pytest.mark.asyncio
    async def test_approval_starts_generation(self, client, agent, engine_config, tmp_path, spec_text):
        relay, manager, _ = make_relay(client, agent, engine_config, tmp_path)
        await relay.handle_agent_message(text("assistant", spec_text))

        await relay.handle_agent_message(text("user", APPROVE))

        assert relay.machine.phase is Phase.GENERATING
        session_id = relay.session_id
        assert session_id
        transition = client.of_type("phase_transition")[-1]
        assert transition == {"type": "phase_transition", "sessionId": session_id, "phase": "generating"}

        outcome = await relay.generation_task
        assert outcome.success is True
        assert [e["type"] for e in client.events if e["type"].startswith("codegen-")] == [
            "codegen-start",
            "codegen-validation-passed",
            "codegen-log",
            "codegen-preview-ready",
            "codegen-complete",
        ]
        complete = client.of_type("codegen-complete")[0]
        assert complete["url"] == f"/preview/{session_id}/repo/"
        assert complete["sessionId"] == session_id
        assert manager.status(session_id).status is SessionStatus.READY

    @pytest.mark.asyncio
    async def test_codegen_start_carries_the_approved_spec(self, client, agent, engine_config, tmp_path, spec_text):
        relay, _, _ = make_relay(client, agent, engine_config, tmp_path)
        await relay.handle_agent_message(text("assistant", spec_text))
        approved = relay.machine.state.confirmed_spec

        await relay.handle_agent_message(text("user", APPROVE))
        await relay.generation_task

        start = client.of_type("codegen-start")[0]
        assert start["sessionId"] == relay.session_id
        assert start["spec"] == approved.text
        assert "ui_style: s" in start["spec"]

    @pytest.mark.asyncio
    async def test_failure_resets_conversation_to_ideation(self, client, agent, engine_config, tmp_path, spec_text):
        relay, manager, _ = make_relay(client, agent, engine_config, tmp_path, mode="fail")
        await relay.handle_agent_message(text("assistant", spec_text))
        await relay.handle_agent_message(text("user", APPROVE))
        session_id = relay.session_id

        await relay.generation_task

        assert client.of_type("codegen-error")[0]["error"] == "backend down"
        assert client.of_type("phase_transition")[-1]["phase"] == "ideation"
        assert relay.machine.phase is Phase.IDEATION
        assert relay.machine.state.confirmed_spec is None
        assert manager.status(session_id) is None

    @pytest.mark.asyncio
    async def test_cancel_message_stops_generation(self, client, agent, engine_config, tmp_path, spec_text):
        relay, manager, backend = make_relay(client, agent, engine_config, tmp_path, mode="block")
        run = asyncio.create_task(relay.run())
        agent.outbox.put_nowait(text("assistant", spec_text))
        agent.outbox.put_nowait(text("user", APPROVE))
        await asyncio.wait_for(backend.started.wait(), timeout=1)

        client.inbox.put_nowait('{"type": "cancel"}')
        outcome = await asyncio.wait_for(relay.generation_task, timeout=1)

        assert outcome.status is SessionStatus.CANCELLED
        assert client.of_type("codegen-cancelled")
        assert relay.machine.phase is Phase.IDEATION

        client.inbox.put_nowait(None)
        await asyncio.wait_for(run, timeout=1)


class TestRun:
    @pytest.mark.asyncio
    async def test_client_audio_reaches_agent_and_disconnect_closes_agent(self, client, agent, engine_config, tmp_path):
        relay, _, _ = make_relay(client, agent, engine_config, tmp_path)
        client.inbox.put_nowait(b"mic-1")
        client.inbox.put_nowait(b"mic-2")
        client.inbox.put_nowait(None)

        await asyncio.wait_for(relay.run(), timeout=1)

        assert agent.audio == [b"mic-1", b"mic-2"]
        assert agent.closed is True
        assert client.closed is True

    @pytest.mark.asyncio
    async def test_agent_audio_reaches_client_and_disconnect_closes_client(self, client, agent, engine_config, tmp_path):
        relay, _, _ = make_relay(client, agent, engine_config, tmp_path)
        agent.outbox.put_nowait(b"speech")
        agent.outbox.put_nowait(None)

        await asyncio.wait_for(relay.run(), timeout=1)

        assert client.audio == [b"speech"]
        assert client.closed is True

    @pytest.mark.asyncio
    async def test_audio_to_closed_client_is_dropped(self, client, agent, engine_config, tmp_path):
        relay, _, _ = make_relay(client, agent, engine_config, tmp_path)
        client.closed = True
        agent.outbox.put_nowait(b"speech")
        agent.outbox.put_nowait(None)

        await asyncio.wait_for(relay.run(), timeout=1)

        assert client.audio == []

    @pytest.mark.asyncio
    async def test_client_disconnect_cancels_bound_session(self, client, agent, engine_config, tmp_path, spec_text):
        relay, manager, backend = make_relay(client, agent, engine_config, tmp_path, mode="block")
        run = asyncio.create_task(relay.run())
        agent.outbox.put_nowait(text("assistant", spec_text))
        agent.outbox.put_nowait(text("user", APPROVE))
        await asyncio.wait_for(backend.started.wait(), timeout=1)
        session_id = relay.session_id

        client.inbox.put_nowait(None)
        await asyncio.wait_for(run, timeout=1)

        assert relay.generation_task.done()
        assert manager.status(session_id) is None
        assert agent.closed is True

    @pytest.mark.asyncio
    async def test_agent_connect_failure_reports_and_closes(self, client, engine_config, tmp_path):
        relay, _, _ = make_relay(client, FakeAgent(fail_connect=True), engine_config, tmp_path)

        await relay.run()

        assert client.of_type("error")
        assert client.closed is True


class TestRelayHub:
    @pytest.mark.asyncio
    async def test_new_client_closes_previous(self, engine_config, tmp_path):
        hub = RelayHub()
        first_client, first_agent = FakeClient(), FakeAgent()
        first, _, _ = make_relay(first_client, first_agent, engine_config, tmp_path)
        second, _, _ = make_relay(FakeClient(), FakeAgent(), engine_config, tmp_path)

        await hub.attach(first)
        await hub.attach(second)

        assert first_client.closed is True
        assert first_agent.closed is True
        assert hub.active is second

        hub.detach(first)
        assert hub.active is second
        hub.detach(second)
        assert hub.active is None

    @pytest.mark.asyncio
    async def test_relay_replaced_during_handshake_closes_its_agent(self, engine_config, tmp_path):
        hub = RelayHub()
        old_client, old_agent = FakeClient(), SlowConnectAgent()
        old, _, _ = make_relay(old_client, old_agent, engine_config, tmp_path)
        await hub.attach(old)
        run = asyncio.create_task(old.run())
        await asyncio.wait_for(old_agent.connecting.wait(), timeout=1)

        await hub.attach(make_relay(FakeClient(), FakeAgent(), engine_config, tmp_path)[0])
        old_agent.release.set()
        await asyncio.wait_for(run, timeout=1)

        assert old_agent.connected is True
        assert old_agent.closed is True
        assert old_agent.audio == []
