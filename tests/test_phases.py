"""
Unit tests for the conversation PhaseMachine.
"""
import re

import pytest

from approval import ApprovalDetector
from phases import Phase, PhaseMachine, PhaseTransitionError, UserDecision, new_session_id
from stream_buffer import StreamBuffer

APPROVE = "That looks great, let's build it!"


@pytest.fixture
def machine(extractor, engine_config):
    ids = iter(["session-1-aaa", "session-2-bbb"])
    return PhaseMachine(
        extractor=extractor,
        buffer=StreamBuffer(extractor, engine_config.extraction),
        detector=ApprovalDetector.from_config(engine_config.approval),
        id_factory=lambda: next(ids),
    )


class TestAgentText:
    def test_complete_spec_enters_review(self, machine, spec_text):
        outcome = machine.on_agent_text(spec_text)

        assert outcome.withhold is True
        assert outcome.entered_review is True
        assert machine.phase is Phase.SPEC_REVIEW
        assert machine.state.confirmed_spec["name"] == "A"

    def test_plain_text_is_not_withheld(self, machine):
        outcome = machine.on_agent_text("What problem are you solving?")

        assert outcome.withhold is False
        assert machine.phase is Phase.IDEATION

    def test_revised_spec_replaces_confirmed_spec(self, machine, spec_text):
        machine.on_agent_text(spec_text)
        machine.on_agent_text(spec_text.replace("name: A", "name: B"))

        assert machine.phase is Phase.SPEC_REVIEW
        assert machine.state.confirmed_spec["name"] == "B"


class TestApproval:
    def test_approval_in_review_starts_transition(self, machine, spec_text):
        machine.on_agent_text(spec_text)

        outcome = machine.on_user_text(APPROVE)

        assert outcome.decision is UserDecision.APPROVED
        assert outcome.session_id == "session-1-aaa"
        assert outcome.specification is machine.state.confirmed_spec
        assert machine.phase is Phase.TRANSITIONING

        machine.begin_generation()
        assert machine.phase is Phase.GENERATING
        assert machine.state.session_id == "session-1-aaa"

    def test_approval_without_spec_leaves_phase_unchanged(self, machine):
        outcome = machine.on_user_text(APPROVE)

        assert outcome.decision is UserDecision.NEEDS_SPEC
        assert machine.phase is Phase.IDEATION
        assert machine.state.session_id is None

    def test_approval_while_block_is_open_needs_spec(self, machine, spec_text):
        machine.on_agent_text(spec_text)
        machine.on_agent_text("```yaml\nname: C\n")

        outcome = machine.on_user_text(APPROVE)

        assert outcome.decision is UserDecision.NEEDS_SPEC
        assert machine.phase is Phase.SPEC_REVIEW

    def test_non_approval_is_ignored(self, machine, spec_text):
        machine.on_agent_text(spec_text)

        assert machine.on_user_text("can we add dark mode").decision is UserDecision.NONE
        assert machine.phase is Phase.SPEC_REVIEW

    def test_second_approval_while_generating_is_ignored(self, machine, spec_text):
        machine.on_agent_text(spec_text)
        machine.on_user_text(APPROVE)
        machine.begin_generation()

        outcome = machine.on_user_text("yes, perfect")

        assert outcome.decision is UserDecision.IGNORED
        assert machine.state.session_id == "session-1-aaa"


class TestGenerationHooks:
    def test_failure_rolls_back_to_ideation(self, machine, spec_text):
        machine.on_agent_text(spec_text)
        machine.on_user_text(APPROVE)
        machine.begin_generation()

        machine.generation_failed()

        assert machine.phase is Phase.IDEATION
        assert machine.state.confirmed_spec is None
        assert machine.state.session_id is None

    def test_failure_outside_generation_is_a_no_op(self, machine):
        machine.generation_failed()

        assert machine.phase is Phase.IDEATION

    def test_generating_requires_an_approved_spec(self, machine):
        with pytest.raises(PhaseTransitionError):
            machine.begin_generation()

    def test_reset(self, machine, spec_text):
        machine.on_agent_text(spec_text)
        machine.reset()

        assert machine.phase is Phase.IDEATION
        assert machine.state.confirmed_spec is None


def test_session_ids_are_path_safe_and_unique():
    first, second = new_session_id(), new_session_id()

    assert re.fullmatch(r"session-\d+-[0-9a-f]{9}", first)
    assert first != second
