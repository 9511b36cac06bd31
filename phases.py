"""
phases.py — Voice Builder · Conversation Phase State Machine
=============================================================
One ``PhaseMachine`` per client connection.  It owns the ``ConversationState``
and is the only thing that mutates it.

    ideation ──spec extracted──▶ specReview ──user approves──▶ transitioning
        ▲                                                          │
        └────────────── generation failed / cancelled ◀── generating ◀┘

Invariants
----------
  • ``transitioning`` requires a confirmed spec.
  • ``generating`` requires a minted session id.
  • Approval with no confirmed spec (or with a block still being assembled)
    never advances; the caller is told to send a corrective prompt instead.
"""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from approval import ApprovalDetector
from extraction import SpecExtractor, Specification
from stream_buffer import StreamBuffer

log = logging.getLogger("voice_builder.phases")


class Phase(str, Enum):
    IDEATION      = "ideation"
    SPEC_REVIEW   = "specReview"
    TRANSITIONING = "transitioning"
    GENERATING    = "generating"


_ALLOWED: dict[Phase, frozenset[Phase]] = {
    Phase.IDEATION:      frozenset({Phase.SPEC_REVIEW}),
    Phase.SPEC_REVIEW:   frozenset({Phase.TRANSITIONING}),
    Phase.TRANSITIONING: frozenset({Phase.GENERATING, Phase.IDEATION}),
    Phase.GENERATING:    frozenset({Phase.IDEATION}),
}


class PhaseTransitionError(RuntimeError):
    """Raised when a transition would break a phase invariant."""


def new_session_id() -> str:
    """``session-<epoch ms>-<9 hex chars>``; safe to use as a directory name."""
    return f"session-{int(time.time() * 1000)}-{secrets.token_hex(5)[:9]}"


@dataclass
class ConversationState:
    phase: Phase = Phase.IDEATION
    confirmed_spec: Optional[Specification] = None
    session_id: Optional[str] = None
    buffer: Optional[StreamBuffer] = field(default=None, repr=False)

    @property
    def pending_block(self) -> Optional[str]:
        return self.buffer.pending if self.buffer is not None else None


class UserDecision(str, Enum):
    NONE       = "none"         # not an approval
    APPROVED   = "approved"     # transition started; session id minted
    NEEDS_SPEC = "needs_spec"   # approval with nothing to approve → corrective prompt
    IGNORED    = "ignored"      # approval outside specReview (already building)


@dataclass
class AgentTextOutcome:
    withhold: bool = False
    specification: Optional[Specification] = None
    entered_review: bool = False


@dataclass
class UserTextOutcome:
    decision: UserDecision = UserDecision.NONE
    session_id: Optional[str] = None
    specification: Optional[Specification] = None


class PhaseMachine:
    def __init__(
        self,
        extractor: SpecExtractor,
        buffer: StreamBuffer,
        detector: ApprovalDetector,
        id_factory: Callable[[], str] = new_session_id,
    ) -> None:
        self._extractor = extractor
        self._detector = detector
        self._id_factory = id_factory
        self.state = ConversationState(buffer=buffer)

    @property
    def phase(self) -> Phase:
        return self.state.phase

    # -----------------------------------------------------------------------
    # Inputs
    # -----------------------------------------------------------------------

    def on_agent_text(self, text: str) -> AgentTextOutcome:
        """Run one assistant fragment through the buffer/extraction pipeline."""
        looks_like_spec = self._extractor.looks_like_specification(text)
        result = self.state.buffer.feed("assistant", text)
        outcome = AgentTextOutcome(withhold=looks_like_spec or result.consumed)

        spec = result.specification
        if spec is None:
            return outcome

        outcome.specification = spec
        replaced = self.state.confirmed_spec is not None
        self.state.confirmed_spec = spec
        if self.state.phase is Phase.IDEATION:
            self._set_phase(Phase.SPEC_REVIEW)
            outcome.entered_review = True
        else:
            log.info("event=spec_replaced phase=%s replaced=%s", self.state.phase.value, replaced)
        return outcome

    def on_user_text(self, text: str) -> UserTextOutcome:
        """Classify one user utterance and start the transition if it approves."""
        if not self._detector.is_approval(text):
            return UserTextOutcome()

        if self.state.buffer.accumulating or self.state.confirmed_spec is None:
            log.warning(
                "event=approval_without_spec phase=%s accumulating=%s",
                self.state.phase.value, self.state.buffer.accumulating,
            )
            return UserTextOutcome(decision=UserDecision.NEEDS_SPEC)

        if self.state.phase is not Phase.SPEC_REVIEW:
            log.info("event=approval_ignored phase=%s", self.state.phase.value)
            return UserTextOutcome(decision=UserDecision.IGNORED)

        self.state.session_id = self._id_factory()
        self._set_phase(Phase.TRANSITIONING)
        log.info("event=spec_approved session_id=%s", self.state.session_id)
        return UserTextOutcome(
            decision=UserDecision.APPROVED,
            session_id=self.state.session_id,
            specification=self.state.confirmed_spec,
        )

    # -----------------------------------------------------------------------
    # Generation lifecycle hooks
    # -----------------------------------------------------------------------

    def begin_generation(self) -> None:
        self._set_phase(Phase.GENERATING)

    def generation_failed(self) -> None:
        """Roll back to ideation so the conversation can start over."""
        if self.state.phase not in (Phase.TRANSITIONING, Phase.GENERATING):
            log.debug("event=generation_failed_ignored phase=%s", self.state.phase.value)
            return
        self._set_phase(Phase.IDEATION)
        self.state.confirmed_spec = None
        self.state.session_id = None

    def reset(self) -> None:
        self.state.buffer.reset()
        self.state = ConversationState(buffer=self.state.buffer)
        log.info("event=conversation_reset")

    # -----------------------------------------------------------------------
    # Guarded transition
    # -----------------------------------------------------------------------

    def _set_phase(self, new: Phase) -> None:
        prev = self.state.phase
        if new not in _ALLOWED[prev]:
            raise PhaseTransitionError(f"illegal transition {prev.value} → {new.value}")
        if new is Phase.TRANSITIONING and self.state.confirmed_spec is None:
            raise PhaseTransitionError("cannot enter transitioning without a confirmed spec")
        if new is Phase.GENERATING and not self.state.session_id:
            raise PhaseTransitionError("cannot enter generating without a session id")
        self.state.phase = new
        log.info("event=phase_change from=%s to=%s session_id=%s", prev.value, new.value, self.state.session_id)
