"""
stream_buffer.py — Voice Builder · Multi-fragment Block Reassembly
===================================================================
The agent streams its turns as independent text fragments, and a spec block
can be spread over several of them.  ``StreamBuffer`` rebuilds the block and
hands it to the extractor in the same call that completes it.

Rules (one speaker role only, fragments in arrival order)
---------------------------------------------------------
  • idle + open marker      → start accumulating at the marker
  • accumulating + close    → append, emit, clear
  • accumulating + neither  → append, keep waiting
  • accumulating + a "moved on" phrase (case-insensitive) → emit what has been
    accumulated plus the fragment up to the phrase, clear; the fragment is
    still shown as ordinary conversation
  • idle + no marker        → the fragment alone is tried as a candidate block

A block always starts at its open marker and ends right after its close
marker, so the emitted text does not depend on where the fragments were cut.
Markers cut in half across two fragments are caught through a short tail of
the previous idle fragment.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from config import ExtractionConfig
from extraction import SpecExtractor, Specification

log = logging.getLogger("voice_builder.stream_buffer")


@dataclass
class FeedResult:
    """Outcome of feeding one fragment.

    ``consumed`` is True when the fragment belongs to a spec block (opened,
    continued or closed one) and must not be shown to the user.
    """
    consumed: bool = False
    specification: Optional[Specification] = None
    forced: bool = False


class StreamBuffer:
    def __init__(
        self,
        extractor: SpecExtractor,
        config: Optional[ExtractionConfig] = None,
        role: str = "assistant",
    ) -> None:
        self._extractor = extractor
        self._config = config or ExtractionConfig()
        self._role = role
        self._moving_on = [p.lower() for p in self._config.moving_on_phrases]
        self._tail_len = max(
            [len(m) for m in self._config.open_markers] + [len(self._config.close_marker)]
        ) - 1

        self._pending: Optional[str] = None
        self._body_start: int = 0      # index just past the open marker inside _pending
        self._tail: str = ""

    # -----------------------------------------------------------------------
    # State
    # -----------------------------------------------------------------------

    @property
    def accumulating(self) -> bool:
        return self._pending is not None

    @property
    def pending(self) -> Optional[str]:
        return self._pending

    def reset(self) -> None:
        if self._pending is not None:
            log.info("event=block_abandoned len=%d", len(self._pending))
        self._pending = None
        self._body_start = 0
        self._tail = ""

    # -----------------------------------------------------------------------
    # Feed
    # -----------------------------------------------------------------------

    def feed(self, role: str, text: str) -> FeedResult:
        if role != self._role or not text:
            return FeedResult()
        if self._pending is not None:
            return self._feed_accumulating(text)
        return self._feed_idle(text)

    def _feed_idle(self, text: str) -> FeedResult:
        window = self._tail + text
        start = self._find_open(window)

        if start is None:
            self._tail = window[-self._tail_len:] if self._tail_len > 0 else ""
            spec = self._extractor.extract(text)
            return FeedResult(consumed=spec is not None, specification=spec)

        marker = self._marker_at(window, start)
        self._pending = window[start:]
        self._body_start = len(marker)
        self._tail = ""
        log.info("event=block_started len=%d", len(self._pending))
        return self._try_close(forced=False) or FeedResult(consumed=True)

    def _feed_accumulating(self, text: str) -> FeedResult:
        candidate = self._pending + text
        cut = self._moved_on_index(text)
        if self._close_index(candidate) is None and cut is not None:
            # Whatever precedes the phrase in this fragment still belongs to the block.
            block = self._pending + text[:cut]
            log.info("event=block_force_completed len=%d", len(block))
            return self._emit(block, forced=True, consumed=False)

        self._pending = candidate
        result = self._try_close(forced=False)
        if result is not None:
            return result
        log.debug("event=block_accumulating len=%d", len(self._pending))
        return FeedResult(consumed=True)

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    def _find_open(self, text: str) -> Optional[int]:
        found = [text.find(m) for m in self._config.open_markers]
        found = [i for i in found if i != -1]
        return min(found) if found else None

    def _marker_at(self, text: str, index: int) -> str:
        return max(
            (m for m in self._config.open_markers if text.startswith(m, index)),
            key=len,
        )

    def _close_index(self, block: str) -> Optional[int]:
        index = block.find(self._config.close_marker, self._body_start)
        return None if index == -1 else index

    def _moved_on_index(self, text: str) -> Optional[int]:
        """Start of the earliest "moved on" phrase in *text*, if any."""
        lowered = text.lower()
        found = [i for i in (lowered.find(p) for p in self._moving_on) if i != -1]
        return min(found) if found else None

    def _try_close(self, forced: bool) -> Optional[FeedResult]:
        index = self._close_index(self._pending)
        if index is None:
            return None
        block = self._pending[:index + len(self._config.close_marker)]
        log.info("event=block_closed len=%d", len(block))
        return self._emit(block, forced=forced, consumed=True)

    def _emit(self, block: str, forced: bool, consumed: bool) -> FeedResult:
        self._pending = None
        self._body_start = 0
        self._tail = ""
        spec = self._extractor.extract(block)
        if spec is None:
            log.info("event=block_discarded reason=incomplete forced=%s", forced)
        return FeedResult(consumed=consumed, specification=spec, forced=forced)
