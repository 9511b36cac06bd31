"""
approval.py — Voice Builder · Approval Detection
=================================================
Bounded heuristic: does a user utterance mean "yes, build it"?

Substring match against a configured phrase table after case-folding and
whitespace normalisation.  False negatives are fine (the user just says it
again).  False positives such as "yes, but first…" are a known, accepted
cost of favouring progress.
"""

from __future__ import annotations

import logging
import re
from typing import Iterable, Optional

from config import ApprovalConfig

log = logging.getLogger("voice_builder.approval")

_WHITESPACE_RE = re.compile(r"\s+")
_APOSTROPHES = str.maketrans({"’": "'", "‘": "'", "ʼ": "'"})


def normalise(text: str) -> str:
    """Case-fold, unify apostrophes, collapse and trim whitespace."""
    return _WHITESPACE_RE.sub(" ", text.translate(_APOSTROPHES).casefold()).strip()


class ApprovalDetector:
    """Stateless classifier over a fixed phrase set."""

    def __init__(self, phrases: Optional[Iterable[str]] = None) -> None:
        source = ApprovalConfig().phrases if phrases is None else phrases
        self._phrases = tuple(p for p in (normalise(x) for x in source) if p)

    @classmethod
    def from_config(cls, config: ApprovalConfig) -> "ApprovalDetector":
        return cls(config.phrases)

    def matched_phrase(self, utterance: str) -> Optional[str]:
        text = normalise(utterance)
        if not text:
            return None
        return next((p for p in self._phrases if p in text), None)

    def is_approval(self, utterance: str) -> bool:
        phrase = self.matched_phrase(utterance)
        if phrase is None:
            log.debug("event=approval_not_detected text=%.60r", utterance)
            return False
        log.info("event=approval_detected phrase=%r text=%.60r", phrase, utterance)
        return True

    __call__ = is_approval
