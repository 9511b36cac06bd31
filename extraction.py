"""
extraction.py — Voice Builder · Spec Extraction
================================================
Decides whether a candidate block of agent text holds a COMPLETE spec.

A spec is accepted only when every required field key is present; anything
less is "not found" (``None``).  False negatives are preferred over handing an
incomplete spec to code generation.

Search order
------------
1. Structural patterns from ``ExtractionConfig.block_patterns``, in priority
   order.  The first pattern that matches decides; patterns are never combined.
2. Only when no pattern matches: a line-oriented fallback scan for an
   unfenced block (first ``project_name`` line → the ``ui_style`` /
   ``tech_stack`` line → the next blank line, fence or closing phrase).

The result keeps the raw block text plus a shallow ``field → raw value`` map.
Values are not parsed any deeper than that.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Optional

from config import ExtractionConfig

log = logging.getLogger("voice_builder.extraction")


@dataclass(frozen=True)
class Specification:
    """An extracted, complete spec block.  Immutable once built."""
    text: str
    fields: dict[str, str] = field(default_factory=dict)

    def __getitem__(self, key: str) -> str:
        return self.fields[key]

    def __contains__(self, key: object) -> bool:
        return key in self.fields

    def to_dict(self) -> dict:
        return {"text": self.text, "fields": dict(self.fields)}


class SpecExtractor:
    """Pattern-driven spec extraction over raw agent text."""

    def __init__(self, config: Optional[ExtractionConfig] = None) -> None:
        self._config = config or ExtractionConfig()
        self._patterns = [re.compile(p, re.DOTALL) for p in self._config.block_patterns]

        self._canonical: dict[str, str] = {}
        self._field_res: dict[str, re.Pattern[str]] = {}
        for name, aliases in self._config.required_fields.items():
            ordered = sorted(aliases, key=len, reverse=True)
            for alias in ordered:
                self._canonical.setdefault(alias, name)
            self._field_res[name] = re.compile(
                "(?:" + "|".join(re.escape(a) for a in ordered) + r")\s*:"
            )

        all_aliases = sorted(self._canonical, key=len, reverse=True)
        self._key_re = re.compile(
            "(" + "|".join(re.escape(a) for a in all_aliases) + r")\s*:"
        )
        self._closing = [p.lower() for p in self._config.closing_phrases]

    @property
    def required(self) -> list[str]:
        return list(self._config.required_fields)

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    def extract(self, text: str) -> Optional[Specification]:
        """Return the complete spec contained in *text*, or None."""
        for index, pattern in enumerate(self._patterns):
            match = pattern.search(text)
            if not match or not match.group(1).strip():
                continue
            spec = self.complete(match.group(1).strip())
            if spec is not None:
                log.info("event=spec_extracted source=pattern index=%d len=%d", index, len(spec.text))
            return spec

        spec = self._fallback_scan(text)
        if spec is not None:
            log.info("event=spec_extracted source=fallback_scan len=%d", len(spec.text))
        return spec

    def complete(self, body: str) -> Optional[Specification]:
        """All-or-nothing completeness check over an already isolated body."""
        fields = self.scan_fields(body)
        missing = [name for name in self._config.required_fields if name not in fields]
        if missing:
            log.debug("event=spec_incomplete missing=%s preview=%.80r", ",".join(missing), body)
            return None
        return Specification(
            text=body,
            fields={name: fields[name] for name in self._config.required_fields},
        )

    def scan_fields(self, body: str) -> dict[str, str]:
        """Map each known key found in *body* to the raw text up to the next key.

        The first occurrence of a field wins.
        """
        matches = list(self._key_re.finditer(body))
        fields: dict[str, str] = {}
        for i, match in enumerate(matches):
            name = self._canonical[match.group(1)]
            if name in fields:
                continue
            end = matches[i + 1].start() if i + 1 < len(matches) else len(body)
            fields[name] = body[match.end():end].strip()
        return fields

    def looks_like_specification(self, text: str) -> bool:
        """Cheap pre-check: does *text* carry a block marker or any spec key?"""
        if any(marker in text for marker in self._config.open_markers):
            return True
        if self._config.close_marker and self._config.close_marker in text:
            return True
        return self._key_re.search(text) is not None

    # -----------------------------------------------------------------------
    # Fallback scan (unfenced block)
    # -----------------------------------------------------------------------

    def _has_field(self, name: str, line: str) -> bool:
        pattern = self._field_res.get(name)
        return pattern is not None and pattern.search(line) is not None

    def _is_boundary(self, line: str) -> bool:
        if not line.strip():
            return True
        if self._config.close_marker and self._config.close_marker in line:
            return True
        lowered = line.lower()
        return any(phrase in lowered for phrase in self._closing)

    def _fallback_scan(self, text: str) -> Optional[Specification]:
        lines = text.split("\n")
        start = next((i for i, line in enumerate(lines) if self._has_field("name", line)), None)
        if start is None:
            return None

        anchor = next(
            (
                i for i in range(start, len(lines))
                if self._has_field("ui_style", lines[i]) or self._has_field("tech_stack", lines[i])
            ),
            None,
        )
        if anchor is None:
            return None

        end = next((j for j in range(anchor, len(lines)) if self._is_boundary(lines[j])), len(lines))
        candidate = "\n".join(lines[start:end]).strip()
        if not candidate:
            return None
        return self.complete(candidate)


_default_extractor: Optional[SpecExtractor] = None


def extract_specification(text: str) -> Optional[Specification]:
    """Module-level shortcut using the default extraction tables."""
    global _default_extractor
    if _default_extractor is None:
        _default_extractor = SpecExtractor()
    return _default_extractor.extract(text)
