"""Heuristic lifecycle classification of captured terminal text."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from .patterns import DetectorPatterns

ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[a-zA-Z]|\x1b\].*?\x07")


class DetectedStatus(str, Enum):
    """What a single snapshot says about the agent."""

    RUNNING = "running"
    WAITING = "waiting"
    ERROR = "error"
    IDLE = "idle"


@dataclass(frozen=True, slots=True)
class Detection:
    status: DetectedStatus
    message: str | None = None


def strip_ansi(text: str) -> str:
    return ANSI_ESCAPE.sub("", text)


class StatusDetector:
    """Classify a tmux pane snapshot as running, waiting, error or idle.

    Best-effort: the phrases live in :class:`DetectorPatterns` so that each
    tool's prompts can be tuned without code changes.
    """

    def __init__(self, patterns: DetectorPatterns | None = None) -> None:
        self._patterns = patterns or DetectorPatterns()
        self._spinner = (
            re.compile("[" + re.escape(self._patterns.spinner_glyphs) + "]")
            if self._patterns.spinner_glyphs
            else None
        )
        self._tools = [re.compile(p, re.MULTILINE) for p in self._patterns.tool_patterns]
        self._waiting = [re.compile(p, re.MULTILINE) for p in self._patterns.waiting_patterns]
        self._errors = [re.compile(p, re.MULTILINE) for p in self._patterns.error_patterns]

    @property
    def patterns(self) -> DetectorPatterns:
        return self._patterns

    def detect(self, snapshot: str, quiet_for: float | None = None) -> Detection:
        """Classify ``snapshot``; ``quiet_for`` is seconds since the text last changed."""

        lines = strip_ansi(snapshot).splitlines()
        while lines and not lines[-1].strip():
            lines.pop()
        if not lines:
            return Detection(DetectedStatus.IDLE)

        patterns = self._patterns
        prompt_lines = lines[-patterns.prompt_window :]
        prompt_text = "\n".join(prompt_lines)

        if any(regex.search(prompt_text) for regex in self._waiting):
            return Detection(DetectedStatus.WAITING)
        if lines[-1].strip().endswith("?"):
            return Detection(DetectedStatus.WAITING)

        quiet = quiet_for is not None and quiet_for >= patterns.quiet_threshold

        if not quiet:
            tail_text = "\n".join(lines[-patterns.spinner_window :])
            if self._spinner is not None and self._spinner.search(tail_text):
                return Detection(DetectedStatus.RUNNING)
            if any(regex.search(tail_text) for regex in self._tools):
                return Detection(DetectedStatus.RUNNING)

        for line in lines[-patterns.recent_window :]:
            if any(regex.search(line) for regex in self._errors):
                return Detection(DetectedStatus.ERROR, line.strip())

        if quiet or self._at_prompt(prompt_lines):
            return Detection(DetectedStatus.IDLE)

        return Detection(DetectedStatus.RUNNING)

    def _at_prompt(self, lines: list[str]) -> bool:
        markers = self._patterns.prompt_markers
        for line in lines:
            trimmed = line.strip()
            if not trimmed:
                continue
            if trimmed in markers:
                return True
            if len(trimmed) <= 3 and any(trimmed.startswith(marker) for marker in markers):
                return True
            if trimmed.startswith("➜"):
                return True
        return False


def detect_status(
    snapshot: str,
    quiet_for: float | None = None,
    *,
    patterns: DetectorPatterns | None = None,
) -> Detection:
    """Convenience wrapper around :meth:`StatusDetector.detect`."""

    return StatusDetector(patterns).detect(snapshot, quiet_for)


__all__ = ["DetectedStatus", "Detection", "StatusDetector", "detect_status", "strip_ansi"]
