"""Trigger patterns for terminal status detection and their YAML loader."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

DEFAULT_SPINNER_GLYPHS = "⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏◐◓◑◒⣾⣽⣻⢿⡿⣟⣯⣷✶✢✽✻✳"

DEFAULT_TOOL_PATTERNS = [
    r"⏺\s*(Read|Write|Edit|Bash|Glob|Grep|Task|WebFetch|WebSearch)",
    r"(?i)^\s*(reading|writing|editing|searching|running|executing|thinking|analyzing"
    r"|processing|fetching|installing|building|compiling|testing)\b",
    r"\(esc to interrupt\)",
    r"\(esc\s+to\s+cancel,?\s*\d+s",
]

DEFAULT_WAITING_PATTERNS = [
    r"\(y/n\)",
    r"\[y/N\]",
    r"\[Y/n\]",
    r"\[yes/no\]",
    r"Allow\s*(this|once|always)?\s*\?",
    r"Do you want to (allow|proceed|continue|make this edit|create)",
    r"Would you like to run",
    r"Run this command\?",
    r"Execute\?",
    r"Ready to implement\?",
    r"Proceed with",
    r"(?i)action\s+required",
    r"(?i)waiting\s+for\s+confirmation",
    r"(?i)press enter to continue",
    r"❯\s*\d+\.\s",
]

DEFAULT_ERROR_PATTERNS = [
    r"[✗✘❌]\s",
    r"^Error:",
    r"^ERROR:",
    r"^FATAL",
    r"^error\[E\d+\]",
    r"FAILED",
    r"panicked at",
    r"(?i)command failed",
    r"Traceback \(most recent call last\)",
]

DEFAULT_PROMPT_MARKERS = [">", "›", "❯", "$", "%"]


class PatternLoadError(RuntimeError):
    """Raised when a detector pattern file cannot be parsed."""


class DetectorPatterns(BaseModel):
    """Tool-specific phrases used to classify a terminal snapshot."""

    spinner_glyphs: str = Field(
        default=DEFAULT_SPINNER_GLYPHS,
        description="Characters that indicate an animated progress spinner.",
    )
    tool_patterns: list[str] = Field(
        default_factory=lambda: list(DEFAULT_TOOL_PATTERNS),
        description="Regexes for lines printed while the agent executes tools.",
    )
    waiting_patterns: list[str] = Field(
        default_factory=lambda: list(DEFAULT_WAITING_PATTERNS),
        description="Regexes for interactive prompts that need a human answer.",
    )
    error_patterns: list[str] = Field(
        default_factory=lambda: list(DEFAULT_ERROR_PATTERNS),
        description="Regexes for fatal error markers.",
    )
    prompt_markers: list[str] = Field(
        default_factory=lambda: list(DEFAULT_PROMPT_MARKERS),
        description="Bare prompt characters shown when the agent sits idle.",
    )
    quiet_threshold: float = Field(
        default=10.0,
        description="Seconds without new output after which an agent counts as idle.",
    )
    recent_window: int = Field(default=15, description="Lines scanned for error markers.")
    prompt_window: int = Field(default=5, description="Lines scanned for prompts.")
    spinner_window: int = Field(default=3, description="Lines scanned for spinners and tools.")

    @field_validator("tool_patterns", "waiting_patterns", "error_patterns")
    @classmethod
    def _validate_regexes(cls, value: list[str]) -> list[str]:
        for pattern in value:
            try:
                re.compile(pattern)
            except re.error as exc:
                raise ValueError(f"Invalid pattern {pattern!r}: {exc}") from exc
        return value

    @field_validator("quiet_threshold")
    @classmethod
    def _validate_threshold(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("quiet_threshold must be > 0")
        return value

    @field_validator("recent_window", "prompt_window", "spinner_window")
    @classmethod
    def _validate_window(cls, value: int) -> int:
        if value < 1:
            raise ValueError("Detection windows must be >= 1 line")
        return value


_LIST_FIELDS = ("tool_patterns", "waiting_patterns", "error_patterns", "prompt_markers")


def load_patterns(path: Path | None = None, **overrides: Any) -> DetectorPatterns:
    """Load detector patterns from a YAML file on top of the built-in defaults.

    With ``extend: true`` in the document, pattern lists are appended to the
    defaults instead of replacing them.
    """

    document: dict[str, Any] = {}
    if path is not None:
        path = Path(path)
        try:
            loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise PatternLoadError(f"Failed to read pattern file {path}: {exc}") from exc
        except yaml.YAMLError as exc:  # pragma: no cover - library type
            raise PatternLoadError(f"Failed to parse YAML in {path}: {exc}") from exc
        if loaded is not None:
            if not isinstance(loaded, dict):
                raise PatternLoadError(f"Pattern file {path} must contain a mapping")
            document = dict(loaded)

    extend = bool(document.pop("extend", False))
    if extend:
        defaults = DetectorPatterns()
        for name in _LIST_FIELDS:
            if name in document:
                document[name] = [*getattr(defaults, name), *(document[name] or [])]
    document.update(overrides)

    try:
        return DetectorPatterns.model_validate(document)
    except ValidationError as exc:
        raise PatternLoadError(f"Pattern validation error in {path}: {exc}") from exc


__all__ = ["DetectorPatterns", "PatternLoadError", "load_patterns"]
