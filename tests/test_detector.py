from __future__ import annotations

from pathlib import Path

from flock.detector import (
    DetectedStatus,
    StatusDetector,
    detect_status,
    load_patterns,
    strip_ansi,
)


def test_spinner_line_is_running() -> None:
    snapshot = "Let me look at the failing test.\n\n✻ Thinking… (esc to interrupt)\n"

    assert detect_status(snapshot).status is DetectedStatus.RUNNING


def test_tool_activity_is_running() -> None:
    snapshot = "⏺ Read(src/main.py)\n  ⎿  Read 120 lines\n⏺ Bash(pytest -q)"

    assert detect_status(snapshot, quiet_for=1.0).status is DetectedStatus.RUNNING


def test_yes_no_prompt_is_waiting() -> None:
    snapshot = "I will delete the build directory.\nDo you want to proceed? (y/n)"

    assert detect_status(snapshot).status is DetectedStatus.WAITING


def test_numbered_choice_menu_is_waiting() -> None:
    snapshot = "Do you want to make this edit to app.py?\n❯ 1. Yes\n  2. No, and tell Claude what to do"

    assert detect_status(snapshot).status is DetectedStatus.WAITING


def test_waiting_wins_over_spinner() -> None:
    snapshot = "⠋ Running command\nAllow this?"

    assert detect_status(snapshot).status is DetectedStatus.WAITING


def test_error_line_is_reported() -> None:
    snapshot = "$ npm test\nError: cannot find module 'left-pad'\n"

    detection = detect_status(snapshot)

    assert detection.status is DetectedStatus.ERROR
    assert detection.message == "Error: cannot find module 'left-pad'"


def test_quiet_output_is_idle() -> None:
    snapshot = "Refactored the parser.\nAll tests pass."

    assert detect_status(snapshot, quiet_for=30.0).status is DetectedStatus.IDLE


def test_spinner_ignored_once_quiet() -> None:
    snapshot = "✻ Thinking…"

    assert detect_status(snapshot, quiet_for=30.0).status is DetectedStatus.IDLE


def test_bare_prompt_is_idle() -> None:
    snapshot = "Done. The branch is ready for review.\n\n>\n"

    assert detect_status(snapshot, quiet_for=0.5).status is DetectedStatus.IDLE


def test_fresh_unclassified_output_is_running() -> None:
    snapshot = "Compiled 3 files"

    assert detect_status(snapshot, quiet_for=0.0).status is DetectedStatus.RUNNING


def test_empty_snapshot_is_idle() -> None:
    assert detect_status("\n\n   \n").status is DetectedStatus.IDLE


def test_ansi_sequences_are_stripped() -> None:
    snapshot = "\x1b[32m✻\x1b[0m Working"

    assert strip_ansi(snapshot) == "✻ Working"
    assert detect_status(snapshot).status is DetectedStatus.RUNNING


def test_error_outside_recent_window_is_ignored() -> None:
    lines = ["Error: early failure"] + [f"line {index}" for index in range(30)]

    detection = detect_status("\n".join(lines), quiet_for=30.0)

    assert detection.status is DetectedStatus.IDLE


def test_extended_waiting_phrases_are_honoured(tmp_path: Path) -> None:
    pattern_file = tmp_path / "patterns.yaml"
    pattern_file.write_text(
        "extend: true\nwaiting_patterns:\n  - 'Approve the plan'\n",
        encoding="utf-8",
    )
    detector = StatusDetector(load_patterns(pattern_file))

    assert detector.detect("Plan ready.\nApprove the plan").status is DetectedStatus.WAITING
    assert detector.detect("Continue (y/n)").status is DetectedStatus.WAITING
    assert detect_status("Plan ready.\nApprove the plan").status is DetectedStatus.RUNNING
