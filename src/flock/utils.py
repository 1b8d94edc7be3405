"""Helpers shared by the subprocess wrappers."""

from __future__ import annotations

import os
from typing import Mapping

_SANITIZED_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
    "GIT_DIR",
    "GIT_WORK_TREE",
    "GIT_INDEX_FILE",
    "TMUX",
    "CLAUDECODE",
}


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return a sanitized environment suitable for subprocess execution."""

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    if additional:
        env.update(additional)
    return env


def sanitize_branch_name(name: str) -> str:
    """Collapse whitespace runs to single hyphens and lowercase the result."""

    return "-".join(name.split()).lower()


__all__ = ["sanitize_branch_name", "sanitize_environment"]
