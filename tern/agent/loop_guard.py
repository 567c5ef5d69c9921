"""Loop guard: vetoes a turn that repeats the previous turn's tool calls too often.

Each turn's tool calls are reduced to a set of CallSignatures (tool name
plus the arguments that matter, with paths separator-normalized). The
guard counts how many consecutive turns produced exactly the same set and
vetoes once that streak exceeds the limit. Iterating over distinct paths
never produces equal sets, so legitimate exploration is never blocked.
"""

from __future__ import annotations

import json
import logging
import re
from collections import deque
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

# Arguments that identify a call; anything else (offsets, timeouts) is noise.
SIGNIFICANT_ARGS: dict[str, tuple[str, ...]] = {
    "read_file": ("path",),
    "write_file": ("path",),
    "edit_file": ("path", "old_string"),
    "list_dir": ("path",),
    "glob": ("pattern", "path"),
    "grep": ("pattern", "path"),
    "bash": ("command",),
    "http_request": ("method", "url"),
    "plan": ("operation", "title", "task"),
}

PATH_ARGS = frozenset({"path", "file_path", "directory", "dir"})

_MULTI_SLASH = re.compile(r"/{2,}")


def normalize_path(raw: str) -> str:
    """Separator-normalize a path so equivalent spellings compare equal.

    ``.\\src``, ``./src``, ``src/`` and ``./src//`` all become ``src``.
    Distinct paths stay distinct.
    """
    path = _MULTI_SLASH.sub("/", raw.strip().replace("\\", "/"))
    while path.startswith("./"):
        path = path[2:]
    if len(path) > 1:
        path = path.rstrip("/")
    if path in ("", "."):
        return "."
    return path


@dataclass(frozen=True, order=True)
class CallSignature:
    tool: str
    arguments: str

    @classmethod
    def of(cls, tool: str, arguments: dict[str, Any] | None) -> "CallSignature":
        arguments = arguments or {}
        keys = SIGNIFICANT_ARGS.get(tool)
        if keys is None:
            keys = tuple(sorted(arguments))
        parts = []
        for key in keys:
            if key not in arguments:
                continue
            value = arguments[key]
            if key in PATH_ARGS and isinstance(value, str):
                value = normalize_path(value)
            elif not isinstance(value, str):
                value = json.dumps(value, sort_keys=True, default=str)
            parts.append(f"{key}={value}")
        return cls(tool=tool, arguments="&".join(parts))

    def __str__(self) -> str:
        return f"{self.tool}:{self.arguments}" if self.arguments else self.tool


@dataclass(frozen=True)
class GuardVerdict:
    vetoed: bool
    streak: int
    signatures: frozenset[CallSignature]


class LoopGuard:
    """Per-session rolling history of signature sets."""

    def __init__(self, streak_limit: int = 3, history: int = 15) -> None:
        self.streak_limit = streak_limit
        self._history: deque[frozenset[CallSignature]] = deque(maxlen=history)
        self._streak = 0

    @property
    def streak(self) -> int:
        return self._streak

    @property
    def history(self) -> list[frozenset[CallSignature]]:
        return list(self._history)

    def check(self, signatures: list[CallSignature]) -> GuardVerdict:
        """Record this turn's calls and decide whether to veto them."""
        current = frozenset(signatures)
        if self._history and self._history[-1] == current:
            self._streak += 1
        else:
            self._streak = 1
        self._history.append(current)

        vetoed = self._streak > self.streak_limit
        verdict = GuardVerdict(vetoed=vetoed, streak=self._streak, signatures=current)
        if vetoed:
            logger.warning(
                "Tool loop detected: %d identical turns (%s)",
                self._streak,
                ", ".join(sorted(str(s) for s in current)),
            )
            # the vetoed turn ends; the next attempt starts a fresh streak
            self._streak = 0
        return verdict

    def reset(self) -> None:
        self._history.clear()
        self._streak = 0
