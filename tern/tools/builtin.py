"""Built-in workspace tools: read_file, list_dir, glob, grep, write_file,
edit_file, bash.

All paths are confined to the context's working directory. File I/O runs in
a thread; bash runs as a subprocess with its own timeout and truncated
output.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from pathlib import Path
from typing import Any

from tern.config import Settings
from tern.tools.registry import (
    Capability,
    Tool,
    ToolError,
    ToolErrorKind,
    ToolExecutionContext,
    ToolOutcome,
    ToolRegistry,
)

logger = logging.getLogger(__name__)

_MAX_OUTPUT_CHARS = 100 * 1024  # 100KB
_MAX_FILE_SIZE = 1 * 1024 * 1024  # 1MB
_MAX_LIST_ENTRIES = 500
_MAX_MATCHES = 200
_SKIP_DIRS = {".git", "node_modules", "__pycache__", ".venv", "target"}


def _truncate(text: str, label: str = "output") -> str:
    if len(text) > _MAX_OUTPUT_CHARS:
        return text[:_MAX_OUTPUT_CHARS] + f"\n... [{label} truncated at 100KB]"
    return text


def _str_arg(arguments: dict[str, Any], key: str) -> str:
    value = arguments.get(key)
    if not isinstance(value, str) or not value:
        raise ToolError(ToolErrorKind.INVALID_INPUT, f"'{key}' must be a non-empty string")
    return value


# ---------------------------------------------------------------------------
# Read-only tools
# ---------------------------------------------------------------------------


async def read_file(arguments: dict[str, Any], context: ToolExecutionContext) -> ToolOutcome:
    path = _str_arg(arguments, "path")
    offset = int(arguments.get("offset") or 0)
    limit = int(arguments.get("limit") or 0)
    target = context.resolve_path(path)

    if not target.exists():
        raise ToolError(ToolErrorKind.FILE_NOT_FOUND, f"File not found: {path}")
    if not target.is_file():
        raise ToolError(ToolErrorKind.INVALID_INPUT, f"Not a file: {path}")
    size = target.stat().st_size
    if size > _MAX_FILE_SIZE and not (offset or limit):
        raise ToolError(
            ToolErrorKind.INVALID_INPUT,
            f"File too large: {size:,} bytes (limit: {_MAX_FILE_SIZE:,} bytes). "
            "Use offset/limit to read portions.",
        )

    content = await asyncio.to_thread(target.read_text, encoding="utf-8", errors="replace")
    if offset > 0 or limit > 0:
        lines = content.splitlines(keepends=True)
        if offset > 0:
            lines = lines[offset:]
        if limit > 0:
            lines = lines[:limit]
        content = "".join(lines)
    return ToolOutcome(_truncate(content) if content else "(empty file)")


def _list_dir_sync(target: Path, root: Path) -> list[str]:
    entries = []
    for entry in sorted(target.iterdir(), key=lambda p: (not p.is_dir(), p.name)):
        rel = entry.relative_to(root).as_posix()
        entries.append(f"{rel}/" if entry.is_dir() else rel)
        if len(entries) >= _MAX_LIST_ENTRIES:
            entries.append(f"... [listing truncated at {_MAX_LIST_ENTRIES} entries]")
            break
    return entries


async def list_dir(arguments: dict[str, Any], context: ToolExecutionContext) -> ToolOutcome:
    path = arguments.get("path") or "."
    target = context.resolve_path(path)
    if not target.is_dir():
        raise ToolError(ToolErrorKind.FILE_NOT_FOUND, f"Not a directory: {path}")
    entries = await asyncio.to_thread(_list_dir_sync, target, context.working_directory.resolve())
    return ToolOutcome("\n".join(entries) if entries else "(empty directory)")


def _glob_sync(root: Path, base: Path, pattern: str) -> list[str]:
    matches = []
    for match in sorted(base.glob(pattern)):
        if any(part in _SKIP_DIRS for part in match.relative_to(base).parts):
            continue
        matches.append(match.relative_to(root).as_posix())
        if len(matches) >= _MAX_MATCHES:
            break
    return matches


async def glob_files(arguments: dict[str, Any], context: ToolExecutionContext) -> ToolOutcome:
    pattern = _str_arg(arguments, "pattern")
    base = context.resolve_path(arguments.get("path") or ".")
    root = context.working_directory.resolve()
    matches = await asyncio.to_thread(_glob_sync, root, base, pattern)
    return ToolOutcome("\n".join(matches) if matches else f"No files match {pattern}")


def _grep_sync(root: Path, base: Path, regex: re.Pattern[str], include: str | None) -> list[str]:
    results: list[str] = []
    files = [base] if base.is_file() else None
    if files is None:
        files = []
        for dirpath, dirnames, filenames in os.walk(base):
            dirnames[:] = sorted(d for d in dirnames if d not in _SKIP_DIRS)
            for name in sorted(filenames):
                path = Path(dirpath) / name
                if include and not path.match(include):
                    continue
                files.append(path)
    for path in files:
        try:
            if path.stat().st_size > _MAX_FILE_SIZE:
                continue
            text = path.read_text(encoding="utf-8")
        except (UnicodeDecodeError, OSError):
            continue
        for lineno, line in enumerate(text.splitlines(), start=1):
            if regex.search(line):
                results.append(f"{path.relative_to(root).as_posix()}:{lineno}: {line.strip()}")
                if len(results) >= _MAX_MATCHES:
                    return results
    return results


async def grep(arguments: dict[str, Any], context: ToolExecutionContext) -> ToolOutcome:
    pattern = _str_arg(arguments, "pattern")
    try:
        regex = re.compile(pattern, 0 if arguments.get("case_sensitive", True) else re.IGNORECASE)
    except re.error as e:
        raise ToolError(ToolErrorKind.INVALID_INPUT, f"Invalid regex '{pattern}': {e}") from e
    base = context.resolve_path(arguments.get("path") or ".")
    root = context.working_directory.resolve()
    results = await asyncio.to_thread(_grep_sync, root, base, regex, arguments.get("include"))
    return ToolOutcome("\n".join(results) if results else f"No matches for {pattern}")


# ---------------------------------------------------------------------------
# Mutating tools
# ---------------------------------------------------------------------------


async def write_file(arguments: dict[str, Any], context: ToolExecutionContext) -> ToolOutcome:
    path = _str_arg(arguments, "path")
    content = arguments.get("content")
    if not isinstance(content, str):
        raise ToolError(ToolErrorKind.INVALID_INPUT, "'content' must be a string")
    target = context.resolve_path(path)

    await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)
    await asyncio.to_thread(target.write_text, content, encoding="utf-8")
    logger.info("Wrote %s (%d bytes)", target, len(content))
    return ToolOutcome(
        f"File written successfully: {path}\nSize: {len(content):,} bytes",
        metadata={"path": str(target), "bytes": len(content)},
    )


async def edit_file(arguments: dict[str, Any], context: ToolExecutionContext) -> ToolOutcome:
    path = _str_arg(arguments, "path")
    old = _str_arg(arguments, "old_string")
    new = arguments.get("new_string")
    if not isinstance(new, str):
        raise ToolError(ToolErrorKind.INVALID_INPUT, "'new_string' must be a string")
    replace_all = bool(arguments.get("replace_all", False))
    target = context.resolve_path(path)
    if not target.is_file():
        raise ToolError(ToolErrorKind.FILE_NOT_FOUND, f"File not found: {path}")

    text = await asyncio.to_thread(target.read_text, encoding="utf-8")
    count = text.count(old)
    if count == 0:
        raise ToolError(ToolErrorKind.INVALID_INPUT, f"old_string not found in {path}")
    if count > 1 and not replace_all:
        raise ToolError(
            ToolErrorKind.INVALID_INPUT,
            f"old_string occurs {count} times in {path}; pass replace_all or add context",
        )
    updated = text.replace(old, new) if replace_all else text.replace(old, new, 1)
    await asyncio.to_thread(target.write_text, updated, encoding="utf-8")
    replaced = count if replace_all else 1
    logger.info("Edited %s (%d replacement(s))", target, replaced)
    return ToolOutcome(f"Edited {path}: {replaced} replacement(s)", metadata={"path": str(target)})


def make_bash(max_timeout: int):
    async def bash(arguments: dict[str, Any], context: ToolExecutionContext) -> ToolOutcome:
        command = _str_arg(arguments, "command")
        requested = arguments.get("timeout") or context.timeout_secs
        effective_timeout = max(1, min(int(requested), max_timeout))

        workspace = context.working_directory
        env = {**os.environ, **context.env_vars} if context.env_vars else None
        proc = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(workspace),
            env=env,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=effective_timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise ToolError(
                ToolErrorKind.TIMEOUT,
                f"Command timed out after {effective_timeout}s.\nCommand: {command}",
            )

        stdout_text = _truncate(stdout.decode("utf-8", errors="replace"))
        stderr_text = _truncate(stderr.decode("utf-8", errors="replace"), "stderr")
        parts = []
        if stdout_text:
            parts.append(stdout_text)
        if stderr_text:
            parts.append(f"STDERR:\n{stderr_text}")
        if proc.returncode != 0:
            parts.append(f"Exit code: {proc.returncode}")
        output = "\n".join(parts) if parts else "(no output)"
        return ToolOutcome(output, is_error=proc.returncode != 0, metadata={"exit_code": proc.returncode})

    return bash


# ---------------------------------------------------------------------------
# Tool schemas
# ---------------------------------------------------------------------------

_PATH = {"type": "string", "description": "Path relative to the working directory"}

_READ_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "path": _PATH,
        "offset": {"type": "integer", "description": "Line offset (0-indexed)", "default": 0, "minimum": 0},
        "limit": {"type": "integer", "description": "Number of lines (0 = all)", "default": 0, "minimum": 0},
    },
    "required": ["path"],
}

_LIST_DIR_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {"path": {**_PATH, "default": "."}},
}

_GLOB_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "pattern": {"type": "string", "description": "Glob pattern, e.g. **/*.py"},
        "path": {**_PATH, "default": "."},
    },
    "required": ["pattern"],
}

_GREP_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "pattern": {"type": "string", "description": "Regular expression"},
        "path": {**_PATH, "default": "."},
        "include": {"type": "string", "description": "Only search files matching this glob"},
        "case_sensitive": {"type": "boolean", "default": True},
    },
    "required": ["pattern"],
}

_WRITE_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "path": _PATH,
        "content": {"type": "string", "description": "Full file content"},
    },
    "required": ["path", "content"],
}

_EDIT_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "path": _PATH,
        "old_string": {"type": "string", "description": "Exact text to replace"},
        "new_string": {"type": "string", "description": "Replacement text"},
        "replace_all": {"type": "boolean", "default": False},
    },
    "required": ["path", "old_string", "new_string"],
}

_BASH_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "command": {"type": "string", "description": "Shell command to execute"},
        "timeout": {"type": "integer", "description": "Timeout in seconds", "minimum": 1},
    },
    "required": ["command"],
}


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def register_builtin_tools(registry: ToolRegistry, settings: Settings) -> None:
    read = frozenset({Capability.READ})
    registry.register(Tool("read_file", "Read a file from the working directory", _READ_FILE_SCHEMA, read_file, read))
    registry.register(Tool("list_dir", "List a directory in the working directory", _LIST_DIR_SCHEMA, list_dir, read))
    registry.register(Tool("glob", "Find files by glob pattern", _GLOB_SCHEMA, glob_files, read))
    registry.register(Tool("grep", "Search file contents with a regular expression", _GREP_SCHEMA, grep, read))
    registry.register(
        Tool(
            "write_file",
            "Create or overwrite a file in the working directory",
            _WRITE_FILE_SCHEMA,
            write_file,
            frozenset({Capability.WRITE}),
        )
    )
    registry.register(
        Tool(
            "edit_file",
            "Replace exact text in an existing file",
            _EDIT_FILE_SCHEMA,
            edit_file,
            frozenset({Capability.READ, Capability.WRITE}),
        )
    )
    registry.register(
        Tool(
            "bash",
            "Execute a shell command in the working directory",
            _BASH_SCHEMA,
            make_bash(settings.bash_max_timeout),
            frozenset({Capability.EXECUTE}),
            timeout=settings.bash_max_timeout + 5,
        )
    )
