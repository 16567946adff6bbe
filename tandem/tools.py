"""Tool registry, argument decoding and the built-in tool implementations.

The agent loop only sees ``ToolRegistry.execute(name, arguments)``: a closed,
immutable set of tools matched by exact name. Unknown or disabled tools yield
an explanatory string rather than an exception, so the model can react.
"""

import fnmatch
import json
import logging
import os
import re
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Callable

from .cancel import CancelToken
from .fetch import DEFAULT_TIMEOUT as FETCH_TIMEOUT
from .fetch import fetch_url

logger = logging.getLogger(__name__)

MAX_OUTPUT_BYTES = 50 * 1024  # 50 KB
MAX_LINE_LENGTH = 2000
BINARY_CHECK_BYTES = 8 * 1024  # 8 KB
MAX_LIST_RESULTS = 100
MAX_GREP_MATCHES = 100
MAX_LS_ENTRIES = 500
DEFAULT_TIMEOUT = 120
MAX_TIMEOUT = 600
_POLL_INTERVAL = 0.1
_KILL_WAIT_TIMEOUT = 5


class ToolArgumentError(ValueError):
    """The model's arguments do not fit the tool's schema."""


@dataclass(frozen=True)
class ToolContext:
    base_dir: str = "."
    cancel: CancelToken | None = None
    # The registry running the call, so Batch can run other tools.
    registry: "ToolRegistry | None" = None
    # Answers a prompt with a restricted sub-agent; None where unavailable.
    subagent: Callable[[str], str] | None = None


@dataclass(frozen=True)
class Tool:
    name: str
    description: str
    parameters: dict
    handler: Callable[[dict, ToolContext], str]
    # Field that receives the value when the model sends a bare string.
    primary_field: str | None = None

    def openai_schema(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def anthropic_schema(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.parameters,
        }


# ---------------------------------------------------------------------------
# Argument decoding
# ---------------------------------------------------------------------------

_JSON_TYPES: dict[str, type | tuple[type, ...]] = {
    "string": str,
    "integer": int,
    "number": (int, float),
    "boolean": bool,
    "array": list,
    "object": dict,
}


def _validate(tool: Tool, args: dict) -> dict:
    schema = tool.parameters
    for key in schema.get("required", []):
        if key not in args:
            raise ToolArgumentError(f"{tool.name}: missing required argument {key!r}")
    for key, prop in schema.get("properties", {}).items():
        if key not in args or "type" not in prop:
            continue
        expected = _JSON_TYPES.get(prop["type"])
        value = args[key]
        if expected is None:
            continue
        # bool is a subclass of int; only accept it where a boolean is declared
        if isinstance(value, bool) and prop["type"] != "boolean":
            raise ToolArgumentError(
                f"{tool.name}: {key!r} expected {prop['type']}, got boolean"
            )
        if not isinstance(value, expected):
            raise ToolArgumentError(
                f"{tool.name}: {key!r} expected {prop['type']}, "
                f"got {type(value).__name__}"
            )
    return args


def decode_arguments(tool: Tool, raw: str | bytes | None) -> dict:
    """Decode the model's raw JSON arguments for ``tool``.

    Tries a strict JSON object first. A JSON string that wraps an object is
    decoded once more. Any other bare string is assigned to the tool's
    primary field, if it declares one.
    """
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    text = (raw or "").strip() or "{}"

    try:
        value = json.loads(text)
    except json.JSONDecodeError as e:
        if text.startswith("{"):
            raise ToolArgumentError(f"{tool.name}: invalid JSON arguments: {e}")
        value = text

    if isinstance(value, str):
        inner = value.strip()
        if inner.startswith("{") and inner.endswith("}"):
            try:
                value = json.loads(inner)
            except json.JSONDecodeError as e:
                raise ToolArgumentError(
                    f"{tool.name}: invalid JSON arguments inside string: {e}"
                )
        elif tool.primary_field:
            logger.debug(
                "Treating bare string as %s.%s", tool.name, tool.primary_field
            )
            return _validate(tool, {tool.primary_field: value})
        else:
            raise ToolArgumentError(
                f"{tool.name}: expected a JSON object, got a bare string"
            )

    if not isinstance(value, dict):
        raise ToolArgumentError(
            f"{tool.name}: expected a JSON object, got {type(value).__name__}"
        )
    return _validate(tool, value)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ToolRegistry:
    """Immutable, closed set of tools plus the subset enabled for this run."""

    def __init__(self, tools, enabled=None):
        by_name = {}
        for tool in tools:
            if tool.name in by_name:
                raise ValueError(f"duplicate tool name {tool.name!r}")
            by_name[tool.name] = tool
        self._tools = MappingProxyType(by_name)
        if enabled is None:
            enabled = list(by_name)
        unknown = [n for n in enabled if n not in by_name]
        if unknown:
            raise ValueError(f"unknown tools enabled: {', '.join(unknown)}")
        self._enabled = frozenset(enabled)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self.enabled_tools)

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    @property
    def enabled_tools(self) -> list[Tool]:
        return [t for t in self._tools.values() if t.name in self._enabled]

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def openai_declarations(self) -> list[dict]:
        return [t.openai_schema() for t in self.enabled_tools]

    def anthropic_declarations(self) -> list[dict]:
        return [t.anthropic_schema() for t in self.enabled_tools]

    def execute(
        self,
        name: str,
        arguments: str | bytes | None,
        *,
        base_dir: str = ".",
        cancel: CancelToken | None = None,
        subagent: Callable[[str], str] | None = None,
    ) -> str:
        """Run tool ``name`` with its raw JSON ``arguments``.

        Returns the tool's text output. Raises ToolArgumentError on bad
        arguments and lets handler exceptions propagate; the agent loop turns
        both into a textual result.
        """
        tool = self._tools.get(name)
        if tool is None:
            return f"Tool {name} is not implemented yet."
        if name not in self._enabled:
            return f"Tool {name} is not enabled."
        args = decode_arguments(tool, arguments)
        ctx = ToolContext(
            base_dir=base_dir, cancel=cancel, registry=self, subagent=subagent
        )
        return tool.handler(args, ctx)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _resolve(path: str, base_dir: str) -> Path:
    p = Path(path).expanduser()
    if not p.is_absolute():
        p = Path(base_dir) / p
    return p.resolve()


def _display(path: Path, base_dir: str) -> str:
    try:
        return str(path.relative_to(Path(base_dir).resolve()))
    except ValueError:
        return str(path)


def _cap(text: str, note: str) -> str:
    data = text.encode("utf-8")
    if len(data) <= MAX_OUTPUT_BYTES:
        return text
    head = data[:MAX_OUTPUT_BYTES].decode("utf-8", errors="ignore")
    return head + f"\n[{note}]"


def _is_binary(path: Path) -> bool:
    with open(path, "rb") as f:
        return b"\x00" in f.read(BINARY_CHECK_BYTES)


def _check_dir(root: Path, path: str) -> str | None:
    if not root.exists():
        return f"error: path does not exist: {path}"
    if not root.is_dir():
        return f"error: path is not a directory: {path}"
    return None


# ---------------------------------------------------------------------------
# Bash
# ---------------------------------------------------------------------------


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process and its descendants, then wait for exit."""
    if sys.platform != "win32":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    try:
        proc.kill()
    except OSError:
        pass
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        pass


def _bash(args: dict, ctx: ToolContext) -> str:
    command = args["command"]
    if not command.strip():
        return "error: command is empty"
    timeout = args.get("timeout") or DEFAULT_TIMEOUT
    timeout = max(1, min(timeout, MAX_TIMEOUT))

    if sys.platform == "win32":
        shell_cmd = ["cmd.exe", "/c", command]
    else:
        shell_cmd = ["/bin/sh", "-c", command]

    popen_kwargs: dict = dict(
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        stdin=subprocess.DEVNULL,
        cwd=ctx.base_dir,
    )
    if sys.platform != "win32":
        popen_kwargs["start_new_session"] = True
    try:
        proc = subprocess.Popen(shell_cmd, **popen_kwargs)
    except OSError as e:
        return f"error: failed to start shell command: {e}"

    chunks: list[bytes] = []

    def _reader():
        try:
            for chunk in iter(lambda: proc.stdout.read(4096), b""):
                chunks.append(chunk)
        except (OSError, ValueError):
            pass  # pipe closed after kill

    reader = threading.Thread(target=_reader, daemon=True)
    reader.start()

    deadline = time.monotonic() + timeout
    stopped = None
    while True:
        try:
            proc.wait(timeout=_POLL_INTERVAL)
            break
        except subprocess.TimeoutExpired:
            pass
        if ctx.cancel is not None and ctx.cancel.is_canceled:
            stopped = "error: command canceled by user"
            break
        if time.monotonic() >= deadline:
            stopped = f"error: command timed out after {timeout}s"
            break
    if stopped:
        _kill_process_tree(proc)

    reader.join(timeout=2)
    proc.stdout.close()

    output = b"".join(chunks).decode("utf-8", errors="replace")
    parts: list[str] = []
    if stopped:
        parts.append(stopped)
    elif proc.returncode != 0:
        parts.append(f"Exit code: {proc.returncode}")
    if output:
        parts.append(output)
    result = "\n".join(parts) if parts else "(no output)"
    return _cap(result, "output truncated at 50KB")


# ---------------------------------------------------------------------------
# View
# ---------------------------------------------------------------------------


def _view(args: dict, ctx: ToolContext) -> str:
    file_path = args["file_path"]
    offset = args.get("offset") or 1
    limit = args.get("limit") or 2000
    resolved = _resolve(file_path, ctx.base_dir)

    if not resolved.exists():
        return f"error: path does not exist: {file_path}"
    if resolved.is_dir():
        return f"error: {file_path} is a directory, use Ls to list it"
    if _is_binary(resolved):
        return f"error: binary file detected: {file_path}"
    try:
        text = resolved.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        return f"error: failed to decode {file_path} as UTF-8: {e}"

    lines = text.splitlines()
    start = max(offset - 1, 0)
    selected = lines[start : start + limit]

    output_parts = []
    total_bytes = 0
    for i, line in enumerate(selected, start=start + 1):
        if len(line) > MAX_LINE_LENGTH:
            line = line[:MAX_LINE_LENGTH]
        numbered = f"{i}: {line}"
        encoded_len = len(numbered.encode("utf-8")) + 1
        if total_bytes + encoded_len > MAX_OUTPUT_BYTES:
            break
        output_parts.append(numbered)
        total_bytes += encoded_len

    result = "\n".join(output_parts)
    remaining = len(lines) - (start + len(output_parts))
    if remaining > 0:
        next_offset = start + len(output_parts) + 1
        result += f"\n[{remaining} more lines, use offset={next_offset} to continue]"
    return result


# ---------------------------------------------------------------------------
# Ls / FindFiles / Grep
# ---------------------------------------------------------------------------


def _ls(args: dict, ctx: ToolContext) -> str:
    path = args.get("path") or "."
    ignore = args.get("ignore") or []
    root = _resolve(path, ctx.base_dir)
    err = _check_dir(root, path)
    if err:
        return err

    lines = [f"{root}/"]
    truncated = False

    def _walk(directory: Path, indent: str) -> None:
        nonlocal truncated
        try:
            children = sorted(directory.iterdir(), key=lambda c: c.name)
        except PermissionError:
            return
        for child in children:
            name = child.name
            if name.startswith(".") or any(fnmatch.fnmatch(name, g) for g in ignore):
                continue
            if len(lines) > MAX_LS_ENTRIES:
                truncated = True
                return
            if child.is_dir() and not child.is_symlink():
                lines.append(f"{indent}- {name}/")
                _walk(child, indent + "  ")
            else:
                lines.append(f"{indent}- {name}")

    _walk(root, "  ")
    result = "\n".join(lines)
    if truncated:
        result += (
            f"\n(Listing truncated at {MAX_LS_ENTRIES} entries. "
            "Use a more specific path.)"
        )
    return result


def _find_files(args: dict, ctx: ToolContext) -> str:
    pattern = args["pattern"]
    path = args.get("path") or "."
    root = _resolve(path, ctx.base_dir)
    err = _check_dir(root, path)
    if err:
        return err

    matched = [
        p for p in root.glob(pattern) if p.is_file() and ".git" not in p.parts
    ]
    if not matched:
        return "No files matched the pattern."

    # Newest first
    matched.sort(key=lambda f: f.stat().st_mtime, reverse=True)
    truncated = len(matched) > MAX_LIST_RESULTS
    result = "\n".join(_display(p, ctx.base_dir) for p in matched[:MAX_LIST_RESULTS])
    if truncated:
        result += (
            f"\n(Results truncated: showing first {MAX_LIST_RESULTS} results. "
            "Use a more specific pattern or path.)"
        )
    return result


def _grep(args: dict, ctx: ToolContext) -> str:
    pattern = args["pattern"]
    path = args.get("path") or "."
    include = args.get("include")
    try:
        regex = re.compile(pattern)
    except re.error as e:
        return f"error: invalid regex {pattern!r}: {e}"

    root = _resolve(path, ctx.base_dir)
    err = _check_dir(root, path)
    if err:
        return err

    # (file, line_no, line, mtime); sorted before capping so the newest files win
    matches: list[tuple[Path, int, str, float]] = []
    for dirpath, dirs, files in os.walk(root):
        dirs[:] = [d for d in dirs if d != ".git"]
        for filename in files:
            if include and not fnmatch.fnmatch(filename, include):
                continue
            filepath = Path(dirpath) / filename
            try:
                if _is_binary(filepath):
                    continue
                text = filepath.read_text(encoding="utf-8")
                mtime = filepath.stat().st_mtime
            except (UnicodeDecodeError, OSError):
                continue
            for line_no, line in enumerate(text.splitlines(), start=1):
                if regex.search(line):
                    matches.append((filepath, line_no, line, mtime))

    if not matches:
        return "No matches found."

    matches.sort(key=lambda m: (-m[3], m[0], m[1]))
    total_found = len(matches)

    output_parts = [f"Found {total_found} matches"]
    current = None
    for filepath, line_no, line, _ in matches[:MAX_GREP_MATCHES]:
        if filepath != current:
            current = filepath
            output_parts.append(f"\n{_display(filepath, ctx.base_dir)}:")
        output_parts.append(f"  Line {line_no}: {line[:MAX_LINE_LENGTH]}")

    result = "\n".join(output_parts)
    if total_found > MAX_GREP_MATCHES:
        result += (
            f"\n(Results truncated: showing first {MAX_GREP_MATCHES} matches. "
            "Use a more specific pattern or path.)"
        )
    return _cap(result, "output truncated at 50KB")


# ---------------------------------------------------------------------------
# Edit / Replace
# ---------------------------------------------------------------------------


def _edit(args: dict, ctx: ToolContext) -> str:
    file_path = args["file_path"]
    old_string = args["old_string"]
    new_string = args["new_string"]
    expected = args.get("expected_replacements") or 1
    resolved = _resolve(file_path, ctx.base_dir)

    if not old_string:
        if resolved.exists():
            return "error: old_string must not be empty when the file exists"
        resolved.parent.mkdir(parents=True, exist_ok=True)
        resolved.write_text(new_string, encoding="utf-8")
        return f"Created {file_path}"

    if not resolved.exists():
        return f"error: file does not exist: {file_path}"
    content = resolved.read_text(encoding="utf-8")

    count = content.count(old_string)
    if count == 0:
        return f"error: old_string not found in {file_path}"
    if count != expected:
        return (
            f"error: found {count} occurrences of old_string in {file_path}, "
            f"expected {expected}. Add more context or set expected_replacements."
        )
    resolved.write_text(content.replace(old_string, new_string), encoding="utf-8")
    return f"Edited {file_path} ({count} replacement{'s' if count != 1 else ''})"


def _replace(args: dict, ctx: ToolContext) -> str:
    file_path = args["file_path"]
    resolved = _resolve(file_path, ctx.base_dir)
    if resolved.is_dir():
        return f"error: {file_path} is a directory"
    resolved.parent.mkdir(parents=True, exist_ok=True)
    data = args["content"].encode("utf-8")
    resolved.write_bytes(data)
    return f"Wrote {len(data)} bytes to {file_path}"


# ---------------------------------------------------------------------------
# Fetch / Batch / DispatchAgent
# ---------------------------------------------------------------------------

# Read-only tools a dispatched sub-agent may use.
DISPATCH_AGENT_TOOLS = ("FindFiles", "Grep", "Ls", "View")


def _fetch(args: dict, ctx: ToolContext) -> str:
    return fetch_url(
        args["url"],
        format=args.get("format") or "markdown",
        method=args.get("method") or "GET",
        headers=args.get("headers"),
        data=args.get("data"),
        timeout=args.get("timeout") or FETCH_TIMEOUT,
    )


def _batch(args: dict, ctx: ToolContext) -> str:
    invocations = args["invocations"]
    if not invocations:
        return "error: at least one invocation required"
    if ctx.registry is None:
        return "error: Batch is not available here"

    results = []
    for inv in invocations:
        if ctx.cancel is not None and ctx.cancel.is_canceled:
            results.append("error: batch canceled by user")
            break
        if not isinstance(inv, dict) or not isinstance(inv.get("tool_name"), str):
            results.append("error: each invocation needs a tool_name and an input object")
            continue
        name = inv["tool_name"]
        if name == "Batch":
            results.append(f"{name}: error: Batch cannot be nested")
            continue
        try:
            text = ctx.registry.execute(
                name,
                json.dumps(inv.get("input") or {}),
                base_dir=ctx.base_dir,
                cancel=ctx.cancel,
                subagent=ctx.subagent,
            )
        except Exception as e:
            logger.debug("Batch invocation %s raised: %s", name, e, exc_info=True)
            text = f"error: {e}"
        results.append(f"{name}: {text}")
    return "\n".join(results)


def _dispatch_agent(args: dict, ctx: ToolContext) -> str:
    prompt = args["prompt"]
    if not prompt.strip():
        return "error: prompt is empty"
    if ctx.subagent is None:
        return "error: DispatchAgent is not available here"
    return ctx.subagent(prompt)


# ---------------------------------------------------------------------------
# Declarations
# ---------------------------------------------------------------------------

BUILTIN_TOOLS: tuple[Tool, ...] = (
    Tool(
        name="Bash",
        description=(
            "Run a shell command in the working directory and return its combined "
            "stdout/stderr. Non-zero exit codes are reported, not treated as failures. "
            "Output beyond 50KB is truncated."
        ),
        parameters={
            "type": "object",
            "properties": {
                "command": {
                    "type": "string",
                    "description": "The command to execute (passed to /bin/sh -c).",
                },
                "timeout": {
                    "type": "integer",
                    "description": f"Timeout in seconds (1-{MAX_TIMEOUT}). Defaults to {DEFAULT_TIMEOUT}.",
                },
                "description": {
                    "type": "string",
                    "description": "Short description of what the command does.",
                },
            },
            "required": ["command"],
        },
        handler=_bash,
        primary_field="command",
    ),
    Tool(
        name="View",
        description=(
            "Read a text file. Returns lines prefixed with 1-based line numbers. "
            "Use offset/limit to page through large files."
        ),
        parameters={
            "type": "object",
            "properties": {
                "file_path": {
                    "type": "string",
                    "description": "Path of the file to read.",
                },
                "offset": {
                    "type": "integer",
                    "description": "1-based line to start from. Defaults to 1.",
                },
                "limit": {
                    "type": "integer",
                    "description": "Maximum number of lines to return. Defaults to 2000.",
                },
            },
            "required": ["file_path"],
        },
        handler=_view,
        primary_field="file_path",
    ),
    Tool(
        name="Ls",
        description=(
            "List a directory tree. Hidden entries are skipped; directories end with '/'."
        ),
        parameters={
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Directory to list. Defaults to the working directory.",
                },
                "ignore": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Glob patterns of names to skip.",
                },
            },
        },
        handler=_ls,
        primary_field="path",
    ),
    Tool(
        name="FindFiles",
        description=(
            "Find files matching a glob pattern such as '**/*.py'. "
            "Results are sorted by modification time, newest first."
        ),
        parameters={
            "type": "object",
            "properties": {
                "pattern": {
                    "type": "string",
                    "description": "Glob pattern to match.",
                },
                "path": {
                    "type": "string",
                    "description": "Directory to search in. Defaults to the working directory.",
                },
            },
            "required": ["pattern"],
        },
        handler=_find_files,
        primary_field="pattern",
    ),
    Tool(
        name="Grep",
        description=(
            "Search file contents with a regular expression. Matches are grouped "
            "by file with line numbers, newest files first."
        ),
        parameters={
            "type": "object",
            "properties": {
                "pattern": {
                    "type": "string",
                    "description": "Python regular expression to search for.",
                },
                "path": {
                    "type": "string",
                    "description": "Directory to search in. Defaults to the working directory.",
                },
                "include": {
                    "type": "string",
                    "description": "Glob filter on file names, e.g. '*.py'.",
                },
            },
            "required": ["pattern"],
        },
        handler=_grep,
        primary_field="pattern",
    ),
    Tool(
        name="Edit",
        description=(
            "Replace old_string with new_string in a file. old_string must match "
            "exactly expected_replacements times (default 1). With an empty "
            "old_string and a missing file, the file is created with new_string."
        ),
        parameters={
            "type": "object",
            "properties": {
                "file_path": {"type": "string", "description": "File to edit."},
                "old_string": {"type": "string", "description": "Exact text to replace."},
                "new_string": {"type": "string", "description": "Replacement text."},
                "expected_replacements": {
                    "type": "integer",
                    "description": "Number of occurrences expected. Defaults to 1.",
                },
            },
            "required": ["file_path", "old_string", "new_string"],
        },
        handler=_edit,
    ),
    Tool(
        name="Replace",
        description="Create or overwrite a file with the given content.",
        parameters={
            "type": "object",
            "properties": {
                "file_path": {"type": "string", "description": "File to write."},
                "content": {"type": "string", "description": "Full new content."},
            },
            "required": ["file_path", "content"],
        },
        handler=_replace,
    ),
    Tool(
        name="Fetch",
        description=(
            "Fetch a public http(s) URL. HTML pages are returned as markdown "
            "(or plain text with format='text'); JSON and other text bodies are "
            "returned as is. Private and loopback addresses are refused. "
            "Output beyond 50KB is truncated."
        ),
        parameters={
            "type": "object",
            "properties": {
                "url": {"type": "string", "description": "URL to fetch."},
                "format": {
                    "type": "string",
                    "enum": ["markdown", "text", "raw"],
                    "description": "How to render HTML. Defaults to markdown.",
                },
                "method": {
                    "type": "string",
                    "description": "HTTP method. Defaults to GET.",
                },
                "headers": {
                    "type": "object",
                    "additionalProperties": {"type": "string"},
                    "description": "Extra request headers.",
                },
                "data": {
                    "type": "string",
                    "description": "Request body, for POST, PUT and similar methods.",
                },
                "timeout": {
                    "type": "integer",
                    "description": "Timeout in seconds (1-120). Defaults to 30.",
                },
            },
            "required": ["url"],
        },
        handler=_fetch,
        primary_field="url",
    ),
    Tool(
        name="Batch",
        description=(
            "Run several tool invocations in one call, in order. Each result is "
            "prefixed with its tool name; a failing invocation does not stop the "
            "others. Only enabled tools can be invoked."
        ),
        parameters={
            "type": "object",
            "properties": {
                "description": {
                    "type": "string",
                    "description": "Short description of the batch.",
                },
                "invocations": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "tool_name": {"type": "string"},
                            "input": {"type": "object"},
                        },
                        "required": ["tool_name", "input"],
                    },
                    "description": "Tool invocations to run.",
                },
            },
            "required": ["invocations"],
        },
        handler=_batch,
    ),
    Tool(
        name="DispatchAgent",
        description=(
            "Hand a self-contained research task to a sub-agent that can only "
            f"use {', '.join(DISPATCH_AGENT_TOOLS)}. It starts with a fresh "
            "conversation and returns its final answer. Use it for open-ended "
            "searches across the codebase."
        ),
        parameters={
            "type": "object",
            "properties": {
                "prompt": {
                    "type": "string",
                    "description": "The full task for the sub-agent.",
                },
            },
            "required": ["prompt"],
        },
        handler=_dispatch_agent,
        primary_field="prompt",
    ),
)


def build_registry(enabled: list[str] | None = None) -> ToolRegistry:
    """Registry of the built-in tools, optionally restricted to ``enabled``."""
    return ToolRegistry(BUILTIN_TOOLS, enabled=enabled)
