"""Tool definitions and implementations for the agent."""

import glob as _glob
import json
import os
import subprocess
import sys
from functools import partial
from pathlib import Path

from .memory import MemoryStore
from .registry import ToolDefinition, ToolRegistry
from .search import WebSearch

MAX_OUTPUT_BYTES = 50 * 1024  # 50 KB
BINARY_CHECK_BYTES = 8 * 1024  # 8 KB
DEFAULT_SHELL_TIMEOUT = 120
_KILL_WAIT_TIMEOUT = 5  # seconds to wait for process to die after kill signals

COMMAND_CANCELLED = "Command execution cancelled by user."
EDIT_CANCELLED = "Edit cancelled."

RUN_SHELL_COMMAND_PARAMS = {
    "type": "object",
    "properties": {
        "command": {"type": "string", "description": "The shell command to run"},
    },
    "required": ["command"],
}

LS_PARAMS = {
    "type": "object",
    "properties": {
        "path": {"type": "string", "description": "Absolute directory path"},
    },
    "required": ["path"],
}

READ_FILE_PARAMS = {
    "type": "object",
    "properties": {
        "file_path": {"type": "string", "description": "Absolute file path"},
    },
    "required": ["file_path"],
}

READ_MANY_FILES_PARAMS = {
    "type": "object",
    "properties": {
        "file_paths": {
            "type": "array",
            "items": {"type": "string"},
            "description": "Array of absolute file paths",
        },
    },
    "required": ["file_paths"],
}

GREP_PARAMS = {
    "type": "object",
    "properties": {
        "pattern": {"type": "string", "description": "Search pattern"},
        "path": {"type": "string", "description": "Absolute path to search in"},
    },
    "required": ["pattern", "path"],
}

GLOB_PARAMS = {
    "type": "object",
    "properties": {
        "pattern": {"type": "string", "description": "Glob pattern, e.g., **/*.py"},
    },
    "required": ["pattern"],
}

EDIT_FILE_PARAMS = {
    "type": "object",
    "properties": {
        "file_path": {"type": "string", "description": "Absolute file path"},
        "new_content": {
            "type": "string",
            "description": "New content to replace with",
        },
    },
    "required": ["file_path", "new_content"],
}

BING_SEARCH_PARAMS = {
    "type": "object",
    "properties": {
        "query": {
            "type": "string",
            "description": 'The search query, e.g., "current date and time"',
        },
    },
    "required": ["query"],
}

MEMORY_PARAMS = {
    "type": "object",
    "properties": {
        "action": {
            "type": "string",
            "enum": ["store", "recall"],
            "description": "store or recall",
        },
        "key": {"type": "string"},
        "value": {"type": "string"},
    },
    "required": ["action", "key"],
}


def _resolve(path: str, base_dir: str) -> Path:
    """Resolve a path against base_dir unless it is already absolute."""
    p = Path(path).expanduser()
    if not p.is_absolute():
        p = Path(base_dir) / p
    return p


def _truncate(text: str) -> str:
    encoded = text.encode("utf-8")
    if len(encoded) <= MAX_OUTPUT_BYTES:
        return text
    head = encoded[:MAX_OUTPUT_BYTES].decode("utf-8", errors="ignore")
    return head + f"\n[truncated at 50KB, total was {len(encoded)} bytes]"


def _is_binary(path: Path) -> bool:
    with open(path, "rb") as f:
        chunk = f.read(BINARY_CHECK_BYTES)
    return b"\x00" in chunk


# ---------------------------------------------------------------------------
# Shell
# ---------------------------------------------------------------------------


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process and its descendants, then wait for exit."""
    if sys.platform != "win32":
        import signal

        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    else:
        try:
            subprocess.run(
                ["taskkill", "/T", "/F", "/PID", str(proc.pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired):
            pass
    try:
        proc.kill()
    except OSError:
        pass
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        pass


def _run_shell_command(
    command: str, base_dir: str, timeout: int = DEFAULT_SHELL_TIMEOUT
) -> str:
    """Run a shell string in base_dir.

    stdout on success, stderr when the command wrote any, otherwise an
    execution-error description.
    """
    if not command.strip():
        return "error: command must not be empty"
    if not Path(base_dir).is_dir():
        return f"error: base directory is not a directory: {base_dir}"

    if sys.platform == "win32":
        shell_cmd = ["cmd.exe", "/c", command]
    else:
        shell_cmd = ["/bin/sh", "-c", command]

    popen_kwargs: dict = dict(
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        stdin=subprocess.DEVNULL,
        cwd=base_dir,
    )
    if sys.platform != "win32":
        popen_kwargs["start_new_session"] = True

    try:
        proc = subprocess.Popen(shell_cmd, **popen_kwargs)
    except OSError as e:
        return f"Execution error: failed to start shell command: {e}"

    try:
        out, err = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        _kill_process_tree(proc)
        proc.communicate()
        return f"Execution error: command timed out after {timeout}s"

    stdout = out.decode("utf-8", errors="replace")
    stderr = err.decode("utf-8", errors="replace")

    if proc.returncode != 0:
        detail = stderr.strip() or stdout.strip()
        message = f"Execution error: command exited with status {proc.returncode}"
        return _truncate(f"{message}\n{detail}" if detail else message)
    if stderr:
        return _truncate(f"Error: {stderr}")
    return _truncate(f"Output: {stdout}")


# ---------------------------------------------------------------------------
# Filesystem
# ---------------------------------------------------------------------------


def _ls(path: str, base_dir: str) -> str:
    """Newline-joined names of the entries in a directory."""
    target = _resolve(path, base_dir)
    try:
        names = sorted(os.listdir(target))
    except OSError as e:
        return f"error: {e}"
    if not names:
        return "(empty directory)"
    return _truncate("\n".join(names))


def _read_text(path: Path, display: str) -> str:
    """Read a whole text file; raises OSError/ValueError with a usable message."""
    if not path.exists():
        raise FileNotFoundError(f"path does not exist: {display}")
    if path.is_dir():
        raise IsADirectoryError(f"path is a directory: {display}")
    if _is_binary(path):
        raise ValueError(f"binary file detected: {display}")
    try:
        return path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ValueError(f"failed to decode {display} as UTF-8: {e}") from e


def _read_file(file_path: str, base_dir: str) -> str:
    try:
        return _truncate(_read_text(_resolve(file_path, base_dir), file_path))
    except (OSError, ValueError) as e:
        return f"error: {e}"


def _read_many_files(file_paths: list[str], base_dir: str) -> str:
    """JSON object mapping each requested path to its content."""
    contents: dict[str, str] = {}
    for fp in file_paths:
        try:
            contents[fp] = _read_text(_resolve(fp, base_dir), fp)
        except (OSError, ValueError) as e:
            return f"error: {e}"
    return _truncate(json.dumps(contents, ensure_ascii=False))


def _grep(pattern: str, path: str, base_dir: str) -> str:
    """Report files under path whose content contains pattern literally."""
    if not pattern:
        return "error: pattern must not be empty"
    root = _resolve(path, base_dir)
    if not root.exists():
        return f"error: path does not exist: {path}"

    if root.is_file():
        candidates = [str(root)]
    else:
        candidates = _glob.glob(os.path.join(str(root), "**", "*"), recursive=True)

    found: list[str] = []
    for candidate in sorted(candidates):
        p = Path(candidate)
        if ".git" in p.parts or not p.is_file():
            continue
        try:
            if _is_binary(p):
                continue
            text = p.read_text(encoding="utf-8")
        except (UnicodeDecodeError, OSError):
            continue
        if pattern in text:
            found.append(f"Found in {candidate}")

    if not found:
        return "No matches found."
    return _truncate("\n".join(found))


def _glob_files(pattern: str, base_dir: str) -> str:
    """Absolute paths matching pattern; relative patterns start at base_dir."""
    if not pattern:
        return "error: pattern must not be empty"
    root = Path(base_dir).resolve()
    matches = _glob.glob(os.path.expanduser(pattern), root_dir=root, recursive=True)
    if not matches:
        return "No files matched the pattern."
    absolute = sorted({os.path.abspath(os.path.join(root, m)) for m in matches})
    return _truncate("\n".join(absolute))


def _edit_file(file_path: str, new_content: str, base_dir: str) -> str:
    """Overwrite the whole file with new_content."""
    target = _resolve(file_path, base_dir)
    if target.is_dir():
        return f"error: path is a directory: {file_path}"
    try:
        target.write_text(new_content, encoding="utf-8")
    except OSError as e:
        return f"error: {e}"
    return "File edited successfully."


# ---------------------------------------------------------------------------
# Memory
# ---------------------------------------------------------------------------


def _memory(args: dict, store: MemoryStore) -> str:
    action = args["action"]
    key = args["key"]
    if action == "store":
        value = args.get("value")
        if value is None:
            return "error: 'value' is required when action is 'store'"
        store.store(key, value)
        return "Stored."
    if action == "recall":
        return store.recall(key)
    return "Invalid action."


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


def build_registry(
    base_dir: str,
    memory: MemoryStore,
    *,
    search: WebSearch | None = None,
    shell_timeout: int = DEFAULT_SHELL_TIMEOUT,
) -> ToolRegistry:
    """Assemble the tool catalog bound to one working directory and memory store.

    The web search tool is only advertised when a search client is given.
    """
    definitions = [
        ToolDefinition(
            name="run_shell_command",
            description=(
                "Run a safe shell command and return output. "
                "Only use for non-destructive commands."
            ),
            parameters=RUN_SHELL_COMMAND_PARAMS,
            handler=lambda a: _run_shell_command(a["command"], base_dir, shell_timeout),
            side_effecting=True,
            confirm_prompt=lambda a: f"Run command: {a['command']}?",
            cancel_message=COMMAND_CANCELLED,
        ),
    ]

    if search is not None:
        definitions.append(
            ToolDefinition(
                name="bing_search",
                description=(
                    "Perform a search to get real-time information, including current "
                    "dates, times, news, or facts. Use for any time-sensitive or "
                    "external data needs."
                ),
                parameters=BING_SEARCH_PARAMS,
                handler=lambda a: search.search(a["query"]),
            )
        )

    definitions += [
        ToolDefinition(
            name="ls",
            description="List files in a directory",
            parameters=LS_PARAMS,
            handler=lambda a: _ls(a["path"], base_dir),
        ),
        ToolDefinition(
            name="read_file",
            description="Read the content of a file",
            parameters=READ_FILE_PARAMS,
            handler=lambda a: _read_file(a["file_path"], base_dir),
        ),
        ToolDefinition(
            name="grep",
            description="Search for a pattern in files",
            parameters=GREP_PARAMS,
            handler=lambda a: _grep(a["pattern"], a["path"], base_dir),
        ),
        ToolDefinition(
            name="edit_file",
            description="Replace the entire content of a file with new content",
            parameters=EDIT_FILE_PARAMS,
            handler=lambda a: _edit_file(a["file_path"], a["new_content"], base_dir),
            side_effecting=True,
            confirm_prompt=lambda a: f"Edit {a['file_path']}?",
            cancel_message=EDIT_CANCELLED,
        ),
        ToolDefinition(
            name="glob",
            description="Find files matching a pattern",
            parameters=GLOB_PARAMS,
            handler=lambda a: _glob_files(a["pattern"], base_dir),
        ),
        ToolDefinition(
            name="read_many_files",
            description="Read contents of multiple files",
            parameters=READ_MANY_FILES_PARAMS,
            handler=lambda a: _read_many_files(a["file_paths"], base_dir),
        ),
        ToolDefinition(
            name="memory",
            description="Store or recall user-specific facts",
            parameters=MEMORY_PARAMS,
            handler=partial(_memory, store=memory),
        ),
    ]

    return ToolRegistry(definitions)
