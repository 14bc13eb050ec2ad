"""System prompt assembly: base template, override files, environment fragments, memory."""

import os
import subprocess
from datetime import datetime
from pathlib import Path

from .errors import ConfigError

DEFAULT_SYSTEM_PROMPT_FILE = Path(__file__).parent / "system_prompt.txt"
PROJECT_DIR_NAME = ".oaicli"
SYSTEM_MD_ENV = "OPENAI_SYSTEM_MD"
MEMORY_FILENAME = "MEMORY.md"
MAX_MEMORY_CHARS = 10_000

SANDBOX_FRAGMENT = (
    "# Sandbox\n"
    "You are running in a sandbox with limited access to files outside the project "
    "directory or system temp directory, and limited access to host system resources "
    "such as ports. If you encounter failures due to sandboxing, explain to the user."
)

NO_SANDBOX_FRAGMENT = (
    "# Outside of Sandbox\n"
    "You are running directly on the user's system. For critical commands, remind the "
    "user to consider enabling sandboxing."
)

GIT_FRAGMENT = (
    "# Git Repository\n"
    "- The current working directory is managed by a git repository.\n"
    "- When committing, use run_shell_command for git status, diff, log, etc.\n"
    "- Propose draft commit messages.\n"
    "- Never push without user request."
)


def is_git_repository(base_dir: str) -> bool:
    try:
        proc = subprocess.run(
            ["git", "rev-parse", "--is-inside-work-tree"],
            cwd=base_dir,
            capture_output=True,
            timeout=10,
        )
    except (OSError, subprocess.TimeoutExpired):
        return False
    return proc.returncode == 0


def _memory_suffix(user_memory: str) -> str:
    return f"\n\n---\n\n{user_memory}" if user_memory else ""


def _override_path(
    base_dir: str, override_file: str | None, env: dict
) -> Path | None:
    """Locate a full-replacement prompt file, if any.

    An explicitly requested file must exist; the project-local one is optional.
    """
    explicit = override_file or env.get(SYSTEM_MD_ENV)
    if explicit:
        path = Path(explicit).expanduser().resolve()
        if not path.is_file():
            raise ConfigError(f"missing system prompt file: {path}")
        return path
    project = Path(base_dir).resolve() / PROJECT_DIR_NAME / "system.md"
    if project.is_file():
        return project
    return None


def build_system_prompt(
    base_dir: str,
    user_memory: str = "",
    *,
    override_file: str | None = None,
    env: dict | None = None,
) -> str:
    """Assemble the seed system message for a conversation."""
    env = os.environ if env is None else env

    override = _override_path(base_dir, override_file, env)
    if override is not None:
        try:
            text = override.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigError(f"cannot read system prompt file {override}: {e}")
        return text + _memory_suffix(user_memory)

    sections = [DEFAULT_SYSTEM_PROMPT_FILE.read_text(encoding="utf-8").strip()]
    sections.append(SANDBOX_FRAGMENT if env.get("SANDBOX") else NO_SANDBOX_FRAGMENT)
    if is_git_repository(base_dir):
        sections.append(GIT_FRAGMENT)
    now = datetime.now().astimezone()
    sections.append(f"Current date and time: {now.strftime('%Y-%m-%d %H:%M %Z')}")

    return "\n\n".join(sections) + _memory_suffix(user_memory)


def _read_capped(path: Path) -> str | None:
    if not path.is_file():
        return None
    try:
        with path.open(encoding="utf-8", errors="replace") as f:
            content = f.read(MAX_MEMORY_CHARS + 1)
    except OSError:
        return None
    if len(content) > MAX_MEMORY_CHARS:
        content = (
            content[:MAX_MEMORY_CHARS]
            + f"\n[truncated: {path.name} exceeds {MAX_MEMORY_CHARS} character limit]"
        )
    return content.strip()


def load_user_memory(base_dir: str, config_dir: Path | None = None) -> str:
    """Concatenate the global and project MEMORY.md files, when present."""
    candidates = []
    if config_dir is not None:
        candidates.append(Path(config_dir) / MEMORY_FILENAME)
    candidates.append(Path(base_dir).resolve() / PROJECT_DIR_NAME / MEMORY_FILENAME)

    parts = [text for text in (_read_capped(p) for p in candidates) if text]
    return "\n\n".join(parts)
