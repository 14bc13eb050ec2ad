"""Configuration file loading and merging for oaicli.

Reads TOML config from ~/.config/oaicli/config.toml (global) and
<base_dir>/oaicli.toml (project). Precedence: CLI > project > global > defaults.
Azure credentials and the search key may also come from the environment.
"""

import argparse
import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from .errors import ConfigError

_UNSET = object()  # Sentinel for "not set by CLI"

DEFAULT_API_VERSION = "2024-08-01-preview"

ENV_API_KEY = "AZURE_OPENAI_API_KEY"
ENV_ENDPOINT = "AZURE_OPENAI_ENDPOINT"
ENV_DEPLOYMENT = "AZURE_OPENAI_DEPLOYMENT"
ENV_API_VERSION = "AZURE_OPENAI_API_VERSION"
ENV_SEARCH_KEYS = ("BING_API_KEY", "SERPAPI_API_KEY")


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "model": str,
    "api_key": str,
    "endpoint": str,
    "api_version": str,
    "temperature": (int, float),
    "max_rounds": int,
    "query_timeout": (int, float),
    "max_retries": int,
    "compression_threshold": int,
    "tokenizer_model": str,
    "summary_model": str,
    "search_api_key": str,
    "system_prompt_file": str,
    "yolo": bool,
    "color": bool,
    "quiet": bool,
    "debug": bool,
}

_POSITIVE_INT_KEYS = {"max_rounds", "compression_threshold"}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "model": None,
    "api_key": None,
    "endpoint": None,
    "api_version": None,
    "temperature": 0.1,
    "max_rounds": 2,
    "query_timeout": 240,
    "max_retries": 2,
    "compression_threshold": 5000,
    "tokenizer_model": "gpt-4o",
    "summary_model": None,
    "search_api_key": None,
    "system_prompt_file": None,
    "yolo": False,
    "color": False,
    "no_color": False,
    "quiet": False,
    "debug": False,
}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "oaicli"
    return Path.home() / ".config" / "oaicli"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate value types in a parsed config dict.

    Raises ConfigError for type mismatches. Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int; reject it for non-bool fields.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )
        if key in _POSITIVE_INT_KEYS and value < 1:
            raise ConfigError(f"{source}: {key!r} must be at least 1, got {value}")


def _resolve_paths(config: dict, config_dir: Path) -> None:
    """Resolve a relative system_prompt_file against the config file's directory."""
    if "system_prompt_file" in config:
        p = Path(config["system_prompt_file"]).expanduser()
        if not p.is_absolute():
            p = config_dir / p
        config["system_prompt_file"] = str(p)


def _check_api_key_in_git(config: dict, config_path: Path) -> None:
    """Warn if a secret is set in a project config inside a git repo."""
    secrets = [k for k in ("api_key", "search_api_key") if k in config]
    if not secrets:
        return
    parent = config_path.parent
    while parent != parent.parent:
        if (parent / ".git").exists():
            print(
                f"warning: {config_path}: {', '.join(repr(s) for s in secrets)} in a "
                f"git-tracked project config may be committed accidentally. "
                f"Consider using an environment variable.",
                file=sys.stderr,
            )
            return
        parent = parent.parent


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e

    _validate_config(config, label)
    return {k: v for k, v in config.items() if k in CONFIG_KEYS}


# --- Public API ---


def load_config(base_dir: Path) -> dict:
    """Load and merge global + project config.

    Returns a flat dict holding only keys that were set in config files,
    plus ``config_dir`` (the resolved global config directory).
    """
    config_dir = global_config_dir()
    global_path = config_dir / "config.toml"
    global_config = _load_single(global_path, str(global_path))
    if global_config:
        _resolve_paths(global_config, global_path.parent)

    project_path = Path(base_dir).resolve() / "oaicli.toml"
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)
        _resolve_paths(project_config, project_path.parent)

    merged = {**global_config, **project_config}
    merged["config_dir"] = config_dir
    return merged


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to argparse namespace where CLI didn't set a value.

    Remaining _UNSET sentinels are then replaced with the hardcoded
    defaults from _ARGPARSE_DEFAULTS.
    """

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # A single config key controls the --color/--no-color pair
    if "color" in config:
        if _is_unset("color") and _is_unset("no_color"):
            args.color = config["color"]
            args.no_color = not config["color"]

    for key, value in config.items():
        if key in ("color", "config_dir"):
            continue
        if _is_unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)


def apply_env_to_args(args: argparse.Namespace, env=None) -> None:
    """Fill credentials and switches still unset after CLI and config from the environment."""
    env = os.environ if env is None else env

    if not args.api_key:
        args.api_key = env.get(ENV_API_KEY) or None
    if not args.endpoint:
        args.endpoint = env.get(ENV_ENDPOINT) or None
    if not args.model:
        args.model = env.get(ENV_DEPLOYMENT) or None
    if not args.api_version:
        args.api_version = env.get(ENV_API_VERSION) or DEFAULT_API_VERSION
    if not args.search_api_key:
        for name in ENV_SEARCH_KEYS:
            if env.get(name):
                args.search_api_key = env[name]
                break
    if not args.debug and env.get("DEBUG", "").lower() == "true":
        args.debug = True


def check_credentials(args: argparse.Namespace) -> None:
    """Raise ConfigError naming every missing Azure setting."""
    missing = []
    if not args.api_key:
        missing.append(ENV_API_KEY)
    if not args.endpoint:
        missing.append(ENV_ENDPOINT)
    if not args.model:
        missing.append(ENV_DEPLOYMENT)
    if missing:
        raise ConfigError(
            "missing Azure OpenAI settings: "
            + ", ".join(missing)
            + " (set them in the environment, a .env file, or oaicli.toml)"
        )


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# oaicli configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/oaicli.toml' if project else '~/.config/oaicli/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Azure OpenAI ---",
        '# model = "gpt-4o"                 # deployment name',
        '# endpoint = "https://my-resource.openai.azure.com"',
        '# api_key = "..."                  # prefer AZURE_OPENAI_API_KEY',
        f'# api_version = "{DEFAULT_API_VERSION}"',
        "",
        "# --- Generation ---",
        "# temperature = 0.1",
        "# query_timeout = 240",
        "# max_retries = 2",
        "",
        "# --- Agent behaviour ---",
        "# max_rounds = 2",
        "# compression_threshold = 5000",
        '# tokenizer_model = "gpt-4o"',
        '# summary_model = "gpt-4o-mini"   # deployment used for history snapshots',
        '# system_prompt_file = "system.md"',
        "# yolo = false",
        "",
        "# --- Web search ---",
        '# search_api_key = "..."           # prefer BING_API_KEY',
        "",
        "# --- UI ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        "# debug = false",
        "",
    ]
    return "\n".join(lines)
