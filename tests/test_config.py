"""Tests for oaicli.config: TOML loading, merging, CLI integration, credentials."""

import tomllib
from pathlib import Path

import pytest

from oaicli.agent import build_parser
from oaicli.config import (
    DEFAULT_API_VERSION,
    apply_config_to_args,
    apply_env_to_args,
    check_credentials,
    generate_config,
    global_config_dir,
    load_config,
)
from oaicli.errors import ConfigError


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _write_toml(path, content):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def _make_args(*argv):
    """Parse argv with the real parser so sentinels match main()."""
    return build_parser().parse_args(list(argv))


def _resolved_args(*argv, config=None, env=None):
    args = _make_args(*argv)
    apply_config_to_args(args, config or {})
    apply_env_to_args(args, env or {})
    return args


@pytest.fixture
def no_global(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "empty"))


# ===========================================================================
# Config loading
# ===========================================================================


class TestLoadConfig:
    def test_missing_files_returns_only_config_dir(self, tmp_path, no_global):
        assert load_config(tmp_path) == {"config_dir": tmp_path / "empty" / "oaicli"}

    def test_global_config_dir_default(self, monkeypatch):
        monkeypatch.delenv("XDG_CONFIG_HOME", raising=False)
        assert global_config_dir() == Path.home() / ".config" / "oaicli"

    def test_global_only(self, tmp_path, monkeypatch):
        global_dir = tmp_path / "global_cfg"
        monkeypatch.setenv("XDG_CONFIG_HOME", str(global_dir))
        _write_toml(global_dir / "oaicli" / "config.toml", 'model = "gpt-4o"\n')
        result = load_config(tmp_path / "project")
        assert result["model"] == "gpt-4o"

    def test_project_only(self, tmp_path, no_global):
        _write_toml(tmp_path / "oaicli.toml", "max_rounds = 4\n")
        assert load_config(tmp_path)["max_rounds"] == 4

    def test_project_overrides_global(self, tmp_path, monkeypatch):
        global_dir = tmp_path / "global"
        monkeypatch.setenv("XDG_CONFIG_HOME", str(global_dir))
        _write_toml(global_dir / "oaicli" / "config.toml", "max_rounds = 3\nyolo = true\n")
        _write_toml(tmp_path / "oaicli.toml", "max_rounds = 5\n")
        result = load_config(tmp_path)
        assert result["max_rounds"] == 5
        assert result["yolo"] is True

    def test_unknown_keys_warn(self, tmp_path, no_global, capsys):
        _write_toml(tmp_path / "oaicli.toml", 'unknown_key = "hi"\n')
        result = load_config(tmp_path)
        assert "unknown_key" not in result
        assert "unknown config key" in capsys.readouterr().err

    def test_invalid_toml_raises(self, tmp_path, no_global):
        _write_toml(tmp_path / "oaicli.toml", "invalid = [\n")
        with pytest.raises(ConfigError, match="invalid TOML"):
            load_config(tmp_path)

    def test_system_prompt_file_resolves_against_config_dir(self, tmp_path, no_global):
        _write_toml(tmp_path / "oaicli.toml", 'system_prompt_file = "prompts/sys.md"\n')
        result = load_config(tmp_path)
        assert result["system_prompt_file"] == str(tmp_path / "prompts" / "sys.md")

    def test_api_key_in_git_project_warns(self, tmp_path, no_global, capsys):
        (tmp_path / ".git").mkdir()
        _write_toml(tmp_path / "oaicli.toml", 'api_key = "secret"\n')
        load_config(tmp_path)
        assert "committed accidentally" in capsys.readouterr().err


class TestTypeValidation:
    def test_string_where_int_expected(self, tmp_path, no_global):
        _write_toml(tmp_path / "oaicli.toml", 'max_rounds = "many"\n')
        with pytest.raises(ConfigError, match="max_rounds.*expected int.*got str"):
            load_config(tmp_path)

    def test_bool_for_int_field_raises(self, tmp_path, no_global):
        _write_toml(tmp_path / "oaicli.toml", "compression_threshold = true\n")
        with pytest.raises(ConfigError, match="compression_threshold.*got bool"):
            load_config(tmp_path)

    def test_int_for_float_field(self, tmp_path, no_global):
        _write_toml(tmp_path / "oaicli.toml", "temperature = 1\n")
        assert load_config(tmp_path)["temperature"] == 1

    def test_non_positive_rounds_rejected(self, tmp_path, no_global):
        _write_toml(tmp_path / "oaicli.toml", "max_rounds = 0\n")
        with pytest.raises(ConfigError, match="at least 1"):
            load_config(tmp_path)


# ===========================================================================
# apply_config_to_args
# ===========================================================================


class TestApplyConfigToArgs:
    def test_defaults(self):
        args = _make_args()
        apply_config_to_args(args, {})
        assert args.temperature == 0.1
        assert args.max_rounds == 2
        assert args.query_timeout == 240
        assert args.compression_threshold == 5000
        assert args.tokenizer_model == "gpt-4o"
        assert args.yolo is False
        assert args.quiet is False

    def test_config_fills_unset(self):
        args = _make_args()
        apply_config_to_args(args, {"max_rounds": 4, "model": "dep"})
        assert args.max_rounds == 4
        assert args.model == "dep"

    def test_cli_beats_config(self):
        args = _make_args("--max-rounds", "7")
        apply_config_to_args(args, {"max_rounds": 4})
        assert args.max_rounds == 7

    def test_store_true_flag_beats_config(self):
        args = _make_args("--yolo")
        apply_config_to_args(args, {"yolo": False})
        assert args.yolo is True

    def test_color_config(self):
        args = _make_args()
        apply_config_to_args(args, {"color": False})
        assert args.color is False
        assert args.no_color is True

    def test_config_dir_not_copied(self):
        args = _make_args()
        apply_config_to_args(args, {"config_dir": "/x"})
        assert not hasattr(args, "config_dir")


# ===========================================================================
# Environment and credentials
# ===========================================================================


class TestEnvironment:
    ENV = {
        "AZURE_OPENAI_API_KEY": "env-key",
        "AZURE_OPENAI_ENDPOINT": "https://env.openai.azure.com",
        "AZURE_OPENAI_DEPLOYMENT": "env-dep",
    }

    def test_env_fills_credentials(self):
        args = _resolved_args(env=self.ENV)
        assert args.api_key == "env-key"
        assert args.endpoint == "https://env.openai.azure.com"
        assert args.model == "env-dep"
        assert args.api_version == DEFAULT_API_VERSION
        check_credentials(args)

    def test_cli_and_config_beat_env(self):
        args = _resolved_args("--model", "cli-dep", config={"api_key": "cfg"}, env=self.ENV)
        assert args.model == "cli-dep"
        assert args.api_key == "cfg"

    def test_api_version_from_env(self):
        env = dict(self.ENV, AZURE_OPENAI_API_VERSION="2025-01-01")
        assert _resolved_args(env=env).api_version == "2025-01-01"

    def test_missing_credentials_named(self):
        args = _resolved_args(env={"AZURE_OPENAI_API_KEY": "k"})
        with pytest.raises(ConfigError) as exc:
            check_credentials(args)
        msg = str(exc.value)
        assert "AZURE_OPENAI_ENDPOINT" in msg
        assert "AZURE_OPENAI_DEPLOYMENT" in msg
        assert "AZURE_OPENAI_API_KEY" not in msg

    def test_search_key_and_alias(self):
        assert _resolved_args(env={"BING_API_KEY": "b"}).search_api_key == "b"
        assert _resolved_args(env={"SERPAPI_API_KEY": "s"}).search_api_key == "s"
        assert _resolved_args(env={}).search_api_key is None

    def test_debug_env(self):
        assert _resolved_args(env={"DEBUG": "true"}).debug is True
        assert _resolved_args(env={"DEBUG": "1"}).debug is False


# ===========================================================================
# Template
# ===========================================================================


class TestGenerateConfig:
    def test_template_is_valid_toml(self):
        lines = []
        for line in generate_config().splitlines():
            stripped = line.lstrip("# ").strip()
            if "=" in stripped and not stripped.startswith("--"):
                lines.append(stripped)
        parsed = tomllib.loads("\n".join(lines))
        assert parsed["max_rounds"] == 2
        assert parsed["compression_threshold"] == 5000

    def test_project_flag(self):
        assert "Project config" in generate_config(project=True)
        assert "Global config" in generate_config(project=False)
