"""Tests for the CLI surface: argument parsing, main(), repl_loop and slash commands."""

import sys
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from oaicli.agent import (
    BUG_REPORT_MESSAGE,
    QUERY_ERROR_MESSAGE,
    UNKNOWN_COMMAND_MESSAGE,
    _repl_help,
    build_parser,
    main,
    repl_loop,
    strip_code_fences,
)
from oaicli.errors import ConfigError, ModelQueryError
from oaicli.executor import ToolExecutor
from oaicli.memory import MemoryStore
from oaicli.session import Session, Settings
from oaicli.tools import build_registry


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_text_response(text):
    msg = SimpleNamespace(content=text, tool_calls=None, role="assistant")
    return msg, "stop"


class _CharEstimator:
    def __init__(self, model=None):
        pass

    def estimate(self, text):
        return len(text)


def _session(tmp_path):
    registry = build_registry(str(tmp_path), MemoryStore())
    return Session(
        Settings(model_id="d"),
        registry,
        ToolExecutor(registry, lambda m: True),
        None,
        "system",
    )


def _user_contents(session):
    return [m["content"] for m in session.messages if m["role"] == "user"]


class _Repl:
    """Drive repl_loop with scripted prompt input and model replies."""

    def __init__(self, tmp_path, inputs, replies=("answer",), confirm=None):
        self.tmp_path = tmp_path
        self.session = _session(tmp_path)
        self.prompt = MagicMock()
        self.prompt.prompt.side_effect = [
            v() if isinstance(v, type) else v for v in inputs
        ]
        self.llm = MagicMock(
            side_effect=[_make_text_response(r) for r in replies] * 10
        )
        self.confirm = confirm or (lambda m: False)

    def run(self, **kwargs):
        with (
            patch("prompt_toolkit.PromptSession", return_value=self.prompt),
            patch("oaicli.agent.call_llm", self.llm),
        ):
            repl_loop(
                self.session,
                base_dir=str(self.tmp_path),
                verbose=False,
                confirm=self.confirm,
                **kwargs,
            )
        return self


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


class TestArgumentParsing:
    def test_question_optional(self):
        args = build_parser().parse_args([])
        assert args.question is None
        assert args.repl is False

    def test_question_with_repl(self):
        args = build_parser().parse_args(["--repl", "initial question"])
        assert args.repl is True
        assert args.question == "initial question"

    def test_color_flags_mutually_exclusive(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--color", "--no-color"])

    def test_init_config_prints_template(self, capsys, monkeypatch):
        monkeypatch.setattr(sys, "argv", ["oaicli", "--init-config", "--project"])
        with pytest.raises(SystemExit) as exc:
            main()
        assert exc.value.code == 0
        assert "Project config" in capsys.readouterr().out


class TestMain:
    @pytest.fixture
    def clean_env(self, tmp_path, monkeypatch):
        for name in (
            "AZURE_OPENAI_API_KEY",
            "AZURE_OPENAI_ENDPOINT",
            "AZURE_OPENAI_DEPLOYMENT",
            "AZURE_OPENAI_API_VERSION",
            "BING_API_KEY",
            "SERPAPI_API_KEY",
            "OPENAI_SYSTEM_MD",
            "DEBUG",
        ):
            # setenv first so values loaded from .env are undone afterwards
            monkeypatch.setenv(name, "")
            monkeypatch.delenv(name)
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "cfg"))
        monkeypatch.chdir(tmp_path)
        monkeypatch.setattr("oaicli.agent.TiktokenEstimator", _CharEstimator)

    def _azure_env(self, monkeypatch):
        monkeypatch.setenv("AZURE_OPENAI_API_KEY", "k")
        monkeypatch.setenv("AZURE_OPENAI_ENDPOINT", "https://e.openai.azure.com")
        monkeypatch.setenv("AZURE_OPENAI_DEPLOYMENT", "dep")

    def test_missing_credentials_exit_1(self, tmp_path, monkeypatch, capsys, clean_env):
        monkeypatch.setattr(sys, "argv", ["oaicli", "-q", "hello"])
        with patch("oaicli.agent.call_llm") as llm:
            with pytest.raises(SystemExit) as exc:
                main()
        assert exc.value.code == 1
        assert llm.call_count == 0
        assert "AZURE_OPENAI_API_KEY" in capsys.readouterr().err

    def test_single_shot_answer(self, tmp_path, monkeypatch, capsys, clean_env):
        self._azure_env(monkeypatch)
        monkeypatch.setattr(sys, "argv", ["oaicli", "-q", "hello"])
        with patch("oaicli.agent.call_llm", return_value=_make_text_response("hi there")):
            with pytest.raises(SystemExit) as exc:
                main()
        assert exc.value.code == 0
        assert "hi there" in capsys.readouterr().out

    def test_single_shot_query_error(self, tmp_path, monkeypatch, capsys, clean_env):
        self._azure_env(monkeypatch)
        monkeypatch.setattr(sys, "argv", ["oaicli", "-q", "hello"])
        with patch("oaicli.agent.call_llm", side_effect=ModelQueryError("down")):
            with pytest.raises(SystemExit) as exc:
                main()
        assert exc.value.code == 1
        assert QUERY_ERROR_MESSAGE in capsys.readouterr().err

    def test_dotenv_loaded(self, tmp_path, monkeypatch, capsys, clean_env):
        (tmp_path / ".env").write_text(
            "AZURE_OPENAI_API_KEY=k\n"
            "AZURE_OPENAI_ENDPOINT=https://e.openai.azure.com\n"
            "AZURE_OPENAI_DEPLOYMENT=dep-from-dotenv\n"
        )
        monkeypatch.setattr(sys, "argv", ["oaicli", "-q", "hello"])
        with patch(
            "oaicli.agent.call_llm", return_value=_make_text_response("ok")
        ) as llm:
            with pytest.raises(SystemExit) as exc:
                main()
        assert exc.value.code == 0
        assert llm.call_args.kwargs["model_id"] == "dep-from-dotenv"


# ---------------------------------------------------------------------------
# repl_loop
# ---------------------------------------------------------------------------


class TestReplLoop:
    @pytest.mark.parametrize("word", ["/exit", "/quit", "exit", "EXIT"])
    def test_exit_words(self, tmp_path, word):
        r = _Repl(tmp_path, [word]).run()
        assert r.llm.call_count == 0
        assert len(r.session.messages) == 1

    def test_eof(self, tmp_path):
        r = _Repl(tmp_path, [EOFError]).run()
        assert len(r.session.messages) == 1

    def test_ctrl_c_at_prompt_exits(self, tmp_path):
        r = _Repl(tmp_path, [KeyboardInterrupt, "never reached"]).run()
        assert r.prompt.prompt.call_count == 1

    def test_empty_lines_ignored(self, tmp_path):
        r = _Repl(tmp_path, ["", "  ", "hello", "/exit"]).run()
        assert r.llm.call_count == 1

    def test_history_persists(self, tmp_path):
        r = _Repl(tmp_path, ["first", "second", "/exit"], replies=("a1", "a2")).run()
        contents = [m["content"] for m in r.session.messages]
        assert contents == ["system", "first", "a1", "second", "a2"]

    def test_answer_on_stdout(self, tmp_path, capsys):
        _Repl(tmp_path, ["hello", "/exit"], replies=("the answer",)).run()
        assert "the answer" in capsys.readouterr().out

    def test_interrupt_during_turn_keeps_repl_alive(self, tmp_path, capsys):
        r = _Repl(tmp_path, ["slow", "fast", "/exit"])
        r.llm.side_effect = [KeyboardInterrupt(), _make_text_response("quick")]
        r.run()
        assert r.llm.call_count == 2
        assert "interrupted" in capsys.readouterr().err

    def test_failed_turn_keeps_repl_alive(self, tmp_path, capsys):
        r = _Repl(tmp_path, ["first", "second", "/exit"], replies=("ok",))
        r.session.ask = MagicMock()
        r.session.ask.side_effect = [
            ConfigError("missing system prompt file: /gone.md"),
            SimpleNamespace(answer="ok", outcome="ok"),
        ]
        r.run()
        assert r.session.ask.call_count == 2
        assert "gone.md" in capsys.readouterr().err

    def test_initial_question(self, tmp_path):
        r = _Repl(tmp_path, ["/exit"]).run(initial_question="warm up")
        assert _user_contents(r.session) == ["warm up"]

    def test_history_file_location(self, tmp_path):
        _Repl(tmp_path, ["/exit"]).run()
        assert (tmp_path / ".oaicli").is_dir()


class TestSlashCommands:
    def test_help(self, capsys):
        _repl_help()
        err = capsys.readouterr().err
        for cmd in ("/help", "/bug", "/clear", "/refactor", "/explain", "/generate", "/debug", "/exit"):
            assert cmd in err

    def test_help_does_not_query(self, tmp_path):
        r = _Repl(tmp_path, ["/help", "/exit"]).run()
        assert r.llm.call_count == 0

    def test_bug(self, tmp_path, capsys):
        _Repl(tmp_path, ["/bug", "/exit"]).run()
        assert "issue tracker" in capsys.readouterr().err
        assert "issue tracker" in BUG_REPORT_MESSAGE

    def test_unknown_command_hint(self, tmp_path, capsys):
        r = _Repl(tmp_path, ["/frobnicate", "/exit"]).run()
        assert r.llm.call_count == 0
        assert UNKNOWN_COMMAND_MESSAGE.split(".")[0] in capsys.readouterr().err

    def test_clear(self, tmp_path):
        r = _Repl(tmp_path, ["q1", "/clear", "q2", "/exit"]).run()
        assert _user_contents(r.session) == ["q2"]

    def test_explain(self, tmp_path):
        (tmp_path / "m.py").write_text("x = 1\n")
        r = _Repl(tmp_path, ["/explain m.py", "/exit"]).run()
        assert _user_contents(r.session) == ["Explain this code:\nx = 1\n"]

    def test_explain_prompts_for_missing_path(self, tmp_path):
        (tmp_path / "m.py").write_text("y = 2\n")
        r = _Repl(tmp_path, ["/explain", "m.py", "/exit"]).run()
        assert _user_contents(r.session) == ["Explain this code:\ny = 2\n"]

    def test_unreadable_file_skips_turn(self, tmp_path, capsys):
        r = _Repl(tmp_path, ["/explain nope.py", "/exit"]).run()
        assert r.llm.call_count == 0
        assert "File read error" in capsys.readouterr().err

    def test_refactor_write_back(self, tmp_path):
        target = tmp_path / "m.py"
        target.write_text("x=1\n")
        reply = "Here you go:\n```python\nx = 1\n```\n"
        r = _Repl(
            tmp_path, ["/refactor m.py", "/exit"], replies=(reply,), confirm=lambda m: True
        ).run()
        assert _user_contents(r.session) == ["Refactor this code:\nx=1\n"]
        assert target.read_text() == "x = 1\n"

    def test_refactor_declined(self, tmp_path):
        target = tmp_path / "m.py"
        target.write_text("x=1\n")
        asked = []

        def confirm(message):
            asked.append(message)
            return False

        _Repl(tmp_path, ["/refactor m.py", "/exit"], confirm=confirm).run()
        assert asked == ["Write to file?"]
        assert target.read_text() == "x=1\n"

    def test_generate_saves_file(self, tmp_path):
        r = _Repl(
            tmp_path, ["/generate a hello script", "out.py", "/exit"], replies=("print('hi')",)
        ).run()
        assert _user_contents(r.session) == ["Generate code for: a hello script"]
        assert (tmp_path / "out.py").read_text() == "print('hi')"
        prompts = [c.args[0] for c in r.prompt.prompt.call_args_list]
        assert "Save to file (leave blank to skip): " in prompts

    def test_generate_blank_skips_save(self, tmp_path):
        _Repl(tmp_path, ["/generate thing", "", "/exit"]).run()
        assert sorted(p.name for p in tmp_path.iterdir()) == [".oaicli"]

    def test_debug(self, tmp_path):
        r = _Repl(tmp_path, ["/debug it crashes on start", "/exit"]).run()
        assert _user_contents(r.session) == ["Debug this: it crashes on start"]


class TestStripCodeFences:
    def test_fenced_block_extracted(self):
        assert strip_code_fences("intro\n```py\na = 1\n```\noutro") == "a = 1\n"

    def test_plain_text_kept(self):
        assert strip_code_fences("  a = 1  \n") == "a = 1\n"
