"""Model queries, the tool-calling loop, and the command-line entry point."""

import argparse
import contextlib
import logging
import os
import re
import sys
import time
from importlib import metadata
from pathlib import Path

from . import fmt
from .compress import HistoryCompressor, TiktokenEstimator
from .config import (
    _UNSET,
    apply_config_to_args,
    apply_env_to_args,
    check_credentials,
    generate_config,
    load_config,
)
from .errors import AgentError, ModelQueryError
from .executor import ToolCall, ToolExecutor, always_confirm, terminal_confirm
from .memory import MemoryStore
from .prompts import PROJECT_DIR_NAME, build_system_prompt, load_user_memory
from .search import WebSearch
from .session import Result, Session, Settings
from .tools import build_registry

logger = logging.getLogger(__name__)

MAX_ROUNDS_MESSAGE = "Max tool call rounds reached. Please try again."
QUERY_ERROR_MESSAGE = "Error occurred during processing. Please try again or check logs."


def call_llm(
    messages: list,
    tools: list | None,
    *,
    model_id: str,
    temperature: float,
    timeout: float,
    llm_kwargs: dict,
):
    """Query the Azure deployment. Returns (message, finish_reason).

    `timeout` bounds the whole query, retries included. A timed-out attempt
    is never retried; `num_retries` in `llm_kwargs` only re-issues attempts
    that failed on rate limits, connection errors or server errors, and only
    while time remains. Any failure is raised as ModelQueryError.
    """
    import litellm

    litellm.suppress_debug_info = True

    completion_kwargs = dict(
        model=f"azure/{model_id}",
        messages=messages,
        temperature=temperature,
        **llm_kwargs,
    )
    retries = completion_kwargs.pop("num_retries", 0) or 0
    # retries happen in the loop below
    completion_kwargs["num_retries"] = 0
    completion_kwargs["max_retries"] = 0
    if tools:
        completion_kwargs["tools"] = tools
        completion_kwargs["tool_choice"] = "auto"

    transient = (
        litellm.RateLimitError,
        litellm.APIConnectionError,
        litellm.InternalServerError,
        litellm.ServiceUnavailableError,
    )
    deadline = time.monotonic() + timeout
    attempt = 0
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise ModelQueryError(f"model query timed out after {timeout}s")
        try:
            response = litellm.completion(**completion_kwargs, timeout=remaining)
            break
        except litellm.Timeout as e:
            raise ModelQueryError(f"model query timed out after {timeout}s: {e}") from e
        except transient as e:
            if attempt >= retries:
                raise ModelQueryError(f"LLM call failed: {e}") from e
            attempt += 1
            logger.debug("model query failed, retry %d/%d: %s", attempt, retries, e)
        except Exception as e:
            raise ModelQueryError(f"LLM call failed: {e}") from e

    try:
        choice = response.choices[0]
        return choice.message, choice.finish_reason
    except (AttributeError, IndexError, TypeError) as e:
        raise ModelQueryError(f"malformed model response: {e}") from e


def _field(obj, name: str):
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def _assistant_message(msg) -> dict:
    """Normalize an SDK assistant message into a JSON-serializable dict."""
    out: dict = {"role": "assistant", "content": _field(msg, "content")}
    tool_calls = _field(msg, "tool_calls")
    if tool_calls:
        out["tool_calls"] = []
        for tc in tool_calls:
            call = ToolCall.from_message(tc)
            out["tool_calls"].append(
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": call.arguments},
                }
            )
    return out


def make_summarizer(
    model_id: str, *, temperature: float, timeout: float, llm_kwargs: dict
):
    """Return a callable producing one plain completion for the compressor."""

    def summarize(messages: list[dict]) -> str:
        msg, _ = call_llm(
            messages,
            None,
            model_id=model_id,
            temperature=temperature,
            timeout=timeout,
            llm_kwargs=llm_kwargs,
        )
        return _field(msg, "content") or ""

    return summarize


def _role(message) -> str | None:
    return _field(message, "role")


def _compress_turn(
    messages: list, compressor: HistoryCompressor, verbose: bool
) -> int:
    """Compress the conversation in place ahead of a turn.

    A trailing user message is the question being asked; it is carried over
    after the snapshot so the model still sees it verbatim. Returns the token
    estimate of the resulting conversation.
    """
    compressed = compressor.compress(messages)
    if compressed is messages:
        return compressor.tokens_before

    pending = messages[-1] if messages and _role(messages[-1]) == "user" else None
    tokens = compressor.tokens_after
    if pending is not None:
        compressed = compressed + [pending]
        tokens += compressor.count([pending])
    messages[:] = compressed
    if verbose:
        fmt.compressed(compressor.tokens_before, tokens)
    return tokens


def run_agent_loop(
    messages: list,
    executor: ToolExecutor,
    *,
    tools: list,
    model_id: str,
    temperature: float,
    max_rounds: int,
    timeout: float,
    llm_kwargs: dict,
    compressor: HistoryCompressor | None = None,
    verbose: bool = False,
) -> tuple[str, str]:
    """Run one user turn: compress, then query/execute until an answer.

    Mutates `messages` in place. Returns (text, outcome) where outcome is
    "ok" for a model answer, "max_rounds" when every round ended in tool
    calls, or "error" when a model query failed. CompressionError is not
    caught here.
    """
    token_est = 0
    if compressor is not None:
        token_est = _compress_turn(messages, compressor, verbose)
    counted = len(messages)

    rounds = 0
    while rounds < max_rounds:
        if verbose:
            if compressor is not None:
                token_est += compressor.count(messages[counted:])
                counted = len(messages)
            fmt.round_header(rounds + 1, max_rounds, token_est)

        spinner = fmt.llm_spinner() if verbose else contextlib.nullcontext()
        t0 = time.monotonic()
        try:
            with spinner:
                msg, finish_reason = call_llm(
                    messages,
                    tools,
                    model_id=model_id,
                    temperature=temperature,
                    timeout=timeout,
                    llm_kwargs=llm_kwargs,
                )
        except ModelQueryError as e:
            logger.debug("model query failed", exc_info=True)
            fmt.error(str(e))
            return QUERY_ERROR_MESSAGE, "error"
        if verbose:
            fmt.llm_timing(time.monotonic() - t0, finish_reason)

        assistant = _assistant_message(msg)
        messages.append(assistant)

        if not assistant.get("tool_calls"):
            if verbose:
                fmt.completion(rounds + 1, "ok")
            return (assistant["content"] or "").strip(), "ok"

        if assistant["content"] and verbose:
            fmt.assistant_text(assistant["content"])

        for raw in assistant["tool_calls"]:
            call = ToolCall.from_message(raw)
            result = executor.execute(call)
            messages.append(
                {
                    "role": "tool",
                    "tool_call_id": call.id,
                    "name": call.name,
                    "content": result,
                }
            )
        rounds += 1

    if verbose:
        fmt.completion(rounds, "max_rounds")
    return MAX_ROUNDS_MESSAGE, "max_rounds"


def build_parser():
    """Build and return the argument parser.

    Options that may also come from config files default to _UNSET so that
    apply_config_to_args() can tell them apart from explicit flags.
    """
    parser = argparse.ArgumentParser(
        prog="oaicli",
        usage="%(prog)s [options] [question]\n       %(prog)s --repl [options] [question]",
        description="A terminal coding agent backed by Azure OpenAI, with tool calling.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "question",
        nargs="?",
        default=None,
        help="Question to answer once. Without it, an interactive session starts.",
    )
    parser.add_argument(
        "--repl",
        action="store_true",
        help="Start an interactive session (after answering the question, if given).",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented config template and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, print the project-level template.",
    )
    parser.add_argument(
        "--model",
        default=_UNSET,
        help="Azure OpenAI deployment name (env: AZURE_OPENAI_DEPLOYMENT).",
    )
    parser.add_argument(
        "--endpoint",
        default=_UNSET,
        help="Azure OpenAI endpoint URL (env: AZURE_OPENAI_ENDPOINT).",
    )
    parser.add_argument(
        "--api-key",
        default=_UNSET,
        help="Azure OpenAI API key (env: AZURE_OPENAI_API_KEY).",
    )
    parser.add_argument(
        "--api-version",
        default=_UNSET,
        help="Azure OpenAI API version (default: 2024-08-01-preview).",
    )
    parser.add_argument(
        "--temperature",
        type=float,
        default=_UNSET,
        help="Sampling temperature (default: 0.1).",
    )
    parser.add_argument(
        "--max-rounds",
        type=int,
        default=_UNSET,
        help="Maximum model query/tool execution rounds per question (default: 2).",
    )
    parser.add_argument(
        "--query-timeout",
        type=float,
        default=_UNSET,
        help="Seconds to wait for one model response (default: 240).",
    )
    parser.add_argument(
        "--max-retries",
        type=int,
        default=_UNSET,
        help="Transport-level retries per model query (default: 2).",
    )
    parser.add_argument(
        "--compression-threshold",
        type=int,
        default=_UNSET,
        help="Token count at which history is compressed (default: 5000).",
    )
    parser.add_argument(
        "--tokenizer-model",
        default=_UNSET,
        help="Model whose tokenizer estimates history size (default: gpt-4o).",
    )
    parser.add_argument(
        "--summary-model",
        default=_UNSET,
        help="Deployment used to summarize history (default: --model).",
    )
    parser.add_argument(
        "--search-api-key",
        default=_UNSET,
        help="Web search key (env: BING_API_KEY). Without it, web search is disabled.",
    )
    parser.add_argument(
        "--system-prompt-file",
        default=_UNSET,
        help="Replace the built-in system prompt with this file (env: OPENAI_SYSTEM_MD).",
    )
    parser.add_argument(
        "--base-dir",
        default=".",
        help="Working directory for tools (default: current directory).",
    )
    parser.add_argument(
        "--yolo",
        action="store_true",
        default=_UNSET,
        help="Run shell commands and file edits without asking for confirmation.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_UNSET,
        help="Suppress diagnostics; only print answers.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        default=_UNSET,
        help="Enable debug logging (env: DEBUG=true).",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force ANSI color even when output is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable ANSI color even when output is a TTY.",
    )

    return parser


def _version() -> str:
    try:
        return metadata.version("oaicli")
    except metadata.PackageNotFoundError:
        return "unknown"


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        print(_version())
        sys.exit(0)

    if args.init_config:
        print(generate_config(project=args.project), end="")
        sys.exit(0)
    if args.project:
        parser.error("--project is only valid with --init-config")

    from dotenv import find_dotenv, load_dotenv

    load_dotenv(find_dotenv(usecwd=True))

    try:
        config = load_config(Path(args.base_dir))
        apply_config_to_args(args, config)
        args.config_dir = config["config_dir"]
        apply_env_to_args(args)
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(1)

    args.verbose = not args.quiet
    fmt.init(color=args.color, no_color=args.no_color, debug=args.debug)

    try:
        _run_main(args)
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(1)


def build_session(args) -> Session:
    """Wire the registry, executor, compressor and prompt for one conversation."""
    base_dir = str(Path(args.base_dir).resolve())

    search = None
    if args.search_api_key:
        search = WebSearch(args.search_api_key)
    elif args.verbose:
        fmt.warning("BING_API_KEY not set, web search is disabled.")

    registry = build_registry(base_dir, MemoryStore(), search=search)
    executor = ToolExecutor(
        registry,
        always_confirm if args.yolo else terminal_confirm,
        verbose=args.verbose,
    )

    llm_kwargs = {
        "api_key": args.api_key,
        "api_base": args.endpoint,
        "api_version": args.api_version,
        "num_retries": args.max_retries,
    }

    def fresh_prompt() -> str:
        return build_system_prompt(base_dir, override_file=args.system_prompt_file)

    compressor = HistoryCompressor(
        make_summarizer(
            args.summary_model or args.model,
            temperature=args.temperature,
            timeout=args.query_timeout,
            llm_kwargs=llm_kwargs,
        ),
        fresh_prompt,
        estimator=TiktokenEstimator(args.tokenizer_model),
        threshold=args.compression_threshold,
    )

    system_prompt = build_system_prompt(
        base_dir,
        load_user_memory(base_dir, getattr(args, "config_dir", None)),
        override_file=args.system_prompt_file,
    )

    settings = Settings(
        model_id=args.model,
        temperature=args.temperature,
        max_rounds=args.max_rounds,
        timeout=args.query_timeout,
        llm_kwargs=llm_kwargs,
        verbose=args.verbose,
    )
    if args.verbose:
        fmt.info(f"Using deployment {args.model} at {args.endpoint}")
        fmt.info(f"Tools: {', '.join(registry.names())}")
    return Session(settings, registry, executor, compressor, system_prompt)


_EXIT_CODES = {"ok": 0, "max_rounds": 2, "error": 1}


def _run_main(args):
    check_credentials(args)
    session = build_session(args)
    base_dir = str(Path(args.base_dir).resolve())

    if args.question is not None and not args.repl:
        try:
            result = session.ask(args.question)
        except KeyboardInterrupt:
            fmt.warning("interrupted.")
            sys.exit(130)
        _show_result(result)
        sys.exit(_EXIT_CODES[result.outcome])

    repl_loop(
        session,
        base_dir=base_dir,
        verbose=args.verbose,
        confirm=terminal_confirm,
        initial_question=args.question,
    )


# ---------------------------------------------------------------------------
# REPL command helpers
# ---------------------------------------------------------------------------

BUG_REPORT_MESSAGE = (
    "Report bugs to the project's issue tracker. Include the output of "
    "`oaicli --version` and the steps to reproduce."
)
UNKNOWN_COMMAND_MESSAGE = "Unknown command. Try /refactor, /explain, /generate, or /debug."

_FENCE_RE = re.compile(r"```[^\n`]*\n(.*?)```", re.DOTALL)


def strip_code_fences(text: str) -> str:
    """Return the body of the first fenced code block, or the stripped text."""
    m = _FENCE_RE.search(text)
    if m:
        return m.group(1).rstrip() + "\n"
    return text.strip() + "\n"


def _show_result(result: Result, heading: str | None = None) -> None:
    if result.outcome == "ok":
        if heading:
            fmt.label(heading)
        fmt.answer(result.answer)
    elif result.outcome == "max_rounds":
        fmt.warning(result.answer)
    else:
        fmt.failure(result.answer)


def _ask(session: Session, text: str, heading: str | None = None) -> Result | None:
    """Run one turn, printing the outcome. None when the turn was aborted."""
    try:
        result = session.ask(text)
    except KeyboardInterrupt:
        fmt.warning("interrupted, question aborted.")
        return None
    except AgentError as e:
        fmt.error(str(e))
        return None
    _show_result(result, heading)
    return result


def _repl_help() -> None:
    """Print available REPL commands."""
    fmt.info(
        "Available commands:\n"
        "  /help                 Show this help message\n"
        "  /bug                  Where to report bugs\n"
        "  /clear                Reset conversation to initial state\n"
        "  /refactor [file]      Refactor a file, optionally writing the result back\n"
        "  /explain [file]       Explain the code in a file\n"
        "  /generate <desc>      Generate code, optionally saving it to a file\n"
        "  /debug <desc>         Suggest fixes for a problem\n"
        "  /exit, /quit, exit    Exit the REPL"
    )


def _repl_clear(session: Session) -> None:
    dropped = session.reset()
    fmt.info(f"context cleared ({dropped} messages removed)")


def _resolve_file_arg(arg: str, ask_line, base_dir: str) -> Path | None:
    arg = arg.strip()
    if not arg:
        try:
            arg = ask_line("Enter file path: ").strip()
        except (EOFError, KeyboardInterrupt):
            return None
        if not arg:
            fmt.warning("no file given")
            return None
    p = Path(arg).expanduser()
    if not p.is_absolute():
        p = Path(base_dir) / p
    return p.resolve()


def _read_for_command(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        fmt.error(f"File read error: {e}")
        return None


def _repl_refactor(session, arg, ask_line, confirm, base_dir) -> None:
    path = _resolve_file_arg(arg, ask_line, base_dir)
    if path is None:
        return
    content = _read_for_command(path)
    if content is None:
        return

    result = _ask(session, f"Refactor this code:\n{content}", "Refactored Code:")
    if result is None or result.outcome != "ok":
        return
    try:
        write = confirm("Write to file?")
    except (EOFError, KeyboardInterrupt):
        write = False
    if not write:
        return
    try:
        path.write_text(strip_code_fences(result.answer), encoding="utf-8")
    except OSError as e:
        fmt.error(f"failed to write {path}: {e}")
        return
    fmt.info("File updated!")


def _repl_explain(session, arg, ask_line, base_dir) -> None:
    path = _resolve_file_arg(arg, ask_line, base_dir)
    if path is None:
        return
    content = _read_for_command(path)
    if content is None:
        return
    _ask(session, f"Explain this code:\n{content}", "Explanation:")


def _repl_generate(session, arg, ask_line, base_dir) -> None:
    if not arg.strip():
        fmt.warning("/generate requires a description")
        return
    result = _ask(session, f"Generate code for: {arg}", "Generated Code:")
    if result is None or result.outcome != "ok":
        return
    try:
        target = ask_line("Save to file (leave blank to skip): ").strip()
    except (EOFError, KeyboardInterrupt):
        return
    if not target:
        return
    p = Path(target).expanduser()
    if not p.is_absolute():
        p = Path(base_dir) / p
    try:
        p.write_text(result.answer, encoding="utf-8")
    except OSError as e:
        fmt.error(f"failed to write {p}: {e}")
        return
    fmt.info("File created!")


def _repl_debug(session, arg) -> None:
    if not arg.strip():
        fmt.warning("/debug requires a description")
        return
    _ask(session, f"Debug this: {arg}", "Debug Suggestions:")


def repl_loop(
    session: Session,
    *,
    base_dir: str,
    verbose: bool,
    confirm=None,
    initial_question: str | None = None,
) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    confirm = confirm or terminal_confirm

    history_path = os.path.join(base_dir, PROJECT_DIR_NAME, "repl_history")
    os.makedirs(os.path.dirname(history_path), exist_ok=True)
    prompt_session = PromptSession(
        history=FileHistory(history_path),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansigreen", "you> ")])

    def ask_line(message: str) -> str:
        return prompt_session.prompt(message)

    if verbose:
        fmt.repl_banner()

    if initial_question:
        _ask(session, initial_question)

    while True:
        try:
            print(file=sys.stderr)  # blank line before prompt
            line = prompt_session.prompt(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)  # newline after ^D / ^C
            break

        line = line.strip()
        if not line:
            continue
        if line.lower() == "exit" or line in ("/exit", "/quit"):
            break

        if not line.startswith("/"):
            _ask(session, line)
            continue

        cmd_parts = line.split(None, 1)
        cmd = cmd_parts[0].lower()
        cmd_arg = cmd_parts[1] if len(cmd_parts) > 1 else ""

        if cmd == "/help":
            _repl_help()
        elif cmd == "/bug":
            fmt.info(BUG_REPORT_MESSAGE)
        elif cmd == "/clear":
            _repl_clear(session)
        elif cmd == "/refactor":
            _repl_refactor(session, cmd_arg, ask_line, confirm, base_dir)
        elif cmd == "/explain":
            _repl_explain(session, cmd_arg, ask_line, base_dir)
        elif cmd == "/generate":
            _repl_generate(session, cmd_arg, ask_line, base_dir)
        elif cmd == "/debug":
            _repl_debug(session, cmd_arg)
        else:
            fmt.warning(UNKNOWN_COMMAND_MESSAGE)


if __name__ == "__main__":
    main()
