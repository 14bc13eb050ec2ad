"""Dispatch of model tool calls to registered handlers."""

import json
import logging
import time
from dataclasses import dataclass
from typing import Callable

from . import fmt
from .registry import ToolRegistry, validate_arguments

logger = logging.getLogger(__name__)

MAX_ARG_LOG = 1000
EMPTY_RESULT = "(no output)"

ConfirmationPort = Callable[[str], bool]


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: str

    @classmethod
    def from_message(cls, tool_call) -> "ToolCall":
        """Build from an SDK tool-call object or its plain-dict form."""
        if isinstance(tool_call, dict):
            fn = tool_call.get("function") or {}
            return cls(
                id=tool_call.get("id") or "",
                name=fn.get("name") or "",
                arguments=fn.get("arguments") or "",
            )
        fn = getattr(tool_call, "function", None)
        return cls(
            id=getattr(tool_call, "id", None) or "",
            name=getattr(fn, "name", None) or "",
            arguments=getattr(fn, "arguments", None) or "",
        )


def terminal_confirm(message: str) -> bool:
    """Ask the operator a yes/no question on the terminal."""
    from prompt_toolkit.shortcuts import confirm

    return confirm(message)


def always_confirm(message: str) -> bool:
    return True


class ToolExecutor:
    """Turns one ToolCall into exactly one text result.

    `execute()` never raises: argument problems, handler failures and
    declined confirmations all come back as text.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        confirm: ConfirmationPort | None = None,
        *,
        verbose: bool = False,
    ):
        self.registry = registry
        self.confirm = confirm or terminal_confirm
        self.verbose = verbose

    def _ask(self, message: str) -> bool | str:
        """True or False for an answer, or an error result when the port failed."""
        try:
            return bool(self.confirm(message))
        except (EOFError, KeyboardInterrupt):
            return False
        except Exception as e:
            logger.debug("confirmation failed", exc_info=True)
            return f"error: confirmation failed: {e}"

    def _run(self, call: ToolCall) -> tuple[str, bool]:
        definition = self.registry.get(call.name)
        if definition is None:
            return f"error: unknown tool: {call.name!r}", False

        raw = call.arguments if isinstance(call.arguments, str) else ""
        try:
            args = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError as e:
            return f"error: invalid JSON in tool arguments: {e}", False

        problem = validate_arguments(definition.parameters, args)
        if problem:
            return f"error: invalid arguments for {call.name}: {problem}", False

        if self.verbose:
            pretty = json.dumps(args, indent=2, ensure_ascii=False)
            if len(pretty) > MAX_ARG_LOG:
                pretty = pretty[:MAX_ARG_LOG] + "\n... (truncated)"
            fmt.tool_call(call.name, pretty)

        if definition.side_effecting:
            answer = self._ask(definition.confirmation_message(args))
            if isinstance(answer, str):
                return answer, False
            if not answer:
                return definition.cancel_message, True

        try:
            result = definition.handler(args)
        except Exception as e:
            logger.debug("tool %s raised", call.name, exc_info=True)
            return f"error: {e}", False

        if not isinstance(result, str):
            result = str(result)
        return result or EMPTY_RESULT, True

    def execute(self, call: ToolCall) -> str:
        logger.debug("Tool call: %s(%s) id=%s", call.name, call.arguments, call.id)
        t0 = time.monotonic()
        result, ran = self._run(call)
        elapsed = time.monotonic() - t0

        if self.verbose:
            if not ran or result.startswith("error:"):
                fmt.tool_error(call.name, result)
            else:
                fmt.tool_result(call.name, elapsed, result[:500])
        return result
