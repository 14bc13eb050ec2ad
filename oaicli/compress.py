"""Token accounting and lossy snapshot compression of a conversation."""

import json
import logging
from typing import Callable, Protocol

from .errors import CompressionError

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 5000
DEFAULT_TOKENIZER_MODEL = "gpt-4o"
SNAPSHOT_PREFIX = "History snapshot: "

COMPRESSION_PROMPT = """\
You are the component that summarizes internal chat history into a given structure.

When the conversation history grows too large, you will be invoked to distill the entire \
history into a concise, structured XML snapshot. This snapshot is CRITICAL, as it will \
become the agent's *only* memory of the past. The agent will resume its work based solely \
on this snapshot. All crucial details, plans, errors, and user directives MUST be preserved.

First, think through the entire history in a private <scratchpad>. Review the user's overall \
goal, the agent's actions, tool outputs, file modifications, and any unresolved questions. \
Identify every piece of information that is essential for future actions.

After your reasoning is complete, generate the final <state_snapshot> XML object. Be \
incredibly dense with information. Omit any irrelevant conversational filler.

The structure MUST be as follows:

<state_snapshot>
    <overall_goal>
        <!-- A single, concise sentence describing the user's high-level objective. -->
    </overall_goal>

    <key_knowledge>
        <!-- Crucial facts, conventions, and constraints the agent must remember. Use bullet points. -->
    </key_knowledge>

    <file_system_state>
        <!-- Files that have been created, read, modified, or deleted, with status and learnings. -->
    </file_system_state>

    <recent_actions>
        <!-- The last few significant agent actions and their outcomes. Facts only. -->
    </recent_actions>

    <current_plan>
        <!-- The agent's step-by-step plan, marking steps [DONE], [IN PROGRESS] or [TODO]. -->
    </current_plan>
</state_snapshot>"""


class CostEstimator(Protocol):
    def estimate(self, text: str) -> int: ...


class TiktokenEstimator:
    """Token counts from the tokenizer of a given model.

    The encoding is loaded on first use.
    """

    def __init__(self, model: str = DEFAULT_TOKENIZER_MODEL):
        self.model = model
        self._encoder = None

    def _get_encoder(self):
        if self._encoder is None:
            import tiktoken

            try:
                self._encoder = tiktoken.encoding_for_model(self.model)
            except KeyError:
                logger.debug("no tokenizer for %s, using cl100k_base", self.model)
                self._encoder = tiktoken.get_encoding("cl100k_base")
        return self._encoder

    def estimate(self, text: str) -> int:
        return len(self._get_encoder().encode(text, disallowed_special=()))


def _content_of(message) -> object:
    if isinstance(message, dict):
        return message.get("content")
    return getattr(message, "content", None)


def count_tokens(messages: list, estimator: CostEstimator) -> int:
    """Sum the estimated cost of every message with textual content."""
    total = 0
    for m in messages:
        content = _content_of(m)
        if isinstance(content, str) and content:
            total += estimator.estimate(content)
    return total


Summarizer = Callable[[list[dict]], str]


class HistoryCompressor:
    """Replaces an over-budget conversation with a system prompt plus a snapshot.

    `summarize` performs one model call on the given messages and returns the
    reply text. `system_prompt` produces the fresh system message.
    `tokens_before` and `tokens_after` hold the estimates from the last
    compress() call.
    """

    def __init__(
        self,
        summarize: Summarizer,
        system_prompt: Callable[[], str],
        *,
        estimator: CostEstimator | None = None,
        threshold: int = DEFAULT_THRESHOLD,
    ):
        self.summarize = summarize
        self.system_prompt = system_prompt
        self.estimator = estimator or TiktokenEstimator()
        self.threshold = threshold
        self.tokens_before = 0
        self.tokens_after = 0

    def count(self, messages: list) -> int:
        try:
            return count_tokens(messages, self.estimator)
        except Exception as e:
            raise CompressionError(f"token estimation failed: {e}") from e

    def compress(self, messages: list) -> list:
        """Return messages unchanged when under budget, else a two-message snapshot.

        Every failure, including token estimation, is raised as CompressionError.
        """
        tokens = self.count(messages)
        self.tokens_before = self.tokens_after = tokens
        if tokens < self.threshold:
            return messages

        logger.debug(
            "compressing %d messages (~%d tokens, threshold %d)",
            len(messages),
            tokens,
            self.threshold,
        )
        request = [
            {"role": "system", "content": COMPRESSION_PROMPT},
            {"role": "user", "content": json.dumps(messages, default=str)},
        ]
        try:
            snapshot = self.summarize(request)
            system_prompt = self.system_prompt()
        except CompressionError:
            raise
        except Exception as e:
            raise CompressionError(f"history compression failed: {e}") from e

        if not snapshot or not snapshot.strip():
            raise CompressionError("history compression returned an empty snapshot")

        compressed = [
            {"role": "system", "content": system_prompt},
            {"role": "assistant", "content": f"{SNAPSHOT_PREFIX}{snapshot.strip()}"},
        ]
        self.tokens_after = self.count(compressed)
        return compressed
