"""Public library API for oaicli: Session class and Result dataclass."""

import copy
from dataclasses import dataclass, field

from .compress import HistoryCompressor
from .errors import CompressionError
from .executor import ToolExecutor
from .registry import ToolRegistry


@dataclass
class Result:
    """Outcome of one question.

    `outcome` is "ok" (model answer), "max_rounds" (round ceiling reached)
    or "error" (model query or compression failure); `answer` always holds
    the text to show the operator.
    """

    answer: str
    outcome: str
    messages: list[dict]

    @property
    def exhausted(self) -> bool:
        return self.outcome == "max_rounds"


@dataclass
class Settings:
    model_id: str
    temperature: float = 0.1
    max_rounds: int = 2
    timeout: float = 240
    llm_kwargs: dict = field(default_factory=dict)
    verbose: bool = False


class Session:
    """One conversation with the model and the collaborators it runs against.

    The conversation starts with a single system message. Each ask() adds
    the question and whatever the agent loop appends; compression may
    replace earlier messages wholesale.
    """

    def __init__(
        self,
        settings: Settings,
        registry: ToolRegistry,
        executor: ToolExecutor,
        compressor: HistoryCompressor | None,
        system_prompt: str,
    ):
        self.settings = settings
        self.registry = registry
        self.executor = executor
        self.compressor = compressor
        self.system_prompt = system_prompt
        self._messages: list[dict] = [{"role": "system", "content": system_prompt}]

    @property
    def messages(self) -> list[dict]:
        return self._messages

    def ask(self, question: str) -> Result:
        """Conversational: the question joins the running conversation."""
        from .agent import run_agent_loop

        self._messages.append({"role": "user", "content": question})
        s = self.settings
        try:
            answer, outcome = run_agent_loop(
                self._messages,
                self.executor,
                tools=self.registry.schemas(),
                model_id=s.model_id,
                temperature=s.temperature,
                max_rounds=s.max_rounds,
                timeout=s.timeout,
                llm_kwargs=s.llm_kwargs,
                compressor=self.compressor,
                verbose=s.verbose,
            )
        except CompressionError as e:
            answer = f"Error: {e}. Try simplifying the query."
            outcome = "error"

        return Result(
            answer=answer,
            outcome=outcome,
            messages=copy.deepcopy(self._messages),
        )

    def reset(self) -> int:
        """Drop everything but the system message. Returns the number dropped."""
        dropped = len(self._messages) - 1
        self._messages[:] = [{"role": "system", "content": self.system_prompt}]
        return dropped
