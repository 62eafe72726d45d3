"""Reasoner - LLM-backed decisions for the orchestrator.

Wraps a text-completion provider for the decisions the engine delegates
to a language model: which tools a message needs, what a reply means
while parameters are collected, how to phrase a question, and how to
answer. The Reasoner holds no state between calls.

Answers are parsed by the pure functions in this module so the parsing
rules can be tested without any model.
"""

import asyncio
import json
import re
from typing import Iterable, Optional

from shared.logging import get_logger
from shared.models import ChatMessage, Intent, MissingParam, ToolDescriptor
from orchestrator import prompts
from orchestrator.deadline import Deadline, bound_timeout
from orchestrator.llm import LLMProvider

logger = get_logger(__name__)


class ReasonerError(Exception):
    """The LLM could not be reached in time or gave an unusable answer."""
    pass


_FENCED_ARRAY = re.compile(r"```[\w-]*\s*(\[.*?\])\s*```", re.DOTALL)
_BARE_TOKEN = re.compile(r"^[A-Za-z0-9_.\-]+$")
_INTENT_LABEL = re.compile(r"\b(provide_param|cancel|new_topic)\b")


def _json_string_array(text: str) -> Optional[list[str]]:
    try:
        value = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(value, list):
        return None
    return [str(item) for item in value if isinstance(item, (str, int, float))]


def parse_tool_names(text: str, known_names: Iterable[str]) -> list[str]:
    """
    Extract tool names from an LLM answer.

    Tried in order:
    1. the whole answer is a JSON array
    2. a JSON array inside a fenced code block
    3. the answer is a single known tool name
    4. known tool names mentioned anywhere in the text (case-insensitive)

    Returns an empty list when nothing matches. Names from a JSON array
    are not checked against the known names; the caller drops unknown ones.
    """
    content = (text or "").strip()
    if not content:
        return []

    if content.startswith("[") and content.endswith("]"):
        names = _json_string_array(content)
        if names is not None:
            return names

    match = _FENCED_ARRAY.search(content)
    if match:
        names = _json_string_array(match.group(1))
        if names is not None:
            return names

    known = list(known_names)
    token = content.strip("`'\"").strip()
    if _BARE_TOKEN.match(token) and token in known:
        return [token]

    lowered = content.lower()
    return [name for name in known if name.lower() in lowered]


def parse_intent(text: str) -> Optional[Intent]:
    """Return the first intent label found in an LLM answer, or None."""
    match = _INTENT_LABEL.search((text or "").lower())
    return Intent(match.group(1)) if match else None


_CANCEL_PHRASES = re.compile(
    r"^(cancel|stop|abort|quit|never ?mind|forget (it|about it)|no thanks|"
    r"don'?t bother|skip it)\b",
    re.IGNORECASE
)
_PATH_OR_TOKEN = re.compile(r"^[\w~./\\:@+\-]+$")
_QUESTION_START = re.compile(
    r"^(what|how|why|who|when|where|which|can|could|would|should|is|are|do|does|tell me)\b",
    re.IGNORECASE
)


def heuristic_intent(utterance: str, max_value_words: int = 6) -> Intent:
    """
    Classify a reply without an LLM.

    Explicit cancel phrases cancel. Short or path/token-like replies are
    taken as the requested value. A longer reply phrased as a question is
    a new topic. Anything else is kept as the value so pending tool state
    is not dropped on an ambiguous reply.
    """
    text = utterance.strip()

    if _CANCEL_PHRASES.match(text):
        return Intent.CANCEL

    if _PATH_OR_TOKEN.match(text) or len(text.split()) <= max_value_words:
        return Intent.PROVIDE_PARAM

    if text.endswith("?") or _QUESTION_START.match(text):
        return Intent.NEW_TOPIC

    return Intent.PROVIDE_PARAM


class Reasoner:
    """
    Single-shot LLM decisions, each bounded by a timeout.

    Every method raises ReasonerError on timeout, provider failure or an
    unusable answer; callers decide how to degrade.
    """

    def __init__(self, llm: LLMProvider, timeout_seconds: Optional[float] = 30.0) -> None:
        self.llm = llm
        self.timeout_seconds = timeout_seconds

    async def ask(self, prompt: str, deadline: Optional[Deadline] = None) -> str:
        """Send a prompt and return the stripped answer."""
        timeout = bound_timeout(self.timeout_seconds, deadline)
        if timeout is not None and timeout <= 0:
            raise ReasonerError("Deadline exceeded before the LLM was called")

        try:
            answer = await asyncio.wait_for(self.llm.complete(prompt), timeout)
        except asyncio.TimeoutError as e:
            raise ReasonerError(f"LLM did not answer within {timeout}s") from e
        except Exception as e:
            raise ReasonerError(f"LLM call failed: {e}") from e

        return (answer or "").strip()

    async def select_tools(
        self,
        utterance: str,
        tools: list[ToolDescriptor],
        deadline: Optional[Deadline] = None
    ) -> list[str]:
        """Ask which of the tools the utterance needs; returns raw parsed names."""
        tool_list = "\n".join(
            f"- {tool.name}: {tool.description or 'No description available'}"
            for tool in tools
        )
        prompt = prompts.TOOL_SELECTION.format(
            tool_list=tool_list,
            utterance=utterance,
            example=tools[0].name if tools else "tool_name"
        )

        answer = await self.ask(prompt, deadline)
        names = parse_tool_names(answer, [tool.name for tool in tools])

        logger.debug("LLM selected tools", answer=answer, tools=names)
        return names

    async def classify_intent(
        self,
        utterance: str,
        pending: MissingParam,
        deadline: Optional[Deadline] = None
    ) -> Intent:
        """Classify a reply given while a parameter is being asked for."""
        prompt = prompts.INTENT_CLASSIFICATION.format(
            description=pending.description,
            parameter=pending.parameter,
            tool=pending.tool,
            utterance=utterance
        )

        answer = await self.ask(prompt, deadline)
        intent = parse_intent(answer)
        if intent is None:
            raise ReasonerError(f"Unrecognized intent answer: {answer[:80]!r}")
        return intent

    async def phrase_question(
        self,
        missing: MissingParam,
        deadline: Optional[Deadline] = None
    ) -> str:
        """Ask the LLM to phrase a clarification question."""
        prompt = prompts.CLARIFICATION_QUESTION.format(
            description=missing.description,
            tool=missing.tool,
            parameter=missing.parameter
        )

        question = await self.ask(prompt, deadline)
        if not question:
            raise ReasonerError("Empty clarification question")
        return question

    async def answer(
        self,
        utterance: str,
        history: Optional[list[ChatMessage]] = None,
        deadline: Optional[Deadline] = None
    ) -> str:
        """Answer the user directly, without tools."""
        lines = [f"{message.role.capitalize()}: {message.content}" for message in history or []]
        prompt = prompts.PLAIN_ANSWER.format(
            history="\n".join(lines),
            utterance=utterance
        )

        answer = await self.ask(prompt, deadline)
        if not answer:
            raise ReasonerError("Empty answer")
        return answer

    async def synthesize(self, prompt: str, deadline: Optional[Deadline] = None) -> str:
        """Turn a prepared synthesis prompt into the final answer."""
        answer = await self.ask(prompt, deadline)
        if not answer:
            raise ReasonerError("Empty synthesis")
        return answer
