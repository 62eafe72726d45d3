"""Tool Orchestrator.

Decides which tools a message needs, works out which required
parameters are still missing, runs tool chains and turns the results
into an answer. Every step degrades instead of failing: a broken LLM
means no tools, a broken tool means an error result, a broken
synthesis means a templated answer.
"""

import asyncio
import re
from typing import Any, Optional

from shared.logging import get_logger
from shared.models import Intent, MissingParam, ToolCall, ToolCallResult, ToolDescriptor
from mcp_client.catalog import ToolCatalog, UnknownToolError
from orchestrator import prompts
from orchestrator.deadline import Deadline, bound_timeout
from orchestrator.reasoner import Reasoner, ReasonerError, heuristic_intent

logger = get_logger(__name__)


ACCESS_ERROR_PATTERN = re.compile(
    r"access denied|permission denied|not permitted|not allowed|forbidden|"
    r"unauthori[sz]ed|outside (of )?(the )?allowed|eacces",
    re.IGNORECASE
)


def _discard_result(task: "asyncio.Future[Any]") -> None:
    # Retrieve the outcome of an abandoned call so it is not reported as unhandled
    if not task.cancelled():
        task.exception()


class ToolOrchestrator:
    """
    Tool detection, parameter checks, chain execution and response synthesis.

    The orchestrator is stateless: conversation state lives with the
    ConversationManager, tools come from the catalog passed to each call.
    """

    def __init__(
        self,
        reasoner: Reasoner,
        tool_timeout_seconds: Optional[float] = 60.0,
        phrase_questions: bool = False,
        max_result_chars: int = 4000
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            reasoner: LLM-backed decision maker
            tool_timeout_seconds: Upper bound for a single tool invocation
            phrase_questions: Let the LLM phrase clarification questions
            max_result_chars: Tool output longer than this is cut in prompts
        """
        self.reasoner = reasoner
        self.tool_timeout_seconds = tool_timeout_seconds
        self.phrase_questions = phrase_questions
        self.max_result_chars = max_result_chars

    async def detect_required_tools(
        self,
        utterance: str,
        catalog: ToolCatalog,
        deadline: Optional[Deadline] = None
    ) -> list[ToolDescriptor]:
        """
        Detect the tools a message needs.

        Names the LLM invents are dropped. If the LLM cannot be reached,
        no tools are returned and the message gets a plain answer.
        """
        tools = await catalog.list_tools()
        if not tools:
            logger.info("No tools available from tool providers")
            return []

        try:
            names = await self.reasoner.select_tools(utterance, tools, deadline)
        except ReasonerError as e:
            logger.warning("Tool detection failed, continuing without tools", error=str(e))
            return []

        by_name = {tool.name: tool for tool in tools}
        detected: list[ToolDescriptor] = []
        for name in names:
            tool = by_name.get(name)
            if tool is None:
                logger.debug("Ignoring unknown tool name", tool=name)
                continue
            if tool not in detected:
                detected.append(tool)

        logger.info("Tools detected", tools=[tool.name for tool in detected])
        return detected

    def check_missing_parameters(
        self,
        tools: list[ToolDescriptor],
        collected_params: dict[str, Any]
    ) -> list[MissingParam]:
        """
        List required parameters not yet collected.

        Order follows the tools, then each tool's declared required
        parameters; clarification questions are asked in this order.
        """
        missing = []
        for tool in tools:
            for parameter in tool.required_parameters:
                if parameter in collected_params:
                    continue
                missing.append(MissingParam(
                    tool=tool.name,
                    parameter=parameter,
                    description=tool.describe_parameter(parameter)
                ))
        return missing

    async def generate_clarification_question(
        self,
        missing_params: list[MissingParam],
        deadline: Optional[Deadline] = None
    ) -> str:
        """Ask for the first missing parameter only."""
        if not missing_params:
            raise ValueError("No missing parameters to ask about")

        missing = missing_params[0]

        if self.phrase_questions:
            try:
                return await self.reasoner.phrase_question(missing, deadline)
            except ReasonerError as e:
                logger.warning("Question phrasing failed, using template", error=str(e))

        return prompts.CLARIFICATION_TEMPLATE.format(
            description=missing.description,
            tool=missing.tool
        )

    async def classify_intent(
        self,
        utterance: str,
        missing: MissingParam,
        deadline: Optional[Deadline] = None
    ) -> Intent:
        """Classify a reply with the LLM, falling back to the heuristic."""
        try:
            return await self.reasoner.classify_intent(utterance, missing, deadline)
        except ReasonerError as e:
            intent = heuristic_intent(utterance)
            logger.warning(
                "Intent classification failed, using heuristic",
                error=str(e),
                intent=intent.value
            )
            return intent

    async def execute_tool_chain(
        self,
        tool_calls: list[ToolCall],
        collected_params: dict[str, Any],
        catalog: ToolCatalog,
        deadline: Optional[Deadline] = None
    ) -> list[ToolCallResult]:
        """
        Run tool calls one after another, in order.

        Each call gets the collected parameters overlaid with its own
        parameters. A failed call is recorded and the chain continues.
        """
        results: list[ToolCallResult] = []
        previous: Optional[ToolCallResult] = None

        for call in tool_calls:
            chained: dict[str, Any] = {}
            if call.input_from_previous and previous is not None and previous.succeeded:
                chained[call.input_from_previous] = previous.content

            parameters = {**collected_params, **chained, **call.parameters}
            result = await self._invoke(call.name, parameters, catalog, deadline)

            logger.info(
                "Tool executed",
                tool=call.name,
                succeeded=result.succeeded,
                error=result.error
            )
            results.append(result)
            previous = result

        return results

    async def _invoke(
        self,
        tool_name: str,
        parameters: dict[str, Any],
        catalog: ToolCatalog,
        deadline: Optional[Deadline]
    ) -> ToolCallResult:
        timeout = bound_timeout(self.tool_timeout_seconds, deadline)
        if timeout is not None and timeout <= 0:
            return ToolCallResult.failure(tool_name, "Skipped: the time allowed for this request ran out")

        task = asyncio.ensure_future(catalog.invoke(tool_name, parameters))
        try:
            # Shielded: if this turn is cancelled the call still completes
            return await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.CancelledError:
            task.add_done_callback(_discard_result)
            raise
        except asyncio.TimeoutError:
            task.cancel()
            return ToolCallResult.failure(tool_name, f"Tool did not respond within {timeout}s")
        except UnknownToolError as e:
            return ToolCallResult.failure(tool_name, str(e))
        except Exception as e:
            logger.error("Tool invocation raised", tool=tool_name, error=str(e), exc_info=True)
            return ToolCallResult.failure(tool_name, str(e) or type(e).__name__)

    def _clip(self, text: str) -> str:
        if len(text) <= self.max_result_chars:
            return text
        return text[:self.max_result_chars] + "\n[... truncated]"

    def build_synthesis_prompt(
        self,
        original_utterance: str,
        successes: list[ToolCallResult],
        failures: list[ToolCallResult]
    ) -> str:
        sections = [
            f"[{result.tool}] succeeded:\n{self._clip(result.content or '')}"
            for result in successes
        ]
        for result in failures:
            section = f"[{result.tool}] failed: {result.error}"
            if ACCESS_ERROR_PATTERN.search(result.error or ""):
                section += f"\n{prompts.ACCESS_HINT}"
            sections.append(section)

        return prompts.SYNTHESIS.format(
            utterance=original_utterance,
            results="\n\n".join(sections)
        )

    @staticmethod
    def fallback_response(
        successes: list[ToolCallResult],
        failures: list[ToolCallResult]
    ) -> str:
        """Answer assembled from tool output when synthesis is unavailable."""
        parts = ["Here is what I found:"]
        parts.extend(f"{result.tool}:\n{result.content}" for result in successes)
        parts.extend(
            f"Note: {result.tool} could not be completed ({result.error})."
            for result in failures
        )
        return "\n\n".join(parts)

    async def generate_response(
        self,
        original_utterance: str,
        results: list[ToolCallResult],
        deadline: Optional[Deadline] = None
    ) -> str:
        """
        Turn tool results into the final answer.

        With no successful result the fixed apology is returned and the
        LLM is not called.
        """
        successes = [result for result in results if result.succeeded]
        failures = [result for result in results if not result.succeeded]

        if not successes:
            logger.warning("All tools failed", tools=[result.tool for result in failures])
            return prompts.ALL_TOOLS_FAILED

        prompt = self.build_synthesis_prompt(original_utterance, successes, failures)
        try:
            return await self.reasoner.synthesize(prompt, deadline)
        except ReasonerError as e:
            logger.warning("Response synthesis failed, using tool output", error=str(e))
            return self.fallback_response(successes, failures)
