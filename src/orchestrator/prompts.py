"""Prompt templates used by the Reasoner."""

TOOL_SELECTION = """Analyze this user message and determine which tools are needed.

Available tools:
{tool_list}

User message: "{utterance}"

Return a JSON array of tool names that are needed. If no tools are needed, return an empty array.
Example: ["{example}"] or []

Only return the JSON array, nothing else."""


INTENT_CLASSIFICATION = """You are helping collect information for a tool call.
The assistant asked the user for the {description} (parameter "{parameter}" of the {tool} tool).

User reply: "{utterance}"

Classify the reply as exactly one of:
- provide_param: the reply supplies the requested value
- cancel: the user wants to stop or abandon the request
- new_topic: the user ignored the question and asked about something else

Answer with the single label only."""


CLARIFICATION_QUESTION = """Write one short, friendly question asking the user for the {description} \
needed by the {tool} tool (parameter "{parameter}").

Return only the question."""


PLAIN_ANSWER = """You are a helpful assistant.
{history}
User: {utterance}
Assistant:"""


SYNTHESIS = """The user asked: "{utterance}"

Tool results:
{results}

Using only the information above, answer the user's request in clear natural language.
If some tools failed, briefly say what could not be done."""


# Deterministic texts, used when the LLM is not asked or not reachable
CLARIFICATION_TEMPLATE = "I need the {description} for the {tool} tool. Could you provide it?"

ALL_TOOLS_FAILED = (
    "I encountered some issues while trying to help you. Please try again "
    "or let me know if you need assistance with something else."
)

ACCESS_HINT = (
    "Hint: this looks like an access restriction. The tool may only be allowed "
    "to use certain resources; list the allowed resources first and retry with one of them."
)
