"""Core data models for the conversation engine.

This module defines the records that flow between the tool catalog,
the orchestrator and the conversation manager. Every model serializes
to JSON so conversation state can be persisted by any store.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from shared.schema import parameter_descriptions, required_parameters


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ToolDescriptor(BaseModel):
    """
    Immutable description of a tool offered by a tool provider.

    Required parameters keep the order the tool declares them in, which
    is the order clarification questions are asked in.
    """
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Tool name, unique within a catalog")
    description: str = Field(default="", description="Description for LLM usage")
    required_parameters: tuple[str, ...] = Field(default_factory=tuple)
    parameter_descriptions: dict[str, str] = Field(default_factory=dict)
    input_schema: dict[str, Any] = Field(
        default_factory=dict,
        description="JSON Schema for the tool input"
    )

    @classmethod
    def from_schema(
        cls,
        name: str,
        description: str = "",
        input_schema: Optional[dict[str, Any]] = None
    ) -> "ToolDescriptor":
        """Build a descriptor from a JSON Schema object definition."""
        schema = input_schema or {}
        return cls(
            name=name,
            description=description or "",
            required_parameters=tuple(required_parameters(schema)),
            parameter_descriptions=parameter_descriptions(schema),
            input_schema=schema,
        )

    @classmethod
    def from_function_spec(cls, spec: dict[str, Any]) -> "ToolDescriptor":
        """
        Build a descriptor from an OpenAI function-calling tool spec.

        Accepts both the wrapped form ({"type": "function", "function": {...}})
        and the bare function object.
        """
        function = spec.get("function", spec)
        return cls.from_schema(
            name=function["name"],
            description=function.get("description") or "",
            input_schema=function.get("parameters") or {},
        )

    def describe_parameter(self, parameter: str) -> str:
        """Human readable description of a parameter, falling back to its name."""
        return self.parameter_descriptions.get(parameter) or parameter


class ToolCall(BaseModel):
    """
    A request to invoke one tool as part of a chain.

    When ``input_from_previous`` names a parameter, the content produced by
    the previous call in the chain is passed to this call under that name.
    """
    name: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    input_from_previous: Optional[str] = None


class ToolCallResult(BaseModel):
    """Outcome of a single tool invocation. Exactly one of content/error is set."""
    tool: str
    content: Optional[str] = None
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _exactly_one_payload(self) -> "ToolCallResult":
        if (self.content is None) == (self.error is None):
            raise ValueError("exactly one of content or error must be set")
        return self

    @property
    def succeeded(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, tool: str, content: str) -> "ToolCallResult":
        return cls(tool=tool, content=content)

    @classmethod
    def failure(cls, tool: str, error: str) -> "ToolCallResult":
        return cls(tool=tool, error=error or "Unknown error")


class Phase(str, Enum):
    """Phase of a conversation's orchestration state machine."""
    NORMAL = "normal"
    COLLECTING_PARAMS = "collecting_params"
    EXECUTING_TOOLS = "executing_tools"


class Intent(str, Enum):
    """What a user reply means while parameters are being collected."""
    PROVIDE_PARAM = "provide_param"
    CANCEL = "cancel"
    NEW_TOPIC = "new_topic"


class PendingTool(BaseModel):
    """A tool waiting for its parameters or for execution."""
    name: str
    parameters: dict[str, Any] = Field(default_factory=dict)


class MissingParam(BaseModel):
    """A required tool parameter that has not been provided yet."""
    tool: str
    parameter: str
    description: str


class OutcomeKind(str, Enum):
    CLARIFICATION = "clarification"
    FINAL_ANSWER = "final_answer"
    CANCELLED = "cancelled"
    ERROR = "error"


class Outcome(BaseModel):
    """The single result of one conversation turn."""
    model_config = ConfigDict(frozen=True)

    kind: OutcomeKind
    text: str

    @classmethod
    def clarification(cls, text: str) -> "Outcome":
        return cls(kind=OutcomeKind.CLARIFICATION, text=text)

    @classmethod
    def final_answer(cls, text: str) -> "Outcome":
        return cls(kind=OutcomeKind.FINAL_ANSWER, text=text)

    @classmethod
    def cancelled(cls, text: str) -> "Outcome":
        return cls(kind=OutcomeKind.CANCELLED, text=text)

    @classmethod
    def error(cls, text: str) -> "Outcome":
        return cls(kind=OutcomeKind.ERROR, text=text)


class ConversationScope(BaseModel):
    """Identifies whose tool providers are reachable from a conversation."""
    conversation_id: str
    user_id: Optional[str] = None


class ChatMessage(BaseModel):
    """A single message in a conversation's history."""
    role: str = Field(..., description="Message role: user, assistant, system")
    content: str
    timestamp: datetime = Field(default_factory=utcnow)
