"""Shared fixtures for the conversation engine tests."""

import pytest


def _user_message(prompt: str) -> str:
    marker = "User message:"
    if marker not in prompt:
        return ""
    return prompt.split(marker, 1)[1].split("\n", 1)[0]


def scripted_answer(prompt: str) -> str:
    """Deterministic stand-in for the LLM, keyed on the prompt kind."""
    if "determine which tools are needed" in prompt:
        message = _user_message(prompt).lower()
        if "wear" in message or "weather" in message:
            return '["get_weather"]'
        if "flight" in message:
            return '```json\n["book_flight"]\n```'
        if "report" in message:
            return '["fetch_data", "summarize"]'
        return "[]"

    if "Classify the reply" in prompt:
        return "provide_param"

    if "Tool results:" in prompt:
        return "Synthesized answer."

    return "Hello! How can I help you today?"


@pytest.fixture
def mock_llm():
    """Mock LLM answering with the scripted answers."""
    from orchestrator.llm import MockLLMProvider

    return MockLLMProvider(responder=scripted_answer)


@pytest.fixture
def local_tools():
    """Local provider with a weather tool and a two-parameter flight tool."""
    from mcp_client.local import LocalToolProvider
    from shared.schema import object_schema

    provider = LocalToolProvider()

    @provider.tool(input_schema=object_schema({
        "location": {"type": "string", "description": "location (city name)"},
    }))
    def get_weather(location: str) -> str:
        """Get the current weather for a location."""
        return f"Sunny, 22C in {location}"

    @provider.tool(input_schema=object_schema({
        "origin": {"type": "string", "description": "departure city"},
        "destination": {"type": "string", "description": "arrival city"},
    }))
    async def book_flight(origin: str, destination: str) -> dict:
        """Book a flight between two cities."""
        return {"booked": True, "route": f"{origin} -> {destination}"}

    return provider


@pytest.fixture
def catalog(local_tools):
    from mcp_client.catalog import ToolCatalog

    return ToolCatalog([local_tools])


@pytest.fixture
def orchestrator(mock_llm):
    from orchestrator.reasoner import Reasoner
    from orchestrator.tools import ToolOrchestrator

    return ToolOrchestrator(Reasoner(mock_llm, timeout_seconds=5.0), tool_timeout_seconds=5.0)
