"""Orchestrator - FastAPI Application.

Exposes the conversation engine over HTTP:
- Send a message, get back one typed outcome
- Read and reset conversations
- List the tools a conversation can reach
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from shared.config import Settings, get_settings
from shared.logging import bind_context, clear_context, get_logger, setup_logging
from shared.models import ConversationScope, OutcomeKind
from mcp_client.client import HTTPToolProvider
from mcp_client.registry import ToolProviderRegistry
from orchestrator.conversation import ConversationManager
from orchestrator.history import ChatHistory
from orchestrator.llm import create_llm_provider
from orchestrator.reasoner import Reasoner
from orchestrator.state import FileStateStore, InMemoryStateStore, StateStore, StateStoreError
from orchestrator.tools import ToolOrchestrator

logger = get_logger(__name__)


# Request/Response Models
class MessageRequest(BaseModel):
    """A user message."""
    message: str = Field(..., min_length=1, description="User message")
    user_id: Optional[str] = Field(default=None, description="User owning the conversation")
    timeout: Optional[float] = Field(default=None, gt=0, description="Time budget in seconds")


class OutcomeResponse(BaseModel):
    """The outcome of one turn, mirroring Outcome field for field."""
    conversation_id: str
    type: OutcomeKind
    text: str


class MessageListResponse(BaseModel):
    conversation_id: str
    messages: list[dict[str, Any]]


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    tool_count: int
    conversation_count: int


class AppServices:
    """Objects living for the lifetime of the application."""

    def __init__(
        self,
        manager: ConversationManager,
        registry: ToolProviderRegistry,
        history: ChatHistory,
        store: StateStore
    ) -> None:
        self.manager = manager
        self.registry = registry
        self.history = history
        self.store = store


def build_services(settings: Settings) -> AppServices:
    """Wire the engine from settings."""
    config = settings.orchestrator

    registry = ToolProviderRegistry()
    for server in config.tool_servers:
        registry.add_global(HTTPToolProvider(
            name=server.name,
            server_url=server.url,
            timeout=server.timeout,
            auth_token=server.auth_token
        ))

    if config.state_backend == "file":
        store: StateStore = FileStateStore(config.state_path)
    elif config.state_backend == "memory":
        store = InMemoryStateStore(ttl_minutes=config.state_ttl_minutes)
    else:
        raise ValueError(f"Unsupported state backend: {config.state_backend}")

    history = ChatHistory(
        max_conversation_length=config.max_history_length,
        conversation_ttl_minutes=config.state_ttl_minutes
    )

    reasoner = Reasoner(
        create_llm_provider(settings.llm),
        timeout_seconds=config.reasoner_timeout_seconds
    )
    orchestrator = ToolOrchestrator(
        reasoner,
        tool_timeout_seconds=config.tool_timeout_seconds,
        phrase_questions=config.phrase_questions
    )
    manager = ConversationManager(
        orchestrator,
        store=store,
        registry=registry,
        history=history,
        history_window=config.history_window,
        strict_invariants=not settings.is_production
    )

    return AppServices(manager=manager, registry=registry, history=history, store=store)


async def cleanup_task(services: AppServices, interval: int = 300) -> None:
    """Background task to drop expired histories and states."""
    while True:
        await asyncio.sleep(interval)
        try:
            await services.history.cleanup_expired()
            if isinstance(services.store, InMemoryStateStore):
                await services.store.cleanup_expired()
        except Exception as e:
            logger.error("Conversation cleanup failed", error=str(e))


def create_app(
    settings: Optional[Settings] = None,
    services: Optional[AppServices] = None
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        settings: Application settings; loaded from config when omitted
        services: Pre-built services (tests); built from settings when omitted
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app_settings = settings or get_settings()
        setup_logging(app_settings.log_level, json_output=app_settings.is_production)

        logger.info("Starting Orchestrator", environment=app_settings.environment)

        app.state.services = services or build_services(app_settings)
        cleanup = asyncio.create_task(cleanup_task(app.state.services))

        yield

        logger.info("Shutting down Orchestrator")
        cleanup.cancel()
        try:
            await cleanup
        except asyncio.CancelledError:
            pass

        await app.state.services.registry.close()

    app = FastAPI(
        title="MCP Orchestrator",
        description="Conversation engine with interactive tool orchestration",
        version="0.2.0",
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def get_services(request: Request) -> AppServices:
        found: Optional[AppServices] = getattr(request.app.state, "services", None)
        if found is None:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Orchestrator not initialized"
            )
        return found

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health_check(request: Request):
        """Health check endpoint."""
        app_services = get_services(request)
        tools = await app_services.registry.catalog_for(
            ConversationScope(conversation_id="health")
        ).list_tools()
        stats = app_services.history.get_stats()

        return HealthResponse(
            status="healthy",
            tool_count=len(tools),
            conversation_count=stats["total_conversations"]
        )

    @app.post(
        "/conversations/{conversation_id}/messages",
        response_model=OutcomeResponse,
        tags=["Conversations"]
    )
    async def send_message(conversation_id: str, body: MessageRequest, request: Request):
        """
        Process a user message.

        This is the main endpoint for the chat UI.
        """
        app_services = get_services(request)
        bind_context(conversation_id=conversation_id)
        try:
            await app_services.history.append_message(conversation_id, "user", body.message)
            outcome = await app_services.manager.process_message(
                conversation_id,
                body.message,
                timeout=body.timeout,
                user_id=body.user_id
            )
            await app_services.history.append_message(conversation_id, "assistant", outcome.text)
        finally:
            clear_context()

        return OutcomeResponse(
            conversation_id=conversation_id,
            type=outcome.kind,
            text=outcome.text
        )

    @app.get(
        "/conversations/{conversation_id}/messages",
        response_model=MessageListResponse,
        tags=["Conversations"]
    )
    async def list_messages(conversation_id: str, request: Request):
        """Get conversation history."""
        messages = await get_services(request).history.list_messages(conversation_id)
        if not messages:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Conversation not found"
            )

        return MessageListResponse(
            conversation_id=conversation_id,
            messages=[
                {
                    "role": m.role,
                    "content": m.content,
                    "timestamp": m.timestamp.isoformat()
                }
                for m in messages
            ]
        )

    @app.delete("/conversations/{conversation_id}/state", tags=["Conversations"])
    async def reset_conversation(conversation_id: str, request: Request):
        """Cancel any pending tool request of a conversation."""
        try:
            await get_services(request).manager.reset_conversation(conversation_id)
        except StateStoreError as e:
            logger.error("Conversation reset failed", conversation_id=conversation_id, error=str(e))
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Conversation state unavailable, please try again"
            )

        return {"status": "reset"}

    @app.get("/tools", tags=["Tools"])
    async def list_tools(
        request: Request,
        conversation_id: str = "default",
        user_id: Optional[str] = None
    ):
        """List the tools reachable from a conversation."""
        catalog = get_services(request).registry.catalog_for(
            ConversationScope(conversation_id=conversation_id, user_id=user_id)
        )
        tools = await catalog.list_tools()

        return {
            "tools": [tool.model_dump() for tool in tools],
            "count": len(tools)
        }

    return app


app = create_app()


def main():
    """Run the Orchestrator server."""
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "orchestrator.main:app",
        host=settings.orchestrator.host,
        port=settings.orchestrator.port,
        reload=settings.environment == "development"
    )


if __name__ == "__main__":
    main()
