"""
FastAPI Service Bus
-------------------
HTTP surface for the chat backend.

Provides REST endpoints for sending messages (blocking or streamed as
server-sent events) and for inspecting and curating conversation memory.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Dict, List, Optional
import json
import logging

from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from core.errors import ErrorCategory, ErrorHandler, InvalidInputError, StarChatError
from memory.store import MemoryKind

STATUS_CODES: Dict[ErrorCategory, int] = {
    ErrorCategory.INVALID_INPUT: 400,
    ErrorCategory.NOT_FOUND: 404,
    ErrorCategory.CANCELLED: 409,
    ErrorCategory.UNAVAILABLE: 503,
}


# Request/Response Models

class SendMessageRequest(BaseModel):
    """User message input."""
    content: str = Field(..., description="Message text")
    model: Optional[str] = Field(None, description="Override the configured model")


class MessageResponse(BaseModel):
    """A stored message."""
    id: int
    conversation_id: int
    sender_kind: str
    sender_id: int
    content: str
    status: str
    created_at: str


class MemoryItemResponse(BaseModel):
    """A stored memory item."""
    id: str
    conversation_id: int
    kind: str
    content: str
    weight: float
    created_at: str
    updated_at: str


class SearchResponse(BaseModel):
    """Memory search results, heaviest first."""
    query: str
    results: List[str]


class WeightUpdate(BaseModel):
    """New weight for a memory item."""
    weight: float = Field(..., description="Any finite number; heavier items rank first")


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str = "0.1.0"
    active_sessions: int = 0
    timestamp: str = Field(default_factory=lambda: datetime.now().isoformat())


def _sse(data: str, event: Optional[str] = None) -> str:
    """Format one server-sent event; multi-line data becomes several data fields."""
    lines = [f"event: {event}"] if event else []
    lines.extend(f"data: {line}" for line in data.split("\n"))
    return "\n".join(lines) + "\n\n"


# Service Bus

class ServiceBus:
    """
    HTTP service bus for StarChat.

    Provides REST API for:
    - Sending messages (blocking and streamed)
    - Memory inspection, search and curation
    - Health
    """

    def __init__(self, service, coordinator):
        self._service = service
        self._coordinator = coordinator
        self._errors = ErrorHandler()
        self._logger = logging.getLogger("starchat.infra.service_bus")
        self._app: Optional[FastAPI] = None

    def create_app(self) -> FastAPI:
        """Create and configure the FastAPI application."""

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            self._logger.info("Service bus starting...")
            yield
            self._logger.info("Service bus shutting down...")
            await self._coordinator.shutdown()

        app = FastAPI(
            title="StarChat API",
            description="Persona chat with streamed replies and conversational memory",
            version="0.1.0",
            lifespan=lifespan
        )

        # CORS for local development
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["http://localhost:*", "http://127.0.0.1:*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        @app.exception_handler(StarChatError)
        async def handle_starchat_error(request: Request, exc: StarChatError):
            message = self._errors.handle(exc)
            return JSONResponse(
                status_code=STATUS_CODES.get(exc.category, 500),
                content={"error": exc.category.name.lower(), "detail": message},
            )

        self._register_routes(app)

        self._app = app
        return app

    async def _stream_events(self, session) -> AsyncIterator[str]:
        """Relay the session as SSE frames; cancel it if the client goes away."""
        try:
            async for chunk in session.data:
                yield _sse(chunk)
            for error in await session.errors.collect():
                yield _sse(json.dumps({"detail": str(error)}), event="error")
            yield _sse("[DONE]")
        finally:
            if not session.done:
                self._logger.info(f"Client disconnected, cancelling {session.session_id}")
                session.cancel()

    def _register_routes(self, app: FastAPI) -> None:
        """Register all API routes."""

        @app.get("/health", response_model=HealthResponse, tags=["System"])
        async def health_check():
            """Health check endpoint."""
            return HealthResponse(status="healthy", active_sessions=self._coordinator.active_sessions)

        @app.post("/chats/{conversation_id}/messages", response_model=MessageResponse, tags=["Chat"])
        async def send_message(conversation_id: int, body: SendMessageRequest):
            """Send a message and return the stored reply."""
            reply = await self._service.send_message(conversation_id, body.content, model=body.model)
            return MessageResponse(**reply.to_dict())

        @app.post("/chats/{conversation_id}/messages/stream", tags=["Chat"])
        async def stream_message(conversation_id: int, body: SendMessageRequest):
            """Send a message and stream the reply as server-sent events."""
            session = await self._service.send_message_stream(conversation_id, body.content, model=body.model)
            return StreamingResponse(
                self._stream_events(session),
                media_type="text/event-stream",
                headers={"Cache-Control": "no-cache", "X-Session-Id": session.session_id},
            )

        @app.get("/chats/{conversation_id}/memory", response_model=List[MemoryItemResponse], tags=["Memory"])
        async def list_memory(conversation_id: int, kind: Optional[str] = None, limit: Optional[int] = None):
            """List stored memory items, optionally for one tier."""
            memory_kind = None
            if kind is not None:
                try:
                    memory_kind = MemoryKind(kind)
                except ValueError:
                    raise InvalidInputError(f"unknown memory kind: {kind}", "kind")

            items = self._service.memory.get_items(conversation_id, memory_kind)
            if limit is not None and limit > 0:
                items = items[:limit]
            return [MemoryItemResponse(**item.to_dict()) for item in items]

        @app.get("/chats/{conversation_id}/memory/search", response_model=SearchResponse, tags=["Memory"])
        async def search_memory(conversation_id: int, q: str = Query(...), limit: Optional[int] = None):
            """Substring search over both memory tiers."""
            results = self._service.memory.search_memory(conversation_id, q, limit)
            return SearchResponse(query=q, results=results)

        @app.delete("/chats/{conversation_id}/memory/short-term", tags=["Memory"])
        async def clear_short_term(conversation_id: int):
            """Clear the short-term memory of a conversation."""
            count = self._service.memory.clear_short_term_memory(conversation_id)
            return {"cleared": count}

        @app.put("/memory/{memory_id}/weight", response_model=MemoryItemResponse, tags=["Memory"])
        async def update_weight(memory_id: str, body: WeightUpdate):
            """Reweight a memory item."""
            item = self._service.memory.update_memory_weight(memory_id, body.weight)
            return MemoryItemResponse(**item.to_dict())


def create_app(service, coordinator) -> FastAPI:
    """Create the FastAPI application."""
    bus = ServiceBus(service, coordinator)
    return bus.create_app()


async def run_server(app: FastAPI, host: str = "127.0.0.1", port: int = 8000, log_level: str = "info") -> None:
    """Run the service bus server."""
    import uvicorn

    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level=log_level
    )
    server = uvicorn.Server(config)
    await server.serve()
