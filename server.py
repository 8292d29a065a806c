import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional, Set

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from openai import AsyncOpenAI
from pydantic import BaseModel

from booth_agent import BoothChatAgent
from booth_agent.concurrency import CancelToken
from booth_agent.config import Settings
from booth_agent.decision import DecisionEngine
from booth_agent.llm import ChatModel
from booth_agent.marketplace import BoothClient, MarketplaceSearch, VectorSearchClient
from booth_agent.models import ConversationMessage, Identity
from booth_agent.quota import QuotaStoreError, SupabaseQuotaStore, TurnQuotaGate, quota_headers, rejection_body
from booth_agent.streaming import StreamWriter

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)

STREAM_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}

# Agent runs outlive their response stream briefly after a disconnect.
_agent_tasks: Set[asyncio.Task] = set()


class MessageIn(BaseModel):
    id: Optional[str] = None
    role: Literal["user", "model", "assistant"]
    text: Optional[str] = None
    image: Optional[str] = None
    items: Optional[List[Dict[str, Any]]] = None


class ChatRequest(BaseModel):
    messages: List[MessageIn]
    chat_id: Optional[str] = None
    language: Optional[str] = None


class ConfigurationError(Exception):
    pass


@dataclass
class Services:
    agent: BoothChatAgent
    gate: TurnQuotaGate
    http: Optional[httpx.AsyncClient] = None

    async def aclose(self) -> None:
        if self.http is not None:
            await self.http.aclose()


def build_services(settings: Settings) -> Services:
    """Wire every component from one Settings object."""
    missing = settings.missing()
    if missing:
        raise ConfigurationError(f"Configuration Error: {' / '.join(missing)} missing")

    http = httpx.AsyncClient(
        timeout=httpx.Timeout(30.0, connect=10.0),
        follow_redirects=True,
        proxy=settings.http_proxy,
    )
    llm = AsyncOpenAI(api_key=settings.llm_api_key, base_url=settings.llm_base_url)
    model = ChatModel(llm, settings.llm_model)

    vector = None
    if settings.vector_search_enabled:
        embeddings = AsyncOpenAI(
            api_key=settings.embedding_api_key or settings.llm_api_key,
            base_url=settings.embedding_base_url,
        )
        vector = VectorSearchClient(
            http,
            embeddings,
            settings.vector_search_url,
            settings.vector_search_token,
            embedding_model=settings.embedding_model,
        )

    search = MarketplaceSearch(
        BoothClient(http, settings.booth_base_url, detail_timeout=settings.detail_timeout),
        vector,
        vector_first=settings.vector_search_first,
        page_size=settings.page_size,
        full_page_threshold=settings.full_page_threshold,
        scrape_timeout=settings.scrape_timeout,
    )
    engine = DecisionEngine(
        model,
        attempts=settings.decision_attempts,
        timeout=settings.decision_timeout,
        conversation_turns=settings.conversation_turns,
        need_min=settings.need_min,
        max_pick=settings.max_pick,
    )
    agent = BoothChatAgent(
        engine,
        search,
        model,
        need_min=settings.need_min,
        max_pick=settings.max_pick,
        max_steps=settings.max_steps,
    )
    gate = TurnQuotaGate(
        SupabaseQuotaStore(http, settings.supabase_url, settings.supabase_anon_key, timeout=settings.quota_timeout)
    )
    return Services(agent=agent, gate=gate, http=http)


def to_conversation(messages: List[MessageIn]) -> List[ConversationMessage]:
    return [
        ConversationMessage(
            id=m.id,
            role="user" if m.role == "user" else "assistant",
            text=m.text or "",
            image=m.image or None,
            items=list(m.items or []),
        )
        for m in messages
    ]


def bearer_token(request: Request) -> str:
    header = request.headers.get("authorization") or ""
    if header.lower().startswith("bearer "):
        return header[7:].strip()
    return ""


def error(status: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse({"error": message, **extra}, status_code=status)


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if app.state.services is not None:
            await app.state.services.aclose()

    app = FastAPI(lifespan=lifespan)
    app.state.settings = settings
    app.state.services = services

    # Enable CORS for local development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # In production, specify the exact origin
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def invalid_body(request: Request, exc: RequestValidationError):
        return error(400, "Invalid messages")

    def get_services() -> Services:
        if app.state.services is None:
            app.state.services = build_services(app.state.settings)
        return app.state.services

    @app.post("/chat")
    async def chat_endpoint(body: ChatRequest, request: Request):
        if not body.chat_id:
            return error(400, "Missing chat_id")

        token = bearer_token(request)
        visitor_id = (request.headers.get("x-visitor-id") or "").strip()
        if not token and not visitor_id:
            return error(401, "Missing authentication")

        try:
            svc = get_services()
        except ConfigurationError as e:
            logger.error("[API] %s", e)
            return error(500, str(e))

        # Consume one turn (atomic check-and-increment) before any model call.
        identity = Identity(chat_id=body.chat_id, token=token or None, visitor_id=visitor_id or None)
        try:
            quota = await svc.gate.consume(identity)
        except QuotaStoreError as e:
            logger.error("[Turns] consumption failed: %s", e)
            return error(500, str(e))
        if not quota.allowed:
            return JSONResponse(rejection_body(quota), status_code=429, headers=quota_headers(quota))

        messages = to_conversation(body.messages)
        cancel = CancelToken()
        writer = StreamWriter(cancel)
        task = asyncio.create_task(svc.agent.run(messages, writer, cancel, body.language))
        _agent_tasks.add(task)
        task.add_done_callback(_agent_tasks.discard)

        async def stream_body():
            try:
                async for chunk in writer.chunks(request.is_disconnected):
                    yield chunk
            finally:
                # Reached early only when the client went away; the agent's own
                # finally closes the writer once the token stops it.
                if not task.done():
                    cancel.cancel()

        return StreamingResponse(
            stream_body(),
            media_type="text/event-stream; charset=utf-8",
            headers={**STREAM_HEADERS, **quota_headers(quota)},
        )

    @app.get("/")
    async def root():
        return {"status": "Booth Agent API is running", "docs": "/docs"}

    @app.get("/health")
    async def health_check():
        return {"status": "ok"}

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
