"""
HTTP surface for Research Guard.

create_app() wires explicit collaborators into a FastAPI application so
tests can swap any provider for a fake. No request state lives outside
the request that owns it.

Handlers that reach the ledger or the search index are plain functions
so FastAPI runs them in its threadpool.
"""

import json
import logging
from typing import Any, Dict, Iterator, List, Optional

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field, StrictInt, field_validator

from research_guard.config.loader import Settings, load_settings
from research_guard.core.admission import AdmissionController, Rejected
from research_guard.core.context import RequestContext
from research_guard.core.orchestrator import Orchestrator, normalize_messages
from research_guard.core.pricing import BillableAction, PricingTable
from research_guard.core.reports import build_corpus_summary
from research_guard.core.retry import RetryPolicy
from research_guard.core.tools import SearchInput, ToolInvoker, build_tool_registry
from research_guard.core.webhook import SIGNATURE_HEADER, WebhookProcessor, WebhookVerifier
from research_guard.sdk.ledger_client import build_ledger_client
from research_guard.sdk.openai_client import OpenAIChatModel
from research_guard.sdk.search_client import MATCH_ALL, AzureSearchClient, SearchError, SourceType
from research_guard.storage.models import EventType
from .middleware import INTERNAL_ERROR, CorrelationIDMiddleware

logger = logging.getLogger(__name__)

INVALID_INPUT = "INVALID_INPUT"
SUMMARY_DOCUMENT_LIMIT = 100
MAX_SEARCH_LIMIT = 50


# =============================================================================
# REQUEST MODELS
# =============================================================================


class _UserRequest(BaseModel):
    userId: str

    @field_validator("userId")
    @classmethod
    def user_id_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("userId is required and cannot be empty")
        return v


class CreditCheckRequest(_UserRequest):
    requiredCredits: StrictInt = Field(gt=0)


class UsageRecordRequest(_UserRequest):
    eventType: EventType
    credits: StrictInt = Field(gt=0)
    metadata: Optional[Dict[str, Any]] = None


class ChatRequest(_UserRequest):
    messages: List[Dict[str, Any]] = Field(min_length=1)


class SearchRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    query: Optional[str] = None
    sourceTypes: Optional[List[SourceType]] = None
    limit: StrictInt = Field(10, ge=1, le=MAX_SEARCH_LIMIT)

    def to_input(self) -> SearchInput:
        return SearchInput(query=self.query, source_types=tuple(self.sourceTypes or ()))


def _error(status_code: int, code: str, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, "code": code, **extra})


def _invalid(message: str) -> JSONResponse:
    return _error(400, INVALID_INPUT, message)


def _describe(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    return f"{location}: {first.get('msg')}" if location else str(first.get("msg"))


def _sse(events: Iterator[Dict[str, Any]], context: RequestContext) -> Iterator[str]:
    try:
        for event in events:
            yield f"data: {json.dumps(event)}\n\n"
    finally:
        # Reached on client disconnect too; stops any further tool calls.
        context.abort()
        events.close()


def build_search_client(settings: Settings) -> AzureSearchClient:
    """Search client sharing the ledger's retry bounds."""
    return AzureSearchClient(
        settings.search,
        retry_policy=RetryPolicy(
            max_retries=settings.ledger.max_retries,
            initial_backoff=settings.ledger.initial_backoff_seconds,
            max_backoff=settings.ledger.max_backoff_seconds,
        ),
    )


def build_orchestrator(settings: Settings, ledger, search_client, chat_model) -> Orchestrator:
    """Wire admission control, the tool registry and a chat model together."""
    pricing = PricingTable.from_settings(settings.pricing)
    admission = AdmissionController(ledger)
    invoker = ToolInvoker(build_tool_registry(search_client, settings.search.top_n), admission, pricing)
    return Orchestrator(chat_model, invoker, admission, pricing, settings.llm)


def create_app(
    settings: Optional[Settings] = None,
    ledger=None,
    search_client=None,
    chat_model=None,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        settings: Application settings (defaults to load_settings())
        ledger: Ledger client (defaults to the backend selected in settings)
        search_client: Search index client (defaults to AzureSearchClient)
        chat_model: Streaming chat model (defaults to OpenAIChatModel,
            created on the first chat request)

    Returns:
        Configured FastAPI application
    """
    settings = settings or load_settings()
    ledger = ledger or build_ledger_client(settings.ledger)
    search_client = search_client or build_search_client(settings)

    pricing = PricingTable.from_settings(settings.pricing)
    admission = AdmissionController(ledger)
    webhooks = WebhookProcessor(WebhookVerifier(settings.ledger.webhook_secret))
    models = {"chat": chat_model}

    def orchestrator() -> Orchestrator:
        if models["chat"] is None:
            models["chat"] = OpenAIChatModel(settings.llm)
        return build_orchestrator(settings, ledger, search_client, models["chat"])

    app = FastAPI(
        title="Research Guard API",
        description="Credit-gated research assistant with tool calling",
        version="0.1.0",
    )
    app.add_middleware(CorrelationIDMiddleware)
    app.state.settings = settings
    app.state.ledger = ledger
    app.state.pricing = pricing

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.info(
            "Request validation failed [%s] path=%s errors=%s",
            getattr(request.state, "correlation_id", None),
            request.url.path,
            [(e.get("loc"), e.get("type")) for e in exc.errors()],
        )
        return _invalid(_describe(exc))

    @app.post("/api/billing/webhook")
    async def billing_webhook(request: Request):
        raw_payload = await request.body()
        result = webhooks.process(raw_payload, request.headers.get(SIGNATURE_HEADER))
        return JSONResponse(status_code=result.status_code, content=result.body)

    @app.post("/api/billing/check")
    def billing_check(body: CreditCheckRequest):
        return admission.check(body.userId, body.requiredCredits).to_dict()

    @app.get("/api/billing")
    def billing_status(userId: str = Query(..., min_length=1)):
        if not userId.strip():
            return _invalid("userId is required")
        usage = ledger.get_user_usage(userId)
        return {
            "usage": usage.to_dict(),
            "hasCredits": ledger.check_credits(userId, 1),
            "pricing": pricing.as_dict(),
        }

    @app.post("/api/billing")
    def billing_record(body: UsageRecordRequest):
        result = admission.admit(
            body.userId,
            body.credits,
            lambda: None,
            event_type=body.eventType,
            metadata=body.metadata or {},
        )
        if isinstance(result, Rejected):
            return _error(402, result.code, result.reason, requiredCredits=result.required_credits)
        return {"success": True}

    @app.post("/api/chat")
    def chat(body: ChatRequest, request: Request):
        try:
            context = RequestContext(user_id=body.userId, request_id=request.state.correlation_id)
            if not normalize_messages(body.messages):
                raise ValueError("messages contain no text")
        except ValueError as e:
            return _invalid(str(e))

        events = orchestrator().stream_turn(context, body.messages)
        return StreamingResponse(_sse(events, context), media_type="text/event-stream")

    @app.post("/api/search")
    def search(body: SearchRequest, request: Request):
        query = body.to_input()
        try:
            hits = search_client.search(
                query.effective_query,
                source_types=list(query.source_types) or None,
                top=body.limit,
            )
        except SearchError as e:
            logger.error("Search failed [%s]: %s", request.state.correlation_id, e)
            return _error(
                500, INTERNAL_ERROR, "Failed to search sources",
                correlationId=request.state.correlation_id,
            )
        return {"results": [hit.to_dict() for hit in hits], "total": len(hits)}

    @app.get("/api/summary")
    def summary(request: Request, userId: str = Query(..., min_length=1)):
        if not userId.strip():
            return _invalid("userId is required")

        def summarize() -> Dict[str, Any]:
            documents = search_client.search(MATCH_ALL, top=SUMMARY_DOCUMENT_LIMIT)
            return build_corpus_summary(documents).to_dict()

        result = admission.admit(
            userId,
            pricing.credits_for(BillableAction.CORPUS_SUMMARY),
            summarize,
            event_type=pricing.event_type_for(BillableAction.CORPUS_SUMMARY),
            metadata={"reportType": "corpus-summary", "requestId": request.state.correlation_id},
        )
        if isinstance(result, Rejected):
            return _error(402, result.code, result.reason, requiredCredits=result.required_credits)
        return {"report": result}

    @app.get("/api/usage")
    def usage(userId: str = Query(..., min_length=1)):
        if not userId.strip():
            return _invalid("userId is required")
        return {"usage": ledger.get_user_usage(userId).to_dict()}

    return app
