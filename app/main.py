import json
import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Literal, Optional

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

# ---------- Structured Logging ----------
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format='{"time":"%(asctime)s","level":"%(levelname)s","logger":"%(name)s","msg":"%(message)s"}',
    datefmt='%Y-%m-%dT%H:%M:%S'
)
logger = logging.getLogger("topic-router")

# ---------- Prometheus & Rate Limiting ----------
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from graph.config import load_settings
from graph.errors import TopicPersistenceError
from graph.pipeline import PROFILES, build_compiled_turn_graph, build_components
from graph.router import RouterContext

limiter = Limiter(key_func=get_remote_address, default_limits=["200/minute"])


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build router components once; close the topic lock on shutdown."""
    is_test = os.getenv("TOPIC_ROUTER_ENV") == "test"
    settings = load_settings()
    profile = os.getenv("ROUTER_PROFILE", "topic")

    if not is_test and settings.routing_model.provider == "openai":
        from providers.openai_client import check_openai_auth
        check_openai_auth()

    components = build_components(settings, profile=profile, build_clients=not is_test)
    await components.lock.connect()
    app.state.components = components
    app.state.turn_graph = build_compiled_turn_graph(components)
    logger.info(f"Config loaded from {settings.config_path}. Profile={profile}.")
    yield
    await components.lock.close()
    logger.info("Shutting down Topic Router.")


app = FastAPI(title="Topic Router (LangGraph/LangChain)", version="1.0.0", lifespan=lifespan)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Init Metrics
Instrumentator().instrument(app).expose(app)


@app.exception_handler(TopicPersistenceError)
async def topic_persistence_handler(request, exc: TopicPersistenceError):
    logger.error(f"Turn failed (conversation={exc.conversation_id}): {exc}")
    return Response(
        content=json.dumps({"error": "turn failed, please retry"}),
        status_code=503,
        media_type="application/json",
    )


# Global Exception Handler for clean 500s
@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    return Response(
        content=json.dumps({
            "error": "Internal Server Error",
            "detail": str(exc),
            "type": type(exc).__name__
        }),
        status_code=500,
        media_type="application/json"
    )


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    response.headers["Content-Security-Policy"] = "default-src 'self'"
    return response


@app.middleware("http")
async def api_key_middleware(request: Request, call_next):
    if request.url.path.startswith(("/healthz", "/health", "/docs", "/openapi.json")):
        return await call_next(request)

    expected_key = os.getenv("TOPIC_ROUTER_API_KEY")
    if expected_key:
        client_key = request.headers.get("X-API-Key")
        if not client_key:
            auth_header = request.headers.get("Authorization")
            if auth_header:
                client_key = auth_header[7:] if auth_header.startswith("Bearer ") else auth_header

        logger.info(f"Auth request: path={request.url.path} auth_provided={bool(client_key)}")
        if not client_key or client_key != expected_key:
            return Response(content="Unauthorized: Invalid or missing API Key", status_code=401)

    return await call_next(request)


app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ALLOW_ORIGINS", "*").split(","),
    allow_credentials=True, allow_methods=["*"], allow_headers=["*"],
)


# ---------- Request Models ----------
class TurnRequest(BaseModel):
    conversation_id: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1, max_length=200000)
    project_id: Optional[str] = None
    project_name: Optional[str] = None
    user_id: Optional[str] = None
    conversation_title: Optional[str] = None
    active_topic_id: Optional[str] = None
    speed_mode: Literal["auto", "instant", "thinking"] = "auto"
    model_preference: Optional[str] = None
    available_memory_types: List[str] = Field(default_factory=list)

    def router_context(self) -> RouterContext:
        return RouterContext(
            project_id=self.project_id,
            project_name=self.project_name,
            user_id=self.user_id,
            conversation_title=self.conversation_title,
            active_topic_id=self.active_topic_id,
            speed_mode=self.speed_mode,
            model_preference=self.model_preference,
            available_memory_types=list(self.available_memory_types),
        )


class RouteRequest(TurnRequest):
    max_tokens: Optional[int] = Field(default=None, gt=0)
    manual_topic_ids: List[str] = Field(default_factory=list)
    record_message: bool = True
    metadata: Dict[str, Any] = Field(default_factory=dict)


# ---------- Endpoints ----------
@app.get("/healthz")
def healthz(): return {"ok": True}


@app.head("/healthz")
def _healthz_head():
    return Response(status_code=200)


@app.get("/health")
async def health_check(request: Request):
    """Detailed health check including topic lock backend and client availability."""
    components = request.app.state.components
    return {
        "status": "ok",
        "service": "topic-router",
        "profile": components.engine.strategy.name,
        "routing_model": components.routing_model.model if components.routing_model else None,
        "embeddings": components.matcher.enabled,
        "tokenizer_exact": components.estimator.exact,
        "topic_lock": await components.lock.get_metrics(),
    }


@app.post("/v1/route")
@limiter.limit("100/minute")
async def route(request: Request, req: RouteRequest) -> Dict[str, Any]:
    t0 = time.perf_counter()
    state = {
        "conversation_id": req.conversation_id,
        "user_message": req.message,
        "message_metadata": req.metadata,
        "record_message": req.record_message,
        "context": req.router_context(),
        "max_tokens": req.max_tokens,
        "manual_topic_ids": req.manual_topic_ids,
    }
    out = await request.app.state.turn_graph.ainvoke(state)
    decision = out["decision"]
    result = out["result"]
    latency_ms = int((time.perf_counter() - t0) * 1000)
    logger.info(json.dumps({
        "evt": "turn_done",
        "action": decision.topic_action,
        "routed_by": decision.routed_by,
        "source": result.source,
        "messages": len(result.messages),
        "lat_ms": latency_ms,
    }))
    return {
        "decision": decision.to_dict(),
        "message_id": out.get("message_id"),
        "context": {
            "messages": [m.to_dict() for m in result.messages],
            "source": result.source,
            "included_topic_ids": result.included_topic_ids,
            "summary_count": result.summary_count,
            "artifact_count": result.artifact_count,
            "debug": result.debug,
        },
        "latency_ms": latency_ms,
    }


@app.post("/debug/router_decision")
async def debug_route_decision(request: Request, req: TurnRequest):
    """
    Debug endpoint: candidates, semantic scores and the heuristic decision the
    router would fall back to. Does not call the routing model or write anything.
    """
    components = request.app.state.components
    return await components.engine.preview(req.conversation_id, req.message, req.router_context())


@app.get("/debug/config")
def debug_config(request: Request):
    settings = request.app.state.components.settings
    return {
        "config_path": settings.config_path,
        "profiles": list(PROFILES),
        "context": settings.context.__dict__,
        "candidates": settings.candidates.__dict__,
        "routing_model": {"provider": settings.routing_model.provider, "name": settings.routing_model.name},
        "embedding": {"enabled": settings.embedding.enabled, "provider": settings.embedding.provider, "name": settings.embedding.name},
        "capability_tiers": settings.capability.tiers,
        "topic_lock_backend": settings.topic_lock.backend,
        "env": {
            "OPENAI_API_KEY_SET": bool(os.getenv("OPENAI_API_KEY") or os.getenv("OPENAI_API_KEY_TIER2")),
            "OLLAMA_BASE_URL": os.getenv("OLLAMA_BASE_URL"),
            "REDIS_URL_SET": bool(os.getenv("REDIS_URL")),
        },
    }
