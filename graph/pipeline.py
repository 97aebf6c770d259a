"""
Turn pipeline and component wiring.

Graph flow:
1. route    -> RoutingEngine.decide (topic graph may be mutated)
2. record   -> store the user message stamped with the primary topic, refresh the topic snapshot
3. assemble -> ContextAssembler.assemble (token-bounded prompt)

Components are built once by ``build_components`` and injected; nothing is a
module-level singleton.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, TypedDict

from langchain_core.embeddings import Embeddings
from langgraph.graph import END, StateGraph

from graph.config import RouterSettings, load_settings
from graph.models import ContextResult, Message, RouterDecision, new_id
from graph.router import RouterContext, RoutingEngine, TopicCapabilityStrategy, TopicOnlyStrategy
from graph.tokens import TokenEstimator
from graph.topics import update_topic_snapshot
from providers.ollama_client import make_ollama, make_ollama_embeddings
from providers.openai_client import make_openai, make_openai_embeddings
from providers.structured import StructuredChat
from services.context_builder import ContextAssembler
from services.semantic import SemanticMatcher
from services.store import ConversationStore, InMemoryConversationStore
from services.topic_lock import TopicLock

logger = logging.getLogger("topic-router.pipeline")

PROFILES = ("topic", "topic_capability")


# ---------- State ----------
class TurnState(TypedDict, total=False):
    conversation_id: str
    user_message: str
    message_metadata: Dict[str, Any]
    record_message: bool
    context: RouterContext
    max_tokens: Optional[int]
    manual_topic_ids: List[str]

    decision: RouterDecision
    message_id: str
    result: ContextResult


@dataclass
class RouterComponents:
    settings: RouterSettings
    store: ConversationStore
    lock: TopicLock
    estimator: TokenEstimator
    matcher: SemanticMatcher
    engine: RoutingEngine
    assembler: ContextAssembler
    routing_model: Optional[StructuredChat] = None


# ---------- Provider registry ----------
def build_routing_model(settings: RouterSettings) -> Optional[StructuredChat]:
    rm = settings.routing_model
    if rm.provider == "openai":
        return make_openai(rm.name, rm.temperature, rm.timeout_sec)
    if rm.provider == "ollama":
        return make_ollama(rm.name, rm.temperature)
    logger.warning(f"Unknown routing model provider '{rm.provider}'; heuristic routing only")
    return None


def build_embedder(settings: RouterSettings) -> Optional[Embeddings]:
    emb = settings.embedding
    if not emb.enabled:
        return None
    if emb.provider == "openai":
        return make_openai_embeddings(emb.name, emb.timeout_sec)
    if emb.provider == "ollama":
        return make_ollama_embeddings(emb.name)
    logger.warning(f"Unknown embedding provider '{emb.provider}'; semantic hints disabled")
    return None


def build_components(
    settings: Optional[RouterSettings] = None,
    store: Optional[ConversationStore] = None,
    routing_model: Optional[StructuredChat] = None,
    embedder: Optional[Embeddings] = None,
    profile: str = "topic",
    build_clients: bool = True,
) -> RouterComponents:
    """
    Wire every component from settings. Explicit ``routing_model`` / ``embedder``
    win; with ``build_clients=False`` missing clients stay unset (heuristics only).
    """
    if profile not in PROFILES:
        raise ValueError(f"Unknown routing profile '{profile}', expected one of {PROFILES}")
    settings = settings or load_settings()
    store = store if store is not None else InMemoryConversationStore()
    if build_clients:
        routing_model = routing_model or build_routing_model(settings)
        embedder = embedder or build_embedder(settings)

    estimator = TokenEstimator(settings.tokenizer_encoding)
    lock = TopicLock(settings.topic_lock.backend, settings.topic_lock.redis_url, settings.topic_lock.timeout_sec)
    matcher = SemanticMatcher(embedder, estimator, settings.embedding)
    if profile == "topic_capability":
        strategy = TopicCapabilityStrategy(settings.capability.tiers)
    else:
        strategy = TopicOnlyStrategy()
    engine = RoutingEngine(store, lock, settings, estimator, routing_model, matcher, strategy)
    assembler = ContextAssembler(store, estimator, settings.context)

    logger.info(
        f"Router components ready: profile={profile} routing_model={routing_model.model if routing_model else 'none'} "
        f"embeddings={'on' if matcher.enabled else 'off'} lock={settings.topic_lock.backend}"
    )
    return RouterComponents(settings, store, lock, estimator, matcher, engine, assembler, routing_model)


# ---------- Graph Builder ----------
def build_compiled_turn_graph(components: RouterComponents):
    engine = components.engine
    assembler = components.assembler
    store = components.store

    async def _node_route(state: TurnState) -> TurnState:
        decision = await engine.decide(state["conversation_id"], state["user_message"], state.get("context"))
        return {"decision": decision}

    async def _node_record(state: TurnState) -> TurnState:
        if not state.get("record_message", True):
            return {}
        decision = state["decision"]
        message = Message(
            id=new_id(),
            conversation_id=state["conversation_id"],
            role="user",
            content=state["user_message"],
            topic_id=decision.primary_topic_id,
            metadata=dict(state.get("message_metadata") or {}),
        )
        await store.insert_message(message)
        await update_topic_snapshot(store, components.estimator, message.conversation_id, message.topic_id, message)
        return {"message_id": message.id}

    async def _node_assemble(state: TurnState) -> TurnState:
        result = await assembler.assemble(
            state["conversation_id"],
            state["decision"],
            max_tokens=state.get("max_tokens"),
            manual_topic_ids=state.get("manual_topic_ids"),
        )
        return {"result": result}

    g = StateGraph(TurnState)
    g.add_node("route", _node_route)
    g.add_node("record", _node_record)
    g.add_node("assemble", _node_assemble)

    # Linear flow: route -> record -> assemble -> END
    g.set_entry_point("route")
    g.add_edge("route", "record")
    g.add_edge("record", "assemble")
    g.add_edge("assemble", END)

    return g.compile()
