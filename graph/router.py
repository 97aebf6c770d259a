"""
Topic Router - per-turn topic and capability routing

For each user message the engine:
1. gathers candidates (topics, recent messages, artifacts, cross-chat topics)
2. asks the routing model for a structured decision (one retry)
3. falls back to deterministic heuristics when the model is unusable
4. filters hallucinated ids and applies profile constraints
5. persists the topic assignment (new topic / metadata refresh)

Two profiles share this skeleton: ``TopicOnlyStrategy`` decides the topic
only; ``TopicCapabilityStrategy`` also picks a capability tier and effort.
"""

import asyncio
import dataclasses
import datetime
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import TypeAdapter, ValidationError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from graph.capability import apply_capability_constraints, heuristic_capability, normalize_preference
from graph.config import RouterSettings
from graph.errors import RoutingModelError
from graph.models import Artifact, CandidateTopic, Message, RouterDecision
from graph.prompts import (
    CAPABILITY_DECISION_SCHEMA,
    CAPABILITY_ROUTER_SYSTEM_PROMPT,
    TOPIC_DECISION_SCHEMA,
    TOPIC_ROUTER_SYSTEM_PROMPT,
    build_router_messages,
    build_router_prompt,
    parse_json_loose,
)
from graph.schemas import CAPABILITY_DECISION_ADAPTER, TOPIC_DECISION_ADAPTER
from graph.tokens import TokenEstimator
from graph.topics import (
    build_auto_topic_description,
    build_auto_topic_label,
    ensure_topic_assignment,
    sanitize_message_content,
)
from providers.structured import StructuredChat
from services.semantic import SemanticMatcher
from services.store import ConversationStore
from services.topic_lock import TopicLock

logger = logging.getLogger("topic-router.routing")

MAX_SECONDARY_TOPICS = 3
MAX_ARTIFACTS_TO_LOAD = 3
MAX_MEMORY_TYPES = 3
_KEYWORD_SPLIT = re.compile(r"[^a-z0-9]+")


# ---------- Data Classes ----------
@dataclass
class RouterContext:
    """Caller-supplied facts about the turn."""
    project_id: Optional[str] = None
    project_name: Optional[str] = None
    user_id: Optional[str] = None
    conversation_title: Optional[str] = None
    active_topic_id: Optional[str] = None
    speed_mode: str = "auto"
    model_preference: Optional[str] = None
    available_memory_types: List[str] = field(default_factory=list)


@dataclass
class CandidateSet:
    topics: List[CandidateTopic] = field(default_factory=list)
    recent_messages: List[Message] = field(default_factory=list)
    artifacts: List[Artifact] = field(default_factory=list)

    @property
    def topic_ids(self) -> set:
        return {c.id for c in self.topics}

    @property
    def artifact_ids(self) -> set:
        return {a.id for a in self.artifacts}


# ---------- Utilities ----------
def extract_keywords(message: str) -> List[str]:
    """Lower-case alphanumeric tokens of 4-32 chars, first 8 in message order."""
    tokens = [t for t in _KEYWORD_SPLIT.split((message or "").lower()) if 4 <= len(t) <= 32]
    return tokens[:8]


def _dedupe(ids) -> List[str]:
    seen, out = set(), []
    for i in ids:
        if i and i not in seen:
            seen.add(i)
            out.append(i)
    return out


def sanitize_decision(decision: RouterDecision, candidates: CandidateSet) -> RouterDecision:
    """Drop every id the candidate set doesn't contain."""
    topic_ids = candidates.topic_ids
    artifact_ids = candidates.artifact_ids
    d = dataclasses.replace(decision)

    if d.primary_topic_id and d.primary_topic_id not in topic_ids:
        logger.warning(f"Routing model referenced unknown primary topic {d.primary_topic_id}; treating as absent")
        d.primary_topic_id = None
    if d.new_parent_topic_id and d.new_parent_topic_id not in topic_ids:
        logger.info(f"Dropping unknown parent topic {d.new_parent_topic_id}")
        d.new_parent_topic_id = None

    secondaries = [t for t in _dedupe(d.secondary_topic_ids) if t in topic_ids and t != d.primary_topic_id]
    dropped = set(d.secondary_topic_ids) - set(secondaries) - {d.primary_topic_id}
    if dropped:
        logger.warning(f"Filtered unknown secondary topics: {sorted(dropped)}")
    d.secondary_topic_ids = secondaries[:MAX_SECONDARY_TOPICS]

    artifacts = [a for a in _dedupe(d.artifacts_to_load) if a in artifact_ids]
    unknown_artifacts = set(d.artifacts_to_load) - set(artifacts)
    if unknown_artifacts:
        logger.warning(f"Filtered unknown artifacts: {sorted(unknown_artifacts)}")
    d.artifacts_to_load = artifacts[:MAX_ARTIFACTS_TO_LOAD]
    return d


def _new_topic_decision(user_message: str) -> RouterDecision:
    description = build_auto_topic_description(user_message) or ""
    return RouterDecision(
        topic_action="new",
        new_topic_label=build_auto_topic_label(user_message),
        new_topic_description=description,
        new_topic_summary=description,
        routed_by="fallback",
    )


# ---------- Strategies ----------
class RoutingStrategy:
    """Profile-specific pieces of the routing skeleton."""

    name = "topic"
    schema_name = "router_decision"
    schema: Dict[str, Any] = TOPIC_DECISION_SCHEMA
    system_prompt = TOPIC_ROUTER_SYSTEM_PROMPT
    adapter: TypeAdapter = TOPIC_DECISION_ADAPTER

    def prompt_notes(self, context: RouterContext) -> List[str]:
        return []

    def to_decision(self, payload) -> RouterDecision:
        return RouterDecision(
            topic_action=payload.topicAction,
            primary_topic_id=payload.primaryTopicId,
            secondary_topic_ids=list(payload.secondaryTopicIds),
            new_parent_topic_id=payload.newParentTopicId,
            new_topic_label=payload.newTopicLabel,
            new_topic_description=payload.newTopicDescription,
            new_topic_summary=payload.newTopicSummary,
            artifacts_to_load=list(payload.artifactsToLoad),
        )

    def fallback(self, user_message: str, context: RouterContext, candidates: CandidateSet) -> RouterDecision:
        """Reuse the topic of the most recent tagged message, else open a new topic."""
        known = candidates.topic_ids
        for m in reversed(candidates.recent_messages):
            if m.topic_id and m.topic_id in known:
                return RouterDecision(topic_action="continue_active", primary_topic_id=m.topic_id, routed_by="fallback")
        return _new_topic_decision(user_message)

    def enforce(self, decision: RouterDecision, context: RouterContext, candidates: CandidateSet) -> RouterDecision:
        if (
            decision.topic_action == "continue_active"
            and not decision.primary_topic_id
            and context.active_topic_id in candidates.topic_ids
        ):
            decision.primary_topic_id = context.active_topic_id
        return decision


class TopicOnlyStrategy(RoutingStrategy):
    pass


class TopicCapabilityStrategy(RoutingStrategy):
    """Topic routing plus capability tier, reasoning effort and memory categories."""

    name = "topic_capability"
    schema_name = "router_capability_decision"
    schema = CAPABILITY_DECISION_SCHEMA
    system_prompt = CAPABILITY_ROUTER_SYSTEM_PROMPT
    adapter = CAPABILITY_DECISION_ADAPTER

    def __init__(self, tiers: Dict[str, str]):
        self.tiers = dict(tiers)

    def prompt_notes(self, context: RouterContext) -> List[str]:
        notes = []
        preference = normalize_preference(context.model_preference, self.tiers)
        if preference:
            notes.append(f"IMPORTANT: User explicitly selected \"{preference}\" - you MUST use this model tier.")
        if context.speed_mode == "instant":
            notes.append("User selected INSTANT mode - use the lowest effort allowed for the tier.")
        elif context.speed_mode == "thinking":
            notes.append("User selected THINKING mode - prefer \"medium\" or \"high\" effort.")
        if context.available_memory_types:
            notes.append(f"Available memory categories: {', '.join(context.available_memory_types)}.")
        return notes

    def to_decision(self, payload) -> RouterDecision:
        d = super().to_decision(payload)
        d.model = payload.model
        d.effort = payload.effort
        d.memory_types_to_load = list(payload.memoryTypesToLoad)
        return d

    def fallback(self, user_message: str, context: RouterContext, candidates: CandidateSet) -> RouterDecision:
        if context.active_topic_id and context.active_topic_id in candidates.topic_ids:
            d = RouterDecision(topic_action="continue_active", primary_topic_id=context.active_topic_id, routed_by="fallback")
        else:
            d = _new_topic_decision(user_message)
        preference = normalize_preference(context.model_preference, self.tiers)
        d.model, d.effort = heuristic_capability(user_message, context.speed_mode, preference)
        d.memory_types_to_load = list(context.available_memory_types[:MAX_MEMORY_TYPES])
        return d

    def enforce(self, decision: RouterDecision, context: RouterContext, candidates: CandidateSet) -> RouterDecision:
        d = decision
        if d.topic_action == "new":
            d.primary_topic_id = None
        elif d.topic_action == "continue_active":
            if context.active_topic_id and context.active_topic_id in candidates.topic_ids:
                d.primary_topic_id = context.active_topic_id
            else:
                logger.info("continue_active without an active topic; opening a new topic instead")
                d.topic_action = "new"
                d.primary_topic_id = None

        # model and effort are always set here: required by the schema, filled in by fallback().
        preference = normalize_preference(context.model_preference, self.tiers)
        d.model, d.effort = apply_capability_constraints(d.model, d.effort, context.speed_mode, preference)
        d.model_id = self.tiers.get(d.model)

        if context.available_memory_types:
            allowed = set(context.available_memory_types)
            d.memory_types_to_load = [m for m in _dedupe(d.memory_types_to_load) if m in allowed]
        d.memory_types_to_load = d.memory_types_to_load[:MAX_MEMORY_TYPES]
        return d


# ---------- Engine ----------
class RoutingEngine:
    def __init__(
        self,
        store: ConversationStore,
        lock: TopicLock,
        settings: RouterSettings,
        estimator: TokenEstimator,
        routing_model: Optional[StructuredChat] = None,
        matcher: Optional[SemanticMatcher] = None,
        strategy: Optional[RoutingStrategy] = None,
    ):
        self._store = store
        self._lock = lock
        self._settings = settings
        self._estimator = estimator
        self._model = routing_model
        self._matcher = matcher
        self.strategy = strategy or TopicOnlyStrategy()

    # ----- candidates -----
    async def _cross_conversation_topics(self, conversation_id: str, context: RouterContext) -> List[CandidateTopic]:
        # Cross-chat reuse needs an owner to scope it to.
        if not context.project_id and not context.user_id:
            return []
        cand = self._settings.candidates
        others = await self._store.list_other_conversations(
            conversation_id, context.project_id, context.user_id, cand.max_foreign_conversations
        )
        if not others:
            return []
        by_id = {c.id: c for c in others}
        rows = await self._store.list_topics_for_conversations(
            list(by_id), self._settings.context.cross_chat_token_limit, cand.max_foreign_topics
        )
        return [
            CandidateTopic(t, True, by_id[t.conversation_id].title, by_id[t.conversation_id].project_id)
            for t in rows
            if t.conversation_id in by_id
        ]

    async def gather_candidates(self, conversation_id: str, user_message: str, context: RouterContext) -> CandidateSet:
        cand = self._settings.candidates
        results = await asyncio.gather(
            self._store.list_topics(conversation_id),
            self._store.recent_messages(conversation_id, cand.max_recent_messages),
            self._store.search_artifacts(conversation_id, extract_keywords(user_message), cand.max_artifacts),
            self._cross_conversation_topics(conversation_id, context),
            return_exceptions=True,
        )
        loaded = []
        for name, result in zip(("topics", "recent messages", "artifacts", "cross-chat topics"), results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning(f"Candidate load failed ({name}): {type(result).__name__}: {result}")
                result = []
            loaded.append(result)
        topics, recent, artifacts, foreign = loaded

        local = [CandidateTopic(t, False, context.conversation_title, context.project_id) for t in topics]
        local_ids = {c.id for c in local}
        merged = local + [c for c in foreign if c.id not in local_ids]
        return CandidateSet(topics=merged, recent_messages=list(recent), artifacts=list(artifacts)[: cand.max_artifacts])

    # ----- model -----
    async def _attempt(self, prompt: str, attempt_no: int) -> RouterDecision:
        rm = self._settings.routing_model
        messages = build_router_messages(self.strategy.system_prompt, prompt, attempt_no)
        try:
            raw = await asyncio.wait_for(
                self._model.ainvoke_json(messages, self.strategy.schema_name, self.strategy.schema),
                timeout=rm.timeout_sec,
            )
        except asyncio.TimeoutError as e:
            raise RoutingModelError(f"routing model timed out after {rm.timeout_sec}s") from e
        except Exception as e:
            raise RoutingModelError(f"routing model call failed: {type(e).__name__}: {e}") from e

        try:
            payload = self.strategy.adapter.validate_python(parse_json_loose(raw))
        except (ValueError, TypeError, ValidationError) as e:
            logger.warning(f"Routing output rejected on attempt {attempt_no}: {str(e)[:300]}")
            raise RoutingModelError(f"invalid routing output: {e}") from e
        return self.strategy.to_decision(payload)

    async def _ask_model(self, prompt: str) -> RouterDecision:
        if self._model is None:
            raise RoutingModelError("no routing model configured")
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(max(1, self._settings.routing_model.max_attempts)),
            retry=retry_if_exception_type(RoutingModelError),
            reraise=True,
        ):
            with attempt:
                n = attempt.retry_state.attempt_number
                if n > 1:
                    logger.info(f"Retrying routing model (attempt {n})")
                return await self._attempt(prompt, n)

    # ----- decide -----
    async def decide(
        self, conversation_id: str, user_message: str, context: Optional[RouterContext] = None
    ) -> RouterDecision:
        """
        Route one user message. Never fails because of the routing model or the
        embedding service; raises ``TopicPersistenceError`` if the topic can't be saved.
        """
        context = context or RouterContext()
        t0 = time.perf_counter()
        candidates = await self.gather_candidates(conversation_id, user_message, context)

        semantic = None
        if self._matcher is not None:
            semantic = await self._matcher.compute_similarity(
                user_message, [c.topic for c in candidates.topics], candidates.artifacts
            )

        prompt = build_router_prompt(
            user_message,
            candidates.topics,
            candidates.artifacts,
            [dataclasses.replace(m, content=sanitize_message_content(m)) for m in candidates.recent_messages],
            project_id=context.project_id,
            project_name=context.project_name,
            conversation_title=context.conversation_title,
            active_topic_id=context.active_topic_id,
            semantic_matches=semantic,
            cross_chat_token_limit=self._settings.context.cross_chat_token_limit,
            extra_notes=self.strategy.prompt_notes(context),
        )

        try:
            decision = await self._ask_model(prompt)
            decision.routed_by = "llm"
        except RoutingModelError as e:
            logger.warning(f"Routing failed, using fallback: {e}")
            decision = self.strategy.fallback(user_message, context, candidates)

        decision = sanitize_decision(decision, candidates)
        decision = self.strategy.enforce(decision, context, candidates)
        decision = await ensure_topic_assignment(
            self._store, self._lock, conversation_id, decision, user_message, known_topic_ids=candidates.topic_ids
        )
        self._log_metric(conversation_id, decision, candidates, semantic, t0)
        return decision

    async def preview(
        self, conversation_id: str, user_message: str, context: Optional[RouterContext] = None
    ) -> Dict[str, Any]:
        """
        Debug helper: what the router would look at for this message. Does not
        call the routing model and does not touch the topic graph.
        """
        context = context or RouterContext()
        candidates = await self.gather_candidates(conversation_id, user_message, context)
        semantic = None
        if self._matcher is not None:
            semantic = await self._matcher.compute_similarity(
                user_message, [c.topic for c in candidates.topics], candidates.artifacts
            )
        preference = normalize_preference(context.model_preference, self._settings.capability.tiers)
        tier, effort = heuristic_capability(user_message, context.speed_mode, preference)
        heuristic = self.strategy.fallback(user_message, context, candidates)
        return {
            "profile": self.strategy.name,
            "keywords": extract_keywords(user_message),
            "candidate_topics": [
                {"id": c.id, "label": c.topic.label, "cross_conversation": c.is_cross_conversation}
                for c in candidates.topics
            ],
            "candidate_artifacts": [{"id": a.id, "title": a.title} for a in candidates.artifacts],
            "semantic_matches": [dataclasses.asdict(m) for m in semantic] if semantic is not None else None,
            "heuristic_decision": heuristic.to_dict(),
            "heuristic_capability": {"model": tier, "model_id": self._settings.capability.tiers.get(tier), "effort": effort},
            "routing_model": self._model.model if self._model else None,
            "user_message_tokens": self._estimator.estimate(user_message),
        }

    # ----- metrics -----
    def _log_metric(self, conversation_id, decision, candidates, semantic, t0) -> None:
        try:
            event = {
                "ts": datetime.datetime.now().isoformat(),
                "conversation_id": conversation_id,
                "profile": self.strategy.name,
                "action": decision.topic_action,
                "primary_topic_id": decision.primary_topic_id,
                "secondary_count": len(decision.secondary_topic_ids),
                "artifact_count": len(decision.artifacts_to_load),
                "candidate_topics": len(candidates.topics),
                "semantic": semantic is not None,
                "routed_by": decision.routed_by,
                "model": decision.model,
                "effort": decision.effort,
                "latency_ms": int((time.perf_counter() - t0) * 1000),
            }
            if self._model is not None and self._model.last_usage:
                event["router_usage"] = dict(self._model.last_usage, model=self._model.model)
            logger.info(f"METRIC: {json.dumps(event)}")
        except Exception as e:
            logger.error(f"Metrics logging failed: {e}")
