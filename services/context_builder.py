"""
Context assembly for the main chat model.

Given a routing decision, build a token-bounded list of messages:

    [primary topic messages (chronological)] + [summaries] + [artifacts]

Conversation messages lead so the prompt prefix stays stable between turns
(provider prefix caching); summaries and artifacts vary and go last. Every
trim drops the oldest content first.
"""

import asyncio
import logging
import math
from typing import Dict, List, Optional, Sequence, Tuple

from graph.config import ContextSettings
from graph.models import Artifact, ContextMessage, ContextResult, Conversation, Message, RouterDecision, Topic
from graph.prompts import squash
from graph.tokens import TokenEstimator
from graph.topics import sanitize_message_content
from services.store import ConversationStore

logger = logging.getLogger("topic-router.context")

TAIL_SNIPPET_CHARS = 140


def to_context_message(message: Message) -> ContextMessage:
    role = "assistant" if message.role == "assistant" else "user"
    return ContextMessage(role=role, content=sanitize_message_content(message))


class ContextAssembler:
    def __init__(self, store: ConversationStore, estimator: TokenEstimator, settings: ContextSettings):
        self._store = store
        self._estimator = estimator
        self._settings = settings

    # ---------- token helpers ----------
    def _tokens(self, messages: Sequence[ContextMessage]) -> int:
        return sum(self._estimator.estimate(m.content) for m in messages)

    def trim_to_budget(self, messages: Sequence[ContextMessage], token_cap: int) -> List[ContextMessage]:
        """Keep the newest messages that fit; stop at the first one that doesn't."""
        if not messages or token_cap <= 0:
            return []
        remaining = token_cap
        kept: List[ContextMessage] = []
        for msg in reversed(messages):
            tokens = self._estimator.estimate(msg.content)
            if tokens > remaining:
                break
            kept.append(msg)
            remaining -= tokens
        kept.reverse()
        return kept

    def _budget(self, max_tokens: Optional[int]) -> int:
        if max_tokens is None:
            return self._settings.max_tokens
        return max(0, min(max_tokens, self._settings.max_tokens))

    # ---------- loaders ----------
    async def load_fallback_messages(self, conversation_id: str, budget: int) -> List[ContextMessage]:
        rows = await self._store.recent_messages(conversation_id, self._settings.fallback_message_limit)
        messages = [to_context_message(m) for m in rows]
        return self.trim_to_budget(messages, min(self._settings.fallback_token_cap, budget))

    async def _secondary_tail(self, topic: Topic) -> str:
        rows = await self._store.topic_messages(topic.conversation_id, topic.id)
        parts = []
        for m in rows[-self._settings.secondary_tail_messages:]:
            snippet = squash(sanitize_message_content(m), TAIL_SNIPPET_CHARS)
            if snippet:
                parts.append(f"{'Assistant' if m.role == 'assistant' else 'User'}: {snippet}")
        return " | ".join(parts)

    async def _select_artifacts(self, ids: Sequence[str], budget: int) -> List[Tuple[Artifact, ContextMessage]]:
        if not ids or budget <= 0:
            return []
        rows = {a.id: a for a in await self._store.get_artifacts(list(ids))}
        selected = []
        remaining = budget
        for artifact_id in ids:
            artifact = rows.get(artifact_id)
            if artifact is None:
                continue
            msg = ContextMessage("assistant", f"[Artifact: {artifact.title or 'Unnamed artifact'}] {artifact.content or ''}")
            tokens = self._estimator.estimate(msg.content)
            if tokens > remaining:
                logger.info(f"Skipping artifact {artifact.id} ({tokens} tokens > {remaining} left)")
                continue
            selected.append((artifact, msg))
            remaining -= tokens
        return selected

    # ---------- labels ----------
    @staticmethod
    def _origin(topic: Topic, meta: Dict[str, Conversation], conversation_id: str) -> str:
        if topic.conversation_id == conversation_id:
            return "this chat"
        convo = meta.get(topic.conversation_id)
        chat = (convo.title if convo else None) or "another chat"
        if convo and convo.project_name:
            return f"{chat} in project {convo.project_name}"
        return chat

    def _blocked_notice(self, topic: Topic, meta: Dict[str, Conversation], conversation_id: str) -> ContextMessage:
        limit_k = self._settings.cross_chat_token_limit // 1000
        return ContextMessage(
            "assistant",
            f"[Cross-chat notice] Skipped topic \"{topic.label}\" from {self._origin(topic, meta, conversation_id)} "
            f"because it exceeds the {limit_k}k-token cross-chat limit. Inform the user you could not load it.",
        )

    def _is_blocked(self, topic: Topic, conversation_id: str) -> bool:
        return (
            topic.conversation_id != conversation_id
            and (topic.token_estimate or 0) > self._settings.cross_chat_token_limit
        )

    # ---------- assemble ----------
    async def _fallback(self, conversation_id: str, budget: int, included=(), summary_count=0, artifact_count=0):
        messages = await self.load_fallback_messages(conversation_id, budget)
        logger.info(f"Context fallback for {conversation_id}: {len(messages)} messages")
        return ContextResult(
            messages=messages,
            source="fallback",
            included_topic_ids=list(included),
            summary_count=summary_count,
            artifact_count=artifact_count,
        )

    async def assemble(
        self,
        conversation_id: str,
        decision: RouterDecision,
        max_tokens: Optional[int] = None,
        manual_topic_ids: Optional[Sequence[str]] = None,
    ) -> ContextResult:
        budget = self._budget(max_tokens)
        manual = [t.strip() for t in (manual_topic_ids or []) if isinstance(t, str) and t.strip()]
        primary_id = manual[0] if manual else decision.primary_topic_id
        secondary_ids = manual[1:] if manual else list(decision.secondary_topic_ids or [])

        if not primary_id:
            return await self._fallback(conversation_id, budget)

        requested = list(dict.fromkeys([primary_id, *secondary_ids]))
        topic_map = {t.id: t for t in await self._store.get_topics(requested)}
        primary = topic_map.get(primary_id)
        if primary is None:
            logger.warning(f"Primary topic {primary_id} not found; using fallback context")
            return await self._fallback(conversation_id, budget)

        conv_ids = list(dict.fromkeys([conversation_id, *(t.conversation_id for t in topic_map.values())]))
        meta = {c.id: c for c in await self._store.get_conversations(conv_ids)}

        primary_blocked = self._is_blocked(primary, conversation_id)
        blocked: List[Topic] = [primary] if primary_blocked else []
        secondaries = []
        for sid in secondary_ids:
            topic = topic_map.get(sid)
            if topic is None or topic.id == primary_id:
                continue
            if self._is_blocked(topic, conversation_id):
                blocked.append(topic)
            else:
                secondaries.append(topic)
        notices = [self._blocked_notice(t, meta, conversation_id) for t in blocked]

        if primary_blocked:
            fallback = await self.load_fallback_messages(conversation_id, budget)
            messages = self.trim_to_budget(fallback + notices, budget)
            logger.info(f"Primary topic {primary_id} exceeds cross-chat limit; fallback with {len(notices)} notice(s)")
            return ContextResult(messages, "fallback", [], len(notices), 0)

        # Independent reads, issued together.
        artifact_budget = math.floor(budget * self._settings.artifact_budget_fraction)
        primary_rows, tails, artifacts = await asyncio.gather(
            self._store.topic_messages(primary.conversation_id, primary.id),
            asyncio.gather(*(self._secondary_tail(t) for t in secondaries)),
            self._select_artifacts(decision.artifacts_to_load or [], artifact_budget),
        )

        included = [primary.id]
        summaries: List[ContextMessage] = list(notices)
        if primary.summary and primary.summary.strip():
            summaries.append(ContextMessage(
                "assistant",
                f"[Topic summary: {primary.label} from {self._origin(primary, meta, conversation_id)}] {primary.summary.strip()}",
            ))
        for topic, tail in zip(secondaries, tails):
            included.append(topic.id)
            parts = []
            if topic.summary and topic.summary.strip():
                parts.append(topic.summary.strip())
            if tail:
                parts.append(f"Recent notes: {tail}")
            if not parts:
                continue
            summaries.append(ContextMessage(
                "assistant",
                f"[Reference summary: {topic.label} from {self._origin(topic, meta, conversation_id)}] {' | '.join(parts)}",
            ))

        artifact_messages = []
        for artifact, msg in artifacts:
            artifact_messages.append(msg)
            if artifact.topic_id and artifact.topic_id not in included:
                included.append(artifact.topic_id)

        topic_messages = [to_context_message(m) for m in primary_rows]
        total_topic_tokens = self._tokens(topic_messages)
        summary_tokens = self._tokens(summaries)
        artifact_tokens = self._tokens(artifact_messages)
        remaining = max(0, budget - summary_tokens - artifact_tokens)
        if total_topic_tokens <= self._settings.full_inclusion_threshold:
            target = remaining
        else:
            target = min(self._settings.recent_tail_target, remaining)
        conversation = self.trim_to_budget(topic_messages, target)

        combined = conversation + summaries + artifact_messages
        final = self.trim_to_budget(combined, budget)
        if not final:
            return await self._fallback(conversation_id, budget, included, len(summaries), len(artifact_messages))

        debug = {
            "total_topic_tokens": total_topic_tokens,
            "summary_tokens": summary_tokens,
            "artifact_tokens": artifact_tokens,
            "loaded_message_count": len(conversation),
            "trimmed_message_count": len(topic_messages) - len(conversation),
            "budget": budget,
        }
        logger.debug(f"Context for {conversation_id}: {debug}")
        return ContextResult(
            messages=final,
            source="manual" if manual else "topic",
            included_topic_ids=included,
            summary_count=len(summaries),
            artifact_count=len(artifact_messages),
            debug=debug,
        )
