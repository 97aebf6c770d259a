"""
Conversation store contract.

The router only needs point reads, filtered range reads, single-row inserts and
single-row updates over three collections (topics, messages, artifacts) plus a
read-only view of conversations for cross-chat topic reuse. Anything that
implements ``ConversationStore`` can be plugged in; ``InMemoryConversationStore``
is the bundled implementation used by the service and the tests.
"""

import copy
import dataclasses
import logging
from typing import Dict, Iterable, List, Optional, Protocol, Sequence

from graph.models import Artifact, Conversation, Message, Topic, utcnow

logger = logging.getLogger("topic-router.store")

TOPIC_MUTABLE_FIELDS = {"label", "description", "summary", "token_estimate", "updated_at"}


class ConversationStore(Protocol):
    # --- conversations ---
    async def get_conversations(self, conversation_ids: Sequence[str]) -> List[Conversation]: ...
    async def list_other_conversations(
        self, conversation_id: str, project_id: Optional[str], user_id: Optional[str], limit: int
    ) -> List[Conversation]: ...

    # --- topics ---
    async def get_topic(self, topic_id: str) -> Optional[Topic]: ...
    async def get_topics(self, topic_ids: Sequence[str]) -> List[Topic]: ...
    async def list_topics(self, conversation_id: str) -> List[Topic]: ...
    async def list_topics_for_conversations(
        self, conversation_ids: Sequence[str], max_token_estimate: int, limit: int
    ) -> List[Topic]: ...
    async def insert_topic(self, topic: Topic) -> Topic: ...
    async def update_topic(self, topic_id: str, **fields) -> Topic: ...

    # --- messages ---
    async def recent_messages(self, conversation_id: str, limit: int) -> List[Message]: ...
    async def topic_messages(self, conversation_id: str, topic_id: str) -> List[Message]: ...
    async def insert_message(self, message: Message) -> Message: ...

    # --- artifacts ---
    async def get_artifacts(self, artifact_ids: Sequence[str]) -> List[Artifact]: ...
    async def search_artifacts(
        self, conversation_id: str, keywords: Sequence[str], limit: int
    ) -> List[Artifact]: ...


class InMemoryConversationStore:
    """Dict-backed store. Rows are copied in and out so callers can't mutate state."""

    def __init__(self):
        self._conversations: Dict[str, Conversation] = {}
        self._topics: Dict[str, Topic] = {}
        self._messages: Dict[str, Message] = {}
        self._artifacts: Dict[str, Artifact] = {}

    # ---------- seeding helpers ----------
    def add_conversation(self, conversation: Conversation) -> Conversation:
        self._conversations[conversation.id] = copy.deepcopy(conversation)
        return conversation

    def add_artifact(self, artifact: Artifact) -> Artifact:
        self._artifacts[artifact.id] = copy.deepcopy(artifact)
        return artifact

    def add_topic(self, topic: Topic) -> Topic:
        self._topics[topic.id] = copy.deepcopy(topic)
        return topic

    # ---------- conversations ----------
    async def get_conversations(self, conversation_ids: Sequence[str]) -> List[Conversation]:
        return [copy.deepcopy(self._conversations[c]) for c in conversation_ids if c in self._conversations]

    async def list_other_conversations(self, conversation_id, project_id, user_id, limit):
        rows = [
            c for c in self._conversations.values()
            if c.id != conversation_id
            and (not project_id or c.project_id == project_id)
            and (not user_id or c.user_id == user_id)
        ]
        rows.sort(key=lambda c: c.created_at, reverse=True)
        return [copy.deepcopy(c) for c in rows[:limit]]

    # ---------- topics ----------
    async def get_topic(self, topic_id: str) -> Optional[Topic]:
        row = self._topics.get(topic_id)
        return copy.deepcopy(row) if row else None

    async def get_topics(self, topic_ids: Sequence[str]) -> List[Topic]:
        return [copy.deepcopy(self._topics[t]) for t in topic_ids if t in self._topics]

    async def list_topics(self, conversation_id: str) -> List[Topic]:
        rows = [t for t in self._topics.values() if t.conversation_id == conversation_id]
        return [copy.deepcopy(t) for t in _by_time(rows)]

    async def list_topics_for_conversations(self, conversation_ids, max_token_estimate, limit):
        wanted = set(conversation_ids)
        rows = [
            t for t in self._topics.values()
            if t.conversation_id in wanted and (t.token_estimate or 0) <= max_token_estimate
        ]
        rows.sort(key=lambda t: t.updated_at, reverse=True)
        return [copy.deepcopy(t) for t in rows[:limit]]

    async def insert_topic(self, topic: Topic) -> Topic:
        if topic.id in self._topics:
            raise ValueError(f"topic {topic.id} already exists")
        self._topics[topic.id] = copy.deepcopy(topic)
        logger.debug(f"Inserted topic {topic.id} in conversation {topic.conversation_id}")
        return copy.deepcopy(topic)

    async def update_topic(self, topic_id: str, **fields) -> Topic:
        row = self._topics.get(topic_id)
        if row is None:
            raise KeyError(f"topic {topic_id} not found")
        bad = set(fields) - TOPIC_MUTABLE_FIELDS
        if bad:
            raise ValueError(f"immutable topic fields: {sorted(bad)}")
        fields.setdefault("updated_at", utcnow())
        self._topics[topic_id] = dataclasses.replace(row, **fields)
        return copy.deepcopy(self._topics[topic_id])

    # ---------- messages ----------
    async def recent_messages(self, conversation_id: str, limit: int) -> List[Message]:
        rows = _by_time(m for m in self._messages.values() if m.conversation_id == conversation_id)
        return [copy.deepcopy(m) for m in rows[-limit:]] if limit > 0 else []

    async def topic_messages(self, conversation_id: str, topic_id: str) -> List[Message]:
        rows = _by_time(
            m for m in self._messages.values()
            if m.conversation_id == conversation_id and m.topic_id == topic_id
        )
        return [copy.deepcopy(m) for m in rows]

    async def insert_message(self, message: Message) -> Message:
        self._messages[message.id] = copy.deepcopy(message)
        return copy.deepcopy(message)

    # ---------- artifacts ----------
    async def get_artifacts(self, artifact_ids: Sequence[str]) -> List[Artifact]:
        return [copy.deepcopy(self._artifacts[a]) for a in artifact_ids if a in self._artifacts]

    async def search_artifacts(self, conversation_id, keywords, limit):
        kws = [k.lower() for k in keywords]

        def _hit(a: Artifact) -> bool:
            if not kws:
                return True
            haystack = f"{a.title or ''} {a.summary or ''}".lower()
            tags = {k.lower() for k in a.keywords}
            return any(k in haystack or k in tags for k in kws)

        rows = [a for a in self._artifacts.values() if a.conversation_id == conversation_id and _hit(a)]
        rows.sort(key=lambda a: a.created_at, reverse=True)
        return [copy.deepcopy(a) for a in rows[:limit]]


def _by_time(rows: Iterable) -> list:
    # sorted() is stable, so rows with equal timestamps keep insertion order
    return sorted(rows, key=lambda r: r.created_at)
