import datetime
import json
from typing import Any, Dict, List, Optional

from graph.models import Artifact, Message, Topic, new_id
from services.store import InMemoryConversationStore

BASE_TIME = datetime.datetime(2025, 1, 1, tzinfo=datetime.timezone.utc)


# ---------- Fakes ----------
class FakeRoutingModel:
    """
    Stands in for ``StructuredChat``. Each call pops the next scripted reply:
    a dict (serialized to JSON), a raw string, or an exception to raise.
    """

    provider = "fake"
    model = "fake-router"

    def __init__(self, replies: Optional[List[Any]] = None):
        self.replies = list(replies or [])
        self.calls: List[Dict[str, Any]] = []
        self.last_usage: Dict[str, int] = {}

    async def ainvoke_json(self, messages, schema_name, schema):
        self.calls.append({"messages": messages, "schema_name": schema_name, "schema": schema})
        if not self.replies:
            raise RuntimeError("no scripted reply left")
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        self.last_usage = {"input_tokens": 100, "output_tokens": 20}
        return reply if isinstance(reply, str) else json.dumps(reply)


class FakeEmbeddings:
    """Deterministic embedder: vectors come from a keyword table, unknown text maps to a fixed axis."""

    def __init__(self, table: Optional[Dict[str, List[float]]] = None, fail: Optional[Exception] = None, short: bool = False):
        self.table = table or {}
        self.fail = fail
        self.short = short
        self.calls: List[List[str]] = []

    def _vector(self, text: str) -> List[float]:
        for key, vec in self.table.items():
            if key in text.lower():
                return vec
        return [0.0, 0.0, 1.0]

    async def aembed_documents(self, texts):
        self.calls.append(list(texts))
        if self.fail:
            raise self.fail
        vectors = [self._vector(t) for t in texts]
        return vectors[:-1] if self.short else vectors

    def embed_documents(self, texts):
        return [self._vector(t) for t in texts]

    def embed_query(self, text):
        return self._vector(text)


class FailingStore(InMemoryConversationStore):
    """Store whose topic writes fail, as a flaky database would."""

    async def insert_topic(self, topic):
        raise ConnectionError("database unavailable")

    async def update_topic(self, topic_id, **fields):
        raise ConnectionError("database unavailable")


# ---------- Builders ----------
def make_topic(conversation_id: str, label: str, **kw) -> Topic:
    return Topic(id=kw.pop("id", None) or new_id(), conversation_id=conversation_id, label=label, **kw)


def make_message(conversation_id: str, content: str, role: str = "user", topic_id=None, minute: int = 0, **kw) -> Message:
    return Message(
        id=kw.pop("id", None) or new_id(),
        conversation_id=conversation_id,
        role=role,
        content=content,
        topic_id=topic_id,
        created_at=BASE_TIME + datetime.timedelta(minutes=minute),
        **kw,
    )


def make_artifact(conversation_id: str, title: str, content: str = "", **kw) -> Artifact:
    return Artifact(id=kw.pop("id", None) or new_id(), conversation_id=conversation_id, title=title, content=content, **kw)
