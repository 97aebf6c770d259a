"""Domain records shared by the routing engine, the context assembler and the store."""

import datetime
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Literal, Optional

TopicAction = Literal["continue_active", "new", "reopen_existing"]


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Conversation:
    id: str
    title: Optional[str] = None
    project_id: Optional[str] = None
    project_name: Optional[str] = None
    user_id: Optional[str] = None
    created_at: datetime.datetime = field(default_factory=utcnow)


@dataclass
class Topic:
    id: str
    conversation_id: str
    label: str
    description: Optional[str] = None
    summary: Optional[str] = None
    parent_topic_id: Optional[str] = None
    token_estimate: int = 0
    created_at: datetime.datetime = field(default_factory=utcnow)
    updated_at: datetime.datetime = field(default_factory=utcnow)


@dataclass
class CandidateTopic:
    """A topic offered to the routing model, tagged with where it lives."""
    topic: Topic
    is_cross_conversation: bool = False
    conversation_title: Optional[str] = None
    project_id: Optional[str] = None

    @property
    def id(self) -> str:
        return self.topic.id


@dataclass
class Message:
    id: str
    conversation_id: str
    role: Literal["user", "assistant"]
    content: str
    topic_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime.datetime = field(default_factory=utcnow)


@dataclass
class Artifact:
    id: str
    conversation_id: str
    title: str
    type: str = "other"
    topic_id: Optional[str] = None
    summary: Optional[str] = None
    content: str = ""
    keywords: List[str] = field(default_factory=list)
    created_at: datetime.datetime = field(default_factory=utcnow)


@dataclass
class RouterDecision:
    """Per-turn routing outcome. Never persisted."""
    topic_action: TopicAction
    primary_topic_id: Optional[str] = None
    secondary_topic_ids: List[str] = field(default_factory=list)
    new_parent_topic_id: Optional[str] = None
    new_topic_label: str = ""
    new_topic_description: str = ""
    new_topic_summary: str = ""
    artifacts_to_load: List[str] = field(default_factory=list)
    # Combined profile only
    model: Optional[str] = None
    model_id: Optional[str] = None
    effort: Optional[str] = None
    memory_types_to_load: List[str] = field(default_factory=list)
    routed_by: str = "llm"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ContextMessage:
    role: Literal["user", "assistant"]
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class ContextResult:
    messages: List[ContextMessage]
    source: Literal["topic", "manual", "fallback"]
    included_topic_ids: List[str] = field(default_factory=list)
    summary_count: int = 0
    artifact_count: int = 0
    debug: Optional[Dict[str, int]] = None
