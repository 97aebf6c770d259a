"""
Routing prompts and output schemas.

Two decision profiles share one prompt body: the topic-only profile and the
combined topic + capability profile. The system prompts differ only in the
extra capability rules.
"""

import json
import re
from typing import Any, Dict, List, Optional, Sequence

from graph.models import Artifact, CandidateTopic, Message

_WS = re.compile(r"\s+")
_FENCE = re.compile(r"```(?:json)?", re.I)
_OBJECT = re.compile(r"\{[\s\S]*\}")

RECENT_SNIPPET_CHARS = 240
TOPIC_DESCRIPTION_CHARS = 200
TOPIC_SUMMARY_CHARS = 180
ARTIFACT_SUMMARY_CHARS = 180

FORCE_JSON_REMINDER = (
    "CRITICAL: Respond with ONLY raw JSON that matches the schema. Do not add any commentary, "
    "markdown, or prose. Start with '{' and end with '}'. One object only."
)
SECOND_TRY_NUDGE = "SECOND TRY: STRICT JSON ONLY. Begin with { and end with }. No explanations."

TOPIC_ROUTER_SYSTEM_PROMPT = """You are a topic routing helper for a single conversation.

You are NOT the assistant that replies to the user. You never answer questions, never call tools and never output explanations or markdown. Your only job is to decide how this message fits into the existing topic tree and which artifacts to load, and to output ONE JSON object.

Decide:
- Whether this message CONTINUES the active topic, OPENS a NEW topic, or REOPENS an existing topic.
- Which topic id is primary, and which other topic ids are secondary context.
- Whether a new topic should be created, with an optional parent.
- Which artifacts (by id) should be loaded as context.

Hard invariants:
1) topicAction meanings:
   - "continue_active": the user follows up on the active topic or implicitly refers to it.
   - "new": the user clearly changes subject or starts a thread that matches no existing topic.
   - "reopen_existing": the user clearly refers back to a prior topic that is not the active one.
2) Field combinations:
   - "continue_active": primaryTopicId is the active topic id; new* fields and newParentTopicId are null.
   - "new": primaryTopicId is null; newTopicLabel, newTopicDescription and newTopicSummary are non-empty.
     newParentTopicId may name a top-level topic when the new topic is clearly its child.
   - "reopen_existing": primaryTopicId is one of the listed topic ids; newParentTopicId is null.
3) Hierarchy: subtopics only directly under top-level topics. Never chain subtopic under subtopic.
   When in doubt, set newParentTopicId to null.
4) Use ONLY ids from the provided lists. Never invent ids.
5) secondaryTopicIds: at most 3, only when the user clearly depends on those topics, never the primary.
6) artifactsToLoad: at most 3, only artifacts referenced by name or clearly tied to the chosen topics.
7) newTopicLabel: 3-5 title-case words. newTopicDescription: one sentence. newTopicSummary: one or two sentences.
8) Output ONE JSON object only. Do not answer the user."""

CAPABILITY_RULES = """
Capability selection (also required):
- "model" is one of "nano", "mini", "full", "pro". Default to the cheapest tier that can reliably handle the request.
  Use "full" for high-stakes or long multi-step reasoning, "mini" for non-trivial code or math, "nano" for short factual answers.
  Use "pro" only when the user explicitly asks for it.
- "effort" is one of "none", "low", "medium", "high", "xhigh". "none" and "xhigh" are only valid with "full" or "pro".
  When in doubt between two effort levels, choose the lower level that is still safe.
- "memoryTypesToLoad": the minimal set of memory categories needed, at most 3, may be empty."""

CAPABILITY_ROUTER_SYSTEM_PROMPT = TOPIC_ROUTER_SYSTEM_PROMPT + "\n" + CAPABILITY_RULES


# ---------- Schemas ----------
def _nullable(kind: str) -> Dict[str, Any]:
    return {"type": [kind, "null"]}


_TOPIC_PROPERTIES: Dict[str, Any] = {
    "topicAction": {"type": "string", "enum": ["continue_active", "new", "reopen_existing"]},
    "primaryTopicId": _nullable("string"),
    "secondaryTopicIds": {"type": "array", "items": {"type": "string"}},
    "newTopicLabel": _nullable("string"),
    "newTopicDescription": _nullable("string"),
    "newTopicSummary": _nullable("string"),
    "newParentTopicId": _nullable("string"),
    "artifactsToLoad": {"type": "array", "items": {"type": "string"}},
}

TOPIC_DECISION_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": _TOPIC_PROPERTIES,
    "required": list(_TOPIC_PROPERTIES),
    "additionalProperties": False,
}

_CAPABILITY_PROPERTIES: Dict[str, Any] = {
    **_TOPIC_PROPERTIES,
    "model": {"type": "string", "enum": ["nano", "mini", "full", "pro"]},
    "effort": {"type": "string", "enum": ["none", "low", "medium", "high", "xhigh"]},
    "memoryTypesToLoad": {"type": "array", "items": {"type": "string"}},
}

CAPABILITY_DECISION_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": _CAPABILITY_PROPERTIES,
    "required": list(_CAPABILITY_PROPERTIES),
    "additionalProperties": False,
}


# ---------- Helpers ----------
def squash(text: Optional[str], limit: Optional[int] = None) -> str:
    """Collapse whitespace runs and optionally cut to ``limit`` characters."""
    out = _WS.sub(" ", text or "").strip()
    return out[:limit] if limit is not None else out


def parse_json_loose(raw: str) -> Any:
    """
    Parse model output that should be JSON but may be wrapped in code fences
    or surrounded by prose. Raises ``ValueError`` when no object can be found.
    """
    cleaned = _FENCE.sub("", raw or "").strip()
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        match = _OBJECT.search(cleaned)
        if not match:
            raise ValueError("No JSON object found in routing model output")
        return json.loads(match.group(0))


def _format_recent(messages: Sequence[Message]) -> str:
    if not messages:
        return "No prior messages."
    lines = []
    for m in messages:
        tag = f" [topic:{m.topic_id}]" if m.topic_id else ""
        lines.append(f"- {m.role} @ {m.created_at.isoformat()}{tag}: {squash(m.content, RECENT_SNIPPET_CHARS)}")
    return "\n".join(lines)


def _format_topics(candidates: Sequence[CandidateTopic], active_topic_id: Optional[str]) -> str:
    if not candidates:
        return "No topics exist yet."
    lines = []
    for c in candidates:
        t = c.topic
        parent = f" (child of {t.parent_topic_id})" if t.parent_topic_id else ""
        active = " (ACTIVE)" if active_topic_id and t.id == active_topic_id else ""
        desc = squash(t.description, TOPIC_DESCRIPTION_CHARS) or "No description yet."
        summary = squash(t.summary, TOPIC_SUMMARY_CHARS) or "No summary yet."
        if c.is_cross_conversation:
            location = f"other chat: {c.conversation_title or t.conversation_id}"
        else:
            location = "current chat"
        lines.append(
            f"- [{t.id}] {t.label}{parent}{active} updated {t.updated_at.isoformat()} "
            f"({location} ~{int(t.token_estimate or 0)} tokens): {desc} | Summary: {summary}"
        )
    return "\n".join(lines)


def _format_artifacts(artifacts: Sequence[Artifact]) -> str:
    if not artifacts:
        return "No artifacts found."
    lines = []
    for a in artifacts:
        topic = f" (topic {a.topic_id})" if a.topic_id else ""
        summary = squash(a.summary, ARTIFACT_SUMMARY_CHARS) or "No summary."
        lines.append(f"- [{a.id}] {a.title}{topic} | {a.type} | {summary}")
    return "\n".join(lines)


def _format_semantic(matches) -> List[str]:
    if not matches:
        return []
    lines = ["", "Semantic similarity hints (advisory, higher is closer):"]
    for m in matches[:10]:
        ref = f" (topic {m.related_topic_id})" if m.kind == "artifact" and m.related_topic_id else ""
        lines.append(f"- [{m.topic_id}] {m.kind} {m.label}{ref}: {m.similarity:.3f}")
    return lines


def build_router_prompt(
    user_message: str,
    topics: Sequence[CandidateTopic],
    artifacts: Sequence[Artifact],
    recent_messages: Sequence[Message],
    project_id: Optional[str] = None,
    project_name: Optional[str] = None,
    conversation_title: Optional[str] = None,
    active_topic_id: Optional[str] = None,
    semantic_matches=None,
    cross_chat_token_limit: int = 200_000,
    extra_notes: Sequence[str] = (),
) -> str:
    if project_id:
        project_line = f"Project: {project_name or '(unnamed project)'} [{project_id}]"
    else:
        project_line = "No active project (global chat)."
    workspace = [
        project_line,
        f"Current chat: {conversation_title or 'Untitled chat'} [{'project' if project_id else 'global'}]",
        f"Active topic: {active_topic_id or 'none'}",
        f"You may reuse topics from other chats listed below if their token estimate is under "
        f"{cross_chat_token_limit // 1000}k tokens.",
    ]

    parts = [
        "You are the topic router. Review the new user message and metadata below.",
        "Workspace context:",
        *workspace,
        *extra_notes,
        "",
        "Recent conversation snippets:",
        _format_recent(recent_messages),
        "",
        "Existing topics/subtopics:",
        _format_topics(topics, active_topic_id),
        "",
        "Candidate artifacts:",
        _format_artifacts(artifacts),
        *_format_semantic(semantic_matches),
        "",
        "User message:",
        user_message,
        "",
        "Decide which topic/subtopic this belongs to, whether to create or reopen topics, "
        "and which artifacts to preload.",
    ]
    return "\n".join(parts)


def build_router_messages(system_prompt: str, prompt: str, attempt: int) -> List[Dict[str, str]]:
    """Chat messages for one routing attempt. Later attempts carry a stricter nudge."""
    nudge = f"\n\n{SECOND_TRY_NUDGE}" if attempt > 1 else ""
    return [
        {"role": "system", "content": f"{system_prompt}\n\n{FORCE_JSON_REMINDER}{nudge}"},
        {"role": "user", "content": f"{prompt}\n\n{FORCE_JSON_REMINDER}{nudge}"},
    ]
