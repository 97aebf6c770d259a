"""
Topic graph mutation.

``ensure_topic_assignment`` turns a routing decision into a persisted topic:
it inserts new topics (depth <= 2, never self-parented), refreshes metadata on
reopen, and leaves ``continue_active`` untouched. Topic creation is serialized
per conversation through ``TopicLock``.
"""

import dataclasses
import logging
import re
from typing import Iterable, Optional

from graph.errors import TopicPersistenceError
from graph.models import Message, RouterDecision, Topic, new_id, utcnow
from graph.prompts import squash
from graph.tokens import TokenEstimator
from services.store import ConversationStore
from services.topic_lock import TopicLock

logger = logging.getLogger("topic-router.topics")

LABEL_MAX_CHARS = 120
LABEL_MAX_WORDS = 5
META_MAX_CHARS = 500
AUTO_DESCRIPTION_CHARS = 280
SNAPSHOT_TAIL_MESSAGES = 8
SNAPSHOT_SNIPPET_CHARS = 220
SNAPSHOT_MAX_CHARS = 900
PENDING_LABEL = "Pending Topic"
FILES_MARKER = "[Files attached]"

LABEL_STOP_WORDS = {
    "hey", "hi", "hello", "i", "im", "i'm", "i'd", "need", "please", "can", "could",
    "should", "would", "you", "your", "me", "my", "the", "and", "about", "for", "with",
    "what", "how", "want", "idea", "help",
}

_NON_ALNUM = re.compile(r"[^a-z0-9\s]")
_ATTACHMENT_LINE = re.compile(r"\n\nAttachment: [^\n]+ \([^)]+\)(?=\n|$)")


# ---------- Labels & descriptions ----------
def format_topic_label(raw: Optional[str]) -> str:
    """Title-cased label of at most five content words."""
    words = _NON_ALNUM.sub(" ", (raw or "").lower()).split()
    if not words:
        return PENDING_LABEL
    content = [w for w in words if w not in LABEL_STOP_WORDS]
    source = (content or words)[:LABEL_MAX_WORDS]
    label = " ".join(w[:1].upper() + w[1:] for w in source).strip()
    return label or PENDING_LABEL


def build_auto_topic_label(message: str) -> str:
    clean = squash(message)
    return format_topic_label(clean) if clean else PENDING_LABEL


def build_auto_topic_description(message: str) -> Optional[str]:
    clean = squash(message)
    if not clean:
        return None
    sentence = clean[:AUTO_DESCRIPTION_CHARS]
    return sentence if sentence.endswith(".") else f"{sentence}."


def _label_key(label: str) -> str:
    return format_topic_label(label).lower()


# ---------- Message sanitizing ----------
def sanitize_message_content(message: Message) -> str:
    """
    Content as the router and assembler should see it. User messages that
    carried files lose their ``Attachment:`` lines and get a single marker.
    """
    content = message.content or ""
    if message.role == "user" and isinstance(message.metadata.get("files"), list):
        content = _ATTACHMENT_LINE.sub("", content).strip()
        if content and FILES_MARKER not in content:
            content = f"{content} {FILES_MARKER}"
    return content


# ---------- Assignment ----------
async def _valid_parent(store: ConversationStore, conversation_id: str, parent_id: Optional[str]) -> Optional[str]:
    """Return ``parent_id`` only if it names a root topic of this conversation."""
    if not parent_id:
        return None
    parent = await store.get_topic(parent_id)
    if parent is None:
        logger.info(f"Dropping unknown parent {parent_id}")
        return None
    if parent.parent_topic_id:
        logger.info(f"Dropping parent {parent_id}: it is already a subtopic (depth limit 2)")
        return None
    if parent.conversation_id != conversation_id:
        logger.info(f"Dropping parent {parent_id}: belongs to another conversation")
        return None
    return parent_id


async def _create_topic(
    store: ConversationStore,
    conversation_id: str,
    working: RouterDecision,
    user_message: str,
    known_topic_ids: Iterable[str],
) -> RouterDecision:
    label = format_topic_label(working.new_topic_label.strip() or build_auto_topic_label(user_message))
    existing = await store.list_topics(conversation_id)

    # A racing turn may have created the same topic while we waited for the lock.
    known = set(known_topic_ids)
    for topic in existing:
        if topic.id not in known and _label_key(topic.label) == _label_key(label):
            logger.info(f"Reusing topic {topic.id} created concurrently with label '{topic.label}'")
            return dataclasses.replace(
                working, topic_action="continue_active", primary_topic_id=topic.id, new_parent_topic_id=None
            )

    topic_id = new_id()
    parent_id = await _valid_parent(store, conversation_id, working.new_parent_topic_id)
    if parent_id == topic_id:
        parent_id = None

    description = working.new_topic_description.strip() or build_auto_topic_description(user_message)
    summary = working.new_topic_summary.strip() or description
    now = utcnow()
    row = Topic(
        id=topic_id,
        conversation_id=conversation_id,
        label=label[:LABEL_MAX_CHARS],
        description=description[:META_MAX_CHARS] if description else None,
        summary=summary[:META_MAX_CHARS] if summary else None,
        parent_topic_id=parent_id,
        created_at=now,
        updated_at=now,
    )
    inserted = await store.insert_topic(row)
    logger.info(f"Created topic {inserted.id} label=\"{inserted.label}\" parent={inserted.parent_topic_id or 'none'}")
    return dataclasses.replace(
        working, topic_action="new", primary_topic_id=inserted.id, new_parent_topic_id=parent_id
    )


async def _refresh_metadata(store: ConversationStore, working: RouterDecision) -> None:
    updates = {}
    if working.new_topic_label.strip():
        updates["label"] = format_topic_label(working.new_topic_label)[:LABEL_MAX_CHARS]
    if working.new_topic_description.strip():
        updates["description"] = working.new_topic_description.strip()[:META_MAX_CHARS]
    if working.new_topic_summary.strip():
        updates["summary"] = working.new_topic_summary.strip()[:META_MAX_CHARS]
    if not updates:
        return
    await store.update_topic(working.primary_topic_id, **updates)
    logger.info(f"Updated topic {working.primary_topic_id} metadata ({', '.join(sorted(updates))})")


async def ensure_topic_assignment(
    store: ConversationStore,
    lock: TopicLock,
    conversation_id: str,
    decision: RouterDecision,
    user_message: str,
    known_topic_ids: Iterable[str] = (),
) -> RouterDecision:
    """
    Persist whatever the decision implies and return it with a concrete primary topic id.

    Raises ``TopicPersistenceError`` when the topic row can't be written; the
    turn must fail rather than leave a message without a topic.
    """
    working = dataclasses.replace(decision, secondary_topic_ids=list(decision.secondary_topic_ids))
    if working.topic_action != "new":
        working.new_parent_topic_id = None
    elif working.new_parent_topic_id and working.new_parent_topic_id == working.primary_topic_id:
        working.new_parent_topic_id = None

    needs_new = working.topic_action == "new" or not working.primary_topic_id
    try:
        if needs_new:
            async with lock.hold(conversation_id):
                working = await _create_topic(store, conversation_id, working, user_message, known_topic_ids)
        elif working.topic_action == "reopen_existing":
            await _refresh_metadata(store, working)
    except TopicPersistenceError:
        raise
    except Exception as e:
        logger.error(f"Topic assignment failed for conversation {conversation_id}: {type(e).__name__}: {e}")
        raise TopicPersistenceError(f"failed to persist topic: {e}", conversation_id=conversation_id) from e

    if working.primary_topic_id in working.secondary_topic_ids:
        working.secondary_topic_ids = [t for t in working.secondary_topic_ids if t != working.primary_topic_id]
    return working


# ---------- Snapshot ----------
async def update_topic_snapshot(
    store: ConversationStore,
    estimator: TokenEstimator,
    conversation_id: str,
    topic_id: Optional[str],
    latest_message: Optional[Message] = None,
) -> Optional[Topic]:
    """
    Bump the topic's token estimate by the latest message and rebuild its
    rolling summary from the last few topic messages. Best effort: failures
    are logged and swallowed.
    """
    if not topic_id:
        return None
    try:
        topic = await store.get_topic(topic_id)
        if topic is None:
            return None
        tail = (await store.topic_messages(conversation_id, topic_id))[-SNAPSHOT_TAIL_MESSAGES:]
        parts = []
        for m in tail:
            snippet = squash(sanitize_message_content(m), SNAPSHOT_SNIPPET_CHARS)
            if snippet:
                parts.append(f"{'Assistant' if m.role == 'assistant' else 'User'}: {snippet}")
        summary = " | ".join(parts)[:SNAPSHOT_MAX_CHARS]

        delta = estimator.estimate(sanitize_message_content(latest_message)) if latest_message else 0
        updates = {"token_estimate": max((topic.token_estimate or 0) + delta, 0)}
        if summary:
            updates["summary"] = summary
        return await store.update_topic(topic_id, **updates)
    except Exception as e:
        logger.warning(f"Topic snapshot update failed for {topic_id}: {type(e).__name__}: {e}")
        return None
