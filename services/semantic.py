import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np
from langchain_core.embeddings import Embeddings

from graph.config import EmbeddingSettings
from graph.models import Artifact, Topic
from graph.prompts import squash
from graph.tokens import TokenEstimator

logger = logging.getLogger("topic-router.semantic")


@dataclass
class SemanticMatch:
    topic_id: str
    label: str
    summary: Optional[str]
    description: Optional[str]
    similarity: float
    kind: str = "topic"
    related_topic_id: Optional[str] = None


@dataclass
class _Item:
    match: SemanticMatch
    text: str
    tokens: int


def cosine_similarity(a, b) -> float:
    """0.0 when either vector is empty or zero-norm, or the dimensions differ."""
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    if va.size == 0 or vb.size == 0 or va.shape != vb.shape:
        return 0.0
    na = np.linalg.norm(va)
    nb = np.linalg.norm(vb)
    if na == 0 or nb == 0:
        return 0.0
    return float(np.dot(va, vb) / (na * nb))


class SemanticMatcher:
    """
    Ranks candidate topics and artifacts by embedding similarity to the user message.

    Advisory only. Any failure (no client, timeout, provider error, short
    response) yields ``None`` for the whole call; partial rankings are never
    returned.
    """

    def __init__(self, embedder: Optional[Embeddings], estimator: TokenEstimator, settings: EmbeddingSettings):
        self._embedder = embedder
        self._estimator = estimator
        self._settings = settings

    @property
    def enabled(self) -> bool:
        return self._settings.enabled and self._embedder is not None

    def _candidate_text(self, *parts: Optional[str]) -> str:
        text = " | ".join(p for p in (squash(x) for x in parts) if p)
        return self._estimator.truncate(text, self._settings.max_item_tokens)

    def _items(self, topics: Sequence[Topic], artifacts: Sequence[Artifact]) -> List[_Item]:
        items = []
        for t in topics:
            text = self._candidate_text(t.summary, t.description) or self._candidate_text(t.label)
            if text:
                match = SemanticMatch(t.id, t.label, t.summary, t.description, 0.0, "topic")
                items.append(_Item(match, text, self._estimator.estimate(text)))
        for a in artifacts:
            text = self._candidate_text(a.summary, a.title)
            if text:
                match = SemanticMatch(a.id, a.title, a.summary, None, 0.0, "artifact", a.topic_id)
                items.append(_Item(match, text, self._estimator.estimate(text)))
        return items

    def plan_batches(self, user_tokens: int, items: Sequence[_Item]) -> List[List[_Item]]:
        """Split items so each batch stays under both the item cap and the token cap."""
        max_items = max(1, self._settings.max_batch_items)
        max_tokens = self._settings.max_batch_tokens
        batches: List[List[_Item]] = []
        current: List[_Item] = []
        used = user_tokens
        for item in items:
            if current and (len(current) >= max_items or used + item.tokens > max_tokens):
                batches.append(current)
                current, used = [], user_tokens
            current.append(item)
            used += item.tokens
        if current:
            batches.append(current)
        return batches

    async def _embed_batch(self, query: str, batch: Sequence[_Item]) -> List[Tuple[_Item, float]]:
        inputs = [query] + [i.text for i in batch]
        vectors = await asyncio.wait_for(
            self._embedder.aembed_documents(inputs), timeout=self._settings.timeout_sec
        )
        if not isinstance(vectors, list) or len(vectors) != len(inputs):
            got = len(vectors) if isinstance(vectors, list) else type(vectors).__name__
            raise ValueError(f"embedding response size mismatch: expected {len(inputs)}, got {got}")
        query_vec = vectors[0]
        return [(item, cosine_similarity(query_vec, vec)) for item, vec in zip(batch, vectors[1:])]

    async def compute_similarity(
        self,
        user_message: str,
        topics: Sequence[Topic],
        artifacts: Sequence[Artifact] = (),
    ) -> Optional[List[SemanticMatch]]:
        if not self.enabled:
            return None
        query = self._estimator.truncate(squash(user_message), self._settings.max_item_tokens)
        if not query:
            return None
        items = self._items(topics, artifacts)
        if not items:
            return None

        batches = self.plan_batches(self._estimator.estimate(query), items)
        scored: List[Tuple[_Item, float]] = []
        try:
            for batch in batches:
                scored.extend(await self._embed_batch(query, batch))
        except asyncio.TimeoutError:
            logger.warning(f"Embedding call timed out after {self._settings.timeout_sec}s; no semantic signal")
            return None
        except Exception as e:
            logger.warning(f"Semantic similarity failed: {type(e).__name__}: {e}")
            return None

        matches = []
        for item, similarity in scored:
            m = item.match
            matches.append(SemanticMatch(m.topic_id, m.label, m.summary, m.description, similarity, m.kind, m.related_topic_id))
        matches.sort(key=lambda m: m.similarity, reverse=True)
        logger.debug(f"Semantic matcher scored {len(matches)} candidates in {len(batches)} batch(es)")
        return matches
