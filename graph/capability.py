"""
Capability tier and reasoning effort selection.

``heuristic_capability`` is the rule-based pick used when the routing model is
unavailable. ``apply_capability_constraints`` is applied to every combined
decision, model-made or not:

- a user-forced tier always wins
- ``pro`` is never auto-selected (downgraded to ``full``)
- speed mode narrows the effort (``instant`` = lowest allowed, ``thinking`` >= medium)
- ``none`` / ``xhigh`` only exist on ``full`` and ``pro``
"""

import logging
import re
from typing import Dict, Optional, Tuple

from graph.schemas import EFFORT_LEVELS

logger = logging.getLogger("topic-router.capability")

SPEED_MODES = ("auto", "instant", "thinking")
FULL_TIERS = ("full", "pro")

LIGHT_REASONING_KEYWORDS = [
    "step by step", "analyze", "analysis", "explain", "break down", "derive", "prove",
    "detailed", "strategy", "plan", "evaluate", "compare", "contrast", "investigate",
    "why", "how", "improve",
]

HIGH_COMPLEXITY_KEYWORDS = [
    "research", "comprehensive", "in-depth", "long-form", "whitepaper", "architecture",
    "roadmap", "algorithm", "implementation", "financial model",
]

EXTREME_COMPLEXITY_PHRASES = [
    "step-by-step proof", "academic thesis", "full proposal", "enterprise rollout",
    "investment memorandum", "system architecture", "risk assessment",
]

LONG_PROMPT_THRESHOLD = 360
MEDIUM_PROMPT_THRESHOLD = 640
HIGH_PROMPT_THRESHOLD = 900

_PLANNING = re.compile(r"\b(plan|roadmap|design|strategy|debug)\b", re.I)
_COMPLEXITY = re.compile(r"\b(debug|optimize|architecture|roadmap|financial|legal|proof|algorithm|analysis)\b")
_CODE_HINTS = re.compile(
    r"```|\bdef \w+\(|\bclass \w+|\bimport \w+|\bfunction\s*\w*\(|=>|\bSELECT\b.+\bFROM\b|Traceback \(most recent call last\)",
    re.I | re.S,
)


def _rank(effort: str) -> int:
    return EFFORT_LEVELS.index(effort)


def looks_like_code(text: str) -> bool:
    return bool(_CODE_HINTS.search(text or ""))


def _mentions_complexity(normalized: str) -> bool:
    return (
        any(k in normalized for k in HIGH_COMPLEXITY_KEYWORDS)
        or any(p in normalized for p in EXTREME_COMPLEXITY_PHRASES)
        or bool(_COMPLEXITY.search(normalized))
    )


def pick_medium_or_high(text: str) -> str:
    normalized = text.strip().lower()
    if len(normalized) >= HIGH_PROMPT_THRESHOLD:
        return "high"
    if any(k in normalized for k in HIGH_COMPLEXITY_KEYWORDS):
        return "high"
    if any(len(seg.strip()) > 200 for seg in re.split(r"[.!?]", normalized)):
        return "high"
    return "medium"


def _auto_effort(text: str) -> Optional[str]:
    normalized = text.strip()
    if not normalized:
        return None
    if len(normalized) >= HIGH_PROMPT_THRESHOLD * 1.2:
        return "high"
    if len(normalized) >= MEDIUM_PROMPT_THRESHOLD:
        return "medium"
    lowered = normalized.lower()
    if len(lowered) >= LONG_PROMPT_THRESHOLD or any(k in lowered for k in LIGHT_REASONING_KEYWORDS):
        return "low"
    if _PLANNING.search(normalized):
        return "medium"
    return None


def clamp_effort_for_tier(tier: str, effort: Optional[str]) -> str:
    """``none`` and ``xhigh`` are only valid on full/pro tiers."""
    if tier in FULL_TIERS:
        return effort or "none"
    if not effort or effort == "none":
        return "low"
    if effort == "xhigh":
        return "high"
    return effort


def _select_auto_tier(text: str, effort: Optional[str]) -> str:
    normalized = text.strip().lower()
    length = len(normalized)
    complex_ = _mentions_complexity(normalized)

    if not effort or effort == "none":
        tier = "nano" if length < 320 else "mini"
    elif effort == "low":
        tier = "nano" if length < 600 and not complex_ else "mini"
    elif effort == "medium":
        if length < 400 and not complex_:
            tier = "nano"
        elif length < 1600 or not complex_:
            tier = "mini"
        else:
            tier = "full"
    else:
        tier = "mini" if length < 900 and not complex_ else "full"

    if tier == "nano" and looks_like_code(text):
        tier = "mini"
    return tier


def normalize_speed_mode(speed_mode: Optional[str]) -> str:
    if speed_mode in SPEED_MODES:
        return speed_mode
    if speed_mode:
        logger.warning(f"Unknown speed mode {speed_mode!r}; using auto")
    return "auto"


def normalize_preference(preference: Optional[str], tiers: Dict[str, str]) -> Optional[str]:
    """Map a preference given as a tier name or a concrete model id to a tier. ``auto`` means none."""
    if not preference or preference == "auto":
        return None
    if preference in tiers:
        return preference
    for tier, model_id in tiers.items():
        if model_id == preference:
            return tier
    logger.warning(f"Ignoring unknown model preference {preference!r}")
    return None


def heuristic_capability(text: str, speed_mode: str = "auto", preference: Optional[str] = None) -> Tuple[str, str]:
    """Rule-based (tier, effort) from message length, reasoning keywords and code-likeness."""
    speed_mode = normalize_speed_mode(speed_mode)
    tier = preference or "mini"
    full_family = tier in FULL_TIERS
    trimmed = (text or "").strip()

    if tier == "pro":
        effort = "high"
    elif speed_mode == "instant":
        effort = "none" if full_family else "low"
    elif speed_mode == "thinking":
        effort = pick_medium_or_high(trimmed)
    else:
        auto = _auto_effort(trimmed)
        if full_family:
            effort = auto or "none"
        else:
            effort = clamp_effort_for_tier(tier, auto)
        if looks_like_code(trimmed) and _rank(effort) < _rank("medium") and len(trimmed) >= LONG_PROMPT_THRESHOLD:
            effort = "medium"

    if not preference:
        tier = _select_auto_tier(trimmed, effort)
    return apply_capability_constraints(tier, effort, speed_mode, preference)


def apply_capability_constraints(
    tier: str, effort: str, speed_mode: str = "auto", preference: Optional[str] = None
) -> Tuple[str, str]:
    speed_mode = normalize_speed_mode(speed_mode)
    if preference:
        tier = preference
    elif tier == "pro":
        tier = "full"

    if speed_mode == "instant":
        effort = "none" if tier in FULL_TIERS else "low"
    elif speed_mode == "thinking" and _rank(effort) < _rank("medium"):
        effort = "medium"

    return tier, clamp_effort_for_tier(tier, effort)
