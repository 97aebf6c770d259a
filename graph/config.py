"""
Router configuration.

Settings come from a YAML file (``ROUTER_CONFIG`` or ``config/router_config.yaml``)
with environment variables merged on top, then frozen into ``RouterSettings``.
Components receive the settings object explicitly; nothing here is read at
import time.
"""

import logging
import os
import pathlib
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger("topic-router.config")

ROOT = pathlib.Path(__file__).resolve().parents[1]
DEFAULT_CONFIG_PATH = ROOT / "config" / "router_config.yaml"


@dataclass(frozen=True)
class ContextSettings:
    max_tokens: int = 350_000
    fallback_token_cap: int = 200_000
    fallback_message_limit: int = 400
    full_inclusion_threshold: int = 280_000
    recent_tail_target: int = 200_000
    artifact_budget_fraction: float = 0.2
    secondary_tail_messages: int = 3
    cross_chat_token_limit: int = 200_000


@dataclass(frozen=True)
class CandidateSettings:
    max_recent_messages: int = 10
    max_artifacts: int = 10
    max_foreign_conversations: int = 12
    max_foreign_topics: int = 50


@dataclass(frozen=True)
class RoutingModelSettings:
    provider: str = "openai"
    name: str = "gpt-4.1-mini"
    temperature: float = 0.0
    timeout_sec: float = 12.0
    max_attempts: int = 2


@dataclass(frozen=True)
class EmbeddingSettings:
    enabled: bool = True
    provider: str = "openai"
    name: str = "text-embedding-3-small"
    timeout_sec: float = 8.0
    max_item_tokens: int = 7_500
    max_batch_items: int = 100
    max_batch_tokens: int = 30_000


@dataclass(frozen=True)
class CapabilitySettings:
    tiers: Dict[str, str] = field(default_factory=lambda: {
        "nano": "gpt-5-nano",
        "mini": "gpt-5-mini",
        "full": "gpt-5.2",
        "pro": "gpt-5.2-pro",
    })


@dataclass(frozen=True)
class TopicLockSettings:
    backend: str = "local"
    timeout_sec: float = 10.0
    redis_url: Optional[str] = None


@dataclass(frozen=True)
class RouterSettings:
    context: ContextSettings = field(default_factory=ContextSettings)
    candidates: CandidateSettings = field(default_factory=CandidateSettings)
    routing_model: RoutingModelSettings = field(default_factory=RoutingModelSettings)
    embedding: EmbeddingSettings = field(default_factory=EmbeddingSettings)
    capability: CapabilitySettings = field(default_factory=CapabilitySettings)
    topic_lock: TopicLockSettings = field(default_factory=TopicLockSettings)
    tokenizer_encoding: str = "o200k_base"
    config_path: Optional[str] = None


# env var -> (section, key, caster)
_ENV_OVERRIDES = {
    "CONTEXT_MAX_TOKENS": ("context", "max_tokens", int),
    "CONTEXT_FALLBACK_TOKEN_CAP": ("context", "fallback_token_cap", int),
    "CROSS_CHAT_TOKEN_LIMIT": ("context", "cross_chat_token_limit", int),
    "ROUTER_MODEL_PROVIDER": ("routing_model", "provider", str),
    "ROUTER_MODEL": ("routing_model", "name", str),
    "ROUTER_TIMEOUT_SEC": ("routing_model", "timeout_sec", float),
    "EMBEDDING_PROVIDER": ("embedding", "provider", str),
    "EMBEDDING_MODEL": ("embedding", "name", str),
    "EMBEDDING_TIMEOUT_SEC": ("embedding", "timeout_sec", float),
    "TOPIC_LOCK_BACKEND": ("topic_lock", "backend", str),
    "REDIS_URL": ("topic_lock", "redis_url", str),
}


def _merge_env_config(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Merge environment variables into the raw YAML mapping."""
    for env_var, (section, key, cast) in _ENV_OVERRIDES.items():
        val = os.getenv(env_var)
        if not val:
            continue
        try:
            raw.setdefault(section, {})[key] = cast(val)
        except ValueError:
            logger.warning(f"Ignoring {env_var}={val!r}: expected {cast.__name__}")

    if str(os.getenv("EMBEDDING_ENABLED", "")).strip() == "0":
        raw.setdefault("embedding", {})["enabled"] = False

    # "none" selects the length-based estimate (no BPE download).
    encoding = os.getenv("TOKENIZER_ENCODING")
    if encoding:
        raw.setdefault("tokenizer", {})["encoding"] = "" if encoding.lower() == "none" else encoding

    # A configured Redis URL without an explicit backend means "share the lock".
    lock = raw.get("topic_lock", {})
    if lock.get("redis_url") and not os.getenv("TOPIC_LOCK_BACKEND"):
        lock["backend"] = "redis"
    return raw


def _section(cls, data: Optional[Dict[str, Any]]):
    if not data:
        return cls()
    known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
    unknown = set(data) - set(known)
    if unknown:
        logger.warning(f"Unknown {cls.__name__} keys ignored: {sorted(unknown)}")
    return cls(**known)


def load_settings(path: Optional[str] = None) -> RouterSettings:
    """Load settings from YAML (if present) and environment overrides."""
    config_path = path or os.getenv("ROUTER_CONFIG") or str(DEFAULT_CONFIG_PATH)
    raw: Dict[str, Any] = {}
    if os.path.exists(config_path):
        with open(config_path, "r") as f:
            raw = yaml.safe_load(f) or {}
    else:
        logger.warning(f"Config file {config_path} not found, using built-in defaults.")

    raw = _merge_env_config(raw)
    tokenizer = raw.get("tokenizer") or {}
    capability = raw.get("capability") or {}

    settings = RouterSettings(
        context=_section(ContextSettings, raw.get("context")),
        candidates=_section(CandidateSettings, raw.get("candidates")),
        routing_model=_section(RoutingModelSettings, raw.get("routing_model")),
        embedding=_section(EmbeddingSettings, raw.get("embedding")),
        capability=CapabilitySettings(tiers=capability["tiers"]) if capability.get("tiers") else CapabilitySettings(),
        topic_lock=_section(TopicLockSettings, raw.get("topic_lock")),
        tokenizer_encoding=tokenizer.get("encoding", "o200k_base"),
        config_path=config_path,
    )
    _validate(settings)
    return settings


def _validate(settings: RouterSettings) -> None:
    ctx = settings.context
    if ctx.max_tokens <= 0:
        raise ValueError("context.max_tokens must be positive")
    if not 0.0 <= ctx.artifact_budget_fraction <= 1.0:
        raise ValueError("context.artifact_budget_fraction must be within [0, 1]")
    missing = {"nano", "mini", "full", "pro"} - set(settings.capability.tiers)
    if missing:
        raise ValueError(f"capability.tiers missing: {sorted(missing)}")


def with_overrides(settings: RouterSettings, **sections: Dict[str, Any]) -> RouterSettings:
    """Return a copy with selected section fields replaced (handy for tests)."""
    updates = {}
    for name, values in sections.items():
        updates[name] = replace(getattr(settings, name), **values)
    return replace(settings, **updates)
