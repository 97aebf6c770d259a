import logging
import os
from typing import Optional

import httpx
from langchain_openai import ChatOpenAI, OpenAIEmbeddings

from providers.structured import StructuredChat

logger = logging.getLogger("topic-router.openai")


def _needs_reasoning(name: str) -> bool:
    """Reasoning models (o1, o3, o4 families) reject the temperature param."""
    n = (name or "").lower()
    return n.startswith("o1") or n.startswith("o3") or n.startswith("o4")


def _credentials():
    key = os.getenv("OPENAI_API_KEY_TIER2") or os.getenv("OPENAI_API_KEY")
    base = os.getenv("OPENAI_BASE_URL") or os.getenv("OPENAI_API_BASE") or "https://api.openai.com/v1"
    org = os.getenv("OPENAI_ORGANIZATION") or os.getenv("OPENAI_ORG")
    proj = os.getenv("OPENAI_PROJECT")
    return key, base, org, proj


def check_openai_auth(timeout: float = 5.0) -> bool:
    """
    Startup probe: GET /models with the configured key.

    Returns False (and logs once) on 401 or network failure. Skipped when no
    key is configured, in which case the router runs on its heuristics.
    """
    key, base, org, proj = _credentials()
    if not key:
        logger.info("OpenAI auth check skipped: no API key configured (heuristic routing only)")
        return False

    headers = {"Authorization": f"Bearer {key}"}
    if org:
        headers["OpenAI-Organization"] = org
    if proj:
        headers["OpenAI-Project"] = proj

    models_url = f"{base.rstrip('/')}/models"
    try:
        resp = httpx.get(models_url, headers=headers, timeout=timeout)
    except httpx.TimeoutException:
        logger.warning("OpenAI auth check timeout (network issue)")
        return False
    except httpx.HTTPError as e:
        logger.warning(f"OpenAI auth check error: {type(e).__name__}: {e}")
        return False

    if resp.status_code == 401:
        logger.error(
            f"OpenAI auth FAILED (401 Unauthorized). Routing and embeddings will fall back to heuristics. "
            f"Base URL: {base}, Org: {org or 'none'}, Project: {proj or 'none'}"
        )
        return False
    if resp.status_code != 200:
        logger.warning(f"OpenAI auth check returned HTTP {resp.status_code}")
        return False
    logger.info("OpenAI auth SUCCESS")
    return True


def make_openai(model: str, temperature: float = 0.0, timeout: Optional[float] = None) -> Optional[StructuredChat]:
    """Build the routing-model client, or None when no key is configured."""
    key, base, org, proj = _credentials()
    if not key:
        logger.warning("OpenAI routing model disabled: missing OPENAI_API_KEY")
        return None

    timeout = timeout or float(os.getenv("OPENAI_TIMEOUT_SEC", "20"))
    headers = {"OpenAI-Project": proj} if proj else None

    kwargs = dict(
        model=model,
        api_key=key,
        organization=org,
        base_url=base,
        timeout=timeout,
        default_headers=headers,
        # The router retries on its own terms (one retry, then heuristics).
        max_retries=0,
    )
    if not _needs_reasoning(model):
        kwargs["temperature"] = temperature
    llm = ChatOpenAI(**kwargs)

    def _bind_schema(schema_name, schema):
        return llm.bind(response_format={
            "type": "json_schema",
            "json_schema": {"name": schema_name, "schema": schema, "strict": False},
        })

    return StructuredChat("openai", model, _bind_schema)


def make_openai_embeddings(model: str, timeout: Optional[float] = None) -> Optional[OpenAIEmbeddings]:
    key, base, org, _ = _credentials()
    if not key:
        logger.warning("OpenAI embeddings disabled: missing OPENAI_API_KEY")
        return None
    return OpenAIEmbeddings(
        model=model,
        api_key=key,
        base_url=base,
        organization=org,
        timeout=timeout or float(os.getenv("OPENAI_TIMEOUT_SEC", "20")),
        max_retries=0,
        # Inputs are already token-capped by the semantic matcher.
        check_embedding_ctx_length=False,
    )
