import logging
from typing import Any, Callable, Dict, List

from langchain_core.runnables import Runnable, RunnableLambda

logger = logging.getLogger("topic-router.providers")


def _content_text(content: Any) -> str:
    """Chat models may answer with a list of content blocks; keep only the text parts."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(block.get("text") or "")
        return "".join(parts)
    return str(content)


class StructuredChat:
    """
    Routing-model client: chat messages plus a JSON schema in, raw JSON text out.

    ``factory(schema_name, schema)`` returns a chat model already bound to the
    schema; one chain is built and cached per schema variant.
    """

    def __init__(self, provider: str, model: str, factory: Callable[[str, Dict[str, Any]], Runnable]):
        self.provider = provider
        self.model = model
        self._factory = factory
        self._chains: Dict[str, Runnable] = {}
        self.last_usage: Dict[str, int] = {}

    def _chain(self, schema_name: str, schema: Dict[str, Any]) -> Runnable:
        if schema_name not in self._chains:
            llm = self._factory(schema_name, schema)
            to_msgs = RunnableLambda(lambda x: x["messages"])
            self._chains[schema_name] = to_msgs | llm
        return self._chains[schema_name]

    async def ainvoke_json(self, messages: List[Dict[str, str]], schema_name: str, schema: Dict[str, Any]) -> str:
        out = await self._chain(schema_name, schema).ainvoke({"messages": messages})
        usage = getattr(out, "usage_metadata", None)
        if usage:
            self.last_usage = {
                "input_tokens": usage.get("input_tokens", 0),
                "output_tokens": usage.get("output_tokens", 0),
            }
            logger.debug(f"Router usage model={self.model} {self.last_usage}")
        return _content_text(getattr(out, "content", out))
