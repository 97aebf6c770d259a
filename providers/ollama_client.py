import os

from langchain_ollama import ChatOllama, OllamaEmbeddings

from providers.structured import StructuredChat


def _base_url() -> str:
    return os.getenv("OLLAMA_BASE_URL") or os.getenv("OLLAMA_URL") or "http://localhost:11434"


def make_ollama(model: str, temperature: float = 0.0) -> StructuredChat:
    base_url = _base_url()
    num_ctx = int(os.getenv("OLLAMA_NUM_CTX", "8192"))
    seed = int(os.getenv("OLLAMA_SEED", "42"))
    keep_alive = os.getenv("OLLAMA_KEEP_ALIVE", None)

    def _with_format(schema_name, schema):
        # Ollama takes the JSON schema as the "format" option of the model itself.
        return ChatOllama(
            model=model,
            base_url=base_url,
            temperature=temperature,
            num_ctx=num_ctx,
            seed=seed,
            keep_alive=keep_alive,
            format=schema,
        )

    return StructuredChat("ollama", model, _with_format)


def make_ollama_embeddings(model: str) -> OllamaEmbeddings:
    return OllamaEmbeddings(model=model, base_url=_base_url())
