import logging
import math
from typing import Optional

import tiktoken

logger = logging.getLogger("topic-router.tokens")

CHARS_PER_TOKEN = 4


class TokenEstimator:
    """
    Approximate token counter used for every budget calculation.

    Wraps a tiktoken encoding. If the encoding cannot be loaded (offline
    host without a cached BPE file) the estimator switches to a fixed
    chars-per-token ratio for its whole lifetime, so counts stay consistent.
    An empty encoding name selects the ratio directly.
    """

    def __init__(self, encoding_name: Optional[str] = "o200k_base"):
        self.encoding_name = encoding_name
        self._enc = None
        if not encoding_name:
            return
        try:
            self._enc = tiktoken.get_encoding(encoding_name)
        except Exception as e:
            logger.warning(f"Tokenizer {encoding_name} unavailable ({e}); using length-based estimate.")

    @property
    def exact(self) -> bool:
        return self._enc is not None

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        if self._enc is not None:
            return len(self._enc.encode(text, disallowed_special=()))
        return math.ceil(len(text) / CHARS_PER_TOKEN)

    def truncate(self, text: str, max_tokens: int) -> str:
        """Cut ``text`` so that it estimates to at most ``max_tokens``."""
        if max_tokens <= 0 or not text:
            return ""
        if self._enc is not None:
            ids = self._enc.encode(text, disallowed_special=())
            if len(ids) <= max_tokens:
                return text
            return self._enc.decode(ids[:max_tokens])
        return text[: max_tokens * CHARS_PER_TOKEN]
