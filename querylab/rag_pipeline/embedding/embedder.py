"""OpenRouter embedding gateway for QueryLab.

Provides API integration for generating text embeddings via OpenRouter.

Batch responses are not guaranteed to come back in input order. Every item
carries the position of its input in an "index" field, and vectors are
re-ordered by that index before they are handed out. A response that cannot
be aligned (missing, duplicate or out-of-range indices) raises IndexMismatch
instead of silently attaching a vector to the wrong text.
"""

from typing import Any, Dict, List, Optional, Sequence, Union

from querylab.config import (
    BACKOFF_BASE,
    EMBEDDING_MODEL_ID,
    EMBEDDING_TIMEOUT,
    MAX_RETRIES,
    OPENROUTER_API_KEY,
    OPENROUTER_BASE_URL,
)
from querylab.errors import IndexMismatch
from querylab.shared.files import setup_logging
from querylab.shared.openrouter_client import post_json

logger = setup_logging(__name__)


def align_embeddings(items: Sequence[Dict[str, Any]], expected: int) -> List[List[float]]:
    """
    Order embedding response items by their echoed input index.

    Args:
        items: Response "data" items, each with "index" and "embedding".
        expected: Number of inputs that were sent.

    Returns:
        One vector per input, in input order.

    Raises:
        IndexMismatch: If the indices are not exactly 0..expected-1.
    """
    if len(items) != expected:
        raise IndexMismatch(f"Embedding response has {len(items)} items for {expected} inputs")

    try:
        ordered = sorted(items, key=lambda item: int(item["index"]))
    except (KeyError, TypeError, ValueError) as exc:
        raise IndexMismatch(f"Embedding response item without a usable index: {exc}") from exc

    indices = [int(item["index"]) for item in ordered]
    if indices != list(range(expected)):
        raise IndexMismatch(f"Embedding response indices {indices} do not cover 0..{expected - 1}")

    vectors = []
    for item in ordered:
        vector = item.get("embedding")
        if not vector:
            raise IndexMismatch(f"Embedding response item {item['index']} has no vector")
        vectors.append([float(x) for x in vector])
    return vectors


class OpenRouterEmbedder:
    """
    Embedding gateway: text -> fixed-length vector.

    Args:
        model: Embedding model ID.
        api_key: OpenRouter API key.
        base_url: OpenRouter base URL.
        timeout: Per-request timeout in seconds.
        max_retries: How many retries on failure (HTTP/network).
        backoff_base: Backoff multiplier for retry delays.
    """

    def __init__(
        self,
        model: str = EMBEDDING_MODEL_ID,
        api_key: Optional[str] = OPENROUTER_API_KEY,
        base_url: str = OPENROUTER_BASE_URL,
        timeout: float = EMBEDDING_TIMEOUT,
        max_retries: int = MAX_RETRIES,
        backoff_base: float = BACKOFF_BASE,
    ):
        self.model = model
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_base = backoff_base

    def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        """
        Embed a batch of texts.

        Args:
            texts: List of text strings.

        Returns:
            List of vectors, aligned with texts.
        """
        if not texts:
            return []

        payload = {
            "model": self.model,
            "input": list(texts),
        }
        result = post_json(
            f"{self.base_url}/embeddings",
            payload,
            self.api_key,
            self.timeout,
            max_retries=self.max_retries,
            backoff_base=self.backoff_base,
            label="embed",
        )
        vectors = align_embeddings(result.get("data", []), len(texts))
        logger.info(f"[embed] model={self.model} inputs={len(texts)} dims={len(vectors[0])}")
        return vectors

    def embed(self, text: Union[str, Sequence[str]]) -> Union[List[float], List[List[float]]]:
        """
        Embed one text or a list of texts.

        Returns:
            A single vector for a string, a list of vectors for a list.
        """
        if isinstance(text, str):
            return self.embed_batch([text])[0]
        return self.embed_batch(text)
