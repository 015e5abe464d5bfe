"""Query rewriting and classification for the adaptive query loop.

## Query Rewriting

Users phrase the same intent in many ways, and some phrasings retrieve much
better than others. The rewrite gateway takes a phrasing and returns:

1. **reply_type**: does the user want a list of matches or one recommendation
2. **domain**: which partition of the content index fits the question
3. **improved_query**: an alternative phrasing tuned for semantic search

The router calls it once to classify a brand-new query. The evaluation
engine calls it repeatedly on a group's canonical phrasing to explore new
variations, so sampling is slightly creative (REWRITE_TEMPERATURE) and each
call may produce a different phrasing.

## Library Usage

Uses OpenRouter via call_structured_completion() with the
QueryClassification Pydantic schema. Failures are NOT swallowed: a timeout
raises GatewayTimeout and any other failure raises a GatewayError, so the
caller never persists a variation built from a default classification.
"""

from typing import Optional

from querylab.config import (
    OPENROUTER_API_KEY,
    OPENROUTER_BASE_URL,
    REWRITE_MAX_TOKENS,
    REWRITE_MODEL,
    REWRITE_TEMPERATURE,
    REWRITE_TIMEOUT,
)
from querylab.rag_pipeline.retrieval.preprocessing.schemas import QueryClassification
from querylab.shared.files import setup_logging
from querylab.shared.openrouter_client import call_structured_completion

logger = setup_logging(__name__)


REWRITE_PROMPT = """You rewrite search queries for a catalogue search engine.

Each catalogue item is indexed twice:
- "description": what the item is about (plot, subject, themes, genre)
- "setting": where and when the item takes place (locations, eras, environments)

Given the user's query, respond with:
- reply_type: "results" if the user wants a list of matching items,
  "recommendation" if they want a single best pick
- domain: "setting" if the query is mainly about places, times or
  environments, otherwise "description"
- improved_query: a rephrasing of the same intent that is more likely to match
  the wording of relevant catalogue entries (5-20 words, no quotes)

Respond with JSON: {"reply_type": "...", "domain": "...", "improved_query": "..."}"""


class QueryRewriter:
    """Rewrite gateway: free text -> QueryClassification.

    Args:
        model: OpenRouter model ID.
        api_key: OpenRouter API key.
        base_url: OpenRouter base URL.
        timeout: Per-call timeout in seconds.
        temperature: Sampling temperature.
        max_tokens: Maximum tokens in response.
    """

    def __init__(
        self,
        model: str = REWRITE_MODEL,
        api_key: Optional[str] = OPENROUTER_API_KEY,
        base_url: str = OPENROUTER_BASE_URL,
        timeout: float = REWRITE_TIMEOUT,
        temperature: float = REWRITE_TEMPERATURE,
        max_tokens: int = REWRITE_MAX_TOKENS,
    ):
        self.model = model
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = timeout
        self.temperature = temperature
        self.max_tokens = max_tokens

    def rewrite(self, text: str) -> QueryClassification:
        """Classify a query and propose an improved phrasing.

        Args:
            text: The phrasing to rewrite.

        Returns:
            QueryClassification with reply_type, domain and improved_query.

        Raises:
            GatewayTimeout: If the call timed out after all retries.
            GatewayError: On any other gateway failure.

        Example:
            >>> QueryRewriter().rewrite("ocean movies")
            QueryClassification(reply_type=<ReplyType.RESULTS: 'results'>,
                                domain=<Domain.SETTING: 'setting'>,
                                improved_query='films set at sea or aboard ships')
        """
        messages = [
            {"role": "system", "content": REWRITE_PROMPT},
            {"role": "user", "content": text},
        ]
        result = call_structured_completion(
            messages=messages,
            model=self.model,
            response_model=QueryClassification,
            api_key=self.api_key,
            base_url=self.base_url,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            timeout=self.timeout,
        )
        logger.info(
            f"[rewrite] {text!r} -> {result.improved_query!r} "
            f"({result.domain.value}, {result.reply_type.value})"
        )
        return result
