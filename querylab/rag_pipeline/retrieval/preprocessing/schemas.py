"""Pydantic schemas and tagged variants for query rewriting.

## Query Classification

Every query is tagged with two enumerations before it reaches the index:

- Domain: which partition of the content index to search. A query about what
  an item is about goes to DESCRIPTION, a query about where or when it takes
  place goes to SETTING.
- ReplyType: whether the user wants an enumerated result set (RESULTS) or a
  single pick (RECOMMENDATION). The router uses it to pick the relevance
  threshold and how many items to return.

The rewrite LLM returns both tags plus an improved phrasing in one structured
response, validated by QueryClassification.

## Library Usage

Uses Pydantic v2 BaseModel with:
- str-valued Enum fields (serialized as their values in the JSON Schema)
- field_validator to reject blank phrasings at the boundary
- model_validate_json() for parsing
"""

from enum import Enum

from pydantic import BaseModel, Field, field_validator


class Domain(str, Enum):
    """Partition of the content index a query targets."""

    DESCRIPTION = "description"
    SETTING = "setting"


class ReplyType(str, Enum):
    """What kind of answer the user expects."""

    RESULTS = "results"
    RECOMMENDATION = "recommendation"


class QueryClassification(BaseModel):
    """Result of the rewrite/classification call.

    Used by: QueryRewriter.rewrite()

    Example response:
        {
            "reply_type": "results",
            "domain": "setting",
            "improved_query": "films set on the open ocean or aboard ships"
        }
    """

    reply_type: ReplyType = Field(
        description="'results' for a list of matches, 'recommendation' for a single pick"
    )
    domain: Domain = Field(
        description="'description' for what the item is about, 'setting' for where/when it takes place"
    )
    improved_query: str = Field(
        description="The query rephrased for semantic search (5-20 words)"
    )

    @field_validator("improved_query")
    @classmethod
    def _strip_query(cls, value: str) -> str:
        value = value.strip().strip('"').strip()
        if not value:
            raise ValueError("improved_query must not be blank")
        return value
