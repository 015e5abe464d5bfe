"""Error taxonomy for QueryLab.

Duplicate errors come from unique constraints and are recoverable by
re-reading the committed row. Gateway errors surface to the caller of the
operation that made the call. IndexMismatch is fatal to the request that
received the misaligned response.
"""


class QueryLabError(Exception):
    """Base exception for QueryLab."""
    pass


class InvalidEntity(QueryLabError, ValueError):
    """Raised when an entity is constructed with invalid fields."""
    pass


class DuplicateGroup(QueryLabError):
    """Raised when a QueryGroup with the same canonical identifier exists."""

    def __init__(self, identifier: str):
        super().__init__(f"Query group already exists: {identifier!r}")
        self.identifier = identifier


class DuplicateVariation(QueryLabError):
    """Raised when a Query with the same (content, domain) exists."""

    def __init__(self, content: str, domain: str):
        super().__init__(f"Query already exists in domain {domain!r}: {content!r}")
        self.content = content
        self.domain = domain


class AlreadyEvaluated(QueryLabError):
    """Raised when a Query already owns a QueryEvaluation."""

    def __init__(self, query_id: int):
        super().__init__(f"Query {query_id} already has an evaluation")
        self.query_id = query_id


class GatewayError(QueryLabError):
    """Raised when an external gateway returns a failure response."""
    pass


class GatewayTimeout(GatewayError):
    """Raised when an external gateway call times out after all retries."""
    pass


class IndexMismatch(QueryLabError):
    """Raised when a gateway response cannot be aligned to its request."""
    pass
