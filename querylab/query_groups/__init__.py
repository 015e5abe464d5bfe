"""Query group persistence: groups, phrasings and evaluations.

- models.py: SQLAlchemy tables and validated constructors
- database.py: engine, session factory and transaction scope
- store.py: QueryGroupStore, the only writer of the three tables
"""

from querylab.query_groups.database import (
    build_engine,
    build_session_factory,
    init_db,
    session_scope,
)
from querylab.query_groups.models import (
    Query,
    QueryDraft,
    QueryEvaluation,
    QueryGroup,
)
from querylab.query_groups.store import GroupState, QueryGroupStore

__all__ = [
    "Query",
    "QueryDraft",
    "QueryEvaluation",
    "QueryGroup",
    "GroupState",
    "QueryGroupStore",
    "build_engine",
    "build_session_factory",
    "init_db",
    "session_scope",
]
