"""Central configuration for QueryLab.

Contains:
- Project paths (data directory, default SQLite database)
- OpenRouter settings (API key, base URL, models) loaded from .env
- Embedding, rerank and rewrite gateway settings (models, timeouts, retries)
- Weaviate content index settings
- Evaluation loop settings (candidate K, concurrency)
- Routing settings (top-k, relevance thresholds per reply type)

Values here are defaults only. Every gateway, the store and the engine accept
explicit constructor arguments, so nothing below is read as shared state at
call time.
"""
import os
from pathlib import Path
from typing import Dict

from dotenv import load_dotenv

# ============================================================================
# PROJECT PATHS
# ============================================================================

PROJECT_ROOT = Path(__file__).parent.parent
DATA_DIR = PROJECT_ROOT / "data"

# Load environment variables from the .env file (in querylab/ directory)
load_dotenv(Path(__file__).parent / ".env")


# ============================================================================
# OPENROUTER SETTINGS
# ============================================================================

OPENROUTER_API_KEY = os.getenv("OPENROUTER_API_KEY")
OPENROUTER_BASE_URL = os.getenv("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1")

# Safety limits shared by all HTTP gateways
MAX_RETRIES = 3
BACKOFF_BASE = 1.5


# ============================================================================
# EMBEDDING SETTINGS
# ============================================================================

EMBEDDING_MODEL_ID = os.getenv("EMBEDDING_MODEL_ID", "openai/text-embedding-3-large")

# Seconds per embeddings request
EMBEDDING_TIMEOUT = 30


# ============================================================================
# RERANK SETTINGS
# ============================================================================

# Cohere/Jina compatible /rerank endpoint
RERANK_API_KEY = os.getenv("RERANK_API_KEY")
RERANK_BASE_URL = os.getenv("RERANK_BASE_URL", "https://api.cohere.com/v2")
RERANK_MODEL = os.getenv("RERANK_MODEL", "rerank-v3.5")

RERANK_TIMEOUT = 30


# ============================================================================
# REWRITE SETTINGS
# ============================================================================

# Model for query rewrite/classification (fast, cheap model: short structured output)
REWRITE_MODEL = os.getenv("REWRITE_MODEL", "deepseek/deepseek-v3.2")

# Rewrite calls are batched by the driver; 15s keeps a stuck call from
# stalling a whole campaign
REWRITE_TIMEOUT = 15
REWRITE_MAX_TOKENS = 200

# Slight creativity so repeated rewrites of the same phrasing explore
# different variations
REWRITE_TEMPERATURE = 0.7


# ============================================================================
# WEAVIATE SETTINGS
# ============================================================================

WEAVIATE_HOST = os.getenv("WEAVIATE_HOST", "localhost")
WEAVIATE_HTTP_PORT = int(os.getenv("WEAVIATE_HTTP_PORT", "8080"))
WEAVIATE_GRPC_PORT = int(os.getenv("WEAVIATE_GRPC_PORT", "50051"))

WEAVIATE_BATCH_SIZE = 100  # Objects per batch (Weaviate recommends 100-1000)
WEAVIATE_QUERY_TIMEOUT = 20

# Collection holding content chunks for every domain (filtered on "domain")
CONTENT_COLLECTION = os.getenv("CONTENT_COLLECTION", "QueryLab_content_v1")


# ============================================================================
# DATABASE SETTINGS
# ============================================================================

DATABASE_URL = os.getenv(
    "QUERYLAB_DATABASE_URL",
    f"sqlite:///{DATA_DIR / 'querylab.db'}",
)
DATABASE_ECHO = os.getenv("QUERYLAB_DATABASE_ECHO", "false").lower() == "true"


# ============================================================================
# EVALUATION LOOP SETTINGS
# ============================================================================

# Candidates pulled from the content index before reranking (K)
CANDIDATE_K = 20

# Worker threads for concurrent cycles across groups
CYCLE_MAX_WORKERS = 4


# ============================================================================
# ROUTING SETTINGS
# ============================================================================

DEFAULT_TOP_K = 10

# Reranked items scoring below the threshold for the query's reply type are
# dropped before responding. A recommendation is a single pick, so it needs
# a stronger signal than an enumerated result list.
RELEVANCE_THRESHOLDS: Dict[str, float] = {
    "results": 0.1,
    "recommendation": 0.5,
}
