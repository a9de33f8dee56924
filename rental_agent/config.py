import os

MODEL_NAME = os.getenv("RENTAL_AGENT_MODEL", "gpt-4.1-mini")
EMBEDDING_MODEL = "text-embedding-3-small"
EMBEDDING_DIMENSIONS = 1536 # Must match the vector index definition below.

MONGODB_URI = os.getenv("MONGODB_URI", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("RENTAL_AGENT_DB", "rental_app")
RENTALS_COLLECTION = "rentals"
CONVERSATIONS_COLLECTION = "conversations"
USERS_COLLECTION = "users"

VECTOR_INDEX_NAME = "rental_vector_search"
VECTOR_PATH = "text_embeddings" # Field holding the listing embedding.
NUM_CANDIDATES = 100 # ANN candidates considered before the vector limit is applied.

SEMANTIC_SHARE = 0.7 # Fraction of the requested limit fetched from the vector index.
LEXICAL_SHARE = 0.3 # Fraction of the requested limit fetched from the keyword search.
LEXICAL_FALLBACK_SCORE = 0.5 # Score given to lexical-only hits; cosine vector scores for real matches sit above it.

DEFAULT_TOOL_LIMIT = 5 # Results per searchRentals call when the model omits a limit.
DEFAULT_SEARCH_LIMIT = 10 # Results per direct search() call.
MAX_SEARCH_LIMIT = 50

HISTORY_LIMIT = 20 # Most recent messages sent to the model as context.
MAX_HISTORY_LIMIT = 100
MAX_TOOL_ROUNDS = 4 # Model calls allowed to request tools within one turn.

LLM_TIMEOUT_SECONDS = float(os.getenv("RENTAL_AGENT_LLM_TIMEOUT", "60"))
EMBEDDING_TIMEOUT_SECONDS = float(os.getenv("RENTAL_AGENT_EMBEDDING_TIMEOUT", "15"))

SESSION_RETENTION_DAYS = 30 # Default age threshold for the inactive-session sweep.

LOG_LEVEL = os.getenv("RENTAL_AGENT_LOG_LEVEL", "INFO")

# Atlas Vector Search index over the rentals collection. Every field the
# vector metadata filter can reference has to be declared as a filter path.
VECTOR_INDEX_DEFINITION = {
    "name": VECTOR_INDEX_NAME,
    "collection": RENTALS_COLLECTION,
    "database": DATABASE_NAME,
    "definition": {
        "fields": [
            {
                "type": "vector",
                "path": VECTOR_PATH,
                "numDimensions": EMBEDDING_DIMENSIONS,
                "similarity": "cosine",
            },
            {"type": "filter", "path": "property_type"},
            {"type": "filter", "path": "room_type"},
            {"type": "filter", "path": "address.country"},
            {"type": "filter", "path": "address.market"},
            {"type": "filter", "path": "price"},
            {"type": "filter", "path": "bedrooms"},
            {"type": "filter", "path": "bathrooms"},
            {"type": "filter", "path": "accommodates"},
            {"type": "filter", "path": "host.host_is_superhost"},
            {"type": "filter", "path": "instant_bookable"},
            {"type": "filter", "path": "review_scores.review_scores_rating"},
        ]
    },
}
