"""Conversational rental search: hybrid retrieval plus a tool-calling assistant."""

from typing import Any, Optional

from .agent import RentalChatAgent
from .config import CONVERSATIONS_COLLECTION
from .filters import compile_filters
from .models import ChatOutcome, SearchFilter, SearchMetadata, SearchOutcome, SearchResult
from .search import HybridSearchEngine, RentalSearchService
from .sessions import SessionStore
from .store import MongoRentalStore, OpenAIEmbedder

__all__ = [
    "ChatOutcome",
    "HybridSearchEngine",
    "RentalChatAgent",
    "RentalSearchService",
    "SearchFilter",
    "SearchMetadata",
    "SearchOutcome",
    "SearchResult",
    "SessionStore",
    "compile_filters",
    "create_agent",
]


def create_agent(database: Optional[Any] = None) -> RentalChatAgent:
    """Wire the MongoDB store, OpenAI embedder and session store into an agent."""
    if database is None:
        from .clients import get_database

        database = get_database()
    store = MongoRentalStore(database)
    search_service = RentalSearchService(store, OpenAIEmbedder())
    return RentalChatAgent(
        search_service=search_service,
        session_store=SessionStore(database[CONVERSATIONS_COLLECTION]),
        store=store,
    )
