"""Hybrid rental search.

Provides:
- LexicalSearcher: case-insensitive keyword match over listing text fields
- SemanticSearcher: embedding + Atlas vector search with the same filter
- HybridSearchEngine: runs both legs concurrently and fuses them
- RentalSearchService: validated search() entry point returning SearchOutcome
"""

import asyncio
import logging
import math
import re
from typing import Any, Dict, List, Mapping, Optional

from .config import (
    DEFAULT_SEARCH_LIMIT,
    LEXICAL_FALLBACK_SCORE,
    LEXICAL_SHARE,
    MAX_SEARCH_LIMIT,
    NUM_CANDIDATES,
    SEMANTIC_SHARE,
)
from .errors import UpstreamError, ValidationError
from .filters import compile_filters
from .models import SearchFilter, SearchOutcome, SearchResult
from .store import AbstractEmbedder, AbstractRentalStore
from .utils import serialize_listing

logger = logging.getLogger(__name__)

# Listing fields the keyword leg matches against.
LEXICAL_FIELDS = (
    "name",
    "description",
    "address.neighbourhood",
    "address.market",
    "property_type",
)


def split_limit(limit: int) -> tuple[int, int]:
    """Return the (semantic, lexical) sub-limits for a fused search."""
    return math.ceil(limit * SEMANTIC_SHARE), math.ceil(limit * LEXICAL_SHARE)


def validate_limit(limit: Any, maximum: int = MAX_SEARCH_LIMIT) -> int:
    if isinstance(limit, bool) or not isinstance(limit, int):
        raise ValidationError(f"limit must be an integer between 1 and {maximum}")
    if limit < 1 or limit > maximum:
        raise ValidationError(f"limit must be between 1 and {maximum}, got {limit}")
    return limit


class LexicalSearcher:
    def __init__(self, store: AbstractRentalStore) -> None:
        self.store = store

    def build_query(self, query_text: str, search_filter: SearchFilter) -> Dict[str, Any]:
        pattern = re.escape(query_text.strip())
        text_match = {"$or": [{f: {"$regex": pattern, "$options": "i"}} for f in LEXICAL_FIELDS]}
        predicate = search_filter.to_lexical_query()
        if not predicate:
            return text_match
        # Both sides may carry an $or (location does), so they are AND-ed explicitly.
        return {"$and": [text_match, predicate]}

    async def search(self, query_text: str, search_filter: SearchFilter, limit: int) -> List[SearchResult]:
        docs = await self.store.find_listings(self.build_query(query_text, search_filter), limit)
        return [_to_result(doc, "lexical", LEXICAL_FALLBACK_SCORE) for doc in docs]


class SemanticSearcher:
    def __init__(
        self,
        store: AbstractRentalStore,
        embedder: AbstractEmbedder,
        num_candidates: int = NUM_CANDIDATES,
    ) -> None:
        self.store = store
        self.embedder = embedder
        self.num_candidates = num_candidates

    async def search(self, query_text: str, search_filter: SearchFilter, limit: int) -> List[SearchResult]:
        embedding = await self.embedder.embed(query_text)
        docs = await self.store.vector_search(
            embedding,
            search_filter.to_vector_filter(),
            self.num_candidates,
            limit,
        )
        return [_to_result(doc, "semantic", float(doc.get("score") or 0.0)) for doc in docs]


class HybridSearchEngine:
    """Semantic + lexical fork-join with score-based fusion."""

    def __init__(
        self,
        semantic: SemanticSearcher,
        lexical: LexicalSearcher,
        fallback_score: float = LEXICAL_FALLBACK_SCORE,
    ) -> None:
        self.semantic = semantic
        self.lexical = lexical
        self.fallback_score = fallback_score

    async def search(self, query_text: str, search_filter: SearchFilter, limit: int) -> List[SearchResult]:
        if search_filter.is_identity_lookup:
            return await self.lookup_ids(search_filter, limit)

        semantic_limit, lexical_limit = split_limit(limit)
        semantic_task = asyncio.create_task(
            self.semantic.search(query_text, search_filter, semantic_limit)
        )
        lexical_task = asyncio.create_task(
            self.lexical.search(query_text, search_filter, lexical_limit)
        )
        try:
            semantic_hits, lexical_hits = await asyncio.gather(semantic_task, lexical_task)
        except BaseException:
            # No partial results: a failed leg fails the whole search.
            for task in (semantic_task, lexical_task):
                task.cancel()
            raise

        logger.info(
            "Hybrid search %r: %d semantic, %d lexical hits",
            query_text, len(semantic_hits), len(lexical_hits),
        )
        return self.fuse(semantic_hits, lexical_hits, limit)

    def fuse(
        self,
        semantic_hits: List[SearchResult],
        lexical_hits: List[SearchResult],
        limit: int,
    ) -> List[SearchResult]:
        """Deduplicate by id, rank by score, truncate to limit."""
        fused: List[SearchResult] = []
        seen_ids: set[str] = set()
        for hit in semantic_hits:
            if hit.id in seen_ids:
                continue
            seen_ids.add(hit.id)
            fused.append(hit)
        for hit in lexical_hits:
            if hit.id in seen_ids:
                continue
            seen_ids.add(hit.id)
            fused.append(
                SearchResult(id=hit.id, score=self.fallback_score, source="lexical", payload=hit.payload)
            )

        # sorted() is stable, so equal scores keep semantic-before-lexical order.
        ranked = sorted(fused, key=lambda r: r.score, reverse=True)
        return ranked[:limit]

    async def lookup_ids(self, search_filter: SearchFilter, limit: int) -> List[SearchResult]:
        docs = await self.lexical.store.find_listings(search_filter.to_lexical_query(), limit)
        return [_to_result(doc, "lexical", 1.0) for doc in docs]


class RentalSearchService:
    """Entry point for direct searches and property lookups."""

    def __init__(self, store: AbstractRentalStore, embedder: AbstractEmbedder) -> None:
        self.store = store
        self.engine = HybridSearchEngine(
            semantic=SemanticSearcher(store, embedder),
            lexical=LexicalSearcher(store),
        )

    async def run(self, query_text: str, search_filter: SearchFilter, limit: int) -> List[SearchResult]:
        """Search with an already compiled filter; errors propagate."""
        limit = validate_limit(limit)
        if not search_filter.is_identity_lookup:
            if not isinstance(query_text, str) or not query_text.strip():
                raise ValidationError("query text is required")
            query_text = query_text.strip()
        logger.info(
            "Searching rentals: query=%r constraints=%s limit=%d",
            query_text, sorted(search_filter.constraints()), limit,
        )
        return await self.engine.search(query_text, search_filter, limit)

    async def search(
        self,
        query_text: str,
        raw_params: Optional[Mapping[str, Any]] = None,
        limit: int = DEFAULT_SEARCH_LIMIT,
    ) -> SearchOutcome:
        """Compile raw filters, run the hybrid search and wrap the outcome."""
        search_filter = compile_filters(raw_params)
        constraints = search_filter.constraints()
        try:
            results = await self.run(query_text, search_filter, limit)
        except ValidationError as e:
            return SearchOutcome(
                success=False, filters=constraints, message=str(e), error=str(e), error_kind="validation"
            )
        except UpstreamError as e:
            logger.error("Search failed in %s: %s", e.component, e)
            return SearchOutcome(
                success=False,
                filters=constraints,
                message="Search is temporarily unavailable. Please try again in a moment.",
                error=str(e),
                error_kind="upstream",
                failed_component=e.component,
                retryable=e.retryable,
            )
        # Catch-all for unexpected errors
        except Exception as e:
            logger.exception("Unexpected search failure")
            return SearchOutcome(
                success=False,
                filters=constraints,
                message="Sorry, something went wrong while searching. Please try again.",
                error=str(e),
                error_kind="internal",
            )
        return SearchOutcome(success=True, results=results, filters=constraints)

    async def get_property(self, property_id: str) -> Optional[Dict[str, Any]]:
        if not isinstance(property_id, str) or not property_id.strip():
            raise ValidationError("property id is required")
        doc = await self.store.find_property(property_id.strip())
        return serialize_listing(doc) if doc is not None else None


def _to_result(doc: Dict[str, Any], source: str, score: float) -> SearchResult:
    return SearchResult(id=str(doc["_id"]), score=score, source=source, payload=serialize_listing(doc))
