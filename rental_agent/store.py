"""Listing store and embedding adapters.

Provides:
- AbstractRentalStore / MongoRentalStore: keyword find, Atlas vector search and
  single-listing lookups over the rentals collection
- AbstractEmbedder / OpenAIEmbedder: query embeddings for the vector leg
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from bson import ObjectId
from openai import APITimeoutError, AsyncOpenAI, OpenAIError
from pymongo.errors import PyMongoError

from .config import (
    EMBEDDING_DIMENSIONS,
    EMBEDDING_MODEL,
    EMBEDDING_TIMEOUT_SECONDS,
    RENTALS_COLLECTION,
    USERS_COLLECTION,
    VECTOR_INDEX_NAME,
    VECTOR_PATH,
)
from .errors import UpstreamError
from .filters import parse_listing_id

logger = logging.getLogger(__name__)

# Fields returned for ranked search results.
SEARCH_PROJECTION: Dict[str, Any] = {
    "name": 1,
    "description": 1,
    "property_type": 1,
    "room_type": 1,
    "price": 1,
    "bedrooms": 1,
    "bathrooms": 1,
    "accommodates": 1,
    "instant_bookable": 1,
    "address.neighbourhood": 1,
    "address.market": 1,
    "address.country": 1,
    "images.picture_url": 1,
    "host.host_is_superhost": 1,
    "review_scores.review_scores_rating": 1,
}

# Fields returned for a single property lookup.
DETAILED_PROJECTION: Dict[str, Any] = {
    "name": 1,
    "description": 1,
    "property_type": 1,
    "room_type": 1,
    "price": 1,
    "bedrooms": 1,
    "bathrooms": 1,
    "accommodates": 1,
    "address": 1,
    "amenities": 1,
    "host": 1,
    "review_scores": 1,
    "number_of_reviews": 1,
    "cancellation_policy": 1,
    "minimum_nights": 1,
    "maximum_nights": 1,
    "instant_bookable": 1,
    "calendar_updated": 1,
    "images": 1,
}


class AbstractRentalStore:
    """Interface for listing stores."""

    async def find_listings(self, query: Dict[str, Any], limit: int) -> List[Dict[str, Any]]:
        # Return up to limit projected listings matching a find predicate
        raise NotImplementedError

    async def vector_search(
        self,
        embedding: List[float],
        metadata_filter: Dict[str, Any],
        num_candidates: int,
        limit: int,
    ) -> List[Dict[str, Any]]:
        # Return nearest neighbours, each carrying a "score" field
        raise NotImplementedError

    async def find_property(self, property_id: str) -> Optional[Dict[str, Any]]:
        # Return one listing with detailed fields, or None
        raise NotImplementedError

    async def find_saved_rentals(self, user_id: str) -> Optional[List[Dict[str, Any]]]:
        # Return the user's saved rental entries, or None for an unknown user
        raise NotImplementedError


class MongoRentalStore(AbstractRentalStore):
    """Motor-backed store over the rentals and users collections."""

    def __init__(self, database: Any) -> None:
        self._rentals = database[RENTALS_COLLECTION]
        self._users = database[USERS_COLLECTION]

    async def find_listings(self, query: Dict[str, Any], limit: int) -> List[Dict[str, Any]]:
        try:
            cursor = self._rentals.find(query, SEARCH_PROJECTION).limit(limit)
            return await cursor.to_list(length=limit)
        except PyMongoError as e:
            raise UpstreamError("document_store", str(e)) from e

    async def vector_search(
        self,
        embedding: List[float],
        metadata_filter: Dict[str, Any],
        num_candidates: int,
        limit: int,
    ) -> List[Dict[str, Any]]:
        stage: Dict[str, Any] = {
            "index": VECTOR_INDEX_NAME,
            "path": VECTOR_PATH,
            "queryVector": embedding,
            # Atlas requires numCandidates >= limit.
            "numCandidates": max(num_candidates, limit),
            "limit": limit,
        }
        if metadata_filter:
            stage["filter"] = metadata_filter
        pipeline = [
            {"$vectorSearch": stage},
            {"$project": {**SEARCH_PROJECTION, "score": {"$meta": "vectorSearchScore"}}},
        ]
        try:
            cursor = self._rentals.aggregate(pipeline)
            return await cursor.to_list(length=limit)
        except PyMongoError as e:
            raise UpstreamError("vector_index", str(e)) from e

    async def find_property(self, property_id: str) -> Optional[Dict[str, Any]]:
        parsed = parse_listing_id(property_id)
        if isinstance(parsed, ObjectId):
            query: Dict[str, Any] = {"_id": parsed}
        else:
            # Legacy listings may carry their original id in several fields.
            candidates = [parsed] if parsed == property_id else [parsed, property_id]
            query = {
                "$or": [
                    {"_id": {"$in": candidates}},
                    {"id": {"$in": candidates}},
                    {"listing_id": {"$in": candidates}},
                ]
            }
        try:
            return await self._rentals.find_one(query, DETAILED_PROJECTION)
        except PyMongoError as e:
            raise UpstreamError("document_store", str(e)) from e

    async def find_saved_rentals(self, user_id: str) -> Optional[List[Dict[str, Any]]]:
        if not ObjectId.is_valid(user_id):
            return None
        try:
            user = await self._users.find_one(
                {"_id": ObjectId(user_id)}, {"profile.saved_rentals": 1}
            )
        except PyMongoError as e:
            raise UpstreamError("document_store", str(e)) from e
        if user is None:
            return None
        return list((user.get("profile") or {}).get("saved_rentals") or [])


class AbstractEmbedder:
    """Interface for query embedding generators."""

    async def embed(self, text: str) -> List[float]:
        raise NotImplementedError


class OpenAIEmbedder(AbstractEmbedder):
    """Embeds text with the OpenAI embeddings endpoint."""

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        model: str = EMBEDDING_MODEL,
        dimensions: int = EMBEDDING_DIMENSIONS,
        timeout: float = EMBEDDING_TIMEOUT_SECONDS,
    ) -> None:
        if client is None:
            from .clients import get_openai_client

            client = get_openai_client()
        self._client = client
        self.model = model
        self.dimensions = dimensions
        self.timeout = timeout

    async def embed(self, text: str) -> List[float]:
        try:
            response = await asyncio.wait_for(
                self._client.embeddings.create(model=self.model, input=text),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise UpstreamError("embedding", f"timed out after {self.timeout}s", retryable=True) from e
        except APITimeoutError as e:
            raise UpstreamError("embedding", str(e), retryable=True) from e
        except OpenAIError as e:
            raise UpstreamError("embedding", str(e)) from e

        if not response.data:
            raise UpstreamError("embedding", "empty embedding response")
        vector = list(response.data[0].embedding)
        if len(vector) != self.dimensions:
            raise UpstreamError(
                "embedding", f"expected {self.dimensions} dimensions, got {len(vector)}"
            )
        return vector
