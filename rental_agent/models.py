# Data models for search, sessions and chat turns.
import math
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId

from .config import DEFAULT_TOOL_LIMIT, MAX_SEARCH_LIMIT
from .errors import PartialExtractionError

ListingId = Union[ObjectId, int, str]


@dataclass
class SearchFilter:
    """Normalized search constraints compiled from loose request parameters.

    ``None`` always means "no constraint". When ``ids`` is set the filter is an
    identity lookup and every other field stays ``None``.
    """

    property_type: Optional[str] = None
    room_type: Optional[str] = None
    country: Optional[str] = None
    location: Optional[str] = None  # partial match on neighbourhood, market or country
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    min_bedrooms: Optional[int] = None
    min_bathrooms: Optional[int] = None
    min_accommodates: Optional[int] = None
    min_rating: Optional[float] = None
    superhost_only: Optional[bool] = None
    instant_bookable: Optional[bool] = None
    ids: Optional[List[ListingId]] = None

    @property
    def is_identity_lookup(self) -> bool:
        return self.ids is not None

    def constraints(self) -> Dict[str, Any]:
        """Return the set fields keyed by their raw parameter names."""
        if self.ids is not None:
            return {"ids": [str(i) for i in self.ids]}
        return {
            name: value
            for name, value in self.__dict__.items()
            if name != "ids" and value is not None
        }

    def to_lexical_query(self) -> Dict[str, Any]:
        """MongoDB find predicate for the document store."""
        if self.ids is not None:
            object_ids = [i for i in self.ids if isinstance(i, ObjectId)]
            legacy_ids = [i for i in self.ids if not isinstance(i, ObjectId)]
            if object_ids and legacy_ids:
                return {"$or": [{"_id": {"$in": object_ids}}, {"_id": {"$in": legacy_ids}}]}
            return {"_id": {"$in": object_ids or legacy_ids}}

        query: Dict[str, Any] = {}
        if self.location:
            pattern = re.escape(self.location)
            query["$or"] = [
                {"address.neighbourhood": {"$regex": pattern, "$options": "i"}},
                {"address.market": {"$regex": pattern, "$options": "i"}},
                {"address.country": {"$regex": pattern, "$options": "i"}},
            ]
        if self.property_type:
            query["property_type"] = self.property_type
        if self.room_type:
            query["room_type"] = self.room_type
        if self.country:
            query["address.country"] = self.country
        query.update(self._range_predicates())
        if self.superhost_only:
            query["host.host_is_superhost"] = True
        if self.instant_bookable:
            query["instant_bookable"] = True
        return query

    def to_vector_filter(self) -> Dict[str, Any]:
        """Atlas $vectorSearch metadata filter; same field paths, no regex support."""
        if self.ids is not None:
            return {}
        vector_filter: Dict[str, Any] = {}
        if self.property_type:
            vector_filter["property_type"] = {"$eq": self.property_type}
        if self.room_type:
            vector_filter["room_type"] = {"$eq": self.room_type}
        if self.country:
            vector_filter["address.country"] = {"$eq": self.country}
        if self.location:
            # Vector filters only support exact matches, so location targets the market name.
            vector_filter["address.market"] = {"$eq": self.location}
        vector_filter.update(self._range_predicates())
        if self.superhost_only:
            vector_filter["host.host_is_superhost"] = {"$eq": True}
        if self.instant_bookable:
            vector_filter["instant_bookable"] = {"$eq": True}
        return vector_filter

    def _range_predicates(self) -> Dict[str, Any]:
        predicates: Dict[str, Any] = {}
        price: Dict[str, Any] = {}
        if self.min_price is not None:
            price["$gte"] = self.min_price
        if self.max_price is not None:
            price["$lte"] = self.max_price
        if price:
            predicates["price"] = price
        if self.min_bedrooms is not None:
            predicates["bedrooms"] = {"$gte": self.min_bedrooms}
        if self.min_bathrooms is not None:
            predicates["bathrooms"] = {"$gte": self.min_bathrooms}
        if self.min_accommodates is not None:
            predicates["accommodates"] = {"$gte": self.min_accommodates}
        if self.min_rating is not None:
            predicates["review_scores.review_scores_rating"] = {"$gte": self.min_rating}
        return predicates


@dataclass
class SearchResult:
    """One ranked listing from the semantic or lexical leg."""
    id: str
    score: float
    source: str  # "semantic" | "lexical"
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Message:
    """A stored conversation message. Never edited after append."""
    id: str
    role: str  # "user" | "assistant"
    content: str
    timestamp: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Message":
        return cls(
            id=str(doc.get("id", "")),
            role=doc.get("role", ""),
            content=doc.get("content", ""),
            timestamp=doc.get("timestamp"),
            metadata=dict(doc.get("metadata") or {}),
        )

    def to_document(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
            "metadata": self.metadata,
        }


@dataclass
class ConversationSession:
    session_id: str
    owner_user_id: Optional[str] = None
    messages: List[Message] = field(default_factory=list)
    total_messages: int = 0
    last_activity: Optional[datetime] = None
    created_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "ConversationSession":
        metadata = dict(doc.get("metadata") or {})
        return cls(
            session_id=doc["session_id"],
            owner_user_id=doc.get("owner_user_id"),
            messages=[Message.from_document(m) for m in doc.get("messages") or []],
            total_messages=int(metadata.pop("total_messages", 0)),
            last_activity=metadata.pop("last_activity", None),
            created_at=doc.get("created_at"),
            metadata=metadata,
        )


# Tool argument variants. Each declared tool has exactly one typed variant;
# anything that cannot be parsed becomes RawToolArgs.

@dataclass
class SearchRentalsArgs:
    query: str
    filters: Dict[str, Any] = field(default_factory=dict)
    limit: Optional[int] = None

    @classmethod
    def parse(cls, payload: Dict[str, Any]) -> "SearchRentalsArgs":
        query = payload.get("query")
        if not isinstance(query, str) or not query.strip():
            raise PartialExtractionError("searchRentals", "missing query")
        filters = payload.get("filters") or {}
        if not isinstance(filters, dict):
            raise PartialExtractionError("searchRentals", "filters must be an object")
        limit = payload.get("limit")
        if isinstance(limit, bool) or not isinstance(limit, (int, float)):
            limit = None
        elif isinstance(limit, float) and not math.isfinite(limit):
            # json.loads accepts NaN and Infinity.
            limit = None
        elif limit < 1:
            limit = None
        # Models send explicit nulls for unused optional filters.
        filters = {k: v for k, v in filters.items() if v is not None}
        return cls(query=query.strip(), filters=filters, limit=int(limit) if limit else None)

    @property
    def effective_limit(self) -> int:
        """The limit the search actually runs with."""
        return min(self.limit or DEFAULT_TOOL_LIMIT, MAX_SEARCH_LIMIT)


@dataclass
class PropertyDetailsArgs:
    property_id: str

    @classmethod
    def parse(cls, payload: Dict[str, Any]) -> "PropertyDetailsArgs":
        value = payload.get("propertyId")
        if isinstance(value, bool) or not isinstance(value, (str, int, float)):
            raise PartialExtractionError("getPropertyDetails", "missing propertyId")
        if isinstance(value, float):
            if not value.is_integer():
                raise PartialExtractionError("getPropertyDetails", "propertyId is not an identifier")
            value = int(value)
        property_id = str(value).strip()
        if not property_id:
            raise PartialExtractionError("getPropertyDetails", "empty propertyId")
        return cls(property_id=property_id)


@dataclass
class SavedRentalsArgs:
    include_details: bool = False

    @classmethod
    def parse(cls, payload: Dict[str, Any]) -> "SavedRentalsArgs":
        include = payload.get("includeDetails", False)
        if include is None:
            include = False
        if not isinstance(include, bool):
            raise PartialExtractionError("getSavedRentals", "includeDetails must be a boolean")
        return cls(include_details=include)


@dataclass
class RawToolArgs:
    """Arguments kept in their wire form because parsing failed."""
    raw: Any
    reason: str


ToolArguments = Union[SearchRentalsArgs, PropertyDetailsArgs, SavedRentalsArgs, RawToolArgs]


@dataclass
class ToolCallRecord:
    name: str
    arguments: ToolArguments
    call_id: Optional[str] = None


@dataclass
class SearchMetadata:
    """Search intent derived from one assistant turn, for UI reconciliation."""

    search_performed: bool = False
    search_type: Optional[str] = None
    search_query: Optional[str] = None
    search_filters: Optional[Dict[str, Any]] = None
    search_limit: Optional[int] = None
    result_ids: Optional[List[str]] = None
    property_details_requested: bool = False
    property_ids: Optional[List[str]] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize, leaving out fields that were never populated."""
        data: Dict[str, Any] = {"search_performed": self.search_performed}
        for name in ("search_type", "search_query", "search_filters", "search_limit", "result_ids"):
            value = getattr(self, name)
            if value is not None:
                data[name] = value
        if self.property_details_requested:
            data["property_details_requested"] = True
            data["property_ids"] = self.property_ids or []
        return data


@dataclass
class SearchOutcome:
    success: bool
    results: List[SearchResult] = field(default_factory=list)
    filters: Dict[str, Any] = field(default_factory=dict)
    message: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None  # "validation" | "upstream" | "internal"
    failed_component: Optional[str] = None
    retryable: bool = False


@dataclass
class ChatOutcome:
    success: bool
    message: str
    session_id: str
    timestamp: datetime
    search_metadata: SearchMetadata = field(default_factory=SearchMetadata)
    tool_calls_made: int = 0
    error: Optional[str] = None
    error_kind: Optional[str] = None  # "validation" | "upstream" | "internal"
    failed_component: Optional[str] = None
    retryable: bool = False
