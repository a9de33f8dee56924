"""Tool declarations, argument parsing and execution for the rental assistant.

Each tool call from the model is parsed into a typed argument variant
(models.SearchRentalsArgs, PropertyDetailsArgs, SavedRentalsArgs) or kept raw
(RawToolArgs) when parsing fails. Execution receives an explicit TurnContext
carrying the caller identity, so concurrent turns never share state.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from .config import DEFAULT_TOOL_LIMIT
from .errors import PartialExtractionError, RentalAgentError, UpstreamError
from .filters import compile_filters
from .models import (
    PropertyDetailsArgs,
    RawToolArgs,
    SavedRentalsArgs,
    SearchRentalsArgs,
    ToolCallRecord,
)
from .search import RentalSearchService
from .store import AbstractRentalStore
from .utils import describe_property, format_location, preview, serialize_listing, star_rating, summarize_listing

logger = logging.getLogger(__name__)

SEARCH_TOOL = "searchRentals"
DETAILS_TOOL = "getPropertyDetails"
SAVED_TOOL = "getSavedRentals"

# Tools whose invocation means the turn retrieved listings.
RETRIEVAL_TOOLS = {SEARCH_TOOL, DETAILS_TOOL}

ARGUMENT_PARSERS: Dict[str, Callable[[Dict[str, Any]], Any]] = {
    SEARCH_TOOL: SearchRentalsArgs.parse,
    DETAILS_TOOL: PropertyDetailsArgs.parse,
    SAVED_TOOL: SavedRentalsArgs.parse,
}


def _nullable(kind: str, description: str) -> Dict[str, Any]:
    return {"type": [kind, "null"], "description": description}


tools = [
    {
        "type": "function",
        "function": {
            "name": SEARCH_TOOL,
            "description": (
                "Search for rental properties using semantic search based on user preferences. "
                "IMPORTANT: Always include location in the query when user mentions a place."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "query": {
                        "type": "string",
                        "description": (
                            "Natural language search query describing what the user is looking for. "
                            "Include location context for better results."
                        ),
                    },
                    "filters": {
                        "type": ["object", "null"],
                        "properties": {
                            "property_type": _nullable("string", "Type of property (e.g., Apartment, House, Loft)"),
                            "room_type": _nullable("string", "Room type (e.g., Entire home/apt, Private room)"),
                            "min_price": _nullable("number", "Minimum price per night"),
                            "max_price": _nullable("number", "Maximum price per night"),
                            "min_bedrooms": _nullable("integer", "Minimum number of bedrooms"),
                            "min_bathrooms": _nullable("integer", "Minimum number of bathrooms"),
                            "min_accommodates": _nullable("integer", "Minimum number of guests"),
                            "min_rating": _nullable("number", "Minimum review score on a 0-100 scale"),
                            "superhost_only": _nullable("boolean", "Only show superhost properties"),
                            "instant_bookable": _nullable("boolean", "Only show instantly bookable properties"),
                            "location": _nullable(
                                "string",
                                'City/Market filter - use exact market names like "New York", "Barcelona", "Porto".',
                            ),
                            "country": _nullable(
                                "string",
                                "Country filter - only use when specifically filtering by country, not city",
                            ),
                        },
                    },
                    "limit": {
                        "type": "integer",
                        "description": f"Maximum number of results to return (default {DEFAULT_TOOL_LIMIT}).",
                    },
                },
                "required": ["query"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": DETAILS_TOOL,
            "description": "Get detailed information about a specific rental property by its ID",
            "parameters": {
                "type": "object",
                "properties": {
                    "propertyId": {
                        "type": ["string", "integer"],
                        "description": "The ID of the property to get details for",
                    },
                },
                "required": ["propertyId"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": SAVED_TOOL,
            "description": (
                "Get the user's saved rental properties. Only works when user is authenticated. "
                "Use this to show saved rentals, compare saved properties, or help with decisions "
                "based on previously saved items."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "includeDetails": {
                        "type": "boolean",
                        "description": "Whether to include full rental details or just basic saved info",
                    },
                },
            },
        },
    },
]


def parse_tool_call(name: str, raw_arguments: Any, call_id: Optional[str] = None) -> ToolCallRecord:
    """Decode one tool call. Malformed arguments are logged and kept raw."""
    try:
        parser = ARGUMENT_PARSERS.get(name)
        if parser is None:
            raise PartialExtractionError(name, "unknown tool", raw_arguments)
        arguments = parser(_decode_arguments(name, raw_arguments))
    except PartialExtractionError as e:
        logger.warning("Failed to parse arguments for tool %s: %s", name, e.reason)
        arguments = RawToolArgs(raw=raw_arguments, reason=e.reason)
    return ToolCallRecord(name=name, arguments=arguments, call_id=call_id)


def _decode_arguments(name: str, raw_arguments: Any) -> Dict[str, Any]:
    if isinstance(raw_arguments, dict):
        return raw_arguments
    if raw_arguments is None or raw_arguments == "":
        return {}
    try:
        payload = json.loads(raw_arguments)
    except (TypeError, ValueError) as e:
        raise PartialExtractionError(name, f"invalid JSON: {e}", raw_arguments) from e
    if not isinstance(payload, dict):
        raise PartialExtractionError(name, "arguments must be a JSON object", raw_arguments)
    return payload


@dataclass
class TurnContext:
    """Per-turn state handed to every tool execution."""
    session_id: str
    user_id: Optional[str] = None
    # Ids of the most recent fused search in this turn, for UI reconciliation.
    last_result_ids: Optional[List[str]] = None


@dataclass
class LookupResult:
    value: Optional[Dict[str, Any]] = None
    source: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.value is not None


async def resolve_first(lookups: Sequence[Callable[[], Awaitable[LookupResult]]]) -> LookupResult:
    """Run lookups in order of precedence and return the first success."""
    errors: List[str] = []
    for lookup in lookups:
        result = await lookup()
        if result.ok:
            return result
        if result.error:
            errors.append(result.error)
    return LookupResult(error="; ".join(errors) or "not found")


class ToolExecutor:
    """Runs parsed tool calls and renders their output for the model."""

    def __init__(self, search_service: RentalSearchService, store: AbstractRentalStore) -> None:
        self.search_service = search_service
        self.store = store

    async def execute(self, record: ToolCallRecord, context: TurnContext) -> str:
        args = record.arguments
        if record.name not in ARGUMENT_PARSERS:
            return f"Unknown tool {record.name}. Available tools: {', '.join(ARGUMENT_PARSERS)}."
        if isinstance(args, RawToolArgs):
            if record.name == SEARCH_TOOL:
                context.last_result_ids = []
            return f"Could not run {record.name}: the arguments were malformed ({args.reason})."
        if isinstance(args, SearchRentalsArgs):
            return await self.search_rentals(args, context)
        if isinstance(args, PropertyDetailsArgs):
            return await self.property_details(args)
        if isinstance(args, SavedRentalsArgs):
            return await self.saved_rentals(args, context)
        return f"Unknown tool {record.name}."

    async def search_rentals(self, args: SearchRentalsArgs, context: TurnContext) -> str:
        search_filter = compile_filters(args.filters)
        limit = args.effective_limit
        try:
            results = await self.search_service.run(args.query, search_filter, limit)
        except RentalAgentError as e:
            logger.warning("searchRentals failed for session %s: %s", context.session_id, e)
            context.last_result_ids = []
            return f"I encountered an error while searching for rentals: {e}. Please try again."

        context.last_result_ids = [r.id for r in results]
        if not results:
            return (
                "No rental properties found matching your criteria. "
                "Try adjusting your search terms or filters."
            )
        return json.dumps(
            {
                "total_found": len(results),
                "query_used": args.query,
                "filters_applied": search_filter.constraints(),
                "results": [
                    summarize_listing(r.payload, rank=i + 1, score=r.score)
                    for i, r in enumerate(results)
                ],
            },
            ensure_ascii=False,
            default=str,
        )

    async def property_details(self, args: PropertyDetailsArgs) -> str:
        try:
            listing = await self.search_service.get_property(args.property_id)
        except RentalAgentError as e:
            logger.warning("getPropertyDetails failed for %s: %s", args.property_id, e)
            return f"I encountered an error while getting property details: {e}. Please try again."
        if listing is None:
            return f"Property with ID {args.property_id} not found."
        return json.dumps(describe_property(listing), ensure_ascii=False, default=str)

    async def saved_rentals(self, args: SavedRentalsArgs, context: TurnContext) -> str:
        if not context.user_id:
            return (
                "I can only access your saved rentals when you're logged in. "
                "Please log in to see your saved properties."
            )
        try:
            saved = await self.store.find_saved_rentals(context.user_id)
        except UpstreamError as e:
            logger.warning("getSavedRentals failed for user %s: %s", context.user_id, e)
            return f"I encountered an error accessing your saved rentals: {e}. Please try again."
        if saved is None:
            return "I couldn't find your account. Please log in again to see your saved properties."
        if not saved:
            return (
                "You don't have any saved rental properties yet. "
                "When you find properties you like, you can save them to your list!"
            )

        if not args.include_details:
            return json.dumps(
                {
                    "total_saved": len(saved),
                    "saved_rentals": [
                        _saved_summary(entry, rank=i + 1) for i, entry in enumerate(saved)
                    ],
                },
                ensure_ascii=False,
                default=str,
            )

        detailed = []
        for i, entry in enumerate(saved):
            found = await resolve_first(
                [
                    lambda entry=entry: self._live_listing(entry),
                    lambda entry=entry: _saved_snapshot(entry),
                ]
            )
            detailed.append(_saved_detail(entry, found, rank=i + 1))
        return json.dumps(
            {"total_saved": len(detailed), "saved_rentals": detailed},
            ensure_ascii=False,
            default=str,
        )

    async def _live_listing(self, entry: Dict[str, Any]) -> LookupResult:
        rental_id = entry.get("rental_id")
        if rental_id is None:
            return LookupResult(error="saved entry has no rental id")
        try:
            listing = await self.store.find_property(str(rental_id))
        except UpstreamError as e:
            logger.warning("Live lookup for saved rental %s failed: %s", rental_id, e)
            return LookupResult(error=str(e))
        if listing is None:
            return LookupResult(error=f"listing {rental_id} no longer exists")
        return LookupResult(value=serialize_listing(listing), source="live")


async def _saved_snapshot(entry: Dict[str, Any]) -> LookupResult:
    snapshot = entry.get("rental_data")
    if not snapshot:
        return LookupResult(error="no saved snapshot")
    return LookupResult(value=dict(snapshot), source="snapshot")


def _saved_summary(entry: Dict[str, Any], rank: int) -> Dict[str, Any]:
    data = entry.get("rental_data") or {}
    return {
        "rank": rank,
        "id": entry.get("rental_id"),
        "saved_at": entry.get("saved_at"),
        "name": data.get("name") or "Unknown Property",
        "type": data.get("property_type") or "Unknown Type",
        "price": data.get("price"),
        "location": data.get("location") or "Unknown Location",
        "image": data.get("image"),
    }


def _saved_detail(entry: Dict[str, Any], found: LookupResult, rank: int) -> Dict[str, Any]:
    if found.source != "live":
        summary = _saved_summary(entry, rank)
        summary["data_source"] = found.source or "unavailable"
        return summary
    listing = found.value or {}
    return {
        "rank": rank,
        "id": entry.get("rental_id"),
        "saved_at": entry.get("saved_at"),
        "name": listing.get("name"),
        "type": listing.get("property_type"),
        "price": listing.get("price"),
        "location": format_location(listing.get("address")),
        "bedrooms": listing.get("bedrooms"),
        "bathrooms": listing.get("bathrooms"),
        "accommodates": listing.get("accommodates"),
        "rating": star_rating(listing.get("review_scores")),
        "superhost": (listing.get("host") or {}).get("host_is_superhost"),
        "description": preview(listing.get("description")),
        "data_source": "live",
    }
