"""Utility functions for the rental agent."""
from typing import Any, Dict, Mapping, Optional

from bson import ObjectId

DESCRIPTION_PREVIEW_CHARS = 200


def serialize_listing(doc: Mapping[str, Any]) -> Dict[str, Any]:
    """Convert a listing document into a JSON-serializable dict."""
    data = {k: _jsonable(v) for k, v in doc.items() if k != "score"}
    if "_id" in data:
        data["_id"] = str(data["_id"])
    return data


def _jsonable(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    if hasattr(value, "isoformat"):
        return value.isoformat()
    if hasattr(value, "to_decimal"):  # bson Decimal128 prices
        return float(value.to_decimal())
    return value


def format_location(address: Optional[Mapping[str, Any]]) -> str:
    """'Neighbourhood, Country', falling back to the market name."""
    address = address or {}
    place = address.get("neighbourhood") or address.get("market") or ""
    country = address.get("country") or ""
    return ", ".join(part for part in (place, country) if part)


def star_rating(review_scores: Optional[Mapping[str, Any]]) -> Optional[str]:
    """Convert a 0-100 review score into a 0-5 star string."""
    rating = (review_scores or {}).get("review_scores_rating")
    if not rating:
        return None
    return f"{rating / 20:.1f}"


def preview(text: Optional[str], limit: int = DESCRIPTION_PREVIEW_CHARS) -> str:
    if not text:
        return "No description available"
    return text[:limit] + "..." if len(text) > limit else text


def summarize_listing(listing: Mapping[str, Any], rank: int, score: Optional[float] = None) -> Dict[str, Any]:
    """Compact listing view handed to the model as tool output."""
    return {
        "rank": rank,
        "id": listing.get("_id"),
        "name": listing.get("name"),
        "type": listing.get("property_type"),
        "room_type": listing.get("room_type"),
        "price": listing.get("price"),
        "bedrooms": listing.get("bedrooms"),
        "bathrooms": listing.get("bathrooms"),
        "accommodates": listing.get("accommodates"),
        "location": format_location(listing.get("address")),
        "rating": star_rating(listing.get("review_scores")),
        "superhost": (listing.get("host") or {}).get("host_is_superhost"),
        "similarity_score": f"{score:.3f}" if score is not None else None,
        "description": preview(listing.get("description")),
    }


def describe_property(listing: Mapping[str, Any]) -> Dict[str, Any]:
    """Detailed single-listing view for getPropertyDetails."""
    address = listing.get("address") or {}
    host = listing.get("host") or {}
    reviews = listing.get("review_scores") or {}
    return {
        "id": listing.get("_id"),
        "name": listing.get("name"),
        "description": listing.get("description"),
        "property_type": listing.get("property_type"),
        "room_type": listing.get("room_type"),
        "price": listing.get("price"),
        "bedrooms": listing.get("bedrooms"),
        "bathrooms": listing.get("bathrooms"),
        "accommodates": listing.get("accommodates"),
        "location": {
            "neighbourhood": address.get("neighbourhood"),
            "market": address.get("market"),
            "country": address.get("country"),
            "full_address": format_location(address),
        },
        "amenities": listing.get("amenities") or [],
        "host": {
            "name": host.get("host_name"),
            "is_superhost": host.get("host_is_superhost"),
            "response_time": host.get("host_response_time"),
            "response_rate": host.get("host_response_rate"),
        },
        "reviews": {
            "rating": star_rating(reviews),
            "count": listing.get("number_of_reviews"),
            "cleanliness": reviews.get("review_scores_cleanliness"),
            "communication": reviews.get("review_scores_communication"),
            "location_score": reviews.get("review_scores_location"),
        },
        "policies": {
            "cancellation_policy": listing.get("cancellation_policy"),
            "minimum_nights": listing.get("minimum_nights"),
            "maximum_nights": listing.get("maximum_nights"),
        },
        "availability": {
            "instant_bookable": listing.get("instant_bookable"),
            "calendar_updated": listing.get("calendar_updated"),
        },
    }


def format_filters(filters: Mapping[str, Any]) -> str:
    """Human-readable summary of the UI filter panel."""
    descriptions = []
    if filters.get("property_type"):
        descriptions.append(f"property type: {filters['property_type']}")
    min_price, max_price = filters.get("min_price"), filters.get("max_price")
    if min_price and max_price:
        descriptions.append(f"price: ${min_price}-${max_price}/night")
    elif min_price:
        descriptions.append(f"minimum price: ${min_price}/night")
    elif max_price:
        descriptions.append(f"maximum price: ${max_price}/night")
    if filters.get("min_bedrooms"):
        descriptions.append(f"{filters['min_bedrooms']}+ bedrooms")
    if filters.get("min_accommodates"):
        descriptions.append(f"{filters['min_accommodates']}+ guests")
    if filters.get("superhost_only") in (True, "true"):
        descriptions.append("superhosts only")
    return ", ".join(descriptions)


def enrich_message(message: str, context: Optional[Mapping[str, Any]]) -> str:
    """Fold the caller's UI state (search box, filters, open listing) into the user turn."""
    if not context:
        return message

    enriched = message
    if context.get("current_search"):
        enriched = f'User is currently searching for: "{context["current_search"]}". {message}'

    filters = context.get("filters") or {}
    filter_desc = format_filters(filters) if isinstance(filters, Mapping) else ""
    if filter_desc:
        enriched += f" Current filters: {filter_desc}."

    prop = context.get("current_property")
    if isinstance(prop, Mapping):
        features = prop.get("features") or {}
        location = format_location(prop.get("location")) or "Unknown location"
        enriched += (
            f' User is currently viewing property: "{prop.get("name")}" (ID: {prop.get("id")})'
            f" - {features.get('property_type') or 'Property'} for ${prop.get('price')}/night"
            f" in {location}, {features.get('bedrooms') or 0} bedrooms,"
            f" accommodates {features.get('accommodates') or 0} guests."
        )
    return enriched


def message_to_dict(msg: Any) -> Dict[str, Any]:
    """Convert OpenAI chat message to a plain dict we can send back to the model."""
    payload: Dict[str, Any] = {"role": msg.role, "content": msg.content}
    if getattr(msg, "tool_calls", None):
        payload["tool_calls"] = []
        for tc in msg.tool_calls:
            payload["tool_calls"].append(
                {
                    "id": tc.id,
                    "type": tc.type,
                    "function": {
                        "name": tc.function.name,
                        "arguments": tc.function.arguments,
                    },
                }
            )
    return payload
