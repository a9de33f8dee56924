"""Compile loose request parameters into a SearchFilter.

Inputs come from query strings (everything is a string) and from model tool
calls (JSON numbers and booleans). Malformed values are dropped, never
defaulted, and compilation never raises.
"""

import math
import re
from typing import Any, Iterable, List, Mapping, Optional

from bson import ObjectId

from .models import ListingId, SearchFilter

_OBJECT_ID_RE = re.compile(r"^[0-9a-fA-F]{24}$")
_DIGITS_RE = re.compile(r"^\d+$")
# BSON integers are signed 64-bit; larger values cannot be sent to the store.
_MAX_INT64 = 2**63 - 1

_STRING_FIELDS = ("property_type", "room_type", "country")
_COUNT_FIELDS = ("min_bedrooms", "min_bathrooms", "min_accommodates")
_AMOUNT_FIELDS = ("min_price", "max_price", "min_rating")
_FLAG_FIELDS = ("superhost_only", "instant_bookable")


def compile_filters(raw_params: Optional[Mapping[str, Any]]) -> SearchFilter:
    """Build a SearchFilter from a raw parameter map; unknown keys are ignored."""
    if not raw_params:
        return SearchFilter()

    if raw_params.get("ids") is not None:
        return SearchFilter(ids=parse_ids(raw_params["ids"]))

    compiled = SearchFilter()
    for name in _STRING_FIELDS:
        setattr(compiled, name, _parse_text(raw_params.get(name)))
    for name in _COUNT_FIELDS:
        setattr(compiled, name, _parse_count(raw_params.get(name)))
    for name in _AMOUNT_FIELDS:
        setattr(compiled, name, _parse_amount(raw_params.get(name)))
    for name in _FLAG_FIELDS:
        setattr(compiled, name, _parse_flag(raw_params.get(name)))

    location = raw_params.get("location")
    if location is None:
        location = raw_params.get("market")
    compiled.location = _parse_text(location)
    return compiled


def parse_ids(value: Any) -> List[ListingId]:
    """Split an id list into ObjectIds, legacy numeric ids and plain strings."""
    if isinstance(value, str):
        items: Iterable[Any] = value.split(",")
    elif isinstance(value, (list, tuple, set)):
        items = value
    else:
        items = [value]

    ids: List[ListingId] = []
    for item in items:
        if item is None or isinstance(item, bool):
            continue
        if isinstance(item, ObjectId):
            ids.append(item)
            continue
        if isinstance(item, int) and item <= _MAX_INT64:
            ids.append(item)
            continue
        text = str(item).strip()
        if not text:
            continue
        ids.append(parse_listing_id(text))
    return ids


def parse_listing_id(text: str) -> ListingId:
    if _OBJECT_ID_RE.match(text):
        return ObjectId(text)
    if _DIGITS_RE.match(text) and int(text) <= _MAX_INT64:
        return int(text)
    return text


def _parse_text(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def _parse_count(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float):
        value = int(value) if value.is_integer() else None
    elif isinstance(value, str) and _DIGITS_RE.match(value.strip()):
        value = int(value.strip())
    if not isinstance(value, int) or value < 0 or value > _MAX_INT64:
        return None
    return value


def _parse_amount(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return None
    if not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if value < 0 or value > _MAX_INT64:
        return None
    return int(value) if float(value).is_integer() else float(value)


def _parse_flag(value: Any) -> Optional[bool]:
    # Query strings carry "true"; tool calls carry a JSON boolean.
    if value is True or value == "true":
        return True
    return None
