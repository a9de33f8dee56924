"""Derive UI-facing search metadata from a completed assistant turn.

Whether a search happened is decided from the tool-call trace first; the
textual ``search_performed: true`` marker the model is asked to emit is only a
fallback because the model does not always comply.
"""

import re
from typing import List, Optional

from .models import PropertyDetailsArgs, SearchMetadata, SearchRentalsArgs, ToolCallRecord
from .tools import DETAILS_TOOL, RETRIEVAL_TOOLS, SEARCH_TOOL

SEARCH_MARKER_RE = re.compile(r"\**\s*search[_ ]performed\s*:\s*\**\s*true", re.IGNORECASE)


def has_search_marker(text: Optional[str]) -> bool:
    return bool(text) and SEARCH_MARKER_RE.search(text) is not None


def search_performed(tool_calls: List[ToolCallRecord], final_text: Optional[str]) -> bool:
    if any(call.name in RETRIEVAL_TOOLS for call in tool_calls):
        return True
    return has_search_marker(final_text)


def extract_search_metadata(
    tool_calls: List[ToolCallRecord],
    final_text: Optional[str],
    user_message: str,
    result_ids: Optional[List[str]] = None,
) -> SearchMetadata:
    metadata = SearchMetadata(search_performed=search_performed(tool_calls, final_text))

    search_calls = [call for call in tool_calls if call.name == SEARCH_TOOL]
    if search_calls:
        # A turn may refine its search several times; the last call is what the user sees.
        last = search_calls[-1].arguments
        metadata.search_type = "rental_search"
        if isinstance(last, SearchRentalsArgs):
            metadata.search_query = last.query
            metadata.search_filters = dict(last.filters)
            metadata.search_limit = last.effective_limit
        else:
            metadata.search_query = user_message
            metadata.search_filters = {}
        if result_ids is not None:
            metadata.result_ids = list(result_ids)

    details_calls = [call for call in tool_calls if call.name == DETAILS_TOOL]
    if details_calls:
        metadata.property_details_requested = True
        metadata.property_ids = [
            call.arguments.property_id
            for call in details_calls
            if isinstance(call.arguments, PropertyDetailsArgs)
        ]
    return metadata
