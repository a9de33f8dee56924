import json
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import timedelta
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from rental_agent import RentalChatAgent, create_agent
from rental_agent.clients import close_clients
from rental_agent.config import DEFAULT_SEARCH_LIMIT, HISTORY_LIMIT, LOG_LEVEL, SESSION_RETENTION_DAYS
from rental_agent.errors import RentalAgentError, ValidationError
from rental_agent.models import ChatOutcome, SearchOutcome

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

# Query parameters that steer the search itself rather than filtering it.
RESERVED_SEARCH_PARAMS = {"q", "query", "limit"}


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.agent = create_agent()
    await app.state.agent.sessions.ensure_indexes()
    yield
    close_clients()


app = FastAPI(title="Rental Agent API", lifespan=lifespan)

# Enable CORS for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, specify the exact origin
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class ChatRequest(BaseModel):
    message: str
    session_id: Optional[str] = None
    context: Optional[Dict[str, Any]] = None


class CleanupRequest(BaseModel):
    days_old: int = Field(default=SESSION_RETENTION_DAYS, ge=1, le=365)


def get_agent(request: Request) -> RentalChatAgent:
    return request.app.state.agent


def get_user_id(x_user_id: Optional[str] = Header(default=None)) -> Optional[str]:
    """Caller identity, set by the auth layer in front of this service. Absent means anonymous."""
    if x_user_id and x_user_id.strip():
        return x_user_id.strip()
    return None


def _status_for(outcome: Any) -> int:
    if outcome.error_kind == "validation":
        return 400
    if outcome.error_kind == "upstream":
        return 503 if outcome.retryable else 502
    return 500


def _search_payload(outcome: SearchOutcome) -> Dict[str, Any]:
    return {
        "success": outcome.success,
        "filters": outcome.filters,
        "count": len(outcome.results),
        "results": [asdict(r) for r in outcome.results],
    }


def _chat_payload(outcome: ChatOutcome) -> Dict[str, Any]:
    return {
        "success": outcome.success,
        "message": outcome.message,
        "session_id": outcome.session_id,
        "timestamp": outcome.timestamp.isoformat(),
        "context": {
            "tool_calls_made": outcome.tool_calls_made,
            "has_rental_results": outcome.search_metadata.search_performed,
            "search_metadata": outcome.search_metadata.to_dict(),
        },
    }


@app.post("/chat")
async def chat_endpoint(body: ChatRequest, request: Request, user_id: Optional[str] = Depends(get_user_id)):
    outcome = await get_agent(request).chat(
        body.message,
        session_id=body.session_id,
        user_id=user_id,
        context=body.context,
    )
    if not outcome.success:
        raise HTTPException(
            status_code=_status_for(outcome),
            detail={"message": outcome.message, "error": outcome.error, "session_id": outcome.session_id},
        )
    return _chat_payload(outcome)


def _sse(event: Dict[str, Any]) -> str:
    return f"data: {json.dumps(event, default=str)}\n\n"


@app.post("/chat/stream")
async def chat_stream_endpoint(body: ChatRequest, request: Request, user_id: Optional[str] = Depends(get_user_id)):
    """Server-sent events: a session event, text deltas, then one done or error event."""
    events = get_agent(request).stream_chat(
        body.message,
        session_id=body.session_id,
        user_id=user_id,
        context=body.context,
    )

    async def generate():
        async for event in events:
            yield _sse(event)

    return StreamingResponse(
        generate(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@app.post("/chat/cleanup")
async def cleanup_endpoint(body: CleanupRequest, request: Request):
    try:
        deleted = await get_agent(request).sessions.purge_inactive(timedelta(days=body.days_old))
    except RentalAgentError as e:
        logger.error("Cleanup failed: %s", e)
        raise HTTPException(status_code=502, detail="Conversation store is unavailable.")
    return {"success": True, "deleted_count": deleted, "days_old": body.days_old}


@app.get("/search")
async def search_endpoint(request: Request, q: str = "", limit: int = DEFAULT_SEARCH_LIMIT):
    raw_params = {
        key: value
        for key, value in request.query_params.items()
        if key not in RESERVED_SEARCH_PARAMS
    }
    query_text = q or request.query_params.get("query", "")
    outcome = await get_agent(request).search_service.search(query_text, raw_params, limit)
    if not outcome.success:
        raise HTTPException(
            status_code=_status_for(outcome),
            detail={"message": outcome.message, "error": outcome.error},
        )
    return _search_payload(outcome)


@app.get("/chat/history/{session_id}")
async def history_endpoint(session_id: str, request: Request, limit: int = HISTORY_LIMIT):
    try:
        messages = await get_agent(request).get_history(session_id, limit)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RentalAgentError as e:
        logger.error("History lookup failed for %s: %s", session_id, e)
        raise HTTPException(status_code=502, detail="Conversation history is unavailable.")
    return {
        "session_id": session_id,
        "messages": [
            {
                "id": m.id,
                "role": m.role,
                "content": m.content,
                "timestamp": m.timestamp.isoformat() if m.timestamp else None,
                "metadata": m.metadata,
            }
            for m in messages
        ],
    }


@app.delete("/chat/history/{session_id}")
async def delete_history_endpoint(session_id: str, request: Request):
    try:
        deleted = await get_agent(request).delete_session(session_id)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RentalAgentError as e:
        logger.error("Delete failed for %s: %s", session_id, e)
        raise HTTPException(status_code=502, detail="Conversation store is unavailable.")
    if not deleted:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {"success": True, "session_id": session_id}


@app.get("/chat/stats")
async def stats_endpoint(request: Request):
    try:
        return await get_agent(request).sessions.stats()
    except RentalAgentError as e:
        logger.error("Stats lookup failed: %s", e)
        raise HTTPException(status_code=502, detail="Conversation store is unavailable.")


@app.get("/")
async def root():
    return {"status": "Rental Agent API is running", "docs": "/docs"}


@app.get("/health")
async def health_check():
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
