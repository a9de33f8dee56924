"""Conversation memory backed by a MongoDB collection.

Collection schema (``conversations``)::

    {
        "session_id": str,
        "owner_user_id": str | None,
        "is_authenticated": bool,
        "messages": [{"id", "role", "content", "timestamp", "metadata"}, ...],
        "created_at": datetime,
        "updated_at": datetime,
        "metadata": {"total_messages": int, "last_activity": datetime, "user_type": str, ...}
    }

Every write is a single-document update, so concurrent appends to the same
session rely on MongoDB's atomic $push/$inc rather than an in-process lock.
"""

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from bson import ObjectId
from pymongo.errors import DuplicateKeyError, PyMongoError

from .config import HISTORY_LIMIT, MAX_HISTORY_LIMIT, SESSION_RETENTION_DAYS
from .errors import UpstreamError, ValidationError
from .models import ConversationSession, Message

logger = logging.getLogger(__name__)

ROLES = ("user", "assistant")
SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,128}$")
RESERVED_METADATA_KEYS = {"total_messages"}


def validate_session_id(session_id: Any) -> str:
    if not isinstance(session_id, str) or not SESSION_ID_RE.match(session_id):
        raise ValidationError("session id must be 1-128 letters, digits, '-' or '_'")
    return session_id


def new_session_id() -> str:
    return str(ObjectId())


class SessionStore:
    def __init__(self, collection: Any) -> None:
        self._collection = collection

    async def ensure_indexes(self) -> None:
        """Create the indexes the store relies on. Safe to call on every startup."""
        try:
            # Concurrent first writes to a new session must collide instead of
            # inserting two documents for the same session id.
            await self._collection.create_index("session_id", unique=True)
            await self._collection.create_index("metadata.last_activity")
        except PyMongoError as e:
            raise UpstreamError("document_store", str(e)) from e

    async def append_message(
        self,
        session_id: str,
        role: str,
        content: str,
        metadata: Optional[Mapping[str, Any]] = None,
        owner_user_id: Optional[str] = None,
    ) -> str:
        """Append a message, creating the session on first use. Returns the message id."""
        ids = await self.append_messages(session_id, [(role, content, metadata)], owner_user_id)
        return ids[0]

    async def append_messages(
        self,
        session_id: str,
        entries: Sequence[Tuple[str, str, Optional[Mapping[str, Any]]]],
        owner_user_id: Optional[str] = None,
    ) -> List[str]:
        """Append ``(role, content, metadata)`` entries in order with one update.

        A user/assistant exchange written this way stays adjacent even when
        other turns write to the same session concurrently.
        """
        validate_session_id(session_id)
        if not entries:
            raise ValidationError("at least one message is required")
        now = datetime.now(timezone.utc)
        messages: List[Message] = []
        for role, content, metadata in entries:
            if role not in ROLES:
                raise ValidationError(f"role must be one of {ROLES}, got {role!r}")
            if not isinstance(content, str):
                raise ValidationError("message content must be a string")
            messages.append(
                Message(
                    id=str(ObjectId()),
                    role=role,
                    content=content,
                    timestamp=now,
                    metadata={
                        **(metadata or {}),
                        "user_id": owner_user_id,
                        "is_authenticated": owner_user_id is not None,
                    },
                )
            )

        update = {
            "$push": {"messages": {"$each": [m.to_document() for m in messages]}},
            "$inc": {"metadata.total_messages": len(messages)},
            "$set": {"updated_at": now, "metadata.last_activity": now},
            "$setOnInsert": {
                "created_at": now,
                "owner_user_id": owner_user_id,
                "is_authenticated": owner_user_id is not None,
                "metadata.user_type": "authenticated" if owner_user_id else "anonymous",
            },
        }
        await self._upsert(session_id, update)
        return [m.id for m in messages]

    async def _upsert(self, session_id: str, update: Dict[str, Any]) -> None:
        for attempt in (1, 2):
            try:
                await self._collection.update_one({"session_id": session_id}, update, upsert=True)
                return
            except DuplicateKeyError as e:
                # Another writer created the session between our match and insert;
                # the retry matches that document instead of inserting.
                if attempt == 2:
                    raise UpstreamError("document_store", str(e)) from e
                logger.info("Session %s was created concurrently, retrying append", session_id)
            except PyMongoError as e:
                raise UpstreamError("document_store", str(e)) from e

    async def get_history(self, session_id: str, limit: int = HISTORY_LIMIT) -> List[Message]:
        """Return the last ``limit`` messages, oldest first."""
        validate_session_id(session_id)
        if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= MAX_HISTORY_LIMIT:
            raise ValidationError(f"history limit must be between 1 and {MAX_HISTORY_LIMIT}")
        try:
            doc = await self._collection.find_one(
                {"session_id": session_id},
                {"messages": {"$slice": -limit}, "metadata": 1},
            )
        except PyMongoError as e:
            raise UpstreamError("document_store", str(e)) from e
        if doc is None:
            return []
        return [Message.from_document(m) for m in doc.get("messages") or []]

    async def get_session(self, session_id: str) -> Optional[ConversationSession]:
        validate_session_id(session_id)
        try:
            doc = await self._collection.find_one({"session_id": session_id})
        except PyMongoError as e:
            raise UpstreamError("document_store", str(e)) from e
        return ConversationSession.from_document(doc) if doc else None

    async def update_metadata(self, session_id: str, patch: Mapping[str, Any]) -> bool:
        """Shallow-merge ``patch`` into the session metadata. Messages are untouched."""
        validate_session_id(session_id)
        fields: Dict[str, Any] = {}
        for key, value in patch.items():
            if not isinstance(key, str) or not key or "." in key or key.startswith("$"):
                raise ValidationError(f"invalid metadata key {key!r}")
            if key in RESERVED_METADATA_KEYS:
                raise ValidationError(f"metadata key {key!r} is managed by the store")
            fields[f"metadata.{key}"] = value

        now = datetime.now(timezone.utc)
        fields["metadata.last_activity"] = now
        fields["updated_at"] = now
        try:
            result = await self._collection.update_one({"session_id": session_id}, {"$set": fields})
        except PyMongoError as e:
            raise UpstreamError("document_store", str(e)) from e
        return result.matched_count > 0

    async def delete_session(self, session_id: str) -> bool:
        validate_session_id(session_id)
        try:
            result = await self._collection.delete_one({"session_id": session_id})
        except PyMongoError as e:
            raise UpstreamError("document_store", str(e)) from e
        return result.deleted_count > 0

    async def purge_inactive(self, older_than: timedelta = timedelta(days=SESSION_RETENTION_DAYS)) -> int:
        """Delete sessions whose last activity is older than ``older_than``."""
        cutoff = datetime.now(timezone.utc) - older_than
        try:
            result = await self._collection.delete_many({"metadata.last_activity": {"$lt": cutoff}})
        except PyMongoError as e:
            raise UpstreamError("document_store", str(e)) from e
        logger.info("Purged %d sessions inactive since %s", result.deleted_count, cutoff.isoformat())
        return result.deleted_count

    async def stats(self) -> Dict[str, Any]:
        pipeline = [
            {
                "$group": {
                    "_id": None,
                    "total_sessions": {"$sum": 1},
                    "total_messages": {"$sum": "$metadata.total_messages"},
                    "avg_messages_per_session": {"$avg": "$metadata.total_messages"},
                }
            }
        ]
        try:
            rows = await self._collection.aggregate(pipeline).to_list(length=1)
        except PyMongoError as e:
            raise UpstreamError("document_store", str(e)) from e
        if not rows:
            return {"total_sessions": 0, "total_messages": 0, "avg_messages_per_session": 0}
        row = rows[0]
        return {
            "total_sessions": row.get("total_sessions", 0),
            "total_messages": row.get("total_messages", 0),
            "avg_messages_per_session": row.get("avg_messages_per_session") or 0,
        }
