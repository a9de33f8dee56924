"""Shared fakes for rental_agent tests."""

import asyncio
import copy
import json
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest

from rental_agent.errors import UpstreamError
from rental_agent.search import RentalSearchService
from rental_agent.sessions import SessionStore
from rental_agent.store import AbstractEmbedder, AbstractRentalStore


def _get_path(doc: Dict[str, Any], path: str) -> Any:
    current: Any = doc
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def _set_path(doc: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    current = doc
    for part in parts[:-1]:
        current = current.setdefault(part, {})
    current[parts[-1]] = value


def _matches(doc: Dict[str, Any], query: Dict[str, Any]) -> bool:
    for key, expected in query.items():
        actual = _get_path(doc, key)
        if isinstance(expected, dict) and any(k.startswith("$") for k in expected):
            for op, operand in expected.items():
                if op == "$lt" and not (actual is not None and actual < operand):
                    return False
                if op == "$in" and actual not in operand:
                    return False
        elif actual != expected:
            return False
    return True


class FakeCursor:
    def __init__(self, rows: List[Dict[str, Any]]) -> None:
        self._rows = rows

    def limit(self, n: int) -> "FakeCursor":
        self._rows = self._rows[:n]
        return self

    async def to_list(self, length: Optional[int] = None) -> List[Dict[str, Any]]:
        return self._rows if length is None else self._rows[:length]


class FakeCollection:
    """In-memory stand-in for a motor collection.

    Each write yields to the event loop once before applying the whole update
    in one step, mirroring a single atomic document update on the server.
    """

    def __init__(self) -> None:
        self.docs: List[Dict[str, Any]] = []
        self.find_calls: List[Any] = []
        self.pipelines: List[Any] = []
        self.indexes: List[Any] = []
        self.update_calls = 0

    async def create_index(self, keys: Any, **kwargs: Any) -> str:
        self.indexes.append((keys, kwargs))
        return f"{keys}_1"

    async def update_one(self, query: Dict[str, Any], update: Dict[str, Any], upsert: bool = False):
        self.update_calls += 1
        await asyncio.sleep(0)
        doc = next((d for d in self.docs if _matches(d, query)), None)
        inserted = False
        if doc is None:
            if not upsert:
                return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)
            doc = copy.deepcopy(query)
            self.docs.append(doc)
            inserted = True
            for path, value in update.get("$setOnInsert", {}).items():
                _set_path(doc, path, value)
        for path, value in update.get("$set", {}).items():
            _set_path(doc, path, value)
        for path, amount in update.get("$inc", {}).items():
            _set_path(doc, path, (_get_path(doc, path) or 0) + amount)
        for path, value in update.get("$push", {}).items():
            items = _get_path(doc, path)
            if items is None:
                items = []
                _set_path(doc, path, items)
            if isinstance(value, dict) and "$each" in value:
                items.extend(copy.deepcopy(value["$each"]))
            else:
                items.append(copy.deepcopy(value))
        return SimpleNamespace(
            matched_count=0 if inserted else 1,
            modified_count=1,
            upserted_id="new" if inserted else None,
        )

    async def find_one(self, query: Dict[str, Any], projection: Optional[Dict[str, Any]] = None):
        self.find_calls.append((query, projection))
        doc = next((d for d in self.docs if _matches(d, query)), None)
        if doc is None:
            return None
        doc = copy.deepcopy(doc)
        for key, rule in (projection or {}).items():
            if isinstance(rule, dict) and "$slice" in rule and isinstance(doc.get(key), list):
                n = rule["$slice"]
                doc[key] = doc[key][n:] if n < 0 else doc[key][:n]
        return doc

    def find(self, query: Dict[str, Any], projection: Optional[Dict[str, Any]] = None) -> FakeCursor:
        self.find_calls.append((query, projection))
        return FakeCursor([copy.deepcopy(d) for d in self.docs if _matches(d, query)])

    async def delete_one(self, query: Dict[str, Any]):
        await asyncio.sleep(0)
        for i, doc in enumerate(self.docs):
            if _matches(doc, query):
                del self.docs[i]
                return SimpleNamespace(deleted_count=1)
        return SimpleNamespace(deleted_count=0)

    async def delete_many(self, query: Dict[str, Any]):
        await asyncio.sleep(0)
        kept = [d for d in self.docs if not _matches(d, query)]
        deleted = len(self.docs) - len(kept)
        self.docs = kept
        return SimpleNamespace(deleted_count=deleted)

    def aggregate(self, pipeline: List[Dict[str, Any]]) -> FakeCursor:
        self.pipelines.append(pipeline)
        group = pipeline[0].get("$group") if pipeline else None
        if not group or not self.docs:
            return FakeCursor([])
        row: Dict[str, Any] = {"_id": None}
        for name, rule in group.items():
            if name == "_id":
                continue
            op, operand = next(iter(rule.items()))
            values = [1 if operand == 1 else (_get_path(d, operand[1:]) or 0) for d in self.docs]
            row[name] = sum(values) if op == "$sum" else sum(values) / len(values)
        return FakeCursor([row])


class FakeRentalStore(AbstractRentalStore):
    def __init__(
        self,
        semantic_docs: Optional[List[Dict[str, Any]]] = None,
        lexical_docs: Optional[List[Dict[str, Any]]] = None,
        properties: Optional[Dict[str, Dict[str, Any]]] = None,
        saved: Optional[Dict[str, List[Dict[str, Any]]]] = None,
    ) -> None:
        self.semantic_docs = semantic_docs or []
        self.lexical_docs = lexical_docs or []
        self.properties = properties or {}
        self.saved = saved or {}
        self.vector_error: Optional[Exception] = None
        self.lexical_error: Optional[Exception] = None
        self.property_error: Optional[Exception] = None
        self.vector_calls: List[Dict[str, Any]] = []
        self.find_calls: List[Dict[str, Any]] = []
        self.lexical_cancelled = False
        self.lexical_delay = 0.0

    async def find_listings(self, query, limit):
        self.find_calls.append({"query": query, "limit": limit})
        try:
            if self.lexical_delay:
                await asyncio.sleep(self.lexical_delay)
        except asyncio.CancelledError:
            self.lexical_cancelled = True
            raise
        if self.lexical_error:
            raise self.lexical_error
        return [dict(d) for d in self.lexical_docs[:limit]]

    async def vector_search(self, embedding, metadata_filter, num_candidates, limit):
        self.vector_calls.append(
            {"embedding": embedding, "filter": metadata_filter, "num_candidates": num_candidates, "limit": limit}
        )
        if self.vector_error:
            raise self.vector_error
        return [dict(d) for d in self.semantic_docs[:limit]]

    async def find_property(self, property_id):
        if self.property_error:
            raise self.property_error
        doc = self.properties.get(property_id)
        return dict(doc) if doc else None

    async def find_saved_rentals(self, user_id):
        return self.saved.get(user_id)


class FakeEmbedder(AbstractEmbedder):
    def __init__(self, error: Optional[Exception] = None) -> None:
        self.error = error
        self.calls: List[str] = []

    async def embed(self, text):
        self.calls.append(text)
        if self.error:
            raise self.error
        return [0.1, 0.2, 0.3]


def listing(listing_id: str, name: str = "Listing", score: Optional[float] = None, **extra) -> Dict[str, Any]:
    doc: Dict[str, Any] = {
        "_id": listing_id,
        "name": name,
        "property_type": "Apartment",
        "price": 100,
        "address": {"market": "Porto", "country": "Portugal"},
        "review_scores": {"review_scores_rating": 90},
        "host": {"host_is_superhost": False},
        "description": f"{name} description",
    }
    if score is not None:
        doc["score"] = score
    doc.update(extra)
    return doc


def tool_call(call_id: str, name: str, arguments: Any) -> SimpleNamespace:
    if not isinstance(arguments, str):
        arguments = json.dumps(arguments)
    return SimpleNamespace(
        id=call_id,
        type="function",
        function=SimpleNamespace(name=name, arguments=arguments),
    )


def assistant_message(content: Optional[str] = None, tool_calls: Optional[List[Any]] = None) -> SimpleNamespace:
    return SimpleNamespace(role="assistant", content=content, tool_calls=tool_calls)


def _delta_chunk(content: Optional[str] = None, tool_calls: Optional[List[Any]] = None) -> SimpleNamespace:
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=content, tool_calls=tool_calls))])


def _stream_chunks(reply: SimpleNamespace) -> List[SimpleNamespace]:
    text = reply.content or ""
    chunks = [_delta_chunk(content=text[i:i + 8]) for i in range(0, len(text), 8)]
    for index, tc in enumerate(reply.tool_calls or []):
        arguments = tc.function.arguments
        half = len(arguments) // 2
        head = SimpleNamespace(name=tc.function.name, arguments=arguments[:half])
        tail = SimpleNamespace(name=None, arguments=arguments[half:])
        chunks.append(_delta_chunk(tool_calls=[SimpleNamespace(index=index, id=tc.id, function=head)]))
        chunks.append(_delta_chunk(tool_calls=[SimpleNamespace(index=index, id=None, function=tail)]))
    # Providers finish a stream with an empty usage chunk.
    chunks.append(SimpleNamespace(choices=[]))
    return chunks


async def _replay(chunks: List[SimpleNamespace]):
    for chunk in chunks:
        await asyncio.sleep(0)
        yield chunk


class FakeChatClient:
    """Scripted replacement for AsyncOpenAI: returns queued messages in order.

    With ``stream=True`` the queued message is replayed as deltas: content in
    small pieces, each tool call split across two chunks.
    """

    def __init__(self, replies: Optional[List[Any]] = None) -> None:
        self.replies = list(replies or [])
        self.requests: List[Dict[str, Any]] = []
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    async def _create(self, **kwargs):
        self.requests.append(copy.deepcopy(kwargs))
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if kwargs.get("stream"):
            return _replay(_stream_chunks(reply))
        return SimpleNamespace(choices=[SimpleNamespace(message=reply)])


@pytest.fixture
def conversations() -> FakeCollection:
    return FakeCollection()


@pytest.fixture
def session_store(conversations: FakeCollection) -> SessionStore:
    return SessionStore(conversations)


@pytest.fixture
def rental_store() -> FakeRentalStore:
    return FakeRentalStore(
        semantic_docs=[
            listing("a1", "Beach house", score=0.92),
            listing("a2", "Ocean loft", score=0.81),
        ],
        lexical_docs=[
            listing("a2", "Ocean loft"),
            listing("b1", "Porto flat"),
        ],
    )


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def search_service(rental_store: FakeRentalStore, embedder: FakeEmbedder) -> RentalSearchService:
    return RentalSearchService(rental_store, embedder)


@pytest.fixture
def failing_vector_error() -> UpstreamError:
    return UpstreamError("vector_index", "index offline")
