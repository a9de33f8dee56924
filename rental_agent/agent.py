"""Rental assistant driven by OpenAI tool calling.

Turn flow:
1. The model sees the system prompt, recent session history and the enriched user turn
2. Tool calls it emits (searchRentals, getPropertyDetails, getSavedRentals) are parsed,
   executed and answered, for up to MAX_TOOL_ROUNDS rounds
3. The final answer plus the tool-call trace become SearchMetadata for the UI
4. User and assistant messages are appended to the session together, only after the turn ends

Entry points: RentalChatAgent.chat(), stream_chat(), get_history(), delete_session()
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Tuple

from openai import APITimeoutError, AsyncOpenAI, OpenAIError

from .config import HISTORY_LIMIT, LLM_TIMEOUT_SECONDS, MAX_TOOL_ROUNDS, MODEL_NAME
from .errors import RentalAgentError, UpstreamError, ValidationError
from .metadata import extract_search_metadata
from .models import ChatOutcome, Message, SearchMetadata, ToolCallRecord
from .search import RentalSearchService
from .sessions import SessionStore, new_session_id, validate_session_id
from .store import AbstractRentalStore
from .tools import ToolExecutor, TurnContext, parse_tool_call, tools
from .utils import enrich_message, message_to_dict

logger = logging.getLogger(__name__)

FALLBACK_REPLY = "I'm having trouble processing your request right now. Please try again."

SYSTEM_PROMPT = (
    "You are an AI rental assistant that helps users find perfect rental properties. "
    "You have access to a database of rental listings with descriptions, amenities, "
    "locations, pricing, host details and review scores.\n\n"
    "Available markets (use these exact names in the 'location' filter): Istanbul, Montreal, "
    "Barcelona, Hong Kong, Sydney, New York, Rio De Janeiro, Porto, Oahu, Maui, "
    "The Big Island, Kauai.\n\n"
    "Location mapping:\n"
    "- 'Manhattan', 'NYC' or 'New York City' means location 'New York' (not country)\n"
    "- 'Rio' or 'Brazil' means location 'Rio De Janeiro'\n"
    "- 'Hawaii' without an island means location 'Oahu'\n"
    "- Use 'country' only when the user filters by country explicitly\n\n"
    "Guidelines:\n"
    "- Use searchRentals when the user asks for properties or refines their needs\n"
    "- Use getPropertyDetails for questions about one specific listing\n"
    "- Use getSavedRentals (includeDetails=true for comparisons) when the user asks about "
    "saved, favorite or bookmarked rentals; anonymous users must log in first\n"
    "- Explain why each recommended property fits, with price, location, amenities and rating\n"
    "- Present multiple properties in order of relevance and use markdown for readability\n"
    "- Ask a short clarifying question when the request is ambiguous\n"
    "- When the user is viewing a property (given in the message), give targeted advice about it\n\n"
    "IMPORTANT: When you perform a property search using the searchRentals tool, you MUST "
    'include the metadata "search_performed: true" in your response.'
)


@dataclass
class TurnResult:
    text: str
    tool_calls: List[ToolCallRecord]
    context: TurnContext


# Streamed completions arrive as deltas; these hold the assembled message with
# the same attribute names as a non-streamed OpenAI message.

@dataclass
class _FunctionCall:
    name: str = ""
    arguments: str = ""


@dataclass
class _ToolCall:
    id: str = ""
    type: str = "function"
    function: _FunctionCall = field(default_factory=_FunctionCall)


@dataclass
class _AssembledMessage:
    content: Optional[str]
    tool_calls: Optional[List[_ToolCall]]
    role: str = "assistant"


class RentalChatAgent:
    """Tool-calling orchestrator with MongoDB-backed session memory."""

    def __init__(
        self,
        search_service: RentalSearchService,
        session_store: SessionStore,
        store: Optional[AbstractRentalStore] = None,
        llm_client: Optional[AsyncOpenAI] = None,
        model: str = MODEL_NAME,
        max_tool_rounds: int = MAX_TOOL_ROUNDS,
        timeout: float = LLM_TIMEOUT_SECONDS,
    ) -> None:
        if llm_client is None:
            from .clients import get_openai_client

            llm_client = get_openai_client()
        self._llm = llm_client
        self.search_service = search_service
        self.sessions = session_store
        self.tool_executor = ToolExecutor(search_service, store or search_service.store)
        self.model = model
        self.max_tool_rounds = max_tool_rounds
        self.timeout = timeout

    def _llm_error(self, e: Exception) -> UpstreamError:
        if isinstance(e, asyncio.TimeoutError):
            return UpstreamError("language_model", f"timed out after {self.timeout}s", retryable=True)
        if isinstance(e, APITimeoutError):
            return UpstreamError("language_model", str(e), retryable=True)
        return UpstreamError("language_model", str(e))

    async def _complete(self, messages: List[Dict[str, Any]], tool_choice: str = "auto") -> Any:
        try:
            response = await asyncio.wait_for(
                self._llm.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    tools=tools,
                    tool_choice=tool_choice,
                ),
                timeout=self.timeout,
            )
        except (asyncio.TimeoutError, OpenAIError) as e:
            raise self._llm_error(e) from e
        if not response.choices:
            raise UpstreamError("language_model", "response contained no choices")
        return response.choices[0].message

    async def _stream_completion(
        self, messages: List[Dict[str, Any]], tool_choice: str = "auto"
    ) -> AsyncIterator[Tuple[str, Any]]:
        """Yield ("text", delta) as content streams in, then ("message", assembled)."""
        content: List[str] = []
        calls: Dict[int, _ToolCall] = {}
        try:
            stream = await asyncio.wait_for(
                self._llm.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    tools=tools,
                    tool_choice=tool_choice,
                    stream=True,
                ),
                timeout=self.timeout,
            )
            chunks = stream.__aiter__()
            while True:
                # The timeout applies per chunk so a stalled stream still fails.
                try:
                    chunk = await asyncio.wait_for(chunks.__anext__(), timeout=self.timeout)
                except StopAsyncIteration:
                    break
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                if delta.content:
                    content.append(delta.content)
                    yield "text", delta.content
                for part in delta.tool_calls or []:
                    call = calls.setdefault(part.index, _ToolCall())
                    if part.id:
                        call.id = part.id
                    if part.function is not None:
                        call.function.name += part.function.name or ""
                        call.function.arguments += part.function.arguments or ""
        except (asyncio.TimeoutError, OpenAIError) as e:
            raise self._llm_error(e) from e

        tool_calls = [calls[i] for i in sorted(calls)] or None
        yield "message", _AssembledMessage(content="".join(content) or None, tool_calls=tool_calls)

    async def _ask(
        self, messages: List[Dict[str, Any]], tool_choice: str, stream: bool
    ) -> AsyncIterator[Tuple[str, Any]]:
        if stream:
            async for event in self._stream_completion(messages, tool_choice):
                yield event
        else:
            yield "message", await self._complete(messages, tool_choice)

    async def _turn_events(
        self, user_text: str, history: List[Message], context: TurnContext, stream: bool
    ) -> AsyncIterator[Tuple[str, Any]]:
        working_messages: List[Dict[str, Any]] = [
            {"role": "system", "content": SYSTEM_PROMPT},
            *({"role": m.role, "content": m.content} for m in history),
            {"role": "user", "content": user_text},
        ]
        tool_calls: List[ToolCallRecord] = []

        final_text: Optional[str] = None
        rounds = 0
        while final_text is None:
            # Once the tool rounds are used up, force a plain answer from what was gathered.
            tool_choice = "auto" if rounds < self.max_tool_rounds else "none"
            rounds += 1
            msg = None
            async for kind, value in self._ask(working_messages, tool_choice, stream):
                if kind == "message":
                    msg = value
                else:
                    yield kind, value
            if not msg.tool_calls or tool_choice == "none":
                final_text = msg.content or ""
                break

            working_messages.append(message_to_dict(msg))
            for tc in msg.tool_calls:
                record = parse_tool_call(tc.function.name, tc.function.arguments, call_id=tc.id)
                tool_calls.append(record)
                output = await self.tool_executor.execute(record, context)
                working_messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": tc.id,
                        "content": output,
                    }
                )

        yield "turn", TurnResult(text=final_text, tool_calls=tool_calls, context=context)

    async def run_turn(self, user_text: str, history: List[Message], context: TurnContext) -> TurnResult:
        """Drive the model through one turn; history is read, never modified."""
        result = None
        async for kind, value in self._turn_events(user_text, history, context, stream=False):
            if kind == "turn":
                result = value
        return result

    def _check_input(self, message: Any, session_id: Optional[str]) -> str:
        if not isinstance(message, str) or not message.strip():
            raise ValidationError("message must be a non-empty string")
        return validate_session_id(session_id) if session_id else new_session_id()

    def _invalid(self, error: ValidationError, session_id: Any) -> ChatOutcome:
        return ChatOutcome(
            success=False,
            message=str(error),
            session_id=session_id if isinstance(session_id, str) else "",
            timestamp=datetime.now(timezone.utc),
            error=str(error),
            error_kind="validation",
        )

    async def chat(
        self,
        message: str,
        session_id: Optional[str] = None,
        user_id: Optional[str] = None,
        context: Optional[Mapping[str, Any]] = None,
    ) -> ChatOutcome:
        """Handle one turn of conversation and return the assistant reply."""
        try:
            session_id = self._check_input(message, session_id)
        except ValidationError as e:
            return self._invalid(e, session_id)

        turn_context = TurnContext(session_id=session_id, user_id=user_id)
        user_metadata: Dict[str, Any] = {"context": dict(context)} if context else {}
        try:
            history = await self.sessions.get_history(session_id, HISTORY_LIMIT)
            turn = await self.run_turn(enrich_message(message, context), history, turn_context)
        except UpstreamError as e:
            logger.error("Chat turn failed in %s for session %s: %s", e.component, session_id, e)
            return await self._record_failure(
                session_id, user_id, message, user_metadata, str(e), e.component, e.retryable
            )
        # Catch-all for unexpected errors
        except Exception as e:
            logger.exception("Unexpected error in chat for session %s", session_id)
            return await self._record_failure(session_id, user_id, message, user_metadata, str(e), None, False)

        return await self._persist_turn(session_id, user_id, message, user_metadata, turn)

    async def stream_chat(
        self,
        message: str,
        session_id: Optional[str] = None,
        user_id: Optional[str] = None,
        context: Optional[Mapping[str, Any]] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        """Like chat(), but yields reply text as it is generated.

        Events: {"type": "session"} first, then {"type": "text"} deltas, and
        finally one {"type": "done"} or {"type": "error"}.
        """
        try:
            session_id = self._check_input(message, session_id)
        except ValidationError as e:
            outcome = self._invalid(e, session_id)
            yield _outcome_event(outcome)
            return

        yield {"type": "session", "session_id": session_id}
        turn_context = TurnContext(session_id=session_id, user_id=user_id)
        user_metadata: Dict[str, Any] = {"context": dict(context)} if context else {}
        turn: Optional[TurnResult] = None
        try:
            history = await self.sessions.get_history(session_id, HISTORY_LIMIT)
            events = self._turn_events(enrich_message(message, context), history, turn_context, stream=True)
            async for kind, value in events:
                if kind == "turn":
                    turn = value
                else:
                    yield {"type": "text", "content": value}
        except UpstreamError as e:
            logger.error("Streamed turn failed in %s for session %s: %s", e.component, session_id, e)
            outcome = await self._record_failure(
                session_id, user_id, message, user_metadata, str(e), e.component, e.retryable
            )
            yield _outcome_event(outcome)
            return
        except Exception as e:
            logger.exception("Unexpected error in streamed chat for session %s", session_id)
            outcome = await self._record_failure(session_id, user_id, message, user_metadata, str(e), None, False)
            yield _outcome_event(outcome)
            return

        outcome = await self._persist_turn(session_id, user_id, message, user_metadata, turn)
        yield _outcome_event(outcome)

    async def _persist_turn(
        self,
        session_id: str,
        user_id: Optional[str],
        message: str,
        user_metadata: Dict[str, Any],
        turn: TurnResult,
    ) -> ChatOutcome:
        search_metadata = extract_search_metadata(
            turn.tool_calls, turn.text, message, turn.context.last_result_ids
        )
        logger.info(
            "Turn complete for session %s: %d tool calls, search_performed=%s",
            session_id, len(turn.tool_calls), search_metadata.search_performed,
        )

        try:
            await self.sessions.append_messages(
                session_id,
                [
                    ("user", message, user_metadata),
                    (
                        "assistant",
                        turn.text,
                        {
                            "tool_calls_made": len(turn.tool_calls),
                            "has_rental_results": search_metadata.search_performed,
                            "search_metadata": search_metadata.to_dict(),
                        },
                    ),
                ],
                user_id,
            )
            await self.sessions.update_metadata(
                session_id,
                {
                    "last_user_message": message,
                    "last_assistant_response": turn.text,
                    "tool_calls_in_session": len(turn.tool_calls),
                    "last_search_metadata": search_metadata.to_dict(),
                    "is_authenticated": user_id is not None,
                    "user_id": user_id,
                },
            )
        except RentalAgentError as e:
            # The answer exists; the caller still gets it even if persisting failed.
            logger.error("Failed to persist turn for session %s: %s", session_id, e)

        return ChatOutcome(
            success=True,
            message=turn.text,
            session_id=session_id,
            timestamp=datetime.now(timezone.utc),
            search_metadata=search_metadata,
            tool_calls_made=len(turn.tool_calls),
        )

    async def _record_failure(
        self,
        session_id: str,
        user_id: Optional[str],
        message: str,
        user_metadata: Dict[str, Any],
        error: str,
        component: Optional[str],
        retryable: bool,
    ) -> ChatOutcome:
        """Keep the conversation continuous by storing the turn with an error-flagged reply."""
        try:
            await self.sessions.append_messages(
                session_id,
                [
                    ("user", message, user_metadata),
                    (
                        "assistant",
                        FALLBACK_REPLY,
                        {"error": True, "error_details": error, "failed_component": component},
                    ),
                ],
                user_id,
            )
        except RentalAgentError as log_error:
            logger.error("Failed to log error to conversation %s: %s", session_id, log_error)

        return ChatOutcome(
            success=False,
            message=FALLBACK_REPLY,
            session_id=session_id,
            timestamp=datetime.now(timezone.utc),
            search_metadata=SearchMetadata(),
            error=error,
            error_kind="upstream" if component else "internal",
            failed_component=component,
            retryable=retryable,
        )

    async def get_history(self, session_id: str, limit: int = HISTORY_LIMIT) -> List[Message]:
        return await self.sessions.get_history(session_id, limit)

    async def delete_session(self, session_id: str) -> bool:
        return await self.sessions.delete_session(session_id)


def _outcome_event(outcome: ChatOutcome) -> Dict[str, Any]:
    if outcome.success:
        return {
            "type": "done",
            "message": outcome.message,
            "session_id": outcome.session_id,
            "tool_calls_made": outcome.tool_calls_made,
            "search_metadata": outcome.search_metadata.to_dict(),
        }
    return {
        "type": "error",
        "message": outcome.message,
        "session_id": outcome.session_id,
        "error": outcome.error,
        "error_kind": outcome.error_kind,
        "retryable": outcome.retryable,
    }
