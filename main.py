"""Simple CLI entry point for the rental assistant."""

import asyncio
import logging

from rental_agent import create_agent
from rental_agent.clients import close_clients
from rental_agent.config import LOG_LEVEL
from rental_agent.sessions import new_session_id


async def main() -> None:
    logging.basicConfig(level=LOG_LEVEL, format="%(levelname)s %(name)s: %(message)s")
    agent = create_agent()
    await agent.sessions.ensure_indexes()
    session_id = new_session_id()
    print(f"Rental assistant is ready (session {session_id}). Type 'exit' or 'quit' to stop.")

    while True:
        try:
            user_input = input("You: ").strip()
        except (KeyboardInterrupt, EOFError):
            print("\nExiting.")
            break

        if not user_input:
            continue
        if user_input.lower() in {"exit", "quit"}:
            print("Goodbye.")
            break
        if user_input.lower() == "clear":
            await agent.delete_session(session_id)
            session_id = new_session_id()
            print(f"Started a new session ({session_id}).")
            continue

        outcome = await agent.chat(user_input, session_id=session_id)
        print(f"Agent: {outcome.message}\n")
        metadata = outcome.search_metadata
        if metadata.search_performed and metadata.result_ids:
            print(f"  [searched {metadata.search_query!r}: {len(metadata.result_ids)} results]\n")

    close_clients()
    print("Session ended.")


if __name__ == "__main__":
    asyncio.run(main())
