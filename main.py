"""Simple CLI client for the Booth agent server."""

import asyncio
import os
import sys
import uuid
from typing import Any, Dict, List

import httpx

from booth_agent.streaming import StreamParser
from booth_agent.utils import extract_items, strip_items_block

SERVER_URL = os.getenv("BOOTH_AGENT_URL", "http://127.0.0.1:8000")


async def send(client: httpx.AsyncClient, history: List[Dict[str, Any]], chat_id: str, visitor_id: str) -> str:
    """Post the history, print status and body as they arrive, return the full body."""
    parser = StreamParser()
    body: List[str] = []
    payload = {"messages": history, "chat_id": chat_id, "language": os.getenv("BOOTH_AGENT_LANGUAGE", "zh")}

    async with client.stream("POST", f"{SERVER_URL}/chat", json=payload, headers={"x-visitor-id": visitor_id}) as res:
        if res.status_code != 200:
            await res.aread()
            print(f"[error {res.status_code}] {res.text}")
            return ""
        async for chunk in res.aiter_bytes():
            for event in parser.feed(chunk):
                if event.kind == "status":
                    sys.stdout.write(f"\r\033[K... {event.text}")
                else:
                    # The first body bytes are whitespace padding.
                    text = event.text if body else event.text.lstrip()
                    if text:
                        if not body:
                            sys.stdout.write("\r\033[KAgent: ")
                        body.append(text)
                        sys.stdout.write(text)
                sys.stdout.flush()
    for event in parser.close():
        if event.kind == "body":
            body.append(event.text)
    print("\n")
    return "".join(body).strip()


async def main() -> None:
    history: List[Dict[str, Any]] = []
    chat_id = str(uuid.uuid4())
    visitor_id = os.getenv("BOOTH_AGENT_VISITOR_ID") or uuid.uuid4().hex
    print("Booth assistant is ready. Type 'exit' or 'quit' to stop.")

    async with httpx.AsyncClient(timeout=httpx.Timeout(180.0, connect=10.0)) as client:
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
                history.clear()
                chat_id = str(uuid.uuid4())
                continue

            history.append({"role": "user", "text": user_input})
            try:
                reply = await send(client, history, chat_id, visitor_id)
            except httpx.HTTPError as e:
                print(f"Request failed: {e}")
                history.pop()
                continue
            if not reply:
                history.pop()
                continue
            # Keep the shown items so the server never recommends them again.
            history.append({"role": "model", "text": strip_items_block(reply), "items": extract_items(reply) or []})

    print("Session ended.")


if __name__ == "__main__":
    asyncio.run(main())
