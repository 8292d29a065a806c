"""
Shared fakes for the agent tests.

The model, the marketplace and the quota store are replaced by small scripted
objects so every test runs without network access.
"""

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional

import pytest

from booth_agent.concurrency import CancelToken
from booth_agent.models import Candidate, ConversationMessage, SearchPage
from booth_agent.quota import AbstractQuotaStore


class FakeChatModel:
    """Scripted stand-in for ChatModel.

    ``replies`` feeds complete(): a str is returned, an exception is raised and a
    coroutine function is awaited. ``stream_chunks`` feeds stream().
    """

    def __init__(self, replies: Optional[List[Any]] = None, stream_chunks: Optional[List[str]] = None):
        self.replies = list(replies or [])
        self.stream_chunks = list(stream_chunks or ["Here are ", "some picks."])
        self.stream_error: Optional[Exception] = None
        self.complete_calls: List[Dict[str, Any]] = []
        self.stream_calls: List[Dict[str, Any]] = []

    async def complete(self, system: str, user_text: str, image_url: Optional[str] = None) -> str:
        self.complete_calls.append({"system": system, "user_text": user_text, "image_url": image_url})
        if not self.replies:
            raise AssertionError("FakeChatModel ran out of scripted replies")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return await reply()
        return reply

    async def stream(self, system: str, user_text: str, image_url: Optional[str] = None):
        self.stream_calls.append({"system": system, "user_text": user_text, "image_url": image_url})
        for chunk in self.stream_chunks:
            yield chunk
        if self.stream_error is not None:
            raise self.stream_error

    def payload(self, index: int) -> Dict[str, Any]:
        """Decoded JSON payload of the index-th complete() call."""
        return json.loads(self.complete_calls[index]["user_text"])


class FakeSearch:
    """Stand-in for MarketplaceSearch; ``pages`` maps (keyword, page) to candidates."""

    def __init__(self, pages: Optional[Dict[Any, List[Candidate]]] = None, default: Optional[List[Candidate]] = None):
        self.pages = pages or {}
        self.default = default if default is not None else []
        self.calls: List[tuple] = []
        self.error: Optional[Exception] = None

    async def search(self, keyword: str, page: int = 1, token: Optional[CancelToken] = None) -> SearchPage:
        self.calls.append((keyword, page))
        if self.error is not None:
            raise self.error
        candidates = self.pages.get((keyword, page), self.default)
        return SearchPage(
            keyword=keyword,
            page=page,
            candidates=list(candidates),
            raw_count=len(candidates),
            has_next_page=len(candidates) >= 60,
            source="vector",
        )


class InMemoryQuotaStore(AbstractQuotaStore):
    """Atomic check-and-increment counters, mirroring the Postgres functions."""

    def __init__(self, session_limit: int = 3, daily_limit: int = 5, guest_limit: int = 3):
        self.session_limit = session_limit
        self.daily_limit = daily_limit
        self.guest_limit = guest_limit
        self.sessions: Dict[str, int] = {}
        self.daily: Dict[str, int] = {}
        self.guests: Dict[str, int] = {}
        self.calls = 0
        self._lock = asyncio.Lock()

    async def consume_turn(self, chat_id: str, token: str) -> Dict[str, Any]:
        async with self._lock:
            self.calls += 1
            session = self.sessions.get(chat_id, 0)
            daily = self.daily.get(token, 0)
            base = {"session_limit": self.session_limit, "daily_limit": self.daily_limit}
            if daily >= self.daily_limit:
                return {"allowed": False, "reason": "daily_limit", "session_turn_count": session, "daily_turn_count": daily, **base}
            if session >= self.session_limit:
                return {"allowed": False, "reason": "session_limit", "session_turn_count": session, "daily_turn_count": daily, **base}
            self.sessions[chat_id] = session + 1
            self.daily[token] = daily + 1
            return {"allowed": True, "session_turn_count": session + 1, "daily_turn_count": daily + 1, **base}

    async def consume_guest_turn(self, visitor_id: str) -> Dict[str, Any]:
        async with self._lock:
            self.calls += 1
            count = self.guests.get(visitor_id, 0)
            if count >= self.guest_limit:
                return {"allowed": False, "current_count": count, "limit_count": self.guest_limit}
            self.guests[visitor_id] = count + 1
            return {"allowed": True, "current_count": count + 1, "limit_count": self.guest_limit}


def make_candidates(count: int, prefix: str = "item") -> List[Candidate]:
    return [
        Candidate(
            id=f"{prefix}{i}",
            title=f"Asset {prefix}{i}",
            shop_name=f"Shop {i % 4}",
            price=f"{500 + i * 100} JPY",
            url=f"https://booth.pm/ja/items/{prefix}{i}",
            image_url=f"https://img.example/{prefix}{i}.png",
            description=f"Original description {i}",
            tags=["VRChat", f"tag{i}"],
        )
        for i in range(count)
    ]


def decision(action: str, **fields: Any) -> str:
    return json.dumps({"action": action, **fields}, ensure_ascii=False)


def select_ids(ids: List[str], done: bool = False) -> str:
    return decision(
        "select",
        selected=[{"id": i, "description": f"Picked {i}", "tags": ["pick"], "reason": "fits"} for i in ids],
        done=done,
    )


def user(text: str, image: Optional[str] = None) -> ConversationMessage:
    return ConversationMessage(role="user", text=text, image=image)


def assistant(text: str, items: Optional[List[Dict[str, Any]]] = None) -> ConversationMessage:
    return ConversationMessage(role="assistant", text=text, items=items or [])


async def hang_forever() -> str:
    await asyncio.Event().wait()
    return ""


@pytest.fixture
def cancel_token():
    return CancelToken()
