"""Turn quota gate.

Every chat request consumes one turn before any model or marketplace call. The
check and the increment happen in a single RPC on the quota store (Supabase
Postgres functions ``consume_turn`` for accounts and ``consume_guest_turn`` for
anonymous visitors), so concurrent requests cannot both slip past a limit.
"""

import logging
import re
from typing import Any, Dict, Optional

import httpx

from .config import QUOTA_TIMEOUT
from .models import Identity, QuotaDecision

logger = logging.getLogger(__name__)

_VISITOR_ID = re.compile(r"^[A-Za-z0-9_.:-]{1,128}$")


class QuotaStoreError(Exception):
    """The quota store could not be reached or answered with an error."""


class AbstractQuotaStore:
    """Interface for atomic check-and-increment quota stores."""
    async def consume_turn(self, chat_id: str, token: str) -> Dict[str, Any]:
        #Charge one turn to the signed-in account behind ``token``
        raise NotImplementedError

    async def consume_guest_turn(self, visitor_id: str) -> Dict[str, Any]:
        #Charge one turn to an anonymous device fingerprint
        raise NotImplementedError


class SupabaseQuotaStore(AbstractQuotaStore):
    """Calls the quota functions through Supabase's PostgREST RPC endpoint."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        url: str,
        anon_key: str,
        timeout: float = QUOTA_TIMEOUT,
    ) -> None:
        self._http = http
        self.url = url.rstrip("/")
        self.anon_key = anon_key
        self.timeout = timeout

    async def _rpc(self, function: str, params: Dict[str, Any], bearer: Optional[str]) -> Dict[str, Any]:
        try:
            res = await self._http.post(
                f"{self.url}/rest/v1/rpc/{function}",
                json=params,
                headers={
                    "apikey": self.anon_key,
                    "Authorization": f"Bearer {bearer or self.anon_key}",
                    # Ask PostgREST for a single row instead of an array.
                    "Accept": "application/vnd.pgrst.object+json",
                },
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            raise QuotaStoreError(f"{function} request failed: {e}") from e

        try:
            data: Any = res.json()
        except ValueError:
            data = None
        if res.status_code >= 400:
            message = data.get("message") if isinstance(data, dict) else None
            raise QuotaStoreError(message or f"{function} returned HTTP {res.status_code}")
        if isinstance(data, list):
            data = data[0] if data else None
        if not isinstance(data, dict):
            raise QuotaStoreError(f"{function} returned no row")
        return data

    async def consume_turn(self, chat_id: str, token: str) -> Dict[str, Any]:
        return await self._rpc("consume_turn", {"p_chat_id": chat_id}, token)

    async def consume_guest_turn(self, visitor_id: str) -> Dict[str, Any]:
        return await self._rpc("consume_guest_turn", {"p_visitor_id": visitor_id}, None)


def _int_or_none(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class TurnQuotaGate:
    """Admission control: one consume() per request, before any expensive work."""

    def __init__(self, store: AbstractQuotaStore) -> None:
        self.store = store

    async def consume(self, identity: Identity) -> QuotaDecision:
        if identity.authenticated:
            data = await self.store.consume_turn(identity.chat_id, identity.token or "")
            decision = QuotaDecision(
                allowed=bool(data.get("allowed")),
                reason=data.get("reason"),
                session_count=_int_or_none(data.get("session_turn_count")),
                daily_count=_int_or_none(data.get("daily_turn_count")),
                session_limit=_int_or_none(data.get("session_limit")),
                daily_limit=_int_or_none(data.get("daily_limit")),
            )
        else:
            visitor_id = (identity.visitor_id or "").strip()
            if not _VISITOR_ID.match(visitor_id):
                return QuotaDecision(allowed=False, reason="invalid_visitor_id")
            data = await self.store.consume_guest_turn(visitor_id)
            allowed = bool(data.get("allowed"))
            # Guests have a single counter, reported through the session fields.
            decision = QuotaDecision(
                allowed=allowed,
                reason=None if allowed else (data.get("reason") or "limit_reached"),
                session_count=_int_or_none(data.get("current_count")),
                session_limit=_int_or_none(data.get("limit_count")),
            )

        if not decision.allowed:
            logger.info("[Turns] denied chat=%s reason=%s", identity.chat_id, decision.reason)
        return decision


def quota_headers(decision: Optional[QuotaDecision]) -> Dict[str, str]:
    if decision is None:
        return {}
    fields = {
        "x-session-turn-count": decision.session_count,
        "x-daily-turn-count": decision.daily_count,
        "x-session-limit": decision.session_limit,
        "x-daily-limit": decision.daily_limit,
    }
    return {name: str(value) for name, value in fields.items() if value is not None}


def rejection_body(decision: QuotaDecision) -> Dict[str, Any]:
    body: Dict[str, Any] = {"error": "TURN_LIMIT", "reason": decision.reason}
    fields = {
        "session_turn_count": decision.session_count,
        "daily_turn_count": decision.daily_count,
        "session_limit": decision.session_limit,
        "daily_limit": decision.daily_limit,
    }
    body.update({name: value for name, value in fields.items() if value is not None})
    return body
