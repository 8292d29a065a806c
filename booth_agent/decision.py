"""Decision engine: asks the model for the next step and turns its answer into a typed decision.

The model sees the recent conversation, the active instruction, what has been
tried and picked so far and, after a fetch, a compacted candidate list. It must
answer with one strict-JSON object, one of:

    {"action": "reply", "reply": "..."}
    {"action": "search", "keyword": "...", "summary": "...", "page": 1}
    {"action": "select", "selected": [{"id": "...", "description": "...", "tags": [], "reason": "..."}], "done": true}

Anything else is replaced by a safe Reply. Entry point: DecisionEngine.decide()
"""

import json
import logging
from typing import Any, Dict, List, Optional, Set

from .concurrency import CancelToken, RetryExhausted, retry_with_timeout
from .config import (
    CONVERSATION_TURNS,
    DECISION_ATTEMPTS,
    DECISION_TIMEOUT,
    ID_LIST_CAP,
    MAX_AGENT_CANDIDATES,
    MAX_PICK,
    NEED_MIN,
)
from .llm import ChatModel
from .models import AgentDecision, Candidate, ConversationMessage, LoopState, Pick, Reply, Search, SearchPage, Select
from .utils import (
    build_recent_conversation,
    current_turn_has_image,
    extract_keyword_hint,
    extract_last_user_image,
    extract_user_instruction,
    language_code,
    language_name,
    normalize_tags,
    safe_json_parse,
)

logger = logging.getLogger(__name__)

FALLBACK_TEXTS = {
    "unavailable": {
        "zh": "抱歉，我刚才努力思考了，但还是没能得到结果，可能是网络不太通畅，我们稍后再试好不好？",
        "en": "Sorry, I tried hard but couldn't come up with an answer just now. The connection may be unstable, please try again in a moment.",
        "ja": "ごめんなさい、うまく考えがまとまりませんでした。通信が不安定かもしれません。少し時間をおいてもう一度お試しください。",
    },
    "invalid": {
        "zh": "我刚才没组织好语言，请再给我一次机会吧！",
        "en": "I got a bit tangled up there. Could you give me another try?",
        "ja": "うまく言葉にできませんでした。もう一度お願いできますか？",
    },
    "empty_reply": {
        "zh": "你可以告诉我想找的 Booth 资产类型与条件（例如衣装、发型、道具、风格、预算等），我来帮你筛选。",
        "en": "Tell me what kind of Booth asset you're after (outfit, hair, props, style, budget...) and I'll look for it.",
        "ja": "探したい Booth アセットの種類や条件（衣装・髪型・小物・スタイル・予算など）を教えてください。",
    },
    "summary": {
        "zh": "用户希望找到匹配条件的 VRChat 资产。",
        "en": "The user wants VRChat assets matching their request.",
        "ja": "ユーザーは条件に合う VRChat アセットを探しています。",
    },
}


def fallback_text(kind: str, language: Optional[str]) -> str:
    return FALLBACK_TEXTS[kind][language_code(language)]


def build_system_prompt(language: Optional[str]) -> str:
    lang = language_name(language)
    return (
        "You are a friendly assistant that finds VRChat assets on Booth (booth.pm) for the user. "
        f"The user's language preference is {lang}; write reply, summary, description and reason in {lang}.\n"
        "Decide the next step from the full conversation context:\n"
        "- action=reply: answer directly (small talk, thanks, how-to questions, anything that is not a product search).\n"
        "- action=search: produce a Japanese Booth search keyword and a page number, plus a short summary of the need.\n"
        "- action=select: when candidates are provided, pick items from them.\n\n"
        "Rules:\n"
        "1) Output strict JSON only. No Markdown, no explanations.\n"
        "2) keyword must be Japanese (spaces allowed); page is a positive integer.\n"
        "3) If the user is continuing (next page, more, different keyword), use the hint and the context.\n"
        "4) When selecting, only pick ids from candidates, never ids in exclude_ids or picked_ids, at most max_pick items.\n"
        "5) When unsure, prefer search so a search intent is never missed.\n\n"
        "Output exactly one of:\n"
        '- {"action":"reply","reply":"..."}\n'
        '- {"action":"search","keyword":"...","summary":"...","page":1}\n'
        '- {"action":"select","selected":[{"id":"...","description":"...","tags":["..."],"reason":"..."}],"done":true}'
    )


def compact_candidates(candidates: List[Candidate], limit: int = MAX_AGENT_CANDIDATES) -> List[Dict[str, Any]]:
    """Only the fields the model needs to choose between candidates."""
    return [
        {
            "id": c.id,
            "title": c.title,
            "shopName": c.shop_name,
            "price": c.price,
            "url": c.url,
            "description": c.description,
            "tags": c.tags,
            # Variation names often list the supported avatar models.
            "variations": [{"name": v.name, "price": v.price} for v in c.variations],
        }
        for c in candidates[:limit]
    ]


def _positive_int(value: Any, default: int = 1) -> int:
    if isinstance(value, bool):
        return default
    try:
        number = int(float(value))
    except (TypeError, ValueError):
        return default
    return max(1, number)


def parse_decision(
    raw: str,
    *,
    exclude_ids: Set[str],
    picked_ids: Set[str],
    max_pick: int,
    fallback_keyword: str,
    language: Optional[str] = None,
) -> AgentDecision:
    """Validate raw model output into one of Reply, Search or Select."""
    parsed = safe_json_parse(raw)
    if not isinstance(parsed, dict) or not parsed.get("action"):
        logger.warning("[Agent] Invalid decision JSON: %r", (raw or "")[:500])
        return Reply(text=fallback_text("invalid", language), fallback=True)

    action = parsed.get("action")
    if action == "reply":
        text = parsed.get("reply")
        text = text.strip() if isinstance(text, str) else ""
        return Reply(text=text or fallback_text("empty_reply", language))

    if action == "select":
        selected = parsed.get("selected")
        picks: List[Pick] = []
        seen: Set[str] = set()
        for s in selected if isinstance(selected, list) else []:
            if not isinstance(s, dict):
                continue
            item_id = str(s.get("id") or "").strip()
            if not item_id or item_id in exclude_ids or item_id in picked_ids or item_id in seen:
                continue
            seen.add(item_id)
            description = s.get("description")
            reason = s.get("reason")
            picks.append(
                Pick(
                    id=item_id,
                    description=description.strip() if isinstance(description, str) else "",
                    tags=normalize_tags(s.get("tags")),
                    reason=reason.strip() if isinstance(reason, str) and reason.strip() else None,
                )
            )
        return Select(items=picks[:max(0, max_pick)], done=bool(parsed.get("done")))

    if action == "search":
        keyword = parsed.get("keyword")
        keyword = keyword.strip() if isinstance(keyword, str) else ""
        summary = parsed.get("summary")
        summary = summary.strip() if isinstance(summary, str) else ""
        return Search(
            keyword=keyword or fallback_keyword,
            summary=summary or fallback_text("summary", language),
            page=_positive_int(parsed.get("page")),
        )

    logger.warning("[Agent] Unknown decision action: %r", action)
    return Reply(text=fallback_text("invalid", language), fallback=True)


class DecisionEngine:
    """One model call per decision, retried with a hard per-attempt timeout."""

    def __init__(
        self,
        model: ChatModel,
        *,
        attempts: int = DECISION_ATTEMPTS,
        timeout: float = DECISION_TIMEOUT,
        conversation_turns: int = CONVERSATION_TURNS,
        need_min: int = NEED_MIN,
        max_pick: int = MAX_PICK,
    ) -> None:
        self.model = model
        self.attempts = attempts
        self.timeout = timeout
        self.conversation_turns = conversation_turns
        self.need_min = need_min
        self.max_pick = max_pick

    def build_payload(
        self,
        messages: List[ConversationMessage],
        state: LoopState,
        page: Optional[SearchPage] = None,
    ) -> str:
        hint = extract_keyword_hint(messages)
        candidates_info = None
        if page is not None:
            candidates_info = {
                "keyword": page.keyword,
                "page": page.page,
                "candidates": compact_candidates(page.candidates),
            }
        payload = {
            "conversation": build_recent_conversation(messages, self.conversation_turns),
            "user_instruction": extract_user_instruction(messages),
            "has_image": current_turn_has_image(messages),
            "hint": hint.as_dict(),
            "tried_keywords": state.tried_keywords,
            "exclude_ids": sorted(state.exclude_ids)[:ID_LIST_CAP],
            "picked_ids": sorted(state.picked_ids)[:ID_LIST_CAP],
            "picked_count": len(state.picked_ids),
            "need_min": self.need_min,
            "max_pick": self.max_pick,
            "candidates_info": candidates_info,
        }
        return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))

    async def decide(
        self,
        messages: List[ConversationMessage],
        state: LoopState,
        page: Optional[SearchPage] = None,
        *,
        language: Optional[str] = None,
        token: Optional[CancelToken] = None,
    ) -> AgentDecision:
        system = build_system_prompt(language)
        user_text = self.build_payload(messages, state, page)
        image_url = extract_last_user_image(messages)

        try:
            raw = await retry_with_timeout(
                lambda: self.model.complete(system, user_text, image_url),
                attempts=self.attempts,
                timeout=self.timeout,
                token=token,
                label="decideNextStep",
            )
        except RetryExhausted as e:
            logger.error("[Agent] decideNextStep final failure: %s", e)
            return Reply(text=fallback_text("unavailable", language), fallback=True)

        logger.debug("[Agent] RAW Response: %s", raw)
        hint = extract_keyword_hint(messages)
        fallback_keyword = hint.keyword or extract_user_instruction(messages)[:24]
        return parse_decision(
            raw,
            exclude_ids=state.exclude_ids,
            picked_ids=state.picked_ids,
            max_pick=self.max_pick,
            fallback_keyword=fallback_keyword,
            language=language,
        )
