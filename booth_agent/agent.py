"""Booth asset-finding agent loop.

Flow per request:
1. Decision model reads the conversation and either replies or asks for a search
2. Search → fetch page → decision model selects from candidates (or searches again)
3. Repeat until enough items are picked, the model says done, or the step budget runs out
4. Presentation model streams the narrative; the picked items follow as a json block

Entry point: BoothChatAgent.run()
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

from .concurrency import CancelToken, RequestCancelled
from .config import MAX_PICK, MAX_STEPS, NEED_MIN, REPLY_CHUNK_TIMEOUT
from .decision import DecisionEngine, fallback_text
from .llm import ChatModel
from .marketplace import MarketplaceSearch
from .models import (
    AgentDecision,
    ConversationMessage,
    LoopStage,
    LoopState,
    Reply,
    Search,
    SearchPage,
    Select,
    SelectedItem,
)
from .streaming import StreamWriter
from .utils import (
    collect_shown_ids,
    continuation_line,
    dump_items,
    extract_last_user_image,
    extract_user_instruction,
    language_code,
    language_name,
)

logger = logging.getLogger(__name__)

STATUS_TEXTS = {
    "received": {
        "zh": "收到请求，正在处理...",
        "en": "Request received, working on it...",
        "ja": "リクエストを受け付けました。処理中です...",
    },
    "understanding": {
        "zh": "正在理解你的需求...",
        "en": "Understanding what you need...",
        "ja": "ご要望を確認しています...",
    },
    "planning": {
        "zh": "正在规划下一步...",
        "en": "Planning the next step...",
        "ja": "次のステップを考えています...",
    },
    "fetching": {
        "zh": "正在抓取 Booth：关键词「{keyword}」第 {page} 页...",
        "en": "Searching Booth for \"{keyword}\", page {page}...",
        "ja": "Booth を検索中：キーワード「{keyword}」{page} ページ目...",
    },
    "fetched": {
        "zh": "抓取到 {count} 条，正在选择/决定下一步...",
        "en": "Fetched {count} items, choosing and deciding what's next...",
        "ja": "{count} 件取得しました。選んでいます...",
    },
    "more": {
        "zh": "结果不足，正在决定下一步检索策略...",
        "en": "Not enough results yet, deciding how to search next...",
        "ja": "結果が足りないため、次の検索方法を考えています...",
    },
    "writing": {
        "zh": "正在生成最终回复...",
        "en": "Writing the final reply...",
        "ja": "最終的な回答を作成しています...",
    },
}

REPLY_FAILED_TEXTS = {
    "found": {
        "zh": "抱歉，整理推荐说明时出了点问题，下面是我为你挑选的商品：",
        "en": "Sorry, something went wrong while writing up the recommendations. Here is what I picked for you:",
        "ja": "ごめんなさい、説明の作成中に問題が起きました。選んだ商品はこちらです：",
    },
    "empty": {
        "zh": "抱歉，这次没有找到符合条件的商品，可以换个关键词或放宽条件再试试。",
        "en": "Sorry, I couldn't find matching items this time. Try another keyword or looser conditions.",
        "ja": "ごめんなさい、条件に合う商品が見つかりませんでした。別のキーワードや条件でお試しください。",
    },
}


def status_text(kind: str, language: Optional[str], **values: Any) -> str:
    return STATUS_TEXTS[kind][language_code(language)].format(**values)


def build_presentation_prompt(language: Optional[str]) -> str:
    lang = language_name(language)
    return (
        "You are a friendly assistant that finds VRChat assets on Booth (booth.pm) for the user. "
        f"The user's language preference is {lang}; reply in {lang}.\n"
        "You receive the user's instruction, a summary of the need, and items: the real products the backend picked (JSON). "
        "You also receive fetched_count (how many candidates were fetched) and has_next_page.\n"
        "Your task: recommend and explain the items.\n"
        "- has_next_page=true: there is another page; ask whether to turn the page or change the keyword.\n"
        "- has_next_page=false: there is no next page; only suggest a different keyword or looser conditions, and say so.\n"
        "- items are only what was chosen for display and may be far fewer than fetched_count; "
        "do not infer the next page from the number of items.\n"
        "- If items is empty, explain that nothing matched and suggest alternative keywords.\n"
        "Rules:\n"
        "1) Never invent products; talk only about items.\n"
        "2) Use Markdown.\n"
        "3) Never write the string __STATUS__: in the reply.\n"
        "4) Do not output any code block and do not repeat the items JSON; it is attached after your reply.\n"
        "5) Do not mention parameter names such as fetched_count or has_next_page."
    )


async def _next_chunk(iterator: AsyncIterator[str]) -> Optional[str]:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return None


@dataclass
class AgentResult:
    """What a run produced; the client-visible bytes already went to the writer."""

    stage: LoopStage
    items: List[SelectedItem] = field(default_factory=list)
    steps: int = 0
    tried_keywords: List[str] = field(default_factory=list)
    cancelled: bool = False


class BoothChatAgent:
    """Decide → search → select loop with a step budget, streamed through a StreamWriter."""

    def __init__(
        self,
        engine: DecisionEngine,
        search: MarketplaceSearch,
        presenter: ChatModel,
        *,
        need_min: int = NEED_MIN,
        max_pick: int = MAX_PICK,
        max_steps: int = MAX_STEPS,
        reply_chunk_timeout: float = REPLY_CHUNK_TIMEOUT,
    ) -> None:
        self.engine = engine
        self.search = search
        self.presenter = presenter
        self.need_min = need_min
        self.max_pick = max_pick
        self.max_steps = max_steps
        self.reply_chunk_timeout = reply_chunk_timeout

    async def run(
        self,
        messages: List[ConversationMessage],
        writer: StreamWriter,
        token: CancelToken,
        language: Optional[str] = None,
    ) -> AgentResult:
        """Handle one turn, writing status lines and the reply to ``writer``."""
        state = LoopState(exclude_ids=collect_shown_ids(messages))
        try:
            await self._run(messages, state, writer, token, language)
        except RequestCancelled:
            logger.info("[Agent] cancelled at stage=%s step=%d", state.stage.value, state.step)
            return self._result(state, cancelled=True)
        except Exception as e:
            logger.exception("[Agent] unexpected error: %s", e)
            if not token.cancelled:
                await writer.write(fallback_text("unavailable", language))
        finally:
            await writer.close()
        return self._result(state)

    def _result(self, state: LoopState, cancelled: bool = False) -> AgentResult:
        return AgentResult(
            stage=state.stage,
            items=list(state.picked),
            steps=state.step,
            tried_keywords=list(state.tried_keywords),
            cancelled=cancelled,
        )

    async def _run(
        self,
        messages: List[ConversationMessage],
        state: LoopState,
        writer: StreamWriter,
        token: CancelToken,
        language: Optional[str],
    ) -> None:
        instruction = extract_user_instruction(messages)
        state.summary = fallback_text("summary", language)

        # First packet: status plus padding so buffering proxies flush immediately.
        await writer.status(status_text("received", language))
        await writer.padding()
        await writer.status(status_text("understanding", language))

        state.stage = LoopStage.FIRST_DECISION
        await writer.status(status_text("planning", language))
        first = await self.engine.decide(messages, state, language=language, token=token)

        if isinstance(first, Reply):
            await writer.write(first.text)
            state.stage = LoopStage.DONE
            return
        if isinstance(first, Search):
            state.use_keyword(first.keyword, first.page)
            state.summary = first.summary or state.summary
        else:
            state.use_keyword(instruction[:24], 1)

        state.stage = LoopStage.FETCH_PAGE
        page: Optional[SearchPage] = None
        decision: Optional[AgentDecision] = None

        while state.stage not in (LoopStage.GENERATE_FINAL_REPLY, LoopStage.DONE):
            token.raise_if_cancelled()

            if state.stage == LoopStage.FETCH_PAGE:
                if state.step >= self.max_steps:
                    logger.info("[Loop] step budget of %d exhausted", self.max_steps)
                    state.stage = LoopStage.GENERATE_FINAL_REPLY
                    continue
                state.step += 1
                await writer.status(status_text("fetching", language, keyword=state.keyword, page=state.page))
                try:
                    page = await self.search.search(state.keyword, state.page, token=token)
                except RequestCancelled:
                    raise
                except Exception as e:
                    logger.error("[Loop] Step %d search error: %s", state.step, e)
                    state.stage = LoopStage.GENERATE_FINAL_REPLY
                    continue
                state.last_page = page
                await writer.status(status_text("fetched", language, count=len(page.candidates)))
                state.stage = LoopStage.DECIDE

            elif state.stage == LoopStage.DECIDE:
                logger.info("[Loop] Step %d starting decision...", state.step)
                decision = await self._decide(messages, state, page, language, token)
                state.stage = await self._route(decision, state, writer, after_fetch=True)

            elif state.stage == LoopStage.ACCUMULATE:
                if not isinstance(decision, Select) or page is None:
                    state.stage = LoopStage.GENERATE_FINAL_REPLY
                    continue
                added = self._accumulate(state, decision, page)
                logger.info("[Loop] Step %d picked %d new, %d total", state.step, added, len(state.picked))
                if (
                    len(state.picked) >= self.need_min
                    or len(state.picked) >= self.max_pick
                    or decision.done
                    or (added == 0 and state.picked)
                ):
                    state.stage = LoopStage.GENERATE_FINAL_REPLY
                elif state.step >= self.max_steps:
                    state.stage = LoopStage.GENERATE_FINAL_REPLY
                else:
                    state.stage = LoopStage.NEXT_DECISION

            elif state.stage == LoopStage.NEXT_DECISION:
                await writer.status(status_text("more", language))
                decision = await self._decide(messages, state, None, language, token)
                state.stage = await self._route(decision, state, writer, after_fetch=False)

        if state.stage == LoopStage.GENERATE_FINAL_REPLY:
            await writer.status(status_text("writing", language))
            await self._write_final_reply(messages, state, writer, token, language)

    async def _decide(
        self,
        messages: List[ConversationMessage],
        state: LoopState,
        page: Optional[SearchPage],
        language: Optional[str],
        token: CancelToken,
    ) -> Optional[AgentDecision]:
        try:
            return await self.engine.decide(messages, state, page, language=language, token=token)
        except RequestCancelled:
            raise
        except Exception as e:
            logger.error("[Agent] Loop Step %d Decision Error: %s", state.step, e)
            return None

    async def _route(
        self,
        decision: Optional[AgentDecision],
        state: LoopState,
        writer: StreamWriter,
        after_fetch: bool,
    ) -> LoopStage:
        if decision is None:
            return LoopStage.GENERATE_FINAL_REPLY
        if isinstance(decision, Reply):
            if decision.fallback:
                # The model is unavailable; present whatever was gathered instead.
                return LoopStage.GENERATE_FINAL_REPLY
            await writer.write(decision.text)
            return LoopStage.DONE
        if isinstance(decision, Search):
            state.use_keyword(decision.keyword, decision.page)
            state.summary = decision.summary or state.summary
            return LoopStage.FETCH_PAGE
        if after_fetch:
            return LoopStage.ACCUMULATE
        # A select without candidates in front of it: keep going on the next page.
        state.use_keyword(state.keyword, state.page + 1)
        return LoopStage.FETCH_PAGE

    def _accumulate(self, state: LoopState, decision: Select, page: SearchPage) -> int:
        by_id = {c.id: c for c in page.candidates}
        added = 0
        for pick in decision.items:
            if len(state.picked) >= self.max_pick:
                break
            candidate = by_id.get(pick.id)
            if candidate is None:
                continue
            if candidate.id in state.exclude_ids or candidate.id in state.picked_ids:
                continue
            state.picked_ids.add(candidate.id)
            state.picked.append(
                SelectedItem(
                    id=candidate.id,
                    title=candidate.title,
                    shop_name=candidate.shop_name,
                    price=candidate.price,
                    url=candidate.url,
                    image_url=candidate.image_url,
                    description=pick.description or candidate.description,
                    tags=list(pick.tags or candidate.tags),
                    reason=pick.reason,
                )
            )
            added += 1
        return added

    def _presentation_payload(
        self, messages: List[ConversationMessage], state: LoopState, items_json: str
    ) -> str:
        page = state.last_page
        return "\n".join(
            [
                f"user_instruction: {extract_user_instruction(messages)}",
                f"need_summary: {state.summary}",
                f"keyword: {state.keyword}",
                f"page: {state.page}",
                f"fetched_count: {page.raw_count if page else 0}",
                f"has_next_page: {'true' if page and page.has_next_page else 'false'}",
                "items:",
                items_json,
            ]
        )

    async def _write_final_reply(
        self,
        messages: List[ConversationMessage],
        state: LoopState,
        writer: StreamWriter,
        token: CancelToken,
        language: Optional[str],
    ) -> None:
        items_json = dump_items(state.picked)
        stream = self.presenter.stream(
            build_presentation_prompt(language),
            self._presentation_payload(messages, state, items_json),
            extract_last_user_image(messages),
        )
        try:
            while True:
                chunk = await token.guard(
                    asyncio.wait_for(_next_chunk(stream), timeout=self.reply_chunk_timeout)
                )
                if chunk is None:
                    break
                await writer.write(chunk)
        except RequestCancelled:
            raise
        except Exception as e:
            logger.error("[Agent] final reply failed: %s", e)
            kind = "found" if state.picked else "empty"
            await writer.write("\n\n" + REPLY_FAILED_TEXTS[kind][language_code(language)])
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception as e:
                    logger.debug("[Agent] closing reply stream: %s", e)

        # The items go out through the JSON path so they decode to exactly what was picked.
        footer = continuation_line(state.keyword, state.page, language)
        await writer.write(f"\n\n{footer}\n\n```json\n")
        await writer.write_json(items_json)
        await writer.write("\n```\n")
