"""Utility functions for the Booth agent."""
import json
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Set

from .config import MAX_PICK_TAGS
from .models import ConversationMessage, SelectedItem

_JSON_DECODER = json.JSONDecoder()

# "当前关键词：xxx；当前页码：n" and its en/ja forms, written before every items block.
CONTINUATION_TEMPLATES = {
    "zh": "当前关键词：{keyword}；当前页码：{page}",
    "en": "Current keyword: {keyword}; current page: {page}",
    "ja": "現在のキーワード：{keyword}；現在のページ：{page}",
}
_HINT_KEYWORD = re.compile(
    r"(?:当前关键词(?:（日文）)?|Current keyword|現在のキーワード)\s*[:：]\s*([^；;\n\r]+)"
)
_HINT_PAGE = re.compile(r"(?:当前页码|current page|現在のページ)\s*[:：]\s*(\d+)", re.IGNORECASE)
_ITEMS_BLOCK = re.compile(r"```json\s*(\[[\s\S]*?\])\s*```", re.IGNORECASE)


@dataclass
class KeywordHint:
    keyword: Optional[str] = None
    page: Optional[int] = None

    def as_dict(self) -> Dict[str, Any]:
        return {"keyword": self.keyword, "page": self.page}


def language_code(language: Optional[str]) -> str:
    lang = (language or "").lower()
    if lang.startswith("en"):
        return "en"
    if lang.startswith("ja"):
        return "ja"
    return "zh"


def language_name(language: Optional[str]) -> str:
    return {"en": "English", "ja": "Japanese", "zh": "Chinese"}[language_code(language)]


def safe_json_parse(raw: str) -> Any:
    """Parse model output, falling back to the first decodable JSON object or array inside it."""
    text = (raw or "").strip()
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass
    for match in re.finditer(r"[\[{]", text):
        try:
            value, _ = _JSON_DECODER.raw_decode(text, match.start())
        except json.JSONDecodeError:
            continue
        return value
    return None


def normalize_tags(tags: Any, limit: int = MAX_PICK_TAGS) -> List[str]:
    if not isinstance(tags, list):
        return []
    cleaned = [t.strip() for t in tags if isinstance(t, str) and t.strip()]
    return cleaned[:limit]


def dedupe(values: Iterable[str]) -> List[str]:
    seen: Set[str] = set()
    uniq: List[str] = []
    for v in values:
        if v not in seen:
            seen.add(v)
            uniq.append(v)
    return uniq


def extract_user_instruction(messages: List[ConversationMessage]) -> str:
    """Text of the most recent user message, which is the active instruction."""
    for m in reversed(messages):
        if not m.is_user:
            continue
        text = (m.text or "").strip()
        if text:
            return text
        if m.image:
            return "Find Booth VRChat assets matching the style and needs shown in my image."
    return "Find matching VRChat assets on Booth."


def current_turn_has_image(messages: List[ConversationMessage]) -> bool:
    for m in reversed(messages):
        if m.is_user and ((m.text or "").strip() or m.image):
            return bool(m.image)
    return False


def extract_last_user_image(messages: List[ConversationMessage]) -> Optional[str]:
    """Latest image uploaded by the user; older images are never re-sent."""
    for m in reversed(messages):
        if m.is_user and (m.image or "").strip():
            return m.image.strip()
    return None


def build_recent_conversation(messages: List[ConversationMessage], max_turns: int) -> str:
    """Compact transcript of the last messages, annotated with image/items metadata."""
    sliced = messages[-max(1, max_turns):]
    lines: List[str] = []
    for idx, m in enumerate(sliced, start=1):
        text = (m.text or "").strip()
        meta = f"hasImage={1 if m.image else 0},items={len(m.items)}"
        body = text or ("[image]" if m.image else "")
        lines.append(f"#{idx} {m.role} ({meta})\n{body}".strip())
    return "\n\n".join(lines)


def collect_shown_ids(messages: List[ConversationMessage]) -> Set[str]:
    """Ids of every item already shown in this conversation."""
    ids: Set[str] = set()
    for m in messages:
        for item in m.items:
            if isinstance(item, dict) and item.get("id"):
                ids.add(str(item["id"]))
    return ids


def extract_keyword_hint(messages: List[ConversationMessage]) -> KeywordHint:
    """Keyword and page of the latest assistant reply that carried a continuation line."""
    for m in reversed(messages):
        if m.is_user:
            continue
        text = m.text or ""
        kw = _HINT_KEYWORD.search(text)
        pg = _HINT_PAGE.search(text)
        if kw or pg:
            return KeywordHint(
                keyword=kw.group(1).strip() if kw else None,
                page=int(pg.group(1)) if pg else None,
            )
    return KeywordHint()


def continuation_line(keyword: str, page: int, language: Optional[str]) -> str:
    return CONTINUATION_TEMPLATES[language_code(language)].format(keyword=keyword, page=page)


def serialize_item(item: SelectedItem) -> Dict[str, Any]:
    """Wire shape of a selected item, in a fixed field order."""
    data: Dict[str, Any] = {
        "id": item.id,
        "title": item.title,
        "shopName": item.shop_name,
        "price": item.price,
        "url": item.url,
        "imageUrl": item.image_url,
        "description": item.description,
        "tags": list(item.tags),
    }
    if item.reason:
        data["reason"] = item.reason
    return data


def dump_items(items: List[SelectedItem]) -> str:
    return json.dumps([serialize_item(i) for i in items], ensure_ascii=False, indent=2)


def extract_items(text: str) -> Optional[List[Dict[str, Any]]]:
    """Items array from the fenced json block at the end of a reply, if any."""
    match = _ITEMS_BLOCK.search(text or "")
    if not match:
        return None
    try:
        items = json.loads(match.group(1))
    except json.JSONDecodeError:
        return None
    return items if isinstance(items, list) else None


def strip_items_block(text: str) -> str:
    return _ITEMS_BLOCK.sub("", text or "").strip()
