# Data models for interactions.
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Union


@dataclass
class ConversationMessage:
    """One message of the client-held history. The server only reads these."""

    role: str  # "user" | "assistant"
    text: str = ""
    image: Optional[str] = None  # data URL or http(s) URL of an uploaded image
    items: List[Dict[str, Any]] = field(default_factory=list)
    id: Optional[str] = None

    @property
    def is_user(self) -> bool:
        return self.role == "user"


@dataclass
class Variation:
    name: str
    price: int


@dataclass
class Candidate:
    """Normalized Booth listing, prior to any agent selection."""

    id: str
    title: str
    shop_name: str
    price: str
    url: str
    image_url: str = ""
    description: str = ""
    tags: List[str] = field(default_factory=list)
    variations: List[Variation] = field(default_factory=list)


@dataclass
class SelectedItem:
    """Candidate projected with the agent's own description and tags."""

    id: str
    title: str
    shop_name: str
    price: str
    url: str
    image_url: str = ""
    description: str = ""
    tags: List[str] = field(default_factory=list)
    reason: Optional[str] = None


@dataclass
class SearchPage:
    """One fetched page of candidates and where it came from."""

    keyword: str
    page: int
    candidates: List[Candidate] = field(default_factory=list)
    raw_count: int = 0
    has_next_page: bool = False
    source: str = "none"  # "vector" | "scrape" | "none"


@dataclass
class Pick:
    """One id chosen by the decision model, with its annotations."""

    id: str
    description: str = ""
    tags: List[str] = field(default_factory=list)
    reason: Optional[str] = None


@dataclass
class Reply:
    text: str
    fallback: bool = False  # produced by a failure path, not by the model


@dataclass
class Search:
    keyword: str
    summary: str
    page: int = 1


@dataclass
class Select:
    items: List[Pick] = field(default_factory=list)
    done: bool = False


AgentDecision = Union[Reply, Search, Select]


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    reason: Optional[str] = None
    session_count: Optional[int] = None
    daily_count: Optional[int] = None
    session_limit: Optional[int] = None
    daily_limit: Optional[int] = None


@dataclass(frozen=True)
class Identity:
    """Who a turn is charged to: a signed-in account or an anonymous device."""

    chat_id: str
    token: Optional[str] = None
    visitor_id: Optional[str] = None

    @property
    def authenticated(self) -> bool:
        return bool(self.token)


class LoopStage(str, Enum):
    START = "start"
    FIRST_DECISION = "first_decision"
    FETCH_PAGE = "fetch_page"
    DECIDE = "decide"
    ACCUMULATE = "accumulate"
    NEXT_DECISION = "next_decision"
    GENERATE_FINAL_REPLY = "generate_final_reply"
    DONE = "done"


@dataclass
class LoopState:
    """Per-request working state of the agent loop."""

    exclude_ids: Set[str]
    keyword: str = ""
    page: int = 1
    summary: str = ""
    step: int = 0
    picked: List[SelectedItem] = field(default_factory=list)
    picked_ids: Set[str] = field(default_factory=set)
    tried_keywords: List[str] = field(default_factory=list)
    last_page: Optional[SearchPage] = None
    stage: LoopStage = LoopStage.START

    def use_keyword(self, keyword: str, page: int) -> None:
        self.keyword = keyword or self.keyword
        self.page = max(1, page or 1)
        if self.keyword and self.keyword not in self.tried_keywords:
            self.tried_keywords.append(self.keyword)
