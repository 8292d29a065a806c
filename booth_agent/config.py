import os
from dataclasses import dataclass
from typing import List, Optional

from dotenv import load_dotenv

MODEL_NAME = "gemini-3-flash-preview"
EMBEDDING_MODEL_NAME = "gemini-embedding-001"
BOOTH_BASE_URL = "https://booth.pm"

CONVERSATION_TURNS = 18 # Number of recent messages shown to the decision model.
NEED_MIN = 5 # Stop searching once this many items are picked
MAX_PICK = 15 # Never surface more items than this in one reply
MAX_STEPS = 4 # Maximum number of search/fetch/select cycles per request

PAGE_SIZE = 60 # Rows requested from vector search per page
FULL_PAGE_THRESHOLD = 60 # Booth lists at most ~60 items per page; a full page suggests another one exists
VECTOR_MIN_SCORE = 0.45
ENRICH_BATCH_SIZE = 15 # Detail fetches in flight at once
MAX_LISTING_TAGS = 12
MAX_PICK_TAGS = 10
MAX_AGENT_CANDIDATES = 80 # Candidates handed to the decision model
ID_LIST_CAP = 200 # Exclusion/picked ids sent to the decision model

DECISION_ATTEMPTS = 3
DECISION_TIMEOUT = 30.0
SCRAPE_TIMEOUT = 15.0
DETAIL_TIMEOUT = 12.0
EMBEDDING_TIMEOUT = 12.0
VECTOR_SEARCH_TIMEOUT = 12.0
QUOTA_TIMEOUT = 12.0
REPLY_CHUNK_TIMEOUT = 30.0

STATUS_LINE_WIDTH = 2048 # Status lines are padded so buffering proxies flush them
INITIAL_PADDING = 8192


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}


@dataclass
class Settings:
    """Everything the service needs, resolved once at startup."""

    llm_api_key: Optional[str] = None
    llm_base_url: Optional[str] = None
    llm_model: str = MODEL_NAME
    embedding_api_key: Optional[str] = None
    embedding_base_url: Optional[str] = None
    embedding_model: str = EMBEDDING_MODEL_NAME
    vector_search_url: Optional[str] = None
    vector_search_token: Optional[str] = None
    vector_search_first: bool = True
    supabase_url: Optional[str] = None
    supabase_anon_key: Optional[str] = None
    booth_base_url: str = BOOTH_BASE_URL
    http_proxy: Optional[str] = None

    need_min: int = NEED_MIN
    max_pick: int = MAX_PICK
    max_steps: int = MAX_STEPS
    page_size: int = PAGE_SIZE
    full_page_threshold: int = FULL_PAGE_THRESHOLD
    conversation_turns: int = CONVERSATION_TURNS

    decision_attempts: int = DECISION_ATTEMPTS
    decision_timeout: float = DECISION_TIMEOUT
    scrape_timeout: float = SCRAPE_TIMEOUT
    detail_timeout: float = DETAIL_TIMEOUT
    quota_timeout: float = QUOTA_TIMEOUT

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        llm_base_url = os.getenv("LLM_BASE_URL") or None
        return cls(
            llm_api_key=os.getenv("LLM_API_KEY") or None,
            llm_base_url=llm_base_url,
            llm_model=os.getenv("LLM_MODEL") or MODEL_NAME,
            embedding_api_key=os.getenv("EMBEDDING_API_KEY") or None,
            embedding_base_url=os.getenv("EMBEDDING_BASE_URL") or llm_base_url,
            embedding_model=os.getenv("EMBEDDING_MODEL") or EMBEDDING_MODEL_NAME,
            vector_search_url=os.getenv("VECTOR_SEARCH_API_URL") or None,
            vector_search_token=os.getenv("VECTOR_SEARCH_API_TOKEN") or None,
            vector_search_first=_env_flag("VECTOR_SEARCH_FIRST", True),
            supabase_url=os.getenv("SUPABASE_URL") or None,
            supabase_anon_key=os.getenv("SUPABASE_ANON_KEY") or None,
            booth_base_url=(os.getenv("BOOTH_BASE_URL") or BOOTH_BASE_URL).rstrip("/"),
            http_proxy=os.getenv("HTTP_PROXY_URL") or None,
        )

    def missing(self) -> List[str]:
        """Names of required settings that are not configured."""
        required = {
            "SUPABASE_URL": self.supabase_url,
            "SUPABASE_ANON_KEY": self.supabase_anon_key,
            "LLM_API_KEY": self.llm_api_key,
        }
        return [name for name, value in required.items() if not value]

    @property
    def vector_search_enabled(self) -> bool:
        return bool(self.vector_search_url and self.vector_search_token)
