"""Booth search: vector search over an indexed catalogue, with live scraping as the fallback.

Provides:
- BoothClient: keyword listing pages and per-item detail JSON from booth.pm
- VectorSearchClient: query embedding + search_by_embedding on the catalogue index
- MarketplaceSearch: one page of Candidates for (keyword, page), never raising for upstream failures"""

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx
from openai import AsyncOpenAI

from .concurrency import CancelToken, RequestCancelled, retry_with_timeout
from .config import (
    BOOTH_BASE_URL,
    DETAIL_TIMEOUT,
    EMBEDDING_MODEL_NAME,
    EMBEDDING_TIMEOUT,
    ENRICH_BATCH_SIZE,
    FULL_PAGE_THRESHOLD,
    PAGE_SIZE,
    SCRAPE_TIMEOUT,
    VECTOR_MIN_SCORE,
    VECTOR_SEARCH_TIMEOUT,
)
from .models import Candidate, SearchPage
from .normalizer import enrich_all, parse_listing_page, parse_vector_rows

logger = logging.getLogger(__name__)

BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept-Language": "ja-JP,ja;q=0.9,en-US;q=0.8,en;q=0.7",
}
MIN_LISTING_HTML = 500 # Shorter bodies are error or captcha pages


class AbstractBoothClient:
    """Interface for Booth clients."""
    async def search_page(self, keyword: str, page: int) -> List[Candidate]:
        #Return parsed, unenriched listing cards for one search page
        raise NotImplementedError

    async def fetch_details(self, item_id: str) -> Optional[Dict[str, Any]]:
        #Return the item's detail JSON, or None when unavailable
        raise NotImplementedError


class BoothClient(AbstractBoothClient):
    """Scrapes booth.pm over a shared httpx client."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        base_url: str = BOOTH_BASE_URL,
        detail_timeout: float = DETAIL_TIMEOUT,
    ) -> None:
        self._http = http
        self.base_url = base_url.rstrip("/")
        self.detail_timeout = detail_timeout

    async def search_page(self, keyword: str, page: int) -> List[Candidate]:
        url = f"{self.base_url}/ja/search/{quote(keyword)}"
        logger.info('[Scraper] Starting direct search for: "%s" (Page %d)', keyword, page)
        res = await self._http.get(url, params={"page": page}, headers=BROWSER_HEADERS)
        if res.status_code != 200:
            logger.warning("[Scraper] Search returned HTTP %d for %r", res.status_code, keyword)
            return []
        html = res.text
        if len(html) <= MIN_LISTING_HTML:
            return []
        return parse_listing_page(html, self.base_url)

    async def fetch_details(self, item_id: str) -> Optional[Dict[str, Any]]:
        url = f"{self.base_url}/ja/items/{quote(item_id)}.json"
        res = await self._http.get(
            url,
            headers={**BROWSER_HEADERS, "X-Requested-With": "XMLHttpRequest"},
            timeout=self.detail_timeout,
        )
        if res.status_code != 200:
            return None
        data = res.json()
        return data if isinstance(data, dict) else None


class VectorSearchClient:
    """Embeds the query, then asks the catalogue index for the nearest rows."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        embeddings: AsyncOpenAI,
        search_url: str,
        search_token: str,
        embedding_model: str = EMBEDDING_MODEL_NAME,
        min_score: float = VECTOR_MIN_SCORE,
    ) -> None:
        self._http = http
        self._embeddings = embeddings
        self.search_url = search_url.rstrip("/")
        self.search_token = search_token
        self.embedding_model = embedding_model
        self.min_score = min_score

    async def embed(self, text: str) -> Optional[List[float]]:
        response = await self._embeddings.embeddings.create(model=self.embedding_model, input=text)
        if not response.data:
            return None
        values = response.data[0].embedding
        return [float(v) for v in values] if values else None

    async def search(self, embedding: List[float], page: int, page_size: int) -> List[Candidate]:
        offset = max(0, (max(1, page) - 1) * page_size)
        res = await self._http.post(
            f"{self.search_url}/v1/search_by_embedding",
            headers={"Authorization": f"Bearer {self.search_token}"},
            json={
                "embedding": embedding,
                "limit": page_size,
                "offset": offset,
                "min_score": self.min_score,
            },
        )
        if res.status_code != 200:
            raise RuntimeError(f"Search API {res.status_code}: {res.text[:200]}")
        payload = res.json()
        return parse_vector_rows(payload.get("rows") if isinstance(payload, dict) else None)


class MarketplaceSearch:
    """Fetches one page of candidates, degrading from one source to the other."""

    def __init__(
        self,
        booth: AbstractBoothClient,
        vector: Optional[VectorSearchClient] = None,
        *,
        vector_first: bool = True,
        page_size: int = PAGE_SIZE,
        full_page_threshold: int = FULL_PAGE_THRESHOLD,
        scrape_timeout: float = SCRAPE_TIMEOUT,
        enrich_batch_size: int = ENRICH_BATCH_SIZE,
    ) -> None:
        self.booth = booth
        self.vector = vector
        self.vector_first = vector_first
        self.page_size = page_size
        self.full_page_threshold = full_page_threshold
        self.scrape_timeout = scrape_timeout
        self.enrich_batch_size = enrich_batch_size

    async def search(self, keyword: str, page: int = 1, token: Optional[CancelToken] = None) -> SearchPage:
        page = max(1, page)
        sources = [self._search_vector, self._search_scrape]
        if not self.vector_first:
            sources.reverse()

        candidates: List[Candidate] = []
        source = "none"
        for fetch in sources:
            try:
                candidates, source = await fetch(keyword, page, token)
            except RequestCancelled:
                raise
            except Exception as e:
                logger.warning("[Search] %s failed for %r page %d: %s", fetch.__name__, keyword, page, e)
                candidates, source = [], "none"
            if candidates:
                break

        return SearchPage(
            keyword=keyword,
            page=page,
            candidates=candidates,
            raw_count=len(candidates),
            has_next_page=len(candidates) >= self.full_page_threshold,
            source=source if candidates else "none",
        )

    async def _search_vector(self, keyword: str, page: int, token: Optional[CancelToken]):
        if self.vector is None:
            return [], "none"
        vector = self.vector
        embedding = await retry_with_timeout(
            lambda: vector.embed(keyword),
            attempts=1, timeout=EMBEDDING_TIMEOUT, token=token, label="embedding",
        )
        if not embedding:
            return [], "none"
        rows = await retry_with_timeout(
            lambda: vector.search(embedding, page, self.page_size),
            attempts=1, timeout=VECTOR_SEARCH_TIMEOUT, token=token, label="vector search",
        )
        if rows:
            logger.info("[Vector] hit %d items from remote vector search", len(rows))
        return rows, "vector"

    async def _search_scrape(self, keyword: str, page: int, token: Optional[CancelToken]):
        items = await retry_with_timeout(
            lambda: self.booth.search_page(keyword, page),
            attempts=1, timeout=self.scrape_timeout, token=token, label="listing page",
        )
        if items:
            await enrich_all(items, self.booth.fetch_details, self.enrich_batch_size, token=token)
        return items, "scrape"
