"""Turn raw Booth search results into Candidate records.

Two raw shapes are accepted: the HTML of a keyword-search listing page and the
JSON rows of the vector-search backend. Listings are enriched afterwards from
each item's detail JSON (tags, description, price variations).
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import quote

from bs4 import BeautifulSoup

from .concurrency import CancelToken, run_in_batches
from .config import BOOTH_BASE_URL, ENRICH_BATCH_SIZE, MAX_LISTING_TAGS
from .models import Candidate, Variation
from .utils import dedupe

logger = logging.getLogger(__name__)

DetailFetcher = Callable[[str], Awaitable[Optional[Dict[str, Any]]]]


def _text(el: Any) -> str:
    return el.get_text(strip=True) if el is not None else ""


def parse_listing_page(html: str, base_url: str = BOOTH_BASE_URL) -> List[Candidate]:
    """One Candidate per item card; cards without an id are dropped."""
    soup = BeautifulSoup(html, "html.parser")
    items: List[Candidate] = []

    for card in soup.select("li.item-card"):
        title = _text(card.select_one(".item-card__title")) or "No Title"
        shop_name = _text(card.select_one(".item-card__shop-name")) or "Unknown Shop"
        price = _text(card.select_one(".price")) or "Free"

        link = card.select_one(".item-card__title-anchor")
        url_path = (link.get("href") or "").strip() if link is not None else ""
        path_tail = [seg for seg in url_path.split("/") if seg]
        item_id = (card.get("data-product-id") or (path_tail[-1] if path_tail else "")).strip()

        # Some cards carry data-product-id but no anchor href.
        resolved = url_path or (f"/ja/items/{quote(item_id)}" if item_id else "")
        url = resolved if resolved.startswith("http") else (f"{base_url}{resolved}" if resolved else "")
        if not item_id or not url:
            continue

        img = card.select_one(".item-card__thumbnail-image")
        image_url = ""
        if img is not None:
            image_url = img.get("data-original") or img.get("data-src") or img.get("src") or ""

        description = (
            _text(card.select_one(".item-card__description"))
            or _text(card.select_one(".u-text-ellipsis-2"))
        )
        tags = [
            _text(tag)
            for tag in card.select("a.tag, .item-card__tags a, .item-card__tags span")
        ]

        items.append(
            Candidate(
                id=item_id,
                title=title,
                shop_name=shop_name,
                price=price,
                url=url,
                image_url=image_url,
                description=description,
                tags=dedupe(t for t in tags if t)[:MAX_LISTING_TAGS],
            )
        )
    return items


def parse_vector_rows(rows: Any) -> List[Candidate]:
    """Rows from the vector-search backend; rows missing an id or url are dropped."""
    if not isinstance(rows, list):
        return []
    items: List[Candidate] = []
    for row in rows:
        if not isinstance(row, dict):
            continue
        item_id = str(row.get("id") or "")
        url = row.get("url") or ""
        if not item_id or not url:
            continue
        tags = row.get("tags")
        items.append(
            Candidate(
                id=item_id,
                title=row.get("title") or "No Title",
                shop_name=row.get("shop_name") or "Unknown Shop",
                price=str(row.get("price") or "Unknown"),
                url=url,
                image_url=row.get("image_url") or "",
                description=row.get("description") or "",
                tags=[str(t) for t in tags] if isinstance(tags, list) else [],
            )
        )
    return items


def format_price(variations: List[Variation]) -> Optional[str]:
    """"N JPY" when every variation costs the same, else "min ~ max JPY"."""
    prices = [v.price for v in variations if isinstance(v.price, (int, float))]
    if not prices:
        return None
    low, high = min(prices), max(prices)
    if low == high:
        return f"{low} JPY"
    return f"{low} ~ {high} JPY"


def apply_details(candidate: Candidate, details: Dict[str, Any]) -> Candidate:
    """Overlay detail-endpoint data on a candidate, keeping fields the details lack.

    All values are parsed before anything is assigned, so a malformed payload
    leaves the candidate untouched.
    """
    updates: Dict[str, Any] = {}
    tags = details.get("tags")
    if isinstance(tags, list):
        names = [t.get("name") if isinstance(t, dict) else t for t in tags]
        updates["tags"] = [str(n) for n in names if n]
    description = details.get("description")
    if isinstance(description, str) and description:
        updates["description"] = description
    variations = details.get("variations")
    if isinstance(variations, list):
        parsed = [
            Variation(name=str(v.get("name") or ""), price=v.get("price"))
            for v in variations
            if isinstance(v, dict)
        ]
        updates["variations"] = parsed
        price = format_price(parsed)
        if price:
            updates["price"] = price
    for name, value in updates.items():
        setattr(candidate, name, value)
    return candidate


async def enrich(candidate: Candidate, fetch_details: DetailFetcher) -> Candidate:
    """Best effort: any failure leaves the candidate as it was."""
    try:
        details = await fetch_details(candidate.id)
    except Exception as e:
        logger.debug("[Scraper] detail fetch failed for %s: %s", candidate.id, e)
        return candidate
    if not details:
        return candidate
    try:
        return apply_details(candidate, details)
    except Exception as e:
        logger.debug("[Scraper] detail parse failed for %s: %s", candidate.id, e)
        return candidate


async def enrich_all(
    candidates: List[Candidate],
    fetch_details: DetailFetcher,
    batch_size: int = ENRICH_BATCH_SIZE,
    token: Optional[CancelToken] = None,
) -> List[Candidate]:
    if not candidates:
        return candidates
    logger.info("[Scraper] Enhancing all %d items with JSON data...", len(candidates))
    await run_in_batches(candidates, lambda c: enrich(c, fetch_details), batch_size, token=token)
    return candidates
