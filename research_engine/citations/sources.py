"""Citation records: ids, URL hygiene, reliability tags.

citation_id is a pure function of the normalized URL, so the same source
gets the same id across steps, runs and re-normalizations.
"""

import hashlib
import re
from datetime import datetime, timezone
from typing import Any, Iterable, Optional
from urllib.parse import urlparse

from research_engine.executor.schemas import Citation

_TRAILING_PUNCT = re.compile(r"[.,;:!?]+$")
_HTTP_URL = re.compile(r"^https?://", re.IGNORECASE)
_URL_IN_TEXT = re.compile(r"https?://[^\s)\]>\"']+", re.IGNORECASE)

MAX_CITATIONS_PER_STEP = 60

PEER_REVIEWED_HOSTS = ("nature.com", "science.org", "nejm.org", "thelancet.com")
PRESS_HOSTS = ("reuters.com", "apnews.com", "ft.com", "wsj.com", "nytimes.com")
BLOG_HOSTS = ("medium.com", "substack.com")


def normalize_url(url: str) -> str:
    """Trim whitespace and strip trailing punctuation."""
    return _TRAILING_PUNCT.sub("", url.strip())


def is_http_url(value: Any) -> bool:
    return isinstance(value, str) and bool(_HTTP_URL.match(value.strip()))


def citation_id(url: str) -> str:
    digest = hashlib.sha256(normalize_url(url).encode("utf-8")).hexdigest()
    return f"c_{digest[:16]}"


def extract_urls(text: str) -> list[str]:
    """All distinct http(s) URLs in text, in order of appearance."""
    seen: dict[str, None] = {}
    for match in _URL_IN_TEXT.findall(text or ""):
        seen.setdefault(normalize_url(match), None)
    return list(seen)


def reliability_tags(url: str) -> list[str]:
    try:
        host = (urlparse(url).hostname or "").lower()
    except ValueError:
        host = ""
    if not host:
        return ["unknown"]
    if host.endswith(".gov") or host.endswith(".mil"):
        return ["gov", "primary"]
    if any(h in host for h in PEER_REVIEWED_HOSTS):
        return ["peer_reviewed", "primary"]
    if any(h in host for h in PRESS_HOSTS):
        return ["press"]
    if any(h in host for h in BLOG_HOSTS):
        return ["blog"]
    return ["unknown"]


def _walk_source_records(node: Any) -> Iterable[dict]:
    """Yield every dict in a nested structure that carries an http(s) URL."""
    if isinstance(node, list):
        for item in node:
            yield from _walk_source_records(item)
        return
    if not isinstance(node, dict):
        return
    url = node.get("url") or node.get("uri") or node.get("href")
    if is_http_url(url):
        yield node
    for value in node.values():
        if isinstance(value, (dict, list)):
            yield from _walk_source_records(value)


def build_citations(
    provider: str,
    text: str,
    raw_sources: Any = None,
    references: Optional[list[dict]] = None,
    max_items: int = MAX_CITATIONS_PER_STEP,
) -> list[Citation]:
    """Build deduplicated citation records for one step.

    Order: normalized references first (reference numbering order), then
    raw provider sources, then bare URLs found in the text.
    """
    now = datetime.now(timezone.utc).isoformat()
    by_url: dict[str, Citation] = {}

    def _add(url: str, title: Optional[str], publisher: Optional[str], raw: Optional[dict]) -> None:
        url = normalize_url(url)
        if not is_http_url(url):
            return
        existing = by_url.get(url)
        if existing is not None:
            if not existing.title and title:
                existing.title = title
            if not existing.publisher and publisher:
                existing.publisher = publisher
            return
        metadata: dict[str, Any] = {"provider": provider}
        if raw:
            metadata["raw"] = raw
        by_url[url] = Citation(
            citation_id=citation_id(url),
            url=url,
            title=title,
            publisher=publisher,
            reliability_tags=reliability_tags(url),
            accessed_at=now,
            provider_metadata=metadata,
        )

    for ref in references or []:
        _add(ref["url"], ref.get("title"), None, None)

    for record in _walk_source_records(raw_sources):
        url = record.get("url") or record.get("uri") or record.get("href")
        title = record.get("title") if isinstance(record.get("title"), str) else None
        publisher = record.get("publisher") if isinstance(record.get("publisher"), str) else None
        _add(url, title, publisher, record)

    for url in extract_urls(text):
        _add(url, None, None, None)

    return list(by_url.values())[:max_items]


def filter_citations_by_urls(citations: list[Citation], urls: Iterable[str]) -> list[Citation]:
    """Keep only citations whose URL is in `urls`. Empty `urls` keeps all."""
    wanted = {normalize_url(u) for u in urls if is_http_url(u)}
    if not wanted:
        return citations
    return [c for c in citations if c.url in wanted]
