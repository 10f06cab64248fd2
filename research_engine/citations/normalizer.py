"""Cross-provider citation normalization.

Every provider's citation metadata is reduced to a list of placements:
(character offset, candidate URLs). From the placements:

1. Clamp offsets into the text and drop placements with no usable URL
2. Sort by offset and number URLs 1..N by first occurrence
3. Build one marker per offset ("[n](url)", same-offset markers joined
   and deduplicated)
4. Insert markers in DESCENDING offset order so an insertion never shifts
   an offset that still has to be applied

A URL cited at several offsets keeps a single reference number. The result
depends only on (text, metadata), so re-normalization is stable.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from research_engine.citations.sources import is_http_url, normalize_url
from research_engine.executor.schemas import (
    GeminiNativePayload,
    NormalizedReference,
    OpenAINativePayload,
)

logger = logging.getLogger(__name__)


@dataclass
class CitationPlacement:
    """Citation instruction at a character offset."""

    at: int
    urls: list[tuple[str, Optional[str]]] = field(default_factory=list)


@dataclass
class NormalizedCitations:
    """Numbered references plus the text with inline markers inserted."""

    output_text_with_refs: str
    references: list[NormalizedReference]


def _int_or_none(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if value != value or value in (float("inf"), float("-inf")):
        return None
    return int(value)


def _unique_urls(urls: list[tuple[str, Optional[str]]]) -> list[tuple[str, Optional[str]]]:
    seen = set()
    out = []
    for url, title in urls:
        url = normalize_url(url)
        if not is_http_url(url) or url in seen:
            continue
        seen.add(url)
        out.append((url, title))
    return out


def normalize_from_placements(text: str, placements: list[CitationPlacement]) -> NormalizedCitations:
    text = text or ""
    ordered = []
    for placement in placements:
        urls = _unique_urls(placement.urls)
        if not urls:
            continue
        ordered.append(CitationPlacement(at=max(0, min(len(text), placement.at)), urls=urls))
    # sorted() is stable, so same-offset placements keep input order
    ordered = sorted(ordered, key=lambda p: p.at)

    ref_by_url: dict[str, NormalizedReference] = {}
    for placement in ordered:
        for url, title in placement.urls:
            if url not in ref_by_url:
                ref_by_url[url] = NormalizedReference(n=len(ref_by_url) + 1, url=url, title=title)

    markers: dict[int, list[str]] = {}
    for placement in ordered:
        for url, _ in placement.urls:
            ref = ref_by_url[url]
            snippet = f"[{ref.n}]({ref.url})"
            at_offset = markers.setdefault(placement.at, [])
            if snippet not in at_offset:
                at_offset.append(snippet)

    output = text
    for at in sorted(markers, reverse=True):
        needs_space = at > 0 and not output[at - 1].isspace()
        cite = " ".join(markers[at])
        output = f"{output[:at]}{' ' if needs_space else ''}{cite}{output[at:]}"

    return NormalizedCitations(output_text_with_refs=output, references=list(ref_by_url.values()))


def _source_map(node: Any, out: Optional[dict[str, tuple[str, Optional[str]]]] = None) -> dict:
    """Map source id -> (url, title) over an arbitrarily nested source list."""
    if out is None:
        out = {}
    if isinstance(node, list):
        for item in node:
            _source_map(item, out)
        return out
    if not isinstance(node, dict):
        return out
    source_id = node.get("id")
    url = node.get("url") or node.get("uri") or node.get("href")
    if isinstance(source_id, str) and is_http_url(url):
        title = node.get("title") if isinstance(node.get("title"), str) else None
        out[source_id] = (normalize_url(url), title)
    for value in node.values():
        if isinstance(value, (dict, list)):
            _source_map(value, out)
    return out


def openai_placements(payload: OpenAINativePayload) -> list[CitationPlacement]:
    """Placements from url_citation annotations (end offsets)."""
    by_source = _source_map(payload.sources)
    placements = []
    for ann in payload.annotations:
        ann_type = ann.get("type")
        if ann_type and ann_type != "url_citation":
            continue
        end = _int_or_none(ann.get("end_index", ann.get("endIndex")))
        if end is None:
            continue
        url = ann.get("url") or ann.get("uri")
        title = ann.get("title") if isinstance(ann.get("title"), str) else None
        if not is_http_url(url):
            source_id = ann.get("source_id") or ann.get("sourceId")
            resolved = by_source.get(source_id) if isinstance(source_id, str) else None
            if resolved is None:
                continue
            url, source_title = resolved
            title = title or source_title
        placements.append(CitationPlacement(at=end, urls=[(normalize_url(url), title)]))
    return placements


def _get(node: Any, *keys: str) -> Any:
    """First present key, accepting camelCase (REST) and snake_case (SDK) shapes."""
    if not isinstance(node, dict):
        return None
    for key in keys:
        if node.get(key) is not None:
            return node[key]
    return None


def _char_offset(encoded: bytes, byte_offset: int) -> int:
    """Map a UTF-8 byte offset onto a str offset."""
    return len(encoded[:byte_offset].decode("utf-8", errors="ignore"))


def gemini_placements(payload: GeminiNativePayload, text: str) -> list[CitationPlacement]:
    """Placements from grounding supports. Falls back to appending all chunks.

    Segment indices count UTF-8 bytes of the response text.
    """
    encoded = text.encode("utf-8")
    metadata = payload.grounding_metadata or {}
    chunks = _get(metadata, "groundingChunks", "grounding_chunks") or []
    supports = _get(metadata, "groundingSupports", "grounding_supports") or []

    def _chunk_url(index: Any) -> Optional[tuple[str, Optional[str]]]:
        idx = _int_or_none(index)
        if idx is None or idx < 0 or idx >= len(chunks):
            return None
        web = _get(chunks[idx], "web") or {}
        uri = _get(web, "uri", "url")
        if not is_http_url(uri):
            return None
        title = _get(web, "title")
        return normalize_url(uri), title if isinstance(title, str) else None

    placements = []
    for support in supports:
        segment = _get(support, "segment") or {}
        at = _int_or_none(_get(segment, "endIndex", "end_index"))
        if at is None or at < 0:
            at = _int_or_none(_get(segment, "startIndex", "start_index"))
        if at is None or at < 0:
            continue
        urls = []
        for index in _get(support, "groundingChunkIndices", "grounding_chunk_indices") or []:
            resolved = _chunk_url(index)
            if resolved:
                urls.append(resolved)
        if urls:
            placements.append(CitationPlacement(at=_char_offset(encoded, at), urls=urls))

    if not placements and chunks:
        urls = [u for u in (_chunk_url(i) for i in range(len(chunks))) if u]
        if urls:
            placements.append(CitationPlacement(at=len(text), urls=urls))
    return placements


def normalize_provider_citations(
    text: str,
    native: Union[OpenAINativePayload, GeminiNativePayload, None],
) -> NormalizedCitations:
    """Normalize one step's citations, dispatching on the payload's provider tag."""
    text = text or ""
    if native is None:
        return NormalizedCitations(output_text_with_refs=text, references=[])
    if isinstance(native, OpenAINativePayload):
        placements = openai_placements(native)
    elif isinstance(native, GeminiNativePayload):
        placements = gemini_placements(native, text)
    else:
        raise TypeError(f"Unsupported provider payload: {type(native).__name__}")
    result = normalize_from_placements(text, placements)
    logger.debug(
        f"Normalized {native.provider} citations: {len(placements)} placements, "
        f"{len(result.references)} references"
    )
    return result
