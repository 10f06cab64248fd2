"""Tolerant extraction of structured results from step output.

LLMs wrap JSON in code fences or surround it with prose despite being told
not to. Extraction tries a strict parse first (after stripping fences), then
falls back to the first balanced {...} or [...] span in the text.

Also derives Evidence rows, either from parsed structured output or
heuristically from long text lines, with ids that depend only on the claim.
"""

import hashlib
import json
import logging
from typing import Any, Optional

logger = logging.getLogger(__name__)

MIN_EVIDENCE_LINE_CHARS = 80
MAX_HEURISTIC_EVIDENCE = 10
MAX_CLAIM_CHARS = 280
MAX_SNIPPET_CHARS = 220

CONFIDENCE_LEVELS = ("low", "med", "high")
CONFIDENCE_SCORES = {"high": 0.9, "med": 0.65, "low": 0.35}


def _strip_fences(text: str) -> str:
    content = text.strip()
    if content.startswith("```"):
        content = content.split("\n", 1)[1] if "\n" in content else content[3:]
    if content.endswith("```"):
        content = content.rsplit("```", 1)[0]
    return content.strip()


def _balanced_span(text: str, opener: str) -> Optional[str]:
    """Return the first balanced span starting at `opener`, string-aware."""
    closer = "}" if opener == "{" else "]"
    start = text.find(opener)
    while start >= 0:
        depth = 0
        in_string = False
        escaped = False
        for pos in range(start, len(text)):
            ch = text[pos]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == opener:
                depth += 1
            elif ch == closer:
                depth -= 1
                if depth == 0:
                    return text[start:pos + 1]
        # Unbalanced from this opener; try the next one
        start = text.find(opener, start + 1)
    return None


def extract_json(text: str, opener: str = "{") -> Any:
    """Extract a JSON value from text that may contain surrounding prose.

    Args:
        text: Raw step output
        opener: "{" to look for an object, "[" for an array

    Returns:
        The parsed value, or None if nothing parseable was found
    """
    if not text or not text.strip():
        return None
    content = _strip_fences(text)
    try:
        return json.loads(content)
    except json.JSONDecodeError:
        pass

    remaining = content
    while True:
        span = _balanced_span(remaining, opener)
        if span is None:
            return None
        try:
            return json.loads(span)
        except json.JSONDecodeError:
            offset = remaining.find(span)
            remaining = remaining[offset + 1:]


def extract_json_object(text: str) -> Optional[dict]:
    value = extract_json(text, "{")
    return value if isinstance(value, dict) else None


def evidence_id(claim: str) -> str:
    """Deterministic evidence id: depends only on the claim text."""
    digest = hashlib.sha256(claim.strip().encode("utf-8")).hexdigest()
    return f"ev_{digest[:16]}"


def _normalize_confidence(value: Any) -> str:
    text = str(value or "").strip().lower()
    if text in ("medium", "moderate"):
        return "med"
    return text if text in CONFIDENCE_LEVELS else "med"


def evidence_from_rows(rows: Any, citation_ids: list[str]) -> list[dict]:
    """Build evidence dicts from a structured `evidence` array."""
    if not isinstance(rows, list):
        return []
    default_sources = citation_ids[:2]
    evidence = []
    seen = set()
    for row in rows:
        if not isinstance(row, dict):
            continue
        claim = str(row.get("claim") or "").strip()[:MAX_CLAIM_CHARS]
        if not claim:
            continue
        eid = evidence_id(claim)
        if eid in seen:
            continue
        seen.add(eid)
        snippet = str(row.get("supporting_snippet") or claim).strip()[:MAX_SNIPPET_CHARS]
        sources = row.get("source_citation_ids")
        evidence.append({
            "evidence_id": eid,
            "claim": claim,
            "supporting_snippet": snippet,
            "source_citation_ids": [str(s) for s in sources] if isinstance(sources, list) and sources else default_sources,
            "confidence": _normalize_confidence(row.get("confidence")),
            "notes": row.get("notes") if isinstance(row.get("notes"), str) else None,
        })
    return evidence


def evidence_from_text(text: str, citation_ids: list[str]) -> list[dict]:
    """Heuristic evidence: lines longer than 80 chars, at most 10."""
    rows = []
    for line in text.splitlines():
        line = line.strip()
        if len(line) <= MIN_EVIDENCE_LINE_CHARS:
            continue
        rows.append({
            "claim": line,
            "supporting_snippet": line[:MAX_SNIPPET_CHARS],
            "confidence": "med",
        })
        if len(rows) >= MAX_HEURISTIC_EVIDENCE:
            break
    return evidence_from_rows(rows, citation_ids)


def confidence_score(confidence: str) -> float:
    return CONFIDENCE_SCORES.get(confidence, CONFIDENCE_SCORES["med"])
