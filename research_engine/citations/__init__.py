"""Citation handling for research step output.

- normalizer: unify provider-native citation metadata into numbered
  references and insert inline markers into step text
- sources: deterministic citation ids, reliability tags, citation records
"""

from research_engine.citations.normalizer import NormalizedCitations, normalize_provider_citations
from research_engine.citations.sources import build_citations, citation_id

__all__ = [
    "NormalizedCitations",
    "normalize_provider_citations",
    "build_citations",
    "citation_id",
]
