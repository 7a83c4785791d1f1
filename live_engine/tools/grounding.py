"""Citation extraction from search grounding metadata."""

from typing import Any, Dict, List, Optional

from structlog import get_logger

from ..core.models import Source

logger = get_logger(__name__)


def extract_sources(metadata: Optional[Dict[str, Any]]) -> Optional[List[Source]]:
    """
    Turn ``groundingMetadata`` into a list of web sources.

    Each web chunk becomes one Source; its snippet is the segment text of the
    first grounding support that references the chunk's index. Returns None
    when there is no metadata or no chunk list at all.
    """
    if not isinstance(metadata, dict):
        return None
    chunks = metadata.get("groundingChunks")
    if not isinstance(chunks, list):
        return None

    supports = metadata.get("groundingSupports")
    if not isinstance(supports, list):
        supports = []

    sources: List[Source] = []
    for index, chunk in enumerate(chunks):
        web = chunk.get("web") if isinstance(chunk, dict) else None
        if not isinstance(web, dict) or not web.get("uri"):
            continue
        snippet = ""
        for support in supports:
            if not isinstance(support, dict):
                continue
            if index in (support.get("groundingChunkIndices") or []):
                segment = support.get("segment") or {}
                snippet = segment.get("text", "") if isinstance(segment, dict) else ""
                break
        sources.append(Source(uri=web["uri"], title=web.get("title") or "Source", snippet=snippet))

    logger.debug("Extracted grounding sources", count=len(sources))
    return sources


__all__ = ["extract_sources"]
