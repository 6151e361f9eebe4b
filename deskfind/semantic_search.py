"""
SemanticSearchEngine - Vector search over content chunks and metadata.

The query is embedded once; both vector tables are searched concurrently
and hits are merged per file, keeping each file's closest distance.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List

from .errors import DeskFindError
from .models import SearchResult, SearchSource


logger = logging.getLogger(__name__)


@dataclass
class _FileHit:
    distance: float
    chunk_ids: List[int] = field(default_factory=list)


class SemanticSearchEngine:
    def __init__(self, state):
        self.state = state
        self.config = state.config
        self.registry = state.registry
        self.embeddings = state.embeddings

    async def search(self, query: str) -> List[SearchResult]:
        """
        Files whose content or metadata is close to the query.

        Sorted by ascending distance. Returns [] if the query cannot be
        embedded or a lookup fails.
        """
        if not query.strip():
            return []
        try:
            vec = await self.embeddings.embed(query)
        except DeskFindError as e:
            logger.warning(f"Semantic search unavailable: {e}")
            return []

        loop = asyncio.get_running_loop()
        max_distance = self.config.semantic_max_distance
        limit = self.config.semantic_limit
        try:
            content_hits, metadata_hits = await asyncio.gather(
                loop.run_in_executor(None, self.registry.search_content, vec, max_distance, limit),
                loop.run_in_executor(None, self.registry.search_metadata, vec, max_distance, limit),
            )
        except DeskFindError as e:
            logger.error(f"Vector lookup failed: {e}")
            return []

        hits: Dict[int, _FileHit] = {}
        for chunk in content_hits:
            hit = hits.setdefault(chunk.file_id, _FileHit(distance=chunk.distance))
            hit.distance = min(hit.distance, chunk.distance)
            hit.chunk_ids.append(chunk.id)
        for meta in metadata_hits:
            hit = hits.setdefault(meta.file_id, _FileHit(distance=meta.distance))
            hit.distance = min(hit.distance, meta.distance)

        records = self.registry.list_by_ids(hits.keys())
        results = [
            SearchResult(
                path=record.path,
                name=record.name,
                score=1.0 - hits[record.id].distance,
                source=SearchSource.SEMANTIC,
                file_id=record.id,
                category=record.category,
                file_ext=record.file_ext,
                distance=hits[record.id].distance,
                chunk_ids=hits[record.id].chunk_ids,
            )
            for record in records
        ]
        results.sort(key=lambda r: (r.distance, r.file_id))
        return results
