"""
SearchCoordinator - routes a query to path and/or semantic search.

Intent rules, first match wins:
1. contains a path separator ('\\' or '/')      -> path only
2. contains '*' or '.'                          -> path only
3. at most two words                            -> path only
4. contains a natural-language cue word         -> hybrid
5. longer than 20 characters                    -> semantic only
6. otherwise                                    -> hybrid

Hybrid results are fused by path: a file found by both engines scores
PATH_WEIGHT * path_score + SEMANTIC_WEIGHT * semantic_score, a file found
only semantically scores SEMANTIC_WEIGHT * semantic_score, and path-only
hits keep their own score.
"""

import asyncio
import logging
from dataclasses import replace
from typing import Dict, List

from .models import QueryIntent, SearchResult, SearchSource
from .path_search import PathSearchEngine
from .semantic_search import SemanticSearchEngine


logger = logging.getLogger(__name__)

PATH_WEIGHT = 0.6
SEMANTIC_WEIGHT = 0.4

CUE_WORDS = ("about", "related", "that", "which", "where", "notes", "document")


def detect_intent(query: str) -> QueryIntent:
    if "\\" in query or "/" in query:
        return QueryIntent.PATH_ONLY
    if "*" in query or "." in query:
        return QueryIntent.PATH_ONLY
    if len(query.split()) <= 2:
        return QueryIntent.PATH_ONLY
    lowered = query.lower()
    if any(word in lowered for word in CUE_WORDS):
        return QueryIntent.HYBRID
    if len(query) > 20:
        return QueryIntent.SEMANTIC_ONLY
    return QueryIntent.HYBRID


def fuse_results(
    path_results: List[SearchResult], semantic_results: List[SearchResult]
) -> List[SearchResult]:
    """Merge both result lists by path and rank by fused score."""
    fused: Dict[str, SearchResult] = {r.path: r for r in path_results}

    for sem in semantic_results:
        existing = fused.get(sem.path)
        if existing is not None:
            fused[sem.path] = replace(
                existing,
                score=existing.score * PATH_WEIGHT + sem.score * SEMANTIC_WEIGHT,
                source=SearchSource.HYBRID,
                file_id=sem.file_id,
                category=sem.category,
                distance=sem.distance,
                chunk_ids=sem.chunk_ids,
            )
        else:
            fused[sem.path] = replace(sem, score=sem.score * SEMANTIC_WEIGHT)

    return sorted(fused.values(), key=lambda r: r.score, reverse=True)


class SearchCoordinator:
    def __init__(self, path_engine: PathSearchEngine, semantic_engine: SemanticSearchEngine):
        self.path_engine = path_engine
        self.semantic_engine = semantic_engine

    async def search(self, query: str) -> List[SearchResult]:
        """
        Ranked results for a free-text query.

        Never raises: a failing engine contributes no results.
        """
        query = query.strip()
        if not query:
            return []

        intent = detect_intent(query)
        logger.debug(f"Query {query!r} routed as {intent.value}")

        if intent == QueryIntent.PATH_ONLY:
            return await self._safe(self.path_engine.search(query), "path")
        if intent == QueryIntent.SEMANTIC_ONLY:
            return await self._safe(self.semantic_engine.search(query), "semantic")

        path_results, semantic_results = await asyncio.gather(
            self._safe(self.path_engine.search(query), "path"),
            self._safe(self.semantic_engine.search(query), "semantic"),
        )
        return fuse_results(path_results, semantic_results)

    @staticmethod
    async def _safe(search, name: str) -> List[SearchResult]:
        try:
            return await search
        except Exception as e:
            logger.error(f"{name} search failed: {e}")
            return []
