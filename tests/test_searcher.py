"""
Search Tests - Verify query routing, semantic lookup and hybrid fusion.

Tests:
- Intent heuristics
- Score fusion weights
- Degradation to empty results on engine failure
- Semantic search over indexed documents
"""

import pytest

from deskfind.indexer import DocumentIndexer
from deskfind.models import QueryIntent, SearchResult, SearchSource
from deskfind.scanner import Scanner
from deskfind.searcher import SearchCoordinator, detect_intent, fuse_results
from deskfind.semantic_search import SemanticSearchEngine


def path_hit(path, score):
    return SearchResult(path=path, name=path.rsplit("/", 1)[-1], score=score, source=SearchSource.PATH)


def semantic_hit(path, score, file_id=1):
    return SearchResult(
        path=path, name=path.rsplit("/", 1)[-1], score=score, source=SearchSource.SEMANTIC,
        file_id=file_id, distance=1.0 - score, chunk_ids=[11],
    )


class FakeEngine:
    def __init__(self, results=None, error=None):
        self.results = results or []
        self.error = error
        self.queries = []

    async def search(self, query):
        self.queries.append(query)
        if self.error:
            raise self.error
        return list(self.results)


class TestDetectIntent:
    """Tests for detect_intent."""

    def test_path_separators(self):
        assert detect_intent("C:\\Users\\me\\notes.txt") == QueryIntent.PATH_ONLY
        assert detect_intent("projects/2024 plans for the team") == QueryIntent.PATH_ONLY

    def test_wildcards_and_extensions(self):
        assert detect_intent("*.pdf") == QueryIntent.PATH_ONLY
        assert detect_intent("annual report final.docx") == QueryIntent.PATH_ONLY

    def test_short_queries(self):
        assert detect_intent("budget report") == QueryIntent.PATH_ONLY

    def test_cue_words_are_hybrid(self):
        assert detect_intent("notes about the project meeting") == QueryIntent.HYBRID

    def test_long_free_text_is_semantic(self):
        assert detect_intent("quarterly financial planning overview") == QueryIntent.SEMANTIC_ONLY

    def test_default_is_hybrid(self):
        assert detect_intent("red big car") == QueryIntent.HYBRID


class TestFuseResults:
    """Tests for fuse_results."""

    def test_weights(self):
        """Both sources fuse 0.6/0.4; path-only stays, semantic-only is scaled."""
        fused = fuse_results(
            [path_hit("/a.txt", 10.0), path_hit("/b.txt", 10.0)],
            [semantic_hit("/a.txt", 0.8), semantic_hit("/c.txt", 0.8, file_id=2)],
        )

        by_path = {r.path: r for r in fused}
        assert by_path["/a.txt"].score == pytest.approx(10 * 0.6 + 0.8 * 0.4)
        assert by_path["/a.txt"].source == SearchSource.HYBRID
        assert by_path["/a.txt"].chunk_ids == [11]
        assert by_path["/b.txt"].score == pytest.approx(10.0)
        assert by_path["/c.txt"].score == pytest.approx(0.8 * 0.4)
        assert [r.path for r in fused] == ["/b.txt", "/a.txt", "/c.txt"]


class TestSearchCoordinator:
    """Tests for routing and failure handling."""

    @pytest.mark.asyncio
    async def test_path_only_skips_semantic(self):
        path, semantic = FakeEngine([path_hit("/a.txt", 1.0)]), FakeEngine()
        coordinator = SearchCoordinator(path, semantic)

        results = await coordinator.search("a.txt")

        assert [r.path for r in results] == ["/a.txt"]
        assert semantic.queries == []

    @pytest.mark.asyncio
    async def test_semantic_only(self):
        path, semantic = FakeEngine(), FakeEngine([semantic_hit("/a.txt", 0.9)])
        coordinator = SearchCoordinator(path, semantic)

        results = await coordinator.search("quarterly financial planning overview")

        assert results[0].score == pytest.approx(0.9)
        assert path.queries == []

    @pytest.mark.asyncio
    async def test_failing_engine_degrades(self):
        """A failing engine contributes nothing instead of raising."""
        path = FakeEngine([path_hit("/notes/meeting.txt", 1.0)])
        semantic = FakeEngine(error=RuntimeError("vector table locked"))
        coordinator = SearchCoordinator(path, semantic)

        results = await coordinator.search("notes about the meeting")

        assert [r.path for r in results] == ["/notes/meeting.txt"]

    @pytest.mark.asyncio
    async def test_empty_query(self):
        coordinator = SearchCoordinator(FakeEngine(), FakeEngine())

        assert await coordinator.search("   ") == []


class TestSemanticSearch:
    """Tests for SemanticSearchEngine against indexed documents."""

    @pytest.mark.asyncio
    async def test_finds_closest_document(self, state, temp_dir):
        budget = temp_dir / "budget.txt"
        budget.write_text("The budget review meeting is on Monday.")
        (temp_dir / "pasta.txt").write_text("Cooking recipes with tomato sauce and basil.")
        scanner = Scanner(state)
        await scanner.scan([str(temp_dir)])
        scanner.close()
        await DocumentIndexer(state).process()

        results = await SemanticSearchEngine(state).search("budget review meeting")

        assert [r.path for r in results] == [str(budget)]
        top = results[0]
        assert top.source == SearchSource.SEMANTIC
        assert top.score == pytest.approx(1.0 - top.distance)
        assert top.distance <= state.config.semantic_max_distance
        assert top.chunk_ids

    @pytest.mark.asyncio
    async def test_unavailable_model_returns_empty(self, state, embedding_service):
        embedding_service.unavailable = True

        assert await SemanticSearchEngine(state).search("budget review meeting") == []
