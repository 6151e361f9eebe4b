"""
DeskFind - Local-first file indexing and search.

Modules:
    - config: Infrastructure config and persisted user settings
    - registry: SQLite store for file records, embeddings and tasks
    - scanner: Parallel traversal and content-hash reconciliation
    - hasher: xxHash content hashing (file identity)
    - extractor: Document loaders (text, pdf, docx)
    - embedder: ONNX embedding service with TTL eviction
    - indexer: Document / image / audio indexing runs
    - normalizer: Raw watch events to canonical events
    - watcher: Debounced real-time change handling
    - path_search: In-memory keyword search over paths
    - semantic_search: Vector search over content and metadata
    - searcher: Query routing and score fusion
    - orchestrator: Main entry point

Flow:
    Scan → Hash (xxHash) → Extract → Chunk → Embed (ONNX) → Persist

Usage:
    from deskfind import Orchestrator

    orchestrator = Orchestrator()
    await orchestrator.start()
    await orchestrator.start_indexing(["/Users/me/Documents"])
    results = await orchestrator.search("notes about the budget review")
"""

from .orchestrator import Orchestrator

__all__ = ["Orchestrator"]
