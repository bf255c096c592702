"""Semantic search over indexed paragraphs.

Searches by meaning rather than keywords, suggests similar passages, and
discovers links between documents.
"""

import asyncio
import time
from typing import Any, Optional

from lectio.logging import get_logger, log_failure
from lectio.models.rag import (
    DocumentChunk,
    IndexingProgress,
    SearchResult,
    SimilarPassage,
    StoredVector,
)
from lectio.rag.embedder import EmbeddingGenerator
from lectio.rag.exceptions import InvalidInputError
from lectio.rag.vector_store import VectorStore

logger = get_logger("search")

SNIPPET_LENGTH = 200
SNIPPET_STEP = 10

# Simple synonym expansion for common research vocabulary
QUERY_EXPANSIONS = {
    "study": ["research", "analysis", "investigation"],
    "show": ["demonstrate", "reveal", "indicate"],
    "important": ["significant", "crucial", "key"],
    "method": ["approach", "technique", "methodology"],
}


def create_snippet(text: str, query: str, max_length: int = SNIPPET_LENGTH) -> str:
    """Cut the window of text that contains the most query terms.

    Text no longer than ``max_length`` is returned unchanged; otherwise the
    window is marked with ellipses where it was cut.
    """
    if len(text) <= max_length:
        return text

    terms = query.lower().split()
    text_lower = text.lower()

    best_position = 0
    max_matches = 0
    for position in range(0, len(text) - max_length, SNIPPET_STEP):
        window = text_lower[position : position + max_length]
        matches = sum(1 for term in terms if term in window)
        if matches > max_matches:
            max_matches = matches
            best_position = position

    snippet = text[best_position : best_position + max_length]
    if best_position > 0:
        snippet = "..." + snippet
    if best_position + max_length < len(text):
        snippet = snippet + "..."
    return snippet


def similarity_reason(similarity: float) -> str:
    """Human-readable description of a similarity score."""
    if similarity >= 0.9:
        return "Nearly identical content"
    if similarity >= 0.8:
        return "Very similar meaning"
    if similarity >= 0.7:
        return "Similar topics and concepts"
    if similarity >= 0.6:
        return "Related content"
    return "Somewhat related"


def expand_query(query: str) -> str:
    """Append related terms to a query, dropping duplicate words."""
    words = []
    for word in query.lower().split():
        words.append(word)
        words.extend(QUERY_EXPANSIONS.get(word, []))
    return " ".join(dict.fromkeys(words))


class SemanticSearchService:
    """Semantic search across documents indexed paragraph by paragraph."""

    def __init__(self, generator: EmbeddingGenerator, vector_store: VectorStore):
        self.generator = generator
        self.vector_store = vector_store
        self._progress: dict[str, IndexingProgress] = {}

    async def initialize(self) -> None:
        """Load the embedding model and open the vector store."""
        await asyncio.gather(self.generator.initialize(), self.vector_store.initialize())
        logger.info("Semantic search initialized")

    async def search(
        self,
        query: str,
        document_id: Optional[str] = None,
        threshold: float = 0.5,
        top_k: int = 20,
        expand: bool = False,
        include_context: bool = True,
    ) -> list[SearchResult]:
        """Search indexed paragraphs by meaning.

        Args:
            query: Search text
            document_id: Restrict the search to one document
            threshold: Minimum similarity
            top_k: Maximum number of results
            expand: Add related terms to the query before embedding
            include_context: Build a snippet around the query terms

        Returns:
            Results ranked from 1 by descending similarity
        """
        if not query or not query.strip():
            raise InvalidInputError("Search query must not be empty")

        start_time = time.perf_counter()
        search_text = expand_query(query) if expand else query
        query_embedding = await self.generator.embed(search_text)

        matches = await self.vector_store.find_similar(
            query_embedding.vector, threshold=threshold, top_k=top_k, document_id=document_id
        )

        results = [
            SearchResult(
                id=match.id,
                document_id=match.document_id,
                paragraph_id=match.paragraph_id,
                text=match.text,
                similarity=match.similarity,
                rank=rank,
                snippet=create_snippet(match.text, query) if include_context else match.text,
                metadata=match.metadata,
            )
            for rank, match in enumerate(matches, start=1)
        ]

        logger.debug(
            f"Search returned {len(results)} results in "
            f"{(time.perf_counter() - start_time) * 1000:.2f}ms"
        )
        return results

    async def find_similar_passages(
        self,
        source_text: str,
        document_id: Optional[str] = None,
        threshold: float = 0.6,
        top_k: int = 10,
    ) -> list[SimilarPassage]:
        """Find indexed passages similar to a piece of text.

        Passages whose text equals the source text are skipped.
        """
        if not source_text:
            raise InvalidInputError("Source text must not be empty")

        source_embedding = await self.generator.embed(source_text)
        matches = await self.vector_store.find_similar(
            source_embedding.vector,
            threshold=threshold,
            top_k=top_k + 1,
            document_id=document_id,
        )

        passages = [
            SimilarPassage(
                source_id="source",
                target_id=match.id,
                target_paragraph_id=match.paragraph_id,
                source_text=source_text,
                target_text=match.text,
                similarity=match.similarity,
                reason=similarity_reason(match.similarity),
            )
            for match in matches
            if match.text != source_text
        ]
        return passages[:top_k]

    async def index_paragraphs(
        self,
        document_id: str,
        paragraphs: list[DocumentChunk],
        metadata: Optional[dict[str, Any]] = None,
    ) -> IndexingProgress:
        """Embed and store a document's paragraphs.

        Progress is tracked per document and left in the ``error`` state
        if indexing fails.

        Returns:
            Final indexing progress
        """
        progress = IndexingProgress(
            document_id=document_id, total_paragraphs=len(paragraphs), status="indexing"
        )
        self._progress[document_id] = progress

        try:
            batch = await self.generator.embed_batch([p.text for p in paragraphs])
            now = time.time()
            vectors = [
                StoredVector(
                    id=f"{document_id}-{paragraph.id}",
                    document_id=document_id,
                    paragraph_id=paragraph.id,
                    text=paragraph.text,
                    vector=embedding.vector,
                    metadata={**(metadata or {}), "position": paragraph.position},
                    timestamp=now,
                )
                for paragraph, embedding in zip(paragraphs, batch.embeddings)
            ]
            await self.vector_store.store_batch(vectors)
        except Exception as e:
            progress.status = "error"
            progress.error = getattr(e, "message", None) or str(e)
            log_failure(logger, "Indexing paragraphs", e, {"document_id": document_id})
            raise

        progress.indexed_paragraphs = len(paragraphs)
        progress.status = "completed"
        logger.info(
            f"Indexed {len(paragraphs)} paragraphs for {document_id} "
            f"({batch.cached} cached, {batch.computed} computed)"
        )
        return progress

    def get_indexing_progress(self, document_id: str) -> Optional[IndexingProgress]:
        """Indexing progress for a document, or None if never indexed."""
        return self._progress.get(document_id)

    async def delete_document_index(self, document_id: str) -> int:
        """Remove a document's paragraphs; returns the number removed."""
        removed = await self.vector_store.delete_by_document(document_id)
        self._progress.pop(document_id, None)
        return removed

    async def find_cross_document_links(
        self, document_ids: list[str], threshold: float = 0.7, per_paragraph: int = 5
    ) -> list[SimilarPassage]:
        """Suggest links between paragraphs of different documents.

        Each unordered pair of paragraphs is reported once.

        Returns:
            Suggestions sorted by descending similarity
        """
        links: list[SimilarPassage] = []
        seen_pairs: set[frozenset[str]] = set()

        for source_document_id in document_ids:
            for source in await self.vector_store.get_by_document(source_document_id):
                matches = await self.vector_store.find_similar(
                    source.vector,
                    threshold=threshold,
                    top_k=per_paragraph,
                    exclude_ids=[source.id],
                )

                for target in matches:
                    if target.document_id == source_document_id:
                        continue
                    pair = frozenset((source.id, target.id))
                    if pair in seen_pairs:
                        continue
                    seen_pairs.add(pair)

                    links.append(
                        SimilarPassage(
                            source_id=source.id,
                            target_id=target.id,
                            source_paragraph_id=source.paragraph_id,
                            target_paragraph_id=target.paragraph_id,
                            source_text=source.text,
                            target_text=target.text,
                            similarity=target.similarity,
                            reason=similarity_reason(target.similarity),
                        )
                    )

        links.sort(key=lambda link: link.similarity, reverse=True)
        logger.info(f"Found {len(links)} cross-document links across {len(document_ids)} documents")
        return links

    async def get_stats(self) -> dict[str, Any]:
        """Vector store and embedding cache statistics."""
        return {
            "vector_store": await self.vector_store.get_stats(),
            "cache": await self.generator.get_cache_stats(),
        }

    async def clear_cache(self) -> None:
        """Clear cached embeddings."""
        await self.generator.clear_cache()

    async def clear_all_indexes(self) -> None:
        """Remove every indexed paragraph."""
        await self.vector_store.clear()
        self._progress.clear()

    async def dispose(self) -> None:
        """Release the model and the store's cached state."""
        await self.generator.dispose()
        await self.vector_store.dispose()
