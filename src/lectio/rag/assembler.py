"""Retrieval-augmented context assembly.

Indexes documents as overlapping chunks, retrieves the most relevant
chunks for a query, optionally reranks them, and packs them into a
token budget as citation-annotated prompt context.
"""

import dataclasses
import logging
import time
from typing import Any, Optional

from lectio.config import get_model_context_limit, get_settings
from lectio.logging import get_logger, log_failure
from lectio.models.rag import (
    BatchItemError,
    BatchOperationResult,
    DocumentChunk,
    HealthStatus,
    IndexStats,
    PreparedPrompt,
    RAGChunk,
    RAGContext,
    RAGDocument,
    RerankScore,
    StoredVector,
    VectorMatch,
)
from lectio.rag.chunking import chunk_text, estimate_token_count
from lectio.rag.embedder import EmbeddingGenerator
from lectio.rag.exceptions import InvalidInputError, LectioError, RAGError, RerankError
from lectio.rag.reranker import Reranker
from lectio.rag.vector_store import VectorStore
from lectio.utils import process_batch_concurrent

logger = get_logger("assembler")

DEFAULT_MODEL = "claude-sonnet-4-20250514"

# Reserved for system prompt (~500), user query (~200) and response (~2000)
RESERVED_TOKENS = 500 + 200 + 2000
SAFETY_MARGIN = 0.1

DEFAULT_SYSTEM_PROMPT = """You are a helpful assistant that answers questions based on the provided context.
Always cite your sources using the [Source X] format when referencing information from the context.
If the context doesn't contain enough information to fully answer the question, acknowledge this limitation."""

USER_PROMPT_TEMPLATE = """Context:
{context}

Question: {question}

Please provide a comprehensive answer based on the context above, citing specific sources."""


def validate_document(document: RAGDocument) -> None:
    """Check a document before indexing.

    Raises:
        InvalidInputError: If the id or text is missing, or a supplied chunk
            lacks an id, text, or position
    """
    if not document.id or not document.text:
        raise InvalidInputError("Document must have id and text fields")

    if document.chunks is not None:
        for chunk in document.chunks:
            if not chunk.id or not chunk.text or chunk.position is None:
                raise InvalidInputError("Chunk must have id, text, and position fields")


def _check_rerank_indices(scores: list[RerankScore], candidate_count: int) -> None:
    """Reject scores that point outside the candidates or repeat a candidate."""
    seen: set[int] = set()
    for item in scores:
        if not 0 <= item.index < candidate_count:
            raise RerankError(
                f"Rerank index {item.index} out of range for {candidate_count} candidates"
            )
        if item.index in seen:
            raise RerankError(f"Rerank index {item.index} returned more than once")
        seen.add(item.index)


class RAGContextAssembler:
    """Builds retrieval-augmented context from indexed documents."""

    def __init__(
        self,
        generator: EmbeddingGenerator,
        vector_store: VectorStore,
        reranker: Optional[Reranker] = None,
        chunk_size: Optional[int] = None,
        chunk_overlap: Optional[int] = None,
        top_k: Optional[int] = None,
        min_relevance: Optional[float] = None,
        rerank_candidates: Optional[int] = None,
        rerank_threshold: Optional[float] = None,
        context_token_budget: Optional[int] = None,
        batch_size: Optional[int] = None,
    ):
        """Initialize the assembler.

        Args:
            generator: Embeds chunks and queries
            vector_store: Holds indexed chunk vectors
            reranker: Optional second-pass scorer
            chunk_size: Words per chunk when splitting documents
            chunk_overlap: Words shared between consecutive chunks
            top_k: Chunks returned per query
            min_relevance: Minimum similarity for retrieved chunks
            rerank_candidates: Candidates submitted to the reranker
            rerank_threshold: Minimum reranked score kept
            context_token_budget: Default token budget for packed context
            batch_size: Documents indexed concurrently
        """
        settings = get_settings()
        self.generator = generator
        self.vector_store = vector_store
        self.reranker = reranker
        self.chunk_size = chunk_size or settings.chunk_size
        self.chunk_overlap = settings.chunk_overlap if chunk_overlap is None else chunk_overlap
        self.top_k = top_k or settings.rag_top_k
        self.min_relevance = settings.rag_min_relevance if min_relevance is None else min_relevance
        self.rerank_candidates = rerank_candidates or settings.rerank_candidates
        self.rerank_threshold = (
            settings.rerank_threshold if rerank_threshold is None else rerank_threshold
        )
        self.context_token_budget = context_token_budget or settings.context_token_budget
        self.batch_size = batch_size or settings.batch_size_indexing

    # Indexing

    def _chunks_for(
        self, document: RAGDocument, chunk_size: Optional[int], chunk_overlap: Optional[int]
    ) -> list[DocumentChunk]:
        if document.chunks is not None:
            return list(document.chunks)

        texts = chunk_text(
            document.text,
            chunk_size or self.chunk_size,
            self.chunk_overlap if chunk_overlap is None else chunk_overlap,
        )
        return [
            DocumentChunk(id=f"{document.id}-chunk-{i}", text=text, position=i)
            for i, text in enumerate(texts)
        ]

    async def index_document(
        self,
        document: RAGDocument,
        metadata: Optional[dict[str, Any]] = None,
        chunk_size: Optional[int] = None,
        chunk_overlap: Optional[int] = None,
    ) -> int:
        """Chunk, embed, and store a document, replacing earlier chunks.

        Chunks supplied on the document are used verbatim.

        Args:
            document: Document to index
            metadata: Extra metadata stored with every chunk
            chunk_size: Override the words per chunk
            chunk_overlap: Override the overlap between chunks

        Returns:
            Number of chunks indexed

        Raises:
            InvalidInputError: If the document fails validation
            RAGError: If embedding or storage fails
        """
        validate_document(document)
        chunks = self._chunks_for(document, chunk_size, chunk_overlap)

        try:
            batch = await self.generator.embed_batch([chunk.text for chunk in chunks])

            vectors = [
                StoredVector(
                    id=chunk.id,
                    document_id=document.id,
                    paragraph_id=chunk.id,
                    text=chunk.text,
                    vector=embedding.vector,
                    metadata={
                        **(metadata or {}),
                        "document_id": document.id,
                        "position": chunk.position,
                        "chunk_id": chunk.id,
                        "total_chunks": len(chunks),
                        **document.metadata,
                    },
                )
                for chunk, embedding in zip(chunks, batch.embeddings)
            ]

            await self.vector_store.replace_document(document.id, vectors)
        except LectioError as e:
            raise RAGError(
                f"Failed to index document {document.id}: {e.message}",
                {"document_id": document.id},
            ) from e

        logger.info(
            f"Indexed document {document.id}: {len(chunks)} chunks "
            f"({batch.cached} cached, {batch.computed} computed)"
        )
        return len(chunks)

    async def index_documents(
        self,
        documents: list[RAGDocument],
        metadata: Optional[dict[str, Any]] = None,
        chunk_size: Optional[int] = None,
        chunk_overlap: Optional[int] = None,
    ) -> BatchOperationResult:
        """Index documents, continuing past per-document failures."""
        result = BatchOperationResult(total=len(documents))

        async def index_one(item: tuple[int, RAGDocument]) -> Optional[BatchItemError]:
            index, document = item
            try:
                await self.index_document(document, metadata, chunk_size, chunk_overlap)
                return None
            except Exception as e:
                log_failure(logger, "Indexing document", e, {"index": index, "id": document.id})
                return BatchItemError(index=index, error=getattr(e, "message", None) or str(e))

        outcomes = await process_batch_concurrent(
            list(enumerate(documents)), index_one, batch_size=self.batch_size
        )

        for outcome in outcomes:
            if outcome is None:
                result.succeeded += 1
            else:
                result.failed += 1
                result.errors.append(outcome)

        logger.info(
            f"Indexed {result.succeeded}/{result.total} documents ({result.failed} failed)"
        )
        return result

    async def remove_document(self, document_id: str) -> int:
        """Delete every chunk of a document; returns the number removed."""
        try:
            return await self.vector_store.delete_by_document(document_id)
        except LectioError as e:
            raise RAGError(
                f"Failed to remove document {document_id}: {e.message}",
                {"document_id": document_id},
            ) from e

    # Retrieval

    async def _search(
        self,
        query: str,
        threshold: float,
        top_k: int,
        document_ids: Optional[list[str]] = None,
    ) -> list[RAGChunk]:
        if not query or not query.strip():
            raise InvalidInputError("Query must not be empty")

        query_vector = (await self.generator.embed(query)).vector

        if document_ids is None:
            matches = await self.vector_store.find_similar(
                query_vector, threshold=threshold, top_k=top_k
            )
        else:
            matches: list[VectorMatch] = []
            for document_id in dict.fromkeys(document_ids):
                matches.extend(
                    await self.vector_store.find_similar(
                        query_vector, threshold=threshold, top_k=top_k, document_id=document_id
                    )
                )
            matches.sort(key=lambda m: m.similarity, reverse=True)
            matches = matches[:top_k]

        return [
            RAGChunk(text=m.text, score=m.similarity, metadata=dict(m.metadata), id=m.id)
            for m in matches
        ]

    async def retrieve_context(
        self,
        query: str,
        top_k: Optional[int] = None,
        min_relevance: Optional[float] = None,
        rerank: bool = True,
        document_ids: Optional[list[str]] = None,
    ) -> RAGContext:
        """Retrieve the most relevant chunks for a query.

        When reranking is enabled and a reranker is attached, a wider
        candidate set is fetched and reranked before truncating to top_k.

        Args:
            query: Query text
            top_k: Number of chunks to return
            min_relevance: Minimum similarity of retrieved chunks
            rerank: Whether to rerank candidates
            document_ids: Restrict retrieval to these documents

        Returns:
            Retrieved context

        Raises:
            InvalidInputError: If the query is empty
            RAGError: If embedding or search fails
        """
        top_k = top_k or self.top_k
        min_relevance = self.min_relevance if min_relevance is None else min_relevance
        rerank = rerank and self.reranker is not None
        candidate_count = max(self.rerank_candidates, top_k) if rerank else top_k

        try:
            results = await self._search(query, min_relevance, candidate_count, document_ids)
        except InvalidInputError:
            raise
        except LectioError as e:
            raise RAGError(f"Failed to retrieve context: {e.message}", {"query": query}) from e

        if rerank and len(results) > top_k:
            results = await self.rerank_results(query, results)
        results = results[:top_k]

        logger.debug(f"Retrieved {len(results)} chunks for query")
        return RAGContext.from_chunks(results)

    async def retrieve_context_for_question(
        self, question: str, document_ids: list[str], top_k: Optional[int] = None
    ) -> RAGContext:
        """Retrieve context for a question from specific documents.

        The context lists the requested document ids even when some of
        them contributed no chunks.
        """
        top_k = top_k or self.top_k
        try:
            chunks = await self._search(
                question, get_settings().default_similarity_threshold, top_k, document_ids
            )
        except InvalidInputError:
            raise
        except LectioError as e:
            raise RAGError(
                f"Failed to retrieve context for question: {e.message}",
                {"document_ids": document_ids},
            ) from e

        return RAGContext(chunks=chunks, document_ids=list(document_ids))

    async def rerank_results(
        self,
        query: str,
        results: list[RAGChunk],
        threshold: Optional[float] = None,
        max_candidates: Optional[int] = None,
    ) -> list[RAGChunk]:
        """Rerank results, falling back to the original list on any failure.

        Reranked scores replace the similarity scores; items scoring below
        the threshold are dropped.
        """
        if self.reranker is None:
            return results

        threshold = self.rerank_threshold if threshold is None else threshold
        candidates = results[: max_candidates or self.rerank_candidates]

        try:
            scores = await self.reranker.rerank(query, [chunk.text for chunk in candidates])
            _check_rerank_indices(scores, len(candidates))
            reranked = [
                dataclasses.replace(candidates[item.index], score=item.score)
                for item in scores
                if item.score >= threshold
            ]
        except Exception as e:
            log_failure(
                logger,
                "Reranking",
                e,
                {"candidates": len(candidates), "fallback": "similarity order"},
                level=logging.WARNING,
            )
            return results

        reranked.sort(key=lambda chunk: chunk.score, reverse=True)
        return reranked

    # Budget and formatting

    def get_optimal_context_window(
        self, token_budget: Optional[int] = None, model: Optional[str] = None
    ) -> int:
        """Largest safe context size for a model and requested budget."""
        token_budget = self.context_token_budget if token_budget is None else token_budget
        model_limit = get_model_context_limit(model or DEFAULT_MODEL)

        available = min(token_budget, model_limit - RESERVED_TOKENS)
        return max(0, int(available * (1 - SAFETY_MARGIN)))

    def assemble_context_within_budget(
        self, chunks: list[RAGChunk], token_budget: int
    ) -> RAGContext:
        """Greedily pack the most relevant chunks into a token budget.

        Chunks are taken in descending score order until the next one would
        exceed the budget; no chunk is truncated.
        """
        assembled = []
        used_tokens = 0

        for chunk in sorted(chunks, key=lambda c: c.score, reverse=True):
            chunk_tokens = estimate_token_count(chunk.text)
            if used_tokens + chunk_tokens > token_budget:
                break
            assembled.append(chunk)
            used_tokens += chunk_tokens

        logger.debug(
            f"Packed {len(assembled)}/{len(chunks)} chunks into {used_tokens}/{token_budget} tokens"
        )
        return RAGContext.from_chunks(assembled)

    def format_context(self, context: RAGContext, question: Optional[str] = None) -> str:
        """Render context as numbered, citation-annotated sources.

        Args:
            context: Context to render
            question: Appended after the sources when given
        """
        sections = []
        for index, chunk in enumerate(context.chunks):
            document_id = chunk.document_id or "Unknown"
            position = chunk.position if chunk.position is not None else index
            sections.append(
                f"[Source {index + 1}] (Document: {document_id}, Position: {position}, "
                f"Relevance: {chunk.score * 100:.1f}%)\n{chunk.text}\n"
            )

        formatted = "\n---\n\n".join(sections)
        if question:
            formatted += f"\n\nQuestion: {question}"
        return formatted

    async def prepare_prompt(
        self,
        query: str,
        system_prompt: Optional[str] = None,
        token_budget: Optional[int] = None,
        model: Optional[str] = None,
        **retrieval_options: Any,
    ) -> PreparedPrompt:
        """Retrieve, pack, and format context into prompt text.

        Args:
            query: User question
            system_prompt: Overrides the default citation-oriented system prompt
            token_budget: Requested context budget
            model: Target model name, used to cap the budget
            **retrieval_options: Passed to retrieve_context

        Returns:
            System prompt, user prompt, and the packed context
        """
        retrieved = await self.retrieve_context(query, **retrieval_options)
        window = self.get_optimal_context_window(token_budget, model)
        context = self.assemble_context_within_budget(retrieved.chunks, window)

        user_prompt = USER_PROMPT_TEMPLATE.format(
            context=self.format_context(context), question=query
        )

        return PreparedPrompt(
            system_prompt=system_prompt or DEFAULT_SYSTEM_PROMPT,
            user_prompt=user_prompt,
            context=context,
        )

    # Monitoring

    async def get_index_stats(self) -> IndexStats:
        """Count indexed documents and chunks."""
        try:
            return IndexStats(
                total_documents=await self.vector_store.count_documents(),
                total_chunks=await self.vector_store.count(),
            )
        except LectioError as e:
            raise RAGError(f"Failed to get index stats: {e.message}") from e

    async def health_check(self) -> HealthStatus:
        """Run a probe query through the embed and search path.

        Reports ``degraded`` when the probe works but a cache tier has
        recorded errors.
        """
        start_time = time.perf_counter()

        try:
            probe = await self.generator.embed("health check")
            await self.vector_store.find_similar(probe.vector, threshold=-1.0, top_k=1)
        except Exception as e:
            return HealthStatus(
                status="unhealthy",
                latency_ms=(time.perf_counter() - start_time) * 1000,
                error=getattr(e, "message", None) or str(e),
            )

        latency_ms = (time.perf_counter() - start_time) * 1000

        cache_stats = await self.generator.get_cache_stats()
        if cache_stats is not None:
            failing = [t.name for t in cache_stats.tiers if t.read_errors or t.write_errors]
            if failing:
                return HealthStatus(
                    status="degraded",
                    latency_ms=latency_ms,
                    error=f"Cache tier errors: {', '.join(failing)}",
                )

        return HealthStatus(status="healthy", latency_ms=latency_ms)
