"""CLI interface for Lectio."""

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from lectio.config import get_settings
from lectio.logging import setup_logging

app = typer.Typer(
    name="lectio",
    help="Semantic retrieval and RAG context assembly over local documents",
)
console = Console()


def _run_async(coro):
    """Run async coroutine in sync context."""
    return asyncio.run(coro)


def _build_model():
    from lectio.rag.embedder import HashingEmbeddingModel, OpenAIEmbeddingModel

    settings = get_settings()
    if settings.embedding_backend == "openai":
        return OpenAIEmbeddingModel(model=settings.embedding_model)
    return HashingEmbeddingModel(dimensions=settings.embedding_dimensions)


@asynccontextmanager
async def _engine(principal: Optional[str] = None):
    """Wire up the generator, cache, store and assembler from settings."""
    from lectio.rag.assembler import RAGContextAssembler
    from lectio.rag.cache import TieredEmbeddingCache
    from lectio.rag.embedder import EmbeddingGenerator
    from lectio.rag.reranker import HttpReranker
    from lectio.rag.vector_store import VectorStore

    settings = get_settings()
    cache = TieredEmbeddingCache.from_settings(principal=principal)
    generator = EmbeddingGenerator(_build_model(), cache=cache)
    store = VectorStore()
    reranker = HttpReranker() if settings.reranker_url else None
    assembler = RAGContextAssembler(generator, store, reranker=reranker)

    try:
        yield assembler
    finally:
        await generator.dispose()
        await store.dispose()
        await cache.close()


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Configure logging for every command."""
    setup_logging(level="DEBUG" if verbose else get_settings().log_level)


@app.command()
def index(
    paths: list[Path] = typer.Argument(..., help="Text files to index (one document each)"),
    chunk_size: Optional[int] = typer.Option(None, "--chunk-size", help="Words per chunk"),
    chunk_overlap: Optional[int] = typer.Option(
        None, "--chunk-overlap", help="Words shared between consecutive chunks"
    ),
    principal: Optional[str] = typer.Option(
        None, "--principal", help="Identity for the shared remote cache"
    ),
):
    """
    Index text files for retrieval.

    Each file becomes one document whose id is the file name stem.
    Documents that fail are reported without stopping the batch.
    """
    from lectio.models.rag import RAGDocument

    documents = []
    for path in paths:
        if not path.is_file():
            console.print(f"[red]Not a file: {path}[/red]")
            raise typer.Exit(1)
        documents.append(
            RAGDocument(
                id=path.stem,
                text=path.read_text(encoding="utf-8"),
                metadata={"source_path": str(path)},
            )
        )

    async def run():
        async with _engine(principal) as assembler:
            return await assembler.index_documents(
                documents, chunk_size=chunk_size, chunk_overlap=chunk_overlap
            )

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
    ) as progress:
        progress.add_task(f"Indexing {len(documents)} documents...", total=None)
        result = _run_async(run())

    summary_table = Table(title="Indexing Summary")
    summary_table.add_column("Metric", style="cyan")
    summary_table.add_column("Count", style="magenta")
    summary_table.add_row("Documents", str(result.total))
    summary_table.add_row("Succeeded", str(result.succeeded))
    summary_table.add_row("Failed", str(result.failed))
    console.print(summary_table)

    for error in result.errors:
        console.print(f"[red]{documents[error.index].id}: {error.error}[/red]")

    if result.failed:
        raise typer.Exit(1)


@app.command()
def query(
    question: str = typer.Argument(..., help="Question to retrieve context for"),
    top_k: Optional[int] = typer.Option(None, "--top-k", "-k", help="Chunks to retrieve"),
    min_relevance: Optional[float] = typer.Option(
        None, "--min-relevance", help="Minimum similarity of retrieved chunks"
    ),
    budget: Optional[int] = typer.Option(None, "--budget", "-b", help="Context token budget"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Target model name"),
    documents: Optional[list[str]] = typer.Option(
        None, "--document", "-d", help="Restrict retrieval to these document ids"
    ),
    no_rerank: bool = typer.Option(False, "--no-rerank", help="Skip reranking"),
    principal: Optional[str] = typer.Option(
        None, "--principal", help="Identity for the shared remote cache"
    ),
):
    """
    Retrieve and print budget-packed, citation-annotated context.
    """
    from lectio.rag.exceptions import LectioError

    async def run():
        async with _engine(principal) as assembler:
            retrieved = await assembler.retrieve_context(
                question,
                top_k=top_k,
                min_relevance=min_relevance,
                rerank=not no_rerank,
                document_ids=documents or None,
            )
            window = assembler.get_optimal_context_window(budget, model)
            context = assembler.assemble_context_within_budget(retrieved.chunks, window)
            return context, assembler.format_context(context, question), window

    try:
        context, formatted, window = _run_async(run())
    except LectioError as e:
        console.print(f"[red]Error: {e.message}[/red]")
        raise typer.Exit(1)

    if not context.chunks:
        console.print("[yellow]No relevant context found.[/yellow]")
        raise typer.Exit(0)

    console.print(
        Panel(
            formatted,
            title=f"Context ({context.total_chunks} chunks, budget {window} tokens)",
        )
    )


@app.command()
def search(
    query_text: str = typer.Argument(..., metavar="QUERY", help="Search text"),
    document: Optional[str] = typer.Option(None, "--document", "-d", help="Document id"),
    threshold: float = typer.Option(0.5, "--threshold", "-t", help="Minimum similarity"),
    top_k: int = typer.Option(20, "--top-k", "-k", help="Maximum results"),
    expand: bool = typer.Option(False, "--expand", help="Expand the query with related terms"),
):
    """
    Search indexed chunks by meaning and print a ranked table.
    """
    from lectio.rag.search import SemanticSearchService

    async def run():
        async with _engine() as assembler:
            service = SemanticSearchService(assembler.generator, assembler.vector_store)
            return await service.search(
                query_text, document_id=document, threshold=threshold, top_k=top_k, expand=expand
            )

    results = _run_async(run())

    if not results:
        console.print("[yellow]No results.[/yellow]")
        raise typer.Exit(0)

    results_table = Table(title=f"Results for: {query_text}")
    results_table.add_column("#", style="dim", width=3)
    results_table.add_column("Document", style="cyan")
    results_table.add_column("Similarity", style="magenta", width=10)
    results_table.add_column("Snippet", max_width=80)

    for result in results:
        results_table.add_row(
            str(result.rank),
            result.document_id,
            f"{result.similarity:.3f}",
            result.snippet,
        )

    console.print(results_table)


@app.command()
def stats():
    """Show index, vector store and cache statistics."""

    async def run():
        async with _engine() as assembler:
            await assembler.generator.initialize()
            return (
                await assembler.get_index_stats(),
                await assembler.vector_store.get_stats(),
                await assembler.generator.get_cache_stats(),
            )

    index_stats, store_stats, cache_stats = _run_async(run())

    index_table = Table(title="Index")
    index_table.add_column("Metric", style="cyan")
    index_table.add_column("Value", style="magenta")
    index_table.add_row("Documents", str(index_stats.total_documents))
    index_table.add_row("Chunks", str(index_stats.total_chunks))
    index_table.add_row("Chunks per document", f"{index_stats.avg_chunks_per_document:.1f}")
    index_table.add_row("Vectors", str(store_stats.total_vectors))
    console.print(index_table)

    if cache_stats is not None:
        cache_table = Table(title="Embedding Cache")
        cache_table.add_column("Tier", style="cyan")
        cache_table.add_column("Entries", style="magenta")
        cache_table.add_column("Errors", style="red")
        for tier in cache_stats.tiers:
            cache_table.add_row(
                tier.name, str(tier.size), str(tier.read_errors + tier.write_errors)
            )
        console.print(cache_table)


@app.command()
def clear(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
    principal: Optional[str] = typer.Option(
        None, "--principal", help="Identity for the shared remote cache"
    ),
):
    """Delete every indexed vector and cached embedding."""
    if not yes:
        typer.confirm("Delete all indexed vectors and cached embeddings?", abort=True)

    async def run():
        async with _engine(principal) as assembler:
            await assembler.vector_store.clear()
            await assembler.generator.clear_cache()

    _run_async(run())
    console.print("[green]Index and cache cleared.[/green]")


@app.command()
def version():
    """Show version information."""
    from lectio import __version__

    console.print(f"Lectio v{__version__}")


if __name__ == "__main__":
    app()
