import asyncio
import signal
from typing import List, Optional

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn
from rich.table import Table
from rich.text import Text
from rich.tree import Tree

from chatiq_kb.errors import CrawlError, EmbeddingError
from chatiq_kb.log import setup_rich_logging
from chatiq_kb.search.answer import answer_question
from chatiq_kb.search.deterministic import DEFAULT_DETERMINISTIC_TOP_K, DeterministicRetriever
from chatiq_kb.search.embedding import LiteLLMEmbeddingClient
from chatiq_kb.search.retrieval import DEFAULT_PIN_LIMIT, DEFAULT_TOP_K, Retriever
from chatiq_kb.search.store import (
    PgChunkLookup,
    PgConversationStore,
    PgFullTextSearch,
    PgVectorSearch,
    create_connection_pool,
)
from chatiq_kb.site_crawler.crawl import discover_urls
from chatiq_kb.site_crawler.types import (
    DEFAULT_DELAY_MS,
    DEFAULT_MAX_DEPTH,
    DEFAULT_MAX_PAGES,
    DEFAULT_TIMEOUT_MS,
    CrawlOptions,
    CrawlResult,
    UrlNode,
)

load_dotenv()
app = typer.Typer()
console = Console()


def _install_signal_handlers(cancel_event: asyncio.Event) -> List[int]:
    """Route SIGINT/SIGTERM to the crawl's cancel event."""
    loop = asyncio.get_running_loop()
    installed = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, cancel_event.set)
            installed.append(signum)
        except (NotImplementedError, RuntimeError):
            # not available on this platform or outside the main thread
            pass
    return installed


async def _discover(options: CrawlOptions, show_progress: bool = True) -> CrawlResult:
    cancel_event = asyncio.Event()
    installed = _install_signal_handlers(cancel_event)
    try:
        with Progress(
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            console=console,
            disable=not show_progress,
        ) as progress:
            if show_progress:
                setup_rich_logging(progress)
            else:
                setup_rich_logging()
            task_id = progress.add_task("[cyan]Crawling pages...", total=1, completed=0)

            def on_page(url: str, total: int, queued: int):
                progress.update(task_id, description=f"[cyan]{url}", advance=1, total=total)

            return await discover_urls(options, cancel_event=cancel_event, on_page=on_page)
    finally:
        loop = asyncio.get_running_loop()
        for signum in installed:
            loop.remove_signal_handler(signum)


def _render_node(node: UrlNode, branch: Tree):
    for child in node.children:
        label = Text(child.url) if not child.title else Text.assemble(child.title, " ", (child.url, "dim"))
        _render_node(child, branch.add(label))


@app.command()
def discover(
    base_url: str,
    max_depth: int = typer.Option(DEFAULT_MAX_DEPTH, min=0, help="Maximum link depth from the base URL"),
    allow_path_prefix: Optional[str] = typer.Option(None, help="Only follow paths under this prefix (default: base path)"),
    sitemap: bool = typer.Option(True, "--sitemap/--no-sitemap", help="Seed the crawl from /sitemap.xml"),
    delay_ms: int = typer.Option(DEFAULT_DELAY_MS, min=0, help="Pause between requests in milliseconds"),
    timeout_ms: int = typer.Option(DEFAULT_TIMEOUT_MS, min=1, help="Per-request timeout in milliseconds"),
    max_pages: int = typer.Option(DEFAULT_MAX_PAGES, min=1, help="Maximum number of URLs to discover"),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON"),
):
    """
    Discover the importable pages of a website.

    Usage:
        chatiq-kb discover https://example.com/docs --max-depth 2 --max-pages 50
    """
    options = CrawlOptions(
        base_url=base_url,
        max_depth=max_depth,
        allow_path_prefix=allow_path_prefix,
        use_sitemap=sitemap,
        delay_ms=delay_ms,
        timeout_ms=timeout_ms,
        max_pages=max_pages,
    )
    try:
        result = asyncio.run(_discover(options, show_progress=not as_json))
    except CrawlError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)

    if as_json:
        typer.echo(result.model_dump_json(indent=2))
        return

    tree = Tree(Text(result.root.title or result.root.url))
    _render_node(result.root, tree)
    console.print(tree)
    console.print(f"{result.total} URLs discovered")
    if result.cancelled:
        console.print("[yellow]Crawl was cancelled before it finished[/yellow]")
    if result.errors:
        console.print(f"[yellow]{len(result.errors)} pages could not be reached[/yellow]")
        for error in result.errors:
            console.print(f"  {error}", markup=False)


def _build_retriever(pool) -> Retriever:
    return Retriever(
        embedder=LiteLLMEmbeddingClient(),
        vector_search=PgVectorSearch(pool),
        context_store=PgConversationStore(pool),
        chunk_lookup=PgChunkLookup(pool),
    )


async def _retrieve(
    team_id: str,
    bot_id: str,
    query: str,
    conversation_id: Optional[str],
    languages: Optional[List[str]],
    top_k: int,
    pin_limit: int,
    deterministic: bool,
):
    pool = await create_connection_pool()
    try:
        if deterministic:
            return await DeterministicRetriever(PgFullTextSearch(pool)).retrieve(team_id, bot_id, query, top_k=top_k)
        result = await _build_retriever(pool).retrieve(
            team_id,
            bot_id,
            query,
            conversation_id=conversation_id,
            preferred_languages=languages,
            top_k=top_k,
            pin_limit=pin_limit,
        )
        return result.chunks
    finally:
        await pool.close()


@app.command()
def retrieve(
    team_id: str,
    bot_id: str,
    query: str,
    conversation_id: Optional[str] = typer.Option(None, help="Conversation whose pinned context is used"),
    language: Optional[List[str]] = typer.Option(None, help="Preferred language tag (repeatable)"),
    top_k: Optional[int] = typer.Option(None, help="Number of chunks to retrieve"),
    pin_limit: int = typer.Option(DEFAULT_PIN_LIMIT, help="Maximum pinned chunks per conversation"),
    deterministic: bool = typer.Option(False, help="Use full-text search instead of embeddings"),
):
    """
    Retrieve the knowledge chunks a bot would use to answer a query.
    """
    setup_rich_logging()
    if top_k is None:
        top_k = DEFAULT_DETERMINISTIC_TOP_K if deterministic else DEFAULT_TOP_K

    try:
        chunks = asyncio.run(
            _retrieve(team_id, bot_id, query, conversation_id, language, top_k, pin_limit, deterministic)
        )
    except EmbeddingError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)

    if not chunks:
        console.print("[yellow]No matches found[/yellow]")
        return

    table = Table(title=f"{len(chunks)} chunks")
    table.add_column("Source")
    table.add_column("Score", justify="right")
    table.add_column("Lang")
    table.add_column("URL")
    table.add_column("Content")
    for chunk in chunks:
        table.add_row(
            chunk.source,
            f"{chunk.similarity:.3f}" if chunk.similarity is not None else "-",
            chunk.language or chunk.document_language or "-",
            Text(chunk.canonical_url or "-"),
            Text(chunk.content[:120]),
        )
    console.print(table)


async def _ask(team_id: str, bot_id: str, question: str, conversation_id: Optional[str]):
    pool = await create_connection_pool()
    try:
        return await answer_question(
            question,
            team_id,
            bot_id,
            retriever=_build_retriever(pool),
            deterministic_retriever=DeterministicRetriever(PgFullTextSearch(pool)),
            conversation_id=conversation_id,
        )
    finally:
        await pool.close()


@app.command()
def ask(
    team_id: str,
    bot_id: str,
    question: str,
    conversation_id: Optional[str] = typer.Option(None, help="Conversation whose pinned context is used"),
):
    """
    Answer a question from a bot's knowledge.
    """
    setup_rich_logging()
    answer = asyncio.run(_ask(team_id, bot_id, question, conversation_id))
    typer.echo(answer.content)
    if answer.reference_urls:
        typer.echo("=" * 80)
        for url in answer.reference_urls:
            typer.echo(url)


def main():
    app()


if __name__ == "__main__":
    main()
