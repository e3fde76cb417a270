"""
Command-line interface for the notebook retrieval engine.

Usage:
    notebook-rag ingest <notebook> <file> [<file> ...]
    notebook-rag query <notebook> "question"
    notebook-rag search "query" [--notebooks nb1 nb2]
    notebook-rag related <notebook> <source>
    notebook-rag delete-source <notebook> <source>
    notebook-rag delete-notebook <notebook>
    notebook-rag status
    notebook-rag download-model
"""

import argparse
import json
import logging
import re
import sys
from pathlib import Path

from dotenv import load_dotenv
from loguru import logger

from . import __version__
from .rag import ConfigService, IndexTracker, InMemoryCatalog, NotebookRAGService

TABULAR_SUFFIXES = {'.csv', '.tsv'}


class InterceptHandler(logging.Handler):
    """Route standard-library log records into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def configure_logging(verbose: bool = False, log_file: str = None) -> None:
    """Send all output through loguru (stderr, plus an optional log file)."""
    level = "DEBUG" if verbose else "INFO"
    logger.remove()
    logger.add(sys.stderr, level=level, format="<level>{level: <8}</level> | {message}")
    if log_file:
        logger.add(
            log_file,
            format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{line} | {message}",
            level="DEBUG",
            enqueue=True,
        )
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)


def source_id_for(path: Path) -> str:
    """Derive a path-safe source id from a file name."""
    return re.sub(r'[^A-Za-z0-9_.-]+', '_', path.stem).strip('._') or 'source'


def build_service() -> NotebookRAGService:
    config_service = ConfigService()
    config = config_service.current()
    tracker = IndexTracker(config.index_tracker_file)

    # Titles recorded at ingestion time stand in for a metadata store
    catalog = InMemoryCatalog()
    for entry in tracker.entries():
        catalog.add_notebook(entry['notebook_id'], entry['notebook_id'])
        if entry.get('title'):
            catalog.add_source(entry['source_id'], entry['title'])

    return NotebookRAGService(config_service, catalog=catalog, index_tracker=tracker)


def title_map_for(service: NotebookRAGService, notebook_id: str) -> dict:
    return {
        entry['source_id']: entry['title']
        for entry in service.pipeline.index_tracker.entries(notebook_id)
        if entry.get('title')
    }


def emit(payload, as_json: bool) -> None:
    if as_json:
        print(json.dumps(payload, indent=2, default=str))


def cmd_ingest(service: NotebookRAGService, args) -> int:
    paths = [Path(p) for p in args.files]
    if args.source_id and len(paths) > 1:
        logger.error("--source-id can only be used with a single file")
        return 2

    failures = 0
    results = []
    for path in paths:
        if not path.is_file():
            logger.error(f"File not found: {path}")
            failures += 1
            continue

        text = path.read_text(encoding='utf-8', errors='replace')
        result = service.ingest_source(
            args.notebook,
            args.source_id or source_id_for(path),
            text,
            tabular=args.tabular or path.suffix.lower() in TABULAR_SUFFIXES,
            title=args.title or path.name,
            force_reindex=args.force,
        )
        results.append(result.to_dict())

        if not result.success:
            failures += 1
            logger.error(f"✗ {path.name}: {result.error_message}")
        elif result.skipped:
            logger.info(f"- {path.name}: skipped ({result.skip_reason})")
        else:
            logger.success(
                f"✓ {path.name}: {result.chunks_created} chunks "
                f"({result.embedding_model}, {result.processing_time_seconds:.2f}s)"
            )

    emit(results, args.json)
    return 1 if failures else 0


def cmd_query(service: NotebookRAGService, args) -> int:
    result = service.query_or_empty(
        args.notebook,
        args.question,
        source_ids=args.sources or None,
        title_map=title_map_for(service, args.notebook),
        agentic=not args.standard,
    )

    if args.json:
        emit({'context': result.context, 'citations': [c.to_dict() for c in result.citations]}, True)
    elif result.is_empty:
        logger.warning("No relevant context found")
    else:
        print(result.context)
        print("\nCitations:")
        for i, citation in enumerate(result.citations, start=1):
            page = f" p.{citation.page_number}" if citation.page_number else ""
            print(f"  [{i}] {citation.source_title}{page}: {citation.chunk_text[:80]}")

    if args.show_metrics:
        for line in service.metrics.summary_lines():
            logger.info(line)
    return 0


def cmd_search(service: NotebookRAGService, args) -> int:
    hits = service.search_across_notebooks(args.query, args.notebooks or None, args.limit)
    if args.json:
        emit([hit.__dict__ for hit in hits], True)
        return 0
    if not hits:
        logger.warning("No results")
    for hit in hits:
        print(f"{hit.score:.3f}  {hit.notebook_title} / {hit.source_title}")
        print(f"       {hit.text[:120]}")
    return 0


def cmd_related(service: NotebookRAGService, args) -> int:
    recommendations = service.find_related_sources(args.notebook, args.source, args.limit)
    if args.json:
        emit([rec.__dict__ for rec in recommendations], True)
        return 0
    if not recommendations:
        logger.warning("No related sources found in other notebooks")
    for rec in recommendations:
        print(f"{rec.score:.3f}  {rec.notebook_title} / {rec.source_title}")
    return 0


def cmd_delete_source(service: NotebookRAGService, args) -> int:
    if service.delete_source(args.notebook, args.source):
        logger.success(f"Deleted {args.notebook}/{args.source}")
    else:
        logger.info(f"Nothing stored for {args.notebook}/{args.source}")
    return 0


def cmd_delete_notebook(service: NotebookRAGService, args) -> int:
    if service.delete_notebook(args.notebook):
        logger.success(f"Deleted notebook {args.notebook}")
    else:
        logger.info(f"Nothing stored for notebook {args.notebook}")
    return 0


def cmd_status(service: NotebookRAGService, args) -> int:
    status = service.status()
    stale = service.pipeline.index_tracker.stale_entries(status['active_model'])
    status['stale_sources'] = [f"{e['notebook_id']}/{e['source_id']}" for e in stale]

    if args.json:
        emit(status, True)
        return 0

    store = status['vector_store']
    tracker = status['tracker']
    print(f"Active tier:   {status['active_tier']} ({status['active_model']})")
    print(f"Notebooks:     {store.get('notebooks', 0)}")
    print(f"Shards:        {store.get('shards', 0)} ({store.get('corrupt_shards', 0)} corrupt)")
    print(f"Chunks:        {store.get('chunks', 0)}")
    print(f"Models stored: {', '.join(store.get('embedding_models', [])) or '-'}")
    print(f"Tracked:       {tracker['total_sources_indexed']} sources")
    if stale:
        print(f"Stale:         {len(stale)} sources embedded with another model (run 'reembed')")
    return 0


def cmd_reembed(service: NotebookRAGService, args) -> int:
    results = service.reembed_stale()
    failures = [r for r in results if not r.success]
    for r in failures:
        logger.error(f"✗ {r.notebook_id}/{r.source_id}: {r.error_message}")
    logger.info(f"Re-embedded {len(results) - len(failures)} of {len(results)} stale sources")
    return 1 if failures else 0


def cmd_download_model(service: NotebookRAGService, args) -> int:
    model_name = service.config_service.current().local_model_name
    if service.download_local_model():
        logger.success(f"✓ Downloaded {model_name}")
        return 0
    logger.error(f"✗ Could not download {model_name}")
    return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='notebook-rag',
        description='Ground questions in your own documents: ingest, search and retrieve context',
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable debug output')
    parser.add_argument('--log-file', help='Also write detailed logs to this file')
    parser.add_argument('--json', action='store_true', help='Print machine-readable output')
    subparsers = parser.add_subparsers(dest='command', required=True)

    ingest = subparsers.add_parser('ingest', help='Chunk, embed and store text files')
    ingest.add_argument('notebook', help='Notebook id')
    ingest.add_argument('files', nargs='+', help='Plain-text files to ingest')
    ingest.add_argument('--source-id', help='Source id (single file only; default: file name)')
    ingest.add_argument('--title', help='Display title (default: file name)')
    ingest.add_argument('--tabular', action='store_true', help='Chunk row by row (CSV/TSV text)')
    ingest.add_argument('--force', action='store_true', help='Re-index even if up to date')
    ingest.set_defaults(func=cmd_ingest)

    query = subparsers.add_parser('query', help='Retrieve grounded context for a question')
    query.add_argument('notebook', help='Notebook id')
    query.add_argument('question', help='Question to ground')
    query.add_argument('--sources', nargs='*', help='Restrict to these source ids')
    query.add_argument('--standard', action='store_true', help='Single-query retrieval (no sub-queries)')
    query.add_argument('--show-metrics', action='store_true', help='Log retrieval metrics')
    query.set_defaults(func=cmd_query)

    search = subparsers.add_parser('search', help='Search across notebooks')
    search.add_argument('query', help='Search text')
    search.add_argument('--notebooks', nargs='*', help='Notebook ids (default: all)')
    search.add_argument('--limit', type=int, default=10, help='Maximum hits (default: 10)')
    search.set_defaults(func=cmd_search)

    related = subparsers.add_parser('related', help='Find related sources in other notebooks')
    related.add_argument('notebook', help='Notebook id')
    related.add_argument('source', help='Source id')
    related.add_argument('--limit', type=int, default=5, help='Maximum recommendations (default: 5)')
    related.set_defaults(func=cmd_related)

    delete_source = subparsers.add_parser('delete-source', help='Remove a source from a notebook')
    delete_source.add_argument('notebook', help='Notebook id')
    delete_source.add_argument('source', help='Source id')
    delete_source.set_defaults(func=cmd_delete_source)

    delete_notebook = subparsers.add_parser('delete-notebook', help='Remove a whole notebook')
    delete_notebook.add_argument('notebook', help='Notebook id')
    delete_notebook.set_defaults(func=cmd_delete_notebook)

    status = subparsers.add_parser('status', help='Show active tier and index statistics')
    status.set_defaults(func=cmd_status)

    reembed = subparsers.add_parser('reembed', help='Re-embed sources stored under another model')
    reembed.set_defaults(func=cmd_reembed)

    download = subparsers.add_parser('download-model', help='Download the on-device embedding model')
    download.set_defaults(func=cmd_download_model)

    return parser


def main(argv=None) -> int:
    """Main CLI entry point."""
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose, args.log_file)

    try:
        service = build_service()
        return args.func(service, args)
    except ValueError as e:
        logger.error(f"Invalid argument: {e}")
        return 2
    except Exception as e:
        logger.exception(f"Command failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
