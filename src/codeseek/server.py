"""
codeseek - semantic code search for your codebases

An MCP server that indexes registered codebases into an in-memory vector
index and answers semantic, regex and file-name queries over them.
"""

import argparse
import asyncio
import io
import json
import logging
import os
import sys
import threading
from contextlib import asynccontextmanager
from functools import partial
from pathlib import Path

from dotenv import load_dotenv
from fastmcp import Context, FastMCP

# OpenTelemetry imports
from opentelemetry import trace, propagate
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

from codeseek import explore
from codeseek.codebases import MAX_FILE_SIZE, CodebaseRegistry, default_state_file
from codeseek.config import Settings, config_path, load_settings
from codeseek.embeddings import EXECUTOR, Embedder, backend_factory
from codeseek.index import DEFAULT_SEARCH_LIMIT, CodeSearch, IndexOptions

load_dotenv()

# Configure logging (stderr; stdout carries the MCP stdio transport)
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

logger = logging.getLogger("codeseek")

# ─────────────────────────────────────────────────────────────────────────────
# Service
# ─────────────────────────────────────────────────────────────────────────────

# Set by CLI args in main()
_cli_key_file: Path | None = None
_cli_config_file: Path | None = None

_settings: Settings | None = None
_service: CodeSearch | None = None
_service_lock = threading.Lock()


def build_service(
    settings: Settings,
    key_file: Path | None = None,
    state_file: Path | None = None,
) -> CodeSearch:
    """Wire registry, embedder and index together from settings."""
    registry = CodebaseRegistry(settings.codebases, state_file=state_file)
    embedder = Embedder(backend_factory(settings, key_file))
    return CodeSearch(
        registry,
        embedder,
        chunk_size=settings.chunk_size,
        chunk_overlap=settings.chunk_overlap,
        batch_size=settings.batch_size,
    )


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = load_settings(_cli_config_file)
    return _settings


def get_service() -> CodeSearch:
    """Get the process-wide CodeSearch, building it on first use."""
    global _service
    with _service_lock:
        if _service is None:
            _service = build_service(get_settings(), _cli_key_file, default_state_file())
            logger.info(
                "Loaded %d codebases (%s)", len(_service.registry.all()), get_settings().source
            )
        return _service


# ─────────────────────────────────────────────────────────────────────────────
# Server
# ─────────────────────────────────────────────────────────────────────────────

async def _stdin_watchdog() -> None:
    """Exit if the MCP client disconnects (stdin fd closed).

    Polls every 5s using os.fstat(). Uses fstat() rather than read() so no
    bytes are consumed from the MCP stdio transport stream.
    """
    try:
        fd = sys.stdin.fileno()
    except (ValueError, io.UnsupportedOperation):
        logger.warning("stdin has no fileno, watchdog disabled")
        return

    while True:
        await asyncio.sleep(5)
        try:
            os.fstat(fd)
        except OSError:
            logger.info("stdin fd invalid, client disconnected, exiting")
            os._exit(0)


@asynccontextmanager
async def _codeseek_lifespan(app):
    """FastMCP lifespan: build the service and run the stdin watchdog."""
    get_service()
    task = asyncio.create_task(_stdin_watchdog())
    try:
        yield
    finally:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("stdin watchdog stopped")


mcp = FastMCP("codeseek", lifespan=_codeseek_lifespan)


def _dumps(payload: object) -> str:
    return json.dumps(payload, indent=2)


# ─────────────────────────────────────────────────────────────────────────────
# MCP Resources
# ─────────────────────────────────────────────────────────────────────────────


@mcp.resource("codeseek://info")
def get_server_info() -> str:
    """Server version, embedding configuration, and limits."""
    from codeseek import __version__

    settings = get_settings()
    service = get_service()
    info = {
        "version": __version__,
        "embedding": {
            "backend": settings.embedding_backend,
            "model": settings.embedding_model,
            "initialized": service.embedder.initialized,
            "dimensions": service.embedder.dimensions,
        },
        "chunking": {
            "chunk_size": settings.chunk_size,
            "chunk_overlap": settings.chunk_overlap,
            "batch_size": settings.batch_size,
        },
        "limits": {
            "max_file_size_mb": MAX_FILE_SIZE // (1024 * 1024),
            "default_search_limit": DEFAULT_SEARCH_LIMIT,
            "max_grep_results": explore.MAX_GREP_RESULTS,
            "max_find_results": explore.MAX_FIND_RESULTS,
        },
        "config_source": settings.source,
    }
    return _dumps(info)


@mcp.resource("codeseek://index/stats")
def get_index_stats() -> str:
    """Semantic index statistics (chunks per indexed codebase)."""
    service = get_service()
    names = service.list_indexed_collections()
    if not names:
        return _dumps({"message": "No codebases indexed. Use index_codebase first."})
    return _dumps({name: {"chunks": service.vector_index.count(name)} for name in names})


# ─────────────────────────────────────────────────────────────────────────────
# Semantic Search Tools
# ─────────────────────────────────────────────────────────────────────────────


@mcp.tool()
async def codebase_search(
    query: str,
    codebase_names: list[str] | None = None,
    limit: int = DEFAULT_SEARCH_LIMIT,
) -> str:
    """Semantic search across indexed codebases using embeddings.

    Returns code snippets that match the query by meaning. Searches every
    indexed codebase unless codebase_names is given.
    """
    try:
        results = await get_service().search(query, codebase_names, limit)
        return _dumps({"results": [r.to_dict() for r in results], "count": len(results)})
    except Exception as e:
        return f"Error: {e}"


@mcp.tool(timeout=300)
async def index_codebase(
    codebase_name: str,
    max_files: int | None = None,
    batch_size: int | None = None,
    skip_large_files: bool = True,
    dry_run: bool = False,
    ctx: Context | None = None,
) -> str:
    """Index a codebase for semantic search, replacing any previous index of it.

    Files are indexed in discovery order; pass max_files to index only the
    first N (call again with a larger value to extend coverage). dry_run
    counts files and chunks without calling the embedding API.
    """
    try:
        service = get_service()
        options = IndexOptions(
            max_files=max_files,
            batch_size=batch_size if batch_size is not None else service.batch_size,
            skip_large_files=skip_large_files,
            dry_run=dry_run,
        )

        # Create progress callback that uses MCP Context
        async def progress_callback(message: str, current: int = 0, total: int = 0) -> None:
            if ctx:
                await ctx.info(f"[Index] {message}")
                if total > 0:
                    await ctx.report_progress(progress=current, total=total)

        report = await service.index_codebase(codebase_name, options, progress_callback)
        return _dumps({"success": True, "codebase": codebase_name, **report.to_dict()})
    except Exception as e:
        if ctx:
            await ctx.error(f"Indexing {codebase_name} failed: {e}")
        return f"Error: {e}"


@mcp.tool()
def get_indexed_codebases() -> str:
    """List codebases that have been indexed for semantic search."""
    names = get_service().list_indexed_collections()
    return _dumps({"codebases": names, "count": len(names)})


@mcp.tool()
def clear_index(codebase_name: str | None = None) -> str:
    """Drop the semantic index of one codebase, or of all codebases.

    Clearing a codebase that has no index is a no-op.
    """
    try:
        get_service().clear_index(codebase_name)
        target = f'codebase "{codebase_name}"' if codebase_name else "all codebases"
        return _dumps({"success": True, "message": f"Cleared index for {target}"})
    except Exception as e:
        return f"Error: {e}"


# ─────────────────────────────────────────────────────────────────────────────
# Codebase Management Tools
# ─────────────────────────────────────────────────────────────────────────────


@mcp.tool()
def list_codebases() -> str:
    """List all registered codebases."""
    codebases = [{"name": n, "path": str(p)} for n, p in get_service().registry.all()]
    return _dumps({"codebases": codebases, "count": len(codebases)})


@mcp.tool()
def add_codebase(name: str, path: str) -> str:
    """Register a directory as a codebase under a unique name."""
    try:
        root = get_service().registry.add(name, path)
        return _dumps({
            "success": True,
            "message": f'Codebase "{name}" added successfully',
            "codebase": {"name": name, "path": str(root)},
        })
    except Exception as e:
        return f"Error: {e}"


@mcp.tool()
def remove_codebase(name: str) -> str:
    """Unregister a codebase and drop its semantic index."""
    try:
        service = get_service()
        service.registry.remove(name)
        service.vector_index.clear(name)
        return _dumps({"success": True, "message": f'Codebase "{name}" removed'})
    except Exception as e:
        return f"Error: {e}"


# ─────────────────────────────────────────────────────────────────────────────
# Text Exploration Tools
# ─────────────────────────────────────────────────────────────────────────────


@mcp.tool()
async def codebase_grep(
    pattern: str,
    codebase_names: list[str] | None = None,
    case_sensitive: bool = False,
    context_lines: int = explore.GREP_CONTEXT_LINES,
    max_results: int = explore.MAX_GREP_RESULTS,
) -> str:
    """Regex search across codebases. Returns matching lines with context."""
    try:
        loop = asyncio.get_running_loop()
        func = partial(
            explore.grep,
            get_service().registry,
            pattern,
            codebase_names,
            case_sensitive,
            context_lines,
            max_results,
        )
        results = await loop.run_in_executor(EXECUTOR, func)
        return _dumps({"results": [r.to_dict() for r in results], "count": len(results)})
    except Exception as e:
        return f"Error: {e}"


@mcp.tool()
async def find_files(
    pattern: str,
    codebase_names: list[str] | None = None,
    max_results: int = explore.MAX_FIND_RESULTS,
) -> str:
    """Find files by name or path (substring, or wildcard with * and ?)."""
    try:
        loop = asyncio.get_running_loop()
        func = partial(
            explore.find_files, get_service().registry, pattern, codebase_names, max_results
        )
        results = await loop.run_in_executor(EXECUTOR, func)
        return _dumps({"results": [r.to_dict() for r in results], "count": len(results)})
    except Exception as e:
        return f"Error: {e}"


@mcp.tool()
def read_file(
    codebase_name: str,
    file_path: str,
    start_line: int | None = None,
    end_line: int | None = None,
) -> str:
    """Read a file from a codebase, optionally a 1-indexed inclusive line range."""
    try:
        content = explore.read_file(
            get_service().registry, codebase_name, file_path, start_line, end_line
        )
        return _dumps(content.to_dict())
    except Exception as e:
        return f"Error: {e}"


# ─────────────────────────────────────────────────────────────────────────────
# Entry point
# ─────────────────────────────────────────────────────────────────────────────


def setup_otel(endpoint: str | None = None) -> None:
    """Configure OpenTelemetry for OTLP export using standard variables."""
    # Priority: 1. CLI Arg, 2. CODESEEK specific ENV, 3. Standard OTel ENV
    if not endpoint:
        endpoint = os.getenv("CODESEEK_OTEL_ENDPOINT") or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        return

    service_name = os.getenv("OTEL_SERVICE_NAME", "codeseek")

    logger.info("Configuring OpenTelemetry OTLP export for '%s' to %s", service_name, endpoint)
    resource = Resource(attributes={"service.name": service_name})
    provider = TracerProvider(resource=resource)

    # Insecure for local/internal collectors
    processor = BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, insecure=True))
    provider.add_span_processor(processor)
    trace.set_tracer_provider(provider)

    # Enable W3C Trace Context propagation
    propagate.set_global_textmap(TraceContextTextMapPropagator())


def main() -> None:
    global _cli_key_file, _cli_config_file
    parser = argparse.ArgumentParser(description="codeseek - semantic code search MCP server")
    parser.add_argument("--otel-endpoint", help="OTLP gRPC endpoint (e.g., localhost:4317)")
    parser.add_argument(
        "--api-key-file",
        type=Path,
        help="Path to file containing the Gemini API key",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help=f"Config file (default: {config_path()})",
    )
    args, _ = parser.parse_known_args()

    _cli_key_file = args.api_key_file
    _cli_config_file = args.config

    setup_otel(args.otel_endpoint)
    mcp.run()


if __name__ == "__main__":
    main()
