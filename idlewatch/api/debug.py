"""Debug profiling endpoint.

Exposes thread stacks, heap allocation statistics and garbage collector
counters over HTTP while a scan is running. Only started with ``--profile``.
"""

import gc
import sys
import threading
import traceback
import tracemalloc

import structlog
import uvicorn
from fastapi import FastAPI, Query

logger = structlog.get_logger(__name__)

app = FastAPI(
    title="idlewatch debug",
    description="Runtime diagnostics for a running idlewatch process",
    docs_url=None,
    redoc_url=None,
    openapi_url=None,
)


@app.get("/debug/")
async def index() -> dict:
    """List available profiles."""
    return {
        "profiles": {
            "threads": "/debug/threads",
            "heap": "/debug/heap?limit=25",
            "gc": "/debug/gc",
        },
        "tracemalloc_enabled": tracemalloc.is_tracing(),
    }


@app.get("/debug/threads")
async def threads() -> dict:
    """Current stack of every thread."""
    names = {thread.ident: thread.name for thread in threading.enumerate()}
    stacks = []
    for ident, frame in sys._current_frames().items():
        stacks.append(
            {
                "thread_id": ident,
                "name": names.get(ident, "unknown"),
                "stack": traceback.format_stack(frame),
            }
        )
    return {"count": len(stacks), "threads": stacks}


@app.get("/debug/heap")
async def heap(limit: int = Query(default=25, ge=1, le=500)) -> dict:
    """
    Top allocation sites by size.

    Tracing starts on the first call, so the first response only covers
    allocations made since then.
    """
    if not tracemalloc.is_tracing():
        tracemalloc.start()
        logger.info("debug.tracemalloc_started")

    snapshot = tracemalloc.take_snapshot()
    stats = snapshot.statistics("lineno")[:limit]
    current, peak = tracemalloc.get_traced_memory()
    return {
        "current_bytes": current,
        "peak_bytes": peak,
        "top": [
            {"location": str(stat.traceback), "size_bytes": stat.size, "count": stat.count}
            for stat in stats
        ],
    }


@app.get("/debug/gc")
async def gc_stats() -> dict:
    """Garbage collector counters."""
    return {
        "enabled": gc.isenabled(),
        "counts": list(gc.get_count()),
        "thresholds": list(gc.get_threshold()),
        "objects": len(gc.get_objects()),
        "stats": gc.get_stats(),
    }


def start_profiling_server(host: str = "0.0.0.0", port: int = 6060) -> threading.Thread:
    """Serve the debug app on a daemon thread and return the thread."""
    server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="warning"))
    thread = threading.Thread(target=server.run, name="idlewatch-profiling", daemon=True)
    thread.start()
    logger.info(
        "debug.profiling_enabled",
        url=f"http://{host}:{port}/debug/",
        usage=f"curl http://localhost:{port}/debug/threads",
    )
    return thread
