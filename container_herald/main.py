"""
Container Herald v0.1

Mirrors Docker containers into Discord: one channel per container, one
status message per channel showing status and the latest log tail.

Two background loops run inside the FastAPI lifespan:
- Poller:     Docker → SharedSnapshot
- Reconciler: SharedSnapshot → Discord

The HTTP surface is read-only (/health, /status).
"""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from typing import List, Optional

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse

from . import __version__, config
from .discord_sink import DiscordSink
from .docker_source import DockerWorkloadSource, get_client
from .errors import HeraldError
from .poller import WorkloadPoller
from .reconciler import Reconciler
from .snapshot import SharedSnapshot

logger = logging.getLogger(__name__)


def setup_logging(level: str = config.LOG_LEVEL) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stdout,
    )


# ============================================================
# SERVICE STATE
# ============================================================

_snapshot: Optional[SharedSnapshot] = None
_poller: Optional[WorkloadPoller] = None
_reconciler: Optional[Reconciler] = None
_sink: Optional[DiscordSink] = None
_tasks: List[asyncio.Task] = []


def build_service(source=None, sink=None) -> None:
    """Wire snapshot, poller and reconciler from config."""
    global _snapshot, _poller, _reconciler, _sink

    _snapshot = SharedSnapshot()
    _sink = sink or DiscordSink(
        token=config.DISCORD_TOKEN,
        guild_id=config.DISCORD_GUILD_ID,
        api_base=config.DISCORD_API_BASE,
        timeout=config.SINK_TIMEOUT,
    )
    _poller = WorkloadPoller(
        source=source or DockerWorkloadSource(get_client()),
        snapshot=_snapshot,
        interval=config.POLL_INTERVAL,
        log_tail=config.LOG_TAIL_LINES,
        call_timeout=config.SOURCE_TIMEOUT,
        backoff_max=config.RETRY_BACKOFF_MAX,
    )
    _reconciler = Reconciler(
        sink=_sink,
        snapshot=_snapshot,
        guild_id=config.DISCORD_GUILD_ID,
        category_id=config.DISCORD_CATEGORY_ID,
        interval=config.RECONCILE_INTERVAL,
        warmup=config.RECONCILE_WARMUP,
        style=config.MESSAGE_STYLE,
        embed_limit=config.EMBED_LOG_LIMIT,
        text_limit=config.TEXT_LOG_LIMIT,
        adopt_existing=config.ADOPT_EXISTING_CHANNELS,
        backoff_max=config.RETRY_BACKOFF_MAX,
    )


# ============================================================
# LIFESPAN & BACKGROUND TASKS
# ============================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup & Shutdown lifecycle."""
    if _poller is None or _reconciler is None:
        build_service()

    _tasks.append(asyncio.create_task(_poller.run(), name="herald-poller"))
    _tasks.append(asyncio.create_task(_reconciler.run(), name="herald-reconciler"))
    logger.info("[Herald] Poller and reconciler started")

    yield

    for task in _tasks:
        task.cancel()
    await asyncio.gather(*_tasks, return_exceptions=True)
    _tasks.clear()
    if _sink is not None:
        await _sink.aclose()
    logger.info("[Herald] Shut down")


app = FastAPI(
    title="Container Herald",
    description="Mirrors Docker containers into Discord channels",
    version=__version__,
    lifespan=lifespan,
)


# ============================================================
# HEALTH & STATUS ENDPOINTS
# ============================================================

def _task_alive(name: str) -> bool:
    return any(t.get_name() == name and not t.done() for t in _tasks)


@app.get("/health")
async def health():
    """Loop liveness. 503 once the reconciler halted or a loop died."""
    halted = bool(_reconciler and _reconciler.halted)
    body = {
        "status": "halted" if halted else "ok",
        "poller": _task_alive("herald-poller"),
        "reconciler": _task_alive("herald-reconciler"),
    }
    if halted:
        body["reason"] = _reconciler.halt_reason
    if halted or not (body["poller"] and body["reconciler"]):
        return JSONResponse(status_code=503, content=body)
    return body


@app.get("/status")
async def status():
    """Snapshot and loop details."""
    snapshot = {}
    if _snapshot is not None:
        published = _snapshot.published_at
        snapshot = {
            "generation": _snapshot.generation,
            "published_at": published.isoformat() if published else None,
            "workloads": sorted(w.name for w in _snapshot.workloads().values()),
            "pending_removals": _snapshot.pending_count,
        }
    return {
        "version": __version__,
        "snapshot": snapshot,
        "poller": _poller.status() if _poller else None,
        "reconciler": _reconciler.status() if _reconciler else None,
    }


# ============================================================
# ENTRYPOINT
# ============================================================

def main() -> None:
    setup_logging()
    try:
        config.validate_config()
        get_client(timeout=int(config.SOURCE_TIMEOUT))
    except HeraldError as e:
        logger.critical(f"[Herald] Startup failed: {e}")
        sys.exit(1)

    uvicorn.run(
        app,
        host=config.STATUS_HOST,
        port=config.STATUS_PORT,
        log_level=config.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
