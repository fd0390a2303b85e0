from __future__ import annotations

import asyncio
import logging
import shutil
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .configuration import AppConfig, load_config
from .content_store import LocalContentStore, S3ContentStore
from .conversion import ConversionPool
from .database import WorkItemDatabase
from .generator import DocumentGenerator
from .middleware import CorrelationIdMiddleware, get_correlation_id
from .models import WorkerStats
from .observability import TelemetrySink, configure_logging
from .poller import PollerService
from .store import DocgenStore
from .template_cache import TemplateCache, TemplateService
from .utils import ensure_directory

logger = logging.getLogger(__name__)


@dataclass
class WorkerContext:
    """Everything one worker process shares: cache, pool, store and poller."""

    config: AppConfig
    sink: TelemetrySink
    cache: TemplateCache
    templates: TemplateService
    conversion_pool: ConversionPool
    store: DocgenStore
    generator: DocumentGenerator
    poller: PollerService


def build_content_store(config: AppConfig):
    if config.storage.s3_bucket:
        return S3ContentStore(config.storage.s3_bucket, prefix=config.storage.s3_prefix)
    return LocalContentStore(ensure_directory(Path(config.storage.content_dir)))


def build_worker_context(
    config: Optional[AppConfig] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> WorkerContext:
    """
    Wire up the worker's components from configuration.

    Args:
        config: Application configuration (loaded from the environment if None)
        clock: Optional UTC clock shared by the store and the poller

    Returns:
        WorkerContext with every component constructed once
    """
    config = config or load_config()
    sink = TelemetrySink()
    cache = TemplateCache(config.cache.max_size_bytes)
    store = DocgenStore(
        WorkItemDatabase(Path(config.storage.database_path)),
        build_content_store(config),
        clock=clock,
    )
    templates = TemplateService(cache, store, sink)
    pool = ConversionPool(
        max_concurrent=config.conversion.max_concurrent,
        workdir=config.conversion.workdir,
        command=config.conversion.command,
        default_timeout=config.conversion.timeout_seconds,
        sink=sink,
    )
    generator = DocumentGenerator(
        templates,
        pool,
        image_allowlist=config.merge.image_allowlist,
        conversion_timeout=config.conversion.timeout_seconds,
    )
    poller = PollerService(store, generator, config.poller, sink, clock=clock)
    return WorkerContext(
        config=config,
        sink=sink,
        cache=cache,
        templates=templates,
        conversion_pool=pool,
        store=store,
        generator=generator,
        poller=poller,
    )


def get_context(request: Request) -> WorkerContext:
    return request.app.state.context


router = APIRouter()


@router.get("/healthz")
def healthcheck() -> Dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz")
def readiness(context: WorkerContext = Depends(get_context)) -> JSONResponse:
    converter_ready = shutil.which(context.config.conversion.command[0]) is not None
    try:
        store_ready = context.store.ping()
    except Exception:
        logger.exception("Store readiness check failed")
        store_ready = False

    ready = converter_ready and store_ready
    body = {"ready": ready, "checks": {"converter": converter_ready, "store": store_ready}}
    return JSONResponse(status_code=200 if ready else 503, content=body)


@router.post("/worker/start")
def start_worker(request: Request, context: WorkerContext = Depends(get_context)) -> Dict[str, Any]:
    correlation_id = get_correlation_id(request)
    try:
        context.poller.start()
    except RuntimeError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    logger.info(f"Poller started via API (correlation_id={correlation_id})")
    return {"message": "Poller started successfully", "is_running": True, "correlation_id": correlation_id}


@router.post("/worker/stop")
def stop_worker(request: Request, context: WorkerContext = Depends(get_context)) -> Dict[str, Any]:
    correlation_id = get_correlation_id(request)
    context.poller.stop()
    logger.info(f"Poller stopped via API (correlation_id={correlation_id})")
    return {"message": "Poller stopped successfully", "is_running": False, "correlation_id": correlation_id}


@router.get("/worker/status")
def worker_status(request: Request, context: WorkerContext = Depends(get_context)) -> Dict[str, Any]:
    stats = context.poller.get_stats()
    return {
        "is_running": stats.is_running,
        "current_queue_depth": stats.current_queue_depth,
        "last_poll_time": stats.last_poll_time,
        "correlation_id": get_correlation_id(request),
    }


@router.get("/worker/stats", response_model=WorkerStats)
def worker_stats(context: WorkerContext = Depends(get_context)) -> WorkerStats:
    return WorkerStats(
        poller=context.poller.get_stats(),
        cache=context.cache.stats(),
        conversion_pool=context.conversion_pool.stats(),
        telemetry=context.sink.snapshot(),
    )


def create_app(context: Optional[WorkerContext] = None) -> FastAPI:
    context = context or build_worker_context()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if context.config.poller.enabled:
            context.poller.start()
        try:
            yield
        finally:
            await asyncio.to_thread(context.poller.stop)

    app = FastAPI(title="Docgen Worker API", version="0.1.0", lifespan=lifespan)
    app.state.context = context

    allowed_origins = ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(CorrelationIdMiddleware)
    app.include_router(router)
    return app


app = create_app()


def run() -> None:
    config = app.state.context.config
    configure_logging(config.logging.level)
    uvicorn.run(app, host="0.0.0.0", port=8000)
