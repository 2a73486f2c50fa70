from collections import defaultdict
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError, SQLAlchemyError

from giftsync.api.deps import SessionFactoryDep
from giftsync.api.routes import selections
from giftsync.core.config import settings
from giftsync.core.errors import AuthenticationError, InvalidSelectionError, RemoteStoreError
from giftsync.core.logger import configure_logging, request_id_var
from giftsync.core.selection_metrics import selection_metrics
from giftsync.db.session import create_schema, engine


logger = configure_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        db_url = make_url(settings.postgres_dsn)
        logger.info(
            "DB config driver=%s host=%s database=%s",
            db_url.get_backend_name(),
            db_url.host,
            db_url.database,
        )
    except ArgumentError:
        logger.warning("DB config parse failed", exc_info=True)
    await create_schema(engine)
    logger.info(
        "GiftSync started environment=%s remote_backend=%s local_cache=%s",
        settings.environment,
        settings.remote_backend_enabled,
        settings.local_cache_backend,
    )
    yield
    await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    description="Gift selection sync between the local cache and the gift store",
    version="0.1.0",
    lifespan=lifespan,
)

metrics = {
    "requests_total": 0,
    "errors_total": 0,
    "latency_total_ms": 0.0,
    "by_path": defaultdict(lambda: {"count": 0, "errors": 0, "latency_total_ms": 0.0}),
}


def _record_request(path: str, duration_ms: float, error: bool) -> None:
    metrics["requests_total"] += 1
    metrics["latency_total_ms"] += duration_ms
    path_metrics = metrics["by_path"][path]
    path_metrics["count"] += 1
    path_metrics["latency_total_ms"] += duration_ms
    if error:
        metrics["errors_total"] += 1
        path_metrics["errors"] += 1


@app.middleware("http")
async def tracing_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    token = request_id_var.set(request_id)
    start = perf_counter()
    try:
        response = await call_next(request)
    except Exception:
        duration_ms = (perf_counter() - start) * 1000.0
        _record_request(request.url.path, duration_ms, True)
        logger.exception(
            "Request failed method=%s path=%s duration_ms=%.2f",
            request.method,
            request.url.path,
            duration_ms,
        )
        request_id_var.reset(token)
        raise

    duration_ms = (perf_counter() - start) * 1000.0
    _record_request(request.url.path, duration_ms, response.status_code >= 500)
    logger.info(
        "Request completed method=%s path=%s status=%s duration_ms=%.2f",
        request.method,
        request.url.path,
        response.status_code,
        duration_ms,
    )
    request_id_var.reset(token)
    response.headers["X-Request-Id"] = request_id
    return response


@app.exception_handler(AuthenticationError)
async def authentication_error_handler(request: Request, exc: AuthenticationError):
    logger.info("Unauthenticated selection call path=%s", request.url.path)
    return JSONResponse(status_code=401, content={"detail": str(exc) or "Not authenticated", "step": exc.step})


@app.exception_handler(InvalidSelectionError)
async def invalid_selection_handler(request: Request, exc: InvalidSelectionError):
    return JSONResponse(status_code=422, content={"detail": str(exc), "step": exc.step})


@app.exception_handler(RemoteStoreError)
async def remote_store_error_handler(request: Request, exc: RemoteStoreError):
    logger.warning("Remote store unavailable path=%s error=%s", request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": "Gift store unavailable", "step": exc.step})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


app.include_router(selections.router)


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/health/db")
async def health_db(session_factory: SessionFactoryDep):
    try:
        async with session_factory() as session:
            result = await session.execute(select(1))
            return {"status": "ok", "database": str(result.scalar())}
    except (SQLAlchemyError, OSError) as e:
        logger.exception("DB health check failed")
        return JSONResponse(status_code=500, content={"status": "error", "error": str(e)})


@app.get("/metrics")
async def get_metrics() -> dict[str, object]:
    by_path = {
        path: {
            "count": data["count"],
            "errors": data["errors"],
            "avg_latency_ms": data["latency_total_ms"] / data["count"] if data["count"] else 0.0,
        }
        for path, data in metrics["by_path"].items()
    }
    return {
        "requests_total": metrics["requests_total"],
        "errors_total": metrics["errors_total"],
        "avg_latency_ms": (
            metrics["latency_total_ms"] / metrics["requests_total"] if metrics["requests_total"] else 0.0
        ),
        "by_path": by_path,
    }


@app.get("/metrics/selections")
async def get_selection_metrics() -> dict[str, object]:
    return selection_metrics.snapshot()
