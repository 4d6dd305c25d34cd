"""
API du moteur d'intelligence: matches acheteurs, prédictions, churn,
propension et scores vendeurs. Les calculs lourds tournent dans les
workers RQ (voir worker.py / app/scheduler.py).
"""
import time

import redis
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from rq.exceptions import NoSuchJobError
from rq.job import Job

from app.core.config import ALLOWED_ORIGINS, LOG_LEVEL, MATCH_NOTIFY_THRESHOLD, MATCH_THRESHOLD, REDIS_URL
from app.core.logging import get_logger, set_trace_id, setup_logging
from app.routers.intelligence import router as intelligence_router
from app.routers.matches import router as matches_router

setup_logging(level=LOG_LEVEL)
logger = get_logger(__name__)

API_VERSION = "1.0.0"
API_TITLE = "Deal Intelligence API"

app = FastAPI(
    title=API_TITLE,
    version=API_VERSION,
    description="Buyer/product matching, reorder predictions, churn and propensity scoring",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "X-Response-Time"],
)


@app.middleware("http")
async def trace_requests(request: Request, call_next):
    """Propage X-Request-ID comme trace_id et mesure la durée."""
    trace_id = set_trace_id(request.headers.get("X-Request-ID"))
    started = time.perf_counter()

    response = await call_next(request)

    elapsed_ms = (time.perf_counter() - started) * 1000
    response.headers["X-Request-ID"] = trace_id
    response.headers["X-Response-Time"] = f"{elapsed_ms:.2f}ms"

    if request.url.path != "/health":
        logger.info(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=elapsed_ms,
        )
    return response


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/v1/info")
def api_info():
    return {
        "name": API_TITLE,
        "version": API_VERSION,
        "status": "operational",
        "match_threshold": MATCH_THRESHOLD,
        "notify_threshold": MATCH_NOTIFY_THRESHOLD,
    }


@app.get("/jobs/{job_id}")
def get_job_status(job_id: str):
    """Statut d'un job mis en file (génération de matches, batchs)."""
    try:
        job = Job.fetch(job_id, connection=redis.from_url(REDIS_URL))
    except NoSuchJobError:
        raise HTTPException(status_code=404, detail="Job not found")
    except redis.RedisError:
        raise HTTPException(status_code=503, detail="Job queue unavailable")

    status = {"job_id": job.id, "status": job.get_status()}
    if job.is_finished:
        status["result"] = job.result
    if job.is_failed:
        status["error"] = "job failed"
    return status


app.include_router(intelligence_router)  # /v1/intelligence/*
app.include_router(matches_router)       # /v1/matches/*
