"""
Jobs d'intelligence - Points d'entrée RQ des batchs de scoring.

Chaque job:
1. Ouvre sa propre session et un nouveau trace_id
2. Optionnellement prend un verrou de cron (runs planifiés)
3. Retourne un dict de synthèse, ne lève jamais
"""
import time
from typing import Callable, Dict, Optional

import redis
from rq import Queue, get_current_job
from sqlalchemy.orm import Session

from app.core.config import REDIS_URL
from app.core.logging import get_logger, set_trace_id
from app.db.session import SessionLocal
from app.services.churn_service import detect_all_churn_signals
from app.services.matching_engine import generate_matches_for_product, regenerate_all_matches
from app.services.prediction_service import generate_predictions
from app.services.propensity_service import calculate_all_propensities
from app.services.seller_score_service import recalculate_all_seller_scores
from app.utils.cron_lock import with_cron_lock

logger = get_logger(__name__)


def _current_job_id() -> Optional[str]:
    job = get_current_job()
    return job.id if job else None


def _run_job(name: str, fn: Callable[[Session], Dict]) -> Dict:
    trace_id = set_trace_id()
    job_id = _current_job_id()
    start_time = time.perf_counter()

    logger.info(f"{name} started", job_id=job_id)

    session = SessionLocal()
    try:
        summary = fn(session)
        duration = time.perf_counter() - start_time
        logger.batch_done(name, duration_ms=duration * 1000, job_id=job_id, **summary)
        return {
            "status": "completed",
            **summary,
            "duration_seconds": round(duration, 2),
            "trace_id": trace_id,
        }
    except Exception as e:
        session.rollback()
        logger.error(f"{name} failed: {e}", job_id=job_id, error_type=type(e).__name__)
        return {
            "status": "error",
            "error": str(e)[:200],
            "duration_seconds": round(time.perf_counter() - start_time, 2),
            "trace_id": trace_id,
        }
    finally:
        session.close()


def _run(name: str, fn: Callable[[Session], Dict], lock: bool) -> Dict:
    if not lock:
        return _run_job(name, fn)
    try:
        return with_cron_lock(name, lambda: _run_job(name, fn))
    except redis.RedisError as e:
        logger.error(f"{name} lock unavailable: {e}", error_type=type(e).__name__)
        return {"status": "error", "error": f"lock unavailable: {e}"[:200]}


def regenerate_all_matches_job(lock: bool = False) -> Dict:
    return _run("regenerate_all_matches", regenerate_all_matches, lock)


def generate_matches_for_product_job(product_id: int) -> Dict:
    return _run_job(
        "generate_matches_for_product",
        lambda session: {"product_id": product_id, "matches_created": generate_matches_for_product(session, product_id)},
    )


def recalculate_seller_scores_job(lock: bool = False) -> Dict:
    return _run("recalculate_seller_scores", recalculate_all_seller_scores, lock)


def generate_predictions_job(lock: bool = False) -> Dict:
    return _run("generate_predictions", generate_predictions, lock)


def detect_churn_job(lock: bool = False) -> Dict:
    return _run("detect_churn_signals", detect_all_churn_signals, lock)


def refresh_propensities_job(lock: bool = False) -> Dict:
    return _run("refresh_propensities", calculate_all_propensities, lock)


def enqueue_match_generation(product_id: Optional[int] = None) -> Dict:
    """Met en file une génération de matches (un produit ou tous)."""
    queue = Queue("default", connection=redis.from_url(REDIS_URL))
    if product_id is None:
        job = queue.enqueue(regenerate_all_matches_job, job_timeout=3600, result_ttl=3600, failure_ttl=3600)
    else:
        job = queue.enqueue(
            generate_matches_for_product_job,
            product_id,
            job_timeout=600,
            result_ttl=3600,
            failure_ttl=3600,
        )
    return {"job_id": job.id, "queue": queue.name, "status": "enqueued"}
