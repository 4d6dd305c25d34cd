"""
Scheduler - Jobs d'intelligence planifiés (rq-scheduler).

Ordre logique sur une journée: prédictions -> churn -> propension ->
scores vendeurs -> régénération des matches. Chaque run prend un verrou
de cron, un run qui chevauche le précédent est ignoré.
"""
from datetime import datetime, timedelta, timezone

import redis
from rq_scheduler import Scheduler

from app.core.config import REDIS_URL
from app.core.logging import get_logger
from app.jobs_intelligence import (
    generate_predictions_job,
    detect_churn_job,
    refresh_propensities_job,
    recalculate_seller_scores_job,
    regenerate_all_matches_job,
)

logger = get_logger(__name__)

# (job, délai du premier run en minutes, intervalle en secondes, queue)
SCHEDULED_JOBS = [
    (generate_predictions_job, 5, 86400, "default"),
    (detect_churn_job, 20, 86400, "default"),
    (refresh_propensities_job, 35, 21600, "low"),
    (recalculate_seller_scores_job, 50, 43200, "low"),
    (regenerate_all_matches_job, 65, 21600, "default"),
]


def _scheduler() -> Scheduler:
    return Scheduler(connection=redis.from_url(REDIS_URL), queue_name="default")


def setup_scheduled_jobs():
    """Replanifie tous les jobs (idempotent: les anciennes planifications sont annulées)."""
    scheduler = _scheduler()
    for job in scheduler.get_jobs():
        scheduler.cancel(job)

    now = datetime.now(timezone.utc)
    for func, delay_minutes, interval, queue_name in SCHEDULED_JOBS:
        scheduler.schedule(
            scheduled_time=now + timedelta(minutes=delay_minutes),
            func=func,
            kwargs={"lock": True},
            interval=interval,
            repeat=None,
            result_ttl=3600,
            queue_name=queue_name,
        )
        logger.info(f"Scheduled: {func.__name__} every {interval // 3600}h", queue=queue_name)

    logger.info(f"All intelligence jobs configured ({len(SCHEDULED_JOBS)})")
    return scheduler


def get_scheduled_jobs_info():
    jobs = []
    for job, next_run in _scheduler().get_jobs(with_times=True):
        jobs.append({
            "id": job.id,
            "func_name": job.func_name.rsplit(".", 1)[-1],
            "interval": job.meta.get("interval"),
            "next_run": next_run.isoformat() if next_run else None,
        })
    return jobs


if __name__ == "__main__":
    setup_scheduled_jobs()
