from celery import Celery
from celery.schedules import crontab

from .config import get_settings
from .logging import configure_logging

settings = get_settings()
configure_logging()

celery_app = Celery(
    "research_engine",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
)

celery_app.conf.update(
    task_routes={
        "research_engine.services.orchestrator.run_research_job": {"queue": "research"},
        "research_engine.services.orchestrator.generate_leads_job": {"queue": "research"},
    },
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # Long-running runs: only ack once the task body returns so a crashed
    # worker hands the run to another worker, which replays from checkpoints.
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    imports=("research_engine.services.orchestrator", "research_engine.services.retention"),
    beat_schedule={
        "purge-expired-research-cache": {
            "task": "research_engine.services.retention.purge_expired_cache",
            "schedule": crontab(hour=3, minute=0),
        },
    },
)
