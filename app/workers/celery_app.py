"""
Celery application for background document processing.

Queues (direct exchange "processing"):
  processing.jobs          priority queue; one message per async job (payload: job_id only)
  processing.maintenance   beat-driven sweeps: republish stale queued jobs,
                           time out jobs stuck in processing
  system.health            worker liveness pings

Job state lives in processing_jobs. Celery results are informational and
expire after an hour.
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import task_failure, task_postrun, task_prerun, worker_ready
from kombu import Exchange, Queue

from app.core.config import settings

logger = logging.getLogger(__name__)

PROCESSING_EXCHANGE = Exchange("processing", type="direct", durable=True)

PROCESS_QUEUE = "processing.jobs"
SWEEP_QUEUE   = "processing.maintenance"
HEALTH_QUEUE  = "system.health"

# Hard kill follows the soft limit; the soft limit marks the job "timeout"
JOB_SOFT_TIME_LIMIT = settings.job_soft_time_limit_seconds
JOB_TIME_LIMIT      = settings.job_soft_time_limit_seconds + 60


def _queue(name: str, **kwargs) -> Queue:
    return Queue(name, exchange=PROCESSING_EXCHANGE, routing_key=name, durable=True, **kwargs)


def create_celery_app() -> Celery:
    app = Celery(
        "academic_ingestion",
        broker=settings.celery_broker_url,
        backend=settings.celery_result_backend,
        include=["app.workers.tasks"],
    )
    app.conf.update(
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],

        task_queues=(
            _queue(PROCESS_QUEUE, queue_arguments={"x-max-priority": 10}),
            _queue(SWEEP_QUEUE),
            _queue(HEALTH_QUEUE),
        ),
        task_routes={
            "app.workers.tasks.execute_processing_job": {"queue": PROCESS_QUEUE},
            "app.workers.tasks.requeue_stale_jobs":     {"queue": SWEEP_QUEUE},
            "app.workers.tasks.expire_stuck_jobs":      {"queue": SWEEP_QUEUE},
            "app.workers.tasks.health_check":           {"queue": HEALTH_QUEUE},
        },
        task_default_queue=PROCESS_QUEUE,
        task_default_exchange=PROCESSING_EXCHANGE.name,
        task_default_routing_key=PROCESS_QUEUE,
        task_queue_max_priority=10,
        task_default_priority=5,

        # A crashed worker must not lose the message; claims are CAS-guarded
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,

        task_soft_time_limit=JOB_SOFT_TIME_LIMIT,
        task_time_limit=JOB_TIME_LIMIT,
        result_expires=3600,

        timezone="UTC",
        enable_utc=True,

        beat_schedule={
            "requeue-stale-jobs": {
                "task":     "app.workers.tasks.requeue_stale_jobs",
                "schedule": float(settings.requeue_sweep_interval_seconds),
            },
            "expire-stuck-jobs": {
                "task":     "app.workers.tasks.expire_stuck_jobs",
                "schedule": float(settings.expire_sweep_interval_seconds),
            },
        },

        # PyMuPDF and mammoth keep large buffers alive; recycle children
        worker_max_tasks_per_child=50,
    )
    return app


celery_app = create_celery_app()


def _job_of(kwargs) -> str:
    return (kwargs or {}).get("job_id", "-")


@worker_ready.connect
def on_worker_ready(sender=None, **_):
    logger.info(
        "Worker ready | external=%s soft_limit=%ss",
        settings.external_service_configured, JOB_SOFT_TIME_LIMIT,
    )


@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info("Task start | task=%s id=%s job=%s", task.name, task_id, _job_of(kwargs))


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info("Task end | task=%s id=%s job=%s state=%s", task.name, task_id, _job_of(kwargs), state)


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error("Task crashed | id=%s job=%s error=%s", task_id, _job_of(kwargs), exception, exc_info=True)
