"""
Celery Application Factory

Background side of the document pipeline.
Broker: RabbitMQ (amqp://) in production; Redis (redis://) works for local dev.
Result backend: Redis (optional — document state lives in PostgreSQL).

Queue topology:
  documents.ingest       — S3 ObjectCreated notifications → orchestrator
  documents.jobs         — async Textract job polling (beat, every 30 s)
  documents.maintenance  — retry replay (beat, 60 s) and expired-grant purge
                           (beat, hourly)

Task arguments are S3 event records and counters only; document bytes are
never passed through the broker.
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

from assessment_docs.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Queue and exchange definitions
# ---------------------------------------------------------------------------

DOCUMENTS_EXCHANGE = Exchange("documents", type="direct", durable=True)

TASK_QUEUES = (
    Queue(
        "documents.ingest",
        exchange=DOCUMENTS_EXCHANGE,
        routing_key="documents.ingest",
        queue_arguments={"x-max-priority": 10},
        durable=True,
    ),
    Queue(
        "documents.jobs",
        exchange=DOCUMENTS_EXCHANGE,
        routing_key="documents.jobs",
        durable=True,
    ),
    Queue(
        "documents.maintenance",
        exchange=DOCUMENTS_EXCHANGE,
        routing_key="documents.maintenance",
        durable=True,
    ),
)

TASK_ROUTES = {
    "assessment_docs.workers.tasks.process_storage_event":     {"queue": "documents.ingest"},
    "assessment_docs.workers.tasks.poll_extraction_jobs":      {"queue": "documents.jobs"},
    "assessment_docs.workers.tasks.requeue_pending_documents": {"queue": "documents.maintenance"},
    "assessment_docs.workers.tasks.purge_expired_uploads":     {"queue": "documents.maintenance"},
}

BEAT_SCHEDULE = {
    "poll-extraction-jobs-every-30s": {
        "task":     "assessment_docs.workers.tasks.poll_extraction_jobs",
        "schedule": 30,
        "options":  {"queue": "documents.jobs"},
    },
    "requeue-pending-documents-every-60s": {
        "task":     "assessment_docs.workers.tasks.requeue_pending_documents",
        "schedule": 60,
        "options":  {"queue": "documents.maintenance"},
    },
    "purge-expired-uploads-hourly": {
        "task":     "assessment_docs.workers.tasks.purge_expired_uploads",
        "schedule": 3600,
        "options":  {"queue": "documents.maintenance"},
    },
}


# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app() -> Celery:
    app = Celery("assessment_docs")

    app.conf.update(
        # --- Broker / Backend ---
        broker_url=settings.celery_broker_url,
        result_backend=settings.celery_result_backend,

        # --- Serialization (reject non-JSON messages) ---
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        event_serializer="json",

        # --- Queues ---
        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue="documents.ingest",
        task_default_exchange="documents",
        task_default_routing_key="documents.ingest",

        # --- Reliability ---
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,

        # --- Timeouts ---
        task_soft_time_limit=300,
        task_time_limit=360,

        result_expires=3600,

        timezone="UTC",
        enable_utc=True,

        beat_schedule=BEAT_SCHEDULE,

        worker_max_tasks_per_child=200,
    )

    app.autodiscover_tasks(["assessment_docs.workers"])

    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals — task lifecycle logging
# ---------------------------------------------------------------------------

@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info("Task start | task_id=%s task=%s", task_id, task.name)


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info(
        "Task end | task_id=%s task=%s state=%s result=%s",
        task_id, task.name, state, retval,
    )


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task failed | task_id=%s error=%s",
        task_id, exception,
        exc_info=True,
    )
