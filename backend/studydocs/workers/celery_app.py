"""
Celery Application Factory

Configures the Celery app for asynchronous document processing.
Broker: Redis by default (CELERY_BROKER_URL); RabbitMQ (amqp://) works unchanged.
Result backend: Redis; results are informational only, job state lives in PostgreSQL.

Queue topology:
  documents.processing   — one message per (document, job); consumed by the pipeline

Delivery guarantees:
  task_acks_late + reject_on_worker_lost give at-least-once delivery: a
  message is acknowledged only after the task returns, and redelivered if
  the worker dies mid-run. worker_prefetch_multiplier=1 keeps one document
  per worker process at a time.

Do not pass file bytes in task payloads; pass ids and load from storage in
the worker.
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import after_setup_logger, task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

from studydocs.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Queue and exchange definitions
# ---------------------------------------------------------------------------

PROCESSING_QUEUE = "documents.processing"
PROCESS_DOCUMENT_TASK = "studydocs.workers.tasks.process_document"

DOCUMENTS_EXCHANGE = Exchange("documents", type="direct", durable=True)

TASK_QUEUES = (
    Queue(
        PROCESSING_QUEUE,
        exchange=DOCUMENTS_EXCHANGE,
        routing_key=PROCESSING_QUEUE,
        durable=True,
    ),
)

TASK_ROUTES = {
    PROCESS_DOCUMENT_TASK: {"queue": PROCESSING_QUEUE},
}

# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app(settings: Settings | None = None) -> Celery:
    settings = settings or get_settings()
    app = Celery("studydocs")

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
        task_default_queue=PROCESSING_QUEUE,
        task_default_exchange="documents",
        task_default_routing_key=PROCESSING_QUEUE,

        # --- Reliability ---
        task_acks_late=True,            # ack only after task completes (redelivery on crash)
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,   # one document at a time per worker process

        # --- Timeouts (OCR alone may take 5 min) ---
        task_soft_time_limit=900,
        task_time_limit=960,

        # --- Result TTL: job history is kept in PostgreSQL, not here ---
        result_expires=7 * 24 * 3600,

        # --- Monitoring: lets inspect() report tasks waiting on a retry countdown ---
        worker_send_task_events=True,
        task_track_started=True,

        # --- Timezone ---
        timezone="UTC",
        enable_utc=True,

        # --- Worker ---
        worker_max_tasks_per_child=200,   # recycle workers to prevent memory bloat
    )

    app.autodiscover_tasks(["studydocs.workers"])

    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals: worker logging and task audit lines
# ---------------------------------------------------------------------------

@after_setup_logger.connect
def on_after_setup_logger(logger: logging.Logger, loglevel, **_):
    # Match the API's "time level name | message" format in worker output
    for handler in logger.handlers:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s | %(message)s")
        )
    logging.getLogger("studydocs").setLevel(get_settings().log_level.upper())


@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info(
        "Task start | task_id=%s task=%s doc=%s job=%s",
        task_id, task.name,
        kwargs.get("document_id", "?"),
        kwargs.get("job_id", "?"),
    )


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info(
        "Task end | task_id=%s task=%s state=%s doc=%s",
        task_id, task.name, state, kwargs.get("document_id", "?"),
    )


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task failed | task_id=%s doc=%s error=%s",
        task_id, (kwargs or {}).get("document_id", "?"), exception,
        exc_info=True,
    )
