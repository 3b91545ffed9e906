"""
Celery Application Configuration

Configures Celery with:
- One durable queue for image tasks
- Late acknowledgment so the processor's directive decides ack / requeue / discard
- Prefetch credit of WORKER_CONCURRENCY unacknowledged deliveries per worker
"""

from celery import Celery
from celery.signals import setup_logging as celery_setup_logging
from kombu import Exchange, Queue

from imagemark.core.config import settings
from imagemark.core.logging import setup_logging

TASK_EXCHANGE = "imagemark_direct"

# Create Celery app
celery_app = Celery(
    "imagemark",
    broker=settings.broker_url,
    backend=settings.result_backend,
    include=[
        "imagemark.pipeline.tasks",
    ]
)

# Celery configuration
celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Task tracking
    task_track_started=False,
    task_time_limit=300,  # 5 minute hard limit
    task_soft_time_limit=270,

    # Worker settings: a bounded pool, one prefetched message per process
    worker_concurrency=settings.WORKER_CONCURRENCY,
    worker_prefetch_multiplier=1,

    # Queue definitions
    task_queues=(
        Queue(
            settings.TASK_QUEUE_NAME,
            Exchange(TASK_EXCHANGE, type="direct"),
            routing_key=settings.TASK_QUEUE_NAME,
            durable=True,
        ),
    ),
    task_default_queue=settings.TASK_QUEUE_NAME,

    # Task routing
    task_routes={
        "imagemark.pipeline.tasks.process_image": {
            "queue": settings.TASK_QUEUE_NAME,
            "routing_key": settings.TASK_QUEUE_NAME,
        },
    },

    # Late acknowledgment for reliability
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)


@celery_setup_logging.connect
def configure_worker_logging(**kwargs):
    """Use structlog in the worker instead of Celery's default handlers."""
    setup_logging(
        log_level=settings.LOG_LEVEL,
        json_format=settings.LOG_FORMAT_JSON
    )
