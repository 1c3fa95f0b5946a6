"""Celery application setup and worker process initialization."""

import logging

from celery import Celery, signals
from kombu import Queue

from comms_shared.enums import Priority

from comms_dispatch.config import CeleryConfig, DispatchConfig
from comms_dispatch.log import setup_logging
from comms_dispatch.runtime import DispatchRuntime, create_runtime

logger = logging.getLogger(__name__)

celery_config = CeleryConfig()

app = Celery("comms_dispatch", broker=celery_config.broker_url)

app.conf.update(
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_queues=[
        Queue(Priority.URGENT),
        Queue(Priority.HIGH),
        Queue(Priority.NORMAL),
        Queue(Priority.LOW),
    ],
    task_default_queue=Priority.NORMAL,
    beat_schedule={
        "process-due-retries": {
            "task": "comms_dispatch.tasks.process_due_retries",
            "schedule": celery_config.retry_sweep_interval_seconds,
            "options": {"queue": Priority.HIGH},
        },
    },
)

app.autodiscover_tasks(["comms_dispatch"])


@signals.worker_process_init.connect
def _init_worker(**_kwargs: object) -> None:
    """Build the dispatch runtime once per worker process."""
    dispatch_config = DispatchConfig()
    setup_logging(dispatch_config.log_level)
    app.conf.update(_runtime=create_runtime(dispatch_config))
    logger.info("Worker initialized")


@signals.worker_process_shutdown.connect
def _shutdown_worker(**_kwargs: object) -> None:
    """Release the runtime on worker shutdown."""
    runtime: DispatchRuntime | None = getattr(app.conf, "_runtime", None)
    if runtime is not None:
        runtime.close()
    logger.info("Worker shut down")
