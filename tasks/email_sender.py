# tasks/email_sender.py
"""
Celery integration for issue delivery

The delivery queue lives in the relational store, not in the broker: Celery
only provides scheduling. ``drain_delivery_queue`` runs the same claim,
deliver and delete step as the long-running worker until the queue is empty,
and Celery beat triggers it periodically. Any number of drains and workers can
overlap safely on PostgreSQL because every claim is a row lock.

Run standalone with ``celery -A tasks.email_sender worker -Q issue_delivery``
and ``celery -A tasks.email_sender beat``; settings come from the same
environment-based configuration as the web process.
"""

from typing import Any, Dict, Optional

from celery import Celery
from celery.signals import setup_logging, task_prerun, task_postrun, task_failure
from celery.utils.log import get_task_logger
from kombu import Queue

from config import load_config
from core.database import create_database_engine, create_session_factory
from core.email_client import EmailClient
from core.logging_setup import configure_logging
from tasks.delivery_worker import DeliveryWorker, ExecutionOutcome

# Configure task logger
logger = get_task_logger(__name__)

worker_config = load_config()


def beat_schedule(config) -> Dict[str, Any]:
    """
    Periodic drain of the delivery queue

    Empty when the web process runs its own worker thread, so a deployment
    has one drainer per database unless it opts into several on PostgreSQL.
    """
    if config.get('DELIVERY_WORKER_IN_PROCESS'):
        return {}
    return {
        'drain-delivery-queue': {
            'task': 'tasks.email_sender.drain_delivery_queue',
            'schedule': config.get('DELIVERY_DRAIN_SCHEDULE', 30.0),
        },
    }


celery_app = Celery('newsletter_delivery')
celery_app.conf.update({
    # Broker and Result Backend
    'broker_url': worker_config['CELERY_BROKER_URL'],
    'result_backend': worker_config['CELERY_RESULT_BACKEND'],
    'beat_schedule': beat_schedule(worker_config),

    # Serialization
    'task_serializer': 'json',
    'result_serializer': 'json',
    'accept_content': ['json'],

    # Timezone
    'timezone': 'UTC',
    'enable_utc': True,

    # Task Execution
    'task_acks_late': True,
    'task_reject_on_worker_lost': True,
    'worker_prefetch_multiplier': 1,
    'result_expires': 3600,  # 1 hour

    # Routing
    'task_default_queue': 'default',
    'task_queues': (
        Queue('issue_delivery', routing_key='issue_delivery'),
        Queue('default', routing_key='default'),
    ),
    'task_routes': {
        'tasks.email_sender.drain_delivery_queue': {'queue': 'issue_delivery'},
    },

    # Logging stays with our own handlers
    'worker_hijack_root_logger': False,
    'worker_log_color': False,
})

_delivery_worker: Optional[DeliveryWorker] = None


@setup_logging.connect
def setup_worker_logging(**kwargs):
    """Celery worker and beat log through the service's own handlers"""
    configure_logging(worker_config)


def configure_celery(app, worker: DeliveryWorker) -> Celery:
    """Point Celery at the app's broker and bind the app's worker to the drain task"""
    global _delivery_worker
    _delivery_worker = worker

    celery_app.conf.update({
        'broker_url': app.config['CELERY_BROKER_URL'],
        'result_backend': app.config['CELERY_RESULT_BACKEND'],
        'beat_schedule': beat_schedule(app.config),
    })
    app.logger.info("Celery configured for issue delivery")
    return celery_app


def build_delivery_worker(config) -> DeliveryWorker:
    session_factory = create_session_factory(create_database_engine(config))
    return DeliveryWorker.from_config(config, session_factory, EmailClient.from_config(config))


def get_delivery_worker() -> DeliveryWorker:
    """The app's worker, or one built from the environment in a standalone Celery process"""
    global _delivery_worker
    if _delivery_worker is None:
        _delivery_worker = build_delivery_worker(worker_config)
        logger.info("Delivery worker built for the Celery process")
    return _delivery_worker


@celery_app.task(bind=True)
def drain_delivery_queue(self, max_tasks: int = 1000) -> Dict[str, Any]:
    """
    Deliver queued tasks until the queue is empty or ``max_tasks`` is reached

    Stops early on a deferred task or an unexpected error; the task stays
    queued for the next run.
    """
    worker = get_delivery_worker()
    completed = 0
    stopped_by = 'max_tasks'

    while completed < max_tasks:
        try:
            outcome = worker.try_execute_task()
        except Exception as e:
            logger.error(f"Drain {self.request.id} stopped on error: {e}", exc_info=True)
            stopped_by = 'error'
            break
        if outcome is ExecutionOutcome.TASK_COMPLETED:
            completed += 1
            continue
        stopped_by = outcome.value
        break

    logger.info(f"Drain {self.request.id} resolved {completed} tasks ({stopped_by})")
    return {'completed': completed, 'stopped_by': stopped_by}


# Celery signal handlers for monitoring
@task_prerun.connect
def task_prerun_handler(sender=None, task_id=None, task=None, args=None, kwargs=None, **extra):
    logger.info(f"Task {task.name} [{task_id}] starting")


@task_postrun.connect
def task_postrun_handler(sender=None, task_id=None, task=None, args=None, kwargs=None,
                         retval=None, state=None, **extra):
    logger.info(f"Task {task.name} [{task_id}] completed with state: {state}")


@task_failure.connect
def task_failure_handler(sender=None, task_id=None, exception=None, einfo=None, **extra):
    logger.error(f"Task {sender.name} [{task_id}] failed: {exception}")
