from celery import Celery

from imobcrm.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "imobcrm",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["imobcrm.notifications.tasks"],
)
# Publishing happens inside API requests: one connection attempt, no retry loop.
celery_app.conf.update(
    task_always_eager=settings.celery_task_always_eager,
    task_ignore_result=True,
    task_publish_retry=False,
    broker_connection_timeout=settings.celery_broker_timeout_seconds,
    broker_connection_retry=False,
    broker_transport_options={"max_retries": 0},
)
