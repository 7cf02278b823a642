from celery import Celery
from config import config

celery_app = Celery(
    "ab_testing_tasks",
    broker=config.celery_broker_url,
    backend=config.celery_backend_url,
    include=["celery_tasks.conversion_tasks"],
)

celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,

    # CELERY_TASK_ALWAYS_EAGER runs the event log insert inside the request
    task_always_eager=config.celery_task_always_eager,
    task_eager_propagates=True,

    # A conversion event is only acknowledged once its row is written
    task_acks_late=True,
    worker_prefetch_multiplier=1,

    # Publishing runs inside the convert request, keep the worst case short
    task_publish_retry=True,
    task_publish_retry_policy={
        'max_retries': 3,
        'interval_start': 0,
        'interval_step': 0.2,
        'interval_max': 0.5,
    },

    task_routes={
        'celery_tasks.conversion_tasks.*': {'queue': 'conversion-events'},
    },
)
