import os

from celery import Celery
from celery.schedules import crontab

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'creditledger.settings')

app = Celery('creditledger')
app.config_from_object('django.conf:settings', namespace='CELERY')
app.autodiscover_tasks()

CREDITS_QUEUE = 'credits'

# Ledger writes lock balance rows; keep them off the shared default queue
app.conf.task_routes = {
    'credits.tasks.*': {'queue': CREDITS_QUEUE},
}

app.conf.update(
    task_default_queue='default',
    task_queues={
        'default': {'exchange': 'default', 'routing_key': 'default'},
        CREDITS_QUEUE: {'exchange': CREDITS_QUEUE, 'routing_key': CREDITS_QUEUE},
    },
    task_serializer='json',
    result_serializer='json',
    accept_content=['json'],
    timezone='UTC',
    enable_utc=True,
    # A Stripe event must survive a worker crash mid-task
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=5 * 60,
    task_soft_time_limit=4 * 60,
    worker_prefetch_multiplier=1,
)

app.conf.beat_schedule = {
    'credits-expire-included-daily': {
        'task': 'credits.tasks.expire_included_credits_sweep',
        'schedule': crontab(hour=0, minute=15),
    },
    'credits-reconcile-balances-nightly': {
        'task': 'credits.tasks.reconcile_balances',
        'schedule': crontab(hour=2, minute=30),
    },
}
