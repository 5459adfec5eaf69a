"""
Celery application for payout and reconciliation work.

Beat:
  1st of the month 02:00 UTC  bulk payout run for the previous month
  every 30 minutes            grant access missing for succeeded payments
"""
from celery import Celery, signals
from celery.schedules import crontab

from marketplace.core.config import settings
from marketplace.core.logging import configure_logging

celery_app = Celery(
    "marketplace",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "marketplace.workers.tasks.payouts",
        "marketplace.workers.tasks.reconciliation",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    # dispatch must not be redelivered after a worker crash mid-transfer
    task_acks_late=False,
    worker_prefetch_multiplier=1,
    task_track_started=True,
    task_time_limit=3600,
    result_expires=7 * 86400,
    task_routes={
        "marketplace.workers.tasks.payouts.dispatch_payout": {"queue": "payouts"},
        "marketplace.workers.tasks.payouts.process_bulk_commission_payouts": {"queue": "payouts"},
    },
    beat_schedule={
        "monthly-commission-payouts": {
            "task": "marketplace.workers.tasks.payouts.schedule_monthly_payouts",
            "schedule": crontab(minute=0, hour=2, day_of_month=1),
        },
        "reconcile-product-access": {
            "task": "marketplace.workers.tasks.reconciliation.reconcile_product_access",
            "schedule": crontab(minute="*/30"),
        },
    },
)


@signals.setup_logging.connect
def _worker_logging(**kwargs):
    configure_logging()
