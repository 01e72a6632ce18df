"""
tasks/celery_app.py
Celery application instance, shared across all task modules.

Workers are started with:
    celery -A tasks.celery_app worker --loglevel=info --concurrency=4

Beat scheduler (periodic tasks):
    celery -A tasks.celery_app beat --loglevel=info
"""

from celery import Celery
from celery.schedules import crontab

from config.settings import settings

celery_app = Celery(
    "roadside_dispatch",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "tasks.membership_tasks",
    ],
)

# ── Configuration ─────────────────────────────────────────────────────────────

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="Asia/Kolkata",
    enable_utc=True,

    # Acknowledge after execution so a dying worker does not lose the run
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    result_expires=3600,

    task_routes={
        "tasks.membership_tasks.*": {"queue": "maintenance"},
    },

    worker_prefetch_multiplier=1,
)

# ── Periodic Tasks (Beat Schedule) ────────────────────────────────────────────

celery_app.conf.beat_schedule = {
    # Providers whose subscription ran out drop out of matching
    "expire-lapsed-subscriptions": {
        "task": "tasks.membership_tasks.expire_lapsed_subscriptions",
        "schedule": 900,  # every 15 minutes
    },

    # Monthly allowance reset for paid memberships
    # Runs nightly at 00:30 IST
    "reset-monthly-quotas": {
        "task": "tasks.membership_tasks.reset_monthly_quotas",
        "schedule": crontab(hour=19, minute=0),  # 00:30 IST = 19:00 UTC
    },
}
