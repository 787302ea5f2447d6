"""Celery configuration for scheduled feed syncs."""

from __future__ import annotations

import asyncio
import os

from celery import Celery

from app.utils.dates import timezone_name

broker_url = os.environ.get("REDIS_URL", "redis://redis:6379/0")
backend_url = os.environ.get("REDIS_URL", "redis://redis:6379/0")
sync_every_minutes = int(os.environ.get("SYNC_EVERY_MINUTES", "15"))

celery_app = Celery("feedsync", broker=broker_url, backend=backend_url)
celery_app.conf.timezone = timezone_name()
celery_app.conf.beat_schedule = {
    "sync-due-feeds": {
        "task": "app.jobs.sync.sync_due",
        "schedule": sync_every_minutes * 60.0,
    },
}


@celery_app.task(name="app.jobs.sync.sync_due")
def sync_due_task() -> dict:  # pragma: no cover - executed by worker
    from app.jobs.sync import run_due

    return asyncio.run(run_due()).as_dict()


@celery_app.task(name="app.jobs.sync.sync_all")
def sync_all_task() -> dict:  # pragma: no cover - executed by worker
    from app.jobs.sync import run_all

    return asyncio.run(run_all()).as_dict()


@celery_app.task(name="app.jobs.sync.sync_feed")
def sync_feed_task(feed_id: str) -> dict:  # pragma: no cover - executed by worker
    from app.jobs.sync import run_feed

    return asyncio.run(run_feed(feed_id)).as_dict()


@celery_app.task(name="app.jobs.sync.sync_tenant")
def sync_tenant_task(slug: str) -> dict:  # pragma: no cover - executed by worker
    from app.jobs.sync import run_tenant

    return asyncio.run(run_tenant(slug)).as_dict()
