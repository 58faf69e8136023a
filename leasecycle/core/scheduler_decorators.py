# core/scheduler_decorators.py - Schedules for the daily contract jobs
from typing import Any, Callable, Dict, List, Optional

from leasecycle.core.config import settings

# Scheduled dramatiq actors; workers/scheduler.py turns each entry into a cron job
SCHEDULED_TASKS: List[Dict[str, Any]] = []


def _schedule(func: Callable, job_id: Optional[str], timezone: Optional[str], **fields) -> Callable:
    SCHEDULED_TASKS.append({
        "func": func,
        "job_id": job_id or getattr(func, "actor_name", None) or func.__name__,
        "trigger": "cron",
        "trigger_args": {**fields, "timezone": timezone or settings.DEFAULT_TIMEZONE},
    })
    return func


def run_every_day(hour: int = 0, minute: int = 0, job_id: Optional[str] = None, timezone: Optional[str] = None):
    def wrapper(func: Callable):
        return _schedule(func, job_id, timezone, hour=hour, minute=minute)
    return wrapper


def run_cron(expr: str, job_id: Optional[str] = None, timezone: Optional[str] = None):
    """Five-field cron expression, e.g. run_cron('30 0 * * *')"""
    parts = expr.strip().split()
    if len(parts) != 5:
        raise ValueError(f"Invalid cron expression {expr!r} (expected 5 fields)")
    minute, hour, day, month, day_of_week = parts

    def wrapper(func: Callable):
        return _schedule(
            func, job_id, timezone, minute=minute, hour=hour, day=day, month=month, day_of_week=day_of_week
        )
    return wrapper
