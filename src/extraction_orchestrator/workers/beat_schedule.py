"""Celery Beat periodic task schedule for the Extraction Orchestrator.

Schedule overview:

+-----------------------------+------------------+--------------------------------+
| Task name                   | Schedule         | Purpose                        |
+=============================+==================+================================+
| resume_interrupted_sessions | Every 5 minutes  | Resume in-progress sessions    |
|                             |                  | whose worker died mid-run.     |
+-----------------------------+------------------+--------------------------------+
"""

from __future__ import annotations

from celery.schedules import crontab

#: Celery Beat schedule dict.  Applied to ``celery_app.conf.beat_schedule``
#: in ``celery_app.py``.
beat_schedule: dict[str, dict] = {  # type: ignore[type-arg]
    "resume_interrupted_sessions": {
        "task": "extraction_orchestrator.orchestrator.tasks.resume_interrupted_sessions_task",
        "schedule": crontab(minute="*/5"),
        "options": {
            "queue": "celery",
            "expires": 240,  # skip if the next run is already due
        },
    },
}
