"""
Fleet Ops Celery Application

Celery beat triggers each reconciler agent on its interval. Workers only
start runs; all state lives in the ops journal.
"""
from datetime import timedelta
import os
import logging

from celery import Celery

logger = logging.getLogger(__name__)

# agent name -> run interval
AGENT_INTERVALS = {
    'health-guardian': timedelta(minutes=5),
    'fleet-manager': timedelta(minutes=10),
    'content-lifecycle': timedelta(minutes=15),
    'schedule-doctor': timedelta(minutes=15),
    'db-maintainer': timedelta(days=1),
    'ops-reporter': timedelta(minutes=30),
}


def build_beat_schedule() -> dict:
    """One beat entry per agent, expiring before the next run is due."""
    return {
        f'run-{agent}': {
            'task': 'fleetops.run_agent',
            'schedule': interval,
            'args': (agent,),
            'options': {'expires': interval.total_seconds()},
        }
        for agent, interval in AGENT_INTERVALS.items()
    }


app = Celery('fleetops')

app.config_from_object({
    'broker_url': os.environ.get('CELERY_BROKER_URL', 'redis://localhost:6379/0'),
    'result_backend': os.environ.get('CELERY_RESULT_BACKEND', 'redis://localhost:6379/1'),
    'task_serializer': 'json',
    'result_serializer': 'json',
    'accept_content': ['json'],
    'timezone': os.environ.get('FLEETOPS_TIMEZONE', 'UTC'),
    'enable_utc': True,
    'task_track_started': True,
    'task_time_limit': 600,  # 10 minute hard limit
    'task_soft_time_limit': 540,  # 9 minute soft limit
    'worker_prefetch_multiplier': 1,  # Fair scheduling
    'task_acks_late': True,  # Acknowledge after completion
    'task_reject_on_worker_lost': True,  # Requeue if worker dies
})

app.autodiscover_tasks(['fleetops.tasks'], related_name='agents')

app.conf.beat_schedule = build_beat_schedule()
