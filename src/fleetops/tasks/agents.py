"""
Fleet Ops Agent Tasks

Each beat entry runs one reconciler agent once in the worker.
"""
import asyncio
import logging

from fleetops.celery_app import app
from fleetops.reconciler import EXIT_FATAL, OpsConfig, run_agent

logger = logging.getLogger(__name__)


@app.task(name='fleetops.run_agent')
def run_agent_task(agent: str):
    """Run one agent and report its exit code."""
    config = OpsConfig.from_env()
    exit_code = asyncio.run(run_agent(agent, config))
    if exit_code == EXIT_FATAL:
        logger.error(f"{agent} run failed (exit code 2)")
    return {'agent': agent, 'exit_code': exit_code}


@app.task(name='fleetops.ping')
def ping():
    """Simple ping task for testing worker connectivity."""
    return {'status': 'pong', 'message': 'Fleet Ops worker is alive'}
