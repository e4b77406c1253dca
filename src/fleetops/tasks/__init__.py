"""Celery tasks for Fleet Ops."""
