"""Celery tasks. Importing the package binds shared tasks to the configured app."""
from identity_sync.infrastructure.celery_app import celery_app  # noqa: F401
