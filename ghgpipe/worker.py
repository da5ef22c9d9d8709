"""Celery worker entry point.

    celery -A ghgpipe.worker:celery_app worker -Q fetch,convert,segment,index -c 4
    celery -A ghgpipe.worker:celery_app worker -Q extract,reflect -c 1
    celery -A ghgpipe.worker:celery_app worker -Q review,resolve -c 2
"""
from __future__ import annotations

from ghgpipe.core.logging import setup_logging
from ghgpipe.core.settings import get_settings
from ghgpipe.pipeline.dag import build_registry, default_services
from ghgpipe.queue.celery_broker import CeleryBroker, create_celery_app

settings = get_settings()
setup_logging()

celery_app = create_celery_app(settings)
broker = CeleryBroker(celery_app, build_registry(default_services(settings), settings))
