"""
Celery worker entry point.

Runs the scheduled WHOOP sync and housekeeping tasks defined in the API tree:

    celery -A main worker --loglevel=info
    celery -A main beat --loglevel=info
"""
import logging
import sys

# The API tree is mounted at /api in the worker image
sys.path.insert(0, '/api')

from celery.signals import worker_process_init  # noqa: E402

from core.database import engine  # noqa: E402
from core.logging import setup_logging  # noqa: E402
from tasks import celery_app  # noqa: E402

setup_logging()
logger = logging.getLogger(__name__)

app = celery_app


@worker_process_init.connect
def _reset_db_pool(**kwargs):
    # Pooled connections must not cross the prefork boundary.
    engine.dispose(close=False)
    registered = sorted(name for name in celery_app.tasks if name.startswith("tasks."))
    logger.info("Worker process ready", extra={"extra_fields": {"tasks": registered}})
