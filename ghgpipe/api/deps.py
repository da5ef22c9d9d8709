"""FastAPI dependency injection -- database sessions and the job broker."""
from __future__ import annotations

from collections.abc import Generator
from functools import lru_cache

from sqlalchemy.orm import Session

from ghgpipe.core.settings import get_settings
from ghgpipe.db.session import get_session_factory
from ghgpipe.queue.broker import StageBroker


def get_db() -> Generator[Session, None, None]:
    """Yield a SQLAlchemy session; commit on success, rollback on error."""
    factory = get_session_factory()
    db = factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@lru_cache(maxsize=1)
def get_broker() -> StageBroker:
    """Return the broker the API enqueues jobs on (Celery, producer side only)."""
    from ghgpipe.queue.celery_broker import CeleryProducer, create_celery_app

    return CeleryProducer(create_celery_app(get_settings()))
