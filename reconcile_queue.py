"""Counter reconciliation jobs on an RQ queue."""
import logging
from typing import Optional

from redis import Redis
from redis.exceptions import RedisError
from rq import Queue
from sqlalchemy.orm import sessionmaker

from config import settings
from counters import reconcile_statement
from database import create_sync_session_factory

logger = logging.getLogger(__name__)

# Redis connection
redis_conn = Redis.from_url(settings.redis_url)
# RQ Queue
job_queue = Queue('reconciliation', connection=redis_conn)


class ReconciliationQueue:
    """
    Schedules counter reconciliation on background workers.

    Reconciliation is idempotent, so a job may be enqueued any number of
    times for the same manga.
    """

    def __init__(self, queue: Queue = None):
        """
        Initialize queue.

        Args:
            queue: RQ Queue instance (uses default if None)
        """
        self.queue = queue or job_queue

    def enqueue(self, manga_id: Optional[int] = None) -> Optional[str]:
        """
        Enqueue reconciliation for one manga, or all when manga_id is None.

        Returns:
            RQ job id, or None if Redis was unavailable
        """
        try:
            job = self.queue.enqueue(
                'reconcile_queue.process_reconciliation',
                manga_id,
                job_timeout='30m',
                result_ttl=86400,
                failure_ttl=604800,
            )
        except RedisError as e:
            logger.error(f"Failed to enqueue reconciliation for {_target(manga_id)}: {e}")
            return None

        logger.info(f"Enqueued reconciliation for {_target(manga_id)} as job {job.id}")
        return job.id

    def enqueue_all(self) -> Optional[str]:
        return self.enqueue(None)


def _target(manga_id: Optional[int]) -> str:
    return "all manga" if manga_id is None else f"manga {manga_id}"


# Worker function (called by RQ worker)
def process_reconciliation(manga_id: Optional[int] = None, session_factory: Optional[sessionmaker] = None) -> int:
    """
    Recompute stored counters from source rows.

    Args:
        manga_id: Manga to fix, or None for every manga
        session_factory: Sync session factory. When omitted the job builds
            one from settings and disposes its engine before returning.

    Returns:
        Number of manga rows updated
    """
    logger.info(f"WORKER: Reconciling counters for {_target(manga_id)}")

    owns_factory = session_factory is None
    if owns_factory:
        session_factory = create_sync_session_factory()

    db = session_factory()
    try:
        result = db.execute(reconcile_statement(manga_id))
        db.commit()
        logger.info(f"WORKER: Reconciled {result.rowcount} manga")
        return result.rowcount
    except Exception as e:
        logger.error(f"WORKER: Reconciliation for {_target(manga_id)} failed: {e}")
        db.rollback()
        raise
    finally:
        db.close()
        if owns_factory:
            session_factory.kw["bind"].dispose()
