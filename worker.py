"""
RQ Worker for counter reconciliation jobs.

Usage:
    python worker.py

    Or with RQ directly:
    rq worker reconciliation --url redis://localhost:6379/0
"""
import logging
from redis import Redis
from rq import Worker
from config import settings

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

QUEUES = ['reconciliation']


def main():
    """Start RQ worker."""
    logger.info(f"Starting RQ worker for queues: {', '.join(QUEUES)}")
    logger.info(f"Redis URL: {settings.redis_url}")

    redis_conn = Redis.from_url(settings.redis_url)
    worker = Worker(QUEUES, connection=redis_conn)

    logger.info("Worker ready. Waiting for jobs...")
    worker.work(with_scheduler=False)


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        logger.info("Worker shutting down...")
    except Exception as e:
        logger.error(f"Worker error: {e}")
        raise
