"""
Bootstrap script for the manga catalog backend.

Run this to initialize a deployment:
1. Check the .env file
2. Check database connectivity and create tables
3. Check Redis for background jobs
"""
import asyncio
import sys
from pathlib import Path

from redis import Redis
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from config import settings
from database import Database


def print_section(title):
    """Print section header."""
    print("\n" + "=" * 60)
    print(f"  {title}")
    print("=" * 60 + "\n")


def check_env_file():
    """Check if .env file exists."""
    print_section("Checking Environment Configuration")

    if Path(".env").exists():
        print("✓ .env file found")
        return True

    print("✗ .env file not found")
    print("\nPlease create .env file with at least:")
    print("  DATABASE_URL, DATABASE_URL_SYNC, REDIS_URL, JWT_SECRET_KEY")
    return False


async def _prepare_database():
    database = Database(echo=False)
    try:
        async with database.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        print("✓ Database connection successful")
        await database.create_all()
        print("✓ Tables created")
    finally:
        await database.dispose()


def check_database():
    """Check database connectivity and create missing tables."""
    print_section("Checking Database")

    try:
        asyncio.run(_prepare_database())
        return True
    except (SQLAlchemyError, OSError) as e:
        print(f"✗ Database setup failed: {e}")
        print("\nPlease check your DATABASE_URL in .env")
        return False


def check_redis():
    """Check Redis connectivity for reconciliation jobs."""
    print_section("Checking Redis")

    try:
        Redis.from_url(settings.redis_url).ping()
        print("✓ Redis connection successful")
        print(f"  URL: {settings.redis_url}")
        return True
    except RedisError as e:
        print(f"✗ Redis connection failed: {e}")
        print("\nBackground reconciliation will be unavailable until Redis is running")
        return False


def main():
    """Main bootstrap routine."""
    print("\n" + "=" * 60)
    print("  Manga Catalog Backend - Bootstrap")
    print("=" * 60)

    if not check_env_file():
        print("\n⚠ Bootstrap cannot continue without .env file")
        sys.exit(1)

    if not check_database():
        print("\n⚠ Bootstrap cannot continue without database connection")
        sys.exit(1)

    redis_ok = check_redis()

    print_section("Bootstrap Complete")
    if not redis_ok:
        print("⚠ Redis unavailable; the API will run but `cli.py reconcile --enqueue` will fail")
    print("\nYou can now start the server:")
    print("  python main.py")
    print("\nOr with uvicorn:")
    print("  uvicorn main:app --reload")
    print("\nAPI docs will be available at:")
    print(f"  http://localhost:{settings.api_port}/docs")


if __name__ == "__main__":
    main()
