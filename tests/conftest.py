import os
import pytest
import pytest_asyncio

# Set test environment variables BEFORE any app imports
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret")

from database import Database
from models import AccountStatus, User, UserRole
from auth import Principal
from catalog import CatalogService

DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture
async def database():
    database = Database(DATABASE_URL, echo=False)
    await database.create_all()
    yield database
    await database.dispose()


@pytest_asyncio.fixture
async def db_session(database):
    async with database.session() as session:
        yield session


async def make_principal(db, username, role=UserRole.USER, status=AccountStatus.ACTIVE) -> Principal:
    user = User(email=f"{username}@example.com", username=username, role=role, status=status)
    db.add(user)
    await db.commit()
    return Principal(id=user.id, role=user.role, status=user.status, username=user.username)


@pytest_asyncio.fixture
async def admin(db_session):
    return await make_principal(db_session, "admin", UserRole.ADMIN)


@pytest_asyncio.fixture
async def uploader(db_session):
    return await make_principal(db_session, "uploader", UserRole.UPLOADER)


@pytest_asyncio.fixture
async def other_uploader(db_session):
    return await make_principal(db_session, "rival", UserRole.UPLOADER)


@pytest_asyncio.fixture
async def reader(db_session):
    return await make_principal(db_session, "reader", UserRole.USER)


@pytest.fixture
def catalog(db_session):
    return CatalogService(db_session)


@pytest.fixture
def add_chapter(catalog):
    """Create a chapter from image URLs."""

    async def _add(principal, manga, number, status=None, images=None):
        data = {"chapter_number": number, "images": images or ["https://cdn.example.com/p1.jpg"]}
        if status is not None:
            data["status"] = status
        return await catalog.create_chapter(principal, manga.id, data)

    return _add


@pytest_asyncio.fixture
async def manga(catalog, admin):
    """An approved manga owned by the admin."""
    return await catalog.create_manga(admin, {
        "title": "One Piece",
        "author_names": ["Eiichiro Oda"],
        "genre_names": ["Action", "Adventure"],
    })
