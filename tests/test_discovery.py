import random
from collections import Counter
from datetime import datetime, timedelta

import pytest
from sqlalchemy import update

from discovery import DiscoveryService
from engagement import ReadingHistoryService
from exceptions import ValidationError
from models import Manga


async def _set_views(db, manga, views, rating=0.0):
    await db.execute(
        update(Manga)
        .where(Manga.id == manga.id)
        .values(total_views=views, average_rating=rating)
        .execution_options(synchronize_session=False)
    )


@pytest.mark.asyncio
async def test_trending_orders_by_views_then_rating(db_session, catalog, admin, uploader):
    quiet = await catalog.create_manga(admin, {"title": "Quiet"})
    loud = await catalog.create_manga(admin, {"title": "Loud"})
    loved = await catalog.create_manga(admin, {"title": "Loved"})
    await catalog.create_manga(uploader, {"title": "Pending"})
    await _set_views(db_session, quiet, 5)
    await _set_views(db_session, loud, 50, 3.0)
    await _set_views(db_session, loved, 50, 4.5)
    await db_session.commit()

    trending = await DiscoveryService(db_session).trending(10)

    assert [m.title for m in trending] == ["Loved", "Loud", "Quiet"]


@pytest.mark.asyncio
async def test_trending_limit_bounds(db_session):
    service = DiscoveryService(db_session)
    with pytest.raises(ValidationError):
        await service.trending(0)
    with pytest.raises(ValidationError):
        await service.trending(1000)


@pytest.mark.asyncio
async def test_recently_updated_includes_latest_chapter(db_session, catalog, admin, manga, add_chapter):
    idle = await catalog.create_manga(admin, {"title": "Idle"})
    await add_chapter(admin, manga, 1)
    latest = await add_chapter(admin, manga, 2)
    await add_chapter(admin, manga, 3, status="DRAFT")

    recent = await DiscoveryService(db_session).recently_updated(10)

    assert [entry.manga.id for entry in recent] == [manga.id]
    assert recent[0].latest_chapter.id == latest.id
    assert idle.id not in [entry.manga.id for entry in recent]


@pytest.mark.asyncio
async def test_random_returns_every_manga_once_when_asking_for_all(db_session, catalog, admin):
    created = [await catalog.create_manga(admin, {"title": f"Series {i}"}) for i in range(5)]

    picked = await DiscoveryService(db_session, rng=random.Random(7)).random_manga(5)

    assert sorted(m.id for m in picked) == sorted(m.id for m in created)


@pytest.mark.asyncio
async def test_random_caps_at_available(db_session, catalog, admin, uploader):
    await catalog.create_manga(admin, {"title": "Only"})
    await catalog.create_manga(uploader, {"title": "Not Yet"})

    picked = await DiscoveryService(db_session).random_manga(10)

    assert [m.title for m in picked] == ["Only"]


@pytest.mark.asyncio
async def test_random_on_empty_catalog(db_session):
    assert await DiscoveryService(db_session).random_manga(3) == []


@pytest.mark.asyncio
async def test_random_is_reproducible_with_seed(db_session, catalog, admin):
    for i in range(10):
        await catalog.create_manga(admin, {"title": f"Volume {i}"})

    first = await DiscoveryService(db_session, rng=random.Random(42)).random_manga(3)
    second = await DiscoveryService(db_session, rng=random.Random(42)).random_manga(3)

    assert [m.id for m in first] == [m.id for m in second]
    assert len({m.id for m in first}) == 3


@pytest.mark.asyncio
async def test_random_order_changes_between_calls(db_session, catalog, admin):
    for i in range(5):
        await catalog.create_manga(admin, {"title": f"Arc {i}"})
    service = DiscoveryService(db_session)

    orders = {tuple(m.id for m in await service.random_manga(5)) for _ in range(20)}

    assert len(orders) > 1
    assert all(len(set(order)) == 5 for order in orders)


@pytest.mark.asyncio
async def test_random_order_covers_every_permutation(db_session, catalog, admin):
    for title in ("Red", "Green", "Blue"):
        await catalog.create_manga(admin, {"title": title})
    service = DiscoveryService(db_session, rng=random.Random(2024))

    counts = Counter()
    for _ in range(600):
        counts[tuple(m.title for m in await service.random_manga(3))] += 1

    assert len(counts) == 6
    assert all(50 <= n <= 150 for n in counts.values())


@pytest.mark.asyncio
async def test_continue_reading_keeps_latest_per_manga(db_session, catalog, admin, reader, manga, add_chapter):
    other = await catalog.create_manga(admin, {"title": "Monster"})
    one = await add_chapter(admin, manga, 1)
    two = await add_chapter(admin, manga, 2)
    other_one = await add_chapter(admin, other, 1)

    moments = iter(datetime(2024, 5, 1) + timedelta(hours=h) for h in range(10))
    history = ReadingHistoryService(db_session, clock=lambda: next(moments))
    await history.save_progress(reader.id, one.id, 10, 10)
    await history.save_progress(reader.id, other_one.id, 4, 10)
    await history.save_progress(reader.id, two.id, 2, 10)

    entries = await DiscoveryService(db_session).continue_reading(reader.id, 10)

    assert len(entries) == 2
    assert [e.history.chapter_id for e in entries] == [two.id, other_one.id]
    assert entries[0].manga.id == manga.id
    assert entries[0].chapter.id == two.id


@pytest.mark.asyncio
async def test_continue_reading_tolerates_deleted_manga(db_session, catalog, admin, reader, manga, add_chapter):
    chapter = await add_chapter(admin, manga, 1)
    await ReadingHistoryService(db_session).save_progress(reader.id, chapter.id, 1, 10)
    await catalog.delete_manga(admin, manga.id)

    entries = await DiscoveryService(db_session).continue_reading(reader.id)

    assert len(entries) == 1
    assert entries[0].manga is None
    assert entries[0].chapter is None


@pytest.mark.asyncio
async def test_continue_reading_is_per_user(db_session, admin, reader, manga, add_chapter):
    chapter = await add_chapter(admin, manga, 1)
    await ReadingHistoryService(db_session).save_progress(admin.id, chapter.id, 1, 10)

    assert await DiscoveryService(db_session).continue_reading(reader.id) == []
