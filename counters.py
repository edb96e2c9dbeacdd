"""
Denormalized counter maintenance.

Every fact that changes a counter (chapter added or removed, view recorded,
bookmark added or removed) calls into CounterSynchronizer right after the
fact write. Counter writes are SQL-side increments, never read-modify-write.
Both writes share the caller's transaction; services commit once per
operation. `reconcile` recomputes counters from source rows and is safe to
run at any time.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import case, func, literal, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.util import identity_key

from models import Bookmark, Chapter, ChapterView, Manga

logger = logging.getLogger(__name__)


def _decrement(column):
    """column - 1, floored at zero."""
    return case((column > 0, column - 1), else_=0)


def _later_of(column, moment: datetime):
    """Keep the column unless `moment` is newer."""
    value = literal(moment, Manga.last_chapter_at.type)
    return case((or_(column.is_(None), column < value), value), else_=column)


def _latest_publish_subquery():
    return (
        select(func.max(Chapter.published_at))
        .where(Chapter.manga_id == Manga.id)
        .scalar_subquery()
    )


def reconcile_statement(manga_id: Optional[int] = None):
    """
    UPDATE recomputing chapter count, last chapter time and bookmark count.

    Usable from both async and sync sessions.
    """
    chapter_count = (
        select(func.count(Chapter.id))
        .where(Chapter.manga_id == Manga.id)
        .scalar_subquery()
    )
    bookmark_count = (
        select(func.count(Bookmark.id))
        .where(Bookmark.manga_id == Manga.id)
        .scalar_subquery()
    )
    stmt = update(Manga).values(
        total_chapters=chapter_count,
        last_chapter_at=_latest_publish_subquery(),
        total_bookmarks=bookmark_count,
    )
    if manga_id is not None:
        stmt = stmt.where(Manga.id == manga_id)
    return stmt.execution_options(synchronize_session=False)


class CounterSynchronizer:
    """Paired counter writes for catalog and engagement facts."""

    MANGA_COUNTERS = ["total_chapters", "total_views", "total_bookmarks", "last_chapter_at"]

    def __init__(self, db: AsyncSession):
        self.db = db

    async def chapter_added(self, manga_id: int, published_at: Optional[datetime] = None):
        values = {"total_chapters": Manga.total_chapters + 1}
        if published_at is not None:
            values["last_chapter_at"] = _later_of(Manga.last_chapter_at, published_at)
        await self._update_manga(manga_id, values)

    async def chapter_removed(self, manga_id: int):
        """Run after the chapter row is gone so the latest publish time excludes it."""
        await self._update_manga(manga_id, {
            "total_chapters": _decrement(Manga.total_chapters),
            "last_chapter_at": _latest_publish_subquery(),
        })

    async def chapter_published(self, manga_id: int, published_at: datetime):
        await self._update_manga(manga_id, {
            "last_chapter_at": _later_of(Manga.last_chapter_at, published_at),
        })

    async def chapter_unpublished(self, manga_id: int):
        await self._update_manga(manga_id, {"last_chapter_at": _latest_publish_subquery()})

    async def record_view(self, chapter_id: int, manga_id: int, user_id: Optional[int] = None):
        """Bump chapter and manga views; audit the view for known readers."""
        await self.db.execute(
            update(Chapter)
            .where(Chapter.id == chapter_id)
            .values(total_views=Chapter.total_views + 1)
            .execution_options(synchronize_session=False)
        )
        await self._sync(Chapter, chapter_id, ["total_views"])

        await self._update_manga(manga_id, {"total_views": Manga.total_views + 1})

        if user_id is not None:
            self.db.add(ChapterView(chapter_id=chapter_id, user_id=user_id))
            await self.db.flush()

    async def bookmark_added(self, manga_id: int):
        await self._update_manga(manga_id, {"total_bookmarks": Manga.total_bookmarks + 1})

    async def bookmark_removed(self, manga_id: int):
        await self._update_manga(manga_id, {"total_bookmarks": _decrement(Manga.total_bookmarks)})

    async def reconcile(self, manga_id: Optional[int] = None) -> int:
        """Recompute counters from source rows; returns the number of manga touched."""
        result = await self.db.execute(reconcile_statement(manga_id))
        if manga_id is not None:
            await self._sync(Manga, manga_id, self.MANGA_COUNTERS)
        else:
            for obj in list(self.db.identity_map.values()):
                if isinstance(obj, Manga):
                    await self.db.refresh(obj, attribute_names=self.MANGA_COUNTERS)
        logger.info(f"Reconciled counters for {result.rowcount} manga")
        return result.rowcount

    async def _update_manga(self, manga_id: int, values: dict):
        await self.db.execute(
            update(Manga)
            .where(Manga.id == manga_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self._sync(Manga, manga_id, list(values))

    async def _sync(self, model, ident: int, attributes):
        """Reload changed columns on an instance this session already holds."""
        obj = self.db.identity_map.get(identity_key(model, ident))
        if obj is not None:
            await self.db.refresh(obj, attribute_names=attributes)
