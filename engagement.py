"""Per-user engagement: bookmarks and reading history."""
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from counters import CounterSynchronizer
from exceptions import ConflictError, ForbiddenError, NotFoundError, ValidationError
from models import Bookmark, Chapter, Manga, ReadingHistory, utcnow
from pagination import Page, SortOrder, paginate, parse_choice

logger = logging.getLogger(__name__)


def percent(part: int, whole: int) -> int:
    """round(100 * part / whole) with halves rounded up; 0 when whole is 0."""
    if whole <= 0:
        return 0
    return (200 * part + whole) // (2 * whole)


class BookmarkSortField(str, enum.Enum):
    CREATED_AT = "created_at"

    @property
    def column(self):
        return getattr(Bookmark, self.value)


class HistorySortField(str, enum.Enum):
    LAST_READ_AT = "last_read_at"
    PROGRESS_PERCENT = "progress_percent"

    @property
    def column(self):
        return getattr(ReadingHistory, self.value)


@dataclass
class ToggleResult:
    action: str
    is_bookmarked: bool


@dataclass
class MangaProgress:
    """A reader's standing in one manga."""
    last_read: ReadingHistory
    last_read_chapter: Optional[Chapter]
    total_chapters: int
    read_chapters: int
    progress_percent: int
    history: List[tuple] = field(default_factory=list)


class BookmarkService:
    """
    Bookmarks, at most one per (user, manga).

    Uniqueness is enforced by the database; the losing side of a concurrent
    add sees ConflictError.
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self.counters = CounterSynchronizer(db)

    async def add(self, user_id: int, manga_id: int) -> Bookmark:
        await self._require_manga(manga_id)

        if await self._find(user_id, manga_id) is not None:
            raise ConflictError("Manga already bookmarked")

        bookmark = Bookmark(user_id=user_id, manga_id=manga_id)
        try:
            async with self.db.begin_nested():
                self.db.add(bookmark)
        except IntegrityError:
            raise ConflictError("Manga already bookmarked")

        await self.counters.bookmark_added(manga_id)
        await self.db.commit()
        logger.info(f"User {user_id} bookmarked manga {manga_id}")
        return bookmark

    async def remove(self, user_id: int, manga_id: int):
        if not await self._delete(user_id, manga_id):
            raise NotFoundError("Bookmark not found")
        await self.counters.bookmark_removed(manga_id)
        await self.db.commit()
        logger.info(f"User {user_id} removed bookmark on manga {manga_id}")

    async def toggle(self, user_id: int, manga_id: int) -> ToggleResult:
        """
        Add the bookmark, or remove it if one exists.

        Tries the insert first and deletes on a unique violation, so two
        concurrent toggles never both insert.
        """
        await self._require_manga(manga_id)

        try:
            async with self.db.begin_nested():
                self.db.add(Bookmark(user_id=user_id, manga_id=manga_id))
        except IntegrityError:
            if await self._delete(user_id, manga_id):
                await self.counters.bookmark_removed(manga_id)
            await self.db.commit()
            logger.info(f"User {user_id} toggled bookmark on manga {manga_id}: removed")
            return ToggleResult(action="removed", is_bookmarked=False)

        await self.counters.bookmark_added(manga_id)
        await self.db.commit()
        logger.info(f"User {user_id} toggled bookmark on manga {manga_id}: added")
        return ToggleResult(action="added", is_bookmarked=True)

    async def check(self, user_id: int, manga_id: int) -> dict:
        bookmark = await self._find(user_id, manga_id)
        return {
            "is_bookmarked": bookmark is not None,
            "bookmark_id": bookmark.id if bookmark is not None else None,
        }

    async def list_for_user(
        self,
        user_id: int,
        page: Optional[int] = None,
        limit: Optional[int] = None,
        sort_by: BookmarkSortField = BookmarkSortField.CREATED_AT,
        order: SortOrder = SortOrder.DESC,
    ) -> Page:
        """Page of (bookmark, manga) rows; manga is None once deleted."""
        sort_by = parse_choice(BookmarkSortField, sort_by, "sort field")
        order = parse_choice(SortOrder, order, "sort order")
        query = (
            select(Bookmark, Manga)
            .outerjoin(Manga, Manga.id == Bookmark.manga_id)
            .where(Bookmark.user_id == user_id)
            .order_by(order.apply(sort_by.column), Bookmark.id.desc())
        )
        return await paginate(self.db, query, page, limit, scalars=False)

    async def _find(self, user_id: int, manga_id: int) -> Optional[Bookmark]:
        result = await self.db.execute(
            select(Bookmark).where(Bookmark.user_id == user_id, Bookmark.manga_id == manga_id)
        )
        return result.scalar_one_or_none()

    async def _delete(self, user_id: int, manga_id: int) -> bool:
        result = await self.db.execute(
            delete(Bookmark)
            .where(Bookmark.user_id == user_id, Bookmark.manga_id == manga_id)
            .execution_options(synchronize_session=False)
        )
        for obj in list(self.db.identity_map.values()):
            if isinstance(obj, Bookmark) and obj.user_id == user_id and obj.manga_id == manga_id:
                self.db.expunge(obj)
        return result.rowcount > 0

    async def _require_manga(self, manga_id: int):
        result = await self.db.execute(select(Manga.id).where(Manga.id == manga_id))
        if result.first() is None:
            raise NotFoundError("Manga not found")


class ReadingHistoryService:
    """Reading progress, one record per (user, chapter)."""

    def __init__(self, db: AsyncSession, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock
        self.counters = CounterSynchronizer(db)

    async def save_progress(
        self,
        user_id: int,
        chapter_id: int,
        current_page: int,
        total_pages: int,
        is_completed: Optional[bool] = None,
    ) -> ReadingHistory:
        """
        Upsert the reader's position in a chapter and count the read.

        Reaching 100% marks the chapter completed even when the caller
        did not say so.
        """
        if current_page is None or total_pages is None:
            raise ValidationError("current_page and total_pages are required")
        if current_page < 0 or total_pages < 0:
            raise ValidationError("Page numbers cannot be negative")
        if total_pages > 0 and current_page > total_pages:
            raise ValidationError("current_page cannot exceed total_pages")

        chapter = await self.db.get(Chapter, chapter_id)
        if chapter is None:
            raise NotFoundError("Chapter not found")

        progress = percent(current_page, total_pages)
        values = {
            "manga_id": chapter.manga_id,
            "current_page": current_page,
            "total_pages": total_pages,
            "progress_percent": progress,
            "is_completed": bool(is_completed) or progress >= 100,
            "last_read_at": self.clock(),
        }

        history = await self._find(user_id, chapter_id)
        if history is None:
            history = ReadingHistory(user_id=user_id, chapter_id=chapter_id, **values)
            try:
                async with self.db.begin_nested():
                    self.db.add(history)
            except IntegrityError:
                # A concurrent save created the row first
                history = await self._find(user_id, chapter_id)
                if history is None:
                    raise
                self._apply(history, values)
        else:
            self._apply(history, values)

        await self.db.flush()
        await self.counters.record_view(chapter.id, chapter.manga_id)
        await self.db.commit()
        logger.info(f"User {user_id} at {progress}% of chapter {chapter_id}")
        return history

    async def get_manga_progress(self, user_id: int, manga_id: int) -> Optional[MangaProgress]:
        """
        Summarize the reader's progress in a manga.

        Returns None when the reader has no history there. Works for manga
        that have since been deleted (chapter count reads as 0).
        """
        rows = await self._history_rows(user_id, manga_id)
        if not rows:
            return None

        total = (await self.db.execute(
            select(Manga.total_chapters).where(Manga.id == manga_id)
        )).scalar()
        total_chapters = total or 0
        read_chapters = sum(1 for history, _ in rows if history.is_completed)

        last_read, last_chapter = rows[0]
        return MangaProgress(
            last_read=last_read,
            last_read_chapter=last_chapter,
            total_chapters=total_chapters,
            read_chapters=read_chapters,
            progress_percent=percent(read_chapters, total_chapters),
            history=rows,
        )

    async def list_history(
        self,
        user_id: int,
        manga_id: Optional[int] = None,
        page: Optional[int] = None,
        limit: Optional[int] = None,
        sort_by: HistorySortField = HistorySortField.LAST_READ_AT,
        order: SortOrder = SortOrder.DESC,
    ) -> Page:
        """Page of (history, manga, chapter) rows; parents are None once deleted."""
        sort_by = parse_choice(HistorySortField, sort_by, "sort field")
        order = parse_choice(SortOrder, order, "sort order")
        query = (
            select(ReadingHistory, Manga, Chapter)
            .outerjoin(Manga, Manga.id == ReadingHistory.manga_id)
            .outerjoin(Chapter, Chapter.id == ReadingHistory.chapter_id)
            .where(ReadingHistory.user_id == user_id)
            .order_by(order.apply(sort_by.column), ReadingHistory.id.desc())
        )
        if manga_id is not None:
            query = query.where(ReadingHistory.manga_id == manga_id)
        return await paginate(self.db, query, page, limit, scalars=False)

    async def delete_entry(self, user_id: int, history_id: int):
        history = await self.db.get(ReadingHistory, history_id)
        if history is None:
            raise NotFoundError("Reading history not found")
        if history.user_id != user_id:
            raise ForbiddenError("Not authorized to delete this history")

        await self.db.delete(history)
        await self.db.commit()
        logger.info(f"User {user_id} deleted history entry {history_id}")

    async def clear_all(self, user_id: int) -> int:
        return await self._clear(ReadingHistory.user_id == user_id)

    async def clear_manga(self, user_id: int, manga_id: int) -> int:
        return await self._clear(ReadingHistory.user_id == user_id, ReadingHistory.manga_id == manga_id)

    async def _clear(self, *conditions) -> int:
        result = await self.db.execute(
            delete(ReadingHistory).where(*conditions).execution_options(synchronize_session="fetch")
        )
        await self.db.commit()
        logger.info(f"Cleared {result.rowcount} reading history entries")
        return result.rowcount

    async def _history_rows(self, user_id: int, manga_id: int) -> List[tuple]:
        result = await self.db.execute(
            select(ReadingHistory, Chapter)
            .outerjoin(Chapter, Chapter.id == ReadingHistory.chapter_id)
            .where(ReadingHistory.user_id == user_id, ReadingHistory.manga_id == manga_id)
            .order_by(ReadingHistory.last_read_at.desc(), ReadingHistory.id.desc())
        )
        return [tuple(row) for row in result.all()]

    async def _find(self, user_id: int, chapter_id: int) -> Optional[ReadingHistory]:
        result = await self.db.execute(
            select(ReadingHistory).where(
                ReadingHistory.user_id == user_id, ReadingHistory.chapter_id == chapter_id
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _apply(history: ReadingHistory, values: dict):
        for key, value in values.items():
            setattr(history, key, value)
