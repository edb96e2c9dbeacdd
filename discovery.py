"""Discovery feeds: trending, recently updated, continue reading, random picks."""
import logging
import random
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from exceptions import ValidationError
from models import ApprovalStatus, Chapter, ChapterStatus, Manga, ReadingHistory

logger = logging.getLogger(__name__)


@dataclass
class RecentManga:
    manga: Manga
    latest_chapter: Optional[Chapter]


@dataclass
class ContinueReadingEntry:
    """Most recent read in one manga. Parents are None once deleted."""
    history: ReadingHistory
    manga: Optional[Manga]
    chapter: Optional[Chapter]


def check_limit(limit: Optional[int], default: int = 10) -> int:
    limit = default if limit is None else limit
    if limit < 1 or limit > settings.max_page_size:
        raise ValidationError(f"Limit must be between 1 and {settings.max_page_size}")
    return limit


class DiscoveryService:
    """Read-only feeds over approved manga."""

    def __init__(self, db: AsyncSession, rng: Optional[random.Random] = None):
        self.db = db
        self.rng = rng or random.Random()

    async def trending(self, limit: Optional[int] = None) -> List[Manga]:
        """Most viewed first, rating breaks ties."""
        limit = check_limit(limit)
        result = await self.db.execute(
            self._approved()
            .order_by(Manga.total_views.desc(), Manga.average_rating.desc(), Manga.id)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def recently_updated(self, limit: Optional[int] = None) -> List[RecentManga]:
        """Manga with a published chapter, newest chapter first, each with that chapter."""
        limit = check_limit(limit)
        result = await self.db.execute(
            self._approved()
            .where(Manga.last_chapter_at.is_not(None))
            .order_by(Manga.last_chapter_at.desc(), Manga.id.desc())
            .limit(limit)
        )
        manga_list = list(result.scalars().all())
        if not manga_list:
            return []

        chapters = await self.db.execute(
            select(Chapter)
            .where(
                Chapter.manga_id.in_([manga.id for manga in manga_list]),
                Chapter.status == ChapterStatus.PUBLISHED,
            )
            .order_by(Chapter.published_at.desc(), Chapter.chapter_number.desc())
        )
        latest = {}
        for chapter in chapters.scalars().all():
            latest.setdefault(chapter.manga_id, chapter)

        return [RecentManga(manga=manga, latest_chapter=latest.get(manga.id)) for manga in manga_list]

    async def continue_reading(self, user_id: int, limit: Optional[int] = None) -> List[ContinueReadingEntry]:
        """
        The reader's latest position in each manga, most recent first.

        Only the newest record per manga is kept, so reading three chapters
        of one manga yields one entry.
        """
        limit = check_limit(limit)
        ranked = (
            select(
                ReadingHistory.id.label("history_id"),
                func.row_number()
                .over(
                    partition_by=ReadingHistory.manga_id,
                    order_by=(ReadingHistory.last_read_at.desc(), ReadingHistory.id.desc()),
                )
                .label("position"),
            )
            .where(ReadingHistory.user_id == user_id)
            .subquery()
        )
        result = await self.db.execute(
            select(ReadingHistory, Manga, Chapter)
            .join(ranked, ranked.c.history_id == ReadingHistory.id)
            .outerjoin(Manga, Manga.id == ReadingHistory.manga_id)
            .outerjoin(Chapter, Chapter.id == ReadingHistory.chapter_id)
            .where(ranked.c.position == 1)
            .order_by(ReadingHistory.last_read_at.desc(), ReadingHistory.id.desc())
            .limit(limit)
        )
        return [
            ContinueReadingEntry(history=history, manga=manga, chapter=chapter)
            for history, manga, chapter in result.all()
        ]

    async def random_manga(self, count: Optional[int] = None) -> List[Manga]:
        """Up to `count` distinct approved manga, uniformly sampled."""
        count = check_limit(count, default=1)
        ids = list((await self.db.execute(
            select(Manga.id).where(Manga.approval_status == ApprovalStatus.APPROVED).order_by(Manga.id)
        )).scalars().all())

        # Fisher-Yates
        self.rng.shuffle(ids)
        picked = ids[:count]
        if not picked:
            return []

        result = await self.db.execute(select(Manga).where(Manga.id.in_(picked)))
        by_id = {manga.id: manga for manga in result.scalars().all()}
        return [by_id[manga_id] for manga_id in picked if manga_id in by_id]

    @staticmethod
    def _approved():
        return select(Manga).where(Manga.approval_status == ApprovalStatus.APPROVED)
