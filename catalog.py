"""Catalog service: manga and chapters, with ownership checks and counter upkeep."""
import enum
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import String, cast, delete, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from sqlalchemy.orm.attributes import set_committed_value

from auth import Action, OwnershipGuard, Principal
from counters import CounterSynchronizer
from exceptions import ConflictError, ForbiddenError, NotFoundError, UploadError, ValidationError
from models import (
    ApprovalStatus, Author, Chapter, ChapterStatus, Genre, Manga, MangaStatus, utcnow
)
from normalizer import ChapterNumber, DescriptionCleaner, NameListNormalizer, SlugGenerator
from pagination import Page, SortOrder, paginate, parse_choice
from storage import ImageUpload, ObjectStore
from taxonomy import author_service, genre_service

logger = logging.getLogger(__name__)


class MangaSortField(str, enum.Enum):
    """Columns a manga listing may be ordered by."""
    CREATED_AT = "created_at"
    UPDATED_AT = "updated_at"
    TITLE = "title"
    TOTAL_VIEWS = "total_views"
    AVERAGE_RATING = "average_rating"
    TOTAL_CHAPTERS = "total_chapters"
    LAST_CHAPTER_AT = "last_chapter_at"

    @property
    def column(self):
        return getattr(Manga, self.value)


class ChapterSortField(str, enum.Enum):
    """Columns a chapter listing may be ordered by."""
    CHAPTER_NUMBER = "chapter_number"
    PUBLISHED_AT = "published_at"
    TOTAL_VIEWS = "total_views"

    @property
    def column(self):
        return getattr(Chapter, self.value)


@dataclass
class MangaFilters:
    """Public listing filters. Only APPROVED manga are ever returned."""
    page: int = 1
    limit: int = 20
    search: Optional[str] = None
    status: Optional[MangaStatus] = None
    genre: Optional[str] = None
    author: Optional[str] = None
    sort_by: MangaSortField = MangaSortField.CREATED_AT
    order: SortOrder = SortOrder.DESC


class CatalogService:
    """
    Create, read, update and delete manga and chapters.

    Each mutation commits once at its end, so the fact write and its paired
    counter write land in the same transaction.
    """

    MANGA_FIELDS = {"title", "alternative_titles", "description", "status", "release_year",
                    "thumbnail", "cover_image", "author_names", "genre_names"}

    def __init__(self, db: AsyncSession, store: Optional[ObjectStore] = None,
                 guard: Optional[OwnershipGuard] = None):
        self.db = db
        self.store = store
        self.guard = guard or OwnershipGuard()
        self.counters = CounterSynchronizer(db)
        self.cleaner = DescriptionCleaner()

    # ------------------------------------------------------------------
    # Manga
    # ------------------------------------------------------------------

    async def create_manga(
        self,
        principal: Principal,
        data: Dict[str, Any],
        thumbnail: Optional[ImageUpload] = None,
        cover_image: Optional[ImageUpload] = None,
    ) -> Manga:
        """
        Create a manga owned by the principal.

        Authors and genres are created on first reference. Manga created by
        an ADMIN are approved immediately; everyone else's wait for review.
        Images are stored before anything is written, so a failed upload
        leaves no partial manga behind.
        """
        title = (data.get("title") or "").strip()
        if not title:
            raise ValidationError("Manga title is required")

        decision = self.guard.can_create_manga(principal)
        if not decision.allowed:
            raise ForbiddenError(decision.reason)

        slug = SlugGenerator.generate_slug(title)
        if not slug:
            raise ValidationError("Manga title must contain letters or digits")
        await self._ensure_slug_free(slug)

        thumbnail_url = data.get("thumbnail")
        cover_url = data.get("cover_image")
        stored_urls = []
        if thumbnail is not None:
            thumbnail_url = (await self._store().store_upload(thumbnail, "manga/covers")).url
            stored_urls.append(thumbnail_url)
        if cover_image is not None:
            cover_url = (await self._store().store_upload(cover_image, "manga/covers")).url
            stored_urls.append(cover_url)

        try:
            manga = await self._build_manga(principal, data, title, slug, thumbnail_url, cover_url)
        except Exception:
            await self._discard(stored_urls)
            raise

        await self.db.commit()
        set_committed_value(manga, "published_chapters", [])
        logger.info(f"Created manga {manga.id} '{title}' ({manga.approval_status.value}) by user {principal.id}")
        return manga

    async def _build_manga(self, principal: Principal, data: Dict[str, Any], title: str, slug: str,
                           thumbnail_url: Optional[str], cover_url: Optional[str]) -> Manga:
        authors = await author_service(self.db).resolve_names(data.get("author_names") or [])
        genres = await genre_service(self.db).resolve_names(data.get("genre_names") or [])

        manga = Manga(
            title=title,
            slug=slug,
            alternative_titles=NameListNormalizer.normalize(data.get("alternative_titles")),
            description=self.cleaner.clean(data.get("description")),
            thumbnail=thumbnail_url,
            cover_image=cover_url,
            status=parse_choice(MangaStatus, data.get("status") or MangaStatus.ONGOING, "manga status"),
            release_year=data.get("release_year"),
            approval_status=self.guard.initial_approval_status(principal),
            uploader_id=principal.id,
            authors=authors,
            genres=genres,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(manga)
        except IntegrityError:
            raise ConflictError(f"Manga with slug '{slug}' already exists")
        return manga

    async def get_manga(self, manga_id: int, with_chapters: bool = False) -> Manga:
        if with_chapters:
            manga = await self._load_with_chapters(Manga.id == manga_id)
        else:
            manga = await self.db.get(Manga, manga_id)
        if manga is None:
            raise NotFoundError("Manga not found")
        return manga

    async def get_manga_by_slug(self, slug: str, principal: Optional[Principal] = None) -> Manga:
        """
        Manga with its published chapters in reading order.

        Approved manga are public; others are visible to their owner and admins only.
        """
        manga = await self._load_with_chapters(Manga.slug == slug)
        if manga is None:
            raise NotFoundError("Manga not found")

        if manga.approval_status != ApprovalStatus.APPROVED:
            if principal is None or not self.guard.authorize(principal, manga, Action.UPDATE).allowed:
                raise NotFoundError("Manga not found")
        return manga

    async def _load_with_chapters(self, criterion) -> Optional[Manga]:
        result = await self.db.execute(
            select(Manga)
            .where(criterion)
            .options(selectinload(Manga.published_chapters))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def update_manga(self, principal: Principal, manga_id: int, data: Dict[str, Any]) -> Manga:
        """
        Apply the given fields. Counters and approval status are not writable here.

        A new title re-derives the manga slug and the slugs of all its chapters.
        """
        manga = await self.get_manga(manga_id, with_chapters=True)
        self.guard.check(principal, manga, Action.UPDATE)

        unknown = set(data) - self.MANGA_FIELDS
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

        if "title" in data:
            title = (data["title"] or "").strip()
            if not title:
                raise ValidationError("Manga title is required")
            slug = SlugGenerator.generate_slug(title)
            if not slug:
                raise ValidationError("Manga title must contain letters or digits")
            if slug != manga.slug:
                await self._ensure_slug_free(slug)
                await self._reslug_chapters(manga.id, slug)
            manga.title = title
            manga.slug = slug

        if "alternative_titles" in data:
            manga.alternative_titles = NameListNormalizer.normalize(data["alternative_titles"])
        if "description" in data:
            manga.description = self.cleaner.clean(data["description"])
        if data.get("status") is not None:
            manga.status = parse_choice(MangaStatus, data["status"], "manga status")
        if "release_year" in data:
            manga.release_year = data["release_year"]
        if "thumbnail" in data:
            manga.thumbnail = data["thumbnail"]
        if "cover_image" in data:
            manga.cover_image = data["cover_image"]
        if "author_names" in data:
            manga.authors = await author_service(self.db).resolve_names(data["author_names"] or [])
        if "genre_names" in data:
            manga.genres = await genre_service(self.db).resolve_names(data["genre_names"] or [])

        manga.updated_at = utcnow()
        slug = manga.slug
        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            raise ConflictError(f"Manga with slug '{slug}' already exists")

        await self.db.commit()
        logger.info(f"Updated manga {manga.id} by user {principal.id}")
        return manga

    async def moderate_manga(self, principal: Principal, manga_id: int, approval_status: ApprovalStatus) -> Manga:
        self.guard.check_admin(principal)
        manga = await self.get_manga(manga_id, with_chapters=True)
        manga.approval_status = approval_status
        manga.updated_at = utcnow()
        await self.db.commit()
        logger.info(f"Manga {manga.id} moderated to {approval_status.value} by user {principal.id}")
        return manga

    async def delete_manga(self, principal: Principal, manga_id: int):
        """
        Hard-delete a manga with its chapters and join rows.

        Bookmarks and reading history pointing at it are left in place.
        """
        manga = await self.get_manga(manga_id)
        self.guard.check(principal, manga, Action.DELETE)

        await self.db.execute(
            delete(Manga).where(Manga.id == manga_id).execution_options(synchronize_session=False)
        )
        self._forget(lambda obj: (isinstance(obj, Manga) and obj.id == manga_id)
                     or (isinstance(obj, Chapter) and obj.manga_id == manga_id))
        await self.db.commit()
        logger.info(f"Deleted manga {manga_id} by user {principal.id}")

    async def list_manga(self, filters: MangaFilters) -> Page:
        query = select(Manga).where(Manga.approval_status == ApprovalStatus.APPROVED)

        if filters.search:
            term = f"%{filters.search.strip()}%"
            query = query.where(
                or_(
                    Manga.title.ilike(term),
                    cast(Manga.alternative_titles, String).ilike(term),
                )
            )
        if filters.status:
            query = query.where(Manga.status == parse_choice(MangaStatus, filters.status, "manga status"))
        if filters.genre:
            query = query.where(Manga.genres.any(Genre.slug == filters.genre))
        if filters.author:
            query = query.where(Manga.authors.any(Author.slug == filters.author))

        sort_by = parse_choice(MangaSortField, filters.sort_by, "sort field")
        order = parse_choice(SortOrder, filters.order, "sort order")
        query = query.order_by(order.apply(sort_by.column), Manga.id.desc())

        return await paginate(self.db, query, filters.page, filters.limit)

    async def _ensure_slug_free(self, slug: str):
        result = await self.db.execute(select(Manga.id).where(Manga.slug == slug))
        if result.first() is not None:
            raise ConflictError(f"Manga with slug '{slug}' already exists")

    async def _reslug_chapters(self, manga_id: int, manga_slug: str):
        result = await self.db.execute(select(Chapter).where(Chapter.manga_id == manga_id))
        for chapter in result.scalars():
            chapter.slug = SlugGenerator.chapter_slug(manga_slug, chapter.chapter_number)

    # ------------------------------------------------------------------
    # Chapters
    # ------------------------------------------------------------------

    async def create_chapter(
        self,
        principal: Principal,
        manga_id: int,
        data: Dict[str, Any],
        files: Optional[Sequence[ImageUpload]] = None,
    ) -> Chapter:
        """
        Add a chapter to a manga the principal owns.

        Pages come from uploaded files, or from a list of image URLs when no
        files are sent. The manga's chapter count and last-chapter time move
        in the same transaction.
        """
        manga = await self.get_manga(manga_id)
        self.guard.check(principal, manga, Action.ADD_CHAPTER)

        number = ChapterNumber.parse(data.get("chapter_number"))
        slug = SlugGenerator.chapter_slug(manga.slug, number)
        await self._ensure_number_free(manga_id, number)
        await self._ensure_chapter_slug_free(slug)

        status = parse_choice(ChapterStatus, data.get("status") or ChapterStatus.PUBLISHED, "chapter status")
        stored_urls = []
        if files:
            folder = f"manga/{manga_id}/chapter-{ChapterNumber.format(number)}"
            stored = await self._store().store_many(files, folder)
            images = stored_urls = [obj.url for obj in stored]
        else:
            images = self._image_urls(data.get("images"))

        if not images:
            raise ValidationError("No images provided")

        published_at = utcnow() if status == ChapterStatus.PUBLISHED else None
        chapter = Chapter(
            manga=manga,
            manga_id=manga_id,
            chapter_number=number,
            title=(data.get("title") or "").strip() or f"Chapter {ChapterNumber.format(number)}",
            slug=slug,
            images=images,
            total_images=len(images),
            status=status,
            published_at=published_at,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(chapter)
        except IntegrityError:
            await self._discard(stored_urls)
            # Lost a race; report which unique key was taken
            await self._ensure_number_free(manga_id, number)
            await self._ensure_chapter_slug_free(slug)
            raise ConflictError("Chapter already exists")

        await self.counters.chapter_added(manga_id, published_at)
        await self.db.commit()
        logger.info(f"Created chapter {chapter.id} (#{ChapterNumber.format(number)}) for manga {manga_id}")
        return chapter

    async def get_chapter(self, chapter_id: int) -> Chapter:
        chapter = await self.db.get(Chapter, chapter_id)
        if chapter is None:
            raise NotFoundError("Chapter not found")
        return chapter

    async def get_chapter_by_slug(self, slug: str, viewer: Optional[Principal] = None) -> Chapter:
        """Fetch a published chapter and count the read."""
        result = await self.db.execute(
            select(Chapter).where(Chapter.slug == slug, Chapter.status == ChapterStatus.PUBLISHED)
        )
        chapter = result.scalar_one_or_none()
        if chapter is None:
            raise NotFoundError("Chapter not found")

        await self.counters.record_view(chapter.id, chapter.manga_id, viewer.id if viewer else None)
        await self.db.commit()
        return chapter

    async def list_chapters(
        self,
        manga_id: int,
        sort_by: ChapterSortField = ChapterSortField.CHAPTER_NUMBER,
        order: SortOrder = SortOrder.ASC,
    ) -> List[Chapter]:
        await self.get_manga(manga_id)
        sort_by = parse_choice(ChapterSortField, sort_by, "sort field")
        order = parse_choice(SortOrder, order, "sort order")
        result = await self.db.execute(
            select(Chapter)
            .where(Chapter.manga_id == manga_id, Chapter.status == ChapterStatus.PUBLISHED)
            .order_by(order.apply(sort_by.column), Chapter.id)
        )
        return list(result.scalars().all())

    async def update_chapter(self, principal: Principal, chapter_id: int, data: Dict[str, Any]) -> Chapter:
        chapter = await self.get_chapter(chapter_id)
        self.guard.check(principal, chapter, Action.UPDATE)

        if data.get("chapter_number") is not None:
            number = ChapterNumber.parse(data["chapter_number"])
            if number != chapter.chapter_number:
                slug = SlugGenerator.chapter_slug(chapter.manga.slug, number)
                await self._ensure_number_free(chapter.manga_id, number)
                await self._ensure_chapter_slug_free(slug)
                chapter.chapter_number = number
                chapter.slug = slug

        if data.get("title") is not None:
            title = data["title"].strip()
            chapter.title = title or f"Chapter {ChapterNumber.format(chapter.chapter_number)}"

        if "images" in data and data["images"] is not None:
            images = self._image_urls(data["images"])
            if not images:
                raise ValidationError("No images provided")
            chapter.images = images
            chapter.total_images = len(images)

        published = None
        unpublished = False
        if data.get("status") is not None:
            status = parse_choice(ChapterStatus, data["status"], "chapter status")
            if status != chapter.status:
                chapter.status = status
                if status == ChapterStatus.PUBLISHED:
                    published = chapter.published_at = utcnow()
                else:
                    chapter.published_at = None
                    unpublished = True

        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            raise ConflictError("Chapter number or slug already exists")

        if published is not None:
            await self.counters.chapter_published(chapter.manga_id, published)
        elif unpublished:
            await self.counters.chapter_unpublished(chapter.manga_id)

        await self.db.commit()
        logger.info(f"Updated chapter {chapter.id} by user {principal.id}")
        return chapter

    async def delete_chapter(self, principal: Principal, chapter_id: int):
        chapter = await self.get_chapter(chapter_id)
        self.guard.check(principal, chapter, Action.DELETE)
        manga_id = chapter.manga_id

        await self.db.execute(
            delete(Chapter).where(Chapter.id == chapter_id).execution_options(synchronize_session=False)
        )
        self.db.expunge(chapter)
        await self.counters.chapter_removed(manga_id)
        await self.db.commit()
        logger.info(f"Deleted chapter {chapter_id} of manga {manga_id} by user {principal.id}")

    async def _ensure_number_free(self, manga_id: int, number):
        result = await self.db.execute(
            select(Chapter.id).where(Chapter.manga_id == manga_id, Chapter.chapter_number == number)
        )
        if result.first() is not None:
            raise ConflictError("Chapter number already exists")

    async def _ensure_chapter_slug_free(self, slug: str):
        result = await self.db.execute(select(Chapter.id).where(Chapter.slug == slug))
        if result.first() is not None:
            raise ConflictError(f"Chapter slug '{slug}' already exists")

    @staticmethod
    def _image_urls(images) -> List[str]:
        if not images:
            return []
        if isinstance(images, str):
            images = NameListNormalizer.normalize(images)
        return [str(url).strip() for url in images if url and str(url).strip()]

    async def _discard(self, urls: Sequence[str]):
        if urls and self.store is not None:
            await self.store.discard(urls)

    def _store(self) -> ObjectStore:
        if self.store is None:
            raise UploadError("Object storage is not configured")
        return self.store

    def _forget(self, predicate):
        """Drop deleted rows from the identity map."""
        for obj in list(self.db.identity_map.values()):
            if predicate(obj):
                self.db.expunge(obj)
