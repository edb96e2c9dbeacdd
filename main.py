"""FastAPI application - main entry point."""
from contextlib import asynccontextmanager
from typing import List, Optional
import logging
import traceback

from fastapi import FastAPI, Depends, File, Form, Query, Request, UploadFile
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from auth import Principal, get_current_principal, get_optional_principal, require_roles
from catalog import CatalogService, MangaFilters
from config import settings
from database import Database, get_db
from discovery import DiscoveryService
from engagement import BookmarkService, ReadingHistoryService
from exceptions import CatalogError
from models import UserRole
from pagination import Page
from schemas import (
    PaginationSchema, MessageResponse,
    AuthorWithCount, GenreWithCount, AuthorListResponse, GenreListResponse,
    MangaSummary, MangaListItem, MangaDetail, MangaListResponse, MangaUpdate, ModerationRequest,
    ChapterSummary, ChapterListItem, ChapterDetail, ChapterListResponse, ChapterUpdate,
    BookmarkRequest, BookmarkItem, BookmarkListResponse, BookmarkToggleResponse, BookmarkCheckResponse,
    ProgressRequest, HistoryItem, HistoryListResponse, MangaProgressResponse, ClearHistoryResponse,
    RecentMangaItem, MangaFeedResponse, RecentMangaResponse, ContinueReadingResponse,
)
from storage import ImageUpload, LocalObjectStore, ObjectStore
from taxonomy import author_service, genre_service

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

uploaders = require_roles(UserRole.UPLOADER, UserRole.ADMIN)


def get_store(request: Request) -> ObjectStore:
    return request.app.state.store


async def _read_upload(upload: UploadFile) -> ImageUpload:
    return ImageUpload(data=await upload.read(), mime_type=upload.content_type, filename=upload.filename)


def _pagination(page: Page) -> PaginationSchema:
    return PaginationSchema(page=page.page, limit=page.limit, total=page.total, page_count=page.page_count)


def _history_item(history, manga=None, chapter=None) -> HistoryItem:
    item = HistoryItem.model_validate(history)
    item.manga = MangaSummary.model_validate(manga) if manga is not None else None
    item.chapter = ChapterSummary.model_validate(chapter) if chapter is not None else None
    return item


def create_app(database: Optional[Database] = None, store: Optional[ObjectStore] = None) -> FastAPI:
    """
    Build the application.

    A database handle and object store may be supplied (tests); otherwise
    they are created from settings when the app starts.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_db = getattr(app.state, "db", None) is None
        if owns_db:
            app.state.db = Database()
        if getattr(app.state, "store", None) is None:
            app.state.store = LocalObjectStore()
        logger.info(f"Starting manga catalog ({settings.environment})")
        yield
        if owns_db:
            await app.state.db.dispose()

    app = FastAPI(
        title="Manga Catalog API",
        description="Manga catalog, reading progress and discovery",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.db = database
    app.state.store = store

    app.add_exception_handler(CatalogError, catalog_error_handler)
    app.add_exception_handler(IntegrityError, integrity_error_handler)
    _register_routes(app)
    app.mount("/media", StaticFiles(directory=settings.media_root, check_dir=False), name="media")
    return app


# ============================================================================
# Error Handlers
# ============================================================================

def _error_body(message: str, exc: Exception) -> dict:
    body = {"success": False, "message": message}
    if settings.environment != "production":
        body["trace"] = traceback.format_exception(type(exc), exc, exc.__traceback__)
    return body


async def catalog_error_handler(request: Request, exc: CatalogError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=_error_body(exc.message, exc))


async def integrity_error_handler(request: Request, exc: IntegrityError):
    logger.warning(f"{request.method} {request.url.path} hit a constraint: {exc.orig}")
    return JSONResponse(status_code=409, content=_error_body("Duplicate value", exc))


def _register_routes(app: FastAPI):

    # ========================================================================
    # Manga Endpoints
    # ========================================================================

    @app.get("/manga", response_model=MangaListResponse, tags=["Manga"])
    async def list_manga(
        page: int = Query(1),
        limit: int = Query(settings.default_page_size),
        search: Optional[str] = None,
        status: Optional[str] = None,
        genre: Optional[str] = None,
        author: Optional[str] = None,
        sort_by: str = "created_at",
        order: str = "desc",
        db: AsyncSession = Depends(get_db),
    ):
        """
        List approved manga with pagination.

        Optionally filter by search term, status, genre slug or author slug.
        """
        result = await CatalogService(db).list_manga(MangaFilters(
            page=page, limit=limit, search=search, status=status,
            genre=genre, author=author, sort_by=sort_by, order=order,
        ))
        return MangaListResponse(
            items=[MangaListItem.model_validate(m) for m in result.items],
            pagination=_pagination(result),
        )

    @app.post("/manga", response_model=MangaDetail, status_code=201, tags=["Manga"])
    async def create_manga(
        title: str = Form(...),
        alternative_titles: Optional[str] = Form(None),
        description: Optional[str] = Form(None),
        status: Optional[str] = Form(None),
        release_year: Optional[int] = Form(None),
        authors: Optional[str] = Form(None),
        genres: Optional[str] = Form(None),
        thumbnail: Optional[UploadFile] = File(None),
        cover_image: Optional[UploadFile] = File(None),
        principal: Principal = Depends(uploaders),
        db: AsyncSession = Depends(get_db),
        store: ObjectStore = Depends(get_store),
    ):
        """Create a manga. List fields accept a JSON array or comma-separated names."""
        data = {
            "title": title,
            "alternative_titles": alternative_titles,
            "description": description,
            "status": status,
            "release_year": release_year,
            "author_names": authors,
            "genre_names": genres,
        }
        manga = await CatalogService(db, store).create_manga(
            principal,
            data,
            thumbnail=await _read_upload(thumbnail) if thumbnail else None,
            cover_image=await _read_upload(cover_image) if cover_image else None,
        )
        return MangaDetail.model_validate(manga)

    @app.get("/manga/{slug}", response_model=MangaDetail, tags=["Manga"])
    async def get_manga(
        slug: str,
        principal: Optional[Principal] = Depends(get_optional_principal),
        db: AsyncSession = Depends(get_db),
    ):
        """Get detailed information about a specific manga."""
        manga = await CatalogService(db).get_manga_by_slug(slug, principal)
        return MangaDetail.model_validate(manga)

    @app.put("/manga/{manga_id}", response_model=MangaDetail, tags=["Manga"])
    async def update_manga(
        manga_id: int,
        request: MangaUpdate,
        principal: Principal = Depends(get_current_principal),
        db: AsyncSession = Depends(get_db),
    ):
        manga = await CatalogService(db).update_manga(principal, manga_id, request.model_dump(exclude_unset=True))
        return MangaDetail.model_validate(manga)

    @app.patch("/manga/{manga_id}/approval", response_model=MangaDetail, tags=["Moderation"])
    async def moderate_manga(
        manga_id: int,
        request: ModerationRequest,
        principal: Principal = Depends(get_current_principal),
        db: AsyncSession = Depends(get_db),
    ):
        manga = await CatalogService(db).moderate_manga(principal, manga_id, request.approval_status)
        return MangaDetail.model_validate(manga)

    @app.delete("/manga/{manga_id}", response_model=MessageResponse, tags=["Manga"])
    async def delete_manga(
        manga_id: int,
        principal: Principal = Depends(get_current_principal),
        db: AsyncSession = Depends(get_db),
    ):
        await CatalogService(db).delete_manga(principal, manga_id)
        return MessageResponse(message="Manga deleted successfully")

    # ========================================================================
    # Chapter Endpoints
    # ========================================================================

    @app.get("/manga/{manga_id}/chapters", response_model=ChapterListResponse, tags=["Chapters"])
    async def list_chapters(
        manga_id: int,
        sort_by: str = "chapter_number",
        order: str = "asc",
        db: AsyncSession = Depends(get_db),
    ):
        """List published chapters of a manga."""
        chapters = await CatalogService(db).list_chapters(manga_id, sort_by, order)
        return ChapterListResponse(
            items=[ChapterListItem.model_validate(c) for c in chapters],
            total=len(chapters),
        )

    @app.post("/manga/{manga_id}/chapters", response_model=ChapterDetail, status_code=201, tags=["Chapters"])
    async def create_chapter(
        manga_id: int,
        chapter_number: str = Form(...),
        title: Optional[str] = Form(None),
        status: Optional[str] = Form(None),
        images: Optional[str] = Form(None),
        files: Optional[List[UploadFile]] = File(None),
        principal: Principal = Depends(get_current_principal),
        db: AsyncSession = Depends(get_db),
        store: ObjectStore = Depends(get_store),
    ):
        """
        Add a chapter.

        Page images are uploaded as `files`, or given as a JSON array of
        URLs in `images` when no files are sent.
        """
        uploads = [await _read_upload(f) for f in files] if files else None
        chapter = await CatalogService(db, store).create_chapter(
            principal,
            manga_id,
            {"chapter_number": chapter_number, "title": title, "status": status, "images": images},
            files=uploads,
        )
        return ChapterDetail.model_validate(chapter)

    @app.get("/chapters/{slug}", response_model=ChapterDetail, tags=["Chapters"])
    async def get_chapter(
        slug: str,
        principal: Optional[Principal] = Depends(get_optional_principal),
        db: AsyncSession = Depends(get_db),
    ):
        """Get a chapter's pages and count the view."""
        chapter = await CatalogService(db).get_chapter_by_slug(slug, principal)
        return ChapterDetail.model_validate(chapter)

    @app.put("/chapters/{chapter_id}", response_model=ChapterDetail, tags=["Chapters"])
    async def update_chapter(
        chapter_id: int,
        request: ChapterUpdate,
        principal: Principal = Depends(get_current_principal),
        db: AsyncSession = Depends(get_db),
    ):
        chapter = await CatalogService(db).update_chapter(principal, chapter_id, request.model_dump(exclude_unset=True))
        return ChapterDetail.model_validate(chapter)

    @app.delete("/chapters/{chapter_id}", response_model=MessageResponse, tags=["Chapters"])
    async def delete_chapter(
        chapter_id: int,
        principal: Principal = Depends(get_current_principal),
        db: AsyncSession = Depends(get_db),
    ):
        await CatalogService(db).delete_chapter(principal, chapter_id)
        return MessageResponse(message="Chapter deleted successfully")

    # ========================================================================
    # Author & Genre Endpoints
    # ========================================================================

    @app.get("/authors", response_model=AuthorListResponse, tags=["Authors"])
    async def list_authors(
        search: Optional[str] = None,
        page: Optional[int] = None,
        limit: Optional[int] = None,
        db: AsyncSession = Depends(get_db),
    ):
        """List authors with approved manga counts; paginated when page and limit are given."""
        result = await author_service(db).list(search, page, limit)
        rows = result.items if isinstance(result, Page) else result
        items = []
        for author, count in rows:
            item = AuthorWithCount.model_validate(author)
            item.manga_count = count
            items.append(item)
        return AuthorListResponse(
            items=items,
            pagination=_pagination(result) if isinstance(result, Page) else None,
        )

    @app.get("/authors/{slug}", response_model=AuthorWithCount, tags=["Authors"])
    async def get_author(slug: str, db: AsyncSession = Depends(get_db)):
        author, count = await author_service(db).get_by_slug(slug)
        item = AuthorWithCount.model_validate(author)
        item.manga_count = count
        return item

    @app.get("/authors/{slug}/manga", response_model=MangaListResponse, tags=["Authors"])
    async def list_manga_by_author(
        slug: str,
        page: int = Query(1),
        limit: int = Query(settings.default_page_size),
        db: AsyncSession = Depends(get_db),
    ):
        """List approved manga by a specific author."""
        await author_service(db).get_by_slug(slug)
        return await list_manga(page=page, limit=limit, author=slug, db=db)

    @app.get("/genres", response_model=GenreListResponse, tags=["Genres"])
    async def list_genres(
        search: Optional[str] = None,
        page: Optional[int] = None,
        limit: Optional[int] = None,
        db: AsyncSession = Depends(get_db),
    ):
        """List genres with approved manga counts."""
        result = await genre_service(db).list(search, page, limit)
        rows = result.items if isinstance(result, Page) else result
        items = []
        for genre, count in rows:
            item = GenreWithCount.model_validate(genre)
            item.manga_count = count
            items.append(item)
        return GenreListResponse(
            items=items,
            pagination=_pagination(result) if isinstance(result, Page) else None,
        )

    @app.get("/genres/{slug}", response_model=GenreWithCount, tags=["Genres"])
    async def get_genre(slug: str, db: AsyncSession = Depends(get_db)):
        genre, count = await genre_service(db).get_by_slug(slug)
        item = GenreWithCount.model_validate(genre)
        item.manga_count = count
        return item

    @app.get("/genres/{slug}/manga", response_model=MangaListResponse, tags=["Genres"])
    async def list_manga_by_genre(
        slug: str,
        page: int = Query(1),
        limit: int = Query(settings.default_page_size),
        db: AsyncSession = Depends(get_db),
    ):
        """List approved manga for a specific genre."""
        await genre_service(db).get_by_slug(slug)
        return await list_manga(page=page, limit=limit, genre=slug, db=db)

    # ========================================================================
    # Bookmark Endpoints
    # ========================================================================

    @app.get("/bookmarks", response_model=BookmarkListResponse, tags=["Bookmarks"])
    async def list_bookmarks(
        page: int = Query(1),
        limit: int = Query(settings.default_page_size),
        sort_by: str = "created_at",
        order: str = "desc",
        principal: Principal = Depends(get_current_principal),
        db: AsyncSession = Depends(get_db),
    ):
        result = await BookmarkService(db).list_for_user(principal.id, page, limit, sort_by, order)
        items = []
        for bookmark, manga in result.items:
            item = BookmarkItem.model_validate(bookmark)
            item.manga = MangaSummary.model_validate(manga) if manga is not None else None
            items.append(item)
        return BookmarkListResponse(items=items, pagination=_pagination(result))

    @app.post("/bookmarks", response_model=BookmarkItem, status_code=201, tags=["Bookmarks"])
    async def add_bookmark(
        request: BookmarkRequest,
        principal: Principal = Depends(get_current_principal),
        db: AsyncSession = Depends(get_db),
    ):
        bookmark = await BookmarkService(db).add(principal.id, request.manga_id)
        return BookmarkItem.model_validate(bookmark)

    @app.post("/bookmarks/toggle", response_model=BookmarkToggleResponse, tags=["Bookmarks"])
    async def toggle_bookmark(
        request: BookmarkRequest,
        principal: Principal = Depends(get_current_principal),
        db: AsyncSession = Depends(get_db),
    ):
        result = await BookmarkService(db).toggle(principal.id, request.manga_id)
        return BookmarkToggleResponse.model_validate(result)

    @app.get("/bookmarks/check/{manga_id}", response_model=BookmarkCheckResponse, tags=["Bookmarks"])
    async def check_bookmark(
        manga_id: int,
        principal: Principal = Depends(get_current_principal),
        db: AsyncSession = Depends(get_db),
    ):
        result = await BookmarkService(db).check(principal.id, manga_id)
        return BookmarkCheckResponse(**result)

    @app.delete("/bookmarks/{manga_id}", response_model=MessageResponse, tags=["Bookmarks"])
    async def remove_bookmark(
        manga_id: int,
        principal: Principal = Depends(get_current_principal),
        db: AsyncSession = Depends(get_db),
    ):
        await BookmarkService(db).remove(principal.id, manga_id)
        return MessageResponse(message="Bookmark removed successfully")

    # ========================================================================
    # Reading History Endpoints
    # ========================================================================

    @app.post("/history", response_model=HistoryItem, tags=["History"])
    async def save_progress(
        request: ProgressRequest,
        principal: Principal = Depends(get_current_principal),
        db: AsyncSession = Depends(get_db),
    ):
        history = await ReadingHistoryService(db).save_progress(
            principal.id, request.chapter_id, request.current_page, request.total_pages, request.is_completed
        )
        return _history_item(history)

    @app.get("/history", response_model=HistoryListResponse, tags=["History"])
    async def list_history(
        manga_id: Optional[int] = None,
        page: int = Query(1),
        limit: int = Query(settings.default_page_size),
        sort_by: str = "last_read_at",
        order: str = "desc",
        principal: Principal = Depends(get_current_principal),
        db: AsyncSession = Depends(get_db),
    ):
        result = await ReadingHistoryService(db).list_history(principal.id, manga_id, page, limit, sort_by, order)
        return HistoryListResponse(
            items=[_history_item(*row) for row in result.items],
            pagination=_pagination(result),
        )

    @app.get("/history/manga/{manga_id}", response_model=Optional[MangaProgressResponse], tags=["History"])
    async def get_manga_progress(
        manga_id: int,
        principal: Principal = Depends(get_current_principal),
        db: AsyncSession = Depends(get_db),
    ):
        """Reader's progress in a manga, or null when they have not started it."""
        progress = await ReadingHistoryService(db).get_manga_progress(principal.id, manga_id)
        if progress is None:
            return None
        return MangaProgressResponse(
            last_read=_history_item(progress.last_read, chapter=progress.last_read_chapter),
            total_chapters=progress.total_chapters,
            read_chapters=progress.read_chapters,
            progress_percent=progress.progress_percent,
            history=[_history_item(history, chapter=chapter) for history, chapter in progress.history],
        )

    @app.delete("/history/manga/{manga_id}", response_model=ClearHistoryResponse, tags=["History"])
    async def clear_manga_history(
        manga_id: int,
        principal: Principal = Depends(get_current_principal),
        db: AsyncSession = Depends(get_db),
    ):
        return ClearHistoryResponse(deleted=await ReadingHistoryService(db).clear_manga(principal.id, manga_id))

    @app.delete("/history/{history_id}", response_model=MessageResponse, tags=["History"])
    async def delete_history_entry(
        history_id: int,
        principal: Principal = Depends(get_current_principal),
        db: AsyncSession = Depends(get_db),
    ):
        await ReadingHistoryService(db).delete_entry(principal.id, history_id)
        return MessageResponse(message="History entry deleted successfully")

    @app.delete("/history", response_model=ClearHistoryResponse, tags=["History"])
    async def clear_history(
        principal: Principal = Depends(get_current_principal),
        db: AsyncSession = Depends(get_db),
    ):
        return ClearHistoryResponse(deleted=await ReadingHistoryService(db).clear_all(principal.id))

    # ========================================================================
    # Discovery Endpoints
    # ========================================================================

    @app.get("/discover/trending", response_model=MangaFeedResponse, tags=["Discovery"])
    async def trending(limit: int = Query(10), db: AsyncSession = Depends(get_db)):
        manga = await DiscoveryService(db).trending(limit)
        return MangaFeedResponse(items=[MangaListItem.model_validate(m) for m in manga])

    @app.get("/discover/recent", response_model=RecentMangaResponse, tags=["Discovery"])
    async def recently_updated(limit: int = Query(10), db: AsyncSession = Depends(get_db)):
        items = []
        for entry in await DiscoveryService(db).recently_updated(limit):
            item = RecentMangaItem.model_validate(entry.manga)
            if entry.latest_chapter is not None:
                item.latest_chapter = ChapterSummary.model_validate(entry.latest_chapter)
            items.append(item)
        return RecentMangaResponse(items=items)

    @app.get("/discover/random", response_model=MangaFeedResponse, tags=["Discovery"])
    async def random_manga(count: int = Query(1), db: AsyncSession = Depends(get_db)):
        manga = await DiscoveryService(db).random_manga(count)
        return MangaFeedResponse(items=[MangaListItem.model_validate(m) for m in manga])

    @app.get("/discover/continue", response_model=ContinueReadingResponse, tags=["Discovery"])
    async def continue_reading(
        limit: int = Query(10),
        principal: Principal = Depends(get_current_principal),
        db: AsyncSession = Depends(get_db),
    ):
        entries = await DiscoveryService(db).continue_reading(principal.id, limit)
        return ContinueReadingResponse(
            items=[_history_item(e.history, e.manga, e.chapter) for e in entries]
        )

    # ========================================================================
    # Health Check
    # ========================================================================

    @app.get("/health", tags=["System"])
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "service": "manga-catalog"}


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.api_reload,
    )
