"""Pydantic schemas for API request/response validation."""
from pydantic import AliasChoices, BaseModel, Field, ConfigDict
from typing import Optional, List, Union
from datetime import datetime
from models import MangaStatus, ApprovalStatus, ChapterStatus


# Shared
class PaginationSchema(BaseModel):
    """Pagination block returned alongside list items."""
    page: int
    limit: int
    total: int
    page_count: int

    model_config = ConfigDict(from_attributes=True)


class MessageResponse(BaseModel):
    success: bool = True
    message: str


# Taxonomy Schemas
class AuthorSchema(BaseModel):
    """Author schema for API responses."""
    id: int
    name: str
    slug: str
    description: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class GenreSchema(BaseModel):
    """Genre schema for API responses."""
    id: int
    name: str
    slug: str
    description: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class AuthorWithCount(AuthorSchema):
    manga_count: int = 0


class GenreWithCount(GenreSchema):
    manga_count: int = 0


class AuthorListResponse(BaseModel):
    items: List[AuthorWithCount]
    pagination: Optional[PaginationSchema] = None


class GenreListResponse(BaseModel):
    items: List[GenreWithCount]
    pagination: Optional[PaginationSchema] = None


class ChapterSummary(BaseModel):
    """Minimal chapter reference."""
    id: int
    manga_id: int
    chapter_number: float
    title: str
    slug: str

    model_config = ConfigDict(from_attributes=True)


# Manga Schemas
class MangaSummary(BaseModel):
    """Minimal manga reference embedded in other resources."""
    id: int
    title: str
    slug: str
    thumbnail: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class MangaListItem(BaseModel):
    """Manga list item for paginated responses."""
    id: int
    title: str
    slug: str
    thumbnail: Optional[str] = None
    status: MangaStatus
    approval_status: ApprovalStatus
    total_chapters: int
    total_views: int
    total_bookmarks: int
    average_rating: float
    last_chapter_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    authors: List[AuthorSchema] = []
    genres: List[GenreSchema] = []

    model_config = ConfigDict(from_attributes=True)


class MangaDetail(MangaListItem):
    """Detailed manga information."""
    alternative_titles: List[str] = []
    description: Optional[str] = None
    cover_image: Optional[str] = None
    release_year: Optional[int] = None
    uploader_id: Optional[int] = None
    total_comments: int = 0
    total_ratings: int = 0
    chapters: List[ChapterSummary] = Field(
        default_factory=list, validation_alias=AliasChoices("published_chapters", "chapters"),
    )


class MangaListResponse(BaseModel):
    """Paginated manga list response."""
    items: List[MangaListItem]
    pagination: PaginationSchema


class MangaUpdate(BaseModel):
    """Partial manga update; only fields present in the body are applied."""
    title: Optional[str] = None
    alternative_titles: Optional[Union[List[str], str]] = None
    description: Optional[str] = None
    status: Optional[MangaStatus] = None
    release_year: Optional[int] = Field(None, ge=1800, le=3000)
    thumbnail: Optional[str] = None
    cover_image: Optional[str] = None
    author_names: Optional[Union[List[str], str]] = None
    genre_names: Optional[Union[List[str], str]] = None


class ModerationRequest(BaseModel):
    approval_status: ApprovalStatus = Field(..., description="New moderation state")


# Chapter Schemas
class ChapterListItem(ChapterSummary):
    """Chapter list item."""
    total_images: int
    total_views: int
    status: ChapterStatus
    published_at: Optional[datetime] = None
    created_at: datetime


class ChapterDetail(ChapterListItem):
    """Detailed chapter information with page images."""
    images: List[str] = []
    manga: Optional[MangaSummary] = None


class ChapterListResponse(BaseModel):
    items: List[ChapterListItem]
    total: int


class ChapterUpdate(BaseModel):
    chapter_number: Optional[Union[float, str]] = None
    title: Optional[str] = None
    images: Optional[Union[List[str], str]] = None
    status: Optional[ChapterStatus] = None


# Bookmark Schemas
class BookmarkRequest(BaseModel):
    manga_id: int


class BookmarkItem(BaseModel):
    """Bookmark with the manga it points at (null once the manga is deleted)."""
    id: int
    manga_id: int
    created_at: datetime
    manga: Optional[MangaSummary] = None

    model_config = ConfigDict(from_attributes=True)


class BookmarkListResponse(BaseModel):
    items: List[BookmarkItem]
    pagination: PaginationSchema


class BookmarkToggleResponse(BaseModel):
    action: str
    is_bookmarked: bool

    model_config = ConfigDict(from_attributes=True)


class BookmarkCheckResponse(BaseModel):
    is_bookmarked: bool
    bookmark_id: Optional[int] = None


# Reading History Schemas
class ProgressRequest(BaseModel):
    """Reader position report. Range checks happen in the service."""
    chapter_id: int
    current_page: int
    total_pages: int
    is_completed: Optional[bool] = None


class HistoryItem(BaseModel):
    id: int
    chapter_id: int
    manga_id: int
    current_page: int
    total_pages: int
    progress_percent: int
    is_completed: bool
    last_read_at: datetime
    manga: Optional[MangaSummary] = None
    chapter: Optional[ChapterSummary] = None

    model_config = ConfigDict(from_attributes=True)


class HistoryListResponse(BaseModel):
    items: List[HistoryItem]
    pagination: PaginationSchema


class MangaProgressResponse(BaseModel):
    last_read: HistoryItem
    total_chapters: int
    read_chapters: int
    progress_percent: int
    history: List[HistoryItem] = []


class ClearHistoryResponse(BaseModel):
    deleted: int


# Discovery Schemas
class RecentMangaItem(MangaListItem):
    latest_chapter: Optional[ChapterSummary] = None


class MangaFeedResponse(BaseModel):
    items: List[MangaListItem]


class RecentMangaResponse(BaseModel):
    items: List[RecentMangaItem]


class ContinueReadingResponse(BaseModel):
    items: List[HistoryItem]
