"""Database models for the manga catalog and engagement tracker."""
from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, String, Text, DateTime, Enum, Numeric, Float,
    ForeignKey, Index, Table, Boolean, JSON, UniqueConstraint, and_
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from database import Base
import enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRole(str, enum.Enum):
    """Principal roles."""
    USER = "USER"
    UPLOADER = "UPLOADER"
    ADMIN = "ADMIN"


class AccountStatus(str, enum.Enum):
    """Account standing, checked when a principal is resolved."""
    ACTIVE = "ACTIVE"
    BANNED = "BANNED"
    SUSPENDED = "SUSPENDED"


class MangaStatus(str, enum.Enum):
    """Manga publication lifecycle."""
    ONGOING = "ONGOING"
    COMPLETED = "COMPLETED"
    HIATUS = "HIATUS"
    CANCELLED = "CANCELLED"


class ApprovalStatus(str, enum.Enum):
    """Moderation state; only APPROVED manga are publicly listed."""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class ChapterStatus(str, enum.Enum):
    """Chapter publish state."""
    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"


# Many-to-many association tables
manga_authors = Table(
    'manga_authors',
    Base.metadata,
    Column('manga_id', Integer, ForeignKey('manga.id', ondelete='CASCADE'), primary_key=True),
    Column('author_id', Integer, ForeignKey('authors.id', ondelete='CASCADE'), primary_key=True),
    Index('ix_manga_authors_author_id', 'author_id'),
)

manga_genres = Table(
    'manga_genres',
    Base.metadata,
    Column('manga_id', Integer, ForeignKey('manga.id', ondelete='CASCADE'), primary_key=True),
    Column('genre_id', Integer, ForeignKey('genres.id', ondelete='CASCADE'), primary_key=True),
    Index('ix_manga_genres_genre_id', 'genre_id'),
)


class User(Base):
    """Principal. Credentials are managed outside this service."""
    __tablename__ = 'users'

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), nullable=False, unique=True, index=True)
    username = Column(String(100), nullable=False, unique=True, index=True)
    password_hash = Column(String(255), nullable=True)
    role = Column(Enum(UserRole), default=UserRole.USER, nullable=False)
    status = Column(Enum(AccountStatus), default=AccountStatus.ACTIVE, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<User(id={self.id}, username='{self.username}', role='{self.role}')>"


class Manga(Base):
    """Manga model - a serialized work and its aggregate counters."""
    __tablename__ = 'manga'

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(500), nullable=False, index=True)
    slug = Column(String(500), nullable=False, unique=True, index=True)
    alternative_titles = Column(JSON, nullable=False, default=list)
    description = Column(Text, nullable=True)
    thumbnail = Column(String(1000), nullable=True)
    cover_image = Column(String(1000), nullable=True)
    status = Column(Enum(MangaStatus), default=MangaStatus.ONGOING, nullable=False, index=True)
    approval_status = Column(Enum(ApprovalStatus), default=ApprovalStatus.PENDING, nullable=False, index=True)
    release_year = Column(Integer, nullable=True)
    uploader_id = Column(Integer, ForeignKey('users.id', ondelete='SET NULL'), nullable=True, index=True)

    # Denormalized counters, maintained by counters.CounterSynchronizer
    total_chapters = Column(Integer, default=0, nullable=False)
    total_views = Column(Integer, default=0, nullable=False, index=True)
    total_bookmarks = Column(Integer, default=0, nullable=False)
    total_comments = Column(Integer, default=0, nullable=False)
    total_ratings = Column(Integer, default=0, nullable=False)
    average_rating = Column(Float, default=0.0, nullable=False)
    last_chapter_at = Column(DateTime(timezone=True), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    # Relationships
    authors = relationship("Author", secondary=manga_authors, lazy="selectin", passive_deletes=True)
    genres = relationship("Genre", secondary=manga_genres, lazy="selectin", passive_deletes=True)
    # Loaded explicitly by CatalogService for detail views
    published_chapters = relationship(
        "Chapter",
        primaryjoin=lambda: and_(Chapter.manga_id == Manga.id, Chapter.status == ChapterStatus.PUBLISHED),
        order_by=lambda: Chapter.chapter_number,
        viewonly=True,
        lazy="raise",
    )

    def __repr__(self):
        return f"<Manga(id={self.id}, title='{self.title}', slug='{self.slug}')>"


class Chapter(Base):
    """Chapter model. Ordered installment of a manga carrying page images."""
    __tablename__ = 'chapters'

    id = Column(Integer, primary_key=True, index=True)
    manga_id = Column(Integer, ForeignKey('manga.id', ondelete='CASCADE'), nullable=False, index=True)
    chapter_number = Column(Numeric(10, 2), nullable=False)
    title = Column(String(500), nullable=False)
    slug = Column(String(600), nullable=False, unique=True, index=True)
    images = Column(JSON, nullable=False, default=list)
    total_images = Column(Integer, default=0, nullable=False)
    total_views = Column(Integer, default=0, nullable=False)
    status = Column(Enum(ChapterStatus), default=ChapterStatus.PUBLISHED, nullable=False, index=True)
    published_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    manga = relationship("Manga", lazy="joined")

    __table_args__ = (
        UniqueConstraint('manga_id', 'chapter_number', name='uq_chapters_manga_number'),
    )

    def __repr__(self):
        return f"<Chapter(id={self.id}, manga_id={self.manga_id}, number={self.chapter_number})>"


class Author(Base):
    """Author model. Created on first reference by unique name."""
    __tablename__ = 'authors'

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False, unique=True, index=True)
    slug = Column(String(200), nullable=False, unique=True, index=True)
    description = Column(Text, nullable=True)

    def __repr__(self):
        return f"<Author(id={self.id}, name='{self.name}', slug='{self.slug}')>"


class Genre(Base):
    """Genre model."""
    __tablename__ = 'genres'

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False, unique=True, index=True)
    slug = Column(String(100), nullable=False, unique=True, index=True)
    description = Column(Text, nullable=True)

    def __repr__(self):
        return f"<Genre(id={self.id}, name='{self.name}', slug='{self.slug}')>"


# Engagement records reference manga/chapters by plain id so they outlive
# the catalog rows they point at.

class Bookmark(Base):
    """A user's saved-for-later marker on a manga."""
    __tablename__ = 'bookmarks'

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    manga_id = Column(Integer, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint('user_id', 'manga_id', name='uq_bookmarks_user_manga'),
    )

    def __repr__(self):
        return f"<Bookmark(user_id={self.user_id}, manga_id={self.manga_id})>"


class ReadingHistory(Base):
    """A user's read position in one chapter."""
    __tablename__ = 'reading_history'

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    chapter_id = Column(Integer, nullable=False, index=True)
    manga_id = Column(Integer, nullable=False)
    current_page = Column(Integer, default=0, nullable=False)
    total_pages = Column(Integer, default=0, nullable=False)
    progress_percent = Column(Integer, default=0, nullable=False)
    is_completed = Column(Boolean, default=False, nullable=False)
    last_read_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint('user_id', 'chapter_id', name='uq_reading_history_user_chapter'),
        Index('ix_reading_history_user_manga', 'user_id', 'manga_id'),
        Index('ix_reading_history_user_last_read', 'user_id', 'last_read_at'),
    )

    def __repr__(self):
        return f"<ReadingHistory(user_id={self.user_id}, chapter_id={self.chapter_id}, progress={self.progress_percent})>"


class ChapterView(Base):
    """Audit row for a view by an authenticated reader."""
    __tablename__ = 'chapter_views'

    id = Column(Integer, primary_key=True, index=True)
    chapter_id = Column(Integer, ForeignKey('chapters.id', ondelete='CASCADE'), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    viewed_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<ChapterView(chapter_id={self.chapter_id}, user_id={self.user_id})>"
