"""Authors and genres: create-if-absent resolution and browsing."""
import logging
from typing import List, Optional, Sequence, Tuple, Type, Union

from sqlalchemy import and_, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from exceptions import ConflictError, NotFoundError, ValidationError
from models import ApprovalStatus, Author, Genre, Manga, manga_authors, manga_genres
from normalizer import NameListNormalizer, SlugGenerator
from pagination import Page, paginate

logger = logging.getLogger(__name__)

Term = Union[Author, Genre]

ASSOCIATIONS = {
    Author: (manga_authors, manga_authors.c.author_id),
    Genre: (manga_genres, manga_genres.c.genre_id),
}


class TaxonomyService:
    """Shared logic for Author and Genre, parameterized by model."""

    def __init__(self, db: AsyncSession, model: Type[Term]):
        self.db = db
        self.model = model
        self.label = model.__name__

    async def resolve_names(self, names: Sequence[str]) -> List[Term]:
        """
        Return one record per name, creating missing ones.

        Names match case-insensitively, so "Action" and "action" resolve to
        the same record. A new name whose slug is already taken by a
        different name is a conflict.
        """
        names = NameListNormalizer.normalize(names)
        records = []
        for name in names:
            record = await self._find(name)
            if record is None:
                record = await self._create(name)
            if record not in records:
                records.append(record)
        return records

    async def _find(self, name: str) -> Optional[Term]:
        result = await self.db.execute(
            select(self.model).where(func.lower(self.model.name) == name.lower()).order_by(self.model.id)
        )
        return result.scalars().first()

    async def _create(self, name: str) -> Term:
        slug = SlugGenerator.generate_slug(name)
        if not slug:
            raise ValidationError(f"{self.label} name '{name}' must contain letters or digits")
        await self._ensure_slug_free(name, slug)

        record = self.model(name=name, slug=slug)
        try:
            async with self.db.begin_nested():
                self.db.add(record)
        except IntegrityError:
            # Lost a race with a concurrent insert of the same name
            existing = await self._find(name)
            if existing is None:
                await self._ensure_slug_free(name, slug)
                raise
            return existing

        logger.info(f"Created new {self.label.lower()}: {name}")
        return record

    async def _ensure_slug_free(self, name: str, slug: str):
        result = await self.db.execute(select(self.model.name).where(self.model.slug == slug))
        taken_by = result.scalar_one_or_none()
        if taken_by is not None:
            raise ConflictError(f"{self.label} '{name}' clashes with existing {self.label.lower()} '{taken_by}'")

    def _with_counts(self):
        """Select (record, approved manga count)."""
        table, fk = ASSOCIATIONS[self.model]
        return (
            select(self.model, func.count(Manga.id).label("manga_count"))
            .outerjoin(table, fk == self.model.id)
            .outerjoin(
                Manga,
                and_(Manga.id == table.c.manga_id, Manga.approval_status == ApprovalStatus.APPROVED),
            )
            .group_by(self.model.id)
        )

    async def list(self, search: Optional[str] = None, page: Optional[int] = None,
                   limit: Optional[int] = None) -> Union[Page, List[Tuple[Term, int]]]:
        """All records ordered by name; paginated only when page and limit are given."""
        query = self._with_counts().order_by(self.model.name)
        if search:
            query = query.where(self.model.name.ilike(f"%{search}%"))

        if page and limit:
            return await paginate(self.db, query, page, limit, scalars=False)

        result = await self.db.execute(query)
        return list(result.all())

    async def get_by_slug(self, slug: str) -> Tuple[Term, int]:
        result = await self.db.execute(self._with_counts().where(self.model.slug == slug))
        row = result.first()
        if row is None:
            raise NotFoundError(f"{self.label} not found")
        return row[0], row[1]


def author_service(db: AsyncSession) -> TaxonomyService:
    return TaxonomyService(db, Author)


def genre_service(db: AsyncSession) -> TaxonomyService:
    return TaxonomyService(db, Genre)
