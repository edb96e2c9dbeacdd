"""Offset pagination and sort-order helpers shared by the services."""
import enum
from dataclasses import dataclass, field
from typing import Any, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from exceptions import ValidationError


class SortOrder(str, enum.Enum):
    ASC = "asc"
    DESC = "desc"

    def apply(self, column):
        return column.asc() if self is SortOrder.ASC else column.desc()


def parse_choice(enum_cls, value, label: str):
    """Coerce caller input into one of a fixed set of enum members."""
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(f"Invalid {label} '{value}'. Allowed: {allowed}")


@dataclass
class Page:
    """One page of results plus the numbers needed to render pagination."""
    items: List[Any] = field(default_factory=list)
    page: int = 1
    limit: int = 20
    total: int = 0

    @property
    def page_count(self) -> int:
        return (self.total + self.limit - 1) // self.limit


def check_page(page: Optional[int], limit: Optional[int]):
    """Validate and default page/limit."""
    page = 1 if page is None else page
    limit = settings.default_page_size if limit is None else limit
    if page < 1:
        raise ValidationError("Page must be at least 1")
    if limit < 1 or limit > settings.max_page_size:
        raise ValidationError(f"Limit must be between 1 and {settings.max_page_size}")
    return page, limit


async def paginate(db: AsyncSession, query, page: Optional[int], limit: Optional[int], scalars: bool = True) -> Page:
    """
    Run `query` for one page.

    Args:
        db: Session
        query: Select statement, already ordered
        page: 1-based page number
        limit: Page size
        scalars: Return the first column only (ORM entity queries)

    Returns:
        Page with items and total count
    """
    page, limit = check_page(page, limit)

    count_query = select(func.count()).select_from(query.order_by(None).subquery())
    total = (await db.execute(count_query)).scalar() or 0

    result = await db.execute(query.offset((page - 1) * limit).limit(limit))
    items = list(result.scalars().all()) if scalars else list(result.all())

    return Page(items=items, page=page, limit=limit, total=total)
