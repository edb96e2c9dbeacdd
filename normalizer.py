"""Slug, name-list and description normalization utilities."""
import json
import re
from decimal import Decimal, InvalidOperation
from typing import Iterable, List, Optional, Union

import bleach
from bs4 import BeautifulSoup
from slugify import slugify

from exceptions import ValidationError
import logging

logger = logging.getLogger(__name__)


class SlugGenerator:
    """Generate URL-safe slugs from display names."""

    # Stripped before slugifying so "Dr. Stone" and "Dr Stone" agree
    PUNCTUATION = re.compile(r"[*+~.()'\"!:@]")

    @classmethod
    def generate_slug(cls, text: str) -> str:
        """
        Generate a URL-safe slug from text.

        Args:
            text: Input text (e.g., manga title)

        Returns:
            Slugified text
        """
        if not text:
            return ""
        return slugify(cls.PUNCTUATION.sub("", text), max_length=500)

    @classmethod
    def chapter_slug(cls, manga_slug: str, chapter_number: Decimal) -> str:
        """
        Derive `{mangaSlug}-ch-{number}`.

        The decimal point becomes a separator, so 1.5 gives "-ch-1-5"
        and can never collide with chapter 15.
        """
        ordinal = ChapterNumber.format(chapter_number).replace(".", "-")
        return cls.generate_slug(f"{manga_slug}-ch-{ordinal}")


class ChapterNumber:
    """Parse and format exact chapter ordinals (1, 1.5, 10.25)."""

    QUANTUM = Decimal("0.01")
    # Numeric(10, 2)
    LIMIT = Decimal("100000000")

    @classmethod
    def parse(cls, value: Union[str, int, float, Decimal, None]) -> Decimal:
        """
        Parse a positive ordinal with at most two fractional digits.

        Floats go through str() so 1.5 stays exactly 1.5.
        """
        if value is None or value == "":
            raise ValidationError("Chapter number is required")
        if isinstance(value, bool):
            raise ValidationError(f"Invalid chapter number: {value!r}")
        try:
            number = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise ValidationError(f"Invalid chapter number: {value!r}")

        if not number.is_finite() or number <= 0:
            raise ValidationError("Chapter number must be a positive number")
        if number >= cls.LIMIT:
            raise ValidationError("Chapter number is too large")
        if number != number.quantize(cls.QUANTUM):
            raise ValidationError("Chapter number supports at most two decimal places")
        return number.quantize(cls.QUANTUM)

    @staticmethod
    def format(number: Decimal) -> str:
        """Shortest exact rendering: 2.00 -> "2", 1.50 -> "1.5"."""
        return format(Decimal(number).normalize(), "f")


class NameListNormalizer:
    """
    Normalize author, genre and alternative-title lists.

    Accepts a list or a JSON-encoded list (multipart forms send strings).
    """

    @staticmethod
    def normalize(values: Union[str, Iterable[str], None]) -> List[str]:
        """
        Trim, drop blanks and de-duplicate case-insensitively.

        Args:
            values: Raw names

        Returns:
            Names in first-seen order and spelling
        """
        if values is None:
            return []

        if isinstance(values, str):
            stripped = values.strip()
            if not stripped:
                return []
            try:
                parsed = json.loads(stripped)
            except ValueError:
                parsed = stripped.split(",")
            values = parsed if isinstance(parsed, list) else [str(parsed)]

        seen = set()
        names = []
        for value in values:
            if value is None:
                continue
            name = re.sub(r"\s+", " ", str(value)).strip()
            if not name or name.lower() in seen:
                continue
            seen.add(name.lower())
            names.append(name)
        return names


class DescriptionCleaner:
    """
    Clean user-supplied manga descriptions.

    Removes scripts and styles, then restricts markup to a small allowlist.
    """

    ALLOWED_TAGS = [
        'p', 'br', 'em', 'strong', 'b', 'i', 'u',
        'blockquote', 'ol', 'ul', 'li',
    ]

    ALLOWED_ATTRIBUTES = {}

    def clean(self, html: Optional[str]) -> Optional[str]:
        if html is None:
            return None
        if not html.strip():
            return ""

        soup = BeautifulSoup(html, 'lxml')
        for tag in soup(['script', 'style', 'iframe', 'noscript']):
            tag.decompose()

        body = soup.body if soup.body is not None else soup
        content_html = body.decode_contents()

        clean_html = bleach.clean(
            content_html,
            tags=self.ALLOWED_TAGS,
            attributes=self.ALLOWED_ATTRIBUTES,
            strip=True,
        )

        # Normalize whitespace
        clean_html = re.sub(r'\n{3,}', '\n\n', clean_html)
        clean_html = re.sub(r' {2,}', ' ', clean_html)
        clean_html = re.sub(r'<p>\s*</p>', '', clean_html)
        return clean_html.strip()
