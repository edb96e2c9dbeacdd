import io
from decimal import Decimal

import pytest
from PIL import Image
from sqlalchemy import func, select

from catalog import CatalogService, MangaFilters
from engagement import BookmarkService, ReadingHistoryService
from exceptions import ConflictError, ForbiddenError, NotFoundError, UploadError, ValidationError
from models import ApprovalStatus, Author, Bookmark, Chapter, ChapterStatus, ChapterView, MangaStatus, ReadingHistory
from schemas import MangaDetail
from storage import ImageUpload, LocalObjectStore
from taxonomy import author_service


async def _chapter_rows(db, manga_id):
    return (await db.execute(select(func.count(Chapter.id)).where(Chapter.manga_id == manga_id))).scalar()


def _png(size=(4, 6)):
    buffer = io.BytesIO()
    Image.new("RGB", size, "white").save(buffer, format="PNG")
    return buffer.getvalue()


# ============================================================================
# Manga
# ============================================================================

@pytest.mark.asyncio
async def test_admin_created_manga_is_approved(manga, admin):
    assert manga.slug == "one-piece"
    assert manga.approval_status == ApprovalStatus.APPROVED
    assert manga.uploader_id == admin.id
    assert manga.status == MangaStatus.ONGOING
    assert manga.total_chapters == 0
    assert [a.name for a in manga.authors] == ["Eiichiro Oda"]
    assert sorted(g.slug for g in manga.genres) == ["action", "adventure"]


@pytest.mark.asyncio
async def test_uploader_created_manga_waits_for_review(catalog, uploader):
    manga = await catalog.create_manga(uploader, {"title": "Naruto", "description": "<p>Ninja</p><script>x</script>"})

    assert manga.approval_status == ApprovalStatus.PENDING
    assert manga.description == "<p>Ninja</p>"

    page = await catalog.list_manga(MangaFilters())
    assert page.total == 0


@pytest.mark.asyncio
async def test_reader_cannot_create_manga(catalog, reader):
    with pytest.raises(ForbiddenError):
        await catalog.create_manga(reader, {"title": "Bleach"})


@pytest.mark.asyncio
async def test_create_manga_requires_title(catalog, admin):
    with pytest.raises(ValidationError):
        await catalog.create_manga(admin, {"title": "   "})


@pytest.mark.asyncio
async def test_duplicate_title_conflicts(catalog, admin, manga):
    with pytest.raises(ConflictError):
        await catalog.create_manga(admin, {"title": "One Piece!"})


@pytest.mark.asyncio
async def test_invalid_manga_status_rejected(catalog, admin):
    with pytest.raises(ValidationError):
        await catalog.create_manga(admin, {"title": "Bleach", "status": "SLEEPING"})


@pytest.mark.asyncio
async def test_authors_are_reused_across_spellings(catalog, db_session, admin, manga):
    other = await catalog.create_manga(admin, {"title": "Wanted!", "author_names": "eiichiro oda"})

    assert other.authors[0].id == manga.authors[0].id
    count = (await db_session.execute(select(func.count(Author.id)))).scalar()
    assert count == 1


@pytest.mark.asyncio
async def test_names_sharing_a_slug_are_not_merged(db_session):
    authors = author_service(db_session)
    [c] = await authors.resolve_names(["C"])

    [again] = await authors.resolve_names(["c"])
    assert again.id == c.id

    with pytest.raises(ConflictError, match="clashes with existing author 'C'"):
        await authors.resolve_names(["C++"])
    count = (await db_session.execute(select(func.count(Author.id)))).scalar()
    assert count == 1


@pytest.mark.asyncio
async def test_pending_manga_visible_only_to_owner_and_admin(catalog, uploader, other_uploader, admin):
    manga = await catalog.create_manga(uploader, {"title": "Hidden"})

    assert (await catalog.get_manga_by_slug("hidden", uploader)).id == manga.id
    assert (await catalog.get_manga_by_slug("hidden", admin)).id == manga.id
    with pytest.raises(NotFoundError):
        await catalog.get_manga_by_slug("hidden")
    with pytest.raises(NotFoundError):
        await catalog.get_manga_by_slug("hidden", other_uploader)


@pytest.mark.asyncio
async def test_update_manga_reslugs_and_rejects_unknown_fields(catalog, admin, manga):
    updated = await catalog.update_manga(admin, manga.id, {
        "title": "One Piece Remastered",
        "genre_names": ["Comedy"],
        "status": "COMPLETED",
    })

    assert updated.slug == "one-piece-remastered"
    assert [g.name for g in updated.genres] == ["Comedy"]
    assert updated.status == MangaStatus.COMPLETED

    with pytest.raises(ValidationError):
        await catalog.update_manga(admin, manga.id, {"total_views": 1000})


@pytest.mark.asyncio
async def test_rename_moves_chapter_slugs_and_frees_the_old_prefix(catalog, admin, manga, add_chapter):
    first = await add_chapter(admin, manga, 1)
    half = await add_chapter(admin, manga, "1.5")

    await catalog.update_manga(admin, manga.id, {"title": "Straw Hat Pirates"})

    assert first.slug == "straw-hat-pirates-ch-1"
    assert half.slug == "straw-hat-pirates-ch-1-5"
    assert (await catalog.get_chapter_by_slug("straw-hat-pirates-ch-1")).id == first.id

    reboot = await catalog.create_manga(admin, {"title": "One Piece"})
    chapter = await add_chapter(admin, reboot, 1)

    assert chapter.slug == "one-piece-ch-1"
    assert reboot.total_chapters == 1
    assert manga.total_chapters == 2


@pytest.mark.asyncio
async def test_manga_detail_lists_published_chapters_in_order(catalog, admin, manga, add_chapter):
    await add_chapter(admin, manga, 2)
    await add_chapter(admin, manga, 1)
    await add_chapter(admin, manga, 3, status="DRAFT")

    detail = MangaDetail.model_validate(await catalog.get_manga_by_slug("one-piece"))

    assert [c.slug for c in detail.chapters] == ["one-piece-ch-1", "one-piece-ch-2"]
    assert [c.chapter_number for c in detail.chapters] == [1.0, 2.0]


@pytest.mark.asyncio
async def test_new_manga_detail_has_no_chapters(catalog, admin):
    created = await catalog.create_manga(admin, {"title": "Blank Slate"})

    assert MangaDetail.model_validate(created).chapters == []


@pytest.mark.asyncio
async def test_only_owner_may_update(catalog, uploader, other_uploader):
    manga = await catalog.create_manga(uploader, {"title": "Mine"})

    with pytest.raises(ForbiddenError):
        await catalog.update_manga(other_uploader, manga.id, {"title": "Theirs"})


@pytest.mark.asyncio
async def test_moderation_is_admin_only(catalog, uploader, admin):
    manga = await catalog.create_manga(uploader, {"title": "Review Me"})

    with pytest.raises(ForbiddenError):
        await catalog.moderate_manga(uploader, manga.id, ApprovalStatus.APPROVED)

    await catalog.moderate_manga(admin, manga.id, ApprovalStatus.APPROVED)
    page = await catalog.list_manga(MangaFilters())
    assert [m.id for m in page.items] == [manga.id]


@pytest.mark.asyncio
async def test_delete_manga_cascades_chapters_but_keeps_engagement(db_session, catalog, admin, reader, manga, add_chapter):
    chapter = await add_chapter(admin, manga, 1)
    await BookmarkService(db_session).add(reader.id, manga.id)
    await ReadingHistoryService(db_session).save_progress(reader.id, chapter.id, 3, 10)
    manga_id = manga.id

    await catalog.delete_manga(admin, manga_id)

    with pytest.raises(NotFoundError):
        await catalog.get_manga(manga_id)
    assert await _chapter_rows(db_session, manga_id) == 0
    bookmarks = (await db_session.execute(select(func.count(Bookmark.id)))).scalar()
    history = (await db_session.execute(select(func.count(ReadingHistory.id)))).scalar()
    assert bookmarks == 1
    assert history == 1


@pytest.mark.asyncio
async def test_list_manga_filters_and_sorting(catalog, admin, manga):
    await catalog.create_manga(admin, {
        "title": "Berserk",
        "alternative_titles": ["Beruseruku"],
        "author_names": ["Kentaro Miura"],
        "genre_names": ["Dark Fantasy"],
    })

    by_genre = await catalog.list_manga(MangaFilters(genre="adventure"))
    assert [m.title for m in by_genre.items] == ["One Piece"]

    by_author = await catalog.list_manga(MangaFilters(author="kentaro-miura"))
    assert [m.title for m in by_author.items] == ["Berserk"]

    by_alt_title = await catalog.list_manga(MangaFilters(search="beruseruku"))
    assert [m.title for m in by_alt_title.items] == ["Berserk"]

    by_title = await catalog.list_manga(MangaFilters(sort_by="title", order="asc"))
    assert [m.title for m in by_title.items] == ["Berserk", "One Piece"]

    paged = await catalog.list_manga(MangaFilters(page=2, limit=1, sort_by="title", order="asc"))
    assert [m.title for m in paged.items] == ["One Piece"]
    assert paged.total == 2
    assert paged.page_count == 2


@pytest.mark.asyncio
async def test_list_manga_rejects_unknown_sort(catalog):
    with pytest.raises(ValidationError):
        await catalog.list_manga(MangaFilters(sort_by="password_hash"))
    with pytest.raises(ValidationError):
        await catalog.list_manga(MangaFilters(order="sideways"))
    with pytest.raises(ValidationError):
        await catalog.list_manga(MangaFilters(limit=1000))


# ============================================================================
# Chapters
# ============================================================================

@pytest.mark.asyncio
async def test_chapter_count_tracks_chapter_rows(db_session, catalog, admin, manga, add_chapter):
    for number in (1, 2, "2.5"):
        await add_chapter(admin, manga, number)

    assert manga.total_chapters == 3
    assert await _chapter_rows(db_session, manga.id) == 3
    assert manga.last_chapter_at is not None


@pytest.mark.asyncio
async def test_duplicate_chapter_number_conflicts_without_counting(db_session, catalog, admin, manga, add_chapter):
    await add_chapter(admin, manga, 1)
    await add_chapter(admin, manga, 2)

    with pytest.raises(ConflictError):
        await add_chapter(admin, manga, "2.00")

    assert manga.total_chapters == 2
    assert await _chapter_rows(db_session, manga.id) == 2


@pytest.mark.asyncio
async def test_fractional_chapter_slugs(catalog, admin, manga, add_chapter):
    half = await add_chapter(admin, manga, "1.5")
    fifteen = await add_chapter(admin, manga, 15)

    assert half.slug == "one-piece-ch-1-5"
    assert fifteen.slug == "one-piece-ch-15"
    assert half.chapter_number == Decimal("1.5")
    assert half.title == "Chapter 1.5"


@pytest.mark.asyncio
async def test_chapter_slug_clash_is_reported_separately(db_session, catalog, admin, manga, add_chapter):
    other = await catalog.create_manga(admin, {"title": "Imposter"})
    db_session.add(Chapter(manga_id=other.id, chapter_number=9, title="Stray", slug="one-piece-ch-1", images=["x.jpg"]))
    await db_session.commit()

    with pytest.raises(ConflictError, match="Chapter slug 'one-piece-ch-1' already exists"):
        await add_chapter(admin, manga, 1)

    assert manga.total_chapters == 0
    assert await _chapter_rows(db_session, manga.id) == 0


@pytest.mark.asyncio
async def test_chapter_requires_images_and_valid_number(catalog, admin, manga):
    with pytest.raises(ValidationError, match="No images"):
        await catalog.create_chapter(admin, manga.id, {"chapter_number": 1})
    with pytest.raises(ValidationError):
        await catalog.create_chapter(admin, manga.id, {"chapter_number": -1, "images": ["a.jpg"]})
    assert manga.total_chapters == 0


@pytest.mark.asyncio
async def test_non_owner_cannot_add_chapters(catalog, uploader, other_uploader):
    manga = await catalog.create_manga(uploader, {"title": "Owned"})

    with pytest.raises(ForbiddenError, match="add chapters to this manga"):
        await catalog.create_chapter(other_uploader, manga.id, {"chapter_number": 1, "images": ["a.jpg"]})


@pytest.mark.asyncio
async def test_chapter_for_missing_manga(catalog, admin):
    with pytest.raises(NotFoundError):
        await catalog.create_chapter(admin, 999, {"chapter_number": 1, "images": ["a.jpg"]})


@pytest.mark.asyncio
async def test_draft_chapters_are_hidden_and_do_not_set_last_chapter(catalog, admin, manga, add_chapter):
    draft = await add_chapter(admin, manga, 1, status="DRAFT")

    assert draft.published_at is None
    assert manga.total_chapters == 1
    assert manga.last_chapter_at is None
    assert await catalog.list_chapters(manga.id) == []
    with pytest.raises(NotFoundError):
        await catalog.get_chapter_by_slug(draft.slug)

    await catalog.update_chapter(admin, draft.id, {"status": "PUBLISHED"})
    assert manga.last_chapter_at is not None
    assert [c.id for c in await catalog.list_chapters(manga.id)] == [draft.id]


@pytest.mark.asyncio
async def test_list_chapters_orders_by_number(catalog, admin, manga, add_chapter):
    for number in (3, 1, "1.5"):
        await add_chapter(admin, manga, number)

    ascending = await catalog.list_chapters(manga.id)
    descending = await catalog.list_chapters(manga.id, sort_by="chapter_number", order="desc")

    assert [str(c.chapter_number.normalize()) for c in ascending] == ["1", "1.5", "3"]
    assert [c.id for c in descending] == [c.id for c in reversed(ascending)]


@pytest.mark.asyncio
async def test_update_chapter_number_reslugs_and_conflicts(catalog, admin, manga, add_chapter):
    first = await add_chapter(admin, manga, 1)
    await add_chapter(admin, manga, 2)

    moved = await catalog.update_chapter(admin, first.id, {"chapter_number": "1.5", "title": "Romance Dawn"})
    assert moved.slug == "one-piece-ch-1-5"
    assert moved.title == "Romance Dawn"

    with pytest.raises(ConflictError):
        await catalog.update_chapter(admin, first.id, {"chapter_number": 2})


@pytest.mark.asyncio
async def test_delete_chapter_recomputes_counters(catalog, admin, manga, add_chapter):
    chapter = await add_chapter(admin, manga, 1)
    assert manga.last_chapter_at is not None

    await catalog.delete_chapter(admin, chapter.id)

    assert manga.total_chapters == 0
    assert manga.last_chapter_at is None
    with pytest.raises(NotFoundError):
        await catalog.get_chapter(chapter.id)


@pytest.mark.asyncio
async def test_reading_a_chapter_counts_views(db_session, catalog, admin, reader, manga, add_chapter):
    chapter = await add_chapter(admin, manga, 1)

    await catalog.get_chapter_by_slug(chapter.slug)
    await catalog.get_chapter_by_slug(chapter.slug, reader)

    assert chapter.total_views == 2
    assert manga.total_views == 2
    audits = (await db_session.execute(select(func.count(ChapterView.id)))).scalar()
    assert audits == 1


@pytest.mark.asyncio
async def test_chapter_pages_uploaded_through_store(db_session, admin, manga, tmp_path):
    catalog = CatalogService(db_session, LocalObjectStore(str(tmp_path), "http://cdn.test/media"))
    files = [ImageUpload(_png(), "image/png", f"p{i}.png") for i in range(3)]

    chapter = await catalog.create_chapter(admin, manga.id, {"chapter_number": 1}, files=files)

    assert chapter.total_images == 3
    assert all(url.startswith(f"http://cdn.test/media/manga/{manga.id}/chapter-1/") for url in chapter.images)
    assert len(list((tmp_path / "manga" / str(manga.id) / "chapter-1").iterdir())) == 3


@pytest.mark.asyncio
async def test_uploads_without_store_fail(catalog, admin, manga):
    with pytest.raises(UploadError):
        await catalog.create_chapter(admin, manga.id, {"chapter_number": 1},
                                     files=[ImageUpload(_png(), "image/png", "p.png")])
    assert manga.total_chapters == 0


@pytest.mark.asyncio
async def test_chapter_status_transition_to_draft_recomputes_latest(catalog, admin, manga, add_chapter):
    chapter = await add_chapter(admin, manga, 1)

    updated = await catalog.update_chapter(admin, chapter.id, {"status": ChapterStatus.DRAFT})

    assert updated.published_at is None
    assert manga.last_chapter_at is None


@pytest.mark.asyncio
async def test_failed_manga_create_removes_stored_thumbnail(db_session, admin, tmp_path):
    catalog = CatalogService(db_session, LocalObjectStore(str(tmp_path), "http://cdn.test/media"))
    await catalog.create_manga(admin, {"title": "Setup", "author_names": ["C"]})

    with pytest.raises(ConflictError):
        await catalog.create_manga(
            admin,
            {"title": "Fresh", "author_names": ["C++"]},
            thumbnail=ImageUpload(_png(), "image/png", "thumb.png"),
        )

    assert list((tmp_path / "manga" / "covers").iterdir()) == []


@pytest.mark.asyncio
async def test_lost_chapter_race_removes_uploaded_pages(db_session, admin, manga, tmp_path, monkeypatch):
    catalog = CatalogService(db_session, LocalObjectStore(str(tmp_path), "http://cdn.test/media"))
    await catalog.create_chapter(admin, manga.id, {"chapter_number": 1, "images": ["https://cdn.test/a.jpg"]})

    # Let the up-front checks pass once, as if the rival insert landed after them
    for name in ("_ensure_number_free", "_ensure_chapter_slug_free"):
        check = getattr(catalog, name)
        calls = []

        async def late_check(*args, check=check, calls=calls):
            calls.append(args)
            if len(calls) > 1:
                await check(*args)

        monkeypatch.setattr(catalog, name, late_check)

    with pytest.raises(ConflictError, match="Chapter number already exists"):
        await catalog.create_chapter(admin, manga.id, {"chapter_number": 1},
                                     files=[ImageUpload(_png(), "image/png", "p1.png")])

    assert list((tmp_path / "manga" / str(manga.id) / "chapter-1").iterdir()) == []
    assert manga.total_chapters == 1
