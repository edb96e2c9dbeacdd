"""
CLI utility for managing the manga catalog backend.

Usage:
    python cli.py list-manga                    # List manga with counters
    python cli.py list-authors                  # List authors
    python cli.py list-genres                   # List genres
    python cli.py reconcile [--manga-id N]      # Recompute counters now
    python cli.py reconcile --enqueue           # Recompute counters on a worker
    python cli.py issue-token USER_ID           # Print a bearer token for a user
"""
import argparse
import sys

from sqlalchemy import func, select

from auth import create_access_token
from database import create_sync_session_factory
from models import Author, Genre, Manga, User, manga_authors, manga_genres
from reconcile_queue import ReconciliationQueue, process_reconciliation


def _truncate(text: str, width: int) -> str:
    return text[:width - 3] + "..." if len(text) > width else text


def cmd_list_manga(args):
    """List manga, newest first."""
    db = create_sync_session_factory()()
    try:
        manga_list = db.execute(
            select(Manga).order_by(Manga.created_at.desc()).limit(args.limit)
        ).scalars().all()

        print(f"\n{'ID':<5} {'Title':<40} {'Approval':<10} {'Chapters':<9} {'Views':<8} {'Bookmarks':<9}")
        print("-" * 86)

        for manga in manga_list:
            print(
                f"{manga.id:<5} {_truncate(manga.title, 40):<40} {manga.approval_status.value:<10} "
                f"{manga.total_chapters:<9} {manga.total_views:<8} {manga.total_bookmarks:<9}"
            )

        print(f"\nTotal: {len(manga_list)} manga")

    finally:
        db.close()


def _list_terms(model, table, fk, label: str):
    db = create_sync_session_factory()()
    try:
        rows = db.execute(
            select(model, func.count(table.c.manga_id))
            .outerjoin(table, fk == model.id)
            .group_by(model.id)
            .order_by(model.name)
        ).all()

        print(f"\n{'ID':<5} {'Name':<30} {'Slug':<30} {'Manga':<10}")
        print("-" * 75)

        for term, count in rows:
            print(f"{term.id:<5} {_truncate(term.name, 30):<30} {_truncate(term.slug, 30):<30} {count:<10}")

        print(f"\nTotal: {len(rows)} {label}")

    finally:
        db.close()


def cmd_list_authors(args):
    """List all authors."""
    _list_terms(Author, manga_authors, manga_authors.c.author_id, "authors")


def cmd_list_genres(args):
    """List all genres."""
    _list_terms(Genre, manga_genres, manga_genres.c.genre_id, "genres")


def cmd_reconcile(args):
    """Recompute denormalized counters."""
    if args.enqueue:
        job_id = ReconciliationQueue().enqueue(args.manga_id)
        if job_id is None:
            print("✗ Could not enqueue reconciliation (is Redis running?)")
            sys.exit(1)
        print(f"✓ Enqueued job {job_id}")
        return

    updated = process_reconciliation(args.manga_id)
    print(f"✓ Reconciled {updated} manga")


def cmd_issue_token(args):
    """Print a bearer token for an existing user."""
    db = create_sync_session_factory()()
    try:
        user = db.get(User, args.user_id)
        if user is None:
            print(f"Error: user {args.user_id} not found")
            sys.exit(1)
    finally:
        db.close()

    print(create_access_token(args.user_id))


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Manga Catalog Backend CLI"
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # List manga command
    list_manga_parser = subparsers.add_parser("list-manga", help="List manga")
    list_manga_parser.add_argument(
        "--limit",
        type=int,
        default=20,
        help="Maximum number of manga to show"
    )
    list_manga_parser.set_defaults(func=cmd_list_manga)

    # List authors command
    list_authors_parser = subparsers.add_parser("list-authors", help="List authors")
    list_authors_parser.set_defaults(func=cmd_list_authors)

    # List genres command
    list_genres_parser = subparsers.add_parser("list-genres", help="List genres")
    list_genres_parser.set_defaults(func=cmd_list_genres)

    # Reconcile command
    reconcile_parser = subparsers.add_parser("reconcile", help="Recompute stored counters")
    reconcile_parser.add_argument(
        "--manga-id",
        type=int,
        default=None,
        help="Only this manga (default: all)"
    )
    reconcile_parser.add_argument(
        "--enqueue",
        action="store_true",
        help="Run on a background worker instead of now"
    )
    reconcile_parser.set_defaults(func=cmd_reconcile)

    # Issue token command
    token_parser = subparsers.add_parser("issue-token", help="Print a bearer token for a user")
    token_parser.add_argument("user_id", type=int, help="User ID")
    token_parser.set_defaults(func=cmd_issue_token)

    # Parse arguments
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    # Run command
    args.func(args)


if __name__ == "__main__":
    main()
