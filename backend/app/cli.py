"""DICOM Study Catalog CLI - Command Line Interface for administrative tasks.

Usage:
    python -m app.cli <command> [options]

Commands:
    version         Show version information
    check-db        Check database connectivity
    init-db         Create the catalog tables
    reconcile       Report (and optionally repair) blob/record inconsistencies
    issue-token     Issue a bearer token for a caller

Examples:
    python -m app.cli init-db
    python -m app.cli reconcile --repair
    python -m app.cli issue-token --user-id u-17 --username jdoe --role technologist

"""

import argparse
import asyncio
import json
import sys
from datetime import timedelta
from typing import NoReturn

from app.core.config import settings
from app.core.security import SecurityManager


def print_banner() -> None:
    """Print CLI banner."""
    print("\n" + "=" * 50)
    print(" DICOM Study Catalog CLI")
    print("=" * 50 + "\n")


def print_error(message: str) -> None:
    """Print error message to stderr."""
    print(f"ERROR: {message}", file=sys.stderr)


def print_success(message: str) -> None:
    """Print success message."""
    print(f"SUCCESS: {message}")


def print_info(message: str) -> None:
    """Print info message."""
    print(f"INFO: {message}")


async def check_database() -> bool:
    """Check database connectivity."""
    from sqlalchemy import text
    from sqlalchemy.exc import SQLAlchemyError

    from app.models.base import async_session_maker

    try:
        print_info("Checking database connectivity...")
        async with async_session_maker() as session:
            await session.execute(text("SELECT 1"))
            print_success("Database connection successful")
            return True
    except (SQLAlchemyError, OSError) as e:
        print_error(f"Database connection failed: {e}")
        return False


async def init_database() -> bool:
    """Create the catalog tables."""
    from sqlalchemy.exc import SQLAlchemyError

    from app.models.base import create_all_tables

    if not await check_database():
        return False

    try:
        await create_all_tables()
    except SQLAlchemyError as e:
        print_error(f"Failed to initialize database: {e}")
        return False

    print_success("Catalog tables created (existing tables were left untouched)")
    return True


async def reconcile(repair: bool) -> int:
    """Run one reconciliation pass and print its report."""
    from app.core.errors import StudyCatalogError
    from app.models.base import async_session_maker
    from app.services.storage.blob_store import LocalBlobStore
    from app.services.storage.metadata_store import SqlAlchemyMetadataStore
    from app.services.studies.reconciliation import StudyReconciler

    reconciler = StudyReconciler(
        LocalBlobStore(settings.storage.root_dir, settings.storage.public_base_url),
        SqlAlchemyMetadataStore(async_session_maker),
        prefix=settings.storage.path_prefix,
        grace_period=timedelta(minutes=settings.reconciliation.grace_period_minutes),
    )

    try:
        report = await reconciler.scan(repair=repair)
    except StudyCatalogError as e:
        print_error(f"Reconciliation failed: {e.message}")
        return 1

    print(json.dumps(report.to_dict(), indent=2))
    if report.failed_removals:
        print_error(f"{len(report.failed_removals)} orphan blob(s) could not be removed")
        return 1
    if report.consistent:
        print_success("Blob store and metadata store are consistent")
        return 0
    if repair and not report.orphan_records:
        print_success(f"Removed {len(report.removed_blobs)} orphan blob(s)")
        return 0
    print_info("Inconsistencies found")
    return 2


def cmd_version(_args: argparse.Namespace) -> int:
    """Show version information."""
    print_banner()
    print(f"Version:     {settings.app_version}")
    print(f"Environment: {settings.environment}")
    print(f"Debug:       {settings.debug}")
    print(f"Python:      {sys.version.split()[0]}")
    return 0


def cmd_check_db(_args: argparse.Namespace) -> int:
    """Check database connectivity command."""
    print_banner()
    result = asyncio.run(check_database())
    return 0 if result else 1


def cmd_init_db(_args: argparse.Namespace) -> int:
    """Initialize database command."""
    print_banner()
    result = asyncio.run(init_database())
    return 0 if result else 1


def cmd_reconcile(args: argparse.Namespace) -> int:
    """Reconciliation command."""
    print_banner()
    return asyncio.run(reconcile(args.repair))


def cmd_issue_token(args: argparse.Namespace) -> int:
    """Issue a bearer token.

    Prints only the token so the output can be captured by scripts.
    """
    security = SecurityManager(
        secret_key=settings.secret_key,
        algorithm=settings.algorithm,
        access_token_expire_minutes=settings.access_token_expire_minutes,
    )
    expires = timedelta(minutes=args.expires_minutes) if args.expires_minutes else None
    token = security.create_access_token(
        {"sub": args.user_id, "username": args.username, "roles": args.role or []},
        expires_delta=expires,
    )
    print(token)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dicom-catalog-cli",
        description="DICOM Study Catalog CLI - Administrative command line interface",
    )
    parser.add_argument(
        "--version",
        "-V",
        action="version",
        version=f"DICOM Study Catalog {settings.app_version}",
    )

    subparsers = parser.add_subparsers(
        title="commands",
        description="Available commands",
        dest="command",
    )

    # version command
    version_parser = subparsers.add_parser(
        "version",
        help="Show version information",
    )
    version_parser.set_defaults(func=cmd_version)

    # check-db command
    check_db_parser = subparsers.add_parser(
        "check-db",
        help="Check database connectivity",
    )
    check_db_parser.set_defaults(func=cmd_check_db)

    # init-db command
    init_db_parser = subparsers.add_parser(
        "init-db",
        help="Create the catalog tables",
    )
    init_db_parser.set_defaults(func=cmd_init_db)

    # reconcile command
    reconcile_parser = subparsers.add_parser(
        "reconcile",
        help="Report blobs without records and records without blobs",
    )
    reconcile_parser.add_argument(
        "--repair",
        action="store_true",
        help="Remove orphan blobs (orphan records are only reported)",
    )
    reconcile_parser.set_defaults(func=cmd_reconcile)

    # issue-token command
    issue_token_parser = subparsers.add_parser(
        "issue-token",
        help="Issue a bearer token for a caller",
    )
    issue_token_parser.add_argument(
        "--user-id",
        required=True,
        help="Subject of the token",
    )
    issue_token_parser.add_argument(
        "--username",
        "-u",
        required=True,
        help="Display name of the caller",
    )
    issue_token_parser.add_argument(
        "--role",
        "-r",
        action="append",
        help="Role claim (repeatable)",
    )
    issue_token_parser.add_argument(
        "--expires-minutes",
        type=int,
        required=False,
        help="Token lifetime (defaults to ACCESS_TOKEN_EXPIRE_MINUTES)",
    )
    issue_token_parser.set_defaults(func=cmd_issue_token)

    return parser


def main(argv: list[str] | None = None) -> NoReturn:
    """Main CLI entry point."""
    parser = build_parser()

    # Parse arguments
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(0)

    # Execute command
    exit_code = args.func(args)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
