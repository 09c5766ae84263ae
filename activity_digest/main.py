import argparse
import asyncio
import logging
import sys
from datetime import datetime
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import ValidationError

from activity_digest.application.digest_service import DigestService
from activity_digest.domain.cutoff import parse_timestamp
from activity_digest.domain.exceptions import AuthError, DigestException
from activity_digest.infrastructure.database import ActivityHistoryRepository
from activity_digest.infrastructure.github_client import GitHubRestClient
from activity_digest.infrastructure.mailer import SmtpMailer
from activity_digest.infrastructure.psgallery_client import PSGalleryClient
from activity_digest.infrastructure.settings import DigestSettings
from activity_digest.infrastructure.state_store import JsonStateStore

logger = logging.getLogger(__name__)

EXIT_ERROR = 1
EXIT_AUTH = 2
EXIT_PARTIAL = 3


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )


def _cutoff_arg(value: str) -> datetime:
    parsed = parse_timestamp(value)
    if parsed is None:
        raise argparse.ArgumentTypeError(f"Invalid ISO-8601 timestamp: {value}")
    return parsed


def _list_arg(value: str) -> tuple:
    return tuple(item.strip() for item in value.split(",") if item.strip())


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Report what changed on a GitHub account's repositories and PSGallery packages."
    )
    parser.add_argument("--owner", help="GitHub user or organisation (GITHUB_OWNER)")
    parser.add_argument("--token", help="GitHub token; overrides GITHUB_TOKEN")
    parser.add_argument("--repos", type=_list_arg, help="Comma-separated repository names to include")
    parser.add_argument("--include-forks", action="store_true", default=None)
    parser.add_argument("--include-archived", action="store_true", default=None)
    parser.add_argument("--psgallery-author", help="Report downloads for packages by this author")
    parser.add_argument("--packages", type=_list_arg, help="Comma-separated PSGallery package ids")
    parser.add_argument("--since-hours", type=int, help="Look-back window in hours (1-720)")
    parser.add_argument("--cutoff", type=_cutoff_arg, help="Explicit cutoff, e.g. 2024-01-01T00:00:00Z")
    parser.add_argument("--since-last-check", action="store_true", default=None,
                        help="Use the previous run time as cutoff when known")
    parser.add_argument("--output", choices=["console", "html", "email"])
    parser.add_argument("--html-path", help="Where to write the HTML digest")
    parser.add_argument("--email-to", help="Digest recipient; overrides DIGEST_EMAIL_TO")
    parser.add_argument("--state-path", help="JSON state file (default state/<owner>.json)")
    parser.add_argument("--no-save", action="store_true", help="Do not update the state file")
    parser.add_argument("--concurrency", type=int, help="Repositories resolved in parallel")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser.parse_args(argv)


def build_settings(args: argparse.Namespace) -> DigestSettings:
    return DigestSettings.from_env(
        owner=args.owner,
        github_token=args.token,
        repo_names=args.repos,
        include_forks=args.include_forks,
        include_archived=args.include_archived,
        psgallery_author=args.psgallery_author,
        package_names=args.packages,
        since_hours=args.since_hours,
        cutoff=args.cutoff,
        use_last_check=args.since_last_check,
        output=args.output,
        html_path=args.html_path,
        email_to=args.email_to,
        state_path=args.state_path,
        save_state=False if args.no_save else None,
        concurrency=args.concurrency,
    )


def build_service(settings: DigestSettings) -> DigestService:
    mailer = None
    if settings.output == "email":
        mailer = SmtpMailer(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_username,
            password=settings.smtp_password,
            sender=settings.email_from,
        )

    history = ActivityHistoryRepository(db_url=settings.database_url) if settings.database_url else None

    return DigestService(
        settings=settings,
        github_client=GitHubRestClient(token=settings.github_token),
        state_store=JsonStateStore(settings.resolved_state_path),
        psgallery_client=PSGalleryClient() if settings.monitors_packages else None,
        mailer=mailer,
        history=history,
    )


async def main(argv: Optional[List[str]] = None) -> int:
    # Load environment variables from .env file
    load_dotenv()
    args = parse_args(argv)
    configure_logging(args.verbose)

    try:
        settings = build_settings(args)
    except ValidationError as e:
        logger.error(f"Invalid configuration: {e}")
        return EXIT_ERROR

    if not settings.github_token:
        logger.warning("GITHUB_TOKEN is not set; using unauthenticated requests with a lower rate limit.")

    service = build_service(settings)

    try:
        if service.history is not None:
            await service.history.create_schema()
        result = await service.run()
    except KeyboardInterrupt:
        logger.info("Run interrupted by user. Exiting gracefully.")
        return EXIT_ERROR
    except AuthError as e:
        logger.error(f"Authentication failed: {e}")
        return EXIT_AUTH
    except DigestException as e:
        logger.error(f"Digest run failed: {e}")
        return EXIT_ERROR
    except Exception as e:
        logger.exception(f"An unexpected error occurred: {e}")
        return EXIT_ERROR

    return EXIT_PARTIAL if result.failures else 0


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
