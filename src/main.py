import asyncio
import sys
import logging
from typing import Optional, Sequence

import click
from dotenv import load_dotenv

from src.config import Settings
from src.domain.exceptions import ConfigurationError, GalaxyException
from src.domain.layout import LayoutEngine
from src.infrastructure.github_client import GitHubRestClient
from src.infrastructure.database import PostgresRepository
from src.application.sync_service import SyncService

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )


async def run_sync(
        settings: Settings,
        repository_ids: Optional[Sequence[int]] = None,
        force_sync: bool = False,
        relayout: bool = False,
        create_schema: bool = False,
) -> int:
    """Builds the client, store and service from settings and runs one sync. Returns the exit code."""
    store = PostgresRepository(db_url=settings.database_url)
    layout_engine = LayoutEngine(
        galaxy_layout=settings.galaxy_layout,
        commit_layout=settings.commit_layout,
    )

    async with GitHubRestClient(
        list_ttl=settings.list_cache_ttl,
        resource_ttl=settings.resource_cache_ttl,
        cooldown_seconds=settings.rate_limit_cooldown,
        request_timeout=settings.request_timeout,
    ) as github_client:
        sync_service = SyncService(
            github_client=github_client,
            store=store,
            layout_engine=layout_engine,
            max_concurrent_repositories=settings.sync_concurrency,
        )

        try:
            if create_schema:
                await store.create_schema()

            report = await sync_service.sync_universe(
                settings.github_token,
                force_sync=force_sync,
                relayout=relayout,
                repository_ids=repository_ids,
            )
        except GalaxyException as e:
            logger.error(f"Sync aborted: {e}")
            return 1
        finally:
            await store.dispose()

    for repository_id, error in report.errors.items():
        logger.error(f"Repository {repository_id} failed: {error}")

    stars = sum(result.stars_written for result in report.results.values())
    logger.info(
        f"Universe synced: {len(report.repositories)} repositories, "
        f"{len(report.results)} galaxies refreshed, {stars} stars written."
    )
    return 1 if report.errors else 0


@click.command()
@click.option("--repository-id", "repository_ids", type=int, multiple=True,
              help="Only sync commits and pull requests of these repositories.")
@click.option("--force", "force_sync", is_flag=True, help="Re-fetch repositories that were already synced.")
@click.option("--relayout", is_flag=True, help="Recompute galaxy coordinates of every repository.")
@click.option("--create-schema", is_flag=True, help="Create the database tables before syncing.")
def main(repository_ids: Sequence[int], force_sync: bool, relayout: bool, create_schema: bool) -> None:
    # Load environment variables from .env file
    load_dotenv()

    try:
        settings = Settings.from_env()
    except ConfigurationError as e:
        configure_logging()
        logger.error(str(e))
        sys.exit(1)

    configure_logging(settings.log_level)

    try:
        exit_code = asyncio.run(run_sync(
            settings,
            repository_ids=list(repository_ids) or None,
            force_sync=force_sync,
            relayout=relayout,
            create_schema=create_schema,
        ))
    except KeyboardInterrupt:
        logger.info("Sync interrupted by user. Exiting gracefully.")
        exit_code = 1

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
