"""
Main entry point: wires the bot together and runs it until SIGINT/SIGTERM.

Exit codes: 0 clean shutdown, 1 invalid configuration, 2 store or startup failure.
"""

import asyncio
import logging
import signal
import sqlite3
import sys
from typing import Iterable, Optional

import discord

from .clock import Clock
from .commands.track import TrackCommands
from .config import Settings, load_tracking_file
from .detector import ChangeDetector
from .errors import ConfigError, PersistenceFailure
from .infra.db import Database
from .infra.discord_bot import MangaDexBot
from .infra.http import HttpClient
from .infra.scheduler import Scheduler
from .interfaces import SeenStore
from .mangadex import MangaDexClient
from .models import TrackedManga
from .notifier import Notifier
from .sinks import create_sink
from .store import SqliteSeenStore, TrackingRepository
from .watcher import Watcher

EXIT_OK = 0
EXIT_CONFIG = 1
EXIT_STARTUP = 2

LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"

logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, force=True)
    # discord.py and APScheduler are chatty at INFO
    logging.getLogger("discord").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


async def sync_tracking_file(
    entries: Iterable[TrackedManga], tracking: TrackingRepository, store: SeenStore
) -> int:
    """Merge ``tracking.yml`` entries into the database; returns how many are new.

    A manga that is not tracked yet starts from a fresh baseline, so one that
    was untracked earlier does not announce the chapters it missed.
    """
    added = 0
    for manga in entries:
        if await tracking.get(manga.id) is None:
            await store.clear_baseline(manga.id)
            added += 1
        await tracking.upsert(manga)
    return added


async def wait_for_gateway(bot: MangaDexBot, *stoppers: asyncio.Future) -> bool:
    """Wait for the bot's first READY; False when one of ``stoppers`` finishes first."""
    ready = asyncio.ensure_future(bot.gateway_ready.wait())
    done, _ = await asyncio.wait({ready, *stoppers}, return_when=asyncio.FIRST_COMPLETED)
    if ready in done:
        return True
    ready.cancel()
    return False


async def main() -> int:
    """Run the bot; returns the process exit code."""
    setup_logging()
    try:
        settings = Settings.from_env()
        setup_logging(settings.log_level)
        tracked_from_file = load_tracking_file(settings.tracking_file)
    except (ConfigError, ValueError) as e:
        logger.error(f"{e}")
        return EXIT_CONFIG

    db = Database(settings.database_path)
    clock = Clock()
    store = SqliteSeenStore(db, clock=clock)
    tracking = TrackingRepository(db)
    try:
        await db.connect()
        added = await sync_tracking_file(tracked_from_file, tracking, store)
    except (sqlite3.Error, OSError, PersistenceFailure) as e:
        logger.error(f"Cannot open the seen-set store at {settings.database_path}: {e}")
        await db.close()
        return EXIT_STARTUP

    if tracked_from_file:
        logger.info(
            f"Loaded {len(tracked_from_file)} manga from {settings.tracking_file} ({added} new)"
        )

    http = HttpClient(
        max_retries=settings.max_retries,
        base_delay=settings.base_delay,
        max_delay=settings.max_delay,
        max_rate_limit_waits=settings.max_rate_limit_waits,
        clock=clock,
    )
    client = MangaDexClient(
        http=http,
        languages=settings.languages,
        content_ratings=settings.content_ratings,
        request_delay=settings.request_delay,
        clock=clock,
    )

    bot: Optional[MangaDexBot] = None
    if settings.discord_token:
        bot = MangaDexBot(guild_id=settings.guild_id)

    try:
        sink = create_sink(
            settings.notifier_backend,
            discord_client=bot,
            telegram_token=settings.telegram_token,
        )
    except ConfigError as e:
        logger.error(f"{e}")
        await client.close()
        await db.close()
        return EXIT_CONFIG

    notifier = Notifier(
        sink,
        max_attempts=settings.notify_max_attempts,
        base_delay=settings.base_delay,
        max_delay=settings.max_delay,
        concurrency=settings.notify_concurrency,
        clock=clock,
    )
    watcher = Watcher(
        client,
        store,
        tracking,
        ChangeDetector(deliver_backlog=settings.deliver_backlog, max_backlog=settings.max_backlog),
        notifier,
        fetch_limit=settings.fetch_limit,
        backoff_cooldown=settings.backoff_cooldown,
        retention_days=settings.retention_days,
        clock=clock,
    )
    if bot is not None:
        bot.command_sets.append(TrackCommands(client, tracking, watcher))

    scheduler = Scheduler(timezone=settings.timezone)

    # Setup graceful shutdown
    stop_event = asyncio.Event()

    def signal_handler():
        logger.info("Received shutdown signal")
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        asyncio.get_running_loop().add_signal_handler(sig, signal_handler)

    exit_code = EXIT_OK
    bot_task: Optional[asyncio.Task] = None
    try:
        waiters = {asyncio.create_task(stop_event.wait())}
        if bot is not None:
            logger.info("Starting Discord bot...")
            bot_task = asyncio.create_task(bot.start(settings.discord_token))
            waiters.add(bot_task)

        await scheduler.start()
        scheduler.add_cron_job(watcher.prune, settings.prune_cron, job_id="prune")

        ready = True
        if bot is not None and settings.notifier_backend == "discord":
            logger.info("Waiting for the Discord gateway before the first poll")
            ready = await wait_for_gateway(bot, *waiters)

        if ready:
            scheduler.add_interval_job(
                watcher.run_cycle,
                seconds=settings.scan_period,
                job_id="poll",
                jitter=settings.scan_jitter,
            )
            logger.info(
                f"Polling MangaDex every {settings.scan_period}s via the {sink.name} backend"
            )
            for job_id, job in scheduler.list_jobs().items():
                logger.info(f"Job {job_id}: {job['trigger']}, next run {job['next_run']}")

        done, pending = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        for waiter in pending:
            if waiter is not bot_task:
                waiter.cancel()

        if bot_task is not None and bot_task in done:
            error = bot_task.exception()
            if isinstance(error, discord.LoginFailure):
                logger.error(f"Discord login failed: {error}")
                exit_code = EXIT_CONFIG
            elif error is not None:
                logger.error(f"Discord bot stopped: {error!r}")
                exit_code = EXIT_STARTUP
    finally:
        logger.info("Shutting down...")
        await scheduler.stop()
        await watcher.shutdown(settings.shutdown_grace)

        if bot is not None:
            logger.info("Stopping Discord bot...")
            await bot.close()
        if bot_task is not None and not bot_task.done():
            bot_task.cancel()
            await asyncio.wait({bot_task})

        await sink.close()
        await client.close()
        await db.close()
        logger.info("Shutdown complete")

    return exit_code


def run() -> None:
    """Console-script entry point."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
