"""
Discord bot: gateway connection, slash-command registration and sync.

The bot is also the client behind :class:`~mangadex_bot.sinks.DiscordSink`, so
announcements go out over the same connection.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Iterable, List, Optional

import discord
from discord.ext import commands

from ..interfaces import DiscordCommands

logger = logging.getLogger(__name__)


class MangaDexBot(commands.Bot):
    """Slash-command-only bot for tracking manga."""

    def __init__(
        self,
        command_sets: Iterable[DiscordCommands] = (),
        *,
        guild_id: Optional[int] = None,
        **kwargs,
    ):  # noqa: D401
        intents = discord.Intents.default()  # Slash-command-only bot

        super().__init__(command_prefix="!", intents=intents, **kwargs)

        self.command_sets: List[DiscordCommands] = list(command_sets)
        self.guild_id = guild_id
        # Set on the first READY event
        self.gateway_ready = asyncio.Event()

    # ────────────────────────────────────────
    # Discord lifecycle hooks
    # ────────────────────────────────────────

    async def setup_hook(self):
        """Runs at startup before connecting to the gateway."""
        await register_commands(self, self.command_sets)

        registered = [c.name for c in self.tree.get_commands()]
        logger.info(f"Commands registered in tree before sync: {registered}")

        try:
            if self.guild_id:
                # Guild commands show up instantly; global ones can take an hour
                guild = discord.Object(id=self.guild_id)
                self.tree.copy_global_to(guild=guild)
                synced = await self.tree.sync(guild=guild)
                logger.info("Synced %d command(s) to guild %s", len(synced), self.guild_id)
            else:
                synced = await self.tree.sync()
                logger.info("Synced %d global command(s)", len(synced))
        except discord.HTTPException as exc:
            logger.exception("Failed to sync commands: %s", exc)

    async def on_ready(self):
        logger.info("Connected to Discord as %s", self.user)
        self.gateway_ready.set()

    async def on_error(self, event_method: str, *args: Any, **kwargs: Any) -> None:
        logger.exception(f"Unhandled exception in {event_method}")

    async def close(self):
        """Disconnect from the gateway."""
        await super().close()
        logger.info("Bot has been closed.")


# ──────────────────────────────────────────────────────────────────────────
# Command registration helper
# ──────────────────────────────────────────────────────────────────────────

async def register_commands(bot: commands.Bot, command_sets: Iterable[DiscordCommands]) -> int:
    """Run each command set's optional setup, then register its slash commands."""
    registered = 0
    for command_set in command_sets:
        if not isinstance(command_set, DiscordCommands):
            logger.warning(f"{type(command_set).__name__} does not implement DiscordCommands interface.")
            continue

        setup_fn = command_set.setup
        if inspect.iscoroutinefunction(setup_fn):
            await setup_fn(bot)
        else:
            setup_fn(bot)

        command_set.register(bot)
        registered += 1
        logger.info("Registered Discord commands from %s", type(command_set).__name__)
    return registered
