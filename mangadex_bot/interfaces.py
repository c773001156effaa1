"""
Core interfaces for mangadex-bot.

The watcher only talks to these abstractions, so every collaborator (upstream
catalog, seen-set store, chat backend) can be swapped for a test double.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING, Iterable, List, Optional

from .models import CatalogItem, SeenRecord

if TYPE_CHECKING:
    from discord.ext.commands import Bot


class CatalogSource(ABC):
    """Upstream catalog of chapters."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable name for this source."""

    @abstractmethod
    async def fetch_recent(
        self, manga_id: str, limit: int, cursor: Optional[int] = None
    ) -> List[CatalogItem]:
        """Return the most recent items for ``manga_id``, oldest first.

        Raises TransientError, RateLimitedError or FatalError.
        """


class SeenStore(ABC):
    """Persisted set of identifiers that were already announced."""

    @abstractmethod
    async def contains(self, item_id: str) -> bool:
        ...

    @abstractmethod
    async def mark_seen(
        self, item_id: str, timestamp: datetime, manga_id: Optional[str] = None
    ) -> None:
        """Idempotent: marking an already seen id is a no-op."""

    @abstractmethod
    async def mark_many(
        self, records: Iterable[SeenRecord], initialized: Iterable[str] = ()
    ) -> int:
        """Commit a batch atomically, together with the scopes whose baseline
        it establishes. Raises PersistenceFailure on I/O error."""

    @abstractmethod
    async def prune(self, older_than: datetime) -> int:
        """Remove records first seen before ``older_than``."""

    @abstractmethod
    async def is_empty(self, manga_id: Optional[str] = None) -> bool:
        """True while no baseline exists (for ``manga_id`` if given)."""

    @abstractmethod
    async def clear_baseline(self, manga_id: str) -> None:
        """Forget the baseline of ``manga_id`` so it cold-starts again."""


class Sink(ABC):
    """Outbound messaging capability: ``send(target, text)``."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable name for this sink."""

    @abstractmethod
    async def send(self, target: str, text: str) -> None:
        """Send one message.

        Raises TransientDeliveryError or FatalDeliveryError.
        """

    async def close(self) -> None:
        pass


class DiscordCommands(ABC):
    """Interface for Discord slash command registration."""

    @abstractmethod
    def register(self, bot: Bot) -> None:
        """Register all commands on the given bot."""

    async def setup(self, bot: Bot) -> None:
        """Optional asynchronous setup, called once before registration."""
        pass
