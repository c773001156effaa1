"""
MangaDex catalog client – translates the MangaDex REST API
(https://api.mangadex.org/docs/) into :class:`~mangadex_bot.models.CatalogItem`.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

from pydantic import ValidationError

from .clock import Clock
from .errors import ApiError, FatalError
from .infra.http import HttpClient
from .interfaces import CatalogSource
from .models import CatalogItem

logger = logging.getLogger(__name__)

__all__ = ["MangaDexClient", "parse_manga_id", "chapter_url", "english_title"]


# --------------------------------------------------------------------------- #
API_BASE = "https://api.mangadex.org"
SITE_BASE = "https://mangadex.org"

TITLE_LANGUAGES = ("en", "ja-ro", "zh-ro")


def chapter_url(chapter_id: str) -> str:
    return f"{SITE_BASE}/chapter/{chapter_id}"


def english_title(titles: Dict[str, str]) -> Optional[str]:
    """English title, falling back to the romanized Japanese or Chinese one."""
    for lang in TITLE_LANGUAGES:
        if titles.get(lang):
            return titles[lang]
    return None


def parse_manga_id(url_or_id: str) -> Optional[str]:
    """Extract a manga id from a bare UUID or a ``mangadex.org/title/<id>`` URL."""
    url_or_id = url_or_id.strip()
    try:
        return str(uuid.UUID(url_or_id))
    except ValueError:
        pass

    url = urlparse(url_or_id)
    if url.hostname not in ("mangadex.org", "www.mangadex.org"):
        return None
    segments = [s for s in url.path.split("/") if s]
    if len(segments) < 2 or segments[0] != "title":
        return None
    try:
        return str(uuid.UUID(segments[1]))
    except ValueError:
        return None


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _unwrap(payload: Any, url: str) -> Any:
    """Return ``data`` from a MangaDex envelope or raise ApiError."""
    if not isinstance(payload, dict):
        raise FatalError(f"Unexpected response from {url}: {type(payload).__name__}")
    if payload.get("result") == "error":
        errors = payload.get("errors") or []
        for err in errors:
            logger.error("MangaDex API error: %s", err)
        raise ApiError(errors)
    if payload.get("result") != "ok" or "data" not in payload:
        raise FatalError(f"Malformed response from {url}")
    return payload["data"]


# --------------------------------------------------------------------------- #
class MangaDexClient(CatalogSource):
    """Fetches recent chapters and manga titles from MangaDex."""

    name = "MangaDex"

    def __init__(
        self,
        *,
        http: Optional[HttpClient] = None,
        languages: Sequence[str] = ("en",),
        content_ratings: Sequence[str] = ("safe", "suggestive"),
        request_delay: float = 0.25,
        clock: Optional[Clock] = None,
        base_url: str = API_BASE,
    ) -> None:
        self._clock = clock or Clock()
        self._http = http or HttpClient(clock=self._clock)
        self._languages = list(languages)
        self._ratings = list(content_ratings)
        self._request_delay = request_delay
        self._base_url = base_url.rstrip("/")
        self._requested = False

    async def close(self) -> None:
        await self._http.close()

    # ------------------------------------------------------------------- #
    async def _get(self, path: str, params: List[Tuple[str, str]]) -> Any:
        # Space requests out a little; MangaDex rate limits per IP
        if self._requested and self._request_delay > 0:
            await self._clock.sleep(self._request_delay)
        self._requested = True

        url = f"{self._base_url}{path}"
        payload = await self._http.get_json(url, params=params)
        return _unwrap(payload, url)

    def _chapter_params(self, manga_id: str, limit: int, offset: int) -> List[Tuple[str, str]]:
        params: List[Tuple[str, str]] = [
            ("manga", manga_id),
            ("limit", str(limit)),
            ("offset", str(offset)),
            ("order[publishAt]", "desc"),
            ("includeFutureUpdates", "0"),
        ]
        params += [("translatedLanguage[]", lang) for lang in self._languages]
        params += [("contentRating[]", rating) for rating in self._ratings]
        return params

    async def fetch_recent(
        self, manga_id: str, limit: int, cursor: Optional[int] = None
    ) -> List[CatalogItem]:
        """Most recent chapters of ``manga_id`` (oldest first).

        ``cursor`` is the number of newer chapters to skip (MangaDex ``offset``).
        """
        data = await self._get("/chapter", self._chapter_params(manga_id, limit, cursor or 0))
        if not isinstance(data, list):
            raise FatalError(f"Expected a list of chapters for manga {manga_id}")

        items = [self._to_item(manga_id, entry) for entry in data]
        # Upstream answers newest first; announce in publication order
        items.reverse()
        items.sort(key=lambda item: item.published_at)
        logger.debug("Fetched %d chapter(s) for manga %s", len(items), manga_id)
        return items

    async def manga_title(self, manga_id: str) -> Optional[str]:
        data = await self._get(f"/manga/{manga_id}", [])
        if not isinstance(data, dict):
            raise FatalError(f"Expected a manga object for {manga_id}")
        attributes = data.get("attributes") or {}
        if not isinstance(attributes, dict) or not isinstance(attributes.get("title") or {}, dict):
            raise FatalError(f"Malformed manga object for {manga_id}")
        titles = attributes.get("title") or {}
        title = english_title(titles)
        if title is None:
            alt = [
                t
                for alt_titles in attributes.get("altTitles") or []
                if isinstance(alt_titles, dict)
                for t in alt_titles.items()
            ]
            title = english_title(dict(alt)) or next(iter(titles.values()), None)
        return title

    # ------------------------------------------------------------------- #
    @staticmethod
    def _to_item(manga_id: str, entry: Dict[str, Any]) -> CatalogItem:
        if not isinstance(entry, dict):
            raise FatalError(f"Malformed chapter entry: {entry!r}")
        chapter_id = entry.get("id")
        attributes = entry.get("attributes") or {}
        if not isinstance(chapter_id, str) or not isinstance(attributes, dict):
            raise FatalError(f"Malformed chapter entry: {entry!r}")

        published = (
            _parse_datetime(attributes.get("publishAt"))
            or _parse_datetime(attributes.get("readableAt"))
            or _parse_datetime(attributes.get("createdAt"))
            or datetime.now(timezone.utc)
        )
        number = attributes.get("chapter")
        chapter_title = attributes.get("title") or None

        if number and chapter_title:
            display = f"Ch. {number}: {chapter_title}"
        elif number:
            display = f"Ch. {number}"
        else:
            display = chapter_title or "Oneshot"

        try:
            return CatalogItem(
                id=chapter_id,
                manga_id=manga_id,
                published_at=published,
                title=display,
                url=chapter_url(chapter_id),
                chapter=number,
                volume=attributes.get("volume"),
                chapter_title=chapter_title,
                language=attributes.get("translatedLanguage"),
            )
        except ValidationError as e:
            raise FatalError(f"Malformed chapter entry {chapter_id}: {e}") from e
