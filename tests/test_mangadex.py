from __future__ import annotations

import re

import pytest
from aioresponses import aioresponses

from conftest import MANGA_A
from mangadex_bot.errors import ApiError, FatalError, RateLimitedError, TransientError
from mangadex_bot.infra.http import HttpClient
from mangadex_bot.mangadex import MangaDexClient, english_title, parse_manga_id

CHAPTERS = re.compile(r"^https://api\.mangadex\.org/chapter\?.*$")
MANGA = re.compile(r"^https://api\.mangadex\.org/manga/.*$")

CHAPTER_LIST = {
    "result": "ok",
    "data": [
        {
            "id": "chapter-2",
            "attributes": {
                "chapter": "2",
                "title": "Summer",
                "volume": "1",
                "translatedLanguage": "en",
                "publishAt": "2024-05-02T00:00:00+00:00",
            },
        },
        {
            "id": "chapter-1",
            "attributes": {
                "chapter": "1",
                "title": None,
                "translatedLanguage": "en",
                "publishAt": "2024-05-01T00:00:00+00:00",
            },
        },
    ],
}


@pytest.fixture
def client(clock):
    http = HttpClient(max_retries=3, base_delay=0.5, max_rate_limit_waits=1, clock=clock)
    return MangaDexClient(http=http, request_delay=0.25, clock=clock)


@pytest.mark.parametrize(
    "value",
    [
        MANGA_A,
        f"https://mangadex.org/title/{MANGA_A}",
        f"https://mangadex.org/title/{MANGA_A}/komi-can-t-communicate",
        f"  https://www.mangadex.org/title/{MANGA_A}?tab=chapters  ",
    ],
)
def test_parse_manga_id_accepts_ids_and_urls(value: str) -> None:
    assert parse_manga_id(value) == MANGA_A


@pytest.mark.parametrize(
    "value",
    [
        "not-a-uuid",
        f"https://example.com/title/{MANGA_A}",
        f"https://mangadex.org/chapter/{MANGA_A}",
        "https://mangadex.org/title/oops",
    ],
)
def test_parse_manga_id_rejects_everything_else(value: str) -> None:
    assert parse_manga_id(value) is None


def test_english_title_falls_back_to_romanized() -> None:
    assert english_title({"ja": "古見さん", "ja-ro": "Komi-san"}) == "Komi-san"
    assert english_title({"en": "Komi", "ja-ro": "Komi-san"}) == "Komi"
    assert english_title({"ja": "古見さん"}) is None


async def test_fetch_recent_returns_oldest_first(client) -> None:
    with aioresponses() as mocked:
        mocked.get(CHAPTERS, payload=CHAPTER_LIST)
        items = await client.fetch_recent(MANGA_A, 10)
    await client.close()

    assert [item.id for item in items] == ["chapter-1", "chapter-2"]
    assert items[1].title == "Ch. 2: Summer"
    assert items[1].url == "https://mangadex.org/chapter/chapter-2"
    assert items[1].volume == "1"
    assert items[0].manga_id == MANGA_A
    assert items[0].chapter_title is None


async def test_transient_failures_within_budget_succeed(client, clock) -> None:
    with aioresponses() as mocked:
        mocked.get(CHAPTERS, status=503)
        mocked.get(CHAPTERS, status=502)
        mocked.get(CHAPTERS, payload=CHAPTER_LIST)
        items = await client.fetch_recent(MANGA_A, 10)
    await client.close()

    assert len(items) == 2
    assert len(clock.sleeps) == 2


async def test_transient_failures_exhaust_budget(client, clock) -> None:
    with aioresponses() as mocked:
        for _ in range(3):
            mocked.get(CHAPTERS, status=500)
        with pytest.raises(TransientError):
            await client.fetch_recent(MANGA_A, 10)
    await client.close()

    assert len(clock.sleeps) == 2


async def test_rate_limit_waits_do_not_consume_retries(client, clock) -> None:
    with aioresponses() as mocked:
        mocked.get(CHAPTERS, status=429, headers={"Retry-After": "12"})
        mocked.get(CHAPTERS, status=503)
        mocked.get(CHAPTERS, payload=CHAPTER_LIST)
        items = await client.fetch_recent(MANGA_A, 10)
    await client.close()

    assert len(items) == 2
    assert clock.sleeps[0] == 12


async def test_repeated_rate_limit_raises(client) -> None:
    with aioresponses() as mocked:
        mocked.get(CHAPTERS, status=429, headers={"Retry-After": "3"})
        mocked.get(CHAPTERS, status=429, headers={"Retry-After": "3"})
        with pytest.raises(RateLimitedError) as excinfo:
            await client.fetch_recent(MANGA_A, 10)
    await client.close()

    assert excinfo.value.retry_after == 3


async def test_not_found_is_fatal(client, clock) -> None:
    with aioresponses() as mocked:
        mocked.get(CHAPTERS, status=404, body="missing")
        with pytest.raises(FatalError):
            await client.fetch_recent(MANGA_A, 10)
    await client.close()

    assert clock.sleeps == []


async def test_api_error_body_is_fatal(client) -> None:
    body = {"result": "error", "errors": [{"status": 400, "title": "Bad Request", "detail": "limit too high"}]}
    with aioresponses() as mocked:
        mocked.get(CHAPTERS, payload=body)
        with pytest.raises(ApiError, match="limit too high"):
            await client.fetch_recent(MANGA_A, 1000)
    await client.close()


async def test_manga_title_and_request_pacing(client, clock) -> None:
    manga = {
        "result": "ok",
        "data": {
            "id": MANGA_A,
            "attributes": {"title": {"ja": "古見さん"}, "altTitles": [{"en": "Komi Can't Communicate"}]},
        },
    }
    with aioresponses() as mocked:
        mocked.get(MANGA, payload=manga)
        mocked.get(CHAPTERS, payload=CHAPTER_LIST)
        title = await client.manga_title(MANGA_A)
        await client.fetch_recent(MANGA_A, 10)
    await client.close()

    assert title == "Komi Can't Communicate"
    assert clock.sleeps == [0.25]


@pytest.mark.parametrize(
    "entry",
    [
        "chapter-1",
        {"id": 42, "attributes": {"chapter": "1"}},
        {"id": "chapter-1", "attributes": ["chapter", "1"]},
        {"id": "chapter-1", "attributes": {"chapter": {"number": 1}}},
    ],
)
async def test_malformed_chapter_entry_is_fatal(client, entry) -> None:
    with aioresponses() as mocked:
        mocked.get(CHAPTERS, payload={"result": "ok", "data": [entry]})
        with pytest.raises(FatalError, match="Malformed chapter entry"):
            await client.fetch_recent(MANGA_A, 10)
    await client.close()


async def test_malformed_manga_object_is_fatal(client) -> None:
    with aioresponses() as mocked:
        mocked.get(MANGA, payload={"result": "ok", "data": {"id": MANGA_A, "attributes": "Komi"}})
        with pytest.raises(FatalError, match="Malformed manga object"):
            await client.manga_title(MANGA_A)
    await client.close()
