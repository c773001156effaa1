from __future__ import annotations

import pytest

from conftest import MANGA_A, make_item
from mangadex_bot.commands.track import INVALID_ID, TrackCommands
from mangadex_bot.errors import FatalError


class FakeMangaDex:
    def __init__(self, title="Komi Can't Communicate"):
        self.title = title
        self.lookups = []

    async def manga_title(self, manga_id: str):
        self.lookups.append(manga_id)
        if isinstance(self.title, Exception):
            raise self.title
        return self.title


@pytest.fixture
def commands(tracking, source, make_watcher):
    source.publish(make_item(1), make_item(2))
    return TrackCommands(FakeMangaDex(), tracking, make_watcher())


async def test_track_new_manga_seeds_baseline(commands, tracking, store) -> None:
    reply = await commands.track(f"https://mangadex.org/title/{MANGA_A}", "100")

    assert reply == "Now tracking Komi Can't Communicate."
    assert (await tracking.get(MANGA_A)).channels == ["100"]
    assert await store.contains(make_item(2).id)
    assert not await store.is_empty(MANGA_A)


async def test_track_twice_in_same_channel(commands) -> None:
    await commands.track(MANGA_A, "100")

    assert await commands.track(MANGA_A, "100") == "This manga is already tracked by this channel."


async def test_track_in_second_channel_reuses_title(commands, source) -> None:
    await commands.track(MANGA_A, "100")
    calls = len(source.calls)

    reply = await commands.track(MANGA_A, "200")

    assert reply == "Now tracking Komi Can't Communicate."
    assert commands.client.lookups == [MANGA_A]
    assert len(source.calls) == calls


async def test_track_rejects_invalid_argument(commands, tracking) -> None:
    assert await commands.track("https://example.com/komi", "100") == INVALID_ID
    assert await tracking.list() == []


async def test_lookup_errors_become_a_reply(tracking, make_watcher) -> None:
    commands = TrackCommands(FakeMangaDex(FatalError("status 404")), tracking, make_watcher())

    reply = await commands._reply(commands.track, MANGA_A, 100)

    assert "status 404" in reply
    assert await tracking.get(MANGA_A) is None


async def test_untrack_and_list(commands) -> None:
    await commands.track(MANGA_A, "100")

    assert "Komi Can't Communicate" in await commands.tracked("100")
    assert await commands.untrack(MANGA_A, "100") == "Stopped tracking Komi Can't Communicate."
    assert await commands.tracked("100") == "This channel does not track any manga."
    assert await commands.untrack(MANGA_A, "100") == "This manga is not tracked by this channel."


async def test_track_again_after_untrack_does_not_announce_missed_chapters(
    commands, source, sink
) -> None:
    await commands.track(MANGA_A, "100")
    await commands.untrack(MANGA_A, "100")
    source.publish(*(make_item(number) for number in range(3, 9)))

    await commands.track(MANGA_A, "100")
    cycle = await commands.watcher.run_cycle()

    assert cycle.new_items == []
    assert sink.sent == []

    source.publish(make_item(9))
    await commands.watcher.run_cycle()

    assert len(sink.texts_for("100")) == 1
