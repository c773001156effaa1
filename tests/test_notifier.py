from __future__ import annotations

from conftest import make_item
from mangadex_bot.errors import FatalDeliveryError, TransientDeliveryError
from mangadex_bot.models import NotificationTask, TaskStatus
from mangadex_bot.notifier import Notifier, format_message


def _task(number: int, target: str = "100") -> NotificationTask:
    item = make_item(number)
    return NotificationTask(item=item, target=target, text=format_message(item, "Komi"))


def test_format_message_with_chapter_title() -> None:
    item = make_item(12, title="The Festival")

    assert format_message(item, "Komi") == (
        f"New chapter!\nKomi ch. 12: The Festival\nhttps://mangadex.org/chapter/{item.id}"
    )


def test_format_message_without_chapter_number() -> None:
    item = make_item(1).model_copy(update={"chapter": None})

    assert format_message(item, "Komi") == f"New chapter for Komi!\n{item.url}"


async def test_successful_delivery_sends_exactly_once(sink, clock) -> None:
    task = await Notifier(sink, clock=clock).deliver(_task(1))

    assert task.status is TaskStatus.DELIVERED
    assert task.attempts == 1
    assert len(sink.sent) == 1
    assert clock.sleeps == []


async def test_transient_failures_are_retried_with_backoff(sink, clock) -> None:
    sink.fail("100", TransientDeliveryError("503"), TransientDeliveryError("timeout"))

    task = await Notifier(sink, max_attempts=3, base_delay=1.0, clock=clock).deliver(_task(1))

    assert task.status is TaskStatus.DELIVERED
    assert task.attempts == 3
    assert len(sink.sent) == 1
    assert len(clock.sleeps) == 2
    assert 1.0 <= clock.sleeps[0] <= 2.0
    assert 2.0 <= clock.sleeps[1] <= 3.0


async def test_retry_after_is_honoured(sink, clock) -> None:
    sink.fail("100", TransientDeliveryError("slow down", retry_after=7.5))

    await Notifier(sink, clock=clock).deliver(_task(1))

    assert clock.sleeps == [7.5]


async def test_exhausted_retries_fail_transiently(sink, clock) -> None:
    sink.always_fail["100"] = TransientDeliveryError("down")

    task = await Notifier(sink, max_attempts=4, clock=clock).deliver(_task(1))

    assert task.status is TaskStatus.FAILED_TRANSIENT
    assert task.attempts == 4
    assert not task.committable
    assert sink.sent == []


async def test_fatal_failure_is_not_retried(sink, clock) -> None:
    sink.fail("100", FatalDeliveryError("unknown channel"))

    task = await Notifier(sink, clock=clock).deliver(_task(1))

    assert task.status is TaskStatus.FAILED_FATAL
    assert task.attempts == 1
    assert task.committable
    assert clock.sleeps == []


async def test_unexpected_errors_count_as_transient(sink, clock) -> None:
    sink.fail("100", RuntimeError("boom"))

    task = await Notifier(sink, clock=clock).deliver(_task(1))

    assert task.status is TaskStatus.DELIVERED
    assert task.attempts == 2


async def test_batch_keeps_order_per_target_and_isolates_failures(sink, clock) -> None:
    sink.always_fail["dead"] = FatalDeliveryError("forbidden")
    tasks = [_task(1, "100"), _task(1, "dead"), _task(2, "100"), _task(3, "100"), _task(2, "200")]

    result = await Notifier(sink, concurrency=2, clock=clock).deliver_batch(tasks)

    assert all(task.terminal for task in result)
    assert [task.status for task in result if task.target == "dead"] == [TaskStatus.FAILED_FATAL]
    assert sink.texts_for("100") == [tasks[0].text, tasks[2].text, tasks[3].text]
    assert sink.texts_for("200") == [tasks[4].text]
