from __future__ import annotations

import pytest

from app.services.progress_broadcaster import PROGRESS_EVENT_NAME, ProgressBroadcaster, ProgressEvent, channel_for


def test_channel_name_is_per_user() -> None:
  assert channel_for(42) == "user-42"


def test_event_message_shape() -> None:
  event = ProgressEvent(progress=0, complete=False, error="boom")
  assert event.to_message() == {"event": PROGRESS_EVENT_NAME, "progress": 0, "complete": False, "error": "boom"}


def test_publish_without_subscribers_is_a_no_op() -> None:
  broadcaster = ProgressBroadcaster()
  broadcaster.publish(42, 10)
  assert broadcaster.connection_count(42) == 0


@pytest.mark.anyio
async def test_subscribers_only_receive_their_own_channel() -> None:
  broadcaster = ProgressBroadcaster()

  async with broadcaster.subscribe(42) as mine, broadcaster.subscribe(7) as theirs:
    assert broadcaster.connection_count(42) == 1
    broadcaster.publish(42, 100, complete=True)

    event = await mine.next_event()
    assert event == ProgressEvent(progress=100, complete=True)
    assert theirs.offer(ProgressEvent(progress=1)) is True

  assert broadcaster.connection_count(42) == 0
  assert broadcaster.connection_count(7) == 0


@pytest.mark.anyio
async def test_slow_subscriber_drops_events_beyond_its_buffer() -> None:
  broadcaster = ProgressBroadcaster(max_pending_per_subscriber=1)

  async with broadcaster.subscribe(42) as subscription:
    broadcaster.publish(42, 10)
    broadcaster.publish(42, 20)

    assert (await subscription.next_event()).progress == 10
    assert subscription.offer(ProgressEvent(progress=30)) is True
