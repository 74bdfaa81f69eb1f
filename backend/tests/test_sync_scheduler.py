import asyncio

import pytest

from errors import UpstreamFetchFailure
from services.change_feed import ALL_STATIONS, ChangeFeed
from services.sync_scheduler import SyncScheduler


class CountingSource:
    """Fetcher returning an increasing counter; can be told to fail"""

    def __init__(self):
        self.calls = 0
        self.fail = False

    async def __call__(self):
        self.calls += 1
        if self.fail:
            raise ConnectionError("upstream down")
        return self.calls


def make_scheduler(interval=60.0, debounce_s=0.05, on_refresh=None):
    scheduler = SyncScheduler(name="test", debounce_s=debounce_s, on_refresh=on_refresh)
    sources = {name: CountingSource() for name in ("status", "consumption", "sessions")}
    for name, fetch in sources.items():
        scheduler.add_source(name, fetch, interval)
    return scheduler, sources


@pytest.mark.asyncio
async def test_failed_refresh_keeps_last_known_value():
    scheduler, sources = make_scheduler()
    assert await scheduler.refresh("status") is True
    assert scheduler.value("status") == 1

    sources["status"].fail = True
    assert await scheduler.refresh("status") is False
    assert scheduler.value("status") == 1
    error = scheduler.source("status").last_error
    assert isinstance(error, UpstreamFetchFailure)
    assert error.source == "status"
    assert scheduler.source("status").failures == 1

    sources["status"].fail = False
    assert await scheduler.refresh("status") is True
    assert scheduler.source("status").last_error is None


@pytest.mark.asyncio
async def test_one_failing_source_does_not_block_the_others():
    scheduler, sources = make_scheduler()
    sources["consumption"].fail = True

    results = await scheduler.refresh_all()

    assert results == {"status": True, "consumption": False, "sessions": True}
    assert scheduler.value("sessions") == 1
    assert scheduler.fetched_at()["consumption"] is None


def test_duplicate_source_name():
    scheduler, _ = make_scheduler()
    with pytest.raises(ValueError):
        scheduler.add_source("status", CountingSource(), 1)


@pytest.mark.asyncio
async def test_timers_refresh_each_source_on_its_cadence():
    scheduler, sources = make_scheduler(interval=0.05)
    await scheduler.start()
    await asyncio.sleep(0.18)
    await scheduler.teardown()

    for source in sources.values():
        assert source.calls >= 2


@pytest.mark.asyncio
async def test_hidden_pauses_and_visible_refreshes_immediately():
    scheduler, sources = make_scheduler(interval=0.05)
    await scheduler.start()
    assert scheduler.active_tasks() == 3

    await scheduler.set_visible(False)
    assert scheduler.active_tasks() == 0
    paused_at = sources["status"].calls
    await asyncio.sleep(0.15)
    assert sources["status"].calls == paused_at

    await scheduler.set_visible(True)
    assert sources["status"].calls == paused_at + 1
    assert scheduler.active_tasks() == 3
    await scheduler.teardown()


@pytest.mark.asyncio
async def test_change_events_inside_window_coalesce_into_one_refresh():
    refreshed = []

    async def on_refresh(names):
        refreshed.append(names)

    scheduler, sources = make_scheduler(on_refresh=on_refresh)
    await scheduler.start()
    refreshed.clear()

    for i in range(5):
        scheduler.notify_change({"event": i})
    await asyncio.sleep(0.15)

    assert sources["sessions"].calls == 2  # start + one debounced refresh
    assert scheduler.coalesced_events == 4
    assert refreshed == [["status", "consumption", "sessions"]]

    # window closed: the next event schedules a new refresh
    scheduler.notify_change({"event": "late"})
    await asyncio.sleep(0.15)
    assert sources["sessions"].calls == 3
    await scheduler.teardown()


@pytest.mark.asyncio
async def test_hidden_scheduler_ignores_change_events():
    scheduler, sources = make_scheduler()
    await scheduler.start()
    await scheduler.set_visible(False)

    scheduler.notify_change({"event": 1})
    await asyncio.sleep(0.1)
    assert sources["status"].calls == 1
    await scheduler.teardown()


@pytest.mark.asyncio
async def test_feed_events_trigger_refresh_and_teardown_stops_everything():
    feed = ChangeFeed()
    queue = feed.subscribe(1)
    scheduler, sources = make_scheduler()
    await scheduler.start()
    scheduler.attach_feed(queue)

    feed.publish(1, "port_claims", "active", device_id="D", port_number=1)
    await asyncio.sleep(0.15)
    assert sources["status"].calls == 2

    await scheduler.teardown()
    assert scheduler.active_tasks() == 0
    assert scheduler.torn_down

    feed.publish(1, "port_claims", "closed")
    await asyncio.sleep(0.1)
    assert sources["status"].calls == 2
    with pytest.raises(RuntimeError):
        await scheduler.start()


@pytest.mark.asyncio
async def test_refresh_callback_errors_are_contained():
    async def broken(names):
        raise RuntimeError("render failed")

    scheduler, _ = make_scheduler(on_refresh=broken)
    assert await scheduler.refresh("status") is True


@pytest.mark.asyncio
async def test_change_feed_scopes_events_by_station():
    feed = ChangeFeed(queue_size=2)
    station_1 = feed.subscribe(1)
    station_2 = feed.subscribe(2)
    everything = feed.subscribe(ALL_STATIONS)

    assert feed.publish(1, "charging_sessions", "energy") == 2
    assert station_1.qsize() == 1
    assert station_2.qsize() == 0
    assert everything.qsize() == 1

    # full queue drops its oldest event
    feed.publish(1, "charging_sessions", "a")
    feed.publish(1, "charging_sessions", "b")
    assert station_1.qsize() == 2
    assert station_1.get_nowait()["action"] == "a"

    feed.unsubscribe(2, station_2)
    assert feed.subscriber_count() == 2
