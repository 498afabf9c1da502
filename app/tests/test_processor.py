"""Event processor: validation, side effects, batches and failure handling"""
import asyncio
import pytest
from datetime import datetime, timedelta, timezone

from errors import ProcessingError, ValidationError
from models import Action
from processor import EventProcessor
from stores import MemoryAffinityStore, MemoryEventStore

from conftest import NOW, make_event


class FailingAffinityStore(MemoryAffinityStore):
    async def upsert_profile(self, user_id, fn):
        raise RuntimeError("affinity store down")


class FailingEventStore(MemoryEventStore):
    async def put_event(self, event):
        raise ConnectionError("mongo unreachable")

    async def put_events_bulk(self, events):
        raise ConnectionError("mongo unreachable")


class SlowEventStore(MemoryEventStore):
    async def put_event(self, event):
        await asyncio.sleep(1)
        return await super().put_event(event)


class OnceFailingStatsStore(MemoryEventStore):
    """The first stats write fails, later ones go through"""

    def __init__(self):
        super().__init__()
        self.failures_left = 1

    async def upsert_stats(self, video_id, fn):
        if self.failures_left:
            self.failures_left -= 1
            raise ConnectionError("stats shard restarting")
        return await super().upsert_stats(video_id, fn)


class FlakyStatsStore(MemoryEventStore):
    """Stats writes fail for one video only"""

    async def upsert_stats(self, video_id, fn):
        if video_id == "broken":
            raise ConnectionError("stats shard down")
        return await super().upsert_stats(video_id, fn)


@pytest.mark.asyncio
@pytest.mark.parametrize("field", ["event_id", "user_id", "video_id"])
async def test_missing_identifier_rejected(processor, store, field):
    event = make_event("e1").model_copy(update={field: ""})

    with pytest.raises(ValidationError, match=field):
        await processor.process(event)
    assert await store.count_all_events() == 0


@pytest.mark.asyncio
async def test_blank_identifier_rejected(processor):
    with pytest.raises(ValidationError):
        await processor.process(make_event("e1", user_id="   "))


@pytest.mark.asyncio
async def test_negative_duration_rejected(processor, store):
    with pytest.raises(ValidationError, match="duration"):
        await processor.process(make_event("e1", duration=-5))
    assert await store.count_all_events() == 0


@pytest.mark.asyncio
async def test_watch_event_updates_stats_and_profile(processor, store, affinity):
    assert await processor.process(make_event("e1", video_id="a1", duration=100)) is True
    await processor.process(make_event("e2", video_id="a1", duration=300))

    stats = await store.get_stats("a1")
    assert stats.total_views == 2
    assert stats.avg_duration == 200.0
    assert stats.unique_viewers == 1

    profile = await affinity.get_profile("u1")
    assert profile.watch_history == ["a1", "a1"]
    assert profile.preferences == {"Action": 2}
    assert profile.total_watch_time == 400
    assert profile.last_active is not None


@pytest.mark.asyncio
async def test_missing_timestamp_is_assigned(processor, store):
    await processor.process(make_event("e1"))
    assert store.events["e1"].timestamp is not None


@pytest.mark.asyncio
async def test_supplied_timestamp_is_kept(processor, store):
    await processor.process(make_event("e1", timestamp=NOW))
    assert store.events["e1"].timestamp == NOW


@pytest.mark.asyncio
@pytest.mark.parametrize("action", [Action.PAUSE, Action.STOP, Action.RESUME, Action.SEEK])
async def test_non_watch_events_leave_stats_alone(processor, store, affinity, action):
    await processor.process(make_event("e1", action=action, duration=50))

    assert "e1" in store.events
    assert await store.get_stats("a1") is None
    profile = await affinity.get_profile("u1")
    assert profile.watch_history == ["a1"]
    assert profile.total_watch_time == 0


@pytest.mark.asyncio
async def test_unknown_video_counts_as_unknown_category(processor, affinity):
    await processor.process(make_event("e1", video_id="not-in-catalog"))

    profile = await affinity.get_profile("u1")
    assert profile.preferences == {"Unknown": 1}


@pytest.mark.asyncio
async def test_watch_history_capped_most_recent_first(processor, affinity):
    for i in range(101):
        await processor.process(make_event(f"e{i}", video_id=f"v{i}", duration=1))

    profile = await affinity.get_profile("u1")
    assert len(profile.watch_history) == 100
    assert profile.watch_history == [f"v{i}" for i in range(100, 0, -1)]
    assert profile.preferences == {"Unknown": 101}


@pytest.mark.asyncio
async def test_duplicate_event_is_not_reapplied(processor, store):
    await processor.process(make_event("e1", duration=100))
    assert await processor.process(make_event("e1", duration=900)) is False

    stats = await store.get_stats("a1")
    assert stats.total_views == 1
    assert processor.duplicates == 1


@pytest.mark.asyncio
async def test_profile_failure_does_not_fail_event(store, catalog):
    processor = EventProcessor(store, catalog, FailingAffinityStore())

    assert await processor.process(make_event("e1", duration=100)) is True
    assert "e1" in store.events
    assert (await store.get_stats("a1")).total_views == 1
    assert processor.profile_failures == 1


@pytest.mark.asyncio
async def test_store_failure_raises_processing_error(catalog, affinity):
    processor = EventProcessor(FailingEventStore(), catalog, affinity)

    with pytest.raises(ProcessingError) as excinfo:
        await processor.process(make_event("e1"))
    assert isinstance(excinfo.value.__cause__, ConnectionError)
    assert processor.failed == 1
    assert await affinity.get_profile("u1") is None


@pytest.mark.asyncio
async def test_store_timeout_raises_processing_error(catalog, affinity):
    processor = EventProcessor(SlowEventStore(), catalog, affinity, timeout=0.05)

    with pytest.raises(ProcessingError, match="Timed out"):
        await processor.process(make_event("e1"))


@pytest.mark.asyncio
async def test_empty_batch_rejected(processor):
    with pytest.raises(ValidationError):
        await processor.process_batch([])


@pytest.mark.asyncio
async def test_oversized_batch_rejected_without_side_effects(processor, store, affinity):
    events = [make_event(f"e{i}") for i in range(10001)]

    with pytest.raises(ValidationError, match="10000"):
        await processor.process_batch(events)
    assert await store.count_all_events() == 0
    assert store.stats == {}
    assert affinity.profiles == {}


@pytest.mark.asyncio
async def test_batch_at_size_limit_succeeds(processor, store):
    events = [make_event(f"e{i}", user_id=f"u{i % 50}", video_id=f"a{i % 3 + 1}", duration=i % 7)
              for i in range(10000)]

    result = await processor.process_batch(events)

    assert result.processed == 10000
    assert result.duplicates == 0
    assert result.elapsed_ms > 0
    assert result.events_per_second > 0
    assert await store.count_all_events() == 10000
    total = sum(s.total_views for s in await store.top_stats(10))
    assert total == 10000


@pytest.mark.asyncio
async def test_invalid_event_rejects_whole_batch(processor, store):
    events = [make_event("e1"), make_event("e2", video_id=""), make_event("e3")]

    with pytest.raises(ValidationError):
        await processor.process_batch(events)
    assert await store.count_all_events() == 0


@pytest.mark.asyncio
async def test_batch_applies_events_in_order(processor, store, affinity):
    events = [
        make_event("e1", video_id="a1", duration=100, timestamp=NOW),
        make_event("e2", video_id="c1", duration=50, timestamp=NOW + timedelta(seconds=1)),
        make_event("e3", video_id="a1", duration=300, action=Action.PAUSE),
        make_event("e4", video_id="a1", duration=300),
    ]

    await processor.process_batch(events)

    stats = await store.get_stats("a1")
    assert (stats.total_views, stats.avg_duration) == (2, 200.0)
    profile = await affinity.get_profile("u1")
    assert profile.watch_history == ["a1", "a1", "c1", "a1"]
    assert profile.preferences == {"Action": 3, "Comedy": 1}
    assert profile.total_watch_time == 450


@pytest.mark.asyncio
async def test_batch_skips_duplicates(processor, store):
    await processor.process(make_event("e1", duration=100))

    result = await processor.process_batch([
        make_event("e1", duration=500),
        make_event("e2", duration=300),
        make_event("e2", duration=700),
    ])

    assert result.processed == 3
    assert result.duplicates == 2
    stats = await store.get_stats("a1")
    assert (stats.total_views, stats.avg_duration) == (2, 200.0)


@pytest.mark.asyncio
async def test_batch_tolerates_per_event_failures(catalog, affinity):
    store = FlakyStatsStore()
    processor = EventProcessor(store, catalog, affinity)

    result = await processor.process_batch([
        make_event("e1", video_id="a1"),
        make_event("e2", video_id="broken"),
        make_event("e3", video_id="a1"),
    ])

    assert result.processed == 3
    assert processor.failed == 1
    assert (await store.get_stats("a1")).total_views == 2


@pytest.mark.asyncio
async def test_batch_store_failure_raises(catalog, affinity):
    processor = EventProcessor(FailingEventStore(), catalog, affinity)

    with pytest.raises(ProcessingError):
        await processor.process_batch([make_event("e1")])


@pytest.mark.asyncio
async def test_concurrent_events_for_one_user(processor, affinity):
    await asyncio.gather(*(
        processor.process(make_event(f"e{i}", video_id="c1", duration=10)) for i in range(50)
    ))

    profile = await affinity.get_profile("u1")
    assert len(profile.watch_history) == 50
    assert profile.preferences == {"Comedy": 50}
    assert profile.total_watch_time == 500


@pytest.mark.asyncio
async def test_boundary_reads(processor):
    await processor.process(make_event("e1", video_id="a1", duration=100))
    await processor.process(make_event("e2", video_id="s1", duration=60, user_id="u2"))
    await processor.process(make_event("e3", video_id="s1", duration=30, user_id="u3"))

    assert (await processor.get_stats("s1")).total_views == 2
    assert [s.video_id for s in await processor.top_videos(1)] == ["s1"]
    assert [v.video_id for v in await processor.recommend("u1", 2)] == ["a2", "a3"]
    trending = await processor.detect_trending(5)
    assert {t.video.video_id for t in trending} == {"s1"}

    categories = await processor.category_aggregate()
    assert categories["SciFi"].total_views == 2
    assert categories["SciFi"].avg_duration == 45.0
    assert categories["Action"].video_count == 3
    assert processor.counters()["processed"] == 3


@pytest.mark.asyncio
async def test_failed_event_is_applied_on_retry(catalog, affinity):
    store = OnceFailingStatsStore()
    processor = EventProcessor(store, catalog, affinity)

    with pytest.raises(ProcessingError):
        await processor.process(make_event("e1", duration=120))
    assert "e1" in store.events
    assert await store.get_stats("a1") is None

    assert await processor.process(make_event("e1", duration=120)) is True

    stats = await store.get_stats("a1")
    assert (stats.total_views, stats.avg_duration) == (1, 120.0)
    assert (await affinity.get_profile("u1")).watch_history == ["a1"]
    assert processor.duplicates == 0

    # once applied, the event is a plain duplicate
    assert await processor.process(make_event("e1", duration=120)) is False
    assert (await store.get_stats("a1")).total_views == 1


@pytest.mark.asyncio
async def test_failed_batch_event_is_applied_on_retry(catalog, affinity):
    store = OnceFailingStatsStore()
    processor = EventProcessor(store, catalog, affinity)
    events = [make_event("e1", duration=100), make_event("e2", duration=300)]

    await processor.process_batch(events)
    assert (await store.get_stats("a1")).total_views == 1

    result = await processor.process_batch(events)

    assert result.duplicates == 1
    stats = await store.get_stats("a1")
    assert (stats.total_views, stats.avg_duration) == (2, 200.0)


@pytest.mark.asyncio
async def test_aware_timestamp_stored_as_naive_utc(processor, store):
    local = timezone(timedelta(hours=2))
    await processor.process(make_event("e1", video_id="s1", timestamp=datetime(2025, 8, 1, 14, tzinfo=local)))
    for event_id in ("e2", "e3"):
        await processor.process(make_event(
            event_id, video_id="s1", timestamp=datetime.now(timezone.utc) - timedelta(hours=1)
        ))

    assert store.events["e1"].timestamp == NOW
    assert store.events["e1"].timestamp.tzinfo is None

    trending = await processor.detect_trending(5)
    assert [t.video.video_id for t in trending] == ["s1"]
    assert sum((await processor.hourly_stats()).values()) == 2
